"""
API module for CleanCity
"""
