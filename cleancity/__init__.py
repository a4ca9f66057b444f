"""
CleanCity - Report lifecycle and cleanup verification engine.
"""

__version__ = "0.1.0"
