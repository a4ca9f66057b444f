"""
Tasks module for CleanCity
Prioritized worker task lists
"""

from .scheduler import (
    Task,
    TaskScheduler,
    calculate_priority,
    estimated_minutes,
    prioritize,
)

__all__ = [
    "Task",
    "TaskScheduler",
    "calculate_priority",
    "estimated_minutes",
    "prioritize",
]
