"""
Points module for CleanCity
Citizen scoring, badges and leaderboard
"""

from .ledger import (
    PointsBreakdown,
    PointsLedger,
    calculate_badge,
    calculate_points,
    hash_device_id,
    next_streak,
)

__all__ = [
    "PointsBreakdown",
    "PointsLedger",
    "calculate_badge",
    "calculate_points",
    "hash_device_id",
    "next_streak",
]
