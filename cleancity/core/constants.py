"""
CleanCity - Constants and Reference Data
Static values used throughout the application.
"""

from typing import Dict, List, Tuple

# =============================================================================
# SCORING
# =============================================================================

# Points credited to a citizen once a cleanup is approved
POINTS_REPORT_VERIFIED: int = 10
POINTS_FIRST_IN_AREA: int = 20
POINTS_PER_STREAK_DAY: int = 5

# Streak bonus only applies from this many consecutive days
MIN_STREAK_FOR_BONUS: int = 2

# Radius in which a resolved report makes the area "already covered"
PIONEER_RADIUS_METERS: float = 500.0

# Severity bonus on top of the base points (high > medium > low)
SEVERITY_BONUS: Dict[str, int] = {
    "high": 5,
    "medium": 2,
    "low": 0,
}

# Badge ladder: (minimum points, badge name), ascending
BADGE_THRESHOLDS: List[Tuple[int, str]] = [
    (0, "Cleanliness Rookie"),
    (50, "Eco Warrior"),
    (200, "Community Champion"),
    (500, "Cleanup Legend"),
]

# =============================================================================
# TASK PRIORITY
# =============================================================================

# priority = severity weight + age in hours
SEVERITY_WEIGHTS: Dict[str, int] = {
    "high": 100,
    "medium": 50,
    "low": 10,
}

# Estimated cleanup time in minutes
ESTIMATED_MINUTES: Dict[str, int] = {
    "high": 60,
    "medium": 30,
    "low": 15,
}

# =============================================================================
# RATE LIMITING
# =============================================================================

RATE_LIMIT_PREFIX: str = "rl"

# Leaderboard entries expose only a hash prefix of the device id
LEADERBOARD_HASH_LENGTH: int = 8
