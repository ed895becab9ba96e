from typing import Optional

from ..models import ReportMode
from ...core.config import settings

# ============================================================================
# POINTS SYSTEM CONFIGURATION
# ============================================================================

POINTS_SYSTEM = {
    'problem_submitted': 20,
    'furniture_submitted': 10,
    'suggestion_submitted': 10,
    'furniture_validated': 5,
}


# ============================================================================
# CORE CALCULATION FUNCTIONS
# ============================================================================

def points_for_mode(mode: ReportMode) -> int:
    """Points awarded for submitting a report of the given mode"""
    if mode == ReportMode.PROBLEM:
        return POINTS_SYSTEM['problem_submitted']
    if mode == ReportMode.FURNITURE_OK:
        return POINTS_SYSTEM['furniture_submitted']
    return POINTS_SYSTEM['suggestion_submitted']


def points_for_validation() -> int:
    return POINTS_SYSTEM['furniture_validated']


def calculate_level(points: int, points_per_level: Optional[int] = None) -> int:
    """
    Calculate level based on points
    Linear progression: level = floor(points / points_per_level)
    """
    per_level = points_per_level or settings.POINTS_PER_LEVEL
    return max(points, 0) // per_level


def points_to_next_level(current_points: int, points_per_level: Optional[int] = None) -> int:
    """Calculate points needed for next level"""
    per_level = points_per_level or settings.POINTS_PER_LEVEL
    return per_level - (max(current_points, 0) % per_level)
