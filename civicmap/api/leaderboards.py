from fastapi import APIRouter, Depends, Query
from typing import List
import logging

from ..domain import errors
from ..domain.models import LeaderboardEntry, RankResponse
from ..domain.services.leaderboard_service import LeaderboardService
from .deps import get_leaderboard_service, http_error

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/rank", response_model=RankResponse)
def get_rank(
    points: int = Query(..., description="Points to rank"),
    service: LeaderboardService = Depends(get_leaderboard_service),
):
    """
    Global rank for a points value.
    1 + number of profiles with strictly more points; 1 for zero or less.
    """
    try:
        return RankResponse(points=points, rank=service.rank_for(points))
    except errors.CivicMapError as e:
        logger.error(f"Error computing rank for {points} points: {e}")
        raise http_error(e)


@router.get("/top", response_model=List[LeaderboardEntry])
def get_top_users(
    limit: int = Query(10, ge=1, le=100),
    service: LeaderboardService = Depends(get_leaderboard_service),
):
    """Top users by points (ties share a rank)."""
    try:
        return service.get_top_users(limit)
    except errors.CivicMapError as e:
        logger.error(f"Error fetching top users: {e}")
        raise http_error(e)
