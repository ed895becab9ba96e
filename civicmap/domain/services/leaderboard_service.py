from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from typing import List
import logging

from ..models import LeaderboardEntry
from .. import errors
from .interfaces import IRankCalculator
from .reputation_service import calculate_level
from ...infrastructure import models

logger = logging.getLogger(__name__)


class LeaderboardService(IRankCalculator):
    """
    Leaderboard position from the profile table.

    Ranks are point-in-time counts and are not transactionally
    consistent with concurrent increments.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def rank_for(self, points: int) -> int:
        """
        1 + number of profiles with strictly more points.
        Anyone at zero points or below is ranked 1.
        """
        if points <= 0:
            return 1

        db = self.session_factory()
        try:
            ahead = db.query(models.UserProfile).filter(
                models.UserProfile.points > points
            ).count()
        except SQLAlchemyError as e:
            logger.error(f"Error computing rank for {points} points: {e}")
            raise errors.StoreReadError("Failed to compute rank") from e
        finally:
            db.close()

        return ahead + 1

    def get_top_users(self, limit: int = 10) -> List[LeaderboardEntry]:
        """
        Top profiles by points, ties share the rank of the first holder.
        """
        db = self.session_factory()
        try:
            rows = db.query(models.UserProfile).order_by(
                models.UserProfile.points.desc(),
                models.UserProfile.created_at.asc(),
            ).limit(limit).all()
        except SQLAlchemyError as e:
            logger.error(f"Error fetching top users: {e}")
            raise errors.StoreReadError("Failed to fetch leaderboard") from e
        finally:
            db.close()

        entries = []
        previous_points = None
        rank = 0
        for position, row in enumerate(rows, 1):
            if row.points != previous_points:
                rank = position
                previous_points = row.points
            entries.append(LeaderboardEntry(
                rank=rank,
                uid=row.uid,
                display_name=row.display_name,
                photo_url=row.photo_url,
                points=row.points,
                level=calculate_level(row.points),
            ))
        return entries
