"""
User Profile Store - per-user point counters.

Points only ever change through increment_points, which is a single
in-database UPDATE (points = points + delta). Concurrent increments from
any number of sessions therefore sum instead of overwriting each other.
"""
from typing import Callable, Optional
import logging
import threading

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..models import ProfileDefaults, UserProfile
from .. import errors
from .change_feed import ChangeFeed
from .interfaces import IProfileStore, Subscription
from ...infrastructure import models

logger = logging.getLogger(__name__)


def profile_topic(uid: str) -> str:
    return f"profile:{uid}"


def to_domain(row: models.UserProfile) -> UserProfile:
    return UserProfile(
        uid=row.uid,
        display_name=row.display_name,
        photo_url=row.photo_url,
        points=row.points or 0,
    )


class SqlProfileStore(IProfileStore):

    def __init__(self, session_factory: sessionmaker, feed: Optional[ChangeFeed] = None):
        self.session_factory = session_factory
        self.feed = feed or ChangeFeed()
        # Held while reading and pushing a snapshot: deliveries follow commit order
        self._publish_lock = threading.RLock()

    def get_profile(self, uid: str) -> Optional[UserProfile]:
        db = self.session_factory()
        try:
            row = db.get(models.UserProfile, uid)
            return to_domain(row) if row else None
        except SQLAlchemyError as e:
            logger.error(f"Error reading profile {uid}: {e}")
            raise errors.StoreReadError(f"Failed to read profile {uid}") from e
        finally:
            db.close()

    def ensure_profile(self, uid: str, defaults: ProfileDefaults) -> UserProfile:
        """
        Create the profile with defaults.points if missing; otherwise leave it untouched.
        A concurrent creation for the same uid shows up as an IntegrityError and is treated as a no-op.
        """
        db = self.session_factory()
        created = False
        try:
            row = db.get(models.UserProfile, uid)
            if row is None:
                row = models.UserProfile(
                    uid=uid,
                    display_name=defaults.display_name,
                    photo_url=defaults.photo_url,
                    points=defaults.points,
                )
                db.add(row)
                try:
                    db.commit()
                    created = True
                except IntegrityError:
                    db.rollback()
                    row = db.get(models.UserProfile, uid)
                    if row is None:
                        raise errors.StoreWriteError(f"Failed to create profile {uid}")
            profile = to_domain(row)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Error ensuring profile {uid}: {e}")
            raise errors.StoreWriteError(f"Failed to create profile {uid}") from e
        finally:
            db.close()

        if created:
            logger.info(f"Profile created: {uid} with {profile.points} points")
            self._publish(uid)
        return profile

    def increment_points(self, uid: str, delta: int) -> UserProfile:
        """Atomically add delta (> 0) to the stored points."""
        if delta <= 0:
            raise errors.ValidationError("Point increments must be positive", field="delta")

        db = self.session_factory()
        try:
            result = db.execute(
                update(models.UserProfile)
                .where(models.UserProfile.uid == uid)
                .values(points=models.UserProfile.points + delta)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                db.rollback()
                raise errors.ProfileNotFound(uid)
            db.commit()
            profile = to_domain(db.get(models.UserProfile, uid))
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Error incrementing points for {uid}: {e}")
            raise errors.StoreWriteError("Failed to award points") from e
        finally:
            db.close()

        logger.info(f"Awarded {delta} points to {uid} (total {profile.points})")
        self._publish(uid)
        return profile

    def subscribe(self, uid: str, on_change: Callable[[UserProfile], None]) -> Subscription:
        """
        Push the profile on every change and once on subscribe.
        A missing profile is delivered as a zero-point placeholder until it is created.
        """
        topic = profile_topic(uid)
        with self._publish_lock:
            subscription = self.feed.subscribe(topic, on_change)
            try:
                profile = self.get_profile(uid)
            except errors.StoreReadError:
                subscription.unsubscribe()
                raise
            self.feed.deliver(on_change, topic, profile or UserProfile(uid=uid, points=0))
        return subscription

    def _publish(self, uid: str) -> None:
        topic = profile_topic(uid)
        if not self.feed.has_listeners(topic):
            return
        with self._publish_lock:
            try:
                profile = self.get_profile(uid)
            except errors.StoreReadError as e:
                logger.error(f"Could not publish profile {uid}: {e}")
                return
            if profile is not None:
                self.feed.publish(topic, profile)
