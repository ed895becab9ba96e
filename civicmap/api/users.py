from fastapi import APIRouter, Depends
from typing import Optional
import logging

from ..core.config import settings
from ..domain import errors
from ..domain.models import Identity, ProfileCreate, ProfileDefaults, ProfileResponse, UserProfile
from ..domain.services.leaderboard_service import LeaderboardService
from ..domain.services.profile_store import SqlProfileStore
from ..domain.services.reputation_service import calculate_level, points_to_next_level
from .deps import get_current_identity, get_leaderboard_service, get_profile_store, http_error

router = APIRouter()
logger = logging.getLogger(__name__)


def _profile_response(profile: UserProfile, leaderboard: LeaderboardService) -> ProfileResponse:
    return ProfileResponse(
        uid=profile.uid,
        display_name=profile.display_name,
        photo_url=profile.photo_url,
        points=profile.points,
        level=calculate_level(profile.points),
        points_to_next_level=points_to_next_level(profile.points),
        rank=leaderboard.rank_for(profile.points),
    )


# ============================================================================
# OWN PROFILE (identity from the bearer token)
# ============================================================================

@router.post("/me", response_model=ProfileResponse)
def ensure_my_profile(
    body: Optional[ProfileCreate] = None,
    identity: Identity = Depends(get_current_identity),
    profiles: SqlProfileStore = Depends(get_profile_store),
    leaderboard: LeaderboardService = Depends(get_leaderboard_service),
):
    """
    Create the caller's profile on first sign-in.
    Idempotent: an existing profile (and its points) is left untouched.
    """
    defaults = ProfileDefaults(
        points=settings.STARTING_POINTS,
        display_name=(body.display_name if body and body.display_name else identity.display_name),
        photo_url=(body.photo_url if body and body.photo_url else identity.photo_url),
    )
    try:
        profile = profiles.ensure_profile(identity.uid, defaults)
        return _profile_response(profile, leaderboard)
    except errors.CivicMapError as e:
        raise http_error(e)


@router.get("/me", response_model=ProfileResponse)
def get_my_profile(
    identity: Identity = Depends(get_current_identity),
    profiles: SqlProfileStore = Depends(get_profile_store),
    leaderboard: LeaderboardService = Depends(get_leaderboard_service),
):
    """Points, level, progress and global rank of the signed-in user."""
    try:
        profile = profiles.get_profile(identity.uid)
        if profile is None:
            raise errors.ProfileNotFound(identity.uid)
        return _profile_response(profile, leaderboard)
    except errors.CivicMapError as e:
        raise http_error(e)


# ============================================================================
# PUBLIC PROFILES
# ============================================================================

@router.get("/{uid}", response_model=ProfileResponse)
def get_user_profile(
    uid: str,
    profiles: SqlProfileStore = Depends(get_profile_store),
    leaderboard: LeaderboardService = Depends(get_leaderboard_service),
):
    try:
        profile = profiles.get_profile(uid)
        if profile is None:
            raise errors.ProfileNotFound(uid)
        return _profile_response(profile, leaderboard)
    except errors.CivicMapError as e:
        raise http_error(e)
