"""
FastAPI dependencies: identity, role checks and store access.
"""
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from ..domain import errors
from ..domain.models import Identity
from ..domain.services.change_feed import ChangeFeed
from ..domain.services.geocoding_service import ReverseGeocoder
from ..domain.services.leaderboard_service import LeaderboardService
from ..domain.services.profile_store import SqlProfileStore
from ..domain.services.report_store import SqlReportStore
from ..domain.services.security import identity_from_token, is_agent
from ..infrastructure.database import SessionLocal


# =============================================================================
# Stores
# =============================================================================

# One feed per process so REST writes reach WebSocket subscribers
change_feed = ChangeFeed()
_report_store = SqlReportStore(SessionLocal, change_feed)
_profile_store = SqlProfileStore(SessionLocal, change_feed)
_leaderboard_service = LeaderboardService(SessionLocal)
_geocoder = ReverseGeocoder()


def get_report_store() -> SqlReportStore:
    return _report_store


def get_profile_store() -> SqlProfileStore:
    return _profile_store


def get_leaderboard_service() -> LeaderboardService:
    return _leaderboard_service


def get_geocoder() -> ReverseGeocoder:
    return _geocoder


# =============================================================================
# Identity
# =============================================================================

# HTTP Bearer token security scheme
security = HTTPBearer(auto_error=False)


def get_current_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Identity:
    """
    Dependency returning the signed-in identity.
    Raises 401 if the bearer token is missing, invalid or expired.
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    identity = identity_from_token(credentials.credentials)
    if identity is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return identity


def require_agent(identity: Identity = Depends(get_current_identity)) -> Identity:
    """Only municipal agents may pass. Raises 403 otherwise."""
    if not is_agent(identity.uid):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Municipal agent role required",
        )
    return identity


# =============================================================================
# Error mapping
# =============================================================================

def http_error(e: errors.CivicMapError) -> HTTPException:
    """Translate a domain error into the matching HTTP error."""
    if isinstance(e, errors.AlreadyValidated):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.message)
    if isinstance(e, (errors.ValidationError, errors.LocationUnavailable)):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=e.message)
    if isinstance(e, (errors.ReportNotFound, errors.ProfileNotFound)):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.message)
