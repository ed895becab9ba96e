"""
Local checks and record building for new reports.

validate_draft runs before any store call; build_report turns a valid
draft into the record the report store persists.
"""
from datetime import datetime, timezone
from typing import Callable, Optional
from uuid import uuid4

from ..models import Location, Report, ReportDraft, ReportMode, ReportStatus
from .. import errors
from .photo_service import SUGGESTION_PLACEHOLDER_PHOTO, normalize_photo


def validate_draft(draft: ReportDraft, location: Optional[Location] = None) -> Location:
    """
    Check required fields for the draft's mode and return the location to use.

    location is the fallback (GPS) position used when the draft has none.
    Raises ValidationError for a missing field, LocationUnavailable when
    neither the draft nor the fallback has a position.
    """
    if not draft.description or not draft.description.strip():
        raise errors.ValidationError("Please describe the report", field="description")

    if draft.mode != ReportMode.SUGGESTION and not draft.photo:
        raise errors.ValidationError("Please add a photo", field="photo")

    resolved = draft.location or location
    if resolved is None:
        raise errors.LocationUnavailable(
            errors.LocationUnavailable.POSITION_UNAVAILABLE,
            "Location required: allow geolocation or pick a point on the map",
        )
    return resolved


def new_report_id() -> str:
    return str(uuid4())


def build_report(
    draft: ReportDraft,
    reported_by: str,
    location: Location,
    photo_normalizer: Callable[[Optional[str]], Optional[str]] = normalize_photo,
) -> Report:
    """Build the record to persist. type is kept only for problems."""
    photo = photo_normalizer(draft.photo)
    if photo is None and draft.mode == ReportMode.SUGGESTION:
        photo = SUGGESTION_PLACEHOLDER_PHOTO

    return Report(
        id=draft.id or new_report_id(),
        mode=draft.mode,
        type=draft.type if draft.mode == ReportMode.PROBLEM else None,
        category=draft.category,
        description=draft.description.strip(),
        photo=photo,
        location=Location(lat=float(location.lat), lng=float(location.lng), address=location.address),
        date=datetime.now(timezone.utc),
        status=ReportStatus.NEW,
        reported_by=reported_by,
        validations=0,
        validated_by=[],
    )
