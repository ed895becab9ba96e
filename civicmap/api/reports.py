from fastapi import APIRouter, Depends, Query, status
from typing import Optional, List
import asyncio
import logging

from ..core.config import settings
from ..domain import errors
from ..domain.models import (
    Identity,
    Location,
    ProfileDefaults,
    ReportCategory,
    ReportDraft,
    ReportMode,
    ReportResponse,
    ReportStats,
    ReportStatus,
    StatusUpdate,
)
from ..domain.services.geocoding_service import ReverseGeocoder
from ..domain.services.profile_store import SqlProfileStore
from ..domain.services.report_store import SqlReportStore
from ..domain.services.reputation_service import points_for_mode, points_for_validation
from ..domain.services.submission_service import build_report, validate_draft
from .deps import (
    get_current_identity,
    get_geocoder,
    get_profile_store,
    get_report_store,
    http_error,
    require_agent,
)

router = APIRouter()
logger = logging.getLogger(__name__)


def _response(report) -> ReportResponse:
    return ReportResponse.from_report(report, settings.CERTIFICATION_THRESHOLD)


@router.get("/", response_model=List[ReportResponse], response_model_exclude_none=True)
def list_reports(
    status_filter: Optional[ReportStatus] = Query(None, alias="status"),
    category: Optional[ReportCategory] = Query(None),
    mode: Optional[ReportMode] = Query(None),
    store: SqlReportStore = Depends(get_report_store),
):
    """
    List reports, newest first.
    Optional filters by status, category and mode (agent dashboard).
    """
    try:
        reports = store.list_reports(status=status_filter, category=category, mode=mode)
    except errors.CivicMapError as e:
        raise http_error(e)
    return [_response(r) for r in reports]


@router.get("/stats", response_model=ReportStats)
def get_report_stats(store: SqlReportStore = Depends(get_report_store)):
    """Report counts by status."""
    try:
        return store.stats()
    except errors.CivicMapError as e:
        raise http_error(e)


@router.get("/{report_id}", response_model=ReportResponse, response_model_exclude_none=True)
def get_report(report_id: str, store: SqlReportStore = Depends(get_report_store)):
    try:
        return _response(store.get(report_id))
    except errors.CivicMapError as e:
        raise http_error(e)


@router.post("/", response_model=ReportResponse, response_model_exclude_none=True, status_code=status.HTTP_201_CREATED)
async def create_report(
    draft: ReportDraft,
    identity: Identity = Depends(get_current_identity),
    store: SqlReportStore = Depends(get_report_store),
    profiles: SqlProfileStore = Depends(get_profile_store),
    geocoder: ReverseGeocoder = Depends(get_geocoder),
):
    """
    Submit a report.

    Required fields depend on mode: description and location always, photo
    unless mode is suggestion. type is only kept for problems. Points are
    awarded once the report is stored.
    """
    try:
        location = validate_draft(draft)
        if location.address is None:
            address = await geocoder.lookup(location.lat, location.lng)
            if address:
                location = Location(lat=location.lat, lng=location.lng, address=address)
        report = await asyncio.to_thread(build_report, draft, identity.uid, location)
        created = await asyncio.to_thread(store.create, report)
    except errors.CivicMapError as e:
        logger.warning(f"Report submission by {identity.uid} rejected: {e.message}")
        raise http_error(e)

    earned = points_for_mode(created.mode)
    try:
        await asyncio.to_thread(
            profiles.ensure_profile,
            identity.uid,
            ProfileDefaults(
                points=settings.STARTING_POINTS,
                display_name=identity.display_name,
                photo_url=identity.photo_url,
            ),
        )
        await asyncio.to_thread(profiles.increment_points, identity.uid, earned)
    except errors.CivicMapError as e:
        logger.error(f"Report {created.id} stored but awarding {earned} points to {identity.uid} failed: {e}")
        raise http_error(e)

    return _response(created)


@router.patch("/{report_id}/status", response_model=ReportResponse, response_model_exclude_none=True)
def update_report_status(
    report_id: str,
    update: StatusUpdate,
    agent: Identity = Depends(require_agent),
    store: SqlReportStore = Depends(get_report_store),
):
    """Change a report's status (municipal agents only). Any status may follow any other."""
    try:
        updated = store.update_status(report_id, update.status)
    except errors.CivicMapError as e:
        raise http_error(e)
    logger.info(f"Agent {agent.uid} set report {report_id} to {update.status.value}")
    return _response(updated)


@router.post("/{report_id}/validations", response_model=ReportResponse, response_model_exclude_none=True)
def validate_report(
    report_id: str,
    identity: Identity = Depends(get_current_identity),
    store: SqlReportStore = Depends(get_report_store),
    profiles: SqlProfileStore = Depends(get_profile_store),
):
    """
    Confirm a furniture-ok report.
    Each user may validate a report once (409 otherwise).
    """
    try:
        updated = store.add_validation(report_id, identity.uid)
        profiles.ensure_profile(
            identity.uid,
            ProfileDefaults(
                points=settings.STARTING_POINTS,
                display_name=identity.display_name,
                photo_url=identity.photo_url,
            ),
        )
        profiles.increment_points(identity.uid, points_for_validation())
    except errors.CivicMapError as e:
        raise http_error(e)
    return _response(updated)
