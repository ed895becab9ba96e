"""
Client synchronization session.

Keeps the view state of one signed-in user in step with the report and
profile stores:

    UNAUTHENTICATED -> LOADING_LOCATION -> READY

Entering READY opens both subscriptions; losing the identity tears them
down. The report list and the profile are projections of the last
snapshot received and are never edited locally; feedback after a write
is given through notices (toasts) only.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Set
import asyncio
import logging

from ..core.config import settings
from ..domain import errors
from ..domain.models import (
    Identity,
    Location,
    ProfileDefaults,
    Report,
    ReportDraft,
    ReportMode,
    ReportStatus,
    STATUS_LABELS,
    UserProfile,
)
from ..domain.services.geolocation import request_location
from ..domain.services.interfaces import IGeolocationSource, IIdentityProvider, Subscription
from ..domain.services.reputation_service import (
    calculate_level,
    points_for_mode,
    points_for_validation,
    points_to_next_level,
)
from ..domain.services.security import is_agent
from ..domain.services.submission_service import build_report, validate_draft
from .gateway import IStoreGateway

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    LOADING_LOCATION = "loading-location"
    READY = "ready"


class ViewState(str, Enum):
    IDLE = "idle"
    PICKING_LOCATION = "picking-location"
    FORM_OPEN = "form-open"
    REPORT_OPEN = "report-open"
    PROFILE_OPEN = "profile-open"


class UserMode(str, Enum):
    CITIZEN = "citizen"
    AGENT = "agent"


# Allowed view transitions; any view may go back to IDLE.
VIEW_TRANSITIONS = {
    ViewState.IDLE: {ViewState.FORM_OPEN, ViewState.PICKING_LOCATION, ViewState.REPORT_OPEN, ViewState.PROFILE_OPEN},
    ViewState.FORM_OPEN: {ViewState.IDLE, ViewState.PICKING_LOCATION, ViewState.REPORT_OPEN, ViewState.PROFILE_OPEN},
    ViewState.PICKING_LOCATION: {ViewState.IDLE, ViewState.FORM_OPEN},
    ViewState.REPORT_OPEN: {ViewState.IDLE, ViewState.FORM_OPEN, ViewState.PROFILE_OPEN, ViewState.REPORT_OPEN},
    ViewState.PROFILE_OPEN: {ViewState.IDLE},
}


@dataclass
class Notice:
    """User-facing message (toast)."""
    level: str  # success, error, info
    message: str


class SyncSession:
    """
    One user's session against the stores.

    All public coroutines must run on the same event loop. Failures never
    escape the public actions: they become notices and the session stays
    interactive.
    """

    def __init__(
        self,
        identity: IIdentityProvider,
        gateway: IStoreGateway,
        geolocation: Optional[IGeolocationSource] = None,
        high_accuracy: Optional[bool] = None,
        location_timeout_ms: Optional[int] = None,
        retry_base_seconds: Optional[float] = None,
        retry_max_seconds: Optional[float] = None,
        max_retries: Optional[int] = None,
        on_change: Optional[Callable[["SyncSession"], None]] = None,
    ):
        self.identity_provider = identity
        self.gateway = gateway
        self.geolocation = geolocation
        self.high_accuracy = settings.GEOLOCATION_HIGH_ACCURACY if high_accuracy is None else high_accuracy
        self.location_timeout_ms = settings.GEOLOCATION_TIMEOUT_MS if location_timeout_ms is None else location_timeout_ms
        self.retry_base_seconds = settings.SUBSCRIPTION_RETRY_BASE_SECONDS if retry_base_seconds is None else retry_base_seconds
        self.retry_max_seconds = settings.SUBSCRIPTION_RETRY_MAX_SECONDS if retry_max_seconds is None else retry_max_seconds
        self.max_retries = settings.SUBSCRIPTION_MAX_RETRIES if max_retries is None else max_retries
        self.on_change = on_change

        self.state = SessionState.UNAUTHENTICATED
        self.view = ViewState.IDLE
        self.user_mode = UserMode.CITIZEN
        self.identity: Optional[Identity] = None

        # Projections of the last snapshots
        self.reports: List[Report] = []
        self.profile: Optional[UserProfile] = None
        self.rank: int = 1

        self.location: Optional[Location] = None
        self.location_error: Optional[str] = None
        self.picked_location: Optional[Location] = None
        self.selected_report_id: Optional[str] = None

        self.notices: List[Notice] = []
        self.last_error: Optional[errors.CivicMapError] = None

        self._report_sub: Optional[Subscription] = None
        self._profile_sub: Optional[Subscription] = None
        self._auth_unsubscribe: Optional[Callable[[], None]] = None
        self._generation = 0
        self._tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Derived view state
    # ------------------------------------------------------------------
    @property
    def points(self) -> int:
        return self.profile.points if self.profile else 0

    @property
    def level(self) -> int:
        return calculate_level(self.points)

    @property
    def points_to_next_level(self) -> int:
        return points_to_next_level(self.points)

    @property
    def selected_report(self) -> Optional[Report]:
        return self.find_report(self.selected_report_id) if self.selected_report_id else None

    def find_report(self, report_id: str) -> Optional[Report]:
        for report in self.reports:
            if report.id == report_id:
                return report
        return None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        """Follow the identity provider and handle the current user."""
        self._auth_unsubscribe = self.identity_provider.on_auth_change(self._on_auth_change)
        await self._handle_identity(self.identity_provider.current_user())

    async def close(self) -> None:
        if self._auth_unsubscribe is not None:
            self._auth_unsubscribe()
            self._auth_unsubscribe = None
        self._enter_unauthenticated()
        await self.drain()

    async def drain(self) -> None:
        """Wait for background work (identity changes, rank refreshes) to finish."""
        await asyncio.sleep(0)
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
            await asyncio.sleep(0)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _on_auth_change(self, user: Optional[Identity]) -> None:
        self._spawn(self._handle_identity(user))

    async def _handle_identity(self, user: Optional[Identity]) -> None:
        if user is None:
            self._enter_unauthenticated()
            return
        if self.identity is not None and self.identity.uid == user.uid and self.state != SessionState.UNAUTHENTICATED:
            self.identity = user
            return

        if self.state != SessionState.UNAUTHENTICATED:
            self._enter_unauthenticated()

        self._generation += 1
        generation = self._generation
        self.identity = user
        logger.info(f"Session started for {user.uid}")

        try:
            self.profile = await self.gateway.ensure_profile(
                user.uid,
                ProfileDefaults(
                    points=settings.STARTING_POINTS,
                    display_name=user.display_name,
                    photo_url=user.photo_url,
                ),
            )
        except errors.CivicMapError as e:
            logger.error(f"Could not create profile for {user.uid}: {e}")
            self._notify("error", "Your profile could not be loaded. Points may be out of date.")
        if generation != self._generation:
            return

        self._set_state(SessionState.LOADING_LOCATION)
        await self._resolve_location(generation)
        if generation != self._generation:
            return

        self._set_state(SessionState.READY)
        await self._open_subscriptions(generation)

    def _enter_unauthenticated(self) -> None:
        self._generation += 1
        self._close_subscriptions()
        if self.identity is not None:
            logger.info(f"Session ended for {self.identity.uid}")
        self.identity = None
        self.reports = []
        self.profile = None
        self.rank = 1
        self.location = None
        self.location_error = None
        self.picked_location = None
        self.selected_report_id = None
        self.view = ViewState.IDLE
        self._set_state(SessionState.UNAUTHENTICATED)

    def _set_state(self, state: SessionState) -> None:
        if self.state != state:
            logger.debug(f"Session state {self.state.value} -> {state.value}")
        self.state = state
        self._changed()

    def _changed(self) -> None:
        if self.on_change is not None:
            self.on_change(self)

    def _notify(self, level: str, message: str) -> None:
        self.notices.append(Notice(level, message))
        self._changed()

    # ------------------------------------------------------------------
    # Geolocation
    # ------------------------------------------------------------------
    async def _resolve_location(self, generation: int) -> None:
        try:
            location = await request_location(self.geolocation, self.high_accuracy, self.location_timeout_ms)
        except errors.LocationUnavailable as e:
            if generation != self._generation:
                return
            self.location = None
            self.location_error = e.message
            self._notify("error", f"{e.message} Tap retry to try again.")
            return
        if generation != self._generation:
            return
        self.location = location
        self.location_error = None
        self._changed()

    async def retry_location(self) -> bool:
        """Request the device position again. Returns True when a position is known."""
        if self.identity is None:
            return False
        await self._resolve_location(self._generation)
        return self.location is not None

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------
    async def _open_subscriptions(self, generation: int) -> None:
        uid = self.identity.uid

        report_sub = await self._subscribe_with_retry(
            lambda: self.gateway.subscribe_reports(lambda reports: self._on_reports(reports, generation)), "reports"
        )
        if generation != self._generation:
            if report_sub is not None:
                report_sub.unsubscribe()
            return
        self._report_sub = report_sub

        profile_sub = await self._subscribe_with_retry(
            lambda: self.gateway.subscribe_profile(uid, lambda profile: self._on_profile(profile, generation)), f"profile {uid}"
        )
        if generation != self._generation:
            if profile_sub is not None:
                profile_sub.unsubscribe()
            return
        self._profile_sub = profile_sub

    async def _subscribe_with_retry(self, subscribe, what: str) -> Optional[Subscription]:
        delay = self.retry_base_seconds
        # At least one attempt, even with max_retries=0
        attempts = max(self.max_retries, 1)
        for attempt in range(1, attempts + 1):
            try:
                return await subscribe()
            except errors.StoreReadError as e:
                logger.warning(f"Subscribing to {what} failed (attempt {attempt}/{attempts}): {e}")
                if attempt == attempts:
                    break
                await asyncio.sleep(delay)
                delay = min(delay * 2, self.retry_max_seconds)
        logger.error(f"Giving up on {what} subscription after {attempts} attempts")
        self._notify("error", "Live updates are unavailable right now.")
        return None

    def _close_subscriptions(self) -> None:
        for sub in (self._report_sub, self._profile_sub):
            if sub is not None:
                sub.unsubscribe()
        self._report_sub = None
        self._profile_sub = None

    def _on_reports(self, reports: List[Report], generation: int) -> None:
        if generation != self._generation:
            return
        self.reports = list(reports)
        if self.selected_report_id and self.find_report(self.selected_report_id) is None:
            self.selected_report_id = None
            if self.view == ViewState.REPORT_OPEN:
                self.view = ViewState.IDLE
        self._changed()

    def _on_profile(self, profile: UserProfile, generation: int) -> None:
        if generation != self._generation or self.identity is None or profile.uid != self.identity.uid:
            return
        self.profile = profile
        self._changed()
        self._spawn(self._refresh_rank(profile.points))

    async def _refresh_rank(self, points: int) -> None:
        try:
            rank = await self.gateway.rank_for(points)
        except errors.StoreReadError as e:
            logger.warning(f"Rank refresh failed: {e}")
            return
        # Drop results computed for a superseded points value
        if self.profile is not None and self.profile.points == points:
            self.rank = rank
            self._changed()

    # ------------------------------------------------------------------
    # View transitions
    # ------------------------------------------------------------------
    def transition(self, target: ViewState) -> None:
        """Single entry point for view changes."""
        if target != ViewState.IDLE and target not in VIEW_TRANSITIONS[self.view]:
            raise ValueError(f"Cannot go from {self.view.value} to {target.value}")
        self.view = target
        if target != ViewState.REPORT_OPEN:
            self.selected_report_id = None
        self._changed()

    def open_form(self) -> None:
        self.transition(ViewState.FORM_OPEN)

    def start_picking_location(self) -> None:
        self.transition(ViewState.PICKING_LOCATION)
        self._notify("info", "Click on the map to pick a location")

    def pick_location(self, lat: float, lng: float) -> bool:
        """Map click. Only taken into account while picking a location."""
        if self.view != ViewState.PICKING_LOCATION:
            return False
        self.picked_location = Location(lat=lat, lng=lng)
        self.transition(ViewState.FORM_OPEN)
        self._notify("success", "Location selected on the map")
        return True

    def open_report(self, report_id: str) -> None:
        if self.find_report(report_id) is None:
            self._notify("error", "This report is no longer available")
            return
        self.transition(ViewState.REPORT_OPEN)
        self.selected_report_id = report_id

    def open_profile(self) -> None:
        self.transition(ViewState.PROFILE_OPEN)

    def close_panel(self) -> None:
        self.transition(ViewState.IDLE)

    def cancel_form(self) -> None:
        self.picked_location = None
        self.transition(ViewState.IDLE)

    def toggle_user_mode(self) -> UserMode:
        """Switch between citizen and municipal agent views."""
        self.user_mode = UserMode.AGENT if self.user_mode == UserMode.CITIZEN else UserMode.CITIZEN
        self.picked_location = None
        self.transition(ViewState.IDLE)
        if self.user_mode == UserMode.AGENT:
            self._notify("info", "Municipal agent mode enabled")
        else:
            self._notify("info", "Citizen mode enabled")
        return self.user_mode

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------
    def _fail(self, error: errors.CivicMapError, message: Optional[str] = None) -> None:
        self.last_error = error
        self._notify("error", message or error.message)

    async def submit_report(self, draft: ReportDraft) -> Optional[Report]:
        """
        Validate locally, create the report, then award points.

        Points are only requested once the report is stored. Returns the
        stored report, or None if anything failed (see notices).
        """
        self.last_error = None
        if self.identity is None:
            self._fail(errors.ValidationError("Sign in to submit a report"))
            return None
        uid = self.identity.uid

        try:
            location = validate_draft(draft, self.picked_location or self.location)
            report = await asyncio.to_thread(build_report, draft, uid, location)
        except errors.LocationUnavailable as e:
            self._fail(e)
            return None
        except errors.ValidationError as e:
            self._fail(e)
            return None

        try:
            created = await self.gateway.create_report(report)
        except errors.CivicMapError as e:
            logger.error(f"Report submission failed for {uid}: {e}")
            self._fail(e, "Could not save your report. Please try again.")
            return None

        earned = points_for_mode(created.mode)
        try:
            await self.gateway.increment_points(uid, earned)
        except errors.CivicMapError as e:
            logger.error(f"Awarding {earned} points to {uid} failed after report {created.id}: {e}")
            self._fail(e, "Your report was saved but points could not be awarded. Please try again later.")
            return None

        self.picked_location = None
        self.transition(ViewState.IDLE)
        if created.mode == ReportMode.PROBLEM:
            self._notify("success", f"Problem reported! +{earned} points")
        else:
            self._notify("success", f"Report sent! +{earned} points")
        return created

    async def validate_report(self, report_id: str) -> bool:
        """Confirm a furniture-ok report. Each user may validate a report once."""
        self.last_error = None
        if self.identity is None:
            self._fail(errors.ValidationError("Sign in to validate a report"))
            return False
        uid = self.identity.uid

        report = self.find_report(report_id)
        if report is not None:
            if report.mode != ReportMode.FURNITURE_OK:
                self._fail(errors.ValidationError("Only furniture reports can be validated", field="mode"))
                return False
            if uid in report.validated_by:
                self._fail(errors.AlreadyValidated(report_id, uid))
                return False

        try:
            await self.gateway.add_validation(report_id, uid)
        except errors.AlreadyValidated as e:
            self._fail(e)
            return False
        except errors.CivicMapError as e:
            logger.error(f"Validation of {report_id} by {uid} failed: {e}")
            self._fail(e, "Could not record your validation. Please try again.")
            return False

        earned = points_for_validation()
        try:
            await self.gateway.increment_points(uid, earned)
        except errors.CivicMapError as e:
            logger.error(f"Awarding {earned} validation points to {uid} failed: {e}")
            self._fail(e, "Your validation was saved but points could not be awarded.")
            return False

        self._notify("success", f"Furniture validated! +{earned} points")
        return True

    async def change_status(self, report_id: str, status: ReportStatus) -> bool:
        """Agent action; any status may follow any other."""
        self.last_error = None
        if self.identity is None or self.user_mode != UserMode.AGENT or not is_agent(self.identity.uid):
            self._fail(errors.ValidationError("Only municipal agents can change a report status"))
            return False
        try:
            await self.gateway.update_status(report_id, status)
        except errors.CivicMapError as e:
            logger.error(f"Status change of {report_id} failed: {e}")
            self._fail(e, "Could not change the status. Please try again.")
            return False
        self._notify("success", f"Status changed to \"{STATUS_LABELS[status]}\"")
        return True
