from abc import ABC, abstractmethod
from typing import Callable, List, Optional

from ..models import Identity, Location, ProfileDefaults, Report, ReportStatus, UserProfile


class Subscription(ABC):
    """Handle returned by every subscribe call. unsubscribe() is idempotent."""

    @abstractmethod
    def unsubscribe(self) -> None:
        pass

    @property
    @abstractmethod
    def active(self) -> bool:
        pass


class IReportStore(ABC):
    """
    Durable collection of reports, ordered by date (newest first).
    Listeners always receive the full list, never a diff.
    """
    @abstractmethod
    def create(self, report: Report) -> Report:
        pass

    @abstractmethod
    def get(self, report_id: str) -> Report:
        pass

    @abstractmethod
    def list_reports(self) -> List[Report]:
        pass

    @abstractmethod
    def update_status(self, report_id: str, status: ReportStatus) -> Report:
        pass

    @abstractmethod
    def add_validation(self, report_id: str, uid: str) -> Report:
        """Set-like append of uid to validatedBy; raises AlreadyValidated on a repeat."""
        pass

    @abstractmethod
    def subscribe(self, on_change: Callable[[List[Report]], None]) -> Subscription:
        pass


class IProfileStore(ABC):
    """Per-user point counters with an atomic add primitive."""
    @abstractmethod
    def ensure_profile(self, uid: str, defaults: ProfileDefaults) -> UserProfile:
        pass

    @abstractmethod
    def get_profile(self, uid: str) -> Optional[UserProfile]:
        pass

    @abstractmethod
    def increment_points(self, uid: str, delta: int) -> UserProfile:
        pass

    @abstractmethod
    def subscribe(self, uid: str, on_change: Callable[[UserProfile], None]) -> Subscription:
        pass


class IRankCalculator(ABC):
    @abstractmethod
    def rank_for(self, points: int) -> int:
        pass


class IIdentityProvider(ABC):
    """
    Opaque authentication source. Sign-in/out mechanics live outside CivicMap;
    we only consume the current user and change notifications.
    """
    @abstractmethod
    def current_user(self) -> Optional[Identity]:
        pass

    @abstractmethod
    def on_auth_change(self, callback: Callable[[Optional[Identity]], None]) -> Callable[[], None]:
        """Register callback; returns an unsubscribe function."""
        pass


class IGeolocationSource(ABC):
    """One-shot device location. Raises LocationUnavailable on failure."""
    @abstractmethod
    async def request_once(self, high_accuracy: bool, timeout_ms: int) -> Location:
        pass
