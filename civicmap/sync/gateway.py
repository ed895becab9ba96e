"""
Async access to the stores for the synchronization session.

The stores are synchronous (SQLAlchemy sessions); the session lives on an
asyncio loop and must never block it. Calls are pushed to worker threads
with asyncio.to_thread, and subscription callbacks, which fire on whatever
thread performed the write, are marshalled back onto the session's loop.
"""
from abc import ABC, abstractmethod
from typing import Callable, List
import asyncio
import logging

from ..domain.models import ProfileDefaults, Report, ReportStatus, UserProfile
from ..domain.services.interfaces import IProfileStore, IRankCalculator, IReportStore, Subscription

logger = logging.getLogger(__name__)


class IStoreGateway(ABC):
    @abstractmethod
    async def create_report(self, report: Report) -> Report:
        pass

    @abstractmethod
    async def add_validation(self, report_id: str, uid: str) -> Report:
        pass

    @abstractmethod
    async def update_status(self, report_id: str, status: ReportStatus) -> Report:
        pass

    @abstractmethod
    async def ensure_profile(self, uid: str, defaults: ProfileDefaults) -> UserProfile:
        pass

    @abstractmethod
    async def increment_points(self, uid: str, delta: int) -> UserProfile:
        pass

    @abstractmethod
    async def rank_for(self, points: int) -> int:
        pass

    @abstractmethod
    async def subscribe_reports(self, on_change: Callable[[List[Report]], None]) -> Subscription:
        pass

    @abstractmethod
    async def subscribe_profile(self, uid: str, on_change: Callable[[UserProfile], None]) -> Subscription:
        pass


def marshal_to_loop(loop: asyncio.AbstractEventLoop, callback: Callable) -> Callable:
    """Wrap callback so it always runs on loop, whichever thread invokes it."""
    def deliver(snapshot) -> None:
        if loop.is_closed():
            logger.debug("Dropping snapshot for a closed event loop")
            return
        loop.call_soon_threadsafe(callback, snapshot)
    return deliver


class LocalStoreGateway(IStoreGateway):
    """Gateway over in-process store objects."""

    def __init__(self, report_store: IReportStore, profile_store: IProfileStore, rank_calculator: IRankCalculator):
        self.report_store = report_store
        self.profile_store = profile_store
        self.rank_calculator = rank_calculator

    async def create_report(self, report: Report) -> Report:
        return await asyncio.to_thread(self.report_store.create, report)

    async def add_validation(self, report_id: str, uid: str) -> Report:
        return await asyncio.to_thread(self.report_store.add_validation, report_id, uid)

    async def update_status(self, report_id: str, status: ReportStatus) -> Report:
        return await asyncio.to_thread(self.report_store.update_status, report_id, status)

    async def ensure_profile(self, uid: str, defaults: ProfileDefaults) -> UserProfile:
        return await asyncio.to_thread(self.profile_store.ensure_profile, uid, defaults)

    async def increment_points(self, uid: str, delta: int) -> UserProfile:
        return await asyncio.to_thread(self.profile_store.increment_points, uid, delta)

    async def rank_for(self, points: int) -> int:
        return await asyncio.to_thread(self.rank_calculator.rank_for, points)

    async def subscribe_reports(self, on_change: Callable[[List[Report]], None]) -> Subscription:
        loop = asyncio.get_running_loop()
        return await asyncio.to_thread(self.report_store.subscribe, marshal_to_loop(loop, on_change))

    async def subscribe_profile(self, uid: str, on_change: Callable[[UserProfile], None]) -> Subscription:
        loop = asyncio.get_running_loop()
        return await asyncio.to_thread(self.profile_store.subscribe, uid, marshal_to_loop(loop, on_change))
