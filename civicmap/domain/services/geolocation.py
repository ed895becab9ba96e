"""
Geolocation boundary: one-shot device position with a timeout.
"""
from typing import Optional
import asyncio
import logging

from ..models import Location
from .. import errors
from .interfaces import IGeolocationSource

logger = logging.getLogger(__name__)


class StaticGeolocationSource(IGeolocationSource):
    """
    Returns a fixed position (or fails with a fixed reason) after an optional delay.
    Useful for kiosks with a known position and for tests.
    """

    def __init__(
        self,
        location: Optional[Location] = None,
        error_reason: Optional[str] = None,
        delay_seconds: float = 0.0,
    ):
        self.location = location
        self.error_reason = error_reason
        self.delay_seconds = delay_seconds
        self.calls = 0

    async def request_once(self, high_accuracy: bool, timeout_ms: int) -> Location:
        self.calls += 1
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if self.error_reason is not None:
            raise errors.LocationUnavailable(self.error_reason)
        if self.location is None:
            raise errors.LocationUnavailable(errors.LocationUnavailable.UNSUPPORTED)
        return self.location


async def request_location(
    source: Optional[IGeolocationSource],
    high_accuracy: bool,
    timeout_ms: int,
) -> Location:
    """
    Ask the source once, enforcing timeout_ms ourselves.

    The first outcome wins: a position arriving after the timeout is discarded.
    Raises LocationUnavailable for every failure.
    """
    if source is None:
        raise errors.LocationUnavailable(errors.LocationUnavailable.UNSUPPORTED)
    try:
        return await asyncio.wait_for(
            source.request_once(high_accuracy=high_accuracy, timeout_ms=timeout_ms),
            timeout=timeout_ms / 1000,
        )
    except asyncio.TimeoutError:
        logger.warning(f"Geolocation timed out after {timeout_ms} ms")
        raise errors.LocationUnavailable(errors.LocationUnavailable.TIMEOUT)
    except errors.LocationUnavailable as e:
        logger.warning(f"Geolocation failed: {e.reason}")
        raise
    except Exception as e:
        logger.error(f"Geolocation source error: {e}")
        raise errors.LocationUnavailable(errors.LocationUnavailable.POSITION_UNAVAILABLE) from e
