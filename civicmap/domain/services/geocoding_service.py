"""
Reverse geocoding for report locations (Nominatim with caching).

Used to fill a human-readable address when the client did not send one.
Lookups never block a submission: any failure yields None.
"""
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple
import logging

import httpx

from ...core.config import settings

logger = logging.getLogger(__name__)

# Simple in-memory cache for reverse geocoding results
_reverse_cache: Dict[Tuple[float, float], Tuple[Optional[str], datetime]] = {}
CACHE_TTL_MINUTES = 30


def _prune_cache(now: datetime) -> None:
    """Drop entries older than the TTL."""
    ttl = timedelta(minutes=CACHE_TTL_MINUTES)
    for key in [k for k, (_, cached_time) in _reverse_cache.items() if now - cached_time >= ttl]:
        del _reverse_cache[key]


def format_address(result: Dict) -> Optional[str]:
    """Short address: road, suburb, city."""
    addr = result.get("address", {})
    parts = []

    road = addr.get("road") or addr.get("pedestrian") or addr.get("footway")
    if road:
        if addr.get("house_number"):
            road = f"{addr['house_number']} {road}"
        parts.append(road)
    if addr.get("suburb") or addr.get("neighbourhood"):
        parts.append(addr.get("suburb") or addr.get("neighbourhood"))
    city = addr.get("city") or addr.get("town") or addr.get("village")
    if city:
        parts.append(city)

    if parts:
        return ", ".join(parts)
    return result.get("display_name") or None


class ReverseGeocoder:
    """Coordinates -> address via Nominatim /reverse."""

    def __init__(self, base_url: Optional[str] = None, enabled: Optional[bool] = None):
        self.base_url = (base_url or settings.NOMINATIM_URL).rstrip("/")
        self.enabled = settings.GEOCODING_ENABLED if enabled is None else enabled
        self.timeout = 10.0  # seconds

    async def lookup(self, lat: float, lng: float) -> Optional[str]:
        if not self.enabled:
            return None

        cache_key = (round(lat, 5), round(lng, 5))
        _prune_cache(datetime.now(timezone.utc))
        if cache_key in _reverse_cache:
            return _reverse_cache[cache_key][0]

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(
                    f"{self.base_url}/reverse",
                    params={
                        "lat": lat,
                        "lon": lng,
                        "format": "json",
                        "addressdetails": 1,
                        "zoom": 18,
                    },
                    headers={
                        "User-Agent": "CivicMap/0.1 (citizen reporting)"
                    }
                )
                response.raise_for_status()
                address = format_address(response.json())
        except httpx.HTTPStatusError as e:
            logger.warning(f"Nominatim returned error {e.response.status_code} for ({lat}, {lng})")
            return None
        except httpx.TimeoutException:
            logger.warning(f"Nominatim reverse lookup timed out after {self.timeout}s")
            return None
        except Exception as e:
            logger.error(f"Nominatim reverse lookup failed: {e}")
            return None

        _reverse_cache[cache_key] = (address, datetime.now(timezone.utc))
        return address


def clear_cache() -> None:
    _reverse_cache.clear()
