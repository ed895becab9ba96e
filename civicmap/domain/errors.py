"""
Error taxonomy for CivicMap.

Local validation errors block a submission before any store call; store
errors wrap database faults; none of them is fatal to a session.
"""
from typing import Optional


class CivicMapError(Exception):
    """Base class for all CivicMap errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(CivicMapError):
    """A required field is missing or invalid for the chosen mode."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class AlreadyValidated(ValidationError):
    """The user already confirmed this furniture report."""

    def __init__(self, report_id: str, uid: str):
        super().__init__("You have already validated this furniture report", field="validatedBy")
        self.report_id = report_id
        self.uid = uid


class LocationUnavailable(CivicMapError):
    """Geolocation denied, timed out, unsupported, or not yet resolved."""

    PERMISSION_DENIED = "permission-denied"
    POSITION_UNAVAILABLE = "position-unavailable"
    TIMEOUT = "timeout"
    UNSUPPORTED = "unsupported"

    MESSAGES = {
        PERMISSION_DENIED: "Location access was denied.",
        POSITION_UNAVAILABLE: "Position unavailable (GPS/Wi-Fi).",
        TIMEOUT: "Location request timed out.",
        UNSUPPORTED: "Geolocation is not supported on this device.",
    }

    def __init__(self, reason: str = POSITION_UNAVAILABLE, message: Optional[str] = None):
        super().__init__(message or self.MESSAGES.get(reason, "Unable to get your location."))
        self.reason = reason


class StoreWriteError(CivicMapError):
    """A create / update / increment call failed."""


class ReportNotFound(StoreWriteError):
    def __init__(self, report_id: str):
        super().__init__(f"Report {report_id} not found")
        self.report_id = report_id


class ProfileNotFound(StoreWriteError):
    def __init__(self, uid: str):
        super().__init__(f"Profile {uid} not found")
        self.uid = uid


class StoreReadError(CivicMapError):
    """A read or subscription delivery failed."""
