from pydantic import BaseModel, Field, ConfigDict
from pydantic.alias_generators import to_camel
from typing import Optional, List
from datetime import datetime, timezone
from enum import Enum


# ============================================================================
# ENUMS
# ============================================================================

class ReportMode(str, Enum):
    """Controls which fields a report requires."""
    PROBLEM = "problem"            # report damage
    FURNITURE_OK = "furniture-ok"  # confirm a piece of urban furniture is present and fine
    SUGGESTION = "suggestion"      # propose an improvement


class ReportType(str, Enum):
    WEAR = "wear"
    VANDALISM = "vandalism"


class ReportCategory(str, Enum):
    FURNITURE = "furniture"
    SIGNAGE = "signage"
    MOBILITY = "mobility"
    OTHER = "other"


class ReportStatus(str, Enum):
    NEW = "new"
    IN_PROGRESS = "in-progress"
    RESOLVED = "resolved"


STATUS_LABELS = {
    ReportStatus.NEW: "New",
    ReportStatus.IN_PROGRESS: "In progress",
    ReportStatus.RESOLVED: "Resolved",
}


class CamelModel(BaseModel):
    """Base model serialised with camelCase keys (reportedBy, validatedBy, ...)."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============================================================================
# BASE MODELS
# ============================================================================

class Location(CamelModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    address: Optional[str] = None


class Report(CamelModel):
    """Citizen submission as persisted by the report store"""
    id: str
    mode: ReportMode
    type: Optional[ReportType] = None  # only when mode == problem
    category: ReportCategory
    description: str
    photo: Optional[str] = None
    location: Location
    date: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    status: ReportStatus = ReportStatus.NEW
    reported_by: str
    validations: int = 0
    validated_by: List[str] = Field(default_factory=list)


class UserProfile(CamelModel):
    """Per-user record of accrued points"""
    uid: str
    display_name: Optional[str] = None
    photo_url: Optional[str] = None
    points: int = Field(0, ge=0)


class Identity(CamelModel):
    """What the identity provider tells us about the signed-in user."""
    uid: str
    display_name: Optional[str] = None
    photo_url: Optional[str] = Field(None, alias="photoURL")


# ============================================================================
# REQUEST DTOs
# ============================================================================

class ReportDraft(CamelModel):
    """
    Report being composed by a citizen.

    Only types are checked here; required fields per mode are enforced by
    submission_service.validate_draft so that a missing field is reported
    as a local ValidationError.
    """
    id: Optional[str] = None
    mode: ReportMode
    type: Optional[ReportType] = None
    category: ReportCategory = ReportCategory.OTHER
    description: str = ""
    photo: Optional[str] = None
    location: Optional[Location] = None


class StatusUpdate(CamelModel):
    status: ReportStatus


class ProfileDefaults(CamelModel):
    points: int = Field(0, ge=0)
    display_name: Optional[str] = None
    photo_url: Optional[str] = None


class ProfileCreate(CamelModel):
    display_name: Optional[str] = Field(None, max_length=100)
    photo_url: Optional[str] = Field(None, alias="photoURL")


# ============================================================================
# RESPONSE DTOs
# ============================================================================

class ReportResponse(Report):
    certified: bool = False
    validations_to_certification: Optional[int] = None

    @classmethod
    def from_report(cls, report: Report, certification_threshold: int) -> "ReportResponse":
        data = report.model_dump()
        if report.mode == ReportMode.FURNITURE_OK:
            data["certified"] = report.validations >= certification_threshold
            data["validations_to_certification"] = max(certification_threshold - report.validations, 0)
        return cls(**data)


class ReportStats(CamelModel):
    """Counters shown on the agent dashboard"""
    total: int = 0
    new: int = 0
    in_progress: int = 0
    resolved: int = 0


class ProfileResponse(CamelModel):
    uid: str
    display_name: Optional[str] = None
    photo_url: Optional[str] = Field(None, alias="photoURL")
    points: int
    level: int
    points_to_next_level: int
    rank: int


class RankResponse(CamelModel):
    points: int
    rank: int


class LeaderboardEntry(CamelModel):
    rank: int
    uid: str
    display_name: Optional[str] = None
    photo_url: Optional[str] = Field(None, alias="photoURL")
    points: int
    level: int
