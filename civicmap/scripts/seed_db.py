"""
Seed script with demo reports around Lille.

Usage:
    python -m civicmap.scripts.seed_db

Writes go through the stores so ids, validations and points follow the
same rules as real submissions. Running it twice is harmless: existing
demo reports are skipped.
"""
from datetime import datetime, timedelta, timezone
import logging

from civicmap.core.config import settings
from civicmap.domain import errors
from civicmap.domain.models import (
    Location,
    ProfileDefaults,
    Report,
    ReportCategory,
    ReportMode,
    ReportStatus,
    ReportType,
)
from civicmap.domain.services.photo_service import SUGGESTION_PLACEHOLDER_PHOTO
from civicmap.domain.services.profile_store import SqlProfileStore
from civicmap.domain.services.report_store import SqlReportStore
from civicmap.domain.services.reputation_service import points_for_mode, points_for_validation
from civicmap.infrastructure import models
from civicmap.infrastructure.database import SessionLocal, engine

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

LILLE_CENTER = (50.6292, 3.0573)

DEMO_USERS = [
    {"uid": "demo-alice", "display_name": "Alice"},
    {"uid": "demo-bastien", "display_name": "Bastien"},
    {"uid": "demo-chloe", "display_name": "Chloé"},
]

DEMO_REPORTS = [
    {
        "id": "demo-broken-bench",
        "mode": ReportMode.PROBLEM,
        "type": ReportType.VANDALISM,
        "category": ReportCategory.FURNITURE,
        "description": "Broken bench, two slats missing",
        "photo": "https://images.unsplash.com/photo-1520256862855-398228c41684",
        "offset": (0.0008, -0.0012),
        "address": "Place du Général de Gaulle, Lille",
        "status": ReportStatus.IN_PROGRESS,
        "reported_by": "demo-alice",
        "age_hours": 30,
    },
    {
        "id": "demo-faded-sign",
        "mode": ReportMode.PROBLEM,
        "type": ReportType.WEAR,
        "category": ReportCategory.SIGNAGE,
        "description": "Street sign faded, name unreadable",
        "photo": "https://images.unsplash.com/photo-1517732306149-e8f829eb588a",
        "offset": (-0.0021, 0.0015),
        "address": "Rue de Béthune, Lille",
        "status": ReportStatus.NEW,
        "reported_by": "demo-bastien",
        "age_hours": 6,
    },
    {
        "id": "demo-bike-rack",
        "mode": ReportMode.FURNITURE_OK,
        "category": ReportCategory.MOBILITY,
        "description": "New bike rack in good condition",
        "photo": "https://images.unsplash.com/photo-1485965120184-e220f721d03e",
        "offset": (0.0034, 0.0027),
        "address": "Rue Faidherbe, Lille",
        "status": ReportStatus.NEW,
        "reported_by": "demo-chloe",
        "age_hours": 12,
        "validated_by": ["demo-alice", "demo-bastien"],
    },
    {
        "id": "demo-more-benches",
        "mode": ReportMode.SUGGESTION,
        "category": ReportCategory.FURNITURE,
        "description": "More benches along the Deûle riverside path would help older walkers",
        "photo": None,
        "offset": (-0.0040, -0.0031),
        "address": None,
        "status": ReportStatus.RESOLVED,
        "reported_by": "demo-alice",
        "age_hours": 72,
    },
]


def seed_db():
    models.Base.metadata.create_all(bind=engine)
    report_store = SqlReportStore(SessionLocal)
    profile_store = SqlProfileStore(SessionLocal)

    for user in DEMO_USERS:
        profile_store.ensure_profile(
            user["uid"],
            ProfileDefaults(points=settings.STARTING_POINTS, display_name=user["display_name"]),
        )

    now = datetime.now(timezone.utc)
    created = 0
    for item in DEMO_REPORTS:
        report = Report(
            id=item["id"],
            mode=item["mode"],
            type=item.get("type"),
            category=item["category"],
            description=item["description"],
            photo=item["photo"] or SUGGESTION_PLACEHOLDER_PHOTO,
            location=Location(
                lat=LILLE_CENTER[0] + item["offset"][0],
                lng=LILLE_CENTER[1] + item["offset"][1],
                address=item["address"],
            ),
            date=now - timedelta(hours=item["age_hours"]),
            reported_by=item["reported_by"],
        )
        try:
            report_store.create(report)
        except errors.StoreWriteError:
            logger.info(f"Report {report.id} already present, skipping")
            continue

        profile_store.increment_points(report.reported_by, points_for_mode(report.mode))
        if item["status"] != ReportStatus.NEW:
            report_store.update_status(report.id, item["status"])
        for uid in item.get("validated_by", []):
            report_store.add_validation(report.id, uid)
            profile_store.increment_points(uid, points_for_validation())
        created += 1

    logger.info(f"Seeded {created} reports and {len(DEMO_USERS)} profiles")


if __name__ == "__main__":
    seed_db()
