"""
Report Store - durable collection of citizen reports.

Backed by SQLAlchemy. Every committed write publishes the full ordered
report list on the change feed so subscribers can replace their state.
"""
from datetime import timezone
from typing import Callable, List, Optional
import logging
import threading

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..models import (
    Location,
    Report,
    ReportCategory,
    ReportMode,
    ReportStats,
    ReportStatus,
)
from .. import errors
from .change_feed import ChangeFeed
from .interfaces import IReportStore, Subscription
from ...infrastructure import models

logger = logging.getLogger(__name__)

REPORTS_TOPIC = "reports"


def to_domain(row: models.Report) -> Report:
    """Map an ORM row (flattened lat/lng) to the domain Report."""
    date = row.date
    if date is not None and date.tzinfo is None:
        # SQLite drops tzinfo; everything is stored in UTC
        date = date.replace(tzinfo=timezone.utc)
    return Report(
        id=row.id,
        mode=ReportMode(row.mode),
        type=row.type,
        category=ReportCategory(row.category),
        description=row.description,
        photo=row.photo,
        location=Location(lat=row.lat, lng=row.lng, address=row.address),
        date=date,
        status=ReportStatus(row.status),
        reported_by=row.reported_by,
        validations=row.validations or 0,
        validated_by=row.validated_by,
    )


def check_required_fields(report: Report) -> None:
    """
    Store-side guard: required fields per mode.
    The store never drops or strips fields, so a type on a non-problem report is refused.
    """
    if not report.description or not report.description.strip():
        raise errors.ValidationError("A description is required", field="description")
    if report.location is None:
        raise errors.ValidationError("A location is required", field="location")
    if report.mode != ReportMode.SUGGESTION and not report.photo:
        raise errors.ValidationError("A photo is required for this kind of report", field="photo")
    if report.type is not None and report.mode != ReportMode.PROBLEM:
        raise errors.ValidationError("Only problem reports carry a type", field="type")


class SqlReportStore(IReportStore):
    """
    Report store over a SQLAlchemy session factory.

    Each operation runs in its own short-lived session so the store can be
    shared between request handlers and worker threads.
    """

    def __init__(self, session_factory: sessionmaker, feed: Optional[ChangeFeed] = None):
        self.session_factory = session_factory
        self.feed = feed or ChangeFeed()
        # Held while reading and pushing a snapshot: deliveries follow commit order
        self._publish_lock = threading.RLock()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def _query_reports(
        self,
        db: Session,
        status: Optional[ReportStatus] = None,
        category: Optional[ReportCategory] = None,
        mode: Optional[ReportMode] = None,
    ) -> List[models.Report]:
        query = db.query(models.Report)
        if status is not None:
            query = query.filter(models.Report.status == status.value)
        if category is not None:
            query = query.filter(models.Report.category == category.value)
        if mode is not None:
            query = query.filter(models.Report.mode == mode.value)
        return query.order_by(models.Report.date.desc(), models.Report.id.desc()).all()

    def list_reports(
        self,
        status: Optional[ReportStatus] = None,
        category: Optional[ReportCategory] = None,
        mode: Optional[ReportMode] = None,
    ) -> List[Report]:
        """All reports, newest first, optionally filtered."""
        db = self.session_factory()
        try:
            return [to_domain(r) for r in self._query_reports(db, status, category, mode)]
        except SQLAlchemyError as e:
            logger.error(f"Error listing reports: {e}")
            raise errors.StoreReadError("Failed to list reports") from e
        finally:
            db.close()

    def get(self, report_id: str) -> Report:
        db = self.session_factory()
        try:
            row = db.get(models.Report, report_id)
            if row is None:
                raise errors.ReportNotFound(report_id)
            return to_domain(row)
        except SQLAlchemyError as e:
            logger.error(f"Error reading report {report_id}: {e}")
            raise errors.StoreReadError(f"Failed to read report {report_id}") from e
        finally:
            db.close()

    def stats(self) -> ReportStats:
        """Report counts by status."""
        db = self.session_factory()
        try:
            rows = db.query(models.Report.status, func.count(models.Report.id)).group_by(models.Report.status).all()
        except SQLAlchemyError as e:
            logger.error(f"Error computing report stats: {e}")
            raise errors.StoreReadError("Failed to compute report stats") from e
        finally:
            db.close()

        counts = {status: count for status, count in rows}
        return ReportStats(
            total=sum(counts.values()),
            new=counts.get(ReportStatus.NEW.value, 0),
            in_progress=counts.get(ReportStatus.IN_PROGRESS.value, 0),
            resolved=counts.get(ReportStatus.RESOLVED.value, 0),
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def create(self, report: Report) -> Report:
        """Persist a new report keyed by its id. Never overwrites an existing id."""
        check_required_fields(report)

        db = self.session_factory()
        try:
            if db.get(models.Report, report.id) is not None:
                raise errors.StoreWriteError(f"Report {report.id} already exists")

            row = models.Report(
                id=report.id,
                mode=report.mode.value,
                type=report.type.value if report.type is not None else None,
                category=report.category.value,
                description=report.description,
                photo=report.photo,
                lat=report.location.lat,
                lng=report.location.lng,
                address=report.location.address,
                date=report.date,
                status=report.status.value,
                reported_by=report.reported_by,
                validations=0,
            )
            db.add(row)
            db.commit()
            db.refresh(row)
            created = to_domain(row)
        except IntegrityError as e:
            db.rollback()
            logger.error(f"Report {report.id} rejected by database: {e}")
            raise errors.StoreWriteError(f"Report {report.id} already exists") from e
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Error creating report {report.id}: {e}")
            raise errors.StoreWriteError("Failed to save report") from e
        finally:
            db.close()

        logger.info(f"Report created: {created.id} ({created.mode.value}) by {created.reported_by}")
        self._publish()
        return created

    def update_status(self, report_id: str, status: ReportStatus) -> Report:
        """Any status is reachable from any other."""
        db = self.session_factory()
        try:
            result = db.execute(
                update(models.Report)
                .where(models.Report.id == report_id)
                .values(status=status.value)
            )
            if result.rowcount == 0:
                db.rollback()
                raise errors.ReportNotFound(report_id)
            db.commit()
            updated = to_domain(db.get(models.Report, report_id))
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Error updating status of report {report_id}: {e}")
            raise errors.StoreWriteError("Failed to update report status") from e
        finally:
            db.close()

        logger.info(f"Report {report_id} status changed to {status.value}")
        self._publish()
        return updated

    def add_validation(self, report_id: str, uid: str) -> Report:
        """
        Append uid to validatedBy and bump validations in one transaction.

        The (report_id, user_id) unique constraint makes the append set-like under
        concurrent calls, and the counter is an in-database increment, so
        validations always equals len(validatedBy).
        """
        db = self.session_factory()
        try:
            row = db.get(models.Report, report_id)
            if row is None:
                raise errors.ReportNotFound(report_id)
            if row.mode != ReportMode.FURNITURE_OK.value:
                raise errors.ValidationError("Only furniture reports can be validated", field="mode")

            db.add(models.ReportValidation(report_id=report_id, user_id=uid))
            try:
                db.flush()
            except IntegrityError:
                db.rollback()
                raise errors.AlreadyValidated(report_id, uid)

            db.execute(
                update(models.Report)
                .where(models.Report.id == report_id)
                .values(validations=models.Report.validations + 1)
            )
            db.commit()
            db.expire_all()
            updated = to_domain(db.get(models.Report, report_id))
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Error validating report {report_id}: {e}")
            raise errors.StoreWriteError("Failed to record validation") from e
        finally:
            db.close()

        logger.info(f"Report {report_id} validated by {uid} ({updated.validations} validations)")
        self._publish()
        return updated

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------
    def subscribe(self, on_change: Callable[[List[Report]], None]) -> Subscription:
        """
        Register a listener for the full ordered list.
        The current list is delivered immediately; raises StoreReadError if it cannot be read.
        """
        with self._publish_lock:
            subscription = self.feed.subscribe(REPORTS_TOPIC, on_change)
            try:
                snapshot = self.list_reports()
            except errors.StoreReadError:
                subscription.unsubscribe()
                raise
            self.feed.deliver(on_change, REPORTS_TOPIC, snapshot)
        return subscription

    def _publish(self) -> None:
        if not self.feed.has_listeners(REPORTS_TOPIC):
            return
        with self._publish_lock:
            try:
                snapshot = self.list_reports()
            except errors.StoreReadError as e:
                logger.error(f"Could not publish reports snapshot: {e}")
                return
            self.feed.publish(REPORTS_TOPIC, snapshot)
