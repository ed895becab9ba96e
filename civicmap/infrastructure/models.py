from sqlalchemy import Column, String, Float, DateTime, ForeignKey, Integer, Text, Index, UniqueConstraint
from sqlalchemy.orm import relationship
from .database import Base
from datetime import datetime, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class UserProfile(Base):
    __tablename__ = "user_profiles"
    uid = Column(String(128), primary_key=True)  # identity-provider issued
    display_name = Column(String, nullable=True)
    photo_url = Column(String, nullable=True)
    points = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index('idx_user_profiles_points', 'points'),
    )


class Report(Base):
    __tablename__ = "reports"
    id = Column(String(64), primary_key=True)  # client-generated UUID
    mode = Column(String(20), nullable=False)  # problem, furniture-ok, suggestion
    type = Column(String(20), nullable=True)  # only when mode == problem
    category = Column(String(20), nullable=False)
    description = Column(Text, nullable=False)
    photo = Column(Text, nullable=True)  # data URL or http(s) URI
    lat = Column(Float, nullable=False)
    lng = Column(Float, nullable=False)
    address = Column(String, nullable=True)
    date = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    status = Column(String(20), nullable=False, default="new")
    reported_by = Column(String(128), nullable=False)
    validations = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    validated_by_rows = relationship(
        "ReportValidation",
        back_populates="report",
        cascade="all, delete-orphan",
        order_by="ReportValidation.created_at",
        lazy="selectin",
    )

    @property
    def validated_by(self) -> list:
        return [v.user_id for v in self.validated_by_rows]

    __table_args__ = (
        Index('idx_reports_date', 'date'),
    )


class ReportValidation(Base):
    """One row per (report, user) confirmation - the set behind validatedBy."""
    __tablename__ = "report_validations"
    id = Column(Integer, primary_key=True, autoincrement=True)
    report_id = Column(String(64), ForeignKey("reports.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(128), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now)

    report = relationship("Report", back_populates="validated_by_rows")

    __table_args__ = (
        UniqueConstraint('report_id', 'user_id', name='uq_report_validations_report_user'),
    )
