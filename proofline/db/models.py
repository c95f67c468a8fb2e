"""
SQLAlchemy ORM models for the Proofline database.
"""
from datetime import datetime, timezone
from sqlalchemy import (
    Column, String, Integer, DateTime, Text, ForeignKey,
    Enum as SQLEnum, Boolean, JSON, Index, UniqueConstraint
)
from sqlalchemy.orm import relationship
import uuid

from proofline.db.database import Base
from proofline.models.schemas import AnalyticsEventType, BakeStatus, StepStatus


class Bake(Base):
    """One run of a recipe, owning an ordered timeline of steps."""
    __tablename__ = "bakes"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(255), nullable=False, default="")
    status = Column(SQLEnum(BakeStatus), default=BakeStatus.ACTIVE, nullable=False, index=True)
    paused_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    # Relationships
    steps = relationship(
        "TimelineStep",
        back_populates="bake",
        cascade="all, delete-orphan",
        order_by="TimelineStep.step_index",
    )


class TimelineStep(Base):
    """A scheduled step of a bake's timeline."""
    __tablename__ = "timeline_steps"
    __table_args__ = (
        # Step ids are only unique within their bake
        UniqueConstraint('bake_id', 'step_id', name='uq_timeline_steps_bake_step'),
        UniqueConstraint('bake_id', 'step_index', name='uq_timeline_steps_bake_index'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    bake_id = Column(String(36), ForeignKey("bakes.id"), nullable=False, index=True)
    step_id = Column(String(64), nullable=False)
    step_index = Column(Integer, nullable=False)
    name = Column(String(255), nullable=False)
    instructions = Column(Text, nullable=False, default="")
    status = Column(SQLEnum(StepStatus), default=StepStatus.PENDING, nullable=False)
    scheduled_start = Column(DateTime(timezone=True), nullable=False)
    scheduled_end = Column(DateTime(timezone=True), nullable=False)
    estimated_duration_minutes = Column(Integer, nullable=False)
    actual_duration_minutes = Column(Integer, nullable=True)
    is_adaptive = Column(Boolean, default=False, nullable=False)
    is_overnight = Column(Boolean, default=False, nullable=False)
    can_overlap = Column(Boolean, default=False, nullable=False)
    adaptive_check_interval_minutes = Column(Integer, nullable=False, default=30)
    ended_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    bake = relationship("Bake", back_populates="steps")


class AnalyticsEventRecord(Base):
    """A timeline event captured by the analytics sink."""
    __tablename__ = "analytics_events"
    __table_args__ = (
        # Composite index for reading a bake's events in order
        Index('ix_analytics_events_bake_id_timestamp', 'bake_id', 'timestamp'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    # No foreign key: analytics outlive deleted bakes
    bake_id = Column(String(36), nullable=False)
    step_id = Column(String(64), nullable=True)
    event_type = Column(SQLEnum(AnalyticsEventType), nullable=False, index=True)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    properties = Column(JSON, nullable=False, default=dict)
