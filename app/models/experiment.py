from sqlalchemy import JSON, Boolean, Column, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from app.core.database import Base


class ExperimentRecord(Base):
    """
    Persisted state of an assessment experiment.

    Mirrors ``ExperimentSnapshot``: definition, lifecycle, per-arm counters,
    metric samples and the last significance result. ``version`` is the
    engine's mutation counter and lets writers discard stale snapshots.
    """

    __tablename__ = "experiments"

    id = Column(String, primary_key=True)

    # Definition
    name = Column(String, nullable=False)
    description = Column(Text, default="")
    kind = Column(String, nullable=False)
    target_metric = Column(String, nullable=False)
    variant_configs = Column(JSON)  # {"control": {...}, "variant": {...}}

    # Decision parameters
    min_sample_size = Column(Integer, nullable=False)
    significance_threshold = Column(Float, nullable=False)
    confidence_level = Column(Float, nullable=False)

    # Timeline
    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True))

    # Lifecycle
    status = Column(String, nullable=False)
    winner = Column(String)

    # Counters
    control_exposed = Column(Integer, nullable=False, default=0)
    control_converted = Column(Integer, nullable=False, default=0)
    variant_exposed = Column(Integer, nullable=False, default=0)
    variant_converted = Column(Integer, nullable=False, default=0)

    metric_samples = Column(JSON)  # {"control": {"score": [..]}, "variant": {...}}
    significance = Column(JSON)  # {"z_score", "p_value", "confidence_interval", "is_significant"}
    late_events = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    assignments = relationship(
        "AssignmentRecord", back_populates="experiment", cascade="all, delete-orphan"
    )


class AssignmentRecord(Base):
    """One user's arm in one experiment. The arm never changes once written."""

    __tablename__ = "experiment_assignments"

    experiment_id = Column(String, ForeignKey("experiments.id"), primary_key=True)
    user_id = Column(String, primary_key=True)

    arm = Column(String, nullable=False)  # "control" or "variant"
    session_id = Column(String)
    converted = Column(Boolean, nullable=False, default=False)
    assigned_at = Column(DateTime(timezone=True), nullable=False)

    experiment = relationship("ExperimentRecord", back_populates="assignments")
