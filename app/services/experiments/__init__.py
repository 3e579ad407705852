"""
Experimentation engine for assessment A/B tests.

This module provides:
- Randomized, idempotent assignment of users to the control/variant arms
- Conversion recording with per-arm counters and metric samples
- Two-proportion z-test decision making after every conversion
- An event dispatcher that hands assignment/conversion events to the analytics sink
"""

from app.services.experiments.domain import (
    Arm,
    ArmCounts,
    Assignment,
    ExperimentConfig,
    ExperimentKind,
    ExperimentSnapshot,
    ExperimentStatus,
    SignificanceResult,
)
from app.services.experiments.errors import (
    ExperimentError,
    ExperimentNotFound,
    InsufficientData,
    InvalidConfig,
)
from app.services.experiments.events import EventDispatcher, LoggingEventSink, NullEventSink
from app.services.experiments.registry import ExperimentRegistry
from app.services.experiments.service import ExperimentService, ExperimentSummary
from app.services.experiments.stats import (
    calculate_confidence_interval,
    calculate_lift,
    calculate_rate_interval,
    calculate_sample_size_requirement,
    normal_cdf,
    two_proportion_test,
)

__all__ = [
    "Arm",
    "ArmCounts",
    "Assignment",
    "ExperimentConfig",
    "ExperimentKind",
    "ExperimentSnapshot",
    "ExperimentStatus",
    "SignificanceResult",
    "ExperimentError",
    "ExperimentNotFound",
    "InsufficientData",
    "InvalidConfig",
    "EventDispatcher",
    "LoggingEventSink",
    "NullEventSink",
    "ExperimentRegistry",
    "ExperimentService",
    "ExperimentSummary",
    "calculate_confidence_interval",
    "calculate_lift",
    "calculate_rate_interval",
    "calculate_sample_size_requirement",
    "normal_cdf",
    "two_proportion_test",
]
