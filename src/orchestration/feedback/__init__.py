"""Feedback: execution telemetry, learning events, improvement suggestions."""

from orchestration.feedback.learning import LearningEventType, LearningLog
from orchestration.feedback.optimizer import ImprovementSuggestion, Optimizer
from orchestration.feedback.telemetry import (
    TelemetryAggregator,
    TelemetryRecord,
    efficiency_score,
    infer_layer,
)

__all__ = [
    "ImprovementSuggestion",
    "LearningEventType",
    "LearningLog",
    "Optimizer",
    "TelemetryAggregator",
    "TelemetryRecord",
    "efficiency_score",
    "infer_layer",
]
