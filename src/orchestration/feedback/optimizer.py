"""Improvement suggestions and summary reports.

Scans recent telemetry for recurring error-prone task types, conflict
clusters and low efficiency, and turns validated learning events into
targeted suggestions. Suggestions are ranked critical > high > medium > low
and the last generated set is persisted. Nothing here changes routing or
locking on its own; applying a suggestion is a manual step.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Callable, Sequence
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from orchestration.delegation.models import utc_now
from orchestration.feedback.learning import LearningEventType, LearningLog
from orchestration.feedback.telemetry import TelemetryAggregator
from orchestration.storage.documents import DocumentStore

logger = logging.getLogger(__name__)

SUGGESTIONS_KEY = "telemetry/suggestions"

PRIORITY_ORDER = {"critical": 0, "high": 1, "medium": 2, "low": 3}

DEFAULT_WINDOW = 100
MIN_ERROR_SAMPLES = 5  # erroring records needed before looking for a dominant task type
MIN_TYPE_OCCURRENCES = 3
MIN_CONFLICT_RECORDS = 3
LOW_EFFICIENCY = 0.7

# Validated learning event kind -> (suggestion type, priority, action)
LEARNING_SUGGESTIONS: dict[str, tuple[str, str, str]] = {
    LearningEventType.ANTI_PATTERN.value: (
        "avoid_anti_pattern",
        "critical",
        "Add a review gate that rejects this pattern",
    ),
    LearningEventType.SKILL_GAP.value: (
        "routing_update",
        "high",
        "Route affected subtasks to an agent with the missing skill",
    ),
    LearningEventType.CONFLICT_RESOLUTION.value: (
        "locking_update",
        "medium",
        "Adopt the resolution as the default for this domain",
    ),
    LearningEventType.PERFORMANCE_INSIGHT.value: (
        "performance",
        "medium",
        "Apply the insight to the matching task template",
    ),
    LearningEventType.BEST_PRACTICE.value: (
        "best_practice",
        "low",
        "Document the practice in agent instructions",
    ),
}


@dataclass
class ImprovementSuggestion:
    """A ranked, actionable suggestion."""

    type: str
    priority: str
    title: str
    action: str
    evidence: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.priority not in PRIORITY_ORDER:
            raise ValueError(f"invalid priority: {self.priority}")


def rank(suggestions: Sequence[ImprovementSuggestion]) -> list[ImprovementSuggestion]:
    return sorted(suggestions, key=lambda s: PRIORITY_ORDER[s.priority])


class Optimizer:
    """Turns telemetry and validated learning into improvement suggestions."""

    def __init__(
        self,
        store: DocumentStore,
        telemetry: TelemetryAggregator,
        learning: LearningLog,
        window: int = DEFAULT_WINDOW,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.telemetry = telemetry
        self.learning = learning
        self.window = window
        self.clock = clock

    def propose(self) -> list[ImprovementSuggestion]:
        """Generate, rank and persist suggestions from the most recent records."""
        records = self.telemetry.recent(self.window)
        suggestions: list[ImprovementSuggestion] = []
        suggestions.extend(self._error_prone(records))
        suggestions.extend(self._conflict_cluster(records))
        suggestions.extend(self._low_efficiency(records))
        suggestions.extend(self._from_learning())

        ranked = rank(suggestions)
        self.store.write(
            SUGGESTIONS_KEY,
            {
                "generated_at": self.clock().isoformat(),
                "records_analyzed": len(records),
                "suggestions": [asdict(s) for s in ranked],
            },
        )
        logger.info("Generated %d suggestion(s) from %d record(s)", len(ranked), len(records))
        return ranked

    def latest(self) -> dict[str, Any]:
        """Last persisted suggestion set, or an empty one."""
        data = self.store.read(SUGGESTIONS_KEY)
        if not isinstance(data, dict):
            return {"generated_at": None, "records_analyzed": 0, "suggestions": []}
        return data

    def summary_report(self) -> dict[str, Any]:
        records = self.telemetry.recent()
        aggregates = self.telemetry.aggregates()
        total = len(records)
        successes = sum(1 for r in records if r["success"])
        mean_eff = sum(r["efficiency_score"] for r in records) / total if total else 0.0
        timestamps = sorted(r["timestamp"] for r in records)

        events = self.learning.events()
        validated = self.learning.validated_events()
        task_types = sorted(
            aggregates["by_task_type"].items(), key=lambda item: item[1]["count"], reverse=True
        )

        return {
            "generated_at": self.clock().isoformat(),
            "period": {
                "from": timestamps[0] if timestamps else None,
                "to": timestamps[-1] if timestamps else None,
            },
            "executions": {
                "total": total,
                "successful": successes,
                "success_rate": round(successes / total, 3) if total else 0.0,
                "mean_efficiency": round(mean_eff, 3),
                "total_errors": sum(r["error_count"] for r in records),
                "total_conflicts": sum(r["conflict_count"] for r in records),
            },
            "top_task_types": [
                {"task_type": name, **_rounded(bucket)} for name, bucket in task_types[:5]
            ],
            "agents": {name: _rounded(b) for name, b in sorted(aggregates["by_agent"].items())},
            "layers": {name: _rounded(b) for name, b in sorted(aggregates["by_layer"].items())},
            "learning": {
                "total_events": len(events),
                "validated_events": len(validated),
                "pending_validation": sum(1 for e in events if not e["validated"]),
            },
            "suggestions": len(self.latest()["suggestions"]),
        }

    def _error_prone(self, records: Sequence[dict[str, Any]]) -> list[ImprovementSuggestion]:
        erroring = [r for r in records if r["error_count"] > 0]
        if len(erroring) <= MIN_ERROR_SAMPLES:
            return []
        counts = Counter(r["task_type"] for r in erroring)
        return [
            ImprovementSuggestion(
                type="error_reduction",
                priority="high",
                title=f"Recurring errors in {task_type}",
                action="Add validation steps to the template or reassign its subtasks",
                evidence={"task_type": task_type, "occurrences": n, "sample": len(erroring)},
            )
            for task_type, n in counts.most_common()
            if n > MIN_TYPE_OCCURRENCES
        ]

    def _conflict_cluster(self, records: Sequence[dict[str, Any]]) -> list[ImprovementSuggestion]:
        conflicting = [r for r in records if r["conflict_count"] > 0]
        if len(conflicting) <= MIN_CONFLICT_RECORDS:
            return []
        task_types = Counter(r["task_type"] for r in conflicting)
        return [
            ImprovementSuggestion(
                type="conflict_reduction",
                priority="high",
                title="Frequent resource conflicts between agents",
                action="Serialize the affected task types or switch to the strict lock policy",
                evidence={
                    "conflicting_tasks": len(conflicting),
                    "total_conflicts": sum(r["conflict_count"] for r in conflicting),
                    "task_types": dict(task_types.most_common()),
                },
            )
        ]

    def _low_efficiency(self, records: Sequence[dict[str, Any]]) -> list[ImprovementSuggestion]:
        if not records:
            return []
        mean = sum(r["efficiency_score"] for r in records) / len(records)
        if mean >= LOW_EFFICIENCY:
            return []
        return [
            ImprovementSuggestion(
                type="efficiency",
                priority="medium",
                title=f"Mean efficiency {mean:.2f} is below {LOW_EFFICIENCY}",
                action="Review failing executions and increase safe parallelism",
                evidence={"mean_efficiency": round(mean, 3), "sample": len(records)},
            )
        ]

    def _from_learning(self) -> list[ImprovementSuggestion]:
        suggestions = []
        for event in self.learning.validated_events():
            mapping = LEARNING_SUGGESTIONS.get(event["type"])
            if mapping is None:
                continue
            suggestion_type, priority, action = mapping
            suggestions.append(
                ImprovementSuggestion(
                    type=suggestion_type,
                    priority=priority,
                    title=event["insight"],
                    action=action,
                    evidence={
                        "event_id": event["id"],
                        "agent": event["agent"],
                        "context": event["context"],
                        "confidence": event["confidence"],
                    },
                )
            )
        return suggestions


def _rounded(bucket: dict[str, Any]) -> dict[str, Any]:
    return {
        **bucket,
        "mean_efficiency": round(bucket["mean_efficiency"], 3),
        "mean_duration_ms": round(bucket["mean_duration_ms"], 1),
    }
