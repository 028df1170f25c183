"""Reallocation Monitor - Flags subtasks running over estimate or blocked.

The monitor is a pure scan over an execution snapshot. It has no timer of
its own and never changes state; callers decide what to do with the
candidates.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from orchestration.delegation.models import Execution, SubtaskStatus, parse_timestamp

logger = logging.getLogger(__name__)

DEFAULT_DEVIATION_THRESHOLD = 0.3


@dataclass
class ReallocationCandidate:
    """A subtask that may need a different agent."""

    task_id: str
    name: str
    assigned_agent: str
    reason: str  # time_deviation | blocked
    suggestion: str
    deviation: float | None = None
    elapsed_ms: int | None = None
    estimated_ms: int | None = None


@dataclass
class ReallocationReport:
    needs_reallocation: bool
    candidates: list[ReallocationCandidate] = field(default_factory=list)
    scanned_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "needs_reallocation": self.needs_reallocation,
            "candidates": [asdict(c) for c in self.candidates],
            "scanned_at": self.scanned_at,
        }


class ReallocationMonitor:
    """Advisory scanner over execution state."""

    def __init__(self, threshold: float = DEFAULT_DEVIATION_THRESHOLD) -> None:
        if threshold < 0:
            raise ValueError(f"threshold must be >= 0, got {threshold}")
        self.threshold = threshold

    def scan(self, execution: Execution, now: datetime) -> ReallocationReport:
        candidates: list[ReallocationCandidate] = []

        for subtask in execution.subtasks:
            if subtask.status == SubtaskStatus.BLOCKED:
                candidates.append(
                    ReallocationCandidate(
                        task_id=subtask.id,
                        name=subtask.name,
                        assigned_agent=subtask.assigned_agent,
                        reason="blocked",
                        suggestion="Resolve the blocker or reassign to another agent",
                        estimated_ms=subtask.estimated_duration_ms,
                    )
                )
                continue

            if subtask.status != SubtaskStatus.IN_PROGRESS:
                continue
            try:
                started = parse_timestamp(subtask.started_at)
            except (TypeError, ValueError):
                logger.warning(
                    "Skipping %s: unreadable started_at %r", subtask.id, subtask.started_at
                )
                continue
            if started is None:
                continue

            elapsed_ms = int((now - started).total_seconds() * 1000)
            estimated = subtask.estimated_duration_ms
            deviation = (elapsed_ms - estimated) / estimated
            if deviation > self.threshold:
                candidates.append(
                    ReallocationCandidate(
                        task_id=subtask.id,
                        name=subtask.name,
                        assigned_agent=subtask.assigned_agent,
                        reason="time_deviation",
                        suggestion=(
                            f"Running {deviation:.0%} over estimate; consider splitting "
                            "the work or reassigning it"
                        ),
                        deviation=round(deviation, 3),
                        elapsed_ms=elapsed_ms,
                        estimated_ms=estimated,
                    )
                )

        candidates.sort(key=lambda c: (c.reason != "blocked", -(c.deviation or 0.0)))
        return ReallocationReport(
            needs_reallocation=bool(candidates),
            candidates=candidates,
            scanned_at=now.isoformat(),
        )
