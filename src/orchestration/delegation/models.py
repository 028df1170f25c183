"""
Orchestration Data Models

Dataclasses for work requests, subtasks and executions. Each model converts
to and from the plain JSON documents kept in the document store.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class SubtaskStatus(StrEnum):
    """Subtask lifecycle states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"


class ExecutionStatus(StrEnum):
    """Aggregate execution states, ordered by lifecycle."""

    PLANNED = "planned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    @property
    def terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED)


_STATUS_RANK = {
    ExecutionStatus.PLANNED: 0,
    ExecutionStatus.IN_PROGRESS: 1,
    ExecutionStatus.COMPLETED: 2,
    ExecutionStatus.FAILED: 2,
}


@dataclass
class WorkRequest:
    """High-level request to be decomposed."""

    task_type: str
    parameters: dict[str, Any] = field(default_factory=dict)
    initiated_by: str = "unknown"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkRequest:
        task_type = data.get("task_type") or data.get("taskType")
        if not task_type:
            raise ValueError("task_type is required")
        return cls(
            task_type=str(task_type),
            parameters=dict(data.get("parameters") or {}),
            initiated_by=str(data.get("initiated_by") or data.get("initiatedBy") or "unknown"),
        )


@dataclass
class Subtask:
    """Atomic unit of delegated work with one owning agent."""

    id: str
    name: str
    type: str
    assigned_agent: str
    estimated_duration_ms: int
    required_skill: str | None = None
    min_capability_match: float = 0.5
    dependencies: set[str] = field(default_factory=set)
    status: str = SubtaskStatus.PENDING.value
    progress: int = 0
    started_at: str | None = None
    completed_at: str | None = None
    parallel_group: str | None = None

    def __post_init__(self) -> None:
        if self.estimated_duration_ms <= 0:
            raise ValueError(
                f"estimated_duration_ms must be positive, got {self.estimated_duration_ms}"
            )
        if not 0 <= self.progress <= 100:
            raise ValueError(f"progress must be in [0, 100], got {self.progress}")
        if self.status not in {s.value for s in SubtaskStatus}:
            raise ValueError(f"invalid subtask status: {self.status}")

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["dependencies"] = sorted(self.dependencies)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Subtask:
        return cls(
            id=data["id"],
            name=data["name"],
            type=data["type"],
            assigned_agent=data["assigned_agent"],
            estimated_duration_ms=int(data["estimated_duration_ms"]),
            required_skill=data.get("required_skill"),
            min_capability_match=float(data.get("min_capability_match", 0.5)),
            dependencies=set(data.get("dependencies", [])),
            status=data.get("status", SubtaskStatus.PENDING.value),
            progress=int(data.get("progress", 0)),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            parallel_group=data.get("parallel_group"),
        )


@dataclass
class Execution:
    """One run of a decomposed work request."""

    id: str
    task_type: str
    subtasks: list[Subtask]
    parallel_groups: list[set[str]]
    created_at: str
    manager: str | None = None
    status: str = ExecutionStatus.PLANNED.value
    progress: int = 0
    completed_at: str | None = None
    initiated_by: str = "unknown"
    parameters: dict[str, Any] = field(default_factory=dict)

    def get_subtask(self, subtask_id: str) -> Subtask | None:
        for subtask in self.subtasks:
            if subtask.id == subtask_id:
                return subtask
        return None

    def count_by_status(self) -> dict[str, int]:
        counts = {status.value: 0 for status in SubtaskStatus}
        for subtask in self.subtasks:
            counts[subtask.status] += 1
        return counts

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "task_type": self.task_type,
            "subtasks": [s.to_dict() for s in self.subtasks],
            "parallel_groups": [sorted(group) for group in self.parallel_groups],
            "created_at": self.created_at,
            "manager": self.manager,
            "status": self.status,
            "progress": self.progress,
            "completed_at": self.completed_at,
            "initiated_by": self.initiated_by,
            "parameters": dict(self.parameters),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Execution:
        return cls(
            id=data["id"],
            task_type=data["task_type"],
            subtasks=[Subtask.from_dict(s) for s in data.get("subtasks", [])],
            parallel_groups=[set(group) for group in data.get("parallel_groups", [])],
            created_at=data["created_at"],
            manager=data.get("manager"),
            status=data.get("status", ExecutionStatus.PLANNED.value),
            progress=int(data.get("progress", 0)),
            completed_at=data.get("completed_at"),
            initiated_by=data.get("initiated_by", "unknown"),
            parameters=dict(data.get("parameters") or {}),
        )
