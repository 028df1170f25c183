"""Execution Tracker - Owns the current execution and its subtask state."""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable, Mapping, Sequence
from datetime import datetime
from typing import Any

from orchestration.delegation.models import (
    Execution,
    ExecutionStatus,
    Subtask,
    SubtaskStatus,
    parse_timestamp,
    utc_now,
)
from orchestration.errors import ErrorCode, OrchestrationError
from orchestration.storage.documents import DocumentStore

logger = logging.getLogger(__name__)

EXECUTION_KEY = "execution/current"

UPDATABLE_FIELDS = frozenset({"status", "progress", "assigned_agent", "started_at"})


def coarse_progress(subtasks: Sequence[Subtask]) -> int:
    """Share of completed subtasks, 0-100."""
    if not subtasks:
        return 0
    completed = sum(1 for s in subtasks if s.status == SubtaskStatus.COMPLETED)
    return round(100 * completed / len(subtasks))


def weighted_progress(subtasks: Sequence[Subtask]) -> int:
    """Completed subtasks count 100, in-progress ones their reported progress."""
    if not subtasks:
        return 0
    total = 0
    for subtask in subtasks:
        if subtask.status == SubtaskStatus.COMPLETED:
            total += 100
        elif subtask.status == SubtaskStatus.IN_PROGRESS:
            total += subtask.progress
    return round(total / len(subtasks))


def derive_status(subtasks: Sequence[Subtask]) -> ExecutionStatus:
    statuses = [s.status for s in subtasks]
    if statuses and all(s == SubtaskStatus.COMPLETED for s in statuses):
        return ExecutionStatus.COMPLETED
    if any(s == SubtaskStatus.FAILED for s in statuses):
        return ExecutionStatus.FAILED
    if any(s == SubtaskStatus.IN_PROGRESS for s in statuses):
        return ExecutionStatus.IN_PROGRESS
    return ExecutionStatus.PLANNED


class ExecutionTracker:
    """
    Holds exactly one current execution, persisted under a single key.

    Each mutation is a read-modify-write inside a store transaction and
    writes the whole execution record back, so readers always see a complete
    record. Aggregate status never moves backwards, and once the execution
    is completed or failed its subtasks can no longer be updated.
    """

    def __init__(self, store: DocumentStore, clock: Callable[[], datetime] = utc_now) -> None:
        self.store = store
        self.clock = clock

    def start(self, execution: Execution) -> Execution:
        """Make ``execution`` the current one, replacing any previous execution."""
        with self.store.transaction():
            previous = self._load()
            if previous is not None and not ExecutionStatus(previous.status).terminal:
                logger.warning(
                    "Replacing unfinished execution %s (%s)", previous.id, previous.status
                )
            self._save(execution)
        logger.info("Execution %s started (%s)", execution.id, execution.task_type)
        return copy.deepcopy(execution)

    def current(self) -> Execution:
        return self._require()

    def snapshot(self) -> dict[str, Any] | None:
        """Current execution as a document, or None."""
        execution = self._load()
        return execution.to_dict() if execution else None

    def update(self, subtask_id: str, fields: Mapping[str, Any]) -> tuple[Subtask, Execution]:
        """Merge ``fields`` into one subtask and recompute aggregate state.

        Returns the updated subtask and execution.
        """
        with self.store.transaction():
            execution = self._require_open()
            subtask = self._require_subtask(execution, subtask_id)
            self._apply(subtask, fields)
            execution.progress = coarse_progress(execution.subtasks)
            self._advance_status(execution)
            self._save(execution)
        return subtask, execution

    def update_manager_progress(
        self, manager_id: str, worker_updates: Sequence[Mapping[str, Any]]
    ) -> dict[str, Any]:
        """Apply a batch of worker updates reported by the execution's manager.

        All updates are validated before any is applied.
        """
        if isinstance(worker_updates, (str, bytes, Mapping)) or not isinstance(
            worker_updates, Sequence
        ):
            raise OrchestrationError(
                ErrorCode.INVALID_UPDATE, "worker updates must be a list of mappings"
            )

        with self.store.transaction():
            execution = self._require()
            if execution.manager != manager_id:
                raise OrchestrationError(
                    ErrorCode.MANAGER_MISMATCH,
                    f"Manager {manager_id} does not own execution {execution.id}",
                    manager_id=manager_id,
                    expected_manager=execution.manager,
                )
            self._check_open(execution)

            for index, update in enumerate(worker_updates):
                if not isinstance(update, Mapping):
                    raise OrchestrationError(
                        ErrorCode.INVALID_UPDATE,
                        f"worker update {index} must be a mapping, got {type(update).__name__}",
                        index=index,
                    )
                task_id = update.get("task_id") or update.get("taskId")
                if not task_id:
                    raise OrchestrationError(
                        ErrorCode.INVALID_UPDATE,
                        f"worker update {index} is missing task_id",
                        index=index,
                    )
                subtask = self._require_subtask(execution, str(task_id))
                self._apply(
                    subtask, {k: v for k, v in update.items() if k not in ("task_id", "taskId")}
                )

            execution.progress = weighted_progress(execution.subtasks)
            self._advance_status(execution)
            self._save(execution)

        return {
            "manager_progress": execution.progress,
            "execution_status": execution.status,
            "updated_tasks_count": len(worker_updates),
            "breakdown": {**execution.count_by_status(), "total": len(execution.subtasks)},
        }

    def summary(self) -> dict[str, Any]:
        execution = self._require()
        return {
            "execution_id": execution.id,
            "task_type": execution.task_type,
            "status": execution.status,
            "progress": execution.progress,
            "manager": execution.manager,
            "created_at": execution.created_at,
            "completed_at": execution.completed_at,
            "counts": execution.count_by_status(),
            "subtasks": [
                {
                    "id": s.id,
                    "name": s.name,
                    "assigned_agent": s.assigned_agent,
                    "status": s.status,
                    "progress": s.progress,
                }
                for s in execution.subtasks
            ],
        }

    def _apply(self, subtask: Subtask, fields: Mapping[str, Any]) -> None:
        if not isinstance(fields, Mapping):
            raise OrchestrationError(
                ErrorCode.INVALID_UPDATE, "update must be a mapping of fields", task_id=subtask.id
            )
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise OrchestrationError(
                ErrorCode.INVALID_UPDATE,
                f"Cannot update field(s): {', '.join(sorted(unknown))}",
                task_id=subtask.id,
            )

        if "status" in fields:
            status = str(fields["status"])
            if status not in {s.value for s in SubtaskStatus}:
                raise OrchestrationError(
                    ErrorCode.INVALID_UPDATE, f"Invalid status: {status}", task_id=subtask.id
                )
            subtask.status = status

        if "progress" in fields:
            try:
                progress = int(fields["progress"])
            except (TypeError, ValueError) as exc:
                raise OrchestrationError(
                    ErrorCode.INVALID_UPDATE,
                    f"Invalid progress: {fields['progress']!r}",
                    task_id=subtask.id,
                ) from exc
            subtask.progress = min(100, max(0, progress))

        if "assigned_agent" in fields:
            subtask.assigned_agent = str(fields["assigned_agent"])
        if "started_at" in fields:
            subtask.started_at = _timestamp_field(fields["started_at"], subtask.id)

        now = self.clock().isoformat()
        if subtask.status == SubtaskStatus.IN_PROGRESS and subtask.started_at is None:
            subtask.started_at = now
        if subtask.status == SubtaskStatus.COMPLETED:
            subtask.progress = 100
            subtask.completed_at = subtask.completed_at or now

    def _advance_status(self, execution: Execution) -> None:
        current = ExecutionStatus(execution.status)
        if current.terminal:
            return
        derived = derive_status(execution.subtasks)
        if derived.rank < current.rank:
            return
        if derived != current:
            logger.info("Execution %s: %s -> %s", execution.id, current, derived)
        execution.status = derived.value
        if derived.terminal:
            execution.completed_at = self.clock().isoformat()

    def _require_open(self) -> Execution:
        execution = self._require()
        self._check_open(execution)
        return execution

    @staticmethod
    def _check_open(execution: Execution) -> None:
        if ExecutionStatus(execution.status).terminal:
            raise OrchestrationError(
                ErrorCode.INVALID_UPDATE,
                f"Execution {execution.id} is {execution.status}; decompose a new request "
                "to continue",
                execution_id=execution.id,
                execution_status=execution.status,
            )

    def _require(self) -> Execution:
        execution = self._load()
        if execution is None:
            raise OrchestrationError(ErrorCode.NO_ACTIVE_EXECUTION, "No active execution")
        return execution

    @staticmethod
    def _require_subtask(execution: Execution, subtask_id: str) -> Subtask:
        subtask = execution.get_subtask(subtask_id)
        if subtask is None:
            raise OrchestrationError(
                ErrorCode.TASK_NOT_FOUND,
                f"Task {subtask_id} not found in execution {execution.id}",
                task_id=subtask_id,
                execution_id=execution.id,
            )
        return subtask

    def _load(self) -> Execution | None:
        data = self.store.read(EXECUTION_KEY)
        if not data:
            return None
        try:
            return Execution.from_dict(data)
        except (KeyError, TypeError, ValueError):
            logger.warning("Corrupt execution record, treating as no active execution")
            return None

    def _save(self, execution: Execution) -> None:
        self.store.write(EXECUTION_KEY, execution.to_dict())


def _timestamp_field(value: Any, subtask_id: str) -> str | None:
    """Normalize a caller-supplied ISO-8601 timestamp; None clears it."""
    if value is None:
        return None
    try:
        parsed = parse_timestamp(value) if isinstance(value, str) else None
    except ValueError:
        parsed = None
    if parsed is None:
        raise OrchestrationError(
            ErrorCode.INVALID_UPDATE,
            f"Invalid started_at: {value!r} (expected an ISO-8601 timestamp)",
            task_id=subtask_id,
        )
    return parsed.isoformat()
