"""Orchestrator Service - Single entry point over all coordination components.

The service owns one instance of each component, wires them together by
constructor injection, and exposes the public operations. Every operation
returns a dict: ``{"success": True, ...}`` on success, or the error's
``to_dict()`` (``{"success": False, "error": CODE, ...}``) on failure.
"""

from __future__ import annotations

import functools
import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Any, TypeVar

from orchestration.checkpoint.snapshot import FileSnapshotter, git_revision
from orchestration.checkpoint.store import CheckpointStore
from orchestration.config import Settings
from orchestration.delegation.decomposer import TaskDecomposer
from orchestration.delegation.models import WorkRequest, utc_now
from orchestration.delegation.router import CapabilityRouter
from orchestration.engine.conflict import ResourceLockManager, policy_for
from orchestration.engine.monitor import ReallocationMonitor
from orchestration.engine.tracker import ExecutionTracker
from orchestration.errors import ErrorCode, OrchestrationError
from orchestration.feedback.learning import LearningLog
from orchestration.feedback.optimizer import Optimizer
from orchestration.feedback.telemetry import TelemetryAggregator
from orchestration.storage.database import Database
from orchestration.storage.documents import (
    DocumentStore,
    MemoryDocumentStore,
    SqliteDocumentStore,
)

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., dict[str, Any]])


def _result(func: F) -> F:
    """Convert OrchestrationError (and bad input) into a structured error dict."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> dict[str, Any]:
        try:
            payload = func(*args, **kwargs)
        except OrchestrationError as exc:
            logger.debug("%s failed: %s", func.__name__, exc.code)
            return exc.to_dict()
        except (ValueError, TypeError) as exc:
            return OrchestrationError(ErrorCode.INVALID_UPDATE, str(exc)).to_dict()
        return {"success": True, **payload}

    return wrapper  # type: ignore[return-value]


class OrchestratorService:
    """
    Coordination core.

    Workflow:
    1. Decompose a work request into a subtask DAG (routing each subtask)
    2. Track subtask updates on the current execution
    3. Scan for deviating or blocked subtasks
    4. Gate shared domains with exclusive locks
    5. Snapshot execution + lock state into checkpoints
    6. Record telemetry and learning, and derive suggestions
    """

    def __init__(
        self,
        store: DocumentStore,
        settings: Settings | None = None,
        router: CapabilityRouter | None = None,
        clock: Callable[[], datetime] = utc_now,
        revision_lookup: Callable[[Path], str | None] = git_revision,
    ) -> None:
        self.settings = settings or Settings()
        self.store = store
        self.clock = clock

        self.router = router or CapabilityRouter(use_managers=self.settings.use_managers)
        self.decomposer = TaskDecomposer(self.router, clock=clock)
        self.tracker = ExecutionTracker(store, clock=clock)
        self.monitor = ReallocationMonitor(self.settings.deviation_threshold)
        self.locks = ResourceLockManager(
            store,
            policy=policy_for(self.settings.conflict_policy),
            override_roles=self.settings.override_roles,
            fifo_handoff=self.settings.fifo_handoff,
            clock=clock,
        )
        self.checkpoints = CheckpointStore(
            store,
            FileSnapshotter(
                self.settings.project_root,
                self.settings.excluded_dirs,
                self.settings.checkpoint_max_files,
            ),
            state_provider=self._orchestration_snapshot,
            retention=self.settings.checkpoint_retention,
            revision_lookup=revision_lookup,
            clock=clock,
        )
        self.telemetry = TelemetryAggregator(
            store,
            retention_days=self.settings.telemetry_retention_days,
            max_records=self.settings.telemetry_max_records,
            clock=clock,
        )
        self.learning = LearningLog(
            store,
            threshold=self.settings.validation_threshold,
            mirror_validated=self.settings.mirror_validated_events,
            clock=clock,
        )
        self.optimizer = Optimizer(
            store,
            self.telemetry,
            self.learning,
            window=self.settings.suggestion_window,
            clock=clock,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> OrchestratorService:
        """Service backed by the SQLite document store in ``settings.data_dir``."""
        return cls(SqliteDocumentStore(Database(settings.data_dir)), settings)

    @classmethod
    def in_memory(cls, settings: Settings | None = None, **kwargs: Any) -> OrchestratorService:
        return cls(MemoryDocumentStore(), settings, **kwargs)

    # -- Decomposition and tracking -------------------------------------

    @_result
    def decompose(self, request: Mapping[str, Any] | WorkRequest) -> dict[str, Any]:
        if not isinstance(request, WorkRequest):
            request = WorkRequest.from_dict(dict(request))
        decomposition = self.decomposer.decompose(request)
        self.tracker.start(decomposition.execution)
        return decomposition.to_dict()

    @_result
    def update_task(self, task_id: str, update: Mapping[str, Any]) -> dict[str, Any]:
        subtask, execution = self.tracker.update(task_id, update)
        return {
            "task": subtask.to_dict(),
            "execution_progress": execution.progress,
            "execution_status": execution.status,
        }

    @_result
    def update_manager_progress(
        self, manager_id: str, worker_updates: Sequence[Mapping[str, Any]]
    ) -> dict[str, Any]:
        return self.tracker.update_manager_progress(manager_id, worker_updates)

    @_result
    def check_reallocation(self) -> dict[str, Any]:
        report = self.monitor.scan(self.tracker.current(), self.clock())
        return report.to_dict()

    @_result
    def get_status(self) -> dict[str, Any]:
        summary = self.tracker.summary()
        summary["locks"] = self.locks.get_stats()
        return summary

    # -- Locks -----------------------------------------------------------

    @_result
    def acquire_lock(
        self,
        agent: str,
        domain: str,
        purpose: str = "",
        estimated_duration_ms: int | None = None,
    ) -> dict[str, Any]:
        lock = self.locks.acquire(agent, domain, purpose, estimated_duration_ms)
        return {"lock": asdict(lock)}

    @_result
    def release_lock(self, lock_id: str, agent: str) -> dict[str, Any]:
        return self.locks.release(lock_id, agent)

    @_result
    def check_conflicts(self, task: Mapping[str, Any], agent: str | None = None) -> dict[str, Any]:
        return self.locks.check_conflicts(task, agent).to_dict()

    @_result
    def list_locks(self) -> dict[str, Any]:
        return {
            "locks": [asdict(lock) for lock in self.locks.active_locks()],
            "queues": self.locks.snapshot()["queues"],
            "stats": self.locks.get_stats(),
        }

    # -- Checkpoints -----------------------------------------------------

    @_result
    def create_checkpoint(
        self,
        agent: str,
        trigger: str = "manual",
        ethical_clearance: bool = False,
        description: str = "",
    ) -> dict[str, Any]:
        checkpoint = self.checkpoints.create(agent, trigger, ethical_clearance, description)
        return {"checkpoint": checkpoint.summary()}

    @_result
    def list_checkpoints(self) -> dict[str, Any]:
        checkpoints = [cp.summary() for cp in self.checkpoints.list_all()]
        return {"checkpoints": checkpoints, "count": len(checkpoints)}

    @_result
    def get_checkpoint(self, checkpoint_id: str) -> dict[str, Any]:
        return {"checkpoint": self.checkpoints.get(checkpoint_id).to_dict()}

    @_result
    def compare_with_checkpoint(self, checkpoint_id: str) -> dict[str, Any]:
        return {"diff": self.checkpoints.compare(checkpoint_id).to_dict()}

    @_result
    def prepare_rollback(self, checkpoint_id: str) -> dict[str, Any]:
        return {"plan": self.checkpoints.prepare_rollback(checkpoint_id)}

    @_result
    def delete_checkpoint(self, checkpoint_id: str) -> dict[str, Any]:
        self.checkpoints.delete(checkpoint_id)
        return {"deleted": checkpoint_id}

    @_result
    def get_last_validated_checkpoint(self) -> dict[str, Any]:
        return {"checkpoint": self.checkpoints.get_last_validated().summary()}

    # -- Telemetry and learning ------------------------------------------

    @_result
    def record_execution_metrics(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        return {"record": self.telemetry.record_execution_metric(payload).to_dict()}

    @_result
    def record_learning_event(
        self,
        event_type: str,
        agent: str,
        context: str,
        insight: str,
        confidence: float = 0.5,
        sample_size: int = 1,
    ) -> dict[str, Any]:
        event = self.learning.record(event_type, agent, context, insight, confidence, sample_size)
        return {"event": event}

    @_result
    def validate_learning_event(
        self, event_id: str, validator: str, agrees: bool, notes: str = ""
    ) -> dict[str, Any]:
        return {"event": self.learning.validate(event_id, validator, agrees, notes)}

    @_result
    def generate_improvement_suggestions(self) -> dict[str, Any]:
        suggestions = [asdict(s) for s in self.optimizer.propose()]
        return {"suggestions": suggestions, "count": len(suggestions)}

    @_result
    def get_improvement_suggestions(self) -> dict[str, Any]:
        return self.optimizer.latest()

    @_result
    def generate_summary_report(self) -> dict[str, Any]:
        return {"report": self.optimizer.summary_report()}

    def _orchestration_snapshot(self) -> dict[str, Any]:
        return {"execution": self.tracker.snapshot(), "locks": self.locks.snapshot()}
