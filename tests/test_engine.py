"""Tests for the coordination engine: tracker, monitor and domain locks."""

from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from orchestration.delegation import CapabilityRouter, TaskDecomposer, WorkRequest
from orchestration.delegation.models import Execution
from orchestration.engine import (
    AdvisoryConflictPolicy,
    ExecutionTracker,
    ReallocationMonitor,
    ResourceLockManager,
    StrictConflictPolicy,
    coarse_progress,
    policy_for,
    target_domains,
)
from orchestration.errors import ErrorCode, LockHeldError, OrchestrationError
from orchestration.storage.documents import MemoryDocumentStore

from conftest import FakeClock


def _execution(clock: FakeClock, task_type: str = "service_build") -> Execution:
    decomposer = TaskDecomposer(CapabilityRouter(), clock=clock)
    return decomposer.decompose(WorkRequest(task_type, {"service_name": "Auth"})).execution


@pytest.fixture
def tracker(store: MemoryDocumentStore, clock: FakeClock) -> ExecutionTracker:
    tracker = ExecutionTracker(store, clock=clock)
    tracker.start(_execution(clock))
    return tracker


class TestExecutionTracker:
    """Tests for ExecutionTracker."""

    def test_no_active_execution(self, store: MemoryDocumentStore) -> None:
        tracker = ExecutionTracker(store)
        with pytest.raises(OrchestrationError) as exc_info:
            tracker.update("t1", {"status": "in_progress"})
        assert exc_info.value.code == ErrorCode.NO_ACTIVE_EXECUTION
        assert tracker.snapshot() is None

    def test_unknown_task(self, tracker: ExecutionTracker) -> None:
        with pytest.raises(OrchestrationError) as exc_info:
            tracker.update("t99", {"status": "completed"})
        assert exc_info.value.code == ErrorCode.TASK_NOT_FOUND
        assert exc_info.value.details["task_id"] == "t99"

    def test_start_stamps_started_at(self, tracker: ExecutionTracker, clock: FakeClock) -> None:
        subtask, execution = tracker.update("t1", {"status": "in_progress"})
        assert subtask.started_at == clock.now.isoformat()
        assert execution.status == "in_progress"

    def test_coarse_progress(self, tracker: ExecutionTracker) -> None:
        tracker.update("t1", {"status": "completed"})
        _, execution = tracker.update("t2", {"status": "in_progress", "progress": 80})
        # Only completed subtasks count: 1 of 3
        assert execution.progress == 33

    def test_completion(self, tracker: ExecutionTracker, clock: FakeClock) -> None:
        for task_id in ("t1", "t2"):
            tracker.update(task_id, {"status": "completed"})
        clock.advance(minutes=5)
        subtask, execution = tracker.update("t3", {"status": "completed"})

        assert subtask.progress == 100
        assert execution.status == "completed"
        assert execution.progress == 100
        assert execution.completed_at == clock.now.isoformat()

    def test_status_never_regresses(self, tracker: ExecutionTracker) -> None:
        tracker.update("t1", {"status": "in_progress"})
        _, execution = tracker.update("t1", {"status": "pending"})
        assert execution.status == "in_progress"

    def test_terminal_status_is_sticky(self, tracker: ExecutionTracker) -> None:
        _, execution = tracker.update("t2", {"status": "failed"})
        assert execution.status == "failed"
        for task_id in ("t1", "t2", "t3"):
            with pytest.raises(OrchestrationError) as exc_info:
                tracker.update(task_id, {"status": "completed"})
            assert exc_info.value.code == ErrorCode.INVALID_UPDATE
            assert exc_info.value.details["execution_status"] == "failed"

        current = tracker.current()
        assert current.status == "failed"
        assert [s.status for s in current.subtasks] == ["pending", "failed", "pending"]

    def test_completed_execution_is_frozen(self, tracker: ExecutionTracker) -> None:
        for task_id in ("t1", "t2", "t3"):
            tracker.update(task_id, {"status": "completed"})

        with pytest.raises(OrchestrationError) as exc_info:
            tracker.update("t2", {"status": "in_progress", "progress": 10})
        assert exc_info.value.code == ErrorCode.INVALID_UPDATE

        current = tracker.current()
        assert current.status == "completed"
        assert current.progress == 100
        assert current.get_subtask("t2").status == "completed"

    @pytest.mark.parametrize("value", ["yesterday", 1_700_000_000, ["2026-03-02"]])
    def test_rejects_invalid_started_at(self, tracker: ExecutionTracker, value: object) -> None:
        with pytest.raises(OrchestrationError) as exc_info:
            tracker.update("t1", {"status": "in_progress", "started_at": value})
        assert exc_info.value.code == ErrorCode.INVALID_UPDATE
        assert exc_info.value.details["task_id"] == "t1"
        assert tracker.current().get_subtask("t1").status == "pending"

    def test_started_at_is_normalized(self, tracker: ExecutionTracker) -> None:
        subtask, _ = tracker.update(
            "t1", {"status": "in_progress", "started_at": "2026-03-02T08:30:00"}
        )
        assert subtask.started_at == "2026-03-02T08:30:00+00:00"

    def test_rejects_non_mapping_update(self, tracker: ExecutionTracker) -> None:
        with pytest.raises(OrchestrationError) as exc_info:
            tracker.update("t1", ["status", "completed"])
        assert exc_info.value.code == ErrorCode.INVALID_UPDATE

    def test_rejects_unknown_fields(self, tracker: ExecutionTracker) -> None:
        with pytest.raises(OrchestrationError) as exc_info:
            tracker.update("t1", {"dependencies": []})
        assert exc_info.value.code == ErrorCode.INVALID_UPDATE

    def test_rejects_invalid_status(self, tracker: ExecutionTracker) -> None:
        with pytest.raises(OrchestrationError) as exc_info:
            tracker.update("t1", {"status": "sleeping"})
        assert exc_info.value.code == ErrorCode.INVALID_UPDATE

    def test_progress_clamped(self, tracker: ExecutionTracker) -> None:
        subtask, _ = tracker.update("t1", {"progress": 150})
        assert subtask.progress == 100
        subtask, _ = tracker.update("t1", {"progress": -5})
        assert subtask.progress == 0

    def test_reassign(self, tracker: ExecutionTracker) -> None:
        subtask, _ = tracker.update("t2", {"assigned_agent": "senior-backend-developer"})
        assert subtask.assigned_agent == "senior-backend-developer"

    def test_state_survives_new_tracker(
        self, tracker: ExecutionTracker, store: MemoryDocumentStore
    ) -> None:
        tracker.update("t1", {"status": "completed"})
        reloaded = ExecutionTracker(store).current()
        assert reloaded.get_subtask("t1").status == "completed"

    def test_start_replaces_execution(
        self, tracker: ExecutionTracker, clock: FakeClock
    ) -> None:
        replacement = _execution(clock, "bug_fix")
        tracker.start(replacement)
        assert tracker.current().id == replacement.id

    def test_summary(self, tracker: ExecutionTracker) -> None:
        tracker.update("t1", {"status": "completed"})
        summary = tracker.summary()
        assert summary["counts"]["completed"] == 1
        assert summary["counts"]["pending"] == 2
        assert [s["id"] for s in summary["subtasks"]] == ["t1", "t2", "t3"]


class TestManagerProgress:
    """Tests for manager-reported batch updates."""

    def test_weighted_progress(self, tracker: ExecutionTracker) -> None:
        result = tracker.update_manager_progress(
            "backend-manager",
            [
                {"task_id": "t1", "status": "completed"},
                {"task_id": "t2", "status": "in_progress", "progress": 50},
            ],
        )
        assert result["manager_progress"] == 50
        assert result["execution_status"] == "in_progress"
        assert result["updated_tasks_count"] == 2
        assert result["breakdown"] == {
            "pending": 1,
            "in_progress": 1,
            "completed": 1,
            "failed": 0,
            "blocked": 0,
            "total": 3,
        }

    def test_manager_mismatch(self, tracker: ExecutionTracker) -> None:
        with pytest.raises(OrchestrationError) as exc_info:
            tracker.update_manager_progress("frontend-manager", [])
        assert exc_info.value.code == ErrorCode.MANAGER_MISMATCH
        assert exc_info.value.details["expected_manager"] == "backend-manager"

    def test_batch_is_all_or_nothing(self, tracker: ExecutionTracker) -> None:
        with pytest.raises(OrchestrationError) as exc_info:
            tracker.update_manager_progress(
                "backend-manager",
                [
                    {"task_id": "t1", "status": "completed"},
                    {"task_id": "t42", "status": "completed"},
                ],
            )
        assert exc_info.value.code == ErrorCode.TASK_NOT_FOUND
        assert tracker.current().get_subtask("t1").status == "pending"

    def test_camel_case_task_id(self, tracker: ExecutionTracker) -> None:
        result = tracker.update_manager_progress(
            "backend-manager", [{"taskId": "t1", "status": "in_progress", "progress": 30}]
        )
        assert result["manager_progress"] == 10

    @pytest.mark.parametrize("updates", [["t1"], [{"task_id": "t1"}, 7], [None]])
    def test_rejects_non_mapping_worker_updates(
        self, tracker: ExecutionTracker, updates: list
    ) -> None:
        with pytest.raises(OrchestrationError) as exc_info:
            tracker.update_manager_progress("backend-manager", updates)
        assert exc_info.value.code == ErrorCode.INVALID_UPDATE
        assert "index" in exc_info.value.details
        assert tracker.current().get_subtask("t1").status == "pending"

    @pytest.mark.parametrize("updates", ["t1", {"task_id": "t1"}, 42])
    def test_rejects_non_list_batch(self, tracker: ExecutionTracker, updates: object) -> None:
        with pytest.raises(OrchestrationError) as exc_info:
            tracker.update_manager_progress("backend-manager", updates)
        assert exc_info.value.code == ErrorCode.INVALID_UPDATE

    def test_rejects_batch_after_completion(self, tracker: ExecutionTracker) -> None:
        tracker.update_manager_progress(
            "backend-manager", [{"task_id": t, "status": "completed"} for t in ("t1", "t2", "t3")]
        )
        with pytest.raises(OrchestrationError) as exc_info:
            tracker.update_manager_progress(
                "backend-manager", [{"task_id": "t3", "status": "blocked"}]
            )
        assert exc_info.value.code == ErrorCode.INVALID_UPDATE
        assert tracker.current().progress == 100


class TestReallocationMonitor:
    """Tests for ReallocationMonitor."""

    def _running(self, clock: FakeClock, elapsed_ms: int) -> Execution:
        execution = _execution(clock)
        implement = execution.get_subtask("t2")  # estimated 180000 ms
        implement.status = "in_progress"
        implement.started_at = (clock.now - timedelta(milliseconds=elapsed_ms)).isoformat()
        return execution

    def test_flags_deviation(self, clock: FakeClock) -> None:
        report = ReallocationMonitor(0.3).scan(self._running(clock, 600_000), clock.now)
        assert report.needs_reallocation
        candidate = report.candidates[0]
        assert candidate.task_id == "t2"
        assert candidate.reason == "time_deviation"
        assert candidate.elapsed_ms == 600_000
        assert candidate.deviation == pytest.approx(2.333, abs=1e-3)

    def test_within_threshold(self, clock: FakeClock) -> None:
        report = ReallocationMonitor(0.3).scan(self._running(clock, 200_000), clock.now)
        assert not report.needs_reallocation

    def test_threshold_is_exclusive(self, clock: FakeClock) -> None:
        report = ReallocationMonitor(0.3).scan(self._running(clock, 234_000), clock.now)
        assert not report.needs_reallocation

    def test_blocked_always_flagged_first(self, clock: FakeClock) -> None:
        execution = self._running(clock, 600_000)
        execution.get_subtask("t3").status = "blocked"

        report = ReallocationMonitor(0.3).scan(execution, clock.now)
        assert [c.task_id for c in report.candidates] == ["t3", "t2"]
        assert report.candidates[0].reason == "blocked"

    def test_ignores_pending_and_completed(self, clock: FakeClock) -> None:
        execution = _execution(clock)
        execution.get_subtask("t1").status = "completed"
        report = ReallocationMonitor().scan(execution, clock.now + timedelta(hours=5))
        assert report.candidates == []

    def test_skips_unreadable_started_at(self, clock: FakeClock) -> None:
        execution = self._running(clock, 600_000)
        execution.get_subtask("t2").started_at = "last tuesday"
        report = ReallocationMonitor(0.3).scan(execution, clock.now)
        assert not report.needs_reallocation

    def test_negative_threshold_rejected(self) -> None:
        with pytest.raises(ValueError):
            ReallocationMonitor(-0.1)


@pytest.fixture
def locks(store: MemoryDocumentStore, clock: FakeClock) -> ResourceLockManager:
    return ResourceLockManager(store, clock=clock)


class TestResourceLockManager:
    """Tests for ResourceLockManager."""

    def test_acquire_release_acquire(self, locks: ResourceLockManager) -> None:
        first = locks.acquire("agent-1", "services", "build auth")

        with pytest.raises(LockHeldError) as exc_info:
            locks.acquire("agent-2", "services")
        assert exc_info.value.code == ErrorCode.LOCK_HELD
        assert exc_info.value.held_by == "agent-1"
        assert exc_info.value.queue_position == 1

        result = locks.release(first.id, "agent-1")
        assert result["overridden"] is False
        assert result["granted_to"] is None

        second = locks.acquire("agent-2", "services")
        assert second.owner_agent == "agent-2"
        assert locks.queue("services") == []

    def test_holder_reacquire_returns_same_lock(self, locks: ResourceLockManager) -> None:
        lock = locks.acquire("agent-1", "models")
        assert locks.acquire("agent-1", "models").id == lock.id

    def test_queue_positions(self, locks: ResourceLockManager) -> None:
        locks.acquire("agent-1", "services")
        for agent, expected in (("agent-2", 1), ("agent-2", 1), ("agent-3", 2)):
            with pytest.raises(LockHeldError) as exc_info:
                locks.acquire(agent, "services")
            assert exc_info.value.queue_position == expected
        assert [w.agent for w in locks.queue("services")] == ["agent-2", "agent-3"]

    def test_domains_are_independent(self, locks: ResourceLockManager) -> None:
        locks.acquire("agent-1", "services")
        assert locks.acquire("agent-2", "components").owner_agent == "agent-2"

    def test_release_requires_owner(self, locks: ResourceLockManager) -> None:
        lock = locks.acquire("agent-1", "services")
        with pytest.raises(OrchestrationError) as exc_info:
            locks.release(lock.id, "agent-2")
        assert exc_info.value.code == ErrorCode.NOT_LOCK_OWNER
        assert locks.holder("services").owner_agent == "agent-1"

    def test_override_role_can_release(self, locks: ResourceLockManager) -> None:
        lock = locks.acquire("agent-1", "services")
        result = locks.release(lock.id, "orchestrator")
        assert result["overridden"] is True
        assert locks.holder("services") is None

    def test_release_unknown_lock(self, locks: ResourceLockManager) -> None:
        with pytest.raises(OrchestrationError) as exc_info:
            locks.release("lock-missing", "agent-1")
        assert exc_info.value.code == ErrorCode.LOCK_NOT_FOUND

    def test_fifo_handoff(self, store: MemoryDocumentStore, clock: FakeClock) -> None:
        locks = ResourceLockManager(store, fifo_handoff=True, clock=clock)
        lock = locks.acquire("agent-1", "services")
        for agent in ("agent-2", "agent-3"):
            with pytest.raises(LockHeldError):
                locks.acquire(agent, "services")

        result = locks.release(lock.id, "agent-1")
        assert result["granted_to"]["owner_agent"] == "agent-2"
        assert locks.holder("services").owner_agent == "agent-2"
        assert [w.agent for w in locks.queue("services")] == ["agent-3"]

    def test_release_agent(self, locks: ResourceLockManager) -> None:
        locks.acquire("agent-1", "services")
        locks.acquire("agent-1", "models")
        locks.acquire("agent-2", "components")
        with pytest.raises(LockHeldError):
            locks.acquire("agent-1", "components")

        assert locks.release_agent("agent-1") == 2
        assert [lock.domain for lock in locks.active_locks()] == ["components"]
        assert locks.queue("components") == []

    def test_mutual_exclusion_under_threads(self, locks: ResourceLockManager) -> None:
        winners: list[str] = []
        denied: list[str] = []
        barrier = threading.Barrier(8)

        def contend(agent: str) -> None:
            barrier.wait()
            try:
                locks.acquire(agent, "navigation")
                winners.append(agent)
            except LockHeldError:
                denied.append(agent)

        threads = [threading.Thread(target=contend, args=(f"agent-{i}",)) for i in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(winners) == 1
        assert len(denied) == 7
        assert locks.holder("navigation").owner_agent == winners[0]
        assert len(locks.queue("navigation")) == 7

    def test_corrupt_entries_are_dropped(
        self, store: MemoryDocumentStore, locks: ResourceLockManager
    ) -> None:
        store.write(
            "locks/table",
            {
                "locks": {"services": {"id": "lock-1"}, "models": "agent-9"},
                "queues": {"services": ["agent-2", {"agent": "agent-3"}], "models": "x"},
            },
        )
        assert locks.active_locks() == []
        assert [w.agent for w in locks.queue("services")] == ["agent-3"]

        lock = locks.acquire("agent-1", "services")
        assert locks.holder("services").id == lock.id
        assert locks.acquire("agent-1", "models").owner_agent == "agent-1"

    def test_corrupt_table_starts_empty(
        self, store: MemoryDocumentStore, locks: ResourceLockManager
    ) -> None:
        store.write("locks/table", ["not", "a", "table"])
        assert locks.get_stats()["total_locks"] == 0
        assert locks.acquire("agent-1", "services").owner_agent == "agent-1"

    def test_stats(self, locks: ResourceLockManager) -> None:
        locks.acquire("agent-1", "services")
        with pytest.raises(LockHeldError):
            locks.acquire("agent-2", "services")
        stats = locks.get_stats()
        assert stats["total_locks"] == 1
        assert stats["domains_locked"] == ["services"]
        assert stats["queued_requests"] == 1
        assert stats["policy"] == "advisory"


class TestConflictPolicies:
    """Tests for conflict pre-checks."""

    def test_target_domains(self) -> None:
        assert target_domains({"type": "implement_service"}) == ["services"]
        assert target_domains({"task_type": "feature_development"}) == [
            "components",
            "navigation",
            "services",
        ]
        assert target_domains({"domains": ["b", "a", "a"]}) == ["a", "b"]
        assert target_domains({"type": "unknown"}) == []

    def test_advisory_warns_but_proceeds(self, locks: ResourceLockManager) -> None:
        locks.acquire("agent-1", "services", "migrating schema")
        assessment = locks.check_conflicts({"type": "implement_service"}, agent="agent-2")
        assert assessment.can_proceed
        assert assessment.policy == "advisory"
        assert assessment.conflicts[0]["held_by"] == "agent-1"
        assert "migrating schema" in assessment.warnings[0]

    def test_strict_blocks(self, store: MemoryDocumentStore, clock: FakeClock) -> None:
        locks = ResourceLockManager(store, policy=StrictConflictPolicy(), clock=clock)
        locks.acquire("agent-1", "services")
        assessment = locks.check_conflicts({"type": "implement_service"}, agent="agent-2")
        assert not assessment.can_proceed
        assert assessment.policy == "strict"

    def test_own_locks_are_not_conflicts(self, store: MemoryDocumentStore) -> None:
        locks = ResourceLockManager(store, policy=StrictConflictPolicy())
        locks.acquire("agent-1", "services")
        assert locks.check_conflicts({"type": "implement_service"}, agent="agent-1").can_proceed

    def test_policy_for(self) -> None:
        assert isinstance(policy_for("strict"), StrictConflictPolicy)
        assert isinstance(policy_for("advisory"), AdvisoryConflictPolicy)
        with pytest.raises(ValueError):
            policy_for("optimistic")


def test_coarse_progress_empty() -> None:
    assert coarse_progress([]) == 0
