"""Tests for delegation: models, routing, templates and decomposition."""

from __future__ import annotations

import pytest

from orchestration.delegation import (
    TEMPLATES,
    CapabilityRouter,
    Subtask,
    TaskDecomposer,
    WorkRequest,
    critical_path,
    group_parallel,
    topological_order,
)
from orchestration.delegation.router import DEFAULT_AGENT

from conftest import FakeClock


@pytest.fixture
def decomposer(clock: FakeClock) -> TaskDecomposer:
    return TaskDecomposer(CapabilityRouter(), clock=clock)


def _structure(subtasks: list[Subtask]) -> list[tuple]:
    return [
        (s.id, s.name, s.type, s.assigned_agent, s.estimated_duration_ms, sorted(s.dependencies))
        for s in subtasks
    ]


class TestWorkRequest:
    """Tests for WorkRequest parsing."""

    def test_from_dict(self) -> None:
        request = WorkRequest.from_dict(
            {"task_type": "bug_fix", "parameters": {"bug_id": "BUG-7"}, "initiated_by": "qa"}
        )
        assert request.task_type == "bug_fix"
        assert request.parameters == {"bug_id": "BUG-7"}
        assert request.initiated_by == "qa"

    def test_camel_case_keys(self) -> None:
        request = WorkRequest.from_dict({"taskType": "refactor", "initiatedBy": "lead"})
        assert request.task_type == "refactor"
        assert request.initiated_by == "lead"

    def test_missing_task_type(self) -> None:
        with pytest.raises(ValueError, match="task_type"):
            WorkRequest.from_dict({"parameters": {}})


class TestSubtask:
    """Tests for Subtask invariants."""

    def test_duration_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            Subtask(id="t1", name="x", type="general", assigned_agent="a", estimated_duration_ms=0)

    def test_progress_bounds(self) -> None:
        with pytest.raises(ValueError):
            Subtask(
                id="t1",
                name="x",
                type="general",
                assigned_agent="a",
                estimated_duration_ms=10,
                progress=101,
            )

    def test_round_trip_keeps_dependencies(self) -> None:
        subtask = Subtask(
            id="t3",
            name="x",
            type="general",
            assigned_agent="a",
            estimated_duration_ms=10,
            dependencies={"t2", "t1"},
        )
        data = subtask.to_dict()
        assert data["dependencies"] == ["t1", "t2"]
        assert Subtask.from_dict(data) == subtask


class TestCapabilityRouter:
    """Tests for two-stage routing."""

    def test_manager_lookup(self) -> None:
        router = CapabilityRouter()
        assert router.manager_for("service_build") == "backend-manager"
        assert router.manager_for("bug_fix") is None

    def test_managers_disabled(self) -> None:
        router = CapabilityRouter(use_managers=False)
        assert router.manager_for("service_build") is None
        assert router.routes()["managers"] == {}

    def test_assign_known_type(self) -> None:
        assignment = CapabilityRouter().assign("design_api")
        assert assignment.agent == "backend-architect"
        assert assignment.required_skill == "api-design"
        assert assignment.min_capability_match == 0.8

    def test_assign_unknown_type_uses_default(self) -> None:
        assignment = CapabilityRouter().assign("interpretive_dance")
        assert assignment.agent == DEFAULT_AGENT
        assert assignment.required_skill is None

    def test_predefined_agent_keeps_skill(self) -> None:
        assignment = CapabilityRouter().assign("write_tests", predefined_agent="qa-lead")
        assert assignment.agent == "qa-lead"
        assert assignment.required_skill == "unit-testing"

    def test_register_overrides_route(self) -> None:
        router = CapabilityRouter()
        router.register("write_tests", "senior-test-engineer", "property-testing", 0.9)
        assert router.assign("write_tests").agent == "senior-test-engineer"
        # Module defaults are untouched
        assert CapabilityRouter().assign("write_tests").agent == "test-engineer"

    def test_invalid_capability_match(self) -> None:
        with pytest.raises(ValueError):
            CapabilityRouter().register("x", "agent", min_capability_match=1.5)


class TestTemplates:
    """Tests for the static template table."""

    @pytest.mark.parametrize("task_type", sorted(TEMPLATES))
    def test_every_template_is_acyclic(self, task_type: str) -> None:
        steps = TEMPLATES[task_type]
        order = topological_order({s.key: s.depends_on for s in steps})
        assert sorted(order) == sorted(s.key for s in steps)
        position = {key: idx for idx, key in enumerate(order)}
        for step in steps:
            for dep in step.depends_on:
                assert position[dep] < position[step.key]

    def test_cycle_detected(self) -> None:
        with pytest.raises(ValueError, match="cycle"):
            topological_order({"a": ["c"], "b": ["a"], "c": ["b"]})

    def test_unknown_dependency(self) -> None:
        with pytest.raises(ValueError, match="unknown"):
            topological_order({"a": ["ghost"]})


class TestTaskDecomposer:
    """Tests for TaskDecomposer."""

    def test_service_build_chain(self, decomposer: TaskDecomposer) -> None:
        result = decomposer.decompose(
            WorkRequest.from_dict(
                {"taskType": "service_build", "parameters": {"serviceName": "X"}}
            )
        )
        subtasks = result.execution.subtasks

        assert [s.id for s in subtasks] == ["t1", "t2", "t3"]
        assert subtasks[0].dependencies == set()
        assert subtasks[1].dependencies == {"t1"}
        assert subtasks[2].dependencies == {"t2"}
        assert result.estimated_total_time == 30000 + 180000 + 30000 == 240000
        assert result.critical_path_ms == 240000
        assert subtasks[1].name == "Implement X service"
        assert [s.assigned_agent for s in subtasks] == [
            "backend-architect",
            "backend-developer",
            "test-engineer",
        ]
        assert result.execution.manager == "backend-manager"
        assert result.execution.parallel_groups == []
        assert not result.used_fallback

    def test_deterministic(self, decomposer: TaskDecomposer) -> None:
        request = WorkRequest("feature_development", {"feature_name": "Checkout"})
        first = decomposer.decompose(request)
        second = decomposer.decompose(request)

        assert first.execution.id != second.execution.id
        assert _structure(first.execution.subtasks) == _structure(second.execution.subtasks)
        assert first.execution.parallel_groups == second.execution.parallel_groups
        assert first.estimated_total_time == second.estimated_total_time

    def test_parallel_pair(self, decomposer: TaskDecomposer) -> None:
        result = decomposer.decompose(WorkRequest("feature_development"))
        execution = result.execution

        assert execution.parallel_groups == [{"t2", "t3"}]
        assert execution.get_subtask("t2").parallel_group == "group-1"
        assert execution.get_subtask("t3").parallel_group == "group-1"
        assert execution.get_subtask("t1").parallel_group is None
        assert execution.get_subtask("t5").assigned_agent == "code-reviewer"
        # analyze 60s + backend 180s + integrate 90s + review 45s
        assert result.critical_path_ms == 375000
        assert result.estimated_total_time == 555000

    def test_tagged_group(self, decomposer: TaskDecomposer) -> None:
        result = decomposer.decompose(WorkRequest("test_coverage", {"target": "payments"}))
        assert result.execution.parallel_groups == [{"t1", "t2", "t3"}]
        assert result.critical_path_ms == 150000 + 30000

    def test_missing_parameter_left_in_name(self, decomposer: TaskDecomposer) -> None:
        result = decomposer.decompose(WorkRequest("bug_fix"))
        assert result.execution.subtasks[0].name == "Reproduce bug {bug_id}"

    def test_unknown_task_type_falls_back(self, decomposer: TaskDecomposer) -> None:
        result = decomposer.decompose(WorkRequest("mystery"))
        subtasks = result.execution.subtasks

        assert result.used_fallback
        assert len(subtasks) == 1
        assert subtasks[0].type == "general"
        assert subtasks[0].assigned_agent == DEFAULT_AGENT
        assert subtasks[0].name == "Handle mystery request"
        assert result.execution.manager is None

    def test_to_dict(self, decomposer: TaskDecomposer, clock: FakeClock) -> None:
        data = decomposer.decompose(WorkRequest("refactor", {"module_name": "auth"})).to_dict()
        assert data["execution_id"].startswith("exec-")
        assert data["subtask_count"] == 4
        assert data["parallel_group_count"] == 1
        assert data["parallel_groups"] == [["t3", "t4"]]

    def test_created_at_uses_clock(self, decomposer: TaskDecomposer, clock: FakeClock) -> None:
        execution = decomposer.decompose(WorkRequest("bug_fix")).execution
        assert execution.created_at == clock.now.isoformat()


class TestGrouping:
    """Tests for parallel grouping."""

    def _subtasks(self) -> list[Subtask]:
        return [
            Subtask(
                id=f"t{i}",
                name=f"step {i}",
                type="general",
                assigned_agent="a",
                estimated_duration_ms=1000 * i,
                parallel_group=tag,
            )
            for i, tag in enumerate(["x", None, "x", None, None], start=1)
        ]

    def test_tags_and_pairs_merge(self) -> None:
        groups = group_parallel(self._subtasks(), [("t2", "t3"), ("t4", "t5")])
        assert groups == [{"t1", "t2", "t3"}, {"t4", "t5"}]

    def test_singletons_dropped(self) -> None:
        subtasks = self._subtasks()
        subtasks[2].parallel_group = "y"
        assert group_parallel(subtasks) == []

    def test_idempotent(self, decomposer: TaskDecomposer) -> None:
        execution = decomposer.decompose(WorkRequest("performance_optimization")).execution
        assert group_parallel(execution.subtasks) == execution.parallel_groups

    def test_critical_path_diamond(self) -> None:
        subtasks = [
            Subtask("a", "a", "general", "x", 10),
            Subtask("b", "b", "general", "x", 50, dependencies={"a"}),
            Subtask("c", "c", "general", "x", 20, dependencies={"a"}),
            Subtask("d", "d", "general", "x", 5, dependencies={"b", "c"}),
        ]
        assert critical_path(subtasks) == 65
