"""
Task Decomposer: Template-Driven DAG Decomposition

Turns a WorkRequest into an ordered list of subtasks with dependency edges
and parallel-execution groups. Templates are static, so every supported task
type yields the same graph for the same parameters; only the execution id
and timestamps vary. Unknown task types fall back to a single generic
subtask instead of failing.
"""

from __future__ import annotations

import logging
import re
import uuid
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from .models import Execution, Subtask, WorkRequest, utc_now
from .router import CapabilityRouter
from .templates import FALLBACK_TEMPLATE, TEMPLATES, SubtaskTemplate, topological_order

logger = logging.getLogger(__name__)


class _KeepMissing(dict):
    """format_map mapping that leaves unknown placeholders intact."""

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


@dataclass
class Decomposition:
    """Result of decomposing one work request."""

    execution: Execution
    estimated_total_time: int
    critical_path_ms: int
    used_fallback: bool = False

    def to_dict(self) -> dict[str, Any]:
        execution = self.execution
        return {
            "execution_id": execution.id,
            "task_type": execution.task_type,
            "subtask_count": len(execution.subtasks),
            "parallel_group_count": len(execution.parallel_groups),
            "estimated_total_time": self.estimated_total_time,
            "critical_path_ms": self.critical_path_ms,
            "manager": execution.manager,
            "subtasks": [s.to_dict() for s in execution.subtasks],
            "parallel_groups": [sorted(g) for g in execution.parallel_groups],
        }


def group_parallel(
    subtasks: Iterable[Subtask], pairs: Iterable[tuple[str, str]] = ()
) -> list[set[str]]:
    """Union subtasks sharing a ``parallel_group`` tag or linked by a pair.

    Only groups with two or more members are returned, ordered by the
    position of their first member. Running it again on its own output
    produces the same groups.
    """
    ordered = list(subtasks)
    position = {s.id: idx for idx, s in enumerate(ordered)}
    parent = {s.id: s.id for s in ordered}

    def find(node: str) -> str:
        while parent[node] != node:
            parent[node] = parent[parent[node]]
            node = parent[node]
        return node

    def union(a: str, b: str) -> None:
        root_a, root_b = find(a), find(b)
        if root_a == root_b:
            return
        # Keep the earliest subtask as root so labels are stable
        if position[root_b] < position[root_a]:
            root_a, root_b = root_b, root_a
        parent[root_b] = root_a

    first_by_tag: dict[str, str] = {}
    for subtask in ordered:
        if subtask.parallel_group is None:
            continue
        if subtask.parallel_group in first_by_tag:
            union(first_by_tag[subtask.parallel_group], subtask.id)
        else:
            first_by_tag[subtask.parallel_group] = subtask.id

    for a, b in pairs:
        if a in parent and b in parent:
            union(a, b)

    groups: dict[str, set[str]] = {}
    for subtask in ordered:
        groups.setdefault(find(subtask.id), set()).add(subtask.id)

    return sorted(
        (members for members in groups.values() if len(members) > 1),
        key=lambda members: min(position[m] for m in members),
    )


def critical_path(subtasks: Iterable[Subtask]) -> int:
    """Longest estimated duration along any dependency chain."""
    by_id = {s.id: s for s in subtasks}
    finish: dict[str, int] = {}
    for node in topological_order({s.id: s.dependencies for s in by_id.values()}):
        subtask = by_id[node]
        start = max((finish[dep] for dep in subtask.dependencies), default=0)
        finish[node] = start + subtask.estimated_duration_ms
    return max(finish.values(), default=0)


class TaskDecomposer:
    """Builds executions from decomposition templates."""

    def __init__(
        self,
        router: CapabilityRouter,
        templates: Mapping[str, tuple[SubtaskTemplate, ...]] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.router = router
        self.templates = dict(TEMPLATES if templates is None else templates)
        self.clock = clock

    def supported_task_types(self) -> list[str]:
        return sorted(self.templates)

    def decompose(self, request: WorkRequest) -> Decomposition:
        steps = self.templates.get(request.task_type)
        used_fallback = steps is None
        if steps is None:
            logger.info("No template for task type %s, using fallback", request.task_type)
            steps = FALLBACK_TEMPLATE

        params = _KeepMissing()
        for key, value in request.parameters.items():
            params[key] = value
            params.setdefault(_snake_case(key), value)
        params.setdefault("task_type", request.task_type)

        ids = {step.key: f"t{idx}" for idx, step in enumerate(steps, start=1)}
        subtasks: list[Subtask] = []
        for step in steps:
            assignment = self.router.assign(step.type, predefined_agent=step.agent)
            subtasks.append(
                Subtask(
                    id=ids[step.key],
                    name=step.name.format_map(params),
                    type=step.type,
                    assigned_agent=assignment.agent,
                    required_skill=assignment.required_skill,
                    min_capability_match=assignment.min_capability_match,
                    estimated_duration_ms=step.estimated_duration_ms,
                    dependencies={ids[dep] for dep in step.depends_on},
                    parallel_group=step.parallel_group,
                )
            )

        pairs = [(ids[s.key], ids[s.parallel_with]) for s in steps if s.parallel_with]
        groups = group_parallel(subtasks, pairs)
        _label_groups(subtasks, groups)

        execution = Execution(
            id=f"exec-{uuid.uuid4().hex[:8]}",
            task_type=request.task_type,
            subtasks=subtasks,
            parallel_groups=groups,
            created_at=self.clock().isoformat(),
            manager=self.router.manager_for(request.task_type),
            initiated_by=request.initiated_by,
            parameters=dict(request.parameters),
        )

        total = sum(s.estimated_duration_ms for s in subtasks)
        logger.info(
            "Decomposed %s into %d subtasks (%d parallel groups, manager=%s)",
            request.task_type,
            len(subtasks),
            len(groups),
            execution.manager,
        )
        return Decomposition(
            execution=execution,
            estimated_total_time=total,
            critical_path_ms=critical_path(subtasks),
            used_fallback=used_fallback,
        )


def _snake_case(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


def _label_groups(subtasks: list[Subtask], groups: list[set[str]]) -> None:
    """Give every member of a parallel group the same ``parallel_group`` label."""
    label_for: dict[str, str] = {}
    for idx, members in enumerate(groups, start=1):
        for member in members:
            label_for[member] = f"group-{idx}"
    for subtask in subtasks:
        subtask.parallel_group = label_for.get(subtask.id)
