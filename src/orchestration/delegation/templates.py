"""Static decomposition templates keyed by task type."""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass


@dataclass(frozen=True)
class SubtaskTemplate:
    """One step of a decomposition template.

    ``name`` may reference request parameters, e.g. ``"Implement {service_name}"``.
    ``parallel_group`` tags steps that may run together; ``parallel_with``
    pairs this step with another key in the same template.
    """

    key: str
    name: str
    type: str
    estimated_duration_ms: int
    depends_on: tuple[str, ...] = ()
    parallel_group: str | None = None
    parallel_with: str | None = None
    agent: str | None = None


FALLBACK_TEMPLATE: tuple[SubtaskTemplate, ...] = (
    SubtaskTemplate("work", "Handle {task_type} request", "general", 60_000),
)

TEMPLATES: dict[str, tuple[SubtaskTemplate, ...]] = {
    "service_build": (
        SubtaskTemplate("design", "Design {service_name} API contract", "design_api", 30_000),
        SubtaskTemplate(
            "implement",
            "Implement {service_name} service",
            "implement_service",
            180_000,
            depends_on=("design",),
        ),
        SubtaskTemplate(
            "test",
            "Write {service_name} unit tests",
            "write_tests",
            30_000,
            depends_on=("implement",),
        ),
    ),
    "component_build": (
        SubtaskTemplate(
            "design", "Design {component_name} component", "design_component", 45_000
        ),
        SubtaskTemplate(
            "implement",
            "Implement {component_name} component",
            "implement_component",
            150_000,
            depends_on=("design",),
        ),
        SubtaskTemplate(
            "style",
            "Style {component_name} for light and dark themes",
            "style_component",
            60_000,
            depends_on=("implement",),
            parallel_group="finish",
        ),
        SubtaskTemplate(
            "test",
            "Write {component_name} component tests",
            "write_tests",
            60_000,
            depends_on=("implement",),
            parallel_group="finish",
        ),
    ),
    "feature_development": (
        SubtaskTemplate(
            "analyze", "Analyze {feature_name} requirements", "analyze_requirements", 60_000
        ),
        SubtaskTemplate(
            "backend",
            "Build {feature_name} service layer",
            "implement_service",
            180_000,
            depends_on=("analyze",),
            parallel_with="frontend",
        ),
        SubtaskTemplate(
            "frontend",
            "Build {feature_name} screens",
            "implement_component",
            180_000,
            depends_on=("analyze",),
        ),
        SubtaskTemplate(
            "integrate",
            "Integration-test {feature_name}",
            "integration_test",
            90_000,
            depends_on=("backend", "frontend"),
        ),
        SubtaskTemplate(
            "review",
            "Review {feature_name} changes",
            "code_review",
            45_000,
            depends_on=("integrate",),
            agent="code-reviewer",
        ),
    ),
    "bug_fix": (
        SubtaskTemplate("reproduce", "Reproduce bug {bug_id}", "reproduce_bug", 30_000),
        SubtaskTemplate(
            "diagnose",
            "Find root cause of {bug_id}",
            "diagnose",
            60_000,
            depends_on=("reproduce",),
        ),
        SubtaskTemplate(
            "fix", "Fix {bug_id}", "implement_fix", 90_000, depends_on=("diagnose",)
        ),
        SubtaskTemplate(
            "verify",
            "Add regression test for {bug_id}",
            "regression_test",
            60_000,
            depends_on=("fix",),
        ),
    ),
    "refactor": (
        SubtaskTemplate("analyze", "Analyze {module_name} structure", "analyze_code", 60_000),
        SubtaskTemplate(
            "refactor",
            "Refactor {module_name}",
            "refactor_code",
            180_000,
            depends_on=("analyze",),
        ),
        SubtaskTemplate(
            "test",
            "Update {module_name} tests",
            "write_tests",
            60_000,
            depends_on=("refactor",),
            parallel_with="docs",
        ),
        SubtaskTemplate(
            "docs",
            "Update {module_name} documentation",
            "update_docs",
            30_000,
            depends_on=("refactor",),
            parallel_with="test",
        ),
    ),
    "performance_optimization": (
        SubtaskTemplate("profile", "Profile {target}", "profile", 60_000),
        SubtaskTemplate(
            "render",
            "Optimize {target} rendering",
            "optimize_rendering",
            120_000,
            depends_on=("profile",),
            parallel_group="optimize",
        ),
        SubtaskTemplate(
            "data",
            "Optimize {target} data access",
            "optimize_data_access",
            120_000,
            depends_on=("profile",),
            parallel_group="optimize",
        ),
        SubtaskTemplate(
            "benchmark",
            "Benchmark {target}",
            "benchmark",
            45_000,
            depends_on=("render", "data"),
        ),
    ),
    "test_coverage": (
        SubtaskTemplate(
            "unit", "Write unit tests for {target}", "write_tests", 90_000, parallel_group="suites"
        ),
        SubtaskTemplate(
            "integration",
            "Write integration tests for {target}",
            "integration_test",
            120_000,
            parallel_group="suites",
        ),
        SubtaskTemplate(
            "e2e", "Write e2e tests for {target}", "e2e_test", 150_000, parallel_group="suites"
        ),
        SubtaskTemplate(
            "report",
            "Report coverage for {target}",
            "coverage_report",
            30_000,
            depends_on=("unit", "integration", "e2e"),
        ),
    ),
}


def topological_order(edges: Mapping[str, Iterable[str]]) -> list[str]:
    """Kahn's algorithm over ``node -> dependencies``.

    Raises ValueError on a cycle or a dependency that is not a node.
    """
    deps = {node: set(node_deps) for node, node_deps in edges.items()}
    for node, node_deps in deps.items():
        missing = node_deps - deps.keys()
        if missing:
            raise ValueError(f"{node} depends on unknown step(s): {sorted(missing)}")

    dependents: dict[str, list[str]] = {node: [] for node in deps}
    for node, node_deps in deps.items():
        for dep in node_deps:
            dependents[dep].append(node)

    remaining = {node: len(node_deps) for node, node_deps in deps.items()}
    ready = deque(node for node in deps if remaining[node] == 0)
    order: list[str] = []
    while ready:
        node = ready.popleft()
        order.append(node)
        for child in dependents[node]:
            remaining[child] -= 1
            if remaining[child] == 0:
                ready.append(child)

    if len(order) != len(deps):
        cyclic = sorted(node for node, count in remaining.items() if count > 0)
        raise ValueError(f"dependency cycle among: {cyclic}")
    return order


def validate_template(steps: tuple[SubtaskTemplate, ...]) -> None:
    """Check that a template's keys are unique and its edges form a DAG."""
    keys = [step.key for step in steps]
    if len(keys) != len(set(keys)):
        raise ValueError(f"duplicate step keys: {keys}")
    topological_order({step.key: step.depends_on for step in steps})
    for step in steps:
        if step.parallel_with is not None and step.parallel_with not in keys:
            raise ValueError(f"{step.key} is parallel with unknown step {step.parallel_with}")


for _steps in (*TEMPLATES.values(), FALLBACK_TEMPLATE):
    validate_template(_steps)
