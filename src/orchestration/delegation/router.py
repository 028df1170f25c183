"""
Capability Router: Two-Stage Delegate Lookup

Stage 1 maps a task type to an optional domain manager (disabled entirely
when manager routing is switched off). Stage 2 maps a subtask type to the
agent, required skill and minimum capability match that should handle it.

Both lookups are side-effect free. Absent entries resolve to the default
general-purpose agent rather than an error.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_AGENT = "general-purpose"
DEFAULT_MIN_MATCH = 0.5


@dataclass(frozen=True)
class AgentAssignment:
    """Agent selected for a subtask type."""

    agent: str
    required_skill: str | None = None
    min_capability_match: float = DEFAULT_MIN_MATCH

    def __post_init__(self) -> None:
        if not 0.0 <= self.min_capability_match <= 1.0:
            raise ValueError(
                f"min_capability_match must be in [0.0, 1.0], got {self.min_capability_match}"
            )


DEFAULT_ASSIGNMENT = AgentAssignment(DEFAULT_AGENT)

TASK_MANAGERS: dict[str, str] = {
    "service_build": "backend-manager",
    "component_build": "frontend-manager",
    "feature_development": "fullstack-manager",
    "performance_optimization": "performance-manager",
    "test_coverage": "quality-manager",
}

SUBTASK_AGENTS: dict[str, AgentAssignment] = {
    # Design / analysis
    "analyze_requirements": AgentAssignment("product-analyst", "requirements-analysis", 0.6),
    "design_api": AgentAssignment("backend-architect", "api-design", 0.8),
    "design_component": AgentAssignment("ui-designer", "component-design", 0.7),
    "analyze_code": AgentAssignment("code-reviewer", "static-analysis", 0.7),
    # Implementation
    "implement_service": AgentAssignment("backend-developer", "service-implementation", 0.8),
    "implement_component": AgentAssignment("frontend-developer", "react-native", 0.8),
    "style_component": AgentAssignment("ui-designer", "styling", 0.6),
    "implement_fix": AgentAssignment("bug-fixer", "debugging", 0.7),
    "refactor_code": AgentAssignment("refactoring-specialist", "refactoring", 0.8),
    "optimize_rendering": AgentAssignment("frontend-developer", "render-optimization", 0.8),
    "optimize_data_access": AgentAssignment("backend-developer", "query-optimization", 0.8),
    # Debugging
    "reproduce_bug": AgentAssignment("debugger", "debugging", 0.7),
    "diagnose": AgentAssignment("debugger", "root-cause-analysis", 0.8),
    # Verification
    "write_tests": AgentAssignment("test-engineer", "unit-testing", 0.7),
    "integration_test": AgentAssignment("test-engineer", "integration-testing", 0.7),
    "regression_test": AgentAssignment("test-engineer", "regression-testing", 0.7),
    "e2e_test": AgentAssignment("test-engineer", "e2e-testing", 0.7),
    "coverage_report": AgentAssignment("test-engineer", "coverage-analysis", 0.5),
    "code_review": AgentAssignment("code-reviewer", "code-review", 0.8),
    "profile": AgentAssignment("performance-engineer", "profiling", 0.8),
    "benchmark": AgentAssignment("performance-engineer", "benchmarking", 0.7),
    # Documentation
    "update_docs": AgentAssignment("technical-writer", "documentation", 0.5),
}


class CapabilityRouter:
    """Maps task types to managers and subtask types to agents."""

    def __init__(
        self,
        task_managers: Mapping[str, str] | None = None,
        subtask_agents: Mapping[str, AgentAssignment] | None = None,
        use_managers: bool = True,
    ) -> None:
        self._task_managers = dict(TASK_MANAGERS if task_managers is None else task_managers)
        self._subtask_agents = dict(SUBTASK_AGENTS if subtask_agents is None else subtask_agents)
        self.use_managers = use_managers

    def manager_for(self, task_type: str) -> str | None:
        """Stage 1: coarse task type -> optional manager id."""
        if not self.use_managers:
            return None
        return self._task_managers.get(task_type)

    def assign(self, subtask_type: str, predefined_agent: str | None = None) -> AgentAssignment:
        """Stage 2: subtask type -> agent assignment.

        A predefined agent bypasses the table, but keeps the table's skill
        requirement when one exists for the type.
        """
        entry = self._subtask_agents.get(subtask_type)
        if predefined_agent:
            if entry is None:
                return AgentAssignment(predefined_agent)
            return AgentAssignment(
                predefined_agent, entry.required_skill, entry.min_capability_match
            )
        if entry is None:
            logger.debug("No route for subtask type %s, using %s", subtask_type, DEFAULT_AGENT)
            return DEFAULT_ASSIGNMENT
        return entry

    def register(
        self,
        subtask_type: str,
        agent: str,
        required_skill: str | None = None,
        min_capability_match: float = DEFAULT_MIN_MATCH,
    ) -> AgentAssignment:
        """Add or replace a stage-2 route (manual feedback from suggestions)."""
        assignment = AgentAssignment(agent, required_skill, min_capability_match)
        self._subtask_agents[subtask_type] = assignment
        logger.info("Route for %s now -> %s", subtask_type, agent)
        return assignment

    def routes(self) -> dict[str, dict[str, object]]:
        """Snapshot of both routing tables."""
        return {
            "managers": dict(self._task_managers) if self.use_managers else {},
            "agents": {
                subtask_type: {
                    "agent": a.agent,
                    "required_skill": a.required_skill,
                    "min_capability_match": a.min_capability_match,
                }
                for subtask_type, a in sorted(self._subtask_agents.items())
            },
        }
