"""
Delegation: Work Request Decomposition & Routing

Core Components:
- models: WorkRequest, Subtask, Execution dataclasses and status enums
- templates: static per-task-type decomposition templates (validated as DAGs)
- decomposer: template-driven decomposition with parallel grouping
- router: two-stage capability routing (task type -> manager, subtask type -> agent)
"""

from .models import (
    Execution,
    ExecutionStatus,
    Subtask,
    SubtaskStatus,
    WorkRequest,
)
from .router import AgentAssignment, CapabilityRouter
from .templates import TEMPLATES, SubtaskTemplate, topological_order
from .decomposer import Decomposition, TaskDecomposer, critical_path, group_parallel

__all__ = [
    # Models
    "Execution",
    "ExecutionStatus",
    "Subtask",
    "SubtaskStatus",
    "WorkRequest",
    # Router
    "AgentAssignment",
    "CapabilityRouter",
    # Templates
    "TEMPLATES",
    "SubtaskTemplate",
    "topological_order",
    # Decomposer
    "Decomposition",
    "TaskDecomposer",
    "critical_path",
    "group_parallel",
]
