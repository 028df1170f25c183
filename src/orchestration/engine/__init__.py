"""Coordination engine: execution tracking, reallocation, locking, service facade."""

from orchestration.engine.conflict import (
    AdvisoryConflictPolicy,
    ConflictAssessment,
    Lock,
    ResourceLockManager,
    StrictConflictPolicy,
    policy_for,
    target_domains,
)
from orchestration.engine.monitor import (
    ReallocationCandidate,
    ReallocationMonitor,
    ReallocationReport,
)
from orchestration.engine.orchestrator import OrchestratorService
from orchestration.engine.tracker import (
    ExecutionTracker,
    coarse_progress,
    derive_status,
    weighted_progress,
)

__all__ = [
    "AdvisoryConflictPolicy",
    "ConflictAssessment",
    "ExecutionTracker",
    "Lock",
    "OrchestratorService",
    "ReallocationCandidate",
    "ReallocationMonitor",
    "ReallocationReport",
    "ResourceLockManager",
    "StrictConflictPolicy",
    "coarse_progress",
    "derive_status",
    "policy_for",
    "target_domains",
    "weighted_progress",
]
