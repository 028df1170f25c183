"""Typed error codes shared by every orchestration component."""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorCode(StrEnum):
    """Closed set of error codes surfaced by public operations."""

    CHECKPOINT_NOT_FOUND = "CHECKPOINT_NOT_FOUND"
    NO_VALIDATED_CHECKPOINT = "NO_VALIDATED_CHECKPOINT"
    NO_ACTIVE_EXECUTION = "NO_ACTIVE_EXECUTION"
    TASK_NOT_FOUND = "TASK_NOT_FOUND"
    MANAGER_MISMATCH = "MANAGER_MISMATCH"
    LOCK_HELD = "LOCK_HELD"
    LOCK_NOT_FOUND = "LOCK_NOT_FOUND"
    NOT_LOCK_OWNER = "NOT_LOCK_OWNER"
    INVALID_EVENT_TYPE = "INVALID_EVENT_TYPE"
    EVENT_NOT_FOUND = "EVENT_NOT_FOUND"
    INVALID_UPDATE = "INVALID_UPDATE"


class OrchestrationError(Exception):
    """Error raised by a component and converted to a result dict at the service boundary."""

    def __init__(self, code: ErrorCode, message: str, **details: Any) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": False,
            "error": self.code.value,
            "message": self.message,
            "details": dict(self.details),
        }


class LockHeldError(OrchestrationError):
    """Domain is already locked by another agent."""

    def __init__(self, domain: str, held_by: str, lock_id: str, queue_position: int) -> None:
        super().__init__(
            ErrorCode.LOCK_HELD,
            f"Domain '{domain}' is locked by {held_by}",
            domain=domain,
            held_by=held_by,
            lock_id=lock_id,
            queue_position=queue_position,
        )
        self.domain = domain
        self.held_by = held_by
        self.queue_position = queue_position
