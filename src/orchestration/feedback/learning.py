"""Learning events: qualitative observations that need peer validation.

An event becomes validated once at least ``threshold`` distinct validators
have judged it and more than half of them agree. At that point its
confidence is raised to ``min(0.95, confidence + 0.1 * agreements)`` and it
is copied into the validated collection (or moved there when mirroring is
off).
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime
from enum import StrEnum
from typing import Any

from orchestration.delegation.models import utc_now
from orchestration.errors import ErrorCode, OrchestrationError
from orchestration.storage.documents import DocumentStore

logger = logging.getLogger(__name__)

EVENTS_KEY = "learning/events"
VALIDATED_KEY = "learning/validated"

DEFAULT_THRESHOLD = 3
MAX_CONFIDENCE = 0.95


class LearningEventType(StrEnum):
    """Recognized kinds of learning event."""

    PATTERN_DISCOVERED = "pattern_discovered"
    ANTI_PATTERN = "anti_pattern"
    BEST_PRACTICE = "best_practice"
    PERFORMANCE_INSIGHT = "performance_insight"
    CONFLICT_RESOLUTION = "conflict_resolution"
    SKILL_GAP = "skill_gap"
    OPTIMIZATION = "optimization"


class LearningLog:
    """Persistent log of learning events and their validations."""

    def __init__(
        self,
        store: DocumentStore,
        threshold: int = DEFAULT_THRESHOLD,
        mirror_validated: bool = True,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if threshold < 1:
            raise ValueError(f"threshold must be >= 1, got {threshold}")
        self.store = store
        self.threshold = threshold
        self.mirror_validated = mirror_validated
        self.clock = clock

    def record(
        self,
        event_type: str,
        agent: str,
        context: str,
        insight: str,
        confidence: float = 0.5,
        sample_size: int = 1,
    ) -> dict[str, Any]:
        if event_type not in {t.value for t in LearningEventType}:
            raise OrchestrationError(
                ErrorCode.INVALID_EVENT_TYPE,
                f"Unknown learning event type: {event_type}",
                event_type=event_type,
                valid_types=[t.value for t in LearningEventType],
            )
        if not 0.0 <= confidence <= 1.0:
            raise ValueError(f"confidence must be in [0.0, 1.0], got {confidence}")

        event = {
            "id": f"learn-{uuid.uuid4().hex[:8]}",
            "timestamp": self.clock().isoformat(),
            "type": event_type,
            "agent": agent,
            "context": context,
            "insight": insight,
            "confidence": confidence,
            "sample_size": max(1, int(sample_size)),
            "validations": [],
            "validated": False,
            "validated_at": None,
        }
        with self.store.transaction():
            events = self._events(EVENTS_KEY)
            events.append(event)
            self.store.write(EVENTS_KEY, events)
        logger.info("Learning event %s (%s) recorded by %s", event["id"], event_type, agent)
        return event

    def validate(
        self, event_id: str, validator: str, agrees: bool, notes: str = ""
    ) -> dict[str, Any]:
        """Add or replace ``validator``'s judgment of an event."""
        with self.store.transaction():
            events = self._events(EVENTS_KEY)
            validated = self._events(VALIDATED_KEY)
            event = _find(events, event_id)
            in_validated_only = False
            if event is None:
                event = _find(validated, event_id)
                in_validated_only = event is not None
            if event is None:
                raise OrchestrationError(
                    ErrorCode.EVENT_NOT_FOUND,
                    f"Learning event {event_id} not found",
                    event_id=event_id,
                )

            judgments = [v for v in event["validations"] if v["validator"] != validator]
            judgments.append(
                {
                    "validator": validator,
                    "agrees": bool(agrees),
                    "notes": notes,
                    "timestamp": self.clock().isoformat(),
                }
            )
            event["validations"] = judgments

            became_valid = False
            if not event["validated"]:
                agree_count = sum(1 for v in judgments if v["agrees"])
                if len(judgments) >= self.threshold and agree_count / len(judgments) > 0.5:
                    event["validated"] = True
                    event["validated_at"] = self.clock().isoformat()
                    event["confidence"] = min(
                        MAX_CONFIDENCE, event["confidence"] + 0.1 * agree_count
                    )
                    became_valid = True

            if became_valid:
                validated.append(dict(event))
                if not self.mirror_validated:
                    events = [e for e in events if e["id"] != event_id]
                logger.info(
                    "Learning event %s validated (confidence %.2f)",
                    event_id,
                    event["confidence"],
                )
            elif event["validated"] and not in_validated_only:
                # Keep the validated copy in step with later judgments
                mirrored = _find(validated, event_id)
                if mirrored is not None:
                    mirrored["validations"] = list(judgments)

            self.store.write_many({EVENTS_KEY: events, VALIDATED_KEY: validated})
            return dict(event)

    def events(self) -> list[dict[str, Any]]:
        return self._events(EVENTS_KEY)

    def validated_events(self) -> list[dict[str, Any]]:
        return self._events(VALIDATED_KEY)

    def _events(self, key: str) -> list[dict[str, Any]]:
        events = self.store.read(key, [])
        if not isinstance(events, list):
            logger.warning("Corrupt learning log %s, starting empty", key)
            return []
        kept = [event for event in events if _sound_event(event)]
        if len(kept) != len(events):
            logger.warning("Dropped %d corrupt event(s) from %s", len(events) - len(kept), key)
        return kept


def _find(events: list[dict[str, Any]], event_id: str) -> dict[str, Any] | None:
    for event in events:
        if event.get("id") == event_id:
            return event
    return None


def _sound_event(event: Any) -> bool:
    if not isinstance(event, dict):
        return False
    if not all(isinstance(event.get(f), str) for f in ("id", "type", "agent", "context", "insight")):
        return False
    confidence = event.get("confidence")
    if not isinstance(confidence, (int, float)) or isinstance(confidence, bool):
        return False
    judgments = event.get("validations")
    if not isinstance(judgments, list) or not isinstance(event.get("validated"), bool):
        return False
    return all(isinstance(v, dict) and "validator" in v and "agrees" in v for v in judgments)
