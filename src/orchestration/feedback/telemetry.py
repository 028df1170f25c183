"""Execution telemetry: efficiency scoring and incremental aggregates.

Records are appended to a bounded log (retention window plus a count cap)
and folded into running aggregates per day, task type, agent and layer.
Aggregates are updated in place with a running mean, never recomputed from
the log.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Mapping
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any

from orchestration.delegation.models import parse_timestamp, utc_now
from orchestration.storage.documents import DocumentStore

logger = logging.getLogger(__name__)

RECORDS_KEY = "telemetry/records"
AGGREGATES_KEY = "telemetry/aggregates"

DEFAULT_RETENTION_DAYS = 30
DEFAULT_MAX_RECORDS = 1000

AGGREGATE_DIMENSIONS = ("daily", "by_task_type", "by_agent", "by_layer")

# Keyword -> architectural layer, checked in order
LAYER_KEYWORDS: tuple[tuple[str, str], ...] = (
    ("test", "quality"),
    ("review", "quality"),
    ("frontend", "presentation"),
    ("ui", "presentation"),
    ("backend", "service"),
    ("api", "service"),
    ("data", "data"),
    ("performance", "performance"),
    ("writer", "documentation"),
)


def efficiency_score(
    success: bool, error_count: int = 0, conflict_count: int = 0, parallel_agents: int = 1
) -> float:
    """
    Efficiency in [0, 1.5]:

        1.0
        x 0.5                                 if the execution failed
        x max(0.5, 1 - 0.1 * errors)
        x max(0.5, 1 - 0.15 * conflicts)
        x min(1.5, 1 + 0.2 * (parallel - 1))  if more than one agent ran
    """
    score = 1.0
    if not success:
        score *= 0.5
    score *= max(0.5, 1 - 0.1 * max(0, error_count))
    score *= max(0.5, 1 - 0.15 * max(0, conflict_count))
    if parallel_agents > 1:
        score *= min(1.5, 1 + 0.2 * (parallel_agents - 1))
    return round(score, 2)


def infer_layer(agent: str) -> str:
    name = agent.lower()
    for keyword, layer in LAYER_KEYWORDS:
        if keyword in name:
            return layer
    return "general"


@dataclass(frozen=True)
class TelemetryRecord:
    """Outcome metrics of one execution."""

    id: str
    timestamp: str
    execution_id: str
    task_type: str
    agent: str
    success: bool
    duration_ms: int
    error_count: int
    conflict_count: int
    parallel_agents: int
    efficiency_score: float
    layer: str = "general"

    def __post_init__(self) -> None:
        for name in ("duration_ms", "error_count", "conflict_count"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0, got {getattr(self, name)}")
        if self.parallel_agents < 1:
            raise ValueError(f"parallel_agents must be >= 1, got {self.parallel_agents}")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class TelemetryAggregator:
    """Stores execution metrics and maintains running aggregates."""

    def __init__(
        self,
        store: DocumentStore,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        max_records: int = DEFAULT_MAX_RECORDS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.retention = timedelta(days=retention_days)
        self.max_records = max_records
        self.clock = clock

    def record_execution_metric(self, payload: Mapping[str, Any]) -> TelemetryRecord:
        """Append one execution outcome; the efficiency score is always derived."""
        now = self.clock()
        agent = str(payload.get("agent") or "unknown")
        success = bool(payload.get("success", False))
        error_count = int(payload.get("error_count", 0))
        conflict_count = int(payload.get("conflict_count", 0))
        parallel_agents = int(payload.get("parallel_agents", 1))

        record = TelemetryRecord(
            id=f"metric-{uuid.uuid4().hex[:8]}",
            timestamp=now.isoformat(),
            execution_id=str(payload.get("execution_id") or "unknown"),
            task_type=str(payload.get("task_type") or "unknown"),
            agent=agent,
            success=success,
            duration_ms=int(payload.get("duration_ms", 0)),
            error_count=error_count,
            conflict_count=conflict_count,
            parallel_agents=parallel_agents,
            efficiency_score=efficiency_score(
                success, error_count, conflict_count, parallel_agents
            ),
            layer=str(payload.get("layer") or infer_layer(agent)),
        )

        with self.store.transaction():
            records = self._records()
            records.append(record.to_dict())
            records = self._prune(records, now)
            aggregates = self._aggregates()
            _fold(aggregates, record)
            self.store.write_many({RECORDS_KEY: records, AGGREGATES_KEY: aggregates})

        logger.info(
            "Recorded %s for %s (efficiency %.2f)",
            record.task_type,
            record.execution_id,
            record.efficiency_score,
        )
        return record

    def recent(self, limit: int | None = None) -> list[dict[str, Any]]:
        """Stored records, newest first."""
        records = self._records()
        records.reverse()
        return records if limit is None else records[:limit]

    def aggregates(self) -> dict[str, Any]:
        return self._aggregates()

    def _prune(self, records: list[dict[str, Any]], now: datetime) -> list[dict[str, Any]]:
        cutoff = now - self.retention
        kept = []
        for rec in records:
            stamp = parse_timestamp(rec.get("timestamp"))
            if stamp is not None and stamp >= cutoff:
                kept.append(rec)
        pruned = len(records) - len(kept)
        if len(kept) > self.max_records:
            pruned += len(kept) - self.max_records
            kept = kept[-self.max_records :]
        if pruned:
            logger.debug("Pruned %d telemetry record(s)", pruned)
        return kept

    def _records(self) -> list[dict[str, Any]]:
        records = self.store.read(RECORDS_KEY, [])
        if not isinstance(records, list):
            logger.warning("Corrupt telemetry log, starting empty")
            return []
        kept = [rec for rec in records if _sound_record(rec)]
        if len(kept) != len(records):
            logger.warning("Dropped %d corrupt telemetry record(s)", len(records) - len(kept))
        return kept

    def _aggregates(self) -> dict[str, Any]:
        aggregates = self.store.read(AGGREGATES_KEY, {})
        if not isinstance(aggregates, dict):
            logger.warning("Corrupt telemetry aggregates, starting empty")
            aggregates = {}
        for dimension in AGGREGATE_DIMENSIONS:
            buckets = aggregates.get(dimension)
            if not isinstance(buckets, dict):
                buckets = aggregates[dimension] = {}
            for key in [k for k, bucket in buckets.items() if not _sound_bucket(bucket)]:
                logger.warning("Dropped corrupt %s aggregate %s", dimension, key)
                del buckets[key]
        return aggregates


def _fold(aggregates: dict[str, Any], record: TelemetryRecord) -> None:
    keys = {
        "daily": record.timestamp[:10],
        "by_task_type": record.task_type,
        "by_agent": record.agent,
        "by_layer": record.layer,
    }
    for dimension, key in keys.items():
        bucket = aggregates[dimension].setdefault(
            key,
            {
                "count": 0,
                "successes": 0,
                "errors": 0,
                "conflicts": 0,
                "mean_efficiency": 0.0,
                "mean_duration_ms": 0.0,
            },
        )
        bucket["count"] += 1
        n = bucket["count"]
        bucket["successes"] += 1 if record.success else 0
        bucket["errors"] += record.error_count
        bucket["conflicts"] += record.conflict_count
        bucket["mean_efficiency"] += (record.efficiency_score - bucket["mean_efficiency"]) / n
        bucket["mean_duration_ms"] += (record.duration_ms - bucket["mean_duration_ms"]) / n


def _numeric(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _sound_bucket(bucket: Any) -> bool:
    if not isinstance(bucket, dict):
        return False
    fields = ("count", "successes", "errors", "conflicts", "mean_efficiency", "mean_duration_ms")
    return all(_numeric(bucket.get(field)) for field in fields)


def _sound_record(rec: Any) -> bool:
    if not isinstance(rec, dict):
        return False
    if not all(isinstance(rec.get(field), str) for field in ("timestamp", "task_type", "agent")):
        return False
    try:
        parse_timestamp(rec["timestamp"])
    except ValueError:
        return False
    numbers = ("efficiency_score", "error_count", "conflict_count")
    return isinstance(rec.get("success"), bool) and all(_numeric(rec.get(f)) for f in numbers)
