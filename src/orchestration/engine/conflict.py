"""Resource Lock Manager - Exclusive domain locks between agents.

Each domain (a named shared resource such as ``services`` or ``navigation``)
has at most one active lock. Denied requests are recorded in a per-domain
FIFO queue. Locks carry no TTL: a crashed holder keeps its lock until it is
released by an agent with an override role.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Collection, Mapping, Sequence
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Protocol

from orchestration.delegation.models import utc_now
from orchestration.errors import ErrorCode, LockHeldError, OrchestrationError
from orchestration.storage.documents import DocumentStore

logger = logging.getLogger(__name__)

LOCK_TABLE_KEY = "locks/table"

# Domains touched by each task or subtask type
TASK_DOMAINS: dict[str, tuple[str, ...]] = {
    "service_build": ("services", "models"),
    "component_build": ("components", "styles"),
    "feature_development": ("services", "components", "navigation"),
    "bug_fix": ("services",),
    "refactor": ("services", "components"),
    "performance_optimization": ("components", "services"),
    "test_coverage": ("tests",),
    "design_api": ("models",),
    "implement_service": ("services",),
    "implement_component": ("components",),
    "style_component": ("styles",),
    "write_tests": ("tests",),
    "integration_test": ("tests",),
    "e2e_test": ("tests",),
    "update_docs": ("docs",),
    "optimize_rendering": ("components",),
    "optimize_data_access": ("services",),
}


@dataclass
class Lock:
    """An exclusive lock on a domain."""

    id: str
    owner_agent: str
    domain: str
    acquired_at: str
    purpose: str = ""
    estimated_duration_ms: int | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Lock:
        if not isinstance(data, Mapping):
            raise TypeError(f"lock entry must be a mapping, got {type(data).__name__}")
        return cls(
            id=str(data["id"]),
            owner_agent=str(data["owner_agent"]),
            domain=str(data["domain"]),
            acquired_at=str(data["acquired_at"]),
            purpose=str(data.get("purpose") or ""),
            estimated_duration_ms=data.get("estimated_duration_ms"),
        )


@dataclass
class Waiter:
    """Queued lock request."""

    agent: str
    purpose: str
    requested_at: str
    estimated_duration_ms: int | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Waiter:
        if not isinstance(data, Mapping):
            raise TypeError(f"queued request must be a mapping, got {type(data).__name__}")
        return cls(
            agent=str(data["agent"]),
            purpose=str(data.get("purpose") or ""),
            requested_at=str(data.get("requested_at") or ""),
            estimated_duration_ms=data.get("estimated_duration_ms"),
        )


@dataclass
class ConflictAssessment:
    """Outcome of a conflict pre-check for a pending task."""

    can_proceed: bool
    policy: str
    target_domains: list[str]
    conflicts: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ConflictPolicy(Protocol):
    """Decides whether overlapping active locks block a pending task."""

    name: str

    def evaluate(
        self, target_domains: Sequence[str], conflicts: Sequence[Lock]
    ) -> ConflictAssessment: ...


class StrictConflictPolicy:
    """Any overlap with another agent's lock blocks the task."""

    name = "strict"

    def evaluate(
        self, target_domains: Sequence[str], conflicts: Sequence[Lock]
    ) -> ConflictAssessment:
        return ConflictAssessment(
            can_proceed=not conflicts,
            policy=self.name,
            target_domains=list(target_domains),
            conflicts=[_conflict_entry(lock) for lock in conflicts],
            warnings=[
                f"Blocked: domain '{lock.domain}' is locked by {lock.owner_agent}"
                for lock in conflicts
            ],
        )


class AdvisoryConflictPolicy:
    """Overlaps are reported as warnings but never block the task."""

    name = "advisory"

    def evaluate(
        self, target_domains: Sequence[str], conflicts: Sequence[Lock]
    ) -> ConflictAssessment:
        return ConflictAssessment(
            can_proceed=True,
            policy=self.name,
            target_domains=list(target_domains),
            conflicts=[_conflict_entry(lock) for lock in conflicts],
            warnings=[
                f"Domain '{lock.domain}' is locked by {lock.owner_agent} ({lock.purpose})"
                for lock in conflicts
            ],
        )


def policy_for(name: str) -> ConflictPolicy:
    if name == "strict":
        return StrictConflictPolicy()
    if name == "advisory":
        return AdvisoryConflictPolicy()
    raise ValueError(f"Unknown conflict policy: {name}")


def target_domains(task: Mapping[str, Any]) -> list[str]:
    """Domains a pending task will touch.

    Explicit ``domains`` win; otherwise they are looked up by the task's
    ``type`` or ``task_type``.
    """
    explicit = task.get("domains")
    if explicit:
        return sorted({str(d) for d in explicit})
    for key in ("type", "task_type"):
        value = task.get(key)
        if value and value in TASK_DOMAINS:
            return sorted(set(TASK_DOMAINS[value]))
    return []


def _conflict_entry(lock: Lock) -> dict[str, Any]:
    return {
        "domain": lock.domain,
        "held_by": lock.owner_agent,
        "lock_id": lock.id,
        "purpose": lock.purpose,
        "acquired_at": lock.acquired_at,
    }


class ResourceLockManager:
    """
    Grants and releases per-domain exclusive locks.

    State (active locks plus waiter queues) lives in one document. Every
    change is a read-modify-write inside a store transaction, so managers in
    different processes sharing one database still grant a domain only once.
    """

    def __init__(
        self,
        store: DocumentStore,
        policy: ConflictPolicy | None = None,
        override_roles: Collection[str] = ("orchestrator", "admin"),
        fifo_handoff: bool = False,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.policy = policy or AdvisoryConflictPolicy()
        self.override_roles = frozenset(override_roles)
        self.fifo_handoff = fifo_handoff
        self.clock = clock

    def acquire(
        self,
        agent: str,
        domain: str,
        purpose: str = "",
        estimated_duration_ms: int | None = None,
    ) -> Lock:
        """
        Acquire the lock on ``domain`` for ``agent``.

        Raises:
            LockHeldError: another agent holds the domain. The request is
                queued (once per agent) and its 1-based position reported.
        """
        with self.store.transaction():
            table = self._load()
            held = table["locks"].get(domain)
            if held is None:
                lock = self._grant(table, agent, domain, purpose, estimated_duration_ms)
                self._save(table)
                return lock

            lock = Lock.from_dict(held)
            if lock.owner_agent == agent:
                return lock
            queue = table["queues"].setdefault(domain, [])
            position = _queue_position(queue, agent)
            if position is None:
                queue.append(
                    asdict(
                        Waiter(
                            agent=agent,
                            purpose=purpose,
                            requested_at=self.clock().isoformat(),
                            estimated_duration_ms=estimated_duration_ms,
                        )
                    )
                )
                position = len(queue)
                self._save(table)

        # Raised after the transaction so the queued request is kept
        logger.warning(
            "Lock on %s denied to %s (held by %s, queue position %d)",
            domain,
            agent,
            lock.owner_agent,
            position,
        )
        raise LockHeldError(domain, lock.owner_agent, lock.id, position)

    def release(self, lock_id: str, agent: str) -> dict[str, Any]:
        """Release a lock. Only the owner or an override role may release."""
        with self.store.transaction():
            table = self._load()
            domain, held = _find_lock(table, lock_id)
            if held is None:
                raise OrchestrationError(
                    ErrorCode.LOCK_NOT_FOUND, f"Lock {lock_id} not found", lock_id=lock_id
                )
            lock = Lock.from_dict(held)
            overridden = lock.owner_agent != agent
            if overridden and agent not in self.override_roles:
                raise OrchestrationError(
                    ErrorCode.NOT_LOCK_OWNER,
                    f"{agent} cannot release lock {lock_id} held by {lock.owner_agent}",
                    lock_id=lock_id,
                    held_by=lock.owner_agent,
                )

            del table["locks"][domain]
            if overridden:
                logger.warning("Lock %s on %s force-released by %s", lock_id, domain, agent)
            else:
                logger.info("Lock %s on %s released by %s", lock_id, domain, agent)

            granted = self._handoff(table, domain) if self.fifo_handoff else None
            self._save(table)
            return {
                "released": asdict(lock),
                "overridden": overridden,
                "granted_to": asdict(granted) if granted else None,
            }

    def release_agent(self, agent: str) -> int:
        """Release every lock held by ``agent`` and drop its queued requests."""
        with self.store.transaction():
            table = self._load()
            domains = [d for d, held in table["locks"].items() if held["owner_agent"] == agent]
            for domain in domains:
                del table["locks"][domain]
            for queue in table["queues"].values():
                queue[:] = [w for w in queue if w["agent"] != agent]
            if self.fifo_handoff:
                for domain in domains:
                    self._handoff(table, domain)
            self._save(table)
        if domains:
            logger.info("Released %d lock(s) held by %s", len(domains), agent)
        return len(domains)

    def check_conflicts(
        self, task: Mapping[str, Any], agent: str | None = None
    ) -> ConflictAssessment:
        """Intersect the task's target domains with active locks held by others."""
        domains = target_domains(task)
        active = [Lock.from_dict(held) for held in self._load()["locks"].values()]
        conflicts = [
            lock
            for lock in active
            if lock.domain in domains and (agent is None or lock.owner_agent != agent)
        ]
        assessment = self.policy.evaluate(domains, conflicts)
        if conflicts:
            logger.info(
                "Conflict check (%s): %d overlapping lock(s), proceed=%s",
                self.policy.name,
                len(conflicts),
                assessment.can_proceed,
            )
        return assessment

    def active_locks(self) -> list[Lock]:
        return sorted(
            (Lock.from_dict(held) for held in self._load()["locks"].values()),
            key=lambda lock: lock.acquired_at,
        )

    def holder(self, domain: str) -> Lock | None:
        held = self._load()["locks"].get(domain)
        return Lock.from_dict(held) if held else None

    def queue(self, domain: str) -> list[Waiter]:
        return [Waiter.from_dict(w) for w in self._load()["queues"].get(domain, [])]

    def snapshot(self) -> dict[str, Any]:
        """Copy of the lock table for checkpoints."""
        return self._load()

    def get_stats(self) -> dict[str, Any]:
        table = self._load()
        locks = list(table["locks"].values())
        return {
            "total_locks": len(locks),
            "domains_locked": sorted(table["locks"]),
            "agents_with_locks": len({held["owner_agent"] for held in locks}),
            "queued_requests": sum(len(q) for q in table["queues"].values()),
            "policy": self.policy.name,
            "fifo_handoff": self.fifo_handoff,
        }

    def _grant(
        self,
        table: dict[str, Any],
        agent: str,
        domain: str,
        purpose: str,
        estimated_duration_ms: int | None,
    ) -> Lock:
        lock = Lock(
            id=f"lock-{uuid.uuid4().hex[:8]}",
            owner_agent=agent,
            domain=domain,
            acquired_at=self.clock().isoformat(),
            purpose=purpose,
            estimated_duration_ms=estimated_duration_ms,
        )
        table["locks"][domain] = asdict(lock)
        # A granted agent is no longer waiting
        queue = table["queues"].get(domain)
        if queue:
            queue[:] = [w for w in queue if w["agent"] != agent]
            if not queue:
                del table["queues"][domain]
        logger.info("Lock %s on %s granted to %s", lock.id, domain, agent)
        return lock

    def _handoff(self, table: dict[str, Any], domain: str) -> Lock | None:
        queue = table["queues"].get(domain)
        if not queue:
            return None
        waiter = Waiter.from_dict(queue[0])
        return self._grant(
            table, waiter.agent, domain, waiter.purpose, waiter.estimated_duration_ms
        )

    def _load(self) -> dict[str, Any]:
        """Lock table from the store; malformed entries are dropped with a warning."""
        table = self.store.read(LOCK_TABLE_KEY, {"locks": {}, "queues": {}})
        if not isinstance(table, dict):
            logger.warning("Corrupt lock table, starting empty")
            return {"locks": {}, "queues": {}}

        locks = table.get("locks")
        queues = table.get("queues")
        if not isinstance(locks, dict):
            locks = {}
        if not isinstance(queues, dict):
            queues = {}

        clean_locks = {}
        for domain, held in locks.items():
            try:
                clean_locks[domain] = asdict(Lock.from_dict(held))
            except (KeyError, TypeError):
                logger.warning("Dropping corrupt lock entry for domain %s", domain)
        clean_queues = {}
        for domain, waiting in queues.items():
            if not isinstance(waiting, list):
                logger.warning("Dropping corrupt lock queue for domain %s", domain)
                continue
            clean = []
            for waiter in waiting:
                try:
                    clean.append(asdict(Waiter.from_dict(waiter)))
                except (KeyError, TypeError):
                    logger.warning("Dropping corrupt queued request on domain %s", domain)
            if clean:
                clean_queues[domain] = clean
        return {"locks": clean_locks, "queues": clean_queues}

    def _save(self, table: dict[str, Any]) -> None:
        self.store.write(LOCK_TABLE_KEY, table)


def _queue_position(queue: Sequence[Mapping[str, Any]], agent: str) -> int | None:
    for idx, waiter in enumerate(queue, start=1):
        if waiter["agent"] == agent:
            return idx
    return None


def _find_lock(table: Mapping[str, Any], lock_id: str) -> tuple[str, dict[str, Any] | None]:
    for domain, held in table["locks"].items():
        if held["id"] == lock_id:
            return domain, held
    return "", None
