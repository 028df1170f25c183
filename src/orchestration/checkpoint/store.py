"""Checkpoint Store - Immutable snapshots used as rollback reference points.

A checkpoint records content digests of the project files, the VCS
revision when one is available, and a copy of the execution and lock state.
Records are written together with the index in one atomic store write and
are never modified afterwards. Once more than ``retention`` checkpoints
exist the oldest (by creation order) is evicted.

Rollback is planned here but never performed: the plan always requires
approval from outside this component.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Mapping
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from orchestration.checkpoint.snapshot import FileSnapshotter, git_revision, module_of
from orchestration.delegation.models import utc_now
from orchestration.errors import ErrorCode, OrchestrationError
from orchestration.storage.documents import DocumentStore

logger = logging.getLogger(__name__)

INDEX_KEY = "checkpoints/index"
RECORD_PREFIX = "checkpoints/"
DEFAULT_RETENTION = 10


@dataclass(frozen=True)
class Checkpoint:
    """Immutable snapshot record."""

    id: str
    timestamp: str
    triggering_agent: str
    trigger: str
    ethical_clearance: bool
    file_hashes: dict[str, str]
    orchestration_snapshot: dict[str, Any]
    vcs_revision: str | None = None
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Checkpoint:
        if not isinstance(data, Mapping):
            raise TypeError(f"checkpoint record must be a mapping, got {type(data).__name__}")
        file_hashes = data.get("file_hashes") or {}
        snapshot = data.get("orchestration_snapshot") or {}
        if not isinstance(file_hashes, Mapping) or not isinstance(snapshot, Mapping):
            raise TypeError("file_hashes and orchestration_snapshot must be mappings")
        return cls(
            id=str(data["id"]),
            timestamp=str(data["timestamp"]),
            triggering_agent=str(data["triggering_agent"]),
            trigger=str(data["trigger"]),
            ethical_clearance=data["ethical_clearance"] is True,
            file_hashes={str(path): str(digest) for path, digest in file_hashes.items()},
            orchestration_snapshot=dict(snapshot),
            vcs_revision=data.get("vcs_revision"),
            description=data.get("description", ""),
        )

    def summary(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "triggering_agent": self.triggering_agent,
            "trigger": self.trigger,
            "ethical_clearance": self.ethical_clearance,
            "file_count": len(self.file_hashes),
            "vcs_revision": self.vcs_revision,
            "description": self.description,
        }


@dataclass
class CheckpointDiff:
    checkpoint_id: str
    modified: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    unchanged_count: int = 0
    modules: dict[str, dict[str, int]] = field(default_factory=dict)
    recorded_revision: str | None = None
    current_revision: str | None = None

    @property
    def has_changes(self) -> bool:
        return bool(self.modified or self.deleted)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["has_changes"] = self.has_changes
        data["revision_changed"] = (
            self.recorded_revision is not None
            and self.current_revision is not None
            and self.recorded_revision != self.current_revision
        )
        return data


class CheckpointStore:
    """Creates, lists, compares and evicts checkpoints."""

    def __init__(
        self,
        store: DocumentStore,
        snapshotter: FileSnapshotter,
        state_provider: Callable[[], dict[str, Any]],
        retention: int = DEFAULT_RETENTION,
        revision_lookup: Callable[[Path], str | None] = git_revision,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if retention <= 0:
            raise ValueError(f"retention must be positive, got {retention}")
        self.store = store
        self.snapshotter = snapshotter
        self.state_provider = state_provider
        self.retention = retention
        self.revision_lookup = revision_lookup
        self.clock = clock

    def create(
        self,
        agent: str,
        trigger: str = "manual",
        ethical_clearance: bool = False,
        description: str = "",
    ) -> Checkpoint:
        now = self.clock()
        checkpoint = Checkpoint(
            id=f"cp-{now.strftime('%Y%m%d%H%M%S')}-{uuid.uuid4().hex[:6]}",
            timestamp=now.isoformat(),
            triggering_agent=agent,
            trigger=trigger,
            ethical_clearance=ethical_clearance,
            file_hashes=self.snapshotter.snapshot(),
            orchestration_snapshot=self.state_provider(),
            vcs_revision=self._revision(),
            description=description,
        )

        with self.store.transaction():
            index = self._index()
            index.append(checkpoint.id)
            evicted = index[: max(0, len(index) - self.retention)]
            index = index[len(evicted) :]
            self.store.write_many(
                {RECORD_PREFIX + checkpoint.id: checkpoint.to_dict(), INDEX_KEY: index},
                delete=tuple(RECORD_PREFIX + cp_id for cp_id in evicted),
            )

        logger.info(
            "Checkpoint %s created by %s (%s, %d files)",
            checkpoint.id,
            agent,
            trigger,
            len(checkpoint.file_hashes),
        )
        for cp_id in evicted:
            logger.info("Checkpoint %s evicted (retention %d)", cp_id, self.retention)
        return checkpoint

    def list_all(self) -> list[Checkpoint]:
        """Checkpoints newest first."""
        records = [self._read(cp_id) for cp_id in reversed(self._index())]
        return [cp for cp in records if cp is not None]

    def get(self, checkpoint_id: str) -> Checkpoint:
        if checkpoint_id in self._index():
            checkpoint = self._read(checkpoint_id)
            if checkpoint is not None:
                return checkpoint
        raise OrchestrationError(
            ErrorCode.CHECKPOINT_NOT_FOUND,
            f"Checkpoint {checkpoint_id} not found",
            checkpoint_id=checkpoint_id,
        )

    def delete(self, checkpoint_id: str) -> None:
        with self.store.transaction():
            index = self._index()
            if checkpoint_id not in index:
                raise OrchestrationError(
                    ErrorCode.CHECKPOINT_NOT_FOUND,
                    f"Checkpoint {checkpoint_id} not found",
                    checkpoint_id=checkpoint_id,
                )
            index.remove(checkpoint_id)
            self.store.write_many({INDEX_KEY: index}, delete=(RECORD_PREFIX + checkpoint_id,))
        logger.info("Checkpoint %s deleted", checkpoint_id)

    def compare(self, checkpoint_id: str) -> CheckpointDiff:
        """Diff the recorded file set against the files as they are now."""
        checkpoint = self.get(checkpoint_id)
        current = self.snapshotter.digest(checkpoint.file_hashes)
        diff = CheckpointDiff(
            checkpoint_id=checkpoint.id,
            recorded_revision=checkpoint.vcs_revision,
            current_revision=self._revision(),
        )

        for path, recorded in sorted(checkpoint.file_hashes.items()):
            now_hash = current.get(path)
            module = diff.modules.setdefault(
                module_of(path), {"modified": 0, "deleted": 0, "unchanged": 0}
            )
            if now_hash is None:
                diff.deleted.append(path)
                module["deleted"] += 1
            elif now_hash != recorded:
                diff.modified.append(path)
                module["modified"] += 1
            else:
                diff.unchanged_count += 1
                module["unchanged"] += 1
        return diff

    def prepare_rollback(self, checkpoint_id: str) -> dict[str, Any]:
        """Plan a rollback to ``checkpoint_id`` without touching any file."""
        checkpoint = self.get(checkpoint_id)
        diff = self.compare(checkpoint_id)

        warnings: list[str] = []
        if not checkpoint.ethical_clearance:
            warnings.append("Checkpoint has no ethical clearance")
        if diff.deleted:
            warnings.append(f"{len(diff.deleted)} file(s) were deleted since the checkpoint")
        if not diff.has_changes:
            warnings.append("No file changes since the checkpoint")
        if diff.to_dict()["revision_changed"]:
            warnings.append(
                f"VCS revision moved from {diff.recorded_revision} to {diff.current_revision}"
            )
        execution = _mapping(checkpoint.orchestration_snapshot.get("execution"))
        if execution.get("status") == "in_progress":
            warnings.append(f"Execution {execution.get('id')} was in progress at checkpoint time")
        locks = _mapping(_mapping(checkpoint.orchestration_snapshot.get("locks")).get("locks"))
        if locks:
            warnings.append(f"{len(locks)} domain lock(s) were held at checkpoint time")

        return {
            "target": checkpoint.summary(),
            "diff": diff.to_dict(),
            "warnings": warnings,
            "requires_approval": True,
        }

    def get_last_validated(self) -> Checkpoint:
        for checkpoint in self.list_all():
            if checkpoint.ethical_clearance:
                return checkpoint
        raise OrchestrationError(
            ErrorCode.NO_VALIDATED_CHECKPOINT, "No checkpoint with ethical clearance"
        )

    def _index(self) -> list[str]:
        index = self.store.read(INDEX_KEY, [])
        if not isinstance(index, list):
            logger.warning("Corrupt checkpoint index, starting empty")
            return []
        return [str(cp_id) for cp_id in index]

    def _read(self, checkpoint_id: str) -> Checkpoint | None:
        data = self.store.read(RECORD_PREFIX + checkpoint_id)
        if not data:
            logger.warning("Checkpoint %s is in the index but has no record", checkpoint_id)
            return None
        try:
            return Checkpoint.from_dict(data)
        except (KeyError, TypeError, ValueError, AttributeError):
            logger.warning("Corrupt checkpoint record %s", checkpoint_id)
            return None

    def _revision(self) -> str | None:
        try:
            return self.revision_lookup(self.snapshotter.root)
        except Exception:
            logger.debug("VCS revision lookup failed", exc_info=True)
            return None


def _mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}
