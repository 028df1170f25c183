"""Checkpoints: immutable snapshots with diff and rollback planning."""

from orchestration.checkpoint.snapshot import FileSnapshotter, file_digest, git_revision
from orchestration.checkpoint.store import Checkpoint, CheckpointDiff, CheckpointStore

__all__ = [
    "Checkpoint",
    "CheckpointDiff",
    "CheckpointStore",
    "FileSnapshotter",
    "file_digest",
    "git_revision",
]
