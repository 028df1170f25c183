"""File digests and VCS revision lookup for checkpoints."""

from __future__ import annotations

import hashlib
import logging
import os
import subprocess
from collections.abc import Collection, Iterable
from pathlib import Path, PurePosixPath

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


def file_digest(path: Path) -> str:
    """SHA-256 hex digest of a file's bytes."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def module_of(path: str) -> str:
    """Module a file belongs to: its parent directory, or ``.`` at the root."""
    parent = str(PurePosixPath(path).parent)
    return parent if parent else "."


class FileSnapshotter:
    """Collects and hashes a bounded, filtered set of project files."""

    def __init__(
        self,
        root: Path,
        excluded_dirs: Collection[str],
        max_files: int = 500,
    ) -> None:
        if max_files <= 0:
            raise ValueError(f"max_files must be positive, got {max_files}")
        self.root = root
        self.excluded_dirs = frozenset(excluded_dirs)
        self.max_files = max_files

    def collect(self) -> list[str]:
        """Relative POSIX paths, sorted, capped at ``max_files``."""
        if not self.root.is_dir():
            logger.warning("Checkpoint root %s is not a directory", self.root)
            return []

        found: list[str] = []
        for dirpath, dirnames, filenames in os.walk(self.root):
            dirnames[:] = sorted(d for d in dirnames if d not in self.excluded_dirs)
            base = Path(dirpath)
            for name in sorted(filenames):
                found.append((base / name).relative_to(self.root).as_posix())

        found.sort()
        if len(found) > self.max_files:
            logger.info(
                "Checkpoint file set capped at %d of %d files", self.max_files, len(found)
            )
        return found[: self.max_files]

    def digest(self, paths: Iterable[str]) -> dict[str, str | None]:
        """Digest each relative path; files that are gone map to None."""
        hashes: dict[str, str | None] = {}
        for rel in paths:
            target = self.root / rel
            try:
                hashes[rel] = file_digest(target)
            except FileNotFoundError:
                hashes[rel] = None
            except OSError:
                logger.warning("Could not read %s for checkpoint", target)
                hashes[rel] = None
        return hashes

    def snapshot(self) -> dict[str, str]:
        return {path: h for path, h in self.digest(self.collect()).items() if h is not None}


def git_revision(root: Path) -> str | None:
    """Current ``HEAD`` commit, or None when git or the repo is unavailable."""
    try:
        result = subprocess.run(
            ["git", "rev-parse", "HEAD"],
            cwd=root,
            capture_output=True,
            text=True,
            timeout=5,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired):
        return None
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None
