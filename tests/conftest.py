"""Shared fixtures for orchestration tests."""

from __future__ import annotations

import tempfile
from collections.abc import Iterator
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from orchestration.storage.documents import MemoryDocumentStore


class FakeClock:
    """Settable UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def temp_data_dir() -> Iterator[Path]:
    """Create a temporary data directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> MemoryDocumentStore:
    return MemoryDocumentStore()


@pytest.fixture
def project_dir(temp_data_dir: Path) -> Path:
    """Small project tree for checkpoint tests."""
    root = temp_data_dir / "project"
    (root / "src" / "services").mkdir(parents=True)
    (root / "node_modules" / "dep").mkdir(parents=True)
    (root / "README.md").write_text("# demo\n")
    (root / "src" / "app.py").write_text("print('app')\n")
    (root / "src" / "services" / "auth.py").write_text("def login(): ...\n")
    (root / "node_modules" / "dep" / "index.js").write_text("module.exports = {}\n")
    return root
