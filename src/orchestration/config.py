"""Settings loaded from ``config.toml`` and ``ORCH_*`` environment variables."""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_EXCLUDED_DIRS = frozenset(
    {
        ".git",
        ".hg",
        ".svn",
        ".checkpoints",
        ".orchestration",
        "node_modules",
        "build",
        "dist",
        "coverage",
        "__pycache__",
        ".venv",
        ".pytest_cache",
    }
)


@dataclass
class Settings:
    """Runtime configuration for the orchestration core."""

    data_dir: Path = field(default_factory=lambda: Path.home() / ".orchestration")
    project_root: Path = field(default_factory=Path.cwd)

    # Checkpoints
    checkpoint_retention: int = 10
    checkpoint_max_files: int = 500
    excluded_dirs: frozenset[str] = DEFAULT_EXCLUDED_DIRS

    # Reallocation
    deviation_threshold: float = 0.3

    # Telemetry
    telemetry_retention_days: int = 30
    telemetry_max_records: int = 1000
    suggestion_window: int = 100
    validation_threshold: int = 3
    mirror_validated_events: bool = True

    # Routing and locking
    use_managers: bool = True
    conflict_policy: str = "advisory"  # advisory | strict
    fifo_handoff: bool = False
    override_roles: frozenset[str] = frozenset({"orchestrator", "admin"})

    @property
    def config_path(self) -> Path:
        return self.data_dir / "config.toml"

    @classmethod
    def load(cls, data_dir: Path | None = None) -> Settings:
        """Build settings from defaults, then config.toml, then environment."""
        settings = cls()
        if env_dir := os.environ.get("ORCH_DATA_DIR"):
            settings.data_dir = Path(env_dir)
        if data_dir is not None:
            settings.data_dir = data_dir

        settings.apply(settings._read_toml())
        settings.apply(_from_env())
        return settings

    def apply(self, values: dict[str, Any]) -> None:
        """Overlay known keys onto this instance, coercing to the field types."""
        known = {f.name for f in fields(self)}
        for key, raw in values.items():
            if key not in known:
                logger.warning("Ignoring unknown setting %r", key)
                continue
            setattr(self, key, _coerce(key, raw, getattr(self, key)))

    def _read_toml(self) -> dict[str, Any]:
        path = self.config_path
        if not path.exists():
            return {}
        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError):
            logger.warning("Could not read %s, using defaults", path)
            return {}
        # Accept either a flat file or an [orchestration] table
        section = data.get("orchestration", data)
        return dict(section) if isinstance(section, dict) else {}


_ENV_PREFIX = "ORCH_"


def _from_env() -> dict[str, Any]:
    values: dict[str, Any] = {}
    for f in fields(Settings):
        if f.name == "data_dir":
            continue
        raw = os.environ.get(_ENV_PREFIX + f.name.upper())
        if raw is not None:
            values[f.name] = raw
    return values


def _coerce(key: str, raw: Any, current: Any) -> Any:
    if isinstance(current, bool):
        if isinstance(raw, str):
            return raw.strip().lower() in {"1", "true", "yes", "on"}
        return bool(raw)
    if isinstance(current, Path):
        return Path(raw).expanduser()
    if isinstance(current, frozenset):
        items = raw.split(",") if isinstance(raw, str) else raw
        return frozenset(str(item).strip() for item in items if str(item).strip())
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    if key == "conflict_policy" and str(raw) not in {"advisory", "strict"}:
        raise ValueError(f"conflict_policy must be 'advisory' or 'strict', got {raw!r}")
    return str(raw)
