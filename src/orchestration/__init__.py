"""Agent Orchestration Core: task decomposition, locking, checkpoints and telemetry."""

__version__ = "0.1.0"
