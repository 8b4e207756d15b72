"""Service layer helpers (settings persistence, batch checkpoints)."""

from .checkpoint import BatchCheckpoint, CheckpointStore, InterruptFlag
from .settings import Settings, SettingsStore, SecretVault

__all__ = [
    "BatchCheckpoint",
    "CheckpointStore",
    "InterruptFlag",
    "SecretVault",
    "Settings",
    "SettingsStore",
]
