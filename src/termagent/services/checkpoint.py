"""Progress checkpoints for long-running batch work and the shared interrupt flag.

The orchestrator consumes only :class:`InterruptFlag` (as its
``should_interrupt`` predicate); batch jobs persist their progress with
:class:`CheckpointStore` after each unit of work so they can resume.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping

__all__ = ["BatchCheckpoint", "CheckpointStore", "InterruptFlag"]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class BatchCheckpoint:
    """Resumable progress of a multi-phase batch job."""

    phase_index: int = 0
    per_phase_progress: Dict[str, int] = field(default_factory=dict)
    processed_item_ids: List[str] = field(default_factory=list)

    def is_processed(self, item_id: str) -> bool:
        return item_id in self.processed_item_ids

    def to_payload(self) -> Dict[str, Any]:
        return {
            "phaseIndex": self.phase_index,
            "perPhaseProgress": dict(self.per_phase_progress),
            "processedItemIds": list(self.processed_item_ids),
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "BatchCheckpoint":
        progress = payload.get("perPhaseProgress") or {}
        return cls(
            phase_index=int(payload.get("phaseIndex") or 0),
            per_phase_progress={str(key): int(value) for key, value in dict(progress).items()},
            processed_item_ids=[str(item) for item in payload.get("processedItemIds") or []],
        )


class CheckpointStore:
    """Reads and atomically writes one checkpoint file."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    def load(self) -> BatchCheckpoint | None:
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except json.JSONDecodeError as exc:
            LOGGER.warning("Ignoring unreadable checkpoint %s: %s", self.path, exc)
            return None
        if not isinstance(payload, Mapping):
            LOGGER.warning("Ignoring malformed checkpoint %s", self.path)
            return None
        return BatchCheckpoint.from_payload(payload)

    def save(self, checkpoint: BatchCheckpoint) -> Path:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(checkpoint.to_payload(), indent=2), encoding="utf-8")
        tmp_path.replace(self.path)
        return self.path

    def record(self, checkpoint: BatchCheckpoint, item_id: str, *, phase: str | None = None) -> BatchCheckpoint:
        """Mark *item_id* processed and persist immediately."""

        if item_id not in checkpoint.processed_item_ids:
            checkpoint.processed_item_ids.append(item_id)
        key = phase if phase is not None else str(checkpoint.phase_index)
        checkpoint.per_phase_progress[key] = checkpoint.per_phase_progress.get(key, 0) + 1
        self.save(checkpoint)
        return checkpoint

    def advance_phase(self, checkpoint: BatchCheckpoint) -> BatchCheckpoint:
        checkpoint.phase_index += 1
        self.save(checkpoint)
        return checkpoint

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass


class InterruptFlag:
    """Thread-safe cooperative interrupt flag; callable as ``should_interrupt()``."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def set(self) -> None:
        self._event.set()

    def clear(self) -> None:
        self._event.clear()

    def should_interrupt(self) -> bool:
        return self._event.is_set()

    def __call__(self) -> bool:
        return self.should_interrupt()
