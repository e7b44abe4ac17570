"""Durable checkpoint that lets an interrupted session resume.

The checkpoint is a single JSON record, replaced atomically on every phase
transition.  It drives resume only; the controller never branches on it
during a live session.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from ralph_supervised.constants import (
    CHECKPOINT_STATUSES,
    PHASE_REVIEW,
    RESUMABLE_STATUSES,
    STATUS_ITERATION_COMPLETE,
)
from ralph_supervised.models import Checkpoint
from ralph_supervised.utils import _load_json_if_exists, _utc_now, _write_json


def _parse_checkpoint(payload: Any) -> Checkpoint | None:
    if not isinstance(payload, dict):
        return None
    try:
        iteration = int(payload.get("last_iteration"))
    except (TypeError, ValueError):
        return None
    status = str(payload.get("status", "")).strip()
    if status not in CHECKPOINT_STATUSES or iteration < 0:
        return None
    return Checkpoint(
        iteration=iteration,
        phase=str(payload.get("last_phase", "")).strip(),
        status=status,
        timestamp=str(payload.get("timestamp", "")).strip(),
        session_id=str(payload.get("session_id", "")).strip(),
        log_dir=str(payload.get("log_dir", "")).strip(),
    )


def load_checkpoint(state_path: Path) -> Checkpoint | None:
    return _parse_checkpoint(_load_json_if_exists(state_path))


def resume_iteration(checkpoint: Checkpoint | None) -> int | None:
    """Iteration a resumed session should start from, or ``None`` to start fresh."""
    if checkpoint is None or checkpoint.status not in RESUMABLE_STATUSES:
        return None
    # Only an approved review finishes an iteration; a paused or failed one is reviewed again.
    if checkpoint.phase == PHASE_REVIEW and checkpoint.status == STATUS_ITERATION_COMPLETE:
        return checkpoint.iteration + 1
    return max(1, checkpoint.iteration)


class StateTracker:
    def __init__(self, state_path: Path, *, session_id: str, log_dir: Path) -> None:
        self.state_path = state_path
        self.session_id = session_id
        self.log_dir = log_dir

    def checkpoint(self, iteration: int, phase: str, status: str) -> Checkpoint:
        if status not in CHECKPOINT_STATUSES:
            raise ValueError(f"unknown checkpoint status '{status}'")
        record = Checkpoint(
            iteration=iteration,
            phase=phase,
            status=status,
            timestamp=_utc_now(),
            session_id=self.session_id,
            log_dir=str(self.log_dir),
        )
        _write_json(self.state_path, record.payload())
        return record

    def load(self) -> Checkpoint | None:
        return load_checkpoint(self.state_path)

    def load_for_resume(self) -> int | None:
        return resume_iteration(self.load())
