"""Ralph supervisor utility functions — timestamps, atomic writes, and session logs."""

from __future__ import annotations

import json
import os
import tempfile
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ralph_supervised.constants import (
    INVOCATION_LOG_NAME,
    LOG_NAME_UNSAFE_PATTERN,
    SESSION_LOG_NAME,
)


# ---------------------------------------------------------------------------
# Timestamp helpers
# ---------------------------------------------------------------------------


def _utc_now() -> str:
    return (
        datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")
    )


def _local_now_text() -> str:
    return datetime.now().astimezone().strftime("%a %b %d %H:%M:%S %Z %Y")


def _generate_session_id() -> str:
    timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    suffix = uuid.uuid4().hex[:6]
    return f"{timestamp}-{suffix}"


# ---------------------------------------------------------------------------
# File helpers
# ---------------------------------------------------------------------------


def _write_text_atomic(path: Path, content: str) -> None:
    """Write ``content`` to ``path`` so readers see either the old or the new file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def _write_json(path: Path, payload: dict[str, Any]) -> None:
    _write_text_atomic(path, json.dumps(payload, indent=2) + "\n")


def _write_text_exclusive(path: Path, content: str) -> None:
    """Create ``path`` with ``content``; never overwrite an existing file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(content)


def _load_json_if_exists(path: Path) -> Any:
    if not path.exists():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except Exception:
        return None


def _safe_read_text(path: Path) -> str:
    if not path.exists():
        return ""
    try:
        return path.read_text(encoding="utf-8").strip()
    except Exception:
        return ""


def _normalize_space(value: Any) -> str:
    return str(value).strip() if value is not None else ""


def _log_name(description: str) -> str:
    """Filename-safe form of an invocation description ("Grandma review 3" -> "Grandma-review-3")."""
    return LOG_NAME_UNSAFE_PATTERN.sub("", description.replace(" ", "-"))


# ---------------------------------------------------------------------------
# Session logging
# ---------------------------------------------------------------------------


def _append_log(log_dir: Path, message: str) -> None:
    log_path = log_dir / SESSION_LOG_NAME
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with log_path.open("a", encoding="utf-8") as handle:
        handle.write(f"{_utc_now()} {message}\n")


def _append_invocation_record(log_dir: Path, payload: dict[str, Any]) -> None:
    record_path = log_dir / INVOCATION_LOG_NAME
    record_path.parent.mkdir(parents=True, exist_ok=True)
    with record_path.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(payload, sort_keys=True) + "\n")
