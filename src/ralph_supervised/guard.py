"""Single-instance locking, startup validation, and run-identity archival."""

from __future__ import annotations

import json
import os
import shutil
import socket
import tempfile
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date
from pathlib import Path
from typing import Any

from ralph_supervised.constants import (
    ARCHIVE_IDENTITY_PREFIX,
    REQUIRED_PROMPT_FILES,
)
from ralph_supervised.models import (
    AlreadyRunning,
    SupervisorConfig,
    ValidationError,
    WorkspacePaths,
)
from ralph_supervised.runners import _build_agent_argv, _find_timeout_utility
from ralph_supervised.utils import (
    _local_now_text,
    _normalize_space,
    _safe_read_text,
    _utc_now,
    _write_text_atomic,
)


# ---------------------------------------------------------------------------
# Locking
# ---------------------------------------------------------------------------


def _read_lock_payload(lock_path: Path) -> dict[str, Any]:
    if not lock_path.exists():
        return {}
    try:
        loaded = json.loads(lock_path.read_text(encoding="utf-8"))
    except Exception:
        return {}
    if not isinstance(loaded, dict):
        return {}
    return loaded


def _is_process_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _lock_is_stale(payload: dict[str, Any]) -> bool:
    """A lock is stale only when its holder provably no longer exists."""
    if not payload:
        return False
    if str(payload.get("host", "")) != socket.gethostname():
        return False
    try:
        holder_pid = int(payload.get("pid"))
    except (TypeError, ValueError):
        return False
    return not _is_process_alive(holder_pid)


def _write_lock_payload_exclusive(lock_path: Path, payload: dict[str, Any]) -> None:
    """Publish a fully written lock file, or raise ``FileExistsError``.

    The payload goes to a private temp file first and is then hard-linked into
    place, so other processes never observe a half-written lock.
    """
    rendered = json.dumps(payload, indent=2) + "\n"
    fd, tmp_name = tempfile.mkstemp(prefix=f".{lock_path.name}.", dir=lock_path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(rendered)
        os.link(tmp_name, lock_path)
    finally:
        Path(tmp_name).unlink(missing_ok=True)


def _describe_holder(lock_path: Path, payload: dict[str, Any]) -> str:
    return (
        f"Another supervisor is already running in this directory "
        f"(lock={lock_path}, pid={payload.get('pid', '<unknown>')}, "
        f"host={payload.get('host', '<unknown>')}, started_at={payload.get('started_at', '<unknown>')}). "
        f"If this is incorrect, remove {lock_path} and try again."
    )


def _release_lock(lock_path: Path, *, owner_uuid: str) -> None:
    payload = _read_lock_payload(lock_path)
    if payload.get("owner_uuid") != owner_uuid:
        return
    lock_path.unlink(missing_ok=True)


class LockHandle:
    def __init__(self, path: Path, *, owner_uuid: str, payload: dict[str, Any]) -> None:
        self.path = path
        self.owner_uuid = owner_uuid
        self.payload = payload
        self.released = False

    def release(self) -> None:
        if self.released:
            return
        _release_lock(self.path, owner_uuid=self.owner_uuid)
        self.released = True

    def __enter__(self) -> "LockHandle":
        return self

    def __exit__(self, *_exc_info: object) -> None:
        self.release()


def acquire_lock(lock_path: Path, *, command: str = "") -> LockHandle:
    """Take the working-directory lock or raise ``AlreadyRunning`` immediately."""
    owner_uuid = uuid.uuid4().hex
    lock_payload: dict[str, Any] = {
        "pid": os.getpid(),
        "host": socket.gethostname(),
        "owner_uuid": owner_uuid,
        "started_at": _utc_now(),
        "command": command,
    }
    lock_path.parent.mkdir(parents=True, exist_ok=True)

    for _ in range(3):
        try:
            _write_lock_payload_exclusive(lock_path, lock_payload)
            return LockHandle(lock_path, owner_uuid=owner_uuid, payload=lock_payload)
        except FileExistsError:
            existing = _read_lock_payload(lock_path)
            if not _lock_is_stale(existing):
                raise AlreadyRunning(_describe_holder(lock_path, existing)) from None

            stale_path = lock_path.with_name(f"{lock_path.name}.stale.{owner_uuid[:8]}")
            try:
                os.replace(lock_path, stale_path)
            except FileNotFoundError:
                continue
            moved = _read_lock_payload(stale_path)
            if moved.get("owner_uuid") != existing.get("owner_uuid"):
                # Another process reclaimed first; hand its fresh lock back.
                try:
                    os.link(stale_path, lock_path)
                except FileExistsError:
                    pass
                stale_path.unlink(missing_ok=True)
                raise AlreadyRunning(_describe_holder(lock_path, moved))
            stale_path.unlink(missing_ok=True)
            continue
        except OSError as exc:
            raise AlreadyRunning(f"failed to acquire lock at {lock_path}: {exc}") from exc
    raise AlreadyRunning(f"failed to acquire lock at {lock_path} after retries")


@contextmanager
def session_lock(lock_path: Path, *, command: str = "") -> Iterator[LockHandle]:
    handle = acquire_lock(lock_path, command=command)
    try:
        yield handle
    finally:
        handle.release()


def inspect_lock(lock_path: Path) -> dict[str, Any] | None:
    payload = _read_lock_payload(lock_path)
    if not payload:
        return None
    result = dict(payload)
    result["stale"] = _lock_is_stale(payload)
    return result


# ---------------------------------------------------------------------------
# Environment validation
# ---------------------------------------------------------------------------


def _is_executable_resolvable(executable: str) -> bool:
    if os.sep in executable:
        candidate = Path(executable)
        return candidate.is_file() and os.access(candidate, os.X_OK)
    return shutil.which(executable) is not None


def validate_environment(config: SupervisorConfig, paths: WorkspacePaths) -> None:
    """Raise ``ValidationError`` naming everything that would stop a session."""
    problems: list[str] = []
    try:
        argv = _build_agent_argv(config.runner.command, model=config.models.medium)
    except ValidationError as exc:
        problems.append(str(exc))
    else:
        if not _is_executable_resolvable(argv[0]):
            problems.append(f"agent executable '{argv[0]}' not found in PATH")

    for prompt_name in REQUIRED_PROMPT_FILES:
        if not (paths.root / prompt_name).is_file():
            problems.append(f"required prompt file missing: {prompt_name}")

    if config.runner.timeout_backend == "utility" and _find_timeout_utility() is None:
        problems.append("timeout_backend 'utility' requires 'timeout' or 'gtimeout' on PATH")

    if problems:
        raise ValidationError("; ".join(problems))


# ---------------------------------------------------------------------------
# Side-channel logs and run identity
# ---------------------------------------------------------------------------


def _progress_header() -> str:
    return f"# Ralph Progress Log\nStarted: {_local_now_text()}\n---\n"


def _guidance_header() -> str:
    return (
        f"# Grandma's Guidance\nStarted: {_local_now_text()}\n---\n\n"
        "No guidance yet. First iteration starting fresh.\n"
    )


def ensure_side_channel_logs(paths: WorkspacePaths) -> list[Path]:
    """Create the progress and guidance logs when absent; existing content is left alone."""
    created: list[Path] = []
    for path, header in ((paths.progress, _progress_header), (paths.guidance, _guidance_header)):
        if path.exists():
            continue
        _write_text_atomic(path, header())
        created.append(path)
    return created


def _archive_folder_name(identity: str) -> str:
    name = identity
    if name.startswith(ARCHIVE_IDENTITY_PREFIX):
        name = name[len(ARCHIVE_IDENTITY_PREFIX):]
    return name.replace("/", "-").strip("-") or "run"


def _unused_directory(path: Path) -> Path:
    if not path.exists():
        return path
    index = 2
    while (path.parent / f"{path.name}-{index}").exists():
        index += 1
    return path.parent / f"{path.name}-{index}"


def archive_if_identity_changed(
    paths: WorkspacePaths,
    current_identity: str | None,
    previous_identity: str | None,
    *,
    today: date | None = None,
) -> Path | None:
    """Archive the previous run's artifacts when the run identity changed.

    Returns the archive folder, or ``None`` when nothing was archived (either
    identity is empty, or they match).
    """
    current = _normalize_space(current_identity)
    previous = _normalize_space(previous_identity)
    if not current or not previous or current == previous:
        return None

    day = (today or date.today()).isoformat()
    archive_folder = _unused_directory(
        paths.archive_dir / f"{day}-{_archive_folder_name(previous)}"
    )
    archive_folder.mkdir(parents=True, exist_ok=False)
    for source in (paths.task_list, paths.progress, paths.guidance):
        if source.exists():
            shutil.copy2(source, archive_folder / source.name)

    _write_text_atomic(paths.progress, _progress_header())
    _write_text_atomic(paths.guidance, _guidance_header())
    return archive_folder


def read_last_identity(paths: WorkspacePaths) -> str:
    return _safe_read_text(paths.last_identity)


def sync_run_identity(paths: WorkspacePaths, current_identity: str) -> Path | None:
    """Archive on an identity transition, then remember ``current_identity``."""
    archived = archive_if_identity_changed(paths, current_identity, read_last_identity(paths))
    current = _normalize_space(current_identity)
    if current:
        _write_text_atomic(paths.last_identity, current + "\n")
    return archived
