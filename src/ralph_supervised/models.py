"""Ralph supervisor data models — exceptions, dataclasses, and coercion helpers."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ralph_supervised.constants import (
    ARCHIVE_DIR,
    ATTEMPT_API_ERROR,
    ATTEMPT_NON_ZERO_EXIT,
    ATTEMPT_SHORT_OUTPUT,
    ATTEMPT_SUCCESS,
    ATTEMPT_TIMEOUT,
    GUIDANCE_FILE,
    LAST_IDENTITY_FILE,
    LOCK_FILE,
    LOGS_DIR,
    PROGRESS_FILE,
    STATE_FILE,
    TASK_LIST_FILE,
)


def _coerce_bool(value: Any, *, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"true", "1", "yes", "on"}
    return bool(value) if value is not None else default


def _coerce_float(value: Any, *, default: float) -> float:
    try:
        parsed = float(value)
    except Exception:
        return default
    return parsed if parsed >= 0 else default


def _coerce_positive_int(value: Any, *, default: int) -> int:
    try:
        parsed = int(value)
    except Exception:
        return default
    return parsed if parsed > 0 else default


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class SupervisorError(RuntimeError):
    """Base class for failures that end a supervised session."""


class SchemaError(SupervisorError):
    """Raised when the task list is malformed or incomplete."""


class ValidationError(SupervisorError):
    """Raised when the environment is not ready for a session."""


class AlreadyRunning(SupervisorError):
    """Raised when another live supervisor holds the working-directory lock."""


class ProcessFailure(SupervisorError):
    """Raised after every attempt of an agent invocation failed."""

    def __init__(self, description: str, outcome: "AttemptOutcome", attempts: int) -> None:
        self.description = description
        self.outcome = outcome
        self.attempts = attempts
        super().__init__(
            f"{description} failed after {attempts} attempt(s); last outcome: {outcome.summary()}"
        )


# ---------------------------------------------------------------------------
# Task list
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Task:
    id: str
    title: str
    passes: bool
    priority: int
    complexity: str
    description: str = ""
    acceptance_criteria: tuple[str, ...] = ()
    notes: str = ""

    def label(self) -> str:
        return f"{self.id} - {self.title} [{self.complexity}]"


@dataclass(frozen=True)
class TaskList:
    path: Path
    tasks: tuple[Task, ...]
    run_identity: str = ""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelConfig:
    grandma: str
    low: str
    medium: str
    high: str
    init: str


@dataclass(frozen=True)
class RunnerConfig:
    command: str
    timeout_seconds: float
    max_retries: int
    retry_delay_seconds: float
    min_output_bytes: int
    timeout_backend: str
    use_subscription: bool


@dataclass(frozen=True)
class SupervisorConfig:
    models: ModelConfig
    runner: RunnerConfig
    iteration_pause_seconds: float
    source_path: Path | None = None
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True)
class WorkspacePaths:
    """Every file the supervisor reads or writes inside one working directory."""

    root: Path
    task_list: Path
    progress: Path
    guidance: Path
    archive_dir: Path
    logs_dir: Path
    state: Path
    lock: Path
    last_identity: Path

    @classmethod
    def from_root(cls, root: Path) -> "WorkspacePaths":
        return cls(
            root=root,
            task_list=root / TASK_LIST_FILE,
            progress=root / PROGRESS_FILE,
            guidance=root / GUIDANCE_FILE,
            archive_dir=root / ARCHIVE_DIR,
            logs_dir=root / LOGS_DIR,
            state=root / STATE_FILE,
            lock=root / LOCK_FILE,
            last_identity=root / LAST_IDENTITY_FILE,
        )


# ---------------------------------------------------------------------------
# Process invocation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ExecutionResult:
    """Raw result of one child process run by a timeout backend."""

    exit_code: int | None
    timed_out: bool


@dataclass(frozen=True)
class AttemptOutcome:
    """Classification of a single attempt.

    ``status`` is one of the ``ATTEMPT_*`` constants; the remaining fields carry
    whatever detail that classification has.
    """

    status: str
    output_text: str = ""
    exit_code: int | None = None
    byte_count: int = 0
    matched_pattern: str = ""

    @property
    def ok(self) -> bool:
        return self.status == ATTEMPT_SUCCESS

    def label(self) -> str:
        if self.status == ATTEMPT_NON_ZERO_EXIT:
            return f"{ATTEMPT_NON_ZERO_EXIT}_{self.exit_code}"
        return self.status

    def summary(self) -> str:
        if self.status == ATTEMPT_TIMEOUT:
            return "timed out"
        if self.status == ATTEMPT_NON_ZERO_EXIT:
            return f"exited with code {self.exit_code}"
        if self.status == ATTEMPT_SHORT_OUTPUT:
            return f"output too short ({self.byte_count} bytes)"
        if self.status == ATTEMPT_API_ERROR:
            return f"API error detected ({self.matched_pattern})"
        return "success"


@dataclass(frozen=True)
class InvocationRecord:
    model: str
    description: str
    attempt: int
    outcome: str
    output_path: Path
    prompt_path: Path
    started_at: str
    finished_at: str
    exit_code: int | None = None

    def payload(self) -> dict[str, Any]:
        return {
            "model": self.model,
            "description": self.description,
            "attempt": self.attempt,
            "outcome": self.outcome,
            "exit_code": self.exit_code,
            "output_path": str(self.output_path),
            "prompt_path": str(self.prompt_path),
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


@dataclass(frozen=True)
class InvocationResult:
    output_text: str
    attempts: int
    records: tuple[InvocationRecord, ...] = field(default_factory=tuple)


# ---------------------------------------------------------------------------
# Checkpoint and session outcome
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Checkpoint:
    iteration: int
    phase: str
    status: str
    timestamp: str
    session_id: str
    log_dir: str

    def payload(self) -> dict[str, Any]:
        return {
            "last_iteration": self.iteration,
            "last_phase": self.phase,
            "status": self.status,
            "timestamp": self.timestamp,
            "session_id": self.session_id,
            "log_dir": self.log_dir,
        }


@dataclass(frozen=True)
class SessionOutcome:
    exit_code: int
    status: str
    phase: str
    iteration: int
    message: str
    log_dir: Path | None = None
