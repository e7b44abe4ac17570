from __future__ import annotations

import os
import shlex
import shutil
import signal
import subprocess
import time
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

from ralph_supervised.constants import (
    API_ERROR_PATTERNS,
    API_KEY_ENV_VAR,
    ATTEMPT_API_ERROR,
    ATTEMPT_NON_ZERO_EXIT,
    ATTEMPT_SHORT_OUTPUT,
    ATTEMPT_SUCCESS,
    ATTEMPT_TIMEOUT,
    SHELL_META_PATTERN,
    TERMINATE_GRACE_SECONDS,
    TIMEOUT_UTILITY_EXIT_CODE,
    TIMEOUT_UTILITY_NAMES,
)
from ralph_supervised.models import (
    AttemptOutcome,
    ExecutionResult,
    InvocationRecord,
    InvocationResult,
    ProcessFailure,
    RunnerConfig,
    ValidationError,
)
from ralph_supervised.utils import (
    _append_invocation_record,
    _append_log,
    _log_name,
    _utc_now,
    _write_text_atomic,
    _write_text_exclusive,
)

Backend = Callable[..., ExecutionResult]

# Exit status of a shell-style "command not found"; also used when Popen cannot start the agent.
EXIT_CANNOT_START = 127


# ---------------------------------------------------------------------------
# Command construction
# ---------------------------------------------------------------------------


def _build_agent_argv(command_template: str, *, model: str) -> list[str]:
    if SHELL_META_PATTERN.search(command_template):
        raise ValidationError(
            "agent_command contains shell metacharacters; "
            "configure an argv-safe command without pipes/subshell syntax"
        )
    command = command_template.replace("{model}", shlex.quote(model))
    try:
        argv = shlex.split(command)
    except ValueError as exc:
        raise ValidationError(f"agent_command could not be parsed: {exc}") from exc
    if not argv:
        raise ValidationError("agent_command resolved to empty arguments")
    return argv


def _build_child_env(config: RunnerConfig, environ: Mapping[str, str] | None = None) -> dict[str, str]:
    env = dict(os.environ if environ is None else environ)
    if config.use_subscription:
        env.pop(API_KEY_ENV_VAR, None)
    return env


def _find_timeout_utility() -> str | None:
    for name in TIMEOUT_UTILITY_NAMES:
        resolved = shutil.which(name)
        if resolved:
            return resolved
    return None


# ---------------------------------------------------------------------------
# Timeout backends
# ---------------------------------------------------------------------------


def _terminate_process_group(process: subprocess.Popen[Any], *, grace_seconds: float) -> None:
    """SIGTERM the child's whole process group, then SIGKILL whatever survives."""
    for sig in (signal.SIGTERM, signal.SIGKILL):
        try:
            os.killpg(process.pid, sig)
        except (ProcessLookupError, PermissionError):
            pass
        try:
            process.wait(timeout=grace_seconds)
            return
        except subprocess.TimeoutExpired:
            continue
    process.wait()


def _spawn(
    argv: list[str],
    *,
    output_handle: Any,
    env: Mapping[str, str],
    cwd: Path,
) -> subprocess.Popen[str]:
    # New session: the child leads its own process group so a timeout can reap grandchildren too.
    return subprocess.Popen(
        argv,
        cwd=cwd,
        env=dict(env),
        shell=False,
        text=True,
        stdin=subprocess.PIPE,
        stdout=output_handle,
        stderr=subprocess.STDOUT,
        start_new_session=True,
    )


def _execute_with_watchdog(
    argv: list[str],
    prompt_text: str,
    output_path: Path,
    *,
    timeout: float,
    env: Mapping[str, str],
    cwd: Path,
) -> ExecutionResult:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with output_path.open("w", encoding="utf-8") as sink:
        try:
            process = _spawn(argv, output_handle=sink, env=env, cwd=cwd)
        except OSError as exc:
            sink.write(f"failed to start agent command {argv[0]!r}: {exc}\n")
            return ExecutionResult(exit_code=EXIT_CANNOT_START, timed_out=False)
        try:
            # The prompt travels over stdin, so its size is never bound by argv limits.
            process.communicate(input=prompt_text, timeout=timeout)
        except subprocess.TimeoutExpired:
            _terminate_process_group(process, grace_seconds=TERMINATE_GRACE_SECONDS)
            return ExecutionResult(exit_code=None, timed_out=True)
        except BaseException:
            # The child leads its own session, so an interrupt never reaches it directly.
            _terminate_process_group(process, grace_seconds=TERMINATE_GRACE_SECONDS)
            raise
    return ExecutionResult(exit_code=process.returncode, timed_out=False)


def _execute_with_timeout_utility(
    argv: list[str],
    prompt_text: str,
    output_path: Path,
    *,
    timeout: float,
    env: Mapping[str, str],
    cwd: Path,
) -> ExecutionResult:
    utility = _find_timeout_utility()
    if utility is None:
        raise ValidationError(
            "timeout_backend 'utility' requires one of "
            f"{', '.join(TIMEOUT_UTILITY_NAMES)} on PATH"
        )
    wrapped = [
        utility,
        f"--kill-after={TERMINATE_GRACE_SECONDS:g}s",
        f"{timeout:g}s",
        *argv,
    ]
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with output_path.open("w", encoding="utf-8") as sink:
        try:
            process = _spawn(wrapped, output_handle=sink, env=env, cwd=cwd)
        except OSError as exc:
            sink.write(f"failed to start timeout utility {utility!r}: {exc}\n")
            return ExecutionResult(exit_code=EXIT_CANNOT_START, timed_out=False)
        try:
            process.communicate(input=prompt_text, timeout=timeout + 2 * TERMINATE_GRACE_SECONDS + 5)
        except subprocess.TimeoutExpired:
            _terminate_process_group(process, grace_seconds=TERMINATE_GRACE_SECONDS)
            return ExecutionResult(exit_code=None, timed_out=True)
        except BaseException:
            _terminate_process_group(process, grace_seconds=TERMINATE_GRACE_SECONDS)
            raise
    returncode = process.returncode
    if returncode in {TIMEOUT_UTILITY_EXIT_CODE, 128 + signal.SIGKILL}:
        return ExecutionResult(exit_code=None, timed_out=True)
    return ExecutionResult(exit_code=returncode, timed_out=False)


TIMEOUT_BACKEND_FUNCTIONS: dict[str, Backend] = {
    "watchdog": _execute_with_watchdog,
    "utility": _execute_with_timeout_utility,
}


def _resolve_timeout_backend(name: str) -> Backend:
    try:
        return TIMEOUT_BACKEND_FUNCTIONS[name]
    except KeyError as exc:
        raise ValidationError(
            f"unknown timeout backend '{name}'; expected one of {sorted(TIMEOUT_BACKEND_FUNCTIONS)}"
        ) from exc


# ---------------------------------------------------------------------------
# Attempt classification
# ---------------------------------------------------------------------------


def _detect_api_error(output_text: str) -> str:
    for pattern in API_ERROR_PATTERNS:
        match = pattern.search(output_text)
        if match:
            return match.group(0)
    return ""


def _classify_attempt(
    execution: ExecutionResult,
    output_text: str,
    *,
    min_output_bytes: int,
) -> AttemptOutcome:
    byte_count = len(output_text.encode("utf-8"))
    if execution.timed_out:
        return AttemptOutcome(status=ATTEMPT_TIMEOUT, output_text=output_text, byte_count=byte_count)
    if execution.exit_code != 0:
        return AttemptOutcome(
            status=ATTEMPT_NON_ZERO_EXIT,
            output_text=output_text,
            exit_code=execution.exit_code,
            byte_count=byte_count,
        )
    matched = _detect_api_error(output_text)
    if matched:
        return AttemptOutcome(
            status=ATTEMPT_API_ERROR,
            output_text=output_text,
            exit_code=0,
            byte_count=byte_count,
            matched_pattern=matched,
        )
    if byte_count < min_output_bytes:
        return AttemptOutcome(
            status=ATTEMPT_SHORT_OUTPUT,
            output_text=output_text,
            exit_code=0,
            byte_count=byte_count,
        )
    return AttemptOutcome(
        status=ATTEMPT_SUCCESS, output_text=output_text, exit_code=0, byte_count=byte_count
    )


def _retry_delay_seconds(config: RunnerConfig, attempt: int) -> float:
    return config.retry_delay_seconds * attempt


def _unused_path(path: Path) -> Path:
    if not path.exists():
        return path
    index = 2
    while True:
        candidate = path.with_name(f"{path.stem}-{index}{path.suffix}")
        if not candidate.exists():
            return candidate
        index += 1


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


class ProcessRunner:
    """The single way the supervisor invokes the agent.

    Each call retries transient failure classes up to ``max_retries`` times,
    keeps every attempt's raw output under ``log_dir``, and raises
    ``ProcessFailure`` once every attempt has failed.
    """

    def __init__(
        self,
        config: RunnerConfig,
        log_dir: Path,
        *,
        cwd: Path,
        backend: Backend | None = None,
        sleep: Callable[[float], None] = time.sleep,
        environ: Mapping[str, str] | None = None,
        notify: Callable[[str, str], None] | None = None,
    ) -> None:
        self.config = config
        self.log_dir = log_dir
        self.cwd = cwd
        self.backend = backend or _resolve_timeout_backend(config.timeout_backend)
        self.sleep = sleep
        self.env = _build_child_env(config, environ)
        self.notify = notify

    def _emit(self, level: str, message: str) -> None:
        if self.notify is not None:
            self.notify(level, message)

    def invoke(
        self,
        model: str,
        prompt_text: str,
        description: str,
        *,
        timeout: float | None = None,
    ) -> InvocationResult:
        effective_timeout = self.config.timeout_seconds if timeout is None else timeout
        max_attempts = max(1, self.config.max_retries)
        log_name = _log_name(description) or "invocation"
        prompt_path = _unused_path(self.log_dir / f"{log_name}-prompt.md")
        _write_text_atomic(prompt_path, prompt_text)
        argv = _build_agent_argv(self.config.command, model=model)
        work_path = self.log_dir / ".work" / f"{log_name}-output.txt"

        records: list[InvocationRecord] = []
        outcome = AttemptOutcome(status=ATTEMPT_NON_ZERO_EXIT)
        for attempt in range(1, max_attempts + 1):
            self._emit("info", f"[{description}] Attempt {attempt} of {max_attempts}")
            started_at = _utc_now()
            execution = self.backend(
                argv,
                prompt_text,
                work_path,
                timeout=effective_timeout,
                env=self.env,
                cwd=self.cwd,
            )
            output_text = work_path.read_text(encoding="utf-8", errors="replace") if work_path.exists() else ""
            outcome = _classify_attempt(
                execution,
                output_text,
                min_output_bytes=self.config.min_output_bytes,
            )
            attempt_path = _unused_path(
                self.log_dir / f"{log_name}-attempt{attempt}-{outcome.label()}.txt"
            )
            _write_text_exclusive(attempt_path, output_text)
            work_path.unlink(missing_ok=True)
            record = InvocationRecord(
                model=model,
                description=description,
                attempt=attempt,
                outcome=outcome.label(),
                output_path=attempt_path,
                prompt_path=prompt_path,
                started_at=started_at,
                finished_at=_utc_now(),
                exit_code=execution.exit_code,
            )
            records.append(record)
            _append_invocation_record(self.log_dir, record.payload())
            _append_log(self.log_dir, f"{log_name} attempt {attempt}: {outcome.label()}")

            if outcome.ok:
                self._emit("success", f"[{description}] Success")
                return InvocationResult(
                    output_text=output_text,
                    attempts=attempt,
                    records=tuple(records),
                )

            self._emit("warning", f"[{description}] {outcome.summary()}")
            if attempt < max_attempts:
                self.sleep(_retry_delay_seconds(self.config, attempt))

        self._emit("error", f"[{description}] FAILED after {max_attempts} attempts")
        raise ProcessFailure(description, outcome, max_attempts)
