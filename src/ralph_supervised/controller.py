"""Runs the supervised Ralph loop.

One session is::

    session_init -> (grandma_preflight -> ralph_implementation -> grandma_review)* -> terminal

Terminal states are complete (exit 0), paused, blocked, and max-iterations
(all non-zero).  A checkpoint is written before every agent invocation so an
interrupted session can be resumed with ``--resume``.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.text import Text

from ralph_supervised.config import _load_supervisor_config, _select_implementation_model
from ralph_supervised.constants import (
    DEFAULT_MAX_ITERATIONS,
    EXIT_NEEDS_ATTENTION,
    EXIT_OK,
    IMPLEMENTATION_PROMPT_FILE,
    PHASE_COMPLETE,
    PHASE_IMPLEMENTATION,
    PHASE_MAX_ITERATIONS,
    PHASE_PREFLIGHT,
    PHASE_REVIEW,
    PHASE_SESSION_INIT,
    PHASE_STARTING,
    PREFLIGHT_PROMPT_FILE,
    REVIEW_PROMPT_FILE,
    SESSION_INIT_PROMPT_FILE,
    STATUS_BLOCKED,
    STATUS_COMPLETE,
    STATUS_IN_PROGRESS,
    STATUS_ITERATION_COMPLETE,
    STATUS_MAX_ITERATIONS_REACHED,
    STATUS_PAUSED,
)
from ralph_supervised.guard import (
    ensure_side_channel_logs,
    session_lock,
    sync_run_identity,
    validate_environment,
)
from ralph_supervised.models import (
    ProcessFailure,
    SessionOutcome,
    SupervisorConfig,
    SupervisorError,
    ValidationError,
    WorkspacePaths,
)
from ralph_supervised.runners import ProcessRunner
from ralph_supervised.signals import (
    COMPLETION_SIGNALS,
    REVIEW_SIGNALS,
    SESSION_SIGNALS,
    Vocabulary,
    extract_signal,
)
from ralph_supervised.state import StateTracker
from ralph_supervised.tasks import current_task, incomplete_count, load_task_list
from ralph_supervised.utils import _append_log, _generate_session_id

RunnerFactory = Callable[[SupervisorConfig, Path, Path], Any]

_NOTIFY_STYLES = {
    "info": "blue",
    "success": "green",
    "warning": "yellow",
    "error": "red",
}


class IterationController:
    def __init__(
        self,
        config: SupervisorConfig,
        paths: WorkspacePaths,
        *,
        runner: Any,
        tracker: StateTracker,
        console: Console,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.paths = paths
        self.runner = runner
        self.tracker = tracker
        self.console = console
        self.sleep = sleep
        self.log_dir = tracker.log_dir
        self.iteration = 0
        self.phase = PHASE_STARTING

    # -- bookkeeping --------------------------------------------------------

    def _log(self, message: str) -> None:
        _append_log(self.log_dir, message)

    def _enter(self, iteration: int, phase: str) -> None:
        self.iteration = iteration
        self.phase = phase
        self.tracker.checkpoint(iteration, phase, STATUS_IN_PROGRESS)

    def _read_prompt(self, prompt_name: str) -> str:
        prompt_path = self.paths.root / prompt_name
        try:
            return prompt_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ValidationError(f"prompt file unreadable: {prompt_path}: {exc}") from exc

    def _decide(self, output_text: str, vocabulary: Vocabulary, description: str) -> str:
        signal = extract_signal(output_text, vocabulary)
        self._log(f"{description} signal: {signal.describe(vocabulary)}")
        if signal.defaulted:
            self.console.print(f"[red]  {escape(description)}: {escape(signal.describe(vocabulary))}[/]")
        return signal.token

    # -- terminal outcomes --------------------------------------------------

    def _finish(
        self,
        *,
        exit_code: int,
        status: str,
        iteration: int,
        phase: str,
        message: str,
    ) -> SessionOutcome:
        self.tracker.checkpoint(iteration, phase, status)
        self._log(f"{status.upper()} at iteration {iteration} ({phase}) - {message}")
        return SessionOutcome(
            exit_code=exit_code,
            status=status,
            phase=phase,
            iteration=iteration,
            message=message,
            log_dir=self.log_dir,
        )

    def _pause(self, iteration: int, phase: str, reason: str) -> SessionOutcome:
        return self._finish(
            exit_code=EXIT_NEEDS_ATTENTION,
            status=STATUS_PAUSED,
            iteration=iteration,
            phase=phase,
            message=reason,
        )

    def _complete(self, iteration: int, message: str) -> SessionOutcome:
        return self._finish(
            exit_code=EXIT_OK,
            status=STATUS_COMPLETE,
            iteration=iteration,
            phase=PHASE_COMPLETE,
            message=message,
        )

    # -- phases -------------------------------------------------------------

    def _run_session_init(self) -> SessionOutcome | None:
        if not (self.paths.root / SESSION_INIT_PROMPT_FILE).is_file():
            self.console.print(f"[yellow]No {SESSION_INIT_PROMPT_FILE} found. Skipping session init.[/]")
            return None

        self.console.rule(f"[magenta]Phase 0: Session Initialization ({self.config.models.init})")
        self._enter(0, PHASE_SESSION_INIT)
        try:
            result = self.runner.invoke(
                self.config.models.init,
                self._read_prompt(SESSION_INIT_PROMPT_FILE),
                "Session init",
            )
        except (ProcessFailure, ValidationError) as exc:
            return self._finish(
                exit_code=EXIT_NEEDS_ATTENTION,
                status=STATUS_BLOCKED,
                iteration=0,
                phase=PHASE_SESSION_INIT,
                message=f"Session initialization failed: {exc}",
            )

        if self._decide(result.output_text, SESSION_SIGNALS, "Session init") != "READY":
            return self._finish(
                exit_code=EXIT_NEEDS_ATTENTION,
                status=STATUS_BLOCKED,
                iteration=0,
                phase=PHASE_SESSION_INIT,
                message="Session initialization did not report READY",
            )
        self.console.print("[green]Session initialized. Environment ready.[/]")
        return None

    def _review(self, iteration: int, phase: str, prompt_name: str, description: str) -> SessionOutcome | None:
        self._enter(iteration, phase)
        try:
            result = self.runner.invoke(
                self.config.models.grandma,
                self._read_prompt(prompt_name),
                description,
            )
        except (ProcessFailure, ValidationError) as exc:
            return self._pause(iteration, phase, f"{description} failed: {exc}")
        if self._decide(result.output_text, REVIEW_SIGNALS, description) != "CONTINUE":
            return self._pause(iteration, phase, f"{description} did not approve continuation")
        return None

    def _run_iteration(self, iteration: int, max_iterations: int) -> SessionOutcome | None:
        self._enter(iteration, PHASE_STARTING)
        try:
            task_list = load_task_list(self.paths.task_list)
        except SupervisorError as exc:
            return self._pause(iteration, PHASE_STARTING, f"task list unusable: {exc}")
        task = current_task(task_list)
        if task is None:
            return self._complete(iteration, "All tasks are marked complete")

        self.console.rule(f"[blue]Iteration {iteration} of {max_iterations}")
        self.console.print(f"[blue]  Task: {escape(task.label())} ({incomplete_count(task_list)} remaining)[/]")
        self._log(f"iteration {iteration} task={task.id} complexity={task.complexity}")

        self.console.print(f"\n[yellow]Phase 1: Grandma Pre-flight ({self.config.models.grandma})[/]")
        paused = self._review(
            iteration, PHASE_PREFLIGHT, PREFLIGHT_PROMPT_FILE, f"Grandma preflight {iteration}"
        )
        if paused is not None:
            return paused
        self.console.print("[green]Pre-flight approved.[/]")

        model = _select_implementation_model(self.config.models, task)
        self.console.print(f"\n[green]Phase 2: Ralph Implementation ({model})[/]")
        self._enter(iteration, PHASE_IMPLEMENTATION)
        description = f"Ralph implementation {iteration}"
        try:
            result = self.runner.invoke(
                model,
                self._read_prompt(IMPLEMENTATION_PROMPT_FILE),
                description,
            )
        except (ProcessFailure, ValidationError) as exc:
            return self._pause(iteration, PHASE_IMPLEMENTATION, f"{description} failed: {exc}")
        if self._decide(result.output_text, COMPLETION_SIGNALS, description) == "COMPLETE":
            return self._complete(
                iteration, f"Ralph completed all tasks at iteration {iteration} of {max_iterations}"
            )

        self.console.print(f"\n[yellow]Phase 3: Grandma Post-Review ({self.config.models.grandma})[/]")
        paused = self._review(
            iteration, PHASE_REVIEW, REVIEW_PROMPT_FILE, f"Grandma review {iteration}"
        )
        if paused is not None:
            return paused

        self.tracker.checkpoint(iteration, PHASE_REVIEW, STATUS_ITERATION_COMPLETE)
        self._log(f"iteration {iteration} complete")
        self.console.print("[green]Grandma approved. Continuing to next iteration.[/]")
        return None

    # -- loop ---------------------------------------------------------------

    def resolve_start_iteration(self, resume: bool) -> int:
        if not resume:
            return 1
        start = self.tracker.load_for_resume()
        if start is None:
            self.console.print("[yellow]No valid state to resume from. Starting fresh.[/]")
            self._log("resume requested but no resumable checkpoint found; starting fresh")
            return 1
        self.console.print(f"[yellow]Resuming from iteration {start}[/]")
        self._log(f"Resuming from iteration {start}")
        return start

    def run(self, max_iterations: int, *, resume: bool = False) -> SessionOutcome:
        start = self.resolve_start_iteration(resume)
        if resume and start > 1:
            self.console.print(f"[yellow]Skipping session init (resuming from iteration {start})[/]")
        else:
            blocked = self._run_session_init()
            if blocked is not None:
                return blocked

        for iteration in range(start, max_iterations + 1):
            outcome = self._run_iteration(iteration, max_iterations)
            if outcome is not None:
                return outcome
            if iteration < max_iterations:
                self.sleep(self.config.iteration_pause_seconds)

        return self._finish(
            exit_code=EXIT_NEEDS_ATTENTION,
            status=STATUS_MAX_ITERATIONS_REACHED,
            iteration=max_iterations,
            phase=PHASE_MAX_ITERATIONS,
            message=f"Reached max iterations ({max_iterations}) without completing all tasks",
        )

    def interrupted(self) -> SessionOutcome:
        return self._pause(self.iteration, self.phase, "Interrupted")


# ---------------------------------------------------------------------------
# Session wiring
# ---------------------------------------------------------------------------


def _default_runner_factory(
    console: Console,
    sleep: Callable[[float], None],
) -> RunnerFactory:
    def _notify(level: str, message: str) -> None:
        console.print(f"[{_NOTIFY_STYLES.get(level, 'white')}]  {escape(message)}[/]")

    def _factory(config: SupervisorConfig, log_dir: Path, root: Path) -> ProcessRunner:
        return ProcessRunner(config.runner, log_dir, cwd=root, sleep=sleep, notify=_notify)

    return _factory


def render_summary(console: Console, outcome: SessionOutcome, paths: WorkspacePaths) -> None:
    if outcome.exit_code == EXIT_OK:
        style = "green"
    elif outcome.status == STATUS_MAX_ITERATIONS_REACHED:
        style = "yellow"
    else:
        style = "red"
    lines = [
        f"Status: {outcome.status}",
        f"Reason: {outcome.message}",
        f"Iteration: {outcome.iteration}",
        f"Phase: {outcome.phase}",
    ]
    if outcome.exit_code != EXIT_OK:
        lines.append(f"Guidance: {paths.guidance}")
    if outcome.log_dir is not None:
        lines.append(f"Logs: {outcome.log_dir}")
    if outcome.status in {STATUS_PAUSED, STATUS_MAX_ITERATIONS_REACHED}:
        lines.append("To resume: ralph-supervised --resume")
    console.print(Panel(Text("\n".join(lines)), title=outcome.status.upper(), border_style=style))


def run_session(
    root: Path,
    *,
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
    resume: bool = False,
    config: SupervisorConfig | None = None,
    config_path: Path | None = None,
    arguments: Sequence[str] = (),
    console: Console | None = None,
    runner_factory: RunnerFactory | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> SessionOutcome:
    """Run one supervised session in ``root`` under the working-directory lock."""
    console = console or Console()
    if config is None:
        config = _load_supervisor_config(root, config_path)
    paths = WorkspacePaths.from_root(root)
    command = " ".join(arguments)

    with session_lock(paths.lock, command=command):
        session_id = _generate_session_id()
        log_dir = paths.logs_dir / session_id
        log_dir.mkdir(parents=True, exist_ok=True)
        _append_log(log_dir, "Session started")
        _append_log(log_dir, f"Arguments: {command}")
        for warning in config.warnings:
            _append_log(log_dir, f"config warning: {warning}")
            console.print(f"[yellow]config warning: {escape(warning)}[/]")
        console.print(f"[blue]Logging to: {log_dir}[/]")

        tracker = StateTracker(paths.state, session_id=session_id, log_dir=log_dir)
        outcome: SessionOutcome | None = None
        try:
            validate_environment(config, paths)
            task_list = load_task_list(paths.task_list)
            archived = sync_run_identity(paths, task_list.run_identity)
            if archived is not None:
                _append_log(log_dir, f"archived previous run to {archived}")
                console.print(f"[yellow]Archived previous run to: {escape(str(archived))}[/]")
            ensure_side_channel_logs(paths)

            remaining = incomplete_count(task_list)
            if remaining == 0:
                tracker.checkpoint(0, PHASE_COMPLETE, STATUS_COMPLETE)
                outcome = SessionOutcome(
                    exit_code=EXIT_OK,
                    status=STATUS_COMPLETE,
                    phase=PHASE_COMPLETE,
                    iteration=0,
                    message="All tasks already complete. Nothing to do.",
                    log_dir=log_dir,
                )
                return outcome
            console.print(f"[green]Environment validated: {remaining} incomplete tasks[/]")

            factory = runner_factory or _default_runner_factory(console, sleep)
            controller = IterationController(
                config,
                paths,
                runner=factory(config, log_dir, root),
                tracker=tracker,
                console=console,
                sleep=sleep,
            )
            try:
                outcome = controller.run(max_iterations, resume=resume)
            except KeyboardInterrupt:
                outcome = controller.interrupted()
            return outcome
        except SupervisorError as exc:
            _append_log(log_dir, f"session aborted: {exc}")
            outcome = SessionOutcome(
                exit_code=EXIT_NEEDS_ATTENTION,
                status="error",
                phase="startup",
                iteration=0,
                message=str(exc),
                log_dir=log_dir,
            )
            return outcome
        finally:
            exit_code = outcome.exit_code if outcome is not None else EXIT_NEEDS_ATTENTION
            _append_log(log_dir, "Session ended")
            _append_log(log_dir, f"Exit code: {exit_code}")
            if outcome is not None:
                render_summary(console, outcome, paths)
