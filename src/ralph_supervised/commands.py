from __future__ import annotations

import argparse
import signal
import sys
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.markup import escape

from ralph_supervised.config import _load_supervisor_config
from ralph_supervised.constants import (
    DEFAULT_MAX_ITERATIONS,
    EXIT_NEEDS_ATTENTION,
    EXIT_OK,
)
from ralph_supervised.controller import run_session
from ralph_supervised.guard import inspect_lock, read_last_identity
from ralph_supervised.models import SupervisorError, WorkspacePaths
from ralph_supervised.state import load_checkpoint, resume_iteration
from ralph_supervised.tasks import describe_current_task, incomplete_count, load_task_list

# Conventional shell status for a run stopped by SIGINT/SIGTERM.
EXIT_INTERRUPTED = 130


def _positive_int(value: str) -> int:
    try:
        parsed = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"max_iterations must be an integer, got '{value}'") from None
    if parsed <= 0:
        raise argparse.ArgumentTypeError(f"max_iterations must be greater than 0, got {parsed}")
    return parsed


def _raise_interrupt(signum: int, _frame: Any) -> None:
    raise KeyboardInterrupt(f"received signal {signum}")


def _cmd_run(args: argparse.Namespace, console: Console) -> int:
    root = Path(args.workdir).expanduser().resolve()
    config_path = Path(args.config).expanduser().resolve() if args.config else None
    config = _load_supervisor_config(root, config_path)

    console.print(f"[blue]Starting Ralph with Grandma oversight - Max iterations: {args.max_iterations}[/]")
    console.print(f"[blue]Grandma: {config.models.grandma}[/]")
    console.print(
        f"[blue]Ralph models: low={config.models.low} medium={config.models.medium} high={config.models.high}[/]"
    )
    if args.resume:
        console.print("[yellow]Resume mode enabled[/]")

    previous_handler = signal.signal(signal.SIGTERM, _raise_interrupt)
    try:
        outcome = run_session(
            root,
            max_iterations=args.max_iterations,
            resume=args.resume,
            config=config,
            arguments=args.raw_argv,
            console=console,
        )
    except SupervisorError as exc:
        console.print(f"[red]ralph-supervised: ERROR {escape(str(exc))}[/]")
        return EXIT_NEEDS_ATTENTION
    except KeyboardInterrupt:
        console.print("[red]ralph-supervised: interrupted[/]")
        return EXIT_INTERRUPTED
    finally:
        signal.signal(signal.SIGTERM, previous_handler)

    if outcome.status == "error":
        console.print(f"[red]ralph-supervised: ERROR {escape(outcome.message)}[/]")
    return outcome.exit_code


def _cmd_status(args: argparse.Namespace, console: Console) -> int:
    root = Path(args.workdir).expanduser().resolve()
    paths = WorkspacePaths.from_root(root)

    console.print("ralph-supervised status")
    console.print(f"workdir: {root}")

    checkpoint = load_checkpoint(paths.state)
    if checkpoint is None:
        console.print("checkpoint: <none>")
    else:
        console.print(f"last_iteration: {checkpoint.iteration}")
        console.print(f"last_phase: {checkpoint.phase}")
        console.print(f"status: {checkpoint.status}")
        console.print(f"timestamp: {checkpoint.timestamp}")
        console.print(f"log_dir: {checkpoint.log_dir or '<unknown>'}")
        start = resume_iteration(checkpoint)
        console.print(f"resume_from: {start if start is not None else '<fresh start>'}")

    lock = inspect_lock(paths.lock)
    if lock is None:
        console.print("lock: <none>")
    else:
        state = "stale" if lock.get("stale") else "held"
        console.print(
            f"lock: {state} pid={lock.get('pid', '<unknown>')} host={lock.get('host', '<unknown>')} "
            f"started_at={lock.get('started_at', '<unknown>')}"
        )

    console.print(f"run_identity: {read_last_identity(paths) or '<none>'}")
    try:
        task_list = load_task_list(paths.task_list)
    except SupervisorError as exc:
        console.print(f"[red]tasks: ERROR {escape(str(exc))}[/]")
        return EXIT_NEEDS_ATTENTION
    console.print(f"tasks: {len(task_list.tasks)} total, {incomplete_count(task_list)} incomplete")
    console.print(f"current_task: {escape(describe_current_task(task_list))}")
    return EXIT_OK


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ralph-supervised",
        description="Run the Ralph agent loop under Grandma's supervision",
    )
    parser.add_argument(
        "max_iterations",
        nargs="?",
        type=_positive_int,
        default=DEFAULT_MAX_ITERATIONS,
        help=f"Maximum number of supervised iterations (default: {DEFAULT_MAX_ITERATIONS})",
    )
    parser.add_argument(
        "--resume",
        action="store_true",
        help="Resume from the last checkpoint in .ralph-state.json",
    )
    parser.add_argument(
        "--workdir",
        default=".",
        help="Directory holding prd.json and the prompt files (default: current directory)",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to a YAML/JSON configuration file (default: ralph-config.yaml in the workdir)",
    )
    parser.add_argument(
        "--status",
        action="store_true",
        help="Show the checkpoint, lock, and task summary, then exit",
    )
    return parser


def main(argv: list[str] | None = None, *, console: Console | None = None) -> int:
    raw_argv = list(sys.argv[1:] if argv is None else argv)
    parser = _build_parser()
    args = parser.parse_args(raw_argv)
    args.raw_argv = raw_argv
    console = console or Console()
    if args.status:
        return _cmd_status(args, console)
    return _cmd_run(args, console)
