from __future__ import annotations

import contextlib
import json
import os
import signal
import sys
import textwrap
import time
from pathlib import Path

import pytest

import ralph_supervised.runners as runners
from ralph_supervised.models import (
    ExecutionResult,
    ProcessFailure,
    RunnerConfig,
    ValidationError,
)

LONG_OUTPUT = "x" * 80


def _runner_config(**overrides: object) -> RunnerConfig:
    values: dict[str, object] = {
        "command": f"{sys.executable} agent.py --model {{model}}",
        "timeout_seconds": 10.0,
        "max_retries": 3,
        "retry_delay_seconds": 5.0,
        "min_output_bytes": 50,
        "timeout_backend": "watchdog",
        "use_subscription": True,
    }
    values.update(overrides)
    return RunnerConfig(**values)  # type: ignore[arg-type]


def _write_script(path: Path, body: str) -> Path:
    path.write_text(textwrap.dedent(body), encoding="utf-8")
    return path


def _pid_gone(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return True
    stat_path = Path(f"/proc/{pid}/stat")
    if stat_path.exists():
        # An unreaped zombie no longer runs.
        return stat_path.read_text().split(")")[-1].split()[0] == "Z"
    return False


def _wait_until_gone(pid: int, *, seconds: float = 5.0) -> bool:
    deadline = time.monotonic() + seconds
    while not _pid_gone(pid) and time.monotonic() < deadline:
        time.sleep(0.1)
    return _pid_gone(pid)


@contextlib.contextmanager
def _alarm_interrupts():
    """Turn SIGALRM into KeyboardInterrupt, the way Ctrl-C reaches the supervisor."""

    def _raise(_signum, _frame):
        raise KeyboardInterrupt

    previous = signal.signal(signal.SIGALRM, _raise)
    try:
        yield
    finally:
        signal.signal(signal.SIGALRM, previous)


class _ScriptedBackend:
    """Stands in for a timeout backend; replays one (output, result) pair per attempt."""

    def __init__(self, steps: list[tuple[str, ExecutionResult]]) -> None:
        self.steps = list(steps)
        self.calls: list[dict[str, object]] = []

    def __call__(self, argv, prompt_text, output_path, *, timeout, env, cwd) -> ExecutionResult:
        self.calls.append({"argv": argv, "prompt": prompt_text, "timeout": timeout, "env": env, "cwd": cwd})
        output_text, result = self.steps.pop(0)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(output_text, encoding="utf-8")
        return result


_OK = ExecutionResult(exit_code=0, timed_out=False)
_TIMEOUT = ExecutionResult(exit_code=None, timed_out=True)


# ---------------------------------------------------------------------------
# Command construction
# ---------------------------------------------------------------------------


def test_build_agent_argv_substitutes_model() -> None:
    argv = runners._build_agent_argv("claude --model {model} --print", model="claude-sonnet-4")
    assert argv == ["claude", "--model", "claude-sonnet-4", "--print"]


def test_build_agent_argv_keeps_model_as_single_argument() -> None:
    argv = runners._build_agent_argv("agent --model {model}", model="odd model name")
    assert argv == ["agent", "--model", "odd model name"]


@pytest.mark.parametrize("template", ["claude --print | tee out", "claude $(whoami)", "a; b", "a && b"])
def test_build_agent_argv_rejects_shell_syntax(template: str) -> None:
    with pytest.raises(ValidationError, match="shell metacharacters"):
        runners._build_agent_argv(template, model="m")


def test_build_agent_argv_rejects_empty_command() -> None:
    with pytest.raises(ValidationError, match="empty"):
        runners._build_agent_argv("   ", model="m")


def test_build_child_env_strips_api_key_for_subscription() -> None:
    environ = {"ANTHROPIC_API_KEY": "secret", "PATH": "/bin"}

    env = runners._build_child_env(_runner_config(use_subscription=True), environ)
    assert "ANTHROPIC_API_KEY" not in env
    assert env["PATH"] == "/bin"
    assert environ["ANTHROPIC_API_KEY"] == "secret"

    env = runners._build_child_env(_runner_config(use_subscription=False), environ)
    assert env["ANTHROPIC_API_KEY"] == "secret"


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def test_classify_attempt_order() -> None:
    classify = runners._classify_attempt

    assert classify(_TIMEOUT, LONG_OUTPUT, min_output_bytes=50).status == "TIMEOUT"
    failed = classify(ExecutionResult(exit_code=3, timed_out=False), "Error: boom", min_output_bytes=50)
    assert failed.status == "EXIT"
    assert failed.label() == "EXIT_3"
    api = classify(_OK, "Error: 529 overloaded\n" + LONG_OUTPUT, min_output_bytes=50)
    assert api.status == "API_ERROR"
    assert api.matched_pattern == "Error:"
    assert classify(_OK, "ok", min_output_bytes=50).status == "TOO_SHORT"
    assert classify(_OK, LONG_OUTPUT, min_output_bytes=50).ok


@pytest.mark.parametrize(
    "text",
    [
        "RateLimitError: slow down",
        "request failed: ECONNRESET",
        "upstream said socket hang up",
        '{"type": "overloaded_error"}',
        "prelude\nAPIError: bad gateway",
    ],
)
def test_detect_api_error_markers(text: str) -> None:
    assert runners._detect_api_error(text + "\n" + LONG_OUTPUT)


def test_detect_api_error_ignores_prose_mentions() -> None:
    text = "I fixed the error handling. The old Error: prefix check now lives in utils.\n" + LONG_OUTPUT
    assert runners._detect_api_error(text) == ""


def test_retry_delay_grows_linearly() -> None:
    config = _runner_config(retry_delay_seconds=5.0)
    assert [runners._retry_delay_seconds(config, attempt) for attempt in (1, 2, 3)] == [5.0, 10.0, 15.0]


# ---------------------------------------------------------------------------
# ProcessRunner with a scripted backend
# ---------------------------------------------------------------------------


def test_invoke_returns_first_success_without_sleeping(tmp_path: Path) -> None:
    backend = _ScriptedBackend([(LONG_OUTPUT, _OK)])
    sleeps: list[float] = []
    runner = runners.ProcessRunner(
        _runner_config(), tmp_path / "logs", cwd=tmp_path, backend=backend, sleep=sleeps.append, environ={}
    )

    result = runner.invoke("claude-sonnet-4", "do the work", "Ralph implementation 1")

    assert result.output_text == LONG_OUTPUT
    assert result.attempts == 1
    assert sleeps == []
    assert backend.calls[0]["prompt"] == "do the work"
    assert backend.calls[0]["argv"][-1] == "claude-sonnet-4"
    log_dir = tmp_path / "logs"
    assert (log_dir / "Ralph-implementation-1-prompt.md").read_text(encoding="utf-8") == "do the work"
    assert (log_dir / "Ralph-implementation-1-attempt1-SUCCESS.txt").read_text(encoding="utf-8") == LONG_OUTPUT


def test_invoke_retries_with_growing_delay_then_succeeds(tmp_path: Path) -> None:
    backend = _ScriptedBackend(
        [
            ("", _TIMEOUT),
            ("tiny", _OK),
            (LONG_OUTPUT, _OK),
        ]
    )
    sleeps: list[float] = []
    runner = runners.ProcessRunner(
        _runner_config(), tmp_path / "logs", cwd=tmp_path, backend=backend, sleep=sleeps.append, environ={}
    )

    result = runner.invoke("m", "prompt", "Grandma review 2")

    assert result.attempts == 3
    assert sleeps == [5.0, 10.0]
    names = sorted(path.name for path in (tmp_path / "logs").glob("Grandma-review-2-attempt*"))
    assert names == [
        "Grandma-review-2-attempt1-TIMEOUT.txt",
        "Grandma-review-2-attempt2-TOO_SHORT.txt",
        "Grandma-review-2-attempt3-SUCCESS.txt",
    ]


def test_invoke_raises_after_exhausting_attempts_without_final_sleep(tmp_path: Path) -> None:
    failing = ExecutionResult(exit_code=1, timed_out=False)
    backend = _ScriptedBackend([("boom", failing), ("boom", failing), ("boom", failing)])
    sleeps: list[float] = []
    runner = runners.ProcessRunner(
        _runner_config(), tmp_path / "logs", cwd=tmp_path, backend=backend, sleep=sleeps.append, environ={}
    )

    with pytest.raises(ProcessFailure) as excinfo:
        runner.invoke("m", "prompt", "Grandma preflight 1")

    assert excinfo.value.attempts == 3
    assert excinfo.value.outcome.exit_code == 1
    assert "exited with code 1" in str(excinfo.value)
    assert sleeps == [5.0, 10.0]
    records = [
        json.loads(line)
        for line in (tmp_path / "logs" / "invocations.jsonl").read_text(encoding="utf-8").splitlines()
    ]
    assert [record["outcome"] for record in records] == ["EXIT_1", "EXIT_1", "EXIT_1"]
    assert [record["attempt"] for record in records] == [1, 2, 3]
    session_log = (tmp_path / "logs" / "session.log").read_text(encoding="utf-8")
    assert "Grandma-preflight-1 attempt 3: EXIT_1" in session_log


def test_invoke_repeated_description_keeps_earlier_logs(tmp_path: Path) -> None:
    backend = _ScriptedBackend([("first " + LONG_OUTPUT, _OK), ("second " + LONG_OUTPUT, _OK)])
    runner = runners.ProcessRunner(
        _runner_config(), tmp_path / "logs", cwd=tmp_path, backend=backend, sleep=lambda _s: None, environ={}
    )

    runner.invoke("m", "p1", "Session init")
    runner.invoke("m", "p2", "Session init")

    log_dir = tmp_path / "logs"
    assert (log_dir / "Session-init-attempt1-SUCCESS.txt").read_text(encoding="utf-8").startswith("first")
    assert (log_dir / "Session-init-attempt1-SUCCESS-2.txt").read_text(encoding="utf-8").startswith("second")
    assert (log_dir / "Session-init-prompt-2.md").read_text(encoding="utf-8") == "p2"


def test_invoke_passes_per_call_timeout_and_env(tmp_path: Path) -> None:
    backend = _ScriptedBackend([(LONG_OUTPUT, _OK)])
    runner = runners.ProcessRunner(
        _runner_config(timeout_seconds=42.0),
        tmp_path / "logs",
        cwd=tmp_path,
        backend=backend,
        environ={"ANTHROPIC_API_KEY": "k", "HOME": "/home/x"},
    )

    runner.invoke("m", "prompt", "Health check", timeout=7.0)

    assert backend.calls[0]["timeout"] == 7.0
    assert backend.calls[0]["env"] == {"HOME": "/home/x"}
    assert backend.calls[0]["cwd"] == tmp_path


def test_invoke_notifies_attempt_progress(tmp_path: Path) -> None:
    backend = _ScriptedBackend([("", _TIMEOUT), (LONG_OUTPUT, _OK)])
    events: list[tuple[str, str]] = []
    runner = runners.ProcessRunner(
        _runner_config(max_retries=2),
        tmp_path / "logs",
        cwd=tmp_path,
        backend=backend,
        sleep=lambda _s: None,
        environ={},
        notify=lambda level, message: events.append((level, message)),
    )

    runner.invoke("m", "prompt", "Health check")

    assert events == [
        ("info", "[Health check] Attempt 1 of 2"),
        ("warning", "[Health check] timed out"),
        ("info", "[Health check] Attempt 2 of 2"),
        ("success", "[Health check] Success"),
    ]


def test_runner_rejects_unknown_backend(tmp_path: Path) -> None:
    with pytest.raises(ValidationError, match="unknown timeout backend"):
        runners.ProcessRunner(_runner_config(timeout_backend="cron"), tmp_path, cwd=tmp_path, environ={})


# ---------------------------------------------------------------------------
# Real child processes
# ---------------------------------------------------------------------------


def test_watchdog_feeds_prompt_over_stdin(tmp_path: Path) -> None:
    script = _write_script(
        tmp_path / "echo_agent.py",
        """
        import sys
        prompt = sys.stdin.read()
        print("received:" + str(len(prompt)))
        print(prompt.upper())
        """,
    )
    prompt = "implement the story " * 5000
    output_path = tmp_path / "out.txt"

    result = runners._execute_with_watchdog(
        [sys.executable, str(script)], prompt, output_path, timeout=20, env=os.environ, cwd=tmp_path
    )

    assert result == ExecutionResult(exit_code=0, timed_out=False)
    output = output_path.read_text(encoding="utf-8")
    assert output.startswith(f"received:{len(prompt)}")
    assert "IMPLEMENT THE STORY" in output


def test_watchdog_reports_non_zero_exit_and_stderr(tmp_path: Path) -> None:
    script = _write_script(
        tmp_path / "failing_agent.py",
        """
        import sys
        sys.stdin.read()
        print("Error: model unavailable", file=sys.stderr)
        sys.exit(3)
        """,
    )
    output_path = tmp_path / "out.txt"

    result = runners._execute_with_watchdog(
        [sys.executable, str(script)], "prompt", output_path, timeout=20, env=os.environ, cwd=tmp_path
    )

    assert result == ExecutionResult(exit_code=3, timed_out=False)
    assert "Error: model unavailable" in output_path.read_text(encoding="utf-8")


def test_watchdog_missing_executable_is_a_failed_attempt(tmp_path: Path) -> None:
    output_path = tmp_path / "out.txt"
    result = runners._execute_with_watchdog(
        [str(tmp_path / "no-such-agent")], "prompt", output_path, timeout=5, env=os.environ, cwd=tmp_path
    )
    assert result.exit_code == runners.EXIT_CANNOT_START
    assert "failed to start" in output_path.read_text(encoding="utf-8")


def test_watchdog_timeout_kills_process_group(tmp_path: Path) -> None:
    pid_file = tmp_path / "grandchild.pid"
    script = _write_script(
        tmp_path / "hanging_agent.py",
        f"""
        import subprocess
        import sys
        import time
        child = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)"])
        with open({str(pid_file)!r}, "w") as handle:
            handle.write(str(child.pid))
        print("started", flush=True)
        time.sleep(60)
        """,
    )
    output_path = tmp_path / "out.txt"

    started = time.monotonic()
    result = runners._execute_with_watchdog(
        [sys.executable, str(script)], "prompt", output_path, timeout=3, env=os.environ, cwd=tmp_path
    )
    elapsed = time.monotonic() - started

    assert result == ExecutionResult(exit_code=None, timed_out=True)
    assert elapsed < 15
    grandchild_pid = int(pid_file.read_text(encoding="utf-8"))
    deadline = time.monotonic() + 5
    while not _pid_gone(grandchild_pid) and time.monotonic() < deadline:
        time.sleep(0.1)
    assert _pid_gone(grandchild_pid)


@pytest.mark.parametrize(
    "backend",
    [
        runners._execute_with_watchdog,
        pytest.param(
            runners._execute_with_timeout_utility,
            marks=pytest.mark.skipif(runners._find_timeout_utility() is None, reason="timeout utility not installed"),
        ),
    ],
)
def test_interrupt_kills_agent_process_group(tmp_path: Path, backend: runners.Backend) -> None:
    pid_file = tmp_path / "agent.pids"
    script = _write_script(
        tmp_path / "interrupted_agent.py",
        f"""
        import os
        import signal
        import subprocess
        import sys
        import time
        sys.stdin.read()
        child = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)"])
        with open({str(pid_file)!r}, "w") as handle:
            handle.write(f"{{os.getpid()}} {{child.pid}}")
        os.kill(int(os.environ["SUPERVISOR_PID"]), signal.SIGALRM)
        time.sleep(60)
        """,
    )
    env = {**os.environ, "SUPERVISOR_PID": str(os.getpid())}

    started = time.monotonic()
    with _alarm_interrupts(), pytest.raises(KeyboardInterrupt):
        backend([sys.executable, str(script)], "prompt", tmp_path / "out.txt", timeout=30, env=env, cwd=tmp_path)

    assert time.monotonic() - started < 15
    agent_pid, grandchild_pid = (int(value) for value in pid_file.read_text(encoding="utf-8").split())
    assert _wait_until_gone(agent_pid)
    assert _wait_until_gone(grandchild_pid)


@pytest.mark.skipif(runners._find_timeout_utility() is None, reason="timeout utility not installed")
def test_timeout_utility_backend_reports_timeout(tmp_path: Path) -> None:
    script = _write_script(
        tmp_path / "slow_agent.py",
        """
        import time
        time.sleep(60)
        """,
    )
    result = runners._execute_with_timeout_utility(
        [sys.executable, str(script)], "prompt", tmp_path / "out.txt", timeout=1, env=os.environ, cwd=tmp_path
    )
    assert result.timed_out


@pytest.mark.skipif(runners._find_timeout_utility() is None, reason="timeout utility not installed")
def test_timeout_utility_backend_passes_exit_code(tmp_path: Path) -> None:
    script = _write_script(
        tmp_path / "quick_agent.py",
        """
        import sys
        print(sys.stdin.read())
        """,
    )
    output_path = tmp_path / "out.txt"
    result = runners._execute_with_timeout_utility(
        [sys.executable, str(script)], "hello agent", output_path, timeout=20, env=os.environ, cwd=tmp_path
    )
    assert result == ExecutionResult(exit_code=0, timed_out=False)
    assert "hello agent" in output_path.read_text(encoding="utf-8")


def test_runner_end_to_end_with_real_agent(tmp_path: Path) -> None:
    _write_script(
        tmp_path / "agent.py",
        """
        import os
        import sys
        model = sys.argv[sys.argv.index("--model") + 1]
        prompt = sys.stdin.read()
        print(f"model={model} key={os.environ.get('ANTHROPIC_API_KEY', '<none>')}")
        print("prompt=" + prompt)
        print("<grandma>CONTINUE</grandma>")
        """,
    )
    runner = runners.ProcessRunner(
        _runner_config(command=f"{sys.executable} agent.py --model {{model}}"),
        tmp_path / "logs",
        cwd=tmp_path,
        environ={**os.environ, "ANTHROPIC_API_KEY": "secret"},
    )

    result = runner.invoke("claude-opus", "review the last iteration", "Grandma review 1")

    assert "model=claude-opus key=<none>" in result.output_text
    assert "prompt=review the last iteration" in result.output_text
    assert result.records[0].outcome == "SUCCESS"
    assert not (tmp_path / "logs" / ".work" / "Grandma-review-1-output.txt").exists()
