from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from ralph_supervised.constants import (
    COMPLEXITY_TIERS,
    CONFIG_FILE_CANDIDATES,
    DEFAULT_AGENT_COMMAND,
    DEFAULT_COMPLEXITY,
    DEFAULT_GRANDMA_MODEL,
    DEFAULT_ITERATION_PAUSE_SECONDS,
    DEFAULT_MAX_RETRIES,
    DEFAULT_MIN_OUTPUT_BYTES,
    DEFAULT_MODEL_HIGH,
    DEFAULT_MODEL_LOW,
    DEFAULT_MODEL_MEDIUM,
    DEFAULT_RETRY_DELAY_SECONDS,
    DEFAULT_TIMEOUT_BACKEND,
    DEFAULT_TIMEOUT_SECONDS,
    SUBSCRIPTION_ENV_VAR,
    TIMEOUT_BACKENDS,
)
from ralph_supervised.models import (
    ModelConfig,
    RunnerConfig,
    SupervisorConfig,
    Task,
    _coerce_bool,
    _coerce_float,
    _coerce_positive_int,
)


def _resolve_config_path(root: Path, config_path: Path | None = None) -> Path | None:
    if config_path is not None:
        return config_path
    for name in CONFIG_FILE_CANDIDATES:
        candidate = root / name
        if candidate.exists():
            return candidate
    return None


def _load_config_overrides(path: Path | None) -> tuple[dict[str, Any], list[str]]:
    if path is None:
        return ({}, [])
    if not path.exists():
        return ({}, [f"config file not found at {path}; using defaults"])
    try:
        loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        return ({}, [f"config file {path} could not be parsed ({exc}); using defaults"])
    if loaded is None:
        return ({}, [])
    if not isinstance(loaded, dict):
        return ({}, [f"config file {path} must contain a mapping; using defaults"])
    return (loaded, [])


def _text_setting(value: Any, *, default: str) -> str:
    text = str(value).strip() if value is not None else ""
    return text or default


def _load_model_config(overrides: Mapping[str, Any]) -> ModelConfig:
    models = overrides.get("models")
    if not isinstance(models, dict):
        models = {}
    low = _text_setting(models.get("low"), default=DEFAULT_MODEL_LOW)
    return ModelConfig(
        grandma=_text_setting(models.get("grandma"), default=DEFAULT_GRANDMA_MODEL),
        low=low,
        medium=_text_setting(models.get("medium"), default=DEFAULT_MODEL_MEDIUM),
        high=_text_setting(models.get("high"), default=DEFAULT_MODEL_HIGH),
        init=_text_setting(models.get("init"), default=low),
    )


def _resolve_use_subscription(overrides: Mapping[str, Any], environ: Mapping[str, str]) -> bool:
    if "use_subscription" in overrides:
        return _coerce_bool(overrides.get("use_subscription"), default=True)
    return _coerce_bool(environ.get(SUBSCRIPTION_ENV_VAR, "true"), default=True)


def _load_runner_config(
    overrides: Mapping[str, Any],
    *,
    environ: Mapping[str, str],
    warnings: list[str],
) -> RunnerConfig:
    timeout_backend = _text_setting(
        overrides.get("timeout_backend"), default=DEFAULT_TIMEOUT_BACKEND
    ).lower()
    if timeout_backend not in TIMEOUT_BACKENDS:
        warnings.append(
            f"timeout_backend must be one of {list(TIMEOUT_BACKENDS)}, got '{timeout_backend}'; "
            f"using {DEFAULT_TIMEOUT_BACKEND}"
        )
        timeout_backend = DEFAULT_TIMEOUT_BACKEND
    timeout_seconds = _coerce_float(overrides.get("timeout"), default=DEFAULT_TIMEOUT_SECONDS)
    if timeout_seconds <= 0:
        timeout_seconds = DEFAULT_TIMEOUT_SECONDS
    min_output_bytes = overrides.get("min_output_bytes", DEFAULT_MIN_OUTPUT_BYTES)
    try:
        min_output_bytes = max(0, int(min_output_bytes))
    except Exception:
        min_output_bytes = DEFAULT_MIN_OUTPUT_BYTES
    return RunnerConfig(
        command=_text_setting(overrides.get("agent_command"), default=DEFAULT_AGENT_COMMAND),
        timeout_seconds=timeout_seconds,
        max_retries=_coerce_positive_int(overrides.get("max_retries"), default=DEFAULT_MAX_RETRIES),
        retry_delay_seconds=_coerce_float(
            overrides.get("retry_delay"), default=DEFAULT_RETRY_DELAY_SECONDS
        ),
        min_output_bytes=min_output_bytes,
        timeout_backend=timeout_backend,
        use_subscription=_resolve_use_subscription(overrides, environ),
    )


def _load_supervisor_config(
    root: Path,
    config_path: Path | None = None,
    *,
    environ: Mapping[str, str] | None = None,
) -> SupervisorConfig:
    """Assemble the session configuration once: defaults, then the override file."""
    if environ is None:
        environ = os.environ
    resolved_path = _resolve_config_path(root, config_path)
    overrides, warnings = _load_config_overrides(resolved_path)
    runner = _load_runner_config(overrides, environ=environ, warnings=warnings)
    return SupervisorConfig(
        models=_load_model_config(overrides),
        runner=runner,
        iteration_pause_seconds=_coerce_float(
            overrides.get("iteration_pause"), default=DEFAULT_ITERATION_PAUSE_SECONDS
        ),
        source_path=resolved_path if resolved_path is not None and resolved_path.exists() else None,
        warnings=tuple(warnings),
    )


def _select_implementation_model(models: ModelConfig, task: Task | None) -> str:
    complexity = task.complexity if task is not None else DEFAULT_COMPLEXITY
    if complexity not in COMPLEXITY_TIERS:
        complexity = DEFAULT_COMPLEXITY
    if complexity == "low":
        return models.low
    if complexity == "high":
        return models.high
    return models.medium
