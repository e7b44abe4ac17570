"""Loads and validates the task list the agent works through.

The task list is owned by the external agent: it flips ``passes`` as work
lands.  The supervisor only ever reads it, to pick the current task and to
decide whether any work remains.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any

from ralph_supervised.constants import (
    COMPLEXITY_TIERS,
    DEFAULT_COMPLEXITY,
    RUN_IDENTITY_KEY,
    TASK_COLLECTION_KEY,
    TASK_REQUIRED_FIELDS,
)
from ralph_supervised.models import SchemaError, Task, TaskList
from ralph_supervised.utils import _normalize_space

# Tasks without a usable priority sort after every prioritised task.
UNSET_PRIORITY = sys.maxsize


def _normalize_complexity(value: Any) -> str:
    complexity = _normalize_space(value).lower()
    if complexity not in COMPLEXITY_TIERS:
        return DEFAULT_COMPLEXITY
    return complexity


def _normalize_priority(value: Any) -> int:
    """Integer-valued priorities in any form (7, 7.0, "7"); anything else is unset."""
    if isinstance(value, bool) or value is None:
        return UNSET_PRIORITY
    try:
        number = float(str(value).strip()) if isinstance(value, str) else float(value)
    except (TypeError, ValueError, OverflowError):
        return UNSET_PRIORITY
    if not number.is_integer():
        return UNSET_PRIORITY
    return int(number)


def _normalize_criteria(value: Any) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    return tuple(str(item).strip() for item in value if str(item).strip())


def _entry_problem(entry: Any) -> str:
    if not isinstance(entry, dict):
        return "not an object"
    missing = [key for key in TASK_REQUIRED_FIELDS if key not in entry]
    if missing:
        return "missing required fields (" + ", ".join(TASK_REQUIRED_FIELDS) + ")"
    if not isinstance(entry.get("passes"), bool):
        return "non-boolean 'passes'"
    if not _normalize_space(entry.get("id")):
        return "empty 'id'"
    return ""


def _build_task(entry: dict[str, Any]) -> Task:
    return Task(
        id=_normalize_space(entry.get("id")),
        title=_normalize_space(entry.get("title")),
        passes=bool(entry.get("passes")),
        priority=_normalize_priority(entry.get("priority")),
        complexity=_normalize_complexity(entry.get("complexity")),
        description=_normalize_space(entry.get("description")),
        acceptance_criteria=_normalize_criteria(entry.get("acceptanceCriteria")),
        notes=_normalize_space(entry.get("notes")),
    )


def parse_task_list(payload: Any, *, path: Path) -> TaskList:
    if not isinstance(payload, dict):
        raise SchemaError(f"task list must contain a JSON object: {path}")
    if TASK_COLLECTION_KEY not in payload:
        raise SchemaError(f"task list missing '{TASK_COLLECTION_KEY}' array: {path}")
    entries = payload.get(TASK_COLLECTION_KEY)
    if not isinstance(entries, list):
        raise SchemaError(f"task list '{TASK_COLLECTION_KEY}' must be an array: {path}")
    if not entries:
        raise SchemaError(f"task list has empty '{TASK_COLLECTION_KEY}' array: {path}")

    problems: dict[str, int] = {}
    for entry in entries:
        problem = _entry_problem(entry)
        if problem:
            problems[problem] = problems.get(problem, 0) + 1
    if problems:
        invalid_count = sum(problems.values())
        detail = "; ".join(f"{count} {kind}" for kind, count in problems.items())
        raise SchemaError(f"{invalid_count} tasks invalid: {detail}")

    tasks = tuple(_build_task(entry) for entry in entries)
    seen: set[str] = set()
    duplicates: list[str] = []
    for task in tasks:
        if task.id in seen and task.id not in duplicates:
            duplicates.append(task.id)
        seen.add(task.id)
    if duplicates:
        raise SchemaError(f"task identifiers must be unique; duplicated: {', '.join(duplicates)}")

    return TaskList(
        path=path,
        tasks=tasks,
        run_identity=_normalize_space(payload.get(RUN_IDENTITY_KEY)),
    )


def load_task_list(path: Path) -> TaskList:
    """Load ``path`` or raise ``SchemaError``; nothing is accepted partially."""
    if not path.exists():
        raise SchemaError(f"task list not found at {path}")
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise SchemaError(f"task list is not valid JSON: {path}: {exc}") from exc
    except OSError as exc:
        raise SchemaError(f"task list could not be read: {path}: {exc}") from exc
    return parse_task_list(payload, path=path)


def current_task(task_list: TaskList) -> Task | None:
    """Lowest-priority incomplete task; list order breaks ties."""
    incomplete = [task for task in task_list.tasks if not task.passes]
    if not incomplete:
        return None
    return min(incomplete, key=lambda task: task.priority)


def incomplete_count(task_list: TaskList) -> int:
    return sum(1 for task in task_list.tasks if not task.passes)


def describe_current_task(task_list: TaskList) -> str:
    task = current_task(task_list)
    if task is None:
        return "No incomplete tasks"
    return task.label()
