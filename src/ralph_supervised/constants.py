"""Ralph supervisor constants — file names, phase vocabularies, model defaults, and patterns."""

from __future__ import annotations

import re

# ---------------------------------------------------------------------------
# Workspace files (relative to the supervised working directory)
# ---------------------------------------------------------------------------

TASK_LIST_FILE = "prd.json"
PROGRESS_FILE = "progress.txt"
GUIDANCE_FILE = "guidance.txt"
ARCHIVE_DIR = "archive"
LOGS_DIR = "logs"
STATE_FILE = ".ralph-state.json"
LOCK_FILE = ".ralph.lock"
LAST_IDENTITY_FILE = ".last-branch"
CONFIG_FILE_CANDIDATES = ("ralph-config.yaml", "ralph-config.yml", "ralph-config.json")

SESSION_INIT_PROMPT_FILE = "session-init.md"
IMPLEMENTATION_PROMPT_FILE = "prompt-supervised.md"
PREFLIGHT_PROMPT_FILE = "grandma-preflight.md"
REVIEW_PROMPT_FILE = "grandma-review.md"
REQUIRED_PROMPT_FILES = (
    IMPLEMENTATION_PROMPT_FILE,
    PREFLIGHT_PROMPT_FILE,
    REVIEW_PROMPT_FILE,
)

SESSION_LOG_NAME = "session.log"
INVOCATION_LOG_NAME = "invocations.jsonl"

# ---------------------------------------------------------------------------
# Task list schema
# ---------------------------------------------------------------------------

TASK_COLLECTION_KEY = "userStories"
RUN_IDENTITY_KEY = "branchName"
TASK_REQUIRED_FIELDS = ("id", "title", "passes")
COMPLEXITY_TIERS = ("low", "medium", "high")
DEFAULT_COMPLEXITY = "medium"
ARCHIVE_IDENTITY_PREFIX = "ralph/"

# ---------------------------------------------------------------------------
# Phases and checkpoint statuses
# ---------------------------------------------------------------------------

PHASE_SESSION_INIT = "session_init"
PHASE_STARTING = "starting"
PHASE_PREFLIGHT = "grandma_preflight"
PHASE_IMPLEMENTATION = "ralph_implementation"
PHASE_REVIEW = "grandma_review"
PHASE_COMPLETE = "complete"
PHASE_MAX_ITERATIONS = "max_iterations"

STATUS_IN_PROGRESS = "in_progress"
STATUS_PAUSED = "paused"
STATUS_ITERATION_COMPLETE = "iteration_complete"
STATUS_COMPLETE = "complete"
STATUS_BLOCKED = "blocked"
STATUS_MAX_ITERATIONS_REACHED = "max_iterations_reached"
CHECKPOINT_STATUSES = frozenset(
    {
        STATUS_IN_PROGRESS,
        STATUS_PAUSED,
        STATUS_ITERATION_COMPLETE,
        STATUS_COMPLETE,
        STATUS_BLOCKED,
        STATUS_MAX_ITERATIONS_REACHED,
    }
)
RESUMABLE_STATUSES = frozenset({STATUS_IN_PROGRESS, STATUS_PAUSED, STATUS_ITERATION_COMPLETE})

# ---------------------------------------------------------------------------
# Process runner defaults
# ---------------------------------------------------------------------------

DEFAULT_MAX_ITERATIONS = 10
DEFAULT_GRANDMA_MODEL = "claude-opus-4-5-20251101"
DEFAULT_MODEL_LOW = "claude-3-5-haiku-20241022"
DEFAULT_MODEL_MEDIUM = "claude-sonnet-4-20250514"
DEFAULT_MODEL_HIGH = "claude-opus-4-5-20251101"
DEFAULT_AGENT_COMMAND = "claude --model {model} --dangerously-skip-permissions --print"
DEFAULT_TIMEOUT_SECONDS = 300.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 5.0
DEFAULT_MIN_OUTPUT_BYTES = 50
DEFAULT_ITERATION_PAUSE_SECONDS = 2.0
TIMEOUT_BACKENDS = ("watchdog", "utility")
DEFAULT_TIMEOUT_BACKEND = "watchdog"
TIMEOUT_UTILITY_NAMES = ("timeout", "gtimeout")
TIMEOUT_UTILITY_EXIT_CODE = 124
TERMINATE_GRACE_SECONDS = 2.0
SUBSCRIPTION_ENV_VAR = "RALPH_USE_SUBSCRIPTION"
API_KEY_ENV_VAR = "ANTHROPIC_API_KEY"

ATTEMPT_SUCCESS = "SUCCESS"
ATTEMPT_TIMEOUT = "TIMEOUT"
ATTEMPT_NON_ZERO_EXIT = "EXIT"
ATTEMPT_SHORT_OUTPUT = "TOO_SHORT"
ATTEMPT_API_ERROR = "API_ERROR"

# Line-anchored markers avoid tripping on prose that merely mentions "error".
API_ERROR_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"^(?:Error:|error originated|APIError|RateLimitError)", re.MULTILINE),
    re.compile(r"(?:ETIMEDOUT|ECONNRESET|ECONNREFUSED|socket hang up|overloaded_error)"),
)

SHELL_META_PATTERN = re.compile(r"[|&;<>()$`]")
LOG_NAME_UNSAFE_PATTERN = re.compile(r"[^A-Za-z0-9-]")

# ---------------------------------------------------------------------------
# Exit codes
# ---------------------------------------------------------------------------

EXIT_OK = 0
EXIT_NEEDS_ATTENTION = 1
