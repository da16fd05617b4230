"""Agentium constants: phases, routing keys, environment names, and defaults."""

from __future__ import annotations

from pathlib import Path

# ---------------------------------------------------------------------------
# Workflow phases
# ---------------------------------------------------------------------------

PHASE_PLAN = "PLAN"
PHASE_IMPLEMENT = "IMPLEMENT"
PHASE_DOCS = "DOCS"
PHASE_PR_CREATION = "PR_CREATION"
PHASE_ORDER = (PHASE_PLAN, PHASE_IMPLEMENT, PHASE_DOCS, PHASE_PR_CREATION)
PLANNING_PHASES = frozenset({PHASE_PLAN})

REVIEW_SUFFIX = "_REVIEW"
JUDGE_SUFFIX = "_JUDGE"
GENERIC_REVIEW_KEY = "REVIEW"
GENERIC_JUDGE_KEY = "JUDGE"

KNOWN_ROUTING_KEYS: frozenset[str] = frozenset(
    {
        *PHASE_ORDER,
        GENERIC_REVIEW_KEY,
        GENERIC_JUDGE_KEY,
        *(f"{phase}{REVIEW_SUFFIX}" for phase in PHASE_ORDER),
        *(f"{phase}{JUDGE_SUFFIX}" for phase in PHASE_ORDER),
    }
)

DEFAULT_PHASE_MAX_ITERATIONS = {
    PHASE_PLAN: 3,
    PHASE_IMPLEMENT: 5,
    PHASE_DOCS: 2,
    PHASE_PR_CREATION: 2,
}
DEFAULT_NO_SIGNAL_LIMIT = 3
DEFAULT_MAX_REGRESSIONS = 1
DEFAULT_JUDGE_CONTEXT_BUDGET = 8000
SIMPLE_OUTPUT_LINE_THRESHOLD = 10
SKIP_CONDITION_EMPTY_OUTPUT = "empty_output"
SKIP_CONDITION_SIMPLE_OUTPUT = "simple_output"
SKIP_CONDITIONS = ("", SKIP_CONDITION_EMPTY_OUTPUT, SKIP_CONDITION_SIMPLE_OUTPUT)

# ---------------------------------------------------------------------------
# Verdicts and session outcome statuses
# ---------------------------------------------------------------------------

VERDICT_ADVANCE = "ADVANCE"
VERDICT_ITERATE = "ITERATE"
VERDICT_BLOCKED = "BLOCKED"
VERDICT_REGRESS = "REGRESS"
JUDGE_VERDICTS = (VERDICT_ADVANCE, VERDICT_ITERATE, VERDICT_BLOCKED, VERDICT_REGRESS)

OUTCOME_COMPLETED = "completed"
OUTCOME_BLOCKED = "blocked"
OUTCOME_EXHAUSTED = "exhausted"
OUTCOME_TIMED_OUT = "timed_out"
OUTCOME_CANCELLED = "cancelled"
OUTCOME_ERROR = "error"

# ---------------------------------------------------------------------------
# Status signals
# ---------------------------------------------------------------------------

STATUS_PUSH_STATUSES: frozenset[str] = frozenset({"PUSHED", "COMPLETE", "PR_CREATED"})
STATUS_NOTHING_TO_DO = "NOTHING_TO_DO"
SUMMARY_SUCCESS = "Iteration completed successfully"

STATUS_SIGNAL_INSTRUCTIONS = """When you complete a significant milestone, output a status signal on its own line in this format:
AGENTIUM_STATUS: STATUS_NAME optional message

Available status values:
- TESTS_PASSED: All tests pass
- TESTS_FAILED: Tests failed (include details in message)
- PR_CREATED: Pull request created (include URL in message)
- PUSHED: Changes pushed to remote
- COMPLETE: All work finished successfully
- NOTHING_TO_DO: No changes needed
- BLOCKED: Cannot proceed (include reason in message)
- ANALYZING: Currently analyzing the codebase
- TESTS_RUNNING: Currently running tests"""

# ---------------------------------------------------------------------------
# Adapters and environment
# ---------------------------------------------------------------------------

ADAPTER_CLAUDE_CODE = "claude-code"
ADAPTER_CODEX = "codex"
ADAPTER_AIDER = "aider"
DEFAULT_AGENT_NAME = ADAPTER_CLAUDE_CODE

CLAUDE_CODE_IMAGE = "ghcr.io/andymwolf/agentium-claudecode:latest"
CODEX_IMAGE = "ghcr.io/andymwolf/agentium-codex:latest"
AIDER_IMAGE = "ghcr.io/andymwolf/agentium-aider:latest"
AIDER_DEFAULT_MODEL = "claude-3-5-sonnet-20241022"

PROVIDER_ANTHROPIC = "anthropic"
PROVIDER_OPENAI = "openai"

WORKSPACE_DIR = "/workspace"
ENV_PREFIX = "AGENTIUM_"
SENSITIVE_METADATA_MARKERS = ("key", "secret", "token")
DEFAULT_AUTH_MODE = "api"
OAUTH_AUTH_MODE = "oauth"

# Thinking blocks are hard-truncated to this many UTF-8 bytes.
MAX_THINKING_BYTES = 50000
MAX_SUMMARY_CHARS = 100

# ---------------------------------------------------------------------------
# Scope enforcement
# ---------------------------------------------------------------------------

ROOT_MANIFEST_FILES = ("package.json", "pnpm-workspace.yaml")
ROOT_LOCKFILES = ("pnpm-lock.yaml",)
CI_WORKFLOW_DIRS = (".github/workflows",)

# ---------------------------------------------------------------------------
# Files and paths
# ---------------------------------------------------------------------------

CONTROL_DIR_NAME = ".agentium"
DEFAULT_POLICY_PATH = Path(CONTROL_DIR_NAME) / "policy.yaml"
DEFAULT_LOG_DIR = Path(CONTROL_DIR_NAME) / "logs"
PLAN_ARTIFACT_PATH = Path(CONTROL_DIR_NAME) / "plan.md"
LOG_FILENAME = "controller.log"
EVENTS_FILENAME = "events.jsonl"
EVENT_TAIL_INTERVAL_SECONDS = 1.0
PROCESS_POLL_INTERVAL_SECONDS = 0.2
PROCESS_TERMINATE_GRACE_SECONDS = 5.0
