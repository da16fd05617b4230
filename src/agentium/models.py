"""Agentium data models: exception taxonomy, session state, routing, and outcomes."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from agentium.constants import (
    DEFAULT_JUDGE_CONTEXT_BUDGET,
    DEFAULT_MAX_REGRESSIONS,
    DEFAULT_NO_SIGNAL_LIMIT,
    DEFAULT_PHASE_MAX_ITERATIONS,
)

if TYPE_CHECKING:
    from agentium.events import AgentEvent


def _coerce_bool(value: Any, *, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"true", "1", "yes", "on"}
    return bool(value) if value is not None else default


def _coerce_str_tuple(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, (str, int)):
        value = [value]
    if not isinstance(value, (list, tuple)):
        return ()
    items: list[str] = []
    for entry in value:
        text = str(entry).strip()
        if text and text not in items:
            items.append(text)
    return tuple(items)


class AgentiumError(RuntimeError):
    """Base class for agentium failures."""


class ConfigError(AgentiumError):
    """Raised when policy, session, or credential input is invalid."""


class AdapterError(AgentiumError):
    """Raised when an adapter is unknown or misconfigured."""


class ScopeError(AgentiumError):
    """Raised when the working tree cannot be inspected or reset."""


class ExecutionError(AgentiumError):
    """Raised when an agent process cannot be started."""


# ---------------------------------------------------------------------------
# Session state
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProviderCredential:
    access_token: str
    refresh_token: str = ""
    expires_at: str = ""


@dataclass(frozen=True)
class IterationContext:
    """Phase-aware context for one invocation.

    ``skills_prompt`` replaces the session's monolithic system prompt when set.
    ``phase_input`` is the structured hand-off from the previous step and wins
    over ``memory_context`` when both are present.
    """

    phase: str = ""
    skills_prompt: str = ""
    memory_context: str = ""
    phase_input: str = ""
    model_override: str = ""
    reasoning_override: str = ""
    iteration: int = 0


@dataclass
class Session:
    id: str
    repository: str
    tasks: tuple[str, ...] = ()
    prs: tuple[str, ...] = ()
    agent: str = ""
    prompt: str = ""
    active_task: str = ""
    work_dir: str = ""
    github_token: str = ""
    max_iterations: int = 0
    max_duration_seconds: float = 0.0
    interactive: bool = False
    metadata: dict[str, str] = field(default_factory=dict)
    claude_auth_mode: str = ""
    system_prompt: str = ""
    project_prompt: str = ""
    package_path: str = ""
    existing_plan: str = ""
    credentials: dict[str, ProviderCredential] = field(default_factory=dict)
    iteration_context: IterationContext | None = None

    def current_phase(self) -> str:
        if self.iteration_context is None:
            return ""
        return self.iteration_context.phase


@dataclass(frozen=True)
class IterationResult:
    exit_code: int
    success: bool
    raw_text: str = ""
    assistant_text: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    tokens_used: int = 0
    events: tuple["AgentEvent", ...] = ()
    agent_status: str = ""
    status_message: str = ""
    pushed_changes: bool = False
    prs_created: tuple[str, ...] = ()
    tasks_completed: tuple[str, ...] = ()
    files_changed: tuple[str, ...] = ()
    stop_reason: str = ""
    error: str = ""
    summary: str = ""


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelConfig:
    adapter: str = ""
    model: str = ""
    reasoning: str = ""

    def is_empty(self) -> bool:
        return not (self.adapter or self.model or self.reasoning)


@dataclass(frozen=True)
class PhaseRouting:
    default: ModelConfig = field(default_factory=ModelConfig)
    overrides: dict[str, ModelConfig] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Scope
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    out_of_scope_files: tuple[str, ...] = ()
    allowed_exempt: tuple[str, ...] = ()
    total_files_changed: int = 0


# ---------------------------------------------------------------------------
# Review / judge
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ReviewResult:
    feedback: str
    regress_reason: str = ""
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass(frozen=True)
class JudgeResult:
    verdict: str
    feedback: str = ""
    signal_found: bool = False
    input_tokens: int = 0
    output_tokens: int = 0


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PhaseLoopConfig:
    max_iterations_by_phase: dict[str, int] = field(
        default_factory=lambda: dict(DEFAULT_PHASE_MAX_ITERATIONS)
    )
    no_signal_limit: int = DEFAULT_NO_SIGNAL_LIMIT
    max_regressions: int = DEFAULT_MAX_REGRESSIONS
    skip_plan_if_exists: bool = True
    reviewer_skip_on: str = ""
    judge_context_budget: int = DEFAULT_JUDGE_CONTEXT_BUDGET

    def max_iterations(self, phase: str) -> int:
        configured = self.max_iterations_by_phase.get(phase)
        if configured is not None and configured > 0:
            return configured
        return DEFAULT_PHASE_MAX_ITERATIONS.get(phase, 1)


@dataclass(frozen=True)
class AgentiumPolicy:
    agent: str
    phase_loop: PhaseLoopConfig
    routing: PhaseRouting | None
    package_path: str = ""
    phase_prompts: dict[str, str] = field(default_factory=dict)
    events_file: str = ""


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class IterationRecord:
    phase: str
    phase_iteration: int
    iteration: int
    adapter: str
    exit_code: int
    agent_status: str
    summary: str
    verdict: str = ""
    verdict_reason: str = ""
    scope_violation: bool = False


@dataclass(frozen=True)
class SessionOutcome:
    status: str
    phase: str
    reason: str = ""
    iterations: int = 0
    escalated: bool = False
    input_tokens: int = 0
    output_tokens: int = 0
    prs_created: tuple[str, ...] = ()
    records: tuple[IterationRecord, ...] = ()

    @property
    def succeeded(self) -> bool:
        return self.status == "completed"
