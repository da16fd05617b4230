from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from agentium.constants import (
    DEFAULT_AGENT_NAME,
    DEFAULT_JUDGE_CONTEXT_BUDGET,
    DEFAULT_MAX_REGRESSIONS,
    DEFAULT_NO_SIGNAL_LIMIT,
    DEFAULT_PHASE_MAX_ITERATIONS,
    DEFAULT_POLICY_PATH,
    EVENTS_FILENAME,
    PHASE_ORDER,
    SKIP_CONDITIONS,
)
from agentium.models import (
    AgentiumPolicy,
    ConfigError,
    PhaseLoopConfig,
    ProviderCredential,
    Session,
    _coerce_bool,
    _coerce_str_tuple,
)
from agentium.routing import _load_phase_routing
from agentium.utils import _generate_session_id, _parse_duration


def _load_yaml_mapping(path: Path, *, strict: bool) -> dict[str, Any]:
    """Read a YAML mapping.

    Lenient mode returns ``{}`` for a missing, unreadable, or non-mapping file;
    strict mode raises ``ConfigError`` instead.
    """
    if not path.exists():
        if strict:
            raise ConfigError(f"config file not found: {path}")
        return {}
    try:
        loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        if strict:
            raise ConfigError(f"config file is not valid YAML: {path}: {exc}") from exc
        return {}
    if loaded is None and not strict:
        return {}
    if not isinstance(loaded, dict):
        if strict:
            raise ConfigError(f"config file must contain a mapping: {path}")
        return {}
    return loaded


def _require_int(value: Any, *, field_name: str, default: int, minimum: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"{field_name} must be an integer")
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{field_name} must be an integer") from exc
    if parsed < minimum:
        raise ConfigError(f"{field_name} must be >= {minimum}")
    return parsed


def _optional_str(value: Any, *, field_name: str) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        raise ConfigError(f"{field_name} must be a string")
    return str(value).strip()


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


def _load_phase_loop_config(raw: Any) -> PhaseLoopConfig:
    if raw is None:
        return PhaseLoopConfig()
    if not isinstance(raw, dict):
        raise ConfigError("phase_loop must be a mapping")
    max_iterations: dict[str, int] = {}
    for phase in PHASE_ORDER:
        key = f"{phase.lower()}_max_iterations"
        max_iterations[phase] = _require_int(
            raw.get(key),
            field_name=f"phase_loop.{key}",
            default=DEFAULT_PHASE_MAX_ITERATIONS[phase],
            minimum=1,
        )
    reviewer_skip_on = _optional_str(raw.get("reviewer_skip_on"), field_name="phase_loop.reviewer_skip_on")
    if reviewer_skip_on not in SKIP_CONDITIONS:
        allowed = ", ".join(condition for condition in SKIP_CONDITIONS if condition)
        raise ConfigError(f"phase_loop.reviewer_skip_on must be one of: {allowed}")
    return PhaseLoopConfig(
        max_iterations_by_phase=max_iterations,
        no_signal_limit=_require_int(
            raw.get("no_signal_limit"),
            field_name="phase_loop.no_signal_limit",
            default=DEFAULT_NO_SIGNAL_LIMIT,
            minimum=0,
        ),
        max_regressions=_require_int(
            raw.get("max_regressions"),
            field_name="phase_loop.max_regressions",
            default=DEFAULT_MAX_REGRESSIONS,
            minimum=0,
        ),
        skip_plan_if_exists=_coerce_bool(raw.get("skip_plan_if_exists"), default=True),
        reviewer_skip_on=reviewer_skip_on,
        judge_context_budget=_require_int(
            raw.get("judge_context_budget"),
            field_name="phase_loop.judge_context_budget",
            default=DEFAULT_JUDGE_CONTEXT_BUDGET,
            minimum=1,
        ),
    )


def _load_phase_prompts(raw: Any) -> dict[str, str]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError("phase_prompts must be a mapping of phase key to text")
    prompts: dict[str, str] = {}
    for key, value in raw.items():
        text = _optional_str(value, field_name=f"phase_prompts.{key}")
        if text:
            prompts[str(key).strip()] = text
    return prompts


def _load_policy(repo_root: Path, policy_path: Path | None = None) -> AgentiumPolicy:
    path = policy_path if policy_path is not None else repo_root / DEFAULT_POLICY_PATH
    raw = _load_yaml_mapping(path, strict=False)
    monorepo = raw.get("monorepo")
    if monorepo is not None and not isinstance(monorepo, dict):
        raise ConfigError("monorepo must be a mapping")
    return AgentiumPolicy(
        agent=_optional_str(raw.get("agent"), field_name="agent") or DEFAULT_AGENT_NAME,
        phase_loop=_load_phase_loop_config(raw.get("phase_loop")),
        routing=_load_phase_routing(raw.get("routing")),
        package_path=_optional_str((monorepo or {}).get("package_path"), field_name="monorepo.package_path"),
        phase_prompts=_load_phase_prompts(raw.get("phase_prompts")),
        events_file=_optional_str(raw.get("events_file"), field_name="events_file"),
    )


def _resolve_events_path(policy: AgentiumPolicy, log_dir: Path, repo_root: Path) -> Path:
    if not policy.events_file:
        return log_dir / EVENTS_FILENAME
    candidate = Path(policy.events_file).expanduser()
    return candidate if candidate.is_absolute() else repo_root / candidate


# ---------------------------------------------------------------------------
# Session and credentials
# ---------------------------------------------------------------------------


def _read_prompt_field(raw: dict[str, Any], key: str, *, base_dir: Path) -> str:
    text = _optional_str(raw.get(key), field_name=key)
    file_value = _optional_str(raw.get(f"{key}_file"), field_name=f"{key}_file")
    if text or not file_value:
        return text
    path = Path(file_value).expanduser()
    if not path.is_absolute():
        path = base_dir / path
    try:
        return path.read_text(encoding="utf-8").strip()
    except OSError as exc:
        raise ConfigError(f"{key}_file could not be read: {path}: {exc}") from exc


def _load_metadata(raw: Any) -> dict[str, str]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError("metadata must be a mapping")
    return {str(key): "" if value is None else str(value) for key, value in raw.items()}


def _load_session(path: Path, *, work_dir: Path | None = None) -> Session:
    raw = _load_yaml_mapping(path, strict=True)
    repository = _optional_str(raw.get("repository"), field_name="repository")
    if not repository:
        raise ConfigError("repository is required")
    base_dir = path.parent
    max_iterations = _require_int(
        raw.get("max_iterations"), field_name="max_iterations", default=0, minimum=0
    )
    return Session(
        id=_optional_str(raw.get("id"), field_name="id") or _generate_session_id(),
        repository=repository,
        tasks=_coerce_str_tuple(raw.get("tasks")),
        prs=_coerce_str_tuple(raw.get("prs")),
        agent=_optional_str(raw.get("agent"), field_name="agent"),
        prompt=_read_prompt_field(raw, "prompt", base_dir=base_dir),
        active_task=_optional_str(raw.get("active_task"), field_name="active_task"),
        work_dir=str(work_dir) if work_dir is not None else _optional_str(raw.get("work_dir"), field_name="work_dir"),
        github_token=_optional_str(raw.get("github_token"), field_name="github_token"),
        max_iterations=max_iterations,
        max_duration_seconds=_parse_duration(raw.get("max_duration")),
        interactive=_coerce_bool(raw.get("interactive"), default=False),
        metadata=_load_metadata(raw.get("metadata")),
        claude_auth_mode=_optional_str(raw.get("claude_auth_mode"), field_name="claude_auth_mode"),
        system_prompt=_read_prompt_field(raw, "system_prompt", base_dir=base_dir),
        project_prompt=_read_prompt_field(raw, "project_prompt", base_dir=base_dir),
        package_path=_optional_str(raw.get("package_path"), field_name="package_path"),
        existing_plan=_read_prompt_field(raw, "existing_plan", base_dir=base_dir),
    )


def _load_credentials(path: Path) -> dict[str, ProviderCredential]:
    """Load provider credentials (YAML or JSON); acquisition happens elsewhere."""
    raw = _load_yaml_mapping(path, strict=True)
    credentials: dict[str, ProviderCredential] = {}
    for provider, entry in raw.items():
        key = str(provider).strip().lower()
        if isinstance(entry, str):
            entry = {"access_token": entry}
        if not isinstance(entry, dict):
            raise ConfigError(f"credentials.{key} must be a mapping")
        token = _optional_str(entry.get("access_token"), field_name=f"credentials.{key}.access_token")
        if not token:
            raise ConfigError(f"credentials.{key}.access_token is required")
        credentials[key] = ProviderCredential(
            access_token=token,
            refresh_token=_optional_str(entry.get("refresh_token"), field_name=f"credentials.{key}.refresh_token"),
            expires_at=_optional_str(entry.get("expires_at"), field_name=f"credentials.{key}.expires_at"),
        )
    return credentials
