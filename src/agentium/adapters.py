"""Agent adapters, one per coding-agent CLI.

Every adapter turns a ``Session`` into an invocation (environment, argv,
optional stdin prompt) and turns the process output back into an
``IterationResult``. Optional behavior is expressed as capability methods
(``get_stdin_prompt``, ``supports_continuation``/``build_continue_command``,
``supports_plan_mode``) that the registry probes for.
"""

from __future__ import annotations

import dataclasses
import os
from typing import Mapping, Protocol

from agentium.constants import (
    ADAPTER_AIDER,
    ADAPTER_CLAUDE_CODE,
    ADAPTER_CODEX,
    AIDER_DEFAULT_MODEL,
    AIDER_IMAGE,
    CLAUDE_CODE_IMAGE,
    CODEX_IMAGE,
    DEFAULT_AUTH_MODE,
    ENV_PREFIX,
    OAUTH_AUTH_MODE,
    PLANNING_PHASES,
    PROVIDER_ANTHROPIC,
    PROVIDER_OPENAI,
    SENSITIVE_METADATA_MARKERS,
    STATUS_SIGNAL_INSTRUCTIONS,
    WORKSPACE_DIR,
)
from agentium.models import AdapterError, IterationResult, Session
from agentium.signals import _apply_signal_pipeline
from agentium.streams import _parse_codex_jsonl, _parse_plain_text, _parse_stream_json


class AgentAdapter(Protocol):
    name: str
    image: str
    credential_provider: str

    def build_env(self, session: Session, iteration: int) -> dict[str, str]: ...

    def build_command(self, session: Session, iteration: int) -> list[str]: ...

    def build_prompt(self, session: Session, iteration: int) -> str: ...

    def parse_output(self, exit_code: int, stdout: str, stderr: str) -> IterationResult: ...

    def validate(self) -> None: ...

    def has_credentials(self, session: Session, environ: Mapping[str, str] | None = None) -> bool: ...


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(marker in lowered for marker in SENSITIVE_METADATA_MARKERS)


def _build_base_env(
    session: Session,
    iteration: int,
    *,
    auth_mode: str,
    workspace_dir: str = WORKSPACE_DIR,
) -> dict[str, str]:
    env = {
        "GITHUB_TOKEN": session.github_token,
        f"{ENV_PREFIX}SESSION_ID": session.id,
        f"{ENV_PREFIX}ITERATION": str(iteration),
        f"{ENV_PREFIX}REPOSITORY": session.repository,
        f"{ENV_PREFIX}WORKDIR": workspace_dir,
        f"{ENV_PREFIX}AUTH_MODE": auth_mode,
    }
    phase = session.current_phase()
    if phase:
        env[f"{ENV_PREFIX}PHASE"] = phase
    for key, value in session.metadata.items():
        if _is_sensitive_key(key):
            continue
        env[f"{ENV_PREFIX}{key.upper()}"] = str(value)
    return env


def _effective_system_prompt(session: Session) -> str:
    context = session.iteration_context
    if context is not None and context.skills_prompt:
        return context.skills_prompt
    return session.system_prompt


def _model_override(session: Session, *, metadata_key: str = "") -> str:
    context = session.iteration_context
    if context is not None and context.model_override:
        return context.model_override
    if metadata_key:
        return str(session.metadata.get(metadata_key, "") or "")
    return ""


def _reasoning_override(session: Session) -> str:
    context = session.iteration_context
    return context.reasoning_override if context is not None else ""


def _is_planning_phase(session: Session) -> bool:
    return session.current_phase() in PLANNING_PHASES


def _credential_token(session: Session, provider: str) -> str:
    credential = session.credentials.get(provider)
    if credential is None:
        return ""
    return credential.access_token


def _build_generic_prompt(session: Session, iteration: int, *, workspace_dir: str) -> str:
    lines = [f"You are working on repository: {session.repository}", ""]
    if session.prompt:
        lines.extend([session.prompt, ""])
    else:
        lines.extend(["Complete the following GitHub issues:", ""])
    lines.extend(f"- Issue #{task}" for task in session.tasks)
    lines.extend(
        [
            "",
            "For each issue:",
            "1. Create a new branch: agentium/issue-<number>-<short-description>",
            "2. Implement the fix or feature",
            "3. Run any relevant tests",
            "4. Commit your changes with a descriptive message",
            "5. Push the branch",
            "6. Create a pull request linking to the issue",
            "",
            "Use 'gh' CLI for GitHub operations and 'git' for version control.",
            f"The repository is already cloned at {workspace_dir}.",
        ]
    )
    if iteration > 1:
        lines.extend(["", f"This is iteration {iteration}. Continue from where you left off."])
    return "\n".join(lines) + "\n"


def _build_prompt(session: Session, iteration: int, *, workspace_dir: str = WORKSPACE_DIR) -> str:
    """Focused task prompt plus hand-off, or the generic multi-issue prompt.

    Hand-off input is more specific to the next step than accumulated memory,
    so only one of the two is appended and hand-off wins.
    """
    if session.active_task and session.prompt:
        prompt = session.prompt
        context = session.iteration_context
        if context is not None:
            if context.phase_input:
                prompt += "\n\n" + context.phase_input
            elif context.memory_context:
                prompt += "\n\n" + context.memory_context
        return prompt
    return _build_generic_prompt(session, iteration, workspace_dir=workspace_dir)


def _validate_image(name: str, image: str) -> None:
    if not str(image).strip():
        raise AdapterError(f"{name}: container image is required")


# ---------------------------------------------------------------------------
# claude-code
# ---------------------------------------------------------------------------


class ClaudeCodeAdapter:
    """Claude Code CLI, stream-json output, prompt via stdin when unattended."""

    name = ADAPTER_CLAUDE_CODE
    executable = "claude"
    credential_provider = PROVIDER_ANTHROPIC
    credential_env_vars = ("CLAUDE_CODE_OAUTH_TOKEN", "ANTHROPIC_API_KEY")

    def __init__(self, image: str = CLAUDE_CODE_IMAGE, *, workspace_dir: str = WORKSPACE_DIR) -> None:
        self.image = image
        self.workspace_dir = workspace_dir

    def build_env(self, session: Session, iteration: int) -> dict[str, str]:
        oauth_token = _credential_token(session, PROVIDER_ANTHROPIC)
        auth_mode = OAUTH_AUTH_MODE if oauth_token else (session.claude_auth_mode or DEFAULT_AUTH_MODE)
        env = _build_base_env(session, iteration, auth_mode=auth_mode, workspace_dir=self.workspace_dir)
        env["CLAUDE_CODE_USE_BEDROCK"] = "0"
        if oauth_token:
            env["CLAUDE_CODE_OAUTH_TOKEN"] = oauth_token
        elif session.metadata.get("anthropic_api_key"):
            env["ANTHROPIC_API_KEY"] = str(session.metadata["anthropic_api_key"])
        return env

    def _permission_flags(self, session: Session) -> list[str]:
        if _is_planning_phase(session):
            return ["--permission-mode", "plan"]
        return ["--dangerously-skip-permissions"]

    def _unattended_prefix(self, session: Session) -> list[str]:
        return [
            self.executable,
            "--print",
            "--verbose",
            "--output-format",
            "stream-json",
            *self._permission_flags(session),
        ]

    def build_command(self, session: Session, iteration: int) -> list[str]:
        if session.interactive:
            argv = [self.executable, "--verbose"]
        else:
            argv = self._unattended_prefix(session)
        system_prompt = _effective_system_prompt(session)
        if system_prompt:
            argv.extend(["--system-prompt", system_prompt])
        if session.project_prompt:
            argv.extend(["--append-system-prompt", session.project_prompt])
        model = _model_override(session)
        if model:
            argv.extend(["--model", model])
        if session.interactive:
            argv.append(self.build_prompt(session, iteration))
        return argv

    def build_continue_command(self, session: Session, iteration: int) -> list[str]:
        if session.interactive:
            return self.build_command(session, iteration)
        argv = self._unattended_prefix(session)
        argv.append("--continue")
        model = _model_override(session)
        if model:
            argv.extend(["--model", model])
        return argv

    def build_prompt(self, session: Session, iteration: int) -> str:
        return _build_prompt(session, iteration, workspace_dir=self.workspace_dir)

    def get_stdin_prompt(self, session: Session, iteration: int) -> str:
        if session.interactive:
            return ""
        return self.build_prompt(session, iteration)

    def supports_continuation(self) -> bool:
        return True

    def supports_plan_mode(self) -> bool:
        return True

    def parse_output(self, exit_code: int, stdout: str, stderr: str) -> IterationResult:
        parsed = _parse_stream_json(stdout)
        if parsed.records_parsed == 0 and stdout.strip():
            parsed = dataclasses.replace(parsed, text=stdout, assistant_text=stdout.strip())
        return _apply_signal_pipeline(exit_code, parsed, stderr)

    def validate(self) -> None:
        _validate_image(self.name, self.image)

    def has_credentials(self, session: Session, environ: Mapping[str, str] | None = None) -> bool:
        if _credential_token(session, PROVIDER_ANTHROPIC) or session.metadata.get("anthropic_api_key"):
            return True
        environ = os.environ if environ is None else environ
        return any(environ.get(name) for name in self.credential_env_vars)


# ---------------------------------------------------------------------------
# codex
# ---------------------------------------------------------------------------


def _escape_config_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n")


class CodexAdapter:
    """OpenAI Codex CLI, ``exec --json`` output."""

    name = ADAPTER_CODEX
    executable = "codex"
    credential_provider = PROVIDER_OPENAI
    credential_env_vars = ("OPENAI_API_KEY", "CODEX_API_KEY")

    def __init__(self, image: str = CODEX_IMAGE, *, workspace_dir: str = WORKSPACE_DIR) -> None:
        self.image = image
        self.workspace_dir = workspace_dir

    def build_env(self, session: Session, iteration: int) -> dict[str, str]:
        token = _credential_token(session, PROVIDER_OPENAI)
        auth_mode = OAUTH_AUTH_MODE if token else DEFAULT_AUTH_MODE
        env = _build_base_env(session, iteration, auth_mode=auth_mode, workspace_dir=self.workspace_dir)
        if token:
            env["OPENAI_API_KEY"] = token
        elif "codex_api_key" in session.metadata:
            env["CODEX_API_KEY"] = str(session.metadata["codex_api_key"])
        elif "openai_api_key" in session.metadata:
            env["OPENAI_API_KEY"] = str(session.metadata["openai_api_key"])
        return env

    def developer_instructions(self, session: Session) -> str:
        parts = []
        system_prompt = _effective_system_prompt(session)
        if system_prompt:
            parts.append(system_prompt)
        if session.project_prompt:
            parts.append(session.project_prompt)
        parts.append(STATUS_SIGNAL_INSTRUCTIONS)
        return "\n\n".join(parts)

    def build_command(self, session: Session, iteration: int) -> list[str]:
        argv = [self.executable, "exec"]
        if not session.interactive:
            argv.append("--json")
            if _is_planning_phase(session):
                argv.extend(["--sandbox", "read-only"])
            else:
                argv.append("--dangerously-bypass-approvals-and-sandbox")
        argv.extend(["--skip-git-repo-check", "--cd", self.workspace_dir])
        model = _model_override(session, metadata_key="codex_model")
        if model:
            argv.extend(["--model", model])
        reasoning = _reasoning_override(session)
        if reasoning:
            argv.extend(["-c", f"model_reasoning_effort={reasoning}"])
        instructions = _escape_config_value(self.developer_instructions(session))
        argv.extend(["-c", f"developer_instructions={instructions}"])
        if session.interactive:
            argv.append(self.build_prompt(session, iteration))
        else:
            argv.append("-")
        return argv

    def build_prompt(self, session: Session, iteration: int) -> str:
        return _build_prompt(session, iteration, workspace_dir=self.workspace_dir)

    def get_stdin_prompt(self, session: Session, iteration: int) -> str:
        if session.interactive:
            return ""
        return self.build_prompt(session, iteration)

    def supports_plan_mode(self) -> bool:
        return True

    def parse_output(self, exit_code: int, stdout: str, stderr: str) -> IterationResult:
        parsed = _parse_codex_jsonl(stdout)
        return _apply_signal_pipeline(exit_code, parsed, stderr, preferred_error=parsed.last_error)

    def validate(self) -> None:
        _validate_image(self.name, self.image)

    def has_credentials(self, session: Session, environ: Mapping[str, str] | None = None) -> bool:
        if _credential_token(session, PROVIDER_OPENAI):
            return True
        if session.metadata.get("codex_api_key") or session.metadata.get("openai_api_key"):
            return True
        environ = os.environ if environ is None else environ
        return any(environ.get(name) for name in self.credential_env_vars)


# ---------------------------------------------------------------------------
# aider
# ---------------------------------------------------------------------------


class AiderAdapter:
    """Aider, plain-text output; instructions are inlined into the message."""

    name = ADAPTER_AIDER
    executable = "aider"
    credential_provider = ""

    def __init__(
        self,
        image: str = AIDER_IMAGE,
        *,
        model: str = AIDER_DEFAULT_MODEL,
        workspace_dir: str = WORKSPACE_DIR,
    ) -> None:
        self.image = image
        self.model = model
        self.workspace_dir = workspace_dir

    def build_env(self, session: Session, iteration: int) -> dict[str, str]:
        env = _build_base_env(session, iteration, auth_mode=DEFAULT_AUTH_MODE, workspace_dir=self.workspace_dir)
        if session.metadata.get("anthropic_api_key"):
            env["ANTHROPIC_API_KEY"] = str(session.metadata["anthropic_api_key"])
        if session.metadata.get("openai_api_key"):
            env["OPENAI_API_KEY"] = str(session.metadata["openai_api_key"])
        return env

    def build_command(self, session: Session, iteration: int) -> list[str]:
        model = _model_override(session, metadata_key="aider_model") or self.model
        argv = [self.executable, "--model", model]
        if not session.interactive:
            argv.append("--yes-always")
        argv.extend(["--no-git", "--message", self.build_prompt(session, iteration)])
        return argv

    def build_prompt(self, session: Session, iteration: int) -> str:
        sections = []
        system_prompt = _effective_system_prompt(session)
        if system_prompt:
            sections.append(
                f"=== SYSTEM INSTRUCTIONS ===\n\n{system_prompt}\n\n=== END SYSTEM INSTRUCTIONS ===\n\n"
            )
        if session.project_prompt:
            sections.append(
                f"=== PROJECT INSTRUCTIONS ===\n\n{session.project_prompt}\n\n=== END PROJECT INSTRUCTIONS ===\n\n"
            )
        sections.append(_build_prompt(session, iteration, workspace_dir=self.workspace_dir))
        return "".join(sections)

    def parse_output(self, exit_code: int, stdout: str, stderr: str) -> IterationResult:
        return _apply_signal_pipeline(exit_code, _parse_plain_text(stdout), stderr)

    def validate(self) -> None:
        _validate_image(self.name, self.image)

    def has_credentials(self, session: Session, environ: Mapping[str, str] | None = None) -> bool:
        return True
