from __future__ import annotations

import json

import pytest

from agentium.adapters import (
    AiderAdapter,
    ClaudeCodeAdapter,
    CodexAdapter,
    _build_base_env,
    _build_prompt,
)
from agentium.models import AdapterError, IterationContext, ProviderCredential, Session


def _session(**overrides) -> Session:
    values = dict(
        id="sess-1",
        repository="acme/widgets",
        tasks=("42",),
        agent="claude-code",
        prompt="Fix the flaky parser test",
        active_task="42",
        github_token="ghs_example",
        metadata={"team": "core", "anthropic_api_key": "sk-ant-hidden"},
    )
    values.update(overrides)
    return Session(**values)


def test_base_env_exposes_session_identity_and_filters_sensitive_metadata() -> None:
    session = _session(iteration_context=IterationContext(phase="IMPLEMENT"))
    env = _build_base_env(session, 3, auth_mode="api", workspace_dir="/repo")
    assert env["GITHUB_TOKEN"] == "ghs_example"
    assert env["AGENTIUM_SESSION_ID"] == "sess-1"
    assert env["AGENTIUM_ITERATION"] == "3"
    assert env["AGENTIUM_REPOSITORY"] == "acme/widgets"
    assert env["AGENTIUM_WORKDIR"] == "/repo"
    assert env["AGENTIUM_AUTH_MODE"] == "api"
    assert env["AGENTIUM_PHASE"] == "IMPLEMENT"
    assert env["AGENTIUM_TEAM"] == "core"
    assert "AGENTIUM_ANTHROPIC_API_KEY" not in env


def test_focused_prompt_prefers_phase_input_over_memory() -> None:
    session = _session(
        iteration_context=IterationContext(phase_input="Judge says: add a test", memory_context="old notes")
    )
    assert _build_prompt(session, 2) == "Fix the flaky parser test\n\nJudge says: add a test"

    session = _session(iteration_context=IterationContext(memory_context="old notes"))
    assert _build_prompt(session, 2) == "Fix the flaky parser test\n\nold notes"


def test_generic_prompt_lists_issues_and_iteration_note() -> None:
    session = _session(active_task="", prompt="", tasks=("1", "2"))
    prompt = _build_prompt(session, 2, workspace_dir="/workspace")
    assert prompt.startswith("You are working on repository: acme/widgets\n")
    assert "- Issue #1\n- Issue #2" in prompt
    assert "agentium/issue-<number>-<short-description>" in prompt
    assert "The repository is already cloned at /workspace." in prompt
    assert "This is iteration 2. Continue from where you left off." in prompt


# ---------------------------------------------------------------------------
# claude-code
# ---------------------------------------------------------------------------


def test_claude_unattended_command_and_stdin_prompt() -> None:
    adapter = ClaudeCodeAdapter()
    session = _session(
        system_prompt="SYSTEM",
        project_prompt="PROJECT",
        iteration_context=IterationContext(phase="IMPLEMENT", model_override="claude-opus-4"),
    )
    argv = adapter.build_command(session, 1)
    assert argv == [
        "claude",
        "--print",
        "--verbose",
        "--output-format",
        "stream-json",
        "--dangerously-skip-permissions",
        "--system-prompt",
        "SYSTEM",
        "--append-system-prompt",
        "PROJECT",
        "--model",
        "claude-opus-4",
    ]
    assert adapter.get_stdin_prompt(session, 1) == "Fix the flaky parser test"


def test_claude_plan_phase_uses_plan_permission_mode_and_skills_prompt() -> None:
    adapter = ClaudeCodeAdapter()
    session = _session(
        system_prompt="MONOLITHIC",
        iteration_context=IterationContext(phase="PLAN", skills_prompt="PLAN SKILLS"),
    )
    argv = adapter.build_command(session, 1)
    assert argv[5:7] == ["--permission-mode", "plan"]
    assert "--dangerously-skip-permissions" not in argv
    assert argv[argv.index("--system-prompt") + 1] == "PLAN SKILLS"


def test_claude_continue_command_drops_prompts() -> None:
    adapter = ClaudeCodeAdapter()
    session = _session(
        system_prompt="SYSTEM",
        iteration_context=IterationContext(phase="IMPLEMENT", model_override="m1"),
    )
    argv = adapter.build_continue_command(session, 2)
    assert "--continue" in argv
    assert "--system-prompt" not in argv
    assert argv[-2:] == ["--model", "m1"]


def test_claude_interactive_passes_prompt_positionally() -> None:
    adapter = ClaudeCodeAdapter()
    session = _session(interactive=True)
    argv = adapter.build_command(session, 1)
    assert argv[:2] == ["claude", "--verbose"]
    assert "--print" not in argv
    assert argv[-1] == "Fix the flaky parser test"
    assert adapter.get_stdin_prompt(session, 1) == ""
    assert adapter.build_continue_command(session, 2) == argv


def test_claude_env_prefers_oauth_credential() -> None:
    adapter = ClaudeCodeAdapter(workspace_dir="/repo")
    session = _session(credentials={"anthropic": ProviderCredential(access_token="oauth-token")})
    env = adapter.build_env(session, 1)
    assert env["CLAUDE_CODE_OAUTH_TOKEN"] == "oauth-token"
    assert env["AGENTIUM_AUTH_MODE"] == "oauth"
    assert env["CLAUDE_CODE_USE_BEDROCK"] == "0"
    assert "ANTHROPIC_API_KEY" not in env

    env = adapter.build_env(_session(claude_auth_mode="max"), 1)
    assert env["ANTHROPIC_API_KEY"] == "sk-ant-hidden"
    assert env["AGENTIUM_AUTH_MODE"] == "max"


def test_claude_parse_output_decodes_stream_and_signals() -> None:
    stdout = "\n".join(
        json.dumps(record)
        for record in (
            {
                "type": "assistant",
                "message": {"content": [{"type": "text", "text": "Created pull request #9\nAGENTIUM_STATUS: PR_CREATED"}]},
            },
            {"type": "result", "usage": {"input_tokens": 100, "output_tokens": 20}},
        )
    )
    result = ClaudeCodeAdapter().parse_output(0, stdout, "")
    assert result.success
    assert result.prs_created == ("9",)
    assert result.agent_status == "PR_CREATED"
    assert result.tokens_used == 120
    assert result.assistant_text.startswith("Created pull request #9")


def test_claude_parse_output_falls_back_to_raw_text() -> None:
    result = ClaudeCodeAdapter().parse_output(0, "plain output\nAGENTIUM_STATUS: COMPLETE\n", "")
    assert result.agent_status == "COMPLETE"
    assert result.raw_text == "plain output\nAGENTIUM_STATUS: COMPLETE\n"


def test_claude_credentials_from_environment() -> None:
    adapter = ClaudeCodeAdapter()
    bare = _session(metadata={})
    assert not adapter.has_credentials(bare, environ={})
    assert adapter.has_credentials(bare, environ={"ANTHROPIC_API_KEY": "x"})
    assert adapter.has_credentials(_session(), environ={})


def test_validate_requires_image() -> None:
    ClaudeCodeAdapter().validate()
    with pytest.raises(AdapterError, match="container image is required"):
        ClaudeCodeAdapter(image="  ").validate()


# ---------------------------------------------------------------------------
# codex
# ---------------------------------------------------------------------------


def test_codex_command_reads_prompt_from_stdin() -> None:
    adapter = CodexAdapter(workspace_dir="/repo")
    session = _session(
        system_prompt="line one\nline two",
        metadata={"codex_model": "gpt-5-codex"},
        iteration_context=IterationContext(phase="IMPLEMENT", reasoning_override="high"),
    )
    argv = adapter.build_command(session, 1)
    assert argv[:4] == ["codex", "exec", "--json", "--dangerously-bypass-approvals-and-sandbox"]
    assert argv[4:7] == ["--skip-git-repo-check", "--cd", "/repo"]
    assert argv[argv.index("--model") + 1] == "gpt-5-codex"
    assert "model_reasoning_effort=high" in argv
    instructions = argv[-2]
    assert instructions.startswith("developer_instructions=line one\\nline two\\n\\n")
    assert "AGENTIUM_STATUS: STATUS_NAME" in instructions
    assert "\n" not in instructions
    assert argv[-1] == "-"
    assert adapter.get_stdin_prompt(session, 1) == "Fix the flaky parser test"


def test_codex_plan_phase_is_read_only() -> None:
    adapter = CodexAdapter()
    argv = adapter.build_command(_session(iteration_context=IterationContext(phase="PLAN")), 1)
    assert argv[3:5] == ["--sandbox", "read-only"]
    assert "--dangerously-bypass-approvals-and-sandbox" not in argv
    assert adapter.supports_plan_mode()
    assert not hasattr(adapter, "build_continue_command")


def test_codex_interactive_drops_json_stream_and_passes_prompt() -> None:
    adapter = CodexAdapter()
    session = _session(interactive=True)
    argv = adapter.build_command(session, 1)
    assert argv[:3] == ["codex", "exec", "--skip-git-repo-check"]
    assert "--json" not in argv
    assert argv[-1] == "Fix the flaky parser test"
    assert adapter.get_stdin_prompt(session, 1) == ""


def test_codex_env_credential_precedence() -> None:
    adapter = CodexAdapter()
    with_credential = _session(
        metadata={"codex_api_key": "codex-key"},
        credentials={"openai": ProviderCredential(access_token="oauth")},
    )
    env = adapter.build_env(with_credential, 1)
    assert env["OPENAI_API_KEY"] == "oauth"
    assert "CODEX_API_KEY" not in env

    env = adapter.build_env(_session(metadata={"codex_api_key": "codex-key", "openai_api_key": "oa"}), 1)
    assert env["CODEX_API_KEY"] == "codex-key"
    assert "OPENAI_API_KEY" not in env

    env = adapter.build_env(_session(metadata={"openai_api_key": "oa"}), 1)
    assert env["OPENAI_API_KEY"] == "oa"


def test_codex_parse_output_prefers_stream_error() -> None:
    stdout = json.dumps({"type": "turn.failed", "error": {"message": "context window exceeded"}})
    result = CodexAdapter().parse_output(1, stdout, "Error: exit status 1\n")
    assert not result.success
    assert result.error == "context window exceeded"


def test_codex_credentials() -> None:
    adapter = CodexAdapter()
    assert not adapter.has_credentials(_session(metadata={}), environ={})
    assert adapter.has_credentials(_session(metadata={}), environ={"CODEX_API_KEY": "k"})


# ---------------------------------------------------------------------------
# aider
# ---------------------------------------------------------------------------


def test_aider_inlines_instructions_into_message() -> None:
    adapter = AiderAdapter()
    session = _session(system_prompt="SYS", project_prompt="PROJ")
    argv = adapter.build_command(session, 1)
    assert argv[:5] == ["aider", "--model", "claude-3-5-sonnet-20241022", "--yes-always", "--no-git"]
    assert argv[5] == "--message"
    message = argv[6]
    assert message.startswith("=== SYSTEM INSTRUCTIONS ===\n\nSYS\n\n=== END SYSTEM INSTRUCTIONS ===")
    assert "=== PROJECT INSTRUCTIONS ===\n\nPROJ\n\n" in message
    assert message.endswith("Fix the flaky parser test")


def test_aider_model_precedence_and_interactive() -> None:
    adapter = AiderAdapter()
    session = _session(metadata={"aider_model": "gpt-4o"}, interactive=True)
    argv = adapter.build_command(session, 1)
    assert argv[:3] == ["aider", "--model", "gpt-4o"]
    assert "--yes-always" not in argv

    session = _session(iteration_context=IterationContext(model_override="o3"))
    assert adapter.build_command(session, 1)[2] == "o3"


def test_aider_parse_output_tracks_written_files() -> None:
    result = AiderAdapter().parse_output(0, "Applied edit to src/a.py\nAGENTIUM_STATUS: COMPLETE\n", "")
    assert result.files_changed == ("src/a.py",)
    assert result.agent_status == "COMPLETE"
    assert AiderAdapter().has_credentials(_session(metadata={}), environ={})
