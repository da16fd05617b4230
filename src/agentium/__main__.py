from __future__ import annotations

import argparse
import signal
import sys
import threading
from pathlib import Path

from agentium.config import _load_credentials, _load_policy, _load_session, _resolve_events_path
from agentium.constants import DEFAULT_LOG_DIR, DEFAULT_POLICY_PATH, EVENT_TAIL_INTERVAL_SECONDS
from agentium.controller import SessionController
from agentium.events import AgentEvent, EventFileSink, _read_events, _tail_events
from agentium.models import AgentiumError
from agentium.registry import _default_registry
from agentium.routing import PhaseRouter
from agentium.runners import SubprocessExecutor
from agentium.scope import ScopeValidator
from agentium.utils import _is_git_worktree


def _resolve_policy_path(repo_root: Path, raw: str | None) -> Path:
    if not raw:
        return repo_root / DEFAULT_POLICY_PATH
    candidate = Path(raw).expanduser()
    return candidate if candidate.is_absolute() else Path.cwd() / candidate


def _format_event(event: AgentEvent) -> str:
    detail = event.summary or event.content
    return f"{event.timestamp} [{event.adapter}#{event.iteration}] {event.kind}: {detail}"


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def _cmd_run(args: argparse.Namespace) -> int:
    repo_root = Path(args.repo_root).expanduser().resolve()
    policy_path = _resolve_policy_path(repo_root, args.policy)
    try:
        policy = _load_policy(repo_root, policy_path)
        session = _load_session(Path(args.session).expanduser().resolve(), work_dir=repo_root)
        if args.credentials:
            session.credentials = _load_credentials(Path(args.credentials).expanduser().resolve())
    except AgentiumError as exc:
        print(f"agentium run: ERROR {exc}", file=sys.stderr)
        return 1
    if args.interactive:
        session.interactive = True
    default_agent = args.agent or session.agent or policy.agent
    session.agent = default_agent
    package_path = session.package_path or policy.package_path
    session.package_path = package_path
    if package_path and not _is_git_worktree(repo_root):
        print(
            f"agentium run: ERROR package scope {package_path!r} requires a git working tree at {repo_root}",
            file=sys.stderr,
        )
        return 1

    log_dir = (
        Path(args.log_dir).expanduser().resolve()
        if args.log_dir
        else Path.home() / DEFAULT_LOG_DIR / session.id
    )
    cancel_event = threading.Event()

    def _handle_interrupt(signum: int, frame: object) -> None:
        cancel_event.set()

    previous_handler = signal.signal(signal.SIGINT, _handle_interrupt)
    try:
        events_path = _resolve_events_path(policy, log_dir, repo_root)
        with EventFileSink(events_path) as sink:
            controller = SessionController(
                session,
                registry=_default_registry(workspace_dir=str(repo_root)),
                executor=SubprocessExecutor(log_dir=log_dir, echo=args.echo),
                log_dir=log_dir,
                router=PhaseRouter(policy.routing),
                config=policy.phase_loop,
                default_agent=default_agent,
                phase_prompts=policy.phase_prompts,
                event_sink=sink,
                scope_validator=ScopeValidator(
                    repo_root, package_path, excluded_paths=(policy_path, log_dir, events_path)
                ),
                cancel_event=cancel_event,
            )
            outcome = controller.run()
    except AgentiumError as exc:
        print(f"agentium run: ERROR {exc}", file=sys.stderr)
        return 1
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    print("agentium run")
    print(f"session_id: {session.id}")
    print(f"status: {outcome.status}")
    print(f"phase: {outcome.phase}")
    print(f"iterations: {outcome.iterations}")
    print(f"tokens: input={outcome.input_tokens} output={outcome.output_tokens}")
    if outcome.prs_created:
        print(f"prs_created: {', '.join(outcome.prs_created)}")
    if outcome.reason:
        print(f"reason: {outcome.reason}")
    if outcome.escalated:
        print("escalated: true")
    print(f"log_dir: {log_dir}")
    return 0 if outcome.succeeded else 1


def _cmd_check_routing(args: argparse.Namespace) -> int:
    repo_root = Path(args.repo_root).expanduser().resolve()
    try:
        policy = _load_policy(repo_root, _resolve_policy_path(repo_root, args.policy))
    except AgentiumError as exc:
        print(f"agentium check-routing: ERROR {exc}", file=sys.stderr)
        return 1
    router = PhaseRouter(policy.routing)
    registry = _default_registry()
    adapters = router.adapters()
    unknown_adapters = [name for name in adapters if not registry.exists(name)]
    unknown_phases = router.unknown_phases()

    print("agentium check-routing")
    print(f"configured: {str(router.is_configured()).lower()}")
    print(f"default_agent: {policy.agent}")
    print(f"adapters: {', '.join(adapters) or '<none>'}")
    print(f"providers: {', '.join(registry.required_providers(n for n in adapters if registry.exists(n))) or '<none>'}")
    if unknown_adapters:
        print(f"unknown_adapters: {', '.join(unknown_adapters)}")
    if unknown_phases:
        print(f"unknown_phases: {', '.join(unknown_phases)}")
    return 1 if unknown_phases or unknown_adapters else 0


def _cmd_events(args: argparse.Namespace) -> int:
    path = Path(args.file).expanduser()
    if not args.follow:
        if not path.exists():
            print(f"agentium events: ERROR events file not found: {path}", file=sys.stderr)
            return 1
        for event in _read_events(path):
            print(_format_event(event))
        return 0
    stop_event = threading.Event()
    try:
        for event in _tail_events(path, stop_event, interval=args.interval):
            print(_format_event(event), flush=True)
    except KeyboardInterrupt:
        stop_event.set()
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="agentium command line interface")
    subparsers = parser.add_subparsers(dest="command")

    run = subparsers.add_parser("run", help="Run a session through the phase loop locally")
    run.add_argument("--session", required=True, help="Path to the session YAML file")
    run.add_argument(
        "--repo-root",
        default=".",
        help="Repository working tree the agents operate on (default: current directory)",
    )
    run.add_argument(
        "--policy",
        default=None,
        help="Path to policy YAML (default: <repo-root>/.agentium/policy.yaml)",
    )
    run.add_argument("--credentials", default=None, help="Path to provider credentials YAML/JSON")
    run.add_argument("--agent", default=None, help="Override the default agent adapter")
    run.add_argument(
        "--log-dir",
        default=None,
        help="Directory for controller.log and events.jsonl (default: ~/.agentium/logs/<session-id>)",
    )
    run.add_argument("--interactive", action="store_true", help="Run agents without unattended flags")
    run.add_argument("--echo", action="store_true", help="Mirror agent stdout/stderr to this terminal")
    run.set_defaults(handler=_cmd_run)

    check = subparsers.add_parser("check-routing", help="Validate phase routing in the policy file")
    check.add_argument("--repo-root", default=".", help="Repository root (default: current directory)")
    check.add_argument("--policy", default=None, help="Path to policy YAML")
    check.set_defaults(handler=_cmd_check_routing)

    events = subparsers.add_parser("events", help="Print normalized agent events from a JSONL file")
    events.add_argument("file", help="Path to events.jsonl")
    events.add_argument("--follow", action="store_true", help="Keep polling for new events")
    events.add_argument(
        "--interval",
        type=float,
        default=EVENT_TAIL_INTERVAL_SECONDS,
        help=f"Polling interval in seconds for --follow (default: {EVENT_TAIL_INTERVAL_SECONDS})",
    )
    events.set_defaults(handler=_cmd_events)
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    handler = getattr(args, "handler", None)
    if handler is None:
        parser.print_help()
        return 2
    return int(handler(args))


if __name__ == "__main__":
    raise SystemExit(main())
