"""Adapter registry: an explicit name -> factory table."""

from __future__ import annotations

from typing import TYPE_CHECKING, Callable, Iterable, Mapping

from agentium.adapters import AgentAdapter, AiderAdapter, ClaudeCodeAdapter, CodexAdapter
from agentium.constants import WORKSPACE_DIR
from agentium.models import AdapterError, Session

if TYPE_CHECKING:
    from agentium.routing import PhaseRouter

AdapterFactory = Callable[[], AgentAdapter]


class AdapterRegistry:
    """Maps agent names to adapter factories.

    Each controller owns its registry; nothing is registered globally.
    """

    def __init__(self, factories: Mapping[str, AdapterFactory] | None = None) -> None:
        self._factories: dict[str, AdapterFactory] = {}
        self._instances: dict[str, AgentAdapter] = {}
        for name, factory in (factories or {}).items():
            self.register(name, factory)

    def register(self, name: str, factory: AdapterFactory) -> None:
        key = str(name).strip()
        if not key:
            raise AdapterError("adapter name must be non-empty")
        self._factories[key] = factory
        self._instances.pop(key, None)

    def exists(self, name: str) -> bool:
        return name in self._factories

    def names(self) -> list[str]:
        return sorted(self._factories)

    def get(self, name: str) -> AgentAdapter:
        """Return the (cached) adapter for ``name``; unknown names raise ``AdapterError``."""
        if name in self._instances:
            return self._instances[name]
        factory = self._factories.get(name)
        if factory is None:
            available = ", ".join(self.names()) or "<none>"
            raise AdapterError(f"unknown agent adapter {name!r} (available: {available})")
        adapter = factory()
        self._instances[name] = adapter
        return adapter

    def required_providers(self, adapter_names: Iterable[str]) -> list[str]:
        providers: set[str] = set()
        for name in adapter_names:
            provider = self.get(name).credential_provider
            if provider:
                providers.add(provider)
        return sorted(providers)


def _default_registry(*, workspace_dir: str = WORKSPACE_DIR) -> AdapterRegistry:
    return AdapterRegistry(
        {
            ClaudeCodeAdapter.name: lambda: ClaudeCodeAdapter(workspace_dir=workspace_dir),
            CodexAdapter.name: lambda: CodexAdapter(workspace_dir=workspace_dir),
            AiderAdapter.name: lambda: AiderAdapter(workspace_dir=workspace_dir),
        }
    )


def _routed_adapter_names(router: "PhaseRouter | None", default_agent: str) -> list[str]:
    names = {default_agent} if default_agent else set()
    if router is not None:
        names.update(router.adapters())
    return sorted(names)


def _missing_credentials(
    registry: AdapterRegistry,
    session: Session,
    adapter_names: Iterable[str],
    environ: Mapping[str, str] | None = None,
) -> list[str]:
    """Return ``adapter:provider`` labels for routed adapters lacking credentials."""
    missing: list[str] = []
    for name in sorted(set(adapter_names)):
        adapter = registry.get(name)
        if not adapter.credential_provider:
            continue
        if not adapter.has_credentials(session, environ):
            missing.append(f"{name}:{adapter.credential_provider}")
    return missing


# ---------------------------------------------------------------------------
# Capability probes
# ---------------------------------------------------------------------------


def _supports_continuation(adapter: AgentAdapter) -> bool:
    probe = getattr(adapter, "supports_continuation", None)
    return callable(probe) and bool(probe()) and callable(getattr(adapter, "build_continue_command", None))


def _supports_plan_mode(adapter: AgentAdapter) -> bool:
    probe = getattr(adapter, "supports_plan_mode", None)
    return callable(probe) and bool(probe())


def _stdin_prompt(adapter: AgentAdapter, session: Session, iteration: int) -> str:
    provider = getattr(adapter, "get_stdin_prompt", None)
    if not callable(provider):
        return ""
    return str(provider(session, iteration) or "")


def _build_invocation_argv(
    adapter: AgentAdapter,
    session: Session,
    iteration: int,
    *,
    prefer_continuation: bool,
) -> tuple[list[str], bool]:
    """Pick the continuation argv when allowed, else a fresh one.

    Returns ``(argv, continued)``.
    """
    if prefer_continuation and _supports_continuation(adapter):
        return adapter.build_continue_command(session, iteration), True  # type: ignore[attr-defined]
    return adapter.build_command(session, iteration), False
