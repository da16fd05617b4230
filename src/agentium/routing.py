"""Per-phase model routing."""

from __future__ import annotations

from typing import Any

from agentium.constants import (
    GENERIC_JUDGE_KEY,
    GENERIC_REVIEW_KEY,
    JUDGE_SUFFIX,
    KNOWN_ROUTING_KEYS,
    REVIEW_SUFFIX,
)
from agentium.models import ConfigError, ModelConfig, PhaseRouting


def _parse_model_spec(spec: str) -> ModelConfig:
    """Parse ``"adapter:model"``; a spec without a colon names only the model."""
    text = str(spec).strip()
    if not text:
        return ModelConfig()
    if ":" not in text:
        return ModelConfig(model=text)
    adapter, model = text.split(":", 1)
    return ModelConfig(adapter=adapter.strip(), model=model.strip())


def _coerce_model_config(raw: Any, *, field_name: str) -> ModelConfig:
    if raw is None:
        return ModelConfig()
    if isinstance(raw, str):
        return _parse_model_spec(raw)
    if not isinstance(raw, dict):
        raise ConfigError(f"{field_name} must be a mapping or an 'adapter:model' string")
    unknown = sorted(set(raw) - {"adapter", "model", "reasoning"})
    if unknown:
        raise ConfigError(f"{field_name} has unsupported keys: {', '.join(str(k) for k in unknown)}")
    values: dict[str, str] = {}
    for key in ("adapter", "model", "reasoning"):
        value = raw.get(key)
        if value is None:
            values[key] = ""
            continue
        if not isinstance(value, (str, int, float)) or isinstance(value, bool):
            raise ConfigError(f"{field_name}.{key} must be a string")
        values[key] = str(value).strip()
    return ModelConfig(**values)


def _load_phase_routing(raw: Any, *, field_name: str = "routing") -> PhaseRouting | None:
    """Build ``PhaseRouting`` from a policy mapping; ``None`` when unconfigured."""
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise ConfigError(f"{field_name} must be a mapping")
    default = _coerce_model_config(raw.get("default"), field_name=f"{field_name}.default")
    overrides_raw = raw.get("overrides") or {}
    if not isinstance(overrides_raw, dict):
        raise ConfigError(f"{field_name}.overrides must be a mapping")
    overrides: dict[str, ModelConfig] = {}
    for key, value in overrides_raw.items():
        phase_key = str(key).strip()
        if not phase_key:
            raise ConfigError(f"{field_name}.overrides keys must be non-empty")
        overrides[phase_key] = _coerce_model_config(
            value, field_name=f"{field_name}.overrides.{phase_key}"
        )
    return PhaseRouting(default=default, overrides=overrides)


class PhaseRouter:
    """Resolves the adapter/model/reasoning triple for a phase key.

    Lookups are exact-key only. A router built from ``None`` returns an empty
    ``ModelConfig`` for every key.
    """

    def __init__(self, routing: PhaseRouting | None) -> None:
        self._routing = routing

    def is_configured(self) -> bool:
        if self._routing is None:
            return False
        return not self._routing.default.is_empty() or bool(self._routing.overrides)

    def has_override(self, phase: str) -> bool:
        return self._routing is not None and phase in self._routing.overrides

    def model_for_phase(self, phase: str) -> ModelConfig:
        if self._routing is None:
            return ModelConfig()
        override = self._routing.overrides.get(phase)
        if override is not None:
            return override
        return self._routing.default

    def _compound(self, phase: str, suffix: str, generic_key: str) -> ModelConfig:
        specific = f"{phase}{suffix}"
        if self.has_override(specific):
            return self.model_for_phase(specific)
        if self.has_override(generic_key):
            return self.model_for_phase(generic_key)
        return self.model_for_phase(specific)

    def reviewer_for_phase(self, phase: str) -> ModelConfig:
        """``<PHASE>_REVIEW`` -> ``REVIEW`` -> default."""
        return self._compound(phase, REVIEW_SUFFIX, GENERIC_REVIEW_KEY)

    def judge_for_phase(self, phase: str) -> ModelConfig:
        """``<PHASE>_JUDGE`` -> ``JUDGE`` -> default."""
        return self._compound(phase, JUDGE_SUFFIX, GENERIC_JUDGE_KEY)

    def adapters(self) -> list[str]:
        if self._routing is None:
            return []
        names = {self._routing.default.adapter}
        names.update(config.adapter for config in self._routing.overrides.values())
        return sorted(name for name in names if name)

    def unknown_phases(self) -> list[str]:
        if self._routing is None:
            return []
        return sorted(key for key in self._routing.overrides if key not in KNOWN_ROUTING_KEYS)
