"""Shared helpers: timestamps, the controller log, redaction, and git."""

from __future__ import annotations

import re
import subprocess
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from agentium.constants import LOG_FILENAME
from agentium.models import ConfigError


# ---------------------------------------------------------------------------
# Timestamp helpers
# ---------------------------------------------------------------------------


def _utc_now() -> str:
    return (
        datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")
    )


def _generate_session_id() -> str:
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    suffix = uuid.uuid4().hex[:6]
    return f"agentium-{timestamp}-{suffix}"


_DURATION_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([hms]?)\s*$", re.IGNORECASE)
_DURATION_UNITS = {"": 1.0, "s": 1.0, "m": 60.0, "h": 3600.0}


def _parse_duration(value: Any, *, field_name: str = "max_duration") -> float:
    """Parse ``"2h"``, ``"30m"``, ``"90s"`` or a plain number of seconds.

    Empty values mean "no limit" and return ``0.0``.
    """
    if value is None or value == "":
        return 0.0
    if isinstance(value, bool):
        raise ConfigError(f"{field_name} must be a duration like '2h', '30m' or '90s'")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ConfigError(f"{field_name} must be >= 0")
        return float(value)
    match = _DURATION_PATTERN.match(str(value))
    if match is None:
        raise ConfigError(f"{field_name} must be a duration like '2h', '30m' or '90s'")
    return float(match.group(1)) * _DURATION_UNITS[match.group(2).lower()]


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------


def _compact_log_text(text: str, limit: int = 240) -> str:
    compact = " ".join(text.strip().split())
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def _safe_read_text(path: Path) -> str:
    if not path.exists():
        return ""
    try:
        return path.read_text(encoding="utf-8").strip()
    except Exception:
        return ""


SECRET_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"(?i)\b(api[_-]?key|token|secret|password)\b\s*[:=]\s*([^\s]+)"),
    re.compile(r"(?i)\b(authorization:\s*bearer)\s+([^\s]+)"),
    re.compile(r"\bsk-[A-Za-z0-9_-]{10,}\b"),
    re.compile(r"\bsk-ant-[A-Za-z0-9_-]{10,}\b"),
    re.compile(r"\bAKIA[0-9A-Z]{16}\b"),
    re.compile(r"\bgh[pousr]_[A-Za-z0-9]{20,}\b"),
    re.compile(r"\bgithub_pat_[A-Za-z0-9_]{20,}\b"),
)


def _redact_sensitive_text(text: str) -> str:
    redacted = str(text)
    for pattern in SECRET_PATTERNS:
        redacted = pattern.sub(
            lambda match: f"{match.group(1)}=<redacted>" if match.groups() else "<redacted>",
            redacted,
        )
    return redacted


def _redact_argv(argv: list[str], *, limit: int = 160) -> str:
    """Render an argv for the log with secrets removed and long values clipped."""
    parts: list[str] = []
    for token in argv:
        rendered = _redact_sensitive_text(token)
        if len(rendered) > limit:
            rendered = f"{rendered[:limit]}...({len(token)} chars)"
        if not rendered or any(ch.isspace() for ch in rendered):
            rendered = repr(rendered)
        parts.append(rendered)
    return " ".join(parts)


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


def _append_log(log_dir: Path, message: str) -> None:
    log_path = log_dir / LOG_FILENAME
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with log_path.open("a", encoding="utf-8") as handle:
        handle.write(f"{_utc_now()} {message}\n")


# ---------------------------------------------------------------------------
# Git helpers
# ---------------------------------------------------------------------------


def _run_git(repo_root: Path, args: list[str]) -> subprocess.CompletedProcess[str]:
    command = ["git", "-C", str(repo_root), *args]
    try:
        return subprocess.run(
            command,
            text=True,
            capture_output=True,
            check=False,
        )
    except FileNotFoundError as exc:
        return subprocess.CompletedProcess(command, 127, "", f"git not found: {exc}")
    except OSError as exc:
        return subprocess.CompletedProcess(command, 1, "", str(exc))


def _is_git_worktree(repo_root: Path) -> bool:
    check = _run_git(repo_root, ["rev-parse", "--is-inside-work-tree"])
    return check.returncode == 0 and check.stdout.strip() == "true"
