"""Package-scope enforcement for multi-package repositories."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Iterable

from agentium.constants import CI_WORKFLOW_DIRS, CONTROL_DIR_NAME, ROOT_LOCKFILES, ROOT_MANIFEST_FILES
from agentium.models import ScopeError, ValidationResult
from agentium.utils import _run_git


def _normalize_repo_path(path: str) -> str:
    normalized = str(path).strip().replace("\\", "/")
    while normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized


def _is_in_scope(path: str, package_path: str) -> bool:
    """True when ``path`` lives under ``package_path/``; bare prefixes do not count."""
    package = _normalize_repo_path(package_path).strip("/")
    if not package:
        return False
    return _normalize_repo_path(path).startswith(f"{package}/")


def _is_exempt(path: str) -> bool:
    normalized = _normalize_repo_path(path)
    if normalized in ROOT_MANIFEST_FILES or normalized in ROOT_LOCKFILES:
        return True
    return any(normalized.startswith(f"{directory}/") for directory in CI_WORKFLOW_DIRS)


def _unquote_porcelain_path(path: str) -> str:
    if len(path) >= 2 and path.startswith('"') and path.endswith('"'):
        return path[1:-1].replace('\\"', '"').replace("\\\\", "\\")
    return path


def _parse_porcelain_status(output: str) -> list[str]:
    """Changed paths from ``git status --porcelain``; renames report the new path."""
    paths: list[str] = []
    for raw_line in output.splitlines():
        line = raw_line.rstrip("\n")
        if len(line) < 4:
            continue
        payload = line[3:].strip()
        if " -> " in payload:
            payload = payload.split(" -> ", 1)[1].strip()
        payload = _unquote_porcelain_path(payload)
        if payload and payload not in paths:
            paths.append(payload)
    return paths


def _control_paths(work_dir: Path | None, paths: Iterable[Path | str]) -> tuple[str, ...]:
    """Repo-relative paths owned by agentium itself; paths outside ``work_dir`` are dropped."""
    control = [CONTROL_DIR_NAME]
    root = work_dir.resolve() if work_dir is not None else None
    for raw in paths:
        candidate = Path(raw).expanduser()
        if candidate.is_absolute():
            if root is None:
                continue
            try:
                candidate = candidate.resolve().relative_to(root)
            except ValueError:
                continue
        relative = _normalize_repo_path(candidate.as_posix()).strip("/")
        if relative and relative != "." and relative not in control:
            control.append(relative)
    return tuple(control)


class ScopeValidator:
    """Checks that a session's edits stay inside one package directory.

    A validator with no ``package_path`` reports every change set as valid.
    ``validate_changes`` and ``reset_changes`` hold a lock so the working tree
    is not reset while it is being inspected. The ``.agentium`` directory and
    any ``excluded_paths`` (policy, logs, events) are neither reported as
    changes nor removed by a reset.
    """

    def __init__(
        self,
        work_dir: Path | str | None = None,
        package_path: str = "",
        *,
        excluded_paths: Iterable[Path | str] = (),
    ) -> None:
        self.work_dir = Path(work_dir) if work_dir else None
        self.package_path = _normalize_repo_path(package_path).strip("/")
        self.excluded_paths = _control_paths(self.work_dir, excluded_paths)
        self._lock = threading.Lock()

    def _is_excluded(self, path: str) -> bool:
        normalized = _normalize_repo_path(path)
        return any(normalized == entry or normalized.startswith(f"{entry}/") for entry in self.excluded_paths)

    @property
    def enabled(self) -> bool:
        return bool(self.package_path)

    def validate_files(self, files: list[str] | tuple[str, ...]) -> ValidationResult:
        if not self.enabled:
            return ValidationResult(valid=True, total_files_changed=len(files))
        out_of_scope: list[str] = []
        exempt: list[str] = []
        for path in files:
            if _is_in_scope(path, self.package_path):
                continue
            if _is_exempt(path):
                exempt.append(path)
            else:
                out_of_scope.append(path)
        return ValidationResult(
            valid=not out_of_scope,
            out_of_scope_files=tuple(out_of_scope),
            allowed_exempt=tuple(exempt),
            total_files_changed=len(files),
        )

    def changed_files(self) -> list[str]:
        if self.work_dir is None:
            return []
        status = _run_git(
            self.work_dir,
            ["-c", "core.quotePath=false", "status", "--porcelain", "--untracked-files=all"],
        )
        if status.returncode != 0:
            raise ScopeError(f"git status failed in {self.work_dir}: {status.stderr.strip()}")
        return [path for path in _parse_porcelain_status(status.stdout) if not self._is_excluded(path)]

    def validate_changes(self) -> ValidationResult:
        if not self.enabled:
            return ValidationResult(valid=True)
        with self._lock:
            return self.validate_files(self.changed_files())

    def reset_changes(self) -> None:
        """Discard every uncommitted modification, staged or not, and untracked files."""
        if self.work_dir is None:
            raise ScopeError("cannot reset changes without a working directory")
        keep: list[str] = []
        for entry in self.excluded_paths:
            keep.extend(["-e", f"/{entry}"])
        with self._lock:
            for args in (["reset", "--hard", "-q"], ["clean", "-fd", *keep]):
                completed = _run_git(self.work_dir, args)
                if completed.returncode != 0:
                    raise ScopeError(
                        f"git {' '.join(args)} failed in {self.work_dir}: {completed.stderr.strip()}"
                    )

    def format_violation_error(self, result: ValidationResult) -> str:
        if result.valid:
            return ""
        lines = [
            f"SCOPE VIOLATION: {len(result.out_of_scope_files)} file(s) modified outside package scope",
            f"Package scope: {self.package_path}",
            "",
            "Out-of-scope files:",
            *(f"  - {path}" for path in result.out_of_scope_files),
            "",
            "Only files within the package directory may be modified.",
            "Allowed exceptions: root package.json, pnpm-lock.yaml, .github/workflows/",
        ]
        return "\n".join(lines) + "\n"
