from __future__ import annotations

import os
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from agentium.constants import PROCESS_POLL_INTERVAL_SECONDS, PROCESS_TERMINATE_GRACE_SECONDS
from agentium.models import ExecutionError
from agentium.utils import _append_log, _redact_argv


@dataclass(frozen=True)
class ProcessRequest:
    argv: list[str]
    env: dict[str, str] = field(default_factory=dict)
    stdin: str = ""
    cwd: str = ""


@dataclass(frozen=True)
class ProcessResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    cancelled: bool = False


class ProcessExecutor(Protocol):
    def run(
        self,
        request: ProcessRequest,
        *,
        timeout: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> ProcessResult: ...


class SubprocessExecutor:
    """Runs an agent CLI as a local child process.

    The prompt is written to stdin and closed; stdout/stderr are drained by
    pump threads so a chatty agent never blocks on a full pipe. The process is
    terminated (then killed) when ``timeout`` elapses or ``cancel_event`` is set.
    """

    def __init__(
        self,
        *,
        log_dir: Path | None = None,
        echo: bool = False,
        poll_interval: float = PROCESS_POLL_INTERVAL_SECONDS,
        terminate_grace: float = PROCESS_TERMINATE_GRACE_SECONDS,
    ) -> None:
        self.log_dir = log_dir
        self.echo = echo
        self.poll_interval = poll_interval
        self.terminate_grace = terminate_grace

    def _log(self, message: str) -> None:
        if self.log_dir is not None:
            _append_log(self.log_dir, message)

    def run(
        self,
        request: ProcessRequest,
        *,
        timeout: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> ProcessResult:
        if not request.argv:
            raise ExecutionError("process request has an empty argv")
        env = dict(os.environ)
        env.update(request.env)
        cwd = request.cwd or None
        self._log(f"process start cwd={cwd or '.'} argv={_redact_argv(request.argv)}")

        try:
            process = subprocess.Popen(
                request.argv,
                cwd=cwd,
                shell=False,
                encoding="utf-8",
                errors="replace",
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                bufsize=1,
                env=env,
            )
        except OSError as exc:
            raise ExecutionError(f"cannot start {request.argv[0]!r}: {exc}") from exc

        stdout_chunks: list[str] = []
        stderr_chunks: list[str] = []

        def _pump_stream(stream: Any, sink: Any, captured: list[str]) -> None:
            if stream is None:
                return
            try:
                for line in iter(stream.readline, ""):
                    captured.append(line)
                    if sink is not None:
                        sink.write(line)
                        sink.flush()
            finally:
                try:
                    stream.close()
                except Exception:
                    pass

        stdout_thread = threading.Thread(
            target=_pump_stream,
            args=(process.stdout, sys.stdout if self.echo else None, stdout_chunks),
            daemon=True,
        )
        stderr_thread = threading.Thread(
            target=_pump_stream,
            args=(process.stderr, sys.stderr if self.echo else None, stderr_chunks),
            daemon=True,
        )
        stdout_thread.start()
        stderr_thread.start()

        if process.stdin is not None:
            try:
                if request.stdin:
                    process.stdin.write(request.stdin)
                    process.stdin.flush()
            except BrokenPipeError:
                pass
            finally:
                try:
                    process.stdin.close()
                except BrokenPipeError:
                    pass

        deadline = None if timeout is None or timeout <= 0 else time.monotonic() + timeout
        timed_out = False
        cancelled = False
        returncode: int | None = None
        try:
            while returncode is None:
                if cancel_event is not None and cancel_event.is_set():
                    cancelled = True
                    break
                if deadline is not None and time.monotonic() >= deadline:
                    timed_out = True
                    break
                try:
                    returncode = process.wait(timeout=self.poll_interval)
                except subprocess.TimeoutExpired:
                    continue
            if returncode is None:
                self._log(
                    f"process {'cancelled' if cancelled else 'timeout'} argv0={request.argv[0]} pid={process.pid}"
                )
                returncode = self._terminate(process)
        finally:
            stdout_thread.join(timeout=2)
            stderr_thread.join(timeout=2)

        self._log(f"process exit argv0={request.argv[0]} returncode={returncode}")
        return ProcessResult(
            exit_code=int(returncode),
            stdout="".join(stdout_chunks),
            stderr="".join(stderr_chunks),
            timed_out=timed_out,
            cancelled=cancelled,
        )

    def _terminate(self, process: subprocess.Popen[str]) -> int:
        process.terminate()
        try:
            return process.wait(timeout=self.terminate_grace)
        except subprocess.TimeoutExpired:
            process.kill()
            return process.wait()
