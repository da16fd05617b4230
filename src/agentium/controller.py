"""Session controller: the PLAN -> IMPLEMENT -> DOCS -> PR_CREATION phase loop."""

from __future__ import annotations

import dataclasses
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Mapping

from agentium.constants import (
    PHASE_ORDER,
    PHASE_PLAN,
    PLAN_ARTIFACT_PATH,
    OUTCOME_BLOCKED,
    OUTCOME_CANCELLED,
    OUTCOME_COMPLETED,
    OUTCOME_ERROR,
    OUTCOME_EXHAUSTED,
    OUTCOME_TIMED_OUT,
    VERDICT_ADVANCE,
    VERDICT_BLOCKED,
    VERDICT_ITERATE,
    VERDICT_REGRESS,
)
from agentium.events import EventFileSink, _stamp_events
from agentium.judge import (
    _build_judge_prompt,
    _build_review_prompt,
    _extract_regress_recommendation,
    _parse_judge_verdict,
    _should_skip_review,
    _truncate_for_context,
)
from agentium.models import (
    AgentiumError,
    ConfigError,
    IterationContext,
    IterationRecord,
    IterationResult,
    JudgeResult,
    ModelConfig,
    PhaseLoopConfig,
    ReviewResult,
    Session,
    SessionOutcome,
)
from agentium.registry import (
    AdapterRegistry,
    _build_invocation_argv,
    _missing_credentials,
    _routed_adapter_names,
    _stdin_prompt,
    _supports_plan_mode,
)
from agentium.routing import PhaseRouter
from agentium.runners import ProcessExecutor, ProcessRequest
from agentium.scope import ScopeValidator
from agentium.utils import _append_log, _compact_log_text, _redact_argv, _redact_sensitive_text, _safe_read_text


class _SessionInterrupted(Exception):
    def __init__(self, status: str, reason: str) -> None:
        super().__init__(reason)
        self.status = status
        self.reason = reason


@dataclass(frozen=True)
class _PhaseExit:
    action: str
    reason: str = ""
    output: str = ""
    escalated: bool = False


class SessionController:
    """Drives one session through the phase loop.

    Phases run strictly in order. Each worker iteration is followed by an
    optional scope check, a reviewer pass, and a judge verdict. The session
    ends ``completed`` after PR_CREATION advances; ``blocked`` on a judge
    BLOCKED or no-signal escalation; ``exhausted`` when a phase (or the
    session) runs out of iterations; ``timed_out``/``cancelled`` when the
    deadline passes or ``cancel_event`` is set.
    """

    def __init__(
        self,
        session: Session,
        *,
        registry: AdapterRegistry,
        executor: ProcessExecutor,
        log_dir: Path,
        router: PhaseRouter | None = None,
        config: PhaseLoopConfig | None = None,
        default_agent: str = "",
        phase_prompts: Mapping[str, str] | None = None,
        event_sink: EventFileSink | None = None,
        scope_validator: ScopeValidator | None = None,
        cancel_event: threading.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.session = session
        self.registry = registry
        self.executor = executor
        self.log_dir = Path(log_dir)
        self.router = router or PhaseRouter(None)
        self.config = config or PhaseLoopConfig()
        self.default_agent = default_agent or session.agent
        self.phase_prompts = dict(phase_prompts or {})
        self.event_sink = event_sink
        control_paths = [self.log_dir] + ([event_sink.path] if event_sink is not None else [])
        self.scope_validator = scope_validator or ScopeValidator(
            session.work_dir or None, session.package_path, excluded_paths=control_paths
        )
        self.cancel_event = cancel_event or threading.Event()
        self.clock = clock
        self.environ = environ
        self._deadline: float | None = None
        self._phase = PHASE_ORDER[0]
        self._iteration = 0
        self._regressions = 0
        self._input_tokens = 0
        self._output_tokens = 0
        self._prs: list[str] = []
        self._records: list[IterationRecord] = []

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def preflight(self) -> None:
        """Fail fast on unknown/invalid adapters or missing provider credentials."""
        if not self.default_agent:
            raise ConfigError("no agent configured for session")
        names = _routed_adapter_names(self.router, self.default_agent)
        for name in names:
            self.registry.get(name).validate()
        missing = _missing_credentials(self.registry, self.session, names, self.environ)
        if missing:
            raise ConfigError(f"missing credentials for routed adapters: {', '.join(missing)}")
        unknown = self.router.unknown_phases()
        if unknown:
            self._log(f"routing has unrecognized phase keys (ignored): {', '.join(unknown)}")

    def run(self) -> SessionOutcome:
        self.preflight()
        if self.session.max_duration_seconds > 0:
            self._deadline = self.clock() + self.session.max_duration_seconds
        self._log(
            f"session start id={self.session.id} repository={self.session.repository} "
            f"agent={self.default_agent} package_path={self.scope_validator.package_path or '-'}"
        )
        try:
            outcome = self._run_phases()
        except _SessionInterrupted as interrupted:
            outcome = self._outcome(interrupted.status, self._phase, interrupted.reason)
        except AgentiumError as exc:
            outcome = self._outcome(OUTCOME_ERROR, self._phase, str(exc))
        self._log(
            f"session end id={self.session.id} status={outcome.status} phase={outcome.phase} "
            f"iterations={outcome.iterations} reason={_compact_log_text(outcome.reason)}"
        )
        return outcome

    def _run_phases(self) -> SessionOutcome:
        index = 0
        handoff = ""
        entered_plan = False
        while index < len(PHASE_ORDER):
            phase = PHASE_ORDER[index]
            if phase == PHASE_PLAN and not entered_plan:
                existing_plan = self._existing_plan()
                if existing_plan:
                    self._log("phase PLAN skipped: plan already exists")
                    handoff = f"Existing plan:\n\n{existing_plan}"
                    entered_plan = True
                    index += 1
                    continue
            entered_plan = entered_plan or phase == PHASE_PLAN
            exit_ = self._run_phase(phase, handoff)
            if exit_.action == VERDICT_ADVANCE:
                self._log(f"phase {phase} advanced")
                handoff = self._handoff_from(phase, exit_.output)
                index += 1
            elif exit_.action == VERDICT_REGRESS:
                self._regressions += 1
                self._log(f"phase {phase} regressed to PLAN ({self._regressions}): {exit_.reason}")
                handoff = f"Returning to PLAN from the {phase} phase. Revise the plan to address:\n\n{exit_.reason}"
                index = PHASE_ORDER.index(PHASE_PLAN)
            else:
                return self._outcome(exit_.action, phase, exit_.reason, escalated=exit_.escalated)
        return self._outcome(OUTCOME_COMPLETED, PHASE_ORDER[-1], "")

    # ------------------------------------------------------------------
    # Phase loop
    # ------------------------------------------------------------------

    def _run_phase(self, phase: str, handoff: str) -> _PhaseExit:
        self._phase = phase
        max_iterations = self.config.max_iterations(phase)
        worker = self.router.model_for_phase(phase)
        adapter_name = worker.adapter or self.default_agent
        adapter = self.registry.get(adapter_name)
        if phase == PHASE_PLAN and not _supports_plan_mode(adapter):
            self._log(f"adapter {adapter_name} has no plan mode; PLAN runs with normal permissions")
        self._log(
            f"phase {phase} start adapter={adapter_name} model={worker.model or '-'} "
            f"reasoning={worker.reasoning or '-'} max_iterations={max_iterations}"
        )

        phase_input = handoff
        previous_feedback = ""
        no_signal = 0
        for phase_iteration in range(1, max_iterations + 1):
            self._check_limits()
            self._iteration += 1
            self.session.iteration_context = IterationContext(
                phase=phase,
                skills_prompt=self.phase_prompts.get(phase, ""),
                phase_input=phase_input,
                model_override=worker.model,
                reasoning_override=worker.reasoning,
                iteration=self._iteration,
            )
            result = self._invoke(
                adapter_name,
                self.session,
                self._iteration,
                prefer_continuation=phase_iteration > 1,
                label=f"{phase} worker",
            )
            self._prs.extend(pr for pr in result.prs_created if pr not in self._prs)

            validation = self.scope_validator.validate_changes()
            if not validation.valid:
                message = self.scope_validator.format_violation_error(validation)
                self._log(f"phase {phase} scope violation: {', '.join(validation.out_of_scope_files)}")
                self.scope_validator.reset_changes()
                self._record(phase, phase_iteration, adapter_name, result, scope_violation=True)
                phase_input = (
                    f"{message}\nAll uncommitted changes were discarded. Redo the work inside the package scope."
                )
                continue

            no_signal = 0 if result.agent_status else no_signal + 1
            if self.config.no_signal_limit and no_signal >= self.config.no_signal_limit:
                self._record(phase, phase_iteration, adapter_name, result)
                reason = (
                    f"no AGENTIUM_STATUS signal for {no_signal} consecutive iteration(s) "
                    f"in {phase}; escalating for human review"
                )
                self._log(f"phase {phase} {reason}")
                return _PhaseExit(OUTCOME_BLOCKED, reason, escalated=True)

            output = result.raw_text or result.summary
            if _should_skip_review(self.config.reviewer_skip_on, output):
                self._log(f"phase {phase} review skipped ({self.config.reviewer_skip_on}); advancing")
                self._record(phase, phase_iteration, adapter_name, result, verdict=VERDICT_ADVANCE)
                return _PhaseExit(VERDICT_ADVANCE, output=result.assistant_text or output)

            review = self._run_reviewer(phase, phase_iteration, max_iterations, output, previous_feedback)
            allow_regress = phase != PHASE_PLAN and self._regressions < self.config.max_regressions
            judge = self._run_judge(phase, phase_iteration, max_iterations, review, output, allow_regress)
            verdict = judge.verdict
            reason = judge.feedback
            if verdict == VERDICT_REGRESS and not allow_regress:
                self._log(f"phase {phase} REGRESS not allowed here; treating as ITERATE")
                verdict = VERDICT_ITERATE
            self._record(
                phase, phase_iteration, adapter_name, result, verdict=verdict, verdict_reason=reason
            )

            if verdict == VERDICT_ADVANCE:
                return _PhaseExit(VERDICT_ADVANCE, output=result.assistant_text or output)
            if verdict == VERDICT_BLOCKED:
                return _PhaseExit(OUTCOME_BLOCKED, reason or "judge reported BLOCKED without a reason")
            if verdict == VERDICT_REGRESS:
                return _PhaseExit(VERDICT_REGRESS, reason or review.regress_reason)
            phase_input = reason or review.feedback
            previous_feedback = review.feedback

        return _PhaseExit(
            OUTCOME_EXHAUSTED, f"{phase} did not advance after {max_iterations} iteration(s)"
        )

    # ------------------------------------------------------------------
    # Reviewer / judge
    # ------------------------------------------------------------------

    def _sub_session(self, prompt: str, key: str, model: ModelConfig) -> Session:
        return dataclasses.replace(
            self.session,
            prompt=prompt,
            active_task=self.session.active_task or key,
            interactive=False,
            iteration_context=IterationContext(
                phase=key,
                skills_prompt=self.phase_prompts.get(key, ""),
                model_override=model.model,
                reasoning_override=model.reasoning,
                iteration=self._iteration,
            ),
        )

    def _run_reviewer(
        self,
        phase: str,
        phase_iteration: int,
        max_iterations: int,
        output: str,
        previous_feedback: str,
    ) -> ReviewResult:
        key = f"{phase}_REVIEW"
        model = self.router.reviewer_for_phase(phase)
        prompt = _build_review_prompt(
            phase=phase,
            repository=self.session.repository,
            active_task=self.session.active_task,
            iteration=phase_iteration,
            max_iterations=max_iterations,
            phase_output=output,
            previous_feedback=previous_feedback,
            budget=self.config.judge_context_budget,
        )
        result = self._invoke(
            model.adapter or self.default_agent,
            self._sub_session(prompt, key, model),
            0,
            prefer_continuation=False,
            label=key,
        )
        feedback = (result.assistant_text or result.raw_text).strip()
        if not feedback:
            feedback = f"(reviewer produced no output: {result.summary})"
        self._log(f"{key} feedback: {_compact_log_text(feedback)}")
        return ReviewResult(
            feedback=feedback,
            regress_reason=_extract_regress_recommendation(feedback),
            input_tokens=result.input_tokens,
            output_tokens=result.output_tokens,
        )

    def _run_judge(
        self,
        phase: str,
        phase_iteration: int,
        max_iterations: int,
        review: ReviewResult,
        output: str,
        allow_regress: bool,
    ) -> JudgeResult:
        key = f"{phase}_JUDGE"
        model = self.router.judge_for_phase(phase)
        prompt = _build_judge_prompt(
            phase=phase,
            repository=self.session.repository,
            active_task=self.session.active_task,
            iteration=phase_iteration,
            max_iterations=max_iterations,
            review_feedback=review.feedback,
            phase_output=output,
            budget=self.config.judge_context_budget,
            allow_regress=allow_regress,
        )
        result = self._invoke(
            model.adapter or self.default_agent,
            self._sub_session(prompt, key, model),
            0,
            prefer_continuation=False,
            label=key,
        )
        verdict = _parse_judge_verdict(result.raw_text or result.summary)
        self._log(
            f"{key} verdict={verdict.verdict} signal_found={verdict.signal_found} "
            f"reason={_compact_log_text(verdict.feedback)}"
        )
        return dataclasses.replace(
            verdict, input_tokens=result.input_tokens, output_tokens=result.output_tokens
        )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _invoke(
        self,
        adapter_name: str,
        session: Session,
        iteration: int,
        *,
        prefer_continuation: bool,
        label: str,
    ) -> IterationResult:
        adapter = self.registry.get(adapter_name)
        argv, continued = _build_invocation_argv(
            adapter, session, iteration, prefer_continuation=prefer_continuation
        )
        request = ProcessRequest(
            argv=argv,
            env=adapter.build_env(session, iteration),
            stdin=_stdin_prompt(adapter, session, iteration),
            cwd=session.work_dir,
        )
        timeout = self._remaining_time()
        self._log(
            f"{label} invoke adapter={adapter_name} iteration={self._iteration} "
            f"continued={continued} argv={_redact_argv(argv)}"
        )
        process = self.executor.run(request, timeout=timeout, cancel_event=self.cancel_event)
        if process.cancelled:
            raise _SessionInterrupted(OUTCOME_CANCELLED, f"session cancelled during {label}")
        if process.timed_out:
            raise _SessionInterrupted(
                OUTCOME_TIMED_OUT, f"session exceeded max duration during {label}"
            )

        result = adapter.parse_output(process.exit_code, process.stdout, process.stderr)
        self._input_tokens += result.input_tokens
        self._output_tokens += result.output_tokens
        if self.event_sink is not None and result.events:
            self.event_sink.write(
                _stamp_events(
                    result.events,
                    session_id=self.session.id,
                    iteration=self._iteration,
                    adapter=adapter_name,
                )
            )
        self._log(
            f"{label} exit_code={result.exit_code} status={result.agent_status or '-'} "
            f"summary={_compact_log_text(result.summary)}"
        )
        return result

    def _remaining_time(self) -> float | None:
        if self._deadline is None:
            return None
        return max(self._deadline - self.clock(), 0.001)

    def _check_limits(self) -> None:
        if self.cancel_event.is_set():
            raise _SessionInterrupted(OUTCOME_CANCELLED, "session cancelled")
        if self._deadline is not None and self.clock() >= self._deadline:
            raise _SessionInterrupted(OUTCOME_TIMED_OUT, "session exceeded max duration")
        if self.session.max_iterations and self._iteration >= self.session.max_iterations:
            raise _SessionInterrupted(
                OUTCOME_EXHAUSTED,
                f"session reached max iterations ({self.session.max_iterations})",
            )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _existing_plan(self) -> str:
        if not self.config.skip_plan_if_exists:
            return ""
        if self.session.existing_plan:
            return self.session.existing_plan
        if self.session.work_dir:
            return _safe_read_text(Path(self.session.work_dir) / PLAN_ARTIFACT_PATH)
        return ""

    def _handoff_from(self, phase: str, output: str) -> str:
        if not output.strip():
            return ""
        trimmed = _truncate_for_context(output.strip(), self.config.judge_context_budget)
        return f"Output of the {phase} phase:\n\n{trimmed}"

    def _record(
        self,
        phase: str,
        phase_iteration: int,
        adapter_name: str,
        result: IterationResult,
        *,
        verdict: str = "",
        verdict_reason: str = "",
        scope_violation: bool = False,
    ) -> None:
        self._records.append(
            IterationRecord(
                phase=phase,
                phase_iteration=phase_iteration,
                iteration=self._iteration,
                adapter=adapter_name,
                exit_code=result.exit_code,
                agent_status=result.agent_status,
                summary=result.summary,
                verdict=verdict,
                verdict_reason=verdict_reason,
                scope_violation=scope_violation,
            )
        )

    def _outcome(self, status: str, phase: str, reason: str, *, escalated: bool = False) -> SessionOutcome:
        return SessionOutcome(
            status=status,
            phase=phase,
            reason=reason,
            iterations=self._iteration,
            escalated=escalated,
            input_tokens=self._input_tokens,
            output_tokens=self._output_tokens,
            prs_created=tuple(self._prs),
            records=tuple(self._records),
        )

    def _log(self, message: str) -> None:
        _append_log(self.log_dir, _redact_sensitive_text(message))
