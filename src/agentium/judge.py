"""Reviewer and judge prompts, and the ``AGENTIUM_EVAL`` verdict protocol."""

from __future__ import annotations

import re

from agentium.constants import (
    JUDGE_VERDICTS,
    PHASE_PLAN,
    SIMPLE_OUTPUT_LINE_THRESHOLD,
    SKIP_CONDITION_EMPTY_OUTPUT,
    SKIP_CONDITION_SIMPLE_OUTPUT,
    VERDICT_ITERATE,
)
from agentium.models import JudgeResult

JUDGE_PATTERN = re.compile(rf"(?m)^AGENTIUM_EVAL:[ \t]+({'|'.join(JUDGE_VERDICTS)})[ \t]*(.*)$")
MARKDOWN_FENCE_PATTERN = re.compile(r"(?s)```[a-z]*\n?(.*?)```")
REGRESS_RECOMMENDATION_PATTERN = re.compile(
    r"(?im)recommend\s+REGRESS\s+to\s+PLAN(?:\s+phase)?\s*:\s*(.+)$"
)
TRUNCATION_MARKER = "... (earlier output truncated)"
MISSING_VERDICT_FEEDBACK = (
    "Judge did not emit an AGENTIUM_EVAL verdict; continue addressing the reviewer's feedback."
)


def _strip_markdown_fences(text: str) -> str:
    return MARKDOWN_FENCE_PATTERN.sub(r"\1", text)


def _parse_judge_verdict(output: str) -> JudgeResult:
    """First verdict line wins; fenced verdicts are accepted too.

    Without a verdict line the phase iterates, bounded by its ceiling.
    """
    match = JUDGE_PATTERN.search(output)
    if match is None:
        match = JUDGE_PATTERN.search(_strip_markdown_fences(output))
    if match is None:
        return JudgeResult(verdict=VERDICT_ITERATE, feedback=MISSING_VERDICT_FEEDBACK, signal_found=False)
    return JudgeResult(verdict=match.group(1), feedback=match.group(2).strip(), signal_found=True)


def _extract_regress_recommendation(feedback: str) -> str:
    match = REGRESS_RECOMMENDATION_PATTERN.search(feedback)
    return match.group(1).strip() if match else ""


def _truncate_for_context(output: str, budget: int) -> str:
    if budget <= 0 or len(output) <= budget:
        return output
    return f"{TRUNCATION_MARKER}\n\n{output[len(output) - budget:]}"


def _should_skip_review(condition: str, output: str) -> bool:
    if condition == SKIP_CONDITION_EMPTY_OUTPUT:
        return not output.strip()
    if condition == SKIP_CONDITION_SIMPLE_OUTPUT:
        lines = [line for line in output.splitlines() if line.strip()]
        return len(lines) < SIMPLE_OUTPUT_LINE_THRESHOLD
    return False


def _header(title: str, repository: str, active_task: str) -> list[str]:
    lines = [title, "", f"Repository: {repository}"]
    if active_task:
        lines.append(f"Issue: #{active_task}")
    return lines


def _build_review_prompt(
    *,
    phase: str,
    repository: str,
    active_task: str,
    iteration: int,
    max_iterations: int,
    phase_output: str,
    previous_feedback: str = "",
    budget: int,
) -> str:
    lines = _header(
        f"You are reviewing the output of the **{phase}** phase (iteration {iteration}/{max_iterations}).",
        repository,
        active_task,
    )
    lines.append("")
    if previous_feedback:
        lines.extend(
            [
                "## Previous Iteration Feedback",
                "",
                "The following feedback was given in the previous iteration:",
                "",
                "```",
                previous_feedback,
                "```",
                "",
            ]
        )
    lines.extend(
        [
            "## Phase Output",
            "",
            "```",
            _truncate_for_context(phase_output, budget),
            "```",
            "",
            "## Your Task",
            "",
            "Review the work produced in this phase. Do not rely solely on the log above:",
            "inspect the working tree (`git diff`, modified files) to verify the worker's claims.",
            "",
            "Provide constructive, actionable review feedback.",
            "Be specific about what to improve and indicate severity (critical/security, functional bug, minor style).",
        ]
    )
    if phase != PHASE_PLAN:
        lines.extend(
            [
                "",
                "If the problems are architectural and cannot be fixed without a new plan, add one line:",
                "`Recommend REGRESS to PLAN phase: <reason>`",
            ]
        )
    lines.extend(
        [
            "",
            "## Output Format",
            "",
            "Output ONLY your feedback, without preamble or a description of your process.",
            "Do not emit a verdict; a separate judge decides whether the phase advances.",
        ]
    )
    return "\n".join(lines) + "\n"


def _build_judge_prompt(
    *,
    phase: str,
    repository: str,
    active_task: str,
    iteration: int,
    max_iterations: int,
    review_feedback: str,
    phase_output: str,
    budget: int,
    allow_regress: bool,
) -> str:
    lines = _header(f"You are the **judge** for the **{phase}** phase.", repository, active_task)
    lines.extend(
        [
            f"Iteration: {iteration}/{max_iterations}",
            "",
            "## Reviewer's Feedback",
            "",
            review_feedback or "(No feedback provided by reviewer)",
            "",
            "## Phase Output Summary",
            "",
            "```",
            _truncate_for_context(phase_output, budget),
            "```",
            "",
            "## Your Task",
            "",
            "Based on the reviewer's feedback, decide if the work should advance or iterate.",
            "You MUST emit exactly one line starting with `AGENTIUM_EVAL:` followed by your verdict.",
            "",
            "### Available Verdicts",
            "",
            "- `AGENTIUM_EVAL: ADVANCE` - Phase complete, move to next phase",
            "- `AGENTIUM_EVAL: ITERATE <feedback>` - More work needed in current phase",
            "- `AGENTIUM_EVAL: BLOCKED <reason>` - Unresolvable issue, needs human intervention",
        ]
    )
    if allow_regress:
        lines.append(
            "- `AGENTIUM_EVAL: REGRESS <reason>` - Architectural problem, return to the PLAN phase"
        )
    lines.append("")
    if iteration >= max_iterations:
        lines.extend(
            [
                "**NOTE:** This is the FINAL iteration. Prefer ADVANCE unless there are critical issues "
                "that would prevent the work from being usable. Security issues are ALWAYS critical.",
                "",
            ]
        )
    return "\n".join(lines) + "\n"
