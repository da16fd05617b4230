from __future__ import annotations

import pytest

from agentium.judge import (
    MISSING_VERDICT_FEEDBACK,
    TRUNCATION_MARKER,
    _build_judge_prompt,
    _build_review_prompt,
    _extract_regress_recommendation,
    _parse_judge_verdict,
    _should_skip_review,
    _truncate_for_context,
)


@pytest.mark.parametrize(
    ("output", "verdict", "feedback"),
    [
        ("AGENTIUM_EVAL: ADVANCE\n", "ADVANCE", ""),
        ("Thoughts...\nAGENTIUM_EVAL: ITERATE add tests for the parser\n", "ITERATE", "add tests for the parser"),
        ("AGENTIUM_EVAL: BLOCKED missing credentials", "BLOCKED", "missing credentials"),
        ("AGENTIUM_EVAL: REGRESS plan ignores the API layer", "REGRESS", "plan ignores the API layer"),
        ("AGENTIUM_EVAL: ADVANCE\nAGENTIUM_EVAL: ITERATE later", "ADVANCE", ""),
    ],
)
def test_parse_judge_verdict(output: str, verdict: str, feedback: str) -> None:
    result = _parse_judge_verdict(output)
    assert result.verdict == verdict
    assert result.feedback == feedback
    assert result.signal_found


def test_fenced_verdict_is_accepted() -> None:
    result = _parse_judge_verdict("```\nAGENTIUM_EVAL: BLOCKED needs a human\n```")
    assert result.verdict == "BLOCKED"
    assert result.feedback == "needs a human"


def test_verdict_inside_language_tagged_fence() -> None:
    result = _parse_judge_verdict("Verdict:\n```text\nAGENTIUM_EVAL: ADVANCE\n```\n")
    assert result.verdict == "ADVANCE"


def test_missing_verdict_iterates() -> None:
    result = _parse_judge_verdict("I think it's fine. AGENTIUM_EVAL: ADVANCE")
    assert result.verdict == "ITERATE"
    assert result.feedback == MISSING_VERDICT_FEEDBACK
    assert not result.signal_found


def test_unknown_verdict_word_is_not_a_verdict() -> None:
    assert not _parse_judge_verdict("AGENTIUM_EVAL: APPROVE").signal_found


def test_regress_recommendation() -> None:
    feedback = "Several issues.\nRecommend REGRESS to PLAN phase: the schema design is wrong\n"
    assert _extract_regress_recommendation(feedback) == "the schema design is wrong"
    assert _extract_regress_recommendation("All good.") == ""


def test_truncate_for_context_keeps_tail() -> None:
    output = "a" * 50 + "b" * 50
    assert _truncate_for_context(output, 200) == output
    assert _truncate_for_context(output, 10) == f"{TRUNCATION_MARKER}\n\n{'b' * 10}"
    assert _truncate_for_context(output, 0) == output


def test_should_skip_review() -> None:
    assert _should_skip_review("empty_output", "  \n")
    assert not _should_skip_review("empty_output", "done")
    assert _should_skip_review("simple_output", "one\ntwo\n")
    assert not _should_skip_review("simple_output", "\n".join(f"line {n}" for n in range(10)))
    assert not _should_skip_review("", "")


def test_review_prompt_sections() -> None:
    prompt = _build_review_prompt(
        phase="IMPLEMENT",
        repository="acme/widgets",
        active_task="42",
        iteration=2,
        max_iterations=5,
        phase_output="diff --git a/x b/x",
        previous_feedback="add tests",
        budget=1000,
    )
    assert prompt.startswith("You are reviewing the output of the **IMPLEMENT** phase (iteration 2/5).")
    assert "Repository: acme/widgets\nIssue: #42" in prompt
    assert "## Previous Iteration Feedback" in prompt
    assert "add tests" in prompt
    assert "diff --git a/x b/x" in prompt
    assert "Recommend REGRESS to PLAN phase" in prompt


def test_plan_review_prompt_has_no_regress_line() -> None:
    prompt = _build_review_prompt(
        phase="PLAN",
        repository="acme/widgets",
        active_task="",
        iteration=1,
        max_iterations=3,
        phase_output="plan",
        budget=1000,
    )
    assert "REGRESS" not in prompt
    assert "Issue:" not in prompt
    assert "## Previous Iteration Feedback" not in prompt


def test_judge_prompt_lists_regress_only_when_allowed_and_flags_final_iteration() -> None:
    kwargs = dict(
        phase="DOCS",
        repository="acme/widgets",
        active_task="42",
        review_feedback="",
        phase_output="x" * 30,
        budget=10,
    )
    prompt = _build_judge_prompt(iteration=1, max_iterations=2, allow_regress=True, **kwargs)
    assert prompt.startswith("You are the **judge** for the **DOCS** phase.")
    assert "(No feedback provided by reviewer)" in prompt
    assert "`AGENTIUM_EVAL: REGRESS <reason>`" in prompt
    assert TRUNCATION_MARKER in prompt
    assert "FINAL iteration" not in prompt

    final = _build_judge_prompt(iteration=2, max_iterations=2, allow_regress=False, **kwargs)
    assert "REGRESS" not in final
    assert "This is the FINAL iteration" in final
