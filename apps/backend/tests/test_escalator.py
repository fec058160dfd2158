from __future__ import annotations

import asyncio

import pytest

from ragmaster.agents.escalator import Escalator, choose_mode, find_failing_segments, splice
from ragmaster.agents.evaluator import merge_passes, parse_self_assessment
from ragmaster.agents.gateway import AgentError
from ragmaster.runtime.gate import DEFAULT_THRESHOLDS

from fakes import DOC, STRONG, ScriptedGateway, assessment_json


def ten_spans(text: str) -> list[tuple[int, int]]:
    step = len(text) // 10
    bounds = [i * step for i in range(10)] + [len(text)]
    return list(zip(bounds[:-1], bounds[1:]))


def metrics_with_failures(text: str, failing: int):
    spans = ten_spans(text)
    scores = [0.3] * failing + [0.95] * (len(spans) - failing)
    raw = assessment_json(spans, score=scores, issues=["vague wording"])
    assessment = parse_self_assessment(raw, len(text))
    return merge_passes(assessment, assessment, text)


@pytest.mark.parametrize(
    ("failing", "total", "expected"),
    [
        (0, 10, "none"),
        (1, 10, "partial"),
        (3, 10, "partial"),
        (4, 10, "full"),
        (10, 10, "full"),
        (0, 0, "none"),
    ],
)
def test_choose_mode_boundary_is_inclusive(failing, total, expected):
    assert choose_mode(failing, total, 0.30) == expected


def test_splice_replaces_spans_against_original_offsets():
    text = "aaaa|bbbb|cccc"
    out = splice(text, [(10, 14, "Z"), (0, 4, "XXXXXXXX")])
    assert out == "XXXXXXXX|bbbb|Z"


def test_splice_skips_overlapping_span():
    text = "0123456789"
    out = splice(text, [(0, 5, "A"), (3, 8, "B")])
    assert out == "A56789"


def test_splice_with_no_replacements_is_identity():
    assert splice(DOC, []) == DOC


def test_failing_segments_use_correctness_and_alignment():
    metrics = metrics_with_failures(DOC, 2)
    failing = find_failing_segments(metrics, DEFAULT_THRESHOLDS)
    assert [s.segment_id for s in failing] == ["s1", "s2"]


def test_partial_escalation_rewrites_only_failing_segments():
    gateway = ScriptedGateway(lambda stage, model, prompt: "<fixed>")
    escalator = Escalator(gateway, STRONG)
    metrics = metrics_with_failures(DOC, 3)

    result = asyncio.run(escalator.escalate(DOC, metrics))

    assert result.mode == "partial"
    assert result.failing_segments == 3
    assert result.total_segments == 10
    assert gateway.stages() == ["segment_rewrite"] * 3
    assert gateway.models_for("segment_rewrite") == [STRONG] * 3
    spans = ten_spans(DOC)
    assert result.revised_text == "<fixed>" * 3 + DOC[spans[3][0]:]


def test_overlapping_failing_segments_are_rewritten_once():
    gateway = ScriptedGateway(lambda stage, model, prompt: "<fixed>")
    escalator = Escalator(gateway, STRONG)
    spans = ten_spans(DOC)
    spans[1] = (spans[0][0] + 4, spans[1][1])
    raw = assessment_json(spans, score=[0.3, 0.3] + [0.95] * 8)
    assessment = parse_self_assessment(raw, len(DOC))
    metrics = merge_passes(assessment, assessment, DOC)

    result = asyncio.run(escalator.escalate(DOC, metrics))

    assert result.mode == "partial"
    assert result.failing_segments == 2
    assert gateway.stages() == ["segment_rewrite"]
    assert result.revised_text == "<fixed>" + DOC[spans[0][1]:]


def test_full_escalation_above_ratio():
    gateway = ScriptedGateway(lambda stage, model, prompt: "# Rewritten\n\nBetter.")
    escalator = Escalator(gateway, STRONG)

    result = asyncio.run(escalator.escalate(DOC, metrics_with_failures(DOC, 4)))

    assert result.mode == "full"
    assert result.revised_text == "# Rewritten\n\nBetter."
    assert gateway.stages() == ["full_rewrite"]


def test_no_failing_segments_leaves_text_untouched():
    gateway = ScriptedGateway(lambda stage, model, prompt: "unused")
    escalator = Escalator(gateway, STRONG)

    result = asyncio.run(escalator.escalate(DOC, metrics_with_failures(DOC, 0)))

    assert result.mode == "none"
    assert result.revised_text == DOC
    assert gateway.stages() == []


def test_empty_rewrite_is_an_error():
    escalator = Escalator(ScriptedGateway(lambda stage, model, prompt: "   "), STRONG)
    with pytest.raises(AgentError):
        asyncio.run(escalator.full_rewrite(DOC))
