"""
Quality Evaluator.

Runs two independent self-assessment passes against the cheap model and folds
them into a single QualityMetrics.  An unparseable or schema-violating pass is
not retried: it raises EvaluationFailure, which the pipeline treats as a signal
to send the document straight to the strong tier.
"""

import asyncio
import json
import logging
from statistics import fmean

from pydantic import ValidationError

from ragmaster.agents.gateway import AgentError, ModelGateway
from ragmaster.agents.prompts.evaluator import EVALUATOR_SYSTEM_PROMPT, EVALUATOR_USER_TEMPLATE
from ragmaster.models.schemas import (
    DocumentFlags,
    QualityMetrics,
    ScoreMeans,
    SegmentAssessment,
    SelfAssessment,
)
from ragmaster.runtime.gate import structural_profile

log = logging.getLogger(__name__)

SCORE_FIELDS = ("clarity", "correctness", "completeness", "context_alignment")


class EvaluationFailure(AgentError):
    """A self-assessment pass could not be parsed into the expected schema."""

    def __init__(self, reason: str, raw_output: str = "") -> None:
        super().__init__("evaluator", reason, raw_output)


def parse_self_assessment(raw: str, char_length: int) -> SelfAssessment:
    """
    Parse one evaluation pass.

    Raises
    ------
    EvaluationFailure
        On invalid JSON, schema violation, or segment offsets outside the text.
    """
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise EvaluationFailure(f"Response is not valid JSON: {exc}", raw) from exc

    try:
        assessment = SelfAssessment.model_validate(data)
    except ValidationError as exc:
        raise EvaluationFailure(f"Schema validation failed: {exc}", raw) from exc

    for seg in assessment.segments:
        if seg.char_end > char_length:
            raise EvaluationFailure(
                f"Segment {seg.segment_id} ends at {seg.char_end}, past text length {char_length}",
                raw,
            )
    return assessment


def _pass_means(assessment: SelfAssessment) -> dict[str, float]:
    return {
        field: fmean(getattr(seg, field) for seg in assessment.segments)
        for field in SCORE_FIELDS
    }


def _half_diff_squared(a: float, b: float) -> float:
    return round(((a - b) / 2) ** 2, 6)


def _merge_segments(
    first: list[SegmentAssessment], second: list[SegmentAssessment]
) -> list[SegmentAssessment]:
    """Average scores where both passes report the same span; otherwise keep pass one."""
    by_span = {(s.char_start, s.char_end): s for s in second}
    merged: list[SegmentAssessment] = []
    for seg in first:
        other = by_span.get((seg.char_start, seg.char_end))
        if other is None:
            merged.append(seg)
            continue
        scores = {f: (getattr(seg, f) + getattr(other, f)) / 2 for f in SCORE_FIELDS}
        issues = list(dict.fromkeys([*seg.issues, *other.issues]))
        merged.append(seg.model_copy(update={**scores, "issues": issues}))
    return merged


def merge_passes(first: SelfAssessment, second: SelfAssessment, text: str) -> QualityMetrics:
    """
    Combine two passes into QualityMetrics.

    Means are taken per pass across segments, then averaged across passes.
    Document flags combine conservatively: constraints must hold in both passes,
    the higher hallucination count wins, coverage is averaged.
    """
    m1, m2 = _pass_means(first), _pass_means(second)
    means = ScoreMeans(**{f: round((m1[f] + m2[f]) / 2, 4) for f in SCORE_FIELDS})
    flags_a: DocumentFlags = first.document
    flags_b: DocumentFlags = second.document

    return QualityMetrics(
        segments=_merge_segments(first.segments, second.segments),
        means=means,
        constraints_satisfied=flags_a.constraints_satisfied and flags_b.constraints_satisfied,
        hallucination_count=max(flags_a.hallucination_count, flags_b.hallucination_count),
        estimated_coverage=round((flags_a.estimated_coverage + flags_b.estimated_coverage) / 2, 4),
        correctness_variance=_half_diff_squared(m1["correctness"], m2["correctness"]),
        completeness_variance=_half_diff_squared(m1["completeness"], m2["completeness"]),
        structure=structural_profile(text),
    )


class QualityEvaluator:
    """Two-pass self-assessment on the cheap tier."""

    def __init__(self, gateway: ModelGateway, model_id: str, temperature: float = 0.4) -> None:
        self._gateway = gateway
        self._model_id = model_id
        self._temperature = temperature

    async def _assess(self, text: str) -> SelfAssessment:
        messages = [
            {"role": "system", "content": EVALUATOR_SYSTEM_PROMPT.format(char_length=len(text))},
            {
                "role": "user",
                "content": EVALUATOR_USER_TEMPLATE.format(
                    char_length=len(text), candidate_text=text
                ),
            },
        ]
        raw = await self._gateway.invoke(
            self._model_id, messages, {"json": True, "temperature": self._temperature}
        )
        return parse_self_assessment(raw, len(text))

    async def evaluate(self, text: str) -> QualityMetrics:
        """
        Score `text` with two concurrent passes.

        Raises
        ------
        EvaluationFailure
            If either pass is unparseable.
        Exception
            Gateway errors propagate unchanged and take precedence over
            EvaluationFailure, since they mean the item cannot be evaluated at all.
        """
        outcomes = await asyncio.gather(self._assess(text), self._assess(text), return_exceptions=True)

        failures = [o for o in outcomes if isinstance(o, BaseException)]
        for exc in failures:
            if not isinstance(exc, EvaluationFailure):
                raise exc
        if failures:
            log.info("Self-evaluation failed: %s", failures[0])
            raise failures[0]

        first, second = outcomes  # type: ignore[misc]
        metrics = merge_passes(first, second, text)  # type: ignore[arg-type]
        log.debug(
            "Evaluator — segments=%d means=%s var(corr)=%.4f var(comp)=%.4f",
            len(metrics.segments),
            metrics.means.model_dump(),
            metrics.correctness_variance,
            metrics.completeness_variance,
        )
        return metrics
