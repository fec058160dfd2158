"""
Escalator.

Rewrites a document on the strong model tier once the gate has decided the
cheap path is not good enough.  Chooses between:

- none     no segment actually fails the per-segment minimums
- partial  failing share <= partial_ratio_max; only failing segments are revised
- full     failing share above that; one whole-document rewrite

Partial revisions are spliced back from the unmodified source in a single
pass, so offsets reported by the evaluator stay valid throughout.
"""

import asyncio
import logging

from ragmaster.agents.gateway import AgentError, ModelGateway
from ragmaster.agents.prompts.escalator import (
    FULL_REWRITE_SYSTEM_PROMPT,
    FULL_REWRITE_USER_TEMPLATE,
    SEGMENT_REWRITE_SYSTEM_PROMPT,
    SEGMENT_REWRITE_USER_TEMPLATE,
)
from ragmaster.models.schemas import (
    EscalationMode,
    EscalationResult,
    QualityMetrics,
    SegmentAssessment,
)
from ragmaster.runtime.gate import DEFAULT_THRESHOLDS, GateThresholds

log = logging.getLogger(__name__)

CONTEXT_CHARS = 6_000


def find_failing_segments(
    metrics: QualityMetrics, thresholds: GateThresholds
) -> list[SegmentAssessment]:
    return [
        seg
        for seg in metrics.segments
        if seg.correctness < thresholds.correctness_min
        or seg.context_alignment < thresholds.context_alignment_min
    ]


def choose_mode(failing: int, total: int, partial_ratio_max: float) -> EscalationMode:
    """Boundary is inclusive: a ratio exactly at `partial_ratio_max` stays partial."""
    if failing == 0 or total == 0:
        return "none"
    return "partial" if failing / total <= partial_ratio_max else "full"


def drop_overlapping(segments: list[SegmentAssessment]) -> list[SegmentAssessment]:
    """Keep segments in start order, dropping any that overlaps one already kept."""
    kept: list[SegmentAssessment] = []
    cursor = 0
    for seg in sorted(segments, key=lambda s: (s.char_start, s.char_end)):
        if seg.char_start < cursor:
            log.warning(
                "Dropping overlapping segment %s [%d, %d) (cursor=%d)",
                seg.segment_id, seg.char_start, seg.char_end, cursor,
            )
            continue
        kept.append(seg)
        cursor = seg.char_end
    return kept


def splice(text: str, replacements: list[tuple[int, int, str]]) -> str:
    """
    Rebuild `text` with each (start, end, new_text) span replaced.

    Spans index into the original `text`.  They are applied in start order;
    a span overlapping an earlier one is skipped.
    """
    parts: list[str] = []
    cursor = 0
    for start, end, new_text in sorted(replacements, key=lambda r: (r[0], r[1])):
        if start < cursor:
            log.warning("Skipping overlapping span [%d, %d) (cursor=%d)", start, end, cursor)
            continue
        parts.append(text[cursor:start])
        parts.append(new_text)
        cursor = end
    parts.append(text[cursor:])
    return "".join(parts)


class Escalator:
    def __init__(
        self,
        gateway: ModelGateway,
        model_id: str,
        thresholds: GateThresholds = DEFAULT_THRESHOLDS,
        partial_ratio_max: float = 0.30,
    ) -> None:
        self._gateway = gateway
        self._model_id = model_id
        self._thresholds = thresholds
        self._partial_ratio_max = partial_ratio_max

    @property
    def model_id(self) -> str:
        return self._model_id

    async def full_rewrite(self, text: str) -> str:
        messages = [
            {"role": "system", "content": FULL_REWRITE_SYSTEM_PROMPT},
            {"role": "user", "content": FULL_REWRITE_USER_TEMPLATE.format(document=text)},
        ]
        revised = await self._gateway.invoke(self._model_id, messages, {"temperature": 0})
        if not revised.strip():
            raise AgentError("escalator", "Full rewrite returned empty text")
        return revised

    async def _revise_segment(self, text: str, seg: SegmentAssessment) -> tuple[int, int, str]:
        issues = "\n".join(f"- {issue}" for issue in seg.issues) or "- General quality below threshold"
        messages = [
            {"role": "system", "content": SEGMENT_REWRITE_SYSTEM_PROMPT},
            {
                "role": "user",
                "content": SEGMENT_REWRITE_USER_TEMPLATE.format(
                    issues=issues,
                    document_context=text[:CONTEXT_CHARS],
                    segment_text=text[seg.char_start:seg.char_end],
                ),
            },
        ]
        revised = await self._gateway.invoke(self._model_id, messages, {"temperature": 0})
        if not revised.strip():
            raise AgentError("escalator", f"Segment {seg.segment_id} rewrite returned empty text")
        return seg.char_start, seg.char_end, revised

    async def escalate(self, text: str, metrics: QualityMetrics) -> EscalationResult:
        """
        Improve `text` on the strong tier according to its failing segments.

        Raises
        ------
        AgentError
            If the strong model returns empty text.
        Exception
            Gateway errors propagate unchanged.
        """
        failing = find_failing_segments(metrics, self._thresholds)
        total = len(metrics.segments)
        mode = choose_mode(len(failing), total, self._partial_ratio_max)
        log.info("Escalation mode=%s (%d/%d segments failing)", mode, len(failing), total)

        if mode == "none":
            revised = text
        elif mode == "full":
            revised = await self.full_rewrite(text)
        else:
            ordered = drop_overlapping(failing)
            replacements = await asyncio.gather(*(self._revise_segment(text, s) for s in ordered))
            revised = splice(text, list(replacements))

        return EscalationResult(
            mode=mode,
            revised_text=revised,
            failing_segments=len(failing),
            total_segments=total,
        )
