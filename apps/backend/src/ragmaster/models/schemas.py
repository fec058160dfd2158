"""
Pipeline I/O schemas.

Pydantic models exchanged between the Quality Evaluator, Gate, Escalator and
Conversion Stage.  The self-assessment and conversion models double as the
parse-time contract for LLM output: anything that fails validation here is
rejected before it can influence a gating decision.
"""

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# ── Shared types ──────────────────────────────────────────────────────────────

GateReason = Literal[
    "accepted",
    "constraints_failed",
    "hard_fail",
    "low_composite",
    "multi_soft_fail",
    "uncertain_borderline",
    "model_predicted_fail",
    "self_eval_failed",
    "evaluation_error",
]

EscalationMode = Literal["none", "partial", "full"]

Score = Annotated[float, Field(ge=0.0, le=1.0)]


# ── Self-assessment (evaluator output) ────────────────────────────────────────

class SegmentAssessment(BaseModel):
    """Scores for one contiguous span of the candidate text."""

    segment_id: str
    char_start: int = Field(..., ge=0)
    char_end: int = Field(..., ge=0)
    clarity: Score
    correctness: Score
    completeness: Score
    context_alignment: Score
    issues: list[str] = Field(default_factory=list)

    @field_validator("segment_id", mode="before")
    @classmethod
    def coerce_segment_id(cls, value: Any) -> str:
        return str(value)

    @model_validator(mode="after")
    def validate_span(self) -> "SegmentAssessment":
        if self.char_end < self.char_start:
            raise ValueError(
                f"segment {self.segment_id}: char_end={self.char_end} < char_start={self.char_start}"
            )
        return self


class DocumentFlags(BaseModel):
    """Document-level findings reported alongside the segment scores."""

    constraints_satisfied: bool
    hallucination_count: int = Field(..., ge=0)
    estimated_coverage: Score


class SelfAssessment(BaseModel):
    """One evaluation pass as returned by the cheap model."""

    segments: Annotated[list[SegmentAssessment], Field(min_length=1)]
    document: DocumentFlags


# ── Derived quality metrics ───────────────────────────────────────────────────

class StructuralProfile(BaseModel):
    """Shape of the candidate text, used by the gate's pass-probability estimate."""

    char_length: int = Field(..., ge=0)
    heading_count: int = Field(default=0, ge=0)
    table_count: int = Field(default=0, ge=0)
    code_block_count: int = Field(default=0, ge=0)


class ScoreMeans(BaseModel):
    """Per-dimension means across segments (averaged over both passes)."""

    clarity: Score
    correctness: Score
    completeness: Score
    context_alignment: Score


class QualityMetrics(BaseModel):
    """
    Everything the gate and escalator need to know about a candidate.

    The variance fields are a two-sample proxy, ((a - b) / 2) ** 2 between the
    per-pass means.  They flag disagreement between passes; they are not a
    calibrated confidence.
    """

    model_config = ConfigDict(frozen=True)

    segments: list[SegmentAssessment]
    means: ScoreMeans
    constraints_satisfied: bool
    hallucination_count: int = Field(..., ge=0)
    estimated_coverage: Score
    correctness_variance: float = Field(..., ge=0.0)
    completeness_variance: float = Field(..., ge=0.0)
    structure: StructuralProfile


# ── Gate verdict ──────────────────────────────────────────────────────────────

class GateVerdict(BaseModel):
    model_config = ConfigDict(frozen=True)

    escalate: bool
    reason: GateReason
    composite: float = Field(..., ge=0.0, le=1.0)
    pass_probability: float = Field(..., ge=0.0, le=1.0)


# ── Escalation outcome ────────────────────────────────────────────────────────

class EscalationResult(BaseModel):
    mode: EscalationMode
    revised_text: str
    failing_segments: int = Field(default=0, ge=0)
    total_segments: int = Field(default=0, ge=0)


# ── Conversion output ─────────────────────────────────────────────────────────

class StructuredResult(BaseModel):
    """
    Retrieval-ready document produced by the Conversion Stage.

    `doc` and `chunks` are mandatory; the remaining blocks are kept when present
    and any extra top-level keys the model adds are preserved untouched.
    """

    model_config = ConfigDict(extra="allow")

    doc: dict[str, Any]
    chunks: list[dict[str, Any]]
    content: dict[str, Any] | None = None
    augment: dict[str, Any] | None = None
    retrieval_hints: dict[str, Any] | None = None
    security: dict[str, Any] | None = None
    embeddings_meta: dict[str, Any] | None = None

    @property
    def domain_tags(self) -> list[str]:
        tags = (self.retrieval_hints or {}).get("domain_tags") or []
        return [str(tag) for tag in tags] if isinstance(tags, list) else []
