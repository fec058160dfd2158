"""
Quality gate.

`decide` maps QualityMetrics + GateThresholds to an accept/escalate verdict.
It is a pure function: no I/O, no clock, no module state.  Rules are checked
top to bottom and the first match wins:

1. constraints_failed     document broke its own format constraints
2. hard_fail              hallucinations above the allowance, or coverage floor missed
3. low_composite          weighted composite below composite_min
4. multi_soft_fail        too many per-dimension minimums missed
5. uncertain_borderline   passes disagree and the composite is only marginal
6. model_predicted_fail   heuristic pass probability below its floor
7. accepted
"""

import re

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ragmaster.models.schemas import GateVerdict, QualityMetrics, StructuralProfile

COMPOSITE_WEIGHTS: dict[str, float] = {
    "clarity": 0.15,
    "correctness": 0.25,
    "completeness": 0.20,
    "constraints": 0.25,
    "context_alignment": 0.15,
}

_HEADING_RE = re.compile(r"^#{1,6}\s+\S", re.MULTILINE)
_TABLE_RULE_RE = re.compile(r"^\s*\|?\s*:?-{3,}:?\s*(\|\s*:?-{3,}:?\s*)+\|?\s*$", re.MULTILINE)
_FENCE_RE = re.compile(r"^\s*(```|~~~)", re.MULTILINE)


class GateThresholds(BaseModel):
    """Tunable limits for `decide`. Defaults are the shipped policy."""

    model_config = ConfigDict(frozen=True)

    composite_min: float = Field(default=0.70, ge=0.0, le=1.0)
    borderline_composite: float = Field(default=0.80, ge=0.0, le=1.0)
    correctness_min: float = Field(default=0.70, ge=0.0, le=1.0)
    completeness_min: float = Field(default=0.70, ge=0.0, le=1.0)
    context_alignment_min: float = Field(default=0.70, ge=0.0, le=1.0)
    soft_fail_escalate_count: int = Field(default=2, ge=1)
    correctness_variance_max: float = Field(default=0.01, ge=0.0)
    completeness_variance_max: float = Field(default=0.01, ge=0.0)
    max_hallucinations: int = Field(default=0, ge=0)
    coverage_hard_floor: float = Field(default=0.0, ge=0.0, le=1.0)
    pass_probability_floor: float = Field(default=0.60, ge=0.0, le=1.0)

    # Structural-complexity penalty used by the pass-probability estimate
    density_penalty_rate: float = Field(default=0.02, ge=0.0)
    density_penalty_cap: float = Field(default=0.10, ge=0.0, le=1.0)
    length_penalty_scale: int = Field(default=400_000, ge=1)
    length_penalty_cap: float = Field(default=0.05, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def validate_borderline(self) -> "GateThresholds":
        if self.borderline_composite < self.composite_min:
            raise ValueError(
                f"borderline_composite={self.borderline_composite} must be >= "
                f"composite_min={self.composite_min}"
            )
        return self


DEFAULT_THRESHOLDS = GateThresholds()


def structural_profile(text: str) -> StructuralProfile:
    """Count the Markdown structures that make a document harder to convert."""
    return StructuralProfile(
        char_length=len(text),
        heading_count=len(_HEADING_RE.findall(text)),
        table_count=len(_TABLE_RULE_RE.findall(text)),
        code_block_count=len(_FENCE_RE.findall(text)) // 2,
    )


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def composite_score(metrics: QualityMetrics) -> float:
    means = metrics.means
    score = (
        COMPOSITE_WEIGHTS["clarity"] * means.clarity
        + COMPOSITE_WEIGHTS["correctness"] * means.correctness
        + COMPOSITE_WEIGHTS["completeness"] * means.completeness
        + COMPOSITE_WEIGHTS["constraints"] * (1.0 if metrics.constraints_satisfied else 0.0)
        + COMPOSITE_WEIGHTS["context_alignment"] * means.context_alignment
    )
    return round(_clamp(score), 4)


def pass_probability(
    composite: float, structure: StructuralProfile, thresholds: GateThresholds
) -> float:
    """
    Heuristic probability that the cheap tier converts this document cleanly.

    Starts from the composite and subtracts a capped penalty for structure
    density (headings, tables, code blocks per 1 000 chars) and a capped
    penalty for raw length.
    """
    kchars = max(structure.char_length / 1000, 1.0)
    density = (
        0.5 * structure.heading_count + structure.table_count + structure.code_block_count
    ) / kchars
    density_penalty = min(thresholds.density_penalty_cap, density * thresholds.density_penalty_rate)
    length_penalty = min(
        thresholds.length_penalty_cap, structure.char_length / thresholds.length_penalty_scale
    )
    return round(_clamp(composite - density_penalty - length_penalty), 4)


def count_soft_fails(metrics: QualityMetrics, thresholds: GateThresholds) -> int:
    means = metrics.means
    return sum(
        (
            means.correctness < thresholds.correctness_min,
            means.completeness < thresholds.completeness_min,
            means.context_alignment < thresholds.context_alignment_min,
        )
    )


def decide(metrics: QualityMetrics, thresholds: GateThresholds = DEFAULT_THRESHOLDS) -> GateVerdict:
    composite = composite_score(metrics)
    probability = pass_probability(composite, metrics.structure, thresholds)

    def verdict(escalate: bool, reason: str) -> GateVerdict:
        return GateVerdict(
            escalate=escalate,
            reason=reason,  # type: ignore[arg-type]
            composite=composite,
            pass_probability=probability,
        )

    if not metrics.constraints_satisfied:
        return verdict(True, "constraints_failed")

    if (
        metrics.hallucination_count > thresholds.max_hallucinations
        or metrics.estimated_coverage < thresholds.coverage_hard_floor
    ):
        return verdict(True, "hard_fail")

    if composite < thresholds.composite_min:
        return verdict(True, "low_composite")

    if count_soft_fails(metrics, thresholds) >= thresholds.soft_fail_escalate_count:
        return verdict(True, "multi_soft_fail")

    uncertain = (
        metrics.correctness_variance > thresholds.correctness_variance_max
        or metrics.completeness_variance > thresholds.completeness_variance_max
    )
    if uncertain and composite < thresholds.borderline_composite:
        return verdict(True, "uncertain_borderline")

    if probability < thresholds.pass_probability_floor:
        return verdict(True, "model_predicted_fail")

    return verdict(False, "accepted")
