"""
Per-item document pipeline.

    format → evaluate → gate → (escalate) → convert

Each stage returns a new ItemProgress rather than mutating shared state; the
queue engine applies the final progress to the WorkItem in one step.  When a
stage raises, the pipeline wraps the error in ItemProcessingError together
with the progress reached so far, so the engine can still record the gating
decision on a failed item.
"""

import logging
from typing import Literal

import uuid6
from pydantic import BaseModel, ConfigDict

from ragmaster.agents.converter import ConversionStage
from ragmaster.agents.escalator import Escalator
from ragmaster.agents.evaluator import EvaluationFailure, QualityEvaluator
from ragmaster.agents.formatter import MarkdownFormatter
from ragmaster.models.items import GatingRecord
from ragmaster.models.schemas import (
    EscalationResult,
    GateVerdict,
    QualityMetrics,
    StructuredResult,
)
from ragmaster.runtime.gate import DEFAULT_THRESHOLDS, GateThresholds, decide

log = logging.getLogger(__name__)

Stage = Literal["format", "evaluate", "escalate", "convert", "done"]


class ItemProgress(BaseModel):
    """Immutable accumulator threaded through the pipeline stages."""

    model_config = ConfigDict(frozen=True)

    stage: Stage = "format"
    text: str
    conversion_applied: bool = False
    metrics: QualityMetrics | None = None
    verdict: GateVerdict | None = None
    escalation: EscalationResult | None = None
    gating: GatingRecord | None = None
    document_id: str | None = None
    result: StructuredResult | None = None


class ItemProcessingError(Exception):
    """A pipeline stage failed; carries the progress reached before the failure."""

    def __init__(self, stage: Stage, cause: BaseException, progress: ItemProgress) -> None:
        self.stage = stage
        self.cause = cause
        self.progress = progress
        super().__init__(f"{stage}: {cause}")


def new_document_id() -> str:
    return f"doc_{uuid6.uuid7().hex[-12:].upper()}"


class DocumentPipeline:
    def __init__(
        self,
        formatter: MarkdownFormatter,
        evaluator: QualityEvaluator,
        escalator: Escalator,
        converter: ConversionStage,
        cheap_model: str,
        strong_model: str,
        thresholds: GateThresholds = DEFAULT_THRESHOLDS,
    ) -> None:
        self._formatter = formatter
        self._evaluator = evaluator
        self._escalator = escalator
        self._converter = converter
        self._cheap_model = cheap_model
        self._strong_model = strong_model
        self._thresholds = thresholds

    async def process(self, filename: str, content: str) -> ItemProgress:
        """
        Run one document through every stage.

        Raises
        ------
        ItemProcessingError
            Wrapping whatever a stage raised.
        """
        progress = ItemProgress(text=content)
        try:
            text, applied = await self._formatter.normalize(content, filename)
            progress = progress.model_copy(
                update={"text": text, "conversion_applied": applied, "stage": "evaluate"}
            )

            progress = await self._gate(progress)

            document_id = new_document_id()
            progress = progress.model_copy(update={"stage": "convert", "document_id": document_id})
            model_id = progress.gating.model_tier if progress.gating else self._strong_model
            result = await self._converter.convert(progress.text, document_id, filename, model_id)
            return progress.model_copy(update={"result": result, "stage": "done"})
        except ItemProcessingError:
            raise
        except Exception as exc:
            raise ItemProcessingError(progress.stage, exc, progress) from exc

    async def _gate(self, progress: ItemProgress) -> ItemProgress:
        """
        Evaluate, decide and escalate.

        Raises
        ------
        ItemProcessingError
            Carrying the gating record once evaluation has been attempted.
        """
        try:
            metrics = await self._evaluator.evaluate(progress.text)
        except EvaluationFailure:
            # An unusable self-assessment goes straight to a full strong-tier rewrite.
            gating = GatingRecord(
                model_tier=self._strong_model,
                escalated=True,
                escalation_mode="full",
                reason="self_eval_failed",
            )
            progress = progress.model_copy(update={"gating": gating, "stage": "escalate"})
            try:
                revised = await self._escalator.full_rewrite(progress.text)
            except Exception as exc:
                raise ItemProcessingError("escalate", exc, progress) from exc
            escalation = EscalationResult(mode="full", revised_text=revised)
            return progress.model_copy(update={"text": revised, "escalation": escalation})
        except Exception as exc:
            gating = GatingRecord(
                model_tier=self._cheap_model,
                escalated=False,
                reason="evaluation_error",
            )
            raise ItemProcessingError(
                "evaluate", exc, progress.model_copy(update={"gating": gating})
            ) from exc

        verdict = decide(metrics, self._thresholds)
        log.debug(
            "Gate — escalate=%s reason=%s composite=%.3f p=%.3f",
            verdict.escalate, verdict.reason, verdict.composite, verdict.pass_probability,
        )
        gating = GatingRecord(
            model_tier=self._strong_model if verdict.escalate else self._cheap_model,
            escalated=verdict.escalate,
            composite=verdict.composite,
            pass_probability=verdict.pass_probability,
            reason=verdict.reason,
        )
        progress = progress.model_copy(update={"metrics": metrics, "verdict": verdict, "gating": gating})
        if not verdict.escalate:
            return progress

        progress = progress.model_copy(update={"stage": "escalate"})
        try:
            escalation = await self._escalator.escalate(progress.text, metrics)
        except Exception as exc:
            raise ItemProcessingError("escalate", exc, progress) from exc
        return progress.model_copy(
            update={
                "text": escalation.revised_text,
                "escalation": escalation,
                "gating": gating.model_copy(update={"escalation_mode": escalation.mode}),
            }
        )
