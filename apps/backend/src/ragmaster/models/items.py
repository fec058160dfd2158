"""
Work item lifecycle models.

ItemStatus tracks every transition of a queued document:
    pending → processing → completed | failed
with processing → pending reserved for the engine's own recovery scan.
WorkItem is the in-memory record the queue engine mutates; nothing here is
persisted across restarts.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

import uuid6
from pydantic import BaseModel, Field

from ragmaster.models.schemas import EscalationMode, GateReason, StructuredResult


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ItemStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"


TERMINAL_STATUSES = frozenset({ItemStatus.completed, ItemStatus.failed})


class ItemMetrics(BaseModel):
    processing_time_ms: int = Field(default=0, ge=0)
    chunk_count: int = Field(default=0, ge=0)
    keyword_count: int = Field(default=0, ge=0)
    conversion_applied: bool = False


class GatingRecord(BaseModel):
    """What the quality gate decided for this item and which tier did the work."""

    model_tier: str = Field(..., description="Model id used for the final conversion")
    escalated: bool
    escalation_mode: EscalationMode = "none"
    composite: float | None = Field(default=None, ge=0.0, le=1.0)
    pass_probability: float | None = Field(default=None, ge=0.0, le=1.0)
    reason: GateReason


class WorkItem(BaseModel):
    """One document's queued processing record."""

    id: str
    filename: str
    original_size: int = Field(..., ge=0)
    content: str
    status: ItemStatus = ItemStatus.pending
    enqueued_at: str
    started_at: str | None = None
    completed_at: str | None = None
    result: StructuredResult | None = None
    error: str | None = None
    metrics: ItemMetrics | None = None
    gating: GatingRecord | None = None

    @classmethod
    def create(cls, filename: str, content: str, size: int) -> "WorkItem":
        return cls(
            id=f"item_{uuid6.uuid7().hex}",
            filename=filename,
            original_size=size,
            content=content,
            enqueued_at=utc_now(),
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    # ── Transitions ───────────────────────────────────────────────────────────

    def mark_processing(self) -> None:
        if self.status is not ItemStatus.pending:
            raise ValueError(f"Item {self.id} cannot start from status {self.status.value}")
        self.status = ItemStatus.processing
        self.started_at = utc_now()

    def reset_to_pending(self) -> None:
        """Recovery only: return an item orphaned in `processing` to the queue."""
        if self.status is not ItemStatus.processing:
            raise ValueError(f"Item {self.id} is not processing ({self.status.value})")
        self.status = ItemStatus.pending
        self.started_at = None

    def complete(
        self,
        content: str,
        result: StructuredResult,
        metrics: ItemMetrics,
        gating: GatingRecord | None,
    ) -> None:
        self.content = content
        self.result = result
        self.metrics = metrics
        self.gating = gating
        self.error = None
        self.status = ItemStatus.completed
        self.completed_at = utc_now()

    def fail(self, error: str, metrics: ItemMetrics, gating: GatingRecord | None = None) -> None:
        self.error = error or "Unknown error"
        self.metrics = metrics
        self.gating = gating
        self.status = ItemStatus.failed
        self.completed_at = utc_now()

    # ── Views ─────────────────────────────────────────────────────────────────

    def summary(self) -> dict[str, Any]:
        """Status-surface view: everything except the raw content and the result."""
        return {
            "id": self.id,
            "filename": self.filename,
            "status": self.status.value,
            "original_size": self.original_size,
            "enqueued_at": self.enqueued_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "metrics": self.metrics.model_dump() if self.metrics else None,
            "gating": self.gating.model_dump() if self.gating else None,
            "error": self.error,
        }
