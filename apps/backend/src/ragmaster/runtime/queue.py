"""
Document queue — ordered work items + single-flight batch runner.

Only one run executes at a time.  A run resets items orphaned in `processing`,
partitions the pending items into batches of `batch_width`, processes each
batch concurrently and sleeps `cooldown_seconds` between batches.  Cancel
requests are honoured at batch boundaries; the run lock is always released.

Usage
-----
    engine = QueueEngine(pipeline, batch_width=5, cooldown_seconds=4.0)
    engine.enqueue("notes.md", text, size)
    engine.start_run()              # background task, returns False if busy
    report = await engine.process_queue()   # or run inline
"""

import asyncio
import logging
import time
from collections.abc import Coroutine
from typing import Any

from pydantic import BaseModel

from ragmaster.agents.converter import ConversionStage
from ragmaster.agents.escalator import Escalator
from ragmaster.agents.evaluator import QualityEvaluator
from ragmaster.agents.formatter import MarkdownFormatter
from ragmaster.agents.gateway import ModelGateway, get_gateway
from ragmaster.config.settings import Settings, get_settings
from ragmaster.models.items import ItemMetrics, ItemStatus, WorkItem
from ragmaster.runtime.control import RunControl
from ragmaster.runtime.pipeline import DocumentPipeline, ItemProcessingError

log = logging.getLogger(__name__)


class QueueError(Exception):
    """Base class for rejected control operations on the queue."""


class ItemNotFoundError(QueueError):
    def __init__(self, item_id: str) -> None:
        self.item_id = item_id
        super().__init__(f"Item {item_id} not found")


class ItemBusyError(QueueError):
    def __init__(self, item_id: str) -> None:
        self.item_id = item_id
        super().__init__(f"Item {item_id} is currently being processed")


class ItemNotReadyError(QueueError):
    def __init__(self, item_id: str, status: ItemStatus) -> None:
        self.item_id = item_id
        self.status = status
        super().__init__(f"Item {item_id} not yet processed (status={status.value})")


class RunReport(BaseModel):
    already_running: bool = False
    recovered: int = 0
    batches: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: bool = False


class QueueCounts(BaseModel):
    total: int
    pending: int
    processing: int
    completed: int
    failed: int


class QueueSnapshot(BaseModel):
    counts: QueueCounts
    is_processing: bool
    cancel_requested: bool
    stuck_recovered: bool = False
    items: list[dict[str, Any]]


class QueueEngine:
    """
    In-process document queue.

    State is process-lifetime only.  Items within a batch touch disjoint
    WorkItem objects, so the only shared flags are those held by RunControl.
    """

    def __init__(
        self,
        pipeline: DocumentPipeline,
        batch_width: int = 5,
        cooldown_seconds: float = 4.0,
        control: RunControl | None = None,
    ) -> None:
        if batch_width < 1:
            raise ValueError(f"batch_width must be >= 1, got {batch_width}")
        self._pipeline = pipeline
        self._batch_width = batch_width
        self._cooldown = cooldown_seconds
        self._control = control or RunControl()
        self._items: list[WorkItem] = []
        self._active_task: asyncio.Task[Any] | None = None
        self._background: set[asyncio.Task[Any]] = set()
        # Ids of items a live run is working on right now.
        self._in_flight: set[str] = set()

    # ── Inspection ────────────────────────────────────────────────────────────

    @property
    def items(self) -> list[WorkItem]:
        return list(self._items)

    @property
    def is_running(self) -> bool:
        return self._control.running

    def get(self, item_id: str) -> WorkItem:
        for item in self._items:
            if item.id == item_id:
                return item
        raise ItemNotFoundError(item_id)

    def counts(self) -> QueueCounts:
        by_status = {s: 0 for s in ItemStatus}
        for item in self._items:
            by_status[item.status] += 1
        return QueueCounts(
            total=len(self._items),
            pending=by_status[ItemStatus.pending],
            processing=by_status[ItemStatus.processing],
            completed=by_status[ItemStatus.completed],
            failed=by_status[ItemStatus.failed],
        )

    def total_size(self) -> int:
        return sum(item.original_size for item in self._items)

    def _run_alive(self) -> bool:
        return self._active_task is not None and not self._active_task.done()

    # ── Enqueue ───────────────────────────────────────────────────────────────

    def enqueue(self, filename: str, content: str, size: int) -> WorkItem:
        """Append a new pending item. Size/type validation is the caller's job."""
        item = WorkItem.create(filename, content, size)
        self._items.append(item)
        log.info("Enqueued %s as %s (%d bytes).", filename, item.id, size)
        return item

    # ── Run admission ─────────────────────────────────────────────────────────

    async def process_queue(self) -> RunReport:
        """Run inline. Returns `already_running=True` without doing work if the lock is held."""
        token = self._control.try_acquire()
        if token is None:
            log.info("Queue already processing; skipping.")
            return RunReport(already_running=True)
        return await self._run_locked(token)

    def start_run(self, trigger: str = "manual") -> bool:
        """
        Start a run as a background task on the running event loop.

        Returns False if a run already holds the lock.

        Raises
        ------
        RuntimeError
            If called without a running event loop; the lock is left released.
        """
        token = self._control.try_acquire()
        if token is None:
            log.info("Start (%s) refused: queue already processing.", trigger)
            return False
        coro = self._run_locked(token)
        try:
            self._active_task = self._spawn(coro, trigger, token)
        except BaseException:
            coro.close()
            self._control.release(token)
            raise
        log.info("Run started in background (trigger=%s).", trigger)
        return True

    def _spawn(
        self, coro: Coroutine[Any, Any, Any], trigger: str, token: int
    ) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(lambda t: self._on_background_done(t, trigger, token))
        return task

    def _on_background_done(self, task: asyncio.Task[Any], trigger: str, token: int) -> None:
        self._background.discard(task)
        if task.cancelled():
            # Cancelled before its first step, the run body never got to release the lock.
            if self._active_task is task:
                self._active_task = None
            self._control.release(token)
            log.info("Background run (trigger=%s) was cancelled.", trigger)
            return
        exc = task.exception()
        if exc is not None:
            log.error("Background run (trigger=%s) failed: %s", trigger, exc, exc_info=exc)

    # ── Run loop ──────────────────────────────────────────────────────────────

    async def _run_locked(self, token: int) -> RunReport:
        """Body of a run. Caller must already hold the run lock under `token`."""
        current = asyncio.current_task()
        self._active_task = current
        report = RunReport()
        try:
            report.recovered = self._recover_orphans()

            pending = [item for item in self._items if item.status is ItemStatus.pending]
            if not pending:
                log.info("No pending items to process.")
                return report

            batches = [
                pending[i:i + self._batch_width]
                for i in range(0, len(pending), self._batch_width)
            ]
            log.info(
                "Starting queue run: %d pending item(s) in %d batch(es) of <= %d.",
                len(pending), len(batches), self._batch_width,
            )

            for index, batch in enumerate(batches):
                if not self._control.owns(token):
                    log.warning("Run lock was force-reset; abandoning the remaining batches.")
                    break
                if self._control.cancel_requested:
                    log.info("Queue run cancelled before batch %d/%d.", index + 1, len(batches))
                    report.cancelled = True
                    break

                # Items removed or cleared since the run began are skipped.
                live = [
                    item for item in batch
                    if item.status is ItemStatus.pending and any(i is item for i in self._items)
                ]
                log.info("Batch %d/%d: %d item(s).", index + 1, len(batches), len(live))
                statuses = await asyncio.gather(*(self._process_item(item) for item in live))
                report.batches += 1
                report.completed += sum(s is ItemStatus.completed for s in statuses)
                report.failed += sum(s is ItemStatus.failed for s in statuses)

                if index < len(batches) - 1 and not self._control.cancel_requested:
                    log.info("Cooling down for %.1fs.", self._cooldown)
                    await asyncio.sleep(self._cooldown)

            log.info(
                "Queue run complete: %d completed, %d failed, %d batch(es).",
                report.completed, report.failed, report.batches,
            )
            return report
        except Exception:
            log.exception("Critical error in queue run.")
            raise
        finally:
            if self._active_task is current:
                self._active_task = None
            if self._control.release(token):
                log.info("Run lock released.")
            else:
                log.warning("Run finished after its lock was force-reset; lock left to its new owner.")

    def _recover_orphans(self) -> int:
        """Reset items left in `processing` by an interrupted run back to `pending`."""
        stuck = [
            item for item in self._items
            if item.status is ItemStatus.processing and item.id not in self._in_flight
        ]
        if stuck:
            log.warning(
                "Found %d item(s) stuck in 'processing'; resetting to 'pending' for retry.",
                len(stuck),
            )
        for item in stuck:
            item.reset_to_pending()
        return len(stuck)

    async def _process_item(self, item: WorkItem) -> ItemStatus:
        """Run one item through the pipeline. Never raises for item-level failures."""
        item.mark_processing()
        self._in_flight.add(item.id)
        try:
            return await self._run_pipeline(item)
        finally:
            self._in_flight.discard(item.id)

    async def _run_pipeline(self, item: WorkItem) -> ItemStatus:
        t0 = time.perf_counter()
        log.info("Processing %s (%s).", item.filename, item.id)

        def elapsed_ms() -> int:
            return int((time.perf_counter() - t0) * 1000)

        try:
            progress = await self._pipeline.process(item.filename, item.content)
        except ItemProcessingError as exc:
            item.fail(
                str(exc.cause),
                ItemMetrics(
                    processing_time_ms=elapsed_ms(),
                    conversion_applied=exc.progress.conversion_applied,
                ),
                exc.progress.gating,
            )
            log.error("Failed %s during %s: %s", item.filename, exc.stage, exc.cause)
            return item.status
        except Exception as exc:
            item.fail(str(exc), ItemMetrics(processing_time_ms=elapsed_ms()))
            log.exception("Failed %s: unexpected pipeline error.", item.filename)
            return item.status

        result = progress.result
        if result is None:
            item.fail(
                "Pipeline finished without a result",
                ItemMetrics(processing_time_ms=elapsed_ms(), conversion_applied=progress.conversion_applied),
                progress.gating,
            )
            return item.status

        item.complete(
            content=progress.text,
            result=result,
            metrics=ItemMetrics(
                processing_time_ms=elapsed_ms(),
                chunk_count=len(result.chunks),
                keyword_count=len(result.domain_tags),
                conversion_applied=progress.conversion_applied,
            ),
            gating=progress.gating,
        )
        log.info(
            "Completed %s — %d chunks in %dms (tier=%s).",
            item.filename,
            len(result.chunks),
            item.metrics.processing_time_ms if item.metrics else 0,
            progress.gating.model_tier if progress.gating else "n/a",
        )
        return item.status

    # ── Status / control surface ──────────────────────────────────────────────

    def status(self) -> QueueSnapshot:
        """
        Snapshot the queue.

        If the run lock is held while nothing is processing, work is pending
        and no run task is alive, the lock was abandoned: release it and
        start a fresh run.
        """
        counts = self.counts()
        stuck_recovered = False
        if (
            self._control.running
            and counts.processing == 0
            and counts.pending > 0
            and not self._run_alive()
        ):
            log.warning("Stuck state detected: run lock held but nothing processing; recovering.")
            self._control.force_reset()
            stuck_recovered = True
            try:
                self.start_run(trigger="stuck-recovery")
            except RuntimeError:
                log.warning("No running event loop; lock released but run not restarted.")

        return QueueSnapshot(
            counts=counts,
            is_processing=self._control.running,
            cancel_requested=self._control.cancel_requested,
            stuck_recovered=stuck_recovered,
            items=[item.summary() for item in self._items],
        )

    def cancel(self) -> bool:
        active = self._control.request_cancel()
        log.info("Cancel requested (run active=%s).", active)
        return active

    def clear(self) -> int:
        """Drop every item. The run lock is only reset when no run task is alive."""
        cleared = len(self._items)
        self._items.clear()
        if not self._run_alive():
            self._control.force_reset()
        log.info("Cleared %d item(s) from queue.", cleared)
        return cleared

    def remove(self, item_id: str) -> WorkItem:
        item = self.get(item_id)
        if item.status is ItemStatus.processing:
            raise ItemBusyError(item_id)
        self._items.remove(item)
        log.info("Removed %s (%s).", item.filename, item_id)
        return item

    def force_unlock(self) -> bool:
        was_running = self._control.force_reset()
        log.warning("Run lock force-reset (was: %s).", was_running)
        return was_running

    def download(self, item_id: str) -> dict[str, Any]:
        """Return the stored result payload for a completed item."""
        item = self.get(item_id)
        if item.status is not ItemStatus.completed or item.result is None:
            raise ItemNotReadyError(item_id, item.status)
        return {
            "filename": item.filename,
            "processed_at": item.completed_at,
            "metrics": item.metrics.model_dump() if item.metrics else None,
            "gating": item.gating.model_dump() if item.gating else None,
            "result": item.result.model_dump(mode="json"),
        }

    async def shutdown(self) -> None:
        """Cancel background runs and wait for them to unwind."""
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


# ── Module-level singleton ─────────────────────────────────────────────────────

_engine: QueueEngine | None = None


def build_engine(settings: Settings, gateway: ModelGateway) -> QueueEngine:
    """Wire the two-tier pipeline and queue engine from settings."""
    thresholds = settings.gate_thresholds()
    pipeline = DocumentPipeline(
        formatter=MarkdownFormatter(gateway, settings.cheap_model),
        evaluator=QualityEvaluator(gateway, settings.cheap_model),
        escalator=Escalator(
            gateway, settings.strong_model, thresholds, settings.partial_ratio_max
        ),
        converter=ConversionStage(gateway),
        cheap_model=settings.cheap_model,
        strong_model=settings.strong_model,
        thresholds=thresholds,
    )
    return QueueEngine(
        pipeline,
        batch_width=settings.batch_width,
        cooldown_seconds=settings.cooldown_seconds,
    )


def get_queue_engine() -> QueueEngine:
    """Return the process-level QueueEngine singleton."""
    global _engine
    if _engine is None:
        _engine = build_engine(get_settings(), get_gateway())
    return _engine


def current_queue_engine() -> QueueEngine | None:
    """Return the singleton if it has been built, without building it."""
    return _engine
