from __future__ import annotations

import asyncio
import time

import pytest

from ragmaster.models.items import ItemStatus
from ragmaster.runtime.control import RunControl
from ragmaster.runtime.queue import (
    ItemBusyError,
    ItemNotFoundError,
    ItemNotReadyError,
    QueueEngine,
)

from fakes import CHEAP, DOC, FakePipeline, ScriptedGateway, accepting_responder, build_pipeline


def make_engine(pipeline=None, batch_width=5, cooldown=0.0) -> QueueEngine:
    return QueueEngine(pipeline or FakePipeline(), batch_width=batch_width, cooldown_seconds=cooldown)


def fill(engine: QueueEngine, n: int, prefix: str = "doc") -> list:
    return [engine.enqueue(f"{prefix}{i}.md", DOC, len(DOC)) for i in range(n)]


# ── Lifecycle ─────────────────────────────────────────────────────────────────

def test_enqueue_creates_pending_items_with_unique_ids():
    engine = make_engine()
    items = fill(engine, 3)
    assert [i.status for i in items] == [ItemStatus.pending] * 3
    assert len({i.id for i in items}) == 3
    assert engine.counts().pending == 3
    assert engine.total_size() == 3 * len(DOC)


def test_run_completes_and_fails_items_independently():
    pipeline = FakePipeline(fail_for=("doc1.md",), crash_for=("doc2.md",))
    engine = make_engine(pipeline)
    ok, failed, crashed = fill(engine, 3)

    report = asyncio.run(engine.process_queue())

    assert report.completed == 1
    assert report.failed == 2
    assert ok.status is ItemStatus.completed
    assert ok.metrics.chunk_count == 1
    assert failed.status is ItemStatus.failed
    assert failed.error == "[converter] missing chunks"
    assert failed.gating.reason == "accepted"
    assert crashed.status is ItemStatus.failed
    assert crashed.error == "boom in doc2.md"
    assert crashed.gating is None
    assert engine.is_running is False


def test_end_to_end_with_real_pipeline(gateway):
    engine = make_engine(build_pipeline(gateway))
    (item,) = fill(engine, 1)

    asyncio.run(engine.process_queue())

    assert item.status is ItemStatus.completed
    assert item.metrics.chunk_count == 2
    assert item.metrics.keyword_count == 2
    assert item.gating.reason == "accepted"
    payload = engine.download(item.id)
    assert payload["filename"] == "doc0.md"
    assert payload["result"]["doc"]["doc_id"] == "doc_TEST"


# ── Single-flight admission ───────────────────────────────────────────────────

def test_concurrent_starts_admit_exactly_one_run():
    pipeline = FakePipeline(delay=0.01)
    engine = make_engine(pipeline, batch_width=2)
    fill(engine, 4)

    async def go():
        return await asyncio.gather(*(engine.process_queue() for _ in range(8)))

    reports = asyncio.run(go())

    admitted = [r for r in reports if not r.already_running]
    assert len(admitted) == 1
    assert admitted[0].completed == 4
    assert sorted(pipeline.calls) == sorted(f"doc{i}.md" for i in range(4))
    assert pipeline.max_active <= 2
    assert engine.is_running is False


def test_start_run_refuses_while_running():
    engine = make_engine(FakePipeline(delay=0.05))
    fill(engine, 1)

    async def go():
        first = engine.start_run()
        second = engine.start_run()
        assert engine.is_running
        await asyncio.gather(*engine._background)
        return first, second

    assert asyncio.run(go()) == (True, False)
    assert engine.is_running is False


def test_start_run_without_event_loop_leaves_lock_free():
    engine = make_engine()
    fill(engine, 1)
    with pytest.raises(RuntimeError):
        engine.start_run()
    assert engine.is_running is False


def test_stale_token_cannot_release_a_newer_run():
    control = RunControl()
    first = control.try_acquire()
    assert control.try_acquire() is None
    assert control.force_reset() is True
    second = control.try_acquire()

    assert second != first
    assert control.release(first) is False
    assert control.running is True
    assert control.owns(second)
    assert control.release(second) is True
    assert control.release(second) is False


def test_run_outliving_force_unlock_leaves_new_run_alone():
    pipeline = FakePipeline(delay=0.2)
    engine = make_engine(pipeline)
    (first,) = fill(engine, 1, prefix="first")

    async def go():
        engine.start_run()
        first_task = engine._active_task
        await asyncio.sleep(0.05)
        assert engine.force_unlock() is True
        pipeline.delay = 0.5
        fill(engine, 2, prefix="second")
        assert engine.start_run() is True

        await first_task
        # The first run finished but must not free the second run's lock.
        held = engine.is_running
        await asyncio.gather(*engine._background)
        return held

    assert asyncio.run(go()) is True
    assert sorted(pipeline.calls) == ["first0.md", "second0.md", "second1.md"]
    assert all(i.status is ItemStatus.completed for i in engine.items)
    assert first.metrics is not None
    assert engine.is_running is False


# ── Lock release ──────────────────────────────────────────────────────────────

@pytest.mark.parametrize("stage", ["formatter", "evaluator", "converter"])
def test_lock_released_when_a_stage_raises(stage):
    def responder(s, model, prompt):
        if s == stage:
            raise RuntimeError(f"{s} exploded")
        if s == "formatter":
            return DOC
        return accepting_responder(s, model, prompt)

    engine = make_engine(build_pipeline(ScriptedGateway(responder)))
    (item,) = [engine.enqueue("doc.txt", DOC, len(DOC))]

    asyncio.run(engine.process_queue())

    assert item.status is ItemStatus.failed
    assert "exploded" in item.error
    assert engine.is_running is False


def test_evaluator_transport_error_still_records_gating():
    def responder(s, model, prompt):
        if s == "evaluator":
            raise TimeoutError("evaluator timed out")
        if s == "formatter":
            return DOC
        return accepting_responder(s, model, prompt)

    engine = make_engine(build_pipeline(ScriptedGateway(responder)))
    item = engine.enqueue("doc.txt", DOC, len(DOC))

    asyncio.run(engine.process_queue())

    assert item.status is ItemStatus.failed
    assert item.error == "evaluator timed out"
    assert item.gating is not None
    assert item.gating.reason == "evaluation_error"
    assert item.gating.escalated is False
    assert item.gating.model_tier == CHEAP
    assert engine.is_running is False


def test_lock_released_when_the_run_itself_crashes(monkeypatch):
    engine = make_engine()
    fill(engine, 2)

    def explode():
        raise RuntimeError("bookkeeping failure")

    monkeypatch.setattr(engine, "_recover_orphans", explode)

    with pytest.raises(RuntimeError):
        asyncio.run(engine.process_queue())
    assert engine.is_running is False

    monkeypatch.undo()
    report = asyncio.run(engine.process_queue())
    assert report.completed == 2


def test_lock_released_when_background_run_is_cancelled():
    engine = make_engine(FakePipeline(delay=10))
    fill(engine, 1)

    async def go():
        engine.start_run()
        await asyncio.sleep(0.01)
        await engine.shutdown()

    asyncio.run(go())
    assert engine.is_running is False


# ── Recovery ──────────────────────────────────────────────────────────────────

def test_orphaned_processing_items_are_retried():
    pipeline = FakePipeline()
    engine = make_engine(pipeline)
    items = fill(engine, 5)
    items[0].mark_processing()
    items[1].mark_processing()
    done = items[2]
    done.status = ItemStatus.completed
    done.completed_at = "2026-01-01T00:00:00+00:00"

    report = asyncio.run(engine.process_queue())

    assert report.recovered == 2
    assert report.completed == 4
    assert "doc2.md" not in pipeline.calls
    assert done.completed_at == "2026-01-01T00:00:00+00:00"
    assert all(i.status is ItemStatus.completed for i in items)


# ── Batching / cooldown / cancel ──────────────────────────────────────────────

def test_ten_items_run_as_two_sequential_batches():
    pipeline = FakePipeline(delay=0.05)
    engine = make_engine(pipeline, batch_width=5, cooldown=0.5)
    fill(engine, 10)

    t0 = time.perf_counter()
    report = asyncio.run(engine.process_queue())
    elapsed = time.perf_counter() - t0

    assert report.batches == 2
    assert report.completed == 10
    assert elapsed >= 0.5
    assert pipeline.max_active == 5
    first_batch_done = max(pipeline.finished_at[f"doc{i}.md"] for i in range(5))
    second_batch_start = min(pipeline.started_at[f"doc{i}.md"] for i in range(5, 10))
    assert second_batch_start - first_batch_done >= 0.45


def test_no_cooldown_after_last_batch():
    engine = make_engine(FakePipeline(), batch_width=5, cooldown=5.0)
    fill(engine, 5)

    t0 = time.perf_counter()
    asyncio.run(engine.process_queue())
    assert time.perf_counter() - t0 < 1.0


def test_cancel_stops_at_next_batch_boundary():
    engine = make_engine(batch_width=1)
    pipeline = FakePipeline(on_start=lambda name: engine.cancel())
    engine._pipeline = pipeline
    items = fill(engine, 3)

    report = asyncio.run(engine.process_queue())

    assert report.cancelled is True
    assert report.batches == 1
    assert items[0].status is ItemStatus.completed
    assert [i.status for i in items[1:]] == [ItemStatus.pending] * 2
    assert engine.is_running is False

    # A fresh run clears the stale cancel request.
    pipeline.on_start = None
    report = asyncio.run(engine.process_queue())
    assert report.completed == 2


def test_cancel_skips_the_cooldown():
    engine = make_engine(batch_width=1, cooldown=5.0)
    engine._pipeline = FakePipeline(on_start=lambda name: engine.cancel())
    fill(engine, 2)

    t0 = time.perf_counter()
    report = asyncio.run(engine.process_queue())

    assert time.perf_counter() - t0 < 1.0
    assert report.cancelled is True
    assert report.batches == 1


def test_items_removed_mid_run_are_skipped():
    engine = make_engine(batch_width=1)
    items = fill(engine, 2)
    pipeline = FakePipeline(on_start=lambda name: engine.remove(items[1].id))
    engine._pipeline = pipeline

    report = asyncio.run(engine.process_queue())

    assert pipeline.calls == ["doc0.md"]
    assert report.completed == 1
    assert len(engine.items) == 1


# ── Status surface ────────────────────────────────────────────────────────────

def test_status_is_idempotent_when_healthy():
    engine = make_engine()
    fill(engine, 2)
    asyncio.run(engine.process_queue())

    first = engine.status()
    second = engine.status()

    assert first == second
    assert first.stuck_recovered is False
    assert first.counts.completed == 2
    assert "content" not in first.items[0]


def test_status_releases_abandoned_lock_and_restarts_run():
    engine = make_engine()
    (item,) = fill(engine, 1)
    engine._control.try_acquire()

    async def go():
        snapshot = engine.status()
        await asyncio.gather(*engine._background)
        return snapshot

    snapshot = asyncio.run(go())

    assert snapshot.stuck_recovered is True
    assert snapshot.is_processing is True
    assert item.status is ItemStatus.completed
    assert engine.is_running is False


def test_status_without_loop_only_releases_lock():
    engine = make_engine()
    fill(engine, 1)
    engine._control.try_acquire()

    snapshot = engine.status()

    assert snapshot.stuck_recovered is True
    assert snapshot.is_processing is False
    assert engine.counts().pending == 1


def test_status_during_cooldown_is_not_stuck():
    engine = make_engine(batch_width=1, cooldown=0.3)
    fill(engine, 2)

    async def go():
        engine.start_run()
        await asyncio.sleep(0.1)
        snapshot = engine.status()
        await asyncio.gather(*engine._background)
        return snapshot

    snapshot = asyncio.run(go())

    assert snapshot.stuck_recovered is False
    assert snapshot.is_processing is True
    assert snapshot.counts.pending == 1


# ── Control operations ────────────────────────────────────────────────────────

def test_remove_rejects_unknown_and_processing_items():
    engine = make_engine()
    (item,) = fill(engine, 1)

    with pytest.raises(ItemNotFoundError):
        engine.remove("item_missing")

    item.mark_processing()
    with pytest.raises(ItemBusyError):
        engine.remove(item.id)

    item.reset_to_pending()
    assert engine.remove(item.id) is item
    assert engine.items == []


def test_download_requires_completed_item():
    engine = make_engine(FakePipeline(fail_for=("doc1.md",)))
    ok, failed = fill(engine, 2)

    with pytest.raises(ItemNotReadyError):
        engine.download(ok.id)

    asyncio.run(engine.process_queue())

    assert engine.download(ok.id)["gating"]["model_tier"] == "cheap-model"
    with pytest.raises(ItemNotReadyError) as exc_info:
        engine.download(failed.id)
    assert exc_info.value.status is ItemStatus.failed
    with pytest.raises(ItemNotFoundError):
        engine.download("item_missing")


def test_clear_resets_lock_only_when_no_run_is_alive():
    engine = make_engine()
    fill(engine, 3)
    engine._control.try_acquire()

    assert engine.clear() == 3
    assert engine.items == []
    assert engine.is_running is False


def test_clear_during_live_run_keeps_lock():
    engine = make_engine(FakePipeline(delay=0.05))
    fill(engine, 2)

    async def go():
        engine.start_run()
        await asyncio.sleep(0.01)
        engine.clear()
        held = engine.is_running
        await asyncio.gather(*engine._background)
        return held

    assert asyncio.run(go()) is True
    assert engine.is_running is False


def test_force_unlock_reports_previous_state():
    engine = make_engine()
    assert engine.force_unlock() is False
    engine._control.try_acquire()
    assert engine.force_unlock() is True
    assert engine.is_running is False


def test_cancel_reports_whether_a_run_was_active():
    engine = make_engine()
    assert engine.cancel() is False
    assert engine.status().cancel_requested is True
