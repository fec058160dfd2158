"""
Batch conversion of a local folder.

Enqueues every acceptable file in a directory, drains the queue with the same
two-tier pipeline the API uses, and writes one ``<filename>.chunks.json`` per
completed item.  Failed items are reported with their error and gating reason.

Usage:
    uv run python scripts/process_folder.py docs/ --out artifacts/chunks
    uv run python scripts/process_folder.py docs/ --batch-width 3 --cooldown 2
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from ragmaster.agents.gateway import get_gateway
from ragmaster.config.logging_config import configure_logging
from ragmaster.config.settings import get_settings
from ragmaster.ingestion.validation import decode_content, validate_file
from ragmaster.models.items import ItemStatus
from ragmaster.runtime.queue import build_engine

log = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Convert a folder of documents into RAG chunks.")
    parser.add_argument("source", type=Path, help="Directory containing documents")
    parser.add_argument("--out", type=Path, default=Path("artifacts/chunks"), help="Output directory")
    parser.add_argument("--batch-width", type=int, default=None, help="Override BATCH_WIDTH")
    parser.add_argument("--cooldown", type=float, default=None, help="Override COOLDOWN_SECONDS")
    return parser.parse_args(argv)


async def process_folder(args: argparse.Namespace) -> int:
    settings = get_settings()
    overrides = {}
    if args.batch_width is not None:
        overrides["batch_width"] = args.batch_width
    if args.cooldown is not None:
        overrides["cooldown_seconds"] = args.cooldown
    if overrides:
        settings = settings.model_copy(update=overrides)

    engine = build_engine(settings, get_gateway())
    limits = settings.upload_limits()

    for path in sorted(p for p in args.source.iterdir() if p.is_file()):
        raw = path.read_bytes()
        problem = validate_file(path.name, len(raw), limits)
        if problem:
            log.warning("Skipping %s", problem)
            continue
        engine.enqueue(path.name, decode_content(raw), len(raw))

    if not engine.items:
        log.info("No acceptable files in %s.", args.source)
        return 0

    report = await engine.process_queue()
    log.info("Run finished: %s", report.model_dump())

    args.out.mkdir(parents=True, exist_ok=True)
    for item in engine.items:
        if item.status is ItemStatus.completed:
            target = args.out / f"{item.filename}.chunks.json"
            target.write_text(json.dumps(engine.download(item.id), indent=2), encoding="utf-8")
            log.info("Wrote %s", target)
        else:
            reason = item.gating.reason if item.gating else "n/a"
            log.error("%s: %s (gate=%s)", item.filename, item.error, reason)

    return 1 if report.failed else 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging(get_settings().log_level)
    if not args.source.is_dir():
        log.error("%s is not a directory", args.source)
        return 2
    return asyncio.run(process_folder(args))


if __name__ == "__main__":
    sys.exit(main())
