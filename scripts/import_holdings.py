#!/usr/bin/env python3
"""
Import CLI — push shareholder-registry exports to the ingestion endpoint.

Usage
-----
Single file:
    python -m scripts.import_holdings --file data/aksjonaerregister_2024.csv --year 2024

Several files (imported in the given order):
    python -m scripts.import_holdings --file part1.csv --file part2.xlsx --year 2024

Every CSV/XLSX file in a directory (sorted by name):
    python -m scripts.import_holdings --dir data/exports/ --year 2024

Resume an interrupted import (same files, same order):
    python -m scripts.import_holdings --dir data/exports/ --resume 3f9c2a...

List / abandon saved sessions:
    python -m scripts.import_holdings --list-resumable
    python -m scripts.import_holdings --abandon 3f9c2a...
"""

import argparse
import asyncio
import glob
import logging
import os
import sys
import time

# Ensure repo root is on the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from holdings_import import config                                 # noqa: E402
from holdings_import.driver import SequentialImportDriver           # noqa: E402
from holdings_import.errors import HoldingsImportError              # noqa: E402
from holdings_import.ingest.client import IngestionClient, check_endpoint  # noqa: E402
from holdings_import.notifications import PushListener             # noqa: E402
from holdings_import.progress import ProgressMonitor                # noqa: E402
from holdings_import.session_store import SessionStore              # noqa: E402

logger = logging.getLogger("import_holdings")

_SUPPORTED_PATTERNS = ("*.csv", "*.txt", "*.xlsx", "*.xlsm")


def _collect_files(files: list[str] | None, directory: str | None) -> list[str]:
    """Explicit --file paths keep their order; --dir contents are sorted by name."""
    if files:
        return list(files)
    if directory:
        found: list[str] = []
        for pattern in _SUPPORTED_PATTERNS:
            found.extend(glob.glob(os.path.join(directory, pattern)))
        return sorted(found)
    return []


def _log_progress(event: str, payload: dict):
    if event != "progress":
        return
    eta = payload.get("eta_label")
    logger.info(
        "%5.1f%%  |  %d/%d rows  |  batch %d/%d  |  %.0f rows/min%s",
        payload["overall_progress_percent"],
        payload["processed_rows"],
        payload["total_file_rows"],
        payload["current_batch"],
        payload["total_batches"],
        payload["import_speed"],
        f"  |  ETA {eta}" if eta else "",
    )


def _list_resumable(store: SessionStore) -> int:
    sessions = store.list_resumable()
    if not sessions:
        logger.info("No resumable imports.")
        return 0
    for s in sessions:
        logger.info(
            "%s  year=%d  status=%s  %d/%d rows  files=%s  started=%s",
            s.session_id, s.year, s.status, s.processed_rows, s.total_file_rows,
            ", ".join(s.file_names), s.start_time.isoformat(timespec="seconds"),
        )
    return 0


async def _preflight_checks() -> bool:
    """
    Verify the ingestion endpoint is reachable before reading any file.
    Returns True if all checks pass, False otherwise.
    """
    ok = True

    if not config.INGEST_API_KEY:
        logger.warning("INGEST_API_KEY is not set; requests will be sent without authorization")

    if not await check_endpoint(config.INGEST_URL):
        logger.error("✗ Ingestion endpoint is not reachable at %s", config.INGEST_URL)
        ok = False
    else:
        logger.info("✓ Ingestion endpoint reachable at %s", config.INGEST_URL)

    return ok


async def run(args: argparse.Namespace) -> int:
    store = SessionStore.from_config(args.db or config.SESSION_DB_PATH)
    try:
        return await _run(args, store)
    finally:
        await store.aclose()


async def _run(args: argparse.Namespace, store: SessionStore) -> int:
    if args.list_resumable:
        return _list_resumable(store)

    if args.abandon:
        if store.clear(args.abandon):
            logger.info("Abandoned import session %s", args.abandon)
            return 0
        logger.error("No saved import session %s", args.abandon)
        return 1

    paths = _collect_files(args.file, args.dir)
    if not paths:
        logger.error("No input files: use --file or --dir")
        return 1
    logger.info("Found %d file(s) to import", len(paths))

    if not args.skip_preflight and not await _preflight_checks():
        logger.error("Pre-flight checks failed — aborting.")
        return 1

    async with IngestionClient() as client:
        driver = SequentialImportDriver(
            store,
            client,
            batch_size=args.batch_size,
            delimiter=args.delimiter,
        )

        try:
            if args.resume:
                driver.restore(args.resume, paths)
            else:
                if args.year is None:
                    logger.error("--year is required when starting a new import")
                    return 1
                active = store.load_active()
                if active is not None:
                    logger.warning(
                        "Unfinished import %s (%s) exists; resume it with --resume %s",
                        active.session_id, ", ".join(active.file_names), active.session_id,
                    )
                driver.begin(paths, args.year)
        except HoldingsImportError as e:
            logger.error("✗ %s", e)
            return 1

        monitor = ProgressMonitor(lambda: driver.session)
        monitor.events.subscribe(_log_progress)
        driver.events.subscribe(
            lambda event, _payload: monitor.on_change() if event == "batch_completed" else None
        )

        push = PushListener(
            lambda _payload: monitor.on_change(),
            year=driver.session.year,
            session_id=driver.session.session_id,
        )
        watchers = [asyncio.create_task(monitor.run())]
        if config.PUSH_URL:
            watchers.append(asyncio.create_task(push.listen()))

        t0 = time.time()
        try:
            summary = await driver.run()
        finally:
            push.stop()
            for task in watchers:
                task.cancel()
            await asyncio.gather(*watchers, return_exceptions=True)
        elapsed = time.time() - t0

    logger.info("━" * 60)
    for fs in summary.file_statuses:
        if fs.status == "completed":
            logger.info("✓ %s  |  %d rows, %d rejected", fs.name, fs.rows_processed, fs.rejected_rows)
        else:
            logger.error("✗ %s — %s", fs.name, fs.error or fs.status)
    logger.info(
        "%s  [%d duplicates, %d errors, %.1fs]",
        summary.message, summary.duplicates_count, summary.errors_count, elapsed,
    )

    return 0 if summary.status == "completed" and summary.files_succeeded == summary.files_total else 1


def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(
        description="Import shareholder-registry files into the holdings database.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )

    source = parser.add_mutually_exclusive_group()
    source.add_argument("--file", action="append", help="Input file (repeat for several, imported in order)")
    source.add_argument("--dir", type=str, help="Directory of CSV/XLSX files to import")

    parser.add_argument("--year", type=int, help="Registry year the data belongs to")
    parser.add_argument("--batch-size", type=int, help=f"Records per request (default {config.BATCH_SIZE})")
    parser.add_argument("--delimiter", type=str, help=f"CSV delimiter (default '{config.CSV_DELIMITER}')")
    parser.add_argument("--db", type=str, help="Session database path")
    parser.add_argument("--resume", metavar="SESSION_ID", help="Continue a saved import session")
    parser.add_argument("--list-resumable", action="store_true", help="List saved sessions that can be resumed")
    parser.add_argument("--abandon", metavar="SESSION_ID", help="Discard a saved import session")
    parser.add_argument("--skip-preflight", action="store_true", help="Do not probe the endpoint first")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    args = parser.parse_args(argv)

    if args.batch_size is not None and args.batch_size <= 0:
        parser.error("--batch-size must be positive")
    if not (args.list_resumable or args.abandon or args.file or args.dir):
        parser.error("one of --file, --dir, --list-resumable or --abandon is required")

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s │ %(levelname)-7s │ %(name)s │ %(message)s",
        datefmt="%H:%M:%S",
    )

    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
