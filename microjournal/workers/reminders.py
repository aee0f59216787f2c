"""Reminder scan worker.

Usage:
    python -m microjournal.workers.reminders daily --once
    python -m microjournal.workers.reminders expiry --loop

An external scheduler can call the scan entrypoints directly instead; the
loop mode exists for deployments that run the scanner as a long-lived
process. The loop interval must stay at or below the narrowest reminder
window or users can be skipped.

Environment flags:
- REMINDER_SCAN_LOOP_SECONDS (default 60)
"""
from __future__ import annotations

import argparse
import logging
import os
import time

from microjournal.core.config import settings
from microjournal.core.errors import AppError
from microjournal.core.logging import configure_logging
from microjournal.features.reminders.scanner import ScanReport, build_scanner

DEFAULT_LOOP_SECONDS = int(os.getenv("REMINDER_SCAN_LOOP_SECONDS", "60") or 60)

logger = logging.getLogger("microjournal.reminders")


def _scan_once(kind: str) -> ScanReport:
    scanner = build_scanner(settings)
    if kind == "daily":
        return scanner.run_daily()
    return scanner.run_expiry()


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="Reminder scan worker")
    parser.add_argument("kind", choices=["daily", "expiry"], help="Which reminder to scan for")
    parser.add_argument("--once", action="store_true", help="Run a single scan and exit")
    parser.add_argument("--loop", action="store_true", help="Run in continuous loop")
    parser.add_argument(
        "--sleep",
        type=int,
        default=DEFAULT_LOOP_SECONDS,
        help="Seconds to sleep between scans (when --loop)",
    )
    args = parser.parse_args(argv)
    configure_logging(settings.ENV)

    if args.once or not args.loop:
        report = _scan_once(args.kind)
        print(f"[reminder-worker] {args.kind}: sent={report.sent} failed={report.failed} visited={report.visited}")
        return

    print(f"[reminder-worker] Starting {args.kind} loop (sleep={args.sleep}s). CTRL+C to stop.")
    try:
        while True:
            try:
                report = _scan_once(args.kind)
                if report.sent or report.failed:
                    print(f"[reminder-worker] {args.kind}: sent={report.sent} failed={report.failed}")
            except AppError as exc:
                # Candidate listing failed; try again next tick
                logger.error("reminders.scan_failed", extra={"kind": args.kind, "error_code": exc.code})
            time.sleep(args.sleep)
    except KeyboardInterrupt:
        print("[reminder-worker] Stopped")


if __name__ == "__main__":
    main()
