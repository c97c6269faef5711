#!/usr/bin/env python3
"""Run the reminder worker outside the web process.

Uses the same environment settings as the API (REMINDER_STORE_BACKEND, DATABASE_URL,
NOTIFIER_*), so point both at the same database when running them side by side.
"""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
from dataclasses import asdict
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
BACKEND_SRC = ROOT_DIR / "backend" / "src"
if str(BACKEND_SRC) not in sys.path:
    sys.path.insert(0, str(BACKEND_SRC))

from invoice_reminders import api
from invoice_reminders.config import get_settings
from invoice_reminders.worker import ReminderWorker


def parse_args() -> argparse.Namespace:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Derive and dispatch invoice reminders on a fixed cadence.")
    parser.add_argument("--once", action="store_true", help="Derive, process due reminders once and exit")
    parser.add_argument(
        "--process-interval",
        type=float,
        default=settings.reminder_process_interval_seconds,
        help="Seconds between process_due runs",
    )
    parser.add_argument(
        "--derive-interval",
        type=float,
        default=settings.reminder_derive_interval_seconds,
        help="Seconds between derivation runs over unpaid invoices",
    )
    parser.add_argument("--log-level", default="INFO")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    if args.once:
        created = api.reminder_scheduler.schedule_for_unpaid_invoices()
        report = api.reminder_scheduler.process_due()
        print(json.dumps({"created_count": created, **asdict(report)}, default=str, indent=2))
        return 0

    worker = ReminderWorker(
        api.reminder_scheduler,
        process_interval_seconds=args.process_interval,
        derive_interval_seconds=args.derive_interval,
    )

    def _handle_signal(signum, frame):  # noqa: ARG001
        worker.stop(timeout=None)

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)
    worker.run_forever()
    return 0


if __name__ == "__main__":
    sys.exit(main())
