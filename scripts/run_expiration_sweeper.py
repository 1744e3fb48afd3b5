#!/usr/bin/env python3
"""
Expire overdue signature requests, send expiration warnings and retry pending
finalizations.

Usage:
  python scripts/run_expiration_sweeper.py --once
  python scripts/run_expiration_sweeper.py [--interval 3600]

Cron example (daily at 02:00):
  0 2 * * * cd /path/to/signflow && python scripts/run_expiration_sweeper.py --once >> sweeper.log 2>&1
"""

import argparse
import os
import signal
import sys
import threading
from dataclasses import asdict

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from signflow.core.config import settings  # noqa: E402
from signflow.core.logging_setup import logger  # noqa: E402
from signflow.db.session import new_session  # noqa: E402
from signflow.services import build_runtime, build_services  # noqa: E402


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Run the signature request expiration sweeper")
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    parser.add_argument(
        "--interval",
        type=float,
        default=settings.sweeper_interval_seconds,
        help=f"Seconds between passes (default: {settings.sweeper_interval_seconds})",
    )
    args = parser.parse_args(argv)

    runtime = build_runtime()
    runtime.start()
    try:
        with new_session() as session:
            sweeper = build_services(session, runtime).sweeper
            if args.once:
                result = sweeper.check_expirations()
                print(asdict(result))
                return 0 if result.errors == 0 else 1

            stop_event = threading.Event()

            def _stop(signum, _frame) -> None:
                logger.info("Signal %s received, stopping sweeper", signum)
                stop_event.set()

            signal.signal(signal.SIGINT, _stop)
            signal.signal(signal.SIGTERM, _stop)
            sweeper.run_forever(args.interval, stop_event)
            return 0
    finally:
        runtime.flush()
        runtime.stop()


if __name__ == "__main__":
    sys.exit(main())
