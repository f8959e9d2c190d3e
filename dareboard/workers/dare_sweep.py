"""
Scheduled dare lifecycle sweep.

Runs once by default; --loop keeps sweeping every --interval seconds.
Safe to run from several schedulers at once: each sweep is idempotent.
"""
from __future__ import annotations

import argparse
import json
import logging
import time
from datetime import datetime
from typing import Callable, Dict, List, Optional

from dareboard.core.config import settings
from dareboard.core.logging import configure_logging
from dareboard.features.dares.lifecycle import run_sweep
from dareboard.features.dares.timeutils import ensure_utc

logger = logging.getLogger("dareboard.workers.sweep")


def sweep_once(now: Optional[datetime] = None) -> Dict:
    result = run_sweep(now=now)
    return result.to_payload()


def sweep_loop(
    interval_seconds: int,
    *,
    max_runs: Optional[int] = None,
    sleep: Callable[[float], None] = time.sleep,
    on_result: Optional[Callable[[Dict], None]] = None,
) -> int:
    """Sweep repeatedly. A failed run is logged and the loop keeps going.

    Returns the number of successful runs (only reached when max_runs is set).
    """
    runs = 0
    succeeded = 0
    while max_runs is None or runs < max_runs:
        try:
            payload = sweep_once()
            succeeded += 1
            if on_result:
                on_result(payload)
        except Exception:
            logger.exception("[sweep] run failed; retrying next interval")
        runs += 1
        if max_runs is None or runs < max_runs:
            sleep(interval_seconds)
    return succeeded


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Deactivate expired and low-engagement dares")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--once", action="store_true", help="Run a single sweep (default)")
    mode.add_argument("--loop", action="store_true", help="Sweep every --interval seconds")
    parser.add_argument("--interval", type=int, default=None, help="Seconds between sweeps in --loop mode")
    parser.add_argument("--now", type=str, default=None, help="ISO timestamp to sweep as of (backfills)")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(settings.ENV)

    if args.loop:
        if args.now:
            raise SystemExit("--now cannot be combined with --loop")
        interval = args.interval or settings.SWEEP_INTERVAL_SECONDS
        sweep_loop(interval, on_result=lambda payload: print(json.dumps(payload), flush=True))
        return 0

    now = ensure_utc(args.now) if args.now else None
    print(json.dumps(sweep_once(now)))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
