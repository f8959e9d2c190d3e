"""
Recount dare/completion counters from the engagement ledger.

Dry-run by default. Use --fix to overwrite drifted counters.
"""
from __future__ import annotations

import argparse
import json
from typing import List, Optional

from dareboard.core.config import settings
from dareboard.core.logging import configure_logging
from dareboard.features.dares.reconciliation import reconcile_counters


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Check denormalised counters against the ledger")
    parser.add_argument("--fix", action="store_true", help="Apply corrections (default: report only)")
    args = parser.parse_args(argv)

    configure_logging(settings.ENV)
    report = reconcile_counters(fix=args.fix)
    print(json.dumps(report, indent=2))
    # Non-zero exit signals drift to schedulers in report-only mode
    return 1 if report["mismatches"] and not args.fix else 0


if __name__ == "__main__":
    raise SystemExit(main())
