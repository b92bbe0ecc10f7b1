#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from paperseal.ops.reconciliation import RECONCILE_MODES
from paperseal.service import service


def main() -> int:
    parser = argparse.ArgumentParser(description="Repair papers left half-finalized by abandoned finalize calls")
    parser.add_argument("--mode", choices=RECONCILE_MODES, default="revert", help="revert or regenerate stale papers")
    parser.add_argument(
        "--stale-after-s",
        type=int,
        default=None,
        help="seconds a sealed paper may wait for its artifact (default: PAPERSEAL_RECONCILE_STALE_AFTER_S)",
    )
    parser.add_argument("--verbose", action="store_true", help="log each repaired paper")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING)
    report = service.reconcile(stale_after_s=args.stale_after_s, mode=args.mode)
    print(json.dumps(report, ensure_ascii=True, sort_keys=True, indent=2))
    if report["failed"] or report["invariant_mismatches"]:
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
