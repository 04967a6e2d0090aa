#!/usr/bin/env python3
# payout_schedule.py
#
# Print the payout curve for a faucet configuration:
#   python payout_schedule.py --initial 100000000 --minimum 1000000 --decay 0.001
#
# Defaults come from the same env vars / .env the server reads.
from __future__ import annotations

import argparse
import sys
from typing import List, Optional

try:
    from .faucet_config import load_settings  # type: ignore
    from .faucet_errors import InvalidArgument  # type: ignore
    from .payout_utils import SCHEDULE_POINTS, PayoutCalculator, sats_to_coins  # type: ignore
except ImportError:
    from faucet_config import load_settings  # type: ignore
    from faucet_errors import InvalidArgument  # type: ignore
    from payout_utils import SCHEDULE_POINTS, PayoutCalculator, sats_to_coins  # type: ignore


def format_schedule(calc: PayoutCalculator, points=SCHEDULE_POINTS) -> List[str]:
    lines = [f"initial={calc.initial_amount} sat minimum={calc.minimum_amount} sat decay={calc.decay_rate}"]
    for ordinal, payout, total in calc.schedule(points):
        lines.append(
            f"Request {ordinal}: {payout} sats ({sats_to_coins(payout)} tBTC), Total: {sats_to_coins(total)} tBTC"
        )
    return lines


def main(argv: Optional[List[str]] = None) -> int:
    settings = load_settings()

    ap = argparse.ArgumentParser(description="Print the faucet payout schedule")
    ap.add_argument("--initial", type=int, default=settings.initial_payout, help="initial payout (sat)")
    ap.add_argument("--minimum", type=int, default=settings.minimum_payout, help="minimum payout (sat)")
    ap.add_argument("--decay", type=float, default=settings.decay_rate, help="decay rate")
    ap.add_argument("--points", default="", help="comma separated request ordinals")
    args = ap.parse_args(argv)

    try:
        calc = PayoutCalculator(args.initial, args.minimum, args.decay)
        points = [int(p) for p in args.points.split(",") if p.strip()] or SCHEDULE_POINTS
        for line in format_schedule(calc, points):
            print(line)
    except (InvalidArgument, ValueError) as e:
        print(f"[fatal] {e}", file=sys.stderr)
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
