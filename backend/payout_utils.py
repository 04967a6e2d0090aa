# payout_utils.py
import math
from dataclasses import dataclass
from typing import Iterable, List, Tuple

try:
    from .faucet_errors import InvalidArgument  # type: ignore
except ImportError:
    from faucet_errors import InvalidArgument  # type: ignore


DEFAULT_INITIAL_PAYOUT = 100_000_000  # 1 tBTC in satoshis
DEFAULT_MINIMUM_PAYOUT = 1_000_000    # 0.01 tBTC
DEFAULT_DECAY_RATE = 0.001

SATS_PER_COIN = 100_000_000

SCHEDULE_POINTS = (1, 50, 100, 200, 500, 1000, 2000, 3000, 4000, 5000, 10000, 20000)


@dataclass(frozen=True)
class PayoutCalculator:
    """
    Exponentially decaying faucet reward.

    payout(n) = max(minimum, floor(initial * exp(-decay * n)))

    A decay rate of 0 gives a fixed payout equal to `initial_amount`.
    """
    initial_amount: int = DEFAULT_INITIAL_PAYOUT
    minimum_amount: int = DEFAULT_MINIMUM_PAYOUT
    decay_rate: float = DEFAULT_DECAY_RATE

    def __post_init__(self):
        if self.initial_amount <= 0:
            raise InvalidArgument("initial payout must be greater than 0")
        if self.minimum_amount <= 0 or self.minimum_amount > self.initial_amount:
            raise InvalidArgument("minimum payout must be greater than 0 and not exceed the initial payout")
        if self.decay_rate < 0 or math.isnan(self.decay_rate):
            raise InvalidArgument("decay rate must be >= 0")

    def calculate_payout(self, ordinal: int) -> int:
        """Payout in satoshis for the 1-based request `ordinal`."""
        if ordinal < 1:
            raise InvalidArgument("request ordinal must be >= 1")
        payout = self.initial_amount * math.exp(-self.decay_rate * ordinal)
        return max(self.minimum_amount, int(math.floor(payout)))

    def calculate_cumulative_payout(self, count: int) -> int:
        """Sum of payouts for ordinals 1..count."""
        if count < 1:
            raise InvalidArgument("request count must be >= 1")
        total = 0
        for i in range(1, count + 1):
            total += self.calculate_payout(i)
        return total

    def schedule(self, points: Iterable[int] = SCHEDULE_POINTS) -> List[Tuple[int, int, int]]:
        """Return (ordinal, payout, cumulative) rows for the given ordinals."""
        wanted = sorted(set(int(p) for p in points))
        if wanted and wanted[0] < 1:
            raise InvalidArgument("request ordinal must be >= 1")

        rows: List[Tuple[int, int, int]] = []
        total = 0
        n = 0
        # single pass, so large schedules stay linear
        for p in wanted:
            while n < p:
                n += 1
                total += self.calculate_payout(n)
            rows.append((p, self.calculate_payout(p), total))
        return rows


def sats_to_coins(sats: int) -> str:
    return f"{sats / SATS_PER_COIN:.8f}"
