"""
Baseline snapshot and basket valuation.

All valuation is relative to the first observed price of each symbol:

    basket_value = sum(weight[s] * V0 * current[s] / baseline[s])
    token_price  = P0 * basket_value / V0
"""

import logging
from typing import Mapping, Optional

log = logging.getLogger(__name__)


class BaselineStore:
    """Holds the once-captured price snapshot used as the ratio=1 reference."""

    def __init__(self):
        self._prices: Optional[dict[str, float]] = None

    @property
    def is_set(self) -> bool:
        return self._prices is not None

    @property
    def prices(self) -> dict[str, float]:
        return dict(self._prices or {})

    def initialize(self, prices: Mapping[str, float]) -> bool:
        """
        Snapshot current prices if no baseline exists yet.

        Zero or missing prices are not captured; those symbols keep a
        ratio of 1 until the baseline is reset.

        Returns:
            True if a new baseline was captured
        """
        if self._prices is not None:
            return False

        self._prices = {s: float(p) for s, p in prices.items() if p and p > 0}
        log.info(f"Baseline captured for {len(self._prices)} symbols")
        for symbol, price in sorted(self._prices.items()):
            log.debug(f"  baseline {symbol} = {price:.4f}")
        return True

    def reset(self):
        """Clear the baseline; the next evaluation captures a new one."""
        self._prices = None
        log.info("Baseline reset")


def price_ratio(symbol: str, current: Mapping[str, float], baseline: Mapping[str, float]) -> float:
    """current/baseline for one symbol, 1.0 when either side has no data."""
    cur = current.get(symbol)
    base = baseline.get(symbol)
    if not cur or not base or cur <= 0 or base <= 0:
        log.warning(f"No usable price for {symbol} (current={cur}, baseline={base}), assuming no change")
        return 1.0
    return cur / base


def basket_value(
    weights: Mapping[str, float],
    current: Mapping[str, float],
    baseline: Mapping[str, float],
    initial_value: float,
) -> float:
    """
    Value of the basket for the given weights.

    A single bad entry never fails the whole computation.
    """
    total = 0.0
    for symbol, weight in weights.items():
        total += weight * initial_value * price_ratio(symbol, current, baseline)
    return total


def token_price(value: float, initial_value: float, initial_token_price: float) -> float:
    """Synthetic token price for a basket value."""
    return initial_token_price * (value / initial_value)
