"""
Market condition detection.

The regime signal blends short- and medium-term price change of the
reference crypto assets:

    signal = mean over assets of (0.7 * short_change + 0.3 * medium_change)

A new regime is only acted on once it has been stable for the whole
stability window.
"""

import logging
import time
from collections import deque
from typing import Deque, Mapping, Optional

from basket.config import EngineConfig
from basket.history import PriceHistory
from basket.models import Regime

log = logging.getLogger(__name__)


class MarketConditionDetector:
    """Classifies NEUTRAL / BULL / BEAR and tracks regime stability."""

    def __init__(self, config: EngineConfig, history: PriceHistory):
        self.config = config
        self.history = history
        self.regime_history: Deque[tuple[float, Regime]] = deque(maxlen=config.regime_history_size)

    def record(self, prices: Mapping[str, float], now_ts: Optional[float] = None):
        """Append the cycle's price map to the history (which prunes itself)."""
        if now_ts is None:
            now_ts = time.time()
        self.history.append(now_ts, prices)

    def signal(self, now_ts: Optional[float] = None) -> float:
        """Weighted change percent averaged across the reference assets."""
        latest = self.history.latest()
        if latest is None:
            return 0.0
        if now_ts is None:
            now_ts = latest[0]

        changes = []
        for symbol in self.config.reference_assets:
            if not latest[1].get(symbol):
                log.debug(f"{symbol} missing from latest sample, skipped in regime signal")
                continue
            short = self.history.change_over(symbol, self.config.short_term_window_s, now_ts)
            medium = self.history.change_over(symbol, self.config.medium_term_window_s, now_ts)
            changes.append(
                self.config.short_term_weight * short + self.config.medium_term_weight * medium
            )

        if not changes:
            return 0.0
        return sum(changes) / len(changes)

    def classify_change(self, change_percent: float) -> Regime:
        if change_percent >= self.config.bull_threshold:
            return Regime.BULL
        if change_percent <= self.config.bear_threshold:
            return Regime.BEAR
        return Regime.NEUTRAL

    def classify(self, now_ts: Optional[float] = None) -> tuple[Regime, float]:
        """
        Classify the current regime and append it to the regime history.

        Returns:
            (regime, change_percent)
        """
        if now_ts is None:
            now_ts = time.time()

        change = self.signal(now_ts)
        regime = self.classify_change(change)
        self.regime_history.append((now_ts, regime))

        log.debug(f"Regime signal {change:+.2f}% -> {regime.value}")
        return regime, change

    def is_stable(self, regime: Regime, now_ts: Optional[float] = None) -> bool:
        """
        True if every classification inside the stability window equals
        regime. An empty window is never stable.
        """
        if now_ts is None:
            now_ts = time.time()
        cutoff = now_ts - self.config.stability_window_s

        recent = [r for ts, r in self.regime_history if ts >= cutoff]
        if not recent:
            return False
        return all(r == regime for r in recent)

    def reset(self):
        self.regime_history.clear()
