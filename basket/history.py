"""
Time-ordered log of price snapshots for windowed change calculations.
"""

import bisect
import logging
from typing import Mapping, Optional

log = logging.getLogger(__name__)


class PriceHistory:
    """
    Pruned price log, ordered by timestamp.

    Timestamps are kept in a parallel sorted list so the nearest-sample
    lookup is a bisect instead of a scan; pruning drops from the front.
    """

    def __init__(self, retention_s: float):
        self.retention_s = retention_s
        self._ts: list[float] = []
        self._prices: list[dict[str, float]] = []

    def __len__(self) -> int:
        return len(self._ts)

    def append(self, ts: float, prices: Mapping[str, float]):
        """Add a sample and drop everything older than the retention horizon."""
        sample = dict(prices)
        if not self._ts or ts >= self._ts[-1]:
            self._ts.append(ts)
            self._prices.append(sample)
        else:
            # Late sample, keep ordering
            idx = bisect.bisect_right(self._ts, ts)
            self._ts.insert(idx, ts)
            self._prices.insert(idx, sample)
        self.prune(ts - self.retention_s)

    def prune(self, cutoff_ts: float) -> int:
        """Remove samples older than cutoff_ts. Returns number removed."""
        idx = bisect.bisect_left(self._ts, cutoff_ts)
        if idx:
            del self._ts[:idx]
            del self._prices[:idx]
            log.debug(f"Pruned {idx} history samples older than {cutoff_ts:.0f}")
        return idx

    def clear(self):
        self._ts.clear()
        self._prices.clear()

    def latest(self) -> Optional[tuple[float, dict[str, float]]]:
        if not self._ts:
            return None
        return self._ts[-1], self._prices[-1]

    def nearest(self, target_ts: float) -> Optional[tuple[float, dict[str, float]]]:
        """Sample whose timestamp is closest to target_ts (earlier one wins ties)."""
        if not self._ts:
            return None
        idx = bisect.bisect_left(self._ts, target_ts)
        if idx == 0:
            best = 0
        elif idx == len(self._ts):
            best = idx - 1
        else:
            before, after = self._ts[idx - 1], self._ts[idx]
            best = idx - 1 if target_ts - before <= after - target_ts else idx
        return self._ts[best], self._prices[best]

    def price_at(self, symbol: str, target_ts: float) -> Optional[float]:
        sample = self.nearest(target_ts)
        if sample is None:
            return None
        return sample[1].get(symbol)

    def change_over(self, symbol: str, window_s: float, now_ts: Optional[float] = None) -> float:
        """
        Percent change of symbol between the sample nearest to now - window_s
        and the latest sample.

        Returns 0 when there is no history, the symbol is absent from either
        sample, or the reference price is zero.
        """
        latest = self.latest()
        if latest is None:
            return 0.0
        if now_ts is None:
            now_ts = latest[0]

        current = latest[1].get(symbol)
        reference = self.price_at(symbol, now_ts - window_s)
        if not current or not reference:
            return 0.0
        return (current - reference) / reference * 100.0
