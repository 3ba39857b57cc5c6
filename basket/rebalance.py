"""
Gradual rebalancing state machine (STEADY <-> REBALANCING).

A rebalance blends linearly from the weights held when it started to the
target regime preset over a fixed duration. Non-emergency rebalances
respect a cooldown counted from the last completed one.
"""

import logging
import time
from typing import Optional

from basket.config import EngineConfig
from basket.market import MarketConditionDetector
from basket.models import Regime

log = logging.getLogger(__name__)


def blend(start: dict[str, float], end: dict[str, float], p: float) -> dict[str, float]:
    """Linear interpolation of two weight vectors at progress p."""
    symbols = list(dict.fromkeys([*start, *end]))
    return {s: start.get(s, 0.0) + (end.get(s, 0.0) - start.get(s, 0.0)) * p for s in symbols}


def turnover(start: dict[str, float], end: dict[str, float]) -> float:
    """Fraction of the basket that changes hands moving from start to end."""
    symbols = set(start) | set(end)
    return 0.5 * sum(abs(end.get(s, 0.0) - start.get(s, 0.0)) for s in symbols)


class RebalanceEngine:
    """Owns current/target weights and drives the blend between them."""

    def __init__(self, config: EngineConfig, detector: MarketConditionDetector):
        self.config = config
        self.detector = detector

        self.current_regime = Regime.NEUTRAL
        self.target_regime = Regime.NEUTRAL
        self.current_weights = dict(config.weights[Regime.NEUTRAL])
        self.target_weights = dict(self.current_weights)
        self.from_weights = dict(self.current_weights)

        self.is_rebalancing = False
        self.started_at: Optional[float] = None
        self.last_completed_at: Optional[float] = None
        self.last_emergency = False

    def in_cooldown(self, now_ts: float) -> bool:
        if self.last_completed_at is None:
            return False
        return now_ts - self.last_completed_at < self.config.min_rebalance_interval_s

    def next_eligible_at(self) -> float:
        """Earliest time a non-emergency rebalance may start (0 if already eligible)."""
        if self.last_completed_at is None:
            return 0.0
        return self.last_completed_at + self.config.min_rebalance_interval_s

    def initiate(self, regime: Regime, emergency: bool = False, now_ts: Optional[float] = None) -> bool:
        """
        Start rebalancing toward the preset for regime.

        Args:
            regime: Target regime
            emergency: Bypass the cooldown
            now_ts: Current time (unix seconds)

        Returns:
            True if a new rebalance started
        """
        if now_ts is None:
            now_ts = time.time()

        # Settles a finished blend first so cooldown and target are current
        weights, _, _ = self.progress(now_ts)

        if not emergency and self.in_cooldown(now_ts):
            remaining = self.next_eligible_at() - now_ts
            log.info(f"Rebalance to {regime.value} skipped: cooldown ({remaining / 60:.0f} min left)")
            return False

        if regime == self.target_regime:
            log.debug(f"Already at/targeting {regime.value}, nothing to do")
            return False

        self.from_weights = dict(weights)
        self.current_weights = dict(weights)
        self.target_weights = dict(self.config.weights[regime])
        self.target_regime = regime
        self.is_rebalancing = True
        self.started_at = now_ts
        self.last_emergency = emergency

        msg = (
            f"{self.current_regime.value} -> {regime.value} "
            f"over {self.config.rebalance_duration_s / 3600:.1f}h"
        )
        if emergency:
            log.warning(f"EMERGENCY rebalance started: {msg}")
        else:
            log.info(f"Rebalance started: {msg}")
        return True

    def update(self, regime: Regime, change_percent: float, now_ts: Optional[float] = None) -> bool:
        """
        React to the latest classification.

        An emergency-sized move rebalances immediately; otherwise a regime
        change must be stable before it is acted on.
        """
        if now_ts is None:
            now_ts = time.time()

        if abs(change_percent) >= self.config.emergency_threshold:
            return self.initiate(regime, emergency=True, now_ts=now_ts)

        if regime != self.target_regime and self.detector.is_stable(regime, now_ts):
            return self.initiate(regime, emergency=False, now_ts=now_ts)

        return False

    def progress(self, now_ts: Optional[float] = None) -> tuple[dict[str, float], float, bool]:
        """
        Current effective weights.

        Returns:
            (weights, progress in [0, 1], complete)
        """
        if now_ts is None:
            now_ts = time.time()

        if not self.is_rebalancing:
            return dict(self.current_weights), 1.0, True

        elapsed = now_ts - self.started_at
        p = min(max(elapsed / self.config.rebalance_duration_s, 0.0), 1.0)

        if p >= 1.0:
            self._complete()
            return dict(self.current_weights), 1.0, True

        return blend(self.from_weights, self.target_weights, p), p, False

    def _complete(self):
        self.current_weights = dict(self.target_weights)
        self.from_weights = dict(self.target_weights)
        self.current_regime = self.target_regime
        self.is_rebalancing = False
        self.last_completed_at = self.started_at + self.config.rebalance_duration_s
        log.info(f"Rebalance to {self.target_regime.value} complete")

    def pending_turnover(self) -> float:
        """Turnover fraction of the rebalance in flight (0 when steady)."""
        if not self.is_rebalancing:
            return 0.0
        return turnover(self.from_weights, self.target_weights)

    def status(self, now_ts: Optional[float] = None) -> dict:
        if now_ts is None:
            now_ts = time.time()
        weights, p, complete = self.progress(now_ts)
        return {
            "is_rebalancing": self.is_rebalancing,
            "current_regime": self.current_regime.value,
            "target_regime": self.target_regime.value,
            "progress": p,
            "weights": weights,
            "target_weights": dict(self.target_weights),
            "started_at": self.started_at,
            "last_completed_at": self.last_completed_at,
            "next_eligible_at": self.next_eligible_at(),
            "in_cooldown": self.in_cooldown(now_ts),
            "emergency": self.last_emergency,
        }
