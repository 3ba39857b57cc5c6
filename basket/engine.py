"""
Basket engine: one instance owns the baseline, history, regime, rebalance
and breaker state, and evaluates one price snapshot per cycle.

Cycle order (against a single snapshot):
    1. append history
    2. classify regime
    3. circuit breaker check
    4. rebalance update (skipped while tripped)
    5. valuation
"""

import logging
import time
from typing import Optional

from basket.breaker import CircuitBreakerLayer
from basket.config import EngineConfig
from basket.exceptions import ConfigurationError
from basket.history import PriceHistory
from basket.market import MarketConditionDetector
from basket.models import AdminResult, BreakerStatus, EvaluationResult, PriceSnapshot
from basket.rebalance import RebalanceEngine
from basket.valuation import BaselineStore, basket_value, token_price

log = logging.getLogger(__name__)


class BasketEngine:
    """Synchronous decision engine. Not safe to call from two cycles at once."""

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig()

        errors = self.config.validate()
        if errors:
            raise ConfigurationError("engine", "; ".join(errors))

        if self.config.breaker.max_single_rebalance >= self.config.initial_basket_value:
            log.warning(
                f"Single rebalance cap ${self.config.breaker.max_single_rebalance:,.0f} is not below "
                f"the basket value ${self.config.initial_basket_value:,.0f} and cannot trip"
            )

        self.baseline = BaselineStore()
        self.history = PriceHistory(self.config.history_retention_s)
        self.detector = MarketConditionDetector(self.config, self.history)
        self.rebalance = RebalanceEngine(self.config, self.detector)
        self.breaker = CircuitBreakerLayer(self.config.breaker, self.history)

        self.last_result: Optional[EvaluationResult] = None
        self.cycles = 0

    def evaluate(self, snapshot: PriceSnapshot, now_ts: Optional[float] = None) -> EvaluationResult:
        """
        Run one evaluation cycle.

        Args:
            snapshot: Normalized prices for this cycle
            now_ts: Cycle time (defaults to the snapshot timestamp)

        Returns:
            EvaluationResult for publishers
        """
        if now_ts is None:
            now_ts = snapshot.ts
        cfg = self.config

        prices = snapshot.price_map()
        self.baseline.initialize(prices)
        baseline = self.baseline.prices

        self.detector.record(prices, now_ts)
        regime, change = self.detector.classify(now_ts)

        tripped = self.breaker.check(change, snapshot.volumes, snapshot.oracle_quotes, now_ts)

        if tripped:
            log.warning(f"Breaker tripped ({self.breaker.trigger}), rebalancing frozen")
        elif self.rebalance.update(regime, change, now_ts):
            self._record_rebalance(prices, baseline, now_ts)
            tripped = self.breaker.tripped

        weights, progress, _ = self.rebalance.progress(now_ts)
        value = basket_value(weights, prices, baseline, cfg.initial_basket_value)
        price = token_price(value, cfg.initial_basket_value, cfg.initial_token_price)

        result = EvaluationResult(
            basket_value=value,
            regime=regime,
            target_regime=self.rebalance.target_regime,
            token_price=price,
            change_percent=change,
            weights=weights,
            target_weights=dict(self.rebalance.target_weights),
            rebalance_progress=progress,
            timestamp=now_ts,
            next_rebalance_eligible_at=self.rebalance.next_eligible_at(),
            breaker_tripped=tripped,
        )

        self.last_result = result
        self.cycles += 1
        log.info(
            f"Cycle {self.cycles}: value=${value:,.2f} token=${price:.4f} "
            f"regime={regime.value} ({change:+.2f}%) target={result.target_regime.value} "
            f"progress={progress:.0%}"
        )
        return result

    def _record_rebalance(self, prices: dict, baseline: dict, now_ts: float):
        """Feed the notional of a freshly started rebalance to the abuse limits."""
        value = basket_value(self.rebalance.from_weights, prices, baseline, self.config.initial_basket_value)
        notional = self.rebalance.pending_turnover() * value
        trigger = "emergency" if self.rebalance.last_emergency else "regime_change"
        self.breaker.record_rebalance(notional, trigger, now_ts)

    # ------------------------------------------------------------------
    # Failure escalation (driven by the service)
    # ------------------------------------------------------------------

    def record_fetch_failure(self, now_ts: Optional[float] = None) -> bool:
        return self.breaker.record_failure("fetch", now_ts)

    def record_fetch_success(self):
        self.breaker.record_success("fetch")

    # ------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------

    def reset_baseline(self) -> AdminResult:
        self.baseline.reset()
        return AdminResult(True, "Baseline cleared, next evaluation captures a new one")

    def manual_unfreeze(self, authority: Optional[str] = None, now_ts: Optional[float] = None) -> AdminResult:
        if authority is None:
            authority = self.config.operator_authority
        return self.breaker.manual_unfreeze(authority, now_ts)

    def emergency_pause(self, authority: str, reason: str, now_ts: Optional[float] = None) -> AdminResult:
        return self.breaker.emergency_pause(authority, reason, now_ts)

    def manual_override(self, authority: str, reason: str, now_ts: Optional[float] = None) -> AdminResult:
        return self.breaker.manual_override(authority, reason, now_ts)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def breaker_status(self, now_ts: Optional[float] = None) -> BreakerStatus:
        return self.breaker.status(now_ts)

    def rebalance_status(self, now_ts: Optional[float] = None) -> dict:
        if now_ts is None:
            now_ts = time.time()
        return self.rebalance.status(now_ts)
