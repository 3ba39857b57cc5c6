"""
Circuit breaker layer.

A single trip/clear state machine. Independent detectors report into it:

- aggregate volatility of the regime signal
- per-asset moves over 5 min / 1 h / 24 h
- volume spikes against a rolling 24 h average
- rebalance frequency and notional limits
- oracle cross-validation and consecutive failures
- consecutive feed and swap contract failures

The first detector to trip wins; nothing can trip again until the breaker
is cleared. Clearing happens automatically (timer, return to neutral,
safety ceiling) or through governance-gated manual actions.
"""

import logging
import time
from collections import deque
from typing import Deque, Mapping, Optional, Sequence

from basket.config import BreakerConfig
from basket.exceptions import AuthorizationError
from basket.history import PriceHistory
from basket.models import AdminResult, BreakerStatus, OracleQuote, USD_SYMBOL

log = logging.getLogger(__name__)

DAY_S = 86400
HOUR_S = 3600

# Trigger codes
TRIGGER_VOLATILITY = "EXTREME_VOLATILITY"
TRIGGER_PRICE_ANOMALY = "PRICE_ANOMALY"
TRIGGER_VOLUME_SPIKE = "VOLUME_SPIKE"
TRIGGER_REBALANCE_SIZE = "REBALANCE_SIZE_EXCEEDED"
TRIGGER_DAILY_REBALANCES = "DAILY_REBALANCE_LIMIT"
TRIGGER_HOURLY_REBALANCES = "HOURLY_REBALANCE_LIMIT"
TRIGGER_DAILY_VALUE = "DAILY_VALUE_LIMIT"
TRIGGER_ORACLE_DEVIATION = "ORACLE_DEVIATION"
TRIGGER_ORACLE_FAILURES = "ORACLE_FAILURE_THRESHOLD"
TRIGGER_FETCH_FAILURES = "FETCH_FAILURE_THRESHOLD"
TRIGGER_CONTRACT_FAILURES = "CONTRACT_FAILURE_THRESHOLD"
TRIGGER_EMERGENCY_PAUSE = "MANUAL_EMERGENCY_PAUSE"

FAILURE_KINDS = ("oracle", "fetch", "contract")

FAILURE_TRIGGERS = {
    "oracle": TRIGGER_ORACLE_FAILURES,
    "fetch": TRIGGER_FETCH_FAILURES,
    "contract": TRIGGER_CONTRACT_FAILURES,
}


class CircuitBreakerLayer:
    """Unified breaker state plus the detectors that feed it."""

    def __init__(self, config: BreakerConfig, history: PriceHistory):
        self.config = config
        self.history = history

        # Trip state
        self.tripped = False
        self.reason = ""
        self.trigger = ""
        self.tripped_at = 0.0
        self.auto_clear_at = 0.0

        # Governance override (disarms automatic detectors until it expires)
        self.override_until: Optional[float] = None

        # Detector state
        self.volume_log: Deque[tuple[float, dict[str, float]]] = deque()
        self.rebalance_ledger: Deque[tuple[float, float, str]] = deque()
        self.failures = {kind: 0 for kind in FAILURE_KINDS}

        # Alerts waiting to be delivered by the service
        self.pending_alerts: Deque[dict] = deque(maxlen=100)

    # ------------------------------------------------------------------
    # Cycle entry point
    # ------------------------------------------------------------------

    def check(
        self,
        change_percent: float,
        volumes: Optional[Mapping[str, float]] = None,
        oracle_quotes: Optional[Mapping[str, Sequence[OracleQuote]]] = None,
        now_ts: Optional[float] = None,
    ) -> bool:
        """
        Run clear conditions, then the detectors, for one cycle.

        The price history must already contain this cycle's sample.

        Returns:
            True if the breaker is tripped after the check
        """
        if now_ts is None:
            now_ts = time.time()

        if volumes:
            self._record_volumes(volumes, now_ts)

        self._check_clear(change_percent, now_ts)
        if self.tripped:
            return True

        if self.override_active(now_ts):
            return False

        if self._check_aggregate(change_percent, now_ts):
            return True
        if self._check_price_anomalies(now_ts):
            return True
        if volumes and self._check_volume_spikes(volumes, now_ts):
            return True
        if oracle_quotes and self._check_oracles(oracle_quotes, now_ts):
            return True
        return False

    # ------------------------------------------------------------------
    # Detectors
    # ------------------------------------------------------------------

    def _check_aggregate(self, change_percent: float, now_ts: float) -> bool:
        if abs(change_percent) < self.config.extreme_volatility_threshold:
            return False
        return self._trip(
            f"Extreme volatility: {change_percent:+.2f}% "
            f"(limit {self.config.extreme_volatility_threshold:.0f}%)",
            TRIGGER_VOLATILITY,
            now_ts,
            duration_s=self.config.volatility_freeze_s,
            context={"change_percent": change_percent},
        )

    def _check_price_anomalies(self, now_ts: float) -> bool:
        latest = self.history.latest()
        if latest is None:
            return False
        latest_ts, prices = latest

        windows = (
            ("5m", 300, self.config.max_change_5m),
            ("1h", HOUR_S, self.config.max_change_1h),
            ("24h", DAY_S, self.config.max_change_24h),
        )

        for symbol, price in prices.items():
            if symbol == USD_SYMBOL or not price:
                continue
            for label, window_s, limit in windows:
                sample = self.history.nearest(now_ts - window_s)
                # Only an earlier sample counts as a reference
                if sample is None or sample[0] >= latest_ts:
                    continue
                ref = sample[1].get(symbol)
                if not ref:
                    continue
                change = abs((price - ref) / ref * 100.0)
                if change > limit:
                    return self._trip(
                        f"Price anomaly for {symbol}: {change:.2f}% over {label} (limit {limit:.0f}%)",
                        f"{TRIGGER_PRICE_ANOMALY}_{symbol}",
                        now_ts,
                        context={"symbol": symbol, "window": label, "price": price, "reference": ref},
                    )
        return False

    def _record_volumes(self, volumes: Mapping[str, float], now_ts: float):
        self.volume_log.append((now_ts, dict(volumes)))
        cutoff = now_ts - DAY_S
        while self.volume_log and self.volume_log[0][0] <= cutoff:
            self.volume_log.popleft()

    def average_volume(self, symbol: str) -> float:
        """Rolling 24h average, 0 until enough samples exist."""
        samples = [v[symbol] for _, v in self.volume_log if symbol in v]
        if len(samples) < self.config.min_volume_samples:
            return 0.0
        return sum(samples) / len(samples)

    def _check_volume_spikes(self, volumes: Mapping[str, float], now_ts: float) -> bool:
        for symbol, volume in volumes.items():
            avg = self.average_volume(symbol)
            if avg <= 0:
                continue
            ratio = volume / avg
            if ratio > self.config.volume_spike_threshold:
                return self._trip(
                    f"Volume spike for {symbol}: {ratio:.2f}x average",
                    f"{TRIGGER_VOLUME_SPIKE}_{symbol}",
                    now_ts,
                    context={"symbol": symbol, "volume": volume, "average": avg},
                )
        return False

    def _check_oracles(self, oracle_quotes: Mapping[str, Sequence[OracleQuote]], now_ts: float) -> bool:
        insufficient = []
        for symbol, quotes in oracle_quotes.items():
            fresh = [q for q in quotes if now_ts - q.timestamp < self.config.oracle_staleness_s]
            if len(fresh) < self.config.min_oracle_sources:
                insufficient.append(symbol)
                continue

            mean = sum(q.price for q in fresh) / len(fresh)
            if mean <= 0:
                insufficient.append(symbol)
                continue
            for q in fresh:
                deviation = abs((q.price - mean) / mean * 100.0)
                if deviation > self.config.max_oracle_deviation:
                    return self._trip(
                        f"Oracle deviation for {symbol}: {q.source} off by {deviation:.2f}%",
                        TRIGGER_ORACLE_DEVIATION,
                        now_ts,
                        context={"symbol": symbol, "source": q.source, "deviation": deviation},
                    )

        if insufficient:
            log.warning(f"Too few fresh oracle sources for {', '.join(insufficient)}")
            return self.record_failure("oracle", now_ts)

        self.record_success("oracle")
        return False

    def record_failure(self, kind: str, now_ts: Optional[float] = None) -> bool:
        """
        Count a consecutive failure of the given kind (see FAILURE_KINDS).

        Returns:
            True if this failure tripped the breaker
        """
        if now_ts is None:
            now_ts = time.time()

        self.failures[kind] += 1
        count = self.failures[kind]
        log.warning(f"Consecutive {kind} failures: {count}/{self.config.max_consecutive_failures}")

        if count < self.config.max_consecutive_failures:
            return False
        if self.tripped or self.override_active(now_ts):
            return False

        trigger = FAILURE_TRIGGERS[kind]
        return self._trip(
            f"{kind.capitalize()} failure threshold reached: {count} consecutive failures",
            trigger,
            now_ts,
            context={"failures": count},
        )

    def record_success(self, kind: str):
        if self.failures[kind]:
            log.info(f"{kind.capitalize()} recovered after {self.failures[kind]} failures")
        self.failures[kind] = 0

    def record_rebalance(self, value_moved: float, trigger: str, now_ts: Optional[float] = None) -> bool:
        """
        Add a rebalance to the 24h ledger and enforce the abuse limits.

        Returns:
            True if a limit tripped the breaker
        """
        if now_ts is None:
            now_ts = time.time()

        self.rebalance_ledger.append((now_ts, value_moved, trigger))
        self._prune_ledger(now_ts)

        if self.tripped or self.override_active(now_ts):
            return False

        cfg = self.config
        if value_moved > cfg.max_single_rebalance:
            return self._trip(
                f"Single rebalance size exceeded: ${value_moved:,.0f}",
                TRIGGER_REBALANCE_SIZE,
                now_ts,
                context={"value_moved": value_moved, "limit": cfg.max_single_rebalance},
            )

        daily = len(self.rebalance_ledger)
        if daily > cfg.max_rebalances_per_day:
            return self._trip(
                f"Daily rebalance limit exceeded: {daily} rebalances",
                TRIGGER_DAILY_REBALANCES,
                now_ts,
                context={"count": daily, "limit": cfg.max_rebalances_per_day},
            )

        hourly = sum(1 for ts, _, _ in self.rebalance_ledger if ts > now_ts - HOUR_S)
        if hourly > cfg.max_rebalances_per_hour:
            return self._trip(
                f"Hourly rebalance limit exceeded: {hourly} rebalances",
                TRIGGER_HOURLY_REBALANCES,
                now_ts,
                context={"count": hourly, "limit": cfg.max_rebalances_per_hour},
            )

        moved = sum(v for _, v, _ in self.rebalance_ledger)
        if moved > cfg.max_value_moved_per_day:
            return self._trip(
                f"Daily value moved limit exceeded: ${moved:,.0f}",
                TRIGGER_DAILY_VALUE,
                now_ts,
                context={"value_moved": moved, "limit": cfg.max_value_moved_per_day},
            )

        return False

    def _prune_ledger(self, now_ts: float):
        cutoff = now_ts - DAY_S
        while self.rebalance_ledger and self.rebalance_ledger[0][0] <= cutoff:
            self.rebalance_ledger.popleft()

    # ------------------------------------------------------------------
    # Trip / clear
    # ------------------------------------------------------------------

    def _trip(
        self,
        reason: str,
        trigger: str,
        now_ts: float,
        duration_s: Optional[float] = None,
        context: Optional[dict] = None,
    ) -> bool:
        if self.tripped:
            return False

        if duration_s is None:
            duration_s = self.config.auto_reset_delay_s
        duration_s = min(duration_s, self.config.max_freeze_s)

        self.tripped = True
        self.reason = reason
        self.trigger = trigger
        self.tripped_at = now_ts
        self.auto_clear_at = now_ts + duration_s

        log.error(f"CIRCUIT BREAKER TRIPPED [{trigger}]: {reason} (auto-clear in {duration_s / 60:.0f} min)")

        self.pending_alerts.append({
            "ts": now_ts,
            "trigger": trigger,
            "reason": reason,
            "auto_clear_at": self.auto_clear_at,
            "context": context or {},
        })
        return True

    def _check_clear(self, change_percent: float, now_ts: float):
        if not self.tripped:
            return

        if now_ts - self.tripped_at >= self.config.max_freeze_s:
            self.clear(f"safety ceiling of {self.config.max_freeze_s / 3600:.1f}h reached")
        elif now_ts >= self.auto_clear_at and not self.override_active(now_ts):
            self.clear("auto-reset delay elapsed")
        elif (
            self.config.auto_clear_on_neutral
            and self.trigger == TRIGGER_VOLATILITY
            and abs(change_percent) < self.config.neutral_clear_threshold
        ):
            # Only the aggregate trip is measured by the regime signal
            self.clear(f"market back to neutral ({change_percent:+.2f}%)")

    def clear(self, why: str):
        """Clear the breaker and reset failure counters."""
        log.info(f"Circuit breaker cleared [{self.trigger}]: {why}")
        self.tripped = False
        self.reason = ""
        self.trigger = ""
        self.tripped_at = 0.0
        self.auto_clear_at = 0.0
        for kind in FAILURE_KINDS:
            self.failures[kind] = 0

    def override_active(self, now_ts: Optional[float] = None) -> bool:
        if self.override_until is None:
            return False
        if now_ts is None:
            now_ts = time.time()
        if now_ts < self.override_until:
            return True
        log.info("Manual override expired, automatic checks re-armed")
        self.override_until = None
        return False

    # ------------------------------------------------------------------
    # Governance actions
    # ------------------------------------------------------------------

    def _authorize(self, authority: Optional[str], action: str):
        if not authority or authority not in self.config.governance_addresses:
            raise AuthorizationError(authority or "<none>", action)

    def _arm_override(self, now_ts: float):
        self.override_until = now_ts + self.config.manual_override_timeout_s

    def manual_unfreeze(self, authority: Optional[str], now_ts: Optional[float] = None) -> AdminResult:
        if now_ts is None:
            now_ts = time.time()
        try:
            self._authorize(authority, "manual_unfreeze")
        except AuthorizationError as e:
            log.warning(str(e))
            return AdminResult(False, e.message)

        if not self.tripped:
            return AdminResult(False, "Circuit breaker is not tripped")

        self.clear(f"manual unfreeze by {authority}")
        self._arm_override(now_ts)
        return AdminResult(True, "Circuit breaker cleared, override active")

    def manual_override(self, authority: Optional[str], reason: str, now_ts: Optional[float] = None) -> AdminResult:
        if now_ts is None:
            now_ts = time.time()
        try:
            self._authorize(authority, "manual_override")
        except AuthorizationError as e:
            log.warning(str(e))
            return AdminResult(False, e.message)

        log.warning(f"Manual override by {authority}: {reason}")
        if self.tripped:
            self.clear(f"manual override by {authority}")
        self._arm_override(now_ts)
        hours = self.config.manual_override_timeout_s / 3600
        return AdminResult(True, f"Override active for {hours:.0f}h")

    def emergency_pause(self, authority: Optional[str], reason: str, now_ts: Optional[float] = None) -> AdminResult:
        if now_ts is None:
            now_ts = time.time()
        try:
            self._authorize(authority, "emergency_pause")
        except AuthorizationError as e:
            log.warning(str(e))
            return AdminResult(False, e.message)

        if self.tripped:
            return AdminResult(False, f"Circuit breaker already tripped: {self.reason}")

        self._trip(
            f"Manual emergency pause: {reason}",
            TRIGGER_EMERGENCY_PAUSE,
            now_ts,
            duration_s=self.config.emergency_pause_duration_s,
            context={"authority": authority, "reason": reason},
        )
        return AdminResult(True, "Emergency pause active")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def drain_alerts(self) -> list[dict]:
        alerts = list(self.pending_alerts)
        self.pending_alerts.clear()
        return alerts

    def status(self, now_ts: Optional[float] = None) -> BreakerStatus:
        """Read-only view; never raises and never changes state."""
        if now_ts is None:
            now_ts = time.time()

        remaining = max(0.0, self.auto_clear_at - now_ts) if self.tripped else 0.0
        recent = [(ts, v) for ts, v, _ in self.rebalance_ledger if ts > now_ts - DAY_S]
        override = self.override_until is not None and now_ts < self.override_until

        return BreakerStatus(
            tripped=self.tripped,
            reason=self.reason,
            trigger=self.trigger,
            tripped_at=self.tripped_at,
            time_remaining=remaining,
            can_manual_override=bool(self.config.governance_addresses),
            override_active=override,
            rebalance_count_24h=len(recent),
            value_moved_24h=sum(v for _, v in recent),
            oracle_failures=self.failures["oracle"],
            fetch_failures=self.failures["fetch"],
            contract_failures=self.failures["contract"],
        )
