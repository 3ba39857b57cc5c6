"""
Configuration for the basket engine and its drivers.

Every parameter can be overridden through .env with the BASKET_ prefix.
Durations are in seconds, thresholds in percent.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

from basket.exceptions import ConfigurationError
from basket.models import Regime

load_dotenv()

WEIGHT_TOLERANCE = 0.001

# Percent of the basket held in each asset per regime
DEFAULT_WEIGHTS_PCT = {
    Regime.NEUTRAL: {
        "USD": 30.0,
        "GBP/USD": 7.5,
        "EUR/USD": 7.5,
        "XAU/USD": 32.0,     # Gold
        "XAG/USD": 5.0,      # Silver
        "BTC/USD": 10.5,
        "ETH/USD": 7.5,
    },
    Regime.BULL: {
        "USD": 25.0,
        "GBP/USD": 7.5,
        "EUR/USD": 7.5,
        "XAU/USD": 25.0,
        "XAG/USD": 5.0,
        "BTC/USD": 20.0,     # increased
        "ETH/USD": 10.0,     # increased
    },
    Regime.BEAR: {
        "USD": 40.0,
        "GBP/USD": 12.5,
        "EUR/USD": 12.5,
        "XAU/USD": 25.0,
        "XAG/USD": 5.0,
        "BTC/USD": 3.5,      # decreased
        "ETH/USD": 1.5,      # decreased
    },
}


def parse_weights(raw: str, name: str = "weights") -> dict[str, float]:
    """
    Parse "USD:30,XAU/USD:32,..." (percentages) into fractions.

    Raises:
        ConfigurationError: on a malformed entry.
    """
    weights = {}
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        symbol, sep, pct = item.rpartition(":")
        if not sep or not symbol:
            raise ConfigurationError(name, f"expected SYMBOL:PERCENT, got '{item}'")
        try:
            weights[symbol.strip()] = float(pct) / 100.0
        except ValueError:
            raise ConfigurationError(name, f"invalid percentage for {symbol}", pct)
    return weights


def _weights_from_env() -> dict[Regime, dict[str, float]]:
    weights = {}
    for regime, defaults in DEFAULT_WEIGHTS_PCT.items():
        env_key = f"BASKET_WEIGHTS_{regime.value}"
        raw = os.getenv(env_key)
        if raw:
            weights[regime] = parse_weights(raw, env_key)
        else:
            weights[regime] = {s: pct / 100.0 for s, pct in defaults.items()}
    return weights


def _list_from_env(key: str) -> list[str]:
    raw = os.getenv(key, "")
    return [s.strip() for s in raw.split(",") if s.strip()]


@dataclass
class BreakerConfig:
    """Thresholds and durations for every circuit breaker detector."""

    # === AGGREGATE VOLATILITY ===
    extreme_volatility_threshold: float = float(os.getenv("BASKET_CB_EXTREME_VOL", "25.0"))
    volatility_freeze_s: float = float(os.getenv("BASKET_CB_VOL_FREEZE_S", "3600"))  # 1 hour

    # === PER-ASSET ANOMALY ===
    max_change_5m: float = float(os.getenv("BASKET_CB_MAX_CHANGE_5M", "3.0"))
    max_change_1h: float = float(os.getenv("BASKET_CB_MAX_CHANGE_1H", "8.0"))
    max_change_24h: float = float(os.getenv("BASKET_CB_MAX_CHANGE_24H", "25.0"))

    # === VOLUME SPIKE ===
    volume_spike_threshold: float = float(os.getenv("BASKET_CB_VOLUME_SPIKE", "5.0"))  # 5x average
    min_volume_samples: int = int(os.getenv("BASKET_CB_MIN_VOLUME_SAMPLES", "10"))

    # === REBALANCE ABUSE ===
    max_rebalances_per_hour: int = int(os.getenv("BASKET_CB_MAX_REBAL_HOUR", "2"))
    max_rebalances_per_day: int = int(os.getenv("BASKET_CB_MAX_REBAL_DAY", "6"))
    max_value_moved_per_day: float = float(os.getenv("BASKET_CB_MAX_VALUE_DAY", "500000"))
    # Notional caps are in basket value units. A single rebalance moves at most the
    # current basket value, so on default settings this cap assumes a larger basket.
    max_single_rebalance: float = float(os.getenv("BASKET_CB_MAX_SINGLE_REBAL", "100000"))

    # === ORACLE VALIDATION ===
    max_oracle_deviation: float = float(os.getenv("BASKET_CB_MAX_ORACLE_DEV", "2.0"))
    min_oracle_sources: int = int(os.getenv("BASKET_CB_MIN_ORACLE_SOURCES", "3"))
    oracle_staleness_s: float = float(os.getenv("BASKET_CB_ORACLE_STALENESS_S", "300"))

    # === FAILURES ===
    max_consecutive_failures: int = int(os.getenv("BASKET_CB_MAX_FAILURES", "5"))

    # === RECOVERY ===
    auto_reset_delay_s: float = float(os.getenv("BASKET_CB_AUTO_RESET_S", "1800"))  # 30 min
    max_freeze_s: float = float(os.getenv("BASKET_CB_MAX_FREEZE_S", "14400"))  # 4 hours
    manual_override_timeout_s: float = float(os.getenv("BASKET_CB_OVERRIDE_TIMEOUT_S", "86400"))
    emergency_pause_duration_s: float = float(os.getenv("BASKET_CB_EMERGENCY_PAUSE_S", "21600"))
    auto_clear_on_neutral: bool = os.getenv("BASKET_CB_AUTO_CLEAR_NEUTRAL", "true").lower() == "true"
    neutral_clear_threshold: float = float(os.getenv("BASKET_CB_NEUTRAL_CLEAR", "2.0"))

    # === GOVERNANCE ===
    governance_addresses: list = field(
        default_factory=lambda: _list_from_env("BASKET_GOVERNANCE_ADDRESSES")
    )


@dataclass
class EngineConfig:
    """Valuation, regime detection and rebalancing parameters."""

    # === VALUATION ===
    initial_basket_value: float = float(os.getenv("BASKET_INITIAL_VALUE", "10000"))
    initial_token_price: float = float(os.getenv("BASKET_INITIAL_TOKEN_PRICE", "1.00"))
    weights: dict = field(default_factory=_weights_from_env)

    # === MARKET DETECTION ===
    reference_assets: tuple = ("BTC/USD", "ETH/USD")
    bull_threshold: float = float(os.getenv("BASKET_BULL_THRESHOLD", "5.0"))
    bear_threshold: float = float(os.getenv("BASKET_BEAR_THRESHOLD", "-5.0"))
    short_term_weight: float = 0.7
    medium_term_weight: float = 0.3
    short_term_window_s: float = float(os.getenv("BASKET_SHORT_WINDOW_S", "86400"))  # 24 hours
    medium_term_window_s: float = float(os.getenv("BASKET_MEDIUM_WINDOW_S", "604800"))  # 7 days
    history_buffer_s: float = 86400
    stability_window_s: float = float(os.getenv("BASKET_STABILITY_WINDOW_S", "7200"))  # 2 hours
    regime_history_size: int = int(os.getenv("BASKET_REGIME_HISTORY_SIZE", "500"))

    # === REBALANCING ===
    rebalance_duration_s: float = float(os.getenv("BASKET_REBALANCE_DURATION_S", "86400"))
    min_rebalance_interval_s: float = float(os.getenv("BASKET_REBALANCE_COOLDOWN_S", "21600"))
    emergency_threshold: float = float(os.getenv("BASKET_EMERGENCY_THRESHOLD", "15.0"))

    # Used by manual_unfreeze() when no authority is passed explicitly
    operator_authority: str = os.getenv("BASKET_OPERATOR_AUTHORITY", "")

    breaker: BreakerConfig = field(default_factory=BreakerConfig)

    def validate(self) -> list[str]:
        """
        Validate configuration.

        Returns:
            List of error messages (empty if valid)
        """
        errors = []

        for regime in Regime:
            preset = self.weights.get(regime)
            if not preset:
                errors.append(f"missing weight preset for {regime.value}")
                continue
            total = sum(preset.values())
            if abs(total - 1.0) > WEIGHT_TOLERANCE:
                errors.append(f"{regime.value} weights sum to {total:.4f}, expected 1.0")
            for symbol, w in preset.items():
                if not 0.0 <= w <= 1.0:
                    errors.append(f"{regime.value} weight for {symbol} out of range: {w}")

        if self.bull_threshold <= self.bear_threshold:
            errors.append("bull_threshold must be greater than bear_threshold")

        if self.initial_basket_value <= 0:
            errors.append("initial_basket_value must be positive")

        if self.rebalance_duration_s <= 0:
            errors.append("rebalance_duration_s must be positive")

        if self.breaker.max_freeze_s <= 0:
            errors.append("breaker.max_freeze_s must be positive")

        return errors

    @property
    def history_retention_s(self) -> float:
        return self.medium_term_window_s + self.history_buffer_s


@dataclass
class SwapPauseConfig:
    """Swap pause controller parameters."""

    volatility_threshold_pct: float = float(os.getenv("BASKET_SWAP_VOL_THRESHOLD", "25.0"))
    pause_duration_s: float = float(os.getenv("BASKET_SWAP_PAUSE_S", "1800"))  # 30 min
    max_pause_s: float = float(os.getenv("BASKET_SWAP_MAX_PAUSE_S", "14400"))  # 4 hours


@dataclass
class ServiceConfig:
    """Driver loop, I/O endpoints and output."""

    # === TIMERS ===
    evaluation_interval_s: float = float(os.getenv("BASKET_EVAL_INTERVAL_S", "30"))
    swap_watch_interval_s: float = float(os.getenv("BASKET_SWAP_WATCH_INTERVAL_S", "30"))
    health_interval_s: float = float(os.getenv("BASKET_HEALTH_INTERVAL_S", "60"))

    # === PRICE FEED ===
    hermes_base: str = os.getenv("BASKET_HERMES_BASE", "https://hermes.pyth.network")
    request_timeout: float = float(os.getenv("BASKET_REQUEST_TIMEOUT_S", "10"))
    max_retries: int = int(os.getenv("BASKET_MAX_RETRIES", "3"))

    # === SWAP CONTRACT RELAY ===
    relay_base_url: str = os.getenv("BASKET_RELAY_URL", "")
    relay_api_key: str = os.getenv("BASKET_RELAY_API_KEY", "")

    # === ALERTS ===
    alert_webhook_url: str = os.getenv("BASKET_ALERT_WEBHOOK_URL", "")

    # === OUTPUT ===
    out_dir: str = os.getenv("BASKET_OUT_DIR", "data/basket")

    # === MODES ===
    dry_run: bool = os.getenv("BASKET_DRY_RUN", "true").lower() == "true"

    def validate(self) -> list[str]:
        """Validate configuration, return list of errors."""
        errors = []

        if self.evaluation_interval_s <= 0:
            errors.append("BASKET_EVAL_INTERVAL_S must be positive")
        if self.max_retries < 1:
            errors.append("BASKET_MAX_RETRIES must be at least 1")
        if not self.dry_run and not self.relay_base_url:
            errors.append("BASKET_RELAY_URL is required when BASKET_DRY_RUN=false")

        return errors
