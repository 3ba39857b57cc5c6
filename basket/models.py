"""
Data structures shared by the engine, the breaker and the service.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Optional


USD_SYMBOL = "USD"


class Regime(Enum):
    """Market regime; each one has a preset target weight vector."""
    NEUTRAL = "NEUTRAL"
    BULL = "BULL"
    BEAR = "BEAR"


@dataclass
class AssetPrice:
    """One normalized feed entry. price == 0 means no data."""

    symbol: str
    price: float
    ema_price: float = 0.0
    last_updated: float = 0.0     # unix seconds of the oracle publish time
    decimal_places: int = 2


@dataclass
class OracleQuote:
    """A single source's view of one symbol, used for cross-validation."""

    source: str
    price: float
    timestamp: float


@dataclass
class PriceSnapshot:
    """
    Normalized input for one evaluation cycle, grouped by category.

    volumes and oracle_quotes are optional; the detectors that need them
    are skipped when they are empty.
    """

    crypto: list[AssetPrice] = field(default_factory=list)
    precious_metals: list[AssetPrice] = field(default_factory=list)
    stablecoins: list[AssetPrice] = field(default_factory=list)
    forex: list[AssetPrice] = field(default_factory=list)
    volumes: dict[str, float] = field(default_factory=dict)
    oracle_quotes: dict[str, list[OracleQuote]] = field(default_factory=dict)
    ts: float = field(default_factory=time.time)

    def all_assets(self) -> list[AssetPrice]:
        return [*self.crypto, *self.precious_metals, *self.stablecoins, *self.forex]

    def price_map(self) -> dict[str, float]:
        """Symbol -> price, with USD as the implicit 1.0 base."""
        prices = {USD_SYMBOL: 1.0}
        for asset in self.all_assets():
            prices[asset.symbol] = asset.price
        return prices

    def find(self, symbol: str) -> Optional[AssetPrice]:
        for asset in self.all_assets():
            if asset.symbol == symbol:
                return asset
        return None


@dataclass
class EvaluationResult:
    """Output of one evaluation cycle, consumed by publishers."""

    basket_value: float
    regime: Regime
    target_regime: Regime
    token_price: float
    change_percent: float
    weights: dict[str, float]
    target_weights: dict[str, float]
    rebalance_progress: float
    timestamp: float
    next_rebalance_eligible_at: float
    breaker_tripped: bool = False

    def to_dict(self) -> dict:
        d = asdict(self)
        d["regime"] = self.regime.value
        d["target_regime"] = self.target_regime.value
        return d


@dataclass
class BreakerStatus:
    """Read-only breaker view for dashboards. Always well formed."""

    tripped: bool
    reason: str
    trigger: str
    tripped_at: float
    time_remaining: float
    can_manual_override: bool
    override_active: bool = False
    rebalance_count_24h: int = 0
    value_moved_24h: float = 0.0
    oracle_failures: int = 0
    fetch_failures: int = 0
    contract_failures: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class SwapStatus:
    """Whether swaps are currently allowed, and why not."""

    allowed: bool
    reason: str = ""
    code: str = "OK"

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class AdminResult:
    """Outcome of an administrative action."""

    success: bool
    reason: str
