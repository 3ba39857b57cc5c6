"""Shared builders for the basket tests."""

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from basket.config import BreakerConfig, EngineConfig
from basket.models import AssetPrice, PriceSnapshot

T0 = 1_700_000_000.0
HOUR = 3600.0
GOV = "GovAuthority1111111111111111111111111111111"


def make_snapshot(btc=50000.0, eth=3000.0, ts=T0, xau=2000.0, xag=25.0, eur=1.08, gbp=1.27, **extra):
    """Snapshot with the basket's tracked symbols; pass btc=None to drop BTC."""
    crypto = []
    if btc is not None:
        crypto.append(AssetPrice("BTC/USD", btc, ema_price=btc, last_updated=ts))
    if eth is not None:
        crypto.append(AssetPrice("ETH/USD", eth, ema_price=eth, last_updated=ts))
    return PriceSnapshot(
        crypto=crypto,
        precious_metals=[
            AssetPrice("XAU/USD", xau, last_updated=ts),
            AssetPrice("XAG/USD", xag, last_updated=ts),
        ],
        forex=[
            AssetPrice("EUR/USD", eur, last_updated=ts, decimal_places=4),
            AssetPrice("GBP/USD", gbp, last_updated=ts, decimal_places=4),
        ],
        ts=ts,
        **extra,
    )


def governed_config(**kwargs) -> EngineConfig:
    """Engine config with a single governance authority that is also the operator."""
    breaker_kwargs = kwargs.pop("breaker_kwargs", {})
    breaker = BreakerConfig(governance_addresses=[GOV], **breaker_kwargs)
    return EngineConfig(operator_authority=GOV, breaker=breaker, **kwargs)
