# Basket Price Engine
# Synthetic multi-asset token price with regime rebalancing and circuit breakers

from basket.config import BreakerConfig, EngineConfig, ServiceConfig, SwapPauseConfig
from basket.models import AssetPrice, EvaluationResult, PriceSnapshot, Regime
from basket.engine import BasketEngine
from basket.breaker import CircuitBreakerLayer
from basket.contract import HttpSwapContract, InMemorySwapContract, SwapContract
from basket.swap_pause import SwapPauseController

__all__ = [
    "BreakerConfig",
    "EngineConfig",
    "ServiceConfig",
    "SwapPauseConfig",
    "AssetPrice",
    "EvaluationResult",
    "PriceSnapshot",
    "Regime",
    "BasketEngine",
    "CircuitBreakerLayer",
    "HttpSwapContract",
    "InMemorySwapContract",
    "SwapContract",
    "SwapPauseController",
]
