"""
Swap contract adapters.

The swap contract has no pause instruction: swaps stop on their own when
the published price validity lapses. The controller therefore only needs
three calls: read state, refresh the price, extend price validity.
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

import httpx

from basket.exceptions import TransientFetchError

log = logging.getLogger(__name__)

TOKEN_SYMBOL = "BASKET/USD"


@dataclass
class SwapContractState:
    """Snapshot of the contract's swap state."""

    active: bool
    price_valid_until: float                    # unix seconds
    prices: dict[str, float] = field(default_factory=dict)

    def is_expired(self, now_ts: Optional[float] = None) -> bool:
        if now_ts is None:
            now_ts = time.time()
        return now_ts >= self.price_valid_until


class SwapContract(ABC):
    """Downstream actuator for the swap program."""

    @abstractmethod
    async def fetch_state(self) -> SwapContractState:
        """Raises TransientFetchError when the contract cannot be read."""

    @abstractmethod
    async def refresh_price(self, token_price: float) -> bool:
        """Publish a new reference price (also renews validity)."""

    @abstractmethod
    async def extend_price_validity(self) -> bool:
        """Renew price validity without changing the price."""

    async def close(self):
        pass


class HttpSwapContract(SwapContract):
    """Talks to a relay service that signs and submits contract calls."""

    def __init__(self, base_url: str, api_key: str = "", timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self.client = httpx.AsyncClient(timeout=timeout, headers=headers)

    async def close(self):
        """Close HTTP client."""
        await self.client.aclose()

    async def fetch_state(self) -> SwapContractState:
        try:
            resp = await self.client.get(f"{self.base_url}/swap/state")
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise TransientFetchError("swap contract state", e)

        return SwapContractState(
            active=bool(data.get("currentStateActive", False)),
            price_valid_until=float(data.get("priceValidUntil", 0)),
            prices={k: float(v) for k, v in (data.get("prices") or {}).items()},
        )

    async def _post(self, path: str, payload: dict) -> bool:
        try:
            resp = await self.client.post(f"{self.base_url}{path}", json=payload)
        except httpx.HTTPError as e:
            log.error(f"Relay call {path} failed: {e}")
            return False

        if resp.status_code in (200, 201):
            log.debug(f"Relay {path} ok: {resp.text[:200]}")
            return True

        log.error(f"Relay call {path} failed: {resp.status_code} - {resp.text[:200]}")
        return False

    async def refresh_price(self, token_price: float) -> bool:
        return await self._post("/swap/price", {"price": token_price, "symbol": TOKEN_SYMBOL})

    async def extend_price_validity(self) -> bool:
        return await self._post("/swap/extend-validity", {})


class InMemorySwapContract(SwapContract):
    """Local stand-in used for dry runs and tests."""

    def __init__(self, validity_s: float = 1800, initial_price: float = 1.0):
        self.validity_s = validity_s
        self.state = SwapContractState(
            active=True,
            price_valid_until=time.time() + validity_s,
            prices={TOKEN_SYMBOL: initial_price},
        )
        self.reachable = True
        self.accept_calls = True
        self.calls: list[tuple[str, Optional[float]]] = []

    async def fetch_state(self) -> SwapContractState:
        if not self.reachable:
            raise TransientFetchError("in-memory swap contract")
        return SwapContractState(
            active=self.state.active,
            price_valid_until=self.state.price_valid_until,
            prices=dict(self.state.prices),
        )

    async def refresh_price(self, token_price: float) -> bool:
        self.calls.append(("refresh_price", token_price))
        if not (self.reachable and self.accept_calls):
            return False
        self.state.prices[TOKEN_SYMBOL] = token_price
        self.state.price_valid_until = time.time() + self.validity_s
        self.state.active = True
        return True

    async def extend_price_validity(self) -> bool:
        self.calls.append(("extend_price_validity", None))
        if not (self.reachable and self.accept_calls):
            return False
        self.state.price_valid_until = time.time() + self.validity_s
        self.state.active = True
        return True
