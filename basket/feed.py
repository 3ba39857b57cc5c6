"""
Pyth Hermes price feed client.

Fetches the latest parsed price updates and normalizes them into a
PriceSnapshot grouped by category.
"""

import asyncio
import logging
import time
from typing import Any

import aiohttp

from basket.config import ServiceConfig
from basket.exceptions import DataQualityError, TransientFetchError
from basket.models import AssetPrice, PriceSnapshot

log = logging.getLogger(__name__)

# Hermes feed ids (without 0x prefix)
FEEDS = {
    "BTC/USD": "e62df6c8b4a85fe1a67db44dc12de5db330f7ac66b72dc658afedf0f4a415b43",
    "ETH/USD": "ff61491a931112ddf1bd8147cd1b641375f79f5825126d665480874634fd0ace",
    "XAU/USD": "765d2ba906dbc32ca17cc11f5310a89e9ee1f6420508c63861f2f8ba4ee34bb2",
    "XAG/USD": "f2fb02c32b055c805e7238d628e5e9dadef274376114eb1f012337cabe93871e",
    "USDC/USD": "eaa020c61cc479712813461ce153894a96a6c00b21ed0cfc2798d1f9a9e9c94a",
    "USDT/USD": "2b89b9dc8fdf9f34709a5b106b472f0f39bb6ca9ce04b0fd7f2e971688e2e53b",
    "EUR/USD": "a995d00bb36a63cef7fd2c287dc105fc8f3d93779f062f09551b0af3e81ec30b",
    "GBP/USD": "84c2dde9633d93d1bcad84e7dc41c9d56578b7ec52fabedc1f335d673df0a7c1",
}

SYMBOL_BY_ID = {feed_id: symbol for symbol, feed_id in FEEDS.items()}

DECIMALS = {
    "USDC/USD": 4,
    "USDT/USD": 4,
    "EUR/USD": 4,
    "GBP/USD": 4,
}

CATEGORIES = {
    "crypto": ("BTC/USD", "ETH/USD"),
    "precious_metals": ("XAU/USD", "XAG/USD"),
    "stablecoins": ("USDC/USD", "USDT/USD"),
    "forex": ("EUR/USD", "GBP/USD"),
}


def _scaled(block: dict, key: str = "price") -> float:
    return float(block[key]) * 10 ** int(block["expo"])


def parse_update(update: dict) -> AssetPrice:
    """
    Convert one Hermes parsed update into an AssetPrice.

    Raises:
        DataQualityError: unknown feed id or malformed fields.
    """
    feed_id = str(update.get("id", "")).lower().removeprefix("0x")
    symbol = SYMBOL_BY_ID.get(feed_id)
    if symbol is None:
        raise DataQualityError(feed_id or "<missing id>", "unknown feed id")

    try:
        price_block = update["price"]
        price = _scaled(price_block)
        ema_block = update.get("ema_price")
        ema = _scaled(ema_block) if ema_block else 0.0
        published = float(price_block.get("publish_time", 0))
    except (KeyError, TypeError, ValueError) as e:
        raise DataQualityError(symbol, f"malformed update: {e}")

    if price < 0:
        raise DataQualityError(symbol, f"negative price {price}")

    return AssetPrice(
        symbol=symbol,
        price=price,
        ema_price=ema,
        last_updated=published,
        decimal_places=DECIMALS.get(symbol, 2),
    )


def normalize_price_updates(payload: Any, ts: float = None) -> PriceSnapshot:
    """
    Build a PriceSnapshot from a Hermes /v2/updates/price/latest response.

    Bad entries are logged and skipped.

    Raises:
        TransientFetchError: when nothing usable was received.
    """
    parsed = payload.get("parsed") if isinstance(payload, dict) else None
    if not parsed:
        raise TransientFetchError("hermes", ValueError("no price data received"))

    snapshot = PriceSnapshot(ts=ts if ts is not None else time.time())
    by_category = {name: getattr(snapshot, name) for name in CATEGORIES}

    for update in parsed:
        try:
            asset = parse_update(update)
        except DataQualityError as e:
            log.warning(e.message)
            continue
        for name, symbols in CATEGORIES.items():
            if asset.symbol in symbols:
                by_category[name].append(asset)
                break

    if not snapshot.all_assets():
        raise TransientFetchError("hermes", ValueError("no usable price entries"))
    return snapshot


class HermesPriceFeed:
    """Async client for the Hermes latest-price endpoint."""

    def __init__(self, config: ServiceConfig):
        self.base = config.hermes_base.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=config.request_timeout)
        self.max_retries = config.max_retries

    async def _request(self, session: aiohttp.ClientSession, endpoint: str, params: list) -> Any:
        """GET with retry logic. Raises TransientFetchError after the last attempt."""
        url = f"{self.base}{endpoint}"
        for attempt in range(1, self.max_retries + 1):
            try:
                async with session.get(url, params=params, timeout=self.timeout) as resp:
                    if resp.status == 429:
                        wait = int(resp.headers.get("Retry-After", 5))
                        log.warning(f"Rate limited, waiting {wait}s")
                        await asyncio.sleep(wait)
                        continue
                    resp.raise_for_status()
                    return await resp.json()
            except asyncio.TimeoutError as e:
                log.warning(f"Timeout on {endpoint} (attempt {attempt})")
                if attempt == self.max_retries:
                    raise TransientFetchError("hermes", e)
            except aiohttp.ClientError as e:
                log.warning(f"Client error on {endpoint}: {e} (attempt {attempt})")
                if attempt == self.max_retries:
                    raise TransientFetchError("hermes", e)
            except ValueError as e:
                # Body was not valid JSON
                log.warning(f"Bad payload on {endpoint}: {e} (attempt {attempt})")
                if attempt == self.max_retries:
                    raise TransientFetchError("hermes", e)
            await asyncio.sleep(0.5 * attempt)
        raise TransientFetchError("hermes", RuntimeError("retries exhausted"))

    async def fetch_snapshot(self, session: aiohttp.ClientSession) -> PriceSnapshot:
        params = [("ids[]", f"0x{feed_id}") for feed_id in FEEDS.values()]
        params.append(("parsed", "true"))
        data = await self._request(session, "/v2/updates/price/latest", params)
        snapshot = normalize_price_updates(data)
        log.debug(f"Fetched {len(snapshot.all_assets())} prices from Hermes")
        return snapshot
