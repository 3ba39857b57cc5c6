"""
Swap pause controller.

Translates breaker state into pause/resume actions on the swap contract,
with its own coarse volatility watch on the contract's published prices.

Pausing is local: the controller stops refreshing the price and lets the
contract's validity window lapse. Resuming sends "extend price validity".
"""

import logging
import time
from typing import Optional

from basket.breaker import CircuitBreakerLayer
from basket.config import SwapPauseConfig
from basket.contract import SwapContract, SwapContractState
from basket.exceptions import TransientFetchError
from basket.models import EvaluationResult, SwapStatus

log = logging.getLogger(__name__)

CODE_LOCAL_PAUSE = "LOCAL_PAUSE"
CODE_CONTRACT_UNREACHABLE = "CONTRACT_UNREACHABLE"
CODE_PRICE_EXPIRED = "PRICE_EXPIRED"
CODE_BREAKER_TRIPPED = "BREAKER_TRIPPED"


class SwapPauseController:
    """Pause window, volatility watch and auto-resume for the swap contract."""

    def __init__(
        self,
        contract: SwapContract,
        breaker: CircuitBreakerLayer,
        config: Optional[SwapPauseConfig] = None,
    ):
        self.contract = contract
        self.breaker = breaker
        self.config = config or SwapPauseConfig()

        self.paused = False
        self.pause_reason = ""
        self.pause_code = ""
        self.paused_at = 0.0
        self.resume_at = 0.0
        self.current_volatility: Optional[float] = None

        self.last_prices: dict[str, float] = {}

    # Every contract call reports into the breaker's "contract" failure counter

    def _contract_ok(self):
        self.breaker.record_success("contract")

    def _contract_failed(self, now_ts: float):
        self.breaker.record_failure("contract", now_ts)

    async def _fetch_state(self, now_ts: float) -> Optional[SwapContractState]:
        try:
            state = await self.contract.fetch_state()
        except TransientFetchError as e:
            log.warning(f"Swap state unavailable: {e.message}")
            self._contract_failed(now_ts)
            return None
        self._contract_ok()
        return state

    async def swaps_allowed(self, now_ts: Optional[float] = None) -> SwapStatus:
        """Check every reason swaps could be blocked, local pause first."""
        if now_ts is None:
            now_ts = time.time()

        if self.paused:
            return SwapStatus(False, self.pause_reason, CODE_LOCAL_PAUSE)

        state = await self._fetch_state(now_ts)
        if state is None:
            return SwapStatus(False, "Unable to fetch swap contract state", CODE_CONTRACT_UNREACHABLE)

        if not state.active or state.is_expired(now_ts):
            return SwapStatus(False, "Swap prices have expired, contract is paused", CODE_PRICE_EXPIRED)

        if self.breaker.tripped:
            return SwapStatus(False, f"Circuit breaker active: {self.breaker.trigger}", CODE_BREAKER_TRIPPED)

        return SwapStatus(True)

    def pause(
        self,
        reason: str,
        code: str = "MANUAL",
        volatility: Optional[float] = None,
        now_ts: Optional[float] = None,
    ) -> bool:
        """
        Open a local pause window. Price refreshes are withheld until resume.

        Returns:
            False if already paused
        """
        if now_ts is None:
            now_ts = time.time()
        if self.paused:
            return False

        self.paused = True
        self.pause_reason = reason
        self.pause_code = code
        self.paused_at = now_ts
        self.resume_at = now_ts + self.config.pause_duration_s
        self.current_volatility = volatility

        log.warning(
            f"SWAPS PAUSED [{code}]: {reason} "
            f"(resume check in {self.config.pause_duration_s / 60:.0f} min)"
        )
        return True

    async def resume(self, manual: bool = False, reason: str = "", now_ts: Optional[float] = None) -> bool:
        """
        Extend price validity on the contract and clear the pause window.

        A failed call keeps the pause in place.
        """
        if now_ts is None:
            now_ts = time.time()
        if not self.paused:
            log.info("Swaps are not paused, nothing to resume")
            return False

        mode = "manual" if manual else "automatic"
        if not await self.contract.extend_price_validity():
            log.error(f"Resume ({mode}) failed: extend price validity rejected, swaps stay paused")
            self._contract_failed(now_ts)
            return False
        self._contract_ok()

        log.info(f"Swaps resumed ({mode}){': ' + reason if reason else ''}")
        self.paused = False
        self.pause_reason = ""
        self.pause_code = ""
        self.paused_at = 0.0
        self.resume_at = 0.0
        self.current_volatility = None
        return True

    async def check_volatility(self, now_ts: Optional[float] = None) -> bool:
        """
        Sample the contract's published prices once and pause on a large move
        or a tripped breaker.

        Returns:
            True if this check paused swaps
        """
        if now_ts is None:
            now_ts = time.time()
        if self.paused:
            return False

        state = await self._fetch_state(now_ts)

        # A failed read may itself have tripped the breaker
        if self.breaker.tripped:
            return self.pause(
                f"Circuit breaker tripped: {self.breaker.reason}",
                CODE_BREAKER_TRIPPED,
                now_ts=now_ts,
            )

        if state is None:
            log.warning("Volatility watch skipped: contract state unavailable")
            return False

        if not self.last_prices:
            self.last_prices = dict(state.prices)
            return False

        for symbol, price in state.prices.items():
            previous = self.last_prices.get(symbol)
            if not previous:
                continue
            change = abs((price - previous) / previous * 100.0)
            log.debug(f"{symbol} contract price change: {change:.2f}%")
            if change >= self.config.volatility_threshold_pct:
                return self.pause(
                    f"Extreme price volatility for {symbol}: {change:.2f}% change",
                    "PRICE_VOLATILITY",
                    volatility=change,
                    now_ts=now_ts,
                )

        self.last_prices = dict(state.prices)
        return False

    async def check_auto_resume(self, now_ts: Optional[float] = None) -> bool:
        """
        Resume when the window elapsed and the breaker is clear; force a
        resume once the maximum pause duration is reached.

        Returns:
            True if swaps were resumed
        """
        if now_ts is None:
            now_ts = time.time()
        if not self.paused:
            return False

        if now_ts - self.paused_at >= self.config.max_pause_s:
            log.warning("Maximum pause duration reached, forcing resume")
            return await self.resume(False, "maximum pause duration exceeded", now_ts)

        if now_ts < self.resume_at:
            return False

        if self.breaker.tripped:
            self.resume_at = now_ts + self.config.pause_duration_s
            log.info("Pause window elapsed but breaker still tripped, extending pause")
            return False

        return await self.resume(False, "pause window elapsed", now_ts)

    async def publish(self, result: EvaluationResult, now_ts: Optional[float] = None) -> bool:
        """Refresh the on-chain price unless swaps are paused."""
        if now_ts is None:
            now_ts = time.time()
        if self.paused:
            log.info(f"Price refresh withheld while paused (token ${result.token_price:.4f})")
            return False

        ok = await self.contract.refresh_price(result.token_price)
        if ok:
            log.debug(f"Published token price ${result.token_price:.4f}")
            self._contract_ok()
        else:
            log.error(f"Price refresh rejected (token ${result.token_price:.4f})")
            self._contract_failed(now_ts)
        return ok

    def get_pause_status(self, now_ts: Optional[float] = None) -> dict:
        if now_ts is None:
            now_ts = time.time()
        return {
            "paused": self.paused,
            "reason": self.pause_reason,
            "code": self.pause_code,
            "paused_at": self.paused_at,
            "resume_at": self.resume_at,
            "time_remaining": max(0.0, self.resume_at - now_ts) if self.paused else 0.0,
            "current_volatility": self.current_volatility,
        }
