"""
Basket price service.

Drives one BasketEngine with three independent timers:
    - evaluation (fetch prices, evaluate, publish)
    - swap watch (volatility watch + auto-resume)
    - health report

At most one evaluation is in flight; a tick that finds one running is
skipped. All I/O is awaited before the synchronous engine call.

Usage:
    python -m basket.service            # dry run, in-memory swap contract
    python -m basket.service --live     # relay-backed swap contract
    python -m basket.service --once     # single evaluation, then exit
"""

import asyncio
import logging
import os
import signal
import sys
import time
from typing import Optional

import aiohttp

from basket.alerts import AlertDispatcher
from basket.config import EngineConfig, ServiceConfig, SwapPauseConfig
from basket.contract import HttpSwapContract, InMemorySwapContract
from basket.engine import BasketEngine
from basket.exceptions import BasketError, TransientFetchError
from basket.feed import HermesPriceFeed
from basket.models import EvaluationResult
from basket.swap_pause import SwapPauseController
from basket.writer import ResultWriter

log = logging.getLogger("basket")

# Graceful shutdown
shutdown_event = asyncio.Event()


def _signal_handler():
    log.info("Shutdown signal received")
    shutdown_event.set()


class BasketService:
    """Owns the timers and I/O around one engine instance."""

    def __init__(
        self,
        engine: BasketEngine,
        feed,
        swap: Optional[SwapPauseController] = None,
        alerts: Optional[AlertDispatcher] = None,
        writer: Optional[ResultWriter] = None,
        config: Optional[ServiceConfig] = None,
        stop_event: Optional[asyncio.Event] = None,
    ):
        self.engine = engine
        self.feed = feed
        self.swap = swap
        self.alerts = alerts
        self.writer = writer
        self.config = config or ServiceConfig()
        self.stop_event = stop_event or asyncio.Event()

        self.session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()
        self._ticks: set[asyncio.Task] = set()

        self.running = False
        self.started_at = 0.0
        self.last_update_ts = 0.0
        self.last_result: Optional[EvaluationResult] = None
        self.consecutive_failures = 0
        self.evaluations = 0
        self.skipped_ticks = 0

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    async def evaluation_tick(self) -> Optional[EvaluationResult]:
        """Scheduled evaluation; skipped if another one is still running."""
        if self._lock.locked():
            self.skipped_ticks += 1
            log.warning("Previous evaluation still running, skipping tick")
            return None
        async with self._lock:
            return await self._evaluate_once()

    async def force_evaluate(self) -> Optional[EvaluationResult]:
        """Run one cycle on demand, waiting for any in-flight cycle first."""
        log.info("Forced evaluation requested")
        async with self._lock:
            return await self._evaluate_once()

    async def _evaluate_once(self) -> Optional[EvaluationResult]:
        fetch_timeout = self.config.request_timeout * (self.config.max_retries + 1)
        try:
            snapshot = await asyncio.wait_for(self.feed.fetch_snapshot(self.session), timeout=fetch_timeout)
        except (TransientFetchError, asyncio.TimeoutError) as e:
            self.consecutive_failures += 1
            log.error(f"Price fetch failed ({self.consecutive_failures} in a row): {e}")
            self.engine.record_fetch_failure()
            await self._flush_alerts()
            return None

        self.consecutive_failures = 0
        self.engine.record_fetch_success()

        result = self.engine.evaluate(snapshot)
        self.last_result = result
        self.last_update_ts = time.time()
        self.evaluations += 1

        if self.writer:
            self.writer.write_evaluation(result)

        if self.swap:
            await self.swap.publish(result)

        await self._flush_alerts()
        return result

    async def _flush_alerts(self):
        alerts = self.engine.breaker.drain_alerts()
        if not alerts:
            return
        if self.writer:
            for alert in alerts:
                self.writer.write_alert(alert)
        if self.alerts:
            await self.alerts.send_all(alerts)

    # ------------------------------------------------------------------
    # Swap watch / health
    # ------------------------------------------------------------------

    async def swap_watch_tick(self):
        if not self.swap:
            return
        if await self.swap.check_volatility():
            status = self.swap.get_pause_status()
            alert = {"trigger": status["code"], "reason": status["reason"], "ts": time.time()}
            if self.writer:
                self.writer.write_alert(alert)
            if self.alerts:
                await self.alerts.send(alert)
        await self.swap.check_auto_resume()
        await self._flush_alerts()

    def health_check(self, now_ts: Optional[float] = None) -> dict:
        """
        Summarize service health.

        Returns:
            dict with healthy, issues, warnings and the key counters
        """
        if now_ts is None:
            now_ts = time.time()

        issues = []
        warnings = []

        if not self.running:
            issues.append("Service is not running")

        stale_after = self.config.evaluation_interval_s * 3
        if self.last_update_ts:
            age = now_ts - self.last_update_ts
            if age > stale_after:
                issues.append(f"Price data is stale ({age:.0f}s since last update)")
        elif self.running:
            warnings.append("No successful evaluation yet")

        if self.consecutive_failures >= 3:
            issues.append(f"{self.consecutive_failures} consecutive fetch failures")

        breaker = self.engine.breaker_status(now_ts)
        if breaker.tripped:
            warnings.append(f"Circuit breaker tripped: {breaker.reason}")

        if self.swap and self.swap.paused:
            warnings.append(f"Swaps paused: {self.swap.pause_reason}")

        return {
            "healthy": not issues,
            "issues": issues,
            "warnings": warnings,
            "uptime_s": now_ts - self.started_at if self.started_at else 0.0,
            "evaluations": self.evaluations,
            "skipped_ticks": self.skipped_ticks,
            "consecutive_failures": self.consecutive_failures,
            "last_update_ts": self.last_update_ts,
            "breaker": breaker.to_dict(),
        }

    async def health_tick(self):
        health = self.health_check()
        if health["healthy"]:
            log.info(
                f"Health OK | evals={health['evaluations']} skipped={health['skipped_ticks']} "
                f"warnings={len(health['warnings'])}"
            )
        else:
            log.warning(f"Health issues: {'; '.join(health['issues'])}")
        for w in health["warnings"]:
            log.info(f"  warning: {w}")
        if self.writer:
            self.writer.write_health(time.time(), health)

    # ------------------------------------------------------------------
    # Loops
    # ------------------------------------------------------------------

    async def _sleep(self, seconds: float):
        try:
            await asyncio.wait_for(self.stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _evaluation_loop(self):
        while not self.stop_event.is_set():
            task = asyncio.create_task(self.evaluation_tick())
            self._ticks.add(task)
            task.add_done_callback(self._tick_done)
            await self._sleep(self.config.evaluation_interval_s)

    def _tick_done(self, task: asyncio.Task):
        self._ticks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.error(f"Evaluation tick failed: {task.exception()}")

    async def _periodic(self, name: str, interval_s: float, fn):
        while not self.stop_event.is_set():
            try:
                await fn()
            except BasketError as e:
                log.error(f"{name} failed: {e.message}")
            except Exception as e:
                log.error(f"{name} failed: {e}")
            await self._sleep(interval_s)

    async def run(self):
        log.info("=" * 60)
        log.info("Basket price service starting...")
        log.info(f"  Mode: {'DRY RUN' if self.config.dry_run else 'LIVE'}")
        log.info(f"  Evaluation every {self.config.evaluation_interval_s:.0f}s")
        log.info(f"  Swap watch every {self.config.swap_watch_interval_s:.0f}s")
        log.info(f"  Health every {self.config.health_interval_s:.0f}s")
        log.info("=" * 60)

        self.running = True
        self.started_at = time.time()

        try:
            async with aiohttp.ClientSession() as session:
                self.session = session
                await asyncio.gather(
                    self._evaluation_loop(),
                    self._periodic("Swap watch", self.config.swap_watch_interval_s, self.swap_watch_tick),
                    self._periodic("Health check", self.config.health_interval_s, self.health_tick),
                )
                # Let in-flight ticks finish or time out on their own
                if self._ticks:
                    await asyncio.gather(*self._ticks, return_exceptions=True)
        finally:
            self.running = False
            self.session = None
            await self.close()
            log.info(f"Service stopped. {self.evaluations} evaluations, {self.skipped_ticks} skipped ticks")

    async def run_once(self) -> Optional[EvaluationResult]:
        self.running = True
        self.started_at = time.time()
        try:
            async with aiohttp.ClientSession() as session:
                self.session = session
                return await self.force_evaluate()
        finally:
            self.running = False
            self.session = None
            await self.close()

    async def close(self):
        if self.swap:
            await self.swap.contract.close()
        if self.alerts:
            await self.alerts.close()
        if self.writer:
            self.writer.close_all()


def build_service(config: ServiceConfig, stop_event: Optional[asyncio.Event] = None) -> BasketService:
    """Wire the default production components from configuration."""
    errors = config.validate()
    if errors:
        for err in errors:
            log.error(f"Config error: {err}")
        raise BasketError("Invalid service configuration", "; ".join(errors))

    engine = BasketEngine(EngineConfig())

    if config.dry_run:
        contract = InMemorySwapContract()
    else:
        contract = HttpSwapContract(config.relay_base_url, config.relay_api_key, timeout=config.request_timeout)

    return BasketService(
        engine=engine,
        feed=HermesPriceFeed(config),
        swap=SwapPauseController(contract, engine.breaker, SwapPauseConfig()),
        alerts=AlertDispatcher(config.alert_webhook_url),
        writer=ResultWriter(config.out_dir),
        config=config,
        stop_event=stop_event,
    )


def main():
    import argparse

    parser = argparse.ArgumentParser(description="Run the basket price service")
    parser.add_argument("--live", action="store_true", help="Use the relay swap contract (CAUTION!)")
    parser.add_argument("--dry", action="store_true", help="Dry run with in-memory swap contract")
    parser.add_argument("--once", action="store_true", help="Run a single evaluation and exit")
    parser.add_argument("--interval", type=float, default=None, help="Evaluation interval in seconds")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)-5s %(name)s | %(message)s",
        datefmt="%H:%M:%S",
    )

    # Set mode via environment
    if args.dry:
        os.environ["BASKET_DRY_RUN"] = "true"
    elif args.live:
        os.environ["BASKET_DRY_RUN"] = "false"

    config = ServiceConfig(dry_run=os.getenv("BASKET_DRY_RUN", "true").lower() == "true")
    if args.interval:
        config.evaluation_interval_s = args.interval

    try:
        service = build_service(config, shutdown_event)
    except BasketError as e:
        log.error(e.format_message())
        sys.exit(1)

    loop = asyncio.new_event_loop()

    if sys.platform != "win32":
        loop.add_signal_handler(signal.SIGINT, _signal_handler)
        loop.add_signal_handler(signal.SIGTERM, _signal_handler)
    else:
        signal.signal(signal.SIGINT, lambda s, f: _signal_handler())
        signal.signal(signal.SIGTERM, lambda s, f: _signal_handler())

    try:
        if args.once:
            result = loop.run_until_complete(service.run_once())
            if result is None:
                sys.exit(1)
            log.info(f"Token price: ${result.token_price:.4f}")
        else:
            loop.run_until_complete(service.run())
    except KeyboardInterrupt:
        log.info("KeyboardInterrupt, shutting down...")
        shutdown_event.set()
    finally:
        loop.close()


if __name__ == "__main__":
    main()
