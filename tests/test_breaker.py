"""
Tests for the circuit breaker layer: detectors, trip/clear rules and
governance actions.
"""

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from basket.breaker import (
    CircuitBreakerLayer,
    TRIGGER_CONTRACT_FAILURES,
    TRIGGER_DAILY_VALUE,
    TRIGGER_EMERGENCY_PAUSE,
    TRIGGER_FETCH_FAILURES,
    TRIGGER_HOURLY_REBALANCES,
    TRIGGER_ORACLE_DEVIATION,
    TRIGGER_ORACLE_FAILURES,
    TRIGGER_REBALANCE_SIZE,
    TRIGGER_VOLATILITY,
)
from basket.config import BreakerConfig
from basket.history import PriceHistory
from basket.models import OracleQuote

T0 = 1_700_000_000.0
HOUR = 3600.0
GOV = "gov-authority"


def make_breaker(**kwargs):
    kwargs.setdefault("governance_addresses", [GOV])
    config = BreakerConfig(**kwargs)
    return CircuitBreakerLayer(config, PriceHistory(8 * 86400))


def test_trips_exactly_at_threshold():
    breaker = make_breaker()
    assert not breaker.check(24.9, now_ts=T0)
    assert not breaker.tripped

    assert breaker.check(-25.0, now_ts=T0 + 10)
    assert breaker.tripped
    assert breaker.trigger == TRIGGER_VOLATILITY
    assert breaker.reason
    print(f"[OK] Tripped: {breaker.reason}")


def test_cannot_trip_twice_without_clearing():
    breaker = make_breaker()
    breaker.check(30.0, now_ts=T0)
    assert breaker.check(60.0, now_ts=T0 + 60)

    assert breaker.tripped_at == T0
    assert len(breaker.drain_alerts()) == 1
    assert breaker.drain_alerts() == []


def test_auto_clear_after_duration():
    breaker = make_breaker(auto_clear_on_neutral=False)
    breaker.check(30.0, now_ts=T0)
    duration = breaker.config.volatility_freeze_s
    assert breaker.auto_clear_at == T0 + duration

    assert breaker.check(10.0, now_ts=T0 + duration - 1)
    assert not breaker.check(10.0, now_ts=T0 + duration)
    assert not breaker.tripped
    print("[OK] Auto-clear at T0 + duration")


def test_auto_clear_on_return_to_neutral():
    breaker = make_breaker()
    breaker.check(30.0, now_ts=T0)
    assert breaker.check(5.0, now_ts=T0 + 60)
    assert not breaker.check(1.5, now_ts=T0 + 120)


def test_safety_ceiling_clears_despite_override():
    breaker = make_breaker()
    assert breaker.manual_override(GOV, "maintenance", now_ts=T0).success
    assert breaker.emergency_pause(GOV, "incident", now_ts=T0 + 1).success
    assert breaker.trigger == TRIGGER_EMERGENCY_PAUSE

    # Pause duration is capped at the ceiling
    assert breaker.auto_clear_at == T0 + 1 + breaker.config.max_freeze_s

    assert breaker.check(0.0, now_ts=T0 + 1 + 2 * HOUR)
    assert breaker.tripped
    assert breaker.override_active(T0 + 1 + 2 * HOUR)

    breaker.check(0.0, now_ts=T0 + 1 + breaker.config.max_freeze_s)
    assert not breaker.tripped
    print("[OK] Safety ceiling cleared the freeze")


def test_manual_trip_ignores_neutral_clear():
    breaker = make_breaker()
    breaker.emergency_pause(GOV, "incident", now_ts=T0)
    assert breaker.check(0.1, now_ts=T0 + 60)
    assert breaker.tripped


def test_unauthorized_actions_are_rejected():
    breaker = make_breaker()
    breaker.check(30.0, now_ts=T0)

    result = breaker.manual_unfreeze("mallory", now_ts=T0 + 10)
    assert not result.success
    assert "Unauthorized" in result.reason
    assert breaker.tripped

    assert not breaker.manual_override(None, "x", now_ts=T0 + 10).success
    assert breaker.override_until is None

    open_breaker = make_breaker(governance_addresses=[])
    assert not open_breaker.emergency_pause("anyone", "x", now_ts=T0).success
    assert not open_breaker.tripped
    print("[OK] Unauthorized actions rejected")


def test_manual_unfreeze_arms_override():
    breaker = make_breaker()
    breaker.check(30.0, now_ts=T0)

    result = breaker.manual_unfreeze(GOV, now_ts=T0 + 60)
    assert result.success
    assert not breaker.tripped
    assert breaker.status(T0 + 60).override_active

    # Detectors disarmed while the override lasts
    assert not breaker.check(40.0, now_ts=T0 + 120)

    expired = T0 + 60 + breaker.config.manual_override_timeout_s + 1
    assert breaker.check(40.0, now_ts=expired)
    assert breaker.override_until is None


def test_manual_unfreeze_when_clear_is_rejected():
    breaker = make_breaker()
    result = breaker.manual_unfreeze(GOV, now_ts=T0)
    assert not result.success
    assert breaker.override_until is None


def test_status_time_remaining_decreases():
    breaker = make_breaker()
    breaker.check(30.0, now_ts=T0)

    remaining = [breaker.status(T0 + dt).time_remaining for dt in (10, 20, 30)]
    assert remaining[0] > remaining[1] > remaining[2] > 0
    status = breaker.status(T0 + 10)
    assert status.tripped
    assert status.can_manual_override
    assert status.to_dict()["trigger"] == TRIGGER_VOLATILITY


def test_per_asset_anomaly():
    breaker = make_breaker()
    breaker.history.append(T0, {"USD": 1.0, "BTC/USD": 100.0})
    breaker.history.append(T0 + 300, {"USD": 1.0, "BTC/USD": 104.0})

    assert breaker.check(0.5, now_ts=T0 + 300)
    assert breaker.trigger == "PRICE_ANOMALY_BTC/USD"
    assert "5m" in breaker.reason
    print(f"[OK] {breaker.reason}")


def test_per_asset_anomaly_waits_for_timer_not_neutral_signal():
    """A gold move outside the BTC/ETH signal stays tripped and alerts once."""
    breaker = make_breaker()
    breaker.history.append(T0, {"USD": 1.0, "XAU/USD": 2000.0})

    for dt in (300, 330, 360, 390, 420):
        breaker.history.append(T0 + dt, {"USD": 1.0, "XAU/USD": 2100.0})
        assert breaker.check(0.0, now_ts=T0 + dt)

    assert breaker.trigger == "PRICE_ANOMALY_XAU/USD"
    assert breaker.tripped_at == T0 + 300
    assert len(breaker.drain_alerts()) == 1

    # Cleared by its own timer
    assert not breaker.check(0.0, now_ts=T0 + 300 + breaker.config.auto_reset_delay_s)
    print("[OK] Per-asset trip held until its auto-reset delay")


def test_per_asset_needs_earlier_reference():
    breaker = make_breaker()
    breaker.history.append(T0, {"USD": 1.0, "BTC/USD": 100.0})
    assert not breaker.check(0.0, now_ts=T0)


def test_volume_spike_requires_min_samples():
    breaker = make_breaker()
    for i in range(8):
        assert not breaker.check(0.0, volumes={"BTC/USD": 100.0}, now_ts=T0 + i * 60)
    # 9 samples: no average yet
    assert not breaker.check(0.0, volumes={"BTC/USD": 10000.0}, now_ts=T0 + 8 * 60)


def test_volume_spike_trips():
    breaker = make_breaker()
    for i in range(10):
        assert not breaker.check(0.0, volumes={"BTC/USD": 100.0}, now_ts=T0 + i * 60)

    assert breaker.check(0.0, volumes={"BTC/USD": 1000.0}, now_ts=T0 + 600)
    assert breaker.trigger == "VOLUME_SPIKE_BTC/USD"


def test_oracle_deviation_trips():
    breaker = make_breaker()
    quotes = {"BTC/USD": [
        OracleQuote("pyth", 100.0, T0),
        OracleQuote("chainlink", 100.0, T0),
        OracleQuote("switchboard", 110.0, T0),
    ]}
    assert breaker.check(0.0, oracle_quotes=quotes, now_ts=T0 + 5)
    assert breaker.trigger == TRIGGER_ORACLE_DEVIATION


def test_oracle_failures_escalate():
    breaker = make_breaker()
    stale = {"BTC/USD": [
        OracleQuote("pyth", 100.0, T0),
        OracleQuote("chainlink", 100.0, T0),
        OracleQuote("switchboard", 100.0, T0 - 600),
    ]}
    for i in range(4):
        assert not breaker.check(0.0, oracle_quotes=stale, now_ts=T0 + i)
    assert breaker.failures["oracle"] == 4

    assert breaker.check(0.0, oracle_quotes=stale, now_ts=T0 + 4)
    assert breaker.trigger == TRIGGER_ORACLE_FAILURES


def test_valid_oracles_reset_failures():
    breaker = make_breaker()
    good = {"BTC/USD": [OracleQuote(s, 100.0, T0) for s in ("a", "b", "c")]}
    bad = {"BTC/USD": good["BTC/USD"][:2]}

    breaker.check(0.0, oracle_quotes=bad, now_ts=T0)
    assert breaker.failures["oracle"] == 1
    breaker.check(0.0, oracle_quotes=good, now_ts=T0 + 1)
    assert breaker.failures["oracle"] == 0


def test_fetch_failures_escalate_and_reset():
    breaker = make_breaker()
    for _ in range(4):
        assert not breaker.record_failure("fetch", T0)
    breaker.record_success("fetch")
    assert breaker.failures["fetch"] == 0

    for _ in range(4):
        breaker.record_failure("fetch", T0)
    assert breaker.record_failure("fetch", T0)
    assert breaker.trigger == TRIGGER_FETCH_FAILURES

    # Clearing resets the counters
    breaker.clear("test")
    assert breaker.failures["fetch"] == 0


def test_rebalance_single_size_limit():
    breaker = make_breaker()
    assert breaker.record_rebalance(150_000.0, "regime_change", T0)
    assert breaker.trigger == TRIGGER_REBALANCE_SIZE


def test_rebalance_hourly_limit():
    breaker = make_breaker()
    assert not breaker.record_rebalance(1000.0, "regime_change", T0)
    assert not breaker.record_rebalance(1000.0, "regime_change", T0 + 60)
    assert breaker.record_rebalance(1000.0, "emergency", T0 + 120)
    assert breaker.trigger == TRIGGER_HOURLY_REBALANCES


def test_rebalance_daily_value_limit():
    breaker = make_breaker()
    for i in range(5):
        assert not breaker.record_rebalance(99_000.0, "regime_change", T0 + i * 2 * HOUR)
    assert breaker.record_rebalance(99_000.0, "regime_change", T0 + 10 * HOUR)
    assert breaker.trigger == TRIGGER_DAILY_VALUE

    status = breaker.status(T0 + 10 * HOUR)
    assert status.rebalance_count_24h == 6
    assert status.value_moved_24h == 6 * 99_000.0


def test_status_when_clear_is_well_formed():
    status = make_breaker().status(T0)
    assert not status.tripped
    assert status.reason == ""
    assert status.time_remaining == 0.0
    # Governance can override a clear breaker too
    assert status.can_manual_override
    assert not make_breaker(governance_addresses=[]).status(T0).can_manual_override


def test_contract_failures_count_separately_from_feed():
    breaker = make_breaker()
    for _ in range(4):
        breaker.record_failure("fetch", T0)
        breaker.record_failure("contract", T0)

    # A healthy contract read does not reset the feed counter
    breaker.record_success("contract")
    assert breaker.failures["fetch"] == 4

    for _ in range(4):
        breaker.record_failure("contract", T0 + 1)
    assert breaker.record_failure("contract", T0 + 1)
    assert breaker.trigger == TRIGGER_CONTRACT_FAILURES
    assert breaker.status(T0 + 1).contract_failures == 5
