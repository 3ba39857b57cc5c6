"""
Tests for PriceHistory lookback and regime classification.
"""

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

import pytest

from basket.config import EngineConfig
from basket.history import PriceHistory
from basket.market import MarketConditionDetector
from basket.models import Regime

T0 = 1_700_000_000.0
HOUR = 3600.0
DAY = 86400.0


def test_nearest_sample_lookup():
    history = PriceHistory(retention_s=10 * DAY)
    history.append(T0, {"BTC/USD": 100.0})
    history.append(T0 + 100, {"BTC/USD": 110.0})
    history.append(T0 + 200, {"BTC/USD": 120.0})

    assert history.nearest(T0 - 50)[0] == T0
    assert history.nearest(T0 + 140)[0] == T0 + 100
    assert history.nearest(T0 + 160)[0] == T0 + 200
    assert history.nearest(T0 + 1000)[0] == T0 + 200
    # Equidistant: earlier sample wins
    assert history.nearest(T0 + 50)[0] == T0
    print("[OK] Nearest-sample lookup")


def test_change_over_window():
    history = PriceHistory(retention_s=10 * DAY)
    history.append(T0, {"BTC/USD": 100.0, "ETH/USD": 0.0})
    history.append(T0 + DAY, {"BTC/USD": 105.0, "ETH/USD": 50.0})

    assert history.change_over("BTC/USD", DAY) == pytest.approx(5.0)
    # Reference price zero
    assert history.change_over("ETH/USD", DAY) == 0.0
    # Symbol absent
    assert history.change_over("XAU/USD", DAY) == 0.0
    assert PriceHistory(DAY).change_over("BTC/USD", DAY) == 0.0


def test_sparse_history_uses_oldest_sample():
    history = PriceHistory(retention_s=10 * DAY)
    history.append(T0, {"BTC/USD": 100.0})
    history.append(T0 + HOUR, {"BTC/USD": 90.0})

    # 7 day window with one hour of data: nearest sample is the first one
    assert history.change_over("BTC/USD", 7 * DAY) == pytest.approx(-10.0)


def test_prune_after_retention():
    history = PriceHistory(retention_s=2 * DAY)
    history.append(T0, {"BTC/USD": 1.0})
    history.append(T0 + DAY, {"BTC/USD": 2.0})
    history.append(T0 + 3 * DAY, {"BTC/USD": 3.0})

    assert len(history) == 2
    assert history.nearest(T0)[0] == T0 + DAY


def test_late_sample_keeps_order():
    history = PriceHistory(retention_s=DAY)
    history.append(T0, {"BTC/USD": 1.0})
    history.append(T0 + 200, {"BTC/USD": 3.0})
    history.append(T0 + 100, {"BTC/USD": 2.0})

    assert history.latest()[0] == T0 + 200
    assert history.price_at("BTC/USD", T0 + 90) == 2.0


def _detector(**kwargs):
    config = EngineConfig(**kwargs)
    return MarketConditionDetector(config, PriceHistory(config.history_retention_s))


def test_signal_blends_short_and_medium_windows():
    detector = _detector()
    detector.record({"BTC/USD": 100.0, "ETH/USD": 100.0}, T0)
    detector.record({"BTC/USD": 100.0, "ETH/USD": 100.0}, T0 + 6 * DAY)
    detector.record({"BTC/USD": 110.0, "ETH/USD": 104.0}, T0 + 7 * DAY)

    # short (24h): BTC +10, ETH +4 ; medium (7d): BTC +10, ETH +4
    regime, change = detector.classify(T0 + 7 * DAY)
    assert change == pytest.approx(7.0)
    assert regime == Regime.BULL
    print(f"[OK] Signal {change:+.2f}% -> {regime.value}")


def test_missing_reference_asset_is_skipped():
    detector = _detector()
    detector.record({"BTC/USD": 100.0, "ETH/USD": 100.0}, T0)
    detector.record({"BTC/USD": 90.0}, T0 + HOUR)

    regime, change = detector.classify(T0 + HOUR)
    assert change == pytest.approx(-10.0)
    assert regime == Regime.BEAR


def test_no_reference_assets_is_neutral():
    detector = _detector()
    detector.record({"XAU/USD": 2000.0}, T0)
    regime, change = detector.classify(T0)
    assert change == 0.0
    assert regime == Regime.NEUTRAL


def test_classification_thresholds():
    detector = _detector()
    assert detector.classify_change(5.0) == Regime.BULL
    assert detector.classify_change(4.99) == Regime.NEUTRAL
    assert detector.classify_change(-5.0) == Regime.BEAR
    assert detector.classify_change(-4.99) == Regime.NEUTRAL


def test_stability_window():
    detector = _detector()
    assert not detector.is_stable(Regime.NEUTRAL, T0)

    detector.regime_history.append((T0, Regime.NEUTRAL))
    detector.regime_history.append((T0 + HOUR, Regime.BULL))
    detector.regime_history.append((T0 + 2 * HOUR, Regime.BULL))

    # Window [T0, T0+2h] still holds the NEUTRAL entry
    assert not detector.is_stable(Regime.BULL, T0 + 2 * HOUR)
    # Window [T0+1h, T0+3h]
    detector.regime_history.append((T0 + 3 * HOUR, Regime.BULL))
    assert detector.is_stable(Regime.BULL, T0 + 3 * HOUR)
    assert not detector.is_stable(Regime.BEAR, T0 + 3 * HOUR)
    # Nothing inside the window
    assert not detector.is_stable(Regime.BULL, T0 + 10 * HOUR)


def test_regime_history_is_bounded():
    detector = _detector(regime_history_size=3)
    for i in range(10):
        detector.classify(T0 + i)
    assert len(detector.regime_history) == 3
