"""
Tests for the JSONL result writer: file layout, day rotation and streams.
"""

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

import json

from basket.config import EngineConfig
from basket.engine import BasketEngine
from basket.writer import ResultWriter, utc_day

from helpers import T0, make_snapshot

DAY = 86400.0


def _rows(path):
    return [json.loads(line) for line in Path(path).read_text().splitlines()]


def test_streams_land_in_day_directory(tmp_path):
    writer = ResultWriter(str(tmp_path))
    result = BasketEngine(EngineConfig()).evaluate(make_snapshot(ts=T0))

    writer.write_evaluation(result)
    writer.write_alert({"ts": T0, "trigger": "EXTREME_VOLATILITY", "reason": "test"})
    writer.write_health(T0, {"healthy": True, "issues": []})
    writer.close_all()

    day = utc_day(T0)
    assert day == "2023-11-14"
    assert sorted(p.name for p in (tmp_path / day).iterdir()) == [
        "alerts.jsonl", "evaluations.jsonl", "health.jsonl",
    ]
    assert _rows(writer.path_for("evaluations"))[0]["token_price"] == result.token_price
    assert _rows(writer.path_for("health"))[0] == {"ts": T0, "healthy": True, "issues": []}
    assert writer.rows_written == {"evaluations": 1, "alerts": 1, "health": 1}
    print(f"[OK] Wrote 3 streams under {day}/")


def test_rotation_follows_row_timestamp(tmp_path):
    writer = ResultWriter(str(tmp_path))
    writer.write_alert({"ts": T0, "trigger": "A", "reason": "first day"})
    writer.write_alert({"ts": T0 + DAY, "trigger": "B", "reason": "second day"})
    writer.write_alert({"ts": T0 + DAY + 60, "trigger": "C", "reason": "second day"})
    writer.close_all()

    first = _rows(writer.path_for("alerts", utc_day(T0)))
    second = _rows(writer.path_for("alerts", utc_day(T0 + DAY)))
    assert [r["trigger"] for r in first] == ["A"]
    assert [r["trigger"] for r in second] == ["B", "C"]


def test_reopening_appends(tmp_path):
    for trigger in ("A", "B"):
        writer = ResultWriter(str(tmp_path))
        writer.write_alert({"ts": T0, "trigger": trigger, "reason": "x"})
        writer.close_all()

    rows = _rows(tmp_path / utc_day(T0) / "alerts.jsonl")
    assert [r["trigger"] for r in rows] == ["A", "B"]
