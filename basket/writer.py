"""
JSONL output for the service.

Layout: <base_dir>/<YYYY-MM-DD>/<stream>.jsonl, one directory per UTC day.
The day comes from the row's own timestamp, so a replay lands in the same
files as the live run that produced it.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Optional

from basket.models import EvaluationResult

log = logging.getLogger(__name__)

STREAM_EVALUATIONS = "evaluations"
STREAM_ALERTS = "alerts"
STREAM_HEALTH = "health"
STREAMS = (STREAM_EVALUATIONS, STREAM_ALERTS, STREAM_HEALTH)


def utc_day(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d")


class ResultWriter:
    """Keeps one open handle per stream for the current UTC day."""

    def __init__(self, base_dir: str):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self._handles: dict[str, IO] = {}
        self._day = ""
        self.rows_written = {stream: 0 for stream in STREAMS}

    def path_for(self, stream: str, day: Optional[str] = None) -> Path:
        return self.base_dir / (day or self._day) / f"{stream}.jsonl"

    def _handle(self, stream: str, ts: float) -> IO:
        day = utc_day(ts)
        if day != self._day:
            if self._day:
                log.info(f"Day rotation: {self._day} -> {day}")
            self.close_all()
            self._day = day

        f = self._handles.get(stream)
        if f is None:
            path = self.path_for(stream)
            path.parent.mkdir(parents=True, exist_ok=True)
            f = self._handles[stream] = path.open("a", encoding="utf-8")
            log.info(f"Opened {path}")
        return f

    def _append(self, stream: str, ts: float, row: dict):
        f = self._handle(stream, ts)
        f.write(json.dumps(row, separators=(",", ":"), ensure_ascii=False) + "\n")
        f.flush()
        self.rows_written[stream] += 1

    def write_evaluation(self, result: EvaluationResult):
        self._append(STREAM_EVALUATIONS, result.timestamp, result.to_dict())

    def write_alert(self, alert: dict):
        self._append(STREAM_ALERTS, alert["ts"], alert)

    def write_health(self, ts: float, health: dict):
        self._append(STREAM_HEALTH, ts, {"ts": ts, **health})

    def close_all(self):
        for stream, f in self._handles.items():
            try:
                f.close()
            except OSError as e:
                log.error(f"Error closing {stream}: {e}")
        self._handles.clear()
