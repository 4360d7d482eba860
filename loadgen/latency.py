from __future__ import annotations

import contextlib
import json
import threading
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Iterator

import pandas as pd

GOOD = "good"
ERROR = "error"

COLUMNS = ["call_class", "started", "finished", "state", "latency_ms"]


@dataclass
class CallRecord:
    call_class: str
    started: float
    finished: float
    state: str

    @property
    def latency_ms(self) -> float:
        return max(self.finished - self.started, 0.0) * 1000.0


class TimedCall:
    """Handle yielded by ``LatencyMap.timed``."""

    def __init__(self) -> None:
        self.state = GOOD

    def fail(self) -> None:
        self.state = ERROR


class LatencyMap:
    """Thread-safe per-call-class latency recorder with a measurement window."""

    def __init__(self, title: str) -> None:
        self.title = title
        self.started: float | None = None
        self.stopped: float | None = None

        self._records_lock = threading.Lock()
        self._records: list[CallRecord] = []

    def start(self) -> None:
        with self._records_lock:
            self.started = time.time()
            self.stopped = None

    def stop(self) -> None:
        with self._records_lock:
            self.stopped = time.time()

    def add(self, call_class: str, started: float, finished: float, state: str) -> None:
        record = CallRecord(call_class=call_class, started=started, finished=finished, state=state)
        with self._records_lock:
            self._records.append(record)

    @contextlib.contextmanager
    def timed(self, call_class: str) -> Iterator[TimedCall]:
        """Time the enclosed block.

        The call is tagged as an error if the block raises or calls
        ``fail()`` on the yielded handle.
        """
        call = TimedCall()
        started = time.time()
        try:
            yield call
        except BaseException:
            call.fail()
            raise
        finally:
            self.add(call_class, started, time.time(), call.state)

    def records(self) -> list[CallRecord]:
        with self._records_lock:
            return list(self._records)

    def __len__(self) -> int:
        with self._records_lock:
            return len(self._records)

    def build_dataframe(self, filter_window: bool = True) -> pd.DataFrame:
        with self._records_lock:
            rows = [dict(asdict(record), latency_ms=record.latency_ms) for record in self._records]
            start_ts, end_ts = self.started, self.stopped

        if not rows:
            return pd.DataFrame(columns=COLUMNS)

        # Calls started inside the window count even if they finished while draining
        if filter_window and start_ts is not None and end_ts is not None:
            rows = [row for row in rows if start_ts <= row["started"] < end_ts]

        return pd.DataFrame(rows, columns=COLUMNS)

    def summaries(self) -> dict[str, dict[str, float]]:
        df = self.build_dataframe(filter_window=False)
        if df.empty:
            return {}

        summary: dict[str, dict[str, float]] = {}
        for call_class, group in df.groupby("call_class"):
            latencies = group["latency_ms"]
            summary[str(call_class)] = {
                "count": int(len(group)),
                GOOD: int((group["state"] == GOOD).sum()),
                ERROR: int((group["state"] == ERROR).sum()),
                "mean_ms": float(latencies.mean()),
                "p50_ms": float(latencies.quantile(0.50)),
                "p90_ms": float(latencies.quantile(0.90)),
                "p99_ms": float(latencies.quantile(0.99)),
            }
        return summary

    def to_dict(self) -> dict[str, Any]:
        metrics: dict[str, list[dict[str, Any]]] = {}
        for record in self.records():
            metrics.setdefault(record.call_class, []).append(
                {"started": record.started, "finished": record.finished, "state": record.state}
            )
        return {
            "title": self.title,
            "started": self.started,
            "stopped": self.stopped,
            "metrics": metrics,
            "summary": self.summaries(),
        }

    def dump(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def load(cls, path: Path) -> "LatencyMap":
        with open(path, encoding="utf-8") as f:
            payload = json.load(f)

        latency = cls(payload.get("title", ""))
        latency.started = payload.get("started")
        latency.stopped = payload.get("stopped")
        for call_class, calls in (payload.get("metrics") or {}).items():
            for call in calls:
                latency.add(call_class, call["started"], call["finished"], call["state"])
        return latency


__all__ = ["CallRecord", "ERROR", "GOOD", "LatencyMap", "TimedCall"]
