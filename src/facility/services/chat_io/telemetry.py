# src/facility/services/chat_io/telemetry.py
"""In-memory counters for frames, authentication outcomes and error codes."""
from __future__ import annotations

import threading
from typing import Dict, Mapping, Tuple

_Key = Tuple[str, Tuple[Tuple[str, str], ...]]


class Telemetry:
    def __init__(self) -> None:
        self._counters: Dict[_Key, float] = {}
        self._lock = threading.Lock()

    def record_event(self, metric: str, labels: Mapping[str, str] | None = None, value: float = 1.0) -> None:
        key = (metric, tuple(sorted((labels or {}).items())))
        with self._lock:
            self._counters[key] = self._counters.get(key, 0.0) + float(value)

    def get(self, metric: str, labels: Mapping[str, str] | None = None) -> float:
        return self._counters.get((metric, tuple(sorted((labels or {}).items()))), 0.0)

    def snapshot(self) -> Dict[str, float]:
        out: Dict[str, float] = {}
        with self._lock:
            items = list(self._counters.items())
        for (metric, labels), val in items:
            if not labels:
                out[metric] = val
            else:
                label_str = ",".join(f"{k}={v}" for k, v in labels)
                out[f"{metric}{{{label_str}}}"] = val
        return out
