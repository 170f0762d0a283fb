from collections import defaultdict
from threading import Lock
from typing import Dict, Mapping, Optional


class MetricRegistry:
    def __init__(self) -> None:
        self._counters: Dict[str, int] = defaultdict(int)
        self._lock = Lock()

    def inc(self, name: str, labels: Optional[Mapping[str, str]] = None, value: int = 1) -> None:
        key = self._format_key(name, labels)
        with self._lock:
            self._counters[key] += value

    def get(self, name: str, labels: Optional[Mapping[str, str]] = None) -> int:
        key = self._format_key(name, labels)
        with self._lock:
            return self._counters.get(key, 0)

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._counters)

    @staticmethod
    def _format_key(name: str, labels: Optional[Mapping[str, str]]) -> str:
        if not labels:
            return name
        parts = [f"{k}={labels[k]}" for k in sorted(labels.keys())]
        return f"{name}{{{','.join(parts)}}}"


metrics = MetricRegistry()
