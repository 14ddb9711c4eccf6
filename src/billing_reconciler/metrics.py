"""
In-process counters and timings exposed in Prometheus text format
"""
import time
from collections import defaultdict
from threading import Lock
from typing import Dict, List, Optional, Tuple

LabelKey = Tuple[Tuple[str, str], ...]


def _label_key(labels: Optional[Dict[str, str]]) -> LabelKey:
    return tuple(sorted((labels or {}).items()))


def _render_labels(key: LabelKey) -> str:
    if not key:
        return ""
    return "{" + ",".join(f'{k}="{v}"' for k, v in key) + "}"


class MetricsCollector:
    """Thread-safe counters and duration summaries"""

    MAX_SAMPLES = 1000

    def __init__(self):
        self._lock = Lock()
        self._counters: Dict[str, Dict[LabelKey, float]] = defaultdict(lambda: defaultdict(float))
        self._timings: Dict[str, Dict[LabelKey, List[float]]] = defaultdict(lambda: defaultdict(list))

    def increment_counter(self, name: str, value: float = 1.0, labels: Optional[Dict[str, str]] = None):
        with self._lock:
            self._counters[name][_label_key(labels)] += value

    def observe(self, name: str, value: float, labels: Optional[Dict[str, str]] = None):
        with self._lock:
            samples = self._timings[name][_label_key(labels)]
            samples.append(value)
            if len(samples) > self.MAX_SAMPLES:
                del samples[: len(samples) - self.MAX_SAMPLES]

    def get_counter(self, name: str, labels: Optional[Dict[str, str]] = None) -> float:
        with self._lock:
            return self._counters.get(name, {}).get(_label_key(labels), 0.0)

    def reset(self):
        with self._lock:
            self._counters.clear()
            self._timings.clear()

    def format_prometheus(self) -> str:
        """Counters as-is, timings as count/sum summaries"""
        lines = []
        with self._lock:
            for name in sorted(self._counters):
                for key, value in sorted(self._counters[name].items()):
                    lines.append(f"{name}{_render_labels(key)} {value}")
            for name in sorted(self._timings):
                for key, samples in sorted(self._timings[name].items()):
                    lines.append(f"{name}_count{_render_labels(key)} {len(samples)}")
                    lines.append(f"{name}_sum{_render_labels(key)} {sum(samples)}")
        return "\n".join(lines) + "\n"


_metrics_collector: Optional[MetricsCollector] = None


def get_metrics_collector() -> MetricsCollector:
    """Get global metrics collector instance"""
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector()
    return _metrics_collector


def increment_counter(name: str, value: float = 1.0, labels: Optional[Dict[str, str]] = None):
    get_metrics_collector().increment_counter(name, value, labels)


class Timer:
    """Context manager recording elapsed seconds under a metric name"""

    def __init__(self, name: str, labels: Optional[Dict[str, str]] = None):
        self.name = name
        self.labels = labels or {}
        self.start_time = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        get_metrics_collector().observe(self.name, time.perf_counter() - self.start_time, self.labels)
