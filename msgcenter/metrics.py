from collections import defaultdict
from threading import Lock
from time import perf_counter


class MetricsRegistry:
    """Thread-safe counters and timers for one bus, rendered in Prometheus text format."""

    def __init__(self, prefix: str = "msgcenter") -> None:
        self.prefix = prefix
        self._counters: dict[str, float] = defaultdict(float)
        self._timers_sum: dict[str, float] = defaultdict(float)
        self._timers_count: dict[str, float] = defaultdict(float)
        self._lock = Lock()

    def _key(self, name: str) -> str:
        return f"{self.prefix}_{name}" if self.prefix else name

    def inc(self, name: str, value: float = 1.0) -> None:
        with self._lock:
            self._counters[self._key(name)] += value

    def observe_ms(self, name: str, value_ms: float) -> None:
        key = self._key(name)
        with self._lock:
            self._timers_sum[key] += max(0.0, value_ms)
            self._timers_count[key] += 1.0

    def track_ms(self, name: str):
        registry = self

        class _Timer:
            def __enter__(self):
                self._start = perf_counter()
                return self

            def __exit__(self, exc_type, exc_val, exc_tb):
                duration_ms = (perf_counter() - self._start) * 1000.0
                registry.observe_ms(name, duration_ms)

        return _Timer()

    def counter(self, name: str) -> float:
        with self._lock:
            return self._counters.get(self._key(name), 0.0)

    def snapshot(self) -> dict[str, float]:
        with self._lock:
            data = dict(self._counters)
            for key, total in self._timers_sum.items():
                data[f"{key}_sum_ms"] = total
                data[f"{key}_count"] = self._timers_count[key]
        return data

    def render_prometheus(self) -> str:
        with self._lock:
            counters = dict(self._counters)
            timers_sum = dict(self._timers_sum)
            timers_count = dict(self._timers_count)

        lines: list[str] = []
        for key in sorted(counters.keys()):
            lines.append(f"# TYPE {key} counter")
            lines.append(f"{key} {counters[key]:.6f}")

        for key in sorted(timers_sum.keys()):
            sum_key = f"{key}_sum_ms"
            cnt_key = f"{key}_count"
            lines.append(f"# TYPE {sum_key} gauge")
            lines.append(f"{sum_key} {timers_sum[key]:.6f}")
            lines.append(f"# TYPE {cnt_key} counter")
            lines.append(f"{cnt_key} {timers_count[key]:.0f}")

        return "\n".join(lines) + "\n"
