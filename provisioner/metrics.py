from collections import Counter, defaultdict
from threading import Lock


class RunMetrics:
    """Counters and step timings for a single orchestration run."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._counters: Counter[str] = Counter()
        self._durations: defaultdict[str, float] = defaultdict(float)

    def inc(self, key: str, amount: int = 1) -> None:
        with self._lock:
            self._counters[key] += amount

    def observe(self, step: str, seconds: float) -> None:
        with self._lock:
            self._durations[step] += seconds

    def snapshot(self) -> dict[str, float]:
        with self._lock:
            out: dict[str, float] = {k: float(v) for k, v in self._counters.items()}
            for step, total in self._durations.items():
                out[f"step_{step}_seconds_total"] = round(total, 3)
            return out
