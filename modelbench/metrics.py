import time
import threading
from collections import defaultdict, deque
from typing import Deque, Dict, List, Tuple

# Latency series kept per (kind, model id)
LATENCY_KINDS = ("load", "detection")
QUANTILES = (0.5, 0.95)


def _quantile(sorted_values: List[float], q: float) -> float:
    if not sorted_values:
        return 0.0
    return float(sorted_values[int(q * (len(sorted_values) - 1))])


class Metrics:
    """Process-wide counters, gauges and per-artifact latency samples.

    ``snapshot`` renders Prometheus text exposition.
    """

    def __init__(self, window: int = 5000) -> None:
        self._lock = threading.Lock()
        self._window = window
        self.counters: Dict[str, int] = defaultdict(int)
        self.gauges: Dict[str, float] = defaultdict(float)
        self.latency_ms: Dict[Tuple[str, str], Deque[float]] = {}

    def inc(self, name: str, value: int = 1) -> None:
        with self._lock:
            self.counters[name] += value

    def set_gauge(self, name: str, value: float) -> None:
        with self._lock:
            self.gauges[name] = value

    def observe_latency_ms(self, kind: str, model_id: str, value: float) -> None:
        if kind not in LATENCY_KINDS:
            raise ValueError(f"unknown latency kind: {kind}")
        with self._lock:
            series = self.latency_ms.get((kind, model_id))
            if series is None:
                series = self.latency_ms[(kind, model_id)] = deque(maxlen=self._window)
            series.append(float(value))

    def get(self, name: str) -> float:
        with self._lock:
            if name in self.counters:
                return float(self.counters[name])
            return float(self.gauges.get(name, 0.0))

    def snapshot(self) -> str:
        with self._lock:
            lines = []
            for k, v in sorted(self.counters.items()):
                lines.append(f"# TYPE {k} counter")
                lines.append(f"{k} {v}")
            for k, v in sorted(self.gauges.items()):
                lines.append(f"# TYPE {k} gauge")
                lines.append(f"{k} {v}")

            for kind in LATENCY_KINDS:
                name = f"{kind}_latency_ms"
                lines.append(f"# TYPE {name} summary")
                for (k, model_id), series in sorted(self.latency_ms.items()):
                    if k != kind:
                        continue
                    values = sorted(series)
                    for q in QUANTILES:
                        lines.append(f'{name}{{model="{model_id}",quantile="{q}"}} {_quantile(values, q)}')
                    lines.append(f'{name}_sum{{model="{model_id}"}} {sum(values)}')
                    lines.append(f'{name}_count{{model="{model_id}"}} {len(values)}')

            lines.append("# TYPE metrics_generated_at gauge")
            lines.append(f"metrics_generated_at {time.time()}")
            return "\n".join(lines) + "\n"


metrics = Metrics()
