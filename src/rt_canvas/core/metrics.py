from __future__ import annotations

from typing import Dict, Iterable, List


class SyncMetrics:
    def __init__(self) -> None:
        self.counters: Dict[str, int] = {
            "ops_sent": 0,
            "ops_received": 0,
            "ops_applied": 0,
            "ops_duplicate": 0,
            "ops_buffered": 0,
            "presence_sent": 0,
            "presence_coalesced": 0,
            "presence_received": 0,
            "peer_connects": 0,
            "peer_disconnects": 0,
        }
        self.latencies_ms: List[float] = []

    @classmethod
    def combine(cls, parts: Iterable["SyncMetrics"]) -> "SyncMetrics":
        total = cls()
        for part in parts:
            for name, count in part.counters.items():
                total.incr(name, count)
            total.latencies_ms.extend(part.latencies_ms)
        return total

    def incr(self, name: str, amount: int = 1) -> None:
        self.counters[name] = self.counters.get(name, 0) + amount

    def record_latency(self, latency_ms: float) -> None:
        self.latencies_ms.append(latency_ms)
        # keep a bounded window
        if len(self.latencies_ms) > 1000:
            del self.latencies_ms[: len(self.latencies_ms) - 1000]

    def p95_latency_ms(self) -> float:
        if not self.latencies_ms:
            return 0.0
        sorted_samples = sorted(self.latencies_ms)
        k = int(0.95 * (len(sorted_samples) - 1))
        return float(sorted_samples[k])

    def summary(self) -> Dict[str, float | int]:
        return {
            "p95_apply_latency_ms": self.p95_latency_ms(),
            **self.counters,
        }

    def render_prometheus(self) -> str:
        lines = [
            "# HELP canvas_events_total Replication events by kind",
            "# TYPE canvas_events_total counter",
        ]
        for name, count in self.counters.items():
            lines.append(f'canvas_events_total{{kind="{name}"}} {count}')
        lines.append("# HELP canvas_apply_latency_p95_ms 95th percentile batch apply latency in ms")
        lines.append("# TYPE canvas_apply_latency_p95_ms gauge")
        lines.append(f"canvas_apply_latency_p95_ms {self.p95_latency_ms()}")
        return "\n".join(lines) + "\n"
