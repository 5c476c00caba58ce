"""In-process request metrics rendered in the Prometheus text format."""

from __future__ import annotations

import threading
from collections import defaultdict
from typing import Any

PROM_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"
_HISTOGRAM_BUCKETS: tuple[float, ...] = (0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0)


def _new_histogram_state() -> dict[str, Any]:
    return {"buckets": [0] * (len(_HISTOGRAM_BUCKETS) + 1), "count": 0, "sum": 0.0}


class MetricsRegistry:
    __slots__ = ("_lock", "_counter", "_histogram")

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counter: defaultdict[tuple[str, str], int] = defaultdict(int)
        self._histogram: defaultdict[tuple[str, str], dict[str, Any]] = defaultdict(_new_histogram_state)

    def record(self, *, provider: str, status: str, latency_ms: float) -> None:
        provider_label = provider or "unknown"
        status_label = status or "unknown"
        latency_seconds = max(float(latency_ms or 0.0) / 1000.0, 0.0)
        with self._lock:
            self._counter[(provider_label, status_label)] += 1
            hist_state = self._histogram[(provider_label, status_label)]
            buckets = hist_state["buckets"]
            for idx, bound in enumerate(_HISTOGRAM_BUCKETS):
                if latency_seconds <= bound:
                    buckets[idx] += 1
            buckets[-1] += 1
            hist_state["count"] += 1
            hist_state["sum"] += latency_seconds

    def count(self, provider: str, status: str) -> int:
        with self._lock:
            return self._counter.get((provider, status), 0)

    def render(self) -> str:
        with self._lock:
            lines: list[str] = [
                "# HELP gateway_requests_total Total number of chat completion requests",
                "# TYPE gateway_requests_total counter",
            ]
            for (provider, status), value in sorted(self._counter.items()):
                lines.append(
                    f'gateway_requests_total{{provider="{provider}",status="{status}"}} {value}'
                )
            lines.append("# HELP gateway_request_latency_seconds Chat completion latency")
            lines.append("# TYPE gateway_request_latency_seconds histogram")
            for (provider, status), state in sorted(self._histogram.items()):
                buckets = state["buckets"]
                for idx, bound in enumerate(_HISTOGRAM_BUCKETS):
                    le_value = format(bound, ".6g")
                    lines.append(
                        f'gateway_request_latency_seconds_bucket{{provider="{provider}",status="{status}",le="{le_value}"}} {buckets[idx]}'
                    )
                lines.append(
                    f'gateway_request_latency_seconds_bucket{{provider="{provider}",status="{status}",le="+Inf"}} {buckets[-1]}'
                )
                lines.append(
                    f'gateway_request_latency_seconds_count{{provider="{provider}",status="{status}"}} {state["count"]}'
                )
                lines.append(
                    f'gateway_request_latency_seconds_sum{{provider="{provider}",status="{status}"}} {state["sum"]}'
                )
        return "\n".join(lines) + "\n"
