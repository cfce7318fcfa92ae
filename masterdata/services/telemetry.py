from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class OperationSample:
    ts: float
    operation: str
    latency_ms: float
    success: bool


_operation_samples: Deque[OperationSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)


def increment_counter(name: str, value: int = 1) -> None:
    # Store counters for conflict rates, crypto failures and audit degradation.
    _counters[name] += value


def get_counter(name: str) -> int:
    return _counters.get(name, 0)


def record_operation(*, operation: str, latency_ms: float, success: bool) -> None:
    # Capture store operation latency for ops dashboards.
    _operation_samples.append(
        OperationSample(
            ts=time.time(),
            operation=operation,
            latency_ms=latency_ms,
            success=success,
        )
    )


def operation_latency(window_s: int) -> dict[str, dict[str, float]]:
    # Aggregate p95/max latency per operation in the window.
    cutoff = time.time() - window_s
    grouped: dict[str, list[float]] = defaultdict(list)
    for sample in _operation_samples:
        if sample.ts < cutoff:
            continue
        grouped[sample.operation].append(sample.latency_ms)
    result: dict[str, dict[str, float]] = {}
    for operation, latencies in grouped.items():
        latencies.sort()
        p95_idx = max(0, math.ceil(0.95 * len(latencies)) - 1)
        result[operation] = {"p95": latencies[p95_idx], "max": latencies[-1]}
    return result


def counters_snapshot() -> dict[str, int]:
    # Return a copy of all counters for metrics reporting.
    return dict(_counters)


def reset_telemetry() -> None:
    _counters.clear()
    _operation_samples.clear()
