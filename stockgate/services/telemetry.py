from __future__ import annotations

from collections import defaultdict, deque
from dataclasses import dataclass
import time
from typing import Deque


@dataclass(frozen=True)
class RequestSample:
    ts: float
    path: str
    status_code: int
    latency_ms: float


_request_samples: Deque[RequestSample] = deque(maxlen=20000)
_counters: dict[str, int] = defaultdict(int)


def record_request(*, path: str, status_code: int, latency_ms: float) -> None:
    # Track request latency and status for ops visibility.
    _request_samples.append(
        RequestSample(ts=time.time(), path=path, status_code=status_code, latency_ms=latency_ms)
    )


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def error_rate(window_s: int) -> float | None:
    # Share of 5xx responses over the window; None when there is no traffic.
    cutoff = time.time() - window_s
    samples = [sample for sample in _request_samples if sample.ts >= cutoff]
    if not samples:
        return None
    failures = sum(1 for sample in samples if sample.status_code >= 500)
    return failures / len(samples)


def reset_telemetry() -> None:
    # Clear in-process samples for deterministic tests.
    _request_samples.clear()
    _counters.clear()
