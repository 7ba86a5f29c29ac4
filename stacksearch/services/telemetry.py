from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class RequestSample:
    ts: float
    path: str
    route_class: str
    status_code: int
    latency_ms: float


@dataclass(frozen=True)
class ExternalCallSample:
    ts: float
    integration: str
    latency_ms: float
    success: bool


_request_samples: Deque[RequestSample] = deque(maxlen=20000)
_external_samples: Deque[ExternalCallSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)
_gauges: dict[str, float] = {}


def record_request(*, path: str, route_class: str, status_code: int, latency_ms: float) -> None:
    _request_samples.append(
        RequestSample(
            ts=time.time(),
            path=path,
            route_class=route_class,
            status_code=status_code,
            latency_ms=latency_ms,
        )
    )


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    # One sample per provider call (cms, oauth, embeddings, rerank, vector).
    _external_samples.append(
        ExternalCallSample(
            ts=time.time(),
            integration=integration,
            latency_ms=latency_ms,
            success=success,
        )
    )


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def set_gauge(name: str, value: float) -> None:
    _gauges[name] = float(value)


def _percentile(values: list[float], pct: float) -> float:
    values = sorted(values)
    idx = max(0, math.ceil(pct * len(values)) - 1)
    return values[idx]


def _window_samples(window_s: int) -> list[RequestSample]:
    cutoff = time.time() - window_s
    return [sample for sample in _request_samples if sample.ts >= cutoff]


def availability(window_s: int) -> float | None:
    # Percentage of non-5xx requests over the window.
    samples = _window_samples(window_s)
    if not samples:
        return None
    failures = sum(1 for sample in samples if sample.status_code >= 500)
    return ((len(samples) - failures) / len(samples)) * 100.0


def p95_latency(window_s: int, *, route_class: str | None = None) -> float | None:
    samples = _window_samples(window_s)
    if route_class:
        samples = [sample for sample in samples if sample.route_class == route_class]
    if not samples:
        return None
    return _percentile([sample.latency_ms for sample in samples], 0.95)


def external_call_stats(window_s: int) -> dict[str, dict[str, float | int]]:
    # p95, max and error count per integration for the health endpoint.
    cutoff = time.time() - window_s
    grouped: dict[str, list[ExternalCallSample]] = defaultdict(list)
    for sample in _external_samples:
        if sample.ts >= cutoff:
            grouped[sample.integration].append(sample)
    result: dict[str, dict[str, float | int]] = {}
    for integration, samples in grouped.items():
        latencies = [sample.latency_ms for sample in samples]
        result[integration] = {
            "calls": len(samples),
            "errors": sum(1 for sample in samples if not sample.success),
            "p95": _percentile(latencies, 0.95),
            "max": max(latencies),
        }
    return result


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def gauges_snapshot() -> dict[str, float]:
    return dict(_gauges)


def reset_telemetry() -> None:
    # Tests assert on counters; give each one a clean slate.
    _request_samples.clear()
    _external_samples.clear()
    _counters.clear()
    _gauges.clear()
