from __future__ import annotations

"""Prometheus metrics for the assistant client.

Counters for directive dispatch and snapshot polling, plus a histogram of
send round-trip latency. Recording helpers never raise.
"""

import time
from contextlib import contextmanager
from typing import Iterator

from prometheus_client import Counter, Histogram

DIRECTIVE_DISPATCH = Counter(
    "assistant_directive_dispatch_total",
    "Directive dispatch attempts by action kind and outcome",
    labelnames=("kind", "outcome"),
)

POLL_RESULTS = Counter(
    "assistant_poll_total",
    "Conversation snapshot polls by result",
    labelnames=("result",),
)

# Buckets sized for model round-trips, which run far longer than plain HTTP
SEND_LATENCY = Histogram(
    "assistant_send_latency_seconds",
    "Time from sending a user message to receiving the reply",
    labelnames=("outcome",),
    buckets=(0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 20.0, 30.0, 60.0),
)


def record_dispatch(kind: str, outcome: str) -> None:
    try:
        DIRECTIVE_DISPATCH.labels(kind=kind, outcome=outcome).inc()
    except Exception:
        pass


def record_poll(result: str) -> None:
    try:
        POLL_RESULTS.labels(result=result).inc()
    except Exception:
        pass


@contextmanager
def time_send() -> Iterator[dict]:
    """Observe send latency; the caller sets ``ctx["outcome"]`` before leaving."""
    ctx = {"outcome": "ok"}
    start = time.perf_counter()
    try:
        yield ctx
    except BaseException:
        if ctx["outcome"] == "ok":
            ctx["outcome"] = "error"
        raise
    finally:
        elapsed = time.perf_counter() - start
        try:
            SEND_LATENCY.labels(outcome=ctx["outcome"]).observe(elapsed)
        except Exception:
            pass
