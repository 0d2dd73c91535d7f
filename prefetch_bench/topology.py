"""Broker topology names.

We keep queue/exchange naming in one place so producer and consumers agree.

Layout:
- `<prefix>`            data queue, published to through the default exchange
                        (routing key = queue name) and consumed competitively
- `<prefix>-control`    fan-out exchange carrying the broadcast `start`
- per consumer          exclusive, server-named queue bound to the control
                        exchange, deleted when the consumer goes away

Several independent benchmarks can share one broker by choosing a different
prefix (`--queue-name bench/alice`).
"""

from __future__ import annotations

DEFAULT_PREFIX = "prefetch-test"

# AMQP default exchange: routes by queue name.
DEFAULT_EXCHANGE = ""


def data_queue(prefix: str = DEFAULT_PREFIX) -> str:
    return prefix


def control_exchange(prefix: str = DEFAULT_PREFIX) -> str:
    """Fan-out exchange for the synchronized start broadcast."""
    return f"{prefix}-control"


def control_queue() -> str:
    """Name requested for a consumer's control queue.

    Empty means "let the broker pick"; the queue is exclusive, so the name only
    has to be unique per broker, which the broker guarantees.
    """
    return ""
