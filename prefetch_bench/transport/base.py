from __future__ import annotations

# Broker client interface used by the producer and consumer roles.
#
# Backends (AMQP, MQTT, in-memory) subclass `Connection`, `Channel` and
# `DeliveryStream`. The roles only ever talk to these classes, so the
# coordination logic can be driven by the in-memory broker in tests.
#
# `Channel` enforces the prefetch rule for every backend: the limit is set at
# most once, and never after the channel has subscribed.

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, Union

from ..envelope import Envelope
from ..errors import TransportOperationError


@dataclass(frozen=True)
class ConnectOptions:
    """Per-process connection settings.

    `receive_maximum` is the prefetch limit for transports that can only
    negotiate it in the handshake (MQTT). Others ignore it and take the limit
    from `Channel.set_prefetch`.
    """

    client_id: str | None = None
    receive_maximum: int | None = None


class ExchangeKind(Enum):
    DIRECT = "direct"
    FANOUT = "fanout"


@dataclass(frozen=True)
class Delivery:
    envelope: Envelope
    delivery_tag: int
    redelivered: bool = False


@dataclass(frozen=True)
class StreamEnded:
    """Non-delivery event: broker cancelled the consumer or the channel closed."""

    reason: str


StreamEvent = Union[Delivery, StreamEnded]


class DeliveryStream(ABC):
    """Blocking, pull-based sequence of deliveries.

    Iteration yields `Delivery` objects in broker order. If the stream ends for
    any reason other than `close()`, a single `StreamEnded` is yielded last.
    """

    @abstractmethod
    def __iter__(self) -> Iterator[StreamEvent]:
        ...

    @abstractmethod
    def close(self) -> None:
        """Cancel the subscription. Safe to call more than once."""


class Channel(ABC):
    def __init__(self) -> None:
        self._prefetch: int | None = None
        self._subscribed = False

    @property
    def prefetch(self) -> int | None:
        return self._prefetch

    @abstractmethod
    def declare_queue(
        self,
        name: str,
        *,
        durable: bool = False,
        exclusive: bool = False,
        auto_delete: bool = False,
    ) -> str:
        """Declare a queue and return its (possibly broker-assigned) name."""

    @abstractmethod
    def declare_exchange(self, name: str, kind: ExchangeKind, *, auto_delete: bool = False) -> str:
        ...

    @abstractmethod
    def bind(self, queue: str, exchange: str, routing_key: str = "") -> None:
        ...

    @abstractmethod
    def publish(self, exchange: str, routing_key: str, body: bytes) -> None:
        ...

    @abstractmethod
    def ack(self, delivery: Delivery) -> None:
        ...

    @abstractmethod
    def close(self) -> None:
        ...

    def set_prefetch(self, count: int, *, global_: bool = False) -> None:
        """Bound the number of unacknowledged deliveries (0 = unlimited)."""
        if count < 0:
            raise ValueError("prefetch count must be >= 0")
        if self._subscribed:
            raise TransportOperationError("prefetch cannot change once the channel is consuming")
        if self._prefetch is not None:
            raise TransportOperationError(f"prefetch already set to {self._prefetch}")
        self._apply_prefetch(count, global_)
        self._prefetch = count

    def subscribe(self, queue: str) -> DeliveryStream:
        """Start consuming `queue` with manual acknowledgements."""
        stream = self._subscribe(queue)
        self._subscribed = True
        return stream

    @abstractmethod
    def _apply_prefetch(self, count: int, global_: bool) -> None:
        ...

    @abstractmethod
    def _subscribe(self, queue: str) -> DeliveryStream:
        ...


class Connection(ABC):
    @abstractmethod
    def open_channel(self) -> Channel:
        ...

    @abstractmethod
    def close(self) -> None:
        ...

    def sleep(self, seconds: float) -> None:
        """Pause the caller while keeping the connection serviced."""
        if seconds > 0:
            time.sleep(seconds)
