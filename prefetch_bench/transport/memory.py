from __future__ import annotations

# In-process broker.
#
# Implements the same interface as the AMQP/MQTT backends with AMQP-like
# semantics, so whole benchmark runs can be exercised without a broker:
# - default exchange routes by queue name, fan-out copies to every bound queue
# - a queue with several subscribers is consumed competitively
# - each channel holds at most `prefetch` unacknowledged deliveries
# - exclusive / auto-delete queues go away with their owner
# - unacknowledged deliveries go back to the head of their queue, flagged
#   redelivered, when the channel closes
#
# Fault injection (for tests): refuse the first N connection attempts, fail
# publishing after N successful publishes, cancel consumers broker-side.
# `drop_unsubscribed=True` gives MQTT topic semantics: a message for a queue
# nobody is subscribed to is discarded instead of buffered.
#
# Address form: `memory://<broker-name>`. Brokers live in a process-wide
# registry so every connection to the same name shares state.

import itertools
import threading
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Iterator

from ..envelope import decode_envelope
from ..errors import BrokerConnectionError, TransportOperationError
from .base import Channel, ConnectOptions, Connection, Delivery, DeliveryStream, ExchangeKind, StreamEnded, StreamEvent


@dataclass
class _Message:
    body: bytes
    redelivered: bool = False


@dataclass
class _Queue:
    name: str
    exclusive: bool = False
    auto_delete: bool = False
    owner: "MemoryConnection | None" = None
    messages: deque[_Message] = field(default_factory=deque)
    consumers: list["MemoryDeliveryStream"] = field(default_factory=list)


class MemoryBroker:
    """Shared broker state. All mutation happens under one condition variable."""

    def __init__(
        self,
        *,
        refuse_connections: int = 0,
        fail_publish_after: int | None = None,
        drop_unsubscribed: bool = False,
    ) -> None:
        self._cond = threading.Condition()
        self._queues: dict[str, _Queue] = {}
        self._exchanges: dict[str, ExchangeKind] = {}
        self._bindings: dict[str, list[tuple[str, str]]] = {}
        self._tags = itertools.count(1)

        self.refuse_connections = refuse_connections
        self.fail_publish_after = fail_publish_after
        self.drop_unsubscribed = drop_unsubscribed
        self.connection_attempts = 0
        self.published: list[tuple[str, str, bytes]] = []
        self.acked: list[int] = []

    # -------------------- client-facing --------------------

    def connect(self) -> "MemoryConnection":
        with self._cond:
            self.connection_attempts += 1
            if self.refuse_connections > 0:
                self.refuse_connections -= 1
                raise BrokerConnectionError("connection refused")
        return MemoryConnection(self)

    # -------------------- inspection / fault injection --------------------

    def queue_depth(self, name: str) -> int:
        with self._cond:
            q = self._queues.get(name)
            return len(q.messages) if q else 0

    def bound_queues(self, exchange: str) -> list[str]:
        with self._cond:
            return [q for q, _rk in self._bindings.get(exchange, [])]

    def wait_for_bindings(self, exchange: str, count: int, timeout: float = 5.0) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: len(self._bindings.get(exchange, [])) >= count, timeout)

    def wait_for_consumers(self, queue: str, count: int, timeout: float = 5.0) -> bool:
        with self._cond:
            return self._cond.wait_for(
                lambda: queue in self._queues and len(self._queues[queue].consumers) >= count, timeout
            )

    def cancel_consumers(self, queue: str) -> None:
        """Simulate a broker-initiated consumer cancellation."""
        with self._cond:
            q = self._queues.get(queue)
            if q is not None:
                for stream in list(q.consumers):
                    stream._cancelled = "consumer cancelled by broker"
                q.consumers.clear()
            self._cond.notify_all()

    # -------------------- internals (caller holds the lock) --------------------

    def _declare_queue(self, name: str, exclusive: bool, auto_delete: bool, owner: "MemoryConnection") -> str:
        if not name:
            name = f"amq.gen-{uuid.uuid4().hex[:22]}"
        q = self._queues.get(name)
        if q is None:
            self._queues[name] = _Queue(
                name=name,
                exclusive=exclusive,
                auto_delete=auto_delete,
                owner=owner if exclusive else None,
            )
        elif q.exclusive and q.owner is not owner:
            raise TransportOperationError(f"queue {name!r} is exclusive to another connection")
        return name

    def _delete_queue(self, name: str) -> None:
        self._queues.pop(name, None)
        for exchange, bound in self._bindings.items():
            self._bindings[exchange] = [(q, rk) for q, rk in bound if q != name]

    def _route(self, exchange: str, routing_key: str) -> list[_Queue]:
        if exchange == "":
            q = self._queues.get(routing_key)
            return [q] if q else []

        kind = self._exchanges.get(exchange)
        if kind is None:
            raise TransportOperationError(f"no exchange {exchange!r}")
        targets = []
        for qname, rk in self._bindings.get(exchange, []):
            if kind is ExchangeKind.FANOUT or rk == routing_key:
                q = self._queues.get(qname)
                if q is not None:
                    targets.append(q)
        return targets

    def _publish(self, exchange: str, routing_key: str, body: bytes) -> None:
        if self.fail_publish_after is not None and len(self.published) >= self.fail_publish_after:
            raise TransportOperationError("simulated publish fault")
        self.published.append((exchange, routing_key, body))
        for q in self._route(exchange, routing_key):
            if self.drop_unsubscribed and not q.consumers:
                continue
            q.messages.append(_Message(body=body))
        self._cond.notify_all()

    def _drop_owner(self, owner: "MemoryConnection") -> None:
        for name, q in list(self._queues.items()):
            if q.owner is owner:
                self._delete_queue(name)


_registry: dict[str, MemoryBroker] = {}
_registry_lock = threading.Lock()


def get_broker(name: str) -> MemoryBroker:
    with _registry_lock:
        broker = _registry.get(name)
        if broker is None:
            broker = _registry[name] = MemoryBroker()
        return broker


def register_broker(name: str, broker: MemoryBroker) -> None:
    with _registry_lock:
        _registry[name] = broker


def connect(address: str, options: ConnectOptions | None = None) -> "MemoryConnection":
    name = address.split("://", 1)[1] if "://" in address else address
    return get_broker(name or "default").connect()


class MemoryConnection(Connection):
    def __init__(self, broker: MemoryBroker) -> None:
        self.broker = broker
        self.closed = False
        self._channels: list[MemoryChannel] = []

    def open_channel(self) -> "MemoryChannel":
        if self.closed:
            raise TransportOperationError("connection is closed")
        ch = MemoryChannel(self)
        self._channels.append(ch)
        return ch

    def close(self) -> None:
        if self.closed:
            return
        for ch in self._channels:
            ch.close()
        with self.broker._cond:
            self.broker._drop_owner(self)
            self.closed = True
            self.broker._cond.notify_all()


class MemoryChannel(Channel):
    def __init__(self, connection: MemoryConnection) -> None:
        super().__init__()
        self.connection = connection
        self.broker = connection.broker
        self.closed = False
        self.global_prefetch = False
        # delivery tag -> (queue, message), for requeue on close
        self._unacked: dict[int, tuple[_Queue, _Message]] = {}
        self._streams: list[MemoryDeliveryStream] = []

    def _check_open(self) -> None:
        if self.closed or self.connection.closed:
            raise TransportOperationError("channel is closed")

    def declare_queue(
        self,
        name: str,
        *,
        durable: bool = False,
        exclusive: bool = False,
        auto_delete: bool = False,
    ) -> str:
        self._check_open()
        with self.broker._cond:
            return self.broker._declare_queue(name, exclusive, auto_delete, self.connection)

    def declare_exchange(self, name: str, kind: ExchangeKind, *, auto_delete: bool = False) -> str:
        self._check_open()
        with self.broker._cond:
            existing = self.broker._exchanges.get(name)
            if existing is not None and existing is not kind:
                raise TransportOperationError(f"exchange {name!r} already declared as {existing.value}")
            self.broker._exchanges[name] = kind
        return name

    def bind(self, queue: str, exchange: str, routing_key: str = "") -> None:
        self._check_open()
        with self.broker._cond:
            if queue not in self.broker._queues:
                raise TransportOperationError(f"no queue {queue!r}")
            if exchange not in self.broker._exchanges:
                raise TransportOperationError(f"no exchange {exchange!r}")
            self.broker._bindings.setdefault(exchange, []).append((queue, routing_key))
            self.broker._cond.notify_all()

    def publish(self, exchange: str, routing_key: str, body: bytes) -> None:
        self._check_open()
        with self.broker._cond:
            self.broker._publish(exchange, routing_key, bytes(body))

    def ack(self, delivery: Delivery) -> None:
        self._check_open()
        with self.broker._cond:
            if delivery.delivery_tag not in self._unacked:
                raise TransportOperationError(f"unknown delivery tag {delivery.delivery_tag}")
            del self._unacked[delivery.delivery_tag]
            self.broker.acked.append(delivery.delivery_tag)
            self.broker._cond.notify_all()

    def close(self) -> None:
        if self.closed:
            return
        for stream in list(self._streams):
            stream.close()
        with self.broker._cond:
            self.closed = True
            self._requeue_unacked()
            self.broker._cond.notify_all()

    def _apply_prefetch(self, count: int, global_: bool) -> None:
        self._check_open()
        self.global_prefetch = global_

    def _subscribe(self, queue: str) -> "MemoryDeliveryStream":
        self._check_open()
        with self.broker._cond:
            q = self.broker._queues.get(queue)
            if q is None:
                raise TransportOperationError(f"no queue {queue!r}")
            stream = MemoryDeliveryStream(self, q)
            q.consumers.append(stream)
            self._streams.append(stream)
            self.broker._cond.notify_all()
        return stream

    def _requeue_unacked(self) -> None:
        # Oldest first at the head of the queue, flagged as redelivered.
        for tag in sorted(self._unacked, reverse=True):
            q, msg = self._unacked[tag]
            if self.broker._queues.get(q.name) is q:
                q.messages.appendleft(_Message(body=msg.body, redelivered=True))
        self._unacked.clear()

    def _has_credit(self) -> bool:
        return not self._prefetch or len(self._unacked) < self._prefetch


class MemoryDeliveryStream(DeliveryStream):
    def __init__(self, channel: MemoryChannel, queue: _Queue) -> None:
        self._channel = channel
        self._queue = queue
        self._closed = False
        self._cancelled: str | None = None

    def __iter__(self) -> Iterator[StreamEvent]:
        while True:
            event = self._next_event()
            if event is None:
                return
            yield event
            if isinstance(event, StreamEnded):
                return

    def _next_event(self) -> StreamEvent | None:
        broker = self._channel.broker
        with broker._cond:
            while True:
                if self._closed:
                    return None
                if self._cancelled is not None:
                    return StreamEnded(self._cancelled)
                if self._channel.closed or self._channel.connection.closed:
                    return StreamEnded("channel closed")
                if self._queue.messages and self._channel._has_credit():
                    msg = self._queue.messages.popleft()
                    tag = next(broker._tags)
                    self._channel._unacked[tag] = (self._queue, msg)
                    return Delivery(
                        envelope=decode_envelope(msg.body),
                        delivery_tag=tag,
                        redelivered=msg.redelivered,
                    )
                broker._cond.wait()

    def close(self) -> None:
        broker = self._channel.broker
        with broker._cond:
            if self._closed:
                return
            self._closed = True
            q = self._queue
            if self in q.consumers:
                q.consumers.remove(self)
            if q.auto_delete and not q.consumers:
                broker._delete_queue(q.name)
            broker._cond.notify_all()
