"""AMQP 0-9-1 backend built on pika's BlockingConnection.

Why blocking:
- Both roles are strictly sequential (publish, sleep, publish / receive,
  work, ack), which is exactly the programming model of `BlockingChannel`.
- `BlockingConnection.sleep()` keeps heartbeats flowing while we pace sends
  or simulate work, so long runs are not dropped by the broker.

Mapping:
- `set_prefetch` is `basic.qos(prefetch_count, global_qos)`.
- `subscribe` wraps `BlockingChannel.consume()` with manual acks. pika ends
  that generator when the broker cancels the consumer, and raises when the
  channel/connection closes; both become a trailing `StreamEnded`.
- `close()` on a stream cancels the consumer; pika rejects (requeues) any
  deliveries that were prefetched but never handed to us.
"""

from __future__ import annotations

from typing import Iterator

import pika
import pika.exceptions

from ..envelope import decode_envelope
from ..errors import BrokerConnectionError, TransportOperationError
from .base import Channel, ConnectOptions, Connection, Delivery, DeliveryStream, ExchangeKind, StreamEnded, StreamEvent


def connect(
    address: str,
    options: ConnectOptions | None = None,
    *,
    heartbeat: int = 30,
    blocked_connection_timeout: int = 60,
) -> "AmqpConnection":
    # AMQP negotiates prefetch per channel (basic.qos), so `options` has nothing to add.
    try:
        params = pika.URLParameters(address)
    except ValueError as e:
        raise TransportOperationError(f"invalid AMQP address {address!r}: {e}") from e
    params.heartbeat = heartbeat
    params.blocked_connection_timeout = blocked_connection_timeout

    try:
        conn = pika.BlockingConnection(params)
    except pika.exceptions.AMQPConnectionError as e:
        raise BrokerConnectionError(f"{type(e).__name__}: {e}") from e
    except OSError as e:
        raise BrokerConnectionError(str(e)) from e
    return AmqpConnection(conn)


class AmqpConnection(Connection):
    def __init__(self, conn: pika.BlockingConnection) -> None:
        self._conn = conn

    def open_channel(self) -> "AmqpChannel":
        try:
            return AmqpChannel(self._conn.channel())
        except pika.exceptions.AMQPError as e:
            raise TransportOperationError(f"open channel failed: {e!r}") from e

    def sleep(self, seconds: float) -> None:
        if seconds <= 0:
            return
        try:
            self._conn.sleep(seconds)
        except pika.exceptions.AMQPError as e:
            raise TransportOperationError(f"connection lost while sleeping: {e!r}") from e

    def close(self) -> None:
        if self._conn.is_closed:
            return
        try:
            self._conn.close()
        except pika.exceptions.AMQPError as e:
            raise TransportOperationError(f"close failed: {e!r}") from e


class AmqpChannel(Channel):
    def __init__(self, ch: pika.adapters.blocking_connection.BlockingChannel) -> None:
        super().__init__()
        self._ch = ch

    def declare_queue(
        self,
        name: str,
        *,
        durable: bool = False,
        exclusive: bool = False,
        auto_delete: bool = False,
    ) -> str:
        try:
            result = self._ch.queue_declare(
                queue=name, durable=durable, exclusive=exclusive, auto_delete=auto_delete
            )
        except pika.exceptions.AMQPError as e:
            raise TransportOperationError(f"queue_declare {name!r} failed: {e!r}") from e
        return result.method.queue

    def declare_exchange(self, name: str, kind: ExchangeKind, *, auto_delete: bool = False) -> str:
        try:
            self._ch.exchange_declare(exchange=name, exchange_type=kind.value, auto_delete=auto_delete)
        except pika.exceptions.AMQPError as e:
            raise TransportOperationError(f"exchange_declare {name!r} failed: {e!r}") from e
        return name

    def bind(self, queue: str, exchange: str, routing_key: str = "") -> None:
        try:
            self._ch.queue_bind(queue=queue, exchange=exchange, routing_key=routing_key or None)
        except pika.exceptions.AMQPError as e:
            raise TransportOperationError(f"queue_bind {queue!r} -> {exchange!r} failed: {e!r}") from e

    def publish(self, exchange: str, routing_key: str, body: bytes) -> None:
        try:
            self._ch.basic_publish(exchange=exchange, routing_key=routing_key, body=body)
        except pika.exceptions.AMQPError as e:
            raise TransportOperationError(f"publish to {exchange!r}/{routing_key!r} failed: {e!r}") from e

    def ack(self, delivery: Delivery) -> None:
        try:
            self._ch.basic_ack(delivery_tag=delivery.delivery_tag)
        except pika.exceptions.AMQPError as e:
            raise TransportOperationError(f"ack {delivery.delivery_tag} failed: {e!r}") from e

    def close(self) -> None:
        if not self._ch.is_open:
            return
        try:
            self._ch.close()
        except pika.exceptions.AMQPError as e:
            raise TransportOperationError(f"channel close failed: {e!r}") from e

    def _apply_prefetch(self, count: int, global_: bool) -> None:
        try:
            self._ch.basic_qos(prefetch_count=count, global_qos=global_)
        except pika.exceptions.AMQPError as e:
            raise TransportOperationError(f"basic_qos failed: {e!r}") from e

    def _subscribe(self, queue: str) -> "AmqpDeliveryStream":
        return AmqpDeliveryStream(self._ch, queue)


class AmqpDeliveryStream(DeliveryStream):
    def __init__(self, ch: pika.adapters.blocking_connection.BlockingChannel, queue: str) -> None:
        self._ch = ch
        self._queue = queue
        self._closed = False

    def __iter__(self) -> Iterator[StreamEvent]:
        try:
            for method, properties, body in self._ch.consume(self._queue, auto_ack=False):
                yield Delivery(
                    envelope=decode_envelope(body),
                    delivery_tag=method.delivery_tag,
                    redelivered=bool(method.redelivered),
                )
                if self._closed:
                    return
        except (pika.exceptions.ChannelClosed, pika.exceptions.ConnectionClosed) as e:
            if not self._closed:
                yield StreamEnded(f"{type(e).__name__}: {e}")
            return
        except pika.exceptions.AMQPError as e:
            raise TransportOperationError(f"consume {self._queue!r} failed: {e!r}") from e

        if not self._closed:
            yield StreamEnded("consumer cancelled by broker")

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._ch.is_open:
            try:
                self._ch.cancel()
            except pika.exceptions.AMQPError as e:
                raise TransportOperationError(f"cancel consumer failed: {e!r}") from e
