"""MQTT v5 backend built on top of paho-mqtt.

Why this exists:
- The same benchmark is useful against MQTT brokers (Mosquitto, EMQX, or the
  RabbitMQ MQTT plugin): MQTT v5 has a direct equivalent of AMQP prefetch.
- paho-mqtt is callback-based; the roles want a blocking delivery stream.

Design:
- `MqttConnection` owns one paho client + its background network loop.
  `on_message` runs on that thread and pushes deliveries into a per-stream
  `queue.Queue`; the role pulls from it synchronously.
- Queues and exchanges are mapped onto topics under a namespace taken from the
  URL path (`mqtt://host:1883/<namespace>`, default `prefetch-bench`):
    default exchange + routing key K   -> topic `<ns>/K`
    exchange X (fan-out)               -> topic `<ns>/X`
    non-exclusive queue Q              -> shared subscription `$share/Q/...`
                                          (competing consumers)
    exclusive queue                    -> plain subscription (every
                                          subscriber gets a copy)
- Prefetch is the CONNECT "Receive Maximum" property: the broker never has
  more than that many unacknowledged QoS 1 messages in flight to us. It can
  only be sent in the handshake, so it arrives through
  `ConnectOptions.receive_maximum`; `set_prefetch` only checks that the
  channel asks for the value the session was opened with.
- A topic buffers nothing for absent subscribers. Without a control channel
  the consumers must be subscribed before the producer publishes (the `run`
  command starts them first); with one, a consumer subscribes to the data
  topic before it starts waiting for `start`.
- A SUBACK carrying a failure reason code (not authorized, shared
  subscriptions unsupported, ...) fails the subscribe call.
- Everything is QoS 1 with manual acknowledgements (`manual_ack=True`).
"""

from __future__ import annotations

import queue
import threading
import uuid
from typing import Any, Iterator
from urllib.parse import unquote, urlsplit

import paho.mqtt.client as mqtt
from paho.mqtt.packettypes import PacketTypes
from paho.mqtt.properties import Properties

from ..envelope import decode_envelope
from ..errors import BrokerConnectionError, TransportOperationError
from .base import Channel, ConnectOptions, Connection, Delivery, DeliveryStream, ExchangeKind, StreamEnded, StreamEvent

DEFAULT_PORT = 1883
DEFAULT_NAMESPACE = "prefetch-bench"
QOS = 1


def topic_for(namespace: str, name: str) -> str:
    return f"{namespace}/{name}"


def share_name(queue_name: str) -> str:
    """Shared-subscription group names may not contain topic separators or wildcards."""
    return "".join("_" if c in "/+#" else c for c in queue_name) or "default"


def subscription_filter(queue_name: str, topic: str, *, exclusive: bool) -> str:
    if exclusive:
        return topic
    return f"$share/{share_name(queue_name)}/{topic}"


def connect(
    address: str,
    options: ConnectOptions | None = None,
    *,
    keepalive: int = 30,
    timeout: float = 5.0,
) -> "MqttConnection":
    options = options or ConnectOptions()
    parts = urlsplit(address)
    if not parts.hostname:
        raise TransportOperationError(f"invalid MQTT address {address!r}")
    namespace = parts.path.strip("/") or DEFAULT_NAMESPACE

    conn = MqttConnection(
        host=parts.hostname,
        port=parts.port or DEFAULT_PORT,
        namespace=namespace,
        username=unquote(parts.username) if parts.username else None,
        password=unquote(parts.password) if parts.password else None,
        client_id=options.client_id,
        receive_maximum=options.receive_maximum,
        keepalive=keepalive,
        timeout=timeout,
    )
    conn.start()
    return conn


class MqttConnection(Connection):
    """Thin wrapper around one paho client shared by all channels."""

    def __init__(
        self,
        *,
        host: str,
        port: int,
        namespace: str = DEFAULT_NAMESPACE,
        username: str | None = None,
        password: str | None = None,
        keepalive: int = 30,
        client_id: str | None = None,
        receive_maximum: int | None = None,
        timeout: float = 5.0,
    ) -> None:
        self.host = host
        self.port = port
        self.namespace = namespace
        self.keepalive = keepalive
        self.timeout = timeout
        self.client_id = client_id or f"prefetch-bench-{uuid.uuid4().hex[:12]}"
        self.receive_maximum = receive_maximum or None

        self._client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.client_id,
            protocol=mqtt.MQTTv5,
            manual_ack=True,
        )
        if username is not None:
            self._client.username_pw_set(username, password)
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_message = self._on_message
        self._client.on_subscribe = self._on_subscribe

        self._lock = threading.Condition()
        self._connack: Any = None
        # SUBACK mid -> failure reason codes (empty when granted)
        self._subacks: dict[int, list[Any]] = {}
        # topic -> stream receiving messages published on it
        self._routes: dict[str, MqttDeliveryStream] = {}

        self._started = False
        self._closing = False

    def start(self) -> None:
        """Connect and start the background network loop."""
        if self._started:
            return
        properties = Properties(PacketTypes.CONNECT)
        if self.receive_maximum:
            properties.ReceiveMaximum = self.receive_maximum

        with self._lock:
            self._connack = None
        try:
            self._client.connect(
                self.host, self.port, keepalive=self.keepalive, clean_start=True, properties=properties
            )
        except OSError as e:
            raise BrokerConnectionError(f"{self.host}:{self.port}: {e}") from e
        self._client.loop_start()

        with self._lock:
            arrived = self._lock.wait_for(lambda: self._connack is not None, self.timeout)
            reason = self._connack
        if not arrived or getattr(reason, "is_failure", False):
            self._client.loop_stop()
            raise BrokerConnectionError(f"{self.host}:{self.port}: CONNACK {reason or 'timed out'}")
        self._started = True

    def stop(self) -> None:
        """Stop and disconnect."""
        if not self._started:
            return
        self._closing = True
        try:
            self._client.disconnect()
        finally:
            self._client.loop_stop()
            self._started = False
            self._closing = False

    def open_channel(self) -> "MqttChannel":
        if not self._started:
            raise TransportOperationError("connection is closed")
        return MqttChannel(self)

    def close(self) -> None:
        self.stop()

    # -------------------- used by channels --------------------

    def publish(self, topic: str, body: bytes) -> None:
        info = self._client.publish(topic, payload=body, qos=QOS)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise TransportOperationError(f"publish to {topic!r} failed: {mqtt.error_string(info.rc)}")

    def subscribe(self, filters: dict[str, str], stream: "MqttDeliveryStream") -> None:
        """Subscribe `filters` (topic -> subscription filter) and wait for SUBACK.

        Raises `TransportOperationError` if the broker refuses any filter; the
        routes registered for `filters` are dropped again in that case.
        """
        with self._lock:
            for topic in filters:
                self._routes[topic] = stream

        try:
            for flt in filters.values():
                self._subscribe_one(flt)
        except TransportOperationError:
            with self._lock:
                for topic in filters:
                    self._routes.pop(topic, None)
            raise

    def _subscribe_one(self, flt: str) -> None:
        rc, mid = self._client.subscribe(flt, qos=QOS)
        if rc != mqtt.MQTT_ERR_SUCCESS:
            raise TransportOperationError(f"subscribe {flt!r} failed: {mqtt.error_string(rc)}")
        with self._lock:
            if not self._lock.wait_for(lambda: mid in self._subacks, self.timeout):
                raise TransportOperationError(f"no SUBACK for {flt!r}")
            failures = self._subacks.pop(mid)
        if failures:
            raise TransportOperationError(f"subscribe {flt!r} refused: {', '.join(str(code) for code in failures)}")

    def unsubscribe(self, filters: dict[str, str]) -> None:
        with self._lock:
            for topic in filters:
                self._routes.pop(topic, None)
        if self._started:
            rc, _mid = self._client.unsubscribe(list(filters.values()))
            if rc not in (mqtt.MQTT_ERR_SUCCESS, mqtt.MQTT_ERR_NO_CONN):
                raise TransportOperationError(f"unsubscribe failed: {mqtt.error_string(rc)}")

    def ack(self, mid: int, qos: int) -> None:
        rc = self._client.ack(mid, qos)
        if rc not in (None, mqtt.MQTT_ERR_SUCCESS):
            raise TransportOperationError(f"ack {mid} failed: {mqtt.error_string(rc)}")

    # -------------------- internal callbacks --------------------

    def _on_connect(self, client, userdata, flags, reason_code, properties) -> None:
        with self._lock:
            self._connack = reason_code
            self._lock.notify_all()

    def _on_subscribe(self, client, userdata, mid, reason_code_list, properties) -> None:
        with self._lock:
            self._subacks[mid] = [rc for rc in reason_code_list if rc.is_failure]
            self._lock.notify_all()

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties) -> None:
        if self._closing:
            return
        with self._lock:
            streams = set(self._routes.values())
        for stream in streams:
            stream._push(StreamEnded(f"disconnected: {reason_code}"))

    def _on_message(self, client: mqtt.Client, userdata: Any, msg: mqtt.MQTTMessage) -> None:
        with self._lock:
            stream = self._routes.get(msg.topic)
        if stream is None:
            # Late message for a subscription we already dropped; release the
            # in-flight slot so the broker does not stall.
            if msg.qos > 0:
                client.ack(msg.mid, msg.qos)
            return
        stream._push(
            Delivery(envelope=decode_envelope(msg.payload), delivery_tag=msg.mid, redelivered=bool(msg.dup)),
            qos=msg.qos,
        )


class MqttChannel(Channel):
    def __init__(self, connection: MqttConnection) -> None:
        super().__init__()
        self._conn = connection
        # queue name -> (exclusive, bound topics)
        self._queues: dict[str, tuple[bool, list[str]]] = {}
        self._streams: list[MqttDeliveryStream] = []

    def declare_queue(
        self,
        name: str,
        *,
        durable: bool = False,
        exclusive: bool = False,
        auto_delete: bool = False,
    ) -> str:
        if not name:
            name = f"excl-{uuid.uuid4().hex[:16]}"
        if name not in self._queues:
            self._queues[name] = (exclusive, [topic_for(self._conn.namespace, name)])
        return name

    def declare_exchange(self, name: str, kind: ExchangeKind, *, auto_delete: bool = False) -> str:
        # Topics need no declaration; routing keys are not used for filtering.
        return name

    def bind(self, queue: str, exchange: str, routing_key: str = "") -> None:
        if queue not in self._queues:
            raise TransportOperationError(f"no queue {queue!r} declared on this channel")
        topics = self._queues[queue][1]
        topic = topic_for(self._conn.namespace, exchange)
        if topic not in topics:
            topics.append(topic)

    def publish(self, exchange: str, routing_key: str, body: bytes) -> None:
        self._conn.publish(topic_for(self._conn.namespace, exchange or routing_key), body)

    def ack(self, delivery: Delivery) -> None:
        for stream in self._streams:
            qos = stream._take_qos(delivery.delivery_tag)
            if qos is not None:
                if qos > 0:
                    self._conn.ack(delivery.delivery_tag, qos)
                return
        raise TransportOperationError(f"unknown delivery tag {delivery.delivery_tag}")

    def close(self) -> None:
        for stream in self._streams:
            stream.close()

    def _apply_prefetch(self, count: int, global_: bool) -> None:
        negotiated = self._conn.receive_maximum
        if (count or None) != negotiated:
            raise TransportOperationError(
                f"prefetch {count} differs from the Receive Maximum {negotiated or 0} sent at connect"
            )

    def _subscribe(self, queue_name: str) -> "MqttDeliveryStream":
        if queue_name not in self._queues:
            raise TransportOperationError(f"no queue {queue_name!r} declared on this channel")
        exclusive, topics = self._queues[queue_name]
        filters = {t: subscription_filter(queue_name, t, exclusive=exclusive) for t in topics}
        stream = MqttDeliveryStream(self._conn, filters)
        self._streams.append(stream)
        self._conn.subscribe(filters, stream)
        return stream


class MqttDeliveryStream(DeliveryStream):
    def __init__(self, connection: MqttConnection, filters: dict[str, str]) -> None:
        self._conn = connection
        self._filters = filters
        self._q: "queue.Queue[StreamEvent | None]" = queue.Queue()
        self._pending: dict[int, int] = {}
        self._pending_lock = threading.Lock()
        self._closed = False

    def __iter__(self) -> Iterator[StreamEvent]:
        while not self._closed:
            event = self._q.get()
            if event is None:
                return
            yield event
            if isinstance(event, StreamEnded):
                return

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._q.put(None)
        self._conn.unsubscribe(self._filters)

    def _push(self, event: StreamEvent, *, qos: int = 0) -> None:
        if isinstance(event, Delivery):
            with self._pending_lock:
                self._pending[event.delivery_tag] = qos
        self._q.put(event)

    def _take_qos(self, tag: int) -> int | None:
        with self._pending_lock:
            return self._pending.pop(tag, None)
