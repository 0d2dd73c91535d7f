import paho.mqtt.client as mqtt
import pytest
from paho.mqtt.packettypes import PacketTypes
from paho.mqtt.reasoncodes import ReasonCode

from prefetch_bench.envelope import decode_envelope
from prefetch_bench.errors import TransportOperationError
from prefetch_bench.transport.base import ConnectOptions, Delivery, ExchangeKind
from prefetch_bench.transport.mqtt import MqttChannel, MqttConnection, MqttDeliveryStream


class StubConnection:
    """Stands in for MqttConnection: records what the channel asks for."""

    namespace = "bench"

    def __init__(self, receive_maximum=None):
        self.published = []
        self.subscriptions = []
        self.receive_maximum = receive_maximum
        self.acks = []

    def publish(self, topic, body):
        self.published.append((topic, body))

    def subscribe(self, filters, stream):
        self.subscriptions.append(dict(filters))

    def unsubscribe(self, filters):
        pass

    def ack(self, mid, qos):
        self.acks.append((mid, qos))


def test_data_queue_is_a_shared_subscription():
    conn = StubConnection(receive_maximum=5)
    ch = MqttChannel(conn)
    ch.declare_queue("prefetch-test")
    ch.set_prefetch(5)
    ch.subscribe("prefetch-test")

    assert ch.prefetch == 5
    assert conn.subscriptions == [{"bench/prefetch-test": "$share/prefetch-test/bench/prefetch-test"}]


def test_prefetch_must_match_the_connect_receive_maximum():
    ch = MqttChannel(StubConnection(receive_maximum=5))

    with pytest.raises(TransportOperationError):
        ch.set_prefetch(10)
    assert ch.prefetch is None


def test_unlimited_prefetch_matches_a_connection_without_receive_maximum():
    ch = MqttChannel(StubConnection())
    ch.set_prefetch(0)

    assert ch.prefetch == 0


def test_control_queue_gets_its_own_copy():
    conn = StubConnection()
    ch = MqttChannel(conn)
    ch.declare_exchange("prefetch-test-control", ExchangeKind.FANOUT)
    queue = ch.declare_queue("", exclusive=True, auto_delete=True)
    ch.bind(queue, "prefetch-test-control")
    ch.subscribe(queue)

    filters = conn.subscriptions[0]
    assert filters["bench/prefetch-test-control"] == "bench/prefetch-test-control"


def test_publish_maps_exchange_or_routing_key_to_topic():
    conn = StubConnection()
    ch = MqttChannel(conn)
    ch.publish("", "prefetch-test", b"x")
    ch.publish("prefetch-test-control", "", b"start")

    assert conn.published == [("bench/prefetch-test", b"x"), ("bench/prefetch-test-control", b"start")]


def test_ack_uses_delivery_qos_and_rejects_unknown_tags():
    conn = StubConnection()
    ch = MqttChannel(conn)
    ch.declare_queue("q")
    stream = ch.subscribe("q")
    delivery = Delivery(envelope=decode_envelope(b"payload"), delivery_tag=42)
    stream._push(delivery, qos=1)

    assert next(iter(stream)) == delivery
    ch.ack(delivery)
    assert conn.acks == [(42, 1)]

    with pytest.raises(TransportOperationError):
        ch.ack(delivery)


def _answer_subscribe(monkeypatch, conn, identifier):
    """Make the client's SUBACK for mid 5 carry `identifier`."""

    def subscribe(flt, qos):
        conn._on_subscribe(conn._client, None, 5, [ReasonCode(PacketTypes.SUBACK, identifier=identifier)], None)
        return mqtt.MQTT_ERR_SUCCESS, 5

    monkeypatch.setattr(conn._client, "subscribe", subscribe)


def test_refused_subscription_raises_and_drops_routes(monkeypatch):
    conn = MqttConnection(host="localhost", port=1883, namespace="bench", timeout=0.5)
    # 0x9E: shared subscriptions not supported
    _answer_subscribe(monkeypatch, conn, 0x9E)
    filters = {"bench/q": "$share/q/bench/q"}

    with pytest.raises(TransportOperationError, match="refused"):
        conn.subscribe(filters, MqttDeliveryStream(conn, filters))
    assert conn._routes == {}


def test_granted_subscription_keeps_its_route(monkeypatch):
    conn = MqttConnection(host="localhost", port=1883, namespace="bench", timeout=0.5)
    # 0x01: granted QoS 1
    _answer_subscribe(monkeypatch, conn, 0x01)
    filters = {"bench/q": "$share/q/bench/q"}
    stream = MqttDeliveryStream(conn, filters)

    conn.subscribe(filters, stream)
    assert conn._routes == {"bench/q": stream}


def test_connect_options_reach_the_client():
    options = ConnectOptions(client_id="prefetch-bench-c1-42", receive_maximum=3)
    conn = MqttConnection(
        host="localhost",
        port=1883,
        client_id=options.client_id,
        receive_maximum=options.receive_maximum,
    )

    assert conn.client_id == "prefetch-bench-c1-42"
    assert conn.receive_maximum == 3
