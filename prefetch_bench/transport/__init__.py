"""Broker transports.

`open_connection(address)` picks a backend from the URL scheme:

- `amqp://`, `amqps://`  RabbitMQ or any AMQP 0-9-1 broker (pika)
- `mqtt://`              MQTT v5 broker (paho-mqtt)
- `memory://<name>`      in-process broker, for tests and dry runs

Backends are imported lazily so a memory-only run does not need the broker
client libraries to be importable.
"""

from __future__ import annotations

from urllib.parse import urlsplit

from ..errors import ConfigurationError
from .base import Channel, ConnectOptions, Connection, Delivery, DeliveryStream, ExchangeKind, StreamEnded, StreamEvent

SCHEMES = ("amqp", "amqps", "mqtt", "memory")


def scheme_of(address: str) -> str:
    scheme = urlsplit(address).scheme.lower()
    if scheme not in SCHEMES:
        raise ConfigurationError("broker_address", f"unsupported scheme {scheme!r} (expected one of {SCHEMES})")
    return scheme


def open_connection(address: str, options: ConnectOptions | None = None) -> Connection:
    scheme = scheme_of(address)
    if scheme in ("amqp", "amqps"):
        from . import amqp

        return amqp.connect(address, options)
    if scheme == "mqtt":
        from . import mqtt

        return mqtt.connect(address, options)

    from . import memory

    return memory.connect(address, options)


__all__ = [
    "Channel",
    "ConnectOptions",
    "Connection",
    "Delivery",
    "DeliveryStream",
    "ExchangeKind",
    "StreamEnded",
    "StreamEvent",
    "open_connection",
    "scheme_of",
]
