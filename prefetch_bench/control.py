from __future__ import annotations

# Out-of-band start synchronization.
#
# The producer broadcasts one `start` on a fan-out exchange. Every consumer
# binds and subscribes its own exclusive queue to that exchange *before* it
# starts waiting, so consumers launched at different times all see the same
# signal and begin measuring together. Nothing is read from the data queue
# until `start` arrives.

from .envelope import START, EnvelopeKind, encode_envelope
from .errors import AbnormalStreamTermination
from .topology import control_queue
from .transport import Channel, DeliveryStream, ExchangeKind, StreamEnded


class ControlChannel:
    def __init__(self, channel: Channel, exchange: str) -> None:
        self.channel = channel
        self.exchange = exchange
        self.queue: str | None = None
        self._stream: DeliveryStream | None = None

    def declare(self) -> None:
        self.channel.declare_exchange(self.exchange, ExchangeKind.FANOUT, auto_delete=False)

    def bind(self) -> str:
        """Create this consumer's private queue, attach it to the broadcast and subscribe."""
        self.declare()
        self.queue = self.channel.declare_queue(control_queue(), exclusive=True, auto_delete=True)
        self.channel.bind(self.queue, self.exchange)
        self._stream = self.channel.subscribe(self.queue)
        return self.queue

    def broadcast_start(self) -> None:
        self.channel.publish(self.exchange, "", encode_envelope(START))

    def await_start(self) -> None:
        """Block until `start` arrives on the control queue.

        Other control messages are acknowledged and ignored.
        Raises `AbnormalStreamTermination` if the control stream ends first.
        """
        if self._stream is None:
            self.bind()
        stream, self._stream = self._stream, None

        try:
            for event in stream:
                if isinstance(event, StreamEnded):
                    raise AbnormalStreamTermination(f"control stream ended before start: {event.reason}")
                self.channel.ack(event)
                if event.envelope.kind is EnvelopeKind.START:
                    return
        finally:
            stream.close()
        raise AbnormalStreamTermination("control stream closed before start")
