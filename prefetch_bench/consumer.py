from __future__ import annotations

# Consumer role.
#
# States:
#   AWAITING_START  (control channel only) subscribed to the data queue and
#                   bound to the broadcast, waiting for `start`
#   CONSUMING       subscribed to the data queue under the prefetch limit
#   TERMINATED      saw `done`, or the stream ended abnormally
#
# Per delivery while CONSUMING:
#   data   -> emit a sample (elapsed since clock start), simulate work, ack
#   start  -> reset clock and sample index, ack
#   done   -> TERMINATED, ack, stop
#
# The ack is sent only after the simulated work, so the prefetch limit bounds
# "in flight + being processed", which is what the benchmark varies.

import argparse
import sys
from dataclasses import dataclass
from enum import Enum
from typing import Callable, TextIO

from .config import RunConfig, Role, add_broker_args, add_consumer_args, load_config
from .control import ControlChannel
from .envelope import EnvelopeKind
from .errors import AbnormalStreamTermination
from .timing import RunClock, SampleRecord, emit_sample
from .transport import Channel, Connection, Delivery, DeliveryStream, StreamEnded


class ConsumerState(Enum):
    AWAITING_START = "awaiting_start"
    CONSUMING = "consuming"
    TERMINATED = "terminated"


@dataclass(frozen=True)
class ConsumerSummary:
    consumer_name: str
    processed: int
    completed: bool
    reason: str = ""


class BenchmarkConsumer:
    """Consumer state machine (testable with the in-memory broker)."""

    def __init__(
        self,
        connection: Connection,
        config: RunConfig,
        *,
        clock: RunClock | None = None,
        sleep: Callable[[float], None] | None = None,
        out: TextIO | None = None,
    ) -> None:
        self.connection = connection
        self.config = config
        self.clock = clock or RunClock()
        self.sleep = sleep or connection.sleep
        self.out = out if out is not None else sys.stdout

        self.state: ConsumerState | None = None
        self.processed = 0
        self.acks = 0

    @property
    def name(self) -> str:
        return self.config.consumer_name

    def _status(self, message: str) -> None:
        print(f"[consumer {self.name}] {message}", flush=True)

    def run(self) -> ConsumerSummary:
        try:
            channel, stream = self._subscribe()
            try:
                self._await_start()
                self._consume(channel, stream)
            finally:
                stream.close()
        except AbnormalStreamTermination as e:
            self.state = ConsumerState.TERMINATED
            self._status(f"abnormal end after {self.processed} messages: {e.reason}")
            return ConsumerSummary(self.name, self.processed, completed=False, reason=e.reason)

        self._status(f"done, processed {self.processed} messages")
        return ConsumerSummary(self.name, self.processed, completed=True)

    # -------------------- states --------------------

    def _subscribe(self) -> tuple[Channel, DeliveryStream]:
        # The data subscription exists before `start` so that brokers which do
        # not buffer for absent subscribers (MQTT topics) cannot drop the batch.
        channel = self.connection.open_channel()
        channel.declare_queue(self.config.queue_name)
        channel.set_prefetch(self.config.prefetch_limit, global_=self.config.prefetch_global)
        return channel, channel.subscribe(self.config.queue_name)

    def _await_start(self) -> None:
        if not self.config.use_control_channel:
            return
        control = ControlChannel(self.connection.open_channel(), self.config.control_exchange)
        control.bind()
        self.state = ConsumerState.AWAITING_START
        self._status(f"waiting for start on {self.config.control_exchange!r}")
        control.await_start()

    def _consume(self, channel: Channel, stream: DeliveryStream) -> None:
        self.state = ConsumerState.CONSUMING
        self.clock.start()
        self._status(
            f"consuming {self.config.queue_name!r} prefetch={self.config.prefetch_limit} "
            f"workload={self.config.workload_delay * 1000:0.0f}ms"
        )
        for event in stream:
            if isinstance(event, StreamEnded):
                raise AbnormalStreamTermination(event.reason)
            self._handle(channel, event)
            if self.state is ConsumerState.TERMINATED:
                return
        raise AbnormalStreamTermination("delivery stream closed before done")

    def _handle(self, channel: Channel, delivery: Delivery) -> None:
        kind = delivery.envelope.kind

        if kind is EnvelopeKind.DONE:
            self.state = ConsumerState.TERMINATED
            self._ack(channel, delivery)
            return

        if kind is EnvelopeKind.START:
            self.clock.reset()
            self.processed = 0
            self._ack(channel, delivery)
            return

        elapsed = self.clock.elapsed()
        synchronized = self.config.use_control_channel
        emit_sample(
            SampleRecord(
                index=self.processed,
                elapsed=elapsed,
                payload_length=delivery.envelope.length,
                consumer_name=self.name if synchronized else None,
            ),
            self.out,
        )
        self.processed += 1
        self.sleep(self.config.workload_delay)
        self._ack(channel, delivery)

    def _ack(self, channel: Channel, delivery: Delivery) -> None:
        channel.ack(delivery)
        self.acks += 1


def run_consumer(
    connection: Connection,
    config: RunConfig,
    *,
    clock: RunClock | None = None,
    sleep: Callable[[float], None] | None = None,
    out: TextIO | None = None,
) -> ConsumerSummary:
    return BenchmarkConsumer(connection, config, clock=clock, sleep=sleep, out=out).run()


def main(argv: list[str] | None = None) -> None:
    from .app import run_role

    parser = argparse.ArgumentParser(description="Benchmark consumer")
    add_broker_args(parser)
    add_consumer_args(parser)
    args = parser.parse_args(argv)

    run_role(lambda: load_config(args, role=Role.CONSUMER))


if __name__ == "__main__":
    main()
