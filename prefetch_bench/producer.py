from __future__ import annotations

# Producer role.
#
# - declare the data queue
# - optionally broadcast `start` on the control exchange (or put `start` at the
#   head of the data queue)
# - publish `message_count` payloads of `message_length` bytes, pausing
#   `inter_send_delay` after each
# - publish one `done` per expected consumer: `done` is what ends a run, not
#   the message count, since redeliveries make counting unreliable
# - idle, so the broker state can still be inspected
#
# A publish failure aborts the run. We never retry it: the connection is
# broken, and a benchmark with silently dropped sends is worthless.

import argparse
import random
from typing import Callable

from .config import RunConfig, Role, add_broker_args, add_producer_args, load_config
from .control import ControlChannel
from .envelope import DONE, START, encode_envelope
from .payload import random_payload
from .topology import DEFAULT_EXCHANGE
from .transport import Connection

IDLE_TICK_SECONDS = 1.0


def run_producer(
    connection: Connection,
    config: RunConfig,
    *,
    sleep: Callable[[float], None] | None = None,
    rng: random.Random | None = None,
    idle: Callable[[], None] | None = None,
) -> int:
    """Publish one benchmark batch. Returns the number of data messages sent.

    Args:
        sleep: pacing function, `connection.sleep` by default.
        rng: optional RNG for the payload (useful for deterministic tests).
        idle: called after the batch; by default blocks forever.
    """
    pause = sleep or connection.sleep

    channel = connection.open_channel()
    channel.declare_queue(config.queue_name)

    print(
        f"[producer] sending {config.message_count} x {config.message_length}B to {config.queue_name!r}, "
        f"delay={config.inter_send_delay * 1000:0.0f}ms, control={config.use_control_channel}",
        flush=True,
    )

    if config.use_control_channel:
        control = ControlChannel(connection.open_channel(), config.control_exchange)
        control.declare()
        # Grace period for consumers that are still binding their control queue.
        pause(config.start_delay)
        control.broadcast_start()
        print(f"[producer] broadcast start on {config.control_exchange!r}", flush=True)
    elif config.data_channel_start:
        channel.publish(DEFAULT_EXCHANGE, config.queue_name, encode_envelope(START))

    # One payload for the whole batch; we measure the broker, not the RNG.
    body = random_payload(length=config.message_length, rng=rng)

    sent = 0
    for _ in range(config.message_count):
        channel.publish(DEFAULT_EXCHANGE, config.queue_name, body)
        sent += 1
        pause(config.inter_send_delay)

    for _ in range(config.consumer_count):
        channel.publish(DEFAULT_EXCHANGE, config.queue_name, encode_envelope(DONE))

    print(f"[producer] done: sent {sent} messages + {config.consumer_count} done sentinel(s)", flush=True)

    if idle is not None:
        idle()
    else:
        _idle_forever(connection)
    return sent


def _idle_forever(connection: Connection) -> None:
    print("[producer] idling, press Ctrl+C to exit", flush=True)
    while True:
        connection.sleep(IDLE_TICK_SECONDS)


def main(argv: list[str] | None = None) -> None:
    from .app import run_role

    parser = argparse.ArgumentParser(description="Benchmark producer")
    add_broker_args(parser)
    add_producer_args(parser)
    args = parser.parse_args(argv)

    run_role(lambda: load_config(args, role=Role.PRODUCER))


if __name__ == "__main__":
    main()
