import io
import threading
import time

import pytest

from conftest import consumer_config, no_sleep, producer_config
from prefetch_bench.consumer import BenchmarkConsumer, ConsumerState
from prefetch_bench.control import ControlChannel
from prefetch_bench.errors import AbnormalStreamTermination
from prefetch_bench.producer import run_producer
from prefetch_bench.transport.memory import MemoryBroker


def _wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            return False
        time.sleep(0.005)
    return True


def _run_synchronized(broker, names, message_count):
    cfg = dict(use_control_channel=True, prefetch_limit=1, workload_delay=0.005)
    outs = {name: io.StringIO() for name in names}
    consumers = {
        name: BenchmarkConsumer(broker.connect(), consumer_config(consumer_name=name, **cfg), out=outs[name])
        for name in names
    }
    results = {}

    def run(name):
        results[name] = consumers[name].run()

    threads = [threading.Thread(target=run, args=(name,), daemon=True) for name in names]
    for t in threads:
        t.start()

    assert _wait_until(lambda: all(c.state is ConsumerState.AWAITING_START for c in consumers.values()))
    # Both data subscriptions exist before `start`, and nothing was consumed.
    assert broker.wait_for_consumers("prefetch-test", len(names), timeout=0.5)
    assert broker.acked == []

    run_producer(
        broker.connect(),
        producer_config(message_count=message_count, use_control_channel=True, consumer_count=len(names)),
        sleep=no_sleep,
        idle=lambda: None,
    )
    for t in threads:
        t.join(10)
    return results, outs


def test_two_consumers_start_together_on_broadcast(broker):
    results, outs = _run_synchronized(broker, ["a", "b"], 20)

    assert all(results[name].completed for name in outs)
    assert sum(results[name].processed for name in outs) == 20
    for name, out in outs.items():
        first = out.getvalue().splitlines()[0].split(",")
        assert first[0] == name
        assert first[1] == "0"


def test_no_messages_lost_when_broker_keeps_nothing_for_absent_subscribers():
    broker = MemoryBroker(drop_unsubscribed=True)

    results, _outs = _run_synchronized(broker, ["a", "b"], 20)

    assert all(summary.completed for summary in results.values())
    assert sum(summary.processed for summary in results.values()) == 20


def test_unsubscribed_queue_drops_messages_in_topic_mode():
    broker = MemoryBroker(drop_unsubscribed=True)
    ch = broker.connect().open_channel()
    ch.declare_queue("q")
    ch.publish("", "q", b"lost")

    assert broker.queue_depth("q") == 0


def test_control_queue_is_private_and_removed_after_start(broker):
    producer_side = ControlChannel(broker.connect().open_channel(), "ctl")
    producer_side.declare()

    consumer_side = ControlChannel(broker.connect().open_channel(), "ctl")
    queue = consumer_side.bind()
    assert broker.bound_queues("ctl") == [queue]

    t = threading.Thread(target=consumer_side.await_start, daemon=True)
    t.start()
    assert broker.wait_for_consumers(queue, 1)
    producer_side.broadcast_start()
    t.join(5)

    assert not t.is_alive()
    assert broker.bound_queues("ctl") == []


def test_await_start_raises_when_control_stream_is_cancelled(broker):
    control = ControlChannel(broker.connect().open_channel(), "ctl")
    queue = control.bind()
    errors = []

    def wait():
        try:
            control.await_start()
        except AbnormalStreamTermination as e:
            errors.append(e)

    t = threading.Thread(target=wait, daemon=True)
    t.start()
    assert broker.wait_for_consumers(queue, 1)
    broker.cancel_consumers(queue)
    t.join(5)

    assert len(errors) == 1


def test_consumer_without_control_channel_skips_waiting(broker):
    run_producer(broker.connect(), producer_config(message_count=1), sleep=no_sleep, idle=lambda: None)

    consumer = BenchmarkConsumer(broker.connect(), consumer_config(), sleep=no_sleep, out=io.StringIO())
    consumer.run()

    assert broker.bound_queues("prefetch-test-control") == []
    assert consumer.processed == 1


@pytest.mark.parametrize("prefetch", [0, 1, 10])
def test_prefetch_limits_all_complete(broker, prefetch):
    run_producer(broker.connect(), producer_config(message_count=8), sleep=no_sleep, idle=lambda: None)

    summary = BenchmarkConsumer(
        broker.connect(), consumer_config(prefetch_limit=prefetch), sleep=no_sleep, out=io.StringIO()
    ).run()

    assert summary.completed
    assert summary.processed == 8
