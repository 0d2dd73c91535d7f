import uuid

import pytest

from prefetch_bench.config import RunConfig, Role
from prefetch_bench.transport.memory import MemoryBroker, register_broker


class TickClock:
    """Fake monotonic time: every read advances by `step` seconds."""

    def __init__(self, step: float = 0.001) -> None:
        self.step = step
        self.t = 0.0

    def __call__(self) -> float:
        self.t += self.step
        return self.t


def no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def broker():
    return MemoryBroker()


@pytest.fixture
def broker_address(broker):
    name = f"test-{uuid.uuid4().hex[:8]}"
    register_broker(name, broker)
    return f"memory://{name}"


def producer_config(address: str = "memory://unused", **overrides) -> RunConfig:
    values = dict(
        role=Role.PRODUCER,
        broker_address=address,
        message_length=16,
        message_count=5,
        inter_send_delay=0.0,
    )
    values.update(overrides)
    return RunConfig(**values)


def consumer_config(address: str = "memory://unused", **overrides) -> RunConfig:
    values = dict(
        role=Role.CONSUMER,
        broker_address=address,
        prefetch_limit=1,
        workload_delay=0.0,
        consumer_name="c1",
    )
    values.update(overrides)
    return RunConfig(**values)
