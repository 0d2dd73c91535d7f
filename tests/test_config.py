import argparse

import pytest

from prefetch_bench.config import Role, add_broker_args, add_consumer_args, add_producer_args, load_config
from prefetch_bench.errors import ConfigurationError

PRODUCER_ENV = {
    "ROLE": "PRODUCER",
    "MESSAGE_LEN": "128",
    "MESSAGE_COUNT": "1000",
    "TIME_BETWEEN_MSG": "5",
}

CONSUMER_ENV = {
    "ROLE": "CONSUMER",
    "PREFETCH_COUNT": "10",
    "WORKLOAD_TIME": "20",
    "CONSUMER_NAME": "c7",
}


def _parser():
    p = argparse.ArgumentParser()
    add_broker_args(p)
    add_producer_args(p)
    add_consumer_args(p)
    return p


def test_producer_from_environment():
    cfg = load_config(environ=PRODUCER_ENV)
    assert cfg.role is Role.PRODUCER
    assert cfg.message_length == 128
    assert cfg.message_count == 1000
    assert cfg.inter_send_delay == pytest.approx(0.005)
    assert cfg.broker_address.startswith("amqp://")
    assert cfg.queue_name == "prefetch-test"
    assert cfg.control_exchange == "prefetch-test-control"
    assert cfg.connect_backoff == pytest.approx(0.25)
    assert cfg.connect_attempts is None


def test_consumer_from_environment():
    cfg = load_config(environ={**CONSUMER_ENV, "USE_CONTROL_CHANNEL": "yes"})
    assert cfg.role is Role.CONSUMER
    assert cfg.prefetch_limit == 10
    assert cfg.workload_delay == pytest.approx(0.02)
    assert cfg.consumer_name == "c7"
    assert cfg.use_control_channel is True


def test_role_is_required_and_validated():
    with pytest.raises(ConfigurationError):
        load_config(environ={})
    with pytest.raises(ConfigurationError) as exc:
        load_config(environ={"ROLE": "BROKER"})
    assert exc.value.setting == "ROLE"


@pytest.mark.parametrize("missing", ["MESSAGE_LEN", "MESSAGE_COUNT", "TIME_BETWEEN_MSG"])
def test_missing_producer_setting_is_fatal(missing):
    env = {k: v for k, v in PRODUCER_ENV.items() if k != missing}
    with pytest.raises(ConfigurationError) as exc:
        load_config(environ=env)
    assert missing in str(exc.value)


def test_producer_does_not_need_consumer_settings():
    cfg = load_config(environ=PRODUCER_ENV)
    assert cfg.prefetch_limit == 0


@pytest.mark.parametrize(
    "key,value",
    [("PREFETCH_COUNT", "ten"), ("PREFETCH_COUNT", "-1"), ("WORKLOAD_TIME", "1s"), ("USE_CONTROL_CHANNEL", "maybe")],
)
def test_malformed_values_are_fatal(key, value):
    with pytest.raises(ConfigurationError) as exc:
        load_config(environ={**CONSUMER_ENV, key: value})
    assert key in str(exc.value)


def test_unknown_broker_scheme_is_fatal():
    with pytest.raises(ConfigurationError):
        load_config(environ={**CONSUMER_ENV, "BROKER_ADDRESS": "kafka://localhost:9092"})


def test_flags_override_environment():
    args = _parser().parse_args(["--prefetch-count", "3", "--control-channel", "--queue-name", "bench-a"])
    cfg = load_config(args, environ=CONSUMER_ENV, role=Role.CONSUMER)
    assert cfg.prefetch_limit == 3
    assert cfg.workload_delay == pytest.approx(0.02)
    assert cfg.use_control_channel is True
    assert cfg.queue_name == "bench-a"
    assert cfg.control_exchange == "bench-a-control"


def test_connect_settings():
    cfg = load_config(environ={**PRODUCER_ENV, "CONNECT_BACKOFF": "100", "CONNECT_ATTEMPTS": "4"})
    assert cfg.connect_backoff == pytest.approx(0.1)
    assert cfg.connect_attempts == 4


def test_prefetch_above_sixteen_bits_is_fatal():
    with pytest.raises(ConfigurationError) as exc:
        load_config(environ={**CONSUMER_ENV, "PREFETCH_COUNT": "65536"})
    assert "PREFETCH_COUNT" in str(exc.value)
    assert "65535" in str(exc.value)


def test_largest_prefetch_is_accepted():
    cfg = load_config(environ={**CONSUMER_ENV, "PREFETCH_COUNT": "65535"})
    assert cfg.prefetch_limit == 65535
