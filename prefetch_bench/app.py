from __future__ import annotations

# Single entrypoint.
#
#     python -m prefetch_bench.app producer --message-len 1024 --message-count 1000 --time-between-msg 5
#     python -m prefetch_bench.app consumer --prefetch-count 10 --workload-time 20
#     python -m prefetch_bench.app run --num-consumers 3 --prefetch-count 10 ...
#
# With no subcommand the role and every setting come from the environment
# (ROLE=PRODUCER|CONSUMER, MESSAGE_LEN, PREFETCH_COUNT, ...), which is how the
# containers are usually started.
#
# Exit status: 0 ok, 1 transport failure, 2 configuration error,
# 3 consumer stream ended without `done`.

import argparse
import functools
import os
import sys
from typing import Callable, NoReturn

from .config import RunConfig, Role, add_broker_args, add_consumer_args, add_producer_args, load_config
from .errors import EXIT_ABNORMAL_END, EXIT_OK, BenchError, ConfigurationError, ErrorReport
from .supervisor import RetryPolicy, acquire_connection, close_quietly
from .transport import ConnectOptions, open_connection


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Prefetch benchmark (producer/consumer) - main entrypoint")
    sub = parser.add_subparsers(dest="cmd")

    p_prod = sub.add_parser("producer", help="Publish one benchmark batch, then idle")
    add_broker_args(p_prod)
    add_producer_args(p_prod)

    p_cons = sub.add_parser("consumer", help="Consume and time messages until 'done'")
    add_broker_args(p_cons)
    add_consumer_args(p_cons)

    p_run = sub.add_parser("run", help="Start N consumers + 1 producer locally and wait for the run")
    add_broker_args(p_run)
    add_producer_args(p_run)
    add_consumer_args(p_run)
    p_run.add_argument("--num-consumers", type=int, required=True)
    p_run.add_argument("--consumer-prefix", default="consumer-")

    args = parser.parse_args(argv)

    if args.cmd == "run":
        from .run_all import run_all

        try:
            producer_cfg = load_config(args, role=Role.PRODUCER)
            consumer_cfg = load_config(args, role=Role.CONSUMER)
        except ConfigurationError as e:
            _fail_config(e)
        sys.exit(
            run_all(
                producer=producer_cfg,
                consumer=consumer_cfg,
                num_consumers=args.num_consumers,
                consumer_prefix=args.consumer_prefix,
            )
        )

    role = {"producer": Role.PRODUCER, "consumer": Role.CONSUMER}.get(args.cmd)
    run_role(lambda: load_config(args, role=role))


def run_role(build_config: Callable[[], RunConfig]) -> None:
    """Validate config, connect (with retry), run the role, exit with its status."""
    try:
        config = build_config()
    except ConfigurationError as e:
        _fail_config(e)

    sys.exit(execute(config))


def execute(config: RunConfig, *, policy: RetryPolicy | None = None) -> int:
    from .consumer import run_consumer
    from .producer import run_producer

    tag = "producer" if config.role is Role.PRODUCER else f"consumer {config.consumer_name}"
    policy = policy or RetryPolicy(backoff=config.connect_backoff, max_attempts=config.connect_attempts)

    options = connect_options(config)

    print(f"[{tag}] starting, broker={config.broker_address}", flush=True)
    connection = None
    try:
        connection = acquire_connection(
            config.broker_address,
            policy=policy,
            connect=functools.partial(open_connection, options=options),
            tag=tag,
        )
        if config.role is Role.PRODUCER:
            run_producer(connection, config)
            return EXIT_OK
        summary = run_consumer(connection, config)
        return EXIT_OK if summary.completed else EXIT_ABNORMAL_END
    except BenchError as e:
        print(ErrorReport(tag, e).to_line(), file=sys.stderr, flush=True)
        return e.exit_code
    except KeyboardInterrupt:
        print(f"[{tag}] interrupted", flush=True)
        return EXIT_OK
    finally:
        close_quietly(connection, tag=tag)


def connect_options(config: RunConfig) -> ConnectOptions:
    """Handshake settings: a recognisable client id, and for consumers the prefetch
    limit for transports that negotiate it at connect time."""
    name = "producer" if config.role is Role.PRODUCER else config.consumer_name
    return ConnectOptions(
        client_id=f"prefetch-bench-{name}-{os.getpid()}",
        receive_maximum=config.prefetch_limit if config.role is Role.CONSUMER else None,
    )


def _fail_config(e: ConfigurationError) -> NoReturn:
    print(f"configuration error: {e}", file=sys.stderr, flush=True)
    sys.exit(e.exit_code)


if __name__ == "__main__":
    main()
