from __future__ import annotations

# Single-command runner.
#
# Starts a complete local benchmark by spawning child processes:
# - N consumers (each bound to the control exchange when enabled)
# - one producer, after a short grace period
#
# The run is over when every consumer has exited (each one stops on `done`).
# The producer idles after its batch, so it is terminated at the end.
# Sample lines from all children go to our stdout.

import os
import signal
import subprocess
import sys
import time

from .config import RunConfig
from .errors import EXIT_OK, EXIT_TRANSPORT_ERROR

# Time for consumers to connect and bind before the producer starts.
STARTUP_GRACE_SECONDS = 0.5
# Time children get to exit on SIGTERM before they are killed.
STOP_GRACE_SECONDS = 2.0


def _ms(seconds: float) -> str:
    return f"{seconds * 1000:g}"


def _common_args(cfg: RunConfig) -> list[str]:
    args = [
        "--broker-address",
        cfg.broker_address,
        "--queue-name",
        cfg.queue_name,
        "--control-exchange",
        cfg.control_exchange,
        "--connect-backoff",
        _ms(cfg.connect_backoff),
    ]
    if cfg.connect_attempts is not None:
        args += ["--connect-attempts", str(cfg.connect_attempts)]
    if cfg.use_control_channel:
        args += ["--control-channel"]
    return args


def consumer_args(cfg: RunConfig, name: str) -> list[str]:
    args = [
        sys.executable,
        "-m",
        "prefetch_bench.app",
        "consumer",
        *_common_args(cfg),
        "--prefetch-count",
        str(cfg.prefetch_limit),
        "--workload-time",
        _ms(cfg.workload_delay),
        "--consumer-name",
        name,
    ]
    if cfg.prefetch_global:
        args += ["--prefetch-global"]
    return args


def producer_args(cfg: RunConfig, num_consumers: int) -> list[str]:
    args = [
        sys.executable,
        "-m",
        "prefetch_bench.app",
        "producer",
        *_common_args(cfg),
        "--message-len",
        str(cfg.message_length),
        "--message-count",
        str(cfg.message_count),
        "--time-between-msg",
        _ms(cfg.inter_send_delay),
        "--consumers",
        str(num_consumers),
        "--start-delay",
        _ms(cfg.start_delay),
    ]
    if cfg.data_channel_start:
        args += ["--data-channel-start"]
    return args


def run_all(
    *,
    producer: RunConfig,
    consumer: RunConfig,
    num_consumers: int,
    consumer_prefix: str = "consumer-",
) -> int:
    if num_consumers <= 0:
        raise ValueError("num_consumers must be > 0")

    # name -> process; each child leads its own process group.
    consumers: dict[str, subprocess.Popen] = {}
    children: dict[str, subprocess.Popen] = {}
    try:
        for i in range(1, num_consumers + 1):
            name = f"{consumer_prefix}{i}"
            consumers[name] = children[name] = subprocess.Popen(consumer_args(consumer, name), preexec_fn=os.setsid)

        time.sleep(STARTUP_GRACE_SECONDS)
        prod = children["producer"] = subprocess.Popen(producer_args(producer, num_consumers), preexec_fn=os.setsid)

        print(
            "[run] started: "
            + ", ".join(f"{name}(pid={proc.pid})" for name, proc in children.items())
            + "\nPress Ctrl+C to stop all.",
            flush=True,
        )

        while any(proc.poll() is None for proc in consumers.values()):
            rc = prod.poll()
            if rc is not None:
                # The producer idles forever on success, so any exit is a failure.
                print(f"[run] producer exited with code {rc}", file=sys.stderr, flush=True)
                return rc or EXIT_TRANSPORT_ERROR
            time.sleep(0.5)

        failed = {name: proc.returncode for name, proc in consumers.items() if proc.returncode != 0}
        for name, rc in failed.items():
            print(f"[run] {name} exited with code {rc}", file=sys.stderr, flush=True)
        return next(iter(failed.values()), EXIT_OK)
    except KeyboardInterrupt:
        return EXIT_OK
    finally:
        stop_children(children)


def stop_children(children: dict[str, subprocess.Popen], *, grace: float = STOP_GRACE_SECONDS) -> None:
    """SIGTERM every live child's process group, SIGKILL whatever outlives `grace`."""
    _signal_all(children, signal.SIGTERM)
    deadline = time.monotonic() + grace
    for proc in children.values():
        try:
            proc.wait(timeout=max(0.0, deadline - time.monotonic()))
        except subprocess.TimeoutExpired:
            pass
    _signal_all(children, signal.SIGKILL)
    for proc in children.values():
        proc.wait()


def _signal_all(children: dict[str, subprocess.Popen], sig: signal.Signals) -> None:
    for name, proc in children.items():
        if proc.poll() is not None:
            continue
        try:
            os.killpg(proc.pid, sig)
        except ProcessLookupError:
            # Exited between poll() and the signal.
            continue
        print(f"[run] sent {sig.name} to {name} (pid={proc.pid})", flush=True)
