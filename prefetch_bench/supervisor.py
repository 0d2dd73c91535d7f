from __future__ import annotations

# Connection supervisor.
#
# The harness is usually started together with the broker (docker compose,
# k8s), so the broker may not be accepting connections yet. We simply retry
# with a fixed backoff until it is. There is no attempt limit by default; a
# limit can be configured for interactive use.
#
# Only connection establishment is retried. Anything that fails after we are
# connected is a broken run and is surfaced to the caller.

import sys
import time
from dataclasses import dataclass, field
from typing import Callable

from .errors import BrokerConnectionError
from .transport import Connection, open_connection

DEFAULT_BACKOFF_SECONDS = 0.25


@dataclass(frozen=True)
class RetryPolicy:
    backoff: float = DEFAULT_BACKOFF_SECONDS
    max_attempts: int | None = None  # None = retry forever
    sleep: Callable[[float], None] = field(default=time.sleep, compare=False)

    def __post_init__(self) -> None:
        if self.backoff < 0:
            raise ValueError("backoff must be >= 0")
        if self.max_attempts is not None and self.max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")

    def exhausted(self, attempts: int) -> bool:
        return self.max_attempts is not None and attempts >= self.max_attempts


def acquire_connection(
    address: str,
    *,
    policy: RetryPolicy | None = None,
    connect: Callable[[str], Connection] = open_connection,
    tag: str = "supervisor",
) -> Connection:
    """Block until a connection to `address` succeeds.

    Raises the last `BrokerConnectionError` only when `policy.max_attempts`
    is set and has been used up.
    """
    policy = policy or RetryPolicy()
    attempts = 0
    while True:
        attempts += 1
        try:
            conn = connect(address)
        except BrokerConnectionError as e:
            if policy.exhausted(attempts):
                raise
            print(f"[{tag}] connect attempt {attempts} failed ({e}), retrying in {policy.backoff:0.2f}s", flush=True)
            policy.sleep(policy.backoff)
            continue

        if attempts > 1:
            print(f"[{tag}] connected after {attempts} attempts", flush=True)
        return conn


def close_quietly(connection: Connection | None, *, tag: str = "supervisor") -> bool:
    """Best-effort close. Reports a failure instead of raising it.

    Returns True if the close went through.
    """
    if connection is None:
        return False
    try:
        connection.close()
    except Exception as e:
        print(f"[{tag}] connection close failed: {e!r}", file=sys.stderr, flush=True)
        return False
    return True
