from __future__ import annotations

# Run clock and sample records.
#
# Samples carry elapsed time since the consumer began consuming, never a wall
# clock timestamp, so runs on different machines can be compared without
# worrying about clock skew.

import sys
import time
from dataclasses import dataclass
from typing import Callable, TextIO


class RunClock:
    """Monotonic elapsed-time clock owned by one consumer."""

    def __init__(self, now: Callable[[], float] = time.perf_counter) -> None:
        self._now = now
        self._started_at: float | None = None

    @property
    def started(self) -> bool:
        return self._started_at is not None

    def start(self) -> None:
        self._started_at = self._now()

    def reset(self) -> None:
        self.start()

    def elapsed(self) -> float:
        """Seconds since `start()` (or the last `reset()`)."""
        if self._started_at is None:
            raise RuntimeError("run clock not started")
        return self._now() - self._started_at


@dataclass(frozen=True)
class SampleRecord:
    index: int
    elapsed: float
    payload_length: int
    consumer_name: str | None = None

    @property
    def elapsed_ms(self) -> float:
        return self.elapsed * 1000.0

    def to_line(self) -> str:
        # Synchronized-start runs have several consumers writing to the same
        # collector, so the line leads with the consumer name instead.
        if self.consumer_name is not None:
            return f"{self.consumer_name},{self.index},{self.elapsed_ms:.3f}"
        return f"{self.index},{self.elapsed_ms:.3f},{self.payload_length}"


def emit_sample(record: SampleRecord, out: TextIO | None = None) -> None:
    stream = out if out is not None else sys.stdout
    stream.write(record.to_line() + "\n")
    stream.flush()
