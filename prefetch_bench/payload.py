"""Random filler payloads.

Only the byte length of a data message matters to the measurement, so the
content is random printable ASCII. Printable text keeps the payload readable
in broker management UIs and guarantees one byte per character.
"""

from __future__ import annotations

import random
import string

from .envelope import DONE_SENTINEL, START_SENTINEL

_ALPHABET = string.ascii_letters + string.digits


def random_payload(*, length: int, rng: random.Random | None = None) -> bytes:
    """Generate `length` random bytes of filler.

    Args:
        length: payload size in bytes. Must be >= 0.
        rng: optional RNG (useful for deterministic tests).

    A payload that happens to equal a sentinel would end the run early, so
    such a draw is replaced by a fresh one.
    """
    if length < 0:
        raise ValueError("length must be >= 0")

    r = rng or random
    while True:
        body = "".join(r.choice(_ALPHABET) for _ in range(length)).encode("ascii")
        if body not in (START_SENTINEL, DONE_SENTINEL):
            return body
