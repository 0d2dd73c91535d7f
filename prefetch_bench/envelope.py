from __future__ import annotations

# Message envelopes.
#
# Payloads on the wire are opaque bytes. Two exact byte strings are reserved:
#   b"start"  first message of a timed window
#   b"done"   authoritative end of the run
# Transports decode every body once, here, so the roles never look at raw
# bytes to find sentinels.

from dataclasses import dataclass
from enum import Enum

START_SENTINEL = b"start"
DONE_SENTINEL = b"done"


class EnvelopeKind(Enum):
    DATA = "data"
    START = "start"
    DONE = "done"


@dataclass(frozen=True)
class Envelope:
    kind: EnvelopeKind
    payload: bytes = b""

    @property
    def length(self) -> int:
        return len(self.payload)

    @property
    def is_sentinel(self) -> bool:
        return self.kind is not EnvelopeKind.DATA


def decode_envelope(body: bytes | bytearray | memoryview | str) -> Envelope:
    """Classify a raw message body.

    Sentinels are matched by exact byte equality before anything else, so a
    data payload that merely contains "done" is still data.
    """
    if isinstance(body, str):
        raw = body.encode("utf-8", errors="replace")
    else:
        raw = bytes(body)

    if raw == START_SENTINEL:
        return Envelope(EnvelopeKind.START, raw)
    if raw == DONE_SENTINEL:
        return Envelope(EnvelopeKind.DONE, raw)
    return Envelope(EnvelopeKind.DATA, raw)


def encode_envelope(envelope: Envelope) -> bytes:
    if envelope.kind is EnvelopeKind.START:
        return START_SENTINEL
    if envelope.kind is EnvelopeKind.DONE:
        return DONE_SENTINEL
    return envelope.payload


START = Envelope(EnvelopeKind.START, START_SENTINEL)
DONE = Envelope(EnvelopeKind.DONE, DONE_SENTINEL)
