"""Shared error taxonomy.

Every component raises one of these so the entrypoint can map failures to a
consistent exit status:

- configuration problems are fatal before any broker traffic happens
- connection failures are retried by the supervisor
- transport failures after connecting abort the run
- a delivery stream that ends without `done` is reported, not crashed on
"""

from __future__ import annotations

from dataclasses import dataclass

EXIT_OK = 0
EXIT_TRANSPORT_ERROR = 1
EXIT_CONFIGURATION_ERROR = 2
EXIT_ABNORMAL_END = 3


class BenchError(Exception):
    """Base class for harness errors."""

    exit_code = EXIT_TRANSPORT_ERROR


class ConfigurationError(BenchError):
    """A required setting is missing or malformed."""

    exit_code = EXIT_CONFIGURATION_ERROR

    def __init__(self, setting: str, problem: str) -> None:
        super().__init__(f"{setting}: {problem}")
        self.setting = setting
        self.problem = problem


class BrokerConnectionError(BenchError, ConnectionError):
    """The broker could not be reached (retried by the supervisor)."""


class TransportOperationError(BenchError):
    """Publish/subscribe/ack failed on an established connection."""


class AbnormalStreamTermination(BenchError):
    """A delivery stream ended before the expected sentinel."""

    exit_code = EXIT_ABNORMAL_END

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


@dataclass(frozen=True)
class ErrorReport:
    role: str
    error: BenchError

    def to_line(self) -> str:
        return f"[{self.role}] error ({type(self.error).__name__}): {self.error}"
