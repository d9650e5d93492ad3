"""
Relay exceptions.

Library errors (aiohttp, socket, TLS) are converted to UpstreamError at the
dialect boundary so the orchestrator only has to reason about one taxonomy.
"""

from icyrelay.models import UpstreamErrorKind


class RelayError(Exception):
    """Base class for relay failures."""


class InvalidTargetError(RelayError):
    """The client-supplied target is missing or unusable. Never retried."""


class UpstreamError(RelayError):
    """A single upstream attempt failed."""

    def __init__(self, kind: UpstreamErrorKind, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message

    @property
    def retryable(self) -> bool:
        """Transient failures worth retrying with the same strategy."""
        return self.kind in (
            UpstreamErrorKind.CONNECTION_REFUSED,
            UpstreamErrorKind.TIMEOUT,
        )

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


class RelayExhaustedError(RelayError):
    """Every strategy and identity failed."""

    def __init__(self, message: str, last_error: UpstreamError = None):
        super().__init__(message)
        self.last_error = last_error
