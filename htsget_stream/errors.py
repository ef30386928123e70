from __future__ import annotations

import httpx


class HtsgetError(Exception):
    """Base class for retrieval failures."""

    retryable: bool = True


class RemoteStreamError(HtsgetError):
    """A remote byte source failed at the transport or HTTP level."""


class IncompleteStreamError(HtsgetError):
    """A source ended before delivering its declared number of bytes."""

    def __init__(self, expected: int, received: int):
        self.expected = expected
        self.received = received
        super().__init__(
            f"incomplete stream: expected {expected} bytes, got {received}"
        )


class EmptySourceError(HtsgetError):
    """A source produced no bytes at all."""


class TicketFetchError(HtsgetError):
    """The ticket could not be fetched or parsed."""


class QueryParseError(HtsgetError, ValueError):
    retryable = False


class InvalidRangeError(HtsgetError, ValueError):
    retryable = False


class DataUriError(HtsgetError, ValueError):
    retryable = False


def is_retryable(exc: BaseException) -> bool:
    """Tell whether another attempt could plausibly succeed after ``exc``."""
    if isinstance(exc, HtsgetError):
        return exc.retryable
    return isinstance(exc, (httpx.TransportError, httpx.HTTPStatusError, OSError))
