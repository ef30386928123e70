"""htsget tickets, genomic queries and the ticket request."""

from __future__ import annotations

import base64
import binascii
import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, NamedTuple
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import DataUriError, InvalidRangeError, QueryParseError, TicketFetchError
from .retry import retry_call

if TYPE_CHECKING:
    from collections.abc import Callable

LOG = logging.getLogger("htsget_stream.ticket")

_QUERY_PATTERN = re.compile(r"^([^:]+):(\d+)-(\d+)$")
_RANGE_PATTERN = re.compile(r"^bytes=(\d+)-(\d+)$")


class ByteRange(NamedTuple):
    start: int
    end: int

    @property
    def size(self) -> int:
        return self.end - self.start + 1


class UrlEntry(BaseModel):
    """One retrievable block of a ticket."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    url: str
    headers: dict[str, str] = Field(default_factory=dict)
    class_: str | None = Field(default=None, alias="class")

    def header(self, name: str) -> str | None:
        """Look up a header without regard to case."""
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None

    @property
    def is_inline(self) -> bool:
        return self.url[:5].lower() == "data:"

    @property
    def byte_range(self) -> ByteRange | None:
        """The byte range requested by the ``Range`` header, if any.

        ``bytes=0-0`` is treated as no range at all.

        Raises:
            InvalidRangeError: The header is not ``bytes=<start>-<end>`` with
                ``start <= end``.
        """
        value = self.header("Range")
        if value is None:
            return None
        match = _RANGE_PATTERN.match(value.strip())
        if match is None:
            msg = f"unsupported Range header: {value!r}"
            raise InvalidRangeError(msg)
        start, end = int(match.group(1)), int(match.group(2))
        if start == 0 and end == 0:
            return None
        if start > end:
            msg = f"inverted Range header: {value!r}"
            raise InvalidRangeError(msg)
        return ByteRange(start, end)

    def describe(self) -> str:
        """Short form of the URL for log lines."""
        if self.is_inline:
            return self.url[:32] + ("..." if len(self.url) > 32 else "")
        return self.url


class Ticket(BaseModel):
    model_config = ConfigDict(frozen=True)

    format: str
    urls: tuple[UrlEntry, ...]
    md5: str | None = None


class _TicketEnvelope(BaseModel):
    htsget: Ticket


def parse_ticket(payload: bytes | str) -> Ticket:
    """Parse the JSON body of a ticket response.

    Raises:
        TicketFetchError: The body is not a valid ``{"htsget": {...}}`` object.
    """
    try:
        return _TicketEnvelope.model_validate_json(payload).htsget
    except ValidationError as error:
        msg = f"invalid ticket: {error}"
        raise TicketFetchError(msg) from error


def decode_data_uri(uri: str) -> bytes:
    """Decode an inline ``data:[mediatype][;base64],<payload>`` entry."""
    if uri[:5].lower() != "data:":
        msg = f"not a data URI: {uri[:32]!r}"
        raise DataUriError(msg)
    _, comma, payload = uri[5:].partition(",")
    if not comma:
        msg = "data URI has no payload separator"
        raise DataUriError(msg)
    try:
        return base64.b64decode(payload, validate=True)
    except binascii.Error as error:
        msg = f"data URI payload is not valid base64: {error}"
        raise DataUriError(msg) from error


@dataclass(frozen=True)
class GenomicQuery:
    """A region of a reference sequence; ``end == 0`` means unbounded."""

    sequence: str = ""
    start: int = 0
    end: int = 0

    @classmethod
    def parse(cls, text: str) -> GenomicQuery:
        """Parse ``<sequence>:<start>-<end>``.

        Raises:
            QueryParseError: ``text`` does not follow the grammar.
        """
        match = _QUERY_PATTERN.match(text)
        if match is None:
            msg = f"invalid query {text!r}, expected <sequence>:<start>-<end>"
            raise QueryParseError(msg)
        return cls(match.group(1), int(match.group(2)), int(match.group(3)))

    def to_query_string(self) -> str:
        return f"{self.sequence}:{self.start}-{self.end}"


def build_ticket_url(
    base: str, dataset_id: str, fmt: str, query: GenomicQuery
) -> str:
    url = f"{base}{dataset_id}?format={fmt}"
    if query.sequence:
        url = f"{url}&referenceName={quote(query.sequence, safe='')}"
    url = f"{url}&start={max(query.start, 0)}"
    if query.end > 0:
        url = f"{url}&end={query.end}"
    return url


def fetch_ticket(
    client: httpx.Client,
    url: str,
    *,
    token: str | None = None,
    attempts: int = 9,
    pause: float = 0.0,
    sleep: Callable[[float], None] | None = None,
) -> Ticket:
    """Request a ticket, retrying failed or unusable responses.

    Raises:
        TicketFetchError: No usable ticket after ``attempts`` tries.
    """
    headers = {"Authorization": f"Bearer {token}"} if token else {}

    def attempt() -> Ticket:
        try:
            response = client.get(url, headers=headers)
        except httpx.TransportError as error:
            msg = f"ticket request to {url} failed: {error}"
            raise TicketFetchError(msg) from error
        if not response.is_success:
            msg = f"ticket request to {url} answered {response.status_code}"
            raise TicketFetchError(msg)
        return parse_ticket(response.content)

    LOG.debug("requesting ticket %s", url)
    kwargs = {"sleep": sleep} if sleep is not None else {}
    ticket = retry_call(
        attempt, attempts=attempts, pause=pause, label="ticket request", **kwargs
    )
    LOG.info("ticket lists %d url(s) in %s format", len(ticket.urls), ticket.format)
    return ticket
