from __future__ import annotations

import enum
import io
import logging
import shutil
import tempfile
import time
from dataclasses import dataclass, field
from typing import IO, TYPE_CHECKING, Any
from urllib.parse import parse_qs, urlsplit

import httpx

from .background import BackgroundBufferedStream
from .errors import RemoteStreamError, is_retryable
from .guards import LengthBoundedStream, NonEmptyStream
from .remote import (
    RangeStream,
    ResponseStream,
    forwarded_headers,
    probe_content_length,
    select_auth,
)
from .retry import retry_call
from .settings import DEFAULT_ENDPOINT_URL, ClientSettings, build_http_client
from .ticket import GenomicQuery, build_ticket_url, decode_data_uri, fetch_ticket

if TYPE_CHECKING:
    from collections.abc import Callable

    from .ticket import ByteRange, Ticket, UrlEntry

LOG = logging.getLogger("htsget_stream.client")

VARIANT_FORMATS = {"VCF", "BCF"}


class EntryState(enum.Enum):
    PENDING = "pending"
    RESOLVING = "resolving"
    STREAMING = "streaming"
    STAGED = "staged"
    COMMITTED = "committed"
    FAILED = "failed"


@dataclass
class EntryOutcome:
    """What happened to one ticket entry."""

    index: int
    url: str
    state: EntryState = EntryState.PENDING
    bytes_written: int = 0
    attempts: int = 0
    error: BaseException | None = None

    def advance(self, state: EntryState) -> None:
        LOG.debug("entry %d: %s -> %s", self.index, self.state.value, state.value)
        self.state = state


@dataclass
class DownloadSummary:
    outcomes: list[EntryOutcome] = field(default_factory=list)

    @property
    def total_bytes(self) -> int:
        return sum(outcome.bytes_written for outcome in self.outcomes)

    @property
    def failed(self) -> list[EntryOutcome]:
        return [o for o in self.outcomes if o.state is EntryState.FAILED]

    @property
    def ok(self) -> bool:
        return not self.failed


class HtsgetDownloader:
    """Fetch an htsget ticket and write its data, in order, to one sink."""

    def __init__(
        self,
        settings: ClientSettings,
        *,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._settings = settings
        self._sleep = sleep
        self._http_client = build_http_client(settings, transport)

    def close(self) -> None:
        self._http_client.close()

    def __enter__(self) -> HtsgetDownloader:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def ticket_url(self, dataset_id: str, query: GenomicQuery, fmt: str) -> str:
        base = self._settings.endpoint_url
        if fmt.upper() in VARIANT_FORMATS and base == DEFAULT_ENDPOINT_URL:
            base = self._settings.variants_endpoint_url
        return build_ticket_url(base, dataset_id, fmt, query)

    def fetch_ticket(self, dataset_id: str, query: GenomicQuery, fmt: str) -> Ticket:
        return fetch_ticket(
            self._http_client,
            self.ticket_url(dataset_id, query, fmt),
            token=self._settings.oauth_token,
            attempts=self._settings.ticket_attempts,
            sleep=self._sleep,
        )

    def run(
        self,
        dataset_id: str,
        query: GenomicQuery,
        fmt: str,
        sink: IO[bytes],
        *,
        close_sink: bool = True,
    ) -> DownloadSummary:
        """Fetch the ticket for ``query`` and download it into ``sink``.

        Raises:
            TicketFetchError: The ticket could not be obtained; nothing was
                written.
        """
        try:
            ticket = self.fetch_ticket(dataset_id, query, fmt)
            return self.download(ticket, sink)
        finally:
            if close_sink:
                sink.close()

    def download(self, ticket: Ticket, sink: IO[bytes]) -> DownloadSummary:
        """Write every entry of ``ticket`` to ``sink`` in ticket order.

        A failed entry does not stop the run; it is recorded in the summary.
        """
        summary = DownloadSummary()
        for index, entry in enumerate(ticket.urls):
            outcome = self._download_entry(index, entry, sink)
            summary.outcomes.append(outcome)
            LOG.info(
                "entry %d %s: %d bytes (total %d)",
                index,
                outcome.state.value,
                outcome.bytes_written,
                summary.total_bytes,
            )
        sink.flush()
        return summary

    def _download_entry(
        self, index: int, entry: UrlEntry, sink: IO[bytes]
    ) -> EntryOutcome:
        outcome = EntryOutcome(index=index, url=entry.describe())
        LOG.debug("entry %d: opening %s", index, outcome.url)
        if entry.is_inline:
            outcome.attempts = 1
            try:
                data = decode_data_uri(entry.url)
            except ValueError as error:
                return self._fail(outcome, error)
            sink.write(data)
            outcome.bytes_written = len(data)
            outcome.advance(EntryState.COMMITTED)
            return outcome

        def attempt() -> IO[bytes]:
            outcome.attempts += 1
            outcome.advance(EntryState.PENDING)
            return self._stage(entry, outcome)

        try:
            staged = retry_call(
                attempt,
                attempts=self._settings.retries + 1,
                label=f"download of entry {index}",
                sleep=self._sleep,
            )
        except Exception as error:
            if not is_retryable(error):
                LOG.debug("entry %d: %s is not retryable", index, type(error).__name__)
            return self._fail(outcome, error)

        with staged:
            outcome.bytes_written = _copy(staged, sink, self._settings.buffer_size)
        outcome.advance(EntryState.COMMITTED)
        return outcome

    def _fail(self, outcome: EntryOutcome, error: BaseException) -> EntryOutcome:
        outcome.error = error
        outcome.advance(EntryState.FAILED)
        LOG.error(
            "entry %d failed after %d attempt(s): %s",
            outcome.index,
            outcome.attempts,
            error,
        )
        return outcome

    def _stage(self, entry: UrlEntry, outcome: EntryOutcome) -> IO[bytes]:
        """Download one entry completely into a fresh temporary file."""
        staged = tempfile.TemporaryFile(
            prefix="htsget-", suffix=".tmp", dir=self._settings.staging_dir
        )
        try:
            outcome.advance(EntryState.RESOLVING)
            stream = self.open_entry(entry)
            outcome.advance(EntryState.STREAMING)
            # The worker thread owns the stream from here on and closes it.
            with BackgroundBufferedStream(
                stream,
                queue_size=self._settings.queue_size,
                block_size=self._settings.block_size,
            ) as buffered:
                shutil.copyfileobj(buffered, staged, self._settings.buffer_size)
            staged.seek(0)
        except BaseException:
            staged.close()
            raise
        outcome.advance(EntryState.STAGED)
        return staged

    def open_entry(self, entry: UrlEntry) -> io.RawIOBase:
        """Open a checked, readable stream for a network entry.

        The whole resolution is retried as configured, on top of the retries
        for opening the underlying connection.
        """
        byte_range = entry.byte_range

        def resolve() -> io.RawIOBase:
            if byte_range is not None:
                return self._open_ranged(entry, byte_range)
            return self._open_whole(entry)

        return retry_call(
            resolve,
            attempts=self._settings.resolve_attempts,
            pause=self._settings.resolve_pause,
            label=f"opening {entry.url}",
            sleep=self._sleep,
        )

    def _open_ranged(self, entry: UrlEntry, byte_range: ByteRange) -> io.RawIOBase:
        mode, auth = select_auth(entry.headers)
        LOG.debug(
            "range %d-%d of %s (auth=%s)",
            byte_range.start,
            byte_range.end,
            entry.url,
            mode.value,
        )
        remote = self._retry_open(
            lambda: RangeStream(
                entry.url,
                client=self._http_client,
                auth=auth,
                headers=entry.headers,
            ),
            entry.url,
        )
        try:
            remote.limit_to(byte_range.end + 1)
            remote.seek(byte_range.start)
            reader = io.BufferedReader(
                remote, min(self._settings.buffer_size, byte_range.size)
            )
            checked = NonEmptyStream(reader)
        except BaseException:
            remote.close()
            raise
        return LengthBoundedStream(checked, byte_range.size)

    def _open_whole(self, entry: UrlEntry) -> io.RawIOBase:
        headers = forwarded_headers(entry.headers)
        authorization = entry.header("Authorization")
        if authorization:
            headers["Authorization"] = authorization
        headers["Accept-Encoding"] = "identity"
        try:
            size = probe_content_length(self._http_client, entry.url, headers=headers)
        except httpx.TransportError as error:
            LOG.debug("no content length for %s: %s", entry.url, error)
            size = -1

        def send() -> httpx.Response:
            request = self._http_client.build_request("GET", entry.url, headers=headers)
            try:
                response = self._http_client.send(request, stream=True)
            except httpx.TransportError as error:
                msg = f"cannot open {entry.url}: {error}"
                raise RemoteStreamError(msg) from error
            if not response.is_success:
                response.close()
                msg = f"{entry.url} answered {response.status_code}"
                raise RemoteStreamError(msg)
            return response

        response = self._retry_open(send, entry.url)
        encoding = response.headers.get("content-encoding", "identity").lower()
        if encoding != "identity":
            # The probed length counts encoded bytes; the body is decoded.
            LOG.debug("%s sent %s encoded data, not bounding it", entry.url, encoding)
            size = -1
        body = ResponseStream(response)
        try:
            checked = NonEmptyStream(
                io.BufferedReader(body, self._settings.buffer_size)
            )
        except BaseException:
            body.close()
            raise
        if size > 0 and not _selects_own_range(entry.url):
            return LengthBoundedStream(checked, size)
        return checked

    def _retry_open(self, opener: Callable[[], Any], url: str) -> Any:
        return retry_call(
            opener,
            attempts=self._settings.open_attempts,
            pause=self._settings.open_pause,
            label=f"connecting to {url}",
            sleep=self._sleep,
        )


def _selects_own_range(url: str) -> bool:
    """Whether the URL query already asks the server for a start/end slice."""
    params = parse_qs(urlsplit(url).query)
    return "start" in params or "end" in params


def _copy(source: IO[bytes], sink: IO[bytes], chunk_size: int) -> int:
    total = 0
    while chunk := source.read(chunk_size):
        sink.write(chunk)
        total += len(chunk)
    return total
