from __future__ import annotations

import enum
import io
import logging
import os
from typing import TYPE_CHECKING, Any

import httpx

from .errors import RemoteStreamError

if TYPE_CHECKING:
    from collections.abc import Generator, Iterator, Mapping

LOG = logging.getLogger("htsget_stream.remote")

# Headers the client always sets itself.
_MANAGED_HEADERS = {
    "authorization",
    "range",
    "host",
    "content-length",
    "accept-encoding",
}


class AuthMode(enum.Enum):
    NONE = "none"
    BASIC = "basic"
    BEARER = "bearer"


class StaticAuthorization(httpx.Auth):
    """Send a pre-formed ``Authorization`` header value unchanged."""

    def __init__(self, value: str):
        self._value = value

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, Any, None]:
        request.headers["Authorization"] = self._value
        yield request


def select_auth(headers: Mapping[str, str] | None) -> tuple[AuthMode, httpx.Auth | None]:
    """Pick the authentication for a ticket entry from its headers.

    ``Bearer``/``Basic`` values are sent as they are. A bare ``user:password``
    credential becomes HTTP basic authentication and any other bare value is
    treated as a bearer token.
    """
    value = _find_header(headers, "authorization")
    if not value:
        return AuthMode.NONE, None
    value = value.strip()
    scheme, _, credential = value.partition(" ")
    if credential and scheme.lower() == "bearer":
        return AuthMode.BEARER, StaticAuthorization(value)
    if credential and scheme.lower() == "basic":
        return AuthMode.BASIC, StaticAuthorization(value)
    if ":" in value:
        user, _, password = value.partition(":")
        return AuthMode.BASIC, httpx.BasicAuth(user, password)
    return AuthMode.BEARER, StaticAuthorization(f"Bearer {value}")


def forwarded_headers(headers: Mapping[str, str] | None) -> dict[str, str]:
    """Ticket headers to send along with every data request."""
    if not headers:
        return {}
    return {
        key: value
        for key, value in headers.items()
        if key.lower() not in _MANAGED_HEADERS
    }


def _find_header(headers: Mapping[str, str] | None, name: str) -> str | None:
    if not headers:
        return None
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None


def probe_content_length(
    client: httpx.Client,
    url: str,
    *,
    headers: Mapping[str, str] | None = None,
    auth: httpx.Auth | None = None,
) -> int:
    """Ask for the size of ``url`` with a HEAD request.

    Returns:
        The advertised ``Content-Length``, or -1 when the server does not
        answer successfully or does not send a usable value.

    Raises:
        httpx.TransportError: The request could not be sent at all.
    """
    # The length must describe the stored bytes, not a compressed transfer.
    kwargs: dict[str, Any] = {
        "headers": {**(headers or {}), "Accept-Encoding": "identity"}
    }
    if auth is not None:
        kwargs["auth"] = auth
    response = client.head(url, **kwargs)
    if not response.is_success:
        LOG.warning(
            "content length probe for %s answered %s", url, response.status_code
        )
        return -1
    encoding = response.headers.get("content-encoding", "identity").lower()
    if encoding != "identity":
        LOG.warning("%s answered with %s encoding, length unknown", url, encoding)
        return -1
    raw = response.headers.get("content-length")
    if raw is None:
        return -1
    try:
        length = int(raw)
    except ValueError:
        LOG.warning("invalid content length (%s) for %s", raw, url)
        return -1
    return length if length >= 0 else -1


class RangeStream(io.RawIOBase):
    """Seekable read access to a remote resource through HTTP byte ranges.

    Every read issues one ``Range`` request for exactly the bytes asked for,
    starting at the current position. A ``416 Range Not Satisfiable`` answer,
    or a connection closed before the body was complete, is end-of-file: when
    it happens after some bytes were received, the length is frozen at the
    new position.
    """

    def __init__(
        self,
        url: str,
        *,
        client: httpx.Client,
        auth: httpx.Auth | None = None,
        headers: Mapping[str, str] | None = None,
        length: int = -1,
    ):
        super().__init__()
        self.url = url
        self._client = client
        self._auth = auth
        self._headers = forwarded_headers(headers)
        self._position = 0
        self._length = length
        if self._length < 0:
            try:
                self._length = probe_content_length(
                    client, url, headers=self._headers, auth=auth
                )
            except httpx.HTTPError as error:
                super().close()
                msg = f"cannot open {url}: {error}"
                raise RemoteStreamError(msg) from error
        LOG.debug("opened %s (length=%d)", url, self._length)

    @property
    def position(self) -> int:
        return self._position

    @property
    def length(self) -> int:
        """Best known size of the resource, -1 if unknown."""
        return self._length

    def eof(self) -> bool:
        return self._length >= 0 and self._position >= self._length

    def limit_to(self, end: int) -> None:
        """Never request bytes at or past offset ``end``."""
        if self._length < 0 or self._length > end:
            self._length = end

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return True

    def tell(self) -> int:
        return self._position

    def seek(self, offset: int, whence: int = os.SEEK_SET) -> int:
        if whence == os.SEEK_SET:
            position = offset
        elif whence == os.SEEK_CUR:
            position = self._position + offset
        elif whence == os.SEEK_END:
            if self._length < 0:
                msg = "cannot seek from the end of a resource of unknown length"
                raise OSError(msg)
            position = self._length + offset
        else:
            msg = f"invalid whence ({whence})"
            raise ValueError(msg)
        if position < 0:
            msg = f"negative seek position {position}"
            raise ValueError(msg)
        self._position = position
        return position

    def readinto(self, b: Any) -> int:
        with memoryview(b) as raw, raw.cast("B") as view:
            if not len(view) or self.eof():
                return 0
            return self._read_range(view)

    def _read_range(self, view: memoryview) -> int:
        start = self._position
        end = start + len(view) - 1
        if self._length >= 0:
            end = min(end, self._length - 1)
        wanted = end - start + 1
        byte_range = f"bytes={start}-{end}"
        # Ranges address the stored bytes, so ask for them unencoded.
        headers = {**self._headers, "Range": byte_range, "Accept-Encoding": "identity"}
        kwargs: dict[str, Any] = {"headers": headers}
        if self._auth is not None:
            kwargs["auth"] = self._auth

        received = 0
        try:
            with self._client.stream("GET", self.url, **kwargs) as response:
                if response.status_code == httpx.codes.REQUESTED_RANGE_NOT_SATISFIABLE:
                    LOG.debug("%s: %s is past the end", self.url, byte_range)
                    return self._at_end(received)
                response.raise_for_status()
                if response.status_code == httpx.codes.OK and start > 0:
                    msg = f"{self.url} ignored the range request {byte_range}"
                    raise RemoteStreamError(msg)
                for chunk in response.iter_bytes():
                    count = min(len(chunk), wanted - received)
                    view[received : received + count] = chunk[:count]
                    received += count
                    if received >= wanted:
                        break
        except httpx.RemoteProtocolError as error:
            LOG.debug("%s: connection ended early (%s)", self.url, error)
            return self._at_end(received)
        except httpx.HTTPError as error:
            msg = f"reading {byte_range} of {self.url} failed: {error}"
            raise RemoteStreamError(msg) from error

        self._position += received
        return received

    def _at_end(self, received: int) -> int:
        if received == 0:
            return 0
        self._position += received
        self._length = self._position
        LOG.debug("%s: length corrected to %d", self.url, self._length)
        return received

    def __repr__(self) -> str:
        return f"RangeStream({self.url!r}, position={self._position}, length={self._length})"


class ResponseStream(io.RawIOBase):
    """Raw stream over the body of a streamed ``httpx.Response``."""

    def __init__(self, response: httpx.Response):
        super().__init__()
        self._response = response
        self._chunks: Iterator[bytes] = response.iter_bytes()
        self._pending = b""

    @property
    def url(self) -> str:
        return str(self._response.request.url)

    def readable(self) -> bool:
        return True

    def readinto(self, b: Any) -> int:
        with memoryview(b) as raw, raw.cast("B") as view:
            if not len(view):
                return 0
            while not self._pending:
                try:
                    self._pending = next(self._chunks)
                except StopIteration:
                    return 0
                except httpx.HTTPError as error:
                    msg = f"reading {self.url} failed: {error}"
                    raise RemoteStreamError(msg) from error
            count = min(len(view), len(self._pending))
            view[:count] = self._pending[:count]
            self._pending = self._pending[count:]
            return count

    def close(self) -> None:
        if not self.closed:
            self._response.close()
        super().close()

    def __repr__(self) -> str:
        return f"ResponseStream({self.url!r})"
