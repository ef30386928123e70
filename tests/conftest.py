from __future__ import annotations

import io
import json
import os
import re
import threading
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import httpx
import pytest

from htsget_stream.settings import ClientSettings

if TYPE_CHECKING:
    from collections.abc import Callable, Generator

TICKET_PATH = "/tickets/files/EGAF0001"
DATA_HOST = "https://data.example.org"
TICKET_BASE = "https://tickets.example.org/tickets/files/"

_RANGE = re.compile(r"bytes=(\d+)-(\d+)")


@dataclass
class FakeHtsgetServer:
    """In-memory ticket and data server behind an ``httpx.MockTransport``.

    Data resources are served with HEAD, full GET and ``Range`` GET support;
    ranges starting past the end answer 416.
    """

    resources: dict[str, bytes] = field(default_factory=dict)
    ticket: dict[str, Any] | None = None
    ticket_failures: int = 0
    # Number of data GETs to answer with 503, per path.
    failures: dict[str, int] = field(default_factory=dict)
    # Content-Length to advertise on HEAD instead of the real size, per path.
    head_lengths: dict[str, int] = field(default_factory=dict)
    # Status to answer HEAD with instead of 200, per path.
    head_status: dict[str, int] = field(default_factory=dict)
    requests: list[httpx.Request] = field(default_factory=list)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def data_requests(self, method: str | None = None) -> list[httpx.Request]:
        return [
            r
            for r in self.requests
            if r.url.path != TICKET_PATH and (method is None or r.method == method)
        ]

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == TICKET_PATH:
            return self._ticket_response()
        data = self.resources.get(path)
        if data is None:
            return httpx.Response(404)
        if request.method == "HEAD":
            if path in self.head_status:
                return httpx.Response(self.head_status[path])
            length = self.head_lengths.get(path, len(data))
            return httpx.Response(200, headers={"Content-Length": str(length)})
        if self.failures.get(path, 0) > 0:
            self.failures[path] -= 1
            return httpx.Response(503)
        range_header = request.headers.get("range")
        if range_header is None:
            return httpx.Response(200, content=data)
        match = _RANGE.fullmatch(range_header)
        assert match is not None, range_header
        start, end = int(match.group(1)), int(match.group(2))
        if start >= len(data):
            return httpx.Response(416)
        body = data[start : end + 1]
        return httpx.Response(
            206,
            content=body,
            headers={
                "Content-Range": f"bytes {start}-{start + len(body) - 1}/{len(data)}"
            },
        )

    def _ticket_response(self) -> httpx.Response:
        if self.ticket_failures > 0:
            self.ticket_failures -= 1
            return httpx.Response(500)
        if self.ticket is None:
            return httpx.Response(404)
        return httpx.Response(200, content=json.dumps({"htsget": self.ticket}))


class CountingSource(io.RawIOBase):
    """Readable source that counts what was taken from it.

    Args:
        data: Bytes to serve.
        chunk: Largest number of bytes returned by one read.
        fail_after: Raise ``OSError`` once this many bytes were served.
    """

    def __init__(self, data: bytes, chunk: int | None = None, fail_after: int | None = None):
        super().__init__()
        self._data = data
        self._chunk = chunk
        self._fail_after = fail_after
        self.bytes_read = 0
        self.lock = threading.Lock()

    def readable(self) -> bool:
        return True

    def readinto(self, b: Any) -> int:
        with memoryview(b) as view:
            wanted = len(view)
            if self._chunk is not None:
                wanted = min(wanted, self._chunk)
            if self._fail_after is not None and self.bytes_read >= self._fail_after:
                msg = "source failed"
                raise OSError(msg)
            if self._fail_after is not None:
                wanted = min(wanted, self._fail_after - self.bytes_read)
            piece = self._data[self.bytes_read : self.bytes_read + wanted]
            view[: len(piece)] = piece
        with self.lock:
            self.bytes_read += len(piece)
        return len(piece)


class BlockingSource(io.RawIOBase):
    """Source whose reads wait until ``release`` is set, then report EOF."""

    def __init__(self):
        super().__init__()
        self.release = threading.Event()
        self.entered = threading.Event()

    def readable(self) -> bool:
        return True

    def readinto(self, b: Any) -> int:
        self.entered.set()
        self.release.wait(timeout=10)
        return 0


def wait_for(condition: Callable[[], bool], timeout: float = 5.0) -> bool:
    """Poll ``condition`` until it holds or ``timeout`` seconds pass."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.01)
    return condition()


@pytest.fixture
def server() -> FakeHtsgetServer:
    return FakeHtsgetServer()


@pytest.fixture
def fast_settings() -> ClientSettings:
    """Settings with small buffers and no pauses between retries."""
    return ClientSettings(
        endpoint_url=TICKET_BASE,
        buffer_size=4,
        block_size=4,
        queue_size=2,
        retries=1,
        ticket_attempts=3,
        open_attempts=2,
        open_pause=0,
        resolve_attempts=2,
        resolve_pause=0,
    )


@pytest.fixture
def no_sleep() -> Callable[[float], None]:
    return lambda _seconds: None


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> Generator[pytest.MonkeyPatch]:
    """Remove HTSGET_* variables so settings fall back to defaults."""
    for key in list(os.environ):
        if key.upper().startswith("HTSGET_"):
            monkeypatch.delenv(key)
    yield monkeypatch
