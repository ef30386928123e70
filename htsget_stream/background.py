"""Background-buffered reading of slow byte sources.

A single worker thread fills fixed-size blocks from the wrapped source and
hands them to the reader through a bounded queue; exhausted blocks are handed
back through a recycle pool. This lets many small network reads happen while
the consumer is busy writing, and lets the consumer read in large blocks.
"""

from __future__ import annotations

import io
import logging
import threading
from collections import deque
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Iterator

LOG = logging.getLogger("htsget_stream.background")

DEFAULT_QUEUE_SIZE = 5
DEFAULT_BLOCK_SIZE = 32768

# Published once the source is exhausted (or failed).
_END = bytearray()


class _BlockQueue:
    """Bounded FIFO of blocks that can be shut down from any thread.

    Both ``put`` and ``get`` wait on a condition variable; ``shutdown`` wakes
    every waiter and makes all further calls return immediately.
    """

    def __init__(self, maxsize: int):
        self._maxsize = maxsize
        self._items: deque[bytearray] = deque()
        self._cond = threading.Condition()
        self._shutdown = False

    def put(self, item: bytearray) -> bool:
        """Append ``item``, waiting for room. False if shut down."""
        with self._cond:
            while len(self._items) >= self._maxsize and not self._shutdown:
                self._cond.wait()
            if self._shutdown:
                return False
            self._items.append(item)
            self._cond.notify_all()
            return True

    def get(self, *, block: bool = True) -> bytearray | None:
        """Pop the oldest item; None when empty (non-blocking) or shut down."""
        with self._cond:
            while not self._items:
                if self._shutdown or not block:
                    return None
                self._cond.wait()
            item = self._items.popleft()
            self._cond.notify_all()
            return item

    def shutdown(self) -> None:
        with self._cond:
            self._shutdown = True
            self._items.clear()
            self._cond.notify_all()

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)


class BackgroundBufferedStream(io.RawIOBase):
    """Read-only stream served from blocks filled by a background thread.

    Args:
        source: Readable binary stream with ``readinto`` (``read`` is used as
            a fallback).
        queue_size: Number of filled blocks that may wait for the consumer.
        block_size: Size of each block in bytes.

    At most ``queue_size + 1`` full-size blocks are ever allocated, so the
    worker never reads more than ``(queue_size + 1) * block_size`` bytes ahead
    of the consumer.
    """

    def __init__(
        self,
        source: Any,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        block_size: int = DEFAULT_BLOCK_SIZE,
    ):
        super().__init__()
        for name, value in (("queue_size", queue_size), ("block_size", block_size)):
            if value < 1:
                # Mark closed so finalisation skips our close().
                super().close()
                msg = f"{name} must be at least 1"
                raise ValueError(msg)
        self._source = source
        self._queue_size = queue_size
        self._block_size = block_size
        self._pool_capacity = queue_size + 1

        # Shared between threads.
        self._blocks = _BlockQueue(queue_size)
        self._pool = _BlockQueue(self._pool_capacity)
        self._stopped = threading.Event()
        self._lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._error: BaseException | None = None

        # Worker only.
        self.allocated_blocks = 0

        # Consumer only.
        self._current: bytearray | None = None
        self._index = 0
        self._finished = False

    @property
    def block_size(self) -> int:
        return self._block_size

    def readable(self) -> bool:
        return True

    def start(self) -> None:
        """Start the worker thread; a no-op if it is already running."""
        with self._lock:
            if self._stopped.is_set():
                msg = "cannot start a closed stream"
                raise ValueError(msg)
            if self._thread is not None:
                return
            self._thread = threading.Thread(
                target=self._run, name="BackgroundBufferedStream", daemon=True
            )
            self._thread.start()

    def __enter__(self) -> BackgroundBufferedStream:
        super().__enter__()
        self.start()
        return self

    def readinto(self, b: Any) -> int:
        if self.closed:
            msg = "I/O operation on closed stream"
            raise ValueError(msg)
        self.start()
        with memoryview(b) as raw, raw.cast("B") as view:
            wanted = len(view)
            copied = 0
            while copied < wanted:
                if self._current is None:
                    if self._finished or not self._next_block(wait=copied == 0):
                        break
                current = self._current
                assert current is not None
                count = min(len(current) - self._index, wanted - copied)
                view[copied : copied + count] = current[
                    self._index : self._index + count
                ]
                copied += count
                self._index += count
                if self._index == len(current):
                    self._release_current()

        if copied == 0 and self._finished and self._error is not None:
            raise self._error
        return copied

    def available(self) -> int:
        """Bytes that can be returned right now without waiting."""
        if self._current is None:
            return 0
        return len(self._current) - self._index

    def iter_blocks(self) -> Iterator[bytes]:
        """Yield chunks of at most ``block_size`` bytes until end-of-source.

        Chunks may be shorter than ``block_size`` whenever less data has been
        buffered so far; iteration cannot be restarted.
        """
        while True:
            chunk = self.read(self._block_size)
            if not chunk:
                return
            yield chunk

    def close(self) -> None:
        if self.closed:
            return
        with self._lock:
            self._stopped.set()
            started = self._thread is not None
        self._blocks.shutdown()
        self._pool.shutdown()
        if not started:
            self._close_source()
        super().close()

    def _next_block(self, *, wait: bool) -> bool:
        block = self._blocks.get(block=wait)
        if block is None:
            if wait:
                # Woken by close().
                self._finished = True
            return False
        if block is _END:
            self._finished = True
            return False
        self._current = block
        self._index = 0
        return True

    def _release_current(self) -> None:
        current = self._current
        self._current = None
        self._index = 0
        if current is not None and len(current) == self._block_size:
            self._pool.put(current)

    # Worker thread

    def _run(self) -> None:
        LOG.debug("background reader started for %r", self._source)
        try:
            while not self._stopped.is_set():
                buffer = self._take_buffer()
                if buffer is None:
                    return
                filled = self._fill(buffer)
                exhausted = filled < self._block_size
                if exhausted:
                    del buffer[filled:]
                if filled and not self._blocks.put(buffer):
                    return
                if exhausted:
                    self._blocks.put(_END)
                    LOG.debug("background reader reached end of %r", self._source)
                    return
        except Exception as error:
            LOG.debug("background reader failed for %r: %s", self._source, error)
            self._error = error
            self._blocks.put(_END)
        finally:
            self._close_source()

    def _take_buffer(self) -> bytearray | None:
        recycled = self._pool.get(block=False)
        if recycled is not None:
            return recycled
        if self.allocated_blocks < self._pool_capacity:
            self.allocated_blocks += 1
            return bytearray(self._block_size)
        return self._pool.get()

    def _fill(self, buffer: bytearray) -> int:
        filled = 0
        with memoryview(buffer) as view:
            while filled < self._block_size and not self._stopped.is_set():
                count = self._read_source(view[filled:])
                if not count:
                    break
                filled += count
        return filled

    def _read_source(self, view: memoryview) -> int:
        readinto = getattr(self._source, "readinto", None)
        if readinto is not None:
            return readinto(view) or 0
        data = self._source.read(len(view))
        view[: len(data)] = data
        return len(data)

    def _close_source(self) -> None:
        try:
            self._source.close()
        except Exception:
            LOG.warning("failed to close source %r", self._source, exc_info=True)
