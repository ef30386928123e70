"""Transparent stream wrappers that turn silent truncation into errors."""

from __future__ import annotations

import io
from typing import Any

from .errors import EmptySourceError, IncompleteStreamError


class _GuardStream(io.RawIOBase):
    def __init__(self, delegate: Any):
        super().__init__()
        self._delegate = delegate

    def readable(self) -> bool:
        return True

    def close(self) -> None:
        if not self.closed:
            try:
                self._delegate.close()
            finally:
                super().close()

    def _read_delegate(self, view: memoryview) -> int:
        return self._delegate.readinto(view) or 0


class LengthBoundedStream(_GuardStream):
    """Deliver exactly ``size`` bytes from ``delegate``.

    Once ``size`` bytes have been delivered every read reports end-of-source,
    whatever the delegate still holds. If the delegate ends first,
    :class:`IncompleteStreamError` is raised instead of a short EOF.
    """

    def __init__(self, delegate: Any, size: int):
        super().__init__(delegate)
        if size < 0:
            super().close()
            msg = "size must not be negative"
            raise ValueError(msg)
        self.size = size
        self.delivered = 0

    def readinto(self, b: Any) -> int:
        remaining = self.size - self.delivered
        with memoryview(b) as raw, raw.cast("B") as view:
            if remaining <= 0 or not len(view):
                return 0
            count = self._read_delegate(view[:remaining])
        if not count:
            raise IncompleteStreamError(expected=self.size, received=self.delivered)
        self.delivered += count
        return count

    def __repr__(self) -> str:
        return (
            f"LengthBoundedStream(size={self.size}, delivered={self.delivered}, "
            f"delegate={self._delegate!r})"
        )


class NonEmptyStream(_GuardStream):
    """Fail fast on a source that yields nothing.

    One byte is read from ``delegate`` on construction and handed back to the
    caller on the first read, so nothing is lost. Do not read ``delegate``
    directly once it has been wrapped.
    """

    def __init__(self, delegate: Any):
        super().__init__(delegate)
        first = delegate.read(1)
        if not first:
            super().close()
            msg = f"no byte can be read from {delegate!r}"
            raise EmptySourceError(msg)
        self._pending: bytes | None = bytes(first)

    def readinto(self, b: Any) -> int:
        with memoryview(b) as raw, raw.cast("B") as view:
            if not len(view):
                return 0
            if self._pending is None:
                return self._read_delegate(view)
            view[0] = self._pending[0]
            self._pending = None
            if len(view) == 1:
                return 1
            return 1 + self._read_delegate(view[1:])

    def __repr__(self) -> str:
        return f"NonEmptyStream(delegate={self._delegate!r})"
