"""Tests for the background-buffered stream."""

from __future__ import annotations

import threading
import time

import pytest
from conftest import BlockingSource, CountingSource, wait_for

from htsget_stream.background import BackgroundBufferedStream

DATA = bytes(range(256)) * 20


class TestBackgroundBufferedStream:
    """Ordering, look-ahead and recycling of background-filled blocks."""

    def test_reads_all_bytes_in_order(self):
        """The consumer sees exactly the source bytes, in order."""
        source = CountingSource(DATA, chunk=7)
        with BackgroundBufferedStream(source, queue_size=3, block_size=64) as stream:
            assert stream.read() == DATA

    def test_reads_do_not_wait_for_full_requests(self):
        """A read returns what is buffered instead of waiting for more blocks."""
        source = CountingSource(DATA)
        with BackgroundBufferedStream(source, queue_size=1, block_size=16) as stream:
            chunk = stream.read(1000)
            assert 0 < len(chunk) <= 1000
            assert DATA.startswith(chunk)

    def test_iter_blocks_yields_bounded_chunks(self):
        """iter_blocks yields chunks no larger than a block, ending at EOF."""
        source = CountingSource(DATA[:1000])
        with BackgroundBufferedStream(source, queue_size=2, block_size=64) as stream:
            chunks = list(stream.iter_blocks())
        assert all(0 < len(chunk) <= 64 for chunk in chunks)
        assert b"".join(chunks) == DATA[:1000]

    def test_lookahead_is_bounded_before_first_read(self):
        """The worker reads at most (queue_size + 1) blocks ahead."""
        queue_size, block_size = 3, 32
        source = CountingSource(DATA)
        stream = BackgroundBufferedStream(
            source, queue_size=queue_size, block_size=block_size
        )
        try:
            stream.start()
            limit = (queue_size + 1) * block_size
            assert wait_for(lambda: source.bytes_read >= limit)
            time.sleep(0.1)
            assert source.bytes_read == limit
        finally:
            stream.close()

    def test_full_size_blocks_are_recycled(self):
        """No more than queue_size + 1 blocks are allocated for a long source."""
        source = CountingSource(DATA)
        with BackgroundBufferedStream(source, queue_size=2, block_size=16) as stream:
            received = bytearray()
            while chunk := stream.read(16):
                received += chunk
        assert bytes(received) == DATA
        assert len(DATA) // 16 > 10
        assert stream.allocated_blocks <= 3

    def test_available_counts_bytes_in_current_block(self):
        """available() reports the bytes left in the block being consumed."""
        source = CountingSource(DATA[:100])
        with BackgroundBufferedStream(source, queue_size=2, block_size=8) as stream:
            assert stream.available() == 0
            assert stream.read(3) == DATA[:3]
            assert stream.available() == 5

    def test_empty_source_is_immediate_eof(self):
        """A source with no data yields end-of-source on the first read."""
        with BackgroundBufferedStream(CountingSource(b"")) as stream:
            assert stream.read(10) == b""
            assert stream.read(10) == b""

    def test_source_error_is_raised_after_buffered_data(self):
        """A worker failure ends the stream and is raised to the consumer."""
        source = CountingSource(DATA, fail_after=100)
        stream = BackgroundBufferedStream(source, queue_size=2, block_size=32)
        received = bytearray()
        with pytest.raises(OSError, match="source failed"):
            while chunk := stream.read(32):
                received += chunk
        assert bytes(received) == DATA[:96]
        with pytest.raises(OSError):
            stream.read(32)
        stream.close()
        assert wait_for(lambda: source.closed)

    def test_worker_closes_source_at_end(self):
        """The source is released once it has been read to the end."""
        source = CountingSource(DATA[:10])
        with BackgroundBufferedStream(source) as stream:
            assert stream.read() == DATA[:10]
            assert wait_for(lambda: source.closed)

    def test_close_before_start_closes_source(self):
        """Closing an unstarted stream releases the source; close is idempotent."""
        source = CountingSource(DATA)
        stream = BackgroundBufferedStream(source)
        stream.close()
        stream.close()
        assert source.closed
        assert source.bytes_read == 0
        with pytest.raises(ValueError):
            stream.read(1)
        with pytest.raises(ValueError):
            stream.start()

    def test_start_is_idempotent(self):
        """Starting twice runs a single worker."""
        source = CountingSource(DATA[:64])
        with BackgroundBufferedStream(source, block_size=16) as stream:
            stream.start()
            stream.start()
            assert stream.read() == DATA[:64]

    def test_close_wakes_blocked_reader(self):
        """close() from another thread releases a reader waiting for data."""
        source = BlockingSource()
        stream = BackgroundBufferedStream(source)
        outcome: list[object] = []

        def consume() -> None:
            try:
                outcome.append(stream.read(10))
            except ValueError as error:
                outcome.append(error)

        reader = threading.Thread(target=consume)
        reader.start()
        assert source.entered.wait(timeout=5)
        time.sleep(0.05)
        stream.close()
        reader.join(timeout=5)
        try:
            assert not reader.is_alive()
            assert outcome and (outcome[0] == b"" or isinstance(outcome[0], ValueError))
        finally:
            source.release.set()
        assert wait_for(lambda: source.closed)

    @pytest.mark.parametrize(
        ("queue_size", "block_size"), [(0, 10), (5, 0), (-1, -1)]
    )
    def test_rejects_invalid_sizes(self, queue_size: int, block_size: int):
        """Queue size and block size must both be at least one."""
        with pytest.raises(ValueError):
            BackgroundBufferedStream(
                CountingSource(DATA), queue_size=queue_size, block_size=block_size
            )
