"""Unit tests for the streaming chunker."""

import asyncio
import io

import pytest

from shardfarm.chunker import (
    ChunkStream, iter_chunks, stream_chunk_file, calculate_file_hash,
    verify_chunk
)
from shardfarm.config import CHUNK_SIZE
from shardfarm.exceptions import (
    ChunkReadError, ChunkStorageError, ConfigurationError, ShardfarmException
)
from shardfarm.models import compute_chunk_hash


MIB = 1024 * 1024


class FlakySource(io.RawIOBase):
    """Readable source that fails after ``fail_after`` bytes."""

    def __init__(self, size, fail_after):
        super().__init__()
        self._data = bytes(range(256)) * (size // 256 + 1)
        self._data = self._data[:size]
        self._pos = 0
        self._fail_after = fail_after

    def readable(self):
        return True

    def read(self, n=-1):
        if self._pos >= self._fail_after:
            raise OSError("device unplugged")
        end = min(self._pos + n, self._fail_after, len(self._data))
        data = self._data[self._pos:end]
        self._pos = end
        return data


class MisbehavingSource:
    """Source whose ``read`` fails with a non-I/O error."""

    def read(self, n=-1):
        raise TypeError("read() returned str")


async def collect(stream):
    chunks = []
    async for chunk in stream:
        chunks.append(chunk)
    return chunks


class TestIterChunks:
    """Test synchronous chunking of a binary stream."""

    @pytest.mark.parametrize("size,expected", [
        (100, [100]),
        (MIB, [MIB]),
        (5 * MIB, [MIB] * 5),
        (3 * MIB + MIB // 2, [MIB, MIB, MIB, 524288]),
    ])
    def test_chunk_sizes(self, size, expected):
        chunks = list(iter_chunks(io.BytesIO(b'\x5a' * size)))

        assert [c.size for c in chunks] == expected
        assert [c.index for c in chunks] == list(range(len(expected)))

    def test_exact_multiple_of_chunk_size(self):
        chunks = list(iter_chunks(io.BytesIO(b'a' * (2 * MIB))))

        assert [c.index for c in chunks] == [0, 1]
        assert all(c.size == CHUNK_SIZE for c in chunks)

    def test_last_chunk_holds_remainder(self):
        data = b'b' * (3 * MIB + MIB // 2)
        chunks = list(iter_chunks(io.BytesIO(data)))

        assert [c.size for c in chunks] == [MIB, MIB, MIB, MIB // 2]
        assert b''.join(c.data for c in chunks) == data

    def test_file_smaller_than_one_chunk(self):
        chunks = list(iter_chunks(io.BytesIO(b'tiny')))

        assert len(chunks) == 1
        assert chunks[0].size == 4
        assert chunks[0].hash == compute_chunk_hash(b'tiny')

    def test_empty_source_yields_nothing(self):
        assert list(iter_chunks(io.BytesIO(b''))) == []

    def test_hash_covers_exact_bytes(self):
        chunks = list(iter_chunks(io.BytesIO(b'0123456789'), chunk_size=4))

        for chunk in chunks:
            assert verify_chunk(chunk.data, chunk.hash)
        assert chunks[2].data == b'89'

    def test_invalid_chunk_size(self):
        with pytest.raises(ConfigurationError):
            list(iter_chunks(io.BytesIO(b'abc'), chunk_size=0))

    def test_read_error_after_first_chunk(self):
        source = FlakySource(size=40, fail_after=16)
        produced = []

        with pytest.raises(ChunkReadError) as exc_info:
            for chunk in iter_chunks(source, chunk_size=16):
                produced.append(chunk)

        assert [c.index for c in produced] == [0]
        assert exc_info.value.chunk_index == 1
        assert exc_info.value.kind == 'io_error'


class TestChunkStream:
    """Test the asynchronous chunk stream."""

    @pytest.mark.asyncio
    async def test_stream_from_file(self, tmp_path):
        path = tmp_path / 'data.bin'
        data = bytes(range(256)) * 8192 + b'tail'
        path.write_bytes(data)

        async with stream_chunk_file(str(path)) as stream:
            chunks = await collect(stream)

        assert [c.index for c in chunks] == list(range(len(chunks)))
        assert b''.join(c.data for c in chunks) == data
        assert chunks[-1].size == len(data) % CHUNK_SIZE

    @pytest.mark.asyncio
    async def test_stream_empty_file(self, tmp_path):
        path = tmp_path / 'empty.bin'
        path.write_bytes(b'')

        async with stream_chunk_file(str(path)) as stream:
            assert await collect(stream) == []

    @pytest.mark.asyncio
    async def test_missing_file_is_terminal_error(self, tmp_path):
        stream = stream_chunk_file(str(tmp_path / 'missing.bin'))

        with pytest.raises(ChunkStorageError) as exc_info:
            await collect(stream)

        assert exc_info.value.operation == 'open'

    @pytest.mark.asyncio
    async def test_read_error_delivered_after_good_chunks(self):
        stream = ChunkStream(FlakySource(size=64, fail_after=32), chunk_size=16)
        produced = []

        with pytest.raises(ChunkReadError):
            async for chunk in stream:
                produced.append(chunk.index)

        assert produced == [0, 1]

    @pytest.mark.asyncio
    async def test_closed_source_is_terminal_error(self):
        source = io.BytesIO(b'abcdefgh')
        source.close()
        stream = ChunkStream(source, chunk_size=4)

        with pytest.raises(ChunkReadError) as exc_info:
            await asyncio.wait_for(stream.__anext__(), timeout=5)

        assert exc_info.value.chunk_index == 0
        assert isinstance(exc_info.value.__cause__, ValueError)

    @pytest.mark.asyncio
    async def test_unexpected_source_error_is_terminal_error(self):
        stream = ChunkStream(MisbehavingSource(), chunk_size=4)

        with pytest.raises(ShardfarmException) as exc_info:
            await asyncio.wait_for(collect(stream), timeout=5)

        assert isinstance(exc_info.value, ChunkReadError)
        assert isinstance(exc_info.value.__cause__, TypeError)

    @pytest.mark.asyncio
    async def test_lookahead_bounds_reads(self):
        source = io.BytesIO(b'x' * 64)
        stream = ChunkStream(source, lookahead=2, chunk_size=4)

        first = await stream.__anext__()
        for _ in range(20):
            await asyncio.sleep(0)

        # One chunk handed out, at most two queued, at most one being put
        assert first.index == 0
        assert stream.chunks_produced <= 4
        await stream.aclose()

    @pytest.mark.asyncio
    async def test_file_object_not_closed(self):
        source = io.BytesIO(b'abcdefgh')

        async with ChunkStream(source, chunk_size=4) as stream:
            assert [c.data async for c in stream] == [b'abcd', b'efgh']

        assert not source.closed

    def test_invalid_lookahead(self):
        with pytest.raises(ConfigurationError):
            ChunkStream(io.BytesIO(b''), lookahead=0)


class TestFileHash:
    """Test whole-file hashing."""

    def test_hash_matches_content(self, tmp_path):
        path = tmp_path / 'file.bin'
        path.write_bytes(b'hello world' * 1000)

        assert calculate_file_hash(str(path), block_size=7) == \
            compute_chunk_hash(b'hello world' * 1000)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ChunkStorageError):
            calculate_file_hash(str(tmp_path / 'nope'))
