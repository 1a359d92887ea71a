import asyncio

import pytest

from db.models import Chunk
from processing.playback import QueuePlaybackBuffer
from processing.reconstructor import stream_sequence

class TestQueuePlaybackBuffer:
    def test_type_support_ignores_parameters(self):
        playback = QueuePlaybackBuffer(("audio/mpeg", "audio/aac"))
        assert playback.is_type_supported("audio/mpeg")
        assert playback.is_type_supported("Audio/AAC; codecs=mp4a.40.2")
        assert not playback.is_type_supported("audio/ogg")

    @pytest.mark.asyncio
    async def test_open_rejects_unsupported(self):
        with pytest.raises(ValueError):
            await QueuePlaybackBuffer(("audio/mpeg",)).open("audio/ogg")

    @pytest.mark.asyncio
    async def test_consumer_receives_segments_in_order(self):
        playback = QueuePlaybackBuffer(("audio/mpeg",), append_timeout=1.0)
        chunks = [Chunk("r", i, f"seg{i}".encode(), 0, 0) for i in range(3)]

        async def consume():
            handle = await playback.wait_opened()
            return [data async for data in handle.iter_bytes()]

        consumer = asyncio.create_task(consume())
        handle = await stream_sequence(playback, "audio/mpeg", chunks)
        received = await asyncio.wait_for(consumer, 1.0)

        assert received == [b"seg0", b"seg1", b"seg2"]
        assert handle.bytes_appended == 12
        assert handle.error is None

    @pytest.mark.asyncio
    async def test_append_waits_for_consumer(self):
        playback = QueuePlaybackBuffer(("audio/mpeg",), append_timeout=0.05)
        handle = await playback.open("audio/mpeg")
        with pytest.raises(asyncio.TimeoutError):
            await playback.append(handle, b"nadie escucha")

    @pytest.mark.asyncio
    async def test_failed_sequence_records_error(self):
        playback = QueuePlaybackBuffer(("audio/mpeg",), append_timeout=0.05)
        chunks = [Chunk("r", 0, b"x", 0, 0)]
        with pytest.raises(asyncio.TimeoutError):
            await stream_sequence(playback, "audio/mpeg", chunks)
        handle = await playback.wait_opened()
        assert handle.error

    @pytest.mark.asyncio
    async def test_unread_segment_does_not_block_end_of_stream(self):
        playback = QueuePlaybackBuffer(("audio/mpeg",), append_timeout=0.05)
        chunks = [Chunk("r", 0, b"seg0", 0, 0), Chunk("r", 1, b"seg1", 0, 0)]
        with pytest.raises(asyncio.TimeoutError):
            await stream_sequence(playback, "audio/mpeg", chunks)

        # El consumidor llega tarde: recibe el cierre en lugar de quedarse esperando
        handle = await playback.wait_opened()
        received = await asyncio.wait_for(_drain(handle), 1.0)
        assert received == []
        assert handle.error == "TimeoutError"

    @pytest.mark.asyncio
    async def test_consumer_stalled_after_first_segment(self):
        playback = QueuePlaybackBuffer(("audio/mpeg",), append_timeout=0.05)
        chunks = [Chunk("r", 0, b"seg0", 0, 0), Chunk("r", 1, b"seg1", 0, 0)]

        async def read_one():
            handle = await playback.wait_opened()
            stream = handle.iter_bytes()
            return await stream.__anext__(), stream

        reader = asyncio.create_task(read_one())
        with pytest.raises(asyncio.TimeoutError):
            await stream_sequence(playback, "audio/mpeg", chunks)

        first, stream = await reader
        assert first == b"seg0"
        rest = await asyncio.wait_for(_drain_iter(stream), 1.0)
        assert rest == []

async def _drain(handle):
    return [data async for data in handle.iter_bytes()]

async def _drain_iter(stream):
    return [data async for data in stream]
