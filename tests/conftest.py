"""Shared fakes for the capture device, encoder, clock and playback buffer."""

from array import array

import pytest

from db.store import MemoryChunkStore
from processing.playback import PlaybackBuffer
from recorder.device import DeviceUnavailable
from recorder.events import EventBus
from recorder.mixer import float32_to_bytes
from recorder.session import SessionController


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float):
        self.now += ms


class FakeStream:
    def __init__(self, sample_rate: int, channels: int, block_size: int):
        self.sample_rate = sample_rate
        self.channels = channels
        self.block_size = block_size
        self.started = False
        self.stopped = False
        self.closed = False

    def start(self):
        self.started = True

    def stop(self):
        self.stopped = True

    def close(self):
        self.closed = True


class FakeDevice:
    def __init__(self, sample_rate=48000, channels=1, block_size=960, fail=None):
        self.sample_rate = sample_rate
        self.channels = channels
        self.block_size = block_size
        self.fail = fail
        self.stream = None
        self.on_frames = None
        self.capture_config = None
        self.released = []

    def acquire(self, capture_config, on_frames):
        if self.fail:
            raise DeviceUnavailable(self.fail)
        self.capture_config = capture_config
        self.on_frames = on_frames
        self.stream = FakeStream(self.sample_rate, self.channels, self.block_size)
        return self.stream

    def release(self, stream):
        stream.stop()
        stream.close()
        self.released.append(stream)

    def emit(self, samples):
        """Deliver one interleaved block, as the audio callback would."""
        self.on_frames(float32_to_bytes(array("f", samples)), self.stream.channels)


class FakeEncoder:
    mime_type = "audio/mpeg"

    def __init__(self):
        self.calls = []

    def encode(self, samples, sample_rate):
        self.calls.append((len(samples), sample_rate))
        return b"ID3" + len(samples).to_bytes(4, "little")


class FakePlayback(PlaybackBuffer):
    def __init__(self, supported=True, fail_on=None):
        self.supported = supported
        self.fail_on = fail_on
        self.opened = []
        self.appended = []
        self.ended = []

    def is_type_supported(self, codec):
        return self.supported

    async def open(self, codec):
        self.opened.append(codec)
        return {"codec": codec}

    async def append(self, handle, data):
        if self.fail_on is not None and len(self.appended) == self.fail_on:
            raise RuntimeError("append rejected")
        self.appended.append(data)

    async def end_of_stream(self, handle, error=None):
        self.ended.append(error)


def make_block(n: int, start: int = 0) -> list[float]:
    return [((start + i) % 2000) / 2000.0 - 0.5 for i in range(n)]


@pytest.fixture
def clock():
    return FakeClock(1_000.0)


@pytest.fixture
def device():
    return FakeDevice()


@pytest.fixture
def store():
    return MemoryChunkStore()


@pytest.fixture
def events():
    bus = EventBus()
    bus.received = []
    bus.subscribe(bus.received.append)
    return bus


@pytest.fixture
def controller(store, device, clock, events):
    return SessionController(
        store,
        device,
        chunk_seconds=2.0,
        events=events,
        clock=clock,
        stats_interval=0.01,
        meter_interval=0.01,
    )
