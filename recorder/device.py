import logging
import sys
import threading
from collections import deque
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)

FrameCallback = Callable[[bytes, int], None]


class DeviceUnavailable(RuntimeError):
    """No se pudo adquirir el dispositivo de captura (permiso, ausencia, etc.)."""


@dataclass(frozen=True)
class CaptureConfig:
    sample_rate: int = 48000
    channels: int = 2
    frames_per_buffer: int = 960
    device_index: int | None = None


def _load_pyaudio():
    if sys.platform == "win32":
        import pyaudiowpatch as pyaudio
    else:
        import pyaudio
    return pyaudio


class LevelTap:
    """Ventana deslizante de las ultimas muestras para el medidor de nivel."""

    def __init__(self, window: int = 2048):
        self._samples: deque[float] = deque(maxlen=window)
        self._lock = threading.Lock()

    def feed(self, samples):
        with self._lock:
            self._samples.extend(samples)

    def read(self) -> list[float]:
        with self._lock:
            return list(self._samples)


class PyAudioStream:
    def __init__(self, stream, sample_rate: int, channels: int, block_size: int):
        self._stream = stream
        self.sample_rate = sample_rate
        self.channels = channels
        self.block_size = block_size

    def start(self):
        self._stream.start_stream()

    def stop(self):
        if self._stream.is_active():
            self._stream.stop_stream()

    def close(self):
        self._stream.close()


class PyAudioDevice:
    def __init__(self):
        self._pa = None
        self._pyaudio = None

    def _get_pa(self):
        if self._pa is None:
            try:
                self._pyaudio = _load_pyaudio()
            except ImportError as e:
                raise DeviceUnavailable("PyAudio no esta instalado") from e
            self._pa = self._pyaudio.PyAudio()
        return self._pa

    def _find_input_device(self, device_index: int | None) -> dict | None:
        pa = self._get_pa()
        if device_index is not None:
            try:
                return pa.get_device_info_by_index(device_index)
            except (OSError, ValueError):
                return None
        try:
            return pa.get_default_input_device_info()
        except OSError:
            pass
        for i in range(pa.get_device_count()):
            info = pa.get_device_info_by_index(i)
            if info["maxInputChannels"] > 0 and not info.get("isLoopbackDevice", False):
                return info
        return None

    def _negotiate_rate(self, info: dict, channels: int, hint: int) -> int:
        try:
            self._get_pa().is_format_supported(
                hint,
                input_device=info["index"],
                input_channels=channels,
                input_format=self._pyaudio.paFloat32,
            )
            return hint
        except ValueError:
            rate = int(info["defaultSampleRate"])
            logger.info("El dispositivo no soporta %d Hz, usando %d Hz", hint, rate)
            return rate

    def acquire(self, capture_config: CaptureConfig, on_frames: FrameCallback) -> PyAudioStream:
        pa = self._get_pa()
        info = self._find_input_device(capture_config.device_index)
        if info is None or int(info["maxInputChannels"]) < 1:
            raise DeviceUnavailable("No se encontro ningun microfono")

        channels = max(1, min(capture_config.channels, int(info["maxInputChannels"])))
        rate = self._negotiate_rate(info, channels, capture_config.sample_rate)
        pyaudio = self._pyaudio

        def callback(in_data, frame_count, time_info, status):
            on_frames(in_data, channels)
            return (None, pyaudio.paContinue)

        try:
            stream = pa.open(
                format=pyaudio.paFloat32,
                channels=channels,
                rate=rate,
                input=True,
                input_device_index=info["index"],
                frames_per_buffer=capture_config.frames_per_buffer,
                stream_callback=callback,
                start=False,
            )
        except Exception as e:
            raise DeviceUnavailable(f"No se pudo abrir {info['name']}: {e}") from e

        logger.info("Microfono: %s (%d Hz, %d canales)", info["name"], rate, channels)
        return PyAudioStream(stream, rate, channels, capture_config.frames_per_buffer)

    def release(self, stream: PyAudioStream):
        try:
            stream.stop()
        finally:
            stream.close()

    def terminate(self):
        if self._pa:
            self._pa.terminate()
            self._pa = None
