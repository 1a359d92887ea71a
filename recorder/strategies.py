"""Estrategias de captura compartidas por el controlador de sesion.

``RawSampleStrategy`` corta la senal con el segmentador y guarda float32 crudo.
``ContainerNativeStrategy`` entrega un segmento por cada intervalo del
temporizador periodico y lo codifica con el encoder nativo (ffmpeg).
"""

import asyncio
from abc import ABC, abstractmethod
from array import array

from db.models import FORMAT_CONTAINER, FORMAT_PCM_F32, MIME_PCM_F32
from recorder.mixer import float32_to_bytes
from recorder.segmenter import MIN_CHUNK_SECONDS, Segment, Segmenter, frames_to_ms, target_frames


class CaptureStrategy(ABC):
    format: str
    mime_type: str
    codec: str | None = None
    # Segundos entre cortes periodicos; None si el corte depende de la cantidad de muestras
    timeslice: float | None = None

    def __init__(self, sample_rate: int, chunk_seconds: float):
        self.sample_rate = sample_rate
        self.chunk_seconds = max(MIN_CHUNK_SECONDS, float(chunk_seconds))

    @abstractmethod
    def ingest(self, samples: array) -> list[Segment]:
        """Se llama en el loop por cada bloque mono recibido."""

    def tick(self) -> list[Segment]:
        return []

    @abstractmethod
    def drain(self) -> list[Segment]:
        """Entrega todo lo acumulado; se llama una vez al detener."""

    @abstractmethod
    async def encode(self, segment: Segment) -> bytes: ...


class RawSampleStrategy(CaptureStrategy):
    format = FORMAT_PCM_F32
    mime_type = MIME_PCM_F32

    def __init__(self, sample_rate: int, chunk_seconds: float, block_size: int):
        super().__init__(sample_rate, chunk_seconds)
        self.segmenter = Segmenter(sample_rate, target_frames(sample_rate, self.chunk_seconds, block_size))

    def ingest(self, samples: array) -> list[Segment]:
        return self.segmenter.push(samples)

    def drain(self) -> list[Segment]:
        last = self.segmenter.flush()
        return [last] if last is not None else []

    async def encode(self, segment: Segment) -> bytes:
        return float32_to_bytes(segment.samples)


class ContainerNativeStrategy(CaptureStrategy):
    format = FORMAT_CONTAINER

    def __init__(self, sample_rate: int, chunk_seconds: float, encoder):
        super().__init__(sample_rate, chunk_seconds)
        self.encoder = encoder
        self.mime_type = encoder.mime_type
        self.codec = encoder.mime_type
        self.timeslice = self.chunk_seconds
        self._pending = array("f")
        self._frames_emitted = 0

    def ingest(self, samples: array) -> list[Segment]:
        self._pending.extend(samples)
        return []

    def tick(self) -> list[Segment]:
        if not self._pending:
            return []
        samples, self._pending = self._pending, array("f")
        start = self._frames_emitted
        self._frames_emitted += len(samples)
        # Tiempos a partir de las muestras realmente codificadas, no del intervalo nominal
        return [Segment(
            samples=samples,
            start_ms=frames_to_ms(start, self.sample_rate),
            end_ms=frames_to_ms(start + len(samples), self.sample_rate),
        )]

    def drain(self) -> list[Segment]:
        return self.tick()

    async def encode(self, segment: Segment) -> bytes:
        return await asyncio.to_thread(self.encoder.encode, segment.samples, self.sample_rate)


def make_strategy(fmt: str, sample_rate: int, block_size: int,
                  chunk_seconds: float, encoder=None) -> CaptureStrategy:
    if fmt == FORMAT_PCM_F32:
        return RawSampleStrategy(sample_rate, chunk_seconds, block_size)
    if fmt == FORMAT_CONTAINER:
        if encoder is None:
            raise ValueError("El formato 'container' requiere un encoder")
        return ContainerNativeStrategy(sample_rate, chunk_seconds, encoder)
    raise ValueError(f"Formato de captura desconocido: {fmt}")
