"""Segmentacion de la senal mono en fragmentos de tamano fijo.

El segmentador acumula bloques de muestras y corta, desde el frente, tantos
fragmentos de ``target`` muestras como quepan. El resto queda en el buffer
hasta el siguiente bloque o hasta ``flush()`` al detener la sesion, que es el
unico punto donde se emite un fragmento mas corto que el objetivo.
"""

from array import array
from dataclasses import dataclass

MIN_CHUNK_SECONDS = 0.25


def target_frames(sample_rate: int, chunk_seconds: float, block_size: int) -> int:
    """Muestras por fragmento, redondeadas a multiplo del bloque nativo."""
    seconds = max(MIN_CHUNK_SECONDS, float(chunk_seconds))
    block = max(1, int(block_size))
    blocks = round(sample_rate * seconds / block)
    return max(1, blocks) * block


def segment(buffer: array, block: array, target: int) -> tuple[list[array], array]:
    """Paso puro: agrega ``block`` a ``buffer`` y corta fragmentos completos.

    Retorna ``(fragmentos, resto)``; ``buffer`` no se modifica.
    """
    pending = array(buffer.typecode, buffer)
    pending.extend(block)
    segments = []
    offset = 0
    while len(pending) - offset >= target:
        segments.append(pending[offset:offset + target])
        offset += target
    return segments, pending[offset:]


def frames_to_ms(frames: int, sample_rate: int) -> float:
    return frames * 1000.0 / sample_rate


@dataclass(frozen=True)
class Segment:
    samples: array
    start_ms: float
    end_ms: float

    @property
    def frames(self) -> int:
        return len(self.samples)


class Segmenter:
    def __init__(self, sample_rate: int, target: int):
        self.sample_rate = sample_rate
        self.target = target
        self._buffer = array("f")
        self._frames_emitted = 0

    @property
    def pending_frames(self) -> int:
        return len(self._buffer)

    @property
    def target_seconds(self) -> float:
        return self.target / self.sample_rate

    def push(self, block: array) -> list[Segment]:
        slices, self._buffer = segment(self._buffer, block, self.target)
        return [self._timed(s) for s in slices]

    def flush(self) -> Segment | None:
        if not self._buffer:
            return None
        remainder, self._buffer = self._buffer, array("f")
        return self._timed(remainder)

    def _timed(self, samples: array) -> Segment:
        start = self._frames_emitted
        self._frames_emitted += len(samples)
        return Segment(
            samples=samples,
            start_ms=frames_to_ms(start, self.sample_rate),
            end_ms=frames_to_ms(start + len(samples), self.sample_rate),
        )
