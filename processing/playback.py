import asyncio
import logging
from abc import ABC, abstractmethod
from typing import AsyncIterator

logger = logging.getLogger(__name__)


class PlaybackBuffer(ABC):
    """Buffer de reproduccion progresiva en modo "sequence".

    Los segmentos se reproducen uno tras otro en el orden en que se agregan,
    sin usar las marcas de tiempo internas del contenedor.
    """

    @abstractmethod
    def is_type_supported(self, codec: str) -> bool: ...

    @abstractmethod
    async def open(self, codec: str): ...

    @abstractmethod
    async def append(self, handle, data: bytes) -> None:
        """Retorna cuando el segmento fue procesado por el consumidor."""

    @abstractmethod
    async def end_of_stream(self, handle, error: str | None = None) -> None: ...


class PlaybackHandle:
    def __init__(self, codec: str):
        self.codec = codec
        self.error: str | None = None
        self.bytes_appended = 0
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=1)

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        while True:
            data = await self._queue.get()
            try:
                if data is None:
                    return
                yield data
            finally:
                self._queue.task_done()


class QueuePlaybackBuffer(PlaybackBuffer):
    """Buffer respaldado por una cola; el consumidor es una respuesta HTTP en streaming."""

    def __init__(self, supported_codecs=("audio/mpeg",), append_timeout: float = 30.0):
        self.supported_codecs = tuple(supported_codecs)
        self.append_timeout = append_timeout
        self._opened: asyncio.Future | None = None

    def _opened_future(self) -> asyncio.Future:
        if self._opened is None:
            self._opened = asyncio.get_running_loop().create_future()
        return self._opened

    def is_type_supported(self, codec: str) -> bool:
        base = codec.split(";")[0].strip().lower()
        return any(base == c.split(";")[0].lower() for c in self.supported_codecs)

    async def open(self, codec: str) -> PlaybackHandle:
        if not self.is_type_supported(codec):
            raise ValueError(f"Codec no soportado para streaming: {codec}")
        handle = PlaybackHandle(codec)
        future = self._opened_future()
        if not future.done():
            future.set_result(handle)
        return handle

    async def wait_opened(self) -> PlaybackHandle:
        return await self._opened_future()

    async def append(self, handle: PlaybackHandle, data: bytes) -> None:
        # Un solo append pendiente: se espera el acuse antes de devolver el control
        await asyncio.wait_for(handle._queue.put(data), self.append_timeout)
        await asyncio.wait_for(handle._queue.join(), self.append_timeout)
        handle.bytes_appended += len(data)

    async def end_of_stream(self, handle: PlaybackHandle, error: str | None = None) -> None:
        handle.error = error
        if error:
            logger.warning("Streaming terminado con error: %s", error)
        # Un segmento sin leer ocupa la unica posicion de la cola y bloquearia el cierre
        try:
            handle._queue.get_nowait()
        except asyncio.QueueEmpty:
            pass
        else:
            handle._queue.task_done()
            logger.warning("Se descarto un segmento que el consumidor no leyo")
        handle._queue.put_nowait(None)
