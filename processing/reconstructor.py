"""Reconstruccion de grabaciones a partir de sus fragmentos.

- ``pcm-f32``: se concatenan las muestras y se arma un WAV de 16 bits.
- ``container``: se agregan los segmentos a un buffer de reproduccion en modo
  secuencia; si no hay buffer, el codec no se soporta o falla un append, se
  concatenan los segmentos en un solo archivo.
"""

import asyncio
import logging
from array import array
from dataclasses import dataclass

from db.models import FORMAT_CONTAINER, FORMAT_PCM_F32, Chunk, Manifest
from db.store import ChunkStore, RecordingNotFound
from processing.playback import PlaybackBuffer
from recorder.mixer import build_wav, float32_from_bytes

logger = logging.getLogger(__name__)

EXTENSIONS = {
    "audio/wav": "wav",
    "audio/mpeg": "mp3",
    "audio/aac": "aac",
    "audio/ogg": "ogg",
}


class EmptyRecording(Exception):
    def __init__(self, recording_id: str):
        super().__init__(f"La grabacion {recording_id} no tiene fragmentos")
        self.recording_id = recording_id


class ReconstructionFailed(Exception):
    pass


@dataclass(frozen=True)
class Artifact:
    data: bytes
    mime_type: str

    @property
    def extension(self) -> str:
        return EXTENSIONS.get(self.mime_type.split(";")[0], "bin")


@dataclass(frozen=True)
class PlaybackResult:
    mode: str  # "wav", "sequence" o "concatenated"
    artifact: Artifact | None = None
    handle: object | None = None


def assemble_wav(chunks: list[Chunk], sample_rate: int) -> Artifact:
    samples = array("f")
    for chunk in chunks:
        try:
            samples.extend(float32_from_bytes(chunk.payload))
        except ValueError as e:
            raise ReconstructionFailed(f"Fragmento {chunk.index} ilegible: {e}") from e
    return Artifact(
        data=build_wav(samples, sample_rate),
        mime_type="audio/wav",
    )


def concatenate(chunks: list[Chunk], mime_type: str) -> Artifact:
    return Artifact(
        data=b"".join(c.payload for c in chunks),
        mime_type=mime_type,
    )


async def stream_sequence(playback: PlaybackBuffer, codec: str, chunks: list[Chunk]):
    handle = await playback.open(codec)
    try:
        for chunk in chunks:
            await playback.append(handle, chunk.payload)
    except BaseException as e:
        await playback.end_of_stream(handle, error=str(e) or type(e).__name__)
        raise
    await playback.end_of_stream(handle)
    return handle


class Reconstructor:
    def __init__(self, store: ChunkStore):
        self.store = store

    async def _load(self, recording_id: str) -> tuple[Manifest, list[Chunk]]:
        manifest = await self.store.get_manifest(recording_id)
        if manifest is None:
            if await self.store.get_recording(recording_id) is None:
                raise RecordingNotFound(recording_id)
            raise ReconstructionFailed(f"La grabacion {recording_id} no tiene manifiesto")
        chunks = await self.store.list_chunks(recording_id)
        if not chunks:
            raise EmptyRecording(recording_id)
        return manifest, chunks

    async def export(self, recording_id: str) -> Artifact:
        """Artefacto completo para descarga."""
        manifest, chunks = await self._load(recording_id)
        if manifest.format == FORMAT_PCM_F32:
            return await asyncio.to_thread(assemble_wav, chunks, manifest.sample_rate)
        if manifest.format == FORMAT_CONTAINER:
            return concatenate(chunks, manifest.codec or "application/octet-stream")
        raise ReconstructionFailed(f"Formato desconocido: {manifest.format}")

    async def play(self, recording_id: str, playback: PlaybackBuffer | None = None,
                   fallback_on_error: bool = True) -> PlaybackResult:
        """Reproduce la grabacion.

        Con ``fallback_on_error=False`` un fallo del streaming se propaga en lugar
        de armar la concatenacion; lo usa quien ya entrego parte del stream y no
        puede devolver otro artefacto.
        """
        manifest, chunks = await self._load(recording_id)
        if manifest.format == FORMAT_PCM_F32:
            artifact = await asyncio.to_thread(assemble_wav, chunks, manifest.sample_rate)
            return PlaybackResult("wav", artifact=artifact)
        if manifest.format != FORMAT_CONTAINER:
            raise ReconstructionFailed(f"Formato desconocido: {manifest.format}")

        codec = manifest.codec or "application/octet-stream"
        if playback is not None and playback.is_type_supported(codec):
            try:
                handle = await stream_sequence(playback, codec, chunks)
                return PlaybackResult("sequence", handle=handle)
            except Exception:
                if not fallback_on_error:
                    raise
                logger.warning("Fallo el streaming de %s, usando concatenacion",
                               recording_id, exc_info=True)
        return PlaybackResult("concatenated", artifact=concatenate(chunks, codec))
