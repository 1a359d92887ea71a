"""Almacen duradero de grabaciones, manifiestos y fragmentos.

``ChunkStore`` define el contrato asincrono que usan el controlador de sesion
y el reconstructor. Todas las operaciones se indexan por ``recording_id``.
"""

import asyncio
from abc import ABC, abstractmethod

from db.database import (
    Database,
    DuplicateChunk,
    ManifestExists,
    RECORDING_FIELDS,
    RecordingNotFound,
    StoreError,
    utc_now,
)
from db.models import Chunk, Manifest, Recording

__all__ = [
    "ChunkStore",
    "DuplicateChunk",
    "ManifestExists",
    "MemoryChunkStore",
    "RecordingNotFound",
    "SqliteChunkStore",
    "StoreError",
]


class ChunkStore(ABC):
    @abstractmethod
    async def create_recording(self, recording: Recording) -> Recording: ...

    @abstractmethod
    async def update_recording(self, recording_id: str, **patch) -> Recording: ...

    @abstractmethod
    async def get_recording(self, recording_id: str) -> Recording | None: ...

    @abstractmethod
    async def list_recordings(self) -> list[Recording]: ...

    @abstractmethod
    async def create_manifest(self, manifest: Manifest) -> Manifest: ...

    @abstractmethod
    async def get_manifest(self, recording_id: str) -> Manifest | None: ...

    @abstractmethod
    async def append_chunk(self, chunk: Chunk) -> None: ...

    @abstractmethod
    async def list_chunks(self, recording_id: str) -> list[Chunk]: ...

    @abstractmethod
    async def count_chunks(self, recording_id: str) -> int: ...

    @abstractmethod
    async def delete_recording(self, recording_id: str) -> bool: ...

    @abstractmethod
    async def delete_all(self) -> None: ...


def _recording_from_row(row: dict) -> Recording:
    return Recording(
        id=row["id"],
        title=row["title"],
        mime_type=row["mime_type"],
        format=row["format"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        status=row["status"],
        duration_ms=row["duration_ms"],
    )


def _manifest_from_row(row: dict) -> Manifest:
    return Manifest(
        recording_id=row["recording_id"],
        format=row["format"],
        sample_rate=row["sample_rate"],
        chunk_seconds=row["chunk_seconds"],
        channels=row["channels"],
        codec=row["codec"],
    )


def _chunk_from_row(row: dict) -> Chunk:
    return Chunk(
        recording_id=row["recording_id"],
        index=row["chunk_index"],
        payload=bytes(row["payload"]),
        start_ms=row["start_ms"],
        end_ms=row["end_ms"],
    )


class SqliteChunkStore(ChunkStore):
    """Implementacion sobre sqlite; el trabajo bloqueante corre en hilos."""

    def __init__(self, db: Database):
        self.db = db

    async def create_recording(self, recording: Recording) -> Recording:
        row = await asyncio.to_thread(
            self.db.insert_recording,
            recording.id, recording.title, recording.mime_type,
            recording.format, recording.created_at,
        )
        return _recording_from_row(row)

    async def update_recording(self, recording_id: str, **patch) -> Recording:
        row = await asyncio.to_thread(self.db.update_recording, recording_id, **patch)
        return _recording_from_row(row)

    async def get_recording(self, recording_id: str) -> Recording | None:
        row = await asyncio.to_thread(self.db.get_recording, recording_id)
        return _recording_from_row(row) if row else None

    async def list_recordings(self) -> list[Recording]:
        rows = await asyncio.to_thread(self.db.list_recordings)
        return [_recording_from_row(r) for r in rows]

    async def create_manifest(self, manifest: Manifest) -> Manifest:
        row = await asyncio.to_thread(
            self.db.insert_manifest,
            manifest.recording_id, manifest.format, manifest.channels,
            manifest.sample_rate, manifest.chunk_seconds, manifest.codec,
        )
        return _manifest_from_row(row)

    async def get_manifest(self, recording_id: str) -> Manifest | None:
        row = await asyncio.to_thread(self.db.get_manifest, recording_id)
        return _manifest_from_row(row) if row else None

    async def append_chunk(self, chunk: Chunk) -> None:
        await asyncio.to_thread(
            self.db.insert_chunk,
            chunk.recording_id, chunk.index, chunk.payload, chunk.start_ms, chunk.end_ms,
        )

    async def list_chunks(self, recording_id: str) -> list[Chunk]:
        rows = await asyncio.to_thread(self.db.list_chunks, recording_id)
        return [_chunk_from_row(r) for r in rows]

    async def count_chunks(self, recording_id: str) -> int:
        return await asyncio.to_thread(self.db.count_chunks, recording_id)

    async def delete_recording(self, recording_id: str) -> bool:
        return await asyncio.to_thread(self.db.delete_recording, recording_id)

    async def delete_all(self) -> None:
        await asyncio.to_thread(self.db.delete_all)


class MemoryChunkStore(ChunkStore):
    """Almacen en memoria, no persistente. Util para pruebas."""

    def __init__(self):
        self._recordings: dict[str, Recording] = {}
        self._manifests: dict[str, Manifest] = {}
        self._chunks: dict[str, dict[int, Chunk]] = {}
        self._lock = asyncio.Lock()

    async def create_recording(self, recording: Recording) -> Recording:
        async with self._lock:
            stored = Recording(**recording.to_dict())
            self._recordings[recording.id] = stored
            return Recording(**stored.to_dict())

    async def update_recording(self, recording_id: str, **patch) -> Recording:
        new_id = patch.pop("id", recording_id)
        if new_id != recording_id:
            raise ValueError("El id de una grabacion no se puede modificar")
        unknown = set(patch) - set(RECORDING_FIELDS)
        if unknown:
            raise ValueError(f"Campos no validos: {', '.join(sorted(unknown))}")
        async with self._lock:
            rec = self._recordings.get(recording_id)
            if rec is None:
                raise RecordingNotFound(recording_id)
            patch.setdefault("updated_at", utc_now())
            for key, value in patch.items():
                setattr(rec, key, value)
            return Recording(**rec.to_dict())

    async def get_recording(self, recording_id: str) -> Recording | None:
        rec = self._recordings.get(recording_id)
        return Recording(**rec.to_dict()) if rec else None

    async def list_recordings(self) -> list[Recording]:
        # sorted() es estable: a igual fecha gana la insertada despues
        items = list(reversed(self._recordings.values()))
        items = sorted(items, key=lambda r: r.created_at, reverse=True)
        return [Recording(**r.to_dict()) for r in items]

    async def create_manifest(self, manifest: Manifest) -> Manifest:
        async with self._lock:
            if manifest.recording_id not in self._recordings:
                raise RecordingNotFound(manifest.recording_id)
            if manifest.recording_id in self._manifests:
                raise ManifestExists(manifest.recording_id)
            self._manifests[manifest.recording_id] = manifest
            return manifest

    async def get_manifest(self, recording_id: str) -> Manifest | None:
        return self._manifests.get(recording_id)

    async def append_chunk(self, chunk: Chunk) -> None:
        async with self._lock:
            if chunk.recording_id not in self._recordings:
                raise RecordingNotFound(chunk.recording_id)
            chunks = self._chunks.setdefault(chunk.recording_id, {})
            if chunk.index in chunks:
                raise DuplicateChunk(chunk.recording_id, chunk.index)
            chunks[chunk.index] = chunk

    async def list_chunks(self, recording_id: str) -> list[Chunk]:
        chunks = self._chunks.get(recording_id, {})
        return [chunks[i] for i in sorted(chunks)]

    async def count_chunks(self, recording_id: str) -> int:
        return len(self._chunks.get(recording_id, {}))

    async def delete_recording(self, recording_id: str) -> bool:
        async with self._lock:
            self._chunks.pop(recording_id, None)
            self._manifests.pop(recording_id, None)
            return self._recordings.pop(recording_id, None) is not None

    async def delete_all(self) -> None:
        async with self._lock:
            self._chunks.clear()
            self._manifests.clear()
            self._recordings.clear()
