import asyncio
import logging
import shutil

from fastapi import APIRouter, HTTPException
from fastapi.responses import Response, StreamingResponse
from pydantic import BaseModel
from starlette.background import BackgroundTask

import config
from db.store import ChunkStore, RecordingNotFound
from processing.playback import QueuePlaybackBuffer
from processing.reconstructor import EmptyRecording, ReconstructionFailed, Reconstructor
from recorder.device import DeviceUnavailable
from recorder.events import EventSnapshot
from recorder.session import SessionController

logger = logging.getLogger(__name__)


class StartRecordingRequest(BaseModel):
    title: str | None = None


class UpdateRecordingRequest(BaseModel):
    title: str


def _reconstruction_error(e: Exception) -> HTTPException:
    if isinstance(e, RecordingNotFound):
        return HTTPException(404, "Grabacion no encontrada")
    if isinstance(e, EmptyRecording):
        return HTTPException(404, "La grabacion no tiene audio")
    if isinstance(e, ReconstructionFailed):
        return HTTPException(422, f"No se pudo reconstruir el audio: {e}")
    return HTTPException(500, str(e))


def create_router(store: ChunkStore, controller: SessionController,
                  reconstructor: Reconstructor, snapshot: EventSnapshot) -> APIRouter:
    router = APIRouter()

    def _session_state() -> dict:
        return {"id": controller.current_recording_id, "status": controller.status.value}

    # -- Status --

    @router.get("/status")
    def get_status():
        stats = controller.current_stats()
        return {
            "status": controller.status.value,
            "is_recording": controller.is_recording(),
            "current_recording_id": controller.current_recording_id,
            "last_error": controller.last_error,
            "stats": {
                "duration_ms": stats.duration_ms,
                "chunk_count": stats.chunk_count,
                "bytes": stats.bytes,
            } if stats else snapshot.get("stats"),
            "meter": snapshot.get("meter"),
        }

    # -- Recording control --

    @router.post("/recording/start")
    async def start_recording(body: StartRecordingRequest = StartRecordingRequest()):
        if controller.is_recording():
            return _session_state()

        # Check disk space
        config.DATA_DIR.mkdir(parents=True, exist_ok=True)
        free = shutil.disk_usage(config.DATA_DIR).free
        if free < config.MIN_FREE_DISK_BYTES:
            raise HTTPException(507, "Espacio en disco insuficiente (menos de 500MB)")

        try:
            await controller.start(title=body.title)
        except DeviceUnavailable as e:
            raise HTTPException(503, str(e))
        except Exception as e:
            raise HTTPException(500, str(e))
        return _session_state()

    @router.post("/recording/pause")
    async def pause_recording():
        await controller.pause()
        return _session_state()

    @router.post("/recording/resume")
    async def resume_recording():
        await controller.resume()
        return _session_state()

    @router.post("/recording/stop")
    async def stop_recording():
        try:
            rec = await controller.stop()
        except Exception as e:
            raise HTTPException(500, str(e))
        if rec is None:
            return _session_state()
        return {"id": rec.id, "status": rec.status, "duration_ms": rec.duration_ms}

    # -- Recordings CRUD --

    @router.get("/recordings")
    async def list_recordings():
        recordings = await store.list_recordings()
        return [r.to_dict() for r in recordings]

    @router.get("/recordings/{recording_id}")
    async def get_recording(recording_id: str):
        rec = await store.get_recording(recording_id)
        if not rec:
            raise HTTPException(404, "Grabacion no encontrada")
        manifest = await store.get_manifest(recording_id)
        result = rec.to_dict()
        result["manifest"] = manifest.to_dict() if manifest else None
        result["chunk_count"] = await store.count_chunks(recording_id)
        result["audio_url"] = f"/api/recordings/{rec.id}/audio"
        return result

    @router.get("/recordings/{recording_id}/chunks")
    async def list_chunks(recording_id: str):
        if not await store.get_recording(recording_id):
            raise HTTPException(404, "Grabacion no encontrada")
        chunks = await store.list_chunks(recording_id)
        return [c.timing() for c in chunks]

    @router.put("/recordings/{recording_id}")
    async def update_recording(recording_id: str, body: UpdateRecordingRequest):
        try:
            rec = await store.update_recording(recording_id, title=body.title)
        except RecordingNotFound:
            raise HTTPException(404, "Grabacion no encontrada")
        return rec.to_dict()

    @router.delete("/recordings/{recording_id}")
    async def delete_recording(recording_id: str):
        if controller.current_recording_id == recording_id:
            raise HTTPException(409, "La grabacion esta en curso")
        deleted = await store.delete_recording(recording_id)
        if not deleted:
            raise HTTPException(404, "Grabacion no encontrada")
        return {"deleted": True}

    # -- Playback / export --

    @router.get("/recordings/{recording_id}/audio")
    async def get_audio(recording_id: str):
        try:
            artifact = await reconstructor.export(recording_id)
        except Exception as e:
            raise _reconstruction_error(e)
        filename = f"{recording_id}.{artifact.extension}"
        return Response(
            artifact.data,
            media_type=artifact.mime_type,
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    @router.get("/recordings/{recording_id}/play")
    async def play_audio(recording_id: str):
        playback = QueuePlaybackBuffer(config.STREAMING_CODECS, config.PLAYBACK_APPEND_TIMEOUT_SECS)
        # Una vez abierto el stream ya no se puede responder con la concatenacion
        playing = asyncio.create_task(reconstructor.play(recording_id, playback, fallback_on_error=False))
        opened = asyncio.create_task(playback.wait_opened())
        await asyncio.wait({playing, opened}, return_when=asyncio.FIRST_COMPLETED)

        if playing.done():
            try:
                result = playing.result()
            except Exception as e:
                opened.cancel()
                raise _reconstruction_error(e)
            if result.artifact is not None:
                opened.cancel()
                return Response(result.artifact.data, media_type=result.artifact.mime_type)

        handle = await opened
        return StreamingResponse(
            handle.iter_bytes(),
            media_type=handle.codec,
            background=BackgroundTask(_finish_playback, playing),
        )

    return router


async def _finish_playback(playing: asyncio.Task):
    try:
        result = await playing
    except Exception:
        logger.exception("El streaming se interrumpio antes de terminar")
        return
    logger.info("Streaming completado: %d bytes", result.handle.bytes_appended)
