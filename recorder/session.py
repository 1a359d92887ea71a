"""Controlador de la sesion de captura.

Maquina de estados: idle -> requesting -> recording <-> paused -> ready -> idle.

El callback del dispositivo corre en el hilo de PortAudio y solo mezcla a mono,
alimenta el medidor y agenda ``_ingest`` en el loop. La segmentacion ocurre en
el loop y la persistencia en una unica tarea escritora por sesion que consume
una cola, de modo que los fragmentos se guardan en el mismo orden en que se
numeran.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from db.database import utc_now
from db.models import FORMAT_PCM_F32, Chunk, Manifest, Recording
from db.store import ChunkStore
from recorder.device import CaptureConfig, DeviceUnavailable, LevelTap
from recorder.events import ChunkEvent, ErrorEvent, EventBus, MeterEvent, StatsEvent, StatusEvent
from recorder.mixer import downmix, measure_level
from recorder.segmenter import Segment
from recorder.strategies import CaptureStrategy, make_strategy

logger = logging.getLogger(__name__)

STATS_INTERVAL_SECS = 0.25
METER_INTERVAL_SECS = 1 / 30


def monotonic_ms() -> float:
    return time.monotonic() * 1000.0


class SessionStatus(str, Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    RECORDING = "recording"
    PAUSED = "paused"
    READY = "ready"


@dataclass
class SessionContext:
    recording_id: str
    stream: object
    strategy: CaptureStrategy
    tap: LevelTap
    start_ts: float
    pause_ts: float | None = None
    paused_accum_ms: float = 0.0
    chunk_index: int = 0
    chunk_count: int = 0
    bytes: int = 0
    capturing: bool = False
    drained: bool = False
    writes: asyncio.Queue = field(default_factory=asyncio.Queue)
    writer: asyncio.Task | None = None
    tasks: list[asyncio.Task] = field(default_factory=list)

    def elapsed_ms(self, now: float) -> int:
        paused = self.paused_accum_ms
        if self.pause_ts is not None:
            paused += now - self.pause_ts
        return max(0, round(now - self.start_ts - paused))

    def stats(self, now: float) -> StatsEvent:
        return StatsEvent(
            duration_ms=self.elapsed_ms(now),
            chunk_count=self.chunk_count,
            bytes=self.bytes,
        )


class SessionController:
    def __init__(self, store: ChunkStore, device, *,
                 capture_format: str = FORMAT_PCM_F32,
                 chunk_seconds: float = 2.0,
                 capture_config: CaptureConfig | None = None,
                 encoder=None,
                 events: EventBus | None = None,
                 clock=monotonic_ms,
                 stats_interval: float = STATS_INTERVAL_SECS,
                 meter_interval: float = METER_INTERVAL_SECS,
                 meter_window: int = 2048):
        self.store = store
        self.device = device
        self.capture_format = capture_format
        self.chunk_seconds = chunk_seconds
        self.capture_config = capture_config or CaptureConfig()
        self.encoder = encoder
        self.events = events or EventBus()
        self.clock = clock
        self.stats_interval = stats_interval
        self.meter_interval = meter_interval
        self.meter_window = meter_window
        self.last_error: str | None = None

        self._status = SessionStatus.IDLE
        self._ctx: SessionContext | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._lock = asyncio.Lock()

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def current_recording_id(self) -> str | None:
        return self._ctx.recording_id if self._ctx else None

    def is_recording(self) -> bool:
        return self._status in (SessionStatus.RECORDING, SessionStatus.PAUSED)

    def current_stats(self) -> StatsEvent | None:
        ctx = self._ctx
        return ctx.stats(self.clock()) if ctx else None

    def _set_status(self, status: SessionStatus):
        self._status = status
        self.events.publish(StatusEvent(status.value))

    def _report_error(self, message: str, recording_id: str | None = None):
        self.last_error = message
        self.events.publish(ErrorEvent(message, recording_id))

    # ------------------------------------------------------------------
    # Ciclo de vida
    # ------------------------------------------------------------------

    async def start(self, title: str | None = None) -> str | None:
        async with self._lock:
            if self._status is not SessionStatus.IDLE:
                return None

            self.last_error = None
            self._loop = asyncio.get_running_loop()
            self._set_status(SessionStatus.REQUESTING)

            try:
                stream = await asyncio.to_thread(self.device.acquire, self.capture_config, self._on_frames)
            except DeviceUnavailable as e:
                logger.warning("No se pudo iniciar la grabacion: %s", e)
                self._report_error(str(e))
                self._set_status(SessionStatus.IDLE)
                raise

            ctx = None
            try:
                ctx = await self._begin_session(stream, title)
                self._ctx = ctx
                ctx.writer = asyncio.create_task(self._write_chunks(ctx))
                ctx.start_ts = self.clock()
                ctx.capturing = True
                stream.start()
            except Exception as e:
                logger.exception("Error iniciando la sesion de captura")
                self._report_error(f"Error iniciando la grabacion: {e}")
                await self._abort_start(ctx, stream)
                self._set_status(SessionStatus.IDLE)
                raise

            ctx.tasks = [
                asyncio.create_task(self._emit_stats(ctx)),
                asyncio.create_task(self._emit_meter(ctx)),
            ]
            if ctx.strategy.timeslice:
                ctx.tasks.append(asyncio.create_task(self._tick(ctx)))

            self._set_status(SessionStatus.RECORDING)
            logger.info("Grabacion iniciada: %s (%s, %d Hz)",
                        ctx.recording_id, ctx.strategy.format, stream.sample_rate)
            return ctx.recording_id

    async def _begin_session(self, stream, title: str | None) -> SessionContext:
        strategy = make_strategy(
            self.capture_format, stream.sample_rate, stream.block_size,
            self.chunk_seconds, self.encoder,
        )
        recording_id = str(uuid.uuid4())
        created_at = utc_now()
        ctx = SessionContext(
            recording_id=recording_id,
            stream=stream,
            strategy=strategy,
            tap=LevelTap(self.meter_window),
            start_ts=self.clock(),
        )

        await self.store.create_recording(Recording(
            id=recording_id,
            title=title or f"Grabacion {datetime.now().strftime('%Y-%m-%d %H:%M')}",
            mime_type=strategy.mime_type,
            format=strategy.format,
            created_at=created_at,
            updated_at=created_at,
        ))
        try:
            await self.store.create_manifest(Manifest(
                recording_id=recording_id,
                format=strategy.format,
                sample_rate=stream.sample_rate,
                chunk_seconds=strategy.chunk_seconds,
                channels=1,
                codec=strategy.codec,
            ))
        except Exception:
            # Sin manifiesto la grabacion nunca se podria finalizar
            await self.store.delete_recording(recording_id)
            raise
        return ctx

    async def _abort_start(self, ctx: SessionContext | None, stream):
        self._ctx = None
        if ctx is not None:
            ctx.capturing = False
            if ctx.writer is not None:
                ctx.writes.put_nowait(None)
                await ctx.writer
            try:
                await self.store.delete_recording(ctx.recording_id)
            except Exception:
                logger.exception("No se pudo borrar la grabacion incompleta %s", ctx.recording_id)
        await self._release(stream)

    async def pause(self):
        async with self._lock:
            if self._status is not SessionStatus.RECORDING:
                return
            ctx = self._ctx
            ctx.capturing = False
            ctx.pause_ts = self.clock()
            self._set_status(SessionStatus.PAUSED)

    async def resume(self):
        async with self._lock:
            if self._status is not SessionStatus.PAUSED:
                return
            ctx = self._ctx
            if ctx.pause_ts is not None:
                ctx.paused_accum_ms += self.clock() - ctx.pause_ts
            ctx.pause_ts = None
            ctx.capturing = True
            self._set_status(SessionStatus.RECORDING)

    async def stop(self) -> Recording | None:
        async with self._lock:
            if self._status not in (SessionStatus.RECORDING, SessionStatus.PAUSED):
                return None

            ctx = self._ctx
            now = self.clock()
            ctx.capturing = False
            if ctx.pause_ts is not None:
                ctx.paused_accum_ms += now - ctx.pause_ts
                ctx.pause_ts = None
            duration_ms = ctx.elapsed_ms(now)

            for task in ctx.tasks:
                task.cancel()
            await asyncio.gather(*ctx.tasks, return_exceptions=True)

            try:
                await asyncio.to_thread(ctx.stream.stop)
            except Exception:
                logger.exception("Error deteniendo el stream de captura")
            # Los bloques agendados antes de detener el stream ya estan en la cola del loop
            await asyncio.sleep(0)

            ctx.drained = True
            for seg in ctx.strategy.drain():
                self._enqueue(ctx, seg)
            await ctx.writes.join()
            ctx.writes.put_nowait(None)
            await ctx.writer

            recording = None
            error = None
            try:
                recording = await self.store.update_recording(
                    ctx.recording_id, duration_ms=duration_ms, status="ready",
                )
            except Exception as e:
                error = e
                logger.exception("Error finalizando la grabacion %s", ctx.recording_id)
                self._report_error(f"Error finalizando la grabacion: {e}", ctx.recording_id)

            await self._release(ctx.stream)
            self._ctx = None

            if error is None:
                self.events.publish(StatsEvent(duration_ms, ctx.chunk_count, ctx.bytes))
                self._set_status(SessionStatus.READY)
                logger.info("Grabacion finalizada: %s (%d ms, %d fragmentos, %d bytes)",
                            ctx.recording_id, duration_ms, ctx.chunk_count, ctx.bytes)
            self._set_status(SessionStatus.IDLE)
            if error is not None:
                raise error
            return recording

    async def _release(self, stream):
        try:
            await asyncio.to_thread(self.device.release, stream)
        except Exception:
            logger.exception("Error liberando el dispositivo de captura")

    # ------------------------------------------------------------------
    # Ruta de audio
    # ------------------------------------------------------------------

    def _on_frames(self, data: bytes, channels: int):
        # Hilo de PortAudio: nada de I/O y ninguna excepcion debe escapar
        ctx = self._ctx
        if ctx is None:
            return
        try:
            mono = downmix(data, channels)
            ctx.tap.feed(mono)
            if ctx.capturing:
                self._loop.call_soon_threadsafe(self._ingest, ctx, mono)
        except Exception:
            logger.exception("Error en el callback de captura")

    def _ingest(self, ctx: SessionContext, mono):
        if ctx is not self._ctx or ctx.drained:
            return
        for seg in ctx.strategy.ingest(mono):
            self._enqueue(ctx, seg)

    def _enqueue(self, ctx: SessionContext, seg: Segment):
        index = ctx.chunk_index
        ctx.chunk_index += 1
        ctx.writes.put_nowait((index, seg))

    async def _write_chunks(self, ctx: SessionContext):
        while True:
            item = await ctx.writes.get()
            try:
                if item is None:
                    return
                index, seg = item
                await self._persist(ctx, index, seg)
            finally:
                ctx.writes.task_done()

    async def _persist(self, ctx: SessionContext, index: int, seg: Segment):
        try:
            payload = await ctx.strategy.encode(seg)
            await self.store.append_chunk(Chunk(
                recording_id=ctx.recording_id,
                index=index,
                payload=payload,
                start_ms=seg.start_ms,
                end_ms=seg.end_ms,
            ))
        except Exception as e:
            logger.exception("Error guardando el fragmento %d de %s", index, ctx.recording_id)
            self._report_error(f"Error guardando el fragmento {index}: {e}", ctx.recording_id)
            return

        ctx.chunk_count += 1
        ctx.bytes += len(payload)
        self.events.publish(ChunkEvent(ctx.recording_id, index, len(payload)))

    # ------------------------------------------------------------------
    # Telemetria
    # ------------------------------------------------------------------

    async def _emit_stats(self, ctx: SessionContext):
        while True:
            await asyncio.sleep(self.stats_interval)
            if self._status is SessionStatus.RECORDING:
                self.events.publish(ctx.stats(self.clock()))

    async def _emit_meter(self, ctx: SessionContext):
        while True:
            await asyncio.sleep(self.meter_interval)
            if self._status is SessionStatus.RECORDING:
                rms, peak = measure_level(ctx.tap.read())
                self.events.publish(MeterEvent(rms, peak))

    async def _tick(self, ctx: SessionContext):
        while True:
            await asyncio.sleep(ctx.strategy.timeslice)
            if self._status is SessionStatus.RECORDING:
                for seg in ctx.strategy.tick():
                    self._enqueue(ctx, seg)
