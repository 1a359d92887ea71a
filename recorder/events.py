import logging
import threading
from dataclasses import asdict, dataclass
from typing import Callable, ClassVar, Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StatusEvent:
    kind: ClassVar[str] = "status"
    status: str


@dataclass(frozen=True)
class MeterEvent:
    kind: ClassVar[str] = "meter"
    rms: float
    peak: float


@dataclass(frozen=True)
class ChunkEvent:
    kind: ClassVar[str] = "chunk"
    recording_id: str
    index: int
    size: int


@dataclass(frozen=True)
class StatsEvent:
    kind: ClassVar[str] = "stats"
    duration_ms: int
    chunk_count: int
    bytes: int


@dataclass(frozen=True)
class ErrorEvent:
    kind: ClassVar[str] = "error"
    message: str
    recording_id: str | None = None


Event = Union[StatusEvent, MeterEvent, ChunkEvent, StatsEvent, ErrorEvent]
Listener = Callable[[Event], None]


class EventBus:
    def __init__(self):
        self._listeners: list[Listener] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def publish(self, event: Event):
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Error en listener de eventos (%s)", event.kind)


class EventSnapshot:
    """Guarda el ultimo evento de cada tipo para consultas por polling."""

    def __init__(self, bus: EventBus):
        self._latest: dict[str, Event] = {}
        self._unsubscribe = bus.subscribe(self._on_event)

    def _on_event(self, event: Event):
        self._latest[event.kind] = event

    def get(self, kind: str) -> dict | None:
        event = self._latest.get(kind)
        return asdict(event) if event else None

    def close(self):
        self._unsubscribe()
