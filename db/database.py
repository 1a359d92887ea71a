import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path

from db.models import SCHEMA_SQL

RECORDING_FIELDS = ("title", "mime_type", "format", "status", "duration_ms", "updated_at")


class StoreError(Exception):
    """Error base del almacen de grabaciones."""


class DuplicateChunk(StoreError):
    def __init__(self, recording_id: str, index: int):
        super().__init__(f"El fragmento {index} de {recording_id} ya existe")
        self.recording_id = recording_id
        self.index = index


class ManifestExists(StoreError):
    def __init__(self, recording_id: str):
        super().__init__(f"La grabacion {recording_id} ya tiene manifiesto")
        self.recording_id = recording_id


class RecordingNotFound(StoreError):
    def __init__(self, recording_id: str):
        super().__init__(f"Grabacion no encontrada: {recording_id}")
        self.recording_id = recording_id


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class Database:
    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        # Una conexion por hilo: asyncio.to_thread reparte las llamadas entre varios
        self._local = threading.local()
        self._init_schema()

    def _get_conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(str(self.db_path))
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA foreign_keys=ON")
            self._local.conn = conn
        return conn

    def _init_schema(self):
        conn = self._get_conn()
        conn.executescript(SCHEMA_SQL)
        conn.commit()

    def execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        conn = self._get_conn()
        cursor = conn.execute(sql, params)
        conn.commit()
        return cursor

    def fetchone(self, sql: str, params: tuple = ()) -> dict | None:
        cursor = self._get_conn().execute(sql, params)
        row = cursor.fetchone()
        return dict(row) if row else None

    def fetchall(self, sql: str, params: tuple = ()) -> list[dict]:
        cursor = self._get_conn().execute(sql, params)
        return [dict(row) for row in cursor.fetchall()]

    # -- Recordings --

    def insert_recording(self, recording_id: str, title: str, mime_type: str,
                         fmt: str, created_at: str) -> dict:
        self.execute(
            "INSERT INTO recordings (id, title, mime_type, format, status, duration_ms, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, 'recording', 0, ?, ?)",
            (recording_id, title, mime_type, fmt, created_at, created_at),
        )
        return self.get_recording(recording_id)

    def get_recording(self, recording_id: str) -> dict | None:
        return self.fetchone("SELECT * FROM recordings WHERE id = ?", (recording_id,))

    def list_recordings(self) -> list[dict]:
        return self.fetchall("SELECT * FROM recordings ORDER BY created_at DESC, rowid DESC")

    def update_recording(self, recording_id: str, **fields) -> dict:
        new_id = fields.pop("id", recording_id)
        if new_id != recording_id:
            raise ValueError("El id de una grabacion no se puede modificar")
        unknown = set(fields) - set(RECORDING_FIELDS)
        if unknown:
            raise ValueError(f"Campos no validos: {', '.join(sorted(unknown))}")

        fields.setdefault("updated_at", utc_now())
        set_clause = ", ".join(f"{k} = ?" for k in fields)
        values = list(fields.values()) + [recording_id]
        cursor = self.execute(f"UPDATE recordings SET {set_clause} WHERE id = ?", tuple(values))
        if cursor.rowcount == 0:
            raise RecordingNotFound(recording_id)
        return self.get_recording(recording_id)

    def delete_recording(self, recording_id: str) -> bool:
        conn = self._get_conn()
        # Fragmentos, manifiesto y grabacion se borran en una sola transaccion
        with conn:
            conn.execute("DELETE FROM chunks WHERE recording_id = ?", (recording_id,))
            conn.execute("DELETE FROM manifests WHERE recording_id = ?", (recording_id,))
            cursor = conn.execute("DELETE FROM recordings WHERE id = ?", (recording_id,))
        return cursor.rowcount > 0

    def delete_all(self):
        conn = self._get_conn()
        with conn:
            conn.execute("DELETE FROM chunks")
            conn.execute("DELETE FROM manifests")
            conn.execute("DELETE FROM recordings")

    # -- Manifests --

    def insert_manifest(self, recording_id: str, fmt: str, channels: int,
                        sample_rate: int, chunk_seconds: float, codec: str | None) -> dict:
        if self.get_recording(recording_id) is None:
            raise RecordingNotFound(recording_id)
        try:
            self.execute(
                "INSERT INTO manifests (recording_id, format, channels, sample_rate, chunk_seconds, codec) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (recording_id, fmt, channels, sample_rate, chunk_seconds, codec),
            )
        except sqlite3.IntegrityError as e:
            raise ManifestExists(recording_id) from e
        return self.get_manifest(recording_id)

    def get_manifest(self, recording_id: str) -> dict | None:
        return self.fetchone("SELECT * FROM manifests WHERE recording_id = ?", (recording_id,))

    # -- Chunks --

    def insert_chunk(self, recording_id: str, index: int, payload: bytes,
                     start_ms: float, end_ms: float):
        if self.get_recording(recording_id) is None:
            raise RecordingNotFound(recording_id)
        try:
            self.execute(
                "INSERT INTO chunks (recording_id, chunk_index, payload, size, start_ms, end_ms) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (recording_id, index, sqlite3.Binary(payload), len(payload), start_ms, end_ms),
            )
        except sqlite3.IntegrityError as e:
            raise DuplicateChunk(recording_id, index) from e

    def list_chunks(self, recording_id: str) -> list[dict]:
        return self.fetchall(
            "SELECT * FROM chunks WHERE recording_id = ? ORDER BY chunk_index ASC",
            (recording_id,),
        )

    def count_chunks(self, recording_id: str) -> int:
        row = self.fetchone("SELECT COUNT(*) AS n FROM chunks WHERE recording_id = ?", (recording_id,))
        return row["n"] if row else 0
