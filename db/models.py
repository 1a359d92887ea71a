from dataclasses import asdict, dataclass

FORMAT_PCM_F32 = "pcm-f32"
FORMAT_CONTAINER = "container"
MIME_PCM_F32 = "audio/pcm;format=f32"

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS recordings (
    id              TEXT PRIMARY KEY,
    title           TEXT NOT NULL,
    mime_type       TEXT NOT NULL,
    format          TEXT NOT NULL,
    status          TEXT NOT NULL DEFAULT 'recording',
    duration_ms     INTEGER NOT NULL DEFAULT 0,
    created_at      TEXT NOT NULL,
    updated_at      TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_recordings_created_at ON recordings (created_at);

CREATE TABLE IF NOT EXISTS manifests (
    recording_id    TEXT PRIMARY KEY REFERENCES recordings (id) ON DELETE CASCADE,
    format          TEXT NOT NULL,
    channels        INTEGER NOT NULL DEFAULT 1,
    sample_rate     INTEGER NOT NULL,
    chunk_seconds   REAL NOT NULL,
    codec           TEXT
);

CREATE TABLE IF NOT EXISTS chunks (
    recording_id    TEXT NOT NULL REFERENCES recordings (id) ON DELETE CASCADE,
    chunk_index     INTEGER NOT NULL,
    payload         BLOB NOT NULL,
    size            INTEGER NOT NULL,
    start_ms        REAL NOT NULL,
    end_ms          REAL NOT NULL,
    PRIMARY KEY (recording_id, chunk_index)
);
"""


@dataclass
class Recording:
    id: str
    title: str
    mime_type: str
    format: str
    created_at: str
    updated_at: str
    status: str = "recording"
    duration_ms: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class Manifest:
    recording_id: str
    format: str
    sample_rate: int
    chunk_seconds: float
    channels: int = 1
    codec: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class Chunk:
    recording_id: str
    index: int
    payload: bytes
    start_ms: float
    end_ms: float

    @property
    def size(self) -> int:
        return len(self.payload)

    def timing(self) -> dict:
        return {
            "index": self.index,
            "size": self.size,
            "start_ms": self.start_ms,
            "end_ms": self.end_ms,
        }
