import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Rutas
BASE_DIR = Path(__file__).parent
DATA_DIR = Path(os.getenv("RECORDERBOX_DATA_DIR", str(BASE_DIR / "data")))
DB_PATH = DATA_DIR / "recorderbox.db"

# Servidor
HOST = os.getenv("RECORDERBOX_HOST", "127.0.0.1")
PORT = int(os.getenv("RECORDERBOX_PORT", "8787"))
MIN_FREE_DISK_BYTES = 500 * 1024 * 1024

# Audio
SAMPLE_RATE = int(os.getenv("RECORDERBOX_SAMPLE_RATE", "48000"))  # sugerencia, el dispositivo negocia
CAPTURE_CHANNELS = 2  # se mezcla a mono antes de guardar
FRAMES_PER_BUFFER = 960
CHUNK_SECONDS = float(os.getenv("RECORDERBOX_CHUNK_SECONDS", "2"))

# "pcm-f32" guarda muestras crudas, "container" guarda segmentos codificados
CAPTURE_FORMAT = os.getenv("RECORDERBOX_CAPTURE_FORMAT", "pcm-f32")
CONTAINER_FORMAT = os.getenv("RECORDERBOX_CONTAINER_FORMAT", "mp3")
CONTAINER_BITRATE = os.getenv("RECORDERBOX_CONTAINER_BITRATE", "128k")

# Telemetria
STATS_INTERVAL_SECS = 0.25
METER_INTERVAL_SECS = 1 / 30
METER_WINDOW = 2048

# Reproduccion
STREAMING_CODECS = ("audio/mpeg", "audio/aac", "audio/ogg")
PLAYBACK_APPEND_TIMEOUT_SECS = 30.0

# Dispositivo de entrada (None = autodetectar)
INPUT_DEVICE_INDEX = None
