import logging
import sys

import uvicorn

import config
from db.database import Database
from db.store import SqliteChunkStore
from processing.reconstructor import Reconstructor
from recorder.device import CaptureConfig, PyAudioDevice
from recorder.encoder import PydubSegmentEncoder
from recorder.events import EventBus
from recorder.session import SessionController
from server.app import create_app

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("recorderbox")


def find_available_port(start: int, end: int) -> int:
    import socket
    for port in range(start, end + 1):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            try:
                s.bind((config.HOST, port))
                return port
            except OSError:
                continue
    raise RuntimeError(f"No se encontro un puerto disponible entre {start} y {end}")


def main():
    config.DATA_DIR.mkdir(parents=True, exist_ok=True)

    # Find available port
    try:
        port = find_available_port(config.PORT, config.PORT + 13)
    except RuntimeError as e:
        logger.error(str(e))
        sys.exit(1)

    if port != config.PORT:
        logger.info("Puerto %d en uso, usando %d", config.PORT, port)
    config.PORT = port

    # Initialize components
    store = SqliteChunkStore(Database(config.DB_PATH))
    device = PyAudioDevice()
    encoder = None
    if config.CAPTURE_FORMAT == "container":
        encoder = PydubSegmentEncoder(config.CONTAINER_FORMAT, config.CONTAINER_BITRATE)

    controller = SessionController(
        store,
        device,
        capture_format=config.CAPTURE_FORMAT,
        chunk_seconds=config.CHUNK_SECONDS,
        capture_config=CaptureConfig(
            sample_rate=config.SAMPLE_RATE,
            channels=config.CAPTURE_CHANNELS,
            frames_per_buffer=config.FRAMES_PER_BUFFER,
            device_index=config.INPUT_DEVICE_INDEX,
        ),
        encoder=encoder,
        events=EventBus(),
        stats_interval=config.STATS_INTERVAL_SECS,
        meter_interval=config.METER_INTERVAL_SECS,
        meter_window=config.METER_WINDOW,
    )
    reconstructor = Reconstructor(store)

    app = create_app(store, controller, reconstructor)

    server_config = uvicorn.Config(
        app,
        host=config.HOST,
        port=config.PORT,
        log_level="warning",
    )
    server = uvicorn.Server(server_config)

    logger.info("RecorderBox iniciado en http://%s:%d (formato %s, fragmentos de %.2fs)",
                config.HOST, config.PORT, config.CAPTURE_FORMAT, config.CHUNK_SECONDS)
    try:
        server.run()
    except KeyboardInterrupt:
        pass
    finally:
        logger.info("Cerrando RecorderBox...")
        device.terminate()


if __name__ == "__main__":
    main()
