import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from recorder.events import EventSnapshot
from server.routes import create_router

logger = logging.getLogger(__name__)


def create_app(store, controller, reconstructor) -> FastAPI:
    snapshot = EventSnapshot(controller.events)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        # No se pierde audio al cerrar el servidor con una grabacion en curso
        if controller.is_recording():
            logger.info("Cerrando grabacion en curso...")
            try:
                await controller.stop()
            except Exception as e:
                logger.error("Error deteniendo la grabacion: %s", e)
        snapshot.close()

    app = FastAPI(title="RecorderBox", version="0.1.0", lifespan=lifespan)

    router = create_router(store, controller, reconstructor, snapshot)
    app.include_router(router, prefix="/api")

    return app
