"""
FastAPI application entrypoint.

The HTTP side only reports; the detection loop runs in its own thread and
owns every call into the detector client.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Callable, Optional

import uvicorn
from fastapi import FastAPI

from detector_link.api.routers import router as detector_router
from detector_link.core.config import get_settings
from detector_link.core.logging_config import setup_logging
from detector_link.core.worker import DetectionLoop, DetectionRunner, LoopTimings
from detector_link.services.detection_client import DetectionClient, create_detection_client
from detector_link.services.frame_source import FrameSource, create_frame_source

log = logging.getLogger("detector-link")


def create_app(
    client_factory: Optional[Callable[[], DetectionClient]] = None,
    source_factory: Optional[Callable[[], Optional[FrameSource]]] = None,
) -> FastAPI:
    setup_logging()
    settings = get_settings()

    if client_factory is None:
        def client_factory() -> DetectionClient:
            return create_detection_client(settings)

    if source_factory is None:
        def source_factory() -> Optional[FrameSource]:
            return create_frame_source(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        settings.validate()
        log.info(
            "Service starting (socket=%s shm=%s port=%s prefix=%s)",
            settings.socket_path,
            settings.shm_name,
            settings.port,
            settings.api_prefix or "",
        )

        app.state.client = client_factory()
        app.state.loop = DetectionLoop(
            app.state.client,
            source=source_factory(),
            timings=LoopTimings.from_settings(settings),
        )
        app.state.runner = DetectionRunner(app.state.loop)
        app.state.runner.start()
        try:
            yield
        finally:
            # Runner disconnects the client and closes the source on exit
            app.state.runner.stop()
            if app.state.runner.is_alive():
                log.warning("Detection loop did not stop in time")
            log.info("Service stopped")

    app = FastAPI(
        title="Detector Link",
        version="1.0.0",
        description="Streams frames to the local detection service over Unix socket + shared memory",
        lifespan=lifespan,
    )

    prefix = (settings.api_prefix or "").rstrip("/")
    app.include_router(detector_router, prefix=prefix)
    return app


app = create_app()


if __name__ == "__main__":
    settings = get_settings()
    uvicorn.run(
        "detector_link.main:app",
        host=settings.host,
        port=settings.port,
        log_level=(settings.log_level or "INFO").lower(),
        reload=False,
    )
