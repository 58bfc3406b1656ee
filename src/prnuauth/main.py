"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from prnuauth.api.middleware import register_error_handlers
from prnuauth.api.routes import router
from prnuauth.authenticator import PRNUAuthenticator
from prnuauth.config import Settings, get_settings
from prnuauth.ml.ai_detector import OnnxAIImageClassifier
from prnuauth.ml.model_manager import DetectorModel

logger = logging.getLogger(__name__)


def init_state(app: FastAPI, settings: Settings) -> None:
    """Attach settings, authenticator and classifier to the app state."""
    app.state.settings = settings
    app.state.authenticator = PRNUAuthenticator(settings)
    detector = DetectorModel(settings)
    app.state.detector_model = detector
    app.state.ai_classifier = OnnxAIImageClassifier(detector, settings) if detector.configured else None


async def release_idle_detector(detector: DetectorModel, interval: float) -> None:
    """Check the detector session for idleness every ``interval`` seconds."""
    while True:
        await asyncio.sleep(interval)
        detector.release_if_idle()


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting PRNU auth (grid=%sx%s, denoiser=%s, threshold=%s, max_concurrent=%s)",
        settings.processing_width,
        settings.processing_height,
        settings.denoiser,
        settings.pce_threshold,
        settings.max_concurrent,
    )

    init_state(app, settings)
    sweeper = None
    if app.state.ai_classifier is not None and settings.model_ttl > 0:
        sweeper = asyncio.create_task(release_idle_detector(app.state.detector_model, settings.model_ttl / 2))

    logger.info("PRNU auth ready")
    yield

    logger.info("Shutting down PRNU auth")
    if sweeper is not None:
        sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper
    app.state.authenticator.shutdown()
    app.state.detector_model.close()
    logger.info("PRNU auth shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="PRNU Auth",
        description="Camera sensor fingerprint enrollment, image authentication and tamper localization",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(application)
    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Serve the app with uvicorn on the configured host and port."""
    import uvicorn

    settings = get_settings()
    uvicorn.run("prnuauth.main:app", host=settings.host, port=settings.port)
