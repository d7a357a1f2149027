"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from moodtracker.config import Settings

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from moodtracker.api.routes import router
from moodtracker.config import get_settings
from moodtracker.ml.image_classifier import ClassifierService
from moodtracker.ml.inference import InferencePool
from moodtracker.ml.model_provider import ArtifactModelProvider
from moodtracker.ml.model_store import ModelStore
from moodtracker.ml.sample_encoder import SampleEncoder
from moodtracker.ml.update_orchestrator import UpdateOrchestrator

logger = logging.getLogger(__name__)


def init_state(app: FastAPI, settings: Settings) -> None:
    """Wire the model store, provider, classifier and updater onto ``app.state``."""
    store = ModelStore(settings.updated_model_path)
    provider = ArtifactModelProvider(settings, store)
    encoder = SampleEncoder(
        provider,
        scratch_dir=settings.scratch_dir,
        label_policy=settings.label_policy,
    )

    app.state.settings = settings
    app.state.model_store = store
    app.state.model_provider = provider
    app.state.classifier = ClassifierService(
        provider,
        unknown_label=settings.unknown_label,
        max_image_pixels=settings.max_image_pixels,
    )
    app.state.update_orchestrator = UpdateOrchestrator(
        provider,
        store,
        encoder,
        update_base=settings.update_base,
        timeout=settings.update_timeout,
    )
    app.state.inference_pool = InferencePool(settings)


def shutdown_state(app: FastAPI) -> None:
    app.state.update_orchestrator.shutdown()
    app.state.inference_pool.shutdown()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting MoodTracker (device=%s, max_concurrent=%s, label_policy=%s, update_base=%s)",
        settings.device,
        settings.max_concurrent,
        settings.label_policy,
        settings.update_base,
    )

    init_state(app, settings)
    active = app.state.model_provider.current().artifact
    logger.info("MoodTracker ready (model %s v%s, %d labels)", active.name, active.version, len(active.labels))
    yield

    logger.info("Shutting down MoodTracker")
    shutdown_state(app)
    logger.info("MoodTracker shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="MoodTracker",
        description="Emotion classification with on-device model personalization",
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

    application.include_router(router)
    return application


app = create_app()
