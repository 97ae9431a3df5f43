"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from scenecaption.config import Settings
    from scenecaption.ml.image_classifier import ImageClassifier
    from scenecaption.ml.model_manager import ModelManager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from scenecaption.api.routes import router
from scenecaption.config import get_settings
from scenecaption.ml.image_classifier import OnnxImageClassifier
from scenecaption.ml.inference import InferencePool
from scenecaption.ml.model_manager import OnnxModelManager
from scenecaption.pipeline import ClassificationPipeline, ConcurrencyPolicy

logger = logging.getLogger(__name__)

EVICTION_INTERVAL_SECONDS: float = 60.0


def init_state(
    app: FastAPI,
    settings: Settings,
    *,
    model_manager: ModelManager | None = None,
    classifier: ImageClassifier | None = None,
) -> None:
    """Attach settings, inference pool, model manager, and pipeline to app.state."""
    manager = model_manager if model_manager is not None else OnnxModelManager(settings)
    if classifier is None:
        classifier = OnnxImageClassifier(manager, settings.classification_model)
    pool = InferencePool(settings)

    app.state.settings = settings
    app.state.model_manager = manager
    app.state.inference_pool = pool
    app.state.pipeline = ClassificationPipeline(
        classifier,
        pool,
        top_n=settings.top_n,
        in_progress_caption=settings.in_progress_caption,
        policy=ConcurrencyPolicy(settings.concurrency_policy),
    )


async def _evict_idle_models(manager: ModelManager) -> None:
    while True:
        await asyncio.sleep(EVICTION_INTERVAL_SECONDS)
        manager.unload_idle_models()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting SceneCaption (device=%s, max_concurrent=%s, model=%s, policy=%s)",
        settings.device,
        settings.max_concurrent,
        settings.classification_model,
        settings.concurrency_policy,
    )

    init_state(app, settings)
    eviction = asyncio.create_task(_evict_idle_models(app.state.model_manager))

    logger.info("SceneCaption ready")
    yield

    logger.info("Shutting down SceneCaption")
    eviction.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await eviction
    await app.state.pipeline.wait_idle()
    app.state.inference_pool.shutdown()
    app.state.model_manager.shutdown()
    logger.info("SceneCaption shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="SceneCaption",
        description="Image classification pipeline that captions the top predicted labels",
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


def run() -> None:
    """Serve the application with uvicorn using the configured host and port."""
    settings = get_settings()
    uvicorn.run("scenecaption.main:app", host=settings.host, port=settings.port)
