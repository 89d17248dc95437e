"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from sketchsense.api.routes import router
from sketchsense.config import get_settings
from sketchsense.ml.engine import ModelLoadError
from sketchsense.ml.image_classifier import SketchClassifier
from sketchsense.ml.inference import InferencePool

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: load the default model on startup, release it on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting SketchSense (model=%s, accelerator=%s, gpu=%s, max_concurrent=%s)",
        settings.default_model,
        settings.use_accelerator,
        settings.use_gpu,
        settings.max_concurrent,
    )

    try:
        classifier = SketchClassifier(settings)
    except ModelLoadError:
        logger.error(
            "Could not load the default model from %s. Bundled models are not shipped with the source tree; "
            "build them with `sketchsense-demo-models --out %s` or point SKETCHSENSE_ASSETS_DIR at real models.",
            settings.assets_dir,
            settings.assets_dir,
        )
        raise
    app.state.classifier = classifier
    inference_pool = InferencePool(settings)
    app.state.inference_pool = inference_pool

    logger.info("SketchSense ready (%s)", classifier.backend_status)
    yield

    logger.info("Shutting down SketchSense")
    inference_pool.shutdown()
    classifier.close()
    logger.info("SketchSense shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="SketchSense",
        description="On-device handwriting sketch classification",
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
    """Serve the app with uvicorn on the configured host and port."""
    import uvicorn

    settings = get_settings()
    uvicorn.run("sketchsense.main:app", host=settings.host, port=settings.port)
