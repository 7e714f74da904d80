"""FastAPI application entry point for the inspection API."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

from fastapi import FastAPI

from onnxsight.api.routes import router
from onnxsight.config import get_settings
from onnxsight.ml.model_manager import OnnxModelManager
from onnxsight.ml.registry import list_operators

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: configure logging and shared state on startup."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    app.state.model_manager = OnnxModelManager(settings)
    logger.info(
        "Starting OnnxSight (device=%s, models_dir=%s, operators=%s)",
        settings.device,
        settings.models_dir,
        ",".join(info.name for info in list_operators()),
    )
    yield
    logger.info("OnnxSight shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="OnnxSight",
        description="Inspection API for ONNX pose and face detection operators",
        version="0.1.0",
        lifespan=lifespan,
    )
    application.include_router(router)
    return application


app = create_app()
