"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    import httpx

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from imageident.api.routes import router
from imageident.config import Settings, get_settings
from imageident.history import HistoryLedger
from imageident.ml.decoder import ImageDecoder
from imageident.ml.inference import InferenceEngine, InferencePool
from imageident.ml.model_store import ModelStore, OnnxModelStore
from imageident.ml.preprocessing import NormalizationConfig, Preprocessor
from imageident.ml.tensors import TensorTracker
from imageident.pipeline import PipelineController
from imageident.sources import BlobStore

logger = logging.getLogger(__name__)


def init_app_state(
    app: FastAPI,
    settings: Settings,
    model_store: ModelStore | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> None:
    """Wire the pipeline components onto ``app.state``."""
    store = model_store or OnnxModelStore(settings)
    pool = InferencePool(settings)
    tracker = TensorTracker()
    blobs = BlobStore()

    app.state.settings = settings
    app.state.model_store = store
    app.state.inference_pool = pool
    app.state.tensor_tracker = tracker
    app.state.blobs = blobs
    app.state.controller = PipelineController(
        model_store=store,
        decoder=ImageDecoder(settings, blobs, transport=transport),
        preprocessor=Preprocessor(tracker, NormalizationConfig.from_settings(settings)),
        engine=InferenceEngine(pool, timeout=settings.inference_timeout),
        history=HistoryLedger(limit=settings.history_limit),
        blobs=blobs,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: start the model load, clean up on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting ImageIdent (device=%s, input=%dx%dx%d, history_limit=%s)",
        settings.device,
        settings.input_height,
        settings.input_width,
        settings.input_channels,
        settings.history_limit,
    )

    store = OnnxModelStore(settings)
    init_app_state(app, settings, model_store=store)

    # Requests are served while the model loads; classification reports "loading".
    load_task = asyncio.create_task(store.load_async())

    logger.info("ImageIdent accepting requests")
    yield

    logger.info("Shutting down ImageIdent")
    await load_task
    pool: InferencePool = app.state.inference_pool
    pool.shutdown()
    store.shutdown()
    blobs: BlobStore = app.state.blobs
    blobs.clear()
    logger.info("ImageIdent shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="ImageIdent",
        description="Image identification with a pretrained classifier and recent-image history",
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
    """Console entry point: serve the app with uvicorn."""
    settings = get_settings()
    uvicorn.run(
        "imageident.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )
