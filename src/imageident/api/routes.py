"""API route definitions."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, HTTPException, Request, Response, UploadFile, status

from imageident.api.middleware import verify_api_key
from imageident.api.schemas import (
    ErrorResponse,
    HealthResponse,
    HistoryItem,
    HistoryResponse,
    ModelInfoResponse,
    StateResponse,
    UrlSelection,
)
from imageident.errors import HistoryIndexError, ModelNotReadyError
from imageident.ml.model_store import ModelReadiness
from imageident.sources import BLOB_SCHEME

if TYPE_CHECKING:
    from imageident.config import Settings
    from imageident.ml.inference import InferencePool
    from imageident.ml.model_store import ModelStore
    from imageident.ml.tensors import TensorTracker
    from imageident.pipeline import PipelineController
    from imageident.sources import BlobStore


router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

_BUSY_DETAIL = "A classification is already in progress"
# 413 Content Too Large
_CONTENT_TOO_LARGE = 413


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_controller(request: Request) -> PipelineController:
    controller: PipelineController = request.app.state.controller
    return controller


def _get_model_store(request: Request) -> ModelStore:
    store: ModelStore = request.app.state.model_store
    return store


def _ensure_idle(controller: PipelineController) -> None:
    if controller.busy:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=_BUSY_DETAIL)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health and model readiness."""
    settings = _get_settings(request)
    store = _get_model_store(request)
    pool: InferencePool = request.app.state.inference_pool
    tracker: TensorTracker = request.app.state.tensor_tracker

    readiness = store.readiness
    try:
        model_name: str | None = store.handle.name
    except ModelNotReadyError:
        model_name = None
    return HealthResponse(
        status="failed" if readiness == ModelReadiness.FAILED else "ok",
        readiness=str(readiness),
        model=model_name,
        gpu=settings.device == "cuda",
        tensors_live=tracker.live,
        tensors_peak=tracker.peak,
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/model",
    response_model=ModelInfoResponse,
    responses={status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse}},
    summary="Describe the loaded classifier",
)
async def model_info(request: Request) -> ModelInfoResponse:
    """Return the input shape and class count of the loaded model."""
    store = _get_model_store(request)
    try:
        handle = store.handle
    except ModelNotReadyError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return ModelInfoResponse(
        name=handle.name,
        input_shape=list(handle.input_shape),
        layout=str(handle.layout),
        output_cardinality=handle.output_cardinality,
    )


@router.get(
    "/state",
    response_model=StateResponse,
    summary="Current pipeline state",
)
async def get_state(request: Request) -> StateResponse:
    """Return a snapshot of the pipeline for polling clients."""
    return StateResponse.from_snapshot(_get_controller(request).snapshot())


@router.post(
    "/images/upload",
    response_model=StateResponse,
    responses={
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        status.HTTP_409_CONFLICT: {"model": ErrorResponse},
        _CONTENT_TOO_LARGE: {"model": ErrorResponse},
    },
    summary="Select an uploaded image",
)
async def upload_image(request: Request, file: UploadFile) -> StateResponse:
    """Store an uploaded image and make it the current selection."""
    controller = _get_controller(request)
    settings = _get_settings(request)
    _ensure_idle(controller)

    if file.size is not None and file.size > settings.max_file_size:
        raise HTTPException(status_code=_CONTENT_TOO_LARGE, detail="Uploaded file is too large")
    payload = await file.read()
    if not payload:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Uploaded file is empty")
    if len(payload) > settings.max_file_size:
        raise HTTPException(status_code=_CONTENT_TOO_LARGE, detail="Uploaded file is too large")

    controller.select_upload(payload, filename=file.filename, content_type=file.content_type)
    return StateResponse.from_snapshot(controller.snapshot())


@router.post(
    "/images/url",
    response_model=StateResponse,
    responses={status.HTTP_409_CONFLICT: {"model": ErrorResponse}},
    summary="Select an image by URL",
)
async def select_url(request: Request, body: UrlSelection) -> StateResponse:
    """Make a remote image the current selection. An empty URL clears it."""
    controller = _get_controller(request)
    _ensure_idle(controller)
    controller.select_url(body.url)
    return StateResponse.from_snapshot(controller.snapshot())


@router.delete(
    "/images/current",
    response_model=StateResponse,
    responses={status.HTTP_409_CONFLICT: {"model": ErrorResponse}},
    summary="Clear the current image",
)
async def clear_image(request: Request) -> StateResponse:
    """Drop the current selection and its results."""
    controller = _get_controller(request)
    _ensure_idle(controller)
    controller.clear_selection()
    return StateResponse.from_snapshot(controller.snapshot())


@router.post(
    "/identify",
    response_model=StateResponse,
    responses={
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        status.HTTP_409_CONFLICT: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Classify the current image",
)
async def identify(request: Request) -> StateResponse:
    """Run the classifier on the current image.

    Stage failures (unreachable URL, undecodable bytes, backend errors) are
    reported in the ``error`` field of the returned state.
    """
    controller = _get_controller(request)
    _ensure_idle(controller)
    if controller.snapshot().reference is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No image selected")
    try:
        snapshot = await controller.identify()
    except ModelNotReadyError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return StateResponse.from_snapshot(snapshot)


@router.get(
    "/history",
    response_model=HistoryResponse,
    summary="Recently selected images",
)
async def list_history(request: Request) -> HistoryResponse:
    """Return selected images, most recent first."""
    ledger = _get_controller(request).history
    return HistoryResponse(
        entries=[HistoryItem.from_entry(index, entry) for index, entry in enumerate(ledger.list())],
        limit=ledger.limit,
    )


@router.post(
    "/history/{index}/select",
    response_model=StateResponse,
    responses={
        status.HTTP_404_NOT_FOUND: {"model": ErrorResponse},
        status.HTTP_409_CONFLICT: {"model": ErrorResponse},
    },
    summary="Re-select a history entry",
)
async def select_history(request: Request, index: int) -> StateResponse:
    """Make a past image current again without adding a history entry."""
    controller = _get_controller(request)
    _ensure_idle(controller)
    try:
        controller.select_history(index)
    except HistoryIndexError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return StateResponse.from_snapshot(controller.snapshot())


@router.get(
    "/blobs/{blob_id}",
    responses={status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}},
    summary="Fetch the bytes of an uploaded image",
)
async def get_blob(request: Request, blob_id: str) -> Response:
    """Serve an uploaded image so clients can render history thumbnails."""
    blobs: BlobStore = request.app.state.blobs
    blob = blobs.get(f"{BLOB_SCHEME}{blob_id}")
    if blob is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown upload")
    return Response(content=blob.data, media_type=blob.content_type or "application/octet-stream")
