"""Pydantic request/response schemas for the ImageIdent API."""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from imageident.history import HistoryEntry
    from imageident.pipeline import PipelineSnapshot
    from imageident.sources import ImageReference


class ImageRef(BaseModel):
    """Locator of an image: a ``blob:`` upload handle or a URL."""

    locator: str
    kind: str = Field(description="'blob' for uploads, 'url' for remote images")

    @classmethod
    def from_reference(cls, reference: ImageReference) -> ImageRef:
        return cls(locator=reference.locator, kind=str(reference.kind))


class ClassConfidence(BaseModel):
    """Confidence for a single class, identified by position."""

    label: str = Field(description="'Class <n>' with a 1-based index")
    confidence: str = Field(description="Percentage rounded to 2 decimals")
    score: float


class HistoryItem(BaseModel):
    """A previously selected image."""

    index: int = Field(description="Position to pass to the select endpoint (0 = most recent)")
    sequence: int
    image: ImageRef

    @classmethod
    def from_entry(cls, index: int, entry: HistoryEntry) -> HistoryItem:
        return cls(index=index, sequence=entry.sequence, image=ImageRef.from_reference(entry.reference))


class StateResponse(BaseModel):
    """Snapshot of the classification pipeline."""

    state: str
    readiness: str
    image: ImageRef | None
    url_input: str
    results: list[ClassConfidence]
    error: str | None
    history_size: int

    @classmethod
    def from_snapshot(cls, snapshot: PipelineSnapshot) -> StateResponse:
        return cls(
            state=str(snapshot.state),
            readiness=str(snapshot.readiness),
            image=ImageRef.from_reference(snapshot.reference) if snapshot.reference else None,
            url_input=snapshot.url_input,
            results=[
                ClassConfidence(label=score.label, confidence=score.confidence, score=score.score)
                for score in snapshot.scores
            ],
            error=snapshot.error,
            history_size=len(snapshot.history),
        )


class HistoryResponse(BaseModel):
    """Selected images, most recent first."""

    entries: list[HistoryItem]
    limit: int | None


class UrlSelection(BaseModel):
    """Request body for selecting an image by URL."""

    url: str


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    readiness: str
    model: str | None
    gpu: bool
    tensors_live: int
    tensors_peak: int
    concurrent_requests: int
    queue_depth: int


class ModelInfoResponse(BaseModel):
    """Shape information of the loaded classifier."""

    name: str
    input_shape: list[int] = Field(description="Height, width, channels")
    layout: str = Field(description="Model input layout: 'nhwc' or 'nchw'")
    output_cardinality: int


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
