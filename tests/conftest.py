"""Shared fixtures: a fake ONNX session, settings, and pipeline wiring."""

from __future__ import annotations

import io
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING
from unittest.mock import patch

import httpx
import numpy as np
import pytest
from PIL import Image

from imageident.config import Settings
from imageident.history import HistoryLedger
from imageident.ml.decoder import ImageDecoder
from imageident.ml.inference import InferenceEngine, InferencePool
from imageident.ml.model_store import OnnxModelStore
from imageident.ml.preprocessing import Preprocessor
from imageident.ml.tensors import TensorTracker
from imageident.pipeline import PipelineController
from imageident.sources import BlobStore

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator
    from pathlib import Path

    from numpy.typing import NDArray


# ---------------------------------------------------------------------------
# Fake ONNX Runtime session
# ---------------------------------------------------------------------------


@dataclass
class FakeNodeArg:
    name: str
    shape: list[object]


class FakeSession:
    """Stands in for onnxruntime.InferenceSession."""

    def __init__(
        self,
        input_shape: tuple[object, ...] = ("batch", 224, 224, 3),
        num_classes: int = 3,
        scores: list[float] | None = None,
        error: Exception | None = None,
        gate: threading.Event | None = None,
    ) -> None:
        self.input_shape = list(input_shape)
        self.num_classes = num_classes
        self.scores = scores
        self.error = error
        # When set, run() blocks until the event fires.
        self.gate = gate
        self.feeds: list[dict[str, NDArray[np.float32]]] = []

    def get_inputs(self) -> list[FakeNodeArg]:
        return [FakeNodeArg(name="input_1", shape=self.input_shape)]

    def get_outputs(self) -> list[FakeNodeArg]:
        return [FakeNodeArg(name="dense", shape=["batch", self.num_classes])]

    def run(self, output_names: list[str] | None, feed: dict[str, NDArray[np.float32]]) -> list[NDArray[np.float32]]:
        self.feeds.append(feed)
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.error is not None:
            raise self.error
        (batch,) = feed.values()
        if self.scores is not None:
            return [np.asarray([self.scores], dtype=np.float32)]
        # Softmax over per-class channel means keeps the output deterministic.
        logits = np.resize(batch.mean(axis=(1, 2)).reshape(-1), self.num_classes).astype(np.float32)
        exp = np.exp(logits - logits.max())
        return [(exp / exp.sum())[None, :]]


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------


def encode_image(width: int, height: int, color: tuple[int, int, int] = (0, 0, 0), fmt: str = "PNG") -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format=fmt)
    return buffer.getvalue()


@pytest.fixture()
def image_bytes() -> Callable[..., bytes]:
    """Factory for encoded solid-colour images."""
    return encode_image


def _remote_images(request: httpx.Request) -> httpx.Response:
    path = request.url.path
    if path == "/black.png":
        return httpx.Response(200, content=encode_image(100, 100), headers={"Content-Type": "image/png"})
    if path == "/wide.jpg":
        return httpx.Response(200, content=encode_image(320, 80, (200, 10, 10), "JPEG"))
    if path == "/page.html":
        return httpx.Response(200, content=b"<html><body>not an image</body></html>")
    if path == "/redirect":
        return httpx.Response(302, headers={"Location": "http://images.test/black.png"})
    if path == "/echo-cookies.png":
        if "cookie" in request.headers or "authorization" in request.headers:
            return httpx.Response(403)
        return httpx.Response(200, content=encode_image(8, 8))
    if path == "/slow.png":
        # Stalls past any configured read timeout.
        if request.extensions.get("timeout", {}).get("read") is not None:
            raise httpx.ReadTimeout("read timed out", request=request)
        return httpx.Response(200, content=encode_image(8, 8))
    if path == "/offline.png":
        raise httpx.ConnectError("connection refused", request=request)
    return httpx.Response(404)


@pytest.fixture()
def transport() -> httpx.MockTransport:
    """Mock transport serving images under http://images.test/."""
    return httpx.MockTransport(_remote_images)


# ---------------------------------------------------------------------------
# Pipeline wiring
# ---------------------------------------------------------------------------


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    model_file = tmp_path / "classifier.onnx"
    model_file.write_bytes(b"onnx")
    return Settings(model_path=str(model_file), models_dir=str(tmp_path / "models"))


@pytest.fixture()
def fake_session() -> FakeSession:
    return FakeSession()


@pytest.fixture()
def model_store(settings: Settings, fake_session: FakeSession) -> Iterator[OnnxModelStore]:
    """A model store that has loaded the fake session."""
    with patch("imageident.ml.model_store.InferenceSession", return_value=fake_session):
        store = OnnxModelStore(settings)
        store.load()
        yield store


@pytest.fixture()
def tracker() -> TensorTracker:
    return TensorTracker()


@pytest.fixture()
def pool(settings: Settings) -> Iterator[InferencePool]:
    inference_pool = InferencePool(settings)
    yield inference_pool
    inference_pool.shutdown()


@pytest.fixture()
def blobs() -> BlobStore:
    return BlobStore()


@pytest.fixture()
def controller(
    settings: Settings,
    model_store: OnnxModelStore,
    pool: InferencePool,
    tracker: TensorTracker,
    blobs: BlobStore,
    transport: httpx.MockTransport,
) -> PipelineController:
    return PipelineController(
        model_store=model_store,
        decoder=ImageDecoder(settings, blobs, transport=transport),
        preprocessor=Preprocessor(tracker),
        engine=InferenceEngine(pool),
        history=HistoryLedger(limit=settings.history_limit),
        blobs=blobs,
    )
