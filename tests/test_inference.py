"""Tests for the inference engine and pool."""

from __future__ import annotations

import math
import threading
from typing import TYPE_CHECKING

import numpy as np
import pytest

from conftest import FakeSession
from imageident.errors import InferenceError
from imageident.ml.inference import InferenceEngine, InferencePool
from imageident.ml.model_store import InputLayout, ModelHandle
from imageident.ml.tensors import Tensor, TensorTracker

if TYPE_CHECKING:
    from imageident.config import Settings


def _handle(session: FakeSession, shape: tuple[int, int, int] = (4, 4, 3), layout: InputLayout = InputLayout.NHWC) -> ModelHandle:
    return ModelHandle(
        name="fake.onnx",
        session=session,  # type: ignore[arg-type]
        input_name="input_1",
        input_shape=shape,
        layout=layout,
        output_cardinality=session.num_classes,
    )


def _tensor(tracker: TensorTracker, shape: tuple[int, ...] = (1, 4, 4, 3)) -> Tensor:
    return Tensor(np.zeros(shape, dtype=np.float32), tracker)


class TestInferenceEngine:
    async def test_predict_returns_vector(self, pool: InferencePool, tracker: TensorTracker) -> None:
        session = FakeSession(scores=[0.1, 0.7, 0.2])
        engine = InferenceEngine(pool)

        vector = await engine.predict(_handle(session), _tensor(tracker))

        assert vector == pytest.approx((0.1, 0.7, 0.2))
        assert all(isinstance(score, float) and math.isfinite(score) for score in vector)
        assert tracker.live == 0

    async def test_feeds_named_input(self, pool: InferencePool, tracker: TensorTracker) -> None:
        session = FakeSession()
        await InferenceEngine(pool).predict(_handle(session), _tensor(tracker))

        assert list(session.feeds[0]) == ["input_1"]
        assert session.feeds[0]["input_1"].shape == (1, 4, 4, 3)

    async def test_channels_first_feed_is_transposed(self, pool: InferencePool, tracker: TensorTracker) -> None:
        session = FakeSession(scores=[1.0, 0.0, 0.0])
        handle = _handle(session, shape=(4, 6, 3), layout=InputLayout.NCHW)

        await InferenceEngine(pool).predict(handle, _tensor(tracker, (1, 4, 6, 3)))

        assert session.feeds[0]["input_1"].shape == (1, 3, 4, 6)

    async def test_shape_mismatch_releases_tensor(self, pool: InferencePool, tracker: TensorTracker) -> None:
        tensor = _tensor(tracker, (1, 8, 8, 3))
        with pytest.raises(InferenceError, match="does not match"):
            await InferenceEngine(pool).predict(_handle(FakeSession()), tensor)
        assert tensor.released
        assert tracker.live == 0

    async def test_backend_failure_releases_tensor(self, pool: InferencePool, tracker: TensorTracker) -> None:
        session = FakeSession(error=RuntimeError("kernel exploded"))
        with pytest.raises(InferenceError, match="kernel exploded"):
            await InferenceEngine(pool).predict(_handle(session), _tensor(tracker))
        assert tracker.live == 0

    async def test_wrong_cardinality(self, pool: InferencePool, tracker: TensorTracker) -> None:
        session = FakeSession(scores=[0.5, 0.5])
        with pytest.raises(InferenceError, match="expected 3"):
            await InferenceEngine(pool).predict(_handle(session), _tensor(tracker))
        assert tracker.live == 0

    async def test_non_finite_scores(self, pool: InferencePool, tracker: TensorTracker) -> None:
        session = FakeSession(scores=[0.5, float("nan"), 0.5])
        with pytest.raises(InferenceError, match="non-finite"):
            await InferenceEngine(pool).predict(_handle(session), _tensor(tracker))

    async def test_timeout_releases_tensor(self, pool: InferencePool, tracker: TensorTracker) -> None:
        gate = threading.Event()
        session = FakeSession(gate=gate)
        tensor = _tensor(tracker)
        try:
            with pytest.raises(InferenceError, match="timed out"):
                await InferenceEngine(pool, timeout=0.05).predict(_handle(session), tensor)
        finally:
            gate.set()

        assert tensor.released
        assert tracker.live == 0

    async def test_missing_handle_is_programming_error(self, pool: InferencePool, tracker: TensorTracker) -> None:
        with pytest.raises(RuntimeError, match="without a loaded model"):
            await InferenceEngine(pool).predict(None, _tensor(tracker))  # type: ignore[arg-type]
        assert tracker.live == 0

    async def test_repeated_calls_do_not_accumulate_tensors(self, pool: InferencePool, tracker: TensorTracker) -> None:
        engine = InferenceEngine(pool)
        handle = _handle(FakeSession())
        for _ in range(50):
            await engine.predict(handle, _tensor(tracker))

        assert tracker.allocated == 50
        assert tracker.live == 0
        assert tracker.peak == 1


class TestInferencePool:
    async def test_run_executes_in_thread(self, settings: Settings) -> None:
        pool = InferencePool(settings)
        try:
            result = await pool.run(sum, [1, 2, 3])
            assert result == 6
            assert pool.active_count == 0
            assert pool.queue_depth == 0
        finally:
            pool.shutdown()
