"""Inference concurrency layer and forward pass.

Architecture:
    asyncio caller -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> ONNX inference

Requests beyond the semaphore limit queue with a 5s timeout. The engine awaits
the forward pass and always releases its input tensor afterwards.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, TypeVar

import numpy as np

from imageident.errors import InferenceError
from imageident.ml.model_store import InputLayout

if TYPE_CHECKING:
    from collections.abc import Callable

    from numpy.typing import NDArray

    from imageident.config import Settings
    from imageident.ml.model_store import ModelHandle
    from imageident.ml.tensors import Tensor

logger = logging.getLogger(__name__)

T = TypeVar("T")

SEMAPHORE_TIMEOUT_SECONDS: float = 5.0

ConfidenceVector = tuple[float, ...]


class InferencePool:
    """Manages the semaphore and thread pool for ML inference."""

    def __init__(self, settings: Settings) -> None:
        self._semaphore = asyncio.Semaphore(settings.max_concurrent)
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent,
            thread_name_prefix="onnx-inference",
        )
        self._active_count: int = 0
        self._queue_depth: int = 0
        self._counter_lock = threading.Lock()

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Submit a synchronous function to the inference thread pool.

        Acquires the semaphore (with timeout), runs the function in the
        executor, then releases.

        Raises:
            TimeoutError: If the semaphore cannot be acquired within the timeout.
        """
        with self._counter_lock:
            self._queue_depth += 1
        try:
            await asyncio.wait_for(
                self._semaphore.acquire(),
                timeout=SEMAPHORE_TIMEOUT_SECONDS,
            )
        finally:
            with self._counter_lock:
                self._queue_depth -= 1

        with self._counter_lock:
            self._active_count += 1
        try:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(self._executor, func, *args)
        finally:
            self._semaphore.release()
            with self._counter_lock:
                self._active_count -= 1

    @property
    def active_count(self) -> int:
        """Number of currently running inference tasks."""
        with self._counter_lock:
            return self._active_count

    @property
    def queue_depth(self) -> int:
        """Number of requests waiting for a semaphore slot."""
        with self._counter_lock:
            return self._queue_depth

    def shutdown(self) -> None:
        """Shut down the thread pool executor."""
        self._executor.shutdown(wait=True)


class InferenceEngine:
    """Runs one forward pass per call on a ready model handle."""

    def __init__(self, pool: InferencePool, timeout: float | None = None) -> None:
        self._pool = pool
        self._timeout = timeout

    async def predict(self, handle: ModelHandle, tensor: Tensor) -> ConfidenceVector:
        """Classify a preprocessed tensor.

        The tensor is released before this method returns or raises.

        Raises:
            InferenceError: On shape mismatch, backend failure, timeout, or a
                result that does not match the model's class count.
        """
        try:
            if handle is None:
                raise RuntimeError("predict() called without a loaded model")

            if tensor.shape != handle.batch_shape:
                raise InferenceError(f"Tensor shape {tensor.shape} does not match model input {handle.batch_shape}")

            feed = tensor.data
            if handle.layout == InputLayout.NCHW:
                feed = np.ascontiguousarray(feed.transpose(0, 3, 1, 2))

            outputs = await self._forward(handle, feed)
            return self._extract(handle, outputs)
        finally:
            if not tensor.released:
                tensor.release()

    async def _forward(self, handle: ModelHandle, feed: NDArray[np.float32]) -> list[object]:
        try:
            outputs: list[object] = await asyncio.wait_for(
                self._pool.run(handle.session.run, None, {handle.input_name: feed}),
                timeout=self._timeout,
            )
        except TimeoutError as exc:
            raise InferenceError("Inference timed out") from exc
        except Exception as exc:
            raise InferenceError(f"Inference backend failed: {exc}") from exc
        return outputs

    @staticmethod
    def _extract(handle: ModelHandle, outputs: list[object]) -> ConfidenceVector:
        if not outputs:
            raise InferenceError("Model returned no outputs")

        scores = np.asarray(outputs[0], dtype=np.float64)
        if scores.ndim >= 2 and scores.shape[0] == 1:
            scores = scores[0]
        scores = scores.reshape(-1)

        if scores.size != handle.output_cardinality:
            raise InferenceError(f"Model returned {scores.size} scores, expected {handle.output_cardinality}")
        if not np.all(np.isfinite(scores)):
            raise InferenceError("Model returned non-finite scores")
        return tuple(float(score) for score in scores)
