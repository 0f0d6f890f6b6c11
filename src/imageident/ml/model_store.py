"""Model store: acquire, load, and hold the single ONNX classifier.

The classifier is resolved from a local path or downloaded from HuggingFace,
opened as an ONNX InferenceSession exactly once, and exposed as an immutable
ModelHandle together with a readiness state. A failed load is terminal.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from imageident.errors import LoadError, ModelNotReadyError

if TYPE_CHECKING:
    from imageident.config import Settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelStore(Protocol):
    """Protocol for classifier lifecycle management."""

    @property
    def readiness(self) -> ModelReadiness:
        """Return the current readiness state."""
        ...

    @property
    def handle(self) -> ModelHandle:
        """Return the loaded handle, or raise ModelNotReadyError."""
        ...

    def load(self) -> ModelHandle:
        """Load the classifier once and return its handle."""
        ...

    def shutdown(self) -> None:
        """Drop the loaded session."""
        ...


# ---------------------------------------------------------------------------
# Handle
# ---------------------------------------------------------------------------


class ModelReadiness(StrEnum):
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


class InputLayout(StrEnum):
    NHWC = "nhwc"
    NCHW = "nchw"


@dataclass(frozen=True)
class ModelHandle:
    """Immutable reference to a loaded classifier."""

    name: str
    session: InferenceSession
    input_name: str
    input_shape: tuple[int, int, int]
    layout: InputLayout
    output_cardinality: int

    @property
    def batch_shape(self) -> tuple[int, int, int, int]:
        """Shape of a single-element batch in height/width/channels order."""
        return (1, *self.input_shape)


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


class OnnxModelStore:
    """Resolves, loads, and caches one ONNX inference session."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)

        self._lock = threading.Lock()
        self._load_lock = threading.Lock()
        self._readiness = ModelReadiness.LOADING
        self._handle: ModelHandle | None = None
        self._failure: str | None = None

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    @property
    def readiness(self) -> ModelReadiness:
        with self._lock:
            return self._readiness

    @property
    def failure(self) -> str | None:
        """Message of the load error, if loading failed."""
        with self._lock:
            return self._failure

    @property
    def handle(self) -> ModelHandle:
        with self._lock:
            if self._handle is None:
                raise ModelNotReadyError(f"Model is not ready (state: {self._readiness})")
            return self._handle

    def load(self) -> ModelHandle:
        """Load the classifier. Repeated calls return the cached outcome."""
        with self._load_lock:
            with self._lock:
                if self._handle is not None:
                    return self._handle
                if self._readiness == ModelReadiness.FAILED:
                    raise LoadError(self._failure or "Model failed to load")

            # Only the load lock is held while the session opens.
            try:
                handle = self._open()
            except LoadError as exc:
                self._fail(str(exc))
                raise
            except Exception as exc:
                message = f"{type(exc).__name__}: {exc}"
                self._fail(message)
                raise LoadError(message) from exc

            with self._lock:
                self._handle = handle
                self._readiness = ModelReadiness.READY
            logger.info(
                "Model %s ready (input=%s, layout=%s, classes=%d)",
                handle.name,
                handle.input_shape,
                handle.layout,
                handle.output_cardinality,
            )
            return handle

    async def load_async(self) -> ModelHandle | None:
        """Load in a worker thread. Failures are recorded, not raised."""
        try:
            return await asyncio.to_thread(self.load)
        except LoadError:
            return None

    def resolve_path(self) -> Path:
        """Return the model file, downloading it from HuggingFace if needed."""
        settings = self._settings
        if settings.model_path:
            path = Path(settings.model_path)
            if not path.is_file():
                raise LoadError(f"Model file not found: {path}")
            return path

        if not settings.model_repo_id:
            raise LoadError("No model source configured (set IMAGEIDENT_MODEL_PATH or IMAGEIDENT_MODEL_REPO_ID)")

        self._models_dir.mkdir(parents=True, exist_ok=True)
        downloaded = Path(
            hf_hub_download(
                repo_id=settings.model_repo_id,
                filename=settings.model_filename,
                revision=settings.model_revision,
                local_dir=str(self._models_dir),
            )
        )
        logger.info("Downloaded %s/%s to %s", settings.model_repo_id, settings.model_filename, downloaded)
        return downloaded

    def shutdown(self) -> None:
        """Drop the cached session. A later load() opens it again."""
        with self._lock:
            self._handle = None
            if self._readiness == ModelReadiness.READY:
                self._readiness = ModelReadiness.LOADING
            logger.info("Model session released")

    # -- Internal -----------------------------------------------------------

    def _fail(self, message: str) -> None:
        with self._lock:
            self._readiness = ModelReadiness.FAILED
            self._failure = message
        logger.error("Model load failed: %s", message)

    def _open(self) -> ModelHandle:
        path = self.resolve_path()
        session = InferenceSession(
            str(path),
            sess_options=self._session_options,
            providers=self._providers,
        )
        inputs = session.get_inputs()
        outputs = session.get_outputs()
        if not inputs or not outputs:
            raise LoadError(f"Model {path.name} has no inputs or outputs")

        input_meta = inputs[0]
        layout, input_shape = self._resolve_input_shape(list(input_meta.shape))
        output_cardinality = self._resolve_output_cardinality(list(outputs[0].shape))

        return ModelHandle(
            name=path.name,
            session=session,
            input_name=input_meta.name,
            input_shape=input_shape,
            layout=layout,
            output_cardinality=output_cardinality,
        )

    def _resolve_input_shape(self, dims: list[object]) -> tuple[InputLayout, tuple[int, int, int]]:
        if len(dims) != 4:
            raise LoadError(f"Expected a rank-4 image input, got shape {dims}")

        layout = InputLayout.NHWC
        if dims[1] in (1, 3) and dims[3] not in (1, 3):
            layout = InputLayout.NCHW

        if layout == InputLayout.NCHW:
            channels, height, width = dims[1], dims[2], dims[3]
        else:
            height, width, channels = dims[1], dims[2], dims[3]

        settings = self._settings
        resolved_height = self._fixed_or_default(height, settings.input_height, "height")
        resolved_width = self._fixed_or_default(width, settings.input_width, "width")
        resolved_channels = self._fixed_or_default(channels, settings.input_channels, "channels")
        return layout, (resolved_height, resolved_width, resolved_channels)

    @staticmethod
    def _fixed_or_default(dim: object, configured: int, axis: str) -> int:
        # Symbolic dimensions come back as strings or None.
        if isinstance(dim, int) and dim > 0:
            if dim != configured:
                logger.warning("Model fixes input %s=%d, overriding configured %d", axis, dim, configured)
            return dim
        return configured

    @staticmethod
    def _resolve_output_cardinality(dims: list[object]) -> int:
        if not dims:
            raise LoadError("Model output has no dimensions")
        last = dims[-1]
        if not isinstance(last, int) or last <= 0:
            raise LoadError(f"Model output class count is not fixed: {dims}")
        return last

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                "CPUExecutionProvider",
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts
