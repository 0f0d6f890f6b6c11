"""Pipeline controller: the classification state machine.

States::

    idle --select--> image_selected --identify--> classifying --ok--> results
                          ^                            |
                          +--------- stage error ------+

Selecting a new image (upload or URL) records it in the history ledger.
Selecting a history entry only replaces the current image. Uploads pushed
out of a bounded history are revoked from the blob store. The controller
owns all mutable pipeline state and hands out immutable snapshots, either on
request or to subscribers after every transition.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

from imageident.errors import ModelNotReadyError, PipelineError
from imageident.ml.model_store import ModelReadiness
from imageident.ml.results import format_scores
from imageident.sources import ImageReference, ReferenceKind

if TYPE_CHECKING:
    from imageident.history import HistoryEntry, HistoryLedger
    from imageident.ml.decoder import ImageDecoder
    from imageident.ml.inference import ConfidenceVector, InferenceEngine
    from imageident.ml.model_store import ModelHandle, ModelStore
    from imageident.ml.preprocessing import Preprocessor
    from imageident.ml.results import ClassScore
    from imageident.sources import BlobStore

logger = logging.getLogger(__name__)

NOT_READY_MESSAGES = {
    ModelReadiness.LOADING: "Model is still loading, try again shortly",
    ModelReadiness.FAILED: "Model failed to load, classification is unavailable",
}


class PipelineState(StrEnum):
    IDLE = "idle"
    IMAGE_SELECTED = "image_selected"
    CLASSIFYING = "classifying"
    RESULTS = "results"


@dataclass(frozen=True)
class PipelineSnapshot:
    """Read-only view of the controller for rendering layers."""

    state: PipelineState
    reference: ImageReference | None
    url_input: str
    readiness: ModelReadiness
    confidences: tuple[float, ...] = ()
    scores: tuple[ClassScore, ...] = ()
    error: str | None = None
    history: tuple[HistoryEntry, ...] = field(default_factory=tuple)


Listener = Callable[[PipelineSnapshot], None]


class PipelineController:
    """Orchestrates decode -> preprocess -> infer for the selected image."""

    def __init__(
        self,
        model_store: ModelStore,
        decoder: ImageDecoder,
        preprocessor: Preprocessor,
        engine: InferenceEngine,
        history: HistoryLedger,
        blobs: BlobStore,
    ) -> None:
        self._models = model_store
        self._decoder = decoder
        self._preprocessor = preprocessor
        self._engine = engine
        self._history = history
        self._blobs = blobs

        self._state = PipelineState.IDLE
        self._reference: ImageReference | None = None
        self._url_input = ""
        self._confidences: ConfidenceVector = ()
        self._error: str | None = None
        self._listeners: list[Listener] = []

    # -- Read side ----------------------------------------------------------

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def busy(self) -> bool:
        return self._state == PipelineState.CLASSIFYING

    @property
    def history(self) -> HistoryLedger:
        return self._history

    def snapshot(self) -> PipelineSnapshot:
        return PipelineSnapshot(
            state=self._state,
            reference=self._reference,
            url_input=self._url_input,
            readiness=self._models.readiness,
            confidences=self._confidences,
            scores=format_scores(self._confidences),
            error=self._error,
            history=self._history.list(),
        )

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener called with a snapshot after every transition."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # -- Selection ----------------------------------------------------------

    def select_upload(
        self, data: bytes, filename: str | None = None, content_type: str | None = None
    ) -> ImageReference | None:
        """Select uploaded bytes as the current image and record it."""
        if self._ignore_while_busy("upload"):
            return None
        reference = self._blobs.create(data, filename=filename, content_type=content_type)
        self._select_new(reference)
        return reference

    def select_url(self, url: str) -> ImageReference | None:
        """Select a URL as the current image and record it.

        A blank URL behaves like an emptied input field and clears the
        selection.
        """
        if self._ignore_while_busy("URL entry"):
            return None
        self._url_input = url
        if not url.strip():
            self._set_current(None)
            return None
        reference = ImageReference.from_locator(url.strip())
        self._select_new(reference)
        return reference

    def clear_selection(self) -> None:
        """Drop the current image (e.g. the file picker was cancelled)."""
        if self._ignore_while_busy("clear"):
            return
        self._set_current(None)

    def select_history(self, index: int) -> ImageReference | None:
        """Re-display a past image. Does not add a history entry.

        Raises:
            HistoryIndexError: If ``index`` is out of range.
        """
        if self._ignore_while_busy("history selection"):
            return None
        reference = self._history.select(index)
        self._set_current(reference)
        return reference

    # -- Classification -----------------------------------------------------

    async def identify(self) -> PipelineSnapshot:
        """Classify the current image and publish the scores.

        A trigger while a classification is in flight is ignored. Stage
        failures are reported in the snapshot and return the controller to
        ``image_selected``.

        Raises:
            ModelNotReadyError: If the model is loading or failed to load.
        """
        if self._state == PipelineState.CLASSIFYING:
            logger.info("Classification already in progress, ignoring trigger")
            return self.snapshot()

        self._url_input = ""
        reference = self._reference
        if reference is None:
            self._publish()
            return self.snapshot()

        readiness = self._models.readiness
        if readiness != ModelReadiness.READY:
            self._error = NOT_READY_MESSAGES[readiness]
            self._publish()
            raise ModelNotReadyError(self._error)
        handle = self._models.handle

        self._state = PipelineState.CLASSIFYING
        self._confidences = ()
        self._error = None
        self._publish()

        try:
            confidences = await self._classify(handle, reference)
        except PipelineError as exc:
            logger.warning("Classification of %s failed during %s: %s", _short(reference), exc.stage, exc)
            self._state = PipelineState.IMAGE_SELECTED
            self._error = str(exc)
            self._publish()
            return self.snapshot()
        except BaseException:
            logger.exception("Unexpected failure classifying %s", _short(reference))
            self._state = PipelineState.IMAGE_SELECTED
            self._error = "Unexpected error during classification"
            self._publish()
            raise

        self._confidences = confidences
        self._state = PipelineState.RESULTS
        logger.info("Classified %s into %d classes", _short(reference), len(confidences))
        self._publish()
        return self.snapshot()

    async def _classify(self, handle: ModelHandle, reference: ImageReference) -> ConfidenceVector:
        image = await self._decoder.decode(reference)
        tensor = self._preprocessor.preprocess(image, handle.input_shape)
        return await self._engine.predict(handle, tensor)

    # -- Internal -----------------------------------------------------------

    def _select_new(self, reference: ImageReference) -> None:
        dropped = self._history.record(reference)
        self._set_current(reference)
        self._release_unreachable(entry.reference for entry in dropped)

    def _release_unreachable(self, references: Iterable[ImageReference]) -> None:
        # Uploaded bytes are only reachable through history or the current selection.
        for reference in references:
            if reference.kind != ReferenceKind.BLOB or reference == self._reference or reference in self._history:
                continue
            self._blobs.revoke(reference.locator)

    def _set_current(self, reference: ImageReference | None) -> None:
        self._reference = reference
        self._confidences = ()
        self._error = None
        self._state = PipelineState.IDLE if reference is None else PipelineState.IMAGE_SELECTED
        self._publish()

    def _ignore_while_busy(self, action: str) -> bool:
        if self._state == PipelineState.CLASSIFYING:
            logger.info("Ignoring %s while classification is in progress", action)
            return True
        return False

    def _publish(self) -> None:
        if not self._listeners:
            return
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Pipeline listener %r failed", listener)


def _short(reference: ImageReference) -> str:
    locator = reference.locator
    return locator if len(locator) <= 80 else f"{locator[:77]}..."
