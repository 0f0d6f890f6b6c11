"""Exception hierarchy shared by the inference pipeline."""

from __future__ import annotations


class ImageIdentError(Exception):
    """Base class for all ImageIdent errors."""


class LoadError(ImageIdentError):
    """The classifier could not be acquired. Terminal for the process."""


class ModelNotReadyError(ImageIdentError):
    """The classifier is still loading or failed to load."""


class PipelineError(ImageIdentError):
    """A recoverable failure in one of the classification stages."""

    stage: str = "pipeline"


class DecodeError(PipelineError):
    """The image reference could not be fetched or decoded."""

    stage = "decode"


class PreprocessError(PipelineError):
    """The decoded image could not be turned into a model input tensor."""

    stage = "preprocess"


class InferenceError(PipelineError):
    """The forward pass failed or produced an unusable result."""

    stage = "inference"


class HistoryIndexError(ImageIdentError, IndexError):
    """No history entry exists at the requested position."""
