"""Image preprocessing: decoded pixels to a normalised model input tensor.

Steps, in order: nearest-neighbour resize to the model's height x width,
cast to float32, ``(x - offset) / scale``, and a leading batch dimension.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from imageident.errors import PreprocessError
from imageident.ml.tensors import Tensor

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from imageident.config import Settings
    from imageident.ml.decoder import DecodedImage
    from imageident.ml.tensors import TensorTracker


@dataclass(frozen=True)
class NormalizationConfig:
    """Maps [0, 255] pixel values to roughly [-1, 1] with the defaults."""

    offset: float = 127.5
    scale: float = 127.5

    @classmethod
    def from_settings(cls, settings: Settings) -> NormalizationConfig:
        return cls(offset=settings.normalization_offset, scale=settings.normalization_scale)


def nearest_indices(in_size: int, out_size: int) -> NDArray[np.int64]:
    """Source index for each output position (align-corners and half-pixel off)."""
    scale = in_size / out_size
    indices = np.floor(np.arange(out_size, dtype=np.float64) * scale).astype(np.int64)
    return np.minimum(indices, in_size - 1)


def resize_nearest(pixels: NDArray[np.uint8], height: int, width: int) -> NDArray[np.uint8]:
    """Nearest-neighbour resize of an HxWxC array."""
    rows = nearest_indices(pixels.shape[0], height)
    cols = nearest_indices(pixels.shape[1], width)
    return pixels[rows[:, None], cols[None, :]]


class Preprocessor:
    """Turns a DecodedImage into a batch-of-one float32 Tensor."""

    def __init__(self, tracker: TensorTracker, normalization: NormalizationConfig | None = None) -> None:
        self._tracker = tracker
        self._normalization = normalization or NormalizationConfig()

    @property
    def normalization(self) -> NormalizationConfig:
        return self._normalization

    def preprocess(self, image: DecodedImage, target_shape: tuple[int, int, int]) -> Tensor:
        """Resize and normalise an image for a model expecting ``target_shape``.

        Args:
            image: Decoded pixels.
            target_shape: (height, width, channels) expected by the model.

        Returns:
            Tensor of shape (1, height, width, channels). The caller owns it
            and must release it.

        Raises:
            PreprocessError: If the image is empty, malformed, or has the
                wrong number of channels.
        """
        pixels = self._validate(image, target_shape)
        height, width, _channels = target_shape

        resized = resize_nearest(pixels, height, width).astype(np.float32)
        norm = self._normalization
        normalized = (resized - np.float32(norm.offset)) / np.float32(norm.scale)
        return Tensor(np.expand_dims(normalized, axis=0), self._tracker)

    @staticmethod
    def _validate(image: DecodedImage, target_shape: tuple[int, int, int]) -> NDArray[np.uint8]:
        if image.width <= 0 or image.height <= 0:
            raise PreprocessError(f"Image has zero area ({image.width}x{image.height})")

        pixels = image.pixels
        if not isinstance(pixels, np.ndarray) or pixels.dtype != np.uint8:
            raise PreprocessError("Decoded pixel buffer is not a uint8 array")
        if pixels.ndim == 2:
            pixels = pixels[:, :, None]
        if pixels.shape != (image.height, image.width, image.channels):
            raise PreprocessError(
                f"Pixel buffer shape {pixels.shape} does not match "
                f"{image.height}x{image.width}x{image.channels}"
            )

        height, width, channels = target_shape
        if height <= 0 or width <= 0:
            raise PreprocessError(f"Invalid target shape {target_shape}")
        if image.channels != channels:
            raise PreprocessError(f"Image has {image.channels} channels, model expects {channels}")
        return pixels
