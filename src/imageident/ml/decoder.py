"""Image decoding: resolve a reference to bytes and decode them to pixels.

Blob references are read from the session BlobStore. URL references are
fetched anonymously (fresh client, no cookies or credentials) so the decoded
pixels are always readable by the preprocessor. ``data:`` URLs are decoded
inline.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import io
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING
from urllib.parse import unquote_to_bytes, urlsplit

import httpx
import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from imageident.errors import DecodeError
from imageident.sources import ReferenceKind

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from imageident.config import Settings
    from imageident.sources import BlobStore, ImageReference

logger = logging.getLogger(__name__)

_FETCH_HEADERS = {"Accept": "image/*,*/*;q=0.8"}


@dataclass(frozen=True)
class DecodedImage:
    """HxWxC uint8 pixel buffer."""

    pixels: NDArray[np.uint8]
    width: int
    height: int
    channels: int


class ImageDecoder:
    """Fetches and decodes images referenced by blob locator or URL."""

    def __init__(
        self,
        settings: Settings,
        blobs: BlobStore,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._blobs = blobs
        self._transport = transport
        self._max_file_size = settings.max_file_size
        self._max_image_pixels = settings.max_image_pixels
        self._fetch_timeout = settings.fetch_timeout
        self._mode = "RGB" if settings.input_channels == 3 else "L"

    async def decode(self, reference: ImageReference | None) -> DecodedImage:
        """Resolve the reference and return fully decoded pixels.

        Raises:
            DecodeError: If the reference is empty, unreachable, too large, or
                not a recognisable image.
        """
        if reference is None or not reference.locator.strip():
            raise DecodeError("No image selected")

        data = await self._read_bytes(reference)
        if not data:
            raise DecodeError(f"Image at {self._describe(reference)} is empty")
        return await asyncio.to_thread(self.decode_bytes, data)

    def decode_bytes(self, data: bytes) -> DecodedImage:
        """Decode raw image bytes into a uint8 array in the configured mode."""
        try:
            with Image.open(io.BytesIO(data)) as img:
                width, height = img.size
                if width * height > self._max_image_pixels:
                    raise DecodeError(f"Image is too large ({width}x{height} pixels)")
                img.load()
                oriented = ImageOps.exif_transpose(img) or img
                converted = oriented.convert(self._mode)
                pixels = np.asarray(converted, dtype=np.uint8)
        except DecodeError:
            raise
        except (UnidentifiedImageError, Image.DecompressionBombError) as exc:
            raise DecodeError(f"Not a recognisable image: {exc}") from exc
        except (OSError, ValueError) as exc:
            raise DecodeError(f"Could not decode image: {exc}") from exc

        if pixels.ndim == 2:
            pixels = pixels[:, :, None]
        height, width, channels = pixels.shape
        return DecodedImage(pixels=pixels, width=width, height=height, channels=channels)

    # -- Internal -----------------------------------------------------------

    async def _read_bytes(self, reference: ImageReference) -> bytes:
        if reference.kind == ReferenceKind.BLOB:
            blob = self._blobs.get(reference.locator)
            if blob is None:
                raise DecodeError(f"Upload {reference.locator} is no longer available")
            return blob.data

        scheme = urlsplit(reference.locator).scheme.lower()
        if scheme == "data":
            return self._read_data_url(reference.locator)
        if scheme in ("http", "https"):
            return await self._fetch(reference.locator)
        raise DecodeError(f"Unsupported image URL: {reference.locator!r}")

    async def _fetch(self, url: str) -> bytes:
        # A fresh client per fetch keeps requests anonymous: no shared cookie jar.
        async with httpx.AsyncClient(
            transport=self._transport,
            follow_redirects=True,
            timeout=self._fetch_timeout,
            headers=_FETCH_HEADERS,
        ) as client:
            try:
                async with client.stream("GET", url) as response:
                    if response.status_code >= 400:
                        raise DecodeError(f"Fetching {url} failed with HTTP {response.status_code}")
                    chunks: list[bytes] = []
                    total = 0
                    async for chunk in response.aiter_bytes():
                        total += len(chunk)
                        if total > self._max_file_size:
                            raise DecodeError(f"Image at {url} exceeds {self._max_file_size} bytes")
                        chunks.append(chunk)
            except httpx.HTTPError as exc:
                raise DecodeError(f"Fetching {url} failed: {exc}") from exc

        logger.debug("Fetched %s (%d bytes)", url, total)
        return b"".join(chunks)

    def _read_data_url(self, url: str) -> bytes:
        header, sep, payload = url.partition(",")
        if not sep:
            raise DecodeError("Malformed data URL")
        try:
            if header.lower().endswith(";base64"):
                data = base64.b64decode(payload, validate=True)
            else:
                data = unquote_to_bytes(payload)
        except (binascii.Error, ValueError) as exc:
            raise DecodeError(f"Malformed data URL: {exc}") from exc
        if len(data) > self._max_file_size:
            raise DecodeError(f"Inline image exceeds {self._max_file_size} bytes")
        return data

    @staticmethod
    def _describe(reference: ImageReference) -> str:
        if reference.locator.startswith("data:"):
            return "data URL"
        return reference.locator
