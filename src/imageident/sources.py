"""Image locators and the session-scoped blob store backing uploads."""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass
from enum import StrEnum

logger = logging.getLogger(__name__)

BLOB_SCHEME = "blob:"


class ReferenceKind(StrEnum):
    BLOB = "blob"
    URL = "url"


@dataclass(frozen=True)
class ImageReference:
    """Locator for image bytes. Equality is by locator value."""

    locator: str
    kind: ReferenceKind

    @classmethod
    def from_locator(cls, locator: str) -> ImageReference:
        """Classify a raw locator string as a blob or URL reference."""
        kind = ReferenceKind.BLOB if locator.startswith(BLOB_SCHEME) else ReferenceKind.URL
        return cls(locator=locator, kind=kind)


@dataclass(frozen=True)
class StoredBlob:
    data: bytes
    filename: str | None
    content_type: str | None


class BlobStore:
    """Mints transient ``blob:`` locators for uploaded bytes.

    Locators live for the process (session) lifetime unless revoked. The
    history ledger holds references to them but never owns the bytes.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._blobs: dict[str, StoredBlob] = {}

    def create(self, data: bytes, filename: str | None = None, content_type: str | None = None) -> ImageReference:
        """Store bytes and return a new blob reference for them."""
        locator = f"{BLOB_SCHEME}{uuid.uuid4().hex}"
        with self._lock:
            self._blobs[locator] = StoredBlob(data=data, filename=filename, content_type=content_type)
        logger.debug("Created %s (%d bytes, filename=%s)", locator, len(data), filename)
        return ImageReference(locator=locator, kind=ReferenceKind.BLOB)

    def get(self, locator: str) -> StoredBlob | None:
        with self._lock:
            return self._blobs.get(locator)

    def revoke(self, locator: str) -> bool:
        """Drop the bytes behind a locator. Returns False if it was unknown."""
        with self._lock:
            removed = self._blobs.pop(locator, None)
        if removed is not None:
            logger.debug("Revoked %s", locator)
        return removed is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._blobs)

    def clear(self) -> None:
        with self._lock:
            self._blobs.clear()
