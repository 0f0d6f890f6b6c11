"""Scoped numeric buffers for model input.

Every Tensor is registered with a TensorTracker when created and must be
released exactly once. The tracker keeps live and peak counts so that buffer
growth across repeated classifications can be observed.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from types import TracebackType

    import numpy as np
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)


class TensorTracker:
    """Counts allocated and released tensors."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._live = 0
        self._peak = 0
        self._allocated = 0

    def _acquire(self) -> None:
        with self._lock:
            self._live += 1
            self._allocated += 1
            self._peak = max(self._peak, self._live)

    def _release(self) -> None:
        with self._lock:
            self._live -= 1

    @property
    def live(self) -> int:
        """Tensors created but not yet released."""
        with self._lock:
            return self._live

    @property
    def peak(self) -> int:
        """Highest number of simultaneously live tensors."""
        with self._lock:
            return self._peak

    @property
    def allocated(self) -> int:
        """Total tensors ever created."""
        with self._lock:
            return self._allocated


class Tensor:
    """A model input buffer with an explicit release.

    Use as a context manager to release on scope exit. Accessing the data of a
    released tensor, or releasing it twice, raises RuntimeError.
    """

    __slots__ = ("_array", "_released", "_tracker")

    def __init__(self, array: NDArray[np.float32], tracker: TensorTracker) -> None:
        self._array: NDArray[np.float32] | None = array
        self._tracker = tracker
        self._released = False
        tracker._acquire()

    @property
    def data(self) -> NDArray[np.float32]:
        if self._array is None:
            raise RuntimeError("Tensor has already been released")
        return self._array

    @property
    def shape(self) -> tuple[int, ...]:
        return tuple(self.data.shape)

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            raise RuntimeError("Tensor released twice")
        self._released = True
        self._array = None
        self._tracker._release()

    def __enter__(self) -> Tensor:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if not self._released:
            self.release()
