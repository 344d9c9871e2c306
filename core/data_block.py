# ==================================================
# ===============  MODULE: data_block  =============
# ==================================================
from __future__ import annotations

import threading
from typing import Any, Callable, Optional, Sequence

import numpy as np
from numpy.lib.stride_tricks import as_strided

from core.errors import AllocationFailed
from utils.decorators import log_exceptions

# Public API
__all__ = ["DataBlock", "byte_extent"]


def byte_extent(sizes: Sequence[int], byte_strides: Sequence[int], itemsize: int):
    """
    Lowest and one-past-highest byte addressed by a strided layout, relative to its origin.

    Returns
    -------
    (int, int)
    """
    lo = hi = 0
    for size, stride in zip(sizes, byte_strides):
        span = (size - 1) * stride
        if span < 0:
            lo += span
        else:
            hi += span
    return lo, hi + itemsize


# ==================================================
# ================ CLASS: DataBlock ================
# ==================================================
class DataBlock:
    """
    Reference-counted memory shared by image views.

    The samples live in `raw`, a writable one-dimensional uint8 NumPy array.
    Views acquire a reference when they attach and release it when stripped or
    collected; the last release drops the buffer and, for externally provided
    memory, calls the release callback exactly once.

    Parameters
    ----------
    raw : np.ndarray
        One-dimensional uint8 array addressing the whole block.
    release : callable, optional
        Called with no arguments when the last reference goes away.
    owner : object, optional
        Object kept alive for as long as the block is alive (e.g. a torch tensor).
    external : bool
        True when the memory was not allocated by the engine.
    """

    def __init__(
        self,
        raw: np.ndarray,
        release: Optional[Callable[[], Any]] = None,
        owner: Any = None,
        external: bool = False,
    ):
        if raw.dtype != np.uint8 or raw.ndim != 1:
            raise AllocationFailed("Data block memory must be a one-dimensional uint8 array.")
        self._raw: Optional[np.ndarray] = raw
        self._nbytes = int(raw.size)
        self._release = release
        self._owner = owner
        self.external = external
        self._count = 0
        self._lock = threading.Lock()

    # ====[ Construction ]====
    @classmethod
    @log_exceptions()
    def allocate(cls, nbytes: int) -> "DataBlock":
        """Allocate `nbytes` of uninitialised memory owned by the engine."""
        try:
            raw = np.empty(max(int(nbytes), 1), dtype=np.uint8)
        except (MemoryError, ValueError) as e:
            raise AllocationFailed(f"Could not allocate {nbytes} bytes: {e}") from e
        return cls(raw)

    @classmethod
    def from_array(
        cls,
        array: np.ndarray,
        release: Optional[Callable[[], Any]] = None,
        owner: Any = None,
    ) -> "tuple[DataBlock, int]":
        """
        Wrap the memory spanned by a strided NumPy array without copying.

        Returns
        -------
        (DataBlock, int)
            The block and the byte offset of `array`'s first element inside it.
        """
        if array.size == 0:
            raise AllocationFailed("Cannot wrap an empty array.")
        owner = owner if owner is not None else array
        if array.ndim == 0:
            array = array.reshape(1)
        itemsize = array.dtype.itemsize
        lo, hi = byte_extent(array.shape, array.strides, itemsize)
        # one-element view at the lowest address, widened to the byte span
        corner = tuple(slice(n - 1, n) if s < 0 else slice(0, 1) for n, s in zip(array.shape, array.strides))
        first = array[corner].reshape(1)
        first = as_strided(first, shape=(1,), strides=(itemsize,), writeable=array.flags.writeable)
        raw = as_strided(first.view(np.uint8), shape=(hi - lo,), strides=(1,), writeable=array.flags.writeable)
        block = cls(raw, release=release, owner=owner, external=True)
        return block, -lo

    # ====[ Reference counting ]====
    def acquire(self) -> None:
        with self._lock:
            if self._raw is None:
                raise AllocationFailed("Data block was already released.")
            self._count += 1

    def release(self) -> None:
        callback = None
        with self._lock:
            if self._count == 0:
                return
            self._count -= 1
            if self._count == 0:
                callback, self._release = self._release, None
                self._raw = None
                self._owner = None
        if callback is not None:
            callback()

    @property
    def share_count(self) -> int:
        return self._count

    @property
    def is_alive(self) -> bool:
        return self._raw is not None

    @property
    def raw(self) -> np.ndarray:
        if self._raw is None:
            raise AllocationFailed("Data block was already released.")
        return self._raw

    @property
    def nbytes(self) -> int:
        return self._nbytes

    @property
    def writeable(self) -> bool:
        return self._raw is not None and bool(self._raw.flags.writeable)

    def __repr__(self) -> str:
        state = "alive" if self.is_alive else "released"
        return f"DataBlock(nbytes={self._nbytes}, refs={self._count}, external={self.external}, {state})"
