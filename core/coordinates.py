# ==================================================
# ==============  MODULE: coordinates  =============
# ==================================================
from __future__ import annotations

import operator
from dataclasses import dataclass
from typing import List, Sequence, Tuple, Union

import numpy as np

from core.errors import DimensionalityMismatch, IndexOutOfRange

# Public API
__all__ = [
    "Range",
    "to_range",
    "CoordinatesComputer",
    "offset_of",
    "index_of",
    "index_to_coordinates",
    "number_of_lines",
    "line_coordinates",
    "line_offsets",
    "optimal_processing_dim",
]


# ==================================================
# ================== CLASS: Range ==================
# ==================================================
@dataclass
class Range:
    """
    Inclusive index range `{start, stop, step}` along one dimension.

    Negative `start` / `stop` count from the end (-1 is the last pixel).
    When `start > stop` the range walks backwards. `step` must be positive.

    Examples
    --------
    >>> Range(1, -2).fix(6)
    Range(start=1, stop=4, step=1)
    >>> Range(5, 0, 2).fix(6).size
    3
    """

    start: int = 0
    stop: int = -1
    step: int = 1

    @classmethod
    def single(cls, index: int) -> "Range":
        return cls(index, index, 1)

    def fix(self, size: int) -> "Range":
        """Resolve negative bounds for a dimension of `size` pixels and check them."""
        if self.step < 1:
            raise IndexOutOfRange(f"Range step must be positive, got {self.step}.")
        start = self.start + size if self.start < 0 else self.start
        stop = self.stop + size if self.stop < 0 else self.stop
        if not (0 <= start < size and 0 <= stop < size):
            raise IndexOutOfRange(f"Range {self.start}:{self.stop} out of bounds for size {size}.")
        n = abs(stop - start) // self.step
        stop = start + n * self.step if stop >= start else start - n * self.step
        return Range(start, stop, self.step)

    @property
    def size(self) -> int:
        return abs(self.stop - self.start) // self.step + 1

    @property
    def offset(self) -> int:
        return self.start

    @property
    def signed_step(self) -> int:
        return -self.step if self.start > self.stop else self.step


RangeLike = Union[Range, slice, int]


def to_range(index: RangeLike, size: int) -> Range:
    """
    Normalise an `int`, a Python `slice` or a `Range` to a fixed Range.

    Integers select one pixel (the dimension is kept with size 1); slices follow
    Python semantics (exclusive stop, negative steps allowed).
    """
    if isinstance(index, Range):
        return index.fix(size)
    if isinstance(index, slice):
        start, stop, step = index.indices(size)
        count = len(range(start, stop, step))
        if count == 0:
            raise IndexOutOfRange(f"Slice {index} selects no pixels of a dimension of size {size}.")
        return Range(start, start + (count - 1) * step, abs(step)).fix(size)
    try:
        i = operator.index(index)
    except TypeError:
        raise IndexOutOfRange(f"Invalid index {index!r}.") from None
    return Range.single(i).fix(size)


# ==================================================
# ========== CLASS: CoordinatesComputer ============
# ==================================================
class CoordinatesComputer:
    """
    Convert a sample offset back to coordinates for arbitrary (negative, zero) strides.

    Dimensions are visited from the largest absolute stride to the smallest,
    taking as many whole strides as fit; a negative stride counts backwards
    from the far end of its dimension, and a zero stride always gives 0.
    """

    def __init__(self, sizes: Sequence[int], strides: Sequence[int]):
        if len(sizes) != len(strides):
            raise DimensionalityMismatch("Sizes and strides must have the same length.")
        self.sizes = tuple(int(s) for s in sizes)
        self.strides = tuple(int(s) for s in strides)
        self.shift = sum(-s * (n - 1) for n, s in zip(self.sizes, self.strides) if s < 0)
        self.order = sorted(
            (d for d, s in enumerate(self.strides) if s != 0),
            key=lambda d: abs(self.strides[d]),
            reverse=True,
        )

    def __call__(self, offset: int) -> Tuple[int, ...]:
        rest = int(offset) + self.shift
        coords = [0] * len(self.sizes)
        for d in self.order:
            step = abs(self.strides[d])
            k = rest // step
            rest -= k * step
            coords[d] = self.sizes[d] - 1 - k if self.strides[d] < 0 else k
        if rest != 0 or any(not 0 <= c < n for c, n in zip(coords, self.sizes)):
            raise IndexOutOfRange(f"Offset {offset} does not address a pixel of this layout.")
        return tuple(coords)


# ==================================================
# ============ Offsets and linear indices ==========
# ==================================================
def _check_coordinates(coords: Sequence[int], sizes: Sequence[int]) -> Tuple[int, ...]:
    coords = tuple(int(c) for c in coords)
    if len(coords) != len(sizes):
        raise DimensionalityMismatch(f"Expected {len(sizes)} coordinates, got {len(coords)}.")
    for c, n in zip(coords, sizes):
        if not 0 <= c < n:
            raise IndexOutOfRange(f"Coordinates {coords} out of range for sizes {tuple(sizes)}.")
    return coords


def offset_of(coords: Sequence[int], strides: Sequence[int], sizes: Sequence[int] = None) -> int:
    """Sample offset of `coords`; bounds are checked when `sizes` is given."""
    if sizes is not None:
        coords = _check_coordinates(coords, sizes)
    elif len(coords) != len(strides):
        raise DimensionalityMismatch(f"Expected {len(strides)} coordinates, got {len(coords)}.")
    return int(sum(int(c) * int(s) for c, s in zip(coords, strides)))


def index_of(coords: Sequence[int], sizes: Sequence[int]) -> int:
    """Row-major linear index of `coords` (last dimension fastest)."""
    coords = _check_coordinates(coords, sizes)
    index = 0
    for c, n in zip(coords, sizes):
        index = index * n + c
    return index


def index_to_coordinates(index: int, sizes: Sequence[int]) -> Tuple[int, ...]:
    total = int(np.prod(sizes, dtype=np.int64)) if len(sizes) else 1
    if not 0 <= index < total:
        raise IndexOutOfRange(f"Index {index} out of range for {total} pixels.")
    coords: List[int] = []
    for n in reversed(tuple(sizes)):
        index, c = divmod(index, n)
        coords.append(c)
    return tuple(reversed(coords))


# ==================================================
# ================= Line iteration =================
# ==================================================
def _reduced_sizes(sizes: Sequence[int], proc_dim: int) -> Tuple[int, ...]:
    return tuple(n for d, n in enumerate(sizes) if d != proc_dim)


def number_of_lines(sizes: Sequence[int], proc_dim: int) -> int:
    reduced = _reduced_sizes(sizes, proc_dim)
    return int(np.prod(reduced, dtype=np.int64)) if reduced else 1


def line_coordinates(sizes: Sequence[int], proc_dim: int, first: int, stop: int) -> np.ndarray:
    """
    Coordinates of the first pixel of lines `first..stop-1` along `proc_dim`.

    Lines are numbered in row-major order over the other dimensions.

    Returns
    -------
    np.ndarray
        Integer array of shape (stop - first, ndims); column `proc_dim` is 0.
    """
    ndims = len(sizes)
    out = np.zeros((stop - first, ndims), dtype=np.int64)
    reduced = _reduced_sizes(sizes, proc_dim)
    if reduced and stop > first:
        others = np.unravel_index(np.arange(first, stop, dtype=np.int64), reduced)
        cols = [d for d in range(ndims) if d != proc_dim]
        for col, values in zip(cols, others):
            out[:, col] = values
    return out


def line_offsets(coords: np.ndarray, strides: Sequence[int]) -> np.ndarray:
    """Sample offsets of the given line start coordinates for a view with `strides`."""
    if coords.shape[1] == 0:
        return np.zeros(coords.shape[0], dtype=np.int64)
    return coords @ np.asarray(strides, dtype=np.int64)


def optimal_processing_dim(sizes: Sequence[int], strides: Sequence[int] = None, small: int = 63) -> int:
    """
    Dimension to process lines along.

    Prefers the dimension with the smallest absolute stride, unless it is much
    shorter than the longest dimension; lines shorter than `small` pixels are
    avoided when a longer dimension exists.
    """
    ndims = len(sizes)
    if ndims == 0:
        return 0
    if strides is None:
        strides = [0] * ndims
        acc = 1
        for d in reversed(range(ndims)):
            strides[d] = acc
            acc *= sizes[d]
    candidates = [d for d in range(ndims) if sizes[d] > 1] or list(range(ndims))
    best = min(candidates, key=lambda d: (abs(strides[d]) if strides[d] else np.inf, -sizes[d]))
    longest = max(candidates, key=lambda d: sizes[d])
    if sizes[best] < small and sizes[longest] > sizes[best] * 4:
        return longest
    return best
