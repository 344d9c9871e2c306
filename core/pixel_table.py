# ==================================================
# ==============  MODULE: pixel_table  =============
# ==================================================
from __future__ import annotations

import itertools
import math
from dataclasses import dataclass
from typing import Any, Iterator, List, Optional, Sequence, Tuple, Union

import numpy as np

from core.data_types import DataType
from core.errors import (
    DimensionalityMismatch,
    IndexOutOfRange,
    SizesDontMatch,
    TensorShapeMismatch,
    UnsupportedDataType,
    check_forged,
)
from core.image import Image

# Public API
__all__ = ["PixelRun", "PixelTable", "PixelTableOffsets", "Kernel", "KERNEL_SHAPES"]

KERNEL_SHAPES = ("rectangular", "elliptic", "diamond", "line")


def _round_half_away(x: float) -> int:
    """Round to nearest, halves away from zero (C `round`)."""
    return int(math.floor(x + 0.5)) if x >= 0 else -int(math.floor(-x + 0.5))


def _as_image(image: Any) -> Image:
    return image if isinstance(image, Image) else Image.from_array(np.asarray(image))


@dataclass
class PixelRun:
    """Run of `length` pixels starting at `coordinates`, along the processing dimension."""

    coordinates: Tuple[int, ...]
    length: int


# ==================================================
# ================ CLASS: PixelTable ===============
# ==================================================
class PixelTable:
    """
    Run-length encoded neighborhood.

    Parameters
    ----------
    shape : {"rectangular", "elliptic", "diamond", "line"}
        Neighborhood shape.
    size : sequence of float
        Extent per dimension. For "line" the signs give the direction.
    processing_dimension : int
        Dimension along which runs extend.

    Attributes
    ----------
    runs : list of PixelRun
        Runs in row-major order of their starting coordinates.
    sizes : tuple of int
        Bounding box of the neighborhood.
    origin : tuple of int
        Coordinates of the bounding box corner, relative to the center pixel.
    number_of_pixels : int
        Total number of pixels over all runs.
    weights : np.ndarray or None
        One weight per pixel, in run order.

    Examples
    --------
    >>> pt = PixelTable("elliptic", (10.1, 12.7, 5.3), 1)
    >>> pt.sizes, pt.origin, len(pt.runs), pt.number_of_pixels
    ((11, 13, 5), (-5, -6, -2), 43, 359)
    """

    def __init__(self, shape: str = "elliptic", size: Sequence[float] = (7.0, 7.0), processing_dimension: int = 0):
        size = [float(s) for s in size]
        ndims = len(size)
        if ndims < 1:
            raise DimensionalityMismatch("A pixel table needs at least one dimension.")
        if not 0 <= processing_dimension < ndims:
            raise IndexOutOfRange(f"Processing dimension {processing_dimension} out of range for {ndims} dimensions.")
        self.processing_dimension = int(processing_dimension)
        self.runs: List[PixelRun] = []
        self.weights: Optional[np.ndarray] = None
        self.number_of_pixels = 0

        if shape == "line":
            self._build_line(size)
            return
        if shape not in KERNEL_SHAPES:
            raise ValueError(f"Neighborhood shape name not recognized: '{shape}'.")
        size = [max(1.0, s) for s in size]
        if shape == "rectangular":
            self._build_rectangle(size)
        else:
            self._build_unit_ball(size, l1=(shape == "diamond"))

    # ====[ Construction: shapes ]====
    def _other_dims(self) -> List[int]:
        return [d for d in range(len(self.sizes)) if d != self.processing_dimension]

    def _line_starts(self) -> Iterator[List[int]]:
        """Start coordinates of every line of the bounding box, row-major over the other dimensions."""
        others = self._other_dims()
        ranges = [range(self.origin[d], self.origin[d] + self.sizes[d]) for d in others]
        for values in itertools.product(*ranges):
            cor = list(self.origin)
            for d, v in zip(others, values):
                cor[d] = v
            yield cor

    def _add_run(self, coordinates: Sequence[int], length: int) -> None:
        self.runs.append(PixelRun(tuple(int(c) for c in coordinates), int(length)))
        self.number_of_pixels += int(length)

    def _build_rectangle(self, size: List[float]) -> None:
        self.sizes = tuple(int(s) for s in size)
        self.origin = tuple(-(n // 2) for n in self.sizes)
        length = self.sizes[self.processing_dimension]
        for cor in self._line_starts():
            self._add_run(cor, length)

    def _build_unit_ball(self, size: List[float], l1: bool) -> None:
        pd = self.processing_dimension
        self.sizes = tuple((int(s) // 2) * 2 + 1 for s in size)
        self.origin = tuple(-(n // 2) for n in self.sizes)
        radius = [s / 2 for s in size]
        for cor in self._line_starts():
            if l1:
                distance = sum(abs(cor[d]) / radius[d] for d in self._other_dims())
                if distance > 1.0:
                    continue
                half = int(math.floor(radius[pd] * (1.0 - distance)))
            else:
                distance2 = sum((cor[d] / radius[d]) ** 2 for d in self._other_dims())
                if distance2 > 1.0:
                    continue
                half = int(math.floor(radius[pd] * math.sqrt(1.0 - distance2)))
            cor[pd] = -half
            self._add_run(cor, 2 * half + 1)

    def _build_line(self, size: List[float]) -> None:
        ndims, pd = len(size), self.processing_dimension
        if size[pd] < 0:
            # walk forward along the processing dimension; the pixel set is point-symmetric
            size[:] = [-s for s in size]
        sizes = []
        for d in range(ndims):
            if size[d] < 0:
                size[d] = min(_round_half_away(size[d]) + 1.0, 0.0)
                sizes.append(int(-size[d]) + 1)
            else:
                size[d] = max(_round_half_away(size[d]) - 1.0, 0.0)
                sizes.append(int(size[d]) + 1)
        self.sizes = tuple(sizes)
        self.origin = tuple(-(n // 2) for n in sizes)

        steps = max(sizes) - 1
        if steps < 1:
            self._add_run(self.origin, 1)
            return
        step = [s / steps for s in size]
        # tiny nudge so that exact halves round consistently
        pos = [self.origin[d] + (sizes[d] - 1 if size[d] < 0 else 0) + 1e-8 for d in range(ndims)]
        coords = [_round_half_away(p) for p in pos]
        run_length = 1
        shift: Optional[List[int]] = None
        for _ in range(steps):
            pos = [p + s for p, s in zip(pos, step)]
            rounded = [_round_half_away(p) for p in pos]
            if any(rounded[d] != coords[d] for d in range(ndims) if d != pd):
                self._add_run(coords, run_length)
                coords = rounded
                run_length = 1
            else:
                run_length += 1
            if rounded[pd] == 0:
                shift = [coords[d] if d != pd else 0 for d in range(ndims)]
                if not any(shift):
                    shift = None
        self._add_run(coords, run_length)
        if shift is not None:
            self.shift_origin(shift)

    # ====[ Construction: mask ]====
    @classmethod
    def from_mask(
        cls,
        mask: Any,
        origin: Optional[Sequence[int]] = None,
        processing_dimension: int = 0,
    ) -> "PixelTable":
        """
        Pixel table of the set pixels of a binary scalar image (or boolean array).

        `origin` gives the mask coordinates of the center pixel; by default the
        pixel at `sizes // 2`.
        """
        mask = _as_image(mask)
        check_forged(mask)
        if not mask.is_scalar:
            raise TensorShapeMismatch("Mask image must be scalar.")
        if mask.data_type is not DataType.BIN:
            raise UnsupportedDataType("Mask image must be binary.")
        ndims = mask.ndims
        if ndims < 1:
            raise DimensionalityMismatch("A pixel table needs at least one dimension.")
        if not 0 <= processing_dimension < ndims:
            raise IndexOutOfRange(f"Processing dimension {processing_dimension} out of range for {ndims} dimensions.")
        self = cls.__new__(cls)
        self.processing_dimension = int(processing_dimension)
        self.runs, self.weights, self.number_of_pixels = [], None, 0
        self.sizes = mask.sizes
        if origin is None:
            self.origin = tuple(-(n // 2) for n in self.sizes)
        else:
            if len(origin) != ndims:
                raise DimensionalityMismatch("Origin must have one value per mask dimension.")
            self.origin = tuple(-int(o) for o in origin)

        pd = self.processing_dimension
        data = np.moveaxis(mask.as_array()[..., 0], pd, -1)
        lines = data.reshape(-1, self.sizes[pd])
        others = self._other_dims()
        reduced = [self.sizes[d] for d in others]
        for line_index, line in enumerate(lines):
            if not line.any():
                continue
            position = list(self.origin)
            if reduced:
                for d, c in zip(others, np.unravel_index(line_index, reduced)):
                    position[d] += int(c)
            # run boundaries from the changes of the padded line
            edges = np.flatnonzero(np.diff(np.concatenate(([False], line, [False])).astype(np.int8)))
            for start, stop in zip(edges[::2], edges[1::2]):
                run = list(position)
                run[pd] = self.origin[pd] + int(start)
                self._add_run(run, int(stop - start))
        return self

    # ====[ Queries ]====
    @property
    def dimensionality(self) -> int:
        return len(self.sizes)

    @property
    def has_weights(self) -> bool:
        return self.weights is not None

    def coordinates(self) -> Iterator[Tuple[int, ...]]:
        """Coordinates of every pixel, in run order."""
        pd = self.processing_dimension
        for run in self.runs:
            cor = list(run.coordinates)
            for k in range(run.length):
                cor[pd] = run.coordinates[pd] + k
                yield tuple(cor)

    # ====[ Transformations ]====
    def shift_origin(self, shift: Sequence[int]) -> "PixelTable":
        """Move the center of the neighborhood by `shift` pixels."""
        if len(shift) != self.dimensionality:
            raise DimensionalityMismatch("Shift must have one value per dimension.")
        self.origin = tuple(o - s for o, s in zip(self.origin, shift))
        for run in self.runs:
            run.coordinates = tuple(c - s for c, s in zip(run.coordinates, shift))
        return self

    def mirror(self) -> "PixelTable":
        """Point-mirror the neighborhood through the center pixel."""
        pd = self.processing_dimension
        self.origin = tuple(-(o + n - 1) for o, n in zip(self.origin, self.sizes))
        weights = []
        start = 0
        for run in self.runs:
            cor = [-c for c in run.coordinates]
            cor[pd] -= run.length - 1
            run.coordinates = tuple(cor)
            if self.weights is not None:
                weights.append(self.weights[start:start + run.length][::-1])
            start += run.length
        if self.weights is not None:
            self.weights = np.concatenate(weights) if weights else self.weights
        return self

    # ====[ Images and weights ]====
    def as_image(self) -> Image:
        """Binary mask of the neighborhood, or a DFLOAT image of its weights."""
        out = Image(self.sizes, 1, "dfloat" if self.has_weights else "bin")
        out.fill(0)
        values = out.as_array()[..., 0]
        corner = np.asarray(self.origin)
        for k, cor in enumerate(self.coordinates()):
            values[tuple(np.asarray(cor) - corner)] = self.weights[k] if self.has_weights else True
        return out

    def add_weights(self, image: Any) -> "PixelTable":
        """Take one weight per pixel from a real scalar image with the table's sizes."""
        image = _as_image(image)
        check_forged(image)
        if not image.is_scalar:
            raise TensorShapeMismatch("Weights image must be scalar.")
        if image.sizes != self.sizes:
            raise SizesDontMatch(f"Weights image sizes {image.sizes} differ from {self.sizes}.")
        if not image.data_type.is_real:
            raise UnsupportedDataType("Weights must be real-valued.")
        values = image.as_array()[..., 0]
        corner = np.asarray(self.origin)
        self.weights = np.array(
            [values[tuple(np.asarray(cor) - corner)] for cor in self.coordinates()], dtype=np.float64
        )
        return self

    def add_distance_to_origin_as_weights(self) -> "PixelTable":
        self.weights = np.array(
            [math.sqrt(sum(c * c for c in cor)) for cor in self.coordinates()], dtype=np.float64
        )
        return self

    def offsets(self, image: Image) -> "PixelTableOffsets":
        return PixelTableOffsets(self, image)

    def __repr__(self) -> str:
        return (
            f"PixelTable(sizes={self.sizes}, origin={self.origin}, runs={len(self.runs)}, "
            f"pixels={self.number_of_pixels}, processing_dimension={self.processing_dimension})"
        )


# ==================================================
# ============ CLASS: PixelTableOffsets ============
# ==================================================
class PixelTableOffsets:
    """The runs of a PixelTable as sample offsets into a specific image."""

    def __init__(self, table: PixelTable, image: Image):
        check_forged(image)
        if image.ndims != table.dimensionality:
            raise DimensionalityMismatch("Image and pixel table dimensionality differ.")
        self.sizes = table.sizes
        self.origin = table.origin
        self.number_of_pixels = table.number_of_pixels
        self.processing_dimension = table.processing_dimension
        self.stride = image.stride(table.processing_dimension)
        self.runs: List[Tuple[int, int]] = [
            (image.offset_unchecked(run.coordinates), run.length) for run in table.runs
        ]
        self.weights = table.weights

    def offsets_array(self) -> np.ndarray:
        """Offset of every pixel, in run order."""
        if not self.runs:
            return np.zeros(0, dtype=np.int64)
        return np.concatenate(
            [offset + self.stride * np.arange(length, dtype=np.int64) for offset, length in self.runs]
        )


# ==================================================
# ================== CLASS: Kernel =================
# ==================================================
class Kernel:
    """
    Neighborhood description: a shape name with sizes, or a custom image.

    A binary image gives a flat neighborhood; any other real image gives a
    weighted one, its non-zero pixels forming the neighborhood.

    Examples
    --------
    >>> Kernel("rectangular", 3).boundary(2)
    (1, 1)
    """

    def __init__(self, shape: Union[str, Any] = "elliptic", sizes: Union[float, Sequence[float]] = 7.0):
        self.mirrored = False
        if isinstance(shape, str):
            if shape not in KERNEL_SHAPES:
                raise ValueError(f"Neighborhood shape name not recognized: '{shape}'.")
            self.shape = shape
            self.image: Optional[Image] = None
            self.sizes = sizes
        else:
            self.shape = "custom"
            self.image = _as_image(shape)
            check_forged(self.image)
            if not self.image.is_scalar:
                raise TensorShapeMismatch("Kernel image must be scalar.")
            if self.image.data_type.is_complex:
                raise UnsupportedDataType("Kernel image must be real or binary.")
            self.sizes = self.image.sizes

    @property
    def is_custom(self) -> bool:
        return self.image is not None

    @property
    def has_weights(self) -> bool:
        return self.is_custom and not self.image.data_type.is_binary

    def mirror(self) -> "Kernel":
        self.mirrored = not self.mirrored
        return self

    def _sizes_for(self, ndims: int) -> Tuple[float, ...]:
        if np.isscalar(self.sizes):
            return (float(self.sizes),) * ndims
        sizes = tuple(float(s) for s in self.sizes)
        if len(sizes) == 1:
            return sizes * ndims
        if len(sizes) != ndims:
            raise DimensionalityMismatch(f"Kernel sizes {sizes} do not match {ndims} dimensions.")
        return sizes

    def pixel_table(self, ndims: int, processing_dimension: int = 0) -> PixelTable:
        if self.is_custom:
            if self.image.ndims != ndims:
                raise DimensionalityMismatch(f"Kernel image is {self.image.ndims}-D, image is {ndims}-D.")
            if self.has_weights:
                mask = Image.from_array(self.image.as_array()[..., 0] != 0)
                table = PixelTable.from_mask(mask, processing_dimension=processing_dimension)
                table.add_weights(self.image)
            else:
                table = PixelTable.from_mask(self.image, processing_dimension=processing_dimension)
        else:
            table = PixelTable(self.shape, self._sizes_for(ndims), processing_dimension)
        if self.mirrored:
            table.mirror()
        return table

    def boundary(self, ndims: int) -> Tuple[int, ...]:
        """Border each side of the image needs, per dimension, to hold the neighborhood."""
        table = self.pixel_table(ndims)
        return tuple(max(-o, o + n - 1, 0) for o, n in zip(table.origin, table.sizes))

    def __repr__(self) -> str:
        return f"Kernel(shape={self.shape!r}, sizes={self.sizes}, mirrored={self.mirrored})"
