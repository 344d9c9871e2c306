# ==================================================
# ================  MODULE: errors  ================
# ==================================================
from __future__ import annotations

import operator
from typing import Any, Iterable, Optional, Sequence

# Public API
__all__ = [
    "EngineError",
    "ImageNotForged",
    "ImageNotRaw",
    "ImageProtected",
    "ProtectedImage",
    "InvalidShape",
    "DimensionalityMismatch",
    "DimensionMismatch",
    "SizesDontMatch",
    "UnsupportedDataType",
    "TensorShapeMismatch",
    "IndexOutOfRange",
    "InvalidBoundaryCondition",
    "AllocationFailed",
    "FrameworkError",
    "check_forged",
    "check_raw",
    "check_same_sizes",
    "check_dimension",
]


# ==================================================
# ================ Exception kinds =================
# ==================================================
class EngineError(Exception):
    """Base class of every error raised by the engine."""


class ImageNotForged(EngineError, ValueError):
    """An operation needs pixel data but the image has no data block."""


class ImageNotRaw(EngineError, ValueError):
    """An operation needs a raw image but the image is forged."""


class ImageProtected(EngineError, PermissionError):
    """The image is protected and cannot be stripped or reallocated."""


# alias
ProtectedImage = ImageProtected


class InvalidShape(EngineError, ValueError):
    """A size is zero, negative or larger than the configured maximum."""


class DimensionalityMismatch(EngineError, ValueError):
    """Images or arrays disagree on the number of dimensions."""


class DimensionMismatch(EngineError, ValueError):
    """A dimension index, order or range is inconsistent with the image shape."""


class SizesDontMatch(EngineError, ValueError):
    """Images disagree on the extent along one or more dimensions."""


class UnsupportedDataType(EngineError, TypeError):
    """The data type is outside the category accepted by the operation."""


class TensorShapeMismatch(EngineError, ValueError):
    """The tensor layout does not allow the requested operation."""


class IndexOutOfRange(EngineError, IndexError):
    """A coordinate or index falls outside the valid domain."""


class InvalidBoundaryCondition(EngineError, ValueError):
    """Unknown boundary condition name or one that cannot be applied."""


class AllocationFailed(EngineError, MemoryError):
    """Memory could not be obtained, or an allocator broke its contract."""


class FrameworkError(EngineError, RuntimeError):
    """A line filter or framework setup broke the framework contract."""


# ==================================================
# ============== Validation helpers ================
# ==================================================
def check_forged(*images: Any) -> None:
    """Raise ImageNotForged if any of the images is raw."""
    for img in images:
        if not img.is_forged:
            raise ImageNotForged("Image is not forged.")


def check_raw(image: Any) -> None:
    """Raise ImageNotRaw if the image is forged."""
    if image.is_forged:
        raise ImageNotRaw("Image is forged; strip it first.")


def check_same_sizes(reference: Sequence[int], others: Iterable[Sequence[int]], what: str = "images") -> None:
    """
    Verify that all size tuples are equal to `reference`.

    Raises
    ------
    DimensionalityMismatch
        If the number of dimensions differ.
    SizesDontMatch
        If the dimensionality agrees but an extent differs.
    """
    reference = tuple(reference)
    for sizes in others:
        sizes = tuple(sizes)
        if len(sizes) != len(reference):
            raise DimensionalityMismatch(
                f"Dimensionality of {what} differ: {len(reference)} vs {len(sizes)}."
            )
        if sizes != reference:
            raise SizesDontMatch(f"Sizes of {what} differ: {reference} vs {sizes}.")


def check_dimension(dim: int, ndims: int, name: Optional[str] = None) -> int:
    """Return `dim` if it indexes one of `ndims` dimensions, raise DimensionMismatch otherwise."""
    label = name or "dimension"
    try:
        dim = operator.index(dim)
    except TypeError:
        raise DimensionMismatch(f"Invalid {label} {dim!r}: not an integer.") from None
    if dim < 0 or dim >= ndims:
        raise DimensionMismatch(f"Invalid {label} {dim!r} for an image with {ndims} dimensions.")
    return dim
