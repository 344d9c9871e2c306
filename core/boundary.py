# ==================================================
# ===============  MODULE: boundary  ===============
# ==================================================
from __future__ import annotations

from enum import Enum
from typing import Any, Optional, Sequence, Tuple, Union

import numpy as np

from core.data_types import DataType, DataTypeLike, convert_array
from core.errors import DimensionalityMismatch, IndexOutOfRange, InvalidBoundaryCondition, check_forged
from core.image import Image
from core.saturated import saturated_inv

# Public API
__all__ = [
    "BoundaryCondition",
    "DEFAULT_BOUNDARY_CONDITION",
    "boundary_condition_array",
    "extend_axis",
    "extend_line",
    "extend_image",
]


# ==================================================
# ============= ENUM: BoundaryCondition ============
# ==================================================
class BoundaryCondition(Enum):
    """
    How samples outside the image domain are synthesized.

    Members are identified by the names used in configuration strings:
    "mirror", "asym mirror", "periodic", "asym periodic", "add zeros",
    "add max", "add min", "zero order", "first order", "second order",
    "third order", "already expanded" and "error".
    """

    SYMMETRIC_MIRROR = "mirror"
    ASYMMETRIC_MIRROR = "asym mirror"
    PERIODIC = "periodic"
    ASYMMETRIC_PERIODIC = "asym periodic"
    ADD_ZEROS = "add zeros"
    ADD_MAX_VALUE = "add max"
    ADD_MIN_VALUE = "add min"
    ZERO_ORDER_EXTRAPOLATE = "zero order"
    FIRST_ORDER_EXTRAPOLATE = "first order"
    SECOND_ORDER_EXTRAPOLATE = "second order"
    THIRD_ORDER_EXTRAPOLATE = "third order"
    ALREADY_EXPANDED = "already expanded"
    ERROR = "error"

    @classmethod
    def from_any(cls, value: Union["BoundaryCondition", str, None]) -> "BoundaryCondition":
        """
        Parse a boundary condition name.

        Raises
        ------
        InvalidBoundaryCondition
            For names that are not recognized.
        """
        if isinstance(value, cls):
            return value
        if value is None:
            return DEFAULT_BOUNDARY_CONDITION
        if not isinstance(value, str):
            raise InvalidBoundaryCondition(f"Boundary condition must be a name, got {value!r}.")
        key = value.strip().lower()
        if key in _ALIASES:
            return _ALIASES[key]
        try:
            return cls(key)
        except ValueError:
            raise InvalidBoundaryCondition(f"Boundary condition not recognized: '{value}'.") from None

    @property
    def is_mirror(self) -> bool:
        return self in (BoundaryCondition.SYMMETRIC_MIRROR, BoundaryCondition.ASYMMETRIC_MIRROR)

    @property
    def is_periodic(self) -> bool:
        return self in (BoundaryCondition.PERIODIC, BoundaryCondition.ASYMMETRIC_PERIODIC)

    @property
    def is_asymmetric(self) -> bool:
        return self in (BoundaryCondition.ASYMMETRIC_MIRROR, BoundaryCondition.ASYMMETRIC_PERIODIC)

    @property
    def extrapolation_order(self) -> Optional[int]:
        return _ORDERS.get(self)

    def __str__(self) -> str:
        return self.value


DEFAULT_BOUNDARY_CONDITION = BoundaryCondition.SYMMETRIC_MIRROR

_ALIASES = {
    "": DEFAULT_BOUNDARY_CONDITION,
    "default": DEFAULT_BOUNDARY_CONDITION,
    "symmetric mirror": BoundaryCondition.SYMMETRIC_MIRROR,
    "asymmetric mirror": BoundaryCondition.ASYMMETRIC_MIRROR,
    "asymmetric periodic": BoundaryCondition.ASYMMETRIC_PERIODIC,
    "add max value": BoundaryCondition.ADD_MAX_VALUE,
    "add min value": BoundaryCondition.ADD_MIN_VALUE,
}

_ORDERS = {
    BoundaryCondition.FIRST_ORDER_EXTRAPOLATE: 1,
    BoundaryCondition.SECOND_ORDER_EXTRAPOLATE: 2,
    BoundaryCondition.THIRD_ORDER_EXTRAPOLATE: 3,
}

BoundaryConditionLike = Union[BoundaryCondition, str, None]


def boundary_condition_array(
    conditions: Union[BoundaryConditionLike, Sequence[BoundaryConditionLike]], ndims: int
) -> Tuple[BoundaryCondition, ...]:
    """
    One boundary condition per dimension.

    An empty or missing value gives the default everywhere, a single value is
    repeated for every dimension.

    Raises
    ------
    InvalidBoundaryCondition
        If the number of conditions is neither 0, 1 nor `ndims`, or a name is unknown.
    """
    if conditions is None or isinstance(conditions, (str, BoundaryCondition)):
        conditions = [conditions]
    conditions = [BoundaryCondition.from_any(c) for c in conditions]
    if not conditions:
        return (DEFAULT_BOUNDARY_CONDITION,) * ndims
    if len(conditions) == 1:
        return tuple(conditions) * ndims
    if len(conditions) != ndims:
        raise InvalidBoundaryCondition(
            f"Got {len(conditions)} boundary conditions for {ndims} dimensions."
        )
    return tuple(conditions)


# ==================================================
# =============== Border synthesis =================
# ==================================================
def _positions(length: int, border: int) -> np.ndarray:
    """Out-of-domain positions: the left border followed by the right one."""
    return np.concatenate((np.arange(-border, 0), np.arange(length, length + border)))


def _source_indices(length: int, border: int, condition: BoundaryCondition) -> Tuple[np.ndarray, np.ndarray]:
    """In-domain index read for every out-of-domain position, and whether its sign flips."""
    pos = _positions(length, border)
    if condition.is_mirror:
        j = pos % (2 * length)
        index = np.where(j >= length, 2 * length - 1 - j, j)
    elif condition.is_periodic:
        index = pos % length
    else:
        index = np.clip(pos, 0, length - 1)
    negate = (pos // length) % 2 != 0 if condition.is_asymmetric else np.zeros(pos.shape, dtype=bool)
    return index, negate


def _extrapolate(interior: np.ndarray, border: int, order: int, data_type: DataType) -> np.ndarray:
    """Polynomial through the `order + 1` samples nearest to each edge, evaluated in the border."""
    length = interior.shape[0]
    order = min(order, length - 1)
    flat = interior.reshape(length, -1)
    if not data_type.is_complex:
        flat = flat.astype(np.float64)
    x = np.arange(order + 1, dtype=np.float64)
    left = np.linalg.solve(np.vander(x, order + 1), flat[: order + 1])
    right = np.linalg.solve(np.vander(x, order + 1), flat[length - order - 1:])
    values = np.concatenate((
        np.vander(np.arange(-border, 0, dtype=np.float64), order + 1) @ left,
        np.vander(np.arange(order + 1, order + 1 + border, dtype=np.float64), order + 1) @ right,
    ))
    return convert_array(values.reshape((2 * border,) + interior.shape[1:]), data_type)


def extend_axis(
    array: np.ndarray,
    axis: int,
    border: int,
    condition: BoundaryConditionLike,
    data_type: Optional[DataTypeLike] = None,
) -> np.ndarray:
    """
    Fill, in place, the `border` samples at both ends of `array` along `axis`.

    The samples in between (length `array.shape[axis] - 2 * border`) are the
    image data and must already be in place.

    Raises
    ------
    IndexOutOfRange
        For the "error" condition when a border is requested.
    InvalidBoundaryCondition
        For "already expanded", which cannot synthesize samples.
    """
    condition = BoundaryCondition.from_any(condition)
    border = int(border)
    if border <= 0:
        return array
    if condition is BoundaryCondition.ERROR:
        raise IndexOutOfRange("Boundary condition 'error': samples outside the image were requested.")
    if condition is BoundaryCondition.ALREADY_EXPANDED:
        raise InvalidBoundaryCondition("Boundary condition 'already expanded' cannot fill a border.")
    dt = DataType.from_any(data_type) if data_type is not None else DataType.from_numpy(array.dtype)

    view = np.moveaxis(array, axis, 0)
    length = view.shape[0] - 2 * border
    if length < 1:
        raise IndexOutOfRange("No image samples to extend from.")
    interior = view[border:border + length]
    left, right = view[:border], view[border + length:]

    if condition is BoundaryCondition.ADD_ZEROS:
        left[...] = right[...] = 0
        return array
    if condition in (BoundaryCondition.ADD_MAX_VALUE, BoundaryCondition.ADD_MIN_VALUE):
        value = dt.max_value if condition is BoundaryCondition.ADD_MAX_VALUE else dt.min_value
        left[...] = right[...] = convert_array(value, dt)
        return array

    order = condition.extrapolation_order
    if order is not None:
        values = _extrapolate(interior, border, order, dt)
    else:
        index, negate = _source_indices(length, border, condition)
        values = interior[index]
        if negate.any():
            values[negate] = saturated_inv(values[negate], dt)
    left[...] = values[:border]
    right[...] = values[border:]
    return array


def extend_line(
    buffer: np.ndarray,
    border: int,
    condition: BoundaryConditionLike,
    data_type: Optional[DataTypeLike] = None,
) -> np.ndarray:
    """Fill the borders of a line buffer (samples along axis 0, tensor elements along axis 1)."""
    return extend_axis(buffer, 0, border, condition, data_type)


def extend_image(
    image: Image,
    border: Union[int, Sequence[int]],
    conditions: Any = None,
) -> Image:
    """
    New image grown by `border` pixels at both sides of every dimension.

    The borders are filled one dimension after the other, so corners are
    synthesized from already extended borders.

    Examples
    --------
    >>> img = Image.from_array(np.arange(3.0))
    >>> extend_image(img, 2, "periodic").as_array()[:, 0]
    array([1., 2., 0., 1., 2., 0., 1.])
    """
    check_forged(image)
    ndims = image.ndims
    border = [int(border)] * ndims if np.isscalar(border) else [int(b) for b in border]
    if len(border) != ndims:
        raise DimensionalityMismatch(f"Got {len(border)} border widths for {ndims} dimensions.")
    conditions = boundary_condition_array(conditions, ndims)
    out = Image(tuple(n + 2 * b for n, b in zip(image.sizes, border)), image.tensor, image.data_type)
    image.copy(into=out.crop(image.sizes, "center"))
    values = out.as_array()
    for d in range(ndims):
        extend_axis(values, d, border[d], conditions[d], image.data_type)
    return out
