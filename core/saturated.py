# ==================================================
# ===============  MODULE: saturated  ==============
# ==================================================
from __future__ import annotations

from typing import Any

import numpy as np

from core.data_types import DataType, DataTypeLike, convert_array

# Public API
__all__ = ["saturated_add", "saturated_sub", "saturated_mul", "saturated_div", "saturated_inv"]


# ====[ Internal helpers ]====
def _wide(values: Any, data_type: DataType) -> np.ndarray:
    """Promote to a type where the operation cannot overflow."""
    arr = np.asarray(values)
    if data_type.is_integer:
        return arr.astype(np.int64)
    return arr.astype(data_type.numpy_dtype)


def _as_bool(values: Any) -> np.ndarray:
    return np.asarray(values) != 0


# ====[ Arithmetic ]====
def saturated_add(lhs: Any, rhs: Any, data_type: DataTypeLike) -> np.ndarray:
    """Add in `data_type`, clamping integer results. For binary, this is logical or."""
    dt = DataType.from_any(data_type)
    if dt.is_binary:
        return _as_bool(lhs) | _as_bool(rhs)
    return convert_array(_wide(lhs, dt) + _wide(rhs, dt), dt)


def saturated_sub(lhs: Any, rhs: Any, data_type: DataTypeLike) -> np.ndarray:
    """Subtract in `data_type`, clamping integer results. For binary, `lhs and not rhs`."""
    dt = DataType.from_any(data_type)
    if dt.is_binary:
        return _as_bool(lhs) & ~_as_bool(rhs)
    return convert_array(_wide(lhs, dt) - _wide(rhs, dt), dt)


def saturated_mul(lhs: Any, rhs: Any, data_type: DataTypeLike) -> np.ndarray:
    """Multiply in `data_type`, clamping integer results. For binary, logical and."""
    dt = DataType.from_any(data_type)
    if dt.is_binary:
        return _as_bool(lhs) & _as_bool(rhs)
    # uint32 * uint32 may exceed int64; go through float64 for the widest case
    if dt in (DataType.UINT32, DataType.SINT32):
        return convert_array(np.asarray(lhs, dtype=np.float64) * np.asarray(rhs, dtype=np.float64), dt)
    return convert_array(_wide(lhs, dt) * _wide(rhs, dt), dt)


def saturated_div(lhs: Any, rhs: Any, data_type: DataTypeLike) -> np.ndarray:
    """
    Divide in `data_type`.

    Integer division truncates toward zero like a C cast; division by zero
    saturates to the type's extreme with the sign of the numerator (0 / 0 gives 0).
    For binary, this is logical xor.
    """
    dt = DataType.from_any(data_type)
    if dt.is_binary:
        return _as_bool(lhs) ^ _as_bool(rhs)
    if not dt.is_integer:
        with np.errstate(divide="ignore", invalid="ignore"):
            return (_wide(lhs, dt) / _wide(rhs, dt)).astype(dt.numpy_dtype)
    num, den = np.broadcast_arrays(_wide(lhs, dt), _wide(rhs, dt))
    out = np.zeros(num.shape, dtype=np.float64)
    nonzero = den != 0
    out[nonzero] = np.trunc(num[nonzero] / den[nonzero])
    out[~nonzero & (num > 0)] = dt.max_value
    out[~nonzero & (num < 0)] = dt.min_value
    return convert_array(out, dt)


def saturated_inv(values: Any, data_type: DataTypeLike) -> np.ndarray:
    """Negate; unsigned types clamp to 0 and binary becomes logical not."""
    dt = DataType.from_any(data_type)
    if dt.is_binary:
        return ~_as_bool(values)
    return convert_array(-_wide(values, dt), dt)
