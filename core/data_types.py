# ==================================================
# ===============  MODULE: data_types  =============
# ==================================================
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Any, Callable, Dict, FrozenSet, Iterator, Mapping, Optional, Union

import numpy as np

from core.errors import UnsupportedDataType

# Public API
__all__ = [
    "DataType",
    "DataTypeSet",
    "DataTypeLike",
    "Overload",
    "overload",
    "convert_array",
    "suggest_integer",
    "suggest_signed",
    "suggest_float",
    "suggest_double",
    "suggest_complex",
    "suggest_flex",
    "suggest_real",
    "suggest_arithmetic",
    "suggest_dyadic_operation",
]


# ==================================================
# ============ Per-type static description =========
# ==================================================
@dataclass(frozen=True)
class _TypeInfo:
    name: str
    dtype: np.dtype
    kind: str  # 'b' binary, 'u' unsigned, 'i' signed, 'f' float, 'c' complex


class DataType(Enum):
    """
    Closed enumeration of the sample types an image can hold.

    The set is fixed: every generic operation is resolved against exactly these
    eleven members, so a dispatch table built over a category is exhaustive.
    """

    BIN = "bin"
    UINT8 = "uint8"
    SINT8 = "sint8"
    UINT16 = "uint16"
    SINT16 = "sint16"
    UINT32 = "uint32"
    SINT32 = "sint32"
    SFLOAT = "sfloat"
    DFLOAT = "dfloat"
    SCOMPLEX = "scomplex"
    DCOMPLEX = "dcomplex"

    # ====[ Static properties ]====
    @property
    def info(self) -> _TypeInfo:
        return _TYPE_INFO[self]

    @property
    def numpy_dtype(self) -> np.dtype:
        """NumPy dtype used to store samples of this type."""
        return _TYPE_INFO[self].dtype

    @property
    def size_of(self) -> int:
        """Number of bytes per sample."""
        return int(_TYPE_INFO[self].dtype.itemsize)

    @property
    def is_binary(self) -> bool:
        return _TYPE_INFO[self].kind == "b"

    @property
    def is_unsigned(self) -> bool:
        return _TYPE_INFO[self].kind == "u"

    @property
    def is_signed(self) -> bool:
        return _TYPE_INFO[self].kind in ("i", "f", "c")

    @property
    def is_integer(self) -> bool:
        return _TYPE_INFO[self].kind in ("u", "i")

    @property
    def is_float(self) -> bool:
        return _TYPE_INFO[self].kind == "f"

    @property
    def is_complex(self) -> bool:
        return _TYPE_INFO[self].kind == "c"

    @property
    def is_real(self) -> bool:
        """Integer or floating-point (binary and complex are not real)."""
        return _TYPE_INFO[self].kind in ("u", "i", "f")

    @property
    def is_flex(self) -> bool:
        return _TYPE_INFO[self].kind in ("f", "c")

    @property
    def min_value(self) -> Union[int, float]:
        """Smallest representable value (for complex types: of each component)."""
        kind = _TYPE_INFO[self].kind
        if kind == "b":
            return 0
        if kind in ("u", "i"):
            return int(np.iinfo(self.numpy_dtype).min)
        return float(np.finfo(self.real_type().numpy_dtype).min)

    @property
    def max_value(self) -> Union[int, float]:
        """Largest representable value (for complex types: of each component)."""
        kind = _TYPE_INFO[self].kind
        if kind == "b":
            return 1
        if kind in ("u", "i"):
            return int(np.iinfo(self.numpy_dtype).max)
        return float(np.finfo(self.real_type().numpy_dtype).max)

    def real_type(self) -> "DataType":
        """Type of the real/imaginary component; identity for non-complex types."""
        if self is DataType.SCOMPLEX:
            return DataType.SFLOAT
        if self is DataType.DCOMPLEX:
            return DataType.DFLOAT
        return self

    def complex_type(self) -> "DataType":
        """Complex type with the same precision; integers map through `suggest_float`."""
        if self.is_complex:
            return self
        return DataType.DCOMPLEX if suggest_float(self) is DataType.DFLOAT else DataType.SCOMPLEX

    # ====[ Conversions ]====
    @classmethod
    def from_numpy(cls, dtype: Any) -> "DataType":
        """
        Map a NumPy dtype (or anything `np.dtype` accepts) to a DataType.

        Raises
        ------
        UnsupportedDataType
            If the dtype has no counterpart (e.g. int64, float16, strings).
        """
        try:
            key = np.dtype(dtype)
        except TypeError as e:
            raise UnsupportedDataType(f"Not a numeric dtype: {dtype!r}") from e
        for dt, info in _TYPE_INFO.items():
            if info.dtype == key:
                return dt
        raise UnsupportedDataType(f"NumPy dtype '{key}' has no matching sample type.")

    @classmethod
    def from_any(cls, value: "DataTypeLike") -> "DataType":
        """Accept a DataType, one of its names ('sfloat', 'SFLOAT') or a NumPy dtype."""
        if isinstance(value, DataType):
            return value
        if isinstance(value, str):
            key = value.strip().lower()
            if key in _ALIASES:
                return _ALIASES[key]
        return cls.from_numpy(value)

    def __str__(self) -> str:
        return self.value


DataTypeLike = Union[DataType, str, np.dtype, type]

_TYPE_INFO: Dict[DataType, _TypeInfo] = {
    DataType.BIN: _TypeInfo("bin", np.dtype(np.bool_), "b"),
    DataType.UINT8: _TypeInfo("uint8", np.dtype(np.uint8), "u"),
    DataType.SINT8: _TypeInfo("sint8", np.dtype(np.int8), "i"),
    DataType.UINT16: _TypeInfo("uint16", np.dtype(np.uint16), "u"),
    DataType.SINT16: _TypeInfo("sint16", np.dtype(np.int16), "i"),
    DataType.UINT32: _TypeInfo("uint32", np.dtype(np.uint32), "u"),
    DataType.SINT32: _TypeInfo("sint32", np.dtype(np.int32), "i"),
    DataType.SFLOAT: _TypeInfo("sfloat", np.dtype(np.float32), "f"),
    DataType.DFLOAT: _TypeInfo("dfloat", np.dtype(np.float64), "f"),
    DataType.SCOMPLEX: _TypeInfo("scomplex", np.dtype(np.complex64), "c"),
    DataType.DCOMPLEX: _TypeInfo("dcomplex", np.dtype(np.complex128), "c"),
}

_NUMPY_TO_TYPE: Dict[np.dtype, DataType] = {info.dtype: dt for dt, info in _TYPE_INFO.items()}

_ALIASES: Dict[str, DataType] = {dt.value: dt for dt in DataType}
_ALIASES.update({
    "bool": DataType.BIN, "binary": DataType.BIN,
    "int8": DataType.SINT8, "int16": DataType.SINT16, "int32": DataType.SINT32,
    "single": DataType.SFLOAT, "float32": DataType.SFLOAT,
    "double": DataType.DFLOAT, "float64": DataType.DFLOAT, "float": DataType.DFLOAT,
    "complex64": DataType.SCOMPLEX, "complex128": DataType.DCOMPLEX, "complex": DataType.DCOMPLEX,
})


# ==================================================
# ================ Type categories =================
# ==================================================
class DataTypeSet(Enum):
    """Named categories used to declare which sample types an operation accepts."""

    ALL = "all"
    REAL = "real"
    NON_COMPLEX = "non_complex"
    COMPLEX = "complex"
    UNSIGNED = "unsigned"
    SIGNED = "signed"
    INTEGER = "integer"
    FLOAT = "float"
    FLEX = "flex"
    BINARY = "binary"

    @property
    def members(self) -> FrozenSet[DataType]:
        return _CATEGORY_MEMBERS[self]

    def __contains__(self, item: object) -> bool:
        return isinstance(item, DataType) and item in _CATEGORY_MEMBERS[self]

    def __iter__(self) -> Iterator[DataType]:
        # keep enumeration order stable
        return (dt for dt in DataType if dt in _CATEGORY_MEMBERS[self])


_CATEGORY_MEMBERS: Dict[DataTypeSet, FrozenSet[DataType]] = {
    DataTypeSet.ALL: frozenset(DataType),
    DataTypeSet.REAL: frozenset(dt for dt in DataType if dt.is_real),
    DataTypeSet.NON_COMPLEX: frozenset(dt for dt in DataType if not dt.is_complex),
    DataTypeSet.COMPLEX: frozenset(dt for dt in DataType if dt.is_complex),
    DataTypeSet.UNSIGNED: frozenset(dt for dt in DataType if dt.is_unsigned),
    DataTypeSet.SIGNED: frozenset(dt for dt in DataType if dt.is_signed),
    DataTypeSet.INTEGER: frozenset(dt for dt in DataType if dt.is_integer),
    DataTypeSet.FLOAT: frozenset(dt for dt in DataType if dt.is_float),
    DataTypeSet.FLEX: frozenset(dt for dt in DataType if dt.is_flex),
    DataTypeSet.BINARY: frozenset({DataType.BIN}),
}


# ==================================================
# ================ Generic dispatch ================
# ==================================================
class Overload:
    """
    Dispatch table selecting one implementation per data type of a category.

    The table is filled once, at construction or through `register`, and never
    consulted for types outside its category: calling it with such a type raises
    `UnsupportedDataType` before the implementation (and thus any buffer) is touched.

    Parameters
    ----------
    name : str
        Label used in error messages.
    category : DataTypeSet
        Accepted data types.
    generic : callable, optional
        `generic(data_type, *args, **kwargs)`; bound once per member of `category`.
    implementations : mapping, optional
        Explicit per-type implementations, overriding `generic`.
    """

    def __init__(
        self,
        name: str,
        category: DataTypeSet = DataTypeSet.ALL,
        generic: Optional[Callable[..., Any]] = None,
        implementations: Optional[Mapping[DataType, Callable[..., Any]]] = None,
    ) -> None:
        self.name = name
        self.category = category
        self._table: Dict[DataType, Callable[..., Any]] = {}
        if generic is not None:
            for dt in category:
                self._table[dt] = partial(generic, dt)
        for dt, impl in (implementations or {}).items():
            self._check(dt)
            self._table[dt] = impl

    def _check(self, data_type: DataType) -> DataType:
        if data_type not in self.category:
            raise UnsupportedDataType(
                f"'{self.name}' does not support data type '{data_type}' "
                f"(accepts: {self.category.value})."
            )
        return data_type

    def register(self, *data_types: DataType) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Decorator registering a specialised implementation for the given types."""
        def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
            for dt in data_types:
                self._table[self._check(dt)] = func
            return func
        return decorator

    def resolve(self, data_type: DataTypeLike) -> Callable[..., Any]:
        """Return the implementation for `data_type`."""
        dt = self._check(DataType.from_any(data_type))
        try:
            return self._table[dt]
        except KeyError:
            raise UnsupportedDataType(f"'{self.name}' has no implementation for '{dt}'.") from None

    def __call__(self, data_type: DataTypeLike, *args: Any, **kwargs: Any) -> Any:
        return self.resolve(data_type)(*args, **kwargs)

    def supported(self) -> FrozenSet[DataType]:
        return frozenset(self._table)


def overload(category: DataTypeSet = DataTypeSet.ALL) -> Callable[[Callable[..., Any]], Overload]:
    """
    Turn `func(data_type, *args)` into an `Overload` over `category`.

    Examples
    --------
    >>> @overload(DataTypeSet.REAL)
    ... def maximum(data_type, values):
    ...     return int(values.max())
    >>> maximum(DataType.UINT8, np.arange(3, dtype=np.uint8))
    2
    """
    def decorator(func: Callable[..., Any]) -> Overload:
        return Overload(func.__name__, category, generic=func)
    return decorator


# ==================================================
# ============= Saturating conversion ==============
# ==================================================
def convert_array(values: Any, data_type: DataTypeLike) -> np.ndarray:
    """
    Cast `values` to `data_type`, saturating instead of wrapping around.

    Rules
    -----
    - complex → non-complex: the magnitude is used.
    - anything → binary: non-zero is True.
    - float → integer: rounded to nearest, NaN becomes 0, then clamped.
    - integer → integer: clamped to the target range.
    - double → single precision: clamped to the finite single range.

    Returns
    -------
    np.ndarray
        New array of the target dtype (never a view of `values`).
    """
    target = DataType.from_any(data_type)
    src = np.asarray(values)
    dtype = target.numpy_dtype

    if target.is_complex:
        return src.astype(dtype, copy=True)
    if np.iscomplexobj(src):
        src = np.abs(src)
    if target.is_binary:
        return src != 0
    if target.is_float:
        if src.dtype.kind == "f" and src.dtype.itemsize > dtype.itemsize:
            limit = np.finfo(dtype).max
            src = np.clip(src, -limit, limit)
        return src.astype(dtype, copy=True)

    # integer target
    lo, hi = target.min_value, target.max_value
    if src.dtype.kind == "f":
        wide = src.astype(np.float64)
        rounded = np.rint(np.nan_to_num(wide, nan=0.0, posinf=hi, neginf=lo))
        return np.clip(rounded, lo, hi).astype(dtype)
    if src.dtype.kind == "b":
        return src.astype(dtype)
    return np.clip(src.astype(np.int64), lo, hi).astype(dtype)


# ==================================================
# ============= Type suggestion helpers ============
# ==================================================
def suggest_integer(data_type: DataTypeLike) -> DataType:
    dt = DataType.from_any(data_type)
    if dt.is_binary:
        return DataType.UINT8
    if dt.is_integer:
        return dt
    return DataType.SINT32


def suggest_signed(data_type: DataTypeLike) -> DataType:
    dt = DataType.from_any(data_type)
    return {
        DataType.BIN: DataType.SINT8,
        DataType.UINT8: DataType.SINT16,
        DataType.UINT16: DataType.SINT32,
        DataType.UINT32: DataType.DFLOAT,
    }.get(dt, dt)


def suggest_float(data_type: DataTypeLike) -> DataType:
    """Floating-point type able to hold the values of `data_type` without much loss."""
    dt = DataType.from_any(data_type)
    if dt in (DataType.UINT32, DataType.SINT32, DataType.DFLOAT, DataType.DCOMPLEX):
        return DataType.DFLOAT
    return DataType.SFLOAT


def suggest_double(data_type: DataTypeLike) -> DataType:
    dt = DataType.from_any(data_type)
    return DataType.DCOMPLEX if dt.is_complex else DataType.DFLOAT


def suggest_complex(data_type: DataTypeLike) -> DataType:
    return DataType.from_any(data_type).complex_type()


def suggest_flex(data_type: DataTypeLike) -> DataType:
    """Complex types are kept, everything else goes through `suggest_float`."""
    dt = DataType.from_any(data_type)
    return dt if dt.is_complex else suggest_float(dt)


def suggest_real(data_type: DataTypeLike) -> DataType:
    dt = DataType.from_any(data_type)
    if dt.is_complex:
        return dt.real_type()
    if dt.is_binary:
        return DataType.UINT8
    return dt


def suggest_arithmetic(type1: DataTypeLike, type2: DataTypeLike) -> DataType:
    """Flex type suitable for arithmetic between samples of the two types."""
    a, b = suggest_flex(type1), suggest_flex(type2)
    double = DataType.DCOMPLEX in (a, b) or DataType.DFLOAT in (a, b)
    if a.is_complex or b.is_complex:
        return DataType.DCOMPLEX if double else DataType.SCOMPLEX
    return DataType.DFLOAT if double else DataType.SFLOAT


def suggest_dyadic_operation(type1: DataTypeLike, type2: DataTypeLike) -> DataType:
    """Smallest type that represents both inputs; falls back to DFLOAT when none of ours does."""
    a, b = DataType.from_any(type1), DataType.from_any(type2)
    if a is b:
        return a
    if a.is_flex or b.is_flex:
        return suggest_arithmetic(a, b)
    promoted = np.promote_types(a.numpy_dtype, b.numpy_dtype)
    return _NUMPY_TO_TYPE.get(promoted, DataType.DFLOAT)
