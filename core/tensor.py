# ==================================================
# =================  MODULE: tensor  ===============
# ==================================================
from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import List, Sequence, Tuple

from core.errors import IndexOutOfRange, TensorShapeMismatch

# Public API
__all__ = ["TensorShape", "Tensor"]


class TensorShape(Enum):
    """How the samples of one pixel are organised."""

    COL_VECTOR = "column vector"
    ROW_VECTOR = "row vector"
    COL_MAJOR_MATRIX = "column-major matrix"
    ROW_MAJOR_MATRIX = "row-major matrix"
    DIAGONAL_MATRIX = "diagonal matrix"
    SYMMETRIC_MATRIX = "symmetric matrix"
    UPPER_TRIANGULAR_MATRIX = "upper triangular matrix"
    LOWER_TRIANGULAR_MATRIX = "lower triangular matrix"
    STRICT_UPPER_TRIANGULAR_MATRIX = "strictly upper triangular matrix"
    STRICT_LOWER_TRIANGULAR_MATRIX = "strictly lower triangular matrix"


_PACKED_WITH_DIAGONAL = (
    TensorShape.SYMMETRIC_MATRIX,
    TensorShape.UPPER_TRIANGULAR_MATRIX,
    TensorShape.LOWER_TRIANGULAR_MATRIX,
)
_PACKED_STRICT = (
    TensorShape.STRICT_UPPER_TRIANGULAR_MATRIX,
    TensorShape.STRICT_LOWER_TRIANGULAR_MATRIX,
)
_TRANSPOSED = {
    TensorShape.COL_VECTOR: TensorShape.ROW_VECTOR,
    TensorShape.ROW_VECTOR: TensorShape.COL_VECTOR,
    TensorShape.COL_MAJOR_MATRIX: TensorShape.ROW_MAJOR_MATRIX,
    TensorShape.ROW_MAJOR_MATRIX: TensorShape.COL_MAJOR_MATRIX,
    TensorShape.UPPER_TRIANGULAR_MATRIX: TensorShape.LOWER_TRIANGULAR_MATRIX,
    TensorShape.LOWER_TRIANGULAR_MATRIX: TensorShape.UPPER_TRIANGULAR_MATRIX,
    TensorShape.STRICT_UPPER_TRIANGULAR_MATRIX: TensorShape.STRICT_LOWER_TRIANGULAR_MATRIX,
    TensorShape.STRICT_LOWER_TRIANGULAR_MATRIX: TensorShape.STRICT_UPPER_TRIANGULAR_MATRIX,
}


def _packed_index(row: int, col: int, n: int) -> int:
    """Storage index of (row <= col) in the diagonal-first packed layout."""
    if row == col:
        return row
    # off-diagonal upper elements stored column by column after the diagonal
    return n + (col - 1) * col // 2 + row


def _strict_index(row: int, col: int) -> int:
    """Storage index of (row < col) when only the strict upper triangle is stored."""
    return (col - 1) * col // 2 + row


# ==================================================
# ================= CLASS: Tensor ==================
# ==================================================
@dataclass(frozen=True)
class Tensor:
    """
    Immutable description of the per-pixel tensor.

    Attributes
    ----------
    shape : TensorShape
        Layout of the stored elements.
    elements : int
        Number of stored samples per pixel (may be less than rows*columns).
    rows : int
        Number of rows of the represented matrix (or vector length).

    Notes
    -----
    - A scalar is a column vector with one element.
    - Packed layouts (diagonal, symmetric, triangular) store the diagonal first,
      then the strict upper triangle column by column; the lower triangular
      shapes use the transposed arrangement.
    """

    shape: TensorShape = TensorShape.COL_VECTOR
    elements: int = 1
    rows: int = 1

    def __post_init__(self) -> None:
        if self.elements < 1 or self.rows < 1:
            raise TensorShapeMismatch("Tensor must have at least one element.")
        if self.shape in (TensorShape.COL_MAJOR_MATRIX, TensorShape.ROW_MAJOR_MATRIX):
            if self.elements % self.rows:
                raise TensorShapeMismatch(f"{self.elements} elements cannot form {self.rows} rows.")
        elif self.shape is TensorShape.COL_VECTOR and self.rows != self.elements:
            raise TensorShapeMismatch("Column vector rows must equal its element count.")
        elif self.shape is TensorShape.ROW_VECTOR and self.rows != 1:
            raise TensorShapeMismatch("Row vector must have one row.")
        elif self.shape is TensorShape.DIAGONAL_MATRIX and self.rows != self.elements:
            raise TensorShapeMismatch("Diagonal matrix stores one element per row.")
        elif self.shape in _PACKED_WITH_DIAGONAL and self.rows * (self.rows + 1) // 2 != self.elements:
            raise TensorShapeMismatch(f"{self.elements} elements do not pack a {self.shape.value}.")
        elif self.shape in _PACKED_STRICT and self.rows * (self.rows - 1) // 2 != self.elements:
            raise TensorShapeMismatch(f"{self.elements} elements do not pack a {self.shape.value}.")

    # ====[ Constructors ]====
    @classmethod
    def vector(cls, elements: int = 1) -> "Tensor":
        return cls(TensorShape.COL_VECTOR, elements, elements)

    @classmethod
    def row_vector(cls, elements: int) -> "Tensor":
        return cls(TensorShape.ROW_VECTOR, elements, 1)

    @classmethod
    def matrix(cls, rows: int, columns: int) -> "Tensor":
        """Full column-major matrix; degenerates to a vector when one side is 1."""
        if columns == 1:
            return cls.vector(rows)
        if rows == 1:
            return cls.row_vector(columns)
        return cls(TensorShape.COL_MAJOR_MATRIX, rows * columns, rows)

    @classmethod
    def from_shape(cls, shape: TensorShape, rows: int, columns: int) -> "Tensor":
        """Build a descriptor of the given layout representing a rows x columns matrix."""
        if shape is TensorShape.COL_VECTOR:
            if columns != 1:
                raise TensorShapeMismatch("Column vector must have one column.")
            return cls.vector(rows)
        if shape is TensorShape.ROW_VECTOR:
            if rows != 1:
                raise TensorShapeMismatch("Row vector must have one row.")
            return cls.row_vector(columns)
        if shape in (TensorShape.COL_MAJOR_MATRIX, TensorShape.ROW_MAJOR_MATRIX):
            return cls(shape, rows * columns, rows)
        if rows != columns:
            raise TensorShapeMismatch(f"A {shape.value} must be square.")
        if shape is TensorShape.DIAGONAL_MATRIX:
            return cls(shape, rows, rows)
        if shape in _PACKED_WITH_DIAGONAL:
            return cls(shape, rows * (rows + 1) // 2, rows)
        return cls(shape, rows * (rows - 1) // 2, rows)

    @classmethod
    def from_sizes(cls, sizes: Sequence[int]) -> "Tensor":
        """Inverse of `sizes()`: () scalar, (n,) column vector, (r, c) matrix."""
        sizes = tuple(int(s) for s in sizes)
        if len(sizes) == 0:
            return cls()
        if len(sizes) == 1:
            return cls.vector(sizes[0])
        if len(sizes) == 2:
            return cls.matrix(*sizes)
        raise TensorShapeMismatch("Tensors have at most two dimensions.")

    @classmethod
    def packed_rows(cls, elements: int, strict: bool = False) -> int:
        """Matrix size n such that a packed layout of n x n stores `elements` samples."""
        n = (math.isqrt(8 * elements + 1) + (1 if strict else -1)) // 2
        stored = n * (n - 1) // 2 if strict else n * (n + 1) // 2
        if stored != elements:
            raise TensorShapeMismatch(f"{elements} elements do not form a packed square matrix.")
        return n

    # ====[ Queries ]====
    @property
    def columns(self) -> int:
        if self.shape is TensorShape.COL_VECTOR:
            return 1
        if self.shape is TensorShape.ROW_VECTOR:
            return self.elements
        if self.shape in (TensorShape.COL_MAJOR_MATRIX, TensorShape.ROW_MAJOR_MATRIX):
            return self.elements // self.rows
        return self.rows

    def sizes(self) -> Tuple[int, ...]:
        if self.is_scalar:
            return ()
        if self.shape is TensorShape.COL_VECTOR:
            return (self.rows,)
        return (self.rows, self.columns)

    @property
    def is_scalar(self) -> bool:
        return self.elements == 1 and self.shape in (TensorShape.COL_VECTOR, TensorShape.ROW_VECTOR)

    @property
    def is_vector(self) -> bool:
        return self.shape in (TensorShape.COL_VECTOR, TensorShape.ROW_VECTOR)

    @property
    def is_square(self) -> bool:
        return self.rows == self.columns

    @property
    def is_diagonal(self) -> bool:
        return self.shape is TensorShape.DIAGONAL_MATRIX

    @property
    def is_symmetric(self) -> bool:
        return self.shape in (TensorShape.SYMMETRIC_MATRIX, TensorShape.DIAGONAL_MATRIX) or self.is_scalar

    @property
    def is_triangular(self) -> bool:
        return self.shape in _PACKED_STRICT or self.shape in (
            TensorShape.UPPER_TRIANGULAR_MATRIX, TensorShape.LOWER_TRIANGULAR_MATRIX)

    @property
    def has_full_storage(self) -> bool:
        """True when every matrix element has its own stored sample."""
        return self.elements == self.rows * self.columns

    @property
    def has_normal_order(self) -> bool:
        """Stored samples follow column-major order of the full matrix."""
        return self.shape in (TensorShape.COL_VECTOR, TensorShape.ROW_VECTOR, TensorShape.COL_MAJOR_MATRIX)

    def index(self, row: int, column: int) -> int:
        """
        Storage index of matrix element (row, column), or -1 if it is an implicit zero.

        Raises
        ------
        IndexOutOfRange
            If (row, column) lies outside the matrix.
        """
        if not (0 <= row < self.rows and 0 <= column < self.columns):
            raise IndexOutOfRange(f"Tensor index ({row}, {column}) out of range for {self.rows}x{self.columns}.")
        shape, n = self.shape, self.rows
        if shape in (TensorShape.COL_VECTOR, TensorShape.COL_MAJOR_MATRIX):
            return column * self.rows + row
        if shape is TensorShape.ROW_VECTOR:
            return column
        if shape is TensorShape.ROW_MAJOR_MATRIX:
            return row * self.columns + column
        if shape is TensorShape.DIAGONAL_MATRIX:
            return row if row == column else -1
        if shape is TensorShape.SYMMETRIC_MATRIX:
            return _packed_index(min(row, column), max(row, column), n)
        if shape is TensorShape.UPPER_TRIANGULAR_MATRIX:
            return _packed_index(row, column, n) if row <= column else -1
        if shape is TensorShape.LOWER_TRIANGULAR_MATRIX:
            return _packed_index(column, row, n) if row >= column else -1
        if shape is TensorShape.STRICT_UPPER_TRIANGULAR_MATRIX:
            return _strict_index(row, column) if row < column else -1
        return _strict_index(column, row) if row > column else -1

    def linear_index(self, indices: Sequence[int]) -> int:
        """Storage index from () / (i,) / (row, column) indices."""
        indices = tuple(indices)
        if len(indices) == 0:
            return 0
        if len(indices) == 1:
            if not 0 <= indices[0] < self.elements:
                raise IndexOutOfRange(f"Tensor element {indices[0]} out of range ({self.elements}).")
            return indices[0]
        if len(indices) == 2:
            return self.index(*indices)
        raise IndexOutOfRange("Tensor indices have at most two components.")

    def lookup_table(self) -> List[int]:
        """Storage index for each element of the full matrix in column-major order (-1 = zero)."""
        return [self.index(r, c) for c in range(self.columns) for r in range(self.rows)]

    # ====[ Derived descriptors ]====
    def transpose(self) -> "Tensor":
        new_shape = _TRANSPOSED.get(self.shape, self.shape)
        if new_shape is TensorShape.COL_VECTOR:
            return Tensor.vector(self.elements)
        if new_shape is TensorShape.ROW_VECTOR:
            return Tensor.row_vector(self.elements)
        if new_shape in (TensorShape.COL_MAJOR_MATRIX, TensorShape.ROW_MAJOR_MATRIX):
            return Tensor(new_shape, self.elements, self.columns)
        return Tensor(new_shape, self.elements, self.rows)

    def change_shape(self, rows: int) -> "Tensor":
        """Reinterpret the stored samples as a column-major matrix with `rows` rows."""
        if rows < 1 or self.elements % rows:
            raise TensorShapeMismatch(f"Cannot reshape {self.elements} tensor elements into {rows} rows.")
        return Tensor.matrix(rows, self.elements // rows)

    def change_to(self, other: "Tensor") -> "Tensor":
        if other.elements != self.elements:
            raise TensorShapeMismatch("Tensor reshape must keep the number of elements.")
        return other

    def expanded(self) -> "Tensor":
        """Full column-major descriptor of the represented matrix."""
        return Tensor.matrix(self.rows, self.columns)

    def extract_diagonal(self) -> Tuple["Tensor", int, int]:
        """
        Describe the diagonal as a column vector.

        Returns
        -------
        (Tensor, int, int)
            New descriptor, offset of the first diagonal element and step between
            consecutive diagonal elements, both in units of the tensor stride.
        """
        shape = self.shape
        if shape in _PACKED_STRICT:
            raise TensorShapeMismatch("The diagonal of a strictly triangular tensor is not stored.")
        if shape in (TensorShape.COL_VECTOR, TensorShape.ROW_VECTOR):
            return Tensor(), 0, 1
        n = min(self.rows, self.columns)
        if shape is TensorShape.COL_MAJOR_MATRIX:
            return Tensor.vector(n), 0, self.rows + 1
        if shape is TensorShape.ROW_MAJOR_MATRIX:
            return Tensor.vector(n), 0, self.columns + 1
        return Tensor.vector(n), 0, 1

    def extract_row(self, row: int) -> Tuple["Tensor", int, int]:
        """Descriptor, offset and step of one row; full layouts only."""
        self._require_full("row")
        if not 0 <= row < self.rows:
            raise IndexOutOfRange(f"Tensor row {row} out of range ({self.rows}).")
        if self.shape is TensorShape.ROW_MAJOR_MATRIX:
            return Tensor.row_vector(self.columns) if self.columns > 1 else Tensor(), row * self.columns, 1
        return (Tensor.row_vector(self.columns) if self.columns > 1 else Tensor()), row, self.rows

    def extract_column(self, column: int) -> Tuple["Tensor", int, int]:
        """Descriptor, offset and step of one column; full layouts only."""
        self._require_full("column")
        if not 0 <= column < self.columns:
            raise IndexOutOfRange(f"Tensor column {column} out of range ({self.columns}).")
        if self.shape is TensorShape.ROW_MAJOR_MATRIX:
            return Tensor.vector(self.rows), column, self.columns
        return Tensor.vector(self.rows), column * self.rows, 1

    def _require_full(self, what: str) -> None:
        if not self.has_full_storage or self.shape in (TensorShape.DIAGONAL_MATRIX,) + _PACKED_WITH_DIAGONAL + _PACKED_STRICT:
            if not (self.shape is TensorShape.DIAGONAL_MATRIX and self.rows == 1):
                raise TensorShapeMismatch(
                    f"Extracting a tensor {what} needs a full layout; expand the tensor first."
                )

    def __str__(self) -> str:
        return f"{self.rows}x{self.columns} {self.shape.value}"
