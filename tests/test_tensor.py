# ==================================================
# ================= TESTS: Tensor ==================
# ==================================================
from __future__ import annotations

import pytest

from core.errors import IndexOutOfRange, TensorShapeMismatch
from core.tensor import Tensor, TensorShape


# ===================
# Construction
# ===================

def test_matrix_degenerates_to_vectors():
    assert Tensor.matrix(3, 1) == Tensor.vector(3)
    assert Tensor.matrix(1, 3) == Tensor.row_vector(3)
    m = Tensor.matrix(2, 3)
    assert (m.shape, m.elements, m.rows, m.columns) == (TensorShape.COL_MAJOR_MATRIX, 6, 2, 3)
    assert m.sizes() == (2, 3)
    assert str(m) == "2x3 column-major matrix"


def test_sizes_round_trip():
    assert Tensor().sizes() == ()
    assert Tensor().is_scalar
    assert Tensor.vector(3).sizes() == (3,)
    assert Tensor.from_sizes((2, 3)) == Tensor.matrix(2, 3)
    assert Tensor.from_sizes(()) == Tensor()
    with pytest.raises(TensorShapeMismatch):
        Tensor.from_sizes((2, 2, 2))


def test_invalid_descriptors():
    with pytest.raises(TensorShapeMismatch):
        Tensor(TensorShape.SYMMETRIC_MATRIX, 4, 2)
    with pytest.raises(TensorShapeMismatch):
        Tensor.from_shape(TensorShape.DIAGONAL_MATRIX, 2, 3)
    with pytest.raises(TensorShapeMismatch):
        Tensor(TensorShape.COL_VECTOR, 0, 0)


@pytest.mark.parametrize(
    "elements, strict, expected",
    [(6, False, 3), (1, False, 1), (3, True, 3), (1, True, 2)],
)
def test_packed_rows(elements, strict, expected):
    assert Tensor.packed_rows(elements, strict) == expected


def test_packed_rows_rejects_other_counts():
    with pytest.raises(TensorShapeMismatch):
        Tensor.packed_rows(4)


# ===================
# Storage indices
# ===================

def test_column_and_row_major_index_the_same_sample():
    m = Tensor.matrix(2, 3)
    t = m.transpose()
    assert t.shape is TensorShape.ROW_MAJOR_MATRIX
    assert (t.rows, t.columns) == (3, 2)
    assert m.index(1, 2) == t.index(2, 1) == 5


def test_symmetric_packing():
    sym = Tensor.from_shape(TensorShape.SYMMETRIC_MATRIX, 3, 3)
    assert sym.elements == 6
    assert [sym.index(i, i) for i in range(3)] == [0, 1, 2]
    assert (sym.index(0, 1), sym.index(0, 2), sym.index(1, 2)) == (3, 4, 5)
    assert sym.index(2, 1) == sym.index(1, 2)
    assert sym.lookup_table() == [0, 3, 4, 3, 1, 5, 4, 5, 2]


def test_triangular_and_diagonal_packing():
    upper = Tensor.from_shape(TensorShape.UPPER_TRIANGULAR_MATRIX, 3, 3)
    lower = Tensor.from_shape(TensorShape.LOWER_TRIANGULAR_MATRIX, 3, 3)
    strict = Tensor.from_shape(TensorShape.STRICT_UPPER_TRIANGULAR_MATRIX, 3, 3)
    assert upper.index(2, 0) == -1
    assert lower.index(2, 0) == 4
    assert strict.elements == 3
    assert (strict.index(0, 1), strict.index(0, 2), strict.index(1, 2)) == (0, 1, 2)
    assert strict.index(1, 1) == -1
    diag = Tensor.from_shape(TensorShape.DIAGONAL_MATRIX, 2, 2)
    assert diag.lookup_table() == [0, -1, -1, 1]
    assert upper.transpose().shape is TensorShape.LOWER_TRIANGULAR_MATRIX


def test_index_out_of_range():
    with pytest.raises(IndexOutOfRange):
        Tensor.matrix(2, 2).index(2, 0)
    with pytest.raises(IndexOutOfRange):
        Tensor.vector(3).linear_index((3,))


# ===================
# Derived descriptors
# ===================

def test_extract_diagonal_row_and_column():
    m = Tensor.matrix(3, 3)
    assert m.extract_diagonal() == (Tensor.vector(3), 0, 4)
    wide = Tensor.matrix(2, 3)
    assert wide.extract_row(1) == (Tensor.row_vector(3), 1, 2)
    assert wide.extract_column(2) == (Tensor.vector(2), 4, 1)
    assert wide.transpose().extract_diagonal() == (Tensor.vector(2), 0, 3)


def test_rows_of_packed_tensors_need_expansion():
    sym = Tensor.from_shape(TensorShape.SYMMETRIC_MATRIX, 2, 2)
    with pytest.raises(TensorShapeMismatch):
        sym.extract_row(0)
    assert sym.expanded() == Tensor.matrix(2, 2)


def test_change_shape():
    assert Tensor.vector(6).change_shape(3) == Tensor.matrix(3, 2)
    with pytest.raises(TensorShapeMismatch):
        Tensor.vector(6).change_shape(4)
