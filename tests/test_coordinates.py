# ==================================================
# ============== TESTS: Coordinates / lines ========
# ==================================================
from __future__ import annotations

import numpy as np
import pytest

from core.coordinates import (
    CoordinatesComputer,
    Range,
    index_of,
    index_to_coordinates,
    line_coordinates,
    line_offsets,
    number_of_lines,
    offset_of,
    optimal_processing_dim,
    to_range,
)
from core.errors import IndexOutOfRange


# ===================
# Ranges
# ===================

def test_range_resolves_negative_bounds():
    assert Range(1, -2).fix(6) == Range(1, 4, 1)
    assert Range().fix(3).size == 3


def test_backward_range_snaps_stop_to_step():
    r = Range(5, 0, 2).fix(6)
    assert r == Range(5, 1, 2)
    assert r.size == 3
    assert r.signed_step == -2


@pytest.mark.parametrize("bad", [Range(0, 6), Range(-7, 0), Range(0, 2, 0)])
def test_invalid_ranges(bad):
    with pytest.raises(IndexOutOfRange):
        bad.fix(6)


def test_to_range_from_python_indices():
    assert to_range(2, 5) == Range(2, 2, 1)
    reverse = to_range(slice(None, None, -1), 4)
    assert (reverse.start, reverse.size, reverse.signed_step) == (3, 4, -1)
    assert to_range(slice(1, 6, 2), 6) == Range(1, 5, 2)
    with pytest.raises(IndexOutOfRange):
        to_range(slice(2, 2), 4)
    with pytest.raises(IndexOutOfRange):
        to_range(5, 5)


# ===================
# Offsets and indices
# ===================

def test_offset_and_index():
    assert offset_of((1, 2), (4, 1), (3, 4)) == 6
    assert offset_of((1, 2), (-4, 1)) == -2
    assert index_of((1, 2), (3, 4)) == 6
    assert index_to_coordinates(6, (3, 4)) == (1, 2)
    with pytest.raises(IndexOutOfRange):
        offset_of((3, 0), (4, 1), (3, 4))
    with pytest.raises(IndexOutOfRange):
        index_to_coordinates(12, (3, 4))


@pytest.mark.parametrize(
    "sizes, strides",
    [((3, 4), (4, 1)), ((3, 4), (1, 3)), ((3, 4), (-4, 1)), ((2, 3, 4), (1, -8, 2))],
)
def test_coordinates_computer_inverts_offsets(sizes, strides):
    computer = CoordinatesComputer(sizes, strides)
    for index in range(int(np.prod(sizes))):
        coords = index_to_coordinates(index, sizes)
        assert computer(offset_of(coords, strides)) == coords


def test_coordinates_computer_zero_stride_and_invalid_offset():
    assert CoordinatesComputer((3, 4), (0, 1))(2) == (0, 2)
    with pytest.raises(IndexOutOfRange):
        CoordinatesComputer((3, 4), (4, 1))(12)


# ===================
# Lines
# ===================

def test_line_coordinates_are_row_major():
    assert number_of_lines((3, 4, 5), 1) == 15
    coords = line_coordinates((3, 4, 5), 1, 0, 15)
    assert coords.shape == (15, 3)
    assert np.all(coords[:, 1] == 0)
    assert coords[6].tolist() == [1, 0, 1]
    assert line_coordinates((3, 4, 5), 1, 6, 8).tolist() == [[1, 0, 1], [1, 0, 2]]


def test_line_offsets():
    coords = line_coordinates((3, 4), 1, 0, 3)
    assert line_offsets(coords, (4, 1)).tolist() == [0, 4, 8]
    assert number_of_lines((7,), 0) == 1


@pytest.mark.parametrize(
    "sizes, strides, expected",
    [
        ((10, 80), (80, 1), 1),
        ((100, 4), (4, 1), 0),
        ((70, 80), (1, 70), 0),
        ((1, 5), (5, 1), 1),
        ((), (), 0),
    ],
)
def test_optimal_processing_dim(sizes, strides, expected):
    assert optimal_processing_dim(sizes, strides) == expected
