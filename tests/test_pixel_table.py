# ==================================================
# ============== TESTS: PixelTable / Kernel ========
# ==================================================
from __future__ import annotations

import math

import numpy as np
import pytest

from core.data_types import DataType
from core.errors import IndexOutOfRange, SizesDontMatch, UnsupportedDataType
from core.image import Image
from core.pixel_table import Kernel, PixelTable


# ===================
# Helpers
# ===================

def _round_trip(table: PixelTable) -> PixelTable:
    """Rebuild a table from its own mask, keeping the center where it was."""
    mask = table.as_image()
    return PixelTable.from_mask(
        mask, origin=tuple(-o for o in table.origin), processing_dimension=table.processing_dimension
    )


def _coordinate_set(table: PixelTable):
    return set(table.coordinates())


# ===================
# Construction from shapes
# ===================

def test_elliptic_table_matches_reference_counts():
    pt = PixelTable("elliptic", (10.1, 12.7, 5.3), 1)
    assert pt.sizes == (11, 13, 5)
    assert pt.origin == (-5, -6, -2)
    assert len(pt.runs) == 43
    assert pt.number_of_pixels == 359
    assert pt.processing_dimension == 1


def test_rectangular_table_matches_reference_counts():
    pt = PixelTable("rectangular", (22.2, 33.3), 0)
    assert pt.sizes == (22, 33)
    assert pt.origin == (-11, -16)
    assert len(pt.runs) == 33
    assert pt.number_of_pixels == 22 * 33
    assert all(run.length == 22 for run in pt.runs)


def test_diamond_table_matches_reference_counts():
    pt = PixelTable("diamond", (10.1, 12.7, 5.3), 2)
    assert pt.sizes == (11, 13, 5)
    assert pt.origin == (-5, -6, -2)
    assert len(pt.runs) == 67
    assert pt.number_of_pixels == 127


def test_line_table_matches_reference_counts():
    pt = PixelTable("line", (14.1, -4.2, 7.9), 0)
    assert pt.sizes == (14, 4, 8)
    assert pt.origin == (-7, -1, -4)
    assert len(pt.runs) == 8
    assert pt.number_of_pixels == 14
    # the line passes through the center pixel
    assert (0, 0, 0) in _coordinate_set(pt)


@pytest.mark.parametrize("size, processing_dimension", [((-6, 4), 0), ((6, -4), 0), ((4, -6), 1), ((-4, 6), 1)])
def test_line_runs_forward_through_the_origin(size, processing_dimension):
    pt = PixelTable("line", size, processing_dimension)
    pixels = sorted(_coordinate_set(pt), key=lambda c: c[processing_dimension])
    assert len(pixels) == pt.number_of_pixels == 6
    assert (0, 0) in pixels
    for a, b in zip(pixels, pixels[1:]):
        assert b[processing_dimension] - a[processing_dimension] == 1
        assert all(abs(p - q) <= 1 for p, q in zip(a, b))


def test_single_pixel_line():
    pt = PixelTable("line", (1, 1), 0)
    assert pt.sizes == (1, 1)
    assert pt.number_of_pixels == 1
    assert list(pt.coordinates()) == [(0, 0)]


def test_sizes_below_one_are_clamped():
    pt = PixelTable("elliptic", (0.2, 3), 1)
    assert pt.sizes == (1, 3)
    assert pt.number_of_pixels == 3


# ===================
# Mask round trip
# ===================

@pytest.mark.parametrize("shape", ["rectangular", "elliptic", "diamond", "line"])
@pytest.mark.parametrize("size", [(5, 7), (6, 4), (9.5, 3.2)])
@pytest.mark.parametrize("proc_dim", [0, 1])
def test_mask_round_trip(shape, size, proc_dim):
    pt = PixelTable(shape, size, proc_dim)
    back = _round_trip(pt)
    assert back.sizes == pt.sizes
    assert back.origin == pt.origin
    assert back.number_of_pixels == pt.number_of_pixels
    assert [(r.coordinates, r.length) for r in back.runs] == [(r.coordinates, r.length) for r in pt.runs]


def test_elliptic_round_trip_3d():
    pt = PixelTable("elliptic", (10.1, 12.7, 5.3), 1)
    back = _round_trip(pt)
    assert back.runs[0].coordinates == pt.runs[0].coordinates
    assert np.array_equal(back.as_image().as_array(), pt.as_image().as_array())


def test_from_boolean_array_default_origin():
    mask = np.zeros((3, 5), dtype=bool)
    mask[1, 1:4] = True
    mask[2, 0] = True
    pt = PixelTable.from_mask(mask, processing_dimension=1)
    assert pt.origin == (-1, -2)
    assert [(r.coordinates, r.length) for r in pt.runs] == [((0, -1), 3), ((1, -2), 1)]


def test_mask_must_be_binary():
    with pytest.raises(UnsupportedDataType):
        PixelTable.from_mask(np.ones((3, 3)))


@pytest.mark.parametrize("proc_dim", [-1, 2])
def test_processing_dimension_out_of_range(proc_dim):
    with pytest.raises(IndexOutOfRange):
        PixelTable("rectangular", (3, 3), proc_dim)


def test_unknown_shape():
    with pytest.raises(ValueError):
        PixelTable("hexagonal", (3, 3), 0)


# ===================
# Transformations and weights
# ===================

def test_mirror_point_reflects_coordinates():
    pt = PixelTable("line", (7, 3), 0)
    original = _coordinate_set(pt)
    pt.mirror()
    assert _coordinate_set(pt) == {tuple(-c for c in cor) for cor in original}
    pt.mirror()
    assert _coordinate_set(pt) == original


def test_shift_origin_moves_all_runs():
    pt = PixelTable("rectangular", (3, 3), 1)
    before = _coordinate_set(pt)
    pt.shift_origin((1, -1))
    assert pt.origin == (-2, 0)
    assert _coordinate_set(pt) == {(a - 1, b + 1) for a, b in before}


def test_distance_weights():
    pt = PixelTable("elliptic", (5, 5), 1).add_distance_to_origin_as_weights()
    assert pt.has_weights
    for w, cor in zip(pt.weights, pt.coordinates()):
        assert w == pytest.approx(math.sqrt(sum(c * c for c in cor)))
    image = pt.as_image()
    assert image.data_type is DataType.DFLOAT
    assert image.as_array()[2, 2, 0] == 0.0
    assert image.as_array()[0, 2, 0] == pytest.approx(2.0)


def test_add_weights_follows_runs(make_np):
    weights = make_np((3, 3), seed=3)
    pt = PixelTable("rectangular", (3, 3), 1).add_weights(Image.from_array(weights))
    assert np.allclose(pt.weights, weights.reshape(-1))
    with pytest.raises(SizesDontMatch):
        pt.add_weights(np.ones((3, 4)))


def test_mirror_reverses_weights():
    pt = PixelTable("rectangular", (1, 3), 1).add_weights(np.array([[1.0, 2.0, 3.0]]))
    pt.mirror()
    assert list(pt.weights) == [3.0, 2.0, 1.0]


def test_offsets_for_image_strides():
    image = Image((20, 30), 1, "sfloat")
    offsets = PixelTable("rectangular", (3, 3), 1).offsets(image)
    assert offsets.stride == image.stride(1) == 1
    expected = sorted(dy * 30 + dx for dy in (-1, 0, 1) for dx in (-1, 0, 1))
    assert sorted(offsets.offsets_array().tolist()) == expected
    assert offsets.runs[0] == (-31, 3)


# ===================
# Kernel
# ===================

def test_kernel_boundary_and_table():
    kernel = Kernel("rectangular", 3)
    assert kernel.boundary(2) == (1, 1)
    assert kernel.pixel_table(2, 1).number_of_pixels == 9
    assert Kernel("elliptic", (7, 3)).boundary(2) == (3, 1)


def test_custom_weighted_kernel():
    weights = np.array([[0.0, 1.0, 0.0], [2.0, 3.0, 4.0], [0.0, 5.0, 0.0]])
    kernel = Kernel(weights)
    assert kernel.is_custom and kernel.has_weights
    pt = kernel.pixel_table(2, 1)
    assert pt.number_of_pixels == 5
    assert list(pt.weights) == [1.0, 2.0, 3.0, 4.0, 5.0]


def test_mirrored_kernel():
    mask = np.array([[True, True, False]])
    table = Kernel(mask).mirror().pixel_table(2, 1)
    assert _coordinate_set(table) == {(0, 1), (0, 0)}
