# ==================================================
# ================= TESTS: Image ===================
# ==================================================
from __future__ import annotations

import gc

import numpy as np
import pytest

from core.coordinates import Range
from core.data_types import DataType
from core.errors import (
    DimensionMismatch,
    ImageNotForged,
    ImageNotRaw,
    ImageProtected,
    IndexOutOfRange,
    InvalidShape,
    SizesDontMatch,
    TensorShapeMismatch,
    UnsupportedDataType,
)
from core.image import Image
from core.tensor import Tensor, TensorShape


# ===================
# Helpers
# ===================

def _wrap(make_np, shape, seed=0, tensor_axis=None):
    values = make_np(shape, seed=seed)
    return values, Image.from_array(values, tensor_axis=tensor_axis)


# ===================
# Lifecycle
# ===================

def test_forge_uses_normal_layout():
    img = Image((4, 5), 3, "uint8")
    assert img.is_forged
    assert img.strides == (15, 3) and img.tensor_stride == 1
    assert img.as_array().shape == (4, 5, 3)
    assert img.has_normal_strides and img.has_contiguous_data


def test_raw_image_properties():
    img = Image()
    assert not img.is_forged
    assert img.data_type is DataType.SFLOAT
    img.set_sizes((3, 2)).set_tensor(2).set_data_type("sint16").forge()
    assert img.as_array().shape == (3, 2, 2)
    with pytest.raises(ImageNotRaw):
        img.set_sizes((1,))
    with pytest.raises(ImageNotForged):
        Image().as_array()


def test_forge_honours_compact_requested_strides():
    img = Image().set_sizes((3, 4)).set_strides((1, 3)).forge()
    assert img.strides == (1, 3)
    fallback = Image().set_sizes((3, 4)).set_strides((2, 3)).forge()
    assert fallback.strides == (4, 1)


@pytest.mark.parametrize("sizes", [(0, 3), (-1,)])
def test_invalid_sizes(sizes):
    with pytest.raises(InvalidShape):
        Image(sizes)


def test_views_share_and_release_memory():
    released = []
    img = Image.from_array(np.zeros((3, 3)), release=lambda: released.append(True))
    view = img.quick_copy()
    assert img.share_count == 2 and view.shares_data(img)
    del img
    gc.collect()
    assert released == []
    view.strip()
    assert released == [True]


def test_reforge_reuses_or_reallocates():
    img = Image((4, 4), 1, "uint8")
    block = img.data_block
    assert img.reforge((4, 4), 1, "uint8").data_block is block
    assert img.reforge((5, 4), 1, "uint8").data_block is not block
    img.protect()
    with pytest.raises(ImageProtected):
        img.reforge((2, 2), 1, "uint8")
    img.reforge((5, 4), 1, "sfloat", accept_data_type_change=True)
    assert img.data_type is DataType.UINT8
    with pytest.raises(ImageProtected):
        img.strip()


def test_assign_into_protected_image_copies():
    target = Image((2, 3), 1, "uint8")
    target.protect()
    source = Image.from_array(np.array([[1.6, 2.0, 300.0], [-4.0, 5.0, 6.0]]))
    target.assign(source)
    assert not target.shares_data(source)
    assert target.data_type is DataType.UINT8
    assert target.as_array()[..., 0].tolist() == [[2, 2, 255], [0, 5, 6]]


def test_assign_shares_data():
    a = Image((2, 2), 1, "dfloat")
    b = Image()
    b.assign(a)
    assert b.shares_data(a) and b.sizes == (2, 2)


# ===================
# Aliasing
# ===================

def test_complementary_halves_do_not_alias():
    img = Image((6, 8), 1, "sint16")
    even = img.at(slice(None), slice(0, None, 2))
    odd = img.at(slice(None), slice(1, None, 2))
    assert not even.aliases(odd)
    assert even.aliases(img) and img.aliases(odd)


def test_overlapping_windows_alias():
    img = Image((10,), 1, "dfloat")
    assert img.at(slice(0, 6)).aliases(img.at(slice(5, 10)))
    assert not img.at(slice(0, 5)).aliases(img.at(slice(5, 10)))


def test_views_repeating_a_stride_alias_exactly():
    img = Image((10,), 1, "dfloat")
    # samples 0, 2, 4 reached through two dimensions with the same stride
    repeated = img._make_view(sizes=(2, 2), strides=(2, 2))
    assert not repeated.aliases(img.at(slice(1, None, 2)))
    assert repeated.aliases(img.at(slice(4, None, 2)))
    assert not img.at(slice(6, None, 2)).aliases(repeated)


def test_identical_and_overlapping_views():
    img = Image((4, 4), 1, "sfloat")
    same = img.quick_copy()
    assert img.is_identical_view(same)
    assert not img.is_overlapping_view(same)
    mirrored = img.quick_copy().mirror()
    assert img.is_overlapping_view(mirrored)
    assert not img.aliases(Image((4, 4), 1, "sfloat"))


def test_tensor_elements_of_complex_images():
    img = Image((3,), 2, "scomplex")
    assert not img.tensor_element(0).aliases(img.tensor_element(1))
    assert img.real().aliases(img)
    assert not img.real().aliases(img.imaginary())


# ===================
# View transforms
# ===================

def test_mirror_twice_is_identity(make_np):
    values, img = _wrap(make_np, (3, 4))
    img.mirror([True, False])
    assert np.array_equal(img.as_array()[..., 0], values[::-1])
    img.mirror([True, False])
    assert np.array_equal(img.as_array()[..., 0], values)


@pytest.mark.parametrize("n", [0, 1, 2, 3, 5])
def test_rotation90_matches_numpy(make_np, n):
    values, img = _wrap(make_np, (3, 4, 2), seed=1)
    img.rotation90(n, 0, 2)
    assert np.array_equal(img.as_array()[..., 0], np.rot90(values, n, axes=(0, 2)))


def test_permute_squeeze_and_singletons(make_np):
    values, img = _wrap(make_np, (3, 1, 4), seed=2)
    img.squeeze()
    assert img.sizes == (3, 4)
    img.add_singleton(0)
    assert img.sizes == (1, 3, 4) and img.strides[0] == 0
    img.permute_dimensions([2, 1])
    assert img.sizes == (4, 3)
    assert np.array_equal(img.as_array()[..., 0], values[:, 0, :].T)
    with pytest.raises(DimensionMismatch):
        img.permute_dimensions([0])


def test_expand_dimensionality_prepends():
    img = Image((5,), 1, "uint8")
    img.expand_dimensionality(3)
    assert img.sizes == (1, 1, 5)


def test_singleton_expansion():
    img = Image.from_array(np.arange(3.0).reshape(3, 1))
    img.expand_singleton_dimensions((2, 3, 4))
    assert img.sizes == (2, 3, 4)
    assert img.is_singleton_expanded
    assert np.array_equal(img.as_array()[1, :, 3, 0], [0.0, 1.0, 2.0])
    with pytest.raises(SizesDontMatch):
        Image((3, 2), 1, "uint8").expand_singleton_dimensions((3, 4))
    img.unexpand_singleton_dimensions()
    assert img.sizes == (1, 3, 1)


def test_singleton_expanded_image_is_read_only():
    img = Image((1, 3), 1, "uint8").expand_singleton_dimension(0, 4)
    with pytest.raises(DimensionMismatch):
        img.fill(1)


def test_standardize_strides_is_idempotent(make_np):
    _, img = _wrap(make_np, (3, 4, 5), seed=3)
    img.mirror([False, True, False]).permute_dimensions([2, 0, 1])
    img.standardize_strides()
    first = (img.sizes, img.strides, img.origin)
    img.standardize_strides()
    assert (img.sizes, img.strides, img.origin) == first
    assert img.strides == (20, 5, 1)


def test_flatten(make_np):
    values, img = _wrap(make_np, (3, 4), seed=4)
    img.mirror()
    img.flatten()
    assert img.sizes == (12,)
    assert sorted(img.as_array()[:, 0].tolist()) == sorted(values.ravel().tolist())
    strided = Image.from_array(values).at(slice(None), slice(0, None, 2))
    strided.flatten()
    assert strided.as_array()[:, 0].tolist() == values[:, ::2].ravel().tolist()


# ===================
# Indexing
# ===================

def test_integer_indices_keep_dimension(make_np):
    values, img = _wrap(make_np, (4, 5), seed=5)
    row = img[2]
    assert row.sizes == (1, 5)
    assert np.array_equal(row.as_array()[0, :, 0], values[2])
    sub = img.at(Range(3, 1), Range(0, 4, 2))
    assert sub.sizes == (3, 3)
    assert np.array_equal(sub.as_array()[..., 0], values[3:0:-1, 0:5:2])


def test_crop_and_pad():
    img = Image.from_array(np.arange(25.0).reshape(5, 5))
    assert img.crop((2, 2), "center").as_array()[..., 0].tolist() == [[6.0, 7.0], [11.0, 12.0]]
    assert img.crop((2, 2), "mirror center").as_array()[0, 0, 0] == 12.0
    assert img.crop((2, 2), "bottom right").as_array()[0, 0, 0] == 18.0
    padded = Image.from_array(np.ones((2, 2))).pad((4, 5), "top left")
    assert padded.as_array()[..., 0].sum() == 4.0
    assert padded.as_array()[0, 0, 0] == 1.0
    with pytest.raises(DimensionMismatch):
        img.crop((6, 2))


def test_pad_copies_while_extend_view_shares():
    base = Image.from_array(np.arange(16.0).reshape(4, 4))
    inner = base.at(slice(1, 3), slice(1, 3))
    padded = inner.pad((4, 4), "center")
    grown = inner.extend_view(1)
    assert not padded.shares_data(base)
    assert grown.shares_data(base)
    assert padded.as_array()[..., 0].sum() == inner.as_array().sum()
    assert padded.crop((2, 2), "center").as_array().tolist() == inner.as_array().tolist()
    assert grown.as_array()[0, 0, 0] == 0.0 and padded.as_array()[0, 0, 0] == 0.0
    assert grown.as_array()[3, 3, 0] == 15.0 and padded.as_array()[3, 3, 0] == 0.0


def test_extend_view_reads_surrounding_memory():
    base = Image.from_array(np.arange(16.0).reshape(4, 4))
    inner = base.at(slice(1, 3), slice(1, 3))
    grown = inner.extend_view(1)
    assert grown.sizes == (4, 4)
    assert grown.is_identical_view(base)
    with pytest.raises(IndexOutOfRange):
        inner.extend_view(2)


def test_tensor_element_views():
    img = Image((2, 2), Tensor.matrix(2, 3), "sint32")
    img.fill(np.arange(6))
    assert img.tensor_element((1, 2)).as_array()[0, 0, 0] == 5
    assert img.tensor_row(1).as_array()[0, 0].tolist() == [1, 3, 5]
    assert img.tensor_column(1).as_array()[0, 0].tolist() == [2, 3]
    assert img.diagonal().as_array()[0, 0].tolist() == [0, 3]
    assert img.tensor_range(slice(1, 4)).as_array()[0, 0].tolist() == [1, 2, 3]


def test_tensor_to_spatial_and_back(make_np):
    values, img = _wrap(make_np, (3, 4, 6), seed=6, tensor_axis=-1)
    img.tensor_to_spatial(0)
    assert img.sizes == (6, 3, 4) and img.is_scalar
    img.spatial_to_tensor(0, 2, 3)
    assert img.tensor_sizes == (2, 3)
    assert np.array_equal(img.as_array(), values)


def test_expand_tensor_fills_implicit_elements():
    tensor = Tensor.from_shape(TensorShape.UPPER_TRIANGULAR_MATRIX, 2, 2)
    img = Image((1,), tensor, "dfloat").fill([1.0, 2.0, 3.0])
    img.expand_tensor()
    assert img.tensor == Tensor.matrix(2, 2)
    assert img.as_array()[0].tolist() == [1.0, 0.0, 3.0, 2.0]


# ===================
# Complex samples
# ===================

def test_split_and_merge_complex():
    img = Image.from_array(np.array([1 + 2j, 3 - 4j], dtype=np.complex64))
    img.split_complex()
    assert img.data_type is DataType.SFLOAT
    assert img.as_array()[..., 0].tolist() == [[1.0, 2.0], [3.0, -4.0]]
    img.merge_complex()
    assert img.data_type is DataType.SCOMPLEX
    assert img.as_array()[:, 0].tolist() == [1 + 2j, 3 - 4j]
    with pytest.raises(UnsupportedDataType):
        Image((2,), 1, "uint8").split_complex()


def test_real_and_imaginary_views():
    img = Image.from_array(np.array([1 + 2j, 3 - 4j]))
    img.imaginary().fill(7)
    assert img.as_array()[:, 0].tolist() == [1 + 7j, 3 + 7j]
    assert img.real().as_array()[:, 0].tolist() == [1.0, 3.0]


# ===================
# Data movement
# ===================

def test_copy_and_convert_saturate():
    img = Image.from_array(np.array([-1.5, 2.5, 400.0]))
    into = Image((3,), 1, "uint8")
    into.protect()
    img.copy(into=into)
    assert into.as_array()[:, 0].tolist() == [0, 2, 255]
    img.convert("sint8")
    assert img.data_type is DataType.SINT8
    assert img.as_array()[:, 0].tolist() == [-2, 2, 127]


def test_from_array_rejects_unsupported_dtypes():
    with pytest.raises(UnsupportedDataType):
        Image.from_array(np.zeros(3, dtype=np.int64))
    with pytest.raises(InvalidShape):
        Image.from_array(np.zeros((0, 3)))


def test_from_buffer():
    raw = bytearray(np.arange(6, dtype=np.uint16).tobytes())
    img = Image.from_buffer(raw, (2, 3), "uint16")
    assert img.is_external_data
    assert img.as_array()[..., 0].tolist() == [[0, 1, 2], [3, 4, 5]]
    img.as_array()[0, 0, 0] = 9
    assert np.frombuffer(raw, dtype=np.uint16)[0] == 9


def test_pixel_offsets_and_indices():
    img = Image((3, 4), 2, "uint8")
    assert img.offset((1, 2)) == 1 * 8 + 2 * 2
    assert img.index((1, 2)) == 6
    assert img.offset_to_coordinates(12) == (1, 2)
    assert img.index_to_coordinates(6) == (1, 2)
    with pytest.raises(IndexOutOfRange):
        img.offset((3, 0))


def test_pixel_view_writes_through():
    img = Image.from_array(np.arange(12.0).reshape(3, 4))
    assert img.pixel((1, 2)).tolist() == [6.0]
    img.pixel((1, 2))[0] = -1
    assert img.as_array()[1, 2, 0] == -1
    assert img.offset_unchecked((-1, 0)) == -4
    with pytest.raises(IndexOutOfRange):
        img.pixel((0, 4))


# ===================
# Layout helpers
# ===================

def test_swap_dimensions_and_dimension_order():
    values = np.arange(12).reshape(3, 4).astype(np.int32)
    img = Image.from_array(values)
    swapped = img.quick_copy().swap_dimensions(0, 1)
    assert swapped.sizes == (4, 3)
    np.testing.assert_array_equal(swapped.as_array()[..., 0], values.T)
    assert not img.has_same_dimension_order(swapped)
    assert img.has_same_dimension_order(img.quick_copy().mirror())


def test_simple_stride_and_origin():
    img = Image.from_array(np.arange(12.0).reshape(3, 4))
    assert img.simple_stride_and_origin() == (1, 0)
    assert img.quick_copy().mirror().simple_stride_and_origin() == (1, 0)
    assert img.at(slice(None), slice(0, None, 2)).simple_stride_and_origin() == (2, 0)
    assert not img.at(slice(None), slice(0, 3)).has_simple_stride


def test_force_normal_strides_and_contiguous_data():
    values = np.arange(12.0).reshape(3, 4)
    transposed = Image.from_array(values.T)
    assert not transposed.has_normal_strides
    transposed.force_normal_strides()
    assert transposed.strides == (3, 1)
    np.testing.assert_array_equal(transposed.as_array()[..., 0], values.T)

    base = Image.from_array(values)
    every_other = base.at(slice(None), slice(0, None, 2))
    assert not every_other.has_contiguous_data
    every_other.force_contiguous_data()
    assert every_other.has_contiguous_data
    assert not every_other.shares_data(base)
    np.testing.assert_array_equal(every_other.as_array()[..., 0], values[:, ::2])


def test_reforge_like():
    src = Image((2, 3), 2, "uint8")
    out = Image().reforge_like(src, "sfloat")
    assert out.sizes == (2, 3)
    assert out.tensor_elements == 2
    assert out.data_type is DataType.SFLOAT


# ===================
# Tensor reshaping
# ===================

def test_expand_singleton_tensor():
    img = Image.from_array(np.arange(3.0)).expand_singleton_tensor(4)
    assert img.tensor_elements == 4
    assert img.is_singleton_expanded
    assert img.as_array()[1].tolist() == [1.0] * 4
    with pytest.raises(TensorShapeMismatch):
        Image((2,), 2, "dfloat").expand_singleton_tensor(4)


def test_reshape_tensor():
    img = Image((2,), 6, "sint32")
    assert img.reshape_tensor(2, 3).tensor_sizes == (2, 3)
    with pytest.raises(TensorShapeMismatch):
        img.reshape_tensor(4, 2)
    assert img.reshape_tensor_as_vector().tensor == Tensor.vector(6)
    diag = Image((2,), 3, "sint32").reshape_tensor_as_diagonal()
    assert diag.tensor.shape is TensorShape.DIAGONAL_MATRIX
    assert (diag.tensor.rows, diag.tensor.columns) == (3, 3)
    assert diag.transpose().tensor.shape is TensorShape.DIAGONAL_MATRIX
