# ==================================================
# ================ TESTS: Scan framework ===========
# ==================================================
from __future__ import annotations

import numpy as np
import pytest

from core.config import ScanOptions
from core.data_types import DataType, DataTypeSet
from core.errors import SizesDontMatch, TensorShapeMismatch, UnsupportedDataType
from core.image import Image
from core.tensor import Tensor, TensorShape
from frameworks.framework_core import LineFilter
from frameworks.scan import (
    VariadicScanLineFilter,
    scan,
    scan_dyadic,
    scan_monadic,
    scan_single_input,
    scan_single_output,
)


# ===================
# Helpers
# ===================

class _Ramp(LineFilter):
    """Writes `1000 * y + x` using the coordinates handed to the filter."""

    def filter(self, params):
        coords = np.tile(np.asarray(params.position), (params.buffer_length, 1))
        coords[:, params.dimension] += np.arange(params.buffer_length)
        params.out_buffer[0].data[:, 0] = coords[:, 0] * 1000 + coords[:, 1]


class _Sum(LineFilter):
    """Accumulates the sum of all samples, one partial sum per thread."""

    def __init__(self):
        self.total = None

    def make_thread_state(self):
        return [0.0]

    def filter(self, params):
        self.thread_states[params.thread][0] += float(params.in_buffer[0].data.sum())

    def finalize(self):
        self.total = sum(state[0] for state in self.thread_states)


class _FailOnRow(LineFilter):
    def __init__(self, row):
        self.row = row

    def filter(self, params):
        if params.position[0] == self.row:
            raise ValueError(f"row {self.row}")
        params.out_buffer[0].data[...] = 1


class _CountCalls(LineFilter):
    supported_data_types = DataTypeSet.FLOAT

    def __init__(self):
        self.calls = 0

    def filter(self, params):
        self.calls += 1


def _run_product(make_np):
    a = Image.from_array(make_np((40, 90), seed=1))
    b = Image.from_array(make_np((40, 90), seed=2))
    out = Image()
    line_filter = VariadicScanLineFilter(lambda x, y: np.sin(x) * y + x, n_inputs=2)
    scan_dyadic(a, b, out, "dfloat", "dfloat", "dfloat", line_filter)
    return out.as_array().copy()


# ===================
# Pixel-wise results
# ===================

def test_monadic_saturates_into_output_type():
    image = Image.from_array(np.array([250.0, 5.0, -3.0]))
    out = Image()
    add = VariadicScanLineFilter(lambda a: a + 10, n_inputs=1)
    scan_monadic(image, out, "dfloat", "uint8", 1, add)
    assert out.data_type is DataType.UINT8
    assert out.as_array()[:, 0].tolist() == [255, 15, 7]


def test_results_do_not_depend_on_thread_count(make_np, threads):
    threads(1)
    single = _run_product(make_np)
    threads(4)
    multi = _run_product(make_np)
    assert np.array_equal(single, multi)


def test_singleton_expansion_of_inputs():
    col = Image.from_array(np.arange(4.0).reshape(4, 1))
    row = Image.from_array(np.arange(5.0).reshape(1, 5))
    out = Image()
    add = VariadicScanLineFilter(lambda a, b: a + b, n_inputs=2)
    scan_dyadic(col, row, out, "dfloat", "dfloat", "dfloat", add)
    assert out.sizes == (4, 5)
    assert np.array_equal(out.as_array()[..., 0], np.add.outer(np.arange(4.0), np.arange(5.0)))


def test_scalar_input_is_repeated_over_tensor(make_np):
    values = make_np((6, 7, 3), seed=4)
    vec = Image.from_array(values, tensor_axis=-1)
    scalar = Image.from_array(np.full((6, 7), 2.0))
    out = Image()
    mul = VariadicScanLineFilter(lambda a, b: a * b, n_inputs=2)
    scan_dyadic(scalar, vec, out, "dfloat", "dfloat", "dfloat", mul)
    assert out.tensor_elements == 3
    assert np.allclose(out.as_array(), 2.0 * values)


def test_incompatible_sizes():
    a = Image((3, 4), 1, "dfloat")
    b = Image((4, 3), 1, "dfloat")
    add = VariadicScanLineFilter(lambda x, y: x + y, n_inputs=2)
    with pytest.raises(SizesDontMatch):
        scan_dyadic(a, b, Image(), "dfloat", "dfloat", "dfloat", add)
    with pytest.raises(SizesDontMatch):
        scan_dyadic(Image((1, 4), 1, "dfloat"), Image((3, 4), 1, "dfloat"), Image(), "dfloat", "dfloat", "dfloat",
                    add, ScanOptions(no_singleton_expansion=True))


def test_incompatible_tensors():
    a = Image((3, 4), 2, "dfloat")
    b = Image((3, 4), 3, "dfloat")
    add = VariadicScanLineFilter(lambda x, y: x + y, n_inputs=2)
    with pytest.raises(TensorShapeMismatch):
        scan_dyadic(a, b, Image(), "dfloat", "dfloat", "dfloat", add)


# ===================
# Options
# ===================

def test_single_output_with_coordinates():
    out = Image((5, 70), 1, "sint32")
    scan_single_output(out, "sint32", 1, _Ramp(), ScanOptions(need_coordinates=True))
    expected = np.add.outer(np.arange(5) * 1000, np.arange(70))
    assert np.array_equal(out.as_array()[..., 0], expected)


def test_single_input_with_thread_states(make_np, threads):
    threads(3)
    values = make_np((30, 80), seed=7)
    line_filter = _Sum()
    scan_single_input(Image.from_array(values), "dfloat", line_filter)
    assert line_filter.total == pytest.approx(values.sum())
    assert len(line_filter.thread_states) == 3


def test_tensor_as_spatial_dimension(make_np):
    values = make_np((4, 5, 3), seed=8)
    seen = []

    def double(a):
        seen.append(a.shape[1])
        return 2 * a

    out = Image()
    scan_monadic(Image.from_array(values, tensor_axis=-1), out, "dfloat", "dfloat", 3,
                 VariadicScanLineFilter(double, n_inputs=1), ScanOptions(tensor_as_spatial_dim=True))
    assert set(seen) == {1}
    assert out.tensor_elements == 3
    assert np.allclose(out.as_array(), 2 * values)


def test_expand_tensor_in_buffer():
    sym = Tensor.from_shape(TensorShape.SYMMETRIC_MATRIX, 2, 2)
    image = Image((2, 3), sym, "dfloat")
    image.fill([1.0, 2.0, 3.0])  # xx, yy, xy
    out = Image()
    scan_monadic(image, out, "dfloat", "dfloat", 4, VariadicScanLineFilter(lambda a: a, n_inputs=1),
                 ScanOptions(expand_tensor_in_buffer=True))
    assert out.as_array()[0, 0].tolist() == [1.0, 3.0, 3.0, 2.0]


def test_zero_dimensional_image():
    image = Image((), 1, "dfloat").fill(3.0)
    out = Image()
    scan_monadic(image, out, "dfloat", "dfloat", 1, VariadicScanLineFilter(lambda a: a + 1, n_inputs=1))
    assert out.sizes == ()
    assert out.as_array()[0] == 4.0


# ===================
# In-place and overlap
# ===================

def test_identical_view_is_processed_in_place():
    image = Image.from_array(np.arange(6.0))
    scan_monadic(image, image, "dfloat", "dfloat", 1, VariadicScanLineFilter(lambda a: a * 2, n_inputs=1))
    assert image.as_array()[:, 0].tolist() == [0, 2, 4, 6, 8, 10]


def test_overlapping_output_reads_original_input():
    base = Image.from_array(np.arange(6.0))
    source = base.at(slice(0, 5))
    target = base.at(slice(1, 6))
    scan_monadic(source, target, "dfloat", "dfloat", 1, VariadicScanLineFilter(lambda a: a + 10, n_inputs=1))
    assert base.as_array()[:, 0].tolist() == [0, 10, 11, 12, 13, 14]


# ===================
# Failures
# ===================

def test_unsupported_buffer_type_is_rejected_before_dispatch():
    line_filter = _CountCalls()
    with pytest.raises(UnsupportedDataType):
        scan_single_input(Image((4, 4), 1, "uint8"), "uint8", line_filter)
    assert line_filter.calls == 0


def test_filter_error_is_reraised_after_other_lines(threads):
    threads(4)
    out = Image((8, 100), 1, "dfloat").fill(-1)
    with pytest.raises(ValueError, match="row 3"):
        scan_single_output(out, "dfloat", 1, _FailOnRow(3), ScanOptions(need_coordinates=True))
    rows = out.as_array()[..., 0]
    assert np.all(rows[3] == -1)
    assert np.all(rows[[0, 1, 2, 4, 5, 6, 7]] == 1)
