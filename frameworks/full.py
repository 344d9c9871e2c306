# ==================================================
# ================  MODULE: full  ==================
# ==================================================
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

import numpy as np

from core.boundary import BoundaryCondition, boundary_condition_array, extend_image
from core.config import FullOptions
from core.coordinates import line_coordinates, number_of_lines, optimal_processing_dim
from core.data_block import byte_extent
from core.data_types import DataType, DataTypeLike, convert_array
from core.errors import TensorShapeMismatch, check_forged
from core.image import Image
from core.pixel_table import Kernel, PixelTable, PixelTableOffsets
from core.tensor import Tensor
from frameworks.framework_core import (
    LineBuffer,
    LineFilter,
    check_buffer_type,
    line_index,
    plan_threads,
    run_chunks,
    write_line,
)
from utils.decorators import FRAMEWORK_TIMERS, safe_timer
from utils.logger import get_debug_logger

# Public API
__all__ = ["FullLineFilterParameters", "full"]


@dataclass
class FullLineFilterParameters:
    """
    What a full (neighborhood) line filter receives for one output line.

    The input is a flat, read-only array of samples covering the input image
    extended by the kernel border. Pixel `k` of the line sits at sample
    `in_position + k * in_stride`; its neighbors are at the same index plus
    `offsets`, and tensor element `t` of any of them `t * in_tensor_stride`
    further.

    Attributes
    ----------
    in_buffer : np.ndarray
        Flat sample array of the extended input, in the input buffer type.
    in_position : int
        Index in `in_buffer` of the first pixel of the line.
    in_stride, in_tensor_stride : int
        Steps along the line and between tensor elements.
    in_tensor : Tensor
        Tensor of the input samples.
    out_buffer : LineBuffer
        Output line.
    buffer_length : int
        Number of pixels on the line.
    dimension : int
        Dimension along which the line runs (the pixel table's processing dimension).
    position : tuple of int
        Coordinates of the first pixel of the line in the output image.
    pixel_table : PixelTableOffsets
        Runs `(offset, length)` with stride `in_stride`, and weights.
    offsets : np.ndarray
        Offset of every neighborhood pixel, in run order.
    thread : int
        Index of the thread slot the call may use.
    """

    in_buffer: np.ndarray
    in_position: int
    in_stride: int
    in_tensor_stride: int
    in_tensor: Tensor
    out_buffer: LineBuffer
    buffer_length: int
    dimension: int
    position: Tuple[int, ...]
    pixel_table: PixelTableOffsets
    offsets: np.ndarray
    thread: int

    @property
    def weights(self) -> Optional[np.ndarray]:
        return self.pixel_table.weights

    def gather(self) -> np.ndarray:
        """
        Neighborhood samples of every pixel of the line.

        Returns
        -------
        np.ndarray
            Shape `(length, n_pixels)` for scalar images, `(length, n_pixels,
            tensor_elements)` otherwise.
        """
        index = (
            self.in_position
            + self.in_stride * np.arange(self.buffer_length, dtype=np.int64)[:, None]
            + self.offsets[None, :]
        )
        if self.in_tensor.elements > 1:
            index = index[..., None] + self.in_tensor_stride * np.arange(self.in_tensor.elements, dtype=np.int64)
        return self.in_buffer[index]


def _flat_samples(image: Image) -> Tuple[np.ndarray, int]:
    """Read-only 1-D array of all samples spanned by `image`, and the byte offset where it starts."""
    itemsize = image.data_type.size_of
    lo, hi = byte_extent(
        image.sizes + (image.tensor_elements,),
        [s * itemsize for s in image.strides + (image.tensor_stride,)],
        itemsize,
    )
    raw = image.data_block.raw[image.origin + lo:image.origin + hi]
    samples = raw.view(image.data_type.numpy_dtype)
    samples.setflags(write=False)
    return samples, image.origin + lo


def _border_of(table: PixelTable) -> List[int]:
    return [max(-o, o + n - 1, 0) for o, n in zip(table.origin, table.sizes)]


def _extended_input(
    image: Image,
    border: List[int],
    conditions: Tuple[BoundaryCondition, ...],
    buffer_type: DataType,
    output: Image,
    options: FullOptions,
) -> Image:
    """Input grown by `border`, in `buffer_type`, by synthesis or from the surrounding memory."""
    already = options.border_already_expanded or all(c is BoundaryCondition.ALREADY_EXPANDED for c in conditions)
    if already:
        extended = image.extend_view(border)
        if extended.data_type is not buffer_type or extended.aliases(output):
            copy = Image(extended.sizes, extended.tensor, buffer_type)
            copy.as_array()[...] = convert_array(extended.as_array(), buffer_type)
            extended = copy
    else:
        extended = extend_image(image, border, conditions)
        extended.convert(buffer_type)
    if options.expand_tensor_in_buffer and not options.as_scalar_image:
        extended.expand_tensor()
    return extended


# ==================================================
# ==================== Framework ===================
# ==================================================
@safe_timer(log_errors=False, name="full", timers=FRAMEWORK_TIMERS)
def full(
    input: Image,
    output: Image,
    in_buffer_type: DataTypeLike,
    out_buffer_type: DataTypeLike,
    out_data_type: DataTypeLike,
    n_tensor_elements: int,
    boundary_conditions: Any,
    kernel: Optional[Kernel],
    line_filter: LineFilter,
    options: Optional[FullOptions] = None,
) -> Image:
    """
    Apply a neighborhood line filter: every output pixel sees the input pixels
    selected by `kernel` around it.

    The input is extended by the kernel's border using `boundary_conditions`
    (or, with "already expanded" / `border_already_expanded`, the memory
    around the input is read as is). The kernel's pixel table is converted to
    offsets in the extended input and handed to the filter with every line.

    Parameters
    ----------
    input : Image
        Forged input.
    output : Image
        Reforged to the input sizes with `n_tensor_elements` and `out_data_type`.
    in_buffer_type, out_buffer_type : DataType
        Sample types the filter reads and writes.
    out_data_type : DataType
    n_tensor_elements : int
        Tensor elements of the output. With `as_scalar_image` it must equal
        the input's, and every tensor element is filtered as a scalar image.
    boundary_conditions : str, BoundaryCondition or sequence
    kernel : Kernel, optional
        Neighborhood; a 7x7x... elliptic kernel when None.
    line_filter : LineFilter
    options : FullOptions, optional

    Returns
    -------
    Image
        `output`.

    Examples
    --------
    For a 1-D image `a` of 5 pixels, a rectangular kernel of size 3 and
    "add zeros", `gather()` on the line returns `[[0, a0, a1], [a0, a1, a2], ...]`.
    """
    options = options or FullOptions()
    check_forged(input)
    in_buffer_type = check_buffer_type(line_filter, in_buffer_type, "input buffer")
    out_buffer_type = check_buffer_type(line_filter, out_buffer_type, "output buffer")
    out_data_type = DataType.from_any(out_data_type)
    kernel = kernel if kernel is not None else Kernel()

    source = input.quick_copy()
    if source.ndims == 0:
        source.expand_dimensionality(1)
    ndims = source.ndims
    conditions = boundary_condition_array(boundary_conditions, ndims)
    if options.as_scalar_image and int(n_tensor_elements) != source.tensor_elements:
        raise TensorShapeMismatch(
            f"Output needs {source.tensor_elements} tensor elements to be processed as scalar images."
        )

    proc_dim = optimal_processing_dim(source.sizes, source.strides)
    table = kernel.pixel_table(ndims, proc_dim)
    border = _border_of(table)

    # ====[ Output ]====
    output.reforge(input.sizes, int(n_tensor_elements), out_data_type, accept_data_type_change=True)
    target = output
    if output.aliases(input):
        target = Image(output.sizes, output.tensor, output.data_type)
    work_out = target.quick_copy()
    if work_out.ndims == 0:
        work_out.expand_dimensionality(1)

    extended = _extended_input(source, border, conditions, in_buffer_type, target, options)
    ext_view = extended.crop(source.sizes, "center")
    samples, start = _flat_samples(extended)
    itemsize = extended.data_type.size_of

    if options.as_scalar_image and source.tensor_elements > 1:
        planes = [(ext_view.tensor_element(t), work_out.tensor_element(t)) for t in range(source.tensor_elements)]
    else:
        planes = [(ext_view, work_out)]

    sizes = source.sizes
    length = sizes[proc_dim]
    lines_per_plane = number_of_lines(sizes, proc_dim)
    n_lines = lines_per_plane * len(planes)
    strides = np.asarray(ext_view.strides, dtype=np.int64)
    offsets = table.offsets(ext_view)
    offsets_array = offsets.offsets_array()
    out_tensor = work_out.tensor if len(planes) == 1 else Tensor()
    prepared = [((in_plane.origin - start) // itemsize, in_plane, out_plane.as_array()) for in_plane, out_plane in planes]

    operations = line_filter.get_number_of_operations(
        length, planes[0][0].tensor_elements, table.number_of_pixels
    ) * n_lines
    n_threads = plan_threads(n_lines, operations, options.no_multithreading)
    line_filter.set_number_of_threads(n_threads)
    get_debug_logger().debug(
        f"[full] {n_lines} lines of {length} px along dim {proc_dim}, kernel {table.sizes} "
        f"({table.number_of_pixels} px, border {tuple(border)}), {n_threads} thread(s)"
    )

    def worker(thread: int, first: int, stop: int) -> None:
        for line in range(first, stop):
            plane, local = divmod(line, lines_per_plane)
            base, in_plane, out_array = prepared[plane]
            coords = line_coordinates(sizes, proc_dim, local, local + 1)[0]
            out_line = out_array[line_index(coords, proc_dim)]
            if out_line.dtype == out_buffer_type.numpy_dtype:
                out_buffer = out_line
            else:
                out_buffer = np.empty(out_line.shape, out_buffer_type.numpy_dtype)
            line_filter.filter(FullLineFilterParameters(
                in_buffer=samples,
                in_position=base + int(coords @ strides),
                in_stride=int(strides[proc_dim]),
                in_tensor_stride=in_plane.tensor_stride,
                in_tensor=in_plane.tensor,
                out_buffer=LineBuffer(out_buffer, length, out_tensor),
                buffer_length=length,
                dimension=proc_dim,
                position=tuple(int(c) for c in coords),
                pixel_table=offsets,
                offsets=offsets_array,
                thread=thread,
            ))
            write_line(out_buffer, out_line)

    run_chunks(worker, n_lines, n_threads, "full")
    if target is not output:
        output.as_array()[...] = target.as_array()
    line_filter.finalize()
    return output
