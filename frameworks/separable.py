# ==================================================
# ==============  MODULE: separable  ===============
# ==================================================
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple, Union

import numpy as np

from core.boundary import boundary_condition_array, extend_line
from core.config import SeparableOptions
from core.coordinates import line_coordinates, number_of_lines
from core.data_types import DataType, DataTypeLike, convert_array
from core.errors import DimensionalityMismatch, FrameworkError, SizesDontMatch, check_forged
from core.image import Image
from frameworks.framework_core import (
    LineBuffer,
    LineFilter,
    check_buffer_type,
    line_index,
    plan_threads,
    read_line,
    run_chunks,
    write_line,
)
from utils.decorators import FRAMEWORK_TIMERS, safe_timer
from utils.logger import get_debug_logger

# Public API
__all__ = ["SeparableLineFilterParameters", "separable"]


@dataclass
class SeparableLineFilterParameters:
    """
    What a separable line filter receives for one line of one pass.

    Attributes
    ----------
    in_buffer : LineBuffer
        Input line with `border` synthesized samples on each side (read-only).
    out_buffer : LineBuffer
        Output line; its length differs from the input's when the output is resampled.
    dimension : int
        Dimension processed in this pass.
    pass_number, n_passes : int
        Index of this pass and total number of passes.
    position : tuple of int
        Coordinates of the first pixel of the line.
    tensor_to_spatial : bool
        Tensor elements are processed as separate scalar images.
    thread : int
        Index of the thread slot the call may use.
    """

    in_buffer: LineBuffer
    out_buffer: LineBuffer
    dimension: int
    pass_number: int
    n_passes: int
    position: Tuple[int, ...]
    tensor_to_spatial: bool
    thread: int


def _per_dimension(value: Union[int, Sequence[int]], ndims: int, what: str) -> List[int]:
    values = [int(value)] * ndims if np.isscalar(value) else [int(v) for v in value]
    if len(values) == 1:
        values = values * ndims
    if len(values) != ndims:
        raise DimensionalityMismatch(f"Expected one {what} per dimension ({ndims}), got {len(values)}.")
    return values


def _copy_converted(source: Image, dest: Image) -> None:
    dest.as_array()[...] = convert_array(source.as_array(), dest.data_type)


def _run_pass(
    source: Image,
    dest: Image,
    dim: int,
    border: int,
    condition: Any,
    buffer_type: DataType,
    pass_number: int,
    n_passes: int,
    line_filter: LineFilter,
    options: SeparableOptions,
) -> None:
    in_array, out_array = source.as_array(), dest.as_array()
    in_length, out_length = source.size(dim), dest.size(dim)
    tensor = source.tensor
    n_lines = number_of_lines(source.sizes, dim)
    direct_in = (
        border == 0
        and in_array.dtype == buffer_type.numpy_dtype
        and not options.use_input_buffer
        and not dest.aliases(source)
    )
    direct_out = out_array.dtype == buffer_type.numpy_dtype and not options.use_output_buffer

    operations = line_filter.get_number_of_operations(in_length, source.tensor_elements) * n_lines
    n_threads = plan_threads(n_lines, operations, options.no_multithreading)
    line_filter.set_number_of_threads(n_threads)
    get_debug_logger().debug(
        f"[separable] pass {pass_number + 1}/{n_passes} along dim {dim}: {n_lines} lines "
        f"{in_length}->{out_length} px, border {border} ({condition}), {n_threads} thread(s)"
    )

    def worker(thread: int, first: int, stop: int) -> None:
        for coords in line_coordinates(source.sizes, dim, first, stop):
            index = line_index(coords, dim)
            if direct_in:
                in_buffer = read_line(in_array[index], buffer_type)
            else:
                in_buffer = np.empty((in_length + 2 * border, source.tensor_elements), buffer_type.numpy_dtype)
                in_buffer[border:border + in_length] = read_line(in_array[index], buffer_type)
                extend_line(in_buffer, border, condition, buffer_type)
            in_buffer.setflags(write=False)
            out_line = out_array[index]
            if direct_out:
                out_buffer = out_line
            elif options.read_input_every_pass:
                out_buffer = read_line(out_line, buffer_type, force_copy=True)
            else:
                out_buffer = np.empty(out_line.shape, buffer_type.numpy_dtype)
            line_filter.filter(SeparableLineFilterParameters(
                in_buffer=LineBuffer(in_buffer, in_length, tensor, border),
                out_buffer=LineBuffer(out_buffer, out_length, tensor),
                dimension=dim,
                pass_number=pass_number,
                n_passes=n_passes,
                position=tuple(int(c) for c in coords),
                tensor_to_spatial=options.as_scalar_image,
                thread=thread,
            ))
            write_line(out_buffer, out_line)

    run_chunks(worker, n_lines, n_threads, f"separable dim {dim}")


# ==================================================
# ==================== Framework ===================
# ==================================================
@safe_timer(log_errors=False, name="separable", timers=FRAMEWORK_TIMERS)
def separable(
    input: Image,
    output: Image,
    buffer_type: DataTypeLike,
    out_data_type: DataTypeLike,
    process: Optional[Sequence[bool]],
    border: Union[int, Sequence[int]],
    boundary_conditions: Any,
    line_filter: LineFilter,
    options: Optional[SeparableOptions] = None,
) -> Image:
    """
    Apply a 1-D line filter along each processed dimension in turn.

    Every pass is a barrier: it reads the complete result of the previous pass
    (or the input, with `read_input_every_pass`) and is itself split over
    threads by whole lines. Input lines are copied into buffers extended by
    `border[d]` samples synthesized with `boundary_conditions[d]`.

    Parameters
    ----------
    input : Image
        Forged input.
    output : Image
        Reforged to the input sizes, or kept at its own sizes with
        `dont_resize_output` (the filter then resamples each line).
    buffer_type : DataType
        Sample type of the line buffers and of intermediate images.
    out_data_type : DataType
        Sample type of the output.
    process : sequence of bool or None
        Dimensions to process (all when None). Dimensions of size 1 are skipped
        unless the output size differs.
    border : int or sequence of int
        Samples needed at each side of the lines, per dimension.
    boundary_conditions : str, BoundaryCondition or sequence
        One per dimension, or one for all.
    line_filter : LineFilter
    options : SeparableOptions, optional

    Returns
    -------
    Image
        `output`.
    """
    options = options or SeparableOptions()
    check_forged(input)
    buffer_type = check_buffer_type(line_filter, buffer_type)
    out_data_type = DataType.from_any(out_data_type)
    ndims = input.ndims

    process = [True] * ndims if process is None else [bool(p) for p in process]
    if len(process) != ndims:
        raise DimensionalityMismatch(f"Expected {ndims} process flags, got {len(process)}.")
    border = _per_dimension(border, ndims, "border") if ndims else []
    conditions = list(boundary_condition_array(boundary_conditions, ndims))

    # ====[ Output geometry ]====
    in_sizes = input.sizes
    if options.dont_resize_output and output.is_forged:
        out_sizes = output.sizes
        if len(out_sizes) != ndims:
            raise DimensionalityMismatch(f"Output is {len(out_sizes)}-D, input is {ndims}-D.")
    else:
        out_sizes = in_sizes
    for d in range(ndims):
        if not process[d] and out_sizes[d] != in_sizes[d]:
            raise SizesDontMatch(f"Dimension {d} is not processed but its size changes.")
    if options.read_input_every_pass and out_sizes != in_sizes:
        raise FrameworkError("Reading the input every pass needs an output of the input's sizes.")

    work_in = input.quick_copy()
    if options.expand_tensor_in_buffer and not options.as_scalar_image:
        work_in.expand_tensor()
    output.reforge(out_sizes, work_in.tensor, out_data_type, accept_data_type_change=True)
    target = output
    if output.aliases(input):
        target = Image(out_sizes, output.tensor, output.data_type)
    work_out = target.quick_copy()

    if options.as_scalar_image and work_in.tensor_elements > 1:
        work_in.tensor_to_spatial()
        work_out.tensor_to_spatial()
        process.append(False)
        border.append(0)
        conditions.append(None)

    active = [
        d for d in range(len(process))
        if process[d] and (work_in.size(d) > 1 or work_out.size(d) != work_in.size(d))
    ]

    # ====[ Passes ]====
    if not active or options.read_input_every_pass:
        _copy_converted(work_in, work_out)
    current = work_in
    for p, d in enumerate(active):
        source = work_in if options.read_input_every_pass else current
        if p == len(active) - 1 or options.read_input_every_pass:
            dest = work_out
        else:
            sizes = list(source.sizes)
            sizes[d] = work_out.size(d)
            dest = Image(tuple(sizes), source.tensor, buffer_type)
        _run_pass(source, dest, d, border[d], conditions[d], buffer_type, p, len(active), line_filter, options)
        current = dest

    if target is not output:
        output.as_array()[...] = target.as_array()
    line_filter.finalize()
    return output
