# ==================================================
# ================  MODULE: scan  ==================
# ==================================================
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence, Tuple, Union

import numpy as np

from core.config import ScanOptions
from core.coordinates import line_coordinates, number_of_lines, optimal_processing_dim
from core.data_types import DataType, DataTypeLike, DataTypeSet
from core.errors import FrameworkError, SizesDontMatch, TensorShapeMismatch, check_forged, check_same_sizes
from core.image import Image
from core.tensor import Tensor
from frameworks.framework_core import (
    LineBuffer,
    LineFilter,
    broadcast_list,
    buffer_tensor,
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
__all__ = [
    "ScanLineFilterParameters",
    "VariadicScanLineFilter",
    "scan",
    "scan_single_input",
    "scan_single_output",
    "scan_monadic",
    "scan_dyadic",
]

TensorLike = Union[int, Tensor]


@dataclass
class ScanLineFilterParameters:
    """
    What a scan line filter receives for one line.

    Attributes
    ----------
    in_buffer, out_buffer : list of LineBuffer
        One buffer per input and output image, all of `buffer_length` pixels.
        Input buffers are read-only.
    buffer_length : int
        Number of pixels on the line.
    dimension : int
        Dimension along which the line runs.
    position : tuple of int or None
        Coordinates of the first pixel (only with `need_coordinates`).
    tensor_to_spatial : bool
        Tensor elements were folded into an extra (last) spatial dimension.
    thread : int
        Index of the thread slot the call may use.
    """

    in_buffer: List[LineBuffer]
    out_buffer: List[LineBuffer]
    buffer_length: int
    dimension: int
    position: Optional[Tuple[int, ...]]
    tensor_to_spatial: bool
    thread: int


# ==================================================
# ============ CLASS: VariadicScanLineFilter =======
# ==================================================
class VariadicScanLineFilter(LineFilter):
    """
    Scan line filter computing the single output line as `func(*input_lines)`.

    `func` receives one `(length, tensor_elements)` array per input and must
    return something that broadcasts to the output buffer.

    Examples
    --------
    >>> add = VariadicScanLineFilter(lambda a, b: a + b, n_inputs=2)
    """

    def __init__(
        self,
        func: Callable[..., Any],
        n_inputs: int,
        operations_per_pixel: int = 1,
        supported_data_types: Any = DataTypeSet.ALL,
    ):
        self.func = func
        self.n_inputs = int(n_inputs)
        self.operations_per_pixel = int(operations_per_pixel)
        self.supported_data_types = supported_data_types

    def filter(self, params: ScanLineFilterParameters) -> None:
        if len(params.in_buffer) != self.n_inputs or len(params.out_buffer) != 1:
            raise FrameworkError(
                f"Variadic filter expects {self.n_inputs} inputs and 1 output, "
                f"got {len(params.in_buffer)} and {len(params.out_buffer)}."
            )
        params.out_buffer[0].data[...] = self.func(*(b.data for b in params.in_buffer))

    def get_number_of_operations(self, line_length: int, n_tensor_elements: int, n_kernel_pixels: int = 1) -> int:
        return line_length * n_tensor_elements * self.operations_per_pixel * max(1, self.n_inputs)


# ==================================================
# ==================== Helpers =====================
# ==================================================
def _as_tensor(value: TensorLike) -> Tensor:
    return value if isinstance(value, Tensor) else Tensor.vector(int(value))


def _common_sizes(images: Sequence[Image], no_singleton_expansion: bool) -> Tuple[int, ...]:
    """Sizes all inputs broadcast to (leading singleton dimensions added as needed)."""
    if no_singleton_expansion:
        check_same_sizes(images[0].sizes, (img.sizes for img in images[1:]), "scan inputs")
        return images[0].sizes
    ndims = max(img.ndims for img in images)
    sizes = [1] * ndims
    for img in images:
        own = (1,) * (ndims - img.ndims) + img.sizes
        for d, n in enumerate(own):
            if n != 1:
                if sizes[d] not in (1, n):
                    raise SizesDontMatch(f"Scan inputs cannot be expanded to common sizes: {[i.sizes for i in images]}.")
                sizes[d] = n
    return tuple(sizes)


def _common_tensor_elements(counts: Sequence[int]) -> int:
    common = max(counts)
    if any(n not in (1, common) for n in counts):
        raise TensorShapeMismatch(f"Tensor elements {tuple(counts)} cannot be expanded to a common count.")
    return common


# ==================================================
# ==================== Framework ===================
# ==================================================
@safe_timer(log_errors=False, name="scan", timers=FRAMEWORK_TIMERS)
def scan(
    inputs: Sequence[Image],
    outputs: Sequence[Image],
    in_buffer_types: Any,
    out_buffer_types: Any,
    out_data_types: Any,
    n_tensor_elements: Any,
    line_filter: LineFilter,
    options: Optional[ScanOptions] = None,
) -> List[Image]:
    """
    Apply a pixel-wise line filter to any number of inputs and outputs in lock-step.

    Parameters
    ----------
    inputs : sequence of Image
        Forged images; singleton dimensions are expanded to a common size.
    outputs : sequence of Image
        Reforged to the common size with the requested type and tensor size.
        With no inputs, the first output's sizes define the job.
    in_buffer_types, out_buffer_types : DataType or sequence
        Types the filter sees per input / output (one value is repeated).
    out_data_types : DataType or sequence
        Sample types of the outputs.
    n_tensor_elements : int, Tensor or sequence
        Tensor of each output.
    line_filter : LineFilter
    options : ScanOptions, optional

    Returns
    -------
    list of Image
        The outputs.

    Raises
    ------
    ImageNotForged, SizesDontMatch, DimensionalityMismatch, TensorShapeMismatch,
    UnsupportedDataType, FrameworkError
        Before any line is processed.

    Notes
    -----
    An output that overlaps an input without being the identical view (or any
    output overlapping an input with `not_in_place`) is computed in a temporary
    image and copied back. 0-D images are processed as a single pixel.
    """
    options = options or ScanOptions()
    inputs, outputs = list(inputs), list(outputs)
    if not inputs and not outputs:
        raise FrameworkError("Scan needs at least one input or output image.")
    check_forged(*inputs)

    in_types = [check_buffer_type(line_filter, t, "input buffer")
                for t in broadcast_list(in_buffer_types, len(inputs), "input buffer types")]
    out_types = [check_buffer_type(line_filter, t, "output buffer")
                 for t in broadcast_list(out_buffer_types, len(outputs), "output buffer types")]
    out_dtypes = [DataType.from_any(t) for t in broadcast_list(out_data_types, len(outputs), "output data types")]
    out_tensors = [_as_tensor(t) for t in broadcast_list(n_tensor_elements, len(outputs), "output tensors")]

    # ====[ Sizes and tensors ]====
    if inputs:
        sizes = _common_sizes(inputs, options.no_singleton_expansion)
    else:
        sizes = outputs[0].sizes
    in_views = [img.quick_copy() for img in inputs]
    if options.tensor_as_spatial_dim:
        n_tensor = _common_tensor_elements(
            [v.tensor_elements for v in in_views] + [t.elements for t in out_tensors]
        )
        for v in in_views:
            v.tensor_to_spatial()
        work_sizes = sizes + (n_tensor,)
    else:
        work_sizes = sizes
    for v in in_views:
        v.expand_singleton_dimensions(work_sizes)

    # ====[ Outputs ]====
    work_outputs: List[Image] = []
    copy_back: List[Tuple[Image, Image]] = []
    for k, (out, dt, tensor) in enumerate(zip(outputs, out_dtypes, out_tensors)):
        out.reforge(sizes, tensor, dt, accept_data_type_change=True)
        others = outputs[:k] + outputs[k + 1:]
        overlapping = any(
            out.aliases(img) and (options.not_in_place or not out.is_identical_view(img)) for img in inputs
        ) or any(out.aliases(o) for o in others)
        if overlapping:
            temp = Image(out.sizes, out.tensor, out.data_type)
            copy_back.append((temp, out))
            out = temp
        view = out.quick_copy()
        if options.tensor_as_spatial_dim:
            if view.tensor_elements != work_sizes[-1]:
                raise TensorShapeMismatch(
                    f"Output has {view.tensor_elements} tensor elements, inputs have {work_sizes[-1]}."
                )
            view.tensor_to_spatial()
        work_outputs.append(view)
    if not work_sizes:
        work_sizes = (1,)
        for v in in_views + work_outputs:
            v.expand_dimensionality(1)

    # ====[ Line geometry ]====
    reference = work_outputs[0] if work_outputs else in_views[0]
    proc_dim = optimal_processing_dim(work_sizes, reference.strides)
    length = work_sizes[proc_dim]
    n_lines = number_of_lines(work_sizes, proc_dim)
    in_layout = [buffer_tensor(v.tensor, options.expand_tensor_in_buffer) for v in in_views]
    in_arrays = [v.as_array() for v in in_views]
    out_arrays = [v.as_array() for v in work_outputs]
    out_buffer_tensors = [v.tensor for v in work_outputs]
    widest = max([t.elements for t, _ in in_layout] + [t.elements for t in out_buffer_tensors])

    operations = line_filter.get_number_of_operations(length, widest) * n_lines
    n_threads = plan_threads(n_lines, operations, options.no_multithreading)
    line_filter.set_number_of_threads(n_threads)
    get_debug_logger().debug(
        f"[scan] {n_lines} lines of {length} px along dim {proc_dim}, {n_threads} thread(s), "
        f"in={[str(t) for t in in_types]} out={[str(t) for t in out_types]}"
    )

    def worker(thread: int, first: int, stop: int) -> None:
        for coords in line_coordinates(work_sizes, proc_dim, first, stop):
            index = line_index(coords, proc_dim)
            in_buffers = []
            for array, buffer_type, (tensor, lookup) in zip(in_arrays, in_types, in_layout):
                values = read_line(array[index], buffer_type, lookup)
                values.setflags(write=False)
                in_buffers.append(LineBuffer(values, length, tensor))
            out_buffers = []
            for array, buffer_type, tensor in zip(out_arrays, out_types, out_buffer_tensors):
                view = array[index]
                buffer = view if view.dtype == buffer_type.numpy_dtype else np.empty(view.shape, buffer_type.numpy_dtype)
                out_buffers.append(LineBuffer(buffer, length, tensor))
            line_filter.filter(ScanLineFilterParameters(
                in_buffer=in_buffers,
                out_buffer=out_buffers,
                buffer_length=length,
                dimension=proc_dim,
                position=tuple(int(c) for c in coords) if options.need_coordinates else None,
                tensor_to_spatial=options.tensor_as_spatial_dim,
                thread=thread,
            ))
            for buffer, array in zip(out_buffers, out_arrays):
                write_line(buffer.buffer, array[index])

    run_chunks(worker, n_lines, n_threads, "scan")
    for temp, out in copy_back:
        out.as_array()[...] = temp.as_array()
    line_filter.finalize()
    return outputs


# ==================================================
# ================= Convenience ====================
# ==================================================
def scan_single_input(
    image: Image,
    buffer_type: DataTypeLike,
    line_filter: LineFilter,
    options: Optional[ScanOptions] = None,
) -> None:
    """Read-only pass over one image (e.g. to accumulate statistics in the filter)."""
    scan([image], [], [buffer_type], [], [], [], line_filter, options)


def scan_single_output(
    output: Image,
    data_type: DataTypeLike,
    n_tensor_elements: TensorLike,
    line_filter: LineFilter,
    options: Optional[ScanOptions] = None,
) -> Image:
    """Generate the samples of `output`, whose sizes must be set."""
    scan([], [output], [], [data_type], [data_type], [n_tensor_elements], line_filter, options)
    return output


def scan_monadic(
    image: Image,
    output: Image,
    buffer_type: DataTypeLike,
    out_data_type: DataTypeLike,
    n_tensor_elements: TensorLike,
    line_filter: LineFilter,
    options: Optional[ScanOptions] = None,
) -> Image:
    scan([image], [output], [buffer_type], [buffer_type], [out_data_type], [n_tensor_elements], line_filter, options)
    return output


def scan_dyadic(
    in1: Image,
    in2: Image,
    output: Image,
    in_buffer_type: DataTypeLike,
    out_buffer_type: DataTypeLike,
    out_data_type: DataTypeLike,
    line_filter: LineFilter,
    options: Optional[ScanOptions] = None,
) -> Image:
    """
    Two inputs, one output. A scalar input is repeated for every tensor element
    of the other; the output takes the tensor shape of the non-scalar input.
    """
    check_forged(in1, in2)
    a, b = in1.quick_copy(), in2.quick_copy()
    tensor = a.tensor
    if a.tensor_elements != b.tensor_elements:
        if a.is_scalar:
            a.expand_singleton_tensor(b.tensor_elements)
            tensor = b.tensor
        elif b.is_scalar:
            b.expand_singleton_tensor(a.tensor_elements)
        else:
            raise TensorShapeMismatch(
                f"Tensor elements {in1.tensor_elements} and {in2.tensor_elements} are incompatible."
            )
    scan([a, b], [output], [in_buffer_type], [out_buffer_type], [out_data_type], [tensor], line_filter, options)
    return output
