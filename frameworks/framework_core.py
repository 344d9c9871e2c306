# ==================================================
# ============  MODULE: framework_core  ============
# ==================================================
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Iterable, List, Optional, Sequence, Tuple

import numpy as np
from joblib import Parallel, delayed

from core.config import get_global_config
from core.data_types import DataType, DataTypeLike, DataTypeSet, convert_array
from core.errors import FrameworkError, UnsupportedDataType
from core.tensor import Tensor
from utils.logger import get_debug_logger, get_error_logger

# Public API
__all__ = [
    "LineFilter",
    "LineBuffer",
    "TaskOutcome",
    "check_buffer_type",
    "broadcast_list",
    "plan_threads",
    "split_lines",
    "run_chunks",
    "line_index",
    "read_line",
    "write_line",
    "buffer_tensor",
]


# ==================================================
# ================ CLASS: LineFilter ===============
# ==================================================
class LineFilter(ABC):
    """
    Unit of work a framework calls once per image line.

    Frameworks call `set_number_of_threads(n)` before dispatching; from then on
    `filter(params)` may run concurrently on `n` threads, and each call may only
    touch the scratch state in `self.thread_states[params.thread]` and its own
    output buffers.

    Attributes
    ----------
    supported_data_types : container of DataType
        Buffer types the filter accepts. The framework checks the negotiated
        buffer types against it before any line is processed.
    thread_states : list
        One `make_thread_state()` result per thread.
    """

    supported_data_types: Iterable[DataType] = DataTypeSet.ALL

    def set_number_of_threads(self, n: int) -> None:
        self.thread_states = [self.make_thread_state() for _ in range(n)]

    def make_thread_state(self) -> Any:
        """Scratch state for one thread; None when the filter needs none."""
        return None

    @abstractmethod
    def filter(self, params: Any) -> None:
        ...

    def get_number_of_operations(self, line_length: int, n_tensor_elements: int, n_kernel_pixels: int = 1) -> int:
        """Estimated cost of one line, used to decide whether threads pay off."""
        return line_length * n_tensor_elements * n_kernel_pixels

    def finalize(self) -> None:
        """Called once after all lines were processed without error."""


# ==================================================
# ================ CLASS: LineBuffer ===============
# ==================================================
@dataclass
class LineBuffer:
    """
    Samples of one line as handed to a line filter.

    `buffer` has shape `(border + length + border, tensor_elements)` and may be a
    view into the image or a conversion buffer; `data` excludes the border.
    """

    buffer: np.ndarray
    length: int
    tensor: Tensor
    border: int = 0

    @property
    def data(self) -> np.ndarray:
        return self.buffer[self.border:self.border + self.length]

    @property
    def data_type(self) -> DataType:
        return DataType.from_numpy(self.buffer.dtype)

    @property
    def stride(self) -> int:
        return self.buffer.strides[0] // self.buffer.itemsize

    @property
    def tensor_stride(self) -> int:
        return self.buffer.strides[1] // self.buffer.itemsize

    @property
    def tensor_elements(self) -> int:
        return self.buffer.shape[1]


@dataclass
class TaskOutcome:
    """Result of one chunk of lines: `error` is set when the chunk failed."""

    index: int
    first: int
    stop: int
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


# ==================================================
# ================== Validation ====================
# ==================================================
def check_buffer_type(line_filter: LineFilter, data_type: DataTypeLike, what: str = "buffer") -> DataType:
    """Raise UnsupportedDataType when the filter cannot work on `data_type` buffers."""
    dt = DataType.from_any(data_type)
    if dt not in line_filter.supported_data_types:
        raise UnsupportedDataType(f"Line filter {type(line_filter).__name__} does not support {what} type '{dt}'.")
    return dt


def broadcast_list(values: Any, n: int, what: str) -> List[Any]:
    """One value per image: a single value is repeated, other lengths are an error."""
    if n == 0:
        return []
    if isinstance(values, (str, DataType, int)) or values is None:
        values = [values]
    values = list(values)
    if len(values) == 1 and n != 1:
        values = values * n
    if len(values) != n:
        raise FrameworkError(f"Expected {n} {what}, got {len(values)}.")
    return values


# ==================================================
# ================ Thread dispatch =================
# ==================================================
def plan_threads(n_lines: int, operations: int, no_multithreading: bool = False) -> int:
    """
    Number of threads for a job of `n_lines` lines costing `operations` in total.

    Jobs smaller than twice `GlobalConfig.min_operations_per_thread` stay on
    the calling thread; no thread gets less than that amount of work.
    """
    config = get_global_config()
    if no_multithreading or n_lines < 2:
        return 1
    max_threads = config.max_threads()
    if max_threads < 2 or operations < 2 * config.min_operations_per_thread:
        return 1
    return int(max(1, min(max_threads, n_lines, operations // config.min_operations_per_thread)))


def split_lines(n_lines: int, n_threads: int) -> List[Tuple[int, int]]:
    """Contiguous `(first, stop)` blocks of whole lines, one per thread."""
    n_threads = max(1, min(n_threads, n_lines)) if n_lines else 1
    bounds = np.linspace(0, n_lines, n_threads + 1).round().astype(int)
    return [(int(a), int(b)) for a, b in zip(bounds[:-1], bounds[1:])]


def run_chunks(
    worker: Callable[[int, int, int], None],
    n_lines: int,
    n_threads: int,
    label: str,
) -> List[TaskOutcome]:
    """
    Run `worker(thread, first, stop)` over contiguous blocks of lines.

    Every block runs to completion or to its first exception. After all
    blocks joined, the error of the first failed block (in line order) is
    logged and re-raised; blocks that succeeded keep their output.
    """
    chunks = split_lines(n_lines, n_threads)

    def guarded(index: int, first: int, stop: int) -> TaskOutcome:
        try:
            worker(index, first, stop)
        except Exception as e:
            return TaskOutcome(index, first, stop, e)
        return TaskOutcome(index, first, stop)

    if len(chunks) == 1:
        outcomes = [guarded(0, *chunks[0])]
    else:
        outcomes = Parallel(n_jobs=len(chunks), backend=get_global_config().backend)(
            delayed(guarded)(i, first, stop) for i, (first, stop) in enumerate(chunks)
        )

    failed = [o for o in outcomes if not o.ok]
    if failed:
        first = failed[0]
        get_error_logger().error(
            f"[{label}] line filter failed on lines {first.first}..{first.stop - 1} "
            f"({len(failed)} of {len(outcomes)} blocks failed): {first.error!r}",
            exc_info=first.error,
        )
        raise first.error
    get_debug_logger().debug(f"[{label}] {n_lines} lines done in {len(outcomes)} block(s)")
    return outcomes


# ==================================================
# ================== Line access ===================
# ==================================================
def line_index(coords: Sequence[int], proc_dim: int) -> Tuple[Any, ...]:
    """NumPy index selecting the line through `coords` along `proc_dim` (tensor axis kept)."""
    index: List[Any] = [int(c) for c in coords]
    index[proc_dim] = slice(None)
    return tuple(index)


def read_line(
    view: np.ndarray,
    buffer_type: DataType,
    lookup: Optional[Sequence[int]] = None,
    force_copy: bool = False,
) -> np.ndarray:
    """
    Line samples in `buffer_type`, shape `(length, tensor_elements)`.

    Returns the view itself when no conversion is needed; `lookup` maps each
    buffer tensor element to a stored element (-1 for an implicit zero).
    """
    if lookup is not None:
        out = np.zeros((view.shape[0], len(lookup)), dtype=buffer_type.numpy_dtype)
        for k, idx in enumerate(lookup):
            if idx >= 0:
                out[:, k] = convert_array(view[:, idx], buffer_type)
        return out
    if view.dtype == buffer_type.numpy_dtype:
        return view.copy() if force_copy else view
    return convert_array(view, buffer_type)


def write_line(buffer: np.ndarray, view: np.ndarray) -> None:
    """Store a filter's output buffer into the image line, saturating."""
    if buffer is view:
        return
    view[...] = convert_array(buffer, DataType.from_numpy(view.dtype))


def buffer_tensor(tensor: Tensor, expand: bool) -> Tuple[Tensor, Optional[List[int]]]:
    """Tensor seen by the filter and the element lookup that produces it (None: as stored)."""
    if expand and not (tensor.has_normal_order and tensor.has_full_storage):
        return tensor.expanded(), tensor.lookup_table()
    return tensor, None
