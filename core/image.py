# ==================================================
# ================  MODULE: image  =================
# ==================================================
from __future__ import annotations

import operator
import weakref
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np
from numpy.lib.stride_tricks import as_strided

from core.config import get_global_config
from core.coordinates import (
    CoordinatesComputer,
    RangeLike,
    index_of,
    index_to_coordinates,
    offset_of,
    to_range,
)
from core.data_block import DataBlock, byte_extent
from core.data_types import DataType, DataTypeLike, convert_array
from core.errors import (
    AllocationFailed,
    DimensionalityMismatch,
    DimensionMismatch,
    ImageProtected,
    IndexOutOfRange,
    InvalidShape,
    SizesDontMatch,
    TensorShapeMismatch,
    UnsupportedDataType,
    check_dimension,
    check_forged,
    check_raw,
)
from core.tensor import Tensor, TensorShape

# Public API
__all__ = ["Image", "CROP_LOCATIONS", "normal_strides", "is_compact_layout"]

CROP_LOCATIONS = ("center", "mirror center", "top left", "bottom right")

Sizes = Tuple[int, ...]


# ==================================================
# ============== Layout helper functions ===========
# ==================================================
def normal_strides(sizes: Sequence[int], tensor_elements: int = 1) -> Tuple[Sizes, int]:
    """
    Row-major strides with interleaved tensor elements.

    Returns
    -------
    (tuple of int, int)
        Spatial strides and tensor stride, in samples.
    """
    strides = [0] * len(sizes)
    acc = tensor_elements
    for d in reversed(range(len(sizes))):
        strides[d] = acc
        acc *= sizes[d]
    return tuple(strides), 1


def is_compact_layout(sizes: Sequence[int], strides: Sequence[int]) -> bool:
    """True if every sample has its own address and together they fill a contiguous block."""
    expected = 1
    for stride, size in sorted((abs(s), n) for n, s in zip(sizes, strides) if n > 1):
        if stride != expected:
            return False
        expected *= size
    return True


def _merge_steps(dims: Sequence[Tuple[int, int]]) -> Dict[int, int]:
    """`{byte step: size}`, folding dimensions with equal steps into one."""
    extents: Dict[int, int] = {}
    for step, size in dims:
        extents[step] = extents.get(step, 0) + size - 1
    return {step: extent + 1 for step, extent in extents.items()}


def _crop_offset(size: int, new: int, location: str) -> int:
    if location == "center":
        return size // 2 - new // 2
    if location == "mirror center":
        return (size - 1) // 2 - (new - 1) // 2
    if location == "top left":
        return 0
    if location == "bottom right":
        return size - new
    raise ValueError(f"Unknown crop location '{location}'; expected one of {CROP_LOCATIONS}.")


def _as_tensor(tensor: Union[int, Tensor, Sequence[int]]) -> Tensor:
    if isinstance(tensor, Tensor):
        return tensor
    if isinstance(tensor, (tuple, list)):
        return Tensor.from_sizes(tensor)
    n = operator.index(tensor)
    if n < 1:
        raise TensorShapeMismatch("An image needs at least one tensor element.")
    return Tensor.vector(n)


# ==================================================
# ================== CLASS: Image ==================
# ==================================================
class Image:
    """
    N-dimensional strided view over a shared, reference-counted data block.

    A raw image only carries properties (sizes, tensor, data type); forging it
    attaches memory. Strides count samples of the image's own data type, the
    origin is a byte offset into the block, and the NumPy view returned by
    `as_array()` has shape `sizes + (tensor_elements,)`.

    Parameters
    ----------
    sizes : sequence of int, optional
        When given, the image is forged immediately. `()` forges a 0-D image.
    tensor : int, Tensor or sequence of int, default 1
        Number of tensor elements, a full tensor descriptor, or tensor sizes.
    data_type : DataType or str, optional
        Sample type; defaults to `GlobalConfig.default_data_type`.
    external_interface : ExternalInterface, optional
        Allocator used when the image is forged.

    Examples
    --------
    >>> img = Image((4, 5), 3, "uint8")
    >>> img.as_array().shape
    (4, 5, 3)
    >>> img.strides, img.tensor_stride
    ((15, 3), 1)
    """

    def __init__(
        self,
        sizes: Optional[Sequence[int]] = None,
        tensor: Union[int, Tensor, Sequence[int]] = 1,
        data_type: Optional[DataTypeLike] = None,
        external_interface: Any = None,
    ):
        if data_type is None:
            data_type = get_global_config().default_data_type
        self._data_type = DataType.from_any(data_type)
        self._sizes: Sizes = ()
        self._strides: Sizes = ()
        self._tensor = _as_tensor(tensor)
        self._tensor_stride = 1
        self._block: Optional[DataBlock] = None
        self._origin = 0
        self._finalizer: Optional[weakref.finalize] = None
        self._protected = False
        self._external_interface = external_interface
        if sizes is not None:
            self.set_sizes(sizes)
            self.forge()

    # ====[ Block attachment ]====
    def _attach(self, block: DataBlock, origin: int) -> None:
        block.acquire()
        self._block = block
        self._origin = int(origin)
        self._finalizer = weakref.finalize(self, block.release)

    def _detach(self) -> None:
        if self._finalizer is not None:
            self._finalizer()
        self._finalizer = None
        self._block = None
        self._origin = 0

    def _make_view(
        self,
        sizes: Optional[Sequence[int]] = None,
        strides: Optional[Sequence[int]] = None,
        tensor: Optional[Tensor] = None,
        tensor_stride: Optional[int] = None,
        origin: Optional[int] = None,
        data_type: Optional[DataType] = None,
    ) -> "Image":
        """New unprotected image sharing this block, with the given properties replaced."""
        check_forged(self)
        out = Image.__new__(Image)
        out._data_type = data_type if data_type is not None else self._data_type
        out._sizes = tuple(sizes) if sizes is not None else self._sizes
        out._strides = tuple(strides) if strides is not None else self._strides
        out._tensor = tensor if tensor is not None else self._tensor
        out._tensor_stride = tensor_stride if tensor_stride is not None else self._tensor_stride
        out._block = None
        out._origin = 0
        out._finalizer = None
        out._protected = False
        out._external_interface = None
        out._attach(self._block, origin if origin is not None else self._origin)
        return out

    def _adopt(self, other: "Image") -> None:
        """Take over the data and layout of a freshly forged `other`."""
        block, origin = other._block, other._origin
        self._detach()
        self._data_type = other._data_type
        self._sizes = other._sizes
        self._strides = other._strides
        self._tensor = other._tensor
        self._tensor_stride = other._tensor_stride
        self._attach(block, origin)

    def _check_writable(self) -> None:
        check_forged(self)
        if self.is_singleton_expanded:
            raise DimensionMismatch("Cannot write into a singleton-expanded image.")

    # ====[ Basic properties ]====
    @property
    def data_type(self) -> DataType:
        return self._data_type

    @property
    def sizes(self) -> Sizes:
        return self._sizes

    @property
    def strides(self) -> Sizes:
        return self._strides

    @property
    def tensor(self) -> Tensor:
        return self._tensor

    @property
    def tensor_stride(self) -> int:
        return self._tensor_stride

    @property
    def tensor_elements(self) -> int:
        return self._tensor.elements

    @property
    def tensor_sizes(self) -> Sizes:
        return self._tensor.sizes()

    @property
    def ndims(self) -> int:
        return len(self._sizes)

    def size(self, dim: int) -> int:
        return self._sizes[check_dimension(dim, self.ndims)]

    def stride(self, dim: int) -> int:
        return self._strides[check_dimension(dim, self.ndims)]

    @property
    def number_of_pixels(self) -> int:
        return int(np.prod(self._sizes, dtype=np.int64)) if self._sizes else 1

    @property
    def number_of_samples(self) -> int:
        return self.number_of_pixels * self.tensor_elements

    @property
    def is_scalar(self) -> bool:
        return self._tensor.is_scalar

    @property
    def origin(self) -> int:
        """Byte offset of the pixel at coordinates zero inside the data block."""
        check_forged(self)
        return self._origin

    @property
    def data_block(self) -> Optional[DataBlock]:
        return self._block

    @property
    def external_interface(self) -> Any:
        return self._external_interface

    @external_interface.setter
    def external_interface(self, interface: Any) -> None:
        if self._protected:
            raise ImageProtected("Cannot change the allocator of a protected image.")
        self._external_interface = interface

    # ====[ Setters of raw images ]====
    def set_sizes(self, sizes: Sequence[int]) -> "Image":
        check_raw(self)
        self._sizes = tuple(operator.index(s) for s in sizes)
        self._strides = ()
        return self

    def set_strides(self, strides: Sequence[int], tensor_stride: Optional[int] = None) -> "Image":
        """Request a layout for the next `forge()`; used only if it is compact."""
        check_raw(self)
        self._strides = tuple(operator.index(s) for s in strides)
        if tensor_stride is not None:
            self._tensor_stride = operator.index(tensor_stride)
        return self

    def set_tensor(self, tensor: Union[int, Tensor, Sequence[int]]) -> "Image":
        check_raw(self)
        self._tensor = _as_tensor(tensor)
        return self

    def set_data_type(self, data_type: DataTypeLike) -> "Image":
        check_raw(self)
        self._data_type = DataType.from_any(data_type)
        return self

    # ====[ Lifecycle ]====
    @property
    def is_forged(self) -> bool:
        return self._block is not None

    @property
    def is_protected(self) -> bool:
        return self._protected

    @property
    def is_external_data(self) -> bool:
        return self._block is not None and self._block.external

    def protect(self, flag: bool = True) -> bool:
        """Set the protection flag, returning the previous value."""
        old, self._protected = self._protected, bool(flag)
        return old

    def forge(self) -> "Image":
        """
        Allocate memory for the current properties; no-op on a forged image.

        Raises
        ------
        InvalidShape
            If a size is smaller than 1 or larger than `GlobalConfig.max_size`.
        AllocationFailed
            If memory is not available or an external allocator returns an invalid layout.
        """
        if self.is_forged:
            return self
        max_size = get_global_config().max_size
        for n in self._sizes:
            if n < 1 or n > max_size:
                raise InvalidShape(f"Invalid image sizes {self._sizes}.")
        n_tensor = self.tensor_elements
        itemsize = self._data_type.size_of

        if self._external_interface is not None:
            result = self._external_interface.allocate_data(
                self._data_type, self._sizes, self._strides, self._tensor, self._tensor_stride
            )
            strides, tensor_stride = tuple(result.strides), int(result.tensor_stride)
            if len(strides) != self.ndims or not is_compact_layout(
                self._sizes + (n_tensor,), strides + (tensor_stride,)
            ):
                raise AllocationFailed("External allocator returned an invalid layout.")
            lo, hi = byte_extent(
                self._sizes + (n_tensor,), [s * itemsize for s in strides + (tensor_stride,)], itemsize
            )
            if result.origin + lo < 0 or result.origin + hi > result.block.nbytes:
                raise AllocationFailed("External allocator returned too little memory.")
            self._strides, self._tensor_stride = strides, tensor_stride
            self._attach(result.block, result.origin)
            return self

        requested = self._strides + (self._tensor_stride,)
        if len(self._strides) != self.ndims or not is_compact_layout(self._sizes + (n_tensor,), requested):
            self._strides, self._tensor_stride = normal_strides(self._sizes, n_tensor)
        lo, _ = byte_extent(
            self._sizes + (n_tensor,),
            [s * itemsize for s in self._strides + (self._tensor_stride,)],
            itemsize,
        )
        block = DataBlock.allocate(self.number_of_samples * itemsize)
        self._attach(block, -lo)
        return self

    def reforge(
        self,
        sizes: Sequence[int],
        tensor: Union[int, Tensor, Sequence[int]] = 1,
        data_type: Optional[DataTypeLike] = None,
        accept_data_type_change: bool = False,
    ) -> "Image":
        """
        Make the image forged with the given properties, reusing the data if possible.

        Raises
        ------
        ImageProtected
            If the image is protected and its data would have to be reallocated.
        """
        sizes = tuple(operator.index(s) for s in sizes)
        tensor = _as_tensor(tensor)
        dt = DataType.from_any(data_type) if data_type is not None else self._data_type
        if self.is_forged:
            same_shape = sizes == self._sizes and tensor.elements == self.tensor_elements
            if same_shape and dt is self._data_type and not self.is_singleton_expanded:
                self._tensor = tensor
                return self
            if self._protected:
                if same_shape and accept_data_type_change and not self.is_singleton_expanded:
                    self._tensor = tensor
                    return self
                raise ImageProtected("Protected image cannot be reforged with new properties.")
            self.strip()
        self._sizes, self._strides = sizes, ()
        self._tensor, self._tensor_stride = tensor, 1
        self._data_type = dt
        return self.forge()

    def reforge_like(self, src: "Image", data_type: Optional[DataTypeLike] = None,
                     accept_data_type_change: bool = False) -> "Image":
        return self.reforge(src.sizes, src.tensor, data_type if data_type is not None else src.data_type,
                            accept_data_type_change)

    def strip(self) -> "Image":
        """Release the data block; properties are kept."""
        if self._protected and self.is_forged:
            raise ImageProtected("Cannot strip a protected image.")
        self._detach()
        return self

    def quick_copy(self) -> "Image":
        """Unprotected view of the same samples, without the allocator."""
        return self._make_view()

    def assign(self, other: "Image") -> "Image":
        """
        Make this image refer to `other`'s data.

        Protected images, and images whose allocator differs from `other`'s,
        receive a deep copy instead, so their memory stays where it is.
        """
        if other is self:
            return self
        check_forged(other)
        if self._protected or (
            self._external_interface is not None and self._external_interface is not other._external_interface
        ):
            other.copy(into=self)
            return self
        block, origin = other._block, other._origin
        self._detach()
        self._data_type = other._data_type
        self._sizes = other._sizes
        self._strides = other._strides
        self._tensor = other._tensor
        self._tensor_stride = other._tensor_stride
        self._attach(block, origin)
        return self

    @property
    def share_count(self) -> int:
        return self._block.share_count if self._block is not None else 0

    @property
    def is_shared(self) -> bool:
        return self.share_count > 1

    def shares_data(self, other: "Image") -> bool:
        return self._block is not None and self._block is other._block

    # ====[ Aliasing ]====
    def _byte_dims(self) -> Tuple[int, List[Tuple[int, int]]]:
        """Lowest byte address and the (positive byte stride, size) pairs addressing every byte."""
        itemsize = self._data_type.size_of
        origin = self._origin
        dims = []
        for size, stride in zip(self._sizes + (self.tensor_elements,), self._strides + (self._tensor_stride,)):
            if size == 1 or stride == 0:
                continue
            step = stride * itemsize
            if step < 0:
                origin += step * (size - 1)
                step = -step
            dims.append((step, size))
        if itemsize > 1:
            dims.append((1, itemsize))
        return origin, dims

    def aliases(self, other: "Image") -> bool:
        """
        True if any byte of a sample of `self` is also a byte of a sample of `other`.

        The test is exact. Dimensions of one view that share a byte step are
        merged into one (their offsets form a single arithmetic run), then it
        looks for steps `d_k` along the union of both stride sets such that
        `sum(d_k * s_k)` equals the distance between the two lowest addresses.
        """
        if not (self.is_forged and other.is_forged) or self._block is not other._block:
            return False
        o1, dims1 = self._byte_dims()
        o2, dims2 = other._byte_dims()
        hi1 = o1 + sum((n - 1) * s for s, n in dims1)
        hi2 = o2 + sum((n - 1) * s for s, n in dims2)
        if hi1 < o2 or hi2 < o1:
            return False
        n1, n2 = _merge_steps(dims1), _merge_steps(dims2)
        steps = sorted(set(n1) | set(n2), reverse=True)
        lower = [-(n2.get(s, 1) - 1) * s for s in steps]
        upper = [(n1.get(s, 1) - 1) * s for s in steps]
        # bounds reachable by the dimensions after position k
        tail_lo = [0] * (len(steps) + 1)
        tail_hi = [0] * (len(steps) + 1)
        for k in reversed(range(len(steps))):
            tail_lo[k] = tail_lo[k + 1] + lower[k]
            tail_hi[k] = tail_hi[k + 1] + upper[k]

        def solve(k: int, rest: int) -> bool:
            if k == len(steps):
                return rest == 0
            s = steps[k]
            d_min = max(-(n2.get(s, 1) - 1), -((tail_hi[k + 1] - rest) // s))
            d_max = min(n1.get(s, 1) - 1, (rest - tail_lo[k + 1]) // s)
            return any(solve(k + 1, rest - d * s) for d in range(d_min, d_max + 1))

        return solve(0, o2 - o1)

    def is_identical_view(self, other: "Image") -> bool:
        return (
            self.is_forged
            and self._block is other._block
            and self._origin == other._origin
            and self._data_type is other._data_type
            and self._sizes == other._sizes
            and self._strides == other._strides
            and self.tensor_elements == other.tensor_elements
            and (self._tensor_stride == other._tensor_stride or self.tensor_elements == 1)
        )

    def is_overlapping_view(self, other: Union["Image", Iterable["Image"]]) -> bool:
        """True if `other` (or any of several images) aliases this one without being an identical view."""
        others = [other] if isinstance(other, Image) else list(other)
        return any(self.aliases(o) and not self.is_identical_view(o) for o in others)

    # ====[ Layout queries ]====
    @property
    def has_normal_strides(self) -> bool:
        check_forged(self)
        strides, _ = normal_strides(self._sizes, self.tensor_elements)
        if self.tensor_elements > 1 and self._tensor_stride != 1:
            return False
        return all(n == 1 or s == e for n, s, e in zip(self._sizes, self._strides, strides))

    @property
    def has_contiguous_data(self) -> bool:
        check_forged(self)
        return is_compact_layout(self._sizes + (self.tensor_elements,), self._strides + (self._tensor_stride,))

    @property
    def is_singleton_expanded(self) -> bool:
        if self.tensor_elements > 1 and self._tensor_stride == 0:
            return True
        return any(n > 1 and s == 0 for n, s in zip(self._sizes, self._strides))

    def simple_stride_and_origin(self) -> Optional[Tuple[int, int]]:
        """
        Stride (in samples) and lowest byte offset with which all samples are
        reachable as one evenly spaced sequence, or None when no such stride exists.
        """
        check_forged(self)
        itemsize = self._data_type.size_of
        dims = []
        origin = self._origin
        for size, stride in zip(self._sizes + (self.tensor_elements,), self._strides + (self._tensor_stride,)):
            if size == 1:
                continue
            if stride < 0:
                origin += stride * (size - 1) * itemsize
            dims.append((abs(stride), size))
        if not dims:
            return 1, origin
        dims.sort()
        step = expected = dims[0][0]
        if step == 0:
            return None
        for stride, size in dims:
            if stride != expected:
                return None
            expected *= size
        return step, origin

    @property
    def has_simple_stride(self) -> bool:
        return self.simple_stride_and_origin() is not None

    def has_same_dimension_order(self, other: "Image") -> bool:
        """True if both images visit their (shared non-singleton) dimensions in the same stride order."""
        if self.ndims != other.ndims:
            return False
        dims = [d for d in range(self.ndims) if self._sizes[d] > 1 and other._sizes[d] > 1]
        order1 = sorted(dims, key=lambda d: abs(self._strides[d]))
        order2 = sorted(dims, key=lambda d: abs(other._strides[d]))
        return order1 == order2

    # ====[ View transforms (in place) ]====
    def permute_dimensions(self, order: Sequence[int]) -> "Image":
        """Reorder dimensions; dimensions left out of `order` must be singletons."""
        check_forged(self)
        order = [check_dimension(d, self.ndims) for d in order]
        if len(set(order)) != len(order):
            raise DimensionMismatch(f"Repeated dimension in order {tuple(order)}.")
        for d in set(range(self.ndims)) - set(order):
            if self._sizes[d] != 1:
                raise DimensionMismatch(f"Cannot drop dimension {d} of size {self._sizes[d]}.")
        self._sizes = tuple(self._sizes[d] for d in order)
        self._strides = tuple(self._strides[d] for d in order)
        return self

    def swap_dimensions(self, dim1: int, dim2: int) -> "Image":
        check_forged(self)
        dim1, dim2 = check_dimension(dim1, self.ndims), check_dimension(dim2, self.ndims)
        order = list(range(self.ndims))
        order[dim1], order[dim2] = dim2, dim1
        return self.permute_dimensions(order)

    def squeeze(self, dim: Optional[int] = None) -> "Image":
        """Remove all singleton dimensions, or only `dim`."""
        check_forged(self)
        if dim is None:
            keep = [d for d in range(self.ndims) if self._sizes[d] > 1]
        else:
            dim = check_dimension(dim, self.ndims)
            if self._sizes[dim] != 1:
                raise DimensionMismatch(f"Dimension {dim} is not a singleton.")
            keep = [d for d in range(self.ndims) if d != dim]
        return self.permute_dimensions(keep)

    def add_singleton(self, dim: int) -> "Image":
        """Insert a dimension of size 1 before `dim` (`dim == ndims` appends)."""
        check_forged(self)
        dim = check_dimension(dim, self.ndims + 1)
        self._sizes = self._sizes[:dim] + (1,) + self._sizes[dim:]
        self._strides = self._strides[:dim] + (0,) + self._strides[dim:]
        return self

    def expand_dimensionality(self, ndims: int) -> "Image":
        """Prepend singleton dimensions until the image has `ndims` dimensions."""
        check_forged(self)
        while self.ndims < ndims:
            self.add_singleton(0)
        return self

    def expand_singleton_dimension(self, dim: int, size: int) -> "Image":
        check_forged(self)
        dim = check_dimension(dim, self.ndims)
        if self._sizes[dim] != 1:
            raise DimensionMismatch(f"Dimension {dim} is not a singleton.")
        if size < 1:
            raise InvalidShape(f"Invalid size {size}.")
        sizes, strides = list(self._sizes), list(self._strides)
        sizes[dim], strides[dim] = int(size), 0
        self._sizes, self._strides = tuple(sizes), tuple(strides)
        return self

    def is_singleton_expansion_possible(self, sizes: Sequence[int]) -> bool:
        """True if broadcasting this image to `sizes` (leading dimensions added) is possible."""
        sizes = tuple(sizes)
        if len(sizes) < self.ndims:
            return False
        own = (1,) * (len(sizes) - self.ndims) + self._sizes
        return all(a == b or a == 1 for a, b in zip(own, sizes))

    def expand_singleton_dimensions(self, sizes: Sequence[int]) -> "Image":
        sizes = tuple(sizes)
        if not self.is_singleton_expansion_possible(sizes):
            raise SizesDontMatch(f"Cannot expand sizes {self._sizes} to {sizes}.")
        self.expand_dimensionality(len(sizes))
        for d, n in enumerate(sizes):
            if self._sizes[d] != n:
                self.expand_singleton_dimension(d, n)
        return self

    def unexpand_singleton_dimensions(self) -> "Image":
        check_forged(self)
        self._sizes = tuple(1 if s == 0 else n for n, s in zip(self._sizes, self._strides))
        return self

    def expand_singleton_tensor(self, elements: int) -> "Image":
        check_forged(self)
        if not self._tensor.is_scalar:
            raise TensorShapeMismatch("Only a scalar tensor can be expanded.")
        self._tensor = Tensor.vector(elements)
        self._tensor_stride = 0
        return self

    def mirror(self, process: Optional[Sequence[bool]] = None) -> "Image":
        """Reverse the selected dimensions (all by default) by negating strides."""
        check_forged(self)
        if process is None:
            process = [True] * self.ndims
        if len(process) != self.ndims:
            raise DimensionalityMismatch("One flag per dimension is needed to mirror.")
        itemsize = self._data_type.size_of
        strides = list(self._strides)
        for d, flag in enumerate(process):
            if flag:
                self._origin += (self._sizes[d] - 1) * strides[d] * itemsize
                strides[d] = -strides[d]
        self._strides = tuple(strides)
        return self

    def rotation90(self, n: int = 1, dim1: int = 0, dim2: int = 1) -> "Image":
        """Rotate by `n` quarter turns in the (dim1, dim2) plane, like `numpy.rot90(arr, n, (dim1, dim2))`."""
        check_forged(self)
        dim1, dim2 = check_dimension(dim1, self.ndims), check_dimension(dim2, self.ndims)
        if dim1 == dim2:
            raise DimensionMismatch("Rotation needs two different dimensions.")
        n %= 4
        flip2 = [d == dim2 for d in range(self.ndims)]
        if n == 1:
            self.mirror(flip2).swap_dimensions(dim1, dim2)
        elif n == 2:
            self.mirror([d in (dim1, dim2) for d in range(self.ndims)])
        elif n == 3:
            self.swap_dimensions(dim1, dim2).mirror(flip2)
        return self

    def standardize_strides(self) -> "Image":
        """Make strides positive and order dimensions from largest to smallest stride."""
        check_forged(self)
        self.mirror([s < 0 for s in self._strides])
        order = sorted(range(self.ndims), key=lambda d: -self._strides[d])
        return self.permute_dimensions(order)

    def flatten(self) -> "Image":
        """Make the image 1-D; copies to a new block when no single stride walks all pixels."""
        check_forged(self)
        if self.ndims == 0 or self.number_of_pixels == 1:
            self._sizes, self._strides = (1,), (1,)
            return self
        self.standardize_strides()
        dims = [d for d in range(self.ndims) if self._sizes[d] > 1]
        expected = self._strides[dims[-1]]
        simple = expected != 0
        for d in reversed(dims):
            if self._strides[d] != expected:
                simple = False
                break
            expected *= self._sizes[d]
        if not simple:
            self.force_normal_strides()
            return self.flatten()
        self._sizes = (self.number_of_pixels,)
        self._strides = (self._strides[dims[-1]],)
        return self

    # ====[ Tensor transforms (in place) ]====
    def reshape_tensor(self, rows: int, columns: int) -> "Image":
        if rows * columns != self.tensor_elements:
            raise TensorShapeMismatch(f"Cannot reshape {self.tensor_elements} elements to {rows}x{columns}.")
        self._tensor = Tensor.matrix(rows, columns)
        return self

    def reshape_tensor_as_vector(self) -> "Image":
        self._tensor = Tensor.vector(self.tensor_elements)
        return self

    def reshape_tensor_as_diagonal(self) -> "Image":
        n = self.tensor_elements
        self._tensor = Tensor.from_shape(TensorShape.DIAGONAL_MATRIX, n, n)
        return self

    def transpose(self) -> "Image":
        self._tensor = self._tensor.transpose()
        return self

    def tensor_to_spatial(self, dim: Optional[int] = None) -> "Image":
        """Turn the tensor elements into a new spatial dimension at `dim` (default: last)."""
        check_forged(self)
        dim = self.ndims if dim is None else check_dimension(dim, self.ndims + 1)
        self._sizes = self._sizes[:dim] + (self.tensor_elements,) + self._sizes[dim:]
        self._strides = self._strides[:dim] + (self._tensor_stride,) + self._strides[dim:]
        self._tensor = Tensor()
        return self

    def spatial_to_tensor(self, dim: Optional[int] = None, rows: int = 0, columns: int = 0) -> "Image":
        """Turn spatial dimension `dim` (default: last) into a rows x columns tensor."""
        check_forged(self)
        if not self._tensor.is_scalar:
            raise TensorShapeMismatch("Image already has a non-scalar tensor.")
        if self.ndims == 0:
            raise DimensionMismatch("A 0-D image has no dimension to convert.")
        dim = self.ndims - 1 if dim is None else check_dimension(dim, self.ndims)
        n = self._sizes[dim]
        if rows == 0 and columns == 0:
            rows, columns = n, 1
        elif rows == 0:
            rows = n // columns
        elif columns == 0:
            columns = n // rows
        if rows * columns != n:
            raise DimensionMismatch(f"Dimension of size {n} cannot form a {rows}x{columns} tensor.")
        self._tensor = Tensor.matrix(rows, columns)
        self._tensor_stride = self._strides[dim]
        self._sizes = self._sizes[:dim] + self._sizes[dim + 1:]
        self._strides = self._strides[:dim] + self._strides[dim + 1:]
        return self

    def split_complex(self, dim: Optional[int] = None) -> "Image":
        """View complex samples as pairs of reals along a new dimension of size 2 (default: last)."""
        check_forged(self)
        if not self._data_type.is_complex:
            raise UnsupportedDataType("split_complex needs a complex image.")
        dim = self.ndims if dim is None else check_dimension(dim, self.ndims + 1)
        strides = tuple(2 * s for s in self._strides)
        self._data_type = self._data_type.real_type()
        self._tensor_stride *= 2
        self._sizes = self._sizes[:dim] + (2,) + self._sizes[dim:]
        self._strides = strides[:dim] + (1,) + strides[dim:]
        return self

    def merge_complex(self, dim: Optional[int] = None) -> "Image":
        """Inverse of `split_complex`: dimension `dim` (default: last) of size 2 and stride 1 becomes complex."""
        check_forged(self)
        if self._data_type not in (DataType.SFLOAT, DataType.DFLOAT):
            raise UnsupportedDataType("merge_complex needs a single or double precision float image.")
        if self.ndims == 0:
            raise DimensionMismatch("A 0-D image has no dimension to merge.")
        dim = self.ndims - 1 if dim is None else check_dimension(dim, self.ndims)
        if self._sizes[dim] != 2 or self._strides[dim] != 1:
            raise DimensionMismatch(f"Dimension {dim} must have size 2 and stride 1.")
        others = self._strides[:dim] + self._strides[dim + 1:]
        tensor_stride = self._tensor_stride if self.tensor_elements > 1 else 0
        if any(s % 2 for s in others) or tensor_stride % 2:
            raise DimensionMismatch("Other strides must be even to merge into complex samples.")
        self._data_type = self._data_type.complex_type()
        self._tensor_stride = self._tensor_stride // 2 if self.tensor_elements > 1 else 1
        self._sizes = self._sizes[:dim] + self._sizes[dim + 1:]
        self._strides = tuple(s // 2 for s in others)
        return self

    # ====[ Indexing views (new images) ]====
    def _tensor_view(self, tensor: Tensor, offset: int, step: int) -> "Image":
        itemsize = self._data_type.size_of
        return self._make_view(
            tensor=tensor,
            tensor_stride=self._tensor_stride * step,
            origin=self._origin + offset * self._tensor_stride * itemsize,
        )

    def tensor_element(self, index: Union[int, Sequence[int]]) -> "Image":
        """Scalar view of one tensor element, by storage index or (row, column)."""
        check_forged(self)
        indices = tuple(index) if isinstance(index, (tuple, list)) else (index,)
        k = self._tensor.linear_index(indices)
        if k < 0:
            raise TensorShapeMismatch(f"Tensor element {indices} is not stored.")
        return self._tensor_view(Tensor(), k, 1)

    def tensor_range(self, selection: RangeLike) -> "Image":
        check_forged(self)
        r = to_range(selection, self.tensor_elements)
        return self._tensor_view(Tensor.vector(r.size), r.start, r.signed_step)

    def diagonal(self) -> "Image":
        check_forged(self)
        return self._tensor_view(*self._tensor.extract_diagonal())

    def tensor_row(self, row: int) -> "Image":
        check_forged(self)
        return self._tensor_view(*self._tensor.extract_row(row))

    def tensor_column(self, column: int) -> "Image":
        check_forged(self)
        return self._tensor_view(*self._tensor.extract_column(column))

    def at(self, *indices: RangeLike) -> "Image":
        """
        View of a sub-region; one `Range`, `slice` or `int` per leading dimension.

        Integers keep the dimension with size 1. Missing trailing indices select everything.
        """
        check_forged(self)
        if len(indices) > self.ndims:
            raise DimensionalityMismatch(f"{len(indices)} indices for a {self.ndims}-D image.")
        itemsize = self._data_type.size_of
        sizes, strides = list(self._sizes), list(self._strides)
        origin = self._origin
        for d, index in enumerate(indices):
            r = to_range(index, sizes[d])
            origin += r.start * strides[d] * itemsize
            strides[d] *= r.signed_step
            sizes[d] = r.size
        return self._make_view(sizes=sizes, strides=strides, origin=origin)

    def __getitem__(self, key: Union[RangeLike, Tuple[RangeLike, ...]]) -> "Image":
        if not isinstance(key, tuple):
            key = (key,)
        return self.at(*key)

    def crop(self, sizes: Sequence[int], location: str = "center") -> "Image":
        """View of a `sizes` window placed according to `location` (see CROP_LOCATIONS)."""
        check_forged(self)
        sizes = tuple(sizes)
        if len(sizes) != self.ndims:
            raise DimensionalityMismatch(f"Crop sizes {sizes} do not match a {self.ndims}-D image.")
        if any(n < 1 or n > m for n, m in zip(sizes, self._sizes)):
            raise DimensionMismatch(f"Crop sizes {sizes} do not fit in {self._sizes}.")
        itemsize = self._data_type.size_of
        origin = self._origin
        for n, m, s in zip(sizes, self._sizes, self._strides):
            origin += _crop_offset(m, n, location) * s * itemsize
        return self._make_view(sizes=sizes, origin=origin)

    def real(self) -> "Image":
        """Real component view of a complex image; a plain view for other types."""
        check_forged(self)
        if not self._data_type.is_complex:
            return self.quick_copy()
        return self._make_view(
            strides=tuple(2 * s for s in self._strides),
            tensor_stride=2 * self._tensor_stride,
            data_type=self._data_type.real_type(),
        )

    def imaginary(self) -> "Image":
        check_forged(self)
        if not self._data_type.is_complex:
            raise UnsupportedDataType("Only complex images have an imaginary component.")
        real_type = self._data_type.real_type()
        return self._make_view(
            strides=tuple(2 * s for s in self._strides),
            tensor_stride=2 * self._tensor_stride,
            data_type=real_type,
            origin=self._origin + real_type.size_of,
        )

    def extend_view(self, border: Union[int, Sequence[int]]) -> "Image":
        """
        View grown by `border` pixels on both sides of every dimension, reading the
        memory that surrounds this view inside the same block.

        Raises
        ------
        IndexOutOfRange
            If the grown view would fall outside the data block.
        """
        check_forged(self)
        border = [int(border)] * self.ndims if np.isscalar(border) else [int(b) for b in border]
        if len(border) != self.ndims:
            raise DimensionalityMismatch("One border width per dimension is needed.")
        itemsize = self._data_type.size_of
        origin = self._origin - sum(b * s for b, s in zip(border, self._strides)) * itemsize
        sizes = tuple(n + 2 * b for n, b in zip(self._sizes, border))
        lo, hi = byte_extent(
            sizes + (self.tensor_elements,),
            [s * itemsize for s in self._strides + (self._tensor_stride,)],
            itemsize,
        )
        if origin + lo < 0 or origin + hi > self._block.nbytes:
            raise IndexOutOfRange("Extended view does not fit inside the data block.")
        return self._make_view(sizes=sizes, origin=origin)

    def pad(self, sizes: Sequence[int], location: str = "center") -> "Image":
        """
        New zero-filled image of `sizes` with this image's samples copied at `location`.

        Unlike `crop`, this allocates: the padding has to be written somewhere.
        Use `extend_view` for a zero-copy view that grows into memory the block
        already holds around this view.
        """
        check_forged(self)
        sizes = tuple(sizes)
        if len(sizes) != self.ndims:
            raise DimensionalityMismatch(f"Pad sizes {sizes} do not match a {self.ndims}-D image.")
        if any(n < m for n, m in zip(sizes, self._sizes)):
            raise DimensionMismatch(f"Pad sizes {sizes} are smaller than {self._sizes}.")
        out = Image(sizes, self._tensor, self._data_type)
        out.fill(0)
        self.copy(into=out.crop(self._sizes, location))
        return out

    # ====[ Data movement ]====
    def as_array(self) -> np.ndarray:
        """Writable NumPy view of shape `sizes + (tensor_elements,)` over the same memory."""
        check_forged(self)
        dtype = self._data_type.numpy_dtype
        itemsize = dtype.itemsize
        raw = self._block.raw
        first = raw[self._origin:self._origin + itemsize].view(dtype)
        return as_strided(
            first,
            shape=self._sizes + (self.tensor_elements,),
            strides=tuple(s * itemsize for s in self._strides + (self._tensor_stride,)),
            writeable=self._block.writeable,
        )

    def copy(self, into: Optional["Image"] = None) -> "Image":
        """
        Copy samples into `into` (a new image by default), converting with saturation.

        `into` is reforged when its sizes or tensor size differ; it takes this
        image's data type unless it is protected.
        """
        check_forged(self)
        if into is None:
            into = Image(self._sizes, self._tensor, self._data_type)
        else:
            into.reforge(self._sizes, self._tensor, self._data_type, accept_data_type_change=True)
            if into.tensor_elements == self.tensor_elements:
                into._tensor = self._tensor
        into._check_writable()
        values = self.as_array()
        if into.aliases(self) and not into.is_identical_view(self):
            values = values.copy()
        into.as_array()[...] = convert_array(values, into.data_type)
        return into

    def convert(self, data_type: DataTypeLike) -> "Image":
        """Change the sample type in place; forged images get new memory."""
        dt = DataType.from_any(data_type)
        if dt is self._data_type:
            return self
        if not self.is_forged:
            self._data_type = dt
            return self
        if self._protected:
            raise ImageProtected("Cannot change the data type of a protected image.")
        out = Image(self._sizes, self._tensor, dt, external_interface=self._external_interface)
        out.as_array()[...] = convert_array(self.as_array(), dt)
        self._adopt(out)
        return self

    def fill(self, value: Any) -> "Image":
        """Set every pixel to `value` (a scalar, or one value per tensor element)."""
        self._check_writable()
        values = np.asarray(value)
        if values.ndim > 1 or (values.ndim == 1 and values.size not in (1, self.tensor_elements)):
            raise TensorShapeMismatch(f"Fill value needs 1 or {self.tensor_elements} elements.")
        self.as_array()[...] = convert_array(values, self._data_type)
        return self

    def _relayout(self, tensor: Optional[Tensor] = None, lookup: Optional[List[int]] = None) -> None:
        if self._protected:
            raise ImageProtected("Cannot reallocate a protected image.")
        tensor = tensor if tensor is not None else self._tensor
        out = Image(self._sizes, tensor, self._data_type, external_interface=self._external_interface)
        src, dst = self.as_array(), out.as_array()
        if lookup is None:
            dst[...] = src
        else:
            for k, idx in enumerate(lookup):
                dst[..., k] = src[..., idx] if idx >= 0 else 0
        self._adopt(out)

    def expand_tensor(self) -> "Image":
        """Store the full column-major matrix for packed or row-major tensor shapes."""
        check_forged(self)
        if self._tensor.has_normal_order and self._tensor.has_full_storage:
            return self
        self._relayout(self._tensor.expanded(), self._tensor.lookup_table())
        return self

    def force_normal_strides(self) -> "Image":
        check_forged(self)
        if not self.has_normal_strides:
            self._relayout()
        return self

    def force_contiguous_data(self) -> "Image":
        check_forged(self)
        if not self.has_contiguous_data:
            self._relayout()
        return self

    # ====[ Construction from foreign memory ]====
    @classmethod
    def from_array(
        cls,
        array: Any,
        tensor_axis: Optional[int] = None,
        release: Optional[Callable[[], Any]] = None,
        owner: Any = None,
    ) -> "Image":
        """
        Image sharing the memory of a NumPy array (no copy).

        Parameters
        ----------
        array : array_like
            Source samples; non-arrays are converted first (and then owned).
        tensor_axis : int, optional
            Axis of `array` holding the tensor elements.
        release : callable, optional
            Called once when the last image referring to the memory goes away.
        owner : object, optional
            Object kept alive as long as the memory is in use.

        Raises
        ------
        UnsupportedDataType
            For dtypes without a matching sample type (int64, float16, non-native byte order).
        InvalidShape
            For arrays with a zero-sized axis or strides that are not whole samples.
        """
        arr = np.asarray(array)
        dt = DataType.from_numpy(arr.dtype)
        if arr.size == 0:
            raise InvalidShape(f"Cannot wrap an array of shape {arr.shape}.")
        itemsize = arr.dtype.itemsize
        if any(s % itemsize for s in arr.strides):
            raise InvalidShape("Array strides are not a whole number of samples.")
        block, origin = DataBlock.from_array(arr, release=release, owner=owner)
        sizes = list(arr.shape)
        strides = [s // itemsize for s in arr.strides]
        img = cls(data_type=dt)
        if tensor_axis is not None:
            axis = check_dimension(tensor_axis if tensor_axis >= 0 else tensor_axis + arr.ndim, arr.ndim, "tensor axis")
            img._tensor = Tensor.vector(sizes.pop(axis))
            img._tensor_stride = strides.pop(axis)
        img._sizes, img._strides = tuple(sizes), tuple(strides)
        img._attach(block, origin)
        return img

    @classmethod
    def from_buffer(
        cls,
        buffer: Any,
        sizes: Sequence[int],
        data_type: DataTypeLike,
        strides: Optional[Sequence[int]] = None,
        tensor: Union[int, Tensor] = 1,
        tensor_stride: Optional[int] = None,
        offset: int = 0,
        release: Optional[Callable[[], Any]] = None,
    ) -> "Image":
        """
        Image over any object exposing the buffer protocol.

        `offset` is the byte position of the pixel at coordinates zero; strides
        are in samples and default to the normal layout.
        """
        raw = np.frombuffer(buffer, dtype=np.uint8)
        img = cls(data_type=data_type, tensor=tensor)
        img._sizes = tuple(operator.index(s) for s in sizes)
        if any(n < 1 for n in img._sizes):
            raise InvalidShape(f"Invalid image sizes {img._sizes}.")
        default_strides, default_tstride = normal_strides(img._sizes, img.tensor_elements)
        img._strides = tuple(strides) if strides is not None else default_strides
        img._tensor_stride = tensor_stride if tensor_stride is not None else default_tstride
        if len(img._strides) != img.ndims:
            raise DimensionalityMismatch("One stride per dimension is needed.")
        itemsize = img._data_type.size_of
        lo, hi = byte_extent(
            img._sizes + (img.tensor_elements,),
            [s * itemsize for s in img._strides + (img._tensor_stride,)],
            itemsize,
        )
        if offset + lo < 0 or offset + hi > raw.size:
            raise AllocationFailed("Buffer is too small for the requested layout.")
        img._attach(DataBlock(raw, release=release, owner=buffer, external=True), offset)
        return img

    # ====[ Coordinates ]====
    def offset(self, coords: Sequence[int]) -> int:
        """Sample offset of the pixel at `coords` relative to the origin."""
        return offset_of(coords, self._strides, self._sizes)

    def offset_unchecked(self, coords: Sequence[int]) -> int:
        return offset_of(coords, self._strides)

    def offset_to_coordinates(self, offset: int) -> Tuple[int, ...]:
        return CoordinatesComputer(self._sizes, self._strides)(offset)

    def index(self, coords: Sequence[int]) -> int:
        """Row-major linear index of `coords`."""
        return index_of(coords, self._sizes)

    def index_to_coordinates(self, index: int) -> Tuple[int, ...]:
        return index_to_coordinates(index, self._sizes)

    def pixel(self, coords: Sequence[int]) -> np.ndarray:
        """NumPy view of the tensor samples of one pixel."""
        coords = tuple(coords)
        self.offset(coords)
        return self.as_array()[coords]

    def __repr__(self) -> str:
        state = "forged" if self.is_forged else "raw"
        return f"Image(sizes={self._sizes}, tensor={self._tensor}, data_type={self._data_type}, {state})"

