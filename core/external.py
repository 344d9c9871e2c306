# ==================================================
# ===============  MODULE: external  ===============
# ==================================================
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Sequence, Tuple

import numpy as np
import torch

from core.data_block import DataBlock, byte_extent
from core.data_types import DataType
from core.errors import AllocationFailed, UnsupportedDataType
from core.image import Image, is_compact_layout, normal_strides
from core.tensor import Tensor

# Public API
__all__ = [
    "AllocationResult",
    "ExternalInterface",
    "NumpyInterface",
    "TorchInterface",
    "image_from_torch",
    "image_to_torch",
]

_TORCH_DTYPES = {
    DataType.BIN: torch.bool,
    DataType.UINT8: torch.uint8,
    DataType.SINT8: torch.int8,
    DataType.SINT16: torch.int16,
    DataType.SINT32: torch.int32,
    DataType.SFLOAT: torch.float32,
    DataType.DFLOAT: torch.float64,
    DataType.SCOMPLEX: torch.complex64,
    DataType.DCOMPLEX: torch.complex128,
}


@dataclass
class AllocationResult:
    """Memory handed out by an external allocator, with the layout it commits to."""

    block: DataBlock
    origin: int
    strides: Tuple[int, ...]
    tensor_stride: int


def _requested_or_normal(
    sizes: Sequence[int], strides: Sequence[int], tensor: Tensor, tensor_stride: int
) -> Tuple[Tuple[int, ...], int]:
    full_sizes = tuple(sizes) + (tensor.elements,)
    if len(strides) == len(sizes) and is_compact_layout(full_sizes, tuple(strides) + (tensor_stride,)):
        return tuple(strides), tensor_stride
    return normal_strides(sizes, tensor.elements)


def _fortran_strides(sizes: Sequence[int], tensor: Tensor) -> Tuple[Tuple[int, ...], int]:
    """First dimension fastest, tensor elements in their own plane after all pixels."""
    strides = []
    acc = 1
    for n in sizes:
        strides.append(acc)
        acc *= n
    return tuple(strides), acc


# ==================================================
# ============ CLASS: ExternalInterface ============
# ==================================================
class ExternalInterface(ABC):
    """
    Allocator that a host registers on an image to provide its memory.

    `allocate_data` receives the requested properties (and the strides the
    caller would like, possibly empty) and returns the memory together with the
    strides actually used. The layout must address every sample exactly once.
    """

    @abstractmethod
    def allocate_data(
        self,
        data_type: DataType,
        sizes: Tuple[int, ...],
        strides: Tuple[int, ...],
        tensor: Tensor,
        tensor_stride: int,
    ) -> AllocationResult:
        ...

    def _result(self, array: np.ndarray, strides, tensor_stride, owner=None) -> AllocationResult:
        block = DataBlock(array.reshape(-1).view(np.uint8), owner=owner, external=True)
        return AllocationResult(block, 0, tuple(strides), int(tensor_stride))


class NumpyInterface(ExternalInterface):
    """
    Zero-initialised memory held by NumPy arrays.

    Parameters
    ----------
    order : {"C", "F"}
        "C" honours compact requested strides and otherwise uses the normal
        layout; "F" always puts the first dimension fastest.
    """

    def __init__(self, order: str = "C"):
        if order not in ("C", "F"):
            raise ValueError(f"Unknown order '{order}'.")
        self.order = order
        self.allocations = 0

    def allocate_data(self, data_type, sizes, strides, tensor, tensor_stride) -> AllocationResult:
        if self.order == "F":
            strides, tensor_stride = _fortran_strides(sizes, tensor)
        else:
            strides, tensor_stride = _requested_or_normal(sizes, strides, tensor, tensor_stride)
        itemsize = data_type.size_of
        lo, hi = byte_extent(
            tuple(sizes) + (tensor.elements,), [s * itemsize for s in tuple(strides) + (tensor_stride,)], itemsize
        )
        try:
            memory = np.zeros(hi - lo, dtype=np.uint8)
        except MemoryError as e:
            raise AllocationFailed(f"Could not allocate {hi - lo} bytes.") from e
        self.allocations += 1
        result = self._result(memory, strides, tensor_stride)
        result.origin = -lo
        return result


class TorchInterface(ExternalInterface):
    """Memory owned by CPU `torch.Tensor` objects (zero-initialised, normal layout)."""

    def __init__(self):
        self.tensors = []

    def allocate_data(self, data_type, sizes, strides, tensor, tensor_stride) -> AllocationResult:
        if data_type not in _TORCH_DTYPES:
            raise UnsupportedDataType(f"torch has no tensor type for '{data_type}'.")
        shape = tuple(sizes) + (tensor.elements,)
        owner = torch.zeros(shape, dtype=_TORCH_DTYPES[data_type])
        self.tensors.append(owner)
        strides, tensor_stride = normal_strides(sizes, tensor.elements)
        return self._result(owner.numpy(), strides, tensor_stride, owner=owner)


# ==================================================
# ================ torch conversion ================
# ==================================================
def image_from_torch(tensor: "torch.Tensor", tensor_axis: int = None) -> Image:
    """
    Image sharing the memory of a CPU torch tensor.

    Raises
    ------
    UnsupportedDataType
        For tensors on another device or with a dtype without a sample type.
    """
    if tensor.device.type != "cpu":
        raise UnsupportedDataType("Only CPU tensors can share memory with an image.")
    return Image.from_array(tensor.detach().numpy(), tensor_axis=tensor_axis, owner=tensor)


def image_to_torch(image: Image, squeeze_tensor: bool = True) -> "torch.Tensor":
    """
    Torch tensor over the image's samples, shape `sizes + (tensor_elements,)`.

    The memory is shared when the layout has no negative or zero strides;
    otherwise the samples are copied. With `squeeze_tensor`, scalar images
    drop the trailing tensor axis.
    """
    if image.data_type not in _TORCH_DTYPES:
        raise UnsupportedDataType(f"torch has no tensor type for '{image.data_type}'.")
    array = image.as_array()
    if any(s <= 0 for n, s in zip(array.shape, array.strides) if n > 1):
        array = np.ascontiguousarray(array)
    out = torch.from_numpy(array)
    if squeeze_tensor and image.is_scalar:
        out = out[..., 0]
    return out
