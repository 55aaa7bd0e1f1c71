import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Sequence, Tuple

import numpy as np
import torch

from ..config import ALLOCATOR_ALIGNMENT, DEBUG_PARTITION, DEBUG_DETAILED
from ..ir.dtypes import DType, get_size_bytes

DEBUG = DEBUG_PARTITION and DEBUG_DETAILED


class MemoryType(Enum):
    DEFAULT = "default"
    CPU_INPUT = "cpu_input"
    CPU_OUTPUT = "cpu_output"


@dataclass
class MemoryBlock:
    block_id: int
    shape: Tuple[int, ...]
    dtype: DType
    size: int  # aligned bytes
    tag: str = ""
    is_free: bool = False


_TORCH_DTYPES = {
    DType.FLOAT: torch.float32,
    DType.DOUBLE: torch.float64,
    DType.FLOAT16: torch.float16,
    DType.BFLOAT16: torch.bfloat16,
    DType.INT8: torch.int8,
    DType.UINT8: torch.uint8,
    DType.INT16: torch.int16,
    DType.INT32: torch.int32,
    DType.INT64: torch.int64,
    DType.BOOL: torch.bool,
}


class Allocator:
    """
    Hands out tensor buffers for one (device, memory type) pair.

    CPU buffers are numpy arrays. Any other device gets torch tensors on
    `cuda:<device_id>`. Every live buffer is tracked by a MemoryBlock so the
    owner can free it explicitly or drop everything at teardown.
    """

    def __init__(self, device_id: int = 0, memory_type: MemoryType = MemoryType.DEFAULT, device: str = "cpu"):
        self.device_id = device_id
        self.memory_type = memory_type
        self.device = device
        self.alignment = ALLOCATOR_ALIGNMENT
        self.is_torch = "cuda" in device or "gpu" in device

        self.blocks: Dict[int, MemoryBlock] = {}
        # id(buffer) -> (block_id, buffer); holding the buffer keeps its id stable
        self._buffers: Dict[int, Tuple[int, Any]] = {}
        self.bytes_in_use = 0
        self.peak_bytes = 0
        self._next_id = 0
        self._lock = threading.Lock()

    def _align(self, val: int) -> int:
        return (val + self.alignment - 1) // self.alignment * self.alignment

    def alloc(self, shape: Sequence[int], dtype: DType, tag: str = "") -> Any:
        shape = tuple(int(d) for d in shape)
        size = self._align(max(get_size_bytes(shape, dtype), 1))

        if self.is_torch:
            if dtype not in _TORCH_DTYPES:
                raise ValueError(f"No torch storage for element type {dtype.name}")
            buffer = torch.empty(shape, dtype=_TORCH_DTYPES[dtype], device=self.device)
        else:
            if dtype.np_dtype is None:
                raise ValueError(f"No numpy storage for element type {dtype.name}")
            buffer = np.empty(shape, dtype=dtype.np_dtype)

        with self._lock:
            block_id = self._next_id
            self._next_id += 1
            self.blocks[block_id] = MemoryBlock(block_id, shape, dtype, size, tag)
            self._buffers[id(buffer)] = (block_id, buffer)
            self.bytes_in_use += size
            self.peak_bytes = max(self.peak_bytes, self.bytes_in_use)

        if DEBUG:
            print(f"[Allocator.alloc] {tag or '<anon>'} {shape} {dtype.value} ({size} bytes) on {self.device}")
        return buffer

    def owns(self, buffer: Any) -> bool:
        return id(buffer) in self._buffers

    def free(self, buffer: Any):
        """Returns a buffer to the allocator. Unknown buffers are ignored."""
        with self._lock:
            entry = self._buffers.pop(id(buffer), None)
            if entry is None:
                return
            block_id = entry[0]
            block = self.blocks.pop(block_id)
            block.is_free = True
            self.bytes_in_use -= block.size

        if DEBUG:
            print(f"[Allocator.free] {block.tag or '<anon>'} ({block.size} bytes)")

    def free_all(self):
        with self._lock:
            for block in self.blocks.values():
                block.is_free = True
            self.blocks.clear()
            self._buffers.clear()
            self.bytes_in_use = 0

    def __repr__(self):
        return (
            f"<Allocator {self.device} {self.memory_type.value}: "
            f"{len(self.blocks)} blocks, {self.bytes_in_use} bytes>"
        )


class AllocatorManager:
    """One allocator per (device_id, memory_type), created on first request."""

    def __init__(self, device: str = "cpu"):
        self.device = device
        self._allocators: Dict[Tuple[int, MemoryType], Allocator] = {}
        self._lock = threading.Lock()

    def _device_name(self, device_id: int, memory_type: MemoryType) -> str:
        if self.device == "cpu" or memory_type != MemoryType.DEFAULT:
            return "cpu"
        return f"{self.device}:{device_id}"

    def get_allocator(self, device_id: int, memory_type: MemoryType = MemoryType.DEFAULT) -> Allocator:
        key = (device_id, memory_type)
        with self._lock:
            if key not in self._allocators:
                self._allocators[key] = Allocator(
                    device_id, memory_type, self._device_name(device_id, memory_type)
                )
            return self._allocators[key]

    def free_all(self):
        with self._lock:
            for allocator in self._allocators.values():
                allocator.free_all()

    @property
    def bytes_in_use(self) -> int:
        return sum(a.bytes_in_use for a in self._allocators.values())


def to_numpy(buffer: Any) -> Optional[np.ndarray]:
    """Host view of a buffer produced by any allocator."""
    if buffer is None:
        return None
    if isinstance(buffer, torch.Tensor):
        return buffer.detach().cpu().numpy()
    return np.asarray(buffer)


def write_into(dst: Any, src: np.ndarray):
    """Copies host values into an allocator buffer in place."""
    if isinstance(dst, torch.Tensor):
        dst.copy_(torch.from_numpy(np.ascontiguousarray(src)))
    else:
        np.copyto(dst, src, casting="unsafe")


def dtype_of(buffer: Any) -> DType:
    """Element type of a buffer produced by any allocator."""
    if isinstance(buffer, torch.Tensor):
        for dtype, torch_dtype in _TORCH_DTYPES.items():
            if torch_dtype == buffer.dtype:
                return dtype
        raise ValueError(f"No element type for torch dtype {buffer.dtype}")
    return DType.from_numpy(buffer.dtype)
