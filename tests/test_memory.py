import unittest

import numpy as np
import pytest
import torch

from tensor_regions.backend.memory import AllocatorManager, MemoryType, dtype_of, to_numpy, write_into
from tensor_regions.ir.dtypes import DType


class TestAllocator(unittest.TestCase):
    def test_alloc_and_free(self):
        allocator = AllocatorManager().get_allocator(0)
        buf = allocator.alloc((2, 3), DType.FLOAT, tag="x")
        self.assertIsInstance(buf, np.ndarray)
        self.assertEqual(buf.shape, (2, 3))
        self.assertEqual(buf.dtype, np.float32)
        # 24 bytes rounded up to the alignment
        self.assertEqual(allocator.bytes_in_use, 64)

        allocator.free(buf)
        self.assertEqual(allocator.bytes_in_use, 0)
        self.assertEqual(allocator.peak_bytes, 64)
        # Unknown buffers are ignored
        allocator.free(np.zeros(3))

    def test_free_all(self):
        allocator = AllocatorManager().get_allocator(0)
        for _ in range(3):
            allocator.alloc((10,), DType.INT64)
        self.assertEqual(len(allocator.blocks), 3)
        allocator.free_all()
        self.assertEqual(len(allocator.blocks), 0)
        self.assertEqual(allocator.bytes_in_use, 0)

    def test_scalar_alloc(self):
        allocator = AllocatorManager().get_allocator(0)
        buf = allocator.alloc((), DType.DOUBLE)
        self.assertEqual(buf.shape, ())

    def test_no_numpy_storage(self):
        allocator = AllocatorManager().get_allocator(0)
        with self.assertRaises(ValueError):
            allocator.alloc((2,), DType.BFLOAT16)

    def test_manager_reuses_allocators(self):
        manager = AllocatorManager()
        a = manager.get_allocator(0)
        self.assertIs(a, manager.get_allocator(0, MemoryType.DEFAULT))
        self.assertIsNot(a, manager.get_allocator(0, MemoryType.CPU_OUTPUT))
        self.assertIsNot(a, manager.get_allocator(1))


def test_write_into_and_to_numpy():
    dst = np.zeros((2,), dtype=np.float32)
    write_into(dst, np.array([1.5, 2.5]))
    np.testing.assert_array_equal(to_numpy(dst), [1.5, 2.5])

    t = torch.zeros(2, dtype=torch.float32)
    write_into(t, np.array([3.0, 4.0], dtype=np.float32))
    np.testing.assert_array_equal(to_numpy(t), [3.0, 4.0])
    assert to_numpy(None) is None


@pytest.mark.skipif(not torch.cuda.is_available(), reason="CUDA not available")
def test_cuda_allocator_returns_torch_tensors():
    allocator = AllocatorManager(device="cuda").get_allocator(0)
    buf = allocator.alloc((4,), DType.FLOAT)
    assert isinstance(buf, torch.Tensor)
    assert buf.device.type == "cuda"


def test_dtype_of_buffers():
    assert dtype_of(np.zeros(2, dtype=np.int32)) == DType.INT32
    assert dtype_of(torch.zeros(2, dtype=torch.float16)) == DType.FLOAT16
    assert dtype_of(torch.zeros(2, dtype=torch.bool)) == DType.BOOL
