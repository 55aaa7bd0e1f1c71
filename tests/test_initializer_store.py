import struct
import threading

import numpy as np
import pytest

from tensor_regions.backend.memory import AllocatorManager
from tensor_regions.compiler.region import ClaimedRegion
from tensor_regions.errors import UnimplementedTypeError
from tensor_regions.ir.dtypes import DType
from tensor_regions.ir.graph import GraphBuilder
from tensor_regions.ir.tensor import TensorProto, make_tensor
from tensor_regions.provider.initializer_store import ConstantInitializerStore


@pytest.fixture
def allocator():
    return AllocatorManager().get_allocator(0)


@pytest.mark.parametrize("raw", [True, False])
def test_w0_private_copy(allocator, raw):
    """W0 [2,2] = [1,2,3,4] comes out the same from raw bytes or float_data."""
    store = ConstantInitializerStore(allocator)
    proto = make_tensor("W0", DType.FLOAT, [2, 2], [1, 2, 3, 4], raw=raw)
    assert store.capture("W0", proto)

    entry = store.get("W0")
    assert entry.shape == (2, 2)
    assert entry.dtype == DType.FLOAT
    np.testing.assert_array_equal(entry.buffer, np.array([[1, 2], [3, 4]], dtype=np.float32))
    assert allocator.owns(entry.buffer)

    # The copy is independent of the source payload
    proto.raw_data = b""
    proto.float_data = []
    np.testing.assert_array_equal(store.get("W0").buffer.reshape(-1), [1, 2, 3, 4])


def test_capture_is_idempotent(allocator):
    store = ConstantInitializerStore(allocator)
    first = make_tensor("W0", DType.FLOAT, [2], [1, 2])
    second = make_tensor("W0", DType.FLOAT, [2], [9, 9])
    assert store.capture("W0", first)
    buffer = store.get("W0").buffer
    assert store.capture("W0", second)

    assert len(store) == 1
    assert store.get("W0").buffer is buffer
    np.testing.assert_array_equal(buffer, [1, 2])
    assert len(allocator.blocks) == 1


def test_concurrent_capture_stores_one_entry(allocator):
    store = ConstantInitializerStore(allocator)
    proto = make_tensor("W0", DType.INT64, [3], [1, 2, 3])
    threads = [threading.Thread(target=store.capture, args=("W0", proto)) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert store.names() == ["W0"]
    assert len(allocator.blocks) == 1


def test_unimplemented_types_fail_loudly(allocator):
    store = ConstantInitializerStore(allocator)
    with pytest.raises(UnimplementedTypeError):
        store.capture("s", TensorProto("s", DType.STRING.code, [1]))
    with pytest.raises(UnimplementedTypeError):
        store.capture("b", TensorProto("b", DType.BFLOAT16.code, [1], raw_data=b"\x00\x00"))
    with pytest.raises(UnimplementedTypeError):
        store.capture("u", TensorProto("u", 99, [1]))
    assert len(store) == 0
    assert allocator.bytes_in_use == 0


def test_corrupt_payload_does_not_leak(allocator):
    store = ConstantInitializerStore(allocator)
    with pytest.raises(ValueError):
        store.capture("w", TensorProto("w", DType.FLOAT.code, [4], raw_data=struct.pack("<2f", 1, 2)))
    assert "w" not in store
    assert allocator.bytes_in_use == 0


def test_integer_and_bool_types(allocator):
    store = ConstantInitializerStore(allocator)
    cases = {
        DType.BOOL: [True, False],
        DType.INT8: [-1, 1],
        DType.UINT8: [0, 255],
        DType.INT16: [-300, 300],
        DType.UINT16: [0, 65535],
        DType.INT32: [-(2**31), 2**31 - 1],
        DType.INT64: [-(2**62), 2**62],
        DType.UINT32: [0, 2**32 - 1],
        DType.UINT64: [0, 2**64 - 1],
        DType.DOUBLE: [0.25, -0.5],
    }
    for dtype, values in cases.items():
        for raw in (True, False):
            name = f"{dtype.value}_{raw}"
            store.capture(name, make_tensor(name, dtype, [2], values, raw=raw))
            np.testing.assert_array_equal(store.get(name).buffer, np.array(values, dtype=dtype.np_dtype))


def test_capture_regions_skips_overridable_initializers(allocator):
    gb = GraphBuilder()
    x = gb.input("x", (2, 2))
    w = gb.initializer("W0", [[1, 2], [3, 4]])
    bias = gb.initializer("bias", [1, 1])
    gb.input("bias", (2,))
    unused = gb.initializer("unused", [5, 5])
    y = gb.add(gb.matmul(x, w, name="mm"), bias, name="add")
    gb.output(gb.add(unused, unused, name="other"))
    graph = gb.build()

    region = ClaimedRegion(0, [0, 1], nodes=[graph.get_node(0), graph.get_node(1)])
    store = ConstantInitializerStore(allocator)
    captured = store.capture_regions(graph, [region, region])

    assert captured == ["W0"]
    assert store.names() == ["W0"]
    assert "bias" not in store
    assert "unused" not in store


def test_release_frees_buffers(allocator):
    store = ConstantInitializerStore(allocator)
    store.capture("a", make_tensor("a", DType.FLOAT, [4], [1, 2, 3, 4]))
    store.capture("b", make_tensor("b", DType.INT32, [2], [1, 2]))
    assert allocator.bytes_in_use > 0
    store.release()
    assert len(store) == 0
    assert allocator.bytes_in_use == 0
