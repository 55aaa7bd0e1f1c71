import numpy as np

from tensor_regions.backend.kernels.elementwise import add, div, relu, sigmoid
from tensor_regions.backend.kernels.matmul import gemm, matmul, matmul_integer, matmul_integer16
from tensor_regions.backend.kernels.reduce import reduce_max, reduce_mean, reduce_sum


def test_elementwise_broadcast():
    a = np.ones((2, 3), dtype=np.float32)
    b = np.arange(3, dtype=np.float32)
    np.testing.assert_array_equal(add([a, b]), a + b)


def test_integer_division_truncates():
    a = np.array([7, -7], dtype=np.int32)
    b = np.array([2, 2], dtype=np.int32)
    res = div([a, b])
    assert res.dtype == np.int32
    np.testing.assert_array_equal(res, [3, -3])


def test_relu_sigmoid():
    x = np.array([-1.0, 0.0, 2.0], dtype=np.float32)
    np.testing.assert_array_equal(relu([x]), [0.0, 0.0, 2.0])
    assert sigmoid([x]).dtype == np.float32
    np.testing.assert_allclose(sigmoid([x])[1], 0.5)


def test_gemm_transpose_and_bias():
    a = np.random.randn(3, 2).astype(np.float32)
    b = np.random.randn(4, 3).astype(np.float32)
    c = np.ones((4,), dtype=np.float32)
    res = gemm([a, b, c], {"transA": 1, "transB": 1, "alpha": 2.0, "beta": 0.5})
    np.testing.assert_allclose(res, 2.0 * a.T @ b.T + 0.5 * c, rtol=1e-5)
    np.testing.assert_allclose(matmul([a.T, b.T]), a.T @ b.T, rtol=1e-5)


def test_matmul_integer_zero_points():
    a = np.array([[11, 7, 3], [10, 6, 2]], dtype=np.uint8)
    b = np.array([[1, 4], [2, 5], [3, 6]], dtype=np.uint8)
    a_zp = np.array(12, dtype=np.uint8)
    res = matmul_integer([a, b, a_zp])
    assert res.dtype == np.int32
    np.testing.assert_array_equal(res, (a.astype(np.int32) - 12) @ b.astype(np.int32))


def test_matmul_integer16():
    a = np.array([[-300, 2]], dtype=np.int16)
    b = np.array([[1000], [3]], dtype=np.int16)
    np.testing.assert_array_equal(matmul_integer16([a, b]), [[-299994]])


def test_reductions():
    x = np.arange(24, dtype=np.float32).reshape(2, 3, 4)
    assert reduce_sum([x], {"axes": [1], "keepdims": 1}).shape == (2, 1, 4)
    assert reduce_mean([x], {"axes": [0, 2], "keepdims": 0}).shape == (3,)
    # No axes reduces everything
    np.testing.assert_array_equal(reduce_max([x], {"keepdims": 0}), 23.0)
    # Axes as an input
    res = reduce_sum([x, np.array([-1], dtype=np.int64)], {"keepdims": 0})
    np.testing.assert_array_equal(res, x.sum(axis=-1))
