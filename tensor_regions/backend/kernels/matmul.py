import numpy as np

from ..registry import register_kernel
from ...ops.op_types import OpType, MS_DOMAIN


@register_kernel(OpType.MATMUL, since_version=1)
def matmul(inputs, attrs=None):
    return np.matmul(inputs[0], inputs[1])


@register_kernel(OpType.GEMM, since_version=7)
def gemm(inputs, attrs=None):
    """Y = alpha * A' * B' + beta * C"""
    attrs = attrs or {}
    a, b = inputs[0], inputs[1]
    if attrs.get("transA", 0):
        a = a.T
    if attrs.get("transB", 0):
        b = b.T
    y = attrs.get("alpha", 1.0) * np.matmul(a, b)
    if len(inputs) > 2 and inputs[2] is not None:
        y = y + attrs.get("beta", 1.0) * inputs[2]
    return y.astype(inputs[0].dtype)


def _integer_matmul(a, b, a_zero_point=None, b_zero_point=None):
    a = a.astype(np.int32)
    b = b.astype(np.int32)
    if a_zero_point is not None:
        a = a - a_zero_point.astype(np.int32)
    if b_zero_point is not None:
        b = b - b_zero_point.astype(np.int32)
    return np.matmul(a, b).astype(np.int32)


@register_kernel(OpType.MATMUL_INTEGER, since_version=10)
def matmul_integer(inputs, attrs=None):
    a_zp = inputs[2] if len(inputs) > 2 else None
    b_zp = inputs[3] if len(inputs) > 3 else None
    return _integer_matmul(inputs[0], inputs[1], a_zp, b_zp)


@register_kernel(OpType.MATMUL_INTEGER16, since_version=1, domain=MS_DOMAIN)
def matmul_integer16(inputs, attrs=None):
    return _integer_matmul(inputs[0], inputs[1])
