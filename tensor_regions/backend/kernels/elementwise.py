import numpy as np

from ..registry import register_kernel
from ...ops.op_types import OpType


# --- Binary (numpy broadcasting matches ONNX multidirectional broadcasting) ---


@register_kernel(OpType.ADD, since_version=7)
def add(inputs, attrs=None):
    return inputs[0] + inputs[1]


@register_kernel(OpType.SUB, since_version=7)
def sub(inputs, attrs=None):
    return inputs[0] - inputs[1]


@register_kernel(OpType.MUL, since_version=7)
def mul(inputs, attrs=None):
    return inputs[0] * inputs[1]


@register_kernel(OpType.DIV, since_version=7)
def div(inputs, attrs=None):
    a, b = inputs
    if np.issubdtype(a.dtype, np.integer):
        # Integer division truncates toward zero
        return (np.trunc(a / b)).astype(a.dtype)
    return a / b


@register_kernel(OpType.POW, since_version=7)
def power(inputs, attrs=None):
    return np.power(inputs[0], inputs[1]).astype(inputs[0].dtype)


# --- Unary ---


@register_kernel(OpType.RELU, since_version=6)
def relu(inputs, attrs=None):
    return np.maximum(inputs[0], 0).astype(inputs[0].dtype)


@register_kernel(OpType.SIGMOID, since_version=6)
def sigmoid(inputs, attrs=None):
    x = inputs[0]
    return (1.0 / (1.0 + np.exp(-x))).astype(x.dtype)


@register_kernel(OpType.TANH, since_version=6)
def tanh(inputs, attrs=None):
    return np.tanh(inputs[0])


@register_kernel(OpType.EXP, since_version=6)
def exp(inputs, attrs=None):
    return np.exp(inputs[0])


@register_kernel(OpType.LOG, since_version=6)
def log(inputs, attrs=None):
    return np.log(inputs[0])


@register_kernel(OpType.SQRT, since_version=6)
def sqrt(inputs, attrs=None):
    return np.sqrt(inputs[0])


@register_kernel(OpType.NEG, since_version=6)
def neg(inputs, attrs=None):
    return np.negative(inputs[0])


@register_kernel(OpType.ABS, since_version=6)
def absolute(inputs, attrs=None):
    return np.abs(inputs[0])
