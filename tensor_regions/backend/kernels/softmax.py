import numpy as np

from ..registry import register_kernel
from ...ops.op_types import OpType


def _coerce_2d(x, axis):
    """
    Opset < 13 semantics: the input is viewed as a 2-D matrix
    [prod(shape[:axis]), prod(shape[axis:])] and the op runs along rows.
    """
    if axis < 0:
        axis += x.ndim
    rows = int(np.prod(x.shape[:axis])) if axis else 1
    return x.reshape(rows, -1)


@register_kernel(OpType.SOFTMAX, since_version=1)
def softmax(inputs, attrs=None):
    x = inputs[0]
    flat = _coerce_2d(x, (attrs or {}).get("axis", 1))
    e = np.exp(flat - np.max(flat, axis=-1, keepdims=True))
    return (e / np.sum(e, axis=-1, keepdims=True)).reshape(x.shape).astype(x.dtype)


@register_kernel(OpType.LOG_SOFTMAX, since_version=1)
def log_softmax(inputs, attrs=None):
    x = inputs[0]
    flat = _coerce_2d(x, (attrs or {}).get("axis", 1))
    shifted = flat - np.max(flat, axis=-1, keepdims=True)
    out = shifted - np.log(np.sum(np.exp(shifted), axis=-1, keepdims=True))
    return out.reshape(x.shape).astype(x.dtype)


@register_kernel(OpType.HARDMAX, since_version=1)
def hardmax(inputs, attrs=None):
    """1 at the first maximum of each row, 0 elsewhere."""
    x = inputs[0]
    flat = _coerce_2d(x, (attrs or {}).get("axis", 1))
    out = np.zeros_like(flat)
    out[np.arange(flat.shape[0]), np.argmax(flat, axis=-1)] = 1
    return out.reshape(x.shape)
