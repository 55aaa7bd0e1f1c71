import numpy as np

from ..registry import register_kernel
from ...ops.op_types import OpType


def _reduce(np_fn):
    def kernel(inputs, attrs=None):
        attrs = attrs or {}
        data = inputs[0]
        axes = attrs.get("axes")
        if axes is None and len(inputs) > 1 and inputs[1] is not None:
            axes = [int(a) for a in inputs[1].reshape(-1)]
        keepdims = bool(attrs.get("keepdims", 1))
        axis = tuple(int(a) for a in axes) if axes else None
        return np.asarray(np_fn(data, axis=axis, keepdims=keepdims)).astype(data.dtype)

    return kernel


reduce_sum = register_kernel(OpType.REDUCE_SUM, since_version=1)(_reduce(np.sum))
reduce_mean = register_kernel(OpType.REDUCE_MEAN, since_version=1)(_reduce(np.mean))
reduce_max = register_kernel(OpType.REDUCE_MAX, since_version=1)(_reduce(np.max))
reduce_min = register_kernel(OpType.REDUCE_MIN, since_version=1)(_reduce(np.min))
reduce_prod = register_kernel(OpType.REDUCE_PROD, since_version=1)(_reduce(np.prod))
