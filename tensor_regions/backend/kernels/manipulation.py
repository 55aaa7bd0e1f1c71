import numpy as np

from ..registry import register_kernel
from ...ir.dtypes import DType
from ...ops.op_types import OpType


def _ints(arr):
    return [int(v) for v in np.asarray(arr).reshape(-1)]


@register_kernel(OpType.RESHAPE, since_version=5)
def reshape(inputs, attrs=None):
    attrs = attrs or {}
    data = inputs[0]
    target = _ints(inputs[1])
    if not attrs.get("allowzero", 0):
        # 0 copies the extent from the input
        target = [data.shape[i] if d == 0 else d for i, d in enumerate(target)]
    return data.reshape(target)


@register_kernel(OpType.TRANSPOSE, since_version=1)
def transpose(inputs, attrs=None):
    perm = (attrs or {}).get("perm")
    return np.ascontiguousarray(np.transpose(inputs[0], perm))


@register_kernel(OpType.TILE, since_version=6)
def tile(inputs, attrs=None):
    return np.tile(inputs[0], _ints(inputs[1]))


def _apply_slice(data, starts, ends, axes, steps):
    index = [slice(None)] * data.ndim
    for start, end, axis, step in zip(starts, ends, axes, steps):
        if axis < 0:
            axis += data.ndim
        index[axis] = slice(start, end, step)
    return data[tuple(index)]


@register_kernel(OpType.SLICE, since_version=1, end_version=9)
def slice_attr(inputs, attrs=None):
    """Slice-1: starts/ends/axes are static attributes."""
    attrs = attrs or {}
    starts = list(attrs.get("starts", []))
    ends = list(attrs.get("ends", []))
    axes = list(attrs.get("axes", range(len(starts))))
    return _apply_slice(inputs[0], starts, ends, axes, [1] * len(starts))


@register_kernel(OpType.SLICE, since_version=10)
def slice_tensor(inputs, attrs=None):
    """Slice-10: starts/ends/axes/steps arrive as tensors."""
    if len(inputs) == 1:
        return slice_attr(inputs, attrs)
    data = inputs[0]
    starts = _ints(inputs[1])
    ends = _ints(inputs[2])
    axes = _ints(inputs[3]) if len(inputs) > 3 and inputs[3] is not None else list(range(len(starts)))
    steps = _ints(inputs[4]) if len(inputs) > 4 and inputs[4] is not None else [1] * len(starts)
    return _apply_slice(data, starts, ends, axes, steps)


@register_kernel(OpType.CONCAT, since_version=4)
def concat(inputs, attrs=None):
    return np.concatenate([x for x in inputs if x is not None], axis=(attrs or {}).get("axis", 0))


@register_kernel(OpType.CAST, since_version=6)
def cast(inputs, attrs=None):
    to = DType.from_code((attrs or {})["to"])
    return inputs[0].astype(to.np_dtype)


@register_kernel(OpType.IDENTITY, since_version=1)
def identity(inputs, attrs=None):
    return inputs[0].copy()


def _axes(inputs, attrs):
    axes = (attrs or {}).get("axes")
    if axes is not None:
        return [int(a) for a in axes]
    if len(inputs) > 1 and inputs[1] is not None:
        return _ints(inputs[1])
    return None


@register_kernel(OpType.UNSQUEEZE, since_version=1)
def unsqueeze(inputs, attrs=None):
    data = inputs[0]
    axes = _axes(inputs, attrs)
    rank = data.ndim + len(axes)
    out = data
    for a in sorted(a + rank if a < 0 else a for a in axes):
        out = np.expand_dims(out, a)
    return out


@register_kernel(OpType.SQUEEZE, since_version=1)
def squeeze(inputs, attrs=None):
    axes = _axes(inputs, attrs)
    return np.squeeze(inputs[0], axis=tuple(axes) if axes else None)


@register_kernel(OpType.FLATTEN, since_version=1)
def flatten(inputs, attrs=None):
    data = inputs[0]
    axis = (attrs or {}).get("axis", 1)
    if axis < 0:
        axis += data.ndim
    outer = int(np.prod(data.shape[:axis])) if axis else 1
    return data.reshape(outer, int(np.prod(data.shape[axis:])))


@register_kernel(OpType.GATHER, since_version=1)
def gather(inputs, attrs=None):
    data, indices = inputs
    axis = (attrs or {}).get("axis", 0)
    indices = indices.astype(np.int64)
    # Negative indices count from the end of the axis
    indices = np.where(indices < 0, indices + data.shape[axis], indices)
    return np.take(data, indices, axis=axis)
