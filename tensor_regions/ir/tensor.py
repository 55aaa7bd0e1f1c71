import math
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence

import numpy as np

from .dtypes import DType
from .shape import Shape, format_shape
from ..errors import UnimplementedTypeError


@dataclass
class TensorInfo:
    """Per-tensor metadata as the host graph describes it."""

    name: str
    dtype: DType
    shape: Shape = None

    def __repr__(self):
        return f"<{self.name}: {self.dtype.value} {format_shape(self.shape)}>"


@dataclass
class TensorProto:
    """
    Serialized constant payload, laid out like onnx.TensorProto.

    Data lives either in raw_data (little-endian packed bytes) or in one of
    the typed field arrays. An empty raw_data means the typed field is used.
    """

    name: str
    data_type: int
    dims: List[int] = field(default_factory=list)
    raw_data: bytes = b""
    float_data: List[float] = field(default_factory=list)
    int32_data: List[int] = field(default_factory=list)
    int64_data: List[int] = field(default_factory=list)
    uint64_data: List[int] = field(default_factory=list)
    double_data: List[float] = field(default_factory=list)

    @property
    def dtype(self) -> DType:
        return DType.from_code(self.data_type)

    @property
    def element_count(self) -> int:
        return math.prod(self.dims) if self.dims else 1


# Typed field that carries each element type when raw_data is empty.
_FIELD_FOR_DTYPE = {
    DType.FLOAT: "float_data",
    DType.DOUBLE: "double_data",
    DType.INT32: "int32_data",
    DType.INT16: "int32_data",
    DType.INT8: "int32_data",
    DType.UINT16: "int32_data",
    DType.UINT8: "int32_data",
    DType.BOOL: "int32_data",
    DType.FLOAT16: "int32_data",
    DType.INT64: "int64_data",
    DType.UINT32: "uint64_data",
    DType.UINT64: "uint64_data",
}


def is_unpack_supported(dtype: DType) -> bool:
    return dtype in _FIELD_FOR_DTYPE


def unpack_tensor(proto: TensorProto, out: Optional[np.ndarray] = None) -> np.ndarray:
    """
    Decodes a TensorProto into a numpy array of its declared shape.

    Raw bytes are read as little-endian and converted to native byte order.
    Typed field arrays are converted element by element. If `out` is given,
    the values are written into it and `out` is returned.
    """
    dtype = proto.dtype
    if not is_unpack_supported(dtype):
        raise UnimplementedTypeError(
            f"Unimplemented type: {dtype.name} (code {proto.data_type}) for tensor '{proto.name}'"
        )

    count = proto.element_count
    if proto.raw_data:
        expected = count * dtype.itemsize
        if len(proto.raw_data) != expected:
            raise ValueError(
                f"Tensor '{proto.name}': raw data size does not match the shape, "
                f"expected {expected} bytes, got {len(proto.raw_data)}"
            )
        wire_dtype = dtype.np_dtype.newbyteorder("<")
        values = np.frombuffer(proto.raw_data, dtype=wire_dtype, count=count)
        values = values.astype(dtype.np_dtype)
    else:
        data = getattr(proto, _FIELD_FOR_DTYPE[dtype])
        if len(data) != count:
            raise ValueError(
                f"Corrupted tensor '{proto.name}': shape size ({count}) does not "
                f"match the data size ({len(data)})"
            )
        if dtype == DType.FLOAT16:
            # int32_data holds the raw fp16 bit patterns
            values = np.array(data, dtype=np.uint16).view(np.float16)
        elif dtype == DType.BOOL:
            values = np.array([bool(v) for v in data], dtype=np.bool_)
        else:
            values = np.array(data, dtype=dtype.np_dtype)

    values = values.reshape(tuple(proto.dims))
    if out is None:
        return values

    if out.shape != values.shape:
        raise ValueError(
            f"Tensor '{proto.name}': destination shape {out.shape} does not match {values.shape}"
        )
    np.copyto(out, values)
    return out


def make_tensor(
    name: str,
    dtype: DType,
    dims: Sequence[int],
    values: Any,
    raw: bool = False,
) -> TensorProto:
    """Builds a TensorProto from python or numpy values."""
    if not is_unpack_supported(dtype):
        raise UnimplementedTypeError(f"Cannot build a tensor of type {dtype.name}")

    arr = np.asarray(values, dtype=dtype.np_dtype).reshape(-1)
    proto = TensorProto(name=name, data_type=dtype.code, dims=list(dims))
    if raw:
        proto.raw_data = arr.astype(arr.dtype.newbyteorder("<")).tobytes()
        return proto

    field_name = _FIELD_FOR_DTYPE[dtype]
    if dtype == DType.FLOAT16:
        data = [int(v) for v in arr.view(np.uint16)]
    elif dtype in (DType.FLOAT, DType.DOUBLE):
        data = [float(v) for v in arr]
    else:
        data = [int(v) for v in arr]
    setattr(proto, field_name, data)
    return proto
