import math
from enum import Enum
from typing import Tuple, Optional, Any

import numpy as np


class DType(Enum):
    FLOAT = "float32"
    UINT8 = "uint8"
    INT8 = "int8"
    UINT16 = "uint16"
    INT16 = "int16"
    INT32 = "int32"
    INT64 = "int64"
    STRING = "string"
    BOOL = "bool"
    FLOAT16 = "float16"
    DOUBLE = "float64"
    UINT32 = "uint32"
    UINT64 = "uint64"
    COMPLEX64 = "complex64"
    COMPLEX128 = "complex128"
    BFLOAT16 = "bfloat16"

    @property
    def code(self) -> int:
        """The ONNX TensorProto.DataType code for this element type."""
        return _DTYPE_TO_CODE[self]

    @classmethod
    def from_code(cls, code: int) -> "DType":
        if code not in _CODE_TO_DTYPE:
            raise ValueError(f"Unknown element type code: {code}")
        return _CODE_TO_DTYPE[code]

    @classmethod
    def from_numpy(cls, np_dtype: Any) -> "DType":
        name = np.dtype(np_dtype).name
        for member in cls:
            if member.value == name:
                return member
        raise ValueError(f"No element type for numpy dtype {name}")

    @property
    def itemsize(self) -> int:
        """Returns the number of bytes per element."""
        return {
            DType.FLOAT: 4,
            DType.UINT8: 1,
            DType.INT8: 1,
            DType.UINT16: 2,
            DType.INT16: 2,
            DType.INT32: 4,
            DType.INT64: 8,
            DType.STRING: 0,
            DType.BOOL: 1,
            DType.FLOAT16: 2,
            DType.DOUBLE: 8,
            DType.UINT32: 4,
            DType.UINT64: 8,
            DType.COMPLEX64: 8,
            DType.COMPLEX128: 16,
            DType.BFLOAT16: 2,
        }[self]

    @property
    def np_dtype(self) -> Optional[np.dtype]:
        """Native numpy dtype, or None when numpy has no such type."""
        if self in (DType.STRING, DType.BFLOAT16):
            return None
        return np.dtype(self.value)


_DTYPE_TO_CODE = {
    DType.FLOAT: 1,
    DType.UINT8: 2,
    DType.INT8: 3,
    DType.UINT16: 4,
    DType.INT16: 5,
    DType.INT32: 6,
    DType.INT64: 7,
    DType.STRING: 8,
    DType.BOOL: 9,
    DType.FLOAT16: 10,
    DType.DOUBLE: 11,
    DType.UINT32: 12,
    DType.UINT64: 13,
    DType.COMPLEX64: 14,
    DType.COMPLEX128: 15,
    DType.BFLOAT16: 16,
}
_CODE_TO_DTYPE = {code: dtype for dtype, code in _DTYPE_TO_CODE.items()}


def get_size_bytes(shape: Optional[Tuple[Any, ...]], dtype: DType) -> int:
    """
    Total byte size of a concrete shape.
    Raises ValueError for absent shapes or shapes with non-integer dimensions.
    """
    if shape is None or any(not isinstance(d, int) for d in shape):
        raise ValueError(f"Cannot calculate byte size for non-concrete shape: {shape}")

    # Handle scalar shapes ()
    if len(shape) == 0:
        return dtype.itemsize

    return math.prod(shape) * dtype.itemsize
