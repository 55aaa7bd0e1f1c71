from .dtypes import DType, get_size_bytes
from .shape import sym, as_shape, is_dim_defined, is_shape_defined
from .tensor import TensorInfo, TensorProto, make_tensor, unpack_tensor
from .node import Node
from .graph import Graph, GraphBuilder
