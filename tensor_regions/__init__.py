# Expose main components for easy access
from .ir import DType, Graph, GraphBuilder, TensorInfo, make_tensor, sym
from .ops.op_types import OpType
from .provider import RegionExecutionProvider
from .session import InferenceSession
