from .op_types import OpType, ONNX_DOMAIN, MS_DOMAIN
