ONNX_DOMAIN = ""
MS_DOMAIN = "com.microsoft"


class OpType:
    # --- Elementwise ---
    ADD = "Add"
    SUB = "Sub"
    MUL = "Mul"
    DIV = "Div"
    POW = "Pow"
    RELU = "Relu"
    SIGMOID = "Sigmoid"
    TANH = "Tanh"
    EXP = "Exp"
    LOG = "Log"
    SQRT = "Sqrt"
    NEG = "Neg"
    ABS = "Abs"

    # --- Linear Algebra ---
    MATMUL = "MatMul"
    GEMM = "Gemm"
    MATMUL_INTEGER = "MatMulInteger"
    MATMUL_INTEGER16 = "MatMulInteger16"

    # --- Manipulation ---
    RESHAPE = "Reshape"
    TRANSPOSE = "Transpose"
    TILE = "Tile"
    SLICE = "Slice"
    CONCAT = "Concat"
    CAST = "Cast"
    IDENTITY = "Identity"
    UNSQUEEZE = "Unsqueeze"
    SQUEEZE = "Squeeze"
    FLATTEN = "Flatten"
    GATHER = "Gather"

    # --- Reduction ---
    REDUCE_SUM = "ReduceSum"
    REDUCE_MEAN = "ReduceMean"
    REDUCE_MAX = "ReduceMax"
    REDUCE_MIN = "ReduceMin"
    REDUCE_PROD = "ReduceProd"

    # --- Softmax Family ---
    SOFTMAX = "Softmax"
    LOG_SOFTMAX = "LogSoftmax"
    HARDMAX = "Hardmax"

    @classmethod
    def all(cls):
        return [
            v
            for k, v in cls.__dict__.items()
            if not k.startswith("_") and isinstance(v, str)
        ]


BINARY_ELEMENTWISE = [OpType.ADD, OpType.SUB, OpType.MUL, OpType.DIV, OpType.POW]

UNARY_ELEMENTWISE = [
    OpType.RELU,
    OpType.SIGMOID,
    OpType.TANH,
    OpType.EXP,
    OpType.LOG,
    OpType.SQRT,
    OpType.NEG,
    OpType.ABS,
]

REDUCTIONS = [
    OpType.REDUCE_SUM,
    OpType.REDUCE_MEAN,
    OpType.REDUCE_MAX,
    OpType.REDUCE_MIN,
    OpType.REDUCE_PROD,
]

SOFTMAX_FAMILY = [OpType.SOFTMAX, OpType.LOG_SOFTMAX, OpType.HARDMAX]
