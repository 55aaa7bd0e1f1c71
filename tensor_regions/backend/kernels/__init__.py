from . import elementwise
from . import matmul
from . import manipulation
from . import reduce
from . import softmax

__all__ = [
    "elementwise",
    "matmul",
    "manipulation",
    "reduce",
    "softmax",
]
