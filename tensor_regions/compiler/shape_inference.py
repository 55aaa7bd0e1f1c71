from types import MappingProxyType
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import sympy
from tqdm import tqdm

from ..config import DEBUG_PARTITION, DEBUG_DETAILED
from ..errors import ExecutionError, ShapeInferenceError
from ..ir.dtypes import DType
from ..ir.graph import Graph
from ..ir.node import Node
from ..ir.shape import Dim, Shape, dims_equal, is_symbolic, normalize_axis, format_shape
from ..ir.tensor import TensorInfo, unpack_tensor
from ..ops.op_types import (
    OpType,
    BINARY_ELEMENTWISE,
    UNARY_ELEMENTWISE,
    REDUCTIONS,
    SOFTMAX_FAMILY,
)

# Slice end values at or beyond this mean "to the end of the axis".
SLICE_END_SENTINEL = 2**31 - 1

InferredOutput = Tuple[Optional[DType], Shape]


def _to_dim(expr) -> Dim:
    if expr is None:
        return None
    expr = sympy.simplify(sympy.sympify(expr))
    if expr.is_Integer:
        return int(expr)
    if expr.free_symbols:
        return expr
    raise ShapeInferenceError(f"Dimension {expr} is not an integer")


def _prod(dims: Sequence[Dim]) -> Dim:
    """Product of dims. Returns None if any dimension is unknown."""
    if any(d is None for d in dims):
        return None
    if all(isinstance(d, int) for d in dims):
        result = 1
        for d in dims:
            result *= d
        return result
    return _to_dim(sympy.Mul(*[sympy.sympify(d) for d in dims]))


def _axis(axis: int, rank: int, node: Node) -> int:
    try:
        return normalize_axis(int(axis), rank)
    except ValueError as e:
        raise ShapeInferenceError(f"{node.name}: {e}") from e


def _broadcast_dim(d1: Dim, d2: Dim, node: Node) -> Dim:
    if d1 == 1:
        return d2
    if d2 == 1:
        return d1
    if d1 is None or d2 is None:
        return None
    if isinstance(d1, int) and isinstance(d2, int):
        if d1 != d2:
            raise ShapeInferenceError(
                f"{node.name}: cannot broadcast dimensions {d1} and {d2}"
            )
        return d1
    if dims_equal(d1, d2):
        return d1
    # A symbolic extent can only broadcast against a concrete one by matching it.
    if isinstance(d1, int):
        return d1
    if isinstance(d2, int):
        return d2
    return None


def broadcast_shapes(shapes: Sequence[Tuple[Dim, ...]], node: Node) -> Tuple[Dim, ...]:
    out_ndim = max(len(s) for s in shapes)
    result: List[Dim] = [1] * out_ndim
    for shape in shapes:
        padded = (1,) * (out_ndim - len(shape)) + tuple(shape)
        result = [_broadcast_dim(a, b, node) for a, b in zip(result, padded)]
    return tuple(result)


class ShapeInferenceContext:
    """
    Whole-graph shape inference. Resolves every tensor to a mix of concrete
    and symbolic dimensions, once, before any eligibility decision is made.
    """

    def __init__(self):
        self._infos: Dict[str, TensorInfo] = {}
        self._graph: Optional[Graph] = None
        self._const_cache: Dict[str, np.ndarray] = {}
        self.succeeded = False
        self.error: Optional[str] = None

    # --- Orchestration ---

    def run(self, graph: Graph) -> bool:
        self._infos = {name: TensorInfo(info.name, info.dtype, info.shape) for name, info in graph.tensors.items()}
        self._const_cache = {}
        self._graph = graph
        self.succeeded = False
        self.error = None
        try:
            for node in tqdm(
                graph.topological_order(),
                disable=not DEBUG_PARTITION,
                desc="Shape inference",
            ):
                self._infer_node(node)
        except ShapeInferenceError as e:
            self.error = str(e)
            return False
        finally:
            self._graph = None
            self._const_cache = {}

        self.succeeded = True
        return True

    def _infer_node(self, node: Node):
        handler = ShapeInference.get_handler(node.op_type)
        inferred: List[InferredOutput] = []

        present_inputs = [name for name in node.inputs if name]
        inputs_known = all(self.has_shape(name) for name in present_inputs)

        if handler is not None and inputs_known:
            inferred = handler(node, self)
        elif handler is not None and node.inputs:
            # Propagate the element type even when shapes are missing upstream.
            inferred = [(self.input_dtype(node, 0), None)] * len(node.outputs)

        for i, out in enumerate(node.outputs):
            if not out:
                continue
            dtype, shape = inferred[i] if i < len(inferred) else (None, None)
            declared = self._infos.get(out)
            if declared is not None:
                shape = self._merge(out, shape, declared.shape)
                dtype = dtype or declared.dtype
            if dtype is None and node.inputs and self.input_dtype(node, 0) is not None:
                dtype = self.input_dtype(node, 0)
            self._infos[out] = TensorInfo(out, dtype or DType.FLOAT, shape)

            if DEBUG_PARTITION and DEBUG_DETAILED:
                print(f"[ShapeInference] {node.name}:{out} -> {format_shape(shape)}")

    @staticmethod
    def _merge(name: str, inferred: Shape, declared: Shape) -> Shape:
        if inferred is None:
            return declared
        if declared is None:
            return inferred
        if len(inferred) != len(declared):
            raise ShapeInferenceError(
                f"Tensor '{name}': inferred rank {len(inferred)} conflicts with declared rank {len(declared)}"
            )
        merged = []
        for a, b in zip(inferred, declared):
            if isinstance(a, int) and isinstance(b, int) and a != b:
                raise ShapeInferenceError(
                    f"Tensor '{name}': inferred shape {format_shape(inferred)} conflicts with "
                    f"declared {format_shape(declared)}"
                )
            # Prefer whatever is more specific: concrete > symbolic > unknown.
            if isinstance(a, int):
                merged.append(a)
            elif isinstance(b, int):
                merged.append(b)
            else:
                merged.append(a if a is not None else b)
        return tuple(merged)

    # --- Queries used by handlers and by the eligibility predicate ---

    def get_info(self, name: str) -> Optional[TensorInfo]:
        return self._infos.get(name)

    def get_shape(self, name: str) -> Shape:
        info = self._infos.get(name)
        return info.shape if info is not None else None

    def has_shape(self, name: str) -> bool:
        return self.get_shape(name) is not None

    def input_shape(self, node: Node, i: int) -> Shape:
        return self.get_shape(node.inputs[i]) if node.has_input(i) else None

    def input_dtype(self, node: Node, i: int) -> Optional[DType]:
        info = self._infos.get(node.inputs[i]) if node.has_input(i) else None
        return info.dtype if info is not None else None

    def const_value(self, name: str) -> Optional[np.ndarray]:
        """Value of a constant initializer, or None if the tensor is not constant."""
        if self._graph is None or not name or not self._graph.is_constant_initializer(name):
            return None
        if name not in self._const_cache:
            self._const_cache[name] = unpack_tensor(self._graph.get_initializer(name))
        return self._const_cache[name]

    def snapshot(self) -> Mapping[str, TensorInfo]:
        """Read-only view of every inferred tensor, shared with compiled units."""
        return MappingProxyType(dict(self._infos))


class ShapeInference:
    _handlers: Dict[str, Callable] = {}

    @classmethod
    def register_handler(cls, op_type: str):
        def decorator(func):
            cls._handlers[op_type] = func
            return func

        return decorator

    @classmethod
    def get_handler(cls, op_type: str) -> Optional[Callable]:
        return cls._handlers.get(op_type)


class DimBindings:
    """
    Binds symbolic dimensions to concrete extents for one compute request.
    Created per call and discarded afterwards, so no binding leaks between
    requests or threads.
    """

    def __init__(self):
        self._values: Dict[sympy.Symbol, int] = {}

    def bind(self, name: str, shape: Shape, concrete: Sequence[int]):
        if shape is None:
            return
        if len(shape) != len(concrete):
            raise ExecutionError(
                f"'{name}': expected rank {len(shape)}, got buffer of shape {tuple(concrete)}"
            )
        deferred = []
        for dim, actual in zip(shape, concrete):
            if isinstance(dim, sympy.Symbol):
                bound = self._values.setdefault(dim, int(actual))
                if bound != actual:
                    raise ExecutionError(
                        f"'{name}': dimension {dim} is bound to {bound}, got {actual}"
                    )
            elif is_symbolic(dim):
                deferred.append((dim, actual))
            elif dim is not None and dim != actual:
                raise ExecutionError(
                    f"'{name}': expected shape {format_shape(shape)}, got {tuple(concrete)}"
                )
        for dim, actual in deferred:
            value = dim.subs(self._values)
            if value.free_symbols:
                continue
            if int(value) != actual:
                raise ExecutionError(
                    f"'{name}': dimension {dim} evaluates to {value}, got {actual}"
                )

    def resolve(self, shape: Shape) -> Tuple[int, ...]:
        if shape is None:
            raise ExecutionError("Cannot resolve an absent shape")
        result = []
        for dim in shape:
            if dim is None:
                raise ExecutionError(f"Shape {format_shape(shape)} has an unknown dimension")
            if isinstance(dim, int):
                result.append(dim)
                continue
            value = dim.subs(self._values)
            if value.free_symbols:
                raise ExecutionError(f"Dimension {dim} is not bound by any input")
            result.append(int(value))
        return tuple(result)

    def __len__(self):
        return len(self._values)


# ==============================================================================
# Op Handlers
# ==============================================================================


def _same_as_input(node: Node, ctx: ShapeInferenceContext) -> List[InferredOutput]:
    return [(ctx.input_dtype(node, 0), ctx.input_shape(node, 0))]


for op in UNARY_ELEMENTWISE + SOFTMAX_FAMILY + [OpType.IDENTITY]:
    ShapeInference.register_handler(op)(_same_as_input)


def _handle_broadcast(node: Node, ctx: ShapeInferenceContext) -> List[InferredOutput]:
    shapes = [ctx.get_shape(name) for name in node.input_defs()]
    return [(ctx.input_dtype(node, 0), broadcast_shapes(shapes, node))]


for op in BINARY_ELEMENTWISE:
    ShapeInference.register_handler(op)(_handle_broadcast)


@ShapeInference.register_handler(OpType.CAST)
def handle_cast(node: Node, ctx: ShapeInferenceContext):
    to = node.get_attr("to")
    if to is None:
        raise ShapeInferenceError(f"{node.name}: Cast requires a 'to' attribute")
    return [(DType.from_code(int(to)), ctx.input_shape(node, 0))]


# --- Linear Algebra ---


def _matmul_shape(a: Tuple[Dim, ...], b: Tuple[Dim, ...], node: Node) -> Tuple[Dim, ...]:
    if len(a) == 0 or len(b) == 0:
        raise ShapeInferenceError(f"{node.name}: MatMul inputs must not be scalars")
    a_vec, b_vec = len(a) == 1, len(b) == 1
    if a_vec:
        a = (1,) + tuple(a)
    if b_vec:
        b = tuple(b) + (1,)

    k_a, k_b = a[-1], b[-2]
    if isinstance(k_a, int) and isinstance(k_b, int) and k_a != k_b:
        raise ShapeInferenceError(
            f"{node.name}: inner dimensions do not match ({k_a} vs {k_b})"
        )

    batch = broadcast_shapes([a[:-2], b[:-2]], node) if (len(a) > 2 or len(b) > 2) else ()
    out = list(batch) + [a[-2], b[-1]]
    if a_vec:
        out.pop(-2)
    if b_vec:
        out.pop(-1)
    return tuple(out)


@ShapeInference.register_handler(OpType.MATMUL)
def handle_matmul(node: Node, ctx: ShapeInferenceContext):
    shape = _matmul_shape(ctx.input_shape(node, 0), ctx.input_shape(node, 1), node)
    return [(ctx.input_dtype(node, 0), shape)]


def _handle_integer_matmul(node: Node, ctx: ShapeInferenceContext):
    shape = _matmul_shape(ctx.input_shape(node, 0), ctx.input_shape(node, 1), node)
    return [(DType.INT32, shape)]


for op in [OpType.MATMUL_INTEGER, OpType.MATMUL_INTEGER16]:
    ShapeInference.register_handler(op)(_handle_integer_matmul)


@ShapeInference.register_handler(OpType.GEMM)
def handle_gemm(node: Node, ctx: ShapeInferenceContext):
    a, b = ctx.input_shape(node, 0), ctx.input_shape(node, 1)
    if len(a) != 2 or len(b) != 2:
        raise ShapeInferenceError(f"{node.name}: Gemm inputs must be rank 2")
    if node.get_attr("transA", 0):
        a = a[::-1]
    if node.get_attr("transB", 0):
        b = b[::-1]
    out = _matmul_shape(a, b, node)
    if node.has_input(2):
        broadcast_shapes([out, ctx.input_shape(node, 2)], node)
    return [(ctx.input_dtype(node, 0), out)]


# --- Manipulation ---


@ShapeInference.register_handler(OpType.RESHAPE)
def handle_reshape(node: Node, ctx: ShapeInferenceContext):
    data = ctx.input_shape(node, 0)
    dtype = ctx.input_dtype(node, 0)
    target = ctx.const_value(node.inputs[1])
    if target is None:
        # Rank is known from the shape tensor, the extents are not.
        shape_of_shape = ctx.input_shape(node, 1)
        if shape_of_shape is not None and len(shape_of_shape) == 1 and isinstance(shape_of_shape[0], int):
            return [(dtype, (None,) * shape_of_shape[0])]
        return [(dtype, None)]

    allow_zero = node.get_attr("allowzero", 0)
    out: List[Dim] = []
    infer_at = None
    for i, d in enumerate(int(v) for v in target.reshape(-1)):
        if d == -1:
            if infer_at is not None:
                raise ShapeInferenceError(f"{node.name}: Reshape allows at most one -1")
            infer_at = i
            out.append(None)
        elif d == 0 and not allow_zero:
            if i >= len(data):
                raise ShapeInferenceError(f"{node.name}: Reshape copies axis {i} past input rank")
            out.append(data[i])
        else:
            out.append(d)

    total = _prod(data)
    if infer_at is not None:
        known = _prod([d for i, d in enumerate(out) if i != infer_at])
        if total is None or known is None:
            out[infer_at] = None
        elif isinstance(total, int) and isinstance(known, int):
            if known == 0 or total % known != 0:
                raise ShapeInferenceError(
                    f"{node.name}: cannot reshape {format_shape(data)} into {target.tolist()}"
                )
            out[infer_at] = total // known
        else:
            out[infer_at] = _to_dim(sympy.sympify(total) / sympy.sympify(known))
    elif isinstance(total, int):
        new_total = _prod(out)
        if isinstance(new_total, int) and new_total != total:
            raise ShapeInferenceError(
                f"{node.name}: cannot reshape {format_shape(data)} into {format_shape(tuple(out))}"
            )
    return [(dtype, tuple(out))]


@ShapeInference.register_handler(OpType.TRANSPOSE)
def handle_transpose(node: Node, ctx: ShapeInferenceContext):
    data = ctx.input_shape(node, 0)
    perm = node.get_attr("perm") or list(reversed(range(len(data))))
    if sorted(perm) != list(range(len(data))):
        raise ShapeInferenceError(f"{node.name}: invalid perm {perm} for rank {len(data)}")
    return [(ctx.input_dtype(node, 0), tuple(data[p] for p in perm))]


@ShapeInference.register_handler(OpType.TILE)
def handle_tile(node: Node, ctx: ShapeInferenceContext):
    data = ctx.input_shape(node, 0)
    repeats = ctx.const_value(node.inputs[1])
    if repeats is None:
        return [(ctx.input_dtype(node, 0), (None,) * len(data))]
    repeats = [int(r) for r in repeats.reshape(-1)]
    if len(repeats) != len(data):
        raise ShapeInferenceError(
            f"{node.name}: repeats has {len(repeats)} entries for rank {len(data)}"
        )
    return [(ctx.input_dtype(node, 0), tuple(_prod([d, r]) for d, r in zip(data, repeats)))]


def _sliced_dim(dim: Dim, start: int, end: int, step: int) -> Dim:
    if isinstance(dim, int):
        return len(range(*slice(start, end, step).indices(dim)))
    if dim is None or step != 1 or end < SLICE_END_SENTINEL:
        return None
    # Open-ended window over a symbolic extent
    if start >= 0:
        return _to_dim(dim - start) if start else dim
    return -start


@ShapeInference.register_handler(OpType.SLICE)
def handle_slice(node: Node, ctx: ShapeInferenceContext):
    data = ctx.input_shape(node, 0)
    dtype = ctx.input_dtype(node, 0)

    if len(node.inputs) > 1:
        params = [
            ctx.const_value(node.inputs[i]) if node.has_input(i) else None
            for i in range(1, 5)
        ]
        starts, ends, axes, steps = params
        dynamic = any(
            node.has_input(i) and params[i - 1] is None for i in range(1, 5)
        )
        if dynamic:
            # Windowed axes lose their extent; untouched axes keep theirs.
            if axes is None:
                return [(dtype, (None,) * len(data))]
            unknown = {_axis(a, len(data), node) for a in axes.reshape(-1)}
            return [(dtype, tuple(None if i in unknown else d for i, d in enumerate(data)))]
        if starts is None or ends is None:
            raise ShapeInferenceError(f"{node.name}: Slice requires starts and ends")
        starts = [int(v) for v in starts.reshape(-1)]
        ends = [int(v) for v in ends.reshape(-1)]
        axes = [int(v) for v in axes.reshape(-1)] if axes is not None else list(range(len(starts)))
        steps = [int(v) for v in steps.reshape(-1)] if steps is not None else [1] * len(starts)
    else:
        starts = list(node.get_attr("starts", []))
        ends = list(node.get_attr("ends", []))
        axes = list(node.get_attr("axes", range(len(starts))))
        steps = [1] * len(starts)

    if not (len(starts) == len(ends) == len(axes) == len(steps)):
        raise ShapeInferenceError(f"{node.name}: starts/ends/axes/steps lengths differ")

    out = list(data)
    for start, end, axis, step in zip(starts, ends, axes, steps):
        if step == 0:
            raise ShapeInferenceError(f"{node.name}: slice step cannot be 0")
        axis = _axis(axis, len(data), node)
        out[axis] = _sliced_dim(data[axis], start, end, step)
    return [(dtype, tuple(out))]


@ShapeInference.register_handler(OpType.CONCAT)
def handle_concat(node: Node, ctx: ShapeInferenceContext):
    shapes = [ctx.get_shape(name) for name in node.input_defs()]
    rank = len(shapes[0])
    if any(len(s) != rank for s in shapes):
        raise ShapeInferenceError(f"{node.name}: Concat inputs have different ranks")
    axis = _axis(node.get_attr("axis", 0), rank, node)

    out: List[Dim] = []
    for i in range(rank):
        column = [s[i] for s in shapes]
        if i == axis:
            if any(d is None for d in column):
                out.append(None)
            else:
                out.append(_to_dim(sympy.Add(*[sympy.sympify(d) for d in column])))
            continue
        dim = column[0]
        for other in column[1:]:
            if isinstance(dim, int) and isinstance(other, int) and dim != other:
                raise ShapeInferenceError(
                    f"{node.name}: Concat inputs disagree on axis {i} ({dim} vs {other})"
                )
            if dim is None or not isinstance(dim, int):
                dim = other if isinstance(other, int) else dim
        out.append(dim)
    return [(ctx.input_dtype(node, 0), tuple(out))]


def _axes_from(node: Node, ctx: ShapeInferenceContext, input_index: int) -> Optional[List[int]]:
    """Axes from the attribute (older opsets) or a constant input (newer opsets)."""
    axes = node.get_attr("axes")
    if axes is not None:
        return [int(a) for a in axes]
    if node.has_input(input_index):
        value = ctx.const_value(node.inputs[input_index])
        if value is None:
            raise ShapeInferenceError(f"{node.name}: axes input must be a constant")
        return [int(a) for a in value.reshape(-1)]
    return None


@ShapeInference.register_handler(OpType.UNSQUEEZE)
def handle_unsqueeze(node: Node, ctx: ShapeInferenceContext):
    data = ctx.input_shape(node, 0)
    axes = _axes_from(node, ctx, 1)
    if not axes:
        raise ShapeInferenceError(f"{node.name}: Unsqueeze requires axes")
    rank = len(data) + len(axes)
    axes = sorted(_axis(a, rank, node) for a in axes)
    out = list(data)
    for a in axes:
        out.insert(a, 1)
    return [(ctx.input_dtype(node, 0), tuple(out))]


@ShapeInference.register_handler(OpType.SQUEEZE)
def handle_squeeze(node: Node, ctx: ShapeInferenceContext):
    data = ctx.input_shape(node, 0)
    axes = _axes_from(node, ctx, 1)
    if axes is None:
        axes = [i for i, d in enumerate(data) if d == 1]
    axes = {_axis(a, len(data), node) for a in axes}
    for a in axes:
        if isinstance(data[a], int) and data[a] != 1:
            raise ShapeInferenceError(f"{node.name}: cannot squeeze axis {a} of extent {data[a]}")
    return [(ctx.input_dtype(node, 0), tuple(d for i, d in enumerate(data) if i not in axes))]


@ShapeInference.register_handler(OpType.FLATTEN)
def handle_flatten(node: Node, ctx: ShapeInferenceContext):
    data = ctx.input_shape(node, 0)
    axis = node.get_attr("axis", 1)
    axis = axis + len(data) if axis < 0 else axis
    if axis < 0 or axis > len(data):
        raise ShapeInferenceError(f"{node.name}: Flatten axis {axis} out of range")
    return [(ctx.input_dtype(node, 0), (_prod(data[:axis]), _prod(data[axis:])))]


@ShapeInference.register_handler(OpType.GATHER)
def handle_gather(node: Node, ctx: ShapeInferenceContext):
    data = ctx.input_shape(node, 0)
    indices = ctx.input_shape(node, 1)
    axis = _axis(node.get_attr("axis", 0), len(data), node)
    return [(ctx.input_dtype(node, 0), tuple(data[:axis]) + tuple(indices) + tuple(data[axis + 1 :]))]


def _handle_reduce(node: Node, ctx: ShapeInferenceContext):
    data = ctx.input_shape(node, 0)
    axes = _axes_from(node, ctx, 1)
    keepdims = node.get_attr("keepdims", 1)
    reduced = (
        set(range(len(data)))
        if not axes
        else {_axis(a, len(data), node) for a in axes}
    )
    out = []
    for i, d in enumerate(data):
        if i in reduced:
            if keepdims:
                out.append(1)
        else:
            out.append(d)
    return [(ctx.input_dtype(node, 0), tuple(out))]


for op in REDUCTIONS:
    ShapeInference.register_handler(op)(_handle_reduce)
