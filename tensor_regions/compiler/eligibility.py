from typing import Callable, Dict, List, Optional

import numpy as np

from .shape_inference import ShapeInferenceContext
from ..backend.registry import KernelRegistry, get_kernel_registry
from ..config import DEBUG_PARTITION, DEBUG_DETAILED, PROVIDER_NAME
from ..ir.graph import Graph
from ..ir.node import Node
from ..ir.shape import format_shape, has_value, is_shape_defined, normalize_axis
from ..ir.tensor import unpack_tensor
from ..ops.op_types import OpType


class OperatorEligibilityPredicate:
    """
    Decides, per node, whether the provider can run it.

    The generic checks come first: every tensor the node touches needs a
    fully defined shape, and a kernel must exist for the node's domain and
    opset. Operators that are only safe with static parameters then apply a
    registered refinement, which returns a rejection reason or None.
    """

    _refinements: Dict[str, Callable] = {}

    @classmethod
    def register_refinement(cls, op_type: str):
        def decorator(func):
            cls._refinements[op_type] = func
            return func

        return decorator

    def __init__(
        self,
        graph: Graph,
        shape_context: ShapeInferenceContext,
        kernel_registry: Optional[KernelRegistry] = None,
        provider_name: str = PROVIDER_NAME,
    ):
        self.graph = graph
        self.shape_context = shape_context
        self.kernel_registry = kernel_registry or get_kernel_registry()
        self.provider_name = provider_name
        self._const_cache: Dict[str, np.ndarray] = {}

    def __call__(self, node: Node) -> bool:
        return self.is_supported(node)

    def is_supported(self, node: Node) -> bool:
        # 1. Shape completeness
        for name, is_input in node.for_each_def():
            shape = self.shape_context.get_shape(name)
            if not is_shape_defined(shape):
                kind = "input" if is_input else "output"
                return self._reject(node, f"{kind} '{name}' has shape {format_shape(shape)}")

        # 2. Kernel support
        version = self.graph.opset_version(node.domain)
        if self.kernel_registry.find_kernel(node, self.provider_name, version) is None:
            return self._reject(node, f"no kernel for opset {version}")

        # 3. Operator refinements
        refine = self._refinements.get(node.op_type)
        if refine is not None:
            reason = refine(self, node)
            if reason:
                return self._reject(node, reason)

        if DEBUG_PARTITION and DEBUG_DETAILED:
            print(f"[Eligibility] accept {node}")
        return True

    def _reject(self, node: Node, reason: str) -> bool:
        if DEBUG_PARTITION and DEBUG_DETAILED:
            print(f"[Eligibility] reject {node}: {reason}")
        return False

    # --- Helpers for refinements ---

    def is_constant(self, name: str) -> bool:
        return self.graph.is_constant_initializer(name)

    def const_value(self, name: str) -> Optional[np.ndarray]:
        if not self.is_constant(name):
            return None
        if name not in self._const_cache:
            self._const_cache[name] = unpack_tensor(self.graph.get_initializer(name))
        return self._const_cache[name]

    def unresolved_axes(self, node: Node, axes: List[int]) -> List[int]:
        """Axes of input 0 that lack a concrete extent."""
        shape = self.shape_context.input_shape(node, 0)
        unresolved = []
        for axis in axes:
            try:
                axis = normalize_axis(int(axis), len(shape))
            except ValueError:
                unresolved.append(axis)
                continue
            if not has_value(shape, axis):
                unresolved.append(axis)
        return unresolved


# ==============================================================================
# Refinements
# ==============================================================================


@OperatorEligibilityPredicate.register_refinement(OpType.TILE)
def refine_tile(pred: OperatorEligibilityPredicate, node: Node) -> Optional[str]:
    if not pred.is_constant(node.inputs[1]):
        return "repeats is not a constant initializer"
    return None


@OperatorEligibilityPredicate.register_refinement(OpType.RESHAPE)
def refine_reshape(pred: OperatorEligibilityPredicate, node: Node) -> Optional[str]:
    if not pred.is_constant(node.inputs[1]):
        return "target shape is not a constant initializer"
    return None


def _slice_tensor_form(pred: OperatorEligibilityPredicate, node: Node) -> Optional[str]:
    # starts, ends, axes and steps arrive as inputs 1..4
    if not node.has_input(1) or not pred.is_constant(node.inputs[1]):
        return "starts is not a constant initializer"
    if not node.has_input(2) or not pred.is_constant(node.inputs[2]):
        return "ends is not a constant initializer"

    axes: List[int] = []
    if node.has_input(3):
        if not pred.is_constant(node.inputs[3]):
            return "axes is not a constant initializer"
        axes = [int(a) for a in pred.const_value(node.inputs[3]).reshape(-1)]

    if node.has_input(4):
        return "steps are not supported"

    unresolved = pred.unresolved_axes(node, axes)
    if unresolved:
        return f"input has no concrete extent on sliced axes {unresolved}"
    return None


def _slice_attribute_form(pred: OperatorEligibilityPredicate, node: Node) -> Optional[str]:
    axes = [int(a) for a in node.get_attr("axes", [])]
    unresolved = pred.unresolved_axes(node, axes)
    if unresolved:
        return f"input has no concrete extent on sliced axes {unresolved}"
    return None


@OperatorEligibilityPredicate.register_refinement(OpType.SLICE)
def refine_slice(pred: OperatorEligibilityPredicate, node: Node) -> Optional[str]:
    if len(node.inputs) > 1:
        return _slice_tensor_form(pred, node)
    return _slice_attribute_form(pred, node)
