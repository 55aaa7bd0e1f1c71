from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional

import numpy as np

from .memory import Allocator, to_numpy
from .registry import KernelRegistry, get_kernel_registry
from ..compiler.region import FusedNode
from ..compiler.shape_inference import DimBindings
from ..config import DEBUG_PARTITION, DEBUG_DETAILED, PROVIDER_NAME
from ..errors import ExecutionError, UnimplementedTypeError
from ..ir.tensor import TensorInfo


@dataclass
class CodeGenHandle:
    """Everything a code generator may use while lowering one region."""

    allocator: Allocator
    shape_snapshot: Mapping[str, TensorInfo]
    domain_version: Callable[[str], Optional[int]]
    # name -> captured constant (anything with a `.buffer`)
    constants: Any
    provider: str = PROVIDER_NAME


class CompiledUnit(ABC):
    """A lowered region the compute callback can run repeatedly."""

    name: str
    unit_id: int

    @abstractmethod
    def run(self, inputs: Dict[str, np.ndarray]) -> Dict[str, np.ndarray]:
        """Runs the region on host arrays keyed by boundary input name."""
        pass

    def release(self):
        """Drops anything the unit holds on to."""
        pass


class CodeGenBackend(ABC):
    @abstractmethod
    def lower(self, fused_node: FusedNode, handle: CodeGenHandle, unit_id: int) -> CompiledUnit:
        pass


@dataclass
class OpInstruction:
    node_name: str
    op_type: str
    kernel: Callable
    input_names: List[str]
    output_names: List[str]
    attrs: Dict[str, Any]


@dataclass
class RegionProgram(CompiledUnit):
    name: str
    unit_id: int
    instructions: List[OpInstruction]
    # tensor name -> number of readers inside the region, plus one per boundary output
    ref_counts: Dict[str, int]
    inputs: List[TensorInfo]
    outputs: List[TensorInfo]
    constants: Dict[str, np.ndarray] = field(default_factory=dict)

    @property
    def runtime_inputs(self) -> List[TensorInfo]:
        """Boundary inputs the caller has to supply (constants are bound already)."""
        return [info for info in self.inputs if info.name not in self.constants]

    def run(self, inputs: Dict[str, np.ndarray]) -> Dict[str, np.ndarray]:
        bindings = DimBindings()
        env: Dict[str, np.ndarray] = dict(self.constants)

        for info in self.runtime_inputs:
            if info.name not in inputs:
                raise ExecutionError(f"{self.name}: missing input '{info.name}'")
            value = inputs[info.name]
            bindings.bind(info.name, info.shape, value.shape)
            if info.dtype.np_dtype is not None and value.dtype != info.dtype.np_dtype:
                raise ExecutionError(
                    f"{self.name}: input '{info.name}' has element type {value.dtype}, "
                    f"expected {info.dtype.value}"
                )
            env[info.name] = value

        refs = dict(self.ref_counts)
        for instr in self.instructions:
            args = [env[name] if name else None for name in instr.input_names]
            try:
                result = instr.kernel(args, instr.attrs)
            except (ValueError, IndexError, TypeError) as e:
                raise ExecutionError(f"{self.name}: {instr.op_type} '{instr.node_name}' failed: {e}") from e

            results = result if isinstance(result, tuple) else (result,)
            for out_name, value in zip(instr.output_names, results):
                if out_name:
                    env[out_name] = np.asarray(value)

            # Drop intermediates nobody reads anymore
            for name in instr.input_names:
                if name and name in refs:
                    refs[name] -= 1
                    if refs[name] <= 0 and name not in self.constants:
                        env.pop(name, None)

            if DEBUG_PARTITION and DEBUG_DETAILED:
                print(f"[{self.name}] {instr.op_type} {instr.node_name} -> {[env[o].shape for o in instr.output_names if o in env]}")

        outputs = {}
        for info in self.outputs:
            value = env[info.name]
            bindings.bind(info.name, info.shape, value.shape)
            outputs[info.name] = value
        return outputs

    def release(self):
        self.instructions = []
        self.constants = {}

    def __repr__(self):
        return f"<RegionProgram {self.name}#{self.unit_id}: {len(self.instructions)} instructions>"


class NumpyCodeGen(CodeGenBackend):
    """
    Lowers a region into a flat list of numpy kernel calls. Kernels are
    resolved here, once, so compute never looks at node structure again.
    """

    def __init__(self, registry: Optional[KernelRegistry] = None):
        self.registry = registry

    def lower(self, fused_node: FusedNode, handle: CodeGenHandle, unit_id: int) -> RegionProgram:
        registry = self.registry or get_kernel_registry()

        # 1. Ref counts: readers inside the region, boundary outputs held until the end
        ref_counts: Dict[str, int] = {}
        for node in fused_node.nodes:
            for name in node.input_defs():
                ref_counts[name] = ref_counts.get(name, 0) + 1
        for info in fused_node.outputs:
            ref_counts[info.name] = ref_counts.get(info.name, 0) + 1

        # 2. Instruction generation
        instructions = []
        for node in fused_node.nodes:
            version = handle.domain_version(node.domain)
            kernel = registry.find_kernel(node, handle.provider, version)
            if kernel is None:
                raise UnimplementedTypeError(
                    f"Unimplemented operator: {node.domain or 'ai.onnx'}::{node.op_type} "
                    f"(opset {version}) in {fused_node.name}"
                )
            instructions.append(
                OpInstruction(
                    node_name=node.name,
                    op_type=node.op_type,
                    kernel=kernel.fn,
                    input_names=list(node.inputs),
                    output_names=list(node.outputs),
                    attrs=dict(node.attrs),
                )
            )

        # 3. Bind captured constants
        constants = {}
        for node in fused_node.nodes:
            for name in node.input_defs():
                entry = handle.constants.get(name)
                if entry is not None:
                    constants[name] = to_numpy(entry.buffer)

        program = RegionProgram(
            name=fused_node.name,
            unit_id=unit_id,
            instructions=instructions,
            ref_counts=ref_counts,
            inputs=list(fused_node.inputs),
            outputs=list(fused_node.outputs),
            constants=constants,
        )
        if DEBUG_PARTITION:
            print(f"[CodeGen] Lowered {fused_node.name} as unit {unit_id}: {program}")
        return program
