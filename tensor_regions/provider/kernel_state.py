import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from ..backend.codegen import CodeGenBackend, CodeGenHandle, CompiledUnit
from ..backend.memory import dtype_of, to_numpy, write_into
from ..compiler.region import FusedNode
from ..config import DEBUG_PARTITION
from ..errors import ExecutionError, StateReleasedError
from ..ir.dtypes import DType


class KernelStatus(Enum):
    UNCOMPILED = "uncompiled"
    ACTIVE = "active"
    RELEASED = "released"


@dataclass
class KernelContext:
    """Live buffers for one compute call, keyed by boundary tensor name."""

    inputs: Dict[str, Any]
    # Outputs the caller did not provide are allocated and filled in here
    outputs: Dict[str, Any] = field(default_factory=dict)


class KernelState:
    """
    The capsule behind one claimed region.

    It is created Uncompiled. The first compute lowers the region through
    the code generator and makes it Active; lowering happens at most once no
    matter how many threads arrive at the same time. Release waits for
    computes still running, frees the capsule's buffers and makes it
    Released for good.
    """

    def __init__(self, fused_node: FusedNode, handle: CodeGenHandle, codegen: CodeGenBackend, unit_id: int):
        self.fused_node = fused_node
        self.handle = handle
        self.codegen = codegen
        self.unit_id = unit_id

        self.status = KernelStatus.UNCOMPILED
        self.unit: Optional[CompiledUnit] = None
        self.compile_count = 0

        self._compile_lock = threading.Lock()
        self._cond = threading.Condition()
        self._in_flight = 0
        self._workspace: List[Any] = []

    @property
    def name(self) -> str:
        return self.fused_node.name

    def _ensure_compiled(self) -> CompiledUnit:
        unit = self.unit
        if unit is not None:
            return unit
        with self._compile_lock:
            if self.unit is None:
                if DEBUG_PARTITION:
                    print(f"[KernelState] Compiling {self.name} (unit {self.unit_id})...")
                unit = self.codegen.lower(self.fused_node, self.handle, self.unit_id)
                with self._cond:
                    self.unit = unit
                    self.compile_count += 1
                    if self.status == KernelStatus.UNCOMPILED:
                        self.status = KernelStatus.ACTIVE
            return self.unit

    def compute(self, context: KernelContext) -> Dict[str, Any]:
        with self._cond:
            if self.status == KernelStatus.RELEASED:
                raise StateReleasedError(f"{self.name}: kernel state has been released")
            self._in_flight += 1

        try:
            unit = self._ensure_compiled()
            host_inputs = {name: to_numpy(buf) for name, buf in context.inputs.items()}
            results = unit.run(host_inputs)

            # Every caller buffer is checked before any of them is written
            for info in self.fused_node.outputs:
                value = results[info.name]
                dst = context.outputs.get(info.name)
                if dst is None:
                    continue
                if tuple(dst.shape) != tuple(value.shape):
                    raise ExecutionError(
                        f"{self.name}: output buffer '{info.name}' has shape {tuple(dst.shape)}, "
                        f"result has {tuple(value.shape)}"
                    )
                expected = DType.from_numpy(value.dtype)
                if dtype_of(dst) != expected:
                    raise ExecutionError(
                        f"{self.name}: output buffer '{info.name}' has element type "
                        f"{dtype_of(dst).value}, result has {expected.value}"
                    )

            for info in self.fused_node.outputs:
                value = results[info.name]
                dst = context.outputs.get(info.name)
                if dst is None:
                    dst = self.handle.allocator.alloc(
                        value.shape, DType.from_numpy(value.dtype), tag=info.name
                    )
                    with self._cond:
                        self._workspace.append(dst)
                    context.outputs[info.name] = dst
                write_into(dst, value)
            return context.outputs
        finally:
            with self._cond:
                self._in_flight -= 1
                self._cond.notify_all()

    def release_output(self, buffer: Any):
        """Hands an output buffer this state allocated back to the allocator."""
        with self._cond:
            kept = [b for b in self._workspace if b is not buffer]
            owned = len(kept) != len(self._workspace)
            self._workspace = kept
        if owned:
            self.handle.allocator.free(buffer)

    def release(self):
        with self._cond:
            if self.status == KernelStatus.RELEASED:
                return
            # New computes are rejected from here on; running ones finish first.
            self.status = KernelStatus.RELEASED
            while self._in_flight > 0:
                self._cond.wait()
            workspace, self._workspace = self._workspace, []
            unit, self.unit = self.unit, None

        for buffer in workspace:
            self.handle.allocator.free(buffer)
        if unit is not None:
            unit.release()
        if DEBUG_PARTITION:
            print(f"[KernelState] Released {self.name}")

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def __repr__(self):
        return f"<KernelState {self.name}#{self.unit_id} {self.status.value}, compiled {self.compile_count}x>"
