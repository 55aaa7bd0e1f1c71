import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional

from .domain_registry import DomainVersionRegistry
from .initializer_store import ConstantInitializerStore
from .kernel_state import KernelContext, KernelState, KernelStatus
from ..backend.codegen import CodeGenBackend, CodeGenHandle
from ..backend.memory import Allocator
from ..compiler.region import FusedNode
from ..config import DEBUG_PARTITION, PROVIDER_NAME
from ..ir.tensor import TensorInfo


@dataclass
class NodeComputeInfo:
    """The create/compute/release triple the host calls for one fused node."""

    name: str
    create_state: Callable[[Optional[Any]], KernelState]
    compute: Callable[[KernelState, KernelContext], Dict[str, Any]]
    release_state: Callable[[Optional[KernelState]], None]


class CompilationPass:
    """
    Scope of one `compile` call. Hands out diagnostic unit ids starting from
    zero; a new pass starts over, so ids never carry across sessions.
    """

    def __init__(self):
        self._next_unit_id = 0

    def next_unit_id(self) -> int:
        unit_id = self._next_unit_id
        self._next_unit_id += 1
        return unit_id

    @property
    def unit_count(self) -> int:
        return self._next_unit_id


class _RegionStateSlot:
    """Creates the region's capsule on first request and shares it afterwards."""

    def __init__(self, fused_node: FusedNode, handle: CodeGenHandle, codegen: CodeGenBackend, unit_id: int):
        self.fused_node = fused_node
        self.handle = handle
        self.codegen = codegen
        self.unit_id = unit_id
        self.state: Optional[KernelState] = None
        self._lock = threading.Lock()

    def create_state(self, context: Optional[Any] = None) -> KernelState:
        with self._lock:
            # A released capsule belongs to a finished lifecycle; start a new one.
            if self.state is None or self.state.status == KernelStatus.RELEASED:
                self.state = KernelState(self.fused_node, self.handle, self.codegen, self.unit_id)
            return self.state


def _compute(state: KernelState, context: KernelContext) -> Dict[str, Any]:
    return state.compute(context)


def _release_state(state: Optional[KernelState]):
    if state is None:
        return
    state.release()


class CompilationManager:
    def __init__(
        self,
        codegen: CodeGenBackend,
        allocator: Allocator,
        domain_registry: DomainVersionRegistry,
        initializer_store: ConstantInitializerStore,
        provider_name: str = PROVIDER_NAME,
    ):
        self.codegen = codegen
        self.allocator = allocator
        self.domain_registry = domain_registry
        self.initializer_store = initializer_store
        self.provider_name = provider_name

    def make_handle(self, shape_snapshot: Mapping[str, TensorInfo]) -> CodeGenHandle:
        return CodeGenHandle(
            allocator=self.allocator,
            shape_snapshot=shape_snapshot,
            domain_version=self.domain_registry.get,
            constants=self.initializer_store,
            provider=self.provider_name,
        )

    def compile(
        self,
        fused_nodes: List[FusedNode],
        shape_snapshot: Optional[Mapping[str, TensorInfo]] = None,
    ) -> List[NodeComputeInfo]:
        """
        Wires each fused node to its lifecycle triple. Nothing is lowered
        here; lowering waits for the first compute on the region's state.
        """
        compile_pass = CompilationPass()
        handle = self.make_handle(shape_snapshot or {})

        infos = []
        for fused in fused_nodes:
            slot = _RegionStateSlot(fused, handle, self.codegen, compile_pass.next_unit_id())
            infos.append(
                NodeComputeInfo(
                    name=fused.name,
                    create_state=slot.create_state,
                    compute=_compute,
                    release_state=_release_state,
                )
            )

        if DEBUG_PARTITION:
            print(f"[Compilation] Prepared {compile_pass.unit_count} units")
        return infos
