from types import MappingProxyType
from typing import Dict, List, Mapping, Optional

from .compilation import CompilationManager, NodeComputeInfo
from .domain_registry import DomainVersionRegistry
from .initializer_store import ConstantInitializerStore
from ..backend.codegen import CodeGenBackend, NumpyCodeGen
from ..backend.memory import Allocator, AllocatorManager, MemoryType
from ..backend.registry import get_kernel_registry
from ..compiler.eligibility import OperatorEligibilityPredicate
from ..compiler.partitioner import GraphPartitioner
from ..compiler.region import ClaimedRegion, FusedNode
from ..compiler.shape_inference import ShapeInferenceContext
from ..config import (
    DEBUG_PARTITION,
    DEFAULT_DEVICE_ID,
    FUSED_NODE_PREFIX,
    LOG_DECLINES,
    PROVIDER_NAME,
)
from ..ir.graph import Graph
from ..ir.tensor import TensorInfo


class RegionExecutionProvider:
    """
    Claims the parts of a graph it can run and compiles each claimed region
    lazily, on its first compute.

    One instance belongs to one session: the domain versions it records and
    the constants it captures are kept for the instance's lifetime.
    """

    def __init__(
        self,
        device_id: int = DEFAULT_DEVICE_ID,
        codegen: Optional[CodeGenBackend] = None,
        allocator_manager: Optional[AllocatorManager] = None,
    ):
        self.name = PROVIDER_NAME
        self.device_id = device_id
        self.codegen = codegen or NumpyCodeGen()
        self.allocator_manager = allocator_manager or AllocatorManager()
        self.kernel_registry = get_kernel_registry()

        self.domain_registry = DomainVersionRegistry()
        self.initializer_store = ConstantInitializerStore(self.get_allocator())
        self.compilation_manager = CompilationManager(
            self.codegen,
            self.get_allocator(),
            self.domain_registry,
            self.initializer_store,
            self.name,
        )
        self._shapes: Dict[str, TensorInfo] = {}

    # --- Partitioning ---

    def get_capability(self, graph: Graph) -> List[ClaimedRegion]:
        shape_context = ShapeInferenceContext()
        if not shape_context.run(graph):
            if LOG_DECLINES:
                print(f"[Provider] Declining graph '{graph.name}': shape inference failed: {shape_context.error}")
            return []

        if LOG_DECLINES:
            for node in graph.nodes:
                for out in node.outputs:
                    if out and not shape_context.has_shape(out):
                        print(f"[Provider] {node}: output '{out}' has no inferred shape, node is not claimed")

        predicate = OperatorEligibilityPredicate(
            graph, shape_context, self.kernel_registry, self.name
        )
        regions = GraphPartitioner(predicate, shape_context).partition(graph)

        self.domain_registry.record_all(graph.domain_to_version)
        self.initializer_store.capture_regions(graph, regions)
        self._shapes.update(shape_context.snapshot())

        if not regions:
            if LOG_DECLINES:
                print(f"[Provider] No node in graph '{graph.name}' is claimed")
        elif DEBUG_PARTITION:
            claimed = sum(len(r) for r in regions)
            print(f"[Provider] Claimed {claimed}/{len(graph.nodes)} nodes in {len(regions)} regions")
        return regions

    def fuse(self, graph: Graph, regions: List[ClaimedRegion]) -> List[FusedNode]:
        """Names claimed regions the way the host names fused nodes."""
        return [
            region.to_fused_node(f"{FUSED_NODE_PREFIX}_{graph.name}_{region.region_id}")
            for region in regions
        ]

    # --- Compilation ---

    def compile(self, fused_nodes: List[FusedNode]) -> List[NodeComputeInfo]:
        return self.compilation_manager.compile(fused_nodes, self.shape_snapshot)

    @property
    def shape_snapshot(self) -> Mapping[str, TensorInfo]:
        return MappingProxyType(dict(self._shapes))

    # --- Host queries ---

    def get_domain_version(self, domain: str) -> Optional[int]:
        return self.domain_registry.get(domain)

    def get_allocator(
        self, device_id: Optional[int] = None, memory_type: MemoryType = MemoryType.DEFAULT
    ) -> Allocator:
        device_id = self.device_id if device_id is None else device_id
        return self.allocator_manager.get_allocator(device_id, memory_type)

    def release(self):
        self.initializer_store.release()
        self.allocator_manager.free_all()
        if DEBUG_PARTITION:
            print("[Provider] Released")

    def __repr__(self):
        return f"<{self.name} device={self.device_id} domains={dict(self.domain_registry.items())}>"
