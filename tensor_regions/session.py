import heapq
from typing import Any, Dict, List, Optional

import numpy as np
from tqdm import tqdm

from .backend.memory import to_numpy
from .compiler.region import ClaimedRegion, FusedNode
from .config import DEBUG_PARTITION
from .errors import ExecutionError
from .ir.graph import Graph
from .ir.tensor import unpack_tensor
from .provider.compilation import NodeComputeInfo
from .provider.kernel_state import KernelContext, KernelState
from .provider.provider import RegionExecutionProvider


class InferenceSession:
    """
    Drives a provider the way a host runtime would: claim and fuse once,
    let the host drop constants only claimed regions need, then run claimed
    regions through their lifecycle triple and everything else on the
    reference kernels.
    """

    def __init__(self, graph: Graph, provider: Optional[RegionExecutionProvider] = None):
        self.graph = graph
        self.provider = provider or RegionExecutionProvider()
        self.regions: List[ClaimedRegion] = []
        self.fused_nodes: List[FusedNode] = []
        self.compute_infos: List[NodeComputeInfo] = []
        self.released_initializers: List[str] = []
        self._states: Dict[int, KernelState] = {}
        self._schedule: List[tuple] = []
        self.is_compiled = False

    def compile(self):
        if DEBUG_PARTITION:
            print(f"[Session] Partitioning graph '{self.graph.name}'...")

        self.regions = self.provider.get_capability(self.graph)
        self.fused_nodes = self.provider.fuse(self.graph, self.regions)
        self.released_initializers = self._release_claimed_initializers()
        self.compute_infos = self.provider.compile(self.fused_nodes)
        self._schedule = self._build_schedule()
        self.is_compiled = True

        if DEBUG_PARTITION:
            print(
                f"[Session] Compilation complete: {len(self.regions)} regions, "
                f"{len(self.released_initializers)} initializers handed over"
            )

    def _release_claimed_initializers(self) -> List[str]:
        """The host keeps an initializer only while an unclaimed node still reads it."""
        claimed = {idx for region in self.regions for idx in region.node_indices}
        droppable = []
        for name in self.provider.initializer_store.names():
            if name in self.graph.outputs:
                continue
            if all(c.index in claimed for c in self.graph.consumers(name)):
                droppable.append(name)
        return self.graph.release_initializers(droppable)

    def _build_schedule(self) -> List[tuple]:
        """
        Orders claimed regions and unclaimed nodes as one DAG. The partitioner
        rejects any merge that would let a region feed itself through another
        step, so collapsing each region into a single step leaves no cycle.
        """
        order = self.graph.topological_order()
        position = {node.index: i for i, node in enumerate(order)}
        step_of: Dict[int, tuple] = {}
        for i, region in enumerate(self.regions):
            for idx in region.node_indices:
                step_of[idx] = ("region", i)
        for node in order:
            step_of.setdefault(node.index, ("node", node.index))

        steps = {}
        for node in order:
            step = step_of[node.index]
            steps.setdefault(step, set())
            for pred in self.graph.predecessors(node):
                if step_of[pred.index] != step:
                    steps[step].add(step_of[pred.index])

        def rank(step):
            if step[0] == "region":
                return min(position[i] for i in self.regions[step[1]].node_indices)
            return position[step[1]]

        in_degree = {step: len(deps) for step, deps in steps.items()}
        dependents: Dict[tuple, List[tuple]] = {step: [] for step in steps}
        for step, deps in steps.items():
            for dep in deps:
                dependents[dep].append(step)

        ready = [(rank(step), step) for step, deg in in_degree.items() if deg == 0]
        heapq.heapify(ready)
        schedule = []
        while ready:
            _, step = heapq.heappop(ready)
            schedule.append(step)
            for nxt in dependents[step]:
                in_degree[nxt] -= 1
                if in_degree[nxt] == 0:
                    heapq.heappush(ready, (rank(nxt), nxt))

        if len(schedule) != len(steps):
            raise ExecutionError("Claimed regions form a cycle with the rest of the graph")
        return schedule

    def _state_for(self, i: int) -> KernelState:
        if i not in self._states:
            self._states[i] = self.compute_infos[i].create_state(None)
        return self._states[i]

    def _run_region(self, i: int, env: Dict[str, Any]):
        fused = self.fused_nodes[i]
        info = self.compute_infos[i]
        inputs = {name: env[name] for name in fused.input_names if name in env}
        state = self._state_for(i)
        outputs = info.compute(state, KernelContext(inputs))
        for name, buffer in outputs.items():
            env[name] = to_numpy(buffer).copy()
            state.release_output(buffer)

    def _run_node(self, index: int, env: Dict[str, Any]):
        node = self.graph.get_node(index)
        version = self.graph.opset_version(node.domain)
        kernel = self.provider.kernel_registry.find_kernel(node, self.provider.name, version)
        if kernel is None:
            raise ExecutionError(f"Kernel not found for {node.op_type} (opset {version})")
        args = [env[name] if name else None for name in node.inputs]
        result = kernel.fn(args, node.attrs)
        results = result if isinstance(result, tuple) else (result,)
        for name, value in zip(node.outputs, results):
            if name:
                env[name] = np.asarray(value)

    def run(self, inputs: Dict[str, Any]) -> Dict[str, np.ndarray]:
        if not self.is_compiled:
            self.compile()

        env: Dict[str, Any] = {}
        for name, proto in self.graph.initializers.items():
            env[name] = unpack_tensor(proto)
        for name in self.graph.inputs:
            if name in inputs:
                env[name] = np.asarray(inputs[name])
            elif name not in env:
                raise ExecutionError(f"Missing graph input '{name}'")

        for kind, ref in tqdm(self._schedule, disable=not DEBUG_PARTITION, desc="Running"):
            if kind == "region":
                self._run_region(ref, env)
            else:
                self._run_node(ref, env)

        return {name: env[name] for name in self.graph.outputs}

    def close(self):
        for i, state in self._states.items():
            self.compute_infos[i].release_state(state)
        self._states.clear()
        self.provider.release()
        if DEBUG_PARTITION:
            print("[Session] Closed")
