from typing import Callable, Dict, List, Optional, Set

from tqdm import tqdm

from .region import ClaimedRegion
from .shape_inference import ShapeInferenceContext
from ..config import DEBUG_PARTITION, DEBUG_DETAILED
from ..errors import PartitionError
from ..ir.dtypes import DType
from ..ir.graph import Graph
from ..ir.node import Node
from ..ir.tensor import TensorInfo


class GraphPartitioner:
    """
    Greedy extraction of connected eligible regions.

    Nodes are visited in topological order. An eligible node starts a
    candidate set and absorbs the claimed regions feeding it, one at a time
    and in discovery order, as long as no path leaves the merged set and
    comes back into it. The walk treats every other claimed region as one
    node, so regions never end up feeding each other. Ineligible nodes are
    never claimed, so a region can never reach around one.
    """

    def __init__(
        self,
        is_supported: Callable[[Node], bool],
        shape_context: Optional[ShapeInferenceContext] = None,
    ):
        self.is_supported = is_supported
        self.shape_context = shape_context

    def partition(self, graph: Graph) -> List[ClaimedRegion]:
        order = graph.topological_order()
        position = {node.index: i for i, node in enumerate(order)}

        eligible: Set[int] = set()
        groups: Dict[int, Set[int]] = {}
        group_of: Dict[int, int] = {}
        next_group = 0

        for node in tqdm(order, disable=not DEBUG_PARTITION, desc="Partitioning"):
            if not self.is_supported(node):
                continue
            eligible.add(node.index)

            # Claimed regions feeding this node, in discovery order
            adjacent = []
            for pred in graph.predecessors(node):
                gid = group_of.get(pred.index)
                if gid is not None and gid not in adjacent:
                    adjacent.append(gid)
            adjacent.sort(key=lambda g: min(position[i] for i in groups[g]))

            candidate = {node.index}
            for gid in adjacent:
                merged = candidate | groups[gid]
                if self._leaves_and_reenters(graph, merged, position, groups, group_of):
                    if DEBUG_PARTITION and DEBUG_DETAILED:
                        print(f"[Partitioner] {node} cannot join group {gid}: path re-enters the region")
                    continue
                candidate = merged
                del groups[gid]

            groups[next_group] = candidate
            for idx in candidate:
                group_of[idx] = next_group
            next_group += 1

        ordered = sorted(groups.values(), key=lambda g: min(position[i] for i in g))
        regions = [
            self._make_region(graph, region_id, members, position)
            for region_id, members in enumerate(ordered)
        ]
        self._validate(regions, eligible)

        if DEBUG_PARTITION:
            print(f"[Partitioner] {len(regions)} regions over {len(eligible)}/{len(order)} eligible nodes")
            if DEBUG_DETAILED:
                for region in regions:
                    print(region.get_details())
        return regions

    @staticmethod
    def _leaves_and_reenters(
        graph: Graph,
        members: Set[int],
        position: Dict[int, int],
        groups: Dict[int, Set[int]],
        group_of: Dict[int, int],
    ) -> bool:
        # Claimed groups only hold nodes visited before the newest member, and
        # nothing after that member in topological order can reach a member.
        limit = max(position[i] for i in members)
        frontier = [
            succ
            for idx in members
            for succ in graph.successors(graph.get_node(idx))
            if succ.index not in members
        ]
        seen: Set[int] = set()
        while frontier:
            node = frontier.pop()
            if node.index in seen or position[node.index] > limit:
                continue

            # Entering another claimed group means reaching all of its members
            gid = group_of.get(node.index)
            if gid in groups:
                step = [graph.get_node(i) for i in groups[gid]]
            else:
                step = [node]

            for current in step:
                seen.add(current.index)
                for succ in graph.successors(current):
                    if succ.index in members:
                        return True
                    frontier.append(succ)
        return False

    def _info(self, graph: Graph, name: str) -> TensorInfo:
        info = self.shape_context.get_info(name) if self.shape_context is not None else None
        if info is None:
            info = graph.tensor_info(name)
        return info if info is not None else TensorInfo(name, DType.FLOAT, None)

    def _make_region(
        self, graph: Graph, region_id: int, members: Set[int], position: Dict[int, int]
    ) -> ClaimedRegion:
        indices = sorted(members, key=lambda i: position[i])
        nodes = [graph.get_node(i) for i in indices]
        graph_outputs = set(graph.outputs)

        inputs: List[str] = []
        outputs: List[str] = []
        for node in nodes:
            for name in node.input_defs():
                producer = graph.producer(name)
                if (producer is None or producer.index not in members) and name not in inputs:
                    inputs.append(name)
            for name in node.outputs:
                if not name or name in outputs:
                    continue
                consumed_outside = any(c.index not in members for c in graph.consumers(name))
                if consumed_outside or name in graph_outputs:
                    outputs.append(name)

        return ClaimedRegion(
            region_id=region_id,
            node_indices=indices,
            nodes=nodes,
            inputs=[self._info(graph, name) for name in inputs],
            outputs=[self._info(graph, name) for name in outputs],
        )

    @staticmethod
    def _validate(regions: List[ClaimedRegion], eligible: Set[int]):
        claimed: Set[int] = set()
        for region in regions:
            if not region.node_indices:
                raise PartitionError(f"Region {region.region_id} is empty")
            for idx in region.node_indices:
                if idx in claimed:
                    raise PartitionError(f"Node {idx} is claimed by more than one region")
                if idx not in eligible:
                    raise PartitionError(f"Node {idx} was claimed but is not eligible")
                claimed.add(idx)
