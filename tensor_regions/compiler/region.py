from dataclasses import dataclass, field
from typing import List

from ..ir.node import Node
from ..ir.shape import format_shape
from ..ir.tensor import TensorInfo


@dataclass
class FusedNode:
    """
    What the host hands back to `compile` for one claimed region: a single
    node standing in for the region's members, with the region's boundary as
    its inputs and outputs.
    """

    name: str
    region_id: int
    nodes: List[Node]
    inputs: List[TensorInfo]
    outputs: List[TensorInfo]

    @property
    def input_names(self) -> List[str]:
        return [info.name for info in self.inputs]

    @property
    def output_names(self) -> List[str]:
        return [info.name for info in self.outputs]

    def __repr__(self):
        return f"FusedNode({self.name}, {len(self.nodes)} nodes, in={self.input_names}, out={self.output_names})"


@dataclass
class ClaimedRegion:
    region_id: int
    # Member node indices in topological order
    node_indices: List[int]
    nodes: List[Node] = field(default_factory=list)
    inputs: List[TensorInfo] = field(default_factory=list)
    outputs: List[TensorInfo] = field(default_factory=list)

    def __len__(self):
        return len(self.node_indices)

    def __contains__(self, node_index: int) -> bool:
        return node_index in self.node_indices

    def to_fused_node(self, name: str) -> FusedNode:
        return FusedNode(
            name=name,
            region_id=self.region_id,
            nodes=list(self.nodes),
            inputs=list(self.inputs),
            outputs=list(self.outputs),
        )

    def get_details(self) -> str:
        lines = []
        header = f"Region {self.region_id}: {len(self.node_indices)} nodes"
        lines.append(header)
        lines.append("-" * len(header))
        lines.append("Nodes            : " + ", ".join(f"{n.name}({n.op_type})" for n in self.nodes))
        lines.append("Inputs           :")
        for info in self.inputs:
            lines.append(f"  {info.name:<14} : {info.dtype.value} {format_shape(info.shape)}")
        lines.append("Outputs          :")
        for info in self.outputs:
            lines.append(f"  {info.name:<14} : {info.dtype.value} {format_shape(info.shape)}")
        return "\n".join(lines)

    def __repr__(self):
        return f"ClaimedRegion({self.region_id}, nodes={self.node_indices})"
