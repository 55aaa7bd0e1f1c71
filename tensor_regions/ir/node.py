from dataclasses import dataclass, field
from typing import Any, Dict, List

from ..ops.op_types import ONNX_DOMAIN


@dataclass(eq=False)
class Node:
    op_type: str
    inputs: List[str]
    outputs: List[str]
    name: str = ""
    domain: str = ONNX_DOMAIN
    attrs: Dict[str, Any] = field(default_factory=dict)
    # Assigned by Graph.add_node; stable for the lifetime of the graph.
    index: int = -1

    def get_attr(self, key: str, default: Any = None) -> Any:
        return self.attrs.get(key, default)

    def has_input(self, i: int) -> bool:
        """Optional inputs may be omitted entirely or passed as an empty name."""
        return i < len(self.inputs) and self.inputs[i] != ""

    def input_defs(self) -> List[str]:
        return [name for name in self.inputs if name]

    def for_each_def(self):
        """Yields (tensor_name, is_input) for every present input and output."""
        for name in self.inputs:
            if name:
                yield name, True
        for name in self.outputs:
            if name:
                yield name, False

    def get_details(self) -> str:
        lines = []
        header = f"Node {self.index}: {self.name} [{self.domain or 'ai.onnx'}::{self.op_type}]"
        lines.append(header)
        lines.append("-" * len(header))
        lines.append("Inputs           :")
        for idx, name in enumerate(self.inputs):
            lines.append(f"  [{idx}] {name or '(omitted)'}")
        lines.append("Outputs          :")
        for idx, name in enumerate(self.outputs):
            lines.append(f"  [{idx}] {name}")
        if self.attrs:
            lines.append("Attributes       :")
            for k, v in self.attrs.items():
                lines.append(f"  {k:<14} : {v}")
        return "\n".join(lines)

    def __repr__(self):
        attr_keys = list(self.attrs.keys()) if self.attrs else []
        attrs_summary = f" | attrs={attr_keys}" if attr_keys else ""
        return f"[{self.index}] {self.op_type}({self.name}){attrs_summary}"
