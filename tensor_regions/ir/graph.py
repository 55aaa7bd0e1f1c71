import heapq
from typing import Any, Dict, Iterable, List, Optional, Sequence

import numpy as np

from .dtypes import DType
from .node import Node
from .shape import as_shape
from .tensor import TensorInfo, TensorProto, make_tensor
from ..errors import PartitionError
from ..ops.op_types import OpType, ONNX_DOMAIN


class Graph:
    """
    Non-owning view of a host graph: nodes, tensor metadata, initializers,
    graph inputs/outputs and the domain -> opset version map.
    """

    def __init__(self, name: str = "graph", domain_to_version: Optional[Dict[str, int]] = None):
        self.name = name
        self.nodes: List[Node] = []
        self.tensors: Dict[str, TensorInfo] = {}
        self.initializers: Dict[str, TensorProto] = {}
        self.inputs: List[str] = []
        self.outputs: List[str] = []
        self.domain_to_version: Dict[str, int] = dict(domain_to_version or {ONNX_DOMAIN: 11})
        self._producers: Dict[str, Node] = {}
        self._consumers: Dict[str, List[Node]] = {}

    # --- Construction ---

    def add_node(self, node: Node) -> Node:
        node.index = len(self.nodes)
        if not node.name:
            node.name = f"{node.op_type}_{node.index}"
        for out in node.outputs:
            if not out:
                continue
            if out in self._producers:
                raise ValueError(
                    f"Tensor '{out}' is produced by both {self._producers[out]} and {node}"
                )
            self._producers[out] = node
        for name in node.input_defs():
            self._consumers.setdefault(name, []).append(node)
        self.nodes.append(node)
        return node

    def add_input(self, info: TensorInfo):
        self.inputs.append(info.name)
        self.tensors[info.name] = info

    def add_output(self, name: str):
        self.outputs.append(name)

    def add_initializer(self, proto: TensorProto):
        self.initializers[proto.name] = proto
        self.tensors.setdefault(
            proto.name, TensorInfo(proto.name, proto.dtype, as_shape(proto.dims))
        )

    def set_tensor_info(self, info: TensorInfo):
        self.tensors[info.name] = info

    # --- Queries ---

    def get_node(self, index: int) -> Node:
        return self.nodes[index]

    def producer(self, name: str) -> Optional[Node]:
        return self._producers.get(name)

    def consumers(self, name: str) -> List[Node]:
        return self._consumers.get(name, [])

    def tensor_info(self, name: str) -> Optional[TensorInfo]:
        return self.tensors.get(name)

    def get_initializer(self, name: str) -> Optional[TensorProto]:
        return self.initializers.get(name)

    def is_constant_initializer(self, name: str) -> bool:
        """
        An initializer that is also a graph input can be overridden at run
        time, so only initializers that are not graph inputs are constant.
        """
        return name in self.initializers and name not in self.inputs

    def opset_version(self, domain: str) -> Optional[int]:
        return self.domain_to_version.get(domain)

    def successors(self, node: Node) -> List[Node]:
        seen = set()
        result = []
        for out in node.outputs:
            for consumer in self.consumers(out):
                if consumer.index not in seen:
                    seen.add(consumer.index)
                    result.append(consumer)
        return result

    def predecessors(self, node: Node) -> List[Node]:
        seen = set()
        result = []
        for name in node.input_defs():
            producer = self.producer(name)
            if producer is not None and producer.index not in seen:
                seen.add(producer.index)
                result.append(producer)
        return result

    def topological_order(self) -> List[Node]:
        """
        Kahn's algorithm, breaking ties by node index so the order is stable.
        Raises PartitionError if the graph has a cycle.
        """
        in_degree = {node.index: len(self.predecessors(node)) for node in self.nodes}
        ready = [idx for idx, deg in in_degree.items() if deg == 0]
        heapq.heapify(ready)
        order: List[Node] = []

        while ready:
            idx = heapq.heappop(ready)
            node = self.nodes[idx]
            order.append(node)
            for succ in self.successors(node):
                in_degree[succ.index] -= 1
                if in_degree[succ.index] == 0:
                    heapq.heappush(ready, succ.index)

        if len(order) != len(self.nodes):
            stuck = [self.nodes[i].name for i, d in in_degree.items() if d > 0]
            raise PartitionError(f"Graph '{self.name}' has a cycle through nodes {stuck}")
        return order

    # --- Ownership ---

    def release_initializers(self, names: Iterable[str]) -> List[str]:
        """Drops initializer payloads the host no longer needs to keep."""
        released = []
        for name in names:
            if self.initializers.pop(name, None) is not None:
                released.append(name)
        return released


class GraphBuilder:
    def __init__(self, name: str = "graph", opset: int = 11, domain_to_version: Optional[Dict[str, int]] = None):
        versions = {ONNX_DOMAIN: opset}
        if domain_to_version:
            versions.update(domain_to_version)
        self.graph = Graph(name, versions)
        self._count = 0

    def _next_name(self, op_name: str) -> str:
        self._count += 1
        return f"{op_name.lower()}_{self._count}"

    # --- Core Tensors ---

    def input(self, name: str, shape: Sequence[Any], dtype: DType = DType.FLOAT) -> str:
        self.graph.add_input(TensorInfo(name, dtype, as_shape(shape)))
        return name

    def initializer(
        self,
        name: str,
        values: Any,
        dtype: DType = DType.FLOAT,
        dims: Optional[Sequence[int]] = None,
        raw: bool = True,
    ) -> str:
        if dims is None:
            dims = list(np.asarray(values).shape)
        self.graph.add_initializer(make_tensor(name, dtype, dims, values, raw=raw))
        return name

    def output(self, name: str) -> str:
        self.graph.add_output(name)
        return name

    def declare(self, name: str, shape: Optional[Sequence[Any]], dtype: DType = DType.FLOAT) -> str:
        """Attaches value info to an intermediate or output tensor."""
        self.graph.set_tensor_info(TensorInfo(name, dtype, as_shape(shape)))
        return name

    def node(
        self,
        op_type: str,
        inputs: Sequence[str],
        attrs: Optional[Dict[str, Any]] = None,
        num_outputs: int = 1,
        domain: str = ONNX_DOMAIN,
        name: Optional[str] = None,
        outputs: Optional[Sequence[str]] = None,
    ):
        node_name = name or self._next_name(op_type)
        if outputs is None:
            outputs = [node_name if num_outputs == 1 else f"{node_name}_{i}" for i in range(num_outputs)]
        node = Node(
            op_type,
            list(inputs),
            list(outputs),
            name=node_name,
            domain=domain,
            attrs=dict(attrs or {}),
        )
        self.graph.add_node(node)
        return outputs[0] if len(outputs) == 1 else list(outputs)

    # --- Convenience Ops ---

    def add(self, a, b, name=None):
        return self.node(OpType.ADD, [a, b], name=name)

    def sub(self, a, b, name=None):
        return self.node(OpType.SUB, [a, b], name=name)

    def mul(self, a, b, name=None):
        return self.node(OpType.MUL, [a, b], name=name)

    def relu(self, a, name=None):
        return self.node(OpType.RELU, [a], name=name)

    def exp(self, a, name=None):
        return self.node(OpType.EXP, [a], name=name)

    def matmul(self, a, b, name=None):
        return self.node(OpType.MATMUL, [a, b], name=name)

    def reshape(self, a, shape, name=None):
        return self.node(OpType.RESHAPE, [a, shape], name=name)

    def transpose(self, a, perm=None, name=None):
        attrs = {"perm": list(perm)} if perm is not None else {}
        return self.node(OpType.TRANSPOSE, [a], attrs, name=name)

    def tile(self, a, repeats, name=None):
        return self.node(OpType.TILE, [a, repeats], name=name)

    def slice(self, a, starts, ends, axes=None, steps=None, name=None):
        """Slice-10 form: window parameters arrive as tensor inputs."""
        inputs = [a, starts, ends]
        if axes is not None or steps is not None:
            inputs.append(axes or "")
        if steps is not None:
            inputs.append(steps)
        return self.node(OpType.SLICE, inputs, name=name)

    def slice_v1(self, a, starts, ends, axes=None, name=None):
        """Slice-1 form: window parameters are static attributes."""
        attrs = {"starts": list(starts), "ends": list(ends)}
        if axes is not None:
            attrs["axes"] = list(axes)
        return self.node(OpType.SLICE, [a], attrs, name=name)

    def concat(self, tensors, axis, name=None):
        return self.node(OpType.CONCAT, list(tensors), {"axis": axis}, name=name)

    def cast(self, a, to: DType, name=None):
        return self.node(OpType.CAST, [a], {"to": to.code}, name=name)

    def reduce(self, op_type, a, axes=None, keepdims=1, name=None):
        attrs = {"keepdims": keepdims}
        if axes is not None:
            attrs["axes"] = list(axes)
        return self.node(op_type, [a], attrs, name=name)

    def softmax(self, a, axis=1, name=None):
        return self.node(OpType.SOFTMAX, [a], {"axis": axis}, name=name)

    def hardmax(self, a, axis=1, name=None):
        return self.node(OpType.HARDMAX, [a], {"axis": axis}, name=name)

    def build(self) -> Graph:
        return self.graph
