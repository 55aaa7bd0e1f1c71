import unittest

import numpy as np
import pytest

from tensor_regions.errors import PartitionError
from tensor_regions.ir.dtypes import DType
from tensor_regions.ir.graph import Graph, GraphBuilder
from tensor_regions.ir.node import Node
from tensor_regions.ir.shape import sym
from tensor_regions.ir.tensor import TensorInfo
from tensor_regions.ops.op_types import OpType


class TestGraphBuild(unittest.TestCase):
    def test_topological_order(self):
        gb = GraphBuilder("g")
        a = gb.input("A", (2,))
        b = gb.input("B", (2,))
        mul = gb.mul(a, b, name="Mul")
        out = gb.relu(mul, name="Relu")
        gb.output(out)
        graph = gb.build()

        order = graph.topological_order()
        self.assertEqual([n.name for n in order], ["Mul", "Relu"])
        self.assertEqual(graph.producer("Mul").op_type, OpType.MUL)
        self.assertEqual([n.name for n in graph.consumers("Mul")], ["Relu"])

    def test_symbolic_inputs(self):
        gb = GraphBuilder()
        gb.input("x", ("N", 4))
        info = gb.build().tensor_info("x")
        self.assertEqual(info.shape, (sym("N"), 4))
        self.assertEqual(info.dtype, DType.FLOAT)

    def test_initializer_constness(self):
        gb = GraphBuilder()
        gb.input("x", (2,))
        gb.initializer("w", [1.0, 2.0])
        gb.initializer("bias", [0.5, 0.5])
        graph = gb.build()
        # An initializer that is also a graph input can be overridden
        graph.add_input(TensorInfo("bias", DType.FLOAT, (2,)))

        self.assertTrue(graph.is_constant_initializer("w"))
        self.assertFalse(graph.is_constant_initializer("bias"))
        self.assertFalse(graph.is_constant_initializer("x"))

    def test_release_initializers(self):
        gb = GraphBuilder()
        gb.initializer("w", [1.0, 2.0])
        graph = gb.build()
        self.assertEqual(graph.release_initializers(["w", "missing"]), ["w"])
        self.assertIsNone(graph.get_initializer("w"))


def test_cycle_is_fatal():
    graph = Graph("cyclic")
    graph.add_node(Node(OpType.ADD, ["b", "x"], ["a"]))
    graph.add_node(Node(OpType.RELU, ["a"], ["b"]))
    with pytest.raises(PartitionError):
        graph.topological_order()


def test_duplicate_producer_rejected():
    graph = Graph()
    graph.add_node(Node(OpType.RELU, ["x"], ["y"]))
    with pytest.raises(ValueError):
        graph.add_node(Node(OpType.EXP, ["x"], ["y"]))


def test_optional_inputs_are_skipped():
    node = Node(OpType.SLICE, ["x", "s", "e", "", "st"], ["y"])
    assert node.input_defs() == ["x", "s", "e", "st"]
    assert not node.has_input(3)
    assert node.has_input(4)
    assert not node.has_input(7)


def test_builder_slice_forms():
    gb = GraphBuilder()
    x = gb.input("x", (4, 4))
    s = gb.initializer("s", np.array([1], dtype=np.int64), DType.INT64)
    e = gb.initializer("e", np.array([3], dtype=np.int64), DType.INT64)
    st = gb.initializer("st", np.array([1], dtype=np.int64), DType.INT64)
    tensor_form = gb.slice(x, s, e, steps=st)
    attr_form = gb.slice_v1(x, [1], [3], axes=[0])
    graph = gb.build()

    assert graph.producer(tensor_form).inputs == ["x", "s", "e", "", "st"]
    node = graph.producer(attr_form)
    assert node.inputs == ["x"]
    assert node.attrs == {"starts": [1], "ends": [3], "axes": [0]}
