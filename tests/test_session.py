import numpy as np
import pytest

from tensor_regions.errors import ExecutionError
from tensor_regions.ir.dtypes import DType
from tensor_regions.ir.graph import GraphBuilder
from tensor_regions.ir.shape import sym
from tensor_regions.provider import KernelStatus
from tensor_regions.session import InferenceSession

W = np.array([1.0, -2.0, 3.0], dtype=np.float32)
BIAS = np.array([0.5, 0.25, -1.0], dtype=np.float32)


def _softmax(x):
    e = np.exp(x - x.max(axis=1, keepdims=True))
    return e / e.sum(axis=1, keepdims=True)


def _mixed_graph():
    """
    mul -> relu | Tile (run-time repeats) | add -> softmax

    The Tile splits the graph into two claimed regions around an unclaimed node.
    """
    N = sym("N")
    gb = GraphBuilder("mixed")
    x = gb.input("x", (N, 3))
    repeats = gb.input("repeats", (2,), DType.INT64)
    w = gb.initializer("W", W)
    bias = gb.initializer("bias", BIAS)

    hidden = gb.relu(gb.mul(x, w, name="scale"), name="hidden")
    tiled = gb.tile(hidden, repeats, name="tiled")
    gb.declare(tiled, (N, 3))
    probs = gb.softmax(gb.add(tiled, bias, name="shift"), axis=1, name="probs")
    gb.output(hidden)
    gb.output(probs)
    return gb.build()


def _reference(x):
    hidden = np.maximum(x * W, 0)
    return hidden, _softmax(hidden + BIAS)


def test_mixed_claimed_and_unclaimed_nodes():
    graph = _mixed_graph()
    session = InferenceSession(graph)
    session.compile()

    assert [[n.name for n in r.nodes] for r in session.regions] == [["scale", "hidden"], ["shift", "probs"]]
    assert session.released_initializers == ["W", "bias"]
    assert graph.get_initializer("W") is None

    x = np.random.randn(4, 3).astype(np.float32)
    outputs = session.run({"x": x, "repeats": np.array([1, 1], dtype=np.int64)})
    hidden, probs = _reference(x)
    np.testing.assert_allclose(outputs["hidden"], hidden, rtol=1e-6)
    np.testing.assert_allclose(outputs["probs"], probs, rtol=1e-5)
    session.close()


def test_symbolic_batch_across_runs():
    session = InferenceSession(_mixed_graph())
    for n in (1, 7, 3):
        x = np.random.randn(n, 3).astype(np.float32)
        outputs = session.run({"x": x, "repeats": np.array([1, 1], dtype=np.int64)})
        assert outputs["probs"].shape == (n, 3)
        np.testing.assert_allclose(outputs["probs"], _reference(x)[1], rtol=1e-5)

    states = list(session._states.values())
    assert len(states) == 2
    assert all(s.compile_count == 1 for s in states)
    # Only the captured W and bias (64 aligned bytes each) outlive a run
    assert session.provider.get_allocator().bytes_in_use == 128

    session.close()
    assert all(s.status == KernelStatus.RELEASED for s in states)
    assert session.provider.allocator_manager.bytes_in_use == 0


def test_shared_initializer_stays_with_the_host():
    gb = GraphBuilder("shared")
    x = gb.input("x", (3,))
    r = gb.input("r", (1,), DType.INT64)
    w = gb.initializer("W", W)
    y = gb.mul(x, w, name="claimed")
    t = gb.tile(w, r, name="unclaimed")
    gb.declare(t, (3,))
    gb.output(y)
    gb.output(t)
    graph = gb.build()

    session = InferenceSession(graph)
    x_val = np.array([1.0, 2.0, 3.0], dtype=np.float32)
    outputs = session.run({"x": x_val, "r": np.array([1], dtype=np.int64)})

    assert session.released_initializers == []
    assert graph.get_initializer("W") is not None
    np.testing.assert_allclose(outputs["claimed"], x_val * W)
    np.testing.assert_allclose(outputs["unclaimed"], W)


def test_overridable_initializer_is_read_at_run_time():
    gb = GraphBuilder("override")
    x = gb.input("x", (3,))
    gb.initializer("offset", [1.0, 1.0, 1.0])
    gb.input("offset", (3,))
    gb.output(gb.add(x, "offset", name="y"))
    graph = gb.build()

    session = InferenceSession(graph)
    x_val = np.zeros(3, dtype=np.float32)
    np.testing.assert_allclose(session.run({"x": x_val})["y"], [1, 1, 1])
    np.testing.assert_allclose(
        session.run({"x": x_val, "offset": np.array([2, 3, 4], dtype=np.float32)})["y"], [2, 3, 4]
    )
    assert session.released_initializers == []


def test_graph_without_claims_runs_on_registry_kernels():
    gb = GraphBuilder("unclaimed")
    x = gb.input("x", (2, 2))
    repeats = gb.input("repeats", (2,), DType.INT64)
    gb.output(gb.tile(x, repeats, name="t"))
    graph = gb.build()

    session = InferenceSession(graph)
    x_val = np.array([[1, 2], [3, 4]], dtype=np.float32)
    out = session.run({"x": x_val, "repeats": np.array([2, 1], dtype=np.int64)})["t"]
    assert session.regions == []
    np.testing.assert_array_equal(out, np.tile(x_val, (2, 1)))


def test_transformer_style_block():
    N = sym("N")
    gb = GraphBuilder("block")
    x = gb.input("x", (N, 4))
    w = gb.initializer("W", np.eye(4, dtype=np.float32) * 2)
    shape = gb.initializer("shape", [-1, 2, 2], dtype=DType.INT64)
    starts = gb.initializer("starts", [1], dtype=DType.INT64)
    ends = gb.initializer("ends", [2], dtype=DType.INT64)
    axes = gb.initializer("axes", [1], dtype=DType.INT64)

    h = gb.matmul(x, w, name="proj")
    r = gb.reshape(h, shape, name="split")
    s = gb.slice(r, starts, ends, axes, name="head")
    t = gb.transpose(s, (0, 2, 1), name="swap")
    gb.output(gb.hardmax(t, axis=1, name="pick"))
    graph = gb.build()

    session = InferenceSession(graph)
    x_val = np.array([[1, 2, 3, 4], [4, 3, 2, 1]], dtype=np.float32)
    out = session.run({"x": x_val})["pick"]

    assert len(session.regions) == 1
    # [[[6], [8]], [[4], [2]]] before the hardmax
    expected = np.array([[[0], [1]], [[1], [0]]], dtype=np.float32)
    assert out.shape == (2, 2, 1)
    np.testing.assert_array_equal(out, expected)


def test_missing_input():
    session = InferenceSession(_mixed_graph())
    with pytest.raises(ExecutionError, match="Missing graph input 'repeats'"):
        session.run({"x": np.ones((1, 3), dtype=np.float32)})


def test_regions_around_a_runtime_tile_run_in_order():
    gb = GraphBuilder("crossing")
    x = gb.input("x", (2, 3))
    y = gb.input("y", (2, 3))
    repeats = gb.input("repeats", (2,), DType.INT64)
    a = gb.relu(x, name="a")
    t = gb.tile(a, repeats, name="X")
    gb.declare(t, (2, 3))
    c = gb.relu(y, name="c")
    gb.output(gb.concat([a, t, c], axis=0, name="b"))
    gb.output(gb.add(a, c, name="d"))

    session = InferenceSession(gb.build())
    x_val = np.array([[1, -2, 3], [-4, 5, -6]], dtype=np.float32)
    y_val = -x_val
    outputs = session.run({"x": x_val, "y": y_val, "repeats": np.array([1, 1], dtype=np.int64)})

    assert [[n.name for n in r.nodes] for r in session.regions] == [["a"], ["c", "b", "d"]]
    relu_x, relu_y = np.maximum(x_val, 0), np.maximum(y_val, 0)
    np.testing.assert_array_equal(outputs["b"], np.concatenate([relu_x, relu_x, relu_y], axis=0))
    np.testing.assert_array_equal(outputs["d"], relu_x + relu_y)
    session.close()
