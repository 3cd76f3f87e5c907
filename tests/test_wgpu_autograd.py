import numpy as np
import pytest

from wgpu_gradcheck.errors import GraphError
from wgpu_gradcheck.wgpu_array import array
from wgpu_gradcheck.wgpu_autograd import (
    ComputationGraph, backward, exp, get_leaves, is_grad_enabled, no_grad, sigmoid, tanh,
    zero_grad,
)


def _leaf(values, cpu):
    return array(values, "float64", cpu, requires_grad=True)


def test_square_backward(cpu):
    x = _leaf([1.0, 2.0, 3.0, 4.0], cpu)
    backward(x * x)
    assert x.grad.to_numpy().tolist() == [2.0, 4.0, 6.0, 8.0]


def test_untracked_ops_record_nothing(cpu):
    x = array([1.0, 2.0], "float64", cpu)
    y = x * x
    assert y.graph is None
    with pytest.raises(GraphError):
        backward(y)


def test_chain_rule(cpu):
    xv = np.array([0.3, -1.2, 2.0])
    yv = np.array([1.5, 0.5, -0.7])
    x, y = _leaf(xv, cpu), _leaf(yv, cpu)

    backward(tanh(x) * y - y)

    np.testing.assert_allclose(x.grad.to_numpy(), (1.0 - np.tanh(xv) ** 2) * yv)
    np.testing.assert_allclose(y.grad.to_numpy(), np.tanh(xv) - 1.0)


def test_division(cpu):
    av, bv = np.array([1.0, -3.0]), np.array([2.0, 0.5])
    a, b = _leaf(av, cpu), _leaf(bv, cpu)
    backward(a / b)
    np.testing.assert_allclose(a.grad.to_numpy(), 1.0 / bv)
    np.testing.assert_allclose(b.grad.to_numpy(), -av / bv ** 2)


def test_unary_and_scalar_ops(cpu):
    xv = np.array([0.1, -0.4, 1.3])

    x = _leaf(xv, cpu)
    backward(exp(x))
    np.testing.assert_allclose(x.grad.to_numpy(), np.exp(xv))

    x = _leaf(xv, cpu)
    backward(sigmoid(x))
    s = 1.0 / (1.0 + np.exp(-xv))
    np.testing.assert_allclose(x.grad.to_numpy(), s * (1.0 - s))

    x = _leaf(xv, cpu)
    backward(-(2.5 * x) + x / 2)
    np.testing.assert_allclose(x.grad.to_numpy(), np.full(3, -2.0))


def test_seeded_root_gradient_is_used(cpu):
    x = _leaf([1.0, 2.0], cpu)
    y = x * x
    y.grad = array([10.0, 100.0], "float64", cpu)
    backward(y)
    assert x.grad.to_numpy().tolist() == [20.0, 400.0]


def test_gradients_accumulate_across_paths(cpu):
    x = _leaf([2.0], cpu)
    # d/dx (x*x + x) = 2x + 1
    backward(x * x + x)
    assert x.grad.to_numpy().tolist() == [5.0]


def test_mixing_graphs_raises(cpu):
    x = _leaf([1.0], cpu)
    y = _leaf([1.0], cpu)
    a = x * x
    b = y * y
    assert a.graph is not b.graph
    with pytest.raises(GraphError, match="different computation graphs"):
        a + b


def test_track_shares_one_graph(cpu):
    graph = ComputationGraph()
    x, y = graph.track(_leaf([1.0], cpu), _leaf([2.0], cpu))
    z = x * x + y * y
    assert z.graph is graph
    assert len(graph.op_nodes) == 3
    assert get_leaves(z) == sorted([x.node_id, y.node_id])


def test_track_resets_gradient_slot(cpu):
    x = _leaf([3.0], cpu)
    backward(x * x)
    assert x.grad is not None
    ComputationGraph().track(x)
    assert x.grad is None


def test_zero_grad(cpu):
    x = _leaf([1.0], cpu)
    y = _leaf([2.0], cpu)
    backward(x * y)
    zero_grad([x, y])
    assert x.grad is None and y.grad is None
    zero_grad(x)


def test_get_leaves_of_untracked_array(cpu):
    assert get_leaves(array([1.0], "float64", cpu)) == []


def test_backward_fans_out_over_every_output_of_an_op(cpu):
    # An op with several outputs (built by hand here) propagates the gradient
    # of each output, even when backward enters through only one of them
    graph = ComputationGraph()
    x, y = graph.track(_leaf([1.0, 2.0], cpu), _leaf([3.0], cpu))
    a, b = x * x, 2.0 * y

    op = graph.add_op_node("pair")
    outs = [a.detached_copy(), b.detached_copy()]
    for src, out in zip((a, b), outs):
        out.attach(graph, graph.add_array_node(producer=op))
        graph.add_edge(op, src.node_id, out.node_id, lambda g: g)

    outs[0].grad = array([1.0, 1.0], "float64", cpu)
    outs[1].grad = array([10.0], "float64", cpu)
    backward(outs[0])

    assert x.grad.to_numpy().tolist() == [2.0, 4.0]
    assert y.grad.to_numpy().tolist() == [20.0]


def test_backward_rejects_non_arrays():
    with pytest.raises(TypeError):
        backward(np.ones(2))


def test_no_grad_disables_recording(cpu):
    x = _leaf([1.0, 2.0], cpu)
    assert is_grad_enabled()
    with no_grad():
        assert not is_grad_enabled()
        y = x * x
    assert is_grad_enabled()
    assert y.graph is None
    assert x.graph is None


def test_no_grad_restores_mode_after_error():
    with pytest.raises(RuntimeError):
        with no_grad():
            raise RuntimeError("boom")
    assert is_grad_enabled()


def test_stale_leaf_is_rebound_into_newest_graph(cpu):
    w = _leaf([2.0, 3.0], cpu)
    old = ComputationGraph()
    (x,) = old.track(_leaf([1.0, 1.0], cpu))
    x * w
    assert w.graph is old

    new = ComputationGraph()
    (z,) = new.track(_leaf([4.0, 5.0], cpu))
    out = w * z
    assert out.graph is new
    assert w.graph is new

    backward(out)
    assert w.grad.to_numpy().tolist() == [4.0, 5.0]
