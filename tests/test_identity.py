import pytest

from wgpu_gradcheck.errors import InvalidArgumentError
from wgpu_gradcheck.gradient_check import identity
from wgpu_gradcheck.wgpu_array import Array, array
from wgpu_gradcheck.wgpu_autograd import ComputationGraph, backward


def test_copies_values_into_new_arrays(cpu):
    x = array([1.0, 2.0], "float64", cpu)
    y = array([[3.0]], "float32", cpu)
    outs = identity([x, y])
    assert outs[0].to_numpy().tolist() == [1.0, 2.0]
    assert outs[1].to_numpy().tolist() == [[3.0]]
    assert outs[0].storage is not x.storage


def test_untracked_inputs_record_nothing(cpu):
    outs = identity([array([1.0], "float64", cpu)])
    assert outs[0].graph is None
    assert not outs[0].requires_grad


def test_preallocated_outputs(cpu):
    x = array([5.0, 6.0], "float64", cpu)
    out = Array.zeros((2,), "float64", cpu)
    result = identity([x], [out])
    assert result[0] is out
    assert out.to_numpy().tolist() == [5.0, 6.0]


def test_preallocated_outputs_must_match(cpu):
    x = array([5.0, 6.0], "float64", cpu)
    with pytest.raises(InvalidArgumentError, match="2 outputs for 1 inputs"):
        identity([x], [Array.zeros((2,), "float64", cpu)] * 2)
    with pytest.raises(InvalidArgumentError, match="does not match"):
        identity([x], [Array.zeros((3,), "float64", cpu)])


def test_tracked_outputs_share_one_op(cpu):
    graph = ComputationGraph()
    x, y = graph.track(
        array([1.0], "float64", cpu, requires_grad=True),
        array([2.0], "float64", cpu, requires_grad=True),
    )
    a, b = x * x, y * 3.0
    ops_before = len(graph.op_nodes)

    outs = identity([a, b])

    assert len(graph.op_nodes) == ops_before + 1
    op = graph.op_nodes[-1]
    assert op.name == "identity"
    assert len(op.edge_ids) == 2
    producers = {o.node.producer for o in outs}
    assert producers == {op.index}


def test_mixed_tracked_and_untracked_inputs(cpu):
    x = array([1.0], "float64", cpu, requires_grad=True)
    c = array([4.0], "float64", cpu)
    outs = identity([x, c])
    assert outs[0].graph is x.graph
    assert outs[1].graph is None
    assert outs[1].to_numpy().tolist() == [4.0]


def test_single_backward_reaches_every_seeded_output(cpu):
    graph = ComputationGraph()
    x, y = graph.track(
        array([1.0, 2.0], "float64", cpu, requires_grad=True),
        array([3.0, 4.0], "float64", cpu, requires_grad=True),
    )
    outs = identity([x * x, y * 3.0])
    outs[0].grad = array([1.0, 1.0], "float64", cpu)
    outs[1].grad = array([10.0, 10.0], "float64", cpu)

    backward(outs[0])

    assert x.grad.to_numpy().tolist() == [2.0, 4.0]
    assert y.grad.to_numpy().tolist() == [30.0, 30.0]


def test_gradient_passes_through_unchanged(cpu):
    x = array([1.0, 2.0], "float64", cpu, requires_grad=True)
    (out,) = identity([x])
    out.grad = array([0.25, -4.0], "float64", cpu)
    backward(out)
    assert x.grad.to_numpy().tolist() == [0.25, -4.0]
