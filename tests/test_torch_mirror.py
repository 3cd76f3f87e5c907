import numpy as np
import pytest

torch = pytest.importorskip("torch")

from wgpu_gradcheck.errors import InvalidArgumentError
from wgpu_gradcheck.gradient_check import check_backward_computation
from wgpu_gradcheck.torch_mirror import reference_gradients, to_torch
from wgpu_gradcheck.wgpu_array import Array
from wgpu_gradcheck.wgpu_autograd import exp, sigmoid, tanh


def engine_func(xs):
    x, y = xs
    return [sigmoid(x) * y, exp(x) / y, tanh(y)]


def torch_func(xs):
    x, y = xs
    return [torch.sigmoid(x) * y, torch.exp(x) / y, torch.tanh(y)]


def _inputs(cpu):
    rng = np.random.RandomState(3)
    x = Array.from_numpy(rng.randn(2, 3), device=cpu, requires_grad=True)
    y = Array.from_numpy(rng.uniform(0.5, 2.0, (2, 3)), device=cpu, requires_grad=True)
    seeds = [Array.from_numpy(rng.randn(2, 3), device=cpu) for _ in range(3)]
    return x, y, seeds


def test_to_torch(cpu):
    x, _, _ = _inputs(cpu)
    t = to_torch(x, requires_grad=True)
    assert t.requires_grad
    assert t.dtype == torch.float64
    np.testing.assert_array_equal(t.detach().numpy(), x.to_numpy())


def test_backward_matches_torch(cpu):
    x, y, seeds = _inputs(cpu)
    eps = [Array.full_like(x, 1e-6), Array.full_like(y, 1e-6)]
    check_backward_computation(engine_func, [x, y], seeds, eps, atol=1e-6, rtol=1e-5)

    ref_x, ref_y = reference_gradients(torch_func, [x, y], seeds)

    np.testing.assert_allclose(x.grad.to_numpy(), ref_x.to_numpy(), rtol=1e-10, atol=1e-12)
    np.testing.assert_allclose(y.grad.to_numpy(), ref_y.to_numpy(), rtol=1e-10, atol=1e-12)


def test_unused_input_gets_zeros(cpu):
    x, y, seeds = _inputs(cpu)
    (gx, gy) = reference_gradients(lambda xs: torch.tanh(xs[1]), [x, y], seeds[:1])
    assert gx.dtype is x.dtype
    assert np.all(gx.to_numpy() == 0)
    assert np.any(gy.to_numpy() != 0)


def test_output_count_mismatch(cpu):
    x, y, seeds = _inputs(cpu)
    with pytest.raises(InvalidArgumentError, match="torch_func returned 3 outputs"):
        reference_gradients(torch_func, [x, y], seeds[:2])
