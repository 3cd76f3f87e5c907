import numpy as np
import pytest

from wgpu_gradcheck.errors import InvalidArgumentError, UnsupportedDtypeError
from wgpu_gradcheck.gradient_check import calculate_numerical_gradient
from wgpu_gradcheck.wgpu_array import Array, array


def square(xs):
    (x,) = xs
    return [x * x]


def test_square(cpu):
    x = array([1.0, 2.0, 3.0, 4.0], "float64", cpu)
    seed = Array.ones_like(x)
    eps = Array.full_like(x, 1e-3)

    (grad,) = calculate_numerical_gradient(square, [x], [seed], [eps])

    assert grad.dtype is x.dtype
    np.testing.assert_allclose(grad.to_numpy(), [2.0, 4.0, 6.0, 8.0], rtol=0, atol=1e-4)


@pytest.mark.parametrize("dtype, eps, atol", [("float64", 1e-3, 1e-6), ("float32", 1e-2, 1e-4)])
def test_identity_function_returns_seed(cpu, dtype, eps, atol):
    rng = np.random.RandomState(1)
    x = Array.from_numpy(rng.randn(2, 3), device=cpu, dtype=dtype)
    seed = Array.from_numpy(rng.randn(2, 3), device=cpu, dtype=dtype)

    (grad,) = calculate_numerical_gradient(lambda xs: [xs[0]], [x], [seed], [Array.full_like(x, eps)])

    np.testing.assert_allclose(grad.to_numpy(), seed.to_numpy(), rtol=0, atol=atol)


def test_multiple_inputs_and_outputs(cpu):
    rng = np.random.RandomState(2)
    xv, yv = rng.randn(3), rng.randn(3)
    g0, g1 = rng.randn(3), rng.randn(3)
    x = array(xv, "float64", cpu)
    y = array(yv, "float64", cpu)
    seeds = [array(g0, "float64", cpu), array(g1, "float64", cpu)]
    eps = [Array.full_like(x, 1e-6), Array.full_like(y, 1e-6)]

    gx, gy = calculate_numerical_gradient(lambda xs: [xs[0] * xs[1], xs[0]], [x, y], seeds, eps)

    np.testing.assert_allclose(gx.to_numpy(), g0 * yv + g1, rtol=1e-6, atol=1e-8)
    np.testing.assert_allclose(gy.to_numpy(), g0 * xv, rtol=1e-6, atol=1e-8)


def test_per_element_eps(cpu):
    x = array([1.0, -2.0], "float64", cpu)
    eps = array([1e-3, 1e-5], "float64", cpu)
    (grad,) = calculate_numerical_gradient(square, [x], [Array.ones_like(x)], [eps])
    np.testing.assert_allclose(grad.to_numpy(), [2.0, -4.0], rtol=1e-6)


def test_evaluates_func_twice_per_element_on_detached_copies(cpu):
    x = array(np.arange(6.0).reshape(2, 3), "float64", cpu, requires_grad=True)
    y = array([0.5, 1.5], "float64", cpu, requires_grad=True)
    calls = []

    def func(xs):
        calls.append(xs)
        assert all(a.graph is None and not a.requires_grad for a in xs)
        assert xs[0] is not x and xs[1] is not y
        return [xs[0] * xs[0]]

    calculate_numerical_gradient(
        func, [x, y], [Array.ones_like(x)], [Array.full_like(x, 0.1), Array.full_like(y, 0.1)]
    )

    assert len(calls) == 2 * (6 + 2)
    assert x.to_numpy().reshape(-1).tolist() == [0.0, 1.0, 2.0, 3.0, 4.0, 5.0]
    assert x.graph is None and y.graph is None


def test_perturbs_one_element_at_a_time(cpu):
    x = array([10.0, 20.0, 30.0], "float64", cpu)
    seen = []

    def func(xs):
        seen.append(xs[0].to_numpy() - x.to_numpy())
        return [xs[0]]

    calculate_numerical_gradient(func, [x], [Array.ones_like(x)], [Array.full_like(x, 0.5)])

    changed = [tuple(np.nonzero(d)[0]) for d in seen]
    assert changed == [(0,), (0,), (1,), (1,), (2,), (2,)]
    assert seen[0][0] == -0.5 and seen[1][0] == 0.5


def test_eps_count_mismatch(cpu):
    x = array([1.0], "float64", cpu)
    with pytest.raises(InvalidArgumentError, match="Invalid number of eps arrays"):
        calculate_numerical_gradient(square, [x], [x], [])


def test_eps_shape_mismatch(cpu):
    x = array([1.0, 2.0], "float64", cpu)
    with pytest.raises(InvalidArgumentError, match="Invalid eps shape"):
        calculate_numerical_gradient(square, [x], [x], [array([1e-3], "float64", cpu)])


def test_eps_dtype_mismatch(cpu):
    x = array([1.0, 2.0], "float64", cpu)
    with pytest.raises(InvalidArgumentError, match="Invalid eps dtype"):
        calculate_numerical_gradient(square, [x], [x], [Array.full((2,), 1e-3, "float32", cpu)])


def test_zero_eps_rejected(cpu):
    x = array([1.0, 2.0], "float64", cpu)
    calls = []

    def func(xs):
        calls.append(xs)
        return square(xs)

    with pytest.raises(InvalidArgumentError, match="must not contain zeros"):
        calculate_numerical_gradient(func, [x], [x], [array([1e-3, 0.0], "float64", cpu)])
    assert calls == []


def test_integer_inputs_rejected(cpu):
    x = array([1, 2], "int32", cpu)
    with pytest.raises(UnsupportedDtypeError):
        calculate_numerical_gradient(square, [x], [x], [array([1, 1], "int32", cpu)])


def test_output_count_mismatch(cpu):
    x = array([1.0], "float64", cpu)
    with pytest.raises(InvalidArgumentError, match="func returned 1 outputs but 2"):
        calculate_numerical_gradient(square, [x], [x, x], [Array.full_like(x, 1e-3)])
