"""
Numerical gradient estimation and backward-pass verification.

calculate_numerical_gradient() estimates, by central differences, the
gradient of ``sum_j <F(inputs)_j, grad_outputs[j]>`` with respect to every
input element. check_backward_computation() runs F through the autograd
engine, backpropagates the same grad_outputs, and asserts both gradients
agree within (atol, rtol).

Host-side helpers (subtract, divide, array_sum, get_element, ...) read device
memory, so each one synchronizes the array's device first. GPU work may have
been queued since the previous read, so the barrier is issued on every call.

Only float32 and float64 arrays are supported.
"""

import math
import logging
from typing import Callable, List, Sequence

import numpy as np

from wgpu_gradcheck import config
from wgpu_gradcheck.dtypes import Dtype, Scalar, check_floating
from wgpu_gradcheck.errors import InvalidArgumentError, ToleranceViolationError
from wgpu_gradcheck.wgpu_array import (
    Array, abs_errors, all_close, check_same_layout, mul as tensor_mul,
)
from wgpu_gradcheck.wgpu_autograd import (
    ComputationGraph, backward, ensure_node, get_leaves, no_grad, resolve_graph,
)

logger = logging.getLogger(__name__)

Arrays = List[Array]


def _as_arrays(value, what: str) -> Arrays:
    """Normalize a single Array or a sequence of Arrays to a list."""
    if isinstance(value, Array):
        return [value]
    if isinstance(value, (list, tuple)):
        for item in value:
            if not isinstance(item, Array):
                raise TypeError(f"{what} must contain only Array instances, got {type(item).__name__}")
        return list(value)
    raise TypeError(f"{what} must be an Array or a sequence of Arrays, got {type(value).__name__}")


# ============================================================================
# Scalar Accessors
# ============================================================================

def get_element(array: Array, flat_index: int) -> Scalar:
    """Read the element at a flat offset as a Scalar of the array's dtype."""
    dtype = check_floating(array.dtype, "get_element")
    array.device.synchronize()
    return Scalar(array.device.read_element(array.storage, dtype, flat_index), dtype)


def set_element(array: Array, flat_index: int, value) -> None:
    """Convert ``value`` to the array's dtype and write it in place."""
    dtype = check_floating(array.dtype, "set_element")
    array.device.write_element(array.storage, dtype, flat_index, Scalar(value, dtype).value)


# ============================================================================
# Elementwise Arithmetic
# ============================================================================

def _host_binary(ufunc, op_name: str, lhs: Array, rhs: Array, out) -> Array:
    check_same_layout(lhs, rhs, op_name)
    dtype = check_floating(lhs.dtype, op_name)
    if out is None:
        out = Array.empty_like(lhs)
    elif out.shape != lhs.shape or out.dtype is not dtype:
        raise InvalidArgumentError(
            f"{op_name}: output {out.shape}/{out.dtype.value} does not match "
            f"operands {lhs.shape}/{dtype.value}"
        )

    device = lhs.device
    device.synchronize()
    ldata = device.download(lhs.storage, dtype, lhs.size)
    rdata = device.download(rhs.storage, dtype, rhs.size)
    device.store(out.storage, dtype, ufunc(ldata, rdata, dtype=dtype.numpy_type))
    return out


def subtract(lhs: Array, rhs: Array, out=None) -> Array:
    """out[i] = lhs[i] - rhs[i]."""
    return _host_binary(np.subtract, "subtract", lhs, rhs, out)


def divide(lhs: Array, rhs: Array, out=None) -> Array:
    """out[i] = lhs[i] / rhs[i]."""
    return _host_binary(np.divide, "divide", lhs, rhs, out)


# ============================================================================
# Reductions
# ============================================================================

def array_sum(x: Array) -> Scalar:
    """Sum of all elements, accumulated in the array's own dtype."""
    dtype = check_floating(x.dtype, "array_sum")
    x.device.synchronize()
    data = x.device.download(x.storage, dtype, x.size)
    return Scalar(data.sum(dtype=dtype.numpy_type), dtype)


def norm(x: Array) -> Scalar:
    """Euclidean norm; the square root is taken in double precision."""
    s = array_sum(tensor_mul(x, x))
    return Scalar(math.sqrt(float(s)), x.dtype)


def vector_dot(x: Array, y: Array) -> Scalar:
    """Sum of the elementwise product of two same-layout arrays."""
    check_same_layout(x, y, "vector_dot")
    return array_sum(tensor_mul(x, y))


# ============================================================================
# Identity Operation
# ============================================================================

def _pass_through(upstream_grad):
    return upstream_grad


def identity(inputs: Sequence[Array], outputs=None) -> Arrays:
    """Copy every input into an output joined to one shared ``identity`` op.

    Outputs of independent computations become siblings under a single op
    node, so a backward pass started from any one of them also propagates
    the gradients seeded on the others.

    Args:
        inputs: arrays to copy
        outputs: pre-allocated arrays matching ``inputs``; created with
            empty_like when omitted

    Returns:
        The list of outputs.
    """
    inputs = _as_arrays(inputs, "inputs")
    if outputs is None:
        outputs = [Array.empty_like(x) for x in inputs]
    else:
        outputs = _as_arrays(outputs, "outputs")
        if len(outputs) != len(inputs):
            raise InvalidArgumentError(
                f"identity: got {len(outputs)} outputs for {len(inputs)} inputs"
            )

    graph = resolve_graph(inputs)
    op = graph.add_op_node("identity") if graph is not None else None

    for x, out in zip(inputs, outputs):
        if out.shape != x.shape or out.dtype is not x.dtype:
            raise InvalidArgumentError(
                f"identity: output {out.shape}/{out.dtype.value} does not match "
                f"input {x.shape}/{x.dtype.value}"
            )
        if graph is not None and x.requires_grad:
            in_node = ensure_node(x, graph)
            out.attach(graph, graph.add_array_node(producer=op))
            graph.add_edge(op, in_node, out.node_id, _pass_through)
        x.device.copy(out.storage, x.storage, x.nbytes)
    return outputs


# ============================================================================
# Numerical Gradient
# ============================================================================

def _check_eps(inputs: Arrays, eps: Arrays) -> None:
    if len(eps) != len(inputs):
        raise InvalidArgumentError(
            f"Invalid number of eps arrays: expected {len(inputs)}, got {len(eps)}"
        )
    for i, (x, e) in enumerate(zip(inputs, eps)):
        if x.shape != e.shape:
            raise InvalidArgumentError(
                f"Invalid eps shape for input {i}: expected {x.shape}, got {e.shape}"
            )
        if x.dtype is not e.dtype:
            raise InvalidArgumentError(
                f"Invalid eps dtype for input {i}: expected {x.dtype.value}, got {e.dtype.value}"
            )
        check_floating(x.dtype, "calculate_numerical_gradient")
        if np.any(e.to_numpy() == 0):
            raise InvalidArgumentError(f"eps for input {i} must not contain zeros")


def calculate_numerical_gradient(
    func: Callable[[Arrays], Arrays],
    inputs: Sequence[Array],
    grad_outputs: Sequence[Array],
    eps: Sequence[Array],
) -> Arrays:
    """
    Central-difference estimate of the gradient of ``func`` w.r.t. its inputs.

    For every input i and flat index k, evaluates ``func`` on two detached
    copies of all inputs with element k of input i shifted by -eps[i][k] and
    +eps[i][k], and accumulates

        sum_j <(y_plus[j] - y_minus[j]) / (2 * eps[i][k]), grad_outputs[j]>

    into element k of the returned gradient for input i. ``func`` is called
    exactly twice per input element.

    Args:
        func: maps a list of Arrays to an Array or list of Arrays
        inputs: evaluation point, never modified
        grad_outputs: one weighting array per output of ``func``
        eps: one array of nonzero step sizes per input, same shape and dtype

    Returns:
        One gradient array per input.

    Raises:
        InvalidArgumentError: eps count/shape/dtype mismatch, zero eps, or
            ``func`` returning a different number of outputs than
            ``grad_outputs``.
        UnsupportedDtypeError: an input is not float32/float64.
    """
    inputs = _as_arrays(inputs, "inputs")
    grad_outputs = _as_arrays(grad_outputs, "grad_outputs")
    eps = _as_arrays(eps, "eps")
    _check_eps(inputs, eps)

    nout = len(grad_outputs)

    def eval_perturbed(i_in: int, flat_index: int, delta: Scalar) -> Arrays:
        # Detached copies, evaluated under no_grad so arrays captured by func
        # are not recorded into any graph either
        xs = [x.detached_copy() for x in inputs]
        set_element(xs[i_in], flat_index, get_element(xs[i_in], flat_index) + delta)
        with no_grad():
            ys = _as_arrays(func(xs), "func output")
        if len(ys) != nout:
            raise InvalidArgumentError(
                f"func returned {len(ys)} outputs but {nout} output gradients were given"
            )
        return ys

    grads = []
    for i, x in enumerate(inputs):
        grad_i = Array.zeros_like(x)
        logger.debug(f"Numerical gradient for input {i}: {x.size} elements, shape {x.shape}")

        for in_flat_index in range(x.size):
            eps_scalar = get_element(eps[i], in_flat_index)
            # Step is rounded to single precision, divisor is not
            step = Scalar(Scalar(eps_scalar, Dtype.FLOAT32), x.dtype)
            ys0 = eval_perturbed(i, in_flat_index, -step)
            ys1 = eval_perturbed(i, in_flat_index, step)

            for j in range(nout):
                denom = Array.full_like(ys1[j], float(eps_scalar * 2))
                dy = subtract(ys1[j], ys0[j])
                g = vector_dot(divide(dy, denom), grad_outputs[j])
                set_element(grad_i, in_flat_index, get_element(grad_i, in_flat_index) + g)

        grads.append(grad_i)
    return grads


# ============================================================================
# Backward Check
# ============================================================================

def _worst_violation(errors, numeric: Array, atol: float, rtol: float) -> int:
    """Flat index of the element furthest outside atol + rtol * |numeric|.

    Elements within tolerance are never reported, even when their absolute
    error is larger. NaN errors count as violations.
    """
    errors = errors.reshape(-1)
    bound = atol + rtol * np.abs(numeric.to_numpy().astype(np.float64).reshape(-1))
    violating = ~(errors <= bound)
    with np.errstate(divide="ignore", invalid="ignore"):
        ratio = np.where(violating, errors / bound, -np.inf)
    return int(np.argmax(ratio))


def check_backward_computation(
    func: Callable[[Arrays], Arrays],
    inputs: Sequence[Array],
    grad_outputs: Sequence[Array],
    eps: Sequence[Array],
    atol: float,
    rtol: float,
) -> None:
    """
    Assert that backpropagated gradients match central-difference estimates.

    The outputs of ``func`` are joined under one identity op, seeded with
    ``grad_outputs`` and backpropagated from the first output. Every input
    that requires grad is re-attached to a fresh graph first, so its
    gradient slot starts empty and holds the analytic gradient afterwards.

    Raises:
        InvalidArgumentError: output count mismatch (checked before any
            numerical work), eps mismatch, or no output connected to a
            tracked input.
        ToleranceViolationError: some element violates
            |analytic - numeric| <= atol + rtol * |numeric|.
    """
    inputs = _as_arrays(inputs, "inputs")
    grad_outputs = _as_arrays(grad_outputs, "grad_outputs")
    eps = _as_arrays(eps, "eps")
    _check_eps(inputs, eps)

    # One arena per check; tracked inputs become its leaves
    graph = ComputationGraph()
    graph.track(*[x for x in inputs if x.requires_grad])

    # Extend the graph by an identity op so all outputs hang off the same op;
    # backprop then only needs to start from one of them
    outputs = identity(_as_arrays(func(inputs), "func output"))

    if len(outputs) != len(grad_outputs):
        raise InvalidArgumentError(
            "Number of given output gradients does not match the actual number of outputs: "
            f"{len(grad_outputs)} != {len(outputs)}"
        )

    tracked = [out for out in outputs if out.graph is not None]
    if not tracked:
        raise InvalidArgumentError(
            "No output is connected to the computation graph; at least one input must require grad"
        )

    for j, (out, gout) in enumerate(zip(outputs, grad_outputs)):
        if out.graph is None:
            logger.debug(f"Output {j} does not depend on any tracked input; its seed is unused")
            continue
        out.set_grad(gout)

    root = tracked[0]
    reached = set(get_leaves(root))
    backward(root)

    backward_grads = []
    for i, x in enumerate(inputs):
        if x.grad is None:
            if x.node_id not in reached:
                logger.debug(f"Input {i} is not reached by backward; analytic gradient is zero")
            backward_grads.append(Array.zeros_like(x))
        else:
            backward_grads.append(x.grad)

    numerical_grads = calculate_numerical_gradient(func, inputs, grad_outputs, eps)

    max_error = 0.0
    for i, (analytic, numeric) in enumerate(zip(backward_grads, numerical_grads)):
        errors = abs_errors(analytic, numeric)
        if all_close(analytic, numeric, atol, rtol):
            max_error = max(max_error, float(errors.max(initial=0.0)))
            continue
        worst = _worst_violation(errors, numeric, atol, rtol)
        worst_error = float(errors.reshape(-1)[worst])
        logger.error(
            f"Gradient mismatch for input {i}: abs error {worst_error:.6e} at flat index "
            f"{worst} exceeds atol={atol}, rtol={rtol} (max abs error {float(errors.max()):.6e})"
        )
        raise ToleranceViolationError(
            f"too large errors: input {i}, abs error {worst_error:.6e} at flat index "
            f"{worst} (atol={atol}, rtol={rtol})",
            input_index=i, flat_index=worst, abs_error=worst_error,
            max_abs_error=float(errors.max()),
        )

    n_evals = 2 * sum(x.size for x in inputs)
    logger.info(
        f"Backward check passed: {len(inputs)} inputs, {len(outputs)} outputs, "
        f"{n_evals} numerical evaluations, max abs error {max_error:.6e}"
    )


# ============================================================================
# Convenience Front-end
# ============================================================================

def _validate_tolerance(name: str, value) -> float:
    try:
        value = float(value)
    except (TypeError, ValueError):
        raise InvalidArgumentError(f"{name} must be a finite, non-negative float") from None
    if not math.isfinite(value) or value < 0.0:
        raise InvalidArgumentError(f"{name} must be a finite, non-negative float")
    return value


def gradcheck(
    func: Callable[[Arrays], Arrays],
    inputs,
    grad_outputs=None,
    eps=None,
    atol=None,
    rtol=None,
    raise_exception: bool = True,
) -> bool:
    """
    Run check_backward_computation with configured defaults.

    Args:
        func: maps a list of Arrays to an Array or list of Arrays
        inputs: Array or sequence of Arrays
        grad_outputs: seeds; defaults to ones shaped like each output
        eps: a positive float applied to every element, or one array per input;
            defaults to config.default_eps()
        atol, rtol: tolerances; default to config.default_atol()/default_rtol()
        raise_exception: if False, return False on a tolerance violation

    Returns:
        True when the gradients agree.
    """
    if not callable(func):
        raise TypeError("gradcheck: func must be callable")
    inputs = _as_arrays(inputs, "inputs")
    if not inputs:
        raise InvalidArgumentError("gradcheck: inputs must not be an empty sequence")

    atol = _validate_tolerance("atol", config.default_atol() if atol is None else atol)
    rtol = _validate_tolerance("rtol", config.default_rtol() if rtol is None else rtol)

    if eps is None:
        eps = config.default_eps()
    if isinstance(eps, (int, float)):
        if not math.isfinite(eps) or eps <= 0:
            raise InvalidArgumentError("gradcheck: eps must be a finite float > 0")
        eps = [Array.full_like(x, eps) for x in inputs]

    if grad_outputs is None:
        with no_grad():
            sample = _as_arrays(func([x.detached_copy() for x in inputs]), "func output")
        grad_outputs = [Array.ones_like(y) for y in sample]

    try:
        check_backward_computation(func, inputs, grad_outputs, eps, atol, rtol)
    except ToleranceViolationError as e:
        if raise_exception:
            raise
        logger.info(f"gradcheck failed: {e}")
        return False
    return True
