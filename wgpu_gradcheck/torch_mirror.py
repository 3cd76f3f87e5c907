"""PyTorch reference gradients for cross-checking the autograd engine.

A PyTorch twin of the function under test is evaluated on host copies of
the inputs and differentiated with torch.autograd. The resulting gradients
are an independent analytic oracle: where check_backward_computation pits
backward() against finite differences, this pits it against PyTorch.

Requires the optional ``torch`` dependency.
"""

import logging
from typing import Callable, List, Sequence

import numpy as np

from wgpu_gradcheck.errors import InvalidArgumentError
from wgpu_gradcheck.wgpu_array import Array

logger = logging.getLogger(__name__)

try:
    import torch
    HAS_TORCH = True
except ImportError:
    torch = None
    HAS_TORCH = False


def _require_torch():
    if not HAS_TORCH:
        raise ImportError("torch is required for torch_mirror; install wgpu-gradcheck[torch]")


def to_torch(a: Array, requires_grad: bool = False):
    """Host copy of an Array as a torch tensor."""
    _require_torch()
    return torch.from_numpy(a.to_numpy()).requires_grad_(requires_grad)


def reference_gradients(
    torch_func: Callable,
    inputs: Sequence[Array],
    grad_outputs: Sequence[Array],
) -> List[Array]:
    """
    Gradients of ``sum_j <torch_func(inputs)_j, grad_outputs[j]>`` via PyTorch.

    Args:
        torch_func: PyTorch twin of the function under test; takes a list of
            tensors and returns a tensor or a sequence of tensors
        inputs: evaluation point
        grad_outputs: one seed per output

    Returns:
        One Array per input, on the input's device and in its dtype. Inputs
        the output does not depend on get zeros.
    """
    _require_torch()
    xs = [to_torch(x, requires_grad=True) for x in inputs]
    ys = torch_func(xs)
    if isinstance(ys, torch.Tensor):
        ys = [ys]
    ys = list(ys)
    if len(ys) != len(grad_outputs):
        raise InvalidArgumentError(
            f"torch_func returned {len(ys)} outputs but {len(grad_outputs)} output gradients were given"
        )

    seeds = [to_torch(g) for g in grad_outputs]
    grads = torch.autograd.grad(ys, xs, grad_outputs=seeds, allow_unused=True)
    logger.debug(f"torch mirror computed gradients for {len(xs)} inputs")

    result = []
    for x, g in zip(inputs, grads):
        if g is None:
            host = np.zeros(x.shape, dtype=x.dtype.numpy_type)
        else:
            host = g.detach().numpy()
        result.append(Array.from_numpy(host, device=x.device, dtype=x.dtype))
    return result
