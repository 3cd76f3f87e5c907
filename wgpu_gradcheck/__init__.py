"""
wgpu_gradcheck: finite-difference verification for a wgpu autodiff engine.

Checks that reverse-mode gradients computed by the autograd engine agree
with central-difference estimates, for arrays living on the host (numpy) or
on a GPU through wgpu compute shaders.

Modules:
    dtypes          - Dtype enumeration and tagged Scalar
    wgpu_device     - CpuDevice / WgpuDevice with explicit synchronization
    wgpu_array      - contiguous device Array and raw elementwise kernels
    wgpu_autograd   - graph arena, differentiable ops, backward()
    gradient_check  - numerical gradient estimator and backward check
    torch_mirror    - PyTorch reference gradients (optional)
"""

from wgpu_gradcheck.dtypes import Dtype, Scalar, FLOATING_DTYPES

from wgpu_gradcheck.errors import (
    GradientCheckError, InvalidArgumentError, ToleranceViolationError,
    UnsupportedDtypeError, GraphError, DeviceError,
)

from wgpu_gradcheck.wgpu_device import Device, CpuDevice, WgpuDevice, wgpu_available

from wgpu_gradcheck.wgpu_array import Array, array, all_close

from wgpu_gradcheck.wgpu_autograd import (
    ComputationGraph, backward, zero_grad, no_grad, is_grad_enabled,
    add, sub, mul, div, neg, scalar_mul, tanh, sigmoid, exp,
)

from wgpu_gradcheck.gradient_check import (
    get_element, set_element,
    subtract, divide,
    array_sum, norm, vector_dot,
    identity,
    calculate_numerical_gradient,
    check_backward_computation,
    gradcheck,
)

__all__ = [
    # Dtypes
    "Dtype", "Scalar", "FLOATING_DTYPES",
    # Errors
    "GradientCheckError", "InvalidArgumentError", "ToleranceViolationError",
    "UnsupportedDtypeError", "GraphError", "DeviceError",
    # Devices
    "Device", "CpuDevice", "WgpuDevice", "wgpu_available",
    # Arrays
    "Array", "array", "all_close",
    # Autograd
    "ComputationGraph", "backward", "zero_grad", "no_grad", "is_grad_enabled",
    "add", "sub", "mul", "div", "neg", "scalar_mul", "tanh", "sigmoid", "exp",
    # Gradient check
    "get_element", "set_element",
    "subtract", "divide",
    "array_sum", "norm", "vector_dot",
    "identity",
    "calculate_numerical_gradient",
    "check_backward_computation",
    "gradcheck",
]

__version__ = "0.1.0"
