#!/usr/bin/env python3
"""
Minimal gradient-check demo for wgpu_gradcheck.

Verifies the backward pass of a small two-output function against central
differences, first on the CPU device and then, if an adapter is available,
on the GPU via wgpu compute shaders.

Usage:
    python -m wgpu_gradcheck.examples.check_demo
"""

import logging

import numpy as np

from wgpu_gradcheck.wgpu_array import Array
from wgpu_gradcheck.wgpu_device import CpuDevice, WgpuDevice, wgpu_available
from wgpu_gradcheck.wgpu_autograd import tanh as ag_tanh
from wgpu_gradcheck.gradient_check import (
    calculate_numerical_gradient, check_backward_computation,
)
from wgpu_gradcheck.errors import ToleranceViolationError


def two_outputs(xs):
    """(x * y, tanh(x) - y)"""
    x, y = xs
    return [x * y, ag_tanh(x) - y]


def run_check(device, dtype, eps, atol, rtol):
    rng = np.random.RandomState(0)
    x = Array.from_numpy(rng.randn(3, 4), device=device, dtype=dtype, requires_grad=True)
    y = Array.from_numpy(rng.randn(3, 4), device=device, dtype=dtype, requires_grad=True)
    seeds = [Array.from_numpy(rng.randn(3, 4), device=device, dtype=dtype) for _ in range(2)]
    eps_arrays = [Array.full_like(x, eps), Array.full_like(y, eps)]

    numeric = calculate_numerical_gradient(two_outputs, [x, y], seeds, eps_arrays)
    try:
        check_backward_computation(two_outputs, [x, y], seeds, eps_arrays, atol, rtol)
        status = "OK"
    except ToleranceViolationError as e:
        status = f"FAILED ({e})"

    print(f"  {device.name:7s} {dtype:8s} barriers={device.sync_count:5d}  {status}")
    print(f"    numerical d/dx[0, :] = {numeric[0].to_numpy()[0]}")
    print(f"    backward  d/dx[0, :] = {x.grad.to_numpy()[0]}")


def main():
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    print("wgpu_gradcheck Demo")
    print("=" * 50)

    run_check(CpuDevice(), "float64", eps=1e-6, atol=1e-7, rtol=1e-6)
    run_check(CpuDevice(), "float32", eps=1e-2, atol=1e-2, rtol=1e-2)

    if wgpu_available():
        run_check(WgpuDevice(), "float32", eps=1e-2, atol=1e-2, rtol=1e-2)
    else:
        print("  wgpu    no adapter available, skipping GPU check")


if __name__ == "__main__":
    main()
