"""
Environment-driven defaults for wgpu_gradcheck.

Values are read from the environment on every call so tests and callers can
change them with monkeypatch / os.environ without reloading the package.

Variables:
    WGPU_GRADCHECK_DEVICE            cpu (default) | wgpu
    WGPU_GRADCHECK_POWER_PREFERENCE  high-performance (default) | low-power
    WGPU_GRADCHECK_EPS               default finite-difference step (1e-3)
    WGPU_GRADCHECK_ATOL              default absolute tolerance (1e-5)
    WGPU_GRADCHECK_RTOL              default relative tolerance (1e-4)
"""

import os
import logging

from wgpu_gradcheck.errors import InvalidArgumentError

logger = logging.getLogger(__name__)

ENV_DEVICE = "WGPU_GRADCHECK_DEVICE"
ENV_POWER_PREFERENCE = "WGPU_GRADCHECK_POWER_PREFERENCE"
ENV_EPS = "WGPU_GRADCHECK_EPS"
ENV_ATOL = "WGPU_GRADCHECK_ATOL"
ENV_RTOL = "WGPU_GRADCHECK_RTOL"

DEFAULT_DEVICE = "cpu"
DEFAULT_POWER_PREFERENCE = "high-performance"
DEFAULT_EPS = 1e-3
DEFAULT_ATOL = 1e-5
DEFAULT_RTOL = 1e-4

_DEVICE_KINDS = ("cpu", "wgpu")
_POWER_PREFERENCES = ("high-performance", "low-power")


def _env_choice(name, default, choices):
    value = os.environ.get(name, "").strip().lower()
    if not value:
        return default
    if value not in choices:
        raise InvalidArgumentError(
            f"{name}={value!r} is not one of {', '.join(choices)}"
        )
    return value


def _env_float(name, default):
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise InvalidArgumentError(f"{name}={raw!r} is not a number") from None


def device_kind() -> str:
    """Kind of device factories use when no device is passed."""
    return _env_choice(ENV_DEVICE, DEFAULT_DEVICE, _DEVICE_KINDS)


def power_preference() -> str:
    """Adapter power preference forwarded to wgpu."""
    return _env_choice(ENV_POWER_PREFERENCE, DEFAULT_POWER_PREFERENCE, _POWER_PREFERENCES)


def default_eps() -> float:
    return _env_float(ENV_EPS, DEFAULT_EPS)


def default_atol() -> float:
    return _env_float(ENV_ATOL, DEFAULT_ATOL)


def default_rtol() -> float:
    return _env_float(ENV_RTOL, DEFAULT_RTOL)


def default_device():
    """Create a device handle of the configured kind.

    CPU handles are cheap and independent; wgpu handles share the single
    adapter/device opened by wgpu_device.
    """
    # Local import: wgpu_device imports config for the power preference
    from wgpu_gradcheck.wgpu_device import CpuDevice, WgpuDevice

    kind = device_kind()
    logger.debug(f"Creating default device of kind {kind!r}")
    if kind == "wgpu":
        return WgpuDevice()
    return CpuDevice()
