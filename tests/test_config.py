import pytest

from wgpu_gradcheck import config
from wgpu_gradcheck.errors import InvalidArgumentError
from wgpu_gradcheck.wgpu_array import Array
from wgpu_gradcheck.wgpu_device import CpuDevice


def test_defaults():
    assert config.device_kind() == "cpu"
    assert config.power_preference() == "high-performance"
    assert config.default_eps() == 1e-3
    assert config.default_atol() == 1e-5
    assert config.default_rtol() == 1e-4


def test_float_overrides(monkeypatch):
    monkeypatch.setenv("WGPU_GRADCHECK_EPS", "1e-6")
    monkeypatch.setenv("WGPU_GRADCHECK_ATOL", " 0.5 ")
    monkeypatch.setenv("WGPU_GRADCHECK_RTOL", "")
    assert config.default_eps() == 1e-6
    assert config.default_atol() == 0.5
    assert config.default_rtol() == config.DEFAULT_RTOL


def test_malformed_float_raises(monkeypatch):
    monkeypatch.setenv("WGPU_GRADCHECK_ATOL", "tight")
    with pytest.raises(InvalidArgumentError, match="WGPU_GRADCHECK_ATOL"):
        config.default_atol()


def test_choice_is_case_insensitive(monkeypatch):
    monkeypatch.setenv("WGPU_GRADCHECK_POWER_PREFERENCE", "Low-Power")
    assert config.power_preference() == "low-power"


def test_unknown_device_kind_raises(monkeypatch):
    monkeypatch.setenv("WGPU_GRADCHECK_DEVICE", "tpu")
    with pytest.raises(InvalidArgumentError, match="cpu, wgpu"):
        config.device_kind()


def test_default_device_is_cpu():
    device = config.default_device()
    assert isinstance(device, CpuDevice)
    assert Array.zeros((2,), "float64").device == device
