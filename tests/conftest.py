import pytest

from wgpu_gradcheck.wgpu_device import CpuDevice, WgpuDevice, wgpu_available


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    # Tests pick devices and tolerances explicitly
    for name in (
        "WGPU_GRADCHECK_DEVICE",
        "WGPU_GRADCHECK_POWER_PREFERENCE",
        "WGPU_GRADCHECK_EPS",
        "WGPU_GRADCHECK_ATOL",
        "WGPU_GRADCHECK_RTOL",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def cpu():
    return CpuDevice()


@pytest.fixture
def gpu():
    if not wgpu_available():
        pytest.skip("no wgpu adapter available")
    return WgpuDevice()
