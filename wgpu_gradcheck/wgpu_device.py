"""Compute devices for wgpu_gradcheck arrays.

Two devices share one interface:

  - CpuDevice: storage is a flat numpy array, kernels run eagerly.
  - WgpuDevice: storage is a wgpu storage buffer, kernels are WGSL compute
    shaders submitted to the GPU queue without waiting for completion.

Because GPU work is asynchronous, host code must call ``synchronize()`` on
the device before reading a buffer. Device handles are passed explicitly;
there is no "current device".
"""

import atexit
import string
import struct
import logging

import numpy as np

from wgpu_gradcheck import config
from wgpu_gradcheck.dtypes import Dtype
from wgpu_gradcheck.errors import DeviceError, UnsupportedDtypeError

logger = logging.getLogger(__name__)

try:
    import wgpu
    HAS_WGPU = True
except ImportError:
    logger.warning("wgpu not available; WgpuDevice disabled")
    wgpu = None
    HAS_WGPU = False


BINARY_OPS = ("add", "sub", "mul", "div")
UNARY_OPS = ("neg", "tanh", "sigmoid", "exp")
SCALAR_OPS = ("scalar_mul",)
FLOAT_ONLY_OPS = ("div", "tanh", "sigmoid", "exp")


# ============================================================================
# Device Interface
# ============================================================================

class Device:
    """Base class for compute devices.

    Subclasses own the storage format. Every method taking ``storage`` only
    ever receives storage created by the same kind of device.
    """

    name = "device"

    def __init__(self):
        self.sync_count = 0

    def synchronize(self):
        """Block until all previously issued work on this device has finished."""
        self.sync_count += 1
        self._wait()

    def _wait(self):
        raise NotImplementedError

    def allocate(self, count, dtype):
        raise NotImplementedError

    def upload(self, host_array):
        raise NotImplementedError

    def download(self, storage, dtype, count):
        raise NotImplementedError

    def store(self, storage, dtype, host_array):
        """Overwrite the leading elements of ``storage`` with host data."""
        raise NotImplementedError

    def read_element(self, storage, dtype, flat_index):
        raise NotImplementedError

    def write_element(self, storage, dtype, flat_index, value):
        raise NotImplementedError

    def fill(self, storage, dtype, count, value):
        raise NotImplementedError

    def copy(self, dst, src, nbytes):
        raise NotImplementedError

    def elementwise(self, op, operands, out, dtype, count, scalar=None):
        """Run ``out = op(*operands)`` over ``count`` elements."""
        raise NotImplementedError

    def _check_op(self, op, dtype):
        if op not in BINARY_OPS + UNARY_OPS + SCALAR_OPS:
            raise ValueError(f"Unknown elementwise op: {op!r}")
        if op in FLOAT_ONLY_OPS and not dtype.is_floating:
            raise UnsupportedDtypeError(f"{op}: unsupported dtype {dtype.value}")

    def __eq__(self, other):
        return isinstance(other, Device) and self.name == other.name

    def __hash__(self):
        return hash(self.name)

    def __repr__(self):
        return f"{type(self).__name__}({self.name!r})"


# ============================================================================
# CPU Device
# ============================================================================

class CpuDevice(Device):
    """Host device backed by numpy. Work completes before each call returns."""

    name = "cpu"

    def _wait(self):
        # Nothing is ever in flight on the host
        pass

    def allocate(self, count, dtype):
        return np.empty(count, dtype=dtype.numpy_type)

    def upload(self, host_array):
        return np.array(host_array, copy=True).reshape(-1)

    def download(self, storage, dtype, count):
        return storage[:count].copy()

    def store(self, storage, dtype, host_array):
        data = np.asarray(host_array, dtype=dtype.numpy_type).reshape(-1)
        storage[:data.size] = data

    def read_element(self, storage, dtype, flat_index):
        return dtype.numpy_type(storage[flat_index])

    def write_element(self, storage, dtype, flat_index, value):
        storage[flat_index] = dtype.numpy_type(value)

    def fill(self, storage, dtype, count, value):
        storage[:count] = dtype.numpy_type(value)

    def copy(self, dst, src, nbytes):
        dst.view(np.uint8)[:nbytes] = src.view(np.uint8)[:nbytes]

    def elementwise(self, op, operands, out, dtype, count, scalar=None):
        self._check_op(op, dtype)
        if op == "add":
            np.add(operands[0], operands[1], out=out)
        elif op == "sub":
            np.subtract(operands[0], operands[1], out=out)
        elif op == "mul":
            np.multiply(operands[0], operands[1], out=out)
        elif op == "div":
            np.divide(operands[0], operands[1], out=out)
        elif op == "neg":
            np.negative(operands[0], out=out)
        elif op == "tanh":
            np.tanh(operands[0], out=out)
        elif op == "exp":
            np.exp(operands[0], out=out)
        elif op == "sigmoid":
            np.negative(operands[0], out=out)
            np.exp(out, out=out)
            out += 1
            np.reciprocal(out, out=out)
        elif op == "scalar_mul":
            np.multiply(operands[0], dtype.numpy_type(scalar), out=out)


# ============================================================================
# WGSL Compute Shader Sources
# ============================================================================

_WGSL_ELEMENTWISE_MAIN = string.Template("""
@compute @workgroup_size(256)
fn main(@builtin(global_invocation_id) gid: vec3<u32>) {
    let idx = gid.x;
    if (idx < arrayLength(&out)) {
        out[idx] = $expr;
    }
}
""")


def _elementwise_wgsl(inputs, expr, uniform=False):
    """Build a 1-D f32 kernel computing ``out[idx] = expr``.

    Args:
        inputs: names of the read-only storage arrays, bound from 0 in order
        expr: WGSL expression over ``name[idx]`` (and ``params`` if uniform)
        uniform: bind a ``vec4<f32>`` uniform ``params`` after ``out``

    Bindings match the order _dispatch_shader receives buffers in:
    inputs, then out, then the uniform block.
    """
    decls = [
        f"@group(0) @binding({i})\nvar<storage, read> {name}: array<f32>;"
        for i, name in enumerate(inputs)
    ]
    decls.append(f"@group(0) @binding({len(inputs)})\nvar<storage, read_write> out: array<f32>;")
    if uniform:
        decls.append(f"@group(0) @binding({len(inputs) + 1})\nvar<uniform> params: vec4<f32>;")
    return "\n".join(decls) + "\n" + _WGSL_ELEMENTWISE_MAIN.substitute(expr=expr)


_WGSL_SOURCES = {
    "add": _elementwise_wgsl(("a", "b"), "a[idx] + b[idx]"),
    "sub": _elementwise_wgsl(("a", "b"), "a[idx] - b[idx]"),
    "mul": _elementwise_wgsl(("a", "b"), "a[idx] * b[idx]"),
    "div": _elementwise_wgsl(("a", "b"), "a[idx] / b[idx]"),
    "neg": _elementwise_wgsl(("x",), "-x[idx]"),
    "tanh": _elementwise_wgsl(("x",), "tanh(x[idx])"),
    "sigmoid": _elementwise_wgsl(("x",), "1.0 / (1.0 + exp(-x[idx]))"),
    "exp": _elementwise_wgsl(("x",), "exp(x[idx])"),
    "scalar_mul": _elementwise_wgsl(("x",), "x[idx] * params.x", uniform=True),
}


# ============================================================================
# wgpu Device Singleton
# ============================================================================

_gpu_device = None


def _get_gpu_device():
    """Get or create the process-wide wgpu device."""
    global _gpu_device
    if not HAS_WGPU:
        raise DeviceError("wgpu is not installed; install the 'wgpu' package")
    if _gpu_device is None:
        preference = config.power_preference()
        try:
            adapter = wgpu.gpu.request_adapter_sync(power_preference=preference)
        except Exception as e:
            raise DeviceError(f"Failed to request a wgpu adapter: {e}") from e
        if adapter is None:
            raise DeviceError("No wgpu adapter available")
        _gpu_device = adapter.request_device_sync()
        logger.info(f"Opened wgpu device on {adapter.info.get('device', 'unknown adapter')}")
        atexit.register(_cleanup)
    return _gpu_device


def _cleanup():
    """Release the wgpu device on exit."""
    global _gpu_device
    if _gpu_device is not None:
        try:
            _gpu_device.destroy()
        except Exception as e:
            logger.debug(f"Ignoring error while destroying wgpu device: {e}")
        _gpu_device = None


def wgpu_available() -> bool:
    """Whether a wgpu adapter can be opened in this process."""
    try:
        _get_gpu_device()
    except DeviceError:
        return False
    return True


# ============================================================================
# wgpu Device
# ============================================================================

class WgpuDevice(Device):
    """GPU device backed by wgpu storage buffers.

    Only 4-byte element kinds are supported; WGSL has no f64. Kernels are
    float32 only.
    """

    name = "wgpu:0"

    def __init__(self):
        super().__init__()
        self.gpu = _get_gpu_device()
        self._pipeline_cache = {}
        self._usage = (
            wgpu.BufferUsage.STORAGE | wgpu.BufferUsage.COPY_DST | wgpu.BufferUsage.COPY_SRC
        )

    def _check_dtype(self, dtype):
        if dtype.itemsize != 4:
            raise UnsupportedDtypeError(
                f"wgpu device cannot store {dtype.value}; WGSL has no 8-byte element types"
            )

    def _wait(self):
        self.gpu.queue.on_submitted_work_done_sync()

    def allocate(self, count, dtype):
        self._check_dtype(dtype)
        # Zero-sized storage buffers are not allowed
        size = max(count * dtype.itemsize, 4)
        return self.gpu.create_buffer(size=size, usage=self._usage)

    def upload(self, host_array):
        dtype = Dtype.coerce(host_array.dtype)
        self._check_dtype(dtype)
        data = np.ascontiguousarray(host_array).reshape(-1)
        if data.size == 0:
            return self.allocate(0, dtype)
        return self.gpu.create_buffer_with_data(data=data.tobytes(), usage=self._usage)

    def download(self, storage, dtype, count):
        if count == 0:
            return np.empty(0, dtype=dtype.numpy_type)
        data = self.gpu.queue.read_buffer(storage, 0, count * dtype.itemsize)
        return np.frombuffer(data, dtype=dtype.numpy_type).copy()

    def store(self, storage, dtype, host_array):
        data = np.ascontiguousarray(host_array, dtype=dtype.numpy_type).reshape(-1)
        if data.size == 0:
            return
        self.gpu.queue.write_buffer(storage, 0, data.tobytes())

    def read_element(self, storage, dtype, flat_index):
        data = self.gpu.queue.read_buffer(storage, flat_index * dtype.itemsize, dtype.itemsize)
        return np.frombuffer(data, dtype=dtype.numpy_type)[0]

    def write_element(self, storage, dtype, flat_index, value):
        data = np.array([value], dtype=dtype.numpy_type).tobytes()
        self.gpu.queue.write_buffer(storage, flat_index * dtype.itemsize, data)

    def fill(self, storage, dtype, count, value):
        if count == 0:
            return
        data = np.full(count, value, dtype=dtype.numpy_type).tobytes()
        self.gpu.queue.write_buffer(storage, 0, data)

    def copy(self, dst, src, nbytes):
        if nbytes == 0:
            return
        command_encoder = self.gpu.create_command_encoder()
        command_encoder.copy_buffer_to_buffer(src, 0, dst, 0, nbytes)
        self.gpu.queue.submit([command_encoder.finish()])

    def elementwise(self, op, operands, out, dtype, count, scalar=None):
        self._check_op(op, dtype)
        if dtype is not Dtype.FLOAT32:
            raise UnsupportedDtypeError(f"{op}: wgpu kernels only support float32")
        if count == 0:
            return
        buffers = [(buf, "read") for buf in operands]
        buffers.append((out, "read_write"))
        if op == "scalar_mul":
            params_buffer = self.gpu.create_buffer_with_data(
                data=struct.pack("4f", float(scalar), 0.0, 0.0, 0.0),
                usage=wgpu.BufferUsage.UNIFORM | wgpu.BufferUsage.COPY_DST,
            )
            buffers.append((params_buffer, "uniform"))
        workgroups_x = (count + 255) // 256
        self._dispatch_shader(_WGSL_SOURCES[op], buffers, (workgroups_x,))

    def _dispatch_shader(self, wgsl_code, buffers, workgroups):
        """Submit a compute shader; does not wait for it to finish.

        Args:
            wgsl_code: WGSL source code string
            buffers: list of (wgpu.GPUBuffer, access_mode) tuples
                access_mode: "read", "read_write" or "uniform"
            workgroups: tuple (x, y=1, z=1) for dispatch
        """
        if wgsl_code in self._pipeline_cache:
            pipeline = self._pipeline_cache[wgsl_code]
        else:
            shader_module = self.gpu.create_shader_module(code=wgsl_code)

            entries = []
            for i, (buf, access) in enumerate(buffers):
                if access == "read":
                    buffer_type = "read-only-storage"
                elif access == "uniform":
                    buffer_type = "uniform"
                else:
                    buffer_type = "storage"
                entries.append({
                    "binding": i,
                    "visibility": wgpu.ShaderStage.COMPUTE,
                    "buffer": {"type": buffer_type, "has_dynamic_offset": False},
                })

            bind_group_layout = self.gpu.create_bind_group_layout(entries=entries)
            pipeline_layout = self.gpu.create_pipeline_layout(
                bind_group_layouts=[bind_group_layout]
            )
            pipeline = self.gpu.create_compute_pipeline(
                layout=pipeline_layout,
                compute={"module": shader_module, "entry_point": "main"},
            )
            self._pipeline_cache[wgsl_code] = pipeline

        resources = []
        for i, (buf, _) in enumerate(buffers):
            resources.append({
                "binding": i,
                "resource": {"buffer": buf, "offset": 0, "size": buf.size},
            })
        bind_group = self.gpu.create_bind_group(
            layout=pipeline.get_bind_group_layout(0),
            entries=resources,
        )

        command_encoder = self.gpu.create_command_encoder()
        compute_pass = command_encoder.begin_compute_pass()
        compute_pass.set_pipeline(pipeline)
        compute_pass.set_bind_group(0, bind_group)
        compute_pass.dispatch_workgroups(*workgroups)
        compute_pass.end()
        self.gpu.queue.submit([command_encoder.finish()])
