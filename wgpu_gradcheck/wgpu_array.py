"""Contiguous N-dimensional arrays on an explicit compute device.

An Array is a flat storage region owned by a Device plus a shape and a
Dtype. Arrays that require gradients get a node in a ComputationGraph the
first time they take part in a recorded operation; the gradient slot lives on
that node.

The functional API at the bottom of this module (add, sub, mul, ...) is the
raw, non-differentiable kernel layer. Arithmetic operators on Array go
through wgpu_autograd and record graph edges.
"""

import logging

import numpy as np

from wgpu_gradcheck import config
from wgpu_gradcheck.dtypes import Dtype
from wgpu_gradcheck.errors import GraphError, InvalidArgumentError

logger = logging.getLogger(__name__)


def _numel(shape):
    result = 1
    for s in shape:
        result *= s
    return result


def _resolve_device(device):
    return device if device is not None else config.default_device()


# ============================================================================
# Array Class
# ============================================================================

class Array:
    """Device array with an optional autograd node."""

    def __init__(self, storage, shape, dtype, device, requires_grad=False):
        """Wrap existing device storage.

        Args:
            storage: device storage holding at least prod(shape) elements
            shape: tuple of dimensions
            dtype: Dtype (or its name) of the elements
            device: Device that owns ``storage``
            requires_grad: whether ops on this array record graph edges
        """
        self.storage = storage
        self._shape = tuple(int(s) for s in shape)
        self.dtype = Dtype.coerce(dtype)
        self.device = device
        self.requires_grad = bool(requires_grad)
        # Set when the array first takes part in a recorded op
        self.graph = None
        self.node_id = None

    # ---- Properties ----

    @property
    def shape(self):
        """Shape of the array."""
        return self._shape

    @property
    def ndim(self):
        """Number of dimensions."""
        return len(self._shape)

    @property
    def size(self):
        """Total number of elements."""
        return _numel(self._shape)

    @property
    def nbytes(self):
        return self.size * self.dtype.itemsize

    # ---- Factory Methods ----

    @staticmethod
    def empty(shape, dtype="float32", device=None):
        """Allocate an uninitialized array."""
        device = _resolve_device(device)
        dtype = Dtype.coerce(dtype)
        storage = device.allocate(_numel(shape), dtype)
        return Array(storage, shape, dtype, device)

    @staticmethod
    def zeros(shape, dtype="float32", device=None):
        """Create an array filled with zeros."""
        return Array.full(shape, 0, dtype, device)

    @staticmethod
    def full(shape, value, dtype="float32", device=None):
        """Create an array filled with ``value``."""
        out = Array.empty(shape, dtype, device)
        out.device.fill(out.storage, out.dtype, out.size, float(value))
        return out

    @staticmethod
    def from_numpy(arr, device=None, dtype=None, requires_grad=False):
        """Create an array from a numpy array (always copies)."""
        device = _resolve_device(device)
        arr = np.asarray(arr)
        if dtype is not None:
            arr = arr.astype(Dtype.coerce(dtype).numpy_type)
        elif arr.dtype == np.int64:
            arr = arr.astype(np.int32)
        elif arr.dtype == np.float64 and device.name != "cpu":
            # GPU only supports f32
            arr = arr.astype(np.float32)
        storage = device.upload(arr)
        return Array(storage, arr.shape, Dtype.coerce(arr.dtype), device, requires_grad)

    @staticmethod
    def empty_like(other):
        return Array.empty(other.shape, other.dtype, other.device)

    @staticmethod
    def zeros_like(other):
        return Array.full(other.shape, 0, other.dtype, other.device)

    @staticmethod
    def ones_like(other):
        return Array.full(other.shape, 1, other.dtype, other.device)

    @staticmethod
    def full_like(other, value):
        return Array.full(other.shape, value, other.dtype, other.device)

    # ---- Data Transfer ----

    def to_numpy(self):
        """Read the array back to the host as a numpy array."""
        self.device.synchronize()
        return self.device.download(self.storage, self.dtype, self.size).reshape(self.shape)

    def detached_copy(self):
        """Deep copy of the values with no graph linkage and requires_grad=False."""
        out = Array.empty_like(self)
        self.device.copy(out.storage, self.storage, self.nbytes)
        return out

    # ---- Autograd ----

    def attach(self, graph, node_id):
        """Bind this array to node ``node_id`` of ``graph``."""
        self.graph = graph
        self.node_id = node_id
        self.requires_grad = True

    @property
    def node(self):
        """The ArrayNode in the graph arena, or None."""
        if self.graph is None:
            return None
        return self.graph.array_nodes[self.node_id]

    @property
    def grad(self):
        """Gradient slot, populated by backward()."""
        node = self.node
        return None if node is None else node.grad

    @grad.setter
    def grad(self, value):
        self.set_grad(value)

    def set_grad(self, value):
        """Seed or overwrite the gradient slot."""
        if value is not None and value.shape != self.shape:
            raise InvalidArgumentError(
                f"Gradient shape {value.shape} does not match array shape {self.shape}"
            )
        if self.graph is None:
            if value is None:
                return
            if not self.requires_grad:
                raise GraphError("Cannot set the gradient of an array that does not require grad")
            from wgpu_gradcheck.wgpu_autograd import ComputationGraph
            graph = ComputationGraph()
            self.attach(graph, graph.add_array_node())
        self.node.grad = value

    def cleargrad(self):
        """Clear the gradient slot."""
        if self.graph is not None:
            self.node.grad = None

    # ---- Operators ----

    def __add__(self, other):
        from wgpu_gradcheck import wgpu_autograd
        return wgpu_autograd.add(self, other)

    def __sub__(self, other):
        from wgpu_gradcheck import wgpu_autograd
        return wgpu_autograd.sub(self, other)

    def __mul__(self, other):
        from wgpu_gradcheck import wgpu_autograd
        if isinstance(other, (int, float)):
            return wgpu_autograd.scalar_mul(self, other)
        return wgpu_autograd.mul(self, other)

    def __rmul__(self, scalar):
        from wgpu_gradcheck import wgpu_autograd
        return wgpu_autograd.scalar_mul(self, scalar)

    def __truediv__(self, other):
        from wgpu_gradcheck import wgpu_autograd
        if isinstance(other, (int, float)):
            return wgpu_autograd.scalar_mul(self, 1.0 / other)
        return wgpu_autograd.div(self, other)

    def __neg__(self):
        from wgpu_gradcheck import wgpu_autograd
        return wgpu_autograd.neg(self)

    def __repr__(self):
        return (f"Array(shape={self.shape}, dtype={self.dtype.value}, "
                f"device={self.device.name}, requires_grad={self.requires_grad})")


def array(data, dtype="float32", device=None, requires_grad=False):
    """Create an array from nested Python sequences or a numpy array."""
    dtype = Dtype.coerce(dtype)
    return Array.from_numpy(
        np.asarray(data, dtype=dtype.numpy_type), device=device, dtype=dtype,
        requires_grad=requires_grad,
    )


# ============================================================================
# Functional API - Elementwise (no autograd)
# ============================================================================

def check_same_layout(a, b, op_name):
    """Operands of an elementwise op must agree in shape, dtype and device."""
    if a.shape != b.shape:
        raise InvalidArgumentError(f"{op_name}: shape mismatch {a.shape} vs {b.shape}")
    if a.dtype is not b.dtype:
        raise InvalidArgumentError(
            f"{op_name}: dtype mismatch {a.dtype.value} vs {b.dtype.value}"
        )
    if a.device != b.device:
        raise InvalidArgumentError(
            f"{op_name}: device mismatch {a.device.name} vs {b.device.name}"
        )


def _binary(op, a, b, out):
    check_same_layout(a, b, op)
    if out is None:
        out = Array.empty_like(a)
    a.device.elementwise(op, [a.storage, b.storage], out.storage, a.dtype, a.size)
    return out


def _unary(op, x, out, scalar=None):
    if out is None:
        out = Array.empty_like(x)
    x.device.elementwise(op, [x.storage], out.storage, x.dtype, x.size, scalar=scalar)
    return out


def add(a, b, out=None):
    """Element-wise addition: a + b."""
    return _binary("add", a, b, out)


def sub(a, b, out=None):
    """Element-wise subtraction: a - b."""
    return _binary("sub", a, b, out)


def mul(a, b, out=None):
    """Element-wise multiplication: a * b."""
    return _binary("mul", a, b, out)


def div(a, b, out=None):
    """Element-wise division: a / b."""
    return _binary("div", a, b, out)


def neg(a, out=None):
    """Negation: -a."""
    return _unary("neg", a, out)


def scalar_mul(a, scalar, out=None):
    """Element-wise multiplication by scalar: a * s."""
    return _unary("scalar_mul", a, out, scalar=scalar)


def tanh(x, out=None):
    """Tanh activation function."""
    return _unary("tanh", x, out)


def sigmoid(x, out=None):
    """Sigmoid activation function."""
    return _unary("sigmoid", x, out)


def exp(x, out=None):
    return _unary("exp", x, out)


# ============================================================================
# Functional API - Comparison
# ============================================================================

def abs_errors(a, b):
    """Host array of |a - b| in float64."""
    check_same_layout(a, b, "abs_errors")
    return np.abs(a.to_numpy().astype(np.float64) - b.to_numpy().astype(np.float64))


def all_close(a, b, atol, rtol):
    """True when every element satisfies |a - b| <= atol + rtol * |b|."""
    if a.shape != b.shape:
        raise InvalidArgumentError(f"all_close: shape mismatch {a.shape} vs {b.shape}")
    expected = b.to_numpy().astype(np.float64)
    actual = a.to_numpy().astype(np.float64)
    return bool(np.all(np.abs(actual - expected) <= atol + rtol * np.abs(expected)))
