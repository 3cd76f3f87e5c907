"""
Element kinds and tagged scalars.

Dtype is a closed enumeration of the element kinds an Array can hold. The
gradient-check core only accepts the floating kinds; the integer kinds exist
because the array layer (like the original wgpu tensor) can store them.

Scalar carries a single value together with its Dtype so elements can move
between buffers and host code without losing their origin type.
"""

from enum import Enum

import numpy as np

from wgpu_gradcheck.errors import UnsupportedDtypeError


class Dtype(Enum):
    """Element kind of an Array."""

    FLOAT32 = "float32"
    FLOAT64 = "float64"
    INT32 = "int32"
    UINT32 = "uint32"

    @property
    def numpy_type(self):
        """numpy scalar type used for host-side storage."""
        return _NUMPY_TYPES[self]

    @property
    def itemsize(self) -> int:
        """Bytes per element."""
        return np.dtype(self.numpy_type).itemsize

    @property
    def is_floating(self) -> bool:
        return self in FLOATING_DTYPES

    @staticmethod
    def coerce(value) -> "Dtype":
        """Accept a Dtype, its string name, or a numpy dtype."""
        if isinstance(value, Dtype):
            return value
        if isinstance(value, str):
            try:
                return Dtype(value)
            except ValueError:
                raise UnsupportedDtypeError(f"Unknown dtype name: {value!r}") from None
        np_dtype = np.dtype(value)
        for dtype, np_type in _NUMPY_TYPES.items():
            if np_dtype == np.dtype(np_type):
                return dtype
        raise UnsupportedDtypeError(f"Unsupported numpy dtype: {np_dtype}")


_NUMPY_TYPES = {
    Dtype.FLOAT32: np.float32,
    Dtype.FLOAT64: np.float64,
    Dtype.INT32: np.int32,
    Dtype.UINT32: np.uint32,
}

FLOATING_DTYPES = (Dtype.FLOAT32, Dtype.FLOAT64)


def check_floating(dtype: Dtype, op_name: str) -> Dtype:
    """Reject dtypes outside FLOAT32/FLOAT64 for a dtype-dispatched op."""
    if dtype is Dtype.FLOAT32 or dtype is Dtype.FLOAT64:
        return dtype
    raise UnsupportedDtypeError(
        f"{op_name}: unsupported dtype {dtype.value}; expected float32 or float64"
    )


class Scalar:
    """A single numeric value tagged with its Dtype.

    Arithmetic between Scalars stays in the left operand's dtype, so a
    float32 element perturbed by a float32 epsilon is computed in float32.
    """

    __slots__ = ("_value", "dtype")

    def __init__(self, value, dtype=None):
        if isinstance(value, Scalar):
            if dtype is None:
                dtype = value.dtype
            value = value._value
        if dtype is None:
            if isinstance(value, np.generic):
                dtype = Dtype.coerce(value.dtype)
            elif isinstance(value, (bool, int)):
                dtype = Dtype.INT32
            else:
                dtype = Dtype.FLOAT64
        self.dtype = Dtype.coerce(dtype)
        # Narrow or widen to the target kind
        self._value = self.dtype.numpy_type(value)

    @property
    def value(self):
        """The numpy scalar holding the value."""
        return self._value

    def item(self):
        """The value as a plain Python number."""
        return self._value.item()

    def _coerce(self, other):
        if isinstance(other, Scalar):
            return self.dtype.numpy_type(other._value)
        return self.dtype.numpy_type(other)

    # ---- Conversions ----

    def __float__(self):
        return float(self._value)

    def __int__(self):
        return int(self._value)

    def __bool__(self):
        return bool(self._value)

    # ---- Arithmetic ----

    def __add__(self, other):
        return Scalar(self._value + self._coerce(other), self.dtype)

    def __radd__(self, other):
        return Scalar(self._coerce(other) + self._value, self.dtype)

    def __sub__(self, other):
        return Scalar(self._value - self._coerce(other), self.dtype)

    def __rsub__(self, other):
        return Scalar(self._coerce(other) - self._value, self.dtype)

    def __mul__(self, other):
        return Scalar(self._value * self._coerce(other), self.dtype)

    def __rmul__(self, other):
        return Scalar(self._coerce(other) * self._value, self.dtype)

    def __truediv__(self, other):
        return Scalar(self._value / self._coerce(other), self.dtype)

    def __neg__(self):
        return Scalar(-self._value, self.dtype)

    def __abs__(self):
        return Scalar(abs(self._value), self.dtype)

    # ---- Comparison ----

    def __eq__(self, other):
        if isinstance(other, Scalar):
            return bool(self._value == other._value)
        if isinstance(other, (int, float, np.generic)):
            return bool(self._value == other)
        return NotImplemented

    def __hash__(self):
        return hash(self._value.item())

    def __repr__(self):
        return f"Scalar({self._value.item()!r}, dtype={self.dtype.value})"
