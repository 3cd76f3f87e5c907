"""
Exception hierarchy for wgpu_gradcheck.

Every error raised by the package derives from GradientCheckError, and also
from the builtin exception a caller would naturally catch (ValueError for bad
arguments, AssertionError for gradient mismatches, TypeError for dtypes).
"""


class GradientCheckError(RuntimeError):
    """Base class for all wgpu_gradcheck errors."""


class InvalidArgumentError(GradientCheckError, ValueError):
    """Arguments are inconsistent with each other (counts, shapes, dtypes, eps)."""


class ToleranceViolationError(GradientCheckError, AssertionError):
    """Analytic and numerical gradients differ beyond (atol, rtol).

    ``flat_index`` and ``abs_error`` locate the worst violating element of
    input ``input_index``; ``max_abs_error`` is the largest absolute error of
    that input, which may sit on an element within tolerance.
    """

    def __init__(self, message, input_index=None, flat_index=None, abs_error=None,
                 max_abs_error=None):
        super().__init__(message)
        self.input_index = input_index
        self.flat_index = flat_index
        self.abs_error = abs_error
        self.max_abs_error = max_abs_error


class UnsupportedDtypeError(GradientCheckError, TypeError):
    """A dtype-dispatched operation got an element kind it does not handle."""


class GraphError(GradientCheckError):
    """Misuse of the computation graph (mixed graphs, missing nodes)."""


class DeviceError(GradientCheckError):
    """A compute device could not be created or used."""
