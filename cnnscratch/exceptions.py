"""
Errors raised by the CNN engine.

Configuration and shape problems fail immediately at the point they are
detected. Numerical edge cases (NaN std in batch norm, NaN gradients) are
handled locally and never surface here.
"""


class CNNError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(CNNError, ValueError):
    """Invalid constructor or setter argument."""


class ShapeError(CNNError, ValueError):
    """Tensor or gradient shape disagrees with what a layer expects."""


class InvalidStateError(CNNError, RuntimeError):
    """An operation was called out of order (e.g. backward before forward)."""


class InvalidDistributionError(CNNError, ValueError):
    """Loss input rows are not probability distributions."""


class DataError(CNNError, IOError):
    """Dataset files are missing or malformed."""


class SerializationError(CNNError, ValueError):
    """A saved model document cannot be turned back into a model."""
