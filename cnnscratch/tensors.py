"""
Tensor Containers
=================

Fixed-rank dense buffers used to move activations and gradients through
the network:

- Tensor3D: one sample, laid out as (channels, height, width)
- Tensor4D: a batch, laid out as (batch, channels, height, width)

Both wrap float64 NumPy arrays. Element access is bounds-checked (negative
indices are rejected rather than wrapping around), and every copy between
the two containers is a real copy, never a view.
"""

import numpy as np

from .exceptions import ConfigurationError, ShapeError


def _validate_dimensions(*dims):
    for dim in dims:
        if isinstance(dim, bool) or not isinstance(dim, (int, np.integer)) or dim <= 0:
            raise ConfigurationError(f"Tensor dimensions must be positive integers, got {dims}")


def _check_index(index, shape):
    if not isinstance(index, tuple) or len(index) != len(shape):
        raise IndexError(f"Expected {len(shape)} indices, got {index!r}")
    for axis, (i, size) in enumerate(zip(index, shape)):
        if not isinstance(i, (int, np.integer)) or i < 0 or i >= size:
            raise IndexError(f"Index {i!r} out of range for axis {axis} with size {size}")


class Tensor3D:
    """
    Single-sample activation tensor (C, H, W).

    Example:
        >>> t = Tensor3D(1, 2, 2)
        >>> t[0, 1, 1] = 4.0
        >>> t.clone()[0, 1, 1]
        4.0
    """

    def __init__(self, channels, height, width):
        _validate_dimensions(channels, height, width)

        self.channels = int(channels)
        self.height = int(height)
        self.width = int(width)
        self.data = np.zeros((self.channels, self.height, self.width), dtype=np.float64)

    @classmethod
    def from_array(cls, array):
        """Build a tensor holding a copy of a 3-D array."""
        array = np.asarray(array, dtype=np.float64)
        if array.ndim != 3:
            raise ShapeError(f"Tensor3D needs a 3-D array, got shape {array.shape}")

        tensor = cls(*array.shape)
        tensor.data[...] = array
        return tensor

    @property
    def shape(self):
        return (self.channels, self.height, self.width)

    @property
    def size(self):
        return self.channels * self.height * self.width

    def __getitem__(self, index):
        _check_index(index, self.shape)
        return float(self.data[index])

    def __setitem__(self, index, value):
        _check_index(index, self.shape)
        self.data[index] = value

    def fill(self, value):
        """Set every element to value."""
        self.data.fill(value)

    def clone(self):
        """Independent deep copy."""
        return Tensor3D.from_array(self.data)

    def flatten(self):
        """Copy of the elements in (channel, row, column) order."""
        return self.data.reshape(-1).copy()

    def __repr__(self):
        return f"Tensor3D(channels={self.channels}, height={self.height}, width={self.width})"


class Tensor4D:
    """
    Batched activation tensor (N, C, H, W).

    Storage is a single flat buffer with row-major index
    ((n*C + c)*H + h)*W + w; `data` is a shaped view of that buffer.
    """

    def __init__(self, batch_size, channels, height, width):
        _validate_dimensions(batch_size, channels, height, width)

        self.batch_size = int(batch_size)
        self.channels = int(channels)
        self.height = int(height)
        self.width = int(width)

        self._buffer = np.zeros(self.batch_size * self.channels * self.height * self.width,
                                dtype=np.float64)
        self.data = self._buffer.reshape(self.batch_size, self.channels, self.height, self.width)

    @classmethod
    def from_array(cls, array):
        """Build a batch holding a copy of a 4-D array."""
        array = np.asarray(array, dtype=np.float64)
        if array.ndim != 4:
            raise ShapeError(f"Tensor4D needs a 4-D array, got shape {array.shape}")

        tensor = cls(*array.shape)
        tensor.data[...] = array
        return tensor

    @classmethod
    def from_slices(cls, samples):
        """
        Stack equally shaped Tensor3D samples into a batch.

        Raises:
            ShapeError: if the samples do not all share the first sample's shape
        """
        samples = list(samples)
        if not samples:
            raise ConfigurationError("Cannot build a batch from zero samples")

        first = samples[0]
        batch = cls(len(samples), *first.shape)
        for i, sample in enumerate(samples):
            batch.set_slice(i, sample)
        return batch

    @property
    def shape(self):
        return (self.batch_size, self.channels, self.height, self.width)

    @property
    def sample_shape(self):
        return (self.channels, self.height, self.width)

    def flat_index(self, n, c, h, w):
        return ((n * self.channels + c) * self.height + h) * self.width + w

    def __getitem__(self, index):
        _check_index(index, self.shape)
        return float(self._buffer[self.flat_index(*index)])

    def __setitem__(self, index, value):
        _check_index(index, self.shape)
        self._buffer[self.flat_index(*index)] = value

    def _check_batch_index(self, n):
        if not isinstance(n, (int, np.integer)) or n < 0 or n >= self.batch_size:
            raise IndexError(f"Batch index {n!r} out of range for batch size {self.batch_size}")

    def get_slice(self, n):
        """Copy sample n out as a fresh Tensor3D."""
        self._check_batch_index(n)
        return Tensor3D.from_array(self.data[n])

    def set_slice(self, n, sample):
        """Copy a Tensor3D into batch slot n."""
        self._check_batch_index(n)
        if sample.shape != self.sample_shape:
            raise ShapeError(f"Slice shape {sample.shape} does not match batch sample shape "
                             f"{self.sample_shape}")
        self.data[n] = sample.data

    def fill(self, value):
        self._buffer.fill(value)

    def flatten(self):
        return self._buffer.copy()

    def __repr__(self):
        return (f"Tensor4D(batch_size={self.batch_size}, channels={self.channels}, "
                f"height={self.height}, width={self.width})")


# ============================================================================
# Output size helpers
# ============================================================================

def conv_output_size(input_size, kernel_size, stride=1, padding=0):
    """floor((input + 2*padding - kernel) / stride) + 1"""
    return (input_size + 2 * padding - kernel_size) // stride + 1


def pool_output_size(input_size, pool_size, stride):
    return (input_size - pool_size) // stride + 1


def flattened_size(channels, height, width):
    return channels * height * width
