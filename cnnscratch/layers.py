"""
CNN Layers - From Scratch Implementation
=========================================

The core building blocks of the network, implemented with NumPy only.
Every layer works on one sample at a time (Tensor3D in, Tensor3D out) and
gets batch support from the base class, which loops the single-sample
passes over the batch dimension.

Layers implemented here:
- Conv2D: 2D convolution
- Dense: fully connected (affine) layer
- BatchNorm: batch normalization over batch, height and width
- MaxPool: max pooling with argmax routing
- GlobalAveragePool: per-channel spatial mean

ReLU and Softmax live in activations.py.
"""

import itertools
from enum import Enum
from typing import NamedTuple

import numpy as np

from .exceptions import ConfigurationError, InvalidStateError, ShapeError
from .tensors import Tensor3D, Tensor4D

_layer_ids = itertools.count()


class LayerKind(Enum):
    """Closed set of layer variants. The value doubles as the persistence tag."""
    CONV2D = 'Conv2D'
    DENSE = 'Dense'
    BATCH_NORM = 'BatchNorm'
    MAX_POOL = 'MaxPool'
    GLOBAL_AVERAGE_POOL = 'GlobalAveragePool'
    RELU = 'ReLU'
    SOFTMAX = 'Softmax'


class ParameterKind(Enum):
    """Shape family of a layer's weight payload. The value is the weight rank."""
    EMPTY = 0
    VECTOR = 1
    MATRIX = 2
    KERNEL = 4


class Parameters(NamedTuple):
    """Weight/bias payload tagged with its shape family."""
    kind: ParameterKind
    weights: np.ndarray
    biases: np.ndarray

    @classmethod
    def empty(cls):
        return cls(ParameterKind.EMPTY, np.empty(0), np.empty(0))


def _make_rng(rng):
    # Accepts a Generator, an int seed, or None
    return np.random.default_rng(rng)


def _positive_int(name, value):
    if isinstance(value, bool) or not isinstance(value, (int, np.integer)) or value <= 0:
        raise ConfigurationError(f"{name} must be a positive integer, got {value!r}")
    return int(value)


class Layer:
    """
    Base class for all layers.

    Subclasses implement forward/backward for a single sample. forward stores
    what backward needs in a fresh `self.cache` dict; backward raises
    InvalidStateError if there is nothing cached yet.

    forward_batch/backward_batch are derived by looping over the batch. The
    per-sample caches are kept so that sample n's backward sees sample n's
    forward state, and parameter gradients are averaged over the batch.
    """

    kind = None
    parameter_kind = ParameterKind.EMPTY

    def __init__(self):
        self.layer_id = next(_layer_ids)
        self.cache = {}
        self.training = True
        self._batch_caches = None

    @property
    def trainable(self):
        return self.parameter_kind is not ParameterKind.EMPTY

    def forward(self, x):
        """Forward pass on one sample."""
        raise NotImplementedError

    def backward(self, grad_output):
        """Backward pass on one sample's output gradient."""
        raise NotImplementedError

    def __call__(self, x):
        return self.forward(x)

    def set_training(self, mode):
        """Set training mode."""
        self.training = bool(mode)

    def _require_cache(self):
        if not self.cache:
            raise InvalidStateError(f"{self!r}: backward called before forward")
        return self.cache

    # ------------------------------------------------------------------
    # Parameter introspection
    # ------------------------------------------------------------------

    def get_weights(self):
        return np.empty(0)

    def get_biases(self):
        return np.empty(0)

    def get_parameters(self):
        if not self.trainable:
            return Parameters.empty()
        return Parameters(self.parameter_kind, self.get_weights(), self.get_biases())

    def set_weights_and_biases(self, weights, biases):
        """No-op for layers without parameters."""

    def set_parameters(self, parameters):
        if parameters.kind is not self.parameter_kind:
            raise ConfigurationError(f"{self!r} expects {self.parameter_kind.name} parameters, "
                                     f"got {parameters.kind.name}")
        self.set_weights_and_biases(parameters.weights, parameters.biases)

    def config(self):
        """Scalar constructor arguments, used for persistence."""
        return {}

    # ------------------------------------------------------------------
    # Batched passes
    # ------------------------------------------------------------------

    def forward_batch(self, batch):
        """
        Forward a Tensor4D batch sample by sample.

        The first sample's output fixes the output shape; any later sample that
        disagrees raises ShapeError.
        """
        outputs = None
        caches = []

        for n in range(batch.batch_size):
            out = self.forward(batch.get_slice(n))

            if outputs is None:
                outputs = Tensor4D(batch.batch_size, *out.shape)
            elif out.shape != outputs.sample_shape:
                raise ShapeError(f"{self!r}: sample {n} produced shape {out.shape}, "
                                 f"expected {outputs.sample_shape} like sample 0")

            outputs.set_slice(n, out)
            caches.append(self.cache)

        self._batch_caches = caches
        return outputs

    def backward_batch(self, grad_batch):
        """Backward a Tensor4D gradient batch, averaging parameter gradients."""
        caches = self._batch_caches
        if caches is None:
            raise InvalidStateError(f"{self!r}: backward_batch called before forward_batch")
        if grad_batch.batch_size != len(caches):
            raise ShapeError(f"{self!r}: gradient batch size {grad_batch.batch_size} does not "
                             f"match forward batch size {len(caches)}")

        grad_inputs = None
        weight_total = None
        bias_total = None

        for n, cache in enumerate(caches):
            self.cache = cache
            grad = self.backward(grad_batch.get_slice(n))

            if grad_inputs is None:
                grad_inputs = Tensor4D(grad_batch.batch_size, *grad.shape)
            elif grad.shape != grad_inputs.sample_shape:
                raise ShapeError(f"{self!r}: sample {n} input gradient shape {grad.shape}, "
                                 f"expected {grad_inputs.sample_shape}")
            grad_inputs.set_slice(n, grad)

            if self.trainable:
                if weight_total is None:
                    weight_total = self.weight_gradients.copy()
                    bias_total = self.bias_gradients.copy()
                else:
                    weight_total += self.weight_gradients
                    bias_total += self.bias_gradients

        if self.trainable:
            self.weight_gradients = weight_total / len(caches)
            self.bias_gradients = bias_total / len(caches)

        return grad_inputs

    def __repr__(self):
        return f"{type(self).__name__}()"


class _ParameterizedLayer(Layer):
    """Shared weight/bias storage for Conv2D and Dense."""

    def _init_parameters(self, weights, biases):
        self.weights = weights
        self.biases = biases
        self.weight_gradients = np.zeros_like(weights)
        self.bias_gradients = np.zeros_like(biases)

    def get_weights(self):
        return self.weights.copy()

    def get_biases(self):
        return self.biases.copy()

    def set_weights_and_biases(self, weights, biases):
        weights = np.asarray(weights, dtype=np.float64)
        biases = np.asarray(biases, dtype=np.float64)

        if weights.shape != self.weights.shape:
            raise ConfigurationError(f"{self!r}: weight shape {weights.shape} does not match "
                                     f"{self.weights.shape}")
        if biases.shape != self.biases.shape:
            raise ConfigurationError(f"{self!r}: bias shape {biases.shape} does not match "
                                     f"{self.biases.shape}")

        self.weights = weights.copy()
        self.biases = biases.copy()


class Conv2D(_ParameterizedLayer):
    """
    2D Convolutional Layer.

    Cross-correlates the zero-padded input with out_channels kernels.

    Args:
        in_channels: Channels of the input sample
        out_channels: Number of kernels
        kernel_size: Size of the square kernel
        stride: Stride of convolution (default: 1)
        padding: Zero padding on each side (int), or 'valid' (0) / 'same' (k // 2)
        rng: numpy Generator or seed used for weight initialization

    Input shape: (in_channels, height, width)
    Output shape: (out_channels, out_height, out_width)

    Where:
        out_height = (height + 2*pad - kernel_size) // stride + 1
        out_width = (width + 2*pad - kernel_size) // stride + 1

    Weights are He-scaled uniform samples: U(-1, 1) * sqrt(2 / (in * k * k)).
    Biases start at zero.

    backward leaves dL/dW and dL/db in weight_gradients / bias_gradients and
    returns dL/dX with the padding stripped.
    """

    kind = LayerKind.CONV2D
    parameter_kind = ParameterKind.KERNEL

    def __init__(self, in_channels, out_channels, kernel_size, stride=1, padding=0, rng=None):
        super().__init__()

        self.in_channels = _positive_int('in_channels', in_channels)
        self.out_channels = _positive_int('out_channels', out_channels)
        self.kernel_size = _positive_int('kernel_size', kernel_size)
        self.stride = _positive_int('stride', stride)

        if padding == 'same':
            padding = self.kernel_size // 2
        elif padding == 'valid':
            padding = 0
        if isinstance(padding, bool) or not isinstance(padding, (int, np.integer)) or padding < 0:
            raise ConfigurationError(f"padding must be a non-negative integer, got {padding!r}")
        self.padding = int(padding)

        k = self.kernel_size
        fan_in = self.in_channels * k * k
        scale = np.sqrt(2.0 / fan_in)

        rng = _make_rng(rng)
        weights = rng.uniform(-1.0, 1.0, size=(self.out_channels, self.in_channels, k, k)) * scale
        self._init_parameters(weights, np.zeros(self.out_channels))

    def _pad_input(self, x):
        """Apply zero padding to a (C, H, W) array."""
        if self.padding == 0:
            # Copy so the cached columns never alias the caller's tensor
            return np.array(x, dtype=np.float64, copy=True)

        p = self.padding
        return np.pad(x, ((0, 0), (p, p), (p, p)), mode='constant')

    def _im2col(self, x_padded, h_out, w_out):
        """
        Convert image patches to columns for efficient convolution.

        Uses numpy stride tricks to create a view (no memory copy) of all
        patches that would be convolved with the kernel, then reshapes for a
        single matrix multiply.

        Returns:
            col: Shape (h_out * w_out, in_channels * k * k)
        """
        k = self.kernel_size
        s = self.stride
        strides = x_padded.strides

        shape = (x_padded.shape[0], k, k, h_out, w_out)
        patch_strides = (
            strides[0],       # channel stride
            strides[1],       # kernel height stride
            strides[2],       # kernel width stride
            strides[1] * s,   # output height stride (strided)
            strides[2] * s    # output width stride (strided)
        )
        patches = np.lib.stride_tricks.as_strided(x_padded, shape=shape, strides=patch_strides)

        # (C, k, k, h_out, w_out) -> (h_out * w_out, C * k * k)
        return patches.transpose(3, 4, 0, 1, 2).reshape(h_out * w_out, -1)

    def _col2im(self, col, padded_shape, h_out, w_out):
        """
        Convert columns back to image format (inverse of im2col).

        Overlapping patches accumulate, which is exactly the input gradient of
        a strided cross-correlation.
        """
        k = self.kernel_size
        s = self.stride
        col_reshaped = col.reshape(h_out, w_out, padded_shape[0], k, k)

        x_padded = np.zeros(padded_shape, dtype=col.dtype)
        for i in range(h_out):
            for j in range(w_out):
                h_start = i * s
                w_start = j * s
                x_padded[:, h_start:h_start + k, w_start:w_start + k] += col_reshaped[i, j]

        return x_padded

    def forward(self, x):
        """
        Forward pass using im2col and one matrix multiplication.

        Raises:
            ShapeError: if the input channel count does not match in_channels or
                the padded input is smaller than the kernel
        """
        if x.channels != self.in_channels:
            raise ShapeError(f"{self!r}: expected {self.in_channels} input channels, "
                             f"got {x.channels}")

        x_padded = self._pad_input(x.data)
        _, h_in, w_in = x_padded.shape
        k = self.kernel_size

        if h_in < k or w_in < k:
            raise ShapeError(f"{self!r}: padded input {h_in}x{w_in} is smaller than the kernel")

        h_out = (h_in - k) // self.stride + 1
        w_out = (w_in - k) // self.stride + 1

        col = self._im2col(x_padded, h_out, w_out)
        W_col = self.weights.reshape(self.out_channels, -1)

        # (h_out * w_out, C * k * k) @ (C * k * k, out_channels)
        output = col @ W_col.T
        output = output.T.reshape(self.out_channels, h_out, w_out)
        output = output + self.biases.reshape(-1, 1, 1)

        self.cache = {
            'input_shape': x.shape,
            'padded_shape': x_padded.shape,
            'col': col,
            'h_out': h_out,
            'w_out': w_out,
        }

        return Tensor3D.from_array(output)

    def backward(self, grad_output):
        """
        Backward pass through the convolution.

        Args:
            grad_output: Gradient from next layer, shape (out_channels, h_out, w_out)

        Returns:
            Gradient w.r.t. the unpadded input
        """
        cache = self._require_cache()
        h_out = cache['h_out']
        w_out = cache['w_out']

        expected = (self.out_channels, h_out, w_out)
        if grad_output.shape != expected:
            raise ShapeError(f"{self!r}: gradient shape {grad_output.shape} does not match "
                             f"output shape {expected}")

        self.weight_gradients = np.zeros_like(self.weights)
        self.bias_gradients = np.zeros_like(self.biases)

        W_col = self.weights.reshape(self.out_channels, -1)

        # (out_channels, h_out, w_out) -> (h_out * w_out, out_channels)
        grad = grad_output.data.reshape(self.out_channels, -1).T

        # dL/dW: col.T @ grad -> (C * k * k, out_channels)
        self.weight_gradients += (cache['col'].T @ grad).T.reshape(self.weights.shape)
        self.bias_gradients += grad_output.data.sum(axis=(1, 2))

        # dL/dX: grad @ W -> (h_out * w_out, C * k * k), then scatter back
        dcol = grad @ W_col
        dx_padded = self._col2im(dcol, cache['padded_shape'], h_out, w_out)

        _, height, width = cache['input_shape']
        p = self.padding
        dx = dx_padded[:, p:p + height, p:p + width]

        return Tensor3D.from_array(dx)

    def config(self):
        return {
            'in_channels': self.in_channels,
            'out_channels': self.out_channels,
            'kernel_size': self.kernel_size,
            'stride': self.stride,
            'padding': self.padding,
        }

    def __repr__(self):
        return (f"Conv2D({self.in_channels}, {self.out_channels}, "
                f"kernel_size={self.kernel_size}, stride={self.stride}, "
                f"padding={self.padding})")


class Dense(_ParameterizedLayer):
    """
    Fully Connected (Dense) Layer.

    Each output is connected to every input. The input sample is flattened in
    (channel, row, column) order, so a Dense layer can follow a convolution or
    pooling layer directly.

    Args:
        input_size: Number of input features (flattened)
        output_size: Number of output features
        rng: numpy Generator or seed used for weight initialization

    Forward: y = W @ x + b, returned as a (1, 1, output_size) tensor.
    Weights have shape (output_size, input_size).
    """

    kind = LayerKind.DENSE
    parameter_kind = ParameterKind.MATRIX

    def __init__(self, input_size, output_size, rng=None):
        super().__init__()

        self.input_size = _positive_int('input_size', input_size)
        self.output_size = _positive_int('output_size', output_size)

        scale = np.sqrt(2.0 / self.input_size)
        rng = _make_rng(rng)
        weights = rng.uniform(-1.0, 1.0, size=(self.output_size, self.input_size)) * scale
        self._init_parameters(weights, np.zeros(self.output_size))

    def forward(self, x):
        """Forward pass: y = W @ x + b"""
        flat = x.flatten()
        if flat.size != self.input_size:
            raise ShapeError(f"{self!r}: input size mismatch, expected {self.input_size}, "
                             f"got {flat.size}")

        self.cache = {'x': flat, 'input_shape': x.shape}

        output = self.weights @ flat + self.biases
        return Tensor3D.from_array(output.reshape(1, 1, -1))

    def backward(self, grad_output):
        """
        Backward pass.

        dL/dW = outer(grad_output, x)
        dL/db = grad_output
        dL/dx = W.T @ grad_output, reshaped to the input's shape
        """
        cache = self._require_cache()

        grad = grad_output.flatten()
        if grad.size != self.output_size:
            raise ShapeError(f"{self!r}: gradient size mismatch, expected {self.output_size}, "
                             f"got {grad.size}")

        self.bias_gradients = grad.copy()
        self.weight_gradients = np.outer(grad, cache['x'])

        grad_input = self.weights.T @ grad
        return Tensor3D.from_array(grad_input.reshape(cache['input_shape']))

    def config(self):
        return {'input_size': self.input_size, 'output_size': self.output_size}

    def __repr__(self):
        return f"Dense({self.input_size}, {self.output_size})"


class BatchNorm(Layer):
    """
    Batch Normalization.

    Normalizes activations per channel across batch, height and width.

    Args:
        momentum: Weight of the old value in the running statistics (default: 0.9)
        epsilon: Added to the variance before the square root

    y = gamma * (x - mean) / std + beta, with std = sqrt(var + epsilon)
    (a non-finite std is replaced by 1). Training mode uses the statistics of
    the batch and folds them into the running ones:
        running = momentum * running + (1 - momentum) * batch_stat
    Inference mode uses the running statistics unchanged.

    gamma (scale, init 1) and beta (shift, init 0) are sized lazily from the
    channel count of the first input.

    Batch normalization couples the samples of a batch, so this layer
    overrides the batched passes; the single-sample passes treat the sample
    as a batch of one.
    """

    kind = LayerKind.BATCH_NORM
    parameter_kind = ParameterKind.VECTOR

    def __init__(self, momentum=0.9, epsilon=1e-5):
        super().__init__()

        if not 0.0 <= momentum <= 1.0:
            raise ConfigurationError(f"momentum must be in [0, 1], got {momentum}")
        if epsilon <= 0:
            raise ConfigurationError(f"epsilon must be positive, got {epsilon}")

        self.momentum = float(momentum)
        self.epsilon = float(epsilon)

        self.num_features = None
        self.gamma = None
        self.beta = None
        self.weight_gradients = None
        self.bias_gradients = None
        self.running_mean = None
        self.running_var = None

    def _init_channels(self, channels):
        self.num_features = channels
        self.gamma = np.ones(channels)
        self.beta = np.zeros(channels)
        self.weight_gradients = np.zeros(channels)
        self.bias_gradients = np.zeros(channels)
        self.running_mean = np.zeros(channels)
        self.running_var = np.ones(channels)

    def forward_batch(self, batch):
        """
        Forward pass with batch normalization.

        Args:
            batch: Tensor4D, shape (batch, channels, height, width)

        Returns:
            Normalized Tensor4D, same shape as input
        """
        if self.gamma is None:
            self._init_channels(batch.channels)
        elif batch.channels != self.num_features:
            raise ShapeError(f"{self!r}: expected {self.num_features} channels, "
                             f"got {batch.channels}")

        x = batch.data

        if self.training:
            mean = np.mean(x, axis=(0, 2, 3))
            var = np.var(x, axis=(0, 2, 3))

            self.running_mean = self.momentum * self.running_mean + (1 - self.momentum) * mean
            self.running_var = self.momentum * self.running_var + (1 - self.momentum) * var
        else:
            mean = self.running_mean
            var = self.running_var

        with np.errstate(invalid='ignore', over='ignore'):
            std = np.sqrt(var + self.epsilon)
        std = np.where(np.isfinite(std), std, 1.0)

        x_norm = (x - mean.reshape(1, -1, 1, 1)) / std.reshape(1, -1, 1, 1)
        output = self.gamma.reshape(1, -1, 1, 1) * x_norm + self.beta.reshape(1, -1, 1, 1)

        self.cache = {'x_norm': x_norm, 'std': std}
        return Tensor4D.from_array(output)

    def backward_batch(self, grad_batch):
        """
        Backward pass through batch normalization.

        Closed form per channel, with N = batch * height * width:
            dx = (1/N) * (gamma/std) * (N*dOut - sum(dOut) - x_hat*sum(dOut*x_hat))
        """
        cache = self._require_cache()
        x_norm = cache['x_norm']
        std = cache['std']

        if grad_batch.shape != x_norm.shape:
            raise ShapeError(f"{self!r}: gradient shape {grad_batch.shape} does not match "
                             f"input shape {x_norm.shape}")

        grad = grad_batch.data
        batch_size, _, height, width = x_norm.shape
        N = batch_size * height * width

        sum_grad = np.sum(grad, axis=(0, 2, 3))
        sum_grad_xnorm = np.sum(grad * x_norm, axis=(0, 2, 3))

        self.weight_gradients = sum_grad_xnorm
        self.bias_gradients = sum_grad

        scale = (self.gamma / std / N).reshape(1, -1, 1, 1)
        grad_input = scale * (N * grad
                              - sum_grad.reshape(1, -1, 1, 1)
                              - x_norm * sum_grad_xnorm.reshape(1, -1, 1, 1))

        return Tensor4D.from_array(grad_input)

    def forward(self, x):
        return self.forward_batch(Tensor4D.from_slices([x])).get_slice(0)

    def backward(self, grad_output):
        return self.backward_batch(Tensor4D.from_slices([grad_output])).get_slice(0)

    def get_weights(self):
        return np.empty(0) if self.gamma is None else self.gamma.copy()

    def get_biases(self):
        return np.empty(0) if self.beta is None else self.beta.copy()

    def set_weights_and_biases(self, weights, biases):
        """
        Set gamma and beta.

        An uninitialized layer adopts the channel count of the given vectors.
        """
        gamma = np.asarray(weights, dtype=np.float64)
        beta = np.asarray(biases, dtype=np.float64)

        if gamma.ndim != 1 or gamma.shape != beta.shape or gamma.size == 0:
            raise ConfigurationError(f"{self!r}: gamma and beta must be equal-length vectors, "
                                     f"got {gamma.shape} and {beta.shape}")

        if self.gamma is None:
            self._init_channels(gamma.size)
        elif gamma.size != self.num_features:
            raise ConfigurationError(f"{self!r}: gamma and beta must match channel count "
                                     f"{self.num_features}")

        self.gamma = gamma.copy()
        self.beta = beta.copy()

    def set_running_statistics(self, running_mean, running_var):
        running_mean = np.asarray(running_mean, dtype=np.float64)
        running_var = np.asarray(running_var, dtype=np.float64)

        if self.num_features is None:
            raise InvalidStateError(f"{self!r}: set gamma/beta before running statistics")
        if running_mean.shape != (self.num_features,) or running_var.shape != (self.num_features,):
            raise ConfigurationError(f"{self!r}: running statistics must have shape "
                                     f"({self.num_features},)")

        self.running_mean = running_mean.copy()
        self.running_var = running_var.copy()

    def config(self):
        return {'momentum': self.momentum, 'epsilon': self.epsilon}

    def __repr__(self):
        return f"BatchNorm({self.num_features})"


class MaxPool(Layer):
    """
    Max Pooling Layer.

    Downsamples by taking the maximum value in each window and records where
    it came from.

    Args:
        pool_size: Size of the square pooling window
        stride: Stride (default: same as pool_size)

    Backprop: the gradient flows only to the max element of each window,
    accumulating where windows overlap. A gradient with the right number of
    elements but a flattened shape is reshaped onto the pooling grid.
    """

    kind = LayerKind.MAX_POOL

    def __init__(self, pool_size=2, stride=None):
        super().__init__()

        self.pool_size = _positive_int('pool_size', pool_size)
        self.stride = self.pool_size if stride is None else _positive_int('stride', stride)

    def forward(self, x):
        """Max pooling over every (channel, window) using a strided view."""
        channels, h_in, w_in = x.shape
        p = self.pool_size
        s = self.stride

        if h_in < p or w_in < p:
            raise ShapeError(f"{self!r}: input {h_in}x{w_in} is smaller than the pool window")

        h_out = (h_in - p) // s + 1
        w_out = (w_in - p) // s + 1

        data = np.ascontiguousarray(x.data)
        strides = data.strides
        shape = (channels, h_out, w_out, p, p)
        window_strides = (
            strides[0],       # channel
            strides[1] * s,   # output height (strided)
            strides[2] * s,   # output width (strided)
            strides[1],       # pool height
            strides[2]        # pool width
        )
        windows = np.lib.stride_tricks.as_strided(data, shape=shape, strides=window_strides)
        windows_flat = windows.reshape(channels, h_out, w_out, -1)

        nan_mask = np.isnan(windows_flat)
        # A window of only NaN or -inf has no maximum
        no_max = (nan_mask | np.isneginf(windows_flat)).all(axis=-1)
        if no_max.any():
            c, h, w = np.argwhere(no_max)[0]
            raise InvalidStateError(f"{self!r}: no maximum found in pooling window at "
                                    f"({c},{h},{w})")

        comparable = np.where(nan_mask, -np.inf, windows_flat)
        max_indices = np.argmax(comparable, axis=-1)
        output = np.take_along_axis(comparable, max_indices[..., np.newaxis], axis=-1)[..., 0]

        # Absolute input coordinates of each window's maximum
        max_h = np.arange(h_out).reshape(1, h_out, 1) * s + max_indices // p
        max_w = np.arange(w_out).reshape(1, 1, w_out) * s + max_indices % p

        self.cache = {'input_shape': x.shape, 'max_h': max_h, 'max_w': max_w}

        return Tensor3D.from_array(output)

    def backward(self, grad_output):
        """Route each output gradient to its window's argmax."""
        cache = self._require_cache()
        max_h = cache['max_h']
        max_w = cache['max_w']

        grad = grad_output.data
        if grad.shape != max_h.shape:
            if grad.size != max_h.size:
                raise ShapeError(f"{self!r}: gradient shape {grad.shape} does not match pooled "
                                 f"shape {max_h.shape}")
            grad = grad.reshape(max_h.shape)

        grad_input = np.zeros(cache['input_shape'])
        channels = max_h.shape[0]
        c_idx = np.broadcast_to(np.arange(channels).reshape(channels, 1, 1), max_h.shape)

        np.add.at(grad_input, (c_idx, max_h, max_w), grad)

        return Tensor3D.from_array(grad_input)

    def config(self):
        return {'pool_size': self.pool_size, 'stride': self.stride}

    def __repr__(self):
        return f"MaxPool(pool_size={self.pool_size}, stride={self.stride})"


class GlobalAveragePool(Layer):
    """Reduce each channel to its spatial mean: (C, H, W) -> (C, 1, 1)."""

    kind = LayerKind.GLOBAL_AVERAGE_POOL

    def forward(self, x):
        self.cache = {'input_shape': x.shape}
        return Tensor3D.from_array(x.data.mean(axis=(1, 2), keepdims=True))

    def backward(self, grad_output):
        """Spread each channel's gradient equally over its H*W positions."""
        cache = self._require_cache()
        channels, height, width = cache['input_shape']

        if grad_output.shape != (channels, 1, 1):
            raise ShapeError(f"{self!r}: gradient shape {grad_output.shape} does not match "
                             f"{(channels, 1, 1)}")

        grad_input = np.broadcast_to(grad_output.data / (height * width),
                                     (channels, height, width))
        return Tensor3D.from_array(grad_input)
