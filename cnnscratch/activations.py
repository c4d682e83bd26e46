"""
Activation Layers
=================

Parameterless layers applied element-wise (ReLU) or per row (Softmax).
They follow the same contract as every other layer: forward caches what
backward needs, backward before forward raises InvalidStateError.
"""

import numpy as np

from .exceptions import ShapeError
from .layers import Layer, LayerKind
from .tensors import Tensor3D


class ReLU(Layer):
    """
    ReLU: max(0, x). The gradient passes only where the cached input was
    strictly positive.
    """

    kind = LayerKind.RELU

    def forward(self, x):
        self.cache = {'x': x.data.copy()}
        return Tensor3D.from_array(np.maximum(0, x.data))

    def backward(self, grad_output):
        cache = self._require_cache()
        x = cache['x']

        if grad_output.shape != x.shape:
            raise ShapeError(f"{self!r}: gradient shape {grad_output.shape} does not match "
                             f"input shape {x.shape}")

        return Tensor3D.from_array(grad_output.data * (x > 0))


class Softmax(Layer):
    """
    Softmax: s_i = exp(x_i) / sum_j exp(x_j)

    Applied along the width axis, independently for every (channel, row), so
    the (1, 1, classes) output of a Dense layer becomes one distribution.

    Subtracts the row max before exponentiating for numerical stability.

    Backward is the Jacobian-vector product:
        dx_i = s_i * (g_i - sum_j(g_j * s_j))
    """

    kind = LayerKind.SOFTMAX

    def forward(self, x):
        shifted = x.data - np.max(x.data, axis=2, keepdims=True)
        exp_x = np.exp(shifted)
        output = exp_x / np.sum(exp_x, axis=2, keepdims=True)

        self.cache = {'output': output}
        return Tensor3D.from_array(output)

    def backward(self, grad_output):
        cache = self._require_cache()
        s = cache['output']

        if grad_output.shape != s.shape:
            raise ShapeError(f"{self!r}: gradient shape {grad_output.shape} does not match "
                             f"output shape {s.shape}")

        g = grad_output.data
        dot = np.sum(g * s, axis=2, keepdims=True)
        return Tensor3D.from_array(s * (g - dot))
