"""
Loss Functions for CNNs
=======================

A loss scores one sample at a time:
- calculate(predicted, actual): scalar loss
- gradient(predicted, actual): Tensor3D handed to the model's backward pass

Both take Tensor3D arguments of identical shape; each (channel, row) along
the width axis is one probability distribution.
"""

import numpy as np

from .exceptions import InvalidDistributionError, ShapeError
from .tensors import Tensor3D


class Loss:
    """Base class for loss functions."""

    def calculate(self, predicted, actual):
        """Compute loss value."""
        raise NotImplementedError

    def gradient(self, predicted, actual):
        """Compute gradient of loss w.r.t. predictions."""
        raise NotImplementedError

    def __call__(self, predicted, actual):
        return self.calculate(predicted, actual)


class CrossEntropyLoss(Loss):
    """
    Cross-entropy between a predicted and a target distribution.

        L = -sum(y * log(clip(p, eps, 1 - eps)))

    Both tensors are validated first: equal shapes, values in [0, 1] and every
    row summing to 1 within epsilon.

    Args:
        with_softmax: The predictions come straight out of a Softmax layer, so
            the returned gradient is the fused softmax + cross-entropy
            gradient p - y (default: True)
        epsilon: Clipping bound for log and tolerance for row sums
    """

    def __init__(self, with_softmax=True, epsilon=1e-5):
        self.with_softmax = with_softmax
        self.epsilon = epsilon

    def _validate(self, predicted, actual):
        if predicted is None or actual is None:
            raise TypeError("predicted and actual must not be None")

        if predicted.shape != actual.shape:
            raise ShapeError(f"Dimension mismatch: predicted {predicted.shape} "
                             f"vs actual {actual.shape}")

        p = predicted.data
        y = actual.data

        if np.any((p < 0) | (p > 1)) or np.isnan(p).any():
            raise InvalidDistributionError("Predicted values must be probabilities between 0 and 1")
        if np.any((y < 0) | (y > 1)) or np.isnan(y).any():
            raise InvalidDistributionError("One-hot encoded values must be between 0 and 1")

        if np.any(np.abs(p.sum(axis=2) - 1) > self.epsilon):
            raise InvalidDistributionError("Predicted probabilities must sum to 1")
        if np.any(np.abs(y.sum(axis=2) - 1) > self.epsilon):
            raise InvalidDistributionError("One-hot encoded values must sum to 1")

        return p, y

    def calculate(self, predicted, actual):
        """
        Compute cross-entropy loss of one sample.

        Returns:
            Summed loss over all distributions in the sample
        """
        p, y = self._validate(predicted, actual)

        p_clipped = np.clip(p, self.epsilon, 1 - self.epsilon)

        return float(-np.sum(y * np.log(p_clipped)))

    def gradient(self, predicted, actual):
        """
        Gradient of the loss.

        With with_softmax the fused softmax + cross-entropy form p - y is
        returned.

        Otherwise it is -y/p, saturated at +-1/epsilon where the prediction is
        confidently wrong.
        """
        p, y = self._validate(predicted, actual)

        if self.with_softmax:
            return Tensor3D.from_array(p - y)

        eps = self.epsilon
        grad = np.where(y == 0, 0.0, -y / np.maximum(p, eps))
        grad = np.where((y > 0) & (p < eps), -1.0 / eps, grad)
        grad = np.where((y == 0) & (p > 1 - eps), 1.0 / eps, grad)

        return Tensor3D.from_array(grad)

    def __repr__(self):
        return f"CrossEntropyLoss(with_softmax={self.with_softmax}, epsilon={self.epsilon})"
