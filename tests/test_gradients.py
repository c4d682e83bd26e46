"""
Gradient Checking Tests
=======================

Verify analytical gradients match numerical approximations.
This is THE most important test for ensuring backpropagation is correct.

Method: Centered finite differences
    f'(x) ≈ (f(x + ε) - f(x - ε)) / (2ε)

We compare:
    - Analytical gradient: computed by backward()
    - Numerical gradient: finite difference approximation

Every check uses the scalar f = sum(output * G) for a fixed random G, whose
gradient w.r.t. the output is exactly G.
"""

import numpy as np
import pytest
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from cnnscratch.layers import Conv2D, Dense, BatchNorm, MaxPool, GlobalAveragePool
from cnnscratch.activations import ReLU, Softmax
from cnnscratch.losses import CrossEntropyLoss
from cnnscratch.model import SequentialModel
from cnnscratch.tensors import Tensor3D, Tensor4D


def numerical_gradient(f, x, epsilon=1e-5):
    """
    Compute numerical gradient using centered finite differences.

    Args:
        f: Function that takes x and returns scalar loss
        x: Point at which to compute gradient
        epsilon: Small perturbation

    Returns:
        Numerical gradient, same shape as x
    """
    grad = np.zeros_like(x)

    it = np.nditer(x, flags=['multi_index'])
    while not it.finished:
        idx = it.multi_index

        # f(x + epsilon)
        x[idx] += epsilon
        loss_plus = f(x)

        # f(x - epsilon)
        x[idx] -= 2 * epsilon
        loss_minus = f(x)

        # Restore
        x[idx] += epsilon

        # Centered difference
        grad[idx] = (loss_plus - loss_minus) / (2 * epsilon)

        it.iternext()

    return grad


def relative_error(analytical, numerical):
    """
    Compute relative error between analytical and numerical gradients.

    Returns:
        Maximum relative error across all elements
    """
    diff = np.abs(analytical - numerical)
    denom = np.maximum(np.abs(analytical) + np.abs(numerical), 1e-8)
    return np.max(diff / denom)


class TestConv2DGradients:
    """Gradient tests for Conv2D."""

    def setup_method(self):
        self.rng = np.random.default_rng(42)
        self.conv = Conv2D(in_channels=2, out_channels=3, kernel_size=3, stride=2, padding=1,
                           rng=self.rng)
        self.x = self.rng.standard_normal((2, 7, 7))

        output = self.conv.forward(Tensor3D.from_array(self.x))
        self.grad_output = self.rng.standard_normal(output.shape)
        self.analytical_dx = self.conv.backward(Tensor3D.from_array(self.grad_output)).data

    def _loss(self, x):
        out = self.conv.forward(Tensor3D.from_array(x))
        return np.sum(out.data * self.grad_output)

    def test_weight_gradients(self):
        """Test gradients w.r.t. weights."""
        analytical_dW = self.conv.weight_gradients.copy()
        biases = self.conv.get_biases()

        def loss_fn(W):
            self.conv.set_weights_and_biases(W, biases)
            return self._loss(self.x)

        numerical_dW = numerical_gradient(loss_fn, self.conv.get_weights())

        error = relative_error(analytical_dW, numerical_dW)
        assert error < 1e-4, f"Weight gradient error too large: {error}"

    def test_bias_gradients(self):
        analytical_db = self.conv.bias_gradients.copy()
        weights = self.conv.get_weights()

        def loss_fn(b):
            self.conv.set_weights_and_biases(weights, b)
            return self._loss(self.x)

        numerical_db = numerical_gradient(loss_fn, self.conv.get_biases())

        error = relative_error(analytical_db, numerical_db)
        assert error < 1e-5, f"Bias gradient error too large: {error}"

    def test_input_gradients(self):
        """Test gradients w.r.t. input (through padding and stride)."""
        numerical_dx = numerical_gradient(self._loss, self.x.copy())

        error = relative_error(self.analytical_dx, numerical_dx)
        assert error < 1e-4, f"Input gradient error too large: {error}"


class TestDenseGradients:
    """Gradient tests for Dense layer."""

    def test_batched_weight_gradients(self):
        """backward_batch leaves the batch-mean gradient in weight_gradients."""
        rng = np.random.default_rng(42)

        dense = Dense(input_size=16, output_size=8, rng=rng)
        x = rng.standard_normal((4, 1, 4, 4))

        output = dense.forward_batch(Tensor4D.from_array(x))
        grad_output = rng.standard_normal(output.shape)
        dense.backward_batch(Tensor4D.from_array(grad_output))
        analytical_dW = dense.weight_gradients.copy()
        analytical_db = dense.bias_gradients.copy()

        def loss_fn(W):
            dense.set_weights_and_biases(W, dense.get_biases())
            out = dense.forward_batch(Tensor4D.from_array(x))
            return np.sum(out.data * grad_output) / 4

        numerical_dW = numerical_gradient(loss_fn, dense.get_weights())

        def bias_loss_fn(b):
            dense.set_weights_and_biases(dense.get_weights(), b)
            out = dense.forward_batch(Tensor4D.from_array(x))
            return np.sum(out.data * grad_output) / 4

        numerical_db = numerical_gradient(bias_loss_fn, dense.get_biases())

        assert relative_error(analytical_dW, numerical_dW) < 1e-5
        assert relative_error(analytical_db, numerical_db) < 1e-5

    def test_input_gradients(self):
        rng = np.random.default_rng(7)

        dense = Dense(input_size=12, output_size=5, rng=rng)
        x = rng.standard_normal((3, 2, 2))

        dense.forward(Tensor3D.from_array(x))
        grad_output = rng.standard_normal((1, 1, 5))
        analytical_dx = dense.backward(Tensor3D.from_array(grad_output)).data

        def loss_fn(x_in):
            return np.sum(dense.forward(Tensor3D.from_array(x_in)).data * grad_output)

        numerical_dx = numerical_gradient(loss_fn, x.copy())

        assert relative_error(analytical_dx, numerical_dx) < 1e-5


class TestMaxPoolGradients:
    """Gradient tests for MaxPool."""

    def test_input_gradients(self):
        """Test gradients through max pooling."""
        rng = np.random.default_rng(42)

        pool = MaxPool(pool_size=2)
        x = rng.standard_normal((4, 8, 8))

        output = pool.forward(Tensor3D.from_array(x))
        grad_output = rng.standard_normal(output.shape)
        analytical_dx = pool.backward(Tensor3D.from_array(grad_output)).data

        def loss_fn(x_in):
            out = pool.forward(Tensor3D.from_array(x_in))
            return np.sum(out.data * grad_output)

        numerical_dx = numerical_gradient(loss_fn, x.copy())

        error = relative_error(analytical_dx, numerical_dx)
        # MaxPool gradients can have larger errors due to discontinuity at boundaries
        assert error < 1e-3, f"Input gradient error too large: {error}"


class TestBatchNormGradients:
    """Gradient tests for BatchNorm."""

    def setup_method(self):
        self.rng = np.random.default_rng(42)
        self.bn = BatchNorm()
        self.x = self.rng.standard_normal((8, 3, 4, 4))  # Need larger batch for stable BN

        output = self.bn.forward_batch(Tensor4D.from_array(self.x))
        self.grad_output = self.rng.standard_normal(output.shape)

        # Non-trivial scale and shift
        self.bn.set_weights_and_biases(self.rng.uniform(0.5, 1.5, 3), self.rng.standard_normal(3))
        self.bn.forward_batch(Tensor4D.from_array(self.x))
        self.analytical_dx = self.bn.backward_batch(Tensor4D.from_array(self.grad_output)).data

    def _loss(self, x):
        out = self.bn.forward_batch(Tensor4D.from_array(x))
        return np.sum(out.data * self.grad_output)

    def test_gamma_gradients(self):
        """Test gradients w.r.t. gamma (scale)."""
        analytical_dgamma = self.bn.weight_gradients.copy()
        beta = self.bn.get_biases()

        def loss_fn(gamma):
            self.bn.set_weights_and_biases(gamma, beta)
            return self._loss(self.x)

        numerical_dgamma = numerical_gradient(loss_fn, self.bn.get_weights())

        error = relative_error(analytical_dgamma, numerical_dgamma)
        assert error < 1e-4, f"Gamma gradient error too large: {error}"

    def test_beta_gradients(self):
        analytical_dbeta = self.bn.bias_gradients.copy()
        gamma = self.bn.get_weights()

        def loss_fn(beta):
            self.bn.set_weights_and_biases(gamma, beta)
            return self._loss(self.x)

        numerical_dbeta = numerical_gradient(loss_fn, self.bn.get_biases())

        assert relative_error(analytical_dbeta, numerical_dbeta) < 1e-5

    def test_input_gradients(self):
        """Test gradients w.r.t. input."""
        numerical_dx = numerical_gradient(self._loss, self.x.copy())

        error = relative_error(self.analytical_dx, numerical_dx)
        # BatchNorm gradients can be tricky - allow slightly larger error
        assert error < 1e-3, f"Input gradient error too large: {error}"


class TestActivationGradients:
    """Gradient tests for activation layers."""

    def test_relu_gradients(self):
        """Test ReLU gradients."""
        rng = np.random.default_rng(0)
        relu = ReLU()
        x = rng.standard_normal((2, 3, 3))
        grad_output = rng.standard_normal((2, 3, 3))

        relu.forward(Tensor3D.from_array(x))
        analytical_grad = relu.backward(Tensor3D.from_array(grad_output)).data

        def loss_fn(x_in):
            return np.sum(relu.forward(Tensor3D.from_array(x_in)).data * grad_output)

        numerical_grad = numerical_gradient(loss_fn, x.copy())

        error = relative_error(analytical_grad, numerical_grad)
        assert error < 1e-5, f"ReLU gradient error: {error}"

    def test_softmax_gradients(self):
        """Jacobian-vector product matches finite differences."""
        rng = np.random.default_rng(1)
        softmax = Softmax()
        x = rng.standard_normal((1, 2, 6))
        grad_output = rng.standard_normal((1, 2, 6))

        softmax.forward(Tensor3D.from_array(x))
        analytical_grad = softmax.backward(Tensor3D.from_array(grad_output)).data

        def loss_fn(x_in):
            return np.sum(softmax.forward(Tensor3D.from_array(x_in)).data * grad_output)

        numerical_grad = numerical_gradient(loss_fn, x.copy())

        error = relative_error(analytical_grad, numerical_grad)
        assert error < 1e-5, f"Softmax gradient error: {error}"

    def test_global_average_pool_gradients(self):
        rng = np.random.default_rng(2)
        gap = GlobalAveragePool()
        x = rng.standard_normal((3, 4, 4))
        grad_output = rng.standard_normal((3, 1, 1))

        gap.forward(Tensor3D.from_array(x))
        analytical_grad = gap.backward(Tensor3D.from_array(grad_output)).data

        def loss_fn(x_in):
            return np.sum(gap.forward(Tensor3D.from_array(x_in)).data * grad_output)

        assert relative_error(analytical_grad, numerical_gradient(loss_fn, x.copy())) < 1e-5


class TestEndToEndGradients:
    """End-to-end gradient tests for small networks."""

    def test_conv_dense_network(self):
        """Cross-entropy through Softmax, Dense, ReLU and Conv2D."""
        rng = np.random.default_rng(42)

        conv = Conv2D(1, 2, kernel_size=3, padding=1, rng=rng)
        model = SequentialModel([conv, ReLU(), Dense(2 * 5 * 5, 4, rng=rng), Softmax()])
        loss_fn = CrossEntropyLoss(with_softmax=False)

        x = Tensor3D.from_array(rng.standard_normal((1, 5, 5)))
        target = Tensor3D.from_array([[[0.0, 0.0, 1.0, 0.0]]])

        # Forward / backward
        predictions = model.forward(x)
        model.backward(loss_fn.gradient(predictions, target))
        analytical_dW = conv.weight_gradients.copy()
        biases = conv.get_biases()

        def compute_loss(W):
            conv.set_weights_and_biases(W, biases)
            return loss_fn.calculate(model.forward(x), target)

        numerical_dW = numerical_gradient(compute_loss, conv.get_weights())

        error = relative_error(analytical_dW, numerical_dW)
        assert error < 1e-3, f"End-to-end gradient error: {error}"


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
