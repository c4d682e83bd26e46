"""
Optimizers for CNNs
===================

Update rules that turn the gradients accumulated by backward_batch into new
layer parameters:
- SGD: momentum, element-wise gradient clipping, L2 weight decay on weights
  (the CLI default)
- Adam: per-parameter adaptive step sizes with bias correction

Both keep their per-layer hidden state in explicit records keyed by the
layer's `layer_id`, created on the first update of that layer. The learning
rate is passed into every update so a schedule can be driven from outside.
"""

from dataclasses import dataclass

import numpy as np

from .exceptions import ShapeError


@dataclass
class SGDState:
    """Momentum buffers of one layer."""
    weight_velocity: np.ndarray
    bias_velocity: np.ndarray


@dataclass
class AdamState:
    """Moment estimates and step counter of one layer."""
    step: int
    m_weights: np.ndarray
    v_weights: np.ndarray
    m_biases: np.ndarray
    v_biases: np.ndarray


def _check_state_shape(layer, state_array, param):
    if state_array.shape != param.shape:
        raise ShapeError(f"{layer!r}: parameter shape changed from {state_array.shape} "
                         f"to {param.shape} after the optimizer first saw it")


def _has_gradients(layer):
    return layer.trainable and getattr(layer, 'weight_gradients', None) is not None


class Optimizer:
    """Base class for optimizers."""

    def update(self, layer, learning_rate):
        """Update one layer's parameters from its accumulated gradients."""
        raise NotImplementedError

    def step(self, layers, learning_rate):
        """Update weights for all layers, in order."""
        for layer in layers:
            self.update(layer, learning_rate)

    def reset(self):
        """Reset optimizer state."""
        raise NotImplementedError


class SGD(Optimizer):
    """
    SGD with momentum, gradient clipping and weight decay.

    Update rule (per element, gradients clipped to [-clip_value, clip_value]):
        weights: v = momentum * v - lr * (clip(g) + weight_decay * w);  w += v
        biases:  v = momentum * v - lr * clip(g);                        b += v

    Args:
        momentum: Momentum factor (default: 0.9)
        weight_decay: L2 regularization on weights only (default: 1e-4)
        clip_value: Element-wise gradient clip bound (default: 5.0)
    """

    def __init__(self, momentum=0.9, weight_decay=1e-4, clip_value=5.0):
        self.momentum = momentum
        self.weight_decay = weight_decay
        self.clip_value = clip_value

        self._state = {}

    def state_for(self, layer):
        """The layer's SGDState, or None if it has not been updated yet."""
        return self._state.get(layer.layer_id)

    def update(self, layer, learning_rate):
        """
        Apply one momentum step to a layer.

        Args:
            layer: Layer with computed gradients; parameterless layers are skipped
            learning_rate: Step size for this update
        """
        if not _has_gradients(layer):
            return

        weights = layer.get_weights()
        biases = layer.get_biases()

        state = self._state.get(layer.layer_id)
        if state is None:
            state = SGDState(np.zeros_like(weights), np.zeros_like(biases))
            self._state[layer.layer_id] = state
        else:
            _check_state_shape(layer, state.weight_velocity, weights)
            _check_state_shape(layer, state.bias_velocity, biases)

        weight_grad = np.clip(layer.weight_gradients, -self.clip_value, self.clip_value)
        bias_grad = np.clip(layer.bias_gradients, -self.clip_value, self.clip_value)

        state.weight_velocity = (self.momentum * state.weight_velocity
                                 - learning_rate * (weight_grad + self.weight_decay * weights))
        state.bias_velocity = self.momentum * state.bias_velocity - learning_rate * bias_grad

        layer.set_weights_and_biases(weights + state.weight_velocity,
                                     biases + state.bias_velocity)

    def reset(self):
        self._state = {}

    def __repr__(self):
        return (f"SGD(momentum={self.momentum}, weight_decay={self.weight_decay}, "
                f"clip_value={self.clip_value})")


class Adam(Optimizer):
    """
    Adam: running averages of the gradient (m) and its square (v), each
    bias-corrected before the step lr * m_hat / (sqrt(v_hat) + epsilon).

    Each layer keeps its own step counter for bias correction, so layers that
    start receiving updates late are corrected from their own first step.

    Args:
        beta1: Decay of m (default: 0.9)
        beta2: Decay of v (default: 0.999)
        epsilon: Added to sqrt(v_hat) (default: 1e-8)
    """

    def __init__(self, beta1=0.9, beta2=0.999, epsilon=1e-8):
        self.beta1 = beta1
        self.beta2 = beta2
        self.epsilon = epsilon

        self._state = {}

    def state_for(self, layer):
        """The layer's AdamState, or None if it has not been updated yet."""
        return self._state.get(layer.layer_id)

    def _moments(self, m, v, grad, t):
        m = self.beta1 * m + (1 - self.beta1) * grad
        v = self.beta2 * v + (1 - self.beta2) * np.square(grad)

        m_hat = m / (1 - self.beta1 ** t)
        v_hat = v / (1 - self.beta2 ** t)

        return m, v, m_hat / (np.sqrt(v_hat) + self.epsilon)

    def update(self, layer, learning_rate):
        """
        Apply one Adam step to a layer.

        Args:
            layer: Layer with computed gradients; parameterless layers are skipped
            learning_rate: Step size for this update
        """
        if not _has_gradients(layer):
            return

        weights = layer.get_weights()
        biases = layer.get_biases()

        state = self._state.get(layer.layer_id)
        if state is None:
            state = AdamState(0, np.zeros_like(weights), np.zeros_like(weights),
                              np.zeros_like(biases), np.zeros_like(biases))
            self._state[layer.layer_id] = state
        else:
            _check_state_shape(layer, state.m_weights, weights)
            _check_state_shape(layer, state.m_biases, biases)

        state.step += 1

        state.m_weights, state.v_weights, weight_step = self._moments(
            state.m_weights, state.v_weights, layer.weight_gradients, state.step)
        state.m_biases, state.v_biases, bias_step = self._moments(
            state.m_biases, state.v_biases, layer.bias_gradients, state.step)

        layer.set_weights_and_biases(weights - learning_rate * weight_step,
                                     biases - learning_rate * bias_step)

    def reset(self):
        self._state = {}

    def __repr__(self):
        return f"Adam(beta1={self.beta1}, beta2={self.beta2}, epsilon={self.epsilon})"


# ============================================================================
# Learning Rate Schedulers
# ============================================================================

def exponential_decay(decay_rate=0.98):
    """
    Exponential decay: LR = initial_lr * decay_rate^epoch
    """
    def scheduler(epoch, initial_lr):
        return initial_lr * (decay_rate ** epoch)
    return scheduler


# Optimizer registry
OPTIMIZERS = {
    'sgd': SGD,
    'adam': Adam,
}


def get_optimizer(name, **kwargs):
    """
    Get optimizer by name.

    Args:
        name: 'sgd' or 'adam'
        **kwargs: Arguments to pass to optimizer

    Returns:
        Optimizer instance
    """
    if isinstance(name, Optimizer):
        return name

    name_lower = name.lower()
    if name_lower not in OPTIMIZERS:
        raise ValueError(f"Unknown optimizer '{name}'. Available: {list(OPTIMIZERS.keys())}")

    return OPTIMIZERS[name_lower](**kwargs)
