"""
Sequential Model
================

An ordered stack of layers, plus the catalog of ready-made architectures
used for CIFAR-10:

    simple:
        [Conv(32) -> BN -> ReLU] x2 -> MaxPool
        [Conv(64) -> BN -> ReLU] x2 -> MaxPool
        [Conv(128) -> BN -> ReLU] x2 -> MaxPool
        Dense(2048 -> 512) -> ReLU -> Dense(512 -> 10) -> Softmax

    vgg11:
        Conv(64) -> BN -> ReLU -> MaxPool
        Conv(128) -> BN -> ReLU -> MaxPool
        [Conv(256) -> BN -> ReLU] x2 -> MaxPool
        [Conv(512) -> BN -> ReLU] x2 -> MaxPool
        Dense(2048 -> 512) -> ReLU -> Dense(512 -> 10) -> Softmax

Both expect 3x32x32 inputs. All convolutions are 3x3 with padding 1.
"""

import numpy as np

from .activations import ReLU, Softmax
from .layers import BatchNorm, Conv2D, Dense, Layer, MaxPool


class SequentialModel:
    """
    Linear stack of layers.

    Layers are applied in insertion order on forward and in reverse order on
    backward. Shape compatibility between neighbours is not checked up front;
    the first layer that receives a tensor it cannot handle raises ShapeError.

    Example:
        >>> model = SequentialModel()
        >>> model.add(Dense(4, 2))
        >>> model.add(Softmax())
        >>> len(model)
        2
    """

    def __init__(self, layers=None):
        self._layers = []
        for layer in layers or []:
            self.add(layer)

    @property
    def layers(self):
        """Read-only view of the layer sequence."""
        return tuple(self._layers)

    def add(self, layer):
        if not isinstance(layer, Layer):
            raise TypeError(f"Expected a Layer, got {type(layer).__name__}")
        self._layers.append(layer)

    def reset(self):
        """Remove all layers."""
        self._layers = []

    def forward(self, x):
        for layer in self._layers:
            x = layer.forward(x)
        return x

    def backward(self, grad):
        for layer in reversed(self._layers):
            grad = layer.backward(grad)
        return grad

    def forward_batch(self, batch):
        """Forward pass on a Tensor4D batch."""
        for layer in self._layers:
            batch = layer.forward_batch(batch)
        return batch

    def backward_batch(self, grad_batch):
        """
        Backward pass on a Tensor4D of output gradients.

        Leaves Conv2D and Dense weight_gradients/bias_gradients holding the
        batch average. BatchNorm gamma/beta gradients are sums over the batch
        and every spatial position.
        """
        for layer in reversed(self._layers):
            grad_batch = layer.backward_batch(grad_batch)
        return grad_batch

    def set_training(self, mode):
        for layer in self._layers:
            layer.set_training(mode)

    @property
    def training(self):
        return all(layer.training for layer in self._layers)

    def __len__(self):
        return len(self._layers)

    def __iter__(self):
        return iter(self._layers)

    def __repr__(self):
        lines = ["SequentialModel("]
        for i, layer in enumerate(self._layers):
            lines.append(f"  ({i}): {layer!r}")
        lines.append(")")
        return "\n".join(lines)


# ============================================================================
# Architecture catalog
# ============================================================================

def _conv_block(model, in_channels, out_channels, rng):
    model.add(Conv2D(in_channels, out_channels, kernel_size=3, stride=1, padding=1, rng=rng))
    model.add(BatchNorm())
    model.add(ReLU())


def _classifier_head(model, flatten_dim, num_classes, rng):
    model.add(Dense(flatten_dim, 512, rng=rng))
    model.add(ReLU())
    model.add(Dense(512, num_classes, rng=rng))
    model.add(Softmax())


def build_simple_model(num_classes=10, seed=None):
    """
    Three double-convolution blocks with 32, 64 and 128 filters.

    Args:
        num_classes: Size of the output distribution
        seed: Seed (or numpy Generator) for weight initialization

    Returns:
        SequentialModel for 3x32x32 inputs
    """
    rng = np.random.default_rng(seed)
    model = SequentialModel()

    in_channels = 3
    for channels in (32, 64, 128):
        _conv_block(model, in_channels, channels, rng)
        _conv_block(model, channels, channels, rng)
        model.add(MaxPool(2, 2))
        in_channels = channels

    # 32 -> 16 -> 8 -> 4
    _classifier_head(model, 4 * 4 * 128, num_classes, rng)
    return model


def build_vgg11_model(num_classes=10, seed=None):
    """VGG11-style stack: 64, 128, 256x2, 512x2 filters, each stage pooled."""
    rng = np.random.default_rng(seed)
    model = SequentialModel()

    stages = [(64,), (128,), (256, 256), (512, 512)]
    in_channels = 3
    for stage in stages:
        for channels in stage:
            _conv_block(model, in_channels, channels, rng)
            in_channels = channels
        model.add(MaxPool(2, 2))

    # 32 -> 16 -> 8 -> 4 -> 2
    _classifier_head(model, 2 * 2 * 512, num_classes, rng)
    return model


ARCHITECTURES = {
    'simple': build_simple_model,
    'vgg11': build_vgg11_model,
}


def build_model(name, num_classes=10, seed=None):
    """Build a catalog architecture by name."""
    name_lower = name.lower()
    if name_lower not in ARCHITECTURES:
        raise ValueError(f"Unknown architecture '{name}'. Available: {list(ARCHITECTURES.keys())}")

    return ARCHITECTURES[name_lower](num_classes=num_classes, seed=seed)
