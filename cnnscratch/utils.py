"""
Utility Functions for CNN Library
=================================

Helper functions for:
- Label encoding
- Metrics
- Seeding
- Model summaries
"""

import numpy as np

from .exceptions import ConfigurationError
from .tensors import Tensor3D


def one_hot_encode(labels, num_classes):
    """
    Convert integer labels to one-hot encoded vectors.

    Args:
        labels: Integer labels, shape (N,)
        num_classes: Number of classes

    Returns:
        One-hot matrix, shape (N, num_classes)

    Raises:
        ConfigurationError: if a label is outside [0, num_classes)
    """
    labels = np.asarray(labels).astype(int).reshape(-1)

    out_of_range = (labels < 0) | (labels >= num_classes)
    if np.any(out_of_range):
        bad = labels[out_of_range][0]
        raise ConfigurationError(f"Label {bad} is outside valid range [0-{num_classes - 1}]")

    return np.eye(num_classes, dtype=np.float64)[labels]


def one_hot_tensor(label, num_classes):
    """One-hot target for a single label as a (1, 1, num_classes) Tensor3D."""
    return Tensor3D.from_array(one_hot_encode([label], num_classes).reshape(1, 1, num_classes))


def predicted_class(output):
    """Index of the largest entry in output[0, 0, :]; ties go to the lowest index."""
    return int(np.argmax(output.data[0, 0]))


def accuracy_score(y_true, y_pred):
    """
    Compute classification accuracy.

    Args:
        y_true: True labels (integers or one-hot)
        y_pred: Predictions (probabilities or class indices)

    Returns:
        Accuracy as float
    """
    y_true = np.asarray(y_true)
    y_pred = np.asarray(y_pred)

    if y_true.ndim > 1:
        y_true = np.argmax(y_true, axis=1)
    if y_pred.ndim > 1:
        y_pred = np.argmax(y_pred, axis=1)

    return float(np.mean(y_true == y_pred))


def set_random_seed(seed):
    """
    Set the global NumPy seed and return a Generator seeded the same way.

    Layers never draw from the global state; pass the returned Generator (or
    the seed) to the model builders and datasets.
    """
    np.random.seed(seed)
    print(f"Random seed set to {seed}")
    return np.random.default_rng(seed)


def count_parameters(layer):
    return int(layer.get_weights().size + layer.get_biases().size)


def get_model_summary(model, input_shape=None):
    """
    Tabulate the layers of a model with their parameter counts.

    Args:
        model: SequentialModel (or any iterable of layers)
        input_shape: Optional (C, H, W). When given, a zero sample is pushed
            through the model in inference mode to report each output shape.

    Returns:
        Summary string
    """
    layers = list(model)
    shapes = ['-'] * len(layers)

    if input_shape is not None:
        modes = [layer.training for layer in layers]
        x = Tensor3D(*input_shape)
        try:
            for i, layer in enumerate(layers):
                layer.set_training(False)
                x = layer.forward(x)
                shapes[i] = str(x.shape)
        finally:
            for layer, mode in zip(layers, modes):
                layer.set_training(mode)

    counts = [count_parameters(layer) for layer in layers]
    rule = "-" * 78

    rows = [rule, f"{'#':>3}  {'Layer':<44} {'Output':<16} {'Params':>10}", rule]
    for i, (layer, shape, n_params) in enumerate(zip(layers, shapes, counts)):
        rows.append(f"{i:>3}  {layer!r:<44} {shape:<16} {n_params:>10,}")
    rows.append(rule)
    rows.append(f"Total trainable parameters: {sum(counts):,}")

    return '\n'.join(rows)
