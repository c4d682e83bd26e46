"""
Visualization Utilities for CNN Library
========================================

This module provides functions for inspecting a model:
- Text dump of every layer's weights (print_weights)
- Convolutional filters (visualize_filters)
- Training progress (loss/accuracy curves)

None of these functions modify the model.
"""

import sys

import numpy as np
import matplotlib.pyplot as plt

from .layers import Conv2D, ParameterKind


def weight_marker(value):
    """Magnitude marker shown next to a weight: '++', '+', ' ', '-', '--'."""
    if value > 0.5:
        return '++'
    if value > 0.1:
        return '+'
    if value < -0.5:
        return '--'
    if value < -0.1:
        return '-'
    return ' '


def _format_value(value):
    return f"{value:6.2f}{weight_marker(value):<2}"


def print_weights(model, file=None):
    """
    Print a text rendering of every layer's parameters.

    Kernels are printed per filter and input channel, dense matrices as a
    shape line plus summary statistics, batch-norm gamma and all biases as
    value rows.

    Args:
        model: SequentialModel (or any iterable of layers)
        file: Stream to write to (default: sys.stdout)
    """
    out = file if file is not None else sys.stdout

    print("# CNN Structure Visualization", file=out)

    for index, layer in enumerate(model):
        print(f"\n* Layer {index}: {layer!r}", file=out)

        params = layer.get_parameters()
        weights = params.weights

        if params.kind is ParameterKind.KERNEL:
            print(f"  Filters: {weights.shape[0]} filters", file=out)
            for f, kernel in enumerate(weights):
                print(f"    Filter {f}:", file=out)
                for c, channel in enumerate(kernel):
                    print(f"    Channel {c}:", file=out)
                    for row in channel:
                        print("      " + " ".join(_format_value(v) for v in row), file=out)

        elif params.kind is ParameterKind.MATRIX:
            rows, cols = weights.shape
            print(f"  Dense Weights: {rows}x{cols}", file=out)
            print(f"    mean={weights.mean():.4f} std={weights.std():.4f} "
                  f"min={weights.min():.4f} max={weights.max():.4f}", file=out)

        elif params.kind is ParameterKind.VECTOR and weights.size:
            print(f"  Gamma (Scale) Parameters: {weights.size}", file=out)
            print("    " + " ".join(_format_value(v) for v in weights), file=out)

        if params.biases.size:
            print("  Biases:", file=out)
            print("    " + " ".join(_format_value(v) for v in params.biases), file=out)

    print("\n# Rendering complete (text mode).", file=out)


def _kernel_image(kernel):
    """Scale one (in_channels, k, k) kernel to [0, 1] for display."""
    if kernel.shape[0] == 3:
        img = kernel.transpose(1, 2, 0)
    else:
        img = kernel.mean(axis=0)

    low, high = img.min(), img.max()
    if high - low < 1e-12:
        return np.zeros_like(img)
    return (img - low) / (high - low)


def _finish(fig, save_path, show, what):
    if save_path:
        fig.savefig(save_path, dpi=150, bbox_inches='tight')
        print(f"{what} saved to {save_path}")
    if show:
        plt.show()
    return fig


def visualize_filters(filters, max_filters=32, figsize=(12, 8), save_path=None, show=True):
    """
    Draw convolution kernels on a square-ish grid.

    Three-channel kernels are drawn in color; any other channel count is
    averaged over input channels and drawn in gray.

    Args:
        filters: Conv2D layer, or weights of shape (out_channels, in_channels, k, k)
        max_filters: Draw at most this many kernels
        figsize: Figure size
        save_path: Write the figure here when given
        show: Call plt.show() after drawing

    Returns:
        The matplotlib Figure
    """
    kernels = filters.get_weights() if isinstance(filters, Conv2D) else np.asarray(filters)
    kernels = kernels[:max_filters]

    cols = int(np.ceil(np.sqrt(len(kernels))))
    rows = int(np.ceil(len(kernels) / cols))

    fig, grid = plt.subplots(rows, cols, figsize=figsize, squeeze=False)

    for idx, ax in enumerate(grid.ravel()):
        ax.axis('off')
        if idx >= len(kernels):
            continue

        img = _kernel_image(kernels[idx])
        ax.imshow(img, cmap=None if img.ndim == 3 else 'gray')
        ax.set_title(f'#{idx}', fontsize=8)

    fig.suptitle(f'Convolution kernels ({len(kernels)} shown)', fontsize=14)
    fig.tight_layout()

    return _finish(fig, save_path, show, "Filter grid")


def plot_training_history(history, figsize=(14, 5), save_path=None, show=True):
    """
    Plot per-epoch curves from a Trainer history.

    One panel per metric: loss, then accuracy (with 'val_accuracy' overlaid
    when the CLI recorded it), then the learning rate when 'lr' is present.
    """
    panels = [('loss', None, 'Loss'), ('accuracy', 'val_accuracy', 'Accuracy')]
    if history.get('lr'):
        panels.append(('lr', None, 'Learning rate'))

    fig, axes = plt.subplots(1, len(panels), figsize=figsize, squeeze=False)
    epochs = np.arange(1, len(history['loss']) + 1)

    for ax, (train_key, val_key, title) in zip(axes[0], panels):
        ax.plot(epochs, history[train_key], 'o-', label='train')
        if val_key and history.get(val_key):
            ax.plot(epochs[:len(history[val_key])], history[val_key], 's--', label='test')
            ax.legend()
        ax.set_title(title)
        ax.set_xlabel('Epoch')
        ax.grid(True, alpha=0.3)

    fig.tight_layout()

    return _finish(fig, save_path, show, "Training curves")
