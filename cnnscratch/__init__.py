"""
CNN Engine from Scratch
=======================

A convolutional neural network engine written by hand on top of NumPy,
trained on CIFAR-10. It covers the mechanics of CNNs end to end:
- Tensor containers for single samples and batches
- 2D Convolution, Dense, Batch Normalization, Max and Global Average Pooling
- ReLU and Softmax activations
- Manually derived forward and backward passes
- Cross-entropy loss, SGD with momentum and Adam optimizers
- A trainer, JSON model persistence and a training CLI
"""

from .tensors import Tensor3D, Tensor4D
from .layers import (Layer, LayerKind, ParameterKind, Parameters,
                     Conv2D, Dense, BatchNorm, MaxPool, GlobalAveragePool)
from .activations import ReLU, Softmax
from .model import SequentialModel, build_simple_model, build_vgg11_model, ARCHITECTURES
from .losses import CrossEntropyLoss
from .optimizers import SGD, Adam, SGDState, AdamState, exponential_decay
from .trainer import Trainer
from .data import Dataset, InMemoryDataset, Cifar10Dataset
from .serialization import save_model, load_model
from .exceptions import (CNNError, ConfigurationError, ShapeError, InvalidStateError,
                         InvalidDistributionError, DataError, SerializationError)

__version__ = "1.0.0"
__all__ = [
    # Tensors
    'Tensor3D', 'Tensor4D',
    # Layers
    'Layer', 'LayerKind', 'ParameterKind', 'Parameters',
    'Conv2D', 'Dense', 'BatchNorm', 'MaxPool', 'GlobalAveragePool',
    'ReLU', 'Softmax',
    # Model
    'SequentialModel', 'build_simple_model', 'build_vgg11_model', 'ARCHITECTURES',
    # Training
    'CrossEntropyLoss', 'SGD', 'Adam', 'SGDState', 'AdamState', 'exponential_decay',
    'Trainer',
    # Data and persistence
    'Dataset', 'InMemoryDataset', 'Cifar10Dataset', 'save_model', 'load_model',
    # Errors
    'CNNError', 'ConfigurationError', 'ShapeError', 'InvalidStateError',
    'InvalidDistributionError', 'DataError', 'SerializationError',
]
