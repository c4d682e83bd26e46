"""
Model Persistence
=================

Saves a SequentialModel as a JSON document and rebuilds it:

    {
      "format_version": 1,
      "layers": [
        {"type": "Conv2D",
         "config": {"in_channels": 3, "out_channels": 32, ...},
         "training": true,
         "weights": {"shape": [32, 3, 3, 3], "data": [...]},
         "biases": {"shape": [32], "data": [...]}},
        {"type": "BatchNorm",
         "config": {"momentum": 0.9, "epsilon": 1e-05},
         "training": true,
         "weights": ..., "biases": ...,
         "running_mean": ..., "running_var": ...},
        {"type": "ReLU", "config": {}, "training": true},
        ...
      ]
    }

Arrays are stored flat in row-major order next to their shape. A BatchNorm
layer that has not seen any input yet is stored without parameters.
"""

import json

import numpy as np

from .activations import ReLU, Softmax
from .exceptions import CNNError, SerializationError
from .layers import BatchNorm, Conv2D, Dense, GlobalAveragePool, MaxPool
from .model import SequentialModel

FORMAT_VERSION = 1

LAYER_TYPES = {
    cls.kind.value: cls
    for cls in (Conv2D, Dense, BatchNorm, MaxPool, GlobalAveragePool, ReLU, Softmax)
}


def _encode_array(array):
    array = np.asarray(array, dtype=np.float64)
    return {'shape': list(array.shape), 'data': array.reshape(-1).tolist()}


def _decode_array(entry, name, index):
    try:
        shape = tuple(int(d) for d in entry['shape'])
        data = np.asarray(entry['data'], dtype=np.float64)
    except (KeyError, TypeError, ValueError) as e:
        raise SerializationError(f"Layer {index}: malformed '{name}' array") from e

    if data.ndim != 1 or data.size != int(np.prod(shape)):
        raise SerializationError(f"Layer {index}: '{name}' holds {data.size} values, "
                                 f"shape {list(shape)} needs {int(np.prod(shape))}")
    return data.reshape(shape)


def layer_to_dict(layer):
    entry = {
        'type': layer.kind.value,
        'config': layer.config(),
        'training': layer.training,
    }

    if layer.trainable and layer.get_weights().size:
        entry['weights'] = _encode_array(layer.get_weights())
        entry['biases'] = _encode_array(layer.get_biases())

    if isinstance(layer, BatchNorm) and layer.running_mean is not None:
        entry['running_mean'] = _encode_array(layer.running_mean)
        entry['running_var'] = _encode_array(layer.running_var)

    return entry


def layer_from_dict(entry, index=0):
    """Rebuild one layer from its document entry."""
    if not isinstance(entry, dict):
        raise SerializationError(f"Layer {index}: expected an object, got {type(entry).__name__}")

    type_tag = entry.get('type')
    if type_tag not in LAYER_TYPES:
        raise SerializationError(f"Layer {index}: unknown layer type {type_tag!r}. "
                                 f"Available: {list(LAYER_TYPES.keys())}")

    try:
        layer = LAYER_TYPES[type_tag](**entry.get('config', {}))

        if 'weights' in entry or 'biases' in entry:
            if 'weights' not in entry or 'biases' not in entry:
                raise SerializationError(f"Layer {index}: weights and biases must be stored together")
            layer.set_weights_and_biases(_decode_array(entry['weights'], 'weights', index),
                                         _decode_array(entry['biases'], 'biases', index))

        if 'running_mean' in entry:
            layer.set_running_statistics(_decode_array(entry['running_mean'], 'running_mean', index),
                                         _decode_array(entry['running_var'], 'running_var', index))

    except SerializationError:
        raise
    except (CNNError, TypeError, KeyError) as e:
        raise SerializationError(f"Layer {index} ({type_tag}): {e}") from e

    layer.set_training(entry.get('training', True))
    return layer


def model_to_dict(model):
    return {
        'format_version': FORMAT_VERSION,
        'layers': [layer_to_dict(layer) for layer in model],
    }


def model_from_dict(document):
    if not isinstance(document, dict) or not isinstance(document.get('layers'), list):
        raise SerializationError("Model document must be an object with a 'layers' list")

    version = document.get('format_version')
    if version != FORMAT_VERSION:
        raise SerializationError(f"Unsupported format_version {version!r}, expected {FORMAT_VERSION}")

    model = SequentialModel()
    for index, entry in enumerate(document['layers']):
        model.add(layer_from_dict(entry, index))
    return model


def save_model(model, path):
    """
    Save model to a JSON file.

    Args:
        model: SequentialModel to save
        path: Destination file
    """
    with open(path, 'w') as f:
        json.dump(model_to_dict(model), f)
    print(f"Model saved to {path}")


def load_model(path):
    """
    Load a model saved by save_model.

    Raises:
        FileNotFoundError: if path does not exist
        SerializationError: if the document is not a valid model
    """
    with open(path) as f:
        try:
            document = json.load(f)
        except json.JSONDecodeError as e:
            raise SerializationError(f"{path} is not valid JSON: {e}") from e

    model = model_from_dict(document)
    print(f"Model loaded from {path}")
    return model
