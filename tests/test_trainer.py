"""
Tests for Model and Trainer
===========================

One-step end-to-end training on a tiny network, plus the bookkeeping of
SequentialModel and Trainer.
"""

import numpy as np
import pytest
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from cnnscratch.model import SequentialModel, build_model, build_simple_model, build_vgg11_model
from cnnscratch.layers import Conv2D, Dense, BatchNorm, MaxPool
from cnnscratch.activations import ReLU, Softmax
from cnnscratch.losses import CrossEntropyLoss
from cnnscratch.optimizers import SGD, Adam
from cnnscratch.trainer import Trainer, clip_gradients
from cnnscratch.data import InMemoryDataset
from cnnscratch.tensors import Tensor3D, Tensor4D
from cnnscratch.exceptions import ConfigurationError


def tiny_model(seed=0):
    rng = np.random.default_rng(seed)
    return SequentialModel([
        Conv2D(3, 4, kernel_size=3, padding=1, rng=rng),
        Dense(64, 2, rng=rng),
        Softmax(),
    ])


def random_batch(n=4, seed=0):
    rng = np.random.default_rng(seed)
    images = [Tensor3D.from_array(rng.standard_normal((3, 4, 4))) for _ in range(n)]
    labels = rng.integers(0, 2, size=n)
    return images, labels


class TestSequentialModel:
    """Tests for SequentialModel."""

    def test_add_and_len(self):
        model = SequentialModel()
        model.add(Dense(4, 2, rng=0))
        model.add(Softmax())

        assert len(model) == 2
        assert isinstance(model.layers, tuple)

    def test_add_rejects_non_layer(self):
        with pytest.raises(TypeError):
            SequentialModel().add("Dense")

    def test_reset(self):
        model = tiny_model()
        model.reset()

        assert len(model) == 0

    def test_forward_backward_shapes(self):
        model = tiny_model()
        x = Tensor3D.from_array(np.random.default_rng(1).standard_normal((3, 4, 4)))

        out = model.forward(x)
        assert out.shape == (1, 1, 2)
        assert abs(out.data.sum() - 1.0) < 1e-9

        grad = model.backward(Tensor3D.from_array(np.array([[[0.1, -0.1]]])))
        assert grad.shape == (3, 4, 4)

    def test_set_training(self):
        model = SequentialModel([BatchNorm(), ReLU()])
        model.set_training(False)

        assert not model.training
        assert all(not layer.training for layer in model)


class TestArchitectures:
    """Tests for the architecture catalog."""

    def test_simple_layout(self):
        model = build_simple_model(num_classes=10, seed=0)

        convs = [layer for layer in model if isinstance(layer, Conv2D)]
        assert [c.out_channels for c in convs] == [32, 32, 64, 64, 128, 128]
        assert sum(isinstance(layer, MaxPool) for layer in model) == 3

        dense = [layer for layer in model if isinstance(layer, Dense)]
        assert (dense[0].input_size, dense[0].output_size) == (2048, 512)
        assert dense[-1].output_size == 10
        assert isinstance(model.layers[-1], Softmax)

    def test_vgg11_layout(self):
        model = build_vgg11_model(num_classes=10, seed=0)

        convs = [layer for layer in model if isinstance(layer, Conv2D)]
        assert [c.out_channels for c in convs] == [64, 128, 256, 256, 512, 512]
        assert sum(isinstance(layer, MaxPool) for layer in model) == 4

        dense = [layer for layer in model if isinstance(layer, Dense)]
        assert dense[0].input_size == 2048

    def test_build_model_by_name(self):
        model = build_model('Simple', num_classes=5, seed=0)

        assert [layer for layer in model if isinstance(layer, Dense)][-1].output_size == 5

        with pytest.raises(ValueError):
            build_model('resnet')


class TestClipGradients:
    """Tests for gradient clipping before backprop."""

    def test_clip_and_nan(self):
        grad = Tensor4D.from_array(np.array([2.0, -3.0, 0.5, np.nan]).reshape(1, 1, 1, 4))

        clip_gradients(grad, 1.0)

        np.testing.assert_array_equal(grad.data.reshape(-1), [1.0, -1.0, 0.5, 0.0])


class TestTrainer:
    """Tests for Trainer."""

    def test_one_step_end_to_end(self):
        model = tiny_model()
        images, labels = random_batch()
        before = [(layer.get_weights(), layer.get_biases()) for layer in model if layer.trainable]

        trainer = Trainer(model, SGD(), CrossEntropyLoss(), batch_size=4, verbose=False)
        loss, accuracy = trainer.train_batch(images, labels, learning_rate=0.01)

        assert np.isfinite(loss)
        assert 0.0 <= accuracy <= 1.0

        after = [(layer.get_weights(), layer.get_biases()) for layer in model if layer.trainable]
        for (w0, b0), (w1, b1) in zip(before, after):
            assert w0.shape == w1.shape
            assert b0.shape == b1.shape
            assert not np.allclose(w0, w1)
            assert not np.allclose(b0, b1)

        assert model.forward(images[0]).shape == (1, 1, 2)

    def test_num_classes_from_last_dense(self):
        trainer = Trainer(tiny_model(), SGD(), CrossEntropyLoss(), verbose=False)

        assert trainer.num_classes == 2

    def test_constructor_errors(self):
        model = tiny_model()

        with pytest.raises(TypeError):
            Trainer(None, SGD(), CrossEntropyLoss())
        with pytest.raises(TypeError):
            Trainer(model, None, CrossEntropyLoss())
        with pytest.raises(TypeError):
            Trainer(model, SGD(), None)
        with pytest.raises(ConfigurationError):
            Trainer(model, SGD(), CrossEntropyLoss(), batch_size=0)
        with pytest.raises(ConfigurationError):
            Trainer(SequentialModel([ReLU()]), SGD(), CrossEntropyLoss())

    def test_label_out_of_range(self):
        trainer = Trainer(tiny_model(), SGD(), CrossEntropyLoss(), verbose=False)
        images, _ = random_batch(2)

        with pytest.raises(ConfigurationError):
            trainer.train_batch(images, [0, 2], learning_rate=0.01)

    def test_mismatched_batch(self):
        trainer = Trainer(tiny_model(), SGD(), CrossEntropyLoss(), verbose=False)
        images, _ = random_batch(3)

        with pytest.raises(ConfigurationError):
            trainer.train_batch(images, [0, 1], learning_rate=0.01)

    def test_train_history(self):
        rng = np.random.default_rng(3)
        dataset = InMemoryDataset(rng.standard_normal((10, 3, 4, 4)), rng.integers(0, 2, 10),
                                  rng.standard_normal((4, 3, 4, 4)), rng.integers(0, 2, 4), seed=0)
        trainer = Trainer(tiny_model(), Adam(), CrossEntropyLoss(), batch_size=4, verbose=False)

        trainer.train(dataset, epochs=2, learning_rate=0.001)
        history = trainer.train(dataset, epochs=1, learning_rate=0.0005)

        assert len(history['loss']) == 3
        assert history['lr'] == [0.001, 0.001, 0.0005]
        assert all(0.0 <= acc <= 1.0 for acc in history['accuracy'])
        assert 0.0 <= trainer.evaluate_dataset(dataset) <= 1.0

    def test_evaluate_restores_modes(self):
        rng = np.random.default_rng(4)
        model = SequentialModel([
            Conv2D(3, 2, kernel_size=3, padding=1, rng=rng),
            BatchNorm(),
            ReLU(),
            Dense(32, 2, rng=rng),
            Softmax(),
        ])
        model.forward_batch(Tensor4D.from_array(rng.standard_normal((4, 3, 4, 4))))
        model.layers[2].set_training(False)
        modes = [layer.training for layer in model]

        trainer = Trainer(model, SGD(), CrossEntropyLoss(), batch_size=3, verbose=False)
        loss, accuracy = trainer.evaluate(rng.standard_normal((5, 3, 4, 4)), [0, 1, 1, 0, 1])

        assert np.isfinite(loss)
        assert 0.0 <= accuracy <= 1.0
        assert [layer.training for layer in model] == modes

    def test_evaluate_does_not_update(self):
        model = tiny_model()
        images, labels = random_batch()
        weights = model.layers[0].get_weights()

        Trainer(model, SGD(), CrossEntropyLoss(), verbose=False).evaluate(images, labels)

        np.testing.assert_array_equal(model.layers[0].get_weights(), weights)

    def test_evaluate_errors(self):
        trainer = Trainer(tiny_model(), SGD(), CrossEntropyLoss(), verbose=False)
        images, _ = random_batch(2)

        with pytest.raises(ConfigurationError):
            trainer.evaluate([], [])
        with pytest.raises(ConfigurationError):
            trainer.evaluate(images, [0])


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
