"""
Trainer
=======

Drives supervised training of a SequentialModel:

    batch -> forward -> loss -> loss gradient -> clip -> backward -> update

Targets are one-hot (1, 1, num_classes) tensors, where num_classes is the
output size of the model's last Dense layer. Loss and accuracy are averaged
over each batch; epoch metrics are weighted by batch size.
"""

import numpy as np
from tqdm import tqdm

from .exceptions import ConfigurationError
from .layers import Dense
from .tensors import Tensor3D, Tensor4D
from .utils import one_hot_encode, predicted_class

GRADIENT_CLIP = 1.0


def _as_tensor3d(image):
    return image if isinstance(image, Tensor3D) else Tensor3D.from_array(image)


def clip_gradients(grad_batch, threshold=GRADIENT_CLIP):
    """Clip every element of a Tensor4D to [-threshold, threshold] in place; NaN becomes 0."""
    data = grad_batch.data
    data[np.isnan(data)] = 0.0
    np.clip(data, -threshold, threshold, out=data)
    return grad_batch


class Trainer:
    """
    Handles the training and evaluation of a model.

    Args:
        model: SequentialModel to train
        optimizer: Optimizer applied to every layer after each batch
        loss: Loss with calculate/gradient on Tensor3D pairs
        batch_size: Mini-batch size (default: 32)
        verbose: Show progress bars and epoch summaries

    Attributes:
        history: Per-epoch 'loss', 'accuracy' and 'lr' lists. Accumulates
            across calls to train(), so training one epoch at a time still
            yields a full history.
        current_loss, current_accuracy: Running metrics of the current epoch

    Example:
        >>> trainer = Trainer(model, SGD(), CrossEntropyLoss(), batch_size=32)
        >>> trainer.train(dataset, epochs=1, learning_rate=0.005)
        >>> accuracy = trainer.evaluate_dataset(dataset)
    """

    def __init__(self, model, optimizer, loss, batch_size=32, verbose=True):
        if model is None:
            raise TypeError("model must not be None")
        if optimizer is None:
            raise TypeError("optimizer must not be None")
        if loss is None:
            raise TypeError("loss must not be None")
        if batch_size <= 0:
            raise ConfigurationError(f"batch_size must be positive, got {batch_size}")

        dense_layers = [layer for layer in model.layers if isinstance(layer, Dense)]
        if not dense_layers:
            raise ConfigurationError("Model must contain a Dense layer for classification")

        self.model = model
        self.optimizer = optimizer
        self.loss = loss
        self.batch_size = batch_size
        self.verbose = verbose
        self.num_classes = dense_layers[-1].output_size

        self.current_loss = 0.0
        self.current_accuracy = 0.0
        self.history = {'loss': [], 'accuracy': [], 'lr': []}

    def _targets(self, labels):
        one_hot = one_hot_encode(labels, self.num_classes)
        return [Tensor3D.from_array(row.reshape(1, 1, -1)) for row in one_hot]

    def train_batch(self, images, labels, learning_rate):
        """
        One optimization step on a batch.

        Args:
            images: Sequence of Tensor3D (or 3-D arrays) of identical shape
            labels: Integer labels in [0, num_classes)
            learning_rate: Step size handed to the optimizer

        Returns:
            (mean loss, accuracy) over the batch
        """
        labels = np.asarray(labels).astype(int).reshape(-1)
        if len(images) == 0:
            raise ConfigurationError("Cannot train on an empty batch")
        if len(images) != len(labels):
            raise ConfigurationError(f"{len(images)} images but {len(labels)} labels")

        batch = Tensor4D.from_slices([_as_tensor3d(img) for img in images])
        targets = self._targets(labels)
        batch_size = batch.batch_size

        # Forward pass on batch
        outputs = self.model.forward_batch(batch)

        batch_loss = 0.0
        correct = 0
        grad_batch = Tensor4D(*outputs.shape)

        for i in range(batch_size):
            output = outputs.get_slice(i)

            batch_loss += self.loss.calculate(output, targets[i])
            if predicted_class(output) == labels[i]:
                correct += 1

            grad_batch.set_slice(i, self.loss.gradient(output, targets[i]))

        # Clip gradients to prevent explosion
        clip_gradients(grad_batch)

        # Backward pass, then update every layer in forward order
        self.model.backward_batch(grad_batch)
        self.optimizer.step(self.model.layers, learning_rate)

        return batch_loss / batch_size, correct / batch_size

    def train(self, dataset, epochs, learning_rate):
        """
        Train on the dataset's training split.

        Args:
            dataset: Dataset providing load() and get_batches()
            epochs: Number of passes over the training split
            learning_rate: Constant learning rate for these epochs

        Returns:
            Training history dictionary
        """
        images, _ = dataset.load(training=True)
        dataset_size = len(images)
        n_batches = dataset.num_batches(self.batch_size)

        for epoch in range(epochs):
            epoch_loss = 0.0
            epoch_correct = 0
            n_samples = 0

            # Progress bar for batches
            batches = dataset.get_batches(self.batch_size, shuffle=True)
            if self.verbose:
                pbar = tqdm(batches, total=n_batches, desc=f"Epoch {epoch+1}/{epochs}")
            else:
                pbar = batches

            for batch_images, batch_labels in pbar:
                loss, accuracy = self.train_batch(batch_images, batch_labels, learning_rate)

                batch_size = len(batch_images)
                epoch_loss += loss * batch_size
                epoch_correct += round(accuracy * batch_size)
                n_samples += batch_size

                self.current_loss = epoch_loss / n_samples
                self.current_accuracy = epoch_correct / n_samples

                if self.verbose:
                    pbar.set_postfix({
                        'loss': f'{self.current_loss:.4f}',
                        'acc': f'{self.current_accuracy:.4f}'
                    })

            self.history['loss'].append(self.current_loss)
            self.history['accuracy'].append(self.current_accuracy)
            self.history['lr'].append(learning_rate)

            if self.verbose:
                print(f"Epoch {epoch+1}/{epochs} - Samples: {n_samples}/{dataset_size} - "
                      f"Loss: {self.current_loss:.4f} - Acc: {self.current_accuracy:.4f} - "
                      f"LR: {learning_rate:.6f}")

        return self.history

    def evaluate(self, images, labels):
        """
        Evaluate the model without updating it.

        The model is switched to inference mode for the duration of the call
        and each layer's previous mode is restored afterwards.

        Args:
            images: Sequence of Tensor3D (or an (N, C, H, W) array)
            labels: Integer labels

        Returns:
            Tuple of (mean loss, accuracy)
        """
        labels = np.asarray(labels).astype(int).reshape(-1)
        if len(images) == 0:
            raise ConfigurationError("Cannot evaluate on zero samples")
        if len(images) != len(labels):
            raise ConfigurationError("Number of images must match number of labels")

        targets = self._targets(labels)
        modes = [layer.training for layer in self.model.layers]

        total_loss = 0.0
        correct = 0

        self.model.set_training(False)
        try:
            for start in range(0, len(labels), self.batch_size):
                stop = min(start + self.batch_size, len(labels))
                batch = Tensor4D.from_slices([_as_tensor3d(images[i]) for i in range(start, stop)])
                outputs = self.model.forward_batch(batch)

                for offset in range(stop - start):
                    output = outputs.get_slice(offset)
                    total_loss += self.loss.calculate(output, targets[start + offset])
                    if predicted_class(output) == labels[start + offset]:
                        correct += 1
        finally:
            for layer, mode in zip(self.model.layers, modes):
                layer.set_training(mode)

        return total_loss / len(labels), correct / len(labels)

    def evaluate_dataset(self, dataset):
        """Accuracy on the dataset's test split."""
        images, labels = dataset.load(training=False)
        _, accuracy = self.evaluate(images, labels)
        return accuracy
