"""
Datasets
========

Sources of (image, label) pairs for the trainer.

- InMemoryDataset: wraps arrays already in memory (tests, small experiments)
- Cifar10Dataset: the CIFAR-10 binary distribution, downloaded on demand

Images are held as float32 arrays in NCHW format (batch, channels, height,
width) with pixel values scaled to [0, 1]. get_batches hands them out as
lists of Tensor3D.
"""

import tarfile
import urllib.request
from pathlib import Path

import numpy as np

from .exceptions import ConfigurationError, DataError, InvalidStateError
from .tensors import Tensor3D

CIFAR10_URL = 'https://www.cs.toronto.edu/~kriz/cifar-10-binary.tar.gz'
CIFAR10_ARCHIVE = 'cifar-10-binary.tar.gz'
CIFAR10_TRAIN_FILES = [f'data_batch_{i}.bin' for i in range(1, 6)]
CIFAR10_TEST_FILES = ['test_batch.bin']
CIFAR10_CLASSES = ['airplane', 'automobile', 'bird', 'cat', 'deer',
                   'dog', 'frog', 'horse', 'ship', 'truck']

IMAGE_SIZE = 32
CHANNELS = 3
RECORD_SIZE = 1 + CHANNELS * IMAGE_SIZE * IMAGE_SIZE  # label byte + 3072 pixels


class Dataset:
    """
    Base class for datasets.

    Subclasses implement _load_split(training) returning (images, labels);
    the base class caches each split and does the batching.

    Args:
        seed: Seed (or numpy Generator) for batch shuffling
    """

    def __init__(self, seed=None):
        self._rng = np.random.default_rng(seed)
        self._splits = {}
        self._active = None

    def _load_split(self, training):
        raise NotImplementedError

    def load(self, training=True):
        """
        Load the training or test split and make it the split get_batches draws from.

        Returns:
            images: float array, shape (N, C, H, W)
            labels: int array, shape (N,)
        """
        if training not in self._splits:
            self._splits[training] = self._load_split(training)

        self._active = self._splits[training]
        return self._active

    def get_batches(self, batch_size, shuffle=True):
        """
        Create mini-batches from the split last loaded.

        Args:
            batch_size: Batch size; the last batch may be smaller
            shuffle: Whether to shuffle

        Returns:
            Iterator of (list of Tensor3D, labels array) tuples

        Raises:
            ConfigurationError, InvalidStateError: at the call, before any batch
        """
        if batch_size <= 0:
            raise ConfigurationError(f"batch_size must be positive, got {batch_size}")
        if self._active is None:
            raise InvalidStateError("Call load() before getting batches")

        images, labels = self._active
        n_samples = len(images)

        if shuffle:
            indices = self._rng.permutation(n_samples)
        else:
            indices = np.arange(n_samples)

        return _iter_batches(images, labels, indices, batch_size)

    def num_batches(self, batch_size):
        if self._active is None:
            raise InvalidStateError("Call load() before counting batches")
        return (len(self._active[0]) + batch_size - 1) // batch_size


def _iter_batches(images, labels, indices, batch_size):
    for start_idx in range(0, len(indices), batch_size):
        batch_indices = indices[start_idx:start_idx + batch_size]
        yield [Tensor3D.from_array(images[i]) for i in batch_indices], labels[batch_indices]


def _checked_members(tar, dest):
    """Archive members, refusing links, devices and paths that leave dest."""
    root = Path(dest).resolve()
    members = []
    for member in tar.getmembers():
        if not (member.isfile() or member.isdir()):
            raise DataError(f"Refusing to extract special member {member.name!r}")
        target = (root / member.name).resolve()
        if target != root and root not in target.parents:
            raise DataError(f"Refusing to extract {member.name!r} outside {root}")
        members.append(member)
    return members


def _extract_archive(tar, dest):
    # Extraction filters arrived in 3.12 and were backported to some 3.9-3.11 patch releases
    if hasattr(tarfile, 'data_filter'):
        tar.extractall(path=dest, filter='data')
    else:
        tar.extractall(path=dest, members=_checked_members(tar, dest))


def _as_image_array(images):
    if isinstance(images, np.ndarray):
        array = images
    else:
        array = np.stack([img.data if isinstance(img, Tensor3D) else np.asarray(img)
                          for img in images])
    if array.ndim != 4:
        raise DataError(f"Images must be 4-D (N, C, H, W), got shape {array.shape}")
    return array


class InMemoryDataset(Dataset):
    """
    Dataset over arrays (or lists of Tensor3D) that are already loaded.

    Example:
        >>> ds = InMemoryDataset(np.zeros((4, 1, 2, 2)), [0, 1, 0, 1], seed=0)
        >>> images, labels = ds.load()
        >>> images.shape
        (4, 1, 2, 2)
    """

    def __init__(self, train_images, train_labels, test_images=None, test_labels=None, seed=None):
        super().__init__(seed)
        self._raw = {True: (train_images, train_labels), False: (test_images, test_labels)}

    def _load_split(self, training):
        images, labels = self._raw[training]
        if images is None or labels is None:
            raise DataError(f"No {'training' if training else 'test'} split was provided")

        images = _as_image_array(images)
        labels = np.asarray(labels).astype(int).reshape(-1)
        if len(images) != len(labels):
            raise DataError(f"{len(images)} images but {len(labels)} labels")

        return images, labels


class Cifar10Dataset(Dataset):
    """
    CIFAR-10 in its binary distribution.

    Each .bin file is a sequence of 3073-byte records: one label byte followed
    by 1024 red, 1024 green and 1024 blue pixel bytes, each plane in row-major
    order.

    Args:
        data_dir: Folder holding the .bin files (or the extracted
            cifar-10-batches-bin folder)
        seed: Seed for batch shuffling
        limit: Keep only the first `limit` samples of each split
        verbose: Print download and load messages
    """

    def __init__(self, data_dir='cifar10_data', seed=None, limit=None, verbose=True):
        super().__init__(seed)
        self.data_dir = Path(data_dir)
        self.limit = limit
        self.verbose = verbose

    def _find_file(self, name):
        """Find a batch file directly in data_dir or one folder below it."""
        candidate = self.data_dir / name
        if candidate.is_file():
            return candidate

        if self.data_dir.is_dir():
            for item in sorted(self.data_dir.iterdir()):
                if item.is_dir() and (item / name).is_file():
                    return item / name

        return None

    def has_required_files(self):
        """True when all five training batches and the test batch are present and non-empty."""
        for name in CIFAR10_TRAIN_FILES + CIFAR10_TEST_FILES:
            path = self._find_file(name)
            if path is None or path.stat().st_size == 0:
                return False
        return True

    def download_and_extract(self, url=CIFAR10_URL):
        """
        Download and unpack the archive unless the batch files already exist.

        Raises:
            DataError: if the download fails or the archive lacks the batch files
        """
        self.data_dir.mkdir(parents=True, exist_ok=True)

        if self.has_required_files():
            return

        archive_path = self.data_dir / CIFAR10_ARCHIVE

        if not archive_path.exists():
            if self.verbose:
                print(f"Downloading CIFAR-10 from {url}...")
            try:
                urllib.request.urlretrieve(url, archive_path)
            except OSError as e:
                raise DataError(f"Failed to download CIFAR-10 dataset from {url}: {e}") from e

        if self.verbose:
            print(f"Extracting {archive_path}...")
        try:
            with tarfile.open(archive_path) as tar:
                _extract_archive(tar, self.data_dir)
        except (tarfile.TarError, OSError) as e:
            raise DataError(f"Failed to extract {archive_path}: {e}") from e

        if not self.has_required_files():
            raise DataError(f"CIFAR-10 data files not found in {self.data_dir.resolve()} "
                            f"after extracting {archive_path}")

    def _read_batch_file(self, path):
        raw = np.fromfile(path, dtype=np.uint8)

        if raw.size == 0 or raw.size % RECORD_SIZE != 0:
            raise DataError(f"{path}: size {raw.size} is not a multiple of the "
                            f"{RECORD_SIZE}-byte record size")

        records = raw.reshape(-1, RECORD_SIZE)
        labels = records[:, 0].astype(int)
        images = records[:, 1:].reshape(-1, CHANNELS, IMAGE_SIZE, IMAGE_SIZE)

        return images, labels

    def _load_split(self, training):
        if not self.data_dir.is_dir():
            raise DataError(f"Data directory {self.data_dir} does not exist")

        names = CIFAR10_TRAIN_FILES if training else CIFAR10_TEST_FILES
        all_images = []
        all_labels = []

        for name in names:
            path = self._find_file(name)
            if path is None:
                raise DataError(f"Missing CIFAR-10 file {name} in {self.data_dir}")

            images, labels = self._read_batch_file(path)
            all_images.append(images)
            all_labels.append(labels)

        images = np.concatenate(all_images)
        labels = np.concatenate(all_labels)

        if np.any(labels >= len(CIFAR10_CLASSES)):
            raise DataError(f"Label byte out of range in {self.data_dir}")

        if self.limit is not None:
            images = images[:self.limit]
            labels = labels[:self.limit]

        # Normalize to [0, 1]
        images = images.astype(np.float32) / 255.0

        if self.verbose:
            split = 'training' if training else 'test'
            print(f"Loaded CIFAR-10 {split} split: {len(images)} samples")

        return images, labels
