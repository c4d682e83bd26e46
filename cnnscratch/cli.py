"""
Command line training entry point.

Usage examples:
    python -m cnnscratch --arch simple --optimizer sgd --preset 2 --download
    cnnscratch-train --arch vgg11 --optimizer adam --epochs 5 --limit 2000 --seed 0
"""

import argparse
import sys

from .config import PRESETS, SGD_CLI_OPTIONS, get_preset
from .data import Cifar10Dataset
from .exceptions import CNNError
from .losses import CrossEntropyLoss
from .model import ARCHITECTURES, build_model
from .optimizers import Adam, SGD
from .serialization import save_model
from .trainer import Trainer
from .utils import get_model_summary, set_random_seed
from .visualizations import plot_training_history, print_weights


def parse_args(argv=None):
    p = argparse.ArgumentParser("cnnscratch-train", description="Train a from-scratch CNN on CIFAR-10")
    p.add_argument("--arch", choices=sorted(ARCHITECTURES), default="simple")
    p.add_argument("--optimizer", choices=sorted(PRESETS), default="sgd")
    p.add_argument("--preset", type=int, default=None,
                   help="Hyperparameter preset number (default: 2 for sgd, 1 for adam)")
    p.add_argument("--epochs", type=int, default=None)
    p.add_argument("--batch-size", type=int, default=None)
    p.add_argument("--lr", type=float, default=None, help="Initial learning rate")
    p.add_argument("--data-dir", type=str, default="cifar10_data")
    p.add_argument("--download", action="store_true", help="Download CIFAR-10 if missing")
    p.add_argument("--output", type=str, default="cifar10_model.json")
    p.add_argument("--seed", type=int, default=None)
    p.add_argument("--limit", type=int, default=None, help="Use only the first N samples of each split")
    p.add_argument("--show-weights", action="store_true", help="Print all weights after training")
    p.add_argument("--plot", type=str, default=None, help="Save the training curves to this image file")
    return p.parse_args(argv)


def build_optimizer(name):
    if name == 'adam':
        return Adam()
    return SGD(**SGD_CLI_OPTIONS)


def run(args):
    preset_key = args.preset if args.preset is not None else (1 if args.optimizer == 'adam' else 2)
    params = get_preset(args.optimizer, preset_key).with_overrides(
        epochs=args.epochs, batch_size=args.batch_size, learning_rate=args.lr)

    print("CIFAR-10 CNN Training")
    print("=====================")
    print(f"Architecture: {args.arch} | Optimizer: {args.optimizer} | {params}")

    if args.seed is not None:
        set_random_seed(args.seed)

    model = build_model(args.arch, seed=args.seed)
    print(get_model_summary(model))

    dataset = Cifar10Dataset(args.data_dir, seed=args.seed, limit=args.limit)
    if args.download:
        dataset.download_and_extract()

    trainer = Trainer(model, build_optimizer(args.optimizer), CrossEntropyLoss(),
                      batch_size=params.batch_size)
    trainer.history['val_accuracy'] = []

    for epoch in range(params.epochs):
        lr = params.learning_rate_at(epoch)
        print(f"\nEpoch {epoch + 1}/{params.epochs} (lr={lr:.3e})")

        trainer.train(dataset, epochs=1, learning_rate=lr)
        accuracy = trainer.evaluate_dataset(dataset)
        trainer.history['val_accuracy'].append(accuracy)
        print(f"Validation Accuracy: {accuracy:.2%}")

    save_model(model, args.output)

    if args.show_weights:
        print_weights(model)
    if args.plot:
        plot_training_history(trainer.history, save_path=args.plot, show=False)

    return trainer.history


def main(argv=None):
    args = parse_args(argv)
    try:
        run(args)
    except CNNError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
