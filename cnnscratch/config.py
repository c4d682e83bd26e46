"""
Training Configuration
======================

Hyperparameter records and the preset catalog offered by the command line.
Learning rates are initial values, decayed by `lr_decay` per epoch.

dropout_rate is kept for reference only: the shipped architectures have no
dropout layer.
"""

from dataclasses import dataclass, replace

from .exceptions import ConfigurationError


@dataclass(frozen=True)
class HyperParameters:
    learning_rate: float
    batch_size: int = 32
    dropout_rate: float = 0.3
    epochs: int = 10
    lr_decay: float = 0.98
    description: str = ''

    def learning_rate_at(self, epoch):
        """Initial rate decayed once per completed epoch."""
        return self.learning_rate * (self.lr_decay ** epoch)

    def with_overrides(self, **overrides):
        """Copy with every non-None override applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


SGD_PRESETS = {
    1: HyperParameters(0.002, 32, 0.3, 10, description='SGD - Phase 1, LR=0.002'),
    2: HyperParameters(0.005, 32, 0.3, 10, description='SGD - Phase 1, LR=0.005'),
    3: HyperParameters(0.01, 32, 0.3, 10, description='SGD - Phase 1, LR=0.01'),
    4: HyperParameters(0.005, 32, 0.2, 20, description='SGD - Phase 2, Dropout=0.2'),
    5: HyperParameters(0.005, 32, 0.4, 20, description='SGD - Phase 2, Dropout=0.4'),
    6: HyperParameters(0.005, 64, 0.3, 20, description='SGD - Phase 2, Batch=64'),
}

ADAM_PRESETS = {
    1: HyperParameters(0.001, 32, 0.3, 50, description='Adam - Phase 3'),
}

PRESETS = {
    'sgd': SGD_PRESETS,
    'adam': ADAM_PRESETS,
}

# SGD as configured by the training front end: tighter clip than the class default
SGD_CLI_OPTIONS = {'momentum': 0.9, 'clip_value': 0.9}


def get_preset(optimizer, key):
    """
    Look up a preset.

    Args:
        optimizer: 'sgd' or 'adam'
        key: Preset number

    Raises:
        ConfigurationError: for an unknown optimizer or preset number
    """
    catalog = PRESETS.get(str(optimizer).lower())
    if catalog is None:
        raise ConfigurationError(f"Unknown optimizer '{optimizer}'. Available: {list(PRESETS.keys())}")

    if key not in catalog:
        raise ConfigurationError(f"Unknown {optimizer} preset {key!r}. Available: {list(catalog.keys())}")

    return catalog[key]
