"""
Experiment configurations for spectral normalization.

This file defines all experiments to be run:
- Baseline (no normalization)
- Spectral normalization with one power-iteration sweep per step
- Spectral normalization with two sweeps per step (experimental setting)
"""

SEED = 42

# Shared configuration across all experiments
SHARED_CONFIG = {
    "epochs": 15,
    "learning_rate": 0.001,
    "optimizer": "adam",
}

# Each experiment is run for all listed batch sizes
EXPERIMENTS = [
    {
        "name": "baseline",
        "norm_type": None,
        "n_power_iteration": 1,
        "batch_sizes": [128],
        "verify": False,
        "description": "CNN without any normalization (baseline for comparison)",
    },
    {
        "name": "spectralnorm",
        "norm_type": "spectralnorm",
        "n_power_iteration": 1,
        "batch_sizes": [128],
        "verify": True,
        "description": "Spectral Normalization - one power-iteration sweep per step",
    },
    {
        "name": "spectralnorm-pi2",
        "norm_type": "spectralnorm",
        "n_power_iteration": 2,
        "batch_sizes": [128],
        "verify": True,
        "description": "Spectral Normalization - two sweeps per step (experimental)",
    },
]

# Training-free estimator check (main.py --verify)
VERIFY_CONFIG = {
    "steps": 50,
    "batch_size": 8,
    "dense_shape": (10, 15),
    "conv_shape": (3, 3, 3, 16),
    "input_hw": (8, 8),
}
