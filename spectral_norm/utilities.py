"""
Utilities for the spectral normalization experiments.
Handles: seed setting, device configuration, I/O operations, plotting
"""

import json
import os
import random

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
import numpy as np
import seaborn as sns
import tensorflow as tf

sns.set_style("whitegrid")
plt.rcParams["figure.figsize"] = (12, 8)
plt.rcParams["font.size"] = 10

COLORS = {
    "baseline": "#2E86AB",  # Blue
    "spectralnorm": "#A23B72",  # Purple
    "spectralnorm-pi2": "#F18F01",  # Orange
}


def setup(seed):
    """
    Initialize the environment with reproducible random seeds and configure
    GPU memory growth.

    Args:
        seed: Integer seed shared by TensorFlow, NumPy and `random`
    """
    tf.random.set_seed(seed)
    np.random.seed(seed)
    random.seed(seed)

    # Deterministic kernels where TensorFlow provides them
    os.environ["TF_DETERMINISTIC_OPS"] = "1"

    gpus = tf.config.list_physical_devices("GPU")
    if gpus:
        try:
            for gpu in gpus:
                tf.config.experimental.set_memory_growth(gpu, True)
            print(f"✓ Configured {len(gpus)} GPU(s) with memory growth enabled")
        except RuntimeError as e:
            # Memory growth must be set before GPUs are initialized
            print(f"GPU configuration error: {e}")
    else:
        print("⚠ No GPU detected - training will use CPU")

    print(f"✓ Environment setup complete (seed={seed})")


def to_serializable(obj):
    """Convert numpy/TensorFlow values (possibly nested) to plain Python types."""
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    elif isinstance(obj, tf.Tensor):
        return obj.numpy().tolist()
    elif isinstance(obj, np.floating):
        return float(obj)
    elif isinstance(obj, np.integer):
        return int(obj)
    elif isinstance(obj, dict):
        return {key: to_serializable(value) for key, value in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [to_serializable(item) for item in obj]
    else:
        return obj


def save_results(results, filepath):
    """
    Save experiment results to a JSON file.

    Args:
        results: Dictionary of results (can contain numpy arrays, TF tensors)
        filepath: Path to save JSON file
    """
    directory = os.path.dirname(filepath)
    if directory:
        os.makedirs(directory, exist_ok=True)

    with open(filepath, "w") as f:
        json.dump(to_serializable(results), f, indent=2)

    print(f"✓ Results saved to {filepath}")


def load_results(filepath):
    """Load experiment results from a JSON file."""
    with open(filepath, "r") as f:
        results = json.load(f)
    return results


def _save_figure(fig, save_path, label):
    fig.tight_layout()
    fig.savefig(save_path, dpi=300, bbox_inches="tight")
    plt.close(fig)
    print(f"✓ {label} saved to {save_path}")


def _style_axis(ax, ylabel, title, xlabel=None):
    if xlabel:
        ax.set_xlabel(xlabel, fontsize=12)
    ax.set_ylabel(ylabel, fontsize=12)
    ax.set_title(title, fontsize=14, fontweight="bold")
    ax.grid(True, alpha=0.3)
    ax.legend(loc="best", fontsize=10)


def plot_training_curves(all_results, save_path):
    """
    Overlay the loss/accuracy curves of every experiment on a 2x2 grid.

    Args:
        all_results: Dict mapping "<experiment>_bs<batch size>" -> results dict
        save_path: Where to save the plot
    """
    panels = {
        "train_loss": "Training Loss",
        "train_accuracy": "Training Accuracy",
        "val_loss": "Validation Loss",
        "val_accuracy": "Validation Accuracy",
    }
    fig, axes = plt.subplots(2, 2, figsize=(15, 12))

    for ax, (metric_key, title) in zip(axes.flat, panels.items()):
        for exp_id, results in all_results.items():
            values = results["history"].get(metric_key)
            if values is None:
                continue
            color = COLORS.get(exp_id.rsplit("_bs", 1)[0], "#000000")
            ax.plot(
                range(1, len(values) + 1),
                values,
                color=color,
                linewidth=2,
                alpha=0.8,
                label=exp_id,
            )
        _style_axis(ax, title, title, xlabel="Epoch")

    _save_figure(fig, save_path, "Training curves")


def plot_verification(verification_results, save_path, title):
    """
    Plot estimated vs exact largest singular value for each spectral layer.

    Left: |sigma_hat| (power iteration) next to sigma (SVD) per layer.
    Right: spectral norm of W / sigma_hat per layer, which should sit at 1.

    Args:
        verification_results: Dict mapping layer name -> verify_spectral_norm() dict
        save_path: Where to save plot
        title: Title prefix (experiment id)
    """
    names = list(verification_results)
    estimated = [abs(verification_results[n]["estimated_sigma"]) for n in names]
    exact = [verification_results[n]["true_sigma"] for n in names]
    normalized = [verification_results[n]["normalized_spectral_norm"] for n in names]

    fig, (left, right) = plt.subplots(1, 2, figsize=(14, 6))
    positions = np.arange(len(names))
    width = 0.38

    left.bar(positions - width / 2, estimated, width, color=COLORS["spectralnorm"], label="|σ̂| (power iteration)")
    left.bar(positions + width / 2, exact, width, color=COLORS["baseline"], label="σ (SVD)")
    _style_axis(left, "Largest singular value", f"{title}: Estimated vs Exact σ")

    right.bar(positions, normalized, color="#06A77D", alpha=0.8, edgecolor="black")
    right.axhline(1.0, color="red", linestyle="--", linewidth=2, label="Target: 1")
    _style_axis(right, "‖W / σ̂‖₂", f"{title}: Normalized Spectral Norm")

    for ax in (left, right):
        ax.set_xticks(positions)
        ax.set_xticklabels(names)

    _save_figure(fig, save_path, "Verification plot")


def plot_sigma_history(history, save_path, title):
    """Plot the per-epoch sigma estimate of every spectral layer."""
    fig, ax = plt.subplots(figsize=(10, 6))

    for name, values in history.get("sigma", {}).items():
        ax.plot(range(1, len(values) + 1), values, linewidth=2, marker="o", markersize=4, label=name)

    _style_axis(ax, "σ̂", title, xlabel="Epoch")
    _save_figure(fig, save_path, "Sigma history")
