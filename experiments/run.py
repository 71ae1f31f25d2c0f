"""
Experiment orchestrator for spectral normalization.

This module runs all experiments defined in config.py, verifies the
power-iteration estimates of trained models against an exact SVD, and
generates all plots.
"""

import os
import sys
import time
from pathlib import Path

# Add project root to path
sys.path.append(str(Path(__file__).parent.parent))

import tensorflow as tf
from experiments.config import EXPERIMENTS, SEED, SHARED_CONFIG, VERIFY_CONFIG
from spectral_norm.data import create_dataloaders, load_fashion_mnist, split_validation
from spectral_norm.layers import SNConv2D, SNDense
from spectral_norm.models import create_cnn
from spectral_norm.train import evaluate_final_test, train_model
from spectral_norm.utilities import (
    load_results,
    plot_sigma_history,
    plot_training_curves,
    plot_verification,
    save_results,
    setup,
)

# Relative error above which a verification is reported as an issue
VERIFY_TOLERANCE = 1e-2


def verify_layers(norm_layers):
    """
    Run verify_spectral_norm() on every layer and print a short report.

    Returns:
        Dict mapping layer name -> verification metrics
    """
    verification = {}
    for layer in norm_layers:
        print(f"  Verifying {layer.name}...")
        metrics = layer.verify_spectral_norm()
        verification[layer.name] = metrics

        print(
            f"    σ̂ = {metrics['estimated_sigma']:.4f} | σ = {metrics['true_sigma']:.4f} "
            f"| rel. error = {metrics['relative_error']:.2e}"
        )
        print(f"    ‖W / σ̂‖₂ = {metrics['normalized_spectral_norm']:.4f}")

        if metrics["relative_error"] < VERIFY_TOLERANCE:
            print(f"    ✓ Verification PASSED (error < {VERIFY_TOLERANCE:g})")
        else:
            print(f"    ⚠ Verification issue (error = {metrics['relative_error']:.2e})")
    return verification


def run_verification(steps=None):
    """
    Training-free check of the estimator.

    Builds a fresh SNDense and SNConv2D, advances their singular vectors
    with `steps` training-mode calls on random inputs, then compares the
    estimate against an exact SVD.
    """
    cfg = VERIFY_CONFIG
    steps = steps if steps is not None else cfg["steps"]

    setup(SEED)

    print("\n" + "=" * 70)
    print(f"ESTIMATOR VERIFICATION ({steps} training steps)")
    print("=" * 70)

    in_size, out_size = cfg["dense_shape"]
    kh, kw, c_in, c_out = cfg["conv_shape"]
    h, w = cfg["input_hw"]
    batch_size = cfg["batch_size"]

    dense = SNDense(
        weight=tf.random.normal([in_size, out_size]),
        bias=tf.zeros([out_size]),
        name="sn_dense",
    )
    conv = SNConv2D(
        filter=tf.random.normal([kh, kw, c_in, c_out]),
        bias=tf.zeros([c_out]),
        padding="same",
        name="sn_conv2d",
    )

    for _ in range(steps):
        dense(tf.random.normal([batch_size, in_size]), training=True)
        conv(tf.random.normal([batch_size, h, w, c_in]), training=True)

    verification = verify_layers([dense, conv])
    passed = all(m["relative_error"] < VERIFY_TOLERANCE for m in verification.values())

    print("\n" + "=" * 70)
    print("✓ ALL CHECKS PASSED" if passed else "⚠ SOME CHECKS FAILED")
    print("=" * 70 + "\n")

    return verification


def run_all():
    """
    Main experiment orchestrator.

    Executes all experiments defined in config.py with automatic result caching.
    If an experiment has already been run, it loads the cached results instead
    of re-running.

    WORKFLOW:
        1. Setup environment (seeds, GPU config)
        2. Load data once
        3. For each experiment configuration:
            a. Check if results exist (skip if yes)
            b. Create model with specified normalization
            c. Train model
            d. Evaluate on test set
            e. Verify sigma estimates (spectral models)
            f. Save results
        4. Generate all plots
        5. Print summary
    """
    print("\n" + "=" * 70)
    print(" " * 15 + "SPECTRAL NORMALIZATION EXPERIMENTS")
    print("=" * 70 + "\n")

    # ========== SETUP ==========
    setup(SEED)

    os.makedirs("results/metrics", exist_ok=True)
    os.makedirs("plots", exist_ok=True)

    # ========== LOAD DATA ==========
    print("\n" + "-" * 70)
    print("LOADING DATA")
    print("-" * 70)
    x_train, y_train, x_test, y_test = load_fashion_mnist()

    # 60k train, 5k val, 5k test
    (x_val, y_val), (x_test_final, y_test_final) = split_validation(x_test, y_test)

    print(
        f"  Final split: {len(x_train)} train, {len(x_val)} val, {len(x_test_final)} test"
    )

    # ========== RUN EXPERIMENTS ==========
    all_results = {}
    total_experiments = sum(len(exp["batch_sizes"]) for exp in EXPERIMENTS)
    current_exp = 0

    for exp_config in EXPERIMENTS:
        for batch_size in exp_config["batch_sizes"]:
            current_exp += 1

            exp_id = f"{exp_config['name']}_bs{batch_size}"
            results_file = f"results/metrics/{exp_id}.json"

            print("\n" + "=" * 70)
            print(f"EXPERIMENT {current_exp}/{total_experiments}: {exp_id}")
            print(f"Description: {exp_config['description']}")
            print("=" * 70)

            if os.path.exists(results_file):
                print(f"\n✓ Loading cached results from {results_file}")
                all_results[exp_id] = load_results(results_file)
                continue

            print(f"\nCreating dataloaders (batch_size={batch_size})...")
            train_ds = create_dataloaders(x_train, y_train, batch_size, shuffle=True)
            val_ds = create_dataloaders(x_val, y_val, batch_size, shuffle=False)
            test_ds = create_dataloaders(
                x_test_final, y_test_final, batch_size, shuffle=False
            )

            print(
                f"\nCreating model with {exp_config['norm_type'] or 'no'} normalization..."
            )
            model, norm_layers = create_cnn(
                norm_type=exp_config["norm_type"],
                n_power_iteration=exp_config["n_power_iteration"],
                input_shape=(28, 28, 1),
                num_classes=10,
            )

            print("\nTraining model...")
            start_time = time.time()

            history = train_model(
                model=model,
                norm_layers=norm_layers,
                train_ds=train_ds,
                val_ds=val_ds,
                epochs=SHARED_CONFIG["epochs"],
                learning_rate=SHARED_CONFIG["learning_rate"],
            )

            training_time = time.time() - start_time
            print(f"\nTraining completed in {training_time:.2f} seconds")

            test_metrics = evaluate_final_test(model, test_ds)

            verification = None
            if exp_config.get("verify", False) and norm_layers:
                print("\n" + "-" * 70)
                print("VERIFYING SIGMA ESTIMATES")
                print("-" * 70)
                verification = verify_layers(norm_layers)

            results = {
                "config": exp_config,
                "batch_size": batch_size,
                "history": history,
                "test_metrics": test_metrics,
                "training_time": training_time,
                "verification": verification,
            }

            save_results(results, results_file)
            all_results[exp_id] = results

            print(f"\n✓ Experiment {exp_id} complete!")

    # ========== GENERATE PLOTS ==========
    print("\n" + "=" * 70)
    print("GENERATING PLOTS")
    print("=" * 70)

    print("\n1. Plotting training curves...")
    plot_training_curves(all_results, "plots/convergence_all.png")

    for exp_id, results in all_results.items():
        if results.get("verification"):
            print(f"\n2. Plotting verification for {exp_id}...")
            plot_verification(
                results["verification"], f"plots/verification_{exp_id}.png", exp_id
            )
        if results["history"].get("sigma"):
            print(f"\n3. Plotting sigma history for {exp_id}...")
            plot_sigma_history(
                results["history"], f"plots/sigma_{exp_id}.png", f"{exp_id}: σ̂ per epoch"
            )

    # ========== SUMMARY ==========
    print("\n" + "=" * 70)
    print("EXPERIMENT SUMMARY")
    print("=" * 70)

    print(
        f"\n{'Experiment':<25} {'Batch Size':<12} {'Final Test Acc':<15} {'Training Time'}"
    )
    print("-" * 70)

    for exp_id, results in sorted(all_results.items()):
        test_acc = results["test_metrics"]["test_accuracy"]
        train_time = results["training_time"]
        batch_size = results["batch_size"]

        print(
            f"{exp_id:<25} {batch_size:<12} {test_acc:>6.4f} ({test_acc * 100:>5.2f}%)  {train_time:>7.1f}s"
        )

    print("\n" + "=" * 70)
    print("ALL EXPERIMENTS COMPLETE!")
    print("=" * 70)
    print("\n✓ Results saved in: results/metrics/")
    print("✓ Plots saved in: plots/\n")


if __name__ == "__main__":
    run_all()
