"""
Training and evaluation functions using tf.GradientTape.

Every training step calls the model with training=True, which also advances
the (u, v) state of each spectral layer. Evaluation calls it with
training=False, so the singular vectors stay frozen. After each epoch the
sigma estimate of every spectral layer is recorded in the history.
"""

import tensorflow as tf
from tqdm import tqdm


def collect_sigmas(norm_layers):
    """
    Read the current sigma estimate of every spectral layer.

    Uses the stored (u, v) without refining them, so calling this never
    changes layer state.

    Returns:
        Dict mapping layer name -> float sigma
    """
    sigmas = {}
    for layer in norm_layers:
        sigma = layer.estimator.compute_sigma(layer.weight_matrix(), layer.u, layer.v)
        sigmas[layer.name] = float(sigma.numpy())
    return sigmas


def _train_epoch(model, train_ds, optimizer, loss_fn, loss_metric, acc_metric):
    """One pass over train_ds; u and v are not trainable, so never in the tape."""
    trainable_vars = model.trainable_variables
    loss_metric.reset_state()
    acc_metric.reset_state()

    pbar = tqdm(train_ds, desc="Training", leave=False)
    for x_batch, y_batch in pbar:
        with tf.GradientTape() as tape:
            logits = model(x_batch, training=True)
            loss = loss_fn(y_batch, logits)

        gradients = tape.gradient(loss, trainable_vars)
        optimizer.apply_gradients(zip(gradients, trainable_vars))

        loss_metric.update_state(loss)
        acc_metric.update_state(y_batch, logits)
        pbar.set_postfix(
            {"loss": f"{loss_metric.result():.4f}", "acc": f"{acc_metric.result():.4f}"}
        )

    return float(loss_metric.result()), float(acc_metric.result())


def train_model(model, norm_layers, train_ds, val_ds, epochs, learning_rate):
    """
    Train the model with Adam and a GradientTape loop.

    Args:
        model: Keras model
        norm_layers: List of spectral normalization layers (may be empty)
        train_ds: Training dataset (tf.data.Dataset)
        val_ds: Validation dataset
        epochs: Number of training epochs
        learning_rate: Learning rate for optimizer

    Returns:
        history: Dict with keys 'train_loss', 'train_accuracy', 'val_loss',
            'val_accuracy' and 'sigma' (layer name -> list of per-epoch values)
    """
    optimizer = tf.keras.optimizers.Adam(learning_rate=learning_rate)
    loss_fn = tf.keras.losses.CategoricalCrossentropy(from_logits=True)
    loss_metric = tf.keras.metrics.Mean(name="train_loss")
    acc_metric = tf.keras.metrics.CategoricalAccuracy(name="train_accuracy")

    history = {
        "train_loss": [],
        "train_accuracy": [],
        "val_loss": [],
        "val_accuracy": [],
        "sigma": {layer.name: [] for layer in norm_layers},
    }

    print(
        f"\nTraining {epochs} epoch(s), lr={learning_rate}, "
        f"{len(norm_layers)} spectral layer(s)"
    )

    for epoch in range(epochs):
        train_loss, train_acc = _train_epoch(
            model, train_ds, optimizer, loss_fn, loss_metric, acc_metric
        )
        val_loss, val_acc = evaluate_model(model, val_ds, loss_fn)

        history["train_loss"].append(train_loss)
        history["train_accuracy"].append(train_acc)
        history["val_loss"].append(float(val_loss))
        history["val_accuracy"].append(float(val_acc))

        sigmas = collect_sigmas(norm_layers)
        for name, sigma in sigmas.items():
            history["sigma"][name].append(sigma)

        line = (
            f"  [{epoch + 1}/{epochs}] loss {train_loss:.4f} acc {train_acc:.4f}"
            f" | val loss {val_loss:.4f} acc {val_acc:.4f}"
        )
        if sigmas:
            line += " | σ̂ " + " ".join(f"{n}={s:.3f}" for n, s in sigmas.items())
        print(line)

    return history


def evaluate_model(model, dataset, loss_fn):
    """
    Evaluate model on a dataset.

    Runs the model in inference mode: spectral layers divide by sigma
    computed from their stored (u, v) and do not advance them.

    Args:
        model: Keras model
        dataset: tf.data.Dataset to evaluate on
        loss_fn: Loss function

    Returns:
        Tuple of (average_loss, accuracy)
    """
    loss_metric = tf.keras.metrics.Mean()
    acc_metric = tf.keras.metrics.CategoricalAccuracy()

    for x_batch, y_batch in dataset:
        logits = model(x_batch, training=False)
        loss_metric.update_state(loss_fn(y_batch, logits))
        acc_metric.update_state(y_batch, logits)

    return loss_metric.result().numpy(), acc_metric.result().numpy()


def evaluate_final_test(model, test_ds):
    """Evaluate on the held-out test split and return the metrics as floats."""
    loss_fn = tf.keras.losses.CategoricalCrossentropy(from_logits=True)
    test_loss, test_acc = evaluate_model(model, test_ds, loss_fn)

    print(f"✓ Test loss {test_loss:.4f}, accuracy {test_acc:.4f} ({test_acc * 100:.2f}%)")

    return {
        "test_loss": float(test_loss),
        "test_accuracy": float(test_acc),
    }
