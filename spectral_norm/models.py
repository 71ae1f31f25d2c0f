"""
CNN model architecture with optional spectral normalization.

This module provides a CNN builder that can create models with:
- No normalization (baseline)
- Spectral normalization on every conv and dense layer

Both variants share the same architecture so results are directly comparable:
    Conv(30, 5x5) -> ReLU -> Pool -> Conv(60, 5x5) -> ReLU -> Pool
    -> Flatten -> Dense(100) -> ReLU -> Dense(num_classes)
"""

import tensorflow as tf

from spectral_norm.layers import SNConv2D, SNDense

NORM_TYPES = (None, "spectralnorm")


def _he_normal(shape, fan_in):
    """Draw a He-normal weight tensor for an explicitly constructed layer."""
    stddev = (2.0 / fan_in) ** 0.5
    return tf.random.normal(shape, stddev=stddev, dtype=tf.float32)


def create_cnn(
    norm_type=None,
    n_power_iteration=1,
    input_shape=(28, 28, 1),
    num_classes=10,
):
    """
    Create a CNN model with or without spectral normalization.

    Spectral layers are constructed from explicit weight tensors, so their
    shapes are derived here from input_shape rather than inferred by Keras.

    Args:
        norm_type: One of None, 'spectralnorm'
        n_power_iteration: Power-iteration sweeps per training step for SN layers
        input_shape: Shape of input images (default: 28x28x1)
        num_classes: Number of output classes (default: 10)

    Returns:
        model: Keras Model
        norm_layers: List of spectral normalization layers (empty for baseline)
    """
    if norm_type not in NORM_TYPES:
        raise ValueError(f"Unknown norm_type {norm_type!r}, expected one of {NORM_TYPES}")

    spectral = norm_type == "spectralnorm"
    height, width, channels = input_shape
    norm_layers = []

    inputs = tf.keras.Input(shape=input_shape, name="input")
    x = inputs

    # ========== CONV BLOCK 1 ==========
    if spectral:
        conv1 = SNConv2D(
            filter=_he_normal([5, 5, channels, 30], fan_in=5 * 5 * channels),
            bias=tf.zeros([30]),
            padding="same",
            n_power_iteration=n_power_iteration,
            name="conv1",
        )
        norm_layers.append(conv1)
        x = conv1(x)
    else:
        x = tf.keras.layers.Conv2D(
            filters=30,
            kernel_size=(5, 5),
            padding="same",
            kernel_initializer="he_normal",
            name="conv1",
        )(x)

    x = tf.keras.layers.ReLU(name="relu1")(x)
    x = tf.keras.layers.MaxPooling2D(pool_size=(2, 2), name="pool1")(x)

    # ========== CONV BLOCK 2 ==========
    if spectral:
        conv2 = SNConv2D(
            filter=_he_normal([5, 5, 30, 60], fan_in=5 * 5 * 30),
            bias=tf.zeros([60]),
            padding="same",
            n_power_iteration=n_power_iteration,
            name="conv2",
        )
        norm_layers.append(conv2)
        x = conv2(x)
    else:
        x = tf.keras.layers.Conv2D(
            filters=60,
            kernel_size=(5, 5),
            padding="same",
            kernel_initializer="he_normal",
            name="conv2",
        )(x)

    x = tf.keras.layers.ReLU(name="relu2")(x)
    x = tf.keras.layers.MaxPooling2D(pool_size=(2, 2), name="pool2")(x)

    # ========== FLATTEN ==========
    x = tf.keras.layers.Flatten(name="flatten")(x)
    # Two 2x2 pools with 'same' convs: spatial size shrinks by 4
    flat_dim = (height // 4) * (width // 4) * 60

    # ========== DENSE BLOCK 1 ==========
    if spectral:
        dense1 = SNDense(
            weight=_he_normal([flat_dim, 100], fan_in=flat_dim),
            bias=tf.zeros([100]),
            n_power_iteration=n_power_iteration,
            name="dense1",
        )
        norm_layers.append(dense1)
        x = dense1(x)
    else:
        x = tf.keras.layers.Dense(
            units=100, kernel_initializer="he_normal", name="dense1"
        )(x)

    x = tf.keras.layers.ReLU(name="relu3")(x)

    # ========== OUTPUT LAYER ==========
    if spectral:
        output_layer = SNDense(
            weight=_he_normal([100, num_classes], fan_in=100),
            bias=tf.zeros([num_classes]),
            n_power_iteration=n_power_iteration,
            name="output",
        )
        norm_layers.append(output_layer)
        outputs = output_layer(x)
    else:
        outputs = tf.keras.layers.Dense(
            units=num_classes, kernel_initializer="he_normal", name="output"
        )(x)

    model = tf.keras.Model(
        inputs=inputs, outputs=outputs, name=f"cnn_{norm_type or 'baseline'}"
    )

    return model, norm_layers
