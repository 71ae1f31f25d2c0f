"""
Data loading and preprocessing for Fashion MNIST.
Handles dataset loading, scaling, and tf.data pipeline creation.
"""

import numpy as np
import tensorflow as tf


def load_fashion_mnist(num_classes=10):
    """
    Load and preprocess Fashion MNIST.

    Returns:
        Tuple: (x_train, y_train, x_test, y_test)
            x_*: float32 images in [0, 1], shape (N, 28, 28, 1)
            y_*: one-hot labels, shape (N, num_classes)
    """
    (x_train, y_train), (x_test, y_test) = tf.keras.datasets.fashion_mnist.load_data()

    x_train, y_train = preprocess(x_train, y_train, num_classes)
    x_test, y_test = preprocess(x_test, y_test, num_classes)

    print("✓ Loaded Fashion MNIST:")
    print(f"  Training set: {x_train.shape} images, {y_train.shape} labels")
    print(f"  Test set: {x_test.shape} images, {y_test.shape} labels")

    return x_train, y_train, x_test, y_test


def preprocess(images, labels, num_classes=10):
    """
    Scale uint8 images to [0, 1], add a channel axis, one-hot the labels.

    Args:
        images: (N, H, W) uint8 array
        labels: (N,) integer class ids

    Returns:
        Tuple of (images (N, H, W, 1) float32, labels (N, num_classes) float32)
    """
    images = images.astype("float32") / 255.0
    # (N, H, W) -> (N, H, W, 1): conv layers expect NHWC
    images = np.expand_dims(images, axis=-1)
    labels = tf.keras.utils.to_categorical(labels, num_classes).astype("float32")
    return images, labels


def split_validation(x, y, fraction=0.5):
    """Split off the first `fraction` of (x, y) as a validation set."""
    val_size = int(len(x) * fraction)
    return (x[:val_size], y[:val_size]), (x[val_size:], y[val_size:])


def create_dataloaders(x, y, batch_size, shuffle=True):
    """
    Create a tf.data.Dataset pipeline with batching and prefetching.

    Args:
        x: Images array
        y: Labels array (one-hot encoded)
        batch_size: Batch size
        shuffle: Whether to shuffle the dataset

    Returns:
        tf.data.Dataset: Configured data pipeline
    """
    dataset = tf.data.Dataset.from_tensor_slices((x, y))

    if shuffle:
        dataset = dataset.shuffle(buffer_size=len(x))

    dataset = dataset.batch(batch_size)
    dataset = dataset.prefetch(tf.data.AUTOTUNE)

    return dataset
