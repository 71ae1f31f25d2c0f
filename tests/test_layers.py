"""Tests for spectral layers: construction checks, mode behaviour, shapes, gradients."""

import os

import numpy as np
import pytest
import tensorflow as tf

from spectral_norm.layers import SNConv2D, SNDense, SNLinear


@pytest.fixture
def seed():
    tf.random.set_seed(42)
    np.random.seed(42)


@pytest.fixture
def dense(seed):
    weight = tf.random.normal([10, 15])
    bias = tf.zeros([15])
    return SNDense(weight=weight, bias=bias)


@pytest.fixture
def conv(seed):
    filter = tf.random.normal([8, 8, 3, 16])
    bias = tf.zeros([16])
    return SNConv2D(filter=filter, bias=bias, padding="same")


def snapshot(layer):
    return layer.u.numpy().copy(), layer.v.numpy().copy()


# ========== CONSTRUCTION ==========


def test_dense_state_shapes(dense):
    assert tuple(dense.u.shape) == (15, 1)
    assert tuple(dense.v.shape) == (1, 10)
    assert np.all(dense.v.numpy() == 0.0)
    assert dense.n_power_iteration == 1
    assert dense.eps == 1e-12


def test_conv_state_shapes(conv):
    assert tuple(conv.u.shape) == (16, 1)
    assert tuple(conv.v.shape) == (1, 8 * 8 * 3)
    assert np.any(conv.v.numpy() != 0.0)


def test_linear_starts_with_unit_u(seed):
    layer = SNLinear(tf.random.normal([4, 6]), tf.zeros([6]), activation="relu")
    assert abs(float(tf.norm(layer.u)) - 1.0) < 1e-5
    assert np.all(layer.v.numpy() == 0.0)


def test_uv_are_not_trainable(dense):
    trainable_names = {v.name for v in dense.trainable_weights}
    assert len(dense.trainable_weights) == 2
    assert len(dense.non_trainable_weights) == 2
    assert not any("sn_u" in name or "sn_v" in name for name in trainable_names)


def test_weights_copied_from_arguments(seed):
    weight = tf.random.normal([3, 4])
    bias = tf.constant([1.0, 2.0, 3.0, 4.0])
    layer = SNDense(weight, bias)
    np.testing.assert_array_equal(layer.weight.numpy(), weight.numpy())
    np.testing.assert_array_equal(layer.bias.numpy(), bias.numpy())


def test_dense_rejects_wrong_weight_rank():
    with pytest.raises(ValueError, match="rank of the 'weight'"):
        SNDense(tf.zeros([2, 3, 4]), tf.zeros([4]))


def test_dense_rejects_wrong_bias_rank():
    with pytest.raises(ValueError, match="rank of the 'bias'"):
        SNDense(tf.zeros([2, 3]), tf.zeros([1, 3]))


def test_dense_rejects_mismatched_bias():
    with pytest.raises(ValueError, match="must match"):
        SNDense(tf.zeros([2, 3]), tf.zeros([5]))


def test_conv_rejects_wrong_filter_rank():
    with pytest.raises(ValueError, match="rank of the 'filter'"):
        SNConv2D(tf.zeros([3, 3, 4]), tf.zeros([4]))


def test_conv_rejects_unknown_padding():
    with pytest.raises(ValueError, match="padding"):
        SNConv2D(tf.zeros([3, 3, 1, 4]), tf.zeros([4]), padding="full")


def test_conv_rejects_non_string_padding():
    with pytest.raises(ValueError, match="padding"):
        SNConv2D(tf.zeros([3, 3, 1, 4]), tf.zeros([4]), padding=1)


def test_rejects_invalid_iteration_count():
    with pytest.raises(ValueError):
        SNDense(tf.zeros([2, 3]), tf.zeros([3]), n_power_iteration=0)


@pytest.mark.parametrize(
    "build",
    [
        lambda: SNDense(tf.zeros([2, 3]), tf.zeros([3]), n_power_iteration=2),
        lambda: SNLinear(tf.zeros([2, 3]), tf.zeros([3]), "relu", n_power_iteration=2),
        lambda: SNConv2D(tf.zeros([3, 3, 1, 4]), tf.zeros([4]), n_power_iteration=2),
    ],
    ids=["dense", "linear", "conv"],
)
def test_experimental_warning_points_at_caller(build):
    with pytest.warns(UserWarning, match="experimental") as record:
        build()
    caught = [w for w in record if "experimental" in str(w.message)]
    assert os.path.basename(caught[0].filename) == "test_layers.py"


# ========== DENSE END-TO-END ==========


def test_dense_sigma_is_zero_before_training(dense):
    """v starts at zero, so nothing is normalized until the first training call."""
    sigma = dense.estimator.compute_sigma(dense.weight_matrix(), dense.u, dense.v)
    assert float(sigma) == 0.0


def test_dense_training_updates_state(dense):
    u1, v1 = snapshot(dense)
    dense(tf.random.normal([5, 10]), training=True)
    u2, v2 = snapshot(dense)

    assert np.mean(np.abs(u2 - u1)) > 0
    assert np.mean(np.abs(v2 - v1)) > 0


def test_dense_inference_keeps_state(dense):
    dense(tf.random.normal([5, 10]), training=True)
    u1, v1 = snapshot(dense)

    for _ in range(3):
        out = dense(tf.random.normal([5, 10]), training=False)
    u2, v2 = snapshot(dense)

    assert np.max(np.abs(u2 - u1)) <= 1e-12
    assert np.max(np.abs(v2 - v1)) <= 1e-12
    assert out.shape == (5, 15)


def test_dense_default_mode_is_inference(dense):
    u1, v1 = snapshot(dense)
    dense(tf.random.normal([5, 10]))
    u2, v2 = snapshot(dense)
    np.testing.assert_array_equal(u1, u2)
    np.testing.assert_array_equal(v1, v2)


def test_dense_unit_norm_after_training(dense):
    dense(tf.random.normal([5, 10]), training=True)
    assert abs(float(tf.norm(dense.u)) - 1.0) < 1e-5
    assert abs(float(tf.norm(dense.v)) - 1.0) < 1e-5


def test_dense_output_matches_manual_computation(seed):
    weight = tf.random.normal([6, 4])
    bias = tf.random.normal([4])
    layer = SNDense(weight, bias, activation="relu")
    x = tf.random.normal([3, 6])

    layer(x, training=True)
    out = layer(x, training=False).numpy()

    w = weight.numpy()
    u, v = layer.u.numpy(), layer.v.numpy()
    sigma = (u.T @ w.T @ v.T).item()
    expected = np.maximum(x.numpy() @ (w / sigma) + bias.numpy(), 0.0)

    np.testing.assert_allclose(out, expected, rtol=1e-4, atol=1e-5)
    assert np.all(out >= 0.0)


def test_dense_training_output_uses_updated_vectors(seed):
    weight = tf.random.normal([6, 4])
    layer = SNDense(weight, tf.zeros([4]))
    x = tf.random.normal([2, 6])

    out_train = layer(x, training=True)
    # The inference call that follows reads the vectors written by training
    out_infer = layer(x, training=False)
    np.testing.assert_allclose(out_train.numpy(), out_infer.numpy(), rtol=1e-5, atol=1e-6)


def test_dense_gradients(dense):
    x = tf.random.normal([5, 10])
    with tf.GradientTape() as tape:
        tape.watch(x)
        out = dense(x, training=True)
        loss = tf.reduce_sum(tf.square(out))

    grads = tape.gradient(loss, [x] + dense.trainable_weights)
    for grad in grads:
        assert grad is not None
        assert np.all(np.isfinite(grad.numpy()))
    assert np.sum(np.abs(grads[1].numpy())) > 0


# ========== LINEAR END-TO-END ==========


def test_linear_training_then_inference(seed):
    weight = tf.random.normal([6, 4])
    bias = tf.random.normal([4])
    layer = SNLinear(weight, bias, "relu")
    x = tf.random.normal([3, 6])

    u1, v1 = snapshot(layer)
    layer(x, training=True)
    u2, v2 = snapshot(layer)
    assert np.mean(np.abs(u2 - u1)) > 0
    assert np.mean(np.abs(v2 - v1)) > 0

    out = layer(x, training=False).numpy()
    u3, v3 = snapshot(layer)
    np.testing.assert_array_equal(u2, u3)
    np.testing.assert_array_equal(v2, v3)

    w = weight.numpy()
    sigma = (u3.T @ w.T @ v3.T).item()
    expected = np.maximum(x.numpy() @ (w / sigma) + bias.numpy(), 0.0)
    np.testing.assert_allclose(out, expected, rtol=1e-4, atol=1e-5)
    assert out.shape == (3, 4)
    assert np.all(out >= 0.0)


# ========== CONV END-TO-END ==========


def test_conv_training_updates_state(conv):
    u1, v1 = snapshot(conv)
    out = conv(tf.random.normal([10, 8, 8, 3]), training=True)
    u2, v2 = snapshot(conv)

    assert np.mean(np.abs(u2 - u1)) > 0
    assert np.mean(np.abs(v2 - v1)) > 0
    assert out.shape == (10, 8, 8, 16)


def test_conv_inference_keeps_state(conv):
    conv(tf.random.normal([10, 8, 8, 3]), training=True)
    u1, v1 = snapshot(conv)
    out = conv(tf.random.normal([10, 8, 8, 3]), training=False)
    u2, v2 = snapshot(conv)

    assert np.max(np.abs(u2 - u1)) <= 1e-12
    assert np.max(np.abs(v2 - v1)) <= 1e-12
    assert out.shape == (10, 8, 8, 16)


def test_conv_weight_matrix_layout(conv):
    """[kh, kw, cIn, cOut] -> [cOut, kh * kw * cIn]."""
    matrix = conv.weight_matrix().numpy()
    assert matrix.shape == (16, 192)
    filter = conv.filter.numpy()
    np.testing.assert_array_equal(matrix[5], filter[..., 5].reshape(-1))


def test_conv_strides_and_valid_padding(seed):
    layer = SNConv2D(
        tf.random.normal([3, 3, 2, 4]), tf.zeros([4]), strides=2, padding="valid"
    )
    out = layer(tf.random.normal([1, 9, 9, 2]), training=True)
    assert layer.strides == (2, 2)
    assert out.shape == (1, 4, 4, 4)


def test_conv_dilations(seed):
    layer = SNConv2D(
        tf.random.normal([3, 3, 1, 2]), tf.zeros([2]), dilations=(2, 2)
    )
    out = layer(tf.random.normal([1, 9, 9, 1]), training=False)
    # Effective kernel is 5x5
    assert out.shape == (1, 5, 5, 2)


def test_conv_gradients(conv):
    x = tf.random.normal([2, 8, 8, 3])
    with tf.GradientTape() as tape:
        out = conv(x, training=True)
        loss = tf.reduce_mean(out)

    grads = tape.gradient(loss, conv.trainable_weights)
    assert all(grad is not None for grad in grads)


# ========== VERIFICATION ==========


def test_verify_after_many_steps(seed):
    layer = SNDense(tf.random.normal([10, 15]), tf.zeros([15]))
    for _ in range(100):
        layer(tf.random.normal([4, 10]), training=True)

    metrics = layer.verify_spectral_norm()
    assert set(metrics) == {
        "estimated_sigma",
        "true_sigma",
        "relative_error",
        "normalized_spectral_norm",
        "u_norm",
        "v_norm",
    }
    assert metrics["relative_error"] < 1e-2
    assert metrics["normalized_spectral_norm"] == pytest.approx(1.0, abs=1e-2)
    assert metrics["u_norm"] == pytest.approx(1.0, abs=1e-5)


def test_verify_does_not_change_state(conv):
    u1, v1 = snapshot(conv)
    conv.verify_spectral_norm()
    u2, v2 = snapshot(conv)
    np.testing.assert_array_equal(u1, u2)
    np.testing.assert_array_equal(v1, v2)


def test_get_custom_norm_returns_state(dense):
    state = dense.get_custom_norm()
    assert state.u is dense.u
    assert state.v is dense.v


def test_verify_untrained_dense_raises(dense):
    with pytest.raises(ValueError, match="training call"):
        dense.verify_spectral_norm()


# ========== SERIALIZATION ==========


def test_dense_config_round_trip(seed):
    layer = SNDense(
        tf.random.normal([6, 4]), tf.random.normal([4]), activation="relu", name="dense"
    )
    config = layer.get_config()
    assert config["activation"] == "relu"
    assert config["n_power_iteration"] == 1

    restored = SNDense.from_config(config)
    assert restored.name == "dense"
    assert restored.eps == layer.eps
    np.testing.assert_array_equal(restored.weight.numpy(), layer.weight.numpy())
    np.testing.assert_array_equal(restored.bias.numpy(), layer.bias.numpy())

    x = tf.random.normal([2, 6])
    assert restored(x, training=True).shape == (2, 4)


def test_linear_config_round_trip(seed):
    layer = SNLinear(tf.random.normal([5, 3]), tf.zeros([3]), "tanh")
    restored = SNLinear.from_config(layer.get_config())
    assert isinstance(restored, SNLinear)
    assert abs(float(tf.norm(restored.u)) - 1.0) < 1e-5
    x = tf.random.normal([2, 5])
    restored(x, training=True)
    assert np.all(np.abs(restored(x).numpy()) <= 1.0)


def test_conv_config_round_trip(seed):
    layer = SNConv2D(
        tf.random.normal([3, 3, 2, 4]),
        tf.zeros([4]),
        strides=2,
        padding="same",
        dilations=(1, 1),
    )
    config = layer.get_config()
    assert config["padding"] == "same"
    assert tuple(config["strides"]) == (2, 2)

    restored = SNConv2D.from_config(config)
    assert restored.strides == (2, 2)
    assert restored.padding == "SAME"
    np.testing.assert_array_equal(restored.filter.numpy(), layer.filter.numpy())
    assert restored(tf.random.normal([1, 8, 8, 2]), training=True).shape == (1, 4, 4, 4)


def test_config_round_trip_keeps_kernel_dtype(seed):
    layer = SNDense(
        tf.random.normal([3, 2], dtype=tf.float64), tf.zeros([2], dtype=tf.float64)
    )
    restored = SNDense.from_config(layer.get_config())
    assert tf.as_dtype(restored.weight.dtype) == tf.float64
    assert tf.as_dtype(restored.u.dtype) == tf.float64
