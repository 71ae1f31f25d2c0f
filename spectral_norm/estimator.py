"""
Power-iteration estimator for the largest singular value of a weight matrix.

This module holds the only non-trivial math of the package:
- L2 normalization with an epsilon guard
- The singular-vector state (u, v) owned by one layer
- The power-iteration update and the sigma = u^T W v^T estimate
- Dispatch between training (update state) and inference (read state)

The layer wrappers in layers.py only decide how their weight is reshaped
into a 2-D matrix; everything else lives here.
"""

import enum
import numbers
import warnings
from dataclasses import InitVar, dataclass

import tensorflow as tf


class Mode(enum.Enum):
    """Execution mode of a forward call."""

    TRAINING = "training"
    INFERENCE = "inference"

    @classmethod
    def from_training(cls, training):
        """
        Map the Keras `training` call argument onto a Mode.

        `None` means the caller did not say, which we treat as inference so
        that the singular vectors are never advanced by accident.
        """
        if isinstance(training, Mode):
            return training
        return cls.TRAINING if training else cls.INFERENCE


def normalize(x, eps):
    """
    Normalizes a tensor with its L2 norm.

    Computes x / (||x||_2 + eps). The eps term keeps the result finite when
    x is exactly zero, at the cost of a norm slightly below 1.

    Args:
        x: Tensor of any shape (in practice a [1, n] or [n, 1] vector)
        eps: Small positive scalar added to the denominator

    Returns:
        Tensor with the same shape as x
    """
    return x / (tf.sqrt(tf.reduce_sum(tf.square(x))) + eps)


@dataclass(frozen=True)
class EstimatorConfig:
    """
    Hyperparameters of the power-iteration estimator.

    Attributes:
        n_power_iteration: Number of update sweeps per training call
        eps: Value added to norms to avoid division by zero
        stacklevel: Stack level of the experimental-setting warning, relative
            to __post_init__ (3 is the code constructing the config)
    """

    n_power_iteration: int = 1
    eps: float = 1e-12
    stacklevel: InitVar[int] = 3

    def __post_init__(self, stacklevel):
        n = self.n_power_iteration
        if isinstance(n, bool) or not isinstance(n, numbers.Integral):
            raise ValueError(f"n_power_iteration must be an integer, got {n!r}")
        if n < 1:
            raise ValueError(f"n_power_iteration must be >= 1, got {n}")
        if not self.eps > 0:
            raise ValueError(f"eps must be positive, got {self.eps!r}")

        # np.int64 and friends are stored as a plain int
        object.__setattr__(self, "n_power_iteration", int(n))

        if self.n_power_iteration > 1:
            # Only a single sweep per step has been validated
            warnings.warn(
                f"n_power_iteration={self.n_power_iteration} is experimental; "
                "only n_power_iteration=1 is a verified configuration",
                UserWarning,
                stacklevel=stacklevel,
            )


class SingularVectorState:
    """
    Approximate left/right singular vectors of one weight matrix.

    SHAPES:
        u: [out_dim, 1]   approximate left singular vector
        v: [1, in_flat]   approximate right singular vector

    The vectors are plain variables (Keras layer weights with trainable=False
    when created by a layer), so they are checkpointed together with the
    weight but never receive gradients. Only SpectralEstimator writes them.
    """

    def __init__(self, u, v):
        if len(u.shape) != 2 or u.shape[1] != 1:
            raise ValueError(f"u must have shape [out_dim, 1], got {u.shape}")
        if len(v.shape) != 2 or v.shape[0] != 1:
            raise ValueError(f"v must have shape [1, in_flat], got {v.shape}")
        self.u = u
        self.v = v

    @classmethod
    def create(cls, out_dim, in_flat, random_v=False, unit_u=False, eps=1e-12,
               dtype=tf.float32):
        """
        Build a free-standing state backed by tf.Variable objects.

        Args:
            out_dim: Rows of the weight matrix
            in_flat: Columns of the weight matrix
            random_v: Draw v from N(0, 1) instead of starting from zeros
            unit_u: L2-normalize the initial u
            eps: Epsilon used when normalizing u
            dtype: Variable dtype
        """
        u = tf.random.normal([out_dim, 1], dtype=dtype)
        if unit_u:
            u = normalize(u, eps)
        if random_v:
            v = tf.random.normal([1, in_flat], dtype=dtype)
        else:
            v = tf.zeros([1, in_flat], dtype=dtype)

        return cls(
            tf.Variable(u, trainable=False, name="sn_u"),
            tf.Variable(v, trainable=False, name="sn_v"),
        )

    @property
    def shape(self):
        """(out_dim, in_flat) of the matrix this state tracks."""
        return (int(self.u.shape[0]), int(self.v.shape[1]))

    def snapshot(self):
        """Return detached copies of (u, v)."""
        return tf.identity(self.u), tf.identity(self.v)


class SpectralEstimator:
    """
    Online power-iteration estimate of the largest singular value.

    KEY IDEA: Keep (u, v) around between calls and advance them by a single
    power-iteration sweep per training step. The weight changes slowly
    between steps, so one sweep is enough to track the dominant singular
    pair without ever running a full SVD.

    FORMULATION:
        Update (training only, repeated n_power_iteration times):
            v <- normalize(u^T W)        # [1, in_flat]
            u <- normalize(W v^T)        # [out_dim, 1]

        Estimate:
            sigma = u^T W v^T            # 1x1, returned as a scalar

    ORDER MATTERS: v is rebuilt from the previous u before u is rebuilt from
    the new v. This is an alternating update, not a simultaneous one.

    GRADIENTS:
        The update runs on tf.stop_gradient(W) and writes variables, so it
        never contributes to backpropagation. sigma is differentiable with
        respect to W only; u and v are treated as constants.

    SIGN: sigma is not clamped. If (u, v) converge to a sign-flipped pair
    the estimate is negative.
    """

    def __init__(self, config=None):
        self.config = config if config is not None else EstimatorConfig()

    @property
    def n_power_iteration(self):
        return self.config.n_power_iteration

    @property
    def eps(self):
        return self.config.eps

    def refine_vectors(self, weight_matrix, state):
        """
        Run the power-iteration sweeps and write the new (u, v) into state.

        Args:
            weight_matrix: 2-D tensor of shape [out_dim, in_flat]
            state: SingularVectorState to update in place
        """
        w = tf.stop_gradient(weight_matrix)
        u = tf.convert_to_tensor(state.u)

        for _ in range(self.n_power_iteration):
            v = normalize(tf.matmul(u, w, transpose_a=True), self.eps)
            u = normalize(tf.matmul(w, v, transpose_b=True), self.eps)

        state.v.assign(v)
        state.u.assign(u)

    @staticmethod
    def compute_sigma(weight_matrix, u, v):
        """
        Approximate largest singular value: sigma = u^T W v^T.

        Args:
            weight_matrix: 2-D tensor of shape [out_dim, in_flat]
            u: [out_dim, 1] left vector
            v: [1, in_flat] right vector

        Returns:
            Scalar tensor
        """
        u = tf.stop_gradient(tf.convert_to_tensor(u))
        v = tf.stop_gradient(tf.convert_to_tensor(v))
        sigma = tf.matmul(tf.matmul(u, weight_matrix, transpose_a=True), v, transpose_b=True)
        return tf.reshape(sigma, [])

    def estimate(self, weight_matrix, state, mode):
        """
        Return sigma for the current call, refining the state first in training.

        Args:
            weight_matrix: 2-D tensor of shape [out_dim, in_flat]
            state: SingularVectorState owned by the caller
            mode: Mode (or a Keras-style training flag)
        """
        if Mode.from_training(mode) is Mode.TRAINING:
            self.refine_vectors(weight_matrix, state)
        return self.compute_sigma(weight_matrix, state.u, state.v)
