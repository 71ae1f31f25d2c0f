"""
Keras layers whose weight is divided by its largest singular value.

Spectral Normalization (Miyato et al., 2018)

KEY IDEA: Bound the Lipschitz constant of a linear map by 1 by dividing its
weight matrix by sigma(W), the largest singular value. sigma(W) is tracked
online with power iteration (see estimator.py) instead of a full SVD.

All variants share one forward pass:
    W_mat = reshape(W)                         # variant-specific, [out, in_flat]
    sigma = estimator.estimate(W_mat, (u, v))  # refines (u, v) only in training
    y = activation(linear_op(x, W / sigma) + b)

Variants:
    SNDense  - matmul, v starts at zero
    SNLinear - matmul, u starts L2-normalized, activation is mandatory
    SNConv2D - 2-D convolution, v starts random-normal
"""

import numpy as np
import tensorflow as tf

from spectral_norm.estimator import (
    EstimatorConfig,
    Mode,
    SingularVectorState,
    SpectralEstimator,
    normalize,
)


class SpectralNormLayer(tf.keras.layers.Layer):
    """
    Base class for spectrally normalized linear operations.

    Subclasses provide:
        kernel_rank     - required rank of the weight tensor
        kernel_name     - attribute/weight name ("weight" or "filter")
        weight_matrix() - the 2-D [out_dim, in_flat] view of the weight
        linear_op()     - the operation applied with the normalized weight

    IMPORTANT: The layer is built from explicit tensors, so all variables are
    created in __init__ and the layer is usable immediately (no build step).
    """

    kernel_rank = None
    kernel_name = "weight"
    random_v = False
    unit_u = False

    def __init__(
        self,
        kernel,
        bias,
        activation=None,
        n_power_iteration=1,
        eps=1e-12,
        **kwargs,
    ):
        # The layer dtype always follows the kernel; an explicit dtype only
        # matters for plain lists (from_config)
        dtype = kwargs.pop("dtype", None)
        kernel = tf.convert_to_tensor(kernel, dtype_hint=dtype or tf.float32)
        bias = tf.convert_to_tensor(bias, dtype=kernel.dtype)
        layer_type = type(self).__name__

        # Fail fast: an invalid layer must never be constructed
        if kernel.shape.rank != self.kernel_rank:
            raise ValueError(
                f"The rank of the '{self.kernel_name}' tensor must be "
                f"{self.kernel_rank} for {layer_type}, got {kernel.shape.rank}."
            )
        if bias.shape.rank != 1:
            raise ValueError(
                f"The rank of the 'bias' tensor must be 1 for {layer_type}, "
                f"got {bias.shape.rank}."
            )
        if bias.shape[0] != kernel.shape[-1]:
            raise ValueError(
                f"The 'bias' length ({bias.shape[0]}) must match the output "
                f"size of '{self.kernel_name}' ({kernel.shape[-1]}) for {layer_type}."
            )

        super().__init__(dtype=kernel.dtype.name, **kwargs)

        self.activation = tf.keras.activations.get(activation)
        self.estimator = SpectralEstimator(
            EstimatorConfig(
                n_power_iteration=n_power_iteration,
                eps=eps,
                stacklevel=3 + self._init_depth(),
            )
        )

        # Output axis is last for both [in, out] and [kh, kw, cIn, cOut]
        self.out_dim = int(kernel.shape[-1])
        self.in_flat = int(np.prod(kernel.shape[:-1]))

        # Learnable parameters
        kernel_var = self.add_weight(
            name=self.kernel_name,
            shape=tuple(kernel.shape),
            initializer="zeros",
            dtype=kernel.dtype.name,
            trainable=True,
        )
        kernel_var.assign(kernel)
        setattr(self, self.kernel_name, kernel_var)

        self.bias = self.add_weight(
            name="bias",
            shape=tuple(bias.shape),
            initializer="zeros",
            dtype=kernel.dtype.name,
            trainable=True,
        )
        self.bias.assign(bias)

        # Power-iteration state (non-trainable: excluded from gradients)
        self.u = self.add_weight(
            name="sn_u",
            shape=(self.out_dim, 1),
            initializer=tf.keras.initializers.RandomNormal(mean=0.0, stddev=1.0),
            dtype=kernel.dtype.name,
            trainable=False,
        )
        if self.unit_u:
            self.u.assign(normalize(tf.convert_to_tensor(self.u), eps))

        self.v = self.add_weight(
            name="sn_v",
            shape=(1, self.in_flat),
            initializer=(
                tf.keras.initializers.RandomNormal(mean=0.0, stddev=1.0)
                if self.random_v
                else "zeros"
            ),
            dtype=kernel.dtype.name,
            trainable=False,
        )
        self.state = SingularVectorState(self.u, self.v)

    @classmethod
    def _init_depth(cls):
        """Number of chained __init__ frames from the subclass down to this one."""
        return sum(
            1
            for klass in cls.__mro__
            if issubclass(klass, SpectralNormLayer) and "__init__" in vars(klass)
        )

    @property
    def n_power_iteration(self):
        return self.estimator.n_power_iteration

    @property
    def eps(self):
        return self.estimator.eps

    @property
    def kernel(self):
        """The learnable weight/filter variable."""
        return getattr(self, self.kernel_name)

    def weight_matrix(self):
        raise NotImplementedError

    def linear_op(self, inputs, kernel):
        raise NotImplementedError

    def normalized_kernel(self, training=None):
        """
        Compute W / sigma for this call.

        In training mode the singular vectors are refined first, so sigma is
        computed from the updated (u, v). In inference mode (u, v) are only
        read.
        """
        mode = Mode.from_training(training)
        sigma = self.estimator.estimate(self.weight_matrix(), self.state, mode)
        return tf.convert_to_tensor(self.kernel) / sigma

    def call(self, inputs, training=None):
        """
        Forward pass: activation(linear_op(inputs, W / sigma) + bias).

        Args:
            inputs: Input tensor
            training: Boolean flag for training vs inference mode
        """
        kernel = self.normalized_kernel(training)
        outputs = self.linear_op(inputs, kernel)
        outputs = tf.nn.bias_add(outputs, self.bias)
        return self.activation(outputs)

    def get_custom_norm(self):
        """Return the singular-vector state for inspection."""
        return self.state

    def verify_spectral_norm(self):
        """
        Compare the power-iteration estimate against an exact SVD.

        Checks:
        1. The estimate sigma_hat against the true largest singular value
        2. The true largest singular value of W / sigma_hat (should be ~1)
        3. ||u|| and ||v|| (should be ~1 once the state has been refined)

        Returns:
            Dict with verification metrics
        """
        w = self.weight_matrix()
        sigma = self.estimator.compute_sigma(w, self.u, self.v)
        if float(sigma) == 0.0:
            raise ValueError(
                f"The sigma estimate of '{self.name}' is 0, so W / sigma is "
                "undefined. Make at least one training call before verifying."
            )

        true_sigma = tf.linalg.svd(w, compute_uv=False)[0]
        normalized_sigma = tf.linalg.svd(w / sigma, compute_uv=False)[0]

        # sigma_hat may be negative for a sign-flipped (u, v) pair
        relative_error = tf.abs(tf.abs(sigma) - true_sigma) / (true_sigma + self.eps)

        return {
            "estimated_sigma": float(sigma.numpy()),
            "true_sigma": float(true_sigma.numpy()),
            "relative_error": float(relative_error.numpy()),
            "normalized_spectral_norm": float(normalized_sigma.numpy()),
            "u_norm": float(tf.norm(self.u).numpy()),
            "v_norm": float(tf.norm(self.v).numpy()),
        }

    def get_config(self):
        # u and v are weights, not config: they come back with the saved weights
        config = super().get_config()
        config.update(
            {
                self.kernel_name: self.kernel.numpy().tolist(),
                "bias": self.bias.numpy().tolist(),
                "activation": tf.keras.activations.serialize(self.activation),
                "n_power_iteration": self.n_power_iteration,
                "eps": self.eps,
                "dtype": tf.as_dtype(self.kernel.dtype).name,
            }
        )
        return config


@tf.keras.utils.register_keras_serializable(package="spectral_norm")
class SNDense(SpectralNormLayer):
    """
    Densely-connected layer with a spectrally normalized weight.

    Implements: activation(matmul(inputs, W / sigma) + bias)

    Args:
        weight: 2-D weight of shape [input size, output size]
        bias: 1-D bias of shape [output size]
        activation: Element-wise activation (None = identity)
        n_power_iteration: Power-iteration sweeps per training call
        eps: Epsilon for vector normalization
    """

    kernel_rank = 2
    kernel_name = "weight"

    def __init__(
        self, weight, bias, activation=None, n_power_iteration=1, eps=1e-12, **kwargs
    ):
        super().__init__(
            weight,
            bias,
            activation=activation,
            n_power_iteration=n_power_iteration,
            eps=eps,
            **kwargs,
        )

    def weight_matrix(self):
        # [in, out] -> [out, in]
        return tf.transpose(self.weight)

    def linear_op(self, inputs, kernel):
        return tf.matmul(inputs, kernel)


@tf.keras.utils.register_keras_serializable(package="spectral_norm")
class SNLinear(SNDense):
    """
    Linear layer variant of SNDense.

    Differs only in construction: the activation must be given explicitly
    and u starts as a unit vector rather than a raw normal sample.
    """

    unit_u = True

    def __init__(
        self, weight, bias, activation, n_power_iteration=1, eps=1e-12, **kwargs
    ):
        super().__init__(
            weight,
            bias,
            activation=activation,
            n_power_iteration=n_power_iteration,
            eps=eps,
            **kwargs,
        )


@tf.keras.utils.register_keras_serializable(package="spectral_norm")
class SNConv2D(SpectralNormLayer):
    """
    2-D convolution layer with a spectrally normalized filter.

    The filter [kh, kw, cIn, cOut] is viewed as the matrix
    [cOut, kh * kw * cIn] for power iteration, then the full 4-D filter is
    divided by sigma before the convolution.

    Args:
        filter: 4-D filter of shape [filter height, filter width, in channels, out channels]
        bias: 1-D bias of shape [out channels]
        activation: Element-wise activation (None = identity)
        strides: (stride height, stride width) or a single int
        padding: "valid" or "same"
        dilations: (dilation height, dilation width) or a single int
        n_power_iteration: Power-iteration sweeps per training call
        eps: Epsilon for vector normalization
    """

    kernel_rank = 4
    kernel_name = "filter"
    random_v = True

    def __init__(
        self,
        filter,
        bias,
        activation=None,
        strides=(1, 1),
        padding="valid",
        dilations=(1, 1),
        n_power_iteration=1,
        eps=1e-12,
        **kwargs,
    ):
        if not isinstance(padding, str) or padding.upper() not in ("SAME", "VALID"):
            raise ValueError(f"padding must be 'same' or 'valid', got {padding!r}")
        padding = padding.upper()

        super().__init__(
            filter,
            bias,
            activation=activation,
            n_power_iteration=n_power_iteration,
            eps=eps,
            **kwargs,
        )
        self.strides = tuple(strides) if isinstance(strides, (tuple, list)) else (strides, strides)
        self.dilations = (
            tuple(dilations) if isinstance(dilations, (tuple, list)) else (dilations, dilations)
        )
        self.padding = padding

    def weight_matrix(self):
        # [kh, kw, cIn, cOut] -> [kh * kw * cIn, cOut] -> [cOut, kh * kw * cIn]
        return tf.transpose(tf.reshape(self.filter, [self.in_flat, self.out_dim]))

    def get_config(self):
        config = super().get_config()
        config.update(
            {
                "strides": self.strides,
                "padding": self.padding.lower(),
                "dilations": self.dilations,
            }
        )
        return config

    def linear_op(self, inputs, kernel):
        return tf.nn.conv2d(
            inputs,
            kernel,
            strides=[1, self.strides[0], self.strides[1], 1],
            padding=self.padding,
            dilations=[1, self.dilations[0], self.dilations[1], 1],
        )
