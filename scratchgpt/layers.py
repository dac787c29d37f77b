"""
Neural Network Layers

The parameterised building blocks shared by every part of the model, each with
a forward and a backward pass.

All layers follow the same contract:
    - forward() caches exactly what backward() needs
    - backward() sums ("accumulates") into the gradient buffers, returns the
      gradient for the previous layer and discards the cache
    - zero_gradients() resets the buffers in place
    - get_parameters() / get_gradients() return name -> array dicts that refer
      to the live buffers, so an optimizer can update them in place

Classes:
    Linear: Fully connected layer (y = xW^T + b)
    LayerNorm: Per-token normalization with learned scale and shift
    PositionalEncoding: Fixed sinusoidal position table
    Embedding: Token lookup table plus positional encoding

Reference:
    - "Attention Is All You Need" (Vaswani et al., 2017)
    - "Layer Normalization" (Ba et al., 2016)
"""

from enum import Enum
from typing import Dict, Optional

import numpy as np

from scratchgpt.errors import InvalidId, ShapeMismatch


def _require_cache(cache, layer_name: str):
    if cache is None:
        raise RuntimeError(f"{layer_name}.backward() called without a preceding forward()")
    return cache


class Linear:
    """
    Fully Connected (Linear) Layer.

    Computes the affine transformation: y = x @ W^T + b

    Used for the query/key/value/output projections in attention, both layers
    of the feed-forward block and the vocabulary projection.

    Attributes:
        weights: Weight matrix of shape (output_features, input_features)
        bias: Bias vector of shape (output_features,) or None
        weight_gradient: Accumulated d_loss/d_weights, same shape as weights
        bias_gradient: Accumulated d_loss/d_bias, same shape as bias

    Weight Initialization:
        Xavier/Glorot: W ~ N(0, sqrt(2 / (fan_in + fan_out)))
    """

    def __init__(
        self,
        input_features: int,
        output_features: int,
        use_bias: bool = True,
        rng: Optional[np.random.Generator] = None,
    ):
        """
        Args:
            input_features: Size of input dimension (fan_in)
            output_features: Size of output dimension (fan_out)
            use_bias: Whether to include a bias term
            rng: Random generator for initialization (seeded for reproducibility)
        """
        rng = rng if rng is not None else np.random.default_rng()
        self.input_features = input_features
        self.output_features = output_features
        self.use_bias = use_bias

        weight_std = np.sqrt(2.0 / (input_features + output_features))
        self.weights = rng.standard_normal((output_features, input_features)) * weight_std
        self.bias = np.zeros(output_features) if use_bias else None

        self.weight_gradient = np.zeros_like(self.weights)
        self.bias_gradient = np.zeros_like(self.bias) if use_bias else None

        self._input_cache = None

    def forward(self, input_tensor: np.ndarray) -> np.ndarray:
        """
        Forward pass: y = x @ W^T + b

        Args:
            input_tensor: Input of shape (..., input_features)

        Returns:
            Output of shape (..., output_features)
        """
        if input_tensor.shape[-1] != self.input_features:
            raise ShapeMismatch(
                "Linear.forward",
                ("...", self.input_features),
                input_tensor.shape,
            )
        self._input_cache = input_tensor

        output_tensor = input_tensor @ self.weights.T
        if self.use_bias:
            output_tensor = output_tensor + self.bias
        return output_tensor

    def backward(self, upstream_gradient: np.ndarray) -> np.ndarray:
        """
        Backward pass.

            d_loss/d_W += upstream^T @ x   (summed over positions)
            d_loss/d_b += sum(upstream)
            d_loss/d_x  = upstream @ W

        Args:
            upstream_gradient: Gradient of shape (..., output_features)

        Returns:
            Gradient with respect to the input, shape (..., input_features)
        """
        input_tensor = _require_cache(self._input_cache, "Linear")
        expected_shape = input_tensor.shape[:-1] + (self.output_features,)
        if upstream_gradient.shape != expected_shape:
            raise ShapeMismatch(
                "Linear.backward", expected_shape, upstream_gradient.shape
            )

        input_2d = input_tensor.reshape(-1, self.input_features)
        upstream_2d = upstream_gradient.reshape(-1, self.output_features)

        self.weight_gradient += upstream_2d.T @ input_2d
        if self.use_bias:
            self.bias_gradient += np.sum(upstream_2d, axis=0)

        input_gradient = (upstream_2d @ self.weights).reshape(input_tensor.shape)
        self._input_cache = None
        return input_gradient

    def zero_gradients(self) -> None:
        self.weight_gradient.fill(0.0)
        if self.use_bias:
            self.bias_gradient.fill(0.0)

    def get_parameters(self) -> Dict[str, np.ndarray]:
        """Return dictionary of learnable parameters."""
        params = {"weight": self.weights}
        if self.use_bias:
            params["bias"] = self.bias
        return params

    def get_gradients(self) -> Dict[str, np.ndarray]:
        """Return dictionary of parameter gradients."""
        grads = {"weight": self.weight_gradient}
        if self.use_bias:
            grads["bias"] = self.bias_gradient
        return grads


class LayerNorm:
    """
    Layer Normalization.

    Normalizes each row (token) across the feature dimension:
        y = gamma * (x - mean) / sqrt(var + eps) + beta

    Backward uses the exact gradient, which accounts for every element of a
    row contributing to that row's mean and variance:
        x_hat = (x - mean) / std
        d_x_hat = upstream * gamma
        d_x = (d_x_hat - mean(d_x_hat) - x_hat * mean(d_x_hat * x_hat)) / std

    Reference: "Layer Normalization" (Ba et al., 2016)
    """

    def __init__(self, normalized_shape: int, epsilon: float = 1e-5):
        """
        Args:
            normalized_shape: Size of the last dimension to normalize over
            epsilon: Small constant added to the variance
        """
        self.normalized_shape = normalized_shape
        self.epsilon = epsilon

        self.gamma = np.ones(normalized_shape)
        self.beta = np.zeros(normalized_shape)

        self.gamma_gradient = np.zeros(normalized_shape)
        self.beta_gradient = np.zeros(normalized_shape)

        self._normalized_cache = None
        self._std_cache = None

    def forward(self, input_tensor: np.ndarray) -> np.ndarray:
        """
        Normalize input and apply the learned affine transformation.

        Args:
            input_tensor: Input of shape (..., normalized_shape)

        Returns:
            Normalized output of the same shape
        """
        if input_tensor.shape[-1] != self.normalized_shape:
            raise ShapeMismatch(
                "LayerNorm.forward",
                ("...", self.normalized_shape),
                input_tensor.shape,
            )

        mean = np.mean(input_tensor, axis=-1, keepdims=True)
        variance = np.var(input_tensor, axis=-1, keepdims=True)
        std = np.sqrt(variance + self.epsilon)
        normalized = (input_tensor - mean) / std

        self._std_cache = std
        self._normalized_cache = normalized

        return self.gamma * normalized + self.beta

    def backward(self, upstream_gradient: np.ndarray) -> np.ndarray:
        """
        Backward pass: accumulate gamma/beta gradients, return input gradient.

        Args:
            upstream_gradient: Gradient from the next layer, same shape as input

        Returns:
            Gradient with respect to the input
        """
        normalized = _require_cache(self._normalized_cache, "LayerNorm")
        std = self._std_cache
        if upstream_gradient.shape != normalized.shape:
            raise ShapeMismatch(
                "LayerNorm.backward", normalized.shape, upstream_gradient.shape
            )

        reduce_axes = tuple(range(upstream_gradient.ndim - 1))
        self.gamma_gradient += np.sum(upstream_gradient * normalized, axis=reduce_axes)
        self.beta_gradient += np.sum(upstream_gradient, axis=reduce_axes)

        d_normalized = upstream_gradient * self.gamma
        mean_d_normalized = np.mean(d_normalized, axis=-1, keepdims=True)
        mean_d_normalized_x_hat = np.mean(
            d_normalized * normalized, axis=-1, keepdims=True
        )
        input_gradient = (
            d_normalized - mean_d_normalized - normalized * mean_d_normalized_x_hat
        ) / std

        self._normalized_cache = None
        self._std_cache = None
        return input_gradient

    def zero_gradients(self) -> None:
        self.gamma_gradient.fill(0.0)
        self.beta_gradient.fill(0.0)

    def get_parameters(self) -> Dict[str, np.ndarray]:
        """Return dictionary of learnable parameters."""
        return {"gamma": self.gamma, "beta": self.beta}

    def get_gradients(self) -> Dict[str, np.ndarray]:
        """Return dictionary of parameter gradients."""
        return {"gamma": self.gamma_gradient, "beta": self.beta_gradient}


class PositionalEncoding:
    """
    Sinusoidal Positional Encoding.

        PE(pos, 2i)   = sin(pos / 10000^(2i/d_model))
        PE(pos, 2i+1) = cos(pos / 10000^(2i/d_model))

    The table is computed once, so every sequence of a given length receives
    exactly the same offsets.

    Reference: "Attention Is All You Need" Section 3.5
    """

    def __init__(self, max_sequence_length: int, embedding_dimension: int):
        self.max_sequence_length = max_sequence_length
        self.embedding_dimension = embedding_dimension
        self.encoding_table = self._create_encoding_table()

    def _create_encoding_table(self) -> np.ndarray:
        positions = np.arange(self.max_sequence_length)[:, np.newaxis]
        dimension_indices = np.arange(self.embedding_dimension)[np.newaxis, :]

        # 2*(i//2) gives the [0, 0, 2, 2, 4, 4, ...] exponent pattern
        angle_rates = 1 / np.power(
            10000.0, (2 * (dimension_indices // 2)) / self.embedding_dimension
        )
        angles = positions * angle_rates

        encoding_table = np.zeros_like(angles)
        encoding_table[:, 0::2] = np.sin(angles[:, 0::2])
        encoding_table[:, 1::2] = np.cos(angles[:, 1::2])
        return encoding_table

    def get_encoding(self, sequence_length: int) -> np.ndarray:
        """
        Positional encoding for the first ``sequence_length`` positions.

        Returns:
            Array of shape (sequence_length, embedding_dimension)
        """
        if sequence_length > self.max_sequence_length:
            raise ShapeMismatch(
                "PositionalEncoding",
                f"sequence length <= {self.max_sequence_length}",
                sequence_length,
            )
        return self.encoding_table[:sequence_length]


class PositionalKind(Enum):
    """How positions are encoded: a fixed sinusoidal table or a learned one."""

    SINUSOIDAL = "sinusoidal"
    LEARNED = "learned"

    @classmethod
    def parse(cls, value) -> "PositionalKind":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            choices = ", ".join(kind.value for kind in cls)
            raise ValueError(
                f"Unknown positional encoding {value!r}; expected one of: {choices}"
            ) from None


class Embedding:
    """
    Token Embedding with Positional Encoding.

    Converts a sequence of token ids into a (sequence_length, embedding_dim)
    matrix: row i is the learned vector of token i plus the encoding of
    position i.

    This is the first layer of the model, so backward() only accumulates into
    the tables and returns nothing.

    Attributes:
        token_table: (vocabulary_size, embedding_dimension) learned vectors
        position_table: (max_sequence_length, embedding_dimension) learned
            offsets, only when positional kind is LEARNED
        token_gradient / position_gradient: Matching gradient accumulators
    """

    def __init__(
        self,
        vocabulary_size: int,
        embedding_dimension: int,
        max_sequence_length: int,
        positional: PositionalKind = PositionalKind.SINUSOIDAL,
        rng: Optional[np.random.Generator] = None,
    ):
        """
        Args:
            vocabulary_size: Number of token ids
            embedding_dimension: Size of each embedding vector
            max_sequence_length: Longest sequence the layer accepts
            positional: Sinusoidal (fixed) or learned position table
            rng: Random generator for initialization
        """
        rng = rng if rng is not None else np.random.default_rng()
        self.vocabulary_size = vocabulary_size
        self.embedding_dimension = embedding_dimension
        self.max_sequence_length = max_sequence_length
        self.positional = PositionalKind.parse(positional)

        scale = 1.0 / np.sqrt(embedding_dimension)
        self.token_table = (
            rng.standard_normal((vocabulary_size, embedding_dimension)) * scale
        )
        self.token_gradient = np.zeros_like(self.token_table)

        if self.positional is PositionalKind.LEARNED:
            self.position_table = (
                rng.standard_normal((max_sequence_length, embedding_dimension)) * scale
            )
            self.position_gradient = np.zeros_like(self.position_table)
            self.positional_encoding = None
        else:
            self.position_table = None
            self.position_gradient = None
            self.positional_encoding = PositionalEncoding(
                max_sequence_length, embedding_dimension
            )

        self._token_ids_cache = None

    def forward(self, token_ids: np.ndarray) -> np.ndarray:
        """
        Look up token vectors and add position offsets.

        Args:
            token_ids: Integer array of shape (sequence_length,)

        Returns:
            Array of shape (sequence_length, embedding_dimension)
        """
        token_ids = np.asarray(token_ids)
        if token_ids.ndim != 1:
            raise ShapeMismatch("Embedding.forward", ("sequence_length",), token_ids.shape)
        sequence_length = token_ids.shape[0]
        if sequence_length == 0 or sequence_length > self.max_sequence_length:
            raise ShapeMismatch(
                "Embedding.forward",
                f"1 <= sequence length <= {self.max_sequence_length}",
                sequence_length,
            )
        if not np.issubdtype(token_ids.dtype, np.integer):
            raise ShapeMismatch("Embedding.forward", "integer token ids", token_ids.dtype)
        out_of_range = (token_ids < 0) | (token_ids >= self.vocabulary_size)
        if np.any(out_of_range):
            raise InvalidId(int(token_ids[out_of_range][0]), self.vocabulary_size)

        self._token_ids_cache = token_ids
        return self.token_table[token_ids] + self._positions(sequence_length)

    def _positions(self, sequence_length: int) -> np.ndarray:
        if self.positional is PositionalKind.LEARNED:
            return self.position_table[:sequence_length]
        return self.positional_encoding.get_encoding(sequence_length)

    def backward(self, upstream_gradient: np.ndarray) -> None:
        """
        Accumulate gradients into the embedding tables.

        A token id used at several positions receives the sum of those rows'
        gradients; np.add.at handles the repeated indices.
        """
        token_ids = _require_cache(self._token_ids_cache, "Embedding")
        expected_shape = (token_ids.shape[0], self.embedding_dimension)
        if upstream_gradient.shape != expected_shape:
            raise ShapeMismatch(
                "Embedding.backward", expected_shape, upstream_gradient.shape
            )

        np.add.at(self.token_gradient, token_ids, upstream_gradient)
        if self.positional is PositionalKind.LEARNED:
            self.position_gradient[: token_ids.shape[0]] += upstream_gradient

        self._token_ids_cache = None

    def zero_gradients(self) -> None:
        self.token_gradient.fill(0.0)
        if self.position_gradient is not None:
            self.position_gradient.fill(0.0)

    def get_parameters(self) -> Dict[str, np.ndarray]:
        """Return dictionary of learnable parameters."""
        params = {"token_table": self.token_table}
        if self.position_table is not None:
            params["position_table"] = self.position_table
        return params

    def get_gradients(self) -> Dict[str, np.ndarray]:
        """Return dictionary of parameter gradients."""
        grads = {"token_table": self.token_gradient}
        if self.position_gradient is not None:
            grads["position_table"] = self.position_gradient
        return grads
