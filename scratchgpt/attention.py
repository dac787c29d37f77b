"""
Multi-Head Causal Self-Attention

Scaled dot-product attention with a causal mask, split across several heads,
with a full backward pass.

The model processes one sequence at a time, so hidden states are
(sequence_length, embedding_dim) matrices. Internally the heads are laid out as
a leading axis: (num_heads, sequence_length, head_dim).

Reference: "Attention Is All You Need" (Vaswani et al., 2017) Section 3.2
           https://arxiv.org/abs/1706.03762

Functions:
    create_causal_mask: Lower-triangular "may attend" mask
    scaled_dot_product_attention: Core attention computation
    attention_backward: Gradient computation for attention

Classes:
    MultiHeadAttention: Causal multi-head self-attention layer with projections
"""

from typing import Dict, Optional, Tuple

import numpy as np

from scratchgpt.activations import softmax, softmax_backward
from scratchgpt.errors import ConfigurationError, ShapeMismatch
from scratchgpt.layers import Linear


def create_causal_mask(sequence_length: int) -> np.ndarray:
    """
    Create a causal (autoregressive) attention mask.

    Returns:
        Boolean array of shape (sequence_length, sequence_length), True where
        position i may attend to position j (j <= i), False above the diagonal.

    Example:
        For sequence_length=3:
        [[True, False, False],
         [True, True,  False],
         [True, True,  True ]]
    """
    return np.tril(np.ones((sequence_length, sequence_length), dtype=bool))


def scaled_dot_product_attention(
    query: np.ndarray,
    key: np.ndarray,
    value: np.ndarray,
    mask: Optional[np.ndarray] = None,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Compute softmax(Q @ K^T / sqrt(d_k)) @ V.

    Masked positions are set to -inf before the softmax, so they receive
    exactly zero weight (not merely a very small one).

    Args:
        query: (heads, seq_q, d_k)
        key: (heads, seq_k, d_k)
        value: (heads, seq_k, d_v)
        mask: Optional boolean (seq_q, seq_k) mask, True = may attend. Every
            row must allow at least one position.

    Returns:
        output: (heads, seq_q, d_v)
        attention_weights: (heads, seq_q, seq_k)
    """
    d_k = query.shape[-1]
    scores = np.matmul(query, np.swapaxes(key, -1, -2)) / np.sqrt(d_k)

    if mask is not None:
        scores = np.where(mask, scores, -np.inf)

    attention_weights = softmax(scores, axis=-1)
    return np.matmul(attention_weights, value), attention_weights


def attention_backward(
    upstream_gradient: np.ndarray,
    query: np.ndarray,
    key: np.ndarray,
    value: np.ndarray,
    attention_weights: np.ndarray,
    mask: Optional[np.ndarray] = None,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Gradients of scaled dot-product attention.

    Args:
        upstream_gradient: d_loss/d_output, shape (heads, seq_q, d_v)
        query, key, value: The forward inputs
        attention_weights: The forward softmax output
        mask: The mask used in the forward pass

    Returns:
        d_query, d_key, d_value
    """
    scaling_factor = np.sqrt(query.shape[-1])

    # output = weights @ value
    d_value = np.matmul(np.swapaxes(attention_weights, -1, -2), upstream_gradient)
    d_attention_weights = np.matmul(upstream_gradient, np.swapaxes(value, -1, -2))

    d_scores = softmax_backward(d_attention_weights, attention_weights)
    if mask is not None:
        d_scores = np.where(mask, d_scores, 0.0)
    d_scores = d_scores / scaling_factor

    # scores = query @ key^T
    d_query = np.matmul(d_scores, key)
    d_key = np.matmul(np.swapaxes(d_scores, -1, -2), query)

    return d_query, d_key, d_value


class MultiHeadAttention:
    """
    Causal Multi-Head Self-Attention.

        MultiHead(X) = Concat(head_1, ..., head_h) @ W^O
        head_i = Attention(X W^Q_i, X W^K_i, X W^V_i) with a causal mask

    Position i never sees positions j > i, which is what lets the model be
    trained on next-token prediction for every position at once.

    Attributes:
        embedding_dimension: Model dimension (d_model)
        num_heads: Number of attention heads (h)
        head_dimension: d_model / h
        query_projection, key_projection, value_projection, output_projection:
            The four Linear layers (W^Q, W^K, W^V, W^O)
        last_attention_weights: Weights from the most recent forward pass,
            shape (heads, seq, seq), kept for inspection

    Reference: "Attention Is All You Need" Section 3.2.2
    """

    def __init__(
        self,
        embedding_dimension: int,
        num_heads: int,
        rng: Optional[np.random.Generator] = None,
    ):
        """
        Raises:
            ConfigurationError: If embedding_dimension is not divisible by num_heads
        """
        if num_heads <= 0 or embedding_dimension % num_heads != 0:
            raise ConfigurationError(
                f"Embedding dimension ({embedding_dimension}) must be divisible by "
                f"number of heads ({num_heads})"
            )

        self.embedding_dimension = embedding_dimension
        self.num_heads = num_heads
        self.head_dimension = embedding_dimension // num_heads

        self.query_projection = Linear(embedding_dimension, embedding_dimension, rng=rng)
        self.key_projection = Linear(embedding_dimension, embedding_dimension, rng=rng)
        self.value_projection = Linear(embedding_dimension, embedding_dimension, rng=rng)
        self.output_projection = Linear(embedding_dimension, embedding_dimension, rng=rng)

        self.last_attention_weights = None
        self._cache = None

    def _split_heads(self, tensor: np.ndarray) -> np.ndarray:
        # (seq, d_model) -> (heads, seq, head_dim)
        sequence_length = tensor.shape[0]
        return tensor.reshape(
            sequence_length, self.num_heads, self.head_dimension
        ).transpose(1, 0, 2)

    def _merge_heads(self, tensor: np.ndarray) -> np.ndarray:
        # (heads, seq, head_dim) -> (seq, d_model)
        sequence_length = tensor.shape[1]
        return tensor.transpose(1, 0, 2).reshape(
            sequence_length, self.embedding_dimension
        )

    def forward(self, hidden_states: np.ndarray) -> np.ndarray:
        """
        Causal self-attention over one sequence.

        Args:
            hidden_states: (sequence_length, embedding_dimension)

        Returns:
            (sequence_length, embedding_dimension)
        """
        if hidden_states.ndim != 2 or hidden_states.shape[1] != self.embedding_dimension:
            raise ShapeMismatch(
                "MultiHeadAttention.forward",
                ("sequence_length", self.embedding_dimension),
                hidden_states.shape,
            )
        sequence_length = hidden_states.shape[0]
        mask = create_causal_mask(sequence_length)

        query = self._split_heads(self.query_projection.forward(hidden_states))
        key = self._split_heads(self.key_projection.forward(hidden_states))
        value = self._split_heads(self.value_projection.forward(hidden_states))

        attention_output, attention_weights = scaled_dot_product_attention(
            query, key, value, mask=mask
        )
        self.last_attention_weights = attention_weights
        self._cache = {
            "query": query,
            "key": key,
            "value": value,
            "weights": attention_weights,
            "mask": mask,
        }

        return self.output_projection.forward(self._merge_heads(attention_output))

    def backward(self, upstream_gradient: np.ndarray) -> np.ndarray:
        """
        Backward pass through output projection, attention and Q/K/V projections.

        Args:
            upstream_gradient: (sequence_length, embedding_dimension)

        Returns:
            Gradient with respect to the hidden states. Q, K and V are all
            projections of the same input, so their three input gradients are summed.
        """
        if self._cache is None:
            raise RuntimeError(
                "MultiHeadAttention.backward() called without a preceding forward()"
            )
        cache = self._cache

        d_concatenated = self.output_projection.backward(upstream_gradient)
        d_attention_output = self._split_heads(d_concatenated)

        d_query, d_key, d_value = attention_backward(
            d_attention_output,
            cache["query"],
            cache["key"],
            cache["value"],
            cache["weights"],
            cache["mask"],
        )

        d_input = self.query_projection.backward(self._merge_heads(d_query))
        d_input = d_input + self.key_projection.backward(self._merge_heads(d_key))
        d_input = d_input + self.value_projection.backward(self._merge_heads(d_value))

        self._cache = None
        return d_input

    def _projections(self) -> Dict[str, Linear]:
        return {
            "query": self.query_projection,
            "key": self.key_projection,
            "value": self.value_projection,
            "output": self.output_projection,
        }

    def zero_gradients(self) -> None:
        for projection in self._projections().values():
            projection.zero_gradients()

    def get_parameters(self) -> Dict[str, np.ndarray]:
        """Return all learnable parameters."""
        params = {}
        for prefix, projection in self._projections().items():
            params.update(
                {f"{prefix}_{k}": v for k, v in projection.get_parameters().items()}
            )
        return params

    def get_gradients(self) -> Dict[str, np.ndarray]:
        """Return all parameter gradients."""
        grads = {}
        for prefix, projection in self._projections().items():
            grads.update(
                {f"{prefix}_{k}": v for k, v in projection.get_gradients().items()}
            )
        return grads
