"""
Transformer Architecture Components

The position-wise feed-forward network, the pre-norm transformer block that
combines it with causal self-attention, and the homogeneous stack of blocks
that forms the body of the model.

Every sub-layer produces a fresh output array and residual additions build new
arrays as well; nothing is modified in place, so the residual branch and the
sub-layer branch never alias each other's buffers.

Reference: "Attention Is All You Need" (Vaswani et al., 2017) Section 3.1, 3.3
           "On Layer Normalization in the Transformer Architecture" (Xiong et al., 2020)

Classes:
    FeedForwardNetwork: Position-wise feed-forward network
    TransformerBlock: Single pre-norm decoder block
    TransformerStack: Ordered sequence of identical blocks
"""

from typing import Dict, List, Optional

import numpy as np

from scratchgpt.activations import (
    ActivationKind,
    activation_backward,
    activation_forward,
)
from scratchgpt.attention import MultiHeadAttention
from scratchgpt.layers import LayerNorm, Linear


class FeedForwardNetwork:
    """
    Position-wise Feed-Forward Network.

        FFN(x) = Linear_2(activation(Linear_1(x)))

    Applied to every position independently. Attention mixes information
    between positions; this block transforms each position on its own and is
    where most of the model's nonlinearity lives.

    Reference: "Attention Is All You Need" Section 3.3

    Attributes:
        embedding_dimension: Input/output dimension (d_model)
        hidden_dimension: Inner dimension (d_ff)
        activation: Which nonlinearity sits between the two linear layers
    """

    def __init__(
        self,
        embedding_dimension: int,
        hidden_dimension: Optional[int] = None,
        activation: ActivationKind = ActivationKind.GELU,
        rng: Optional[np.random.Generator] = None,
    ):
        """
        Args:
            embedding_dimension: Input and output dimension
            hidden_dimension: Inner dimension (default: 4 * embedding_dimension)
            activation: Nonlinearity (GELU or ReLU)
            rng: Random generator for initialization
        """
        self.embedding_dimension = embedding_dimension
        self.hidden_dimension = hidden_dimension or (4 * embedding_dimension)
        self.activation = ActivationKind.parse(activation)

        self.linear_1 = Linear(embedding_dimension, self.hidden_dimension, rng=rng)
        self.linear_2 = Linear(self.hidden_dimension, embedding_dimension, rng=rng)

        # Output of linear_1 before the nonlinearity
        self._pre_activation_cache = None

    def forward(self, input_tensor: np.ndarray) -> np.ndarray:
        pre_activation = self.linear_1.forward(input_tensor)
        self._pre_activation_cache = pre_activation
        return self.linear_2.forward(activation_forward(self.activation, pre_activation))

    def backward(self, upstream_gradient: np.ndarray) -> np.ndarray:
        if self._pre_activation_cache is None:
            raise RuntimeError(
                "FeedForwardNetwork.backward() called without a preceding forward()"
            )
        d_activated = self.linear_2.backward(upstream_gradient)
        d_pre_activation = activation_backward(
            self.activation, d_activated, self._pre_activation_cache
        )
        self._pre_activation_cache = None
        return self.linear_1.backward(d_pre_activation)

    def zero_gradients(self) -> None:
        self.linear_1.zero_gradients()
        self.linear_2.zero_gradients()

    def get_parameters(self) -> Dict[str, np.ndarray]:
        """Return all learnable parameters."""
        params = {}
        params.update(
            {f"ffn_linear1_{k}": v for k, v in self.linear_1.get_parameters().items()}
        )
        params.update(
            {f"ffn_linear2_{k}": v for k, v in self.linear_2.get_parameters().items()}
        )
        return params

    def get_gradients(self) -> Dict[str, np.ndarray]:
        """Return all parameter gradients."""
        grads = {}
        grads.update(
            {f"ffn_linear1_{k}": v for k, v in self.linear_1.get_gradients().items()}
        )
        grads.update(
            {f"ffn_linear2_{k}": v for k, v in self.linear_2.get_gradients().items()}
        )
        return grads


class TransformerBlock:
    """
    Single Pre-LayerNorm Transformer Decoder Block.

    Architecture:
        h   = x + Attention(LayerNorm_1(x))
        out = h + FeedForward(LayerNorm_2(h))

    Backward runs the same composition in exact reverse. At each residual
    addition the incoming gradient goes unchanged to both the skip path and the
    sub-layer path, and the two contributions are summed where the paths meet.
    """

    def __init__(
        self,
        embedding_dimension: int,
        num_heads: int,
        ffn_hidden_dimension: Optional[int] = None,
        activation: ActivationKind = ActivationKind.GELU,
        layer_norm_epsilon: float = 1e-5,
        rng: Optional[np.random.Generator] = None,
    ):
        self.embedding_dimension = embedding_dimension
        self.num_heads = num_heads

        self.attention_layer_norm = LayerNorm(embedding_dimension, layer_norm_epsilon)
        self.self_attention = MultiHeadAttention(
            embedding_dimension=embedding_dimension, num_heads=num_heads, rng=rng
        )
        self.ffn_layer_norm = LayerNorm(embedding_dimension, layer_norm_epsilon)
        self.feed_forward = FeedForwardNetwork(
            embedding_dimension=embedding_dimension,
            hidden_dimension=ffn_hidden_dimension,
            activation=activation,
            rng=rng,
        )

    def forward(self, input_tensor: np.ndarray) -> np.ndarray:
        """
        Args:
            input_tensor: (sequence_length, embedding_dimension)

        Returns:
            (sequence_length, embedding_dimension)
        """
        attention_output = self.self_attention.forward(
            self.attention_layer_norm.forward(input_tensor)
        )
        post_attention = input_tensor + attention_output

        ffn_output = self.feed_forward.forward(self.ffn_layer_norm.forward(post_attention))
        return post_attention + ffn_output

    def backward(self, upstream_gradient: np.ndarray) -> np.ndarray:
        """
        Args:
            upstream_gradient: Gradient with respect to the block output

        Returns:
            Gradient with respect to the block input
        """
        # out = post_attention + FFN(LN2(post_attention))
        d_normed_for_ffn = self.feed_forward.backward(upstream_gradient)
        d_post_attention = upstream_gradient + self.ffn_layer_norm.backward(
            d_normed_for_ffn
        )

        # post_attention = x + Attention(LN1(x))
        d_normed_for_attention = self.self_attention.backward(d_post_attention)
        return d_post_attention + self.attention_layer_norm.backward(
            d_normed_for_attention
        )

    def _sublayers(self) -> Dict[str, object]:
        return {
            "attn_ln_": self.attention_layer_norm,
            "ffn_ln_": self.ffn_layer_norm,
            "attn_": self.self_attention,
            "": self.feed_forward,
        }

    def zero_gradients(self) -> None:
        for sublayer in self._sublayers().values():
            sublayer.zero_gradients()

    def get_parameters(self) -> Dict[str, np.ndarray]:
        """Return all learnable parameters."""
        params = {}
        for prefix, sublayer in self._sublayers().items():
            params.update({f"{prefix}{k}": v for k, v in sublayer.get_parameters().items()})
        return params

    def get_gradients(self) -> Dict[str, np.ndarray]:
        """Return all parameter gradients."""
        grads = {}
        for prefix, sublayer in self._sublayers().items():
            grads.update({f"{prefix}{k}": v for k, v in sublayer.get_gradients().items()})
        return grads


class TransformerStack:
    """
    Stack of Transformer Blocks.

    A plain ordered list of blocks with identical structure, each owning its
    own parameters. Forward walks the list front to back, backward walks it
    back to front.

    Attributes:
        blocks: List of TransformerBlock instances
        num_blocks: Number of transformer blocks
    """

    def __init__(
        self,
        num_blocks: int,
        embedding_dimension: int,
        num_heads: int,
        ffn_hidden_dimension: Optional[int] = None,
        activation: ActivationKind = ActivationKind.GELU,
        layer_norm_epsilon: float = 1e-5,
        rng: Optional[np.random.Generator] = None,
    ):
        self.num_blocks = num_blocks
        self.embedding_dimension = embedding_dimension
        self.num_heads = num_heads

        self.blocks: List[TransformerBlock] = [
            TransformerBlock(
                embedding_dimension=embedding_dimension,
                num_heads=num_heads,
                ffn_hidden_dimension=ffn_hidden_dimension,
                activation=activation,
                layer_norm_epsilon=layer_norm_epsilon,
                rng=rng,
            )
            for _ in range(num_blocks)
        ]

    def forward(self, input_tensor: np.ndarray) -> np.ndarray:
        hidden_states = input_tensor
        for block in self.blocks:
            hidden_states = block.forward(hidden_states)
        return hidden_states

    def backward(self, upstream_gradient: np.ndarray) -> np.ndarray:
        gradient = upstream_gradient
        for block in reversed(self.blocks):
            gradient = block.backward(gradient)
        return gradient

    def zero_gradients(self) -> None:
        for block in self.blocks:
            block.zero_gradients()

    def get_parameters(self) -> Dict[str, np.ndarray]:
        """Return all learnable parameters from all blocks."""
        params = {}
        for i, block in enumerate(self.blocks):
            params.update({f"block_{i}_{k}": v for k, v in block.get_parameters().items()})
        return params

    def get_gradients(self) -> Dict[str, np.ndarray]:
        """Return all parameter gradients from all blocks."""
        grads = {}
        for i, block in enumerate(self.blocks):
            grads.update({f"block_{i}_{k}": v for k, v in block.get_gradients().items()})
        return grads
