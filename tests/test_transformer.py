"""
Tests for transformer module (FeedForwardNetwork, TransformerBlock, TransformerStack).

Tests cover:
- Feed-forward network shapes, activation choice and gradients
- Pre-norm block: shape preservation, exact backward, causality
- Stack: block ordering, parameter naming, gradient accumulation
"""

import numpy as np
import pytest


def _numerical_input_gradient(module, x, upstream, epsilon=1e-5):
    gradient = np.zeros_like(x)
    for index in np.ndindex(x.shape):
        original = x[index]
        x[index] = original + epsilon
        plus = np.sum(upstream * module.forward(x))
        x[index] = original - epsilon
        minus = np.sum(upstream * module.forward(x))
        x[index] = original
        gradient[index] = (plus - minus) / (2 * epsilon)
    return gradient


class TestFeedForwardNetwork:
    """
    FFN(x) = Linear_2(activation(Linear_1(x)))

    Reference: "Attention Is All You Need" Section 3.3
    """

    def test_output_shape(self):
        from scratchgpt.transformer import FeedForwardNetwork

        ffn = FeedForwardNetwork(8, 32, rng=np.random.default_rng(0))

        output = ffn.forward(np.random.default_rng(1).standard_normal((5, 8)))

        assert output.shape == (5, 8), "FFN output shape should match input shape"

    def test_default_hidden_dimension(self):
        from scratchgpt.transformer import FeedForwardNetwork

        assert FeedForwardNetwork(16).hidden_dimension == 64

    @pytest.mark.parametrize("activation", ["gelu", "relu"])
    def test_backward_matches_numerical_gradient(self, activation):
        from scratchgpt.transformer import FeedForwardNetwork

        rng = np.random.default_rng(2)
        ffn = FeedForwardNetwork(4, 8, activation=activation, rng=rng)
        x =rng.standard_normal((3, 4))
        upstream = rng.standard_normal((3, 4))

        ffn.forward(x)
        analytical = ffn.backward(upstream)

        assert np.allclose(
            analytical, _numerical_input_gradient(ffn, x, upstream), rtol=1e-4, atol=1e-6
        )

    def test_parameter_names(self):
        from scratchgpt.transformer import FeedForwardNetwork

        ffn = FeedForwardNetwork(4, 8)

        assert set(ffn.get_parameters()) == {
            "ffn_linear1_weight",
            "ffn_linear1_bias",
            "ffn_linear2_weight",
            "ffn_linear2_bias",
        }


class TestTransformerBlock:
    """
    h   = x + Attention(LayerNorm_1(x))
    out = h + FeedForward(LayerNorm_2(h))
    """

    @pytest.fixture
    def block(self):
        from scratchgpt.transformer import TransformerBlock

        return TransformerBlock(8, 2, ffn_hidden_dimension=16, rng=np.random.default_rng(0))

    def test_preserves_shape(self, block):
        output = block.forward(np.random.default_rng(1).standard_normal((6, 8)))

        assert output.shape == (6, 8)

    def test_backward_matches_numerical_gradient(self, block):
        rng = np.random.default_rng(3)
        x = rng.standard_normal((3, 8))
        upstream = rng.standard_normal((3, 8))

        block.forward(x)
        analytical = block.backward(upstream)

        assert np.allclose(
            analytical, _numerical_input_gradient(block, x, upstream), rtol=1e-4, atol=1e-6
        )

    def test_parameter_gradient_matches_numerical(self, block):
        """Spot-check the query projection weights through the whole block."""
        rng = np.random.default_rng(4)
        x = rng.standard_normal((3, 8))
        upstream = rng.standard_normal((3, 8))

        block.zero_gradients()
        block.forward(x)
        block.backward(upstream)
        parameter = block.get_parameters()["attn_query_weight"]
        analytical = block.get_gradients()["attn_query_weight"].copy()

        epsilon = 1e-5
        for index in [(0, 0), (3, 5), (7, 2)]:
            original = parameter[index]
            parameter[index] = original + epsilon
            plus = np.sum(upstream * block.forward(x))
            parameter[index] = original - epsilon
            minus = np.sum(upstream * block.forward(x))
            parameter[index] = original
            numerical = (plus - minus) / (2 * epsilon)
            assert np.isclose(analytical[index], numerical, rtol=1e-4, atol=1e-7), index

    def test_causal(self, block):
        x = np.random.default_rng(5).standard_normal((4, 8))
        before = block.forward(x)
        perturbed = x.copy()
        perturbed[-1] -= 3.0

        after = block.forward(perturbed)

        assert np.allclose(before[:-1], after[:-1])

    def test_parameter_names(self, block):
        names = set(block.get_parameters())

        assert {"attn_ln_gamma", "attn_ln_beta", "ffn_ln_gamma", "ffn_ln_beta"} <= names
        assert "attn_output_weight" in names
        assert "ffn_linear2_bias" in names
        assert names == set(block.get_gradients())


class TestTransformerStack:
    @pytest.fixture
    def stack(self):
        from scratchgpt.transformer import TransformerStack

        return TransformerStack(
            2, 8, 2, ffn_hidden_dimension=16, rng=np.random.default_rng(0)
        )

    def test_forward_runs_blocks_in_order(self, stack):
        x = np.random.default_rng(1).standard_normal((3, 8))

        expected = stack.blocks[1].forward(stack.blocks[0].forward(x))

        assert np.allclose(stack.forward(x), expected)

    def test_backward_matches_numerical_gradient(self, stack):
        rng = np.random.default_rng(2)
        x = rng.standard_normal((2, 8))
        upstream = rng.standard_normal((2, 8))

        stack.forward(x)
        analytical = stack.backward(upstream)

        assert np.allclose(
            analytical, _numerical_input_gradient(stack, x, upstream), rtol=1e-4, atol=1e-6
        )

    def test_blocks_own_separate_parameters(self, stack):
        params = stack.get_parameters()

        assert "block_0_attn_query_weight" in params
        assert "block_1_attn_query_weight" in params
        assert params["block_0_attn_query_weight"] is not params["block_1_attn_query_weight"]
        assert len(params) == 2 * len(stack.blocks[0].get_parameters())

    def test_zero_gradients_clears_every_block(self, stack):
        x = np.random.default_rng(3).standard_normal((2, 8))
        stack.forward(x)
        stack.backward(np.ones((2, 8)))

        stack.zero_gradients()

        assert all(np.all(grad == 0.0) for grad in stack.get_gradients().values())
