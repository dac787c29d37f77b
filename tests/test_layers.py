"""
Tests for neural network layers module.

Tests cover:
- Linear: forward, backward against finite differences, accumulation, shape errors
- LayerNorm: normalization, exact backward, parameter gradients
- PositionalEncoding: table values and length limits
- Embedding: lookup, repeated-id gradient accumulation, learned positions, id checks
"""

import numpy as np
import pytest


def _numerical_input_gradient(layer, x, upstream, epsilon=1e-5):
    """d(sum(upstream * layer(x)))/dx by central differences."""
    gradient = np.zeros_like(x)
    for index in np.ndindex(x.shape):
        original = x[index]
        x[index] = original + epsilon
        plus = np.sum(upstream * layer.forward(x))
        x[index] = original - epsilon
        minus = np.sum(upstream * layer.forward(x))
        x[index] = original
        gradient[index] = (plus - minus) / (2 * epsilon)
    return gradient


def _numerical_parameter_gradient(layer, parameter, x, upstream, epsilon=1e-5):
    gradient = np.zeros_like(parameter)
    for index in np.ndindex(parameter.shape):
        original = parameter[index]
        parameter[index] = original + epsilon
        plus = np.sum(upstream * layer.forward(x))
        parameter[index] = original - epsilon
        minus = np.sum(upstream * layer.forward(x))
        parameter[index] = original
        gradient[index] = (plus - minus) / (2 * epsilon)
    return gradient


class TestLinear:
    """
    Linear layer computes: y = x @ W^T + b
    where W has shape (output_features, input_features)
    """

    def test_forward_matches_manual_computation(self):
        from scratchgpt.layers import Linear

        layer = Linear(4, 3, rng=np.random.default_rng(0))
        layer.bias[:] = [0.1, -0.2, 0.3]
        x = np.random.default_rng(1).standard_normal((5, 4))

        output = layer.forward(x)

        assert output.shape == (5, 3)
        assert np.allclose(output, x @ layer.weights.T + layer.bias)

    def test_no_bias(self):
        from scratchgpt.layers import Linear

        layer = Linear(4, 8, use_bias=False, rng=np.random.default_rng(0))

        assert layer.bias is None
        assert set(layer.get_parameters()) == {"weight"}

    def test_seeded_initialization_is_reproducible(self):
        from scratchgpt.layers import Linear

        first = Linear(6, 6, rng=np.random.default_rng(7))
        second = Linear(6, 6, rng=np.random.default_rng(7))

        assert np.array_equal(first.weights, second.weights)

    def test_backward_matches_numerical_gradients(self):
        from scratchgpt.layers import Linear

        rng = np.random.default_rng(2)
        layer = Linear(3, 4, rng=rng)
        layer.bias[:] = rng.standard_normal(4)
        x = rng.standard_normal((2, 3))
        upstream = rng.standard_normal((2, 4))

        layer.forward(x)
        input_gradient = layer.backward(upstream)

        assert np.allclose(input_gradient, _numerical_input_gradient(layer, x, upstream), atol=1e-7)
        assert np.allclose(
            layer.weight_gradient,
            _numerical_parameter_gradient(layer, layer.weights, x, upstream),
            atol=1e-7,
        )
        assert np.allclose(layer.bias_gradient, np.sum(upstream, axis=0))

    def test_gradients_accumulate_until_zeroed(self):
        """Two backward passes sum their contributions; zero_gradients resets."""
        from scratchgpt.layers import Linear

        rng = np.random.default_rng(3)
        layer = Linear(3, 2, rng=rng)
        x = rng.standard_normal((4, 3))
        upstream = rng.standard_normal((4, 2))

        layer.forward(x)
        layer.backward(upstream)
        single = layer.weight_gradient.copy()
        layer.forward(x)
        layer.backward(upstream)

        assert np.allclose(layer.weight_gradient, 2 * single)

        buffer = layer.weight_gradient
        layer.zero_gradients()
        assert np.all(layer.weight_gradient == 0.0)
        assert layer.get_gradients()["weight"] is buffer, "Zeroing must keep the same buffer"

    def test_wrong_input_width_raises(self):
        from scratchgpt.errors import ShapeMismatch
        from scratchgpt.layers import Linear

        layer = Linear(4, 2, rng=np.random.default_rng(0))

        with pytest.raises(ShapeMismatch):
            layer.forward(np.ones((3, 5)))

    def test_wrong_upstream_shape_raises(self):
        from scratchgpt.errors import ShapeMismatch
        from scratchgpt.layers import Linear

        layer = Linear(4, 2, rng=np.random.default_rng(0))
        layer.forward(np.ones((3, 4)))

        with pytest.raises(ShapeMismatch):
            layer.backward(np.ones((3, 3)))

    def test_backward_without_forward_raises(self):
        from scratchgpt.layers import Linear

        layer = Linear(2, 2, rng=np.random.default_rng(0))

        with pytest.raises(RuntimeError):
            layer.backward(np.ones((1, 2)))


class TestLayerNorm:
    """
    LayerNorm normalizes each row to zero mean and unit variance, then applies
    gamma * x_hat + beta.

    Reference: "Layer Normalization" (Ba et al., 2016)
    """

    def test_output_rows_are_normalized(self):
        from scratchgpt.layers import LayerNorm

        layer = LayerNorm(8)
        x = np.random.default_rng(0).standard_normal((5, 8)) * 3.0 + 2.0

        output = layer.forward(x)

        assert np.allclose(np.mean(output, axis=-1), 0.0, atol=1e-7)
        assert np.allclose(np.std(output, axis=-1), 1.0, atol=1e-4)

    def test_gamma_and_beta_applied(self):
        from scratchgpt.layers import LayerNorm

        layer = LayerNorm(4)
        layer.gamma[:] = 2.0
        layer.beta[:] = 1.0
        x = np.array([[1.0, 2.0, 3.0, 4.0]])

        output = layer.forward(x)

        assert np.allclose(np.mean(output), 1.0)

    def test_backward_matches_numerical_gradients(self):
        from scratchgpt.layers import LayerNorm

        rng = np.random.default_rng(4)
        layer = LayerNorm(5)
        layer.gamma[:] = rng.uniform(0.5, 1.5, 5)
        layer.beta[:] = rng.standard_normal(5)
        x = rng.standard_normal((3, 5))
        upstream = rng.standard_normal((3, 5))

        layer.forward(x)
        input_gradient = layer.backward(upstream)

        assert np.allclose(
            input_gradient, _numerical_input_gradient(layer, x, upstream), rtol=1e-4, atol=1e-7
        )
        assert np.allclose(
            layer.gamma_gradient,
            _numerical_parameter_gradient(layer, layer.gamma, x, upstream),
            atol=1e-7,
        )
        assert np.allclose(layer.beta_gradient, np.sum(upstream, axis=0))

    def test_constant_row_stays_finite(self):
        """A row with zero variance relies on epsilon and must not produce NaN."""
        from scratchgpt.layers import LayerNorm

        layer = LayerNorm(4)
        output = layer.forward(np.full((1, 4), 3.0))
        gradient = layer.backward(np.ones((1, 4)))

        assert np.all(np.isfinite(output))
        assert np.all(np.isfinite(gradient))


class TestPositionalEncoding:
    """
    PE(pos, 2i)   = sin(pos / 10000^(2i/d_model))
    PE(pos, 2i+1) = cos(pos / 10000^(2i/d_model))
    """

    def test_first_position_values(self):
        from scratchgpt.layers import PositionalEncoding

        encoding = PositionalEncoding(10, 6).get_encoding(3)

        assert encoding.shape == (3, 6)
        assert np.allclose(encoding[0, 0::2], 0.0)
        assert np.allclose(encoding[0, 1::2], 1.0)
        assert np.isclose(encoding[1, 0], np.sin(1.0))

    def test_too_long_raises(self):
        from scratchgpt.errors import ShapeMismatch
        from scratchgpt.layers import PositionalEncoding

        with pytest.raises(ShapeMismatch):
            PositionalEncoding(4, 8).get_encoding(5)


class TestEmbedding:
    @pytest.fixture
    def embedding(self):
        from scratchgpt.layers import Embedding

        return Embedding(10, 4, max_sequence_length=6, rng=np.random.default_rng(0))

    def test_forward_is_token_row_plus_position(self, embedding):
        output = embedding.forward(np.array([3, 1, 3]))

        positions = embedding.positional_encoding.get_encoding(3)
        assert output.shape == (3, 4)
        assert np.allclose(output[0], embedding.token_table[3] + positions[0])
        assert np.allclose(output[2], embedding.token_table[3] + positions[2])

    def test_repeated_ids_accumulate(self, embedding):
        """A token used twice receives the sum of both position gradients."""
        embedding.forward(np.array([3, 1, 3]))
        upstream = np.arange(12, dtype=float).reshape(3, 4)

        result = embedding.backward(upstream)

        assert result is None
        assert np.allclose(embedding.token_gradient[3], upstream[0] + upstream[2])
        assert np.allclose(embedding.token_gradient[1], upstream[1])
        assert np.all(embedding.token_gradient[0] == 0.0)

    def test_sinusoidal_has_no_position_parameters(self, embedding):
        assert set(embedding.get_parameters()) == {"token_table"}

    def test_learned_positions_receive_gradients(self):
        from scratchgpt.layers import Embedding, PositionalKind

        embedding = Embedding(
            10, 4, max_sequence_length=6, positional=PositionalKind.LEARNED,
            rng=np.random.default_rng(0),
        )
        embedding.forward(np.array([2, 5]))
        upstream = np.ones((2, 4))
        embedding.backward(upstream)

        assert set(embedding.get_parameters()) == {"token_table", "position_table"}
        assert np.allclose(embedding.position_gradient[:2], 1.0)
        assert np.all(embedding.position_gradient[2:] == 0.0)

    def test_out_of_range_id_raises(self, embedding):
        from scratchgpt.errors import InvalidId

        with pytest.raises(InvalidId) as excinfo:
            embedding.forward(np.array([1, 10]))
        assert excinfo.value.token_id == 10

    def test_too_long_sequence_raises(self, embedding):
        from scratchgpt.errors import ShapeMismatch

        with pytest.raises(ShapeMismatch):
            embedding.forward(np.zeros(7, dtype=int))

    def test_empty_sequence_raises(self, embedding):
        from scratchgpt.errors import ShapeMismatch

        with pytest.raises(ShapeMismatch):
            embedding.forward(np.array([], dtype=int))
