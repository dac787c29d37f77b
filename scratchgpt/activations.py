"""
Activation Functions

Element-wise nonlinearities and the softmax used by attention and the loss,
each paired with its backward pass.

Functions:
    softmax / softmax_backward: Row-wise probability distribution and its gradient
    log_softmax: Numerically stable log of softmax (used by cross-entropy)
    gelu / gelu_backward: Gaussian Error Linear Unit (tanh approximation)
    relu / relu_backward: Rectified Linear Unit

Classes:
    ActivationKind: The closed set of nonlinearities a feed-forward block can use

Reference:
    - "Attention Is All You Need" (Vaswani et al., 2017) - Softmax in attention
    - "Gaussian Error Linear Units" (Hendrycks & Gimpel, 2016) - GELU activation
"""

from enum import Enum

import numpy as np

SQRT_2_OVER_PI = np.sqrt(2.0 / np.pi)
GELU_CUBIC_COEFFICIENT = 0.044715


def softmax(logits: np.ndarray, axis: int = -1) -> np.ndarray:
    """
    Compute softmax along ``axis``.

    The maximum is subtracted before exponentiating, so every exponent is <= 0
    and exp() cannot overflow. Entries equal to -inf (masked positions) become
    exactly zero, provided at least one entry in the row is finite.

    Args:
        logits: Input array of any shape
        axis: Axis to normalize over (default: last axis)

    Returns:
        Array of the same shape whose values along ``axis`` sum to 1
    """
    max_logit = np.max(logits, axis=axis, keepdims=True)
    exponentials = np.exp(logits - max_logit)
    return exponentials / np.sum(exponentials, axis=axis, keepdims=True)


def softmax_backward(
    upstream_gradient: np.ndarray, softmax_output: np.ndarray
) -> np.ndarray:
    """
    Gradient of the loss with respect to the softmax input.

    Uses the per-row form of the softmax Jacobian:
        d_loss/d_z_i = s_i * (d_loss/d_s_i - sum_j(s_j * d_loss/d_s_j))

    Args:
        upstream_gradient: d_loss/d_softmax_output, same shape as softmax_output
        softmax_output: Output of the forward softmax

    Returns:
        d_loss/d_logits, same shape as the inputs
    """
    weighted_sum = np.sum(upstream_gradient * softmax_output, axis=-1, keepdims=True)
    return softmax_output * (upstream_gradient - weighted_sum)


def log_softmax(logits: np.ndarray, axis: int = -1) -> np.ndarray:
    """
    Log of softmax via log-sum-exp.

    Stays finite for arbitrarily large gaps between logits, where
    ``np.log(softmax(x))`` would produce -inf for the small entries.
    """
    shifted = logits - np.max(logits, axis=axis, keepdims=True)
    return shifted - np.log(np.sum(np.exp(shifted), axis=axis, keepdims=True))


def gelu(x: np.ndarray) -> np.ndarray:
    """
    GELU activation (tanh approximation).

        GELU(x) ≈ 0.5 * x * (1 + tanh(sqrt(2/pi) * (x + 0.044715 * x^3)))
    """
    inner = SQRT_2_OVER_PI * (x + GELU_CUBIC_COEFFICIENT * np.power(x, 3))
    return 0.5 * x * (1.0 + np.tanh(inner))


def gelu_backward(upstream_gradient: np.ndarray, x: np.ndarray) -> np.ndarray:
    """
    Gradient of GELU with respect to its input.

        d(GELU)/dx = 0.5 * (1 + tanh(z)) + 0.5 * x * sech^2(z) * dz/dx
        z = sqrt(2/pi) * (x + 0.044715 * x^3)
        dz/dx = sqrt(2/pi) * (1 + 3 * 0.044715 * x^2)

    Args:
        upstream_gradient: Gradient flowing back from the next layer
        x: The pre-activation values cached by the forward pass
    """
    z = SQRT_2_OVER_PI * (x + GELU_CUBIC_COEFFICIENT * np.power(x, 3))
    tanh_z = np.tanh(z)
    dz_dx = SQRT_2_OVER_PI * (1.0 + 3.0 * GELU_CUBIC_COEFFICIENT * np.power(x, 2))
    sech_squared_z = 1.0 - np.power(tanh_z, 2)

    gelu_derivative = 0.5 * (1.0 + tanh_z) + 0.5 * x * sech_squared_z * dz_dx
    return upstream_gradient * gelu_derivative


def relu(x: np.ndarray) -> np.ndarray:
    """ReLU(x) = max(0, x)."""
    return np.maximum(0, x)


def relu_backward(upstream_gradient: np.ndarray, x: np.ndarray) -> np.ndarray:
    """
    Gradient of ReLU: 1 where x > 0, else 0.

    The subgradient at exactly x = 0 is taken as 0.
    """
    return upstream_gradient * (x > 0).astype(upstream_gradient.dtype)


class ActivationKind(Enum):
    """Nonlinearity used inside the feed-forward block."""

    GELU = "gelu"
    RELU = "relu"

    @classmethod
    def parse(cls, value) -> "ActivationKind":
        """Accept an ActivationKind or its configuration string ("gelu"/"relu")."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            choices = ", ".join(kind.value for kind in cls)
            raise ValueError(
                f"Unknown activation {value!r}; expected one of: {choices}"
            ) from None


def activation_forward(kind: ActivationKind, x: np.ndarray) -> np.ndarray:
    """Apply the nonlinearity selected by ``kind``."""
    if kind is ActivationKind.GELU:
        return gelu(x)
    if kind is ActivationKind.RELU:
        return relu(x)
    raise ValueError(f"Unsupported activation: {kind!r}")


def activation_backward(
    kind: ActivationKind, upstream_gradient: np.ndarray, x: np.ndarray
) -> np.ndarray:
    """Backward pass of the nonlinearity selected by ``kind``."""
    if kind is ActivationKind.GELU:
        return gelu_backward(upstream_gradient, x)
    if kind is ActivationKind.RELU:
        return relu_backward(upstream_gradient, x)
    raise ValueError(f"Unsupported activation: {kind!r}")
