"""
Adam Optimizer and Gradient Clipping

Reference:
    - "Adam: A Method for Stochastic Optimization" (Kingma & Ba, 2014)
    - "Decoupled Weight Decay Regularization" (Loshchilov & Hutter, 2019)

Classes:
    Adam: Adam with optional decoupled weight decay and built-in clipping

Functions:
    global_gradient_norm: L2 norm over all gradients taken together
    clip_gradient_norm: Scale all gradients by one factor to bound the global norm
    check_finite: Reject gradients holding NaN or Inf
"""

import logging
from typing import Dict, Optional, Tuple

import numpy as np

from scratchgpt.errors import NumericInstability

logger = logging.getLogger(__name__)


def global_gradient_norm(gradients: Dict[str, np.ndarray]) -> float:
    """
    L2 norm of the concatenation of every gradient array.

        norm = sqrt(sum over arrays of sum(g^2))
    """
    total = 0.0
    for gradient in gradients.values():
        total += float(np.sum(np.square(gradient)))
    return float(np.sqrt(total))


def clip_gradient_norm(
    gradients: Dict[str, np.ndarray], max_norm: float
) -> Tuple[Dict[str, np.ndarray], float]:
    """
    Clip gradients by global norm.

    If the global norm exceeds max_norm, every gradient is multiplied by the
    same factor max_norm / norm, so directions are preserved and the clipped
    global norm equals max_norm.

    Args:
        gradients: Parameter name -> gradient array
        max_norm: Maximum allowed global norm (> 0)

    Returns:
        (clipped gradients as a new dict, global norm before clipping).
        The input arrays are not modified.
    """
    if max_norm <= 0:
        raise ValueError("max_norm must be > 0")
    total_norm = global_gradient_norm(gradients)
    clip_coefficient = max_norm / total_norm if total_norm > max_norm else 1.0
    clipped = {name: gradient * clip_coefficient for name, gradient in gradients.items()}
    return clipped, total_norm


def check_finite(gradients: Dict[str, np.ndarray]) -> None:
    """
    Raises:
        NumericInstability: Naming every gradient that holds a NaN or Inf
    """
    bad = [name for name, gradient in gradients.items() if not np.all(np.isfinite(gradient))]
    if bad:
        logger.warning("Skipping optimizer step: non-finite gradients in %s", bad)
        raise NumericInstability("Non-finite gradients", names=bad)


class Adam:
    """
    Adam optimizer with one step counter shared by every parameter.

    Algorithm (at step t, after optional clipping):
        m = beta1 * m + (1 - beta1) * g
        v = beta2 * v + (1 - beta2) * g^2
        m_hat = m / (1 - beta1^t)
        v_hat = v / (1 - beta2^t)
        p = p - lr * (m_hat / (sqrt(v_hat) + eps) + weight_decay * p)

    Parameters are updated in place through the references handed to
    initialize(), so the model sees the new values immediately.

    A step whose gradients contain NaN or Inf is rejected before anything is
    touched: parameters, moments and the step counter stay as they were and
    NumericInstability is raised.

    Attributes:
        first_moment, second_moment: Per-parameter m and v
        step_count: Completed steps (t)
    """

    def __init__(
        self,
        learning_rate: float = 1e-3,
        beta1: float = 0.9,
        beta2: float = 0.999,
        epsilon: float = 1e-8,
        weight_decay: float = 0.0,
        gradient_clip: Optional[float] = None,
    ):
        """
        Args:
            learning_rate: Default step size
            beta1: First-moment decay
            beta2: Second-moment decay
            epsilon: Added to sqrt(v_hat) in the denominator
            weight_decay: Decoupled weight decay (0 disables it)
            gradient_clip: Global-norm threshold applied inside step() (None disables it)
        """
        self.learning_rate = learning_rate
        self.beta1 = beta1
        self.beta2 = beta2
        self.epsilon = epsilon
        self.weight_decay = weight_decay
        self.gradient_clip = gradient_clip

        self.first_moment: Dict[str, np.ndarray] = {}
        self.second_moment: Dict[str, np.ndarray] = {}
        self.step_count: int = 0

        self._params: Optional[Dict[str, np.ndarray]] = None

    @property
    def is_initialized(self) -> bool:
        return self._params is not None

    def initialize(self, parameters: Dict[str, np.ndarray]) -> None:
        """Bind to the live parameter arrays and zero the moments."""
        self._params = parameters
        self.step_count = 0
        self.first_moment = {name: np.zeros_like(p) for name, p in parameters.items()}
        self.second_moment = {name: np.zeros_like(p) for name, p in parameters.items()}

    def step(
        self, gradients: Dict[str, np.ndarray], learning_rate: Optional[float] = None
    ) -> float:
        """
        Apply one update to every parameter.

        Args:
            gradients: Parameter name -> gradient, same names as the parameters
            learning_rate: Override for this step only

        Returns:
            Global gradient norm before clipping

        Raises:
            RuntimeError: If initialize() has not been called
            KeyError: If a gradient has no matching parameter
            NumericInstability: If any gradient element is NaN or Inf
        """
        if self._params is None:
            raise RuntimeError("Optimizer not initialized. Call initialize() first.")

        unknown = [name for name in gradients if name not in self._params]
        if unknown:
            raise KeyError(f"Gradients for unknown parameters: {unknown}")

        check_finite(gradients)

        if self.gradient_clip is not None:
            gradients, norm = clip_gradient_norm(gradients, self.gradient_clip)
        else:
            norm = global_gradient_norm(gradients)

        self.step_count += 1
        lr = learning_rate if learning_rate is not None else self.learning_rate
        bias_correction_1 = 1.0 - self.beta1**self.step_count
        bias_correction_2 = 1.0 - self.beta2**self.step_count

        for name, gradient in gradients.items():
            param = self._params[name]
            m = self.first_moment[name]
            v = self.second_moment[name]

            m *= self.beta1
            m += (1.0 - self.beta1) * gradient
            v *= self.beta2
            v += (1.0 - self.beta2) * np.square(gradient)

            update = (m / bias_correction_1) / (np.sqrt(v / bias_correction_2) + self.epsilon)
            if self.weight_decay:
                update = update + self.weight_decay * param
            param -= lr * update

        logger.debug("Adam step %d, lr=%g, grad norm=%.4f", self.step_count, lr, norm)
        return norm

    def get_state(self) -> dict:
        """Copy of the optimizer state for checkpointing."""
        return {
            "first_moment": {k: v.copy() for k, v in self.first_moment.items()},
            "second_moment": {k: v.copy() for k, v in self.second_moment.items()},
            "step_count": self.step_count,
        }

    def load_state(self, state: dict) -> None:
        """
        Restore a state produced by get_state(). The arrays are copied, so the
        caller's state stays untouched by later steps.

        Raises:
            KeyError: If the state lacks a moment for a bound parameter
        """
        first = state["first_moment"]
        second = state["second_moment"]
        if self._params is not None:
            missing = [name for name in self._params if name not in first or name not in second]
            if missing:
                raise KeyError(f"Optimizer state missing parameters: {missing}")
        self.first_moment = {k: np.array(v, dtype=np.float64) for k, v in first.items()}
        self.second_moment = {k: np.array(v, dtype=np.float64) for k, v in second.items()}
        self.step_count = int(state["step_count"])
