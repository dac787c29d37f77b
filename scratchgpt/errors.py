"""
Error Types for the Training Engine

Every failure the engine can report has its own exception class so callers can
decide how to recover. Layer operations raise these directly; the training loop
wraps them in a TrainingError that records where in training the failure
happened.

Classes:
    ScratchGPTError: Base class for all engine errors
    ShapeMismatch: A layer received an array of the wrong shape
    UnknownToken: Vocabulary lookup for a token that is not present
    InvalidId: Vocabulary/embedding lookup for an id outside the valid range
    NumericInstability: NaN or Inf found in the loss or in gradients
    ConfigurationError: Invalid hyperparameters, detected before training
    DataLoadError: Training data could not be read or parsed
    CheckpointError: A checkpoint could not be written, read or applied
    TrainingError: Failure inside the training loop, with phase/epoch/step
"""

from typing import Optional, Sequence


class ScratchGPTError(Exception):
    """Base class for all errors raised by scratchgpt."""


class ShapeMismatch(ScratchGPTError, ValueError):
    """
    Dimension mismatch between a layer's expected and actual input.

    Always fatal to the forward/backward call that detected it. Arrays are never
    silently broadcast to make shapes fit.
    """

    def __init__(self, where: str, expected, actual):
        self.where = where
        self.expected = _format_shape(expected)
        self.actual = _format_shape(actual)
        super().__init__(
            f"Shape mismatch in {where}: expected {self.expected}, got {self.actual}"
        )


class UnknownToken(ScratchGPTError, LookupError):
    """Token is not part of the vocabulary."""

    def __init__(self, token: str):
        self.token = token
        super().__init__(f"Unknown token: {token!r}")


class InvalidId(ScratchGPTError, LookupError):
    """Token id is outside [0, vocabulary size)."""

    def __init__(self, token_id: int, size: int):
        self.token_id = token_id
        self.size = size
        super().__init__(f"Invalid token id {token_id} for vocabulary of size {size}")


class NumericInstability(ScratchGPTError, ArithmeticError):
    """NaN or Inf detected in the loss or in gradients."""

    def __init__(self, message: str, names: Optional[Sequence[str]] = None):
        self.names = list(names or [])
        if self.names:
            message = f"{message} (in: {', '.join(self.names)})"
        super().__init__(message)


class ConfigurationError(ScratchGPTError, ValueError):
    """Invalid configuration, raised before any forward pass runs."""


class DataLoadError(ScratchGPTError):
    """Training data could not be loaded."""


class CheckpointError(ScratchGPTError):
    """Checkpoint could not be saved, loaded or restored."""


class TrainingError(ScratchGPTError):
    """
    A failure inside the training loop.

    The original exception is available as ``__cause__``; ``phase``, ``epoch``
    and ``step`` say where training was when it failed.
    """

    def __init__(self, phase: str, epoch: int, step: int, cause: BaseException):
        self.phase = phase
        self.epoch = epoch
        self.step = step
        self.cause = cause
        super().__init__(
            f"{phase} failed at epoch {epoch}, step {step}: "
            f"{type(cause).__name__}: {cause}"
        )


def _format_shape(shape) -> str:
    if isinstance(shape, tuple):
        return "(" + ", ".join(str(d) for d in shape) + ")"
    return str(shape)
