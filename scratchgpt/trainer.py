"""
Training Loop

Runs one training phase (pretraining or instruction tuning) over a list of
examples: one example per optimizer step, epochs numbered from 1.

Per example:
    forward -> loss -> zero gradients -> backward -> finite check, clip, Adam step -> metrics

Between examples the loop checks a stop event, so a stop request (for example
from a SIGINT handler) ends training at the next example boundary with the
model and optimizer in a consistent state that can still be snapshotted.

Classes:
    TrainingState: Where the loop is inside a step
    TrainingSession: Progress of one phase
    EpochReport: Summary handed to epoch callbacks
    Trainer: Drives model, optimizer, metrics and checkpoints
"""

import logging
import math
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

import numpy as np

from scratchgpt.checkpoint import Checkpoint, CheckpointManager
from scratchgpt.data import TrainingExample, example_order
from scratchgpt.errors import CheckpointError, ScratchGPTError, ShapeMismatch, TrainingError
from scratchgpt.metrics import Metrics
from scratchgpt.model import LanguageModel, cross_entropy_loss, cross_entropy_loss_backward
from scratchgpt.optimizer import Adam, check_finite, clip_gradient_norm

logger = logging.getLogger(__name__)

PRETRAINING = "pretraining"
INSTRUCTION_TUNING = "instruction_tuning"


class TrainingState(Enum):
    IDLE = "idle"
    FORWARD_PASS = "forward_pass"
    LOSS_COMPUTED = "loss_computed"
    BACKWARD_PASS = "backward_pass"
    OPTIMIZER_STEP = "optimizer_step"
    EPOCH_COMPLETE = "epoch_complete"


@dataclass
class TrainingSession:
    """
    Progress of one phase.

    Attributes:
        phase: Phase name
        epoch: Last completed epoch (0 before the first one finishes)
        step: Optimizer steps taken in this phase
        last_loss: Loss of the most recent step
        best_loss: Lowest epoch-mean loss so far
        state: Current TrainingState
        epoch_losses: Mean loss of each completed epoch
        stopped: True if a stop request ended the phase early
    """

    phase: str
    epoch: int = 0
    step: int = 0
    last_loss: Optional[float] = None
    best_loss: float = math.inf
    state: TrainingState = TrainingState.IDLE
    epoch_losses: List[float] = field(default_factory=list)
    stopped: bool = False

    @classmethod
    def from_checkpoint(cls, checkpoint: Checkpoint) -> "TrainingSession":
        """Session positioned after the checkpoint's epoch, ready to continue."""
        return cls(
            phase=checkpoint.phase,
            epoch=checkpoint.epoch,
            step=checkpoint.step,
            last_loss=checkpoint.loss,
            best_loss=checkpoint.loss,
        )


@dataclass(frozen=True)
class EpochReport:
    phase: str
    epoch: int
    mean_loss: float
    best_loss: float
    is_best: bool
    steps: int


EpochCallback = Callable[[EpochReport], None]


class Trainer:
    """
    Trains a LanguageModel with Adam, one example per step.

    Example:
        trainer = Trainer(model, Adam(gradient_clip=5.0), metrics=Metrics())
        session = trainer.train(examples, epochs=100, learning_rate=5e-4)
        print(session.epoch_losses[-1])

    Attributes:
        model: The model being trained
        optimizer: Adam instance, bound to the model's parameters on construction
        metrics: Rolling metrics window, updated after every step
        checkpoint_manager: Optional; consulted at every epoch end
        gradient_clip: Global-norm threshold applied before the optimizer step
        session: The session of the phase currently (or last) running
    """

    def __init__(
        self,
        model: LanguageModel,
        optimizer: Adam,
        metrics: Optional[Metrics] = None,
        checkpoint_manager: Optional[CheckpointManager] = None,
        gradient_clip: Optional[float] = None,
        stop_event: Optional[threading.Event] = None,
        checkpoint_metadata: Optional[Dict[str, Any]] = None,
    ):
        self.model = model
        self.optimizer = optimizer
        self.metrics = metrics if metrics is not None else Metrics()
        self.checkpoint_manager = checkpoint_manager
        self.gradient_clip = gradient_clip
        self.stop_event = stop_event if stop_event is not None else threading.Event()
        self.checkpoint_metadata = checkpoint_metadata or {}
        self.session: Optional[TrainingSession] = None
        self._epoch_callbacks: List[EpochCallback] = []

        if not optimizer.is_initialized:
            optimizer.initialize(model.get_parameters())

    def add_epoch_callback(self, callback: EpochCallback) -> None:
        """Register a function called with an EpochReport after every epoch."""
        self._epoch_callbacks.append(callback)

    def remove_epoch_callback(self, callback: EpochCallback) -> None:
        self._epoch_callbacks.remove(callback)

    def request_stop(self) -> None:
        """Ask the loop to stop before the next example."""
        self.stop_event.set()

    @property
    def stop_requested(self) -> bool:
        return self.stop_event.is_set()

    def train(
        self,
        examples: Sequence[TrainingExample],
        epochs: int,
        learning_rate: float,
        phase: str = PRETRAINING,
        shuffle: bool = False,
        seed: int = 0,
        resume: Optional[TrainingSession] = None,
    ) -> TrainingSession:
        """
        Run one phase.

        Args:
            examples: Training examples
            epochs: Total passes over the examples for the phase
            learning_rate: Adam step size for this phase
            phase: Name recorded in sessions, reports and checkpoints
            shuffle: Visit examples in a seeded per-epoch permutation
            seed: Shuffle seed
            resume: Session of the same phase to continue (see restore());
                training picks up at resume.epoch + 1

        Returns:
            The finished (or stopped) TrainingSession

        Raises:
            ValueError: If resume belongs to a different phase
            TrainingError: A step failed; the session keeps the last
                completed epoch and the loss of the last successful step
        """
        if epochs < 0:
            raise ValueError("epochs must be >= 0")
        if resume is not None and resume.phase != phase:
            raise ValueError(f"Cannot resume a {resume.phase} session as {phase}")
        session = resume if resume is not None else TrainingSession(phase=phase)
        session.stopped = False
        session.state = TrainingState.IDLE
        self.session = session

        if not examples:
            logger.warning("No training examples for %s; skipping phase", phase)
            return session
        if resume is not None and session.epoch >= epochs:
            logger.info("%s already completed %d of %d epochs", phase, session.epoch, epochs)
            return session

        logger.info(
            "Starting %s: %d examples, epochs %d-%d, learning rate %g",
            phase,
            len(examples),
            session.epoch + 1,
            epochs,
            learning_rate,
        )

        for epoch in range(session.epoch + 1, epochs + 1):
            total_loss = 0.0
            steps = 0
            for index in example_order(len(examples), shuffle, seed, epoch):
                if self.stop_event.is_set():
                    session.stopped = True
                    break
                total_loss += self._train_step(session, examples[index], learning_rate, epoch)
                steps += 1

            if session.stopped:
                logger.info(
                    "%s stopped during epoch %d after %d steps", phase, epoch, session.step
                )
                break

            self._finish_epoch(session, epoch, total_loss / steps, steps)

        logger.info(
            "Finished %s: %d epochs, %d steps, best loss %.4f",
            phase,
            session.epoch,
            session.step,
            session.best_loss,
        )
        return session

    def _train_step(
        self,
        session: TrainingSession,
        example: TrainingExample,
        learning_rate: float,
        epoch: int,
    ) -> float:
        targets = np.asarray(example.target_ids)
        try:
            session.state = TrainingState.FORWARD_PASS
            logits = self.model.forward(example.input_ids)
            loss = cross_entropy_loss(logits, targets)
            session.state = TrainingState.LOSS_COMPUTED

            self.model.zero_gradients()
            session.state = TrainingState.BACKWARD_PASS
            gradients = self.model.backward(cross_entropy_loss_backward(logits, targets))

            session.state = TrainingState.OPTIMIZER_STEP
            if self.gradient_clip is not None:
                check_finite(gradients)
                gradients, gradient_norm = clip_gradient_norm(gradients, self.gradient_clip)
                self.optimizer.step(gradients, learning_rate=learning_rate)
            else:
                gradient_norm = self.optimizer.step(gradients, learning_rate=learning_rate)
        except ScratchGPTError as error:
            session.state = TrainingState.IDLE
            logger.error(
                "%s failed at epoch %d step %d: %s",
                session.phase,
                epoch,
                session.step + 1,
                error,
            )
            raise TrainingError(session.phase, epoch, session.step + 1, error) from error

        session.step += 1
        session.last_loss = loss

        accuracy = float(np.mean(np.argmax(logits, axis=-1) == targets))
        self.metrics.record_loss(loss)
        self.metrics.record_gradient_norm(gradient_norm)
        self.metrics.record_accuracy(accuracy)
        self.metrics.record_learning_rate(learning_rate)

        session.state = TrainingState.IDLE
        logger.debug(
            "%s epoch %d step %d: loss=%.4f grad_norm=%.4f",
            session.phase,
            epoch,
            session.step,
            loss,
            gradient_norm,
        )
        return loss

    def _finish_epoch(
        self, session: TrainingSession, epoch: int, mean_loss: float, steps: int
    ) -> None:
        is_best = mean_loss < session.best_loss
        if is_best:
            session.best_loss = mean_loss
        session.epoch_losses.append(mean_loss)
        session.epoch = epoch
        session.state = TrainingState.EPOCH_COMPLETE

        report = EpochReport(
            phase=session.phase,
            epoch=epoch,
            mean_loss=mean_loss,
            best_loss=session.best_loss,
            is_best=is_best,
            steps=steps,
        )
        logger.info(
            "%s epoch %d: loss=%.4f%s",
            session.phase,
            epoch,
            mean_loss,
            " (best)" if is_best else "",
        )

        if self.checkpoint_manager is not None:
            self.checkpoint_manager.on_epoch_end(report, lambda: self.snapshot(session))
        for callback in self._epoch_callbacks:
            callback(report)

    def snapshot(self, session: Optional[TrainingSession] = None) -> Checkpoint:
        """
        Deep copy of parameters, optimizer state and training position.

        The recorded loss is the last epoch mean, falling back to the last
        step loss when no epoch has finished.
        """
        session = session if session is not None else self.session
        if session is None:
            session = TrainingSession(phase=PRETRAINING)

        if session.epoch_losses:
            loss = session.epoch_losses[-1]
        elif session.last_loss is not None:
            loss = session.last_loss
        else:
            loss = math.inf

        return Checkpoint.create(
            parameters=self.model.get_parameters(),
            optimizer_state=self.optimizer.get_state(),
            epoch=session.epoch,
            loss=loss,
            phase=session.phase,
            step=session.step,
            metadata=self.checkpoint_metadata,
        )

    def restore(self, checkpoint: Checkpoint) -> TrainingSession:
        """
        Load parameters (and optimizer state, when present) from a checkpoint.

        Returns:
            A session at the checkpoint's phase, epoch and step; pass it to
            train(resume=...) to continue that phase

        Raises:
            CheckpointError: If the checkpoint does not fit this model
        """
        try:
            missing = set(self.model.get_parameters()) - set(checkpoint.parameters)
            if missing:
                raise KeyError(f"Checkpoint lacks parameters: {sorted(missing)}")
            self.model.set_parameters(checkpoint.parameters)
            if checkpoint.optimizer_state is not None:
                self.optimizer.load_state(checkpoint.optimizer_state)
        except (KeyError, ShapeMismatch) as error:
            raise CheckpointError(f"Checkpoint does not match the model: {error}") from error
        logger.info(
            "Restored %s checkpoint from epoch %d (loss %.4f)",
            checkpoint.phase,
            checkpoint.epoch,
            checkpoint.loss,
        )
        self.session = TrainingSession.from_checkpoint(checkpoint)
        return self.session

    def evaluate(self, examples: Sequence[TrainingExample]) -> float:
        """Mean loss over examples; parameters and gradients are not touched."""
        if not examples:
            raise ValueError("evaluate() needs at least one example")
        total = 0.0
        for example in examples:
            logits = self.model.forward(example.input_ids)
            total += cross_entropy_loss(logits, np.asarray(example.target_ids))
        return total / len(examples)
