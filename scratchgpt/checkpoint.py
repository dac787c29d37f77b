"""
Checkpoint Persistence

A Checkpoint is an immutable snapshot of everything needed to resume: model
parameters, Adam moments and step counter, the training position (phase,
epoch, step) and metadata (configuration, vocabulary).

On disk a checkpoint is a single .npz archive:
    param/<name>     parameter arrays
    adam_m/<name>    Adam first moments
    adam_v/<name>    Adam second moments
    __header__       JSON string with every scalar field and the metadata
Everything loads with allow_pickle=False.

Classes:
    Checkpoint: Snapshot value object
    CheckpointManager: Directory of checkpoints with interval saving and pruning

Functions:
    save_checkpoint / load_checkpoint: Single-file persistence
"""

import json
import logging
import os
import re
import zipfile
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

import numpy as np

from scratchgpt.errors import CheckpointError

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1
HEADER_KEY = "__header__"
PARAM_PREFIX = "param/"
FIRST_MOMENT_PREFIX = "adam_m/"
SECOND_MOMENT_PREFIX = "adam_v/"

_FILENAME_PATTERN = re.compile(r"^checkpoint_(?P<phase>[a-z_]+)_epoch_(?P<epoch>\d+)\.npz$")


def _copy_arrays(arrays: Dict[str, np.ndarray]) -> Dict[str, np.ndarray]:
    return {name: np.array(value, dtype=np.float64, copy=True) for name, value in arrays.items()}


@dataclass(frozen=True)
class Checkpoint:
    """
    Snapshot of a training run.

    Build one with Checkpoint.create(), which deep-copies the arrays so later
    training steps cannot change a snapshot that has already been taken.

    Attributes:
        parameters: Parameter name -> array
        optimizer_state: Adam.get_state() layout, or None
        epoch: Last completed epoch of the phase (0 if none)
        loss: Loss at the time of the snapshot
        phase: "pretraining" or "instruction_tuning"
        step: Optimizer steps taken in the phase
        created_at: ISO-8601 timestamp
        metadata: JSON-serializable extras (config dict, vocabulary words)
    """

    parameters: Dict[str, np.ndarray]
    optimizer_state: Optional[Dict[str, Any]]
    epoch: int
    loss: float
    phase: str = "pretraining"
    step: int = 0
    created_at: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        parameters: Dict[str, np.ndarray],
        optimizer_state: Optional[Dict[str, Any]],
        epoch: int,
        loss: float,
        phase: str = "pretraining",
        step: int = 0,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> "Checkpoint":
        state = None
        if optimizer_state is not None:
            state = {
                "first_moment": _copy_arrays(optimizer_state["first_moment"]),
                "second_moment": _copy_arrays(optimizer_state["second_moment"]),
                "step_count": int(optimizer_state["step_count"]),
            }
        return cls(
            parameters=_copy_arrays(parameters),
            optimizer_state=state,
            epoch=int(epoch),
            loss=float(loss),
            phase=phase,
            step=int(step),
            created_at=datetime.now().astimezone().isoformat(),
            metadata=json.loads(json.dumps(metadata or {})),
        )

    @property
    def vocabulary(self) -> Optional[List[str]]:
        return self.metadata.get("vocabulary")

    @property
    def config(self) -> Optional[Dict[str, Any]]:
        return self.metadata.get("config")


def _header(checkpoint: Checkpoint) -> Dict[str, Any]:
    return {
        "format_version": FORMAT_VERSION,
        "epoch": checkpoint.epoch,
        "loss": checkpoint.loss,
        "phase": checkpoint.phase,
        "step": checkpoint.step,
        "created_at": checkpoint.created_at,
        "metadata": checkpoint.metadata,
        "optimizer_step_count": (
            checkpoint.optimizer_state["step_count"]
            if checkpoint.optimizer_state is not None
            else None
        ),
    }


def save_checkpoint(checkpoint: Checkpoint, path: str) -> None:
    """
    Write a checkpoint to a single .npz file.

    Raises:
        CheckpointError: If the file cannot be written
    """
    arrays = {f"{PARAM_PREFIX}{name}": value for name, value in checkpoint.parameters.items()}
    if checkpoint.optimizer_state is not None:
        for name, value in checkpoint.optimizer_state["first_moment"].items():
            arrays[f"{FIRST_MOMENT_PREFIX}{name}"] = value
        for name, value in checkpoint.optimizer_state["second_moment"].items():
            arrays[f"{SECOND_MOMENT_PREFIX}{name}"] = value
    arrays[HEADER_KEY] = np.array(json.dumps(_header(checkpoint)))

    directory = os.path.dirname(path)
    try:
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(path, "wb") as f:
            np.savez(f, **arrays)
    except OSError as error:
        raise CheckpointError(f"Failed to save checkpoint to {path}: {error}") from error
    logger.info(
        "Checkpoint saved to %s (epoch %d, loss %.4f)", path, checkpoint.epoch, checkpoint.loss
    )


def _read_header(archive, path: str) -> Dict[str, Any]:
    if HEADER_KEY not in archive.files:
        raise CheckpointError(f"{path} is not a checkpoint (no header)")
    header = json.loads(str(archive[HEADER_KEY]))
    if header.get("format_version") != FORMAT_VERSION:
        raise CheckpointError(
            f"{path} has unsupported checkpoint format {header.get('format_version')!r}"
        )
    return header


def load_checkpoint(path: str) -> Checkpoint:
    """
    Read a checkpoint written by save_checkpoint.

    Raises:
        CheckpointError: Missing, corrupt or incompatible file
    """
    try:
        with np.load(path, allow_pickle=False) as archive:
            header = _read_header(archive, path)
            parameters, first, second = {}, {}, {}
            for key in archive.files:
                if key.startswith(PARAM_PREFIX):
                    parameters[key[len(PARAM_PREFIX):]] = archive[key]
                elif key.startswith(FIRST_MOMENT_PREFIX):
                    first[key[len(FIRST_MOMENT_PREFIX):]] = archive[key]
                elif key.startswith(SECOND_MOMENT_PREFIX):
                    second[key[len(SECOND_MOMENT_PREFIX):]] = archive[key]
    except FileNotFoundError as error:
        raise CheckpointError(f"Checkpoint not found: {path}") from error
    except (OSError, ValueError, KeyError, zipfile.BadZipFile) as error:
        raise CheckpointError(f"Failed to load checkpoint {path}: {error}") from error

    optimizer_state = None
    if header["optimizer_step_count"] is not None:
        optimizer_state = {
            "first_moment": first,
            "second_moment": second,
            "step_count": int(header["optimizer_step_count"]),
        }

    logger.info("Checkpoint loaded from %s", path)
    return Checkpoint(
        parameters=parameters,
        optimizer_state=optimizer_state,
        epoch=int(header["epoch"]),
        loss=float(header["loss"]),
        phase=header["phase"],
        step=int(header["step"]),
        created_at=header["created_at"],
        metadata=header["metadata"],
    )


def _read_loss(path: str) -> float:
    try:
        with np.load(path, allow_pickle=False) as archive:
            return float(_read_header(archive, path)["loss"])
    except (OSError, ValueError, KeyError, zipfile.BadZipFile) as error:
        raise CheckpointError(f"Failed to read checkpoint header {path}: {error}") from error


class CheckpointManager:
    """
    Saves checkpoints into one directory and keeps it bounded.

    Files are named checkpoint_<phase>_epoch_<NNNN>.npz. Pruning works per
    phase: with keep_best the max_checkpoints lowest-loss files of that phase
    survive, otherwise the most recently written ones do.

    Example:
        manager = CheckpointManager("./checkpoints", interval=10)
        trainer = Trainer(model, optimizer, checkpoint_manager=manager)
    """

    def __init__(
        self,
        directory: str,
        keep_best: bool = True,
        max_checkpoints: int = 3,
        interval: int = 10,
    ):
        if max_checkpoints <= 0:
            raise ValueError("max_checkpoints must be > 0")
        if interval <= 0:
            raise ValueError("interval must be > 0")
        self.directory = directory
        self.keep_best = keep_best
        self.max_checkpoints = max_checkpoints
        self.interval = interval
        os.makedirs(directory, exist_ok=True)

    def path_for(self, phase: str, epoch: int) -> str:
        return os.path.join(self.directory, f"checkpoint_{phase}_epoch_{epoch:04d}.npz")

    def should_save(self, epoch: int, is_best: bool) -> bool:
        """Every interval-th epoch, plus each new best loss when keep_best is on."""
        if epoch <= 0:
            return False
        return epoch % self.interval == 0 or (self.keep_best and is_best)

    def save(self, checkpoint: Checkpoint) -> str:
        """Write the checkpoint, prune the directory and return the file path."""
        path = self.path_for(checkpoint.phase, checkpoint.epoch)
        save_checkpoint(checkpoint, path)
        self._prune(checkpoint.phase)
        return path

    def list_checkpoints(self, phase: Optional[str] = None) -> List[Tuple[str, float]]:
        """
        (path, loss) for every checkpoint file in the directory, oldest first.

        With ``phase`` set, only that phase's files are listed. Files that
        match the naming scheme but cannot be read are logged and left out.
        """
        entries = []
        for name in os.listdir(self.directory):
            match = _FILENAME_PATTERN.match(name)
            if not match or (phase is not None and match.group("phase") != phase):
                continue
            path = os.path.join(self.directory, name)
            try:
                loss = _read_loss(path)
            except CheckpointError as error:
                logger.warning("Ignoring unreadable checkpoint: %s", error)
                continue
            entries.append((path, loss, os.path.getmtime(path)))
        entries.sort(key=lambda entry: (entry[2], entry[0]))
        return [(path, loss) for path, loss, _ in entries]

    def load_best(self, phase: Optional[str] = None) -> Checkpoint:
        """
        Raises:
            CheckpointError: If the directory holds no checkpoints (for ``phase``)
        """
        checkpoints = self.list_checkpoints(phase)
        if not checkpoints:
            where = self.directory if phase is None else f"{self.directory} for phase {phase}"
            raise CheckpointError(f"No checkpoints found in {where}")
        best_path, _ = min(checkpoints, key=lambda entry: entry[1])
        return load_checkpoint(best_path)

    def on_epoch_end(self, report, snapshot_fn: Callable[[], Checkpoint]) -> Optional[str]:
        """
        Epoch callback for the trainer.

        Takes a snapshot (via snapshot_fn) only when this epoch is to be
        persisted. Returns the written path, or None.
        """
        if not self.should_save(report.epoch, report.is_best):
            return None
        return self.save(snapshot_fn())

    def _prune(self, phase: str) -> None:
        # Losses are only comparable within a phase
        checkpoints = self.list_checkpoints(phase)
        if len(checkpoints) <= self.max_checkpoints:
            return
        if self.keep_best:
            # Stable sort keeps the newer file when losses tie
            ranked = sorted(reversed(checkpoints), key=lambda entry: entry[1])
        else:
            ranked = list(reversed(checkpoints))
        for path, _ in ranked[self.max_checkpoints:]:
            os.remove(path)
            logger.debug("Removed old checkpoint: %s", path)
