"""Rolling window of training metrics (loss, accuracy, gradient norm, learning rate)."""

import csv
import io
import json
import threading
from collections import deque
from typing import Deque, Optional, Tuple

TREND_SPAN = 5


def _mean(values) -> float:
    return sum(values) / len(values) if values else 0.0


class Metrics:
    """
    Bounded history of per-step training values.

    Each series keeps at most window_size entries; once full, recording a new
    value evicts the oldest. Recording and queries are safe to call from
    different threads (the trainer writes, a progress display may read).
    """

    def __init__(self, window_size: int = 100):
        if window_size <= 0:
            raise ValueError("window_size must be > 0")
        self.window_size = window_size
        self._lock = threading.Lock()
        self._losses: Deque[float] = deque(maxlen=window_size)
        self._accuracies: Deque[float] = deque(maxlen=window_size)
        self._gradient_norms: Deque[float] = deque(maxlen=window_size)
        self._learning_rates: Deque[float] = deque(maxlen=window_size)

    def record_loss(self, loss: float) -> None:
        with self._lock:
            self._losses.append(float(loss))

    def record_accuracy(self, accuracy: float) -> None:
        with self._lock:
            self._accuracies.append(float(accuracy))

    def record_gradient_norm(self, norm: float) -> None:
        with self._lock:
            self._gradient_norms.append(float(norm))

    def record_learning_rate(self, learning_rate: float) -> None:
        with self._lock:
            self._learning_rates.append(float(learning_rate))

    def average_loss(self) -> float:
        with self._lock:
            return _mean(self._losses)

    def average_accuracy(self) -> float:
        with self._lock:
            return _mean(self._accuracies)

    def average_gradient_norm(self) -> float:
        with self._lock:
            return _mean(self._gradient_norms)

    def latest_loss(self) -> Optional[float]:
        with self._lock:
            return self._losses[-1] if self._losses else None

    def latest_accuracy(self) -> Optional[float]:
        with self._lock:
            return self._accuracies[-1] if self._accuracies else None

    def loss_trend(self) -> Optional[bool]:
        """
        True if loss is rising, False if falling, None with fewer than 2 points.

        Compares the mean of the newest five losses with the mean of the
        oldest five in the window.
        """
        with self._lock:
            losses = list(self._losses)
        if len(losses) < 2:
            return None
        return _mean(losses[-TREND_SPAN:]) > _mean(losses[:TREND_SPAN])

    @property
    def losses(self) -> Tuple[float, ...]:
        with self._lock:
            return tuple(self._losses)

    def _snapshot(self):
        with self._lock:
            return (
                list(self._losses),
                list(self._accuracies),
                list(self._gradient_norms),
                list(self._learning_rates),
            )

    def to_json(self) -> str:
        losses, accuracies, gradient_norms, learning_rates = self._snapshot()
        return json.dumps(
            {
                "window_size": self.window_size,
                "losses": losses,
                "accuracies": accuracies,
                "gradient_norms": gradient_norms,
                "learning_rates": learning_rates,
            },
            indent=2,
        )

    def to_csv(self) -> str:
        """One row per window index; series shorter than the longest leave blanks."""
        series = self._snapshot()
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(["step", "loss", "accuracy", "gradient_norm", "learning_rate"])
        for index in range(max(len(values) for values in series)):
            writer.writerow(
                [index] + [values[index] if index < len(values) else "" for values in series]
            )
        return buffer.getvalue()

    def clear(self) -> None:
        with self._lock:
            self._losses.clear()
            self._accuracies.clear()
            self._gradient_norms.clear()
            self._learning_rates.clear()
