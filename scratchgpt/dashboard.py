"""
Text dashboard for training runs.

After every epoch a short panel is written above the tqdm progress bar: the
epoch loss, window averages of accuracy and gradient norm, and a sparkline
of each series over recent epochs.

Example:
    dashboard = TrainingDashboard(trainer.metrics)
    trainer.add_epoch_callback(dashboard.on_epoch)
"""

from collections import deque
from typing import Callable, Deque, Sequence

from tqdm import tqdm

from scratchgpt.metrics import Metrics

SPARK_CHARS = "▁▂▃▄▅▆▇█"


def sparkline(values: Sequence[float]) -> str:
    """One block character per value, scaled between the series min and max."""
    if not values:
        return ""
    low, high = min(values), max(values)
    if high == low:
        return SPARK_CHARS[len(SPARK_CHARS) // 2 - 1] * len(values)
    scale = (len(SPARK_CHARS) - 1) / (high - low)
    return "".join(SPARK_CHARS[int(round((value - low) * scale))] for value in values)


class TrainingDashboard:
    """
    Epoch callback that renders loss, accuracy and gradient-norm history.

    History restarts when the phase changes. Output goes through tqdm.write
    by default so it does not tear an active progress bar.
    """

    def __init__(
        self,
        metrics: Metrics,
        history: int = 40,
        write: Callable[[str], None] = tqdm.write,
    ):
        if history <= 0:
            raise ValueError("history must be > 0")
        self.metrics = metrics
        self.write = write
        self.phase = None
        self.losses: Deque[float] = deque(maxlen=history)
        self.accuracies: Deque[float] = deque(maxlen=history)
        self.gradient_norms: Deque[float] = deque(maxlen=history)

    def on_epoch(self, report) -> None:
        if report.phase != self.phase:
            self.phase = report.phase
            self.losses.clear()
            self.accuracies.clear()
            self.gradient_norms.clear()
        self.losses.append(report.mean_loss)
        self.accuracies.append(self.metrics.average_accuracy())
        self.gradient_norms.append(self.metrics.average_gradient_norm())
        self.write(self.render(report))

    def render(self, report) -> str:
        header = (
            f"[{report.phase}] epoch {report.epoch:>4} | "
            f"loss {report.mean_loss:.4f} (best {report.best_loss:.4f}) | "
            f"accuracy {self.accuracies[-1]:6.1%} | "
            f"grad norm {self.gradient_norms[-1]:.3f}"
        )
        rows = [
            ("loss", self.losses),
            ("accuracy", self.accuracies),
            ("grad norm", self.gradient_norms),
        ]
        lines = [header]
        lines.extend(f"  {label:<10} {sparkline(list(series))}" for label, series in rows)
        return "\n".join(lines)
