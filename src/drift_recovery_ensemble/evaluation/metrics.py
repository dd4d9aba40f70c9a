"""
Evaluation metrics for imbalanced, drifting data streams.

This module provides prequential (test-then-train) accuracy, recall and
G-mean tracking, drift detection scoring against known drift points, and a
regret analysis of the engine's blended prediction against its best
ensemble slot.
"""

import logging
from collections import deque
from typing import Dict, List, Optional, Sequence, Union

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns
from scipy import stats
from sklearn.metrics import accuracy_score, cohen_kappa_score, recall_score

logger = logging.getLogger(__name__)


class PrequentialEvaluator:
    """
    Prequential evaluator for single-instance streams.

    Keeps a fading-factor accuracy over the whole stream and, every
    ``report_frequency`` instances, computes window metrics (accuracy, kappa,
    per-class recall and G-mean) over the last ``window_size`` instances.
    """

    def __init__(
        self,
        n_classes: int = 2,
        window_size: int = 1000,
        fading_factor: float = 0.999,
        report_frequency: int = 100,
    ):
        """
        Initialize the prequential evaluator.

        Args:
            n_classes: Number of classes in the stream.
            window_size: Size of the sliding window for window metrics.
            fading_factor: Decay of the fading accuracy.
            report_frequency: Instances between two window evaluations.

        Raises:
            ValueError: If a size is non-positive or the fading factor is out of range.
        """
        if window_size <= 0:
            raise ValueError(f"window_size must be positive, got {window_size}")
        if report_frequency <= 0:
            raise ValueError(f"report_frequency must be positive, got {report_frequency}")
        if not (0 < fading_factor <= 1):
            raise ValueError(f"fading_factor must be in (0, 1], got {fading_factor}")

        self.n_classes = n_classes
        self.window_size = window_size
        self.fading_factor = fading_factor
        self.report_frequency = report_frequency

        self.y_true_window = deque(maxlen=window_size)
        self.y_pred_window = deque(maxlen=window_size)

        self.fading_correct = 0.0
        self.fading_total = 0.0
        self.n_correct = 0
        self.samples_seen = 0
        self.performance_history: List[Dict] = []

    @property
    def fading_accuracy(self) -> float:
        return self.fading_correct / self.fading_total if self.fading_total > 0 else 0.0

    @property
    def overall_accuracy(self) -> float:
        return self.n_correct / self.samples_seen if self.samples_seen > 0 else 0.0

    def update(self, y_true: int, votes: np.ndarray, metadata: Optional[Dict] = None) -> Dict[str, float]:
        """
        Record the prediction made for one instance before training on it.

        Args:
            y_true: True class of the instance.
            votes: Vote vector returned by the model.
            metadata: Extra values stored with the next history row.

        Returns:
            Window metrics when a report is due, otherwise the running counts.
        """
        y_pred = int(np.argmax(votes)) if len(votes) else 0
        correct = float(y_pred == y_true)

        self.fading_correct = self.fading_factor * self.fading_correct + correct
        self.fading_total = self.fading_factor * self.fading_total + 1.0
        self.n_correct += int(correct)
        self.samples_seen += 1

        self.y_true_window.append(y_true)
        self.y_pred_window.append(y_pred)

        if self.samples_seen % self.report_frequency != 0:
            return {"samples_seen": self.samples_seen, "fading_accuracy": self.fading_accuracy}

        metrics = self._compute_metrics()
        metrics["samples_seen"] = self.samples_seen
        metrics["fading_accuracy"] = self.fading_accuracy
        if metadata:
            metrics.update(metadata)
        self.performance_history.append(metrics)
        return metrics

    def _compute_metrics(self) -> Dict[str, float]:
        y_true = np.array(self.y_true_window)
        y_pred = np.array(self.y_pred_window)
        labels = list(range(self.n_classes))

        recalls = recall_score(y_true, y_pred, labels=labels, average=None, zero_division=0)
        metrics = {
            "accuracy": accuracy_score(y_true, y_pred),
            "gmean": float(np.prod(recalls) ** (1.0 / len(recalls))),
        }
        for label, recall in zip(labels, recalls):
            metrics[f"recall_{label}"] = float(recall)

        if len(np.unique(np.concatenate([y_true, y_pred]))) > 1:
            metrics["kappa"] = cohen_kappa_score(y_true, y_pred, labels=labels)
        else:
            metrics["kappa"] = 0.0

        return metrics

    def get_history(self) -> pd.DataFrame:
        return pd.DataFrame(self.performance_history)

    def get_summary(self) -> Dict[str, Union[float, int]]:
        """
        Summary statistics of the evaluation.

        Returns:
            Mean, minimum and final value of each window metric, plus overall
            and fading accuracy.
        """
        summary = {
            "total_samples": self.samples_seen,
            "overall_accuracy": self.overall_accuracy,
            "fading_accuracy": self.fading_accuracy,
        }
        if not self.performance_history:
            return summary

        history = self.get_history()
        for metric in ["accuracy", "kappa", "gmean"]:
            values = history[metric].dropna()
            if len(values) > 0:
                summary.update({
                    f"{metric}_mean": float(values.mean()),
                    f"{metric}_min": float(values.min()),
                    f"{metric}_final": float(values.iloc[-1]),
                })
        return summary

    def plot_performance(
        self,
        save_path: Optional[str] = None,
        drift_points: Optional[Sequence[int]] = None,
    ) -> None:
        """
        Plot window accuracy, G-mean and kappa against the stream position.

        Args:
            save_path: Path to save the plot. Shows it interactively if None.
            drift_points: True drift positions, drawn as vertical lines.
        """
        if not self.performance_history:
            logger.warning("No performance history to plot")
            return

        history = self.get_history()
        long_form = history.melt(
            id_vars="samples_seen", value_vars=["accuracy", "gmean", "kappa"],
            var_name="metric", value_name="value",
        )

        sns.set_style("whitegrid")
        fig, ax = plt.subplots(figsize=(12, 5))
        sns.lineplot(data=long_form, x="samples_seen", y="value", hue="metric", ax=ax)
        for point in drift_points or []:
            ax.axvline(point, color="red", linestyle="--", alpha=0.5)
        ax.set_title("Prequential Performance")
        ax.set_xlabel("Instances")
        ax.set_ylabel("Score")

        plt.tight_layout()
        if save_path:
            plt.savefig(save_path, dpi=300, bbox_inches="tight")
            plt.close(fig)
        else:
            plt.show()


class DriftMetrics:
    """
    Scores detected drifts against known drift points.

    A detection counts as a true positive when it falls within
    ``tolerance_window`` instances after a true drift that has not been
    matched yet; any other detection is a false alarm.
    """

    def __init__(self, tolerance_window: int = 500):
        if tolerance_window <= 0:
            raise ValueError(f"tolerance_window must be positive, got {tolerance_window}")
        self.tolerance_window = tolerance_window

        self.true_drift_points: List[int] = []
        self.detected_drift_points: List[int] = []
        self.false_alarms: List[int] = []
        self.detection_delays: List[int] = []
        self._matched: set = set()

    def add_true_drift(self, sample_index: int) -> None:
        self.true_drift_points.append(sample_index)

    def add_detected_drift(self, sample_index: int) -> bool:
        """
        Record a detection and classify it.

        Args:
            sample_index: Stream position of the detection.

        Returns:
            True if the detection matched a true drift.
        """
        self.detected_drift_points.append(sample_index)

        for true_index in self.true_drift_points:
            delay = sample_index - true_index
            if true_index not in self._matched and 0 <= delay <= self.tolerance_window:
                self._matched.add(true_index)
                self.detection_delays.append(delay)
                return True

        self.false_alarms.append(sample_index)
        return False

    def compute_metrics(self) -> Dict[str, float]:
        """
        Compute drift detection metrics.

        Returns:
            Counts, precision, recall, F1 and detection delay statistics.
        """
        n_true_drifts = len(self.true_drift_points)
        n_detected_drifts = len(self.detected_drift_points)
        n_true_positives = len(self.detection_delays)

        metrics = {
            "n_true_drifts": n_true_drifts,
            "n_detected_drifts": n_detected_drifts,
            "n_true_positives": n_true_positives,
            "n_false_positives": len(self.false_alarms),
            "n_false_negatives": n_true_drifts - n_true_positives,
        }

        precision = n_true_positives / n_detected_drifts if n_detected_drifts > 0 else 0.0
        recall = n_true_positives / n_true_drifts if n_true_drifts > 0 else 1.0
        metrics["drift_detection_precision"] = precision
        metrics["drift_detection_recall"] = recall
        metrics["drift_detection_f1"] = (
            2 * precision * recall / (precision + recall) if precision + recall > 0 else 0.0
        )

        if self.detection_delays:
            metrics.update({
                "avg_detection_delay": float(np.mean(self.detection_delays)),
                "median_detection_delay": float(np.median(self.detection_delays)),
                "max_detection_delay": float(np.max(self.detection_delays)),
                "min_detection_delay": float(np.min(self.detection_delays)),
            })
        else:
            metrics.update({
                "avg_detection_delay": float("inf"),
                "median_detection_delay": float("inf"),
                "max_detection_delay": float("inf"),
                "min_detection_delay": float("inf"),
            })

        return metrics


class RegretAnalyzer:
    """
    Regret of the blended prediction against the best ensemble slot.

    At every instance the oracle picks, in hindsight, the present slot
    (``current``, ``outgoing`` or ``warning``) with the lowest 0/1 loss.
    """

    def __init__(self, window_size: int = 1000):
        self.window_size = window_size

        self.ensemble_losses: List[float] = []
        self.oracle_losses: List[float] = []
        self.cumulative_regret: List[float] = []
        self.slot_losses: Dict[str, List[float]] = {}

    def update(self, ensemble_loss: float, slot_losses: Dict[str, float]) -> Dict[str, float]:
        """
        Record the losses of one instance.

        Args:
            ensemble_loss: 0/1 loss of the engine's prediction.
            slot_losses: 0/1 loss of each present ensemble slot.

        Returns:
            Dictionary with regret metrics.
        """
        self.ensemble_losses.append(ensemble_loss)
        for slot, loss in slot_losses.items():
            self.slot_losses.setdefault(slot, []).append(loss)

        oracle_loss = min(slot_losses.values()) if slot_losses else ensemble_loss
        self.oracle_losses.append(oracle_loss)

        instantaneous_regret = ensemble_loss - oracle_loss
        previous = self.cumulative_regret[-1] if self.cumulative_regret else 0.0
        self.cumulative_regret.append(previous + instantaneous_regret)

        metrics = self._compute_regret_metrics()
        metrics["instantaneous_regret"] = instantaneous_regret
        return metrics

    def _compute_regret_metrics(self) -> Dict[str, float]:
        if not self.cumulative_regret:
            return {}

        T = len(self.cumulative_regret)
        metrics = {
            "cumulative_regret": self.cumulative_regret[-1],
            "average_regret": self.cumulative_regret[-1] / T,
        }

        total_oracle_loss = sum(self.oracle_losses)
        total_ensemble_loss = sum(self.ensemble_losses)
        if total_oracle_loss > 0:
            metrics["relative_regret"] = (total_ensemble_loss - total_oracle_loss) / total_oracle_loss
        else:
            metrics["relative_regret"] = 0.0

        metrics["regret_trend"] = self._compute_regret_trend()
        return metrics

    def _compute_regret_trend(self) -> float:
        """
        Slope of the recent cumulative regret (positive means still growing).
        """
        if len(self.cumulative_regret) < 10:
            return 0.0

        recent = self.cumulative_regret[-min(self.window_size, len(self.cumulative_regret)):]
        slope, _, _, _, _ = stats.linregress(np.arange(len(recent)), recent)
        return float(slope)

    def get_summary(self) -> Dict[str, float]:
        summary = self._compute_regret_metrics()
        if self.oracle_losses:
            summary["oracle_avg_loss"] = float(np.mean(self.oracle_losses))
            summary["ensemble_avg_loss"] = float(np.mean(self.ensemble_losses))
        for slot, losses in self.slot_losses.items():
            summary[f"{slot}_avg_loss"] = float(np.mean(losses))
        return summary

    def plot_regret_analysis(self, save_path: Optional[str] = None) -> None:
        """
        Plot cumulative regret and the distribution of instantaneous regret.

        Args:
            save_path: Path to save the plot. Shows it interactively if None.
        """
        if not self.cumulative_regret:
            logger.warning("No regret data to plot")
            return

        fig, axes = plt.subplots(1, 2, figsize=(12, 4))

        axes[0].plot(self.cumulative_regret)
        axes[0].set_title("Cumulative Regret")
        axes[0].set_xlabel("Instances")
        axes[0].set_ylabel("Cumulative Regret")
        axes[0].grid(True, alpha=0.3)

        instantaneous = np.array(self.ensemble_losses) - np.array(self.oracle_losses)
        sns.histplot(instantaneous, bins=3, ax=axes[1])
        axes[1].set_title("Instantaneous Regret Distribution")
        axes[1].set_xlabel("Regret")

        plt.tight_layout()
        if save_path:
            plt.savefig(save_path, dpi=300, bbox_inches="tight")
            plt.close(fig)
        else:
            plt.show()
