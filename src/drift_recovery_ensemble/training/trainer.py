"""
Prequential training pipeline for the drift recovery ensemble.

This module runs a stream end to end (predict, evaluate, then train on every
instance) with MLflow tracking, periodic joblib checkpoints and progress
reporting.
"""

import logging
import pickle
import time
from contextlib import nullcontext
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

import joblib
import mlflow
import numpy as np
from tqdm import tqdm

from ..data.preprocessing import Instance
from ..evaluation.metrics import DriftMetrics, PrequentialEvaluator, RegretAnalyzer
from ..models.model import DriftRecoveryEnsemble
from ..utils.config import Config
from ..utils.performance_logger import log_drift_episode, log_stream_throughput, timer

logger = logging.getLogger(__name__)


class PrequentialTrainer:
    """
    Test-then-train runner with MLflow integration.

    Every instance is first predicted and scored, then used for training.
    Drift episodes reported by the engine are matched against known drift
    points, and the blended prediction is compared with the best ensemble
    slot for regret analysis.
    """

    def __init__(self, config: Config, model: Optional[DriftRecoveryEnsemble] = None):
        """
        Initialize the trainer.

        Args:
            config: Full configuration; the model section is used to build the
                engine when ``model`` is not given.
            model: Pre-built engine to train.
        """
        self.config = config
        self.model = model or DriftRecoveryEnsemble.from_config(config.model)

        self.evaluator = PrequentialEvaluator(
            n_classes=config.model.n_classes,
            window_size=config.evaluation.window_size,
            fading_factor=config.evaluation.fading_factor,
        )
        self.drift_metrics = DriftMetrics(tolerance_window=config.evaluation.drift_tolerance_window)
        self.regret = RegretAnalyzer(window_size=config.evaluation.window_size)

        self.samples_seen = 0
        self.checkpoint_dir = Path(config.training.checkpoint_dir)
        self.checkpoint_dir.mkdir(parents=True, exist_ok=True)
        self._checkpoints: List[Path] = []

        if self.config.mlflow.enabled:
            self._setup_mlflow()

    @staticmethod
    def _flatten_params(d: Dict[str, Any], prefix: str = "") -> Dict[str, Any]:
        """Flatten nested dict for mlflow.log_params (which doesn't support nested dicts)."""
        flat = {}
        for k, v in d.items():
            key = f"{prefix}.{k}" if prefix else k
            if isinstance(v, dict):
                flat.update(PrequentialTrainer._flatten_params(v, key))
            elif isinstance(v, (list, tuple)):
                flat[key] = str(v)
            else:
                flat[key] = v
        return flat

    def _setup_mlflow(self) -> None:
        if self.config.mlflow.tracking_uri:
            mlflow.set_tracking_uri(self.config.mlflow.tracking_uri)
        mlflow.set_experiment(self.config.mlflow.experiment_name)

    def _log_metrics(self, metrics: Dict[str, Any], step: Optional[int] = None) -> None:
        if not self.config.mlflow.enabled:
            return
        numeric = {
            k: float(v) for k, v in metrics.items()
            if isinstance(v, (int, float, np.floating, np.integer)) and np.isfinite(v)
        }
        if numeric:
            mlflow.log_metrics(numeric, step=step)

    def run(
        self,
        stream: Iterable[Instance],
        drift_points: Optional[Sequence[int]] = None,
        max_samples: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Process a stream prequentially.

        Args:
            stream: Labelled instances in arrival order.
            drift_points: Known (0-based) drift positions, for drift scoring.
            max_samples: Stop after this many instances.

        Returns:
            Summary with prequential, drift, regret and model-state sections.
        """
        for point in drift_points or []:
            self.drift_metrics.add_true_drift(point)

        run_context = (
            mlflow.start_run(run_name=self.config.mlflow.run_name)
            if self.config.mlflow.enabled else nullcontext()
        )

        logger.info("Starting prequential run...")
        with run_context:
            if self.config.mlflow.enabled:
                mlflow.log_params(self._flatten_params(asdict(self.config.model), "model"))
                mlflow.log_params(self._flatten_params(asdict(self.config.data), "data"))

            start_time = time.time()
            with timer("prequential_run"):
                self._process(stream, max_samples)
            elapsed = time.time() - start_time
            log_stream_throughput(self.samples_seen, elapsed)

            summary = {
                "samples_seen": self.samples_seen,
                "training_time": elapsed,
                "prequential": self.evaluator.get_summary(),
                "drift": self.drift_metrics.compute_metrics(),
                "regret": self.regret.get_summary(),
                "model_state": self.model.get_state_summary(),
            }

            for section in ("prequential", "drift", "regret", "model_state"):
                self._log_metrics({f"{section}.{k}": v for k, v in summary[section].items()})

            self._save_checkpoint("final")
            if self.config.evaluation.plot_results:
                self._save_plots(drift_points)

        logger.info(
            f"Prequential run completed: {self.samples_seen} instances in {elapsed:.2f}s, "
            f"accuracy={self.evaluator.overall_accuracy:.4f}, drifts={self.model.n_drifts}"
        )
        return summary

    def _process(self, stream: Iterable[Instance], max_samples: Optional[int]) -> None:
        log_frequency = self.config.training.log_frequency
        checkpoint_frequency = self.config.training.checkpoint_frequency

        with tqdm(desc="Processing stream", unit="inst", disable=not self.config.training.show_progress) as pbar:
            for instance in stream:
                if max_samples is not None and self.samples_seen >= max_samples:
                    break
                self._step(instance)
                pbar.update(1)

                if self.samples_seen % log_frequency == 0:
                    pbar.set_postfix({
                        "acc": f"{self.evaluator.fading_accuracy:.3f}",
                        "drifts": self.model.n_drifts,
                        "repo": len(self.model.repository),
                    })
                    self._log_metrics(
                        {"fading_accuracy": self.evaluator.fading_accuracy, "n_drifts": self.model.n_drifts,
                         "repository_size": len(self.model.repository)},
                        step=self.samples_seen,
                    )

                if self.samples_seen % checkpoint_frequency == 0:
                    self._save_checkpoint(f"instance_{self.samples_seen}")

    def _step(self, instance: Instance) -> None:
        index = self.samples_seen

        votes = self.model.predict(instance)
        predicted = int(np.argmax(votes))
        slot_losses = {
            slot: float(int(np.argmax(slot_vote)) != instance.y)
            for slot, slot_vote in self.model.slot_votes(instance).items()
        }
        self.evaluator.update(instance.y, votes)
        self.regret.update(float(predicted != instance.y), slot_losses)

        drifts_before = self.model.n_drifts
        self.model.train(instance)
        self.samples_seen += 1

        if self.model.n_drifts > drifts_before:
            record = self.model.drift_history[-1]
            log_drift_episode(index, record["fresh_episode"], record["repository_size"], record["warning_size"])
            if record["fresh_episode"]:
                self.drift_metrics.add_detected_drift(index)

    def _save_checkpoint(self, name: str) -> Optional[Path]:
        """
        Save the engine with joblib, keeping only the newest periodic checkpoints.

        Args:
            name: Checkpoint name.

        Returns:
            Path of the written checkpoint, or None if writing failed.
        """
        checkpoint_path = self.checkpoint_dir / f"{name}.pkl"
        checkpoint_data = {
            "model": self.model,
            "config": asdict(self.config),
            "samples_seen": self.samples_seen,
        }

        try:
            joblib.dump(checkpoint_data, checkpoint_path)
        except (OSError, pickle.PicklingError) as e:
            logger.error(f"Failed to save checkpoint {checkpoint_path}: {e}")
            return None
        logger.info(f"Saved checkpoint: {checkpoint_path}")

        if name != "final":
            self._checkpoints.append(checkpoint_path)
            while len(self._checkpoints) > self.config.training.keep_checkpoints:
                stale = self._checkpoints.pop(0)
                stale.unlink(missing_ok=True)
                logger.debug(f"Removed old checkpoint: {stale}")

        if self.config.mlflow.enabled and self.config.mlflow.log_artifacts:
            mlflow.log_artifact(str(checkpoint_path))
        return checkpoint_path

    def load_checkpoint(self, checkpoint_path: str) -> None:
        """
        Restore the engine from a checkpoint.

        Args:
            checkpoint_path: Path to checkpoint file.

        Raises:
            RuntimeError: If the checkpoint cannot be read.
        """
        try:
            checkpoint_data = joblib.load(checkpoint_path)
        except (OSError, EOFError, pickle.UnpicklingError) as e:
            raise RuntimeError(f"Failed to load checkpoint from {checkpoint_path}: {e}") from e

        self.model = checkpoint_data["model"]
        self.samples_seen = checkpoint_data.get("samples_seen", 0)
        logger.info(f"Loaded checkpoint from: {checkpoint_path}")

    def _save_plots(self, drift_points: Optional[Sequence[int]]) -> None:
        if not self.config.evaluation.save_plots:
            return
        plot_dir = Path(self.config.evaluation.plot_dir)
        plot_dir.mkdir(parents=True, exist_ok=True)

        performance_path = plot_dir / "prequential_performance.png"
        regret_path = plot_dir / "regret_analysis.png"
        self.evaluator.plot_performance(str(performance_path), drift_points=drift_points)
        self.regret.plot_regret_analysis(str(regret_path))

        if self.config.mlflow.enabled and self.config.mlflow.log_artifacts:
            for path in (performance_path, regret_path):
                if path.exists():
                    mlflow.log_artifact(str(path))

    def get_model_summary(self) -> Dict[str, Any]:
        """
        Summary of the engine's state, drift history and evaluation so far.
        """
        return {
            "model_type": type(self.model).__name__,
            "state": self.model.get_state_summary(),
            "drift_history": list(self.model.drift_history),
            "prequential": self.evaluator.get_summary(),
        }
