"""
Test fixtures for the drift recovery ensemble test suite.

This module provides lightweight stand-ins for the river learners, descriptor
clusterers and change detectors, so that engine behaviour can be checked
deterministically, plus common fixtures used across all test modules.
"""

import copy
import tempfile
import shutil
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

import pytest
import numpy as np

from drift_recovery_ensemble.data.preprocessing import Instance
from drift_recovery_ensemble.models.components import ModelRecord
from drift_recovery_ensemble.models.detectors import ChangeDetector
from drift_recovery_ensemble.models.model import DriftRecoveryEnsemble
from drift_recovery_ensemble.utils.config import Config


class StubLearner:
    """Majority-class learner, or a constant voter when ``votes`` is given."""

    def __init__(self, votes: Optional[Sequence[float]] = None, n_classes: int = 2):
        self.votes = None if votes is None else np.asarray(votes, dtype=float)
        self.n_classes = n_classes
        self.counts = np.zeros(n_classes)
        self.training_weight = 0.0

    def train(self, instance: Instance) -> None:
        if instance.weight <= 0.0:
            return
        self.training_weight += instance.weight
        self.counts[instance.y] += instance.weight

    def predict(self, instance: Instance) -> np.ndarray:
        if self.votes is not None:
            return self.votes.copy()
        return self.counts.copy()

    def correctly_classifies(self, instance: Instance) -> bool:
        return int(np.argmax(self.predict(instance))) == instance.y

    def reset_learning(self) -> None:
        self.counts = np.zeros(self.n_classes)
        self.training_weight = 0.0

    def clone(self) -> "StubLearner":
        return copy.deepcopy(self)


class StubDescriptor:
    """Keeps the last ``max_points`` training points as its micro-cluster centers."""

    def __init__(self, max_points: int = 5):
        self.max_points = max_points
        self.points: List[Dict[str, float]] = []

    def train(self, x: Dict[str, float], weight: float = 1.0) -> None:
        self.points.append(dict(x))
        self.points = self.points[-self.max_points:]

    def reset_learning(self) -> None:
        self.points = []

    def clone(self) -> "StubDescriptor":
        return copy.deepcopy(self)

    def micro_cluster_centers(self) -> List[Dict[str, float]]:
        return [dict(point) for point in self.points]


class ScriptedDetector(ChangeDetector):
    """Signals a change on the given (1-based) observation numbers only."""

    def __init__(self, fire_at: Iterable[int] = ()):
        self.fire_at = set(fire_at)
        self.n_observed = 0
        self._change = False

    def observe(self, signal: float, instance: Optional[Instance] = None) -> None:
        self.n_observed += 1
        self._change = self.n_observed in self.fire_at

    @property
    def change_detected(self) -> bool:
        return self._change

    def reset(self) -> None:
        self.n_observed = 0
        self._change = False


class LabelClusterer:
    """Clustering stand-in assigning fixed labels (cycled) to the models it sees."""

    def __init__(self, labels: Sequence[int] = (0,)):
        self.labels = list(labels)
        self.calls = 0

    def cluster(self, rows: np.ndarray, models):
        self.calls += 1
        assigned = [self.labels[i % len(self.labels)] for i in range(len(models))]
        for model, label in zip(models, assigned):
            model.cluster_label = label
        return assigned, len(set(assigned))


def make_record(
    votes: Optional[Sequence[float]] = None,
    n_classes: int = 2,
    rng: Optional[np.random.Generator] = None,
    fading_factor: float = 0.999,
    undersample_descriptors: bool = False,
) -> ModelRecord:
    """Build a model record around stub collaborators."""
    return ModelRecord(
        StubLearner(votes, n_classes=n_classes),
        StubDescriptor(),
        fading_factor,
        rng if rng is not None else np.random.default_rng(1),
        undersample_descriptors=undersample_descriptors,
        n_classes=n_classes,
    )


def make_instances(labels: Sequence[int], start: float = 0.0) -> List[Instance]:
    """One instance per label with a single numeric feature."""
    return [Instance(x={"f1": start + i, "f2": float(label)}, y=label) for i, label in enumerate(labels)]


def make_engine(
    fire_at: Iterable[int] = (),
    labels: Sequence[int] = (0,),
    base_learner: Optional[StubLearner] = None,
    **kwargs,
) -> DriftRecoveryEnsemble:
    """Engine wired to stub learners, descriptors, detector and clusterer."""
    params = {"ensemble_size": 3, "repository_multiplier": 10, "time_steps_interval": 100}
    params.update(kwargs)
    return DriftRecoveryEnsemble(
        base_learner=base_learner or StubLearner(n_classes=params.get("n_classes", 2)),
        descriptor_manager=StubDescriptor(),
        change_detector=ScriptedDetector(fire_at),
        clusterer=LabelClusterer(labels),
        **params,
    )


def alternating_stream(n: int, minority_every: int = 5) -> List[Instance]:
    """Stream in which every ``minority_every``-th instance belongs to class 1."""
    labels = [1 if i % minority_every == minority_every - 1 else 0 for i in range(n)]
    return make_instances(labels)


@pytest.fixture
def random_seed():
    """Random seed for reproducible tests."""
    return 42


@pytest.fixture
def rng(random_seed):
    return np.random.default_rng(random_seed)


@pytest.fixture
def stub_engine():
    """Engine with stub collaborators and no drift."""
    return make_engine()


@pytest.fixture
def test_config(random_seed, temp_dir):
    """Create test configuration."""
    config = Config(random_seed=random_seed)

    # Small engine for faster tests
    config.model.ensemble_size = 3
    config.model.repository_multiplier = 2
    config.model.time_steps_interval = 50
    config.model.base_learner = {"name": "naive_bayes", "params": {}}
    config.model.batch_clusterer = "kmeans"
    config.model.clusterer_parameters = "n_clusters=2 n_init=3"

    config.data.n_samples = 300
    config.data.drift_points = [150]

    config.training.log_frequency = 50
    config.training.show_progress = False
    config.training.checkpoint_frequency = 100
    config.training.keep_checkpoints = 1
    config.training.checkpoint_dir = str(temp_dir / "checkpoints")

    config.mlflow.enabled = False
    config.evaluation.window_size = 100
    config.evaluation.drift_tolerance_window = 100
    config.evaluation.plot_results = False
    config.output_dir = str(temp_dir / "outputs")

    return config


@pytest.fixture
def temp_dir():
    """Create temporary directory for test files."""
    temp_dir = tempfile.mkdtemp()
    yield Path(temp_dir)
    shutil.rmtree(temp_dir)


@pytest.fixture(autouse=True)
def set_random_seeds(random_seed):
    """Set random seeds for all relevant libraries."""
    np.random.seed(random_seed)

    # Set environment variable for reproducible hashing
    import os
    os.environ["PYTHONHASHSEED"] = str(random_seed)


# Utility functions for tests

def assert_valid_votes(votes, n_classes=2):
    """Assert that a vote vector is well formed."""
    assert isinstance(votes, np.ndarray), "Votes should be a numpy array"
    assert votes.shape == (n_classes,), f"Expected shape ({n_classes},), got {votes.shape}"
    assert np.all(votes >= 0), "Votes should be non-negative"
    assert np.all(np.isfinite(votes)), "Votes should be finite"


def assert_capacity_invariants(engine: DriftRecoveryEnsemble):
    """Assert the size limits every engine state must respect."""
    assert len(engine.current) <= engine.ensemble_size
    assert len(engine.repository) <= engine.repository.capacity
    if engine.warning is not None:
        assert len(engine.warning) <= engine.ensemble_size
