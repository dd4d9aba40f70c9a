"""River-backed base learners and descriptor clusterers.

The ensemble engine only relies on small contracts from its collaborators:

- a *base learner* trains on weighted instances, returns class votes and
  reports the cumulative training weight it has seen;
- a *descriptor manager* summarizes the instances of one class as a set of
  micro-cluster centers.

Both are thin wrappers over `river` estimators so that any incremental
classifier or clusterer from that library can be plugged in by name.
"""

import copy
import logging
from typing import Any, Dict, List, Optional

import numpy as np
from river import cluster, linear_model, naive_bayes, tree

from ..data.preprocessing import Instance

logger = logging.getLogger(__name__)


BASE_LEARNERS = {
    "hoeffding_tree": tree.HoeffdingTreeClassifier,
    "naive_bayes": naive_bayes.GaussianNB,
    "logistic_regression": linear_model.LogisticRegression,
}

DESCRIPTOR_MANAGERS = {
    "clustream": cluster.CluStream,
    "kmeans": cluster.KMeans,
}


class StreamLearner:
    """Incremental classifier with weighted training and vote vectors.

    Attributes:
        model: Wrapped river classifier.
        n_classes (int): Length of the vote vectors returned by :meth:`predict`.
        training_weight (float): Sum of the weights of all instances trained on.
    """

    def __init__(self, model, n_classes: int = 2):
        if n_classes < 2:
            raise ValueError(f"n_classes must be at least 2, got {n_classes}")
        self.model = model
        self.n_classes = n_classes
        self.training_weight = 0.0

    def train(self, instance: Instance) -> None:
        """Train on one labelled instance, honouring its weight.

        Instances with a non-positive weight are ignored.
        """
        if instance.weight <= 0.0:
            return
        self.training_weight += instance.weight
        self.model.learn_one(instance.x, instance.y, w=instance.weight)

    def predict(self, instance: Instance) -> np.ndarray:
        """Return the (unnormalized) class votes for an instance."""
        votes = np.zeros(self.n_classes)
        proba = self.model.predict_proba_one(instance.x) or {}
        for label, p in proba.items():
            idx = int(label)
            if 0 <= idx < self.n_classes:
                votes[idx] = p
        return votes

    def correctly_classifies(self, instance: Instance) -> bool:
        return int(np.argmax(self.predict(instance))) == instance.y

    def reset_learning(self) -> None:
        """Forget everything learnt, keeping the hyperparameters."""
        self.model = self.model.clone()
        self.training_weight = 0.0

    def clone(self) -> "StreamLearner":
        """Deep copy, including the learnt state."""
        return copy.deepcopy(self)

    def __repr__(self) -> str:
        return f"StreamLearner({self.model!r}, training_weight={self.training_weight:.1f})"


class DescriptorManager:
    """Incremental clusterer summarizing one class of a model's training data."""

    def __init__(self, clusterer):
        self.clusterer = clusterer
        self.n_trained = 0

    def train(self, x: Dict[str, float], weight: float = 1.0) -> None:
        self.clusterer.learn_one(x, w=weight)
        self.n_trained += 1

    def reset_learning(self) -> None:
        self.clusterer = self.clusterer.clone()
        self.n_trained = 0

    def clone(self) -> "DescriptorManager":
        return copy.deepcopy(self)

    def micro_cluster_centers(self) -> List[Dict[str, float]]:
        """Return the current micro-cluster centers as feature mappings.

        Returns:
            List[Dict[str, float]]: One mapping per micro-cluster; empty before
            the first training instance.
        """
        if self.n_trained == 0:
            return []

        if hasattr(self.clusterer, "micro_clusters"):
            centers = [mc.center for mc in self.clusterer.micro_clusters.values()]
        else:
            centers = list(self.clusterer.centers.values())

        return [{key: float(value) for key, value in center.items()} for center in centers if center]

    def __len__(self) -> int:
        return len(self.micro_cluster_centers())


def _build(registry: Dict[str, Any], spec: Optional[Dict[str, Any]], default: str, kind: str):
    spec = spec or {}
    name = spec.get("name", default)
    params = spec.get("params") or {}
    if name not in registry:
        raise ValueError(f"Unknown {kind} '{name}'. Available: {sorted(registry)}")
    logger.debug(f"Building {kind} '{name}' with params {params}")
    return registry[name](**params)


def make_base_learner(spec: Optional[Dict[str, Any]] = None, n_classes: int = 2) -> StreamLearner:
    """Build a base learner from a ``{"name": ..., "params": {...}}`` mapping.

    Args:
        spec: Learner specification. Defaults to a Hoeffding tree.
        n_classes: Number of classes of the stream.

    Returns:
        StreamLearner: Untrained learner.

    Raises:
        ValueError: If the learner name is unknown.
    """
    return StreamLearner(_build(BASE_LEARNERS, spec, "hoeffding_tree", "base learner"), n_classes=n_classes)


def make_descriptor_manager(spec: Optional[Dict[str, Any]] = None) -> DescriptorManager:
    """Build a descriptor manager from a ``{"name": ..., "params": {...}}`` mapping.

    Raises:
        ValueError: If the clusterer name is unknown.
    """
    return DescriptorManager(_build(DESCRIPTOR_MANAGERS, spec, "clustream", "descriptor manager"))
