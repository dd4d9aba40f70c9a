"""Building blocks of the drift recovery ensemble.

This module provides the three collections the engine coordinates:

- ``ModelRecord``: one base learner together with per-class descriptor
  summaries of the data it was trained on and a fading prequential accuracy.
- ``WeightedEnsemble``: an ordered pool of records with accuracy-weighted
  voting and online class-size estimates for imbalance-aware training.
- ``ModelRepository``: a bounded archive of retired records with a
  Q-statistic similarity search.
"""

import copy
import logging
import math
from typing import Iterator, List, Optional, Sequence

import numpy as np

from ..data.preprocessing import AttributeEncoder, EncodingError, Instance
from .clustering import merged_descriptor_sample, target_descriptor_count
from .learners import DescriptorManager, StreamLearner

logger = logging.getLogger(__name__)


class EmptyEnsembleError(RuntimeError):
    """Raised when removing the worst member of an ensemble with no members."""


class ModelRecord:
    """A base learner with descriptors, prequential accuracy and a cluster tag.

    The random generator is shared with the owning engine and with every clone
    of the record; it is never re-seeded per record.

    Attributes:
        learner (StreamLearner): Wrapped base learner.
        descriptors (List[DescriptorManager]): One summarizer per class.
        cluster_label (int): Label assigned by the last clustering, ``-1`` if unset.
        acc_estimate (float): Fading count of correct predictions.
        acc_weight (float): Fading count of predictions.
        fading_factor (float): Decay applied to both accuracy counters.
        rng (np.random.Generator): Shared random source for descriptor resampling.
        undersample_descriptors (bool): Whether descriptor samples are subsampled
            instead of oversampled.
        encoder (AttributeEncoder): Maps instances to the numeric space seen by
            the descriptors and back.
    """

    def __init__(
        self,
        learner: StreamLearner,
        descriptor_manager: DescriptorManager,
        fading_factor: float,
        rng: np.random.Generator,
        undersample_descriptors: bool = False,
        n_classes: int = 2,
    ):
        self.learner = learner
        self.descriptors: List[DescriptorManager] = [descriptor_manager.clone() for _ in range(n_classes)]
        self.fading_factor = fading_factor
        self.rng = rng
        self.undersample_descriptors = undersample_descriptors
        self.encoder = AttributeEncoder()
        self.cluster_label = -1
        self.acc_estimate = 0.0
        self.acc_weight = 0.0
        self.reset_learning()

    @property
    def n_classes(self) -> int:
        return len(self.descriptors)

    @property
    def training_weight(self) -> float:
        return self.learner.training_weight

    @property
    def accuracy(self) -> float:
        return self.acc_estimate / self.acc_weight if self.acc_weight > 0.0 else 0.0

    def reset_learning(self) -> None:
        """Forget the learner and descriptors, clear the cluster tag and accuracy."""
        self.learner.reset_learning()
        for descriptor in self.descriptors:
            descriptor.reset_learning()
        self.cluster_label = -1
        self.reset_accuracy()

    def reset_accuracy(self) -> None:
        self.acc_estimate = 0.0
        self.acc_weight = 0.0

    def clone(self) -> "ModelRecord":
        """Copy learner, descriptors, encoder and counters; share the rng."""
        twin = ModelRecord.__new__(ModelRecord)
        twin.learner = self.learner.clone()
        twin.descriptors = [descriptor.clone() for descriptor in self.descriptors]
        twin.fading_factor = self.fading_factor
        twin.rng = self.rng
        twin.undersample_descriptors = self.undersample_descriptors
        twin.encoder = copy.deepcopy(self.encoder)
        twin.cluster_label = self.cluster_label
        twin.acc_estimate = self.acc_estimate
        twin.acc_weight = self.acc_weight
        return twin

    def train(self, instance: Instance) -> None:
        """Train the learner and the descriptor of the instance's class."""
        if instance.weight <= 0.0:
            return
        self.learner.train(instance)
        encoded = self.encoder.encode(instance.x)
        self.descriptors[instance.y].train(encoded, instance.weight)

    def predict(self, instance: Instance) -> np.ndarray:
        return self.learner.predict(instance)

    def correctly_classifies(self, instance: Instance) -> bool:
        return int(np.argmax(self.predict(instance))) == instance.y

    def update_accuracy(self, instance: Instance) -> None:
        correct = 1.0 if self.correctly_classifies(instance) else 0.0
        self.acc_estimate = self.fading_factor * self.acc_estimate + correct
        self.acc_weight = self.fading_factor * self.acc_weight + 1.0

    def descriptor_count(self, class_idx: int) -> int:
        return len(self.descriptors[class_idx].micro_cluster_centers())

    def descriptor_centers(self, class_idx: int, target_count: int) -> List[Instance]:
        """Resample the class's micro-cluster centers to exactly ``target_count`` instances.

        With oversampling, the whole set of ``n`` centers is first repeated
        ``floor(target_count / n)`` times. The remainder (or, when undersampling,
        the whole sample) is filled by walking the centers cyclically and
        keeping each one on an independent fair coin flip.

        Args:
            class_idx (int): Class whose descriptor is sampled.
            target_count (int): Number of synthetic instances to return.

        Returns:
            List[Instance]: Synthetic instances labelled ``class_idx``; empty if
            the class has no centers yet.
        """
        centers = self.descriptors[class_idx].micro_cluster_centers()
        if not centers:
            return []

        current: List[Instance] = []
        for center in centers:
            try:
                x = self.encoder.decode(center)
            except EncodingError as e:
                logger.warning(f"Keeping encoded descriptor center: {e}")
                x = center
            current.append(Instance(x=x, y=class_idx))

        sample: List[Instance] = []
        k = target_count // len(current)
        if not self.undersample_descriptors and k >= 1:
            for _ in range(k):
                sample.extend(current)

        i = 0
        while len(sample) < target_count:
            if self.rng.random() < 0.5:
                sample.append(current[i % len(current)])
            i += 1
        return sample

    def prediction_row(self, instances: Sequence[Instance]) -> np.ndarray:
        """0/1 correctness per instance followed by an empty (NaN) cluster slot."""
        row = np.empty(len(instances) + 1)
        for i, instance in enumerate(instances):
            row[i] = 1.0 if self.correctly_classifies(instance) else 0.0
        row[-1] = np.nan
        return row

    def __repr__(self) -> str:
        return (f"ModelRecord(accuracy={self.accuracy:.3f}, training_weight={self.training_weight:.1f}, "
                f"cluster_label={self.cluster_label})")


class WeightedEnsemble:
    """Ordered pool of model records with combined voting.

    Args:
        fading_factor (float): Decay of the ensemble accuracy estimate.
        theta (float): Decay of the class-size estimates.
        undersample (bool): Reweight training instances towards the minority
            class if True, towards the majority class otherwise.
        weighted_voting (bool): Scale member votes by their accuracy share.
        name (str): Slot name, used in logs and summaries.
        n_classes (int): Number of classes in the stream.
    """

    def __init__(
        self,
        fading_factor: float,
        theta: float,
        undersample: bool = False,
        weighted_voting: bool = True,
        name: str = "current",
        n_classes: int = 2,
    ):
        self.fading_factor = fading_factor
        self.theta = theta
        self.undersample = undersample
        self.weighted_voting = weighted_voting
        self.name = name
        self.n_classes = n_classes
        self.members: List[ModelRecord] = []
        self.acc_estimate = 0.0
        self.acc_weight = 0.0
        self.class_size_estimate: Optional[np.ndarray] = None
        self.class_size_weight: Optional[np.ndarray] = None

    def __len__(self) -> int:
        return len(self.members)

    def __iter__(self) -> Iterator[ModelRecord]:
        return iter(self.members)

    @property
    def accuracy(self) -> float:
        return self.acc_estimate / self.acc_weight if self.acc_weight > 0.0 else 0.0

    def add(self, model: ModelRecord) -> None:
        """Store a copy of ``model``. Capacity is the caller's concern."""
        self.members.append(model.clone())

    def clear(self) -> None:
        self.members = []
        self.acc_estimate = 0.0
        self.acc_weight = 0.0

    def remove_worst(self) -> ModelRecord:
        """Remove and return the least accurate member (first one on ties).

        Raises:
            EmptyEnsembleError: If the ensemble has no members.
        """
        if not self.members:
            raise EmptyEnsembleError(f"Cannot remove the worst member of empty ensemble '{self.name}'")
        worst_idx = min(range(len(self.members)), key=lambda i: self.members[i].accuracy)
        return self.members.pop(worst_idx)

    def combined_vote(self, instance: Instance) -> np.ndarray:
        """Sum of the normalized votes of members that have been correct at least once.

        Members whose raw vote sums to zero are skipped. With weighted voting
        each normalized vote is scaled by the member's share of the summed
        member accuracies. The result is not normalized.
        """
        combined = np.zeros(self.n_classes)
        accuracy_sum = sum(member.accuracy for member in self.members)
        for member in self.members:
            if member.acc_estimate <= 0.0:
                continue
            vote = member.predict(instance)
            total = vote.sum()
            if total <= 0.0:
                continue
            vote = vote / total
            if self.weighted_voting:
                vote = vote * (member.accuracy / accuracy_sum)
            combined += vote
        return combined

    def update_accuracy(self, instance: Instance) -> None:
        """Update the ensemble's own accuracy, then every member's."""
        correct = 1.0 if int(np.argmax(self.combined_vote(instance))) == instance.y else 0.0
        self.acc_estimate = self.fading_factor * self.acc_estimate + correct
        self.acc_weight = self.fading_factor * self.acc_weight + 1.0
        for member in self.members:
            member.update_accuracy(instance)

    def reset_accuracy(self) -> None:
        self.acc_estimate = 0.0
        self.acc_weight = 0.0
        for member in self.members:
            member.reset_accuracy()

    def update_class_sizes(self, instance: Instance) -> None:
        if self.class_size_estimate is None:
            self.class_size_estimate = np.full(self.n_classes, 1.0 / self.n_classes)
            self.class_size_weight = np.full(self.n_classes, 1.0 / self.n_classes)

        observed = np.zeros(self.n_classes)
        observed[instance.y] = 1.0
        self.class_size_estimate = self.theta * self.class_size_estimate + observed
        self.class_size_weight = self.theta * self.class_size_weight + 1.0

    def class_size(self, class_idx: int) -> float:
        if self.class_size_weight is None or self.class_size_weight[class_idx] <= 0.0:
            return 0.0
        return float(self.class_size_estimate[class_idx] / self.class_size_weight[class_idx])

    def majority_class(self) -> int:
        sizes = [self.class_size(i) for i in range(self.n_classes)]
        return sizes.index(max(sizes))

    def minority_class(self) -> int:
        sizes = [self.class_size(i) for i in range(self.n_classes)]
        return sizes.index(min(sizes))

    def imbalance_weight(self, instance: Instance) -> float:
        """Ratio of the target class's size to the size of the instance's class.

        The target is the minority class when undersampling and the majority
        class otherwise.
        """
        target = self.minority_class() if self.undersample else self.majority_class()
        return self.class_size(target) / self.class_size(instance.y)

    def train(self, instance: Instance) -> None:
        """Train every member on the instance reweighted by :meth:`imbalance_weight`."""
        self.update_class_sizes(instance)
        weighted = instance.with_weight(instance.weight * self.imbalance_weight(instance))
        for member in self.members:
            member.train(weighted)

    def copy_as_outgoing(self) -> "WeightedEnsemble":
        """Snapshot this ensemble as the ``outgoing`` slot.

        The snapshot holds a second list referencing the same member objects and
        carries over the accuracy and class-size state.
        """
        snapshot = WeightedEnsemble(
            self.fading_factor, self.theta, self.undersample, self.weighted_voting, "outgoing", self.n_classes,
        )
        snapshot.members = list(self.members)
        snapshot.acc_estimate = self.acc_estimate
        snapshot.acc_weight = self.acc_weight
        if self.class_size_estimate is not None:
            snapshot.class_size_estimate = self.class_size_estimate.copy()
            snapshot.class_size_weight = self.class_size_weight.copy()
        return snapshot

    def __repr__(self) -> str:
        return f"WeightedEnsemble(name={self.name!r}, size={len(self)}, accuracy={self.accuracy:.3f})"


def q_statistic(instances: Sequence[Instance], first: ModelRecord, second: ModelRecord) -> float:
    """Yule's Q statistic between two models' correctness on a sample.

    ``Q = (N11 * N00 - N01 * N10) / (N11 * N00 + N01 * N10)`` where ``N11``
    counts instances both models classify correctly, ``N00`` those both get
    wrong, and ``N10``/``N01`` the disagreements. Values near 1 mean the
    models err together; negative values mean they are diverse.

    Returns:
        float: Q in ``[-1, 1]``, or NaN when the denominator is zero.
    """
    n11 = n00 = n10 = n01 = 0
    for instance in instances:
        a = first.correctly_classifies(instance)
        b = second.correctly_classifies(instance)
        if a and b:
            n11 += 1
        elif not a and not b:
            n00 += 1
        elif a:
            n10 += 1
        else:
            n01 += 1

    denominator = n11 * n00 + n01 * n10
    if denominator == 0:
        return math.nan
    return (n11 * n00 - n01 * n10) / denominator


class ModelRepository:
    """Bounded archive of retired model records.

    Args:
        capacity (int): Maximum number of stored records.
    """

    def __init__(self, capacity: int):
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self.capacity = capacity
        self.models: List[ModelRecord] = []

    def __len__(self) -> int:
        return len(self.models)

    def __iter__(self) -> Iterator[ModelRecord]:
        return iter(self.models)

    def __getitem__(self, index: int) -> ModelRecord:
        return self.models[index]

    @property
    def has_space(self) -> bool:
        return len(self.models) < self.capacity

    def admit(self, model: ModelRecord) -> None:
        """Store a copy of ``model`` with its accuracy reset. No-op when full."""
        if not self.has_space:
            logger.warning(f"Repository full ({self.capacity}); model not admitted")
            return
        record = model.clone()
        record.reset_accuracy()
        self.models.append(record)

    def remove(self, index: int) -> ModelRecord:
        return self.models.pop(index)

    def evict_and_replace(self, index: int, replacement: ModelRecord) -> None:
        """Drop the record at ``index`` and append ``replacement`` with its accuracy reset."""
        del self.models[index]
        replacement.reset_accuracy()
        self.models.append(replacement)

    def most_similar_index(
        self,
        target: ModelRecord,
        similarity_threshold: float,
        undersample: bool = False,
    ) -> Optional[int]:
        """Find the stored record most similar to ``target``.

        Each record is compared with ``target`` by the Q statistic on a merged
        descriptor sample of the pair. NaN scores are skipped; the highest
        score wins and ties go to the record with the smaller training weight.

        Args:
            target: Record looking for a counterpart.
            similarity_threshold: Minimum similarity in ``[0, 1]``; a score
                counts as similar when ``score >= -similarity_threshold``.
            undersample: Size the merged sample by the smallest descriptor
                count of the pair instead of the largest.

        Returns:
            Optional[int]: Index of the winning record, or None if no score is
            comparable or the best one is not similar enough.
        """
        best_idx: Optional[int] = None
        best_score = -math.inf
        for i, candidate in enumerate(self.models):
            pair = [target, candidate]
            sample = merged_descriptor_sample(pair, target_descriptor_count(pair, undersample))
            score = q_statistic(sample, target, candidate)
            if math.isnan(score):
                continue
            if best_idx is None or score > best_score:
                best_idx, best_score = i, score
            elif score == best_score and candidate.training_weight < self.models[best_idx].training_weight:
                best_idx = i

        if best_idx is None or best_score < -similarity_threshold:
            return None
        return best_idx

    def sorted_by_training_weight(self) -> List[ModelRecord]:
        return sorted(self.models, key=lambda model: model.training_weight)

    def __repr__(self) -> str:
        return f"ModelRepository(size={len(self)}, capacity={self.capacity})"
