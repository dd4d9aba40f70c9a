"""Drift recovery ensemble for imbalanced data streams.

The engine keeps up to three voting ensembles and a repository of retired
models, and switches between two operating modes driven by a change detector:

- ``NORMAL``: a standing *candidate* model learns on its own and is promoted
  into the ``current`` ensemble every ``time_steps_interval`` instances. The
  member it displaces is archived in the repository when there is room, or
  when it is better trained than its most similar archived counterpart.
  ``time_steps_interval`` instances after a drift the repository is
  clustered and ``current`` is refilled from the cluster of its newest member
  (*recovery*).
- ``OUTCONTROL``: the detector flagged a change. ``current`` is snapshotted as
  ``outgoing`` and archived, a ``warning`` ensemble is assembled from one
  representative per repository cluster, and ``current`` restarts from the
  candidate.

Predictions blend the three ensembles by accuracy share whenever the restarted
``current`` ensemble is not yet the most accurate one.

Example:
    >>> from drift_recovery_ensemble import DriftRecoveryEnsemble, DriftStreamGenerator
    >>> model = DriftRecoveryEnsemble(ensemble_size=5, time_steps_interval=200)
    >>> for instance in DriftStreamGenerator(n_samples=2000, drift_points=[1000]):
    ...     label = model.predict_label(instance)
    ...     model.train(instance)
"""

import logging
from enum import Enum
from typing import Dict, List, Optional

import numpy as np

from ..data.preprocessing import Instance
from ..utils.config import ModelConfig
from .clustering import ClusteringAdapter, merged_descriptor_sample, target_descriptor_count
from .components import ModelRecord, ModelRepository, WeightedEnsemble
from .detectors import ChangeDetector, make_change_detector
from .learners import DescriptorManager, StreamLearner, make_base_learner, make_descriptor_manager

logger = logging.getLogger(__name__)


class DriftLevel(Enum):
    """Operating mode of the engine. ``WARNING`` is never entered."""

    NORMAL = "normal"
    WARNING = "warning"
    OUTCONTROL = "outcontrol"


class DriftRecoveryEnsemble:
    """Online ensemble that archives, clusters and recovers models across drifts.

    Attributes:
        current (WeightedEnsemble): Accuracy-weighted ensemble trained on every instance.
        outgoing (Optional[WeightedEnsemble]): Snapshot of ``current`` taken at
            the last drift.
        warning (Optional[WeightedEnsemble]): Unweighted ensemble of repository
            representatives built at the last drift.
        candidate (ModelRecord): Model learning outside any ensemble until promotion.
        repository (ModelRepository): Archive of retired models.
        drift_level (DriftLevel): Mode decided by the last training instance.
        instances_since_drift (int): Instances seen since the last ``OUTCONTROL`` instance.
        drift_history (List[Dict]): One record per ``OUTCONTROL`` instance.
    """

    def __init__(
        self,
        base_learner: Optional[StreamLearner] = None,
        descriptor_manager: Optional[DescriptorManager] = None,
        change_detector: Optional[ChangeDetector] = None,
        clusterer: Optional[ClusteringAdapter] = None,
        ensemble_size: int = 10,
        repository_multiplier: int = 10,
        time_steps_interval: int = 500,
        fading_factor: float = 0.999,
        theta: float = 0.99,
        similarity_threshold: float = 0.8,
        undersample_descriptors: bool = False,
        undersample_training: bool = False,
        n_classes: int = 2,
        random_seed: int = 1,
    ):
        """
        Initialize the engine.

        Args:
            base_learner: Untrained prototype cloned for every new model.
                Defaults to a Hoeffding tree with naive Bayes leaves.
            descriptor_manager: Untrained prototype of the per-class descriptor
                clusterer. Defaults to CluStream.
            change_detector: Detector fed with the ensemble's error signal.
                Defaults to ADWIN.
            clusterer: Batch clustering of repository models. Defaults to EM.
            ensemble_size: Maximum number of members of ``current``.
            repository_multiplier: Repository capacity in units of ``ensemble_size``.
            time_steps_interval: Instances between promotions, and between a
                drift and the recovery attempt.
            fading_factor: Decay of all prequential accuracy estimates.
            theta: Decay of the class-size estimates used for imbalance weighting.
            similarity_threshold: Minimum Q-statistic similarity, in [0, 1], for a
                repository model to be considered a counterpart.
            undersample_descriptors: Size descriptor samples by the smallest
                descriptor count instead of the largest.
            undersample_training: Reweight training instances towards the
                minority class instead of the majority class.
            n_classes: Number of classes in the stream.
            random_seed: Seed of the random source shared by all models.

        Raises:
            ValueError: If any size, interval or factor is out of range.
        """
        if ensemble_size < 1:
            raise ValueError(f"ensemble_size must be at least 1, got {ensemble_size}")
        if repository_multiplier < 1:
            raise ValueError(f"repository_multiplier must be at least 1, got {repository_multiplier}")
        if time_steps_interval < 1:
            raise ValueError(f"time_steps_interval must be at least 1, got {time_steps_interval}")
        if not (0 <= fading_factor <= 1):
            raise ValueError(f"fading_factor must be in [0, 1], got {fading_factor}")
        if not (0 <= theta <= 1):
            raise ValueError(f"theta must be in [0, 1], got {theta}")
        if not (0 <= similarity_threshold <= 1):
            raise ValueError(f"similarity_threshold must be in [0, 1], got {similarity_threshold}")
        if n_classes < 2:
            raise ValueError(f"n_classes must be at least 2, got {n_classes}")

        self.base_learner = base_learner or make_base_learner(
            {"name": "hoeffding_tree", "params": {"leaf_prediction": "nb"}}, n_classes=n_classes,
        )
        self.descriptor_manager = descriptor_manager or make_descriptor_manager()
        self.change_detector = change_detector or make_change_detector(n_classes=n_classes)
        self.clusterer = clusterer or ClusteringAdapter()

        self.ensemble_size = ensemble_size
        self.repository_multiplier = repository_multiplier
        self.time_steps_interval = time_steps_interval
        self.fading_factor = fading_factor
        self.theta = theta
        self.similarity_threshold = similarity_threshold
        self.undersample_descriptors = undersample_descriptors
        self.undersample_training = undersample_training
        self.n_classes = n_classes
        self.random_seed = random_seed

        self.rng = np.random.default_rng(random_seed)

        self.candidate = self._new_model()
        self.current = self._new_ensemble("current")
        self.current.add(self._new_model())
        self.outgoing: Optional[WeightedEnsemble] = None
        self.warning: Optional[WeightedEnsemble] = None
        self.repository = ModelRepository(repository_multiplier * ensemble_size)

        self.drift_level = DriftLevel.NORMAL
        self.previous_drift_level = DriftLevel.NORMAL
        self.instances_since_drift = 0
        self.training_weight_seen = 0.0

        self.n_instances = 0
        self.n_drifts = 0
        self.n_promotions = 0
        self.n_admissions = 0
        self.n_replacements = 0
        self.n_discards = 0
        self.n_recoveries = 0
        self.drift_history: List[Dict] = []

        logger.info(
            f"Initialized DriftRecoveryEnsemble: ensemble_size={ensemble_size}, "
            f"repository_capacity={self.repository.capacity}, interval={time_steps_interval}"
        )

    @classmethod
    def from_config(cls, config: ModelConfig) -> "DriftRecoveryEnsemble":
        """Build an engine and its collaborators from a :class:`ModelConfig`."""
        return cls(
            base_learner=make_base_learner(config.base_learner, n_classes=config.n_classes),
            descriptor_manager=make_descriptor_manager(config.descriptor_manager),
            change_detector=make_change_detector(config.drift_detector, n_classes=config.n_classes),
            clusterer=ClusteringAdapter(config.batch_clusterer, config.clusterer_parameters),
            ensemble_size=config.ensemble_size,
            repository_multiplier=config.repository_multiplier,
            time_steps_interval=config.time_steps_interval,
            fading_factor=config.fading_factor,
            theta=config.theta,
            similarity_threshold=config.similarity_threshold,
            undersample_descriptors=config.undersample_descriptors,
            undersample_training=config.undersample_training,
            n_classes=config.n_classes,
            random_seed=config.random_seed,
        )

    def _new_model(self) -> ModelRecord:
        return ModelRecord(
            self.base_learner.clone(),
            self.descriptor_manager,
            self.fading_factor,
            self.rng,
            undersample_descriptors=self.undersample_descriptors,
            n_classes=self.n_classes,
        )

    def _new_ensemble(self, name: str, weighted_voting: bool = True) -> WeightedEnsemble:
        return WeightedEnsemble(
            self.fading_factor,
            self.theta,
            undersample=self.undersample_training,
            weighted_voting=weighted_voting,
            name=name,
            n_classes=self.n_classes,
        )

    # ------------------------------------------------------------------
    # Inference
    # ------------------------------------------------------------------

    def predict(self, instance: Instance) -> np.ndarray:
        """Return the combined, unnormalized class votes for an instance.

        While out of control, or when ``current`` is less accurate than both
        ``outgoing`` and ``warning``, the three ensembles are blended by their
        share of the summed accuracies. Otherwise ``current`` votes alone.
        """
        acc_current = self.current.accuracy
        acc_outgoing = self.outgoing.accuracy if self.outgoing is not None else 0.0
        acc_warning = self.warning.accuracy if self.warning is not None else 0.0

        blend = self.drift_level == DriftLevel.OUTCONTROL or (
            self.outgoing is not None
            and self.warning is not None
            and acc_current < acc_outgoing
            and acc_current < acc_warning
        )
        if not blend:
            return self.current.combined_vote(instance)

        accuracy_sum = acc_outgoing + acc_warning + acc_current
        combined = np.zeros(self.n_classes)
        for ensemble in (self.outgoing, self.warning, self.current):
            if ensemble is None or ensemble.acc_estimate <= 0.0:
                continue
            vote = ensemble.combined_vote(instance)
            total = vote.sum()
            if total <= 0.0:
                continue
            combined += vote / total * (ensemble.accuracy / accuracy_sum)
        return combined

    def predict_label(self, instance: Instance) -> int:
        """Arg-max of :meth:`predict`; class 0 for an empty vote."""
        return int(np.argmax(self.predict(instance)))

    def slot_votes(self, instance: Instance) -> Dict[str, np.ndarray]:
        """Raw combined votes of every ensemble slot currently present."""
        votes = {"current": self.current.combined_vote(instance)}
        if self.outgoing is not None:
            votes["outgoing"] = self.outgoing.combined_vote(instance)
        if self.warning is not None:
            votes["warning"] = self.warning.combined_vote(instance)
        return votes

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    def train(self, instance: Instance) -> None:
        """Process one labelled instance (test on ``current``, then adapt and train).

        Args:
            instance: Labelled instance. One with non-positive weight is still scored
                and advances the drift state, but no learner trains on it.

        Raises:
            ValueError: If the instance has no label or an out-of-range label.
        """
        if instance.y is None:
            raise ValueError("Cannot train on an unlabelled instance")
        if not 0 <= instance.y < self.n_classes:
            raise ValueError(f"label must be in [0, {self.n_classes}), got {instance.y}")

        self.training_weight_seen += max(instance.weight, 0.0)
        self.n_instances += 1
        self.instances_since_drift += 1

        correct = int(np.argmax(self.current.combined_vote(instance))) == instance.y
        self.change_detector.observe(0.0 if correct else 1.0, instance)
        if self.change_detector.change_detected:
            self.drift_level = DriftLevel.OUTCONTROL
        else:
            self.drift_level = DriftLevel.NORMAL

        if self.drift_level == DriftLevel.NORMAL:
            self._normal_step(instance)
        else:
            self._out_of_control_step()

        if self.outgoing is not None:
            self.outgoing.update_accuracy(instance)
        if self.warning is not None:
            self.warning.update_accuracy(instance)
        self.current.update_accuracy(instance)
        self.current.train(instance)

    def _normal_step(self, instance: Instance) -> None:
        interval = self.time_steps_interval
        if self.instances_since_drift == interval and self.n_drifts > 0 and len(self.repository) > 0:
            self._recover()
        elif self.instances_since_drift % interval == 0 and self.training_weight_seen > 0:
            self._promote()
        else:
            self.candidate.update_accuracy(instance)
            self.candidate.train(instance)
        self.previous_drift_level = DriftLevel.NORMAL

    def _promote(self) -> None:
        if len(self.current) >= self.ensemble_size:
            self._retain(self.current.remove_worst())
        self.current.add(self.candidate)
        self.candidate = self._new_model()
        self.n_promotions += 1
        logger.debug(
            f"Promoted candidate at instance {self.n_instances}: current={len(self.current)}, "
            f"repository={len(self.repository)}"
        )

    def _retain(self, model: ModelRecord) -> None:
        """Archive a displaced model, replace its most similar counterpart, or drop it."""
        if self.repository.has_space:
            self.repository.admit(model)
            self.n_admissions += 1
            logger.debug(f"Admitted model to repository ({len(self.repository)}/{self.repository.capacity})")
            return

        idx = self.repository.most_similar_index(model, self.similarity_threshold, self.undersample_descriptors)
        if idx is not None and model.training_weight > self.repository[idx].training_weight:
            self.repository.evict_and_replace(idx, model)
            self.n_replacements += 1
            logger.debug(f"Replaced repository model {idx} with a better trained counterpart")
        else:
            self.n_discards += 1
            logger.debug("Discarded displaced model")

    def _cluster_rows(
        self, sample_models: List[ModelRecord], row_models: Optional[List[ModelRecord]] = None
    ) -> np.ndarray:
        """Prediction rows of ``row_models`` on the descriptors merged from ``sample_models``."""
        count = target_descriptor_count(sample_models, self.undersample_descriptors)
        sample = merged_descriptor_sample(sample_models, count)
        rows = sample_models if row_models is None else row_models
        return np.vstack([model.prediction_row(sample) for model in rows])

    def _recover(self) -> None:
        """Refill ``current`` with repository models from its newest member's cluster."""
        anchor = self.current.members[0]
        archived = list(self.repository)
        models = archived + [anchor]
        labels, _ = self.clusterer.cluster(self._cluster_rows(archived, models), models)
        if labels is None:
            return

        target = anchor.cluster_label
        for model in self.repository.sorted_by_training_weight():
            if len(self.current) >= self.ensemble_size:
                break
            if model.cluster_label == target:
                self.current.add(model)
        self.n_recoveries += 1
        logger.info(
            f"Recovery at instance {self.n_instances}: cluster {target}, current size {len(self.current)}"
        )

    def _out_of_control_step(self) -> None:
        fresh_episode = self.previous_drift_level == DriftLevel.NORMAL
        if fresh_episode:
            logger.info(f"Drift detected at instance {self.n_instances}")

        self.outgoing = self.current.copy_as_outgoing()

        # Removals happen now and insertions later, so pending insertions hold their slots
        decisions = []
        pending = 0
        for member in self.current:
            if len(self.repository) + pending < self.repository.capacity:
                decisions.append("admit")
                pending += 1
                continue
            idx = self.repository.most_similar_index(member, self.similarity_threshold, self.undersample_descriptors)
            if idx is not None and member.training_weight > self.repository[idx].training_weight:
                self.repository.remove(idx)
                decisions.append("replace")
                pending += 1
            else:
                decisions.append("discard")

        for member, decision in zip(self.current.members, decisions):
            if decision == "discard":
                self.n_discards += 1
                continue
            self.repository.admit(member)
            if decision == "admit":
                self.n_admissions += 1
            else:
                self.n_replacements += 1

        self.current.clear()
        self.warning = self._new_ensemble("warning", weighted_voting=False)

        if fresh_episode and len(self.repository) > 1:
            self.candidate.reset_learning()
            self._build_warning()

        self.current = self._new_ensemble("current")
        self.current.add(self.candidate)
        self.candidate = self._new_model()

        self.warning.reset_accuracy()
        self.current.reset_accuracy()
        self.outgoing.reset_accuracy()

        self.instances_since_drift = 0
        self.previous_drift_level = DriftLevel.OUTCONTROL
        self.n_drifts += 1
        self.drift_history.append({
            "instance_index": self.n_instances,
            "fresh_episode": fresh_episode,
            "repository_size": len(self.repository),
            "warning_size": len(self.warning),
        })

    def _build_warning(self) -> None:
        """Fill ``warning`` with one repository model per cluster, or by striding."""
        archived = list(self.repository)
        labels, n_clusters = self.clusterer.cluster(self._cluster_rows(archived), archived)
        if labels is None:
            return

        if n_clusters > 1:
            ranked = self.repository.sorted_by_training_weight()
            for label in range(n_clusters - 1, -1, -1):
                if len(self.warning) >= self.ensemble_size:
                    break
                match = next((model for model in ranked if model.cluster_label == label), None)
                if match is not None:
                    self.warning.add(match)
        else:
            for i in range(0, len(self.repository), self.repository_multiplier):
                if len(self.warning) >= self.ensemble_size:
                    break
                self.warning.add(self.repository[i])

        logger.info(f"Built warning ensemble of {len(self.warning)} models from {n_clusters} clusters")

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_state_summary(self) -> Dict:
        """Snapshot of the engine's slots and counters."""
        return {
            "drift_level": self.drift_level.value,
            "instances_since_drift": self.instances_since_drift,
            "current_size": len(self.current),
            "current_accuracy": self.current.accuracy,
            "outgoing_size": None if self.outgoing is None else len(self.outgoing),
            "outgoing_accuracy": None if self.outgoing is None else self.outgoing.accuracy,
            "warning_size": None if self.warning is None else len(self.warning),
            "warning_accuracy": None if self.warning is None else self.warning.accuracy,
            "candidate_training_weight": self.candidate.training_weight,
            "repository_size": len(self.repository),
            "repository_capacity": self.repository.capacity,
            "n_instances": self.n_instances,
            "n_drifts": self.n_drifts,
            "n_promotions": self.n_promotions,
            "n_admissions": self.n_admissions,
            "n_replacements": self.n_replacements,
            "n_discards": self.n_discards,
            "n_recoveries": self.n_recoveries,
        }

    def __repr__(self) -> str:
        return (f"DriftRecoveryEnsemble(level={self.drift_level.value}, current={len(self.current)}, "
                f"repository={len(self.repository)}/{self.repository.capacity})")
