"""
Test suite for the drift recovery ensemble engine.

Tests cover promotion, drift transitions, warning construction, recovery,
prediction blending and imbalance weighting.
"""

import pytest
import numpy as np

from drift_recovery_ensemble.data.loader import DriftStreamGenerator
from drift_recovery_ensemble.data.preprocessing import Instance
from drift_recovery_ensemble.models.clustering import (
    ClusteringAdapter,
    merged_descriptor_sample,
    target_descriptor_count,
)
from drift_recovery_ensemble.models.detectors import RiverChangeDetector
from drift_recovery_ensemble.models.learners import DescriptorManager, StreamLearner
from drift_recovery_ensemble.models.model import DriftLevel, DriftRecoveryEnsemble
from drift_recovery_ensemble.utils.config import ModelConfig
from tests.conftest import (
    LabelClusterer,
    ScriptedDetector,
    alternating_stream,
    assert_capacity_invariants,
    assert_valid_votes,
    make_engine,
    make_record,
    make_instances,
)


def run(engine, stream):
    for instance in stream:
        engine.train(instance)
    return engine


class TestInitialization:
    """Test suite for engine construction."""

    def test_init(self, stub_engine):
        assert len(stub_engine.current) == 1
        assert stub_engine.outgoing is None
        assert stub_engine.warning is None
        assert stub_engine.repository.capacity == 30
        assert stub_engine.drift_level == DriftLevel.NORMAL
        assert stub_engine.n_instances == 0

    def test_default_collaborators(self):
        engine = DriftRecoveryEnsemble(ensemble_size=2, repository_multiplier=2)

        assert isinstance(engine.base_learner, StreamLearner)
        assert isinstance(engine.descriptor_manager, DescriptorManager)
        assert isinstance(engine.change_detector, RiverChangeDetector)
        assert engine.change_detector.name == "adwin"
        assert engine.clusterer.name == "em"
        assert engine.repository.capacity == 4

    def test_from_config(self):
        config = ModelConfig(
            ensemble_size=4,
            repository_multiplier=3,
            time_steps_interval=20,
            drift_detector={"name": "ddm_oci", "params": {"min_instances": 10}},
            batch_clusterer="kmeans",
            clusterer_parameters="n_clusters=3",
            undersample_training=True,
        )

        engine = DriftRecoveryEnsemble.from_config(config)

        assert engine.ensemble_size == 4
        assert engine.repository.capacity == 12
        assert engine.time_steps_interval == 20
        assert engine.undersample_training is True
        assert engine.current.undersample is True
        assert type(engine.change_detector).__name__ == "DDMOCI"
        assert engine.change_detector.min_instances == 10
        assert engine.clusterer.name == "kmeans"

    def test_shared_random_source(self, stub_engine):
        assert stub_engine.candidate.rng is stub_engine.rng
        assert stub_engine.current.members[0].rng is stub_engine.rng


class TestPromotion:
    """Test suite for the periodic promotion path."""

    def test_promotion_cadence(self, stub_engine):
        for k, instance in enumerate(alternating_stream(1000), start=1):
            stub_engine.train(instance)
            assert stub_engine.n_promotions == k // 100

    def test_promotions_fill_current_then_archive(self, stub_engine):
        run(stub_engine, alternating_stream(1000))

        assert len(stub_engine.current) == 3
        # The first two promotions fill current, the next eight displace a member
        assert stub_engine.n_admissions == 8
        assert len(stub_engine.repository) == 8
        assert stub_engine.n_drifts == 0

    def test_candidate_trains_between_promotions(self, stub_engine):
        run(stub_engine, alternating_stream(150))

        assert stub_engine.candidate.training_weight == 50.0

    def test_retain_admits_replaces_or_discards(self):
        engine = make_engine(ensemble_size=1, repository_multiplier=1)

        def trained(votes, n):
            record = make_record(votes)
            for instance in make_instances([i % 2 for i in range(n)]):
                record.train(instance)
            return record

        engine._retain(trained([1.0, 0.0], 4))
        assert engine.n_admissions == 1

        engine._retain(trained([1.0, 0.0], 6))
        assert engine.n_replacements == 1
        assert engine.repository[0].training_weight == 6.0

        engine._retain(trained([1.0, 0.0], 2))
        assert engine.n_discards == 1

        # Dissimilar models are never swapped in, however well trained
        engine._retain(trained([0.0, 1.0], 10))
        assert engine.n_discards == 2
        assert engine.repository[0].training_weight == 6.0
        assert len(engine.repository) == 1


class TestDriftTransition:
    """Test suite for the out-of-control path."""

    def test_single_drift_episode(self):
        engine = make_engine(fire_at=[1000])
        stream = alternating_stream(2000)

        run(engine, stream[:999])
        assert engine.n_promotions == 9
        before = list(engine.current.members)
        assert len(before) == 3

        engine.train(stream[999])

        assert engine.drift_level == DriftLevel.OUTCONTROL
        assert engine.n_drifts == 1
        assert engine.outgoing is not None
        assert engine.warning is not None
        assert len(engine.current) == 1
        assert len(engine.outgoing) == 3
        assert all(a is b for a, b in zip(engine.outgoing.members, before))
        assert engine.n_admissions == 10
        assert engine.instances_since_drift == 0
        assert engine.drift_history == [{
            "instance_index": 1000,
            "fresh_episode": True,
            "repository_size": 10,
            "warning_size": 1,
        }]

        run(engine, stream[1000:])
        assert engine.n_drifts == 1
        assert engine.drift_level == DriftLevel.NORMAL
        assert_capacity_invariants(engine)

    def test_warning_takes_one_model_per_cluster(self):
        engine = make_engine(fire_at=[1000], labels=(0, 1, 2))
        run(engine, alternating_stream(1000))

        assert engine.drift_history[0]["warning_size"] == 3
        assert [model.cluster_label for model in engine.warning] == [2, 1, 0]
        assert not engine.warning.weighted_voting

    def test_warning_respects_ensemble_size(self):
        engine = make_engine(fire_at=[1000], labels=(0, 1, 2, 3))
        run(engine, alternating_stream(1000))

        assert [model.cluster_label for model in engine.warning] == [3, 2, 1]

    def test_warning_needs_more_than_one_archived_model(self):
        engine = make_engine(fire_at=[150])
        run(engine, alternating_stream(150))

        # Both members of current are archived on the drift
        assert engine.drift_history[0]["repository_size"] == 2
        assert engine.clusterer.calls == 1

        engine = make_engine(fire_at=[50])
        run(engine, alternating_stream(50))
        assert engine.drift_history[0]["repository_size"] == 1
        assert engine.drift_history[0]["warning_size"] == 0
        assert engine.clusterer.calls == 0

    def test_repeated_out_of_control_instances(self):
        """Every consecutive out-of-control instance re-archives current and empties warning."""
        engine = make_engine(fire_at=[1000, 1001])
        run(engine, alternating_stream(1001))

        assert engine.n_drifts == 2
        assert engine.drift_history[1] == {
            "instance_index": 1001,
            "fresh_episode": False,
            "repository_size": 11,
            "warning_size": 0,
        }
        assert len(engine.current) == 1
        assert len(engine.outgoing) == 1
        assert engine.clusterer.calls == 1

    def test_capacity_invariants_under_frequent_drift(self):
        fire_at = list(range(150, 3000, 150)) + [601, 602]
        engine = make_engine(fire_at=fire_at, labels=(0, 1), repository_multiplier=2)

        for instance in alternating_stream(3000):
            engine.train(instance)
            assert_capacity_invariants(engine)

        assert engine.n_drifts == len(fire_at)
        assert len(engine.repository) == engine.repository.capacity

    def test_replaced_slots_are_not_reused_for_admission(self):
        engine = make_engine(ensemble_size=3, repository_multiplier=1)

        def trained(votes, n):
            record = make_record(votes)
            for instance in make_instances([i % 2 for i in range(n)]):
                record.train(instance)
            return record

        engine.repository.admit(trained([1.0, 0.0], 2))
        engine.repository.admit(trained([1.0, 0.0], 2))
        engine.current = engine._new_ensemble("current")
        for _ in range(3):
            engine.current.add(trained([1.0, 0.0], 6))

        engine._out_of_control_step()

        # One free slot is admitted, the other two members replace the archived pair
        assert engine.n_admissions == 1
        assert engine.n_replacements == 2
        assert engine.n_discards == 0
        assert len(engine.repository) == engine.repository.capacity
        assert [model.training_weight for model in engine.repository] == [6.0, 6.0, 6.0]


class TestRecovery:
    """Test suite for the recovery path."""

    def test_recovery_refills_current(self):
        engine = make_engine(fire_at=[1000])
        run(engine, alternating_stream(1100))

        assert engine.n_recoveries == 1
        assert len(engine.current) == 3
        assert engine.n_promotions == 9
        # Warning construction and recovery each cluster once
        assert engine.clusterer.calls == 2

    def test_recovery_only_uses_anchor_cluster(self):
        engine = make_engine(fire_at=[1000], labels=(0, 1))
        run(engine, alternating_stream(1100))

        anchor_label = engine.current.members[0].cluster_label
        assert all(model.cluster_label == anchor_label for model in engine.current)

    def test_recovery_clusters_on_repository_descriptors(self):
        class RecordingClusterer(LabelClusterer):
            def __init__(self):
                super().__init__()
                self.shapes = []

            def cluster(self, rows, models):
                self.shapes.append(rows.shape)
                return super().cluster(rows, models)

        engine = make_engine(fire_at=[1000])
        engine.clusterer = RecordingClusterer()
        run(engine, alternating_stream(1100))

        assert engine.n_recoveries == 1
        archived = list(engine.repository)
        sample = merged_descriptor_sample(archived, target_descriptor_count(archived))
        # One row per archived model plus the anchor, one column per sampled descriptor plus the label slot
        assert engine.clusterer.shapes[-1] == (len(archived) + 1, len(sample) + 1)

    def test_failed_clustering_skips_recovery(self):
        class FailingClusterer:
            def cluster(self, rows, models):
                return None, 0

        engine = make_engine(fire_at=[1000])
        engine.clusterer = FailingClusterer()
        run(engine, alternating_stream(1100))

        assert engine.drift_history[0]["warning_size"] == 0
        assert engine.n_recoveries == 0
        assert len(engine.current) == 1


class TestPrediction:
    """Test suite for vote blending."""

    def _slots(self, engine, warning_accuracy):
        engine.current = engine._new_ensemble("current")
        engine.current.add(make_record([1.0, 0.0]))
        engine.current.acc_estimate, engine.current.acc_weight = 1.0, 2.0

        engine.outgoing = engine._new_ensemble("outgoing")
        engine.outgoing.add(make_record([0.0, 1.0]))
        engine.outgoing.acc_estimate, engine.outgoing.acc_weight = 1.0, 1.0

        engine.warning = engine._new_ensemble("warning", weighted_voting=False)
        engine.warning.add(make_record([0.0, 1.0]))
        engine.warning.acc_estimate, engine.warning.acc_weight = warning_accuracy, 1.0

        for ensemble in (engine.current, engine.outgoing, engine.warning):
            for member in ensemble:
                member.acc_estimate, member.acc_weight = 1.0, 1.0

    def test_current_votes_alone_when_most_accurate(self, stub_engine):
        instance = Instance(x={"f1": 0.0}, y=0)
        self._slots(stub_engine, warning_accuracy=0.0)

        np.testing.assert_allclose(stub_engine.predict(instance), [1.0, 0.0])

    def test_blend_when_current_is_worst(self, stub_engine):
        instance = Instance(x={"f1": 0.0}, y=0)
        self._slots(stub_engine, warning_accuracy=0.8)

        np.testing.assert_allclose(stub_engine.predict(instance), [0.5 / 2.3, 1.8 / 2.3])
        assert stub_engine.predict_label(instance) == 1

    def test_out_of_control_always_blends(self, stub_engine):
        instance = Instance(x={"f1": 0.0}, y=0)
        self._slots(stub_engine, warning_accuracy=0.0)
        stub_engine.drift_level = DriftLevel.OUTCONTROL

        # Warning never correct: skipped
        np.testing.assert_allclose(stub_engine.predict(instance), [0.5 / 1.5, 1.0 / 1.5])

    def test_empty_vote_predicts_class_zero(self, stub_engine):
        instance = Instance(x={"f1": 0.0}, y=1)
        assert np.all(stub_engine.predict(instance) == 0.0)
        assert stub_engine.predict_label(instance) == 0

    def test_slot_votes(self):
        engine = make_engine(fire_at=[1000])
        stream = alternating_stream(1001)
        assert list(engine.slot_votes(stream[0])) == ["current"]

        run(engine, stream[:1000])
        assert set(engine.slot_votes(stream[1000])) == {"current", "outgoing", "warning"}


class TestImbalanceWeighting:
    """Test suite for imbalance-aware training of current."""

    def test_oversampling_increases_minority_weight(self):
        engine = make_engine(time_steps_interval=1000)
        run(engine, alternating_stream(200))

        assert engine.current.members[0].training_weight > 200

    def test_undersampling_decreases_majority_weight(self):
        engine = make_engine(time_steps_interval=1000, undersample_training=True)
        run(engine, alternating_stream(200))

        assert engine.current.members[0].training_weight < 200


class TestRiverIntegration:
    """End-to-end runs with river learners and scikit-learn clustering."""

    def _engine(self):
        return DriftRecoveryEnsemble(
            change_detector=ScriptedDetector([200]),
            clusterer=ClusteringAdapter("kmeans", "n_clusters=2 n_init=3"),
            ensemble_size=3,
            repository_multiplier=2,
            time_steps_interval=50,
            random_seed=7,
        )

    def _stream(self):
        return DriftStreamGenerator(
            n_samples=400, drift_points=[200], concept_sequence=[0, 2], minority_ratio=0.2, random_state=7,
        )

    def test_prequential_run(self):
        engine = self._engine()
        for instance in self._stream():
            votes = engine.predict(instance)
            assert_valid_votes(votes)
            engine.train(instance)
            assert_capacity_invariants(engine)

        assert engine.n_drifts == 1
        assert engine.n_instances == 400
        assert engine.current.accuracy > 0.5

    def test_runs_are_reproducible(self):
        labels = []
        for _ in range(2):
            engine = self._engine()
            predicted = []
            for instance in self._stream():
                predicted.append(engine.predict_label(instance))
                engine.train(instance)
            labels.append(predicted)

        assert labels[0] == labels[1]


class TestReporting:
    """Test suite for summaries."""

    def test_state_summary(self):
        engine = make_engine(fire_at=[1000])
        run(engine, alternating_stream(1000))

        summary = engine.get_state_summary()

        assert summary["drift_level"] == "outcontrol"
        assert summary["current_size"] == 1
        assert summary["outgoing_size"] == 3
        assert summary["repository_size"] == 10
        assert summary["n_drifts"] == 1
        assert summary["n_promotions"] == 9

    def test_repr(self, stub_engine):
        assert repr(stub_engine) == "DriftRecoveryEnsemble(level=normal, current=1, repository=0/30)"
