"""
Test suite for data loading and instance encoding.

Tests cover the stream loader, the synthetic drift generator and the
attribute encoder.
"""

import pytest
import numpy as np
import pandas as pd

from drift_recovery_ensemble.data.loader import SEA_THRESHOLDS, DriftStreamGenerator, StreamLoader
from drift_recovery_ensemble.data.preprocessing import AttributeEncoder, EncodingError, Instance


class TestInstance:
    """Test suite for Instance class."""

    def test_defaults(self):
        instance = Instance(x={"f1": 1.0}, y=1)

        assert instance.weight == 1.0

    def test_with_weight(self):
        instance = Instance(x={"f1": 1.0}, y=1)
        weighted = instance.with_weight(2.5)

        assert weighted.weight == 2.5
        assert weighted.x is instance.x
        assert instance.weight == 1.0


class TestStreamLoader:
    """Test suite for StreamLoader class."""

    def test_iterates_rows(self):
        X = pd.DataFrame({"a": [1.0, 2.0, 3.0], "b": ["x", "y", "x"]})
        y = pd.Series([0, 1, 0])

        instances = list(StreamLoader(X, y))

        assert len(instances) == 3
        assert instances[1].x == {"a": 2.0, "b": "y"}
        assert [instance.y for instance in instances] == [0, 1, 0]

    def test_max_samples(self):
        X = pd.DataFrame({"a": range(10)})
        y = pd.Series([0] * 10)
        loader = StreamLoader(X, y, max_samples=4)

        assert len(loader) == 4
        assert len(list(loader)) == 4

    def test_length_mismatch(self):
        with pytest.raises(ValueError, match="same length"):
            StreamLoader(pd.DataFrame({"a": [1, 2]}), pd.Series([0]))

    def test_invalid_max_samples(self):
        with pytest.raises(ValueError, match="max_samples must be positive"):
            StreamLoader(pd.DataFrame({"a": [1]}), pd.Series([0]), max_samples=0)

    def test_from_csv_encodes_nominal_target(self, temp_dir):
        path = temp_dir / "stream.csv"
        pd.DataFrame({"a": [0.1, 0.2, 0.3], "label": ["up", "down", "up"]}).to_csv(path, index=False)

        loader = StreamLoader.from_csv(path, target="label")

        assert [instance.y for instance in loader] == [0, 1, 0]
        assert loader.class_distribution == {0: 2, 1: 1}

    def test_from_csv_missing_target(self, temp_dir):
        path = temp_dir / "stream.csv"
        pd.DataFrame({"a": [0.1]}).to_csv(path, index=False)

        with pytest.raises(RuntimeError, match="Target column 'label' not found"):
            StreamLoader.from_csv(path, target="label")

    def test_from_csv_missing_file(self, temp_dir):
        with pytest.raises(RuntimeError, match="Failed to read stream"):
            StreamLoader.from_csv(temp_dir / "missing.csv", target="label")


class TestDriftStreamGenerator:
    """Test suite for DriftStreamGenerator class."""

    def test_length_and_features(self):
        generator = DriftStreamGenerator(n_samples=50)
        instances = list(generator)

        assert len(generator) == 50
        assert len(instances) == 50
        assert set(instances[0].x) == {"f1", "f2", "f3"}
        assert all(0.0 <= value <= 10.0 for value in instances[0].x.values())

    def test_reproducible(self):
        first = [(i.x, i.y) for i in DriftStreamGenerator(n_samples=100, random_state=3)]
        second = [(i.x, i.y) for i in DriftStreamGenerator(n_samples=100, random_state=3)]
        other = [(i.x, i.y) for i in DriftStreamGenerator(n_samples=100, random_state=4)]

        assert first == second
        assert first != other

    def test_concept_schedule(self):
        generator = DriftStreamGenerator(n_samples=100, drift_points=[60, 30], concept_sequence=[2, 0])

        assert generator.drift_points == [30, 60]
        assert generator.concept_at(0) == 2
        assert generator.concept_at(30) == 0
        # Concepts recur once the sequence is exhausted
        assert generator.concept_at(60) == 2

    def test_labels_follow_active_concept(self):
        generator = DriftStreamGenerator(n_samples=200, drift_points=[100], concept_sequence=[0, 2])

        for i, instance in enumerate(generator):
            threshold = SEA_THRESHOLDS[generator.concept_at(i)]
            assert instance.y == int(instance.x["f1"] + instance.x["f2"] <= threshold)

    def test_minority_ratio(self):
        generator = DriftStreamGenerator(n_samples=5000, minority_ratio=0.1, random_state=1)
        labels = np.array([instance.y for instance in generator])

        assert labels.mean() == pytest.approx(0.1, abs=0.02)

    def test_noise_flips_labels(self):
        clean = list(DriftStreamGenerator(n_samples=500, random_state=5))
        noisy = list(DriftStreamGenerator(n_samples=500, noise=0.2, random_state=5))

        flips = sum(a.y != b.y for a, b in zip(clean, noisy))
        assert flips > 0

    def test_to_frame(self):
        frame = DriftStreamGenerator(n_samples=20).to_frame()

        assert frame.shape == (20, 4)
        assert "target" in frame.columns

    @pytest.mark.parametrize("kwargs,message", [
        ({"n_samples": 0}, "n_samples must be positive"),
        ({"minority_ratio": 1.0}, "minority_ratio must be in"),
        ({"noise": 1.0}, "noise must be in"),
        ({"concept_sequence": [7]}, "concept index must be in"),
    ])
    def test_invalid_arguments(self, kwargs, message):
        with pytest.raises(ValueError, match=message):
            DriftStreamGenerator(**kwargs)


class TestAttributeEncoder:
    """Test suite for AttributeEncoder class."""

    def test_numeric_passthrough(self):
        encoder = AttributeEncoder()

        assert encoder.encode({"a": 1, "b": 2.5}) == {"a": 1.0, "b": 2.5}
        assert encoder.is_initialized

    def test_nominal_one_hot(self):
        encoder = AttributeEncoder()
        encoder.encode({"colour": "red", "size": 1.0})

        encoded = encoder.encode({"colour": "blue", "size": 2.0})

        assert encoded == {"colour=red": 0.0, "colour=blue": 1.0, "size": 2.0}

    def test_decode_picks_strongest_value(self):
        encoder = AttributeEncoder()
        encoder.encode({"colour": "red", "size": 1.0})
        encoder.encode({"colour": "blue", "size": 2.0})

        decoded = encoder.decode({"colour=red": 0.3, "colour=blue": 0.7, "size": 1.5})

        assert decoded == {"colour": "blue", "size": 1.5}

    def test_decode_ties_go_to_first_value(self):
        encoder = AttributeEncoder()
        encoder.encode({"colour": "red"})
        encoder.encode({"colour": "blue"})

        assert encoder.decode({"colour=red": 0.5, "colour=blue": 0.5}) == {"colour": "red"}

    def test_decode_before_encode(self):
        with pytest.raises(EncodingError, match="before any instance"):
            AttributeEncoder().decode({"a": 1.0})

    def test_decode_missing_attribute(self):
        encoder = AttributeEncoder()
        encoder.encode({"a": 1.0, "b": 2.0})

        with pytest.raises(EncodingError, match="'b'"):
            encoder.decode({"a": 1.0})
