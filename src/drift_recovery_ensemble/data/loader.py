"""
Data loading utilities for streaming classification with concept drift.

This module provides loaders that turn tabular data into a stream of labelled
instances, plus a seedable synthetic generator with abrupt, recurring concepts
and configurable class imbalance for experiments and tests.
"""

import logging
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Union

import numpy as np
import pandas as pd

from .preprocessing import Instance

logger = logging.getLogger(__name__)

# SEA concept thresholds on f1 + f2
SEA_THRESHOLDS = (8.0, 9.0, 7.0, 9.5)


class StreamLoader:
    """Iterates a feature DataFrame and label Series as a stream of instances."""

    def __init__(
        self,
        X: pd.DataFrame,
        y: pd.Series,
        max_samples: Optional[int] = None,
    ):
        """
        Initialize the stream loader.

        Args:
            X: Feature DataFrame, one row per instance.
            y: Integer class labels aligned with ``X``.
            max_samples: Stop after this many instances. Defaults to the whole frame.

        Raises:
            ValueError: If X and y have different lengths.
        """
        if len(X) != len(y):
            raise ValueError(f"X and y must have the same length: {len(X)} vs {len(y)}")
        if max_samples is not None and max_samples <= 0:
            raise ValueError(f"max_samples must be positive, got {max_samples}")

        self.X = X.reset_index(drop=True)
        self.y = y.reset_index(drop=True)
        self.max_samples = max_samples

        logger.info(f"Initialized StreamLoader with {len(self.X)} samples, {self.X.shape[1]} features")

    @classmethod
    def from_csv(
        cls,
        path: Union[str, Path],
        target: str,
        max_samples: Optional[int] = None,
    ) -> "StreamLoader":
        """
        Build a loader from a CSV file.

        Nominal target values are mapped to class indices in order of first
        appearance.

        Args:
            path: CSV file path.
            target: Name of the label column.
            max_samples: Optional cap on streamed instances.

        Returns:
            StreamLoader over the file's rows.

        Raises:
            RuntimeError: If the file cannot be read or lacks the target column.
        """
        try:
            df = pd.read_csv(path)
        except Exception as e:
            raise RuntimeError(f"Failed to read stream from {path}: {e}") from e

        if target not in df.columns:
            raise RuntimeError(f"Target column '{target}' not found in {path}")

        y = df.pop(target)
        if not pd.api.types.is_integer_dtype(y):
            codes, uniques = pd.factorize(y)
            logger.info(f"Encoded target classes: {dict(enumerate(uniques))}")
            y = pd.Series(codes, name=target)

        return cls(df, y, max_samples=max_samples)

    def __len__(self) -> int:
        if self.max_samples is None:
            return len(self.X)
        return min(len(self.X), self.max_samples)

    def __iter__(self) -> Iterator[Instance]:
        columns = list(self.X.columns)
        for i, (row, label) in enumerate(zip(self.X.itertuples(index=False), self.y)):
            if i >= len(self):
                break
            yield Instance(x=dict(zip(columns, row)), y=int(label))

    @property
    def class_distribution(self) -> Dict[int, int]:
        return self.y.value_counts().sort_index().to_dict()


class DriftStreamGenerator:
    """Synthetic binary stream with abrupt recurring concepts (SEA-style).

    Three uniform features in ``[0, 10]``; the label is 1 when
    ``f1 + f2 <= threshold`` for the active concept. Concepts switch at the
    configured drift points and cycle through ``concept_sequence``, so earlier
    concepts recur and previously trained models become useful again.

    Class imbalance is produced by drawing the desired label first (minority
    class 1 with probability ``minority_ratio``) and rejection-sampling features
    until the active concept agrees.
    """

    def __init__(
        self,
        n_samples: int = 10000,
        drift_points: Optional[Sequence[int]] = None,
        concept_sequence: Optional[Sequence[int]] = None,
        minority_ratio: Optional[float] = None,
        noise: float = 0.0,
        random_state: int = 42,
    ):
        """
        Initialize the generator.

        Args:
            n_samples: Number of instances to produce.
            drift_points: Instance indices (0-based) at which the concept changes.
            concept_sequence: Indices into the SEA thresholds, one per concept
                segment, cycled when shorter than the number of segments.
            minority_ratio: Target prevalence of class 1. ``None`` keeps the
                natural class balance of the concept.
            noise: Probability of flipping each label.
            random_state: Seed of the generator's own random source.

        Raises:
            ValueError: If any argument is out of range.
        """
        if n_samples <= 0:
            raise ValueError(f"n_samples must be positive, got {n_samples}")
        if minority_ratio is not None and not (0 < minority_ratio < 1):
            raise ValueError(f"minority_ratio must be in (0, 1), got {minority_ratio}")
        if not (0 <= noise < 1):
            raise ValueError(f"noise must be in [0, 1), got {noise}")

        self.n_samples = n_samples
        self.drift_points: List[int] = sorted(drift_points or [])
        self.concept_sequence = list(concept_sequence or range(len(SEA_THRESHOLDS)))
        for concept in self.concept_sequence:
            if not 0 <= concept < len(SEA_THRESHOLDS):
                raise ValueError(f"concept index must be in [0, {len(SEA_THRESHOLDS)}), got {concept}")
        self.minority_ratio = minority_ratio
        self.noise = noise
        self.random_state = random_state

    def concept_at(self, index: int) -> int:
        """Return the concept index active at a given stream position."""
        segment = sum(1 for point in self.drift_points if point <= index)
        return self.concept_sequence[segment % len(self.concept_sequence)]

    def _draw(self, rng: np.random.Generator) -> Dict[str, float]:
        values = rng.uniform(0.0, 10.0, size=3)
        return {"f1": float(values[0]), "f2": float(values[1]), "f3": float(values[2])}

    def __len__(self) -> int:
        return self.n_samples

    def __iter__(self) -> Iterator[Instance]:
        rng = np.random.default_rng(self.random_state)
        for i in range(self.n_samples):
            threshold = SEA_THRESHOLDS[self.concept_at(i)]
            if self.minority_ratio is None:
                x = self._draw(rng)
                label = int(x["f1"] + x["f2"] <= threshold)
            else:
                wanted = int(rng.random() < self.minority_ratio)
                while True:
                    x = self._draw(rng)
                    label = int(x["f1"] + x["f2"] <= threshold)
                    if label == wanted:
                        break
            if self.noise > 0 and rng.random() < self.noise:
                label = 1 - label
            yield Instance(x=x, y=label)

    def to_frame(self) -> pd.DataFrame:
        """Materialize the stream as a DataFrame with a ``target`` column."""
        rows = [{**instance.x, "target": instance.y} for instance in self]
        return pd.DataFrame(rows)
