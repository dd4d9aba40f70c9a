"""Change detectors fed by the ensemble's per-instance error signal.

All detectors share one calling convention, ``observe(signal, instance)``,
where ``signal`` is 0.0 for a correct prediction and 1.0 for a mistake.
Detectors that only look at the error stream simply ignore the instance.
"""

import logging
import math
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import numpy as np
from river import drift

from ..data.preprocessing import Instance

logger = logging.getLogger(__name__)


RIVER_DETECTORS = {
    "adwin": drift.ADWIN,
    "ddm": drift.binary.DDM,
    "eddm": drift.binary.EDDM,
    "hddm_a": drift.binary.HDDMA,
    "page_hinkley": drift.PageHinkley,
}


class ChangeDetector(ABC):
    """Interface of a streaming change detector."""

    @abstractmethod
    def observe(self, signal: float, instance: Optional[Instance] = None) -> None:
        """Consume the error signal of one instance."""

    @property
    @abstractmethod
    def change_detected(self) -> bool:
        """Whether the last observation signalled a change."""

    @abstractmethod
    def reset(self) -> None:
        """Return to the initial state."""


class RiverChangeDetector(ChangeDetector):
    """Adapter over a river drift detector.

    Args:
        name (str): One of ``adwin``, ``ddm``, ``eddm``, ``hddm_a``, ``page_hinkley``.
        **params: Keyword arguments forwarded to the river detector.
    """

    def __init__(self, name: str = "adwin", **params):
        if name not in RIVER_DETECTORS:
            raise ValueError(f"Unknown drift detector '{name}'. Available: {sorted(RIVER_DETECTORS)}")
        self.name = name
        self.params = params
        self.detector = RIVER_DETECTORS[name](**params)

    def observe(self, signal: float, instance: Optional[Instance] = None) -> None:
        self.detector.update(signal)
        if self.detector.drift_detected:
            logger.debug(f"{self.name} signalled a change")

    @property
    def change_detected(self) -> bool:
        return bool(self.detector.drift_detected)

    def reset(self) -> None:
        self.detector = RIVER_DETECTORS[self.name](**self.params)


class DDMOCI(ChangeDetector):
    """Drift detection on the minority-class recall (DDM-OCI).

    The recall of every class is tracked with an exponentially fading
    estimate, and so is each class's prevalence. The recall of the current
    minority class is monitored DDM-style: the detector remembers the point
    at which ``recall - std`` was highest and flags a change when
    ``recall + std`` falls ``drift_level`` reference deviations below that
    reference recall.

    Args:
        n_classes (int): Number of classes in the stream.
        fading_factor (float): Decay of the per-class recall and size estimates.
        min_instances (int): Minority-class instances required before testing.
        drift_level (float): Number of standard deviations defining a change.
    """

    def __init__(
        self,
        n_classes: int = 2,
        fading_factor: float = 0.9,
        min_instances: int = 30,
        drift_level: float = 3.0,
    ):
        if n_classes < 2:
            raise ValueError(f"n_classes must be at least 2, got {n_classes}")
        if not (0 < fading_factor < 1):
            raise ValueError(f"fading_factor must be in (0, 1), got {fading_factor}")
        if min_instances <= 0:
            raise ValueError(f"min_instances must be positive, got {min_instances}")
        if drift_level <= 0:
            raise ValueError(f"drift_level must be positive, got {drift_level}")

        self.n_classes = n_classes
        self.fading_factor = fading_factor
        self.min_instances = min_instances
        self.drift_level = drift_level
        self.reset()

    def reset(self) -> None:
        self.recall = np.zeros(self.n_classes)
        self.class_size = np.full(self.n_classes, 1.0 / self.n_classes)
        self.class_counts = np.zeros(self.n_classes, dtype=int)
        self.p_ref = -math.inf
        self.s_ref = 0.0
        self._change = False

    def observe(self, signal: float, instance: Optional[Instance] = None) -> None:
        if instance is None or instance.y is None:
            raise ValueError("DDMOCI requires the labelled instance to be observed")

        if self._change:
            self.reset()

        label = int(instance.y)
        correct = 1.0 if signal == 0.0 else 0.0

        self.class_counts[label] += 1
        if self.class_counts[label] == 1:
            self.recall[label] = correct
        else:
            self.recall[label] = self.fading_factor * self.recall[label] + (1 - self.fading_factor) * correct
        for c in range(self.n_classes):
            self.class_size[c] = self.fading_factor * self.class_size[c] + (1 - self.fading_factor) * (c == label)

        minority = int(np.argmin(self.class_size))
        n = self.class_counts[minority]
        if label != minority or n < self.min_instances:
            return

        p = self.recall[minority]
        s = math.sqrt(p * (1 - p) / n)

        if p - s > self.p_ref - self.s_ref:
            self.p_ref = p
            self.s_ref = s

        if p + s < self.p_ref - self.drift_level * self.s_ref:
            logger.debug(f"DDMOCI: minority recall {p:.3f} dropped from {self.p_ref:.3f}")
            self._change = True

    @property
    def change_detected(self) -> bool:
        return self._change


def make_change_detector(spec: Optional[Dict[str, Any]] = None, n_classes: int = 2) -> ChangeDetector:
    """Build a change detector from a ``{"name": ..., "params": {...}}`` mapping.

    ``ddm_oci`` selects the minority-recall detector; every other name is
    looked up among the river detectors.

    Raises:
        ValueError: If the detector name is unknown.
    """
    spec = spec or {}
    name = spec.get("name", "adwin")
    params = dict(spec.get("params") or {})
    if name == "ddm_oci":
        params.setdefault("n_classes", n_classes)
        return DDMOCI(**params)
    return RiverChangeDetector(name, **params)
