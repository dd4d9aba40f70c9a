"""
Drift Recovery Ensemble.

An online ensemble classifier for imbalanced data streams that archives
retired models, groups them by behaviour, and recovers them when a
recurring concept comes back after a drift.
"""

__version__ = "0.1.0"
__author__ = "Research Team"

from .data.loader import DriftStreamGenerator, StreamLoader
from .data.preprocessing import Instance
from .evaluation.metrics import DriftMetrics, PrequentialEvaluator
from .models.model import DriftRecoveryEnsemble
from .training.trainer import PrequentialTrainer

__all__ = [
    "DriftMetrics",
    "DriftRecoveryEnsemble",
    "DriftStreamGenerator",
    "Instance",
    "PrequentialEvaluator",
    "PrequentialTrainer",
    "StreamLoader",
]
