"""Ensemble engine, model collections and their river/scikit-learn collaborators."""

from .clustering import ClusteringAdapter, make_batch_clusterer
from .components import EmptyEnsembleError, ModelRecord, ModelRepository, WeightedEnsemble, q_statistic
from .detectors import DDMOCI, ChangeDetector, RiverChangeDetector, make_change_detector
from .learners import DescriptorManager, StreamLearner, make_base_learner, make_descriptor_manager
from .model import DriftLevel, DriftRecoveryEnsemble

__all__ = [
    "ChangeDetector",
    "ClusteringAdapter",
    "DDMOCI",
    "DescriptorManager",
    "DriftLevel",
    "DriftRecoveryEnsemble",
    "EmptyEnsembleError",
    "ModelRecord",
    "ModelRepository",
    "RiverChangeDetector",
    "StreamLearner",
    "WeightedEnsemble",
    "make_base_learner",
    "make_batch_clusterer",
    "make_change_detector",
    "make_descriptor_manager",
    "q_statistic",
]
