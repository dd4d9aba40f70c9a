"""Batch clustering of repository models by their behaviour on descriptor samples.

Each model is represented by a row of 0/1 correctness indicators on a shared
sample built from the descriptor centers of all contributing models (plus a
trailing empty label slot). Rows are grouped by a scikit-learn clusterer and
the resulting labels are written back onto the models.
"""

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
from sklearn.cluster import AgglomerativeClustering, KMeans
from sklearn.mixture import GaussianMixture

from ..data.preprocessing import Instance

if TYPE_CHECKING:
    from .components import ModelRecord

logger = logging.getLogger(__name__)


class BatchClusterer(ABC):
    """Fit-then-assign clusterer over dense numeric rows."""

    @abstractmethod
    def fit(self, rows: np.ndarray) -> "BatchClusterer":
        pass

    @abstractmethod
    def assign(self, row: np.ndarray) -> int:
        pass

    @abstractmethod
    def number_of_clusters(self) -> int:
        pass


class EMClusterer(BatchClusterer):
    """Gaussian mixture whose number of components is chosen by BIC.

    Args:
        max_components (int): Largest number of components tried.
        covariance_type (str): Passed to ``GaussianMixture``.
        random_state (Optional[int]): Seed for the mixture initialisation.
        **params: Extra ``GaussianMixture`` keyword arguments.
    """

    def __init__(
        self,
        max_components: int = 10,
        covariance_type: str = "diag",
        random_state: Optional[int] = 100,
        **params,
    ):
        if max_components <= 0:
            raise ValueError(f"max_components must be positive, got {max_components}")
        self.max_components = max_components
        self.covariance_type = covariance_type
        self.random_state = random_state
        self.params = params
        self.model: Optional[GaussianMixture] = None

    def fit(self, rows: np.ndarray) -> "EMClusterer":
        best_bic = np.inf
        for n_components in range(1, min(self.max_components, len(rows)) + 1):
            candidate = GaussianMixture(
                n_components=n_components,
                covariance_type=self.covariance_type,
                random_state=self.random_state,
                **self.params,
            ).fit(rows)
            bic = candidate.bic(rows)
            if bic < best_bic:
                best_bic = bic
                self.model = candidate
        if self.model is None:
            raise RuntimeError("EM clustering needs at least one row")
        logger.debug(f"EM selected {self.model.n_components} components (BIC={best_bic:.2f})")
        return self

    def assign(self, row: np.ndarray) -> int:
        return int(self.model.predict(row.reshape(1, -1))[0])

    def number_of_clusters(self) -> int:
        return 0 if self.model is None else int(self.model.n_components)


class KMeansClusterer(BatchClusterer):
    """K-means with the cluster count capped by the number of rows."""

    def __init__(self, n_clusters: int = 2, random_state: Optional[int] = 10, n_init: int = 10, **params):
        if n_clusters <= 0:
            raise ValueError(f"n_clusters must be positive, got {n_clusters}")
        self.n_clusters = n_clusters
        self.random_state = random_state
        self.n_init = n_init
        self.params = params
        self.model: Optional[KMeans] = None

    def fit(self, rows: np.ndarray) -> "KMeansClusterer":
        self.model = KMeans(
            n_clusters=min(self.n_clusters, len(rows)),
            random_state=self.random_state,
            n_init=self.n_init,
            **self.params,
        ).fit(rows)
        return self

    def assign(self, row: np.ndarray) -> int:
        return int(self.model.predict(row.reshape(1, -1))[0])

    def number_of_clusters(self) -> int:
        return 0 if self.model is None else int(self.model.n_clusters)


class AgglomerativeClusterer(BatchClusterer):
    """Hierarchical clustering; new rows go to the nearest cluster centroid."""

    def __init__(self, n_clusters: int = 2, linkage: str = "ward", **params):
        if n_clusters <= 0:
            raise ValueError(f"n_clusters must be positive, got {n_clusters}")
        self.n_clusters = n_clusters
        self.linkage = linkage
        self.params = params
        self.centroids: Optional[np.ndarray] = None

    def fit(self, rows: np.ndarray) -> "AgglomerativeClusterer":
        n_clusters = min(self.n_clusters, len(rows))
        if n_clusters == 1:
            labels = np.zeros(len(rows), dtype=int)
        else:
            labels = AgglomerativeClustering(
                n_clusters=n_clusters, linkage=self.linkage, **self.params,
            ).fit_predict(rows)
        self.centroids = np.vstack([rows[labels == label].mean(axis=0) for label in range(n_clusters)])
        return self

    def assign(self, row: np.ndarray) -> int:
        distances = np.linalg.norm(self.centroids - row, axis=1)
        return int(np.argmin(distances))

    def number_of_clusters(self) -> int:
        return 0 if self.centroids is None else len(self.centroids)


BATCH_CLUSTERERS = {
    "em": EMClusterer,
    "kmeans": KMeansClusterer,
    "agglomerative": AgglomerativeClusterer,
}


def _parse_value(raw: str) -> Any:
    lowered = raw.lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    if lowered == "none":
        return None
    for cast in (int, float):
        try:
            return cast(raw)
        except ValueError:
            continue
    return raw


def parse_clusterer_parameters(parameters: str) -> Dict[str, Any]:
    """Parse a raw ``"key=value key=value"`` string into keyword arguments.

    Values are converted to bool, None, int or float where possible and kept
    as strings otherwise.

    Example:
        >>> parse_clusterer_parameters("n_clusters=3 linkage=average")
        {'n_clusters': 3, 'linkage': 'average'}

    Raises:
        ValueError: If a token is not of the form ``key=value``.
    """
    kwargs: Dict[str, Any] = {}
    for token in parameters.split():
        key, sep, value = token.partition("=")
        if not sep or not key:
            raise ValueError(f"Clusterer parameter must look like key=value, got '{token}'")
        kwargs[key] = _parse_value(value)
    return kwargs


def make_batch_clusterer(name: str = "em", parameters: Union[str, Dict[str, Any], None] = "") -> BatchClusterer:
    """Instantiate a batch clusterer by name.

    Args:
        name: One of ``em``, ``kmeans`` or ``agglomerative``.
        parameters: Raw parameter string or an already parsed mapping.

    Raises:
        ValueError: If the name is unknown or the parameter string is malformed.
    """
    if name not in BATCH_CLUSTERERS:
        raise ValueError(f"Unknown batch clusterer '{name}'. Available: {sorted(BATCH_CLUSTERERS)}")
    if isinstance(parameters, dict):
        kwargs = dict(parameters)
    else:
        kwargs = parse_clusterer_parameters(parameters or "")
    return BATCH_CLUSTERERS[name](**kwargs)


def target_descriptor_count(models: Sequence["ModelRecord"], undersample: bool = False) -> int:
    """Smallest (undersampling) or largest per-class descriptor count across models."""
    counts = [model.descriptor_count(c) for model in models for c in range(model.n_classes)]
    if not counts:
        return 0
    return min(counts) if undersample else max(counts)


def merged_descriptor_sample(models: Sequence["ModelRecord"], target_count: int) -> List[Instance]:
    """Concatenate every model's resampled descriptor centers, class by class.

    Classes without any center are skipped.
    """
    sample: List[Instance] = []
    for model in models:
        for c in range(model.n_classes):
            if model.descriptor_count(c) > 0:
                sample.extend(model.descriptor_centers(c, target_count))
    return sample


class ClusteringAdapter:
    """Runs a batch clusterer over model prediction rows and tags the models.

    A fresh clusterer is built for every clustering cycle.

    Args:
        name (str): Batch clusterer name.
        parameters (str): Raw parameter string handed to the clusterer.
    """

    def __init__(self, name: str = "em", parameters: Union[str, Dict[str, Any], None] = ""):
        self.name = name
        self.parameters = parameters
        self.clusterer = make_batch_clusterer(name, parameters)

    def reset(self) -> None:
        self.clusterer = make_batch_clusterer(self.name, self.parameters)

    def cluster(
        self,
        rows: np.ndarray,
        models: Sequence["ModelRecord"],
    ) -> Tuple[Optional[List[int]], int]:
        """Cluster prediction rows and write each label onto the matching model.

        Rows and models correspond positionally. The trailing label column of
        ``rows`` is dropped before fitting. Failures of the clusterer are logged
        and reported as ``(None, 0)``, leaving earlier labels in place.

        Args:
            rows: Matrix of prediction rows, one per model.
            models: Models the rows were computed from.

        Returns:
            Tuple[Optional[List[int]], int]: Label per row and the number of
            clusters, or ``(None, 0)`` if clustering failed.
        """
        try:
            features = np.asarray(rows, dtype=float)[:, :-1]
            self.clusterer.fit(features)
            labels = [self.clusterer.assign(row) for row in features]
            n_clusters = self.clusterer.number_of_clusters()
        except Exception as e:
            logger.warning(f"Clustering of {len(models)} models failed, skipping this cycle: {e}", exc_info=True)
            return None, 0
        finally:
            self.reset()

        for model, label in zip(models, labels):
            model.cluster_label = label
        logger.debug(f"Clustered {len(models)} models into {n_clusters} clusters")
        return labels, n_clusters
