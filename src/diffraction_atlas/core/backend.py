"""Clustering and ellipse-distance backends used by the ellipse fitter."""

import logging
import warnings
from abc import ABC, abstractmethod
from typing import Tuple

import numpy as np
from sklearn.cluster import KMeans
from sklearn.exceptions import ConvergenceWarning

from ..exceptions import BackendError, PreconditionError
from ..models import Ellipse

logger = logging.getLogger(__name__)


class ClusteringBackend(ABC):
    """Numerical routines the ellipse fitter delegates to.

    Implementations receive flat arrays and scalar parameters and return
    arrays of the same length, so an in-process implementation can replace
    an external engine without touching the fitter's control flow.
    """

    name = "abstract"

    @abstractmethod
    def weighted_kmeans(
        self,
        samples: np.ndarray,
        weights: np.ndarray,
        k: int,
    ) -> Tuple[np.ndarray, np.ndarray]:
        """Cluster 1D or 2D samples into k groups.

        Args:
            samples: (n,) or (n, d) array
            weights: (n,) non-negative sample weights
            k: Number of clusters

        Returns:
            Tuple of (centers with shape (k,) or (k, d), labels with shape (n,))
        """

    @abstractmethod
    def weighted_ellipse_distances(
        self,
        points: np.ndarray,
        ellipse: Ellipse,
        accuracy: float = 1e-3,
    ) -> np.ndarray:
        """Signed Euclidean distance of each point to an ellipse.

        Args:
            points: (n, 2) array of (x, y) in the ellipse's coordinate frame
            ellipse: Valid ellipse
            accuracy: Convergence tolerance of the distance in pixels

        Returns:
            (n,) distances, negative inside the ellipse
        """


def ellipse_distances(points: np.ndarray, ellipse: Ellipse, accuracy: float = 1e-3, max_iter: int = 50) -> np.ndarray:
    """
    Signed distance from points to an ellipse by Newton iteration.

    Points are moved into the ellipse's axis-aligned frame and folded into
    the first quadrant; the closest ellipse point (a cos s, b sin s) is then
    found by Newton's method on the parameter s.
    """
    if not ellipse.is_ellipse or ellipse.a <= 0 or ellipse.b <= 0:
        raise PreconditionError("Distances need a valid ellipse with positive axes")

    points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    a, b = float(ellipse.a), float(ellipse.b)
    c, s = np.cos(ellipse.angle), np.sin(ellipse.angle)
    dx = points[:, 0] - ellipse.center[0]
    dy = points[:, 1] - ellipse.center[1]
    u = np.abs(c * dx + s * dy)
    v = np.abs(-s * dx + c * dy)

    t = np.arctan2(a * v, b * u)
    step_tol = accuracy / max(a, b)
    for _ in range(max_iter):
        sin_t, cos_t = np.sin(t), np.cos(t)
        g = (b * b - a * a) * sin_t * cos_t + a * u * sin_t - b * v * cos_t
        dg = (b * b - a * a) * np.cos(2 * t) + a * u * cos_t + b * v * sin_t
        step = np.divide(g, dg, out=np.zeros_like(g), where=np.abs(dg) > 1e-12)
        t = np.clip(t - step, 0.0, np.pi / 2)
        if np.max(np.abs(step)) < step_tol:
            break

    distance = np.hypot(a * np.cos(t) - u, b * np.sin(t) - v)
    inside = (u / a) ** 2 + (v / b) ** 2 < 1
    return np.where(inside, -distance, distance)


class SklearnBackend(ClusteringBackend):
    """scikit-learn k-means with sample weights and Newton ellipse distances."""

    name = "sklearn"

    def __init__(self, n_init: int = 10, random_state: int = 0):
        self.n_init = n_init
        self.random_state = random_state

    def weighted_kmeans(self, samples, weights, k):
        samples = np.asarray(samples, dtype=np.float64)
        flat = samples.ndim == 1
        data = samples.reshape(-1, 1) if flat else samples
        weights = np.asarray(weights, dtype=np.float64).ravel()

        if len(data) < k:
            raise PreconditionError(f"k-means needs at least {k} samples, got {len(data)}")
        if weights.shape[0] != len(data):
            raise PreconditionError(f"Got {weights.shape[0]} weights for {len(data)} samples")

        try:
            with warnings.catch_warnings():
                # Fewer distinct values than clusters is expected on flat masks
                warnings.simplefilter("ignore", ConvergenceWarning)
                model = KMeans(n_clusters=k, n_init=self.n_init, random_state=self.random_state)
                model.fit(data, sample_weight=weights)
        except (ValueError, np.linalg.LinAlgError) as e:
            raise BackendError(f"weighted k-means (k={k})", str(e)) from e

        centers = model.cluster_centers_
        return (centers.ravel() if flat else centers), model.labels_

    def weighted_ellipse_distances(self, points, ellipse, accuracy=1e-3):
        try:
            return ellipse_distances(points, ellipse, accuracy)
        except FloatingPointError as e:
            raise BackendError("ellipse distances", str(e)) from e


def get_backend(name: str = "sklearn") -> ClusteringBackend:
    """Get a clustering backend by name."""
    if name == "sklearn":
        return SklearnBackend()
    raise ValueError(f"Unknown clustering backend '{name}'. Available: sklearn")
