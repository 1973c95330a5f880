"""
Ellipse fitting to diffraction spots.

Each spot's edge is isolated from an annular neighborhood of the Scharr
gradient by clustering, fitted with a conic, cleaned by clustering the
points' distances to that conic, and refitted.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np

from ..exceptions import PreconditionError
from ..models import Ellipse, SpotPosition
from ..profiles import EllipseParams
from .backend import ClusteringBackend, SklearnBackend
from .conic import ellipse_points_from_conic, hyper_renormalization
from .preprocessing import gradient_magnitude, threshold_proportion

logger = logging.getLogger(__name__)

RadiusPair = Tuple[float, float]  # (inner, outer)


def create_annular_mask(size: int, inner_radius: float, outer_radius: float) -> np.ndarray:
    """
    Square boolean mask of an annulus centred in the middle pixel.

    Args:
        size: Side length in pixels, must be odd
        inner_radius: Inner radius (inclusive)
        outer_radius: Outer radius (inclusive)

    Returns:
        (size, size) boolean mask
    """
    if size < 1 or size % 2 == 0:
        raise PreconditionError(f"Annular mask size must be a positive odd number, got {size}")
    if not 0 <= inner_radius <= outer_radius:
        raise PreconditionError(f"Need 0 <= inner <= outer radius, got {inner_radius}, {outer_radius}")

    half = size // 2
    yy, xx = np.ogrid[-half:half + 1, -half:half + 1]
    dist = np.sqrt(xx ** 2 + yy ** 2)
    return (dist >= inner_radius) & (dist <= outer_radius)


def get_mask_values(
    image: np.ndarray,
    mask: np.ndarray,
    top_left: Tuple[int, int],
) -> Tuple[np.ndarray, np.ndarray, Tuple[int, int]]:
    """
    Image pixels under a mask placed at `top_left`, clipped to the image.

    Args:
        image: 2D image
        mask: Boolean mask
        top_left: (x, y) of the mask's top-left pixel in image coordinates

    Returns:
        Tuple of (values, (n, 2) array of (x, y) image coordinates, clipped
        top-left corner)
    """
    rows, cols = image.shape
    mask_rows, mask_cols = mask.shape
    x0, y0 = top_left
    x_lo, x_hi = max(x0, 0), min(x0 + mask_cols, cols)
    y_lo, y_hi = max(y0, 0), min(y0 + mask_rows, rows)
    if x_lo >= x_hi or y_lo >= y_hi:
        return np.empty(0), np.empty((0, 2), dtype=np.int64), (x_lo, y_lo)

    clipped = mask[y_lo - y0:y_hi - y0, x_lo - x0:x_hi - x0]
    ys, xs = np.nonzero(clipped)
    xs = xs + x_lo
    ys = ys + y_lo
    return image[ys, xs], np.column_stack([xs, ys]), (x_lo, y_lo)


def _edge_cluster(values: np.ndarray, cluster_fraction: float, hist_bins: int, backend: ClusteringBackend) -> np.ndarray:
    # Two-way split of gradient magnitudes, keeping the high cluster
    _, labels = backend.weighted_kmeans(values, np.ones_like(values), 2)
    centers = np.array([values[labels == k].mean() if np.any(labels == k) else -np.inf for k in (0, 1)])
    keep = labels == int(np.argmax(centers))
    if keep.mean() > cluster_fraction:
        keep &= threshold_proportion(values, cluster_fraction, hist_bins)
    return keep


def fit_spot_ellipse(
    gradient: np.ndarray,
    position: SpotPosition,
    radii: RadiusPair,
    cluster_fraction: float,
    params: Optional[EllipseParams] = None,
    backend: Optional[ClusteringBackend] = None,
) -> Ellipse:
    """
    Fit an ellipse to one spot's edge.

    Args:
        gradient: Scharr gradient magnitude of the image
        position: (x, y) spot position in the image
        radii: (inner, outer) radii of the annular neighborhood
        cluster_fraction: Maximum share of mask pixels kept as edge pixels
        params: Ellipse parameters
        backend: Clustering backend (default: scikit-learn)

    Returns:
        Ellipse in image coordinates; is_ellipse is False for degenerate fits

    Raises:
        PreconditionError: If the annular neighborhood holds no pixels
    """
    params = params or EllipseParams()
    backend = backend or SklearnBackend()
    inner, outer = radii
    half = int(np.ceil(outer))
    mask = create_annular_mask(2 * half + 1, inner, outer)

    x, y = position
    values, coords, _ = get_mask_values(gradient, mask, (x - half, y - half))
    if values.size == 0:
        raise PreconditionError(f"Annular mask around spot ({x}, {y}) holds no image pixels")
    if values.size < 5:
        return Ellipse.invalid((float(x), float(y)))

    # Local coordinates keep the conic well conditioned
    px = coords[:, 0] - x
    py = coords[:, 1] - y
    f0 = 0.5 * (inner + outer)

    edge = _edge_cluster(values, cluster_fraction, params.hist_bins, backend)
    if edge.sum() < 5:
        return Ellipse.invalid((float(x), float(y)))
    if values[edge].sum() <= 0:
        # Flat neighborhood, no edge to weight the fit
        return Ellipse.invalid((float(x), float(y)))
    fit = hyper_renormalization(px[edge], py[edge], values[edge], f0, params.max_iter, params.tolerance)
    ellipse = ellipse_points_from_conic(fit.conic.general())
    if not ellipse.has_area:
        return ellipse.translated(x, y)

    # Keep the points between the inside and outside distance clusters
    points = np.column_stack([px, py]).astype(np.float64)
    distances = backend.weighted_ellipse_distances(points, ellipse, params.distance_accuracy)
    centers, _ = backend.weighted_kmeans(distances, values, 3)
    low, high = float(np.min(centers)), float(np.max(centers))
    boundary = (distances >= low) & (distances <= high)

    if boundary.sum() >= 5:
        refit = hyper_renormalization(
            px[boundary], py[boundary], values[boundary], f0, params.max_iter, params.tolerance
        )
        if not refit.converged:
            logger.debug("Conic refit at (%d, %d) hit the iteration cap", x, y)
        refined = ellipse_points_from_conic(refit.conic.general())
        if refined.has_area:
            ellipse = refined

    return ellipse.translated(x, y)


def _radius_pairs(
    estimated_radii: Union[RadiusPair, Sequence[RadiusPair]],
    n_spots: int,
) -> List[RadiusPair]:
    radii = np.asarray(estimated_radii, dtype=np.float64)
    if radii.shape == (2,):
        return [tuple(radii)] * n_spots
    if radii.shape != (n_spots, 2):
        raise PreconditionError(f"Expected one (inner, outer) pair or {n_spots} pairs, got shape {radii.shape}")
    return [tuple(r) for r in radii]


def fit_ellipses(
    image: np.ndarray,
    spot_positions: Sequence[SpotPosition],
    estimated_radii: Union[RadiusPair, Sequence[RadiusPair]],
    cluster_fraction: Optional[float] = None,
    params: Optional[EllipseParams] = None,
    backend: Optional[ClusteringBackend] = None,
    workers: int = 1,
) -> List[Ellipse]:
    """
    Fit an ellipse to every spot of an image.

    Args:
        image: 2D image
        spot_positions: (x, y) spot positions in this image's frame
        estimated_radii: One (inner, outer) pair for all spots, or one per spot
        cluster_fraction: Maximum share of mask pixels kept as edge pixels
            (default from params)
        params: Ellipse parameters
        backend: Clustering backend (default: scikit-learn)
        workers: Thread pool size

    Returns:
        One Ellipse per spot, in order
    """
    params = params or EllipseParams()
    backend = backend or SklearnBackend()
    cluster_fraction = params.cluster_fraction if cluster_fraction is None else cluster_fraction
    if not 0 < cluster_fraction <= 1:
        raise PreconditionError(f"cluster_fraction must be in (0, 1], got {cluster_fraction}")

    image = np.asarray(image, dtype=np.float64)
    if image.ndim != 2:
        raise PreconditionError(f"Ellipse fitting needs a 2D image, got shape {image.shape}")
    radii = _radius_pairs(estimated_radii, len(spot_positions))
    gradient = gradient_magnitude(image, "scharr")

    def fit(item):
        position, pair = item
        return fit_spot_ellipse(gradient, position, pair, cluster_fraction, params, backend)

    with ThreadPoolExecutor(max_workers=max(1, workers)) as executor:
        ellipses = list(executor.map(fit, zip(spot_positions, radii)))

    logger.debug("Fitted %d/%d spots as ellipses", sum(e.is_ellipse for e in ellipses), len(ellipses))
    return ellipses
