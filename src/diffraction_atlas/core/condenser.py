"""
Condenser aperture profile from the self-overlap of a drifting spot.

A spot is the image of the illuminating aperture, so its intensity falls
off from the centre to the edge along a radial profile f. Where the spot
of one image overlaps the same spot of a shifted image, a detector pixel q
sees f(|q - c_a|) in one and f(|q - c_b|) in the other. The ratio of the
two readings depends on f only, which is modelled as a cubic Bezier curve
from (0, 1) to (r, b3) and fitted to those ratios by bounded least squares.
"""

import itertools
import logging
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np
from scipy.optimize import least_squares
from skimage.draw import disk

from ..exceptions import PreconditionError
from ..models import CondenserProfile, RelativePosition, SpotPosition
from ..profiles import CondenserParams
from .preprocessing import validate_stack
from .spot_maps import image_offsets

logger = logging.getLogger(__name__)

N_PARAMS = 5
MIN_SAMPLES = 5
BISECTION_STEPS = 48


def _control_points(radius: float, params: Sequence[float]):
    x1, a2, b1, b2, b3 = params
    x2 = x1 + a2 * (radius - x1)
    slope = (b3 - 1.0) / radius
    y1 = (1.0 - b1) * slope * x1 + 1.0
    y2 = b2 * y1 + (1.0 - b2) * (slope * x2 + 1.0)
    return (0.0, x1, x2, float(radius)), (1.0, y1, y2, b3)


def _bernstein(t: np.ndarray, p: Tuple[float, float, float, float]) -> np.ndarray:
    s = 1.0 - t
    return s ** 3 * p[0] + 3 * s ** 2 * t * p[1] + 3 * s * t ** 2 * p[2] + t ** 3 * p[3]


def bezier_profile(dist: np.ndarray, radius: float, params: Sequence[float]) -> np.ndarray:
    """
    Evaluate the Bezier profile at distances from the spot centre.

    The curve runs through control points (0, 1), (x1, y1), (x2, y2) and
    (r, b3), with x2 = x1 + a2 * (r - x1). With every parameter in its
    bounds the x coordinate grows monotonically along the curve, so each
    distance is inverted by bisection on the curve parameter.

    Args:
        dist: Distances in pixels, clipped to [0, radius]
        radius: Spot radius in pixels
        params: (x1, a2, b1, b2, b3)

    Returns:
        Profile values, same shape as dist
    """
    if radius <= 0:
        raise PreconditionError(f"Profile radius must be positive, got {radius}")
    xs, ys = _control_points(radius, params)
    target = np.clip(np.asarray(dist, dtype=np.float64), 0.0, radius)

    lo = np.zeros_like(target)
    hi = np.ones_like(target)
    for _ in range(BISECTION_STEPS):
        mid = 0.5 * (lo + hi)
        below = _bernstein(mid, xs) < target
        lo = np.where(below, mid, lo)
        hi = np.where(below, hi, mid)
    return _bernstein(0.5 * (lo + hi), ys)


def render_profile(params: Sequence[float], radius: int) -> np.ndarray:
    """(2r+1, 2r+1) image of the profile, zero outside the disk."""
    y, x = np.mgrid[-radius:radius + 1, -radius:radius + 1]
    dist = np.hypot(x, y)
    return np.where(dist <= radius, bezier_profile(dist, radius, params), 0.0)


def spot_centers(
    position: SpotPosition,
    relative_positions: Sequence[RelativePosition],
    n_images: int,
    origin: Tuple[int, int] = (0, 0),
) -> List[SpotPosition]:
    """Centre of one canvas spot in every image's own frame."""
    offsets = image_offsets(relative_positions, n_images)
    return [
        (int(position[0] - origin[0] + dx), int(position[1] - origin[1] + dy))
        for dx, dy in offsets
    ]


def self_overlap_samples(
    images: Union[np.ndarray, Sequence[np.ndarray]],
    centers: Sequence[SpotPosition],
    radius: int,
    min_fraction: float = 0.05,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Collect intensity ratios of detector pixels lit by a spot in two images.

    Each image has its median subtracted as background. For every pair of
    images whose spot centres differ, the pixels inside both disks whose
    signal reaches `min_fraction` of that image's spot peak give one sample.

    Args:
        images: Image stack
        centers: (x, y) spot centre in each image's frame
        radius: Spot radius in pixels
        min_fraction: Signal floor relative to the spot peak

    Returns:
        Tuple of (distance to centre a, distance to centre b, signal a / signal b)
    """
    stack = validate_stack(images)
    n_images, rows, cols = stack.shape
    if len(centers) != n_images:
        raise PreconditionError(f"Got {len(centers)} spot centres for {n_images} images")

    signals, peaks = [], []
    for image, (cx, cy) in zip(stack, centers):
        signal = image - np.median(image)
        rr, cc = disk((cy, cx), radius + 0.5, shape=image.shape)
        signals.append(signal)
        peaks.append(float(signal[rr, cc].max()) if rr.size else 0.0)

    dist_a, dist_b, ratio = [], [], []
    for a, b in itertools.combinations(range(n_images), 2):
        (ax, ay), (bx, by) = centers[a], centers[b]
        if (ax, ay) == (bx, by) or peaks[a] <= 0 or peaks[b] <= 0:
            continue
        x_lo, x_hi = max(max(ax, bx) - radius, 0), min(min(ax, bx) + radius + 1, cols)
        y_lo, y_hi = max(max(ay, by) - radius, 0), min(min(ay, by) + radius + 1, rows)
        if x_lo >= x_hi or y_lo >= y_hi:
            continue

        ys, xs = np.mgrid[y_lo:y_hi, x_lo:x_hi]
        da = np.hypot(xs - ax, ys - ay)
        db = np.hypot(xs - bx, ys - by)
        va = signals[a][y_lo:y_hi, x_lo:x_hi]
        vb = signals[b][y_lo:y_hi, x_lo:x_hi]
        keep = (
            (da <= radius) & (db <= radius)
            & (va > min_fraction * peaks[a]) & (vb > min_fraction * peaks[b])
        )
        dist_a.append(da[keep])
        dist_b.append(db[keep])
        ratio.append(va[keep] / vb[keep])

    if not ratio:
        return np.empty(0), np.empty(0), np.empty(0)
    return np.concatenate(dist_a), np.concatenate(dist_b), np.concatenate(ratio)


def fit_condenser_profile(
    dist_a: np.ndarray,
    dist_b: np.ndarray,
    ratio: np.ndarray,
    radius: int,
    max_nfev: int = 200,
) -> Optional[CondenserProfile]:
    """
    Fit the Bezier profile to self-overlap ratios.

    Parameters are bounded to [0, r] for x1 and [0, 1] for the rest, and
    start from the middle of those ranges.

    Args:
        dist_a: Distance of each sample to the first spot centre
        dist_b: Distance of each sample to the second spot centre
        ratio: Signal of the first image over the second
        radius: Spot radius in pixels
        max_nfev: Function evaluation cap of the solver

    Returns:
        CondenserProfile, or None with fewer than five samples
    """
    if radius < 1:
        raise PreconditionError(f"Condenser radius must be at least 1, got {radius}")
    if not (len(dist_a) == len(dist_b) == len(ratio)):
        raise PreconditionError("Distances and ratios differ in length")
    if len(ratio) < MIN_SAMPLES:
        logger.debug("Only %d self-overlap samples, skipping condenser fit", len(ratio))
        return None

    def residual(params: np.ndarray) -> np.ndarray:
        denominator = np.clip(bezier_profile(dist_b, radius, params), 1e-12, None)
        return bezier_profile(dist_a, radius, params) / denominator - ratio

    x0 = np.array([0.5 * radius, 0.5, 0.5, 0.5, 0.5])
    lower = np.zeros(N_PARAMS)
    upper = np.array([float(radius), 1.0, 1.0, 1.0, 1.0])
    solution = least_squares(residual, x0, bounds=(lower, upper), max_nfev=max_nfev)
    if not solution.success:
        logger.debug("Condenser fit stopped early: %s", solution.message)

    params = tuple(float(p) for p in solution.x)
    return CondenserProfile(
        params=params,
        radius=int(radius),
        profile=render_profile(params, radius),
        cost=float(solution.cost),
        n_samples=len(ratio),
    )


def estimate_condenser_profile(
    images: Union[np.ndarray, Sequence[np.ndarray]],
    spot_position: SpotPosition,
    relative_positions: Sequence[RelativePosition],
    radius: int,
    origin: Tuple[int, int] = (0, 0),
    params: Optional[CondenserParams] = None,
) -> Optional[CondenserProfile]:
    """
    Fit the condenser profile of one located spot across a stack.

    Args:
        images: Image stack
        spot_position: Spot position on the aligned-average canvas
        relative_positions: One RelativePosition per image
        radius: Spot radius in pixels
        origin: Canvas position of image 0's top-left pixel
        params: Condenser parameters (max_images, min_fraction, max_nfev)

    Returns:
        CondenserProfile, or None when the spot never moves enough to overlap itself
    """
    params = params or CondenserParams()
    stack = validate_stack(images)
    centers = spot_centers(spot_position, relative_positions, len(stack), origin)

    budget = min(params.max_images, len(stack))
    dist_a, dist_b, ratio = self_overlap_samples(
        stack[:budget], centers[:budget], radius, params.min_fraction
    )
    profile = fit_condenser_profile(dist_a, dist_b, ratio, radius, params.max_nfev)
    if profile is None:
        logger.info("No condenser profile: spot %s has no self-overlap", tuple(spot_position))
    else:
        logger.info(
            "Condenser profile from %d samples: edge level %.3f, cost %.3g",
            profile.n_samples, profile.edge_level, profile.cost,
        )
    return profile
