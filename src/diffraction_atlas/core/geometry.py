"""
Detector geometry from fitted spot ellipses.

A tilted detector stretches spots along a common direction. The doubled-angle
mean of the ellipses' major axes gives that direction; the background's
inverse-square fall-off away from the beam tells which way along it the
detector is inclined.
"""

import logging
from typing import Optional, Sequence, Tuple

import numpy as np
from skimage.draw import disk

from ..exceptions import PreconditionError
from ..models import Ellipse, GeometrySummary, SpotPosition

logger = logging.getLogger(__name__)


def elongation_direction(ellipses: Sequence[Ellipse]) -> Tuple[Optional[float], Optional[float]]:
    """
    Mean major-axis orientation and mean aspect ratio of valid ellipses.

    Orientations are averaged as doubled angles weighted by a - b, so
    near-circular spots with ill-defined axes contribute little.

    Args:
        ellipses: Fitted ellipses, invalid ones are skipped

    Returns:
        Tuple of (angle in [0, pi) or None, mean aspect ratio or None)
    """
    valid = [e for e in ellipses if e.has_area]
    if not valid:
        return None, None

    weights = np.array([e.a - e.b for e in valid])
    angles = np.array([e.angle for e in valid])
    mean_ratio = float(np.mean([e.aspect_ratio for e in valid]))

    if weights.sum() <= 0:
        return None, mean_ratio
    c = np.dot(weights, np.cos(2 * angles))
    s = np.dot(weights, np.sin(2 * angles))
    if np.hypot(c, s) < 1e-12:
        return None, mean_ratio
    return float((0.5 * np.arctan2(s, c)) % np.pi), mean_ratio


def incidence_sign(
    image: np.ndarray,
    spot_positions: Sequence[SpotPosition],
    radius: float,
    direction: float,
    margin: float = 2.0,
) -> float:
    """
    Sign of the beam-incidence tilt along the elongation direction.

    Spots are masked out (with `margin` times their radius), the remaining
    background is projected onto `direction` and averaged per unit distance,
    and a line is fitted to the profile.

    Args:
        image: 2D image
        spot_positions: (x, y) spot positions in the image
        radius: Spot radius in pixels
        direction: Elongation angle in radians
        margin: Masked disk radius / spot radius

    Returns:
        +1.0 if the background falls off along `direction`, -1.0 otherwise
    """
    image = np.asarray(image, dtype=np.float64)
    background = np.isfinite(image)
    for x, y in spot_positions:
        rr, cc = disk((y, x), margin * radius, shape=image.shape)
        background[rr, cc] = False
    if background.sum() < 3:
        raise PreconditionError("No background pixels left after masking the spots")

    ys, xs = np.nonzero(background)
    cy, cx = (image.shape[0] - 1) / 2, (image.shape[1] - 1) / 2
    along = (xs - cx) * np.cos(direction) + (ys - cy) * np.sin(direction)
    bins = np.round(along - along.min()).astype(np.int64)

    counts = np.bincount(bins)
    sums = np.bincount(bins, weights=image[ys, xs])
    populated = counts > 0
    profile = sums[populated] / counts[populated]
    distance = np.flatnonzero(populated).astype(np.float64)
    if distance.size < 2:
        raise PreconditionError("Background profile has fewer than two samples")

    slope, _ = np.polyfit(distance, profile, 1)
    return 1.0 if slope < 0 else -1.0


def summarize_geometry(
    image: np.ndarray,
    ellipses: Sequence[Ellipse],
    spot_positions: Sequence[SpotPosition],
    radius: float,
) -> GeometrySummary:
    """Combine elongation and incidence inference for one image's fits."""
    n_valid = sum(e.has_area for e in ellipses)
    angle, ratio = elongation_direction(ellipses)
    sign = None
    if angle is not None:
        sign = incidence_sign(image, spot_positions, radius, angle)
    logger.debug("Geometry: %d valid ellipses, elongation %s, sign %s", n_valid, angle, sign)
    return GeometrySummary(n_valid=n_valid, mean_aspect_ratio=ratio, elongation_angle=angle, incidence_sign=sign)
