"""
Mirror-symmetry axes of an averaged diffraction pattern.

The pattern is reflected about lines through an assumed origin over a range
of angles; the Pearson correlation between the pattern and each reflection
peaks at mirror lines. The peaks repeat with the symmetry order of the
pattern, which is read off the power spectrum of the angular correlation
curve. The lines' intersection gives an independent estimate of the pattern
center.
"""

import itertools
import logging
from typing import List, Optional, Sequence, Tuple

import numpy as np
from scipy import ndimage
from skimage.transform import downscale_local_mean

from ..exceptions import PreconditionError
from ..models import SymmetryLine, SymmetryResult
from ..profiles import SymmetryParams
from .statistics import pearson_corr

logger = logging.getLogger(__name__)


def downsample_factor(shape: Tuple[int, int], target_size: int) -> int:
    """Largest power of two that keeps the smaller side at least `target_size`."""
    factor = 1
    if target_size <= 0:
        return factor
    while min(shape) / (2 * factor) >= target_size:
        factor *= 2
    return factor


def reflection_correlation(
    image: np.ndarray,
    origin: Tuple[float, float],
    angle: float,
) -> float:
    """
    Pearson correlation of an image with its reflection about a line.

    Args:
        image: 2D image
        origin: (x, y) point on the mirror line
        angle: Line direction in radians, measured from the x axis

    Returns:
        Correlation over pixels whose reflection falls inside the image
    """
    rows, cols = image.shape
    yy, xx = np.mgrid[0:rows, 0:cols].astype(np.float64)
    dx = xx - origin[0]
    dy = yy - origin[1]
    c2, s2 = np.cos(2 * angle), np.sin(2 * angle)
    rx = origin[0] + c2 * dx + s2 * dy
    ry = origin[1] + s2 * dx - c2 * dy

    reflected = ndimage.map_coordinates(image, [ry, rx], order=1, mode="constant", cval=np.nan)
    valid = np.isfinite(reflected) & np.isfinite(image)
    if valid.sum() < 2:
        return 0.0
    return pearson_corr(image[valid], reflected[valid])


def angular_correlation(image: np.ndarray, origin: Tuple[float, float], num_angles: int) -> np.ndarray:
    """Reflection correlation at `num_angles` evenly spaced angles over [0, pi)."""
    angles = np.arange(num_angles) * np.pi / num_angles
    return np.array([reflection_correlation(image, origin, a) for a in angles])


def repeating_max_loc(
    corr: np.ndarray,
    candidate_counts: Sequence[int] = (2, 3, 4, 6),
) -> List[int]:
    """
    Indices of the repeating maxima of a periodic correlation curve.

    The number of maxima is the candidate count with the strongest component
    in the curve's power spectrum. A divisor of that count is preferred when
    its own component is at least half as strong, since the harmonics of a
    narrow pulse train carry comparable power. The component's phase places
    one search window per period, and the maximum inside each window is
    returned.

    Args:
        corr: Correlation sampled evenly over one full period of [0, pi)
        candidate_counts: Plausible numbers of symmetry axes

    Returns:
        Sorted indices into `corr`
    """
    corr = np.asarray(corr, dtype=np.float64)
    n = corr.size
    spectrum = np.fft.rfft(corr - corr.mean())
    power = np.abs(spectrum) ** 2

    usable = sorted(m for m in candidate_counts if 0 < m < power.size)
    if not usable or power[usable].max() <= 0:
        return [int(np.argmax(corr))]

    strongest = max(usable, key=lambda m: power[m])
    count = strongest
    for m in usable:
        if strongest % m == 0 and power[m] >= 0.5 * power[strongest]:
            count = m
            break

    period = n / count
    start = (-np.angle(spectrum[count]) / (2 * np.pi)) * period % period
    half = max(1, int(period // 2))

    maxima = set()
    for j in range(count):
        center = int(round(start + j * period))
        window = np.arange(center - half, center + half + 1) % n
        maxima.add(int(window[np.argmax(corr[window])]))
    return sorted(maxima)


def _parabolic_offset(left: float, mid: float, right: float) -> float:
    # Vertex of the parabola through three equally spaced samples
    denom = left - 2 * mid + right
    if abs(denom) < 1e-12:
        return 0.0
    return float(np.clip(0.5 * (left - right) / denom, -0.5, 0.5))


def refine_mirror_lines(
    image: np.ndarray,
    max_pos: Sequence[int],
    num_angles: int,
    origin: Tuple[float, float],
    search_range: int = 3,
) -> List[SymmetryLine]:
    """
    Refine coarse mirror-line indices into continuous lines.

    Each line is searched over angles within one sampling step of its index
    and over perpendicular offsets of up to `search_range` pixels from the
    origin, then interpolated to sub-sample precision.

    Args:
        image: Image the correlation curve was measured on
        max_pos: Indices of the coarse maxima
        num_angles: Number of samples the curve had over [0, pi)
        origin: (x, y) the coarse lines pass through
        search_range: Maximum perpendicular offset in pixels

    Returns:
        One SymmetryLine per index
    """
    step = np.pi / num_angles
    angle_offsets = np.linspace(-step, step, 5)
    shifts = np.arange(-search_range, search_range + 1)
    lines = []

    for idx in max_pos:
        base = idx * step
        grid = np.empty((angle_offsets.size, shifts.size))
        for i, da in enumerate(angle_offsets):
            theta = base + da
            normal = (-np.sin(theta), np.cos(theta))
            for j, s in enumerate(shifts):
                point = (origin[0] + s * normal[0], origin[1] + s * normal[1])
                grid[i, j] = reflection_correlation(image, point, theta)

        i, j = np.unravel_index(int(np.argmax(grid)), grid.shape)
        di = _parabolic_offset(grid[i - 1, j], grid[i, j], grid[i + 1, j]) if 0 < i < grid.shape[0] - 1 else 0.0
        dj = _parabolic_offset(grid[i, j - 1], grid[i, j], grid[i, j + 1]) if 0 < j < grid.shape[1] - 1 else 0.0

        theta = base + angle_offsets[i] + di * (angle_offsets[1] - angle_offsets[0])
        shift = shifts[j] + dj
        x = origin[0] - shift * np.sin(theta)
        y = origin[1] + shift * np.cos(theta)
        lines.append(SymmetryLine(x=float(x), y=float(y), angle=float(theta % np.pi), score=float(grid[i, j])))

    return lines


def average_intersection(lines: Sequence[SymmetryLine]) -> Optional[Tuple[float, float]]:
    """Mean intersection point of all non-parallel pairs of lines."""
    points = []
    for first, second in itertools.combinations(lines, 2):
        d1 = np.array([np.cos(first.angle), np.sin(first.angle)])
        d2 = np.array([np.cos(second.angle), np.sin(second.angle)])
        if abs(d1[0] * d2[1] - d1[1] * d2[0]) < 1e-6:
            continue
        matrix = np.column_stack([d1, -d2])
        rhs = np.array([second.x - first.x, second.y - first.y])
        t, _ = np.linalg.solve(matrix, rhs)
        points.append((first.x + t * d1[0], first.y + t * d1[1]))

    if not points:
        return None
    points = np.asarray(points)
    return float(points[:, 0].mean()), float(points[:, 1].mean())


def average_origin(lines: Sequence[SymmetryLine]) -> Optional[Tuple[float, float]]:
    """Mean of the points the lines were anchored on."""
    if not lines:
        return None
    return float(np.mean([l.x for l in lines])), float(np.mean([l.y for l in lines]))


def find_symmetry_axes(
    image: np.ndarray,
    origin: Tuple[float, float],
    num_angles: Optional[int] = None,
    target_size: Optional[int] = None,
    params: Optional[SymmetryParams] = None,
) -> SymmetryResult:
    """
    Find mirror axes of an averaged pattern and its symmetry center.

    Args:
        image: Averaged pattern without undefined pixels
        origin: (x, y) initial guess of the pattern center
        num_angles: Angular samples over [0, pi) (default from params)
        target_size: Minimum downsampled size (default from params)
        params: Symmetry parameters

    Returns:
        SymmetryResult in full-resolution coordinates
    """
    params = params or SymmetryParams()
    num_angles = params.num_angles if num_angles is None else num_angles
    target_size = params.target_size if target_size is None else target_size

    image = np.asarray(image, dtype=np.float64)
    if image.ndim != 2 or image.size == 0:
        raise PreconditionError(f"Symmetry analysis needs a non-empty 2D image, got shape {image.shape}")
    if not np.isfinite(image).all():
        raise PreconditionError("Image has undefined pixels; fill them before symmetry analysis")
    if num_angles < 4:
        raise PreconditionError(f"num_angles must be at least 4, got {num_angles}")

    factor = downsample_factor(image.shape, target_size)
    small = downscale_local_mean(image, (factor, factor)) if factor > 1 else image
    # downsampled pixel k covers full-resolution pixels k*f .. k*f + f - 1
    offset = (factor - 1) / 2
    small_origin = ((origin[0] - offset) / factor, (origin[1] - offset) / factor)

    corr = angular_correlation(small, small_origin, num_angles)
    max_pos = repeating_max_loc(corr, params.candidate_counts)
    small_lines = refine_mirror_lines(small, max_pos, num_angles, small_origin, params.refine_range)

    lines = [
        SymmetryLine(x=l.x * factor + offset, y=l.y * factor + offset, angle=l.angle, score=l.score)
        for l in small_lines
    ]
    center = average_intersection(lines)
    if center is None:
        center = average_origin(lines)

    logger.info("Found %d mirror axes, center %s", len(lines), center)
    return SymmetryResult(lines=lines, center=center, correlations=corr, downsample_factor=factor)
