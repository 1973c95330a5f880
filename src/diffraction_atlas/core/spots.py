"""
Spot location on the aligned average.

Spots are found greedily on the product of an annulus (edge) response and
a circle (body) response, then the spot lattice is inferred from the
recurring displacements between them and used to look for spots the greedy
pass missed and to reject positions that do not sit on the lattice.
"""

import logging
import math
from typing import List, Optional, Sequence, Tuple

import numpy as np
from skimage.draw import disk

from ..exceptions import PreconditionError
from ..models import LatticeVector, SpotPosition, SpotSearch
from ..profiles import SpotParams
from .compute import ArrayCompute, get_compute
from .kernels import annulus, blurred, circle, cross_correlate, gaussian, normalized
from .preprocessing import fill_undefined, gradient_magnitude

logger = logging.getLogger(__name__)


def spot_score_map(
    image: np.ndarray,
    radius: int,
    thickness: int,
    params: Optional[SpotParams] = None,
    compute: Optional[ArrayCompute] = None,
) -> np.ndarray:
    """
    Combined annulus x circle matched-filter response.

    Args:
        image: Aligned average with undefined pixels filled
        radius: Spot radius in pixels
        thickness: Annulus thickness in pixels
        params: Spot parameters (gauss_sigma)
        compute: Compute instance (default: process-wide)

    Returns:
        Non-negative score map, same shape as the image
    """
    params = params or SpotParams()
    compute = compute or get_compute()
    shape = image.shape

    blur = gaussian(shape, params.gauss_sigma, compute)
    ring = blurred(normalized(annulus(shape, radius, thickness, compute)), blur)
    body = blurred(normalized(circle(shape, radius, compute)), blur)

    edge_resp = cross_correlate(compute.fft2d(gradient_magnitude(image)), ring, compute)
    body_resp = cross_correlate(compute.fft2d(image - image.mean()), body, compute)
    return np.clip(edge_resp, 0, None) * np.clip(body_resp, 0, None)


def blacken_circle(score: np.ndarray, x: int, y: int, radius: float) -> None:
    """Zero a disk of the score map in place so it cannot be selected again."""
    rr, cc = disk((y, x), radius, shape=score.shape)
    score[rr, cc] = 0


def detect_spots(
    score: np.ndarray,
    radius: int,
    params: Optional[SpotParams] = None,
) -> Tuple[List[SpotPosition], np.ndarray, float]:
    """
    Greedy argmax-then-blacken spot detection.

    Args:
        score: Score map (not modified)
        radius: Spot radius in pixels
        params: Spot parameters (noise_floor, exclusion_factor, max_spots)

    Returns:
        Tuple of (positions in discovery order, blackened score map, first maximum)
    """
    params = params or SpotParams()
    work = np.array(score, dtype=np.float64, copy=True)
    first = float(work.max()) if work.size else 0.0
    if first <= 0:
        return [], work, 0.0

    exclusion = max(float(radius), params.exclusion_factor * radius)
    positions = []
    while len(positions) < params.max_spots:
        y, x = np.unravel_index(int(np.argmax(work)), work.shape)
        if work[y, x] < params.noise_floor * first:
            break
        positions.append((int(x), int(y)))
        blacken_circle(work, x, y, exclusion)

    return positions, work, first


def _canonical(v: np.ndarray) -> np.ndarray:
    # A displacement and its negation describe the same lattice step
    if v[0] < 0 or (v[0] == 0 and v[1] < 0):
        return -v
    return v


def get_lattice_vectors(
    positions: Sequence[SpotPosition],
    tolerance: float,
    count_fraction: float = 0.5,
) -> List[LatticeVector]:
    """
    Infer up to two lattice basis vectors from spot positions.

    Pairwise displacements are clustered within `tolerance`. The first
    vector is the shortest cluster that recurs at least
    max(2, count_fraction * largest cluster count) times; the second is the
    shortest such cluster that is not collinear with the first.

    Args:
        positions: Spot positions
        tolerance: Cluster radius in pixels
        count_fraction: Recurrence needed relative to the most common displacement

    Returns:
        Zero, one or two integer lattice vectors
    """
    pts = np.asarray(positions, dtype=np.float64)
    if len(pts) < 2:
        return []

    displacements = sorted(
        (_canonical(pts[j] - pts[i]) for i in range(len(pts)) for j in range(i + 1, len(pts))),
        key=lambda v: float(np.hypot(*v)),
    )

    clusters: List[List[np.ndarray]] = []
    for v in displacements:
        for members in clusters:
            mean = np.mean(members, axis=0)
            # Jitter can flip the canonical sign of near-axis displacements
            match = next((s for s in (v, -v) if np.hypot(*(s - mean)) <= tolerance), None)
            if match is not None:
                members.append(match)
                break
        else:
            clusters.append([v])

    counts = np.array([len(m) for m in clusters])
    min_count = max(2, int(math.ceil(count_fraction * counts.max()))) if counts.max() >= 2 else 1
    means = [np.mean(m, axis=0) for m in clusters]
    candidates = sorted(
        (mean for mean, n in zip(means, counts) if n >= min_count),
        key=lambda v: float(np.hypot(*v)),
    )
    if not candidates:
        return []

    first = candidates[0]
    vectors = [first]
    first_len = float(np.hypot(*first))
    for v in candidates[1:]:
        cross = abs(first[0] * v[1] - first[1] * v[0])
        if cross > tolerance * first_len:
            vectors.append(v)
            break

    return [(int(round(v[0])), int(round(v[1]))) for v in vectors]


def _lattice_indices(
    positions: np.ndarray,
    origin: np.ndarray,
    basis: np.ndarray,
) -> np.ndarray:
    # Nearest integer lattice coordinates of each position
    coords, _, _, _ = np.linalg.lstsq(basis, (positions - origin).T, rcond=None)
    return np.round(coords.T)


def find_other_spots(
    score: np.ndarray,
    positions: Sequence[SpotPosition],
    lattice_vectors: Sequence[LatticeVector],
    radius: int,
    threshold: float,
    exclusion: Optional[float] = None,
) -> List[SpotPosition]:
    """
    Look for spots at lattice sites the greedy pass did not claim.

    Every lattice site inside the map and farther than `exclusion` from a
    known spot is searched within `radius` for a local maximum, accepted
    when it reaches `threshold`. Sites are visited nearest-first from the
    origin spot.

    Args:
        score: Score map with known spots already blackened (modified in place)
        positions: Known spot positions, the first is the lattice origin
        lattice_vectors: One or two lattice vectors
        radius: Spot radius in pixels
        threshold: Minimum score for an accepted spot
        exclusion: Blackening radius for accepted spots (default 2 * radius)

    Returns:
        Newly accepted positions
    """
    if not positions or not lattice_vectors:
        return []

    rows, cols = score.shape
    exclusion = 2.0 * radius if exclusion is None else exclusion
    origin = np.asarray(positions[0], dtype=np.float64)
    vectors = [np.asarray(v, dtype=np.float64) for v in lattice_vectors]
    shortest = min(float(np.hypot(*v)) for v in vectors)
    if shortest < 1:
        return []
    reach = int(math.ceil(np.hypot(rows, cols) / shortest)) + 1

    j_range = range(-reach, reach + 1) if len(vectors) > 1 else range(1)
    sites = []
    for i in range(-reach, reach + 1):
        for j in j_range:
            site = origin + i * vectors[0] + (j * vectors[1] if len(vectors) > 1 else 0)
            if radius <= site[0] < cols - radius and radius <= site[1] < rows - radius:
                sites.append(site)
    sites.sort(key=lambda s: (float(np.hypot(*(s - origin))), s[1], s[0]))

    known = np.asarray(positions, dtype=np.float64)
    found = []
    for site in sites:
        if np.hypot(*(known - site).T).min() < exclusion:
            continue
        x0, y0 = int(round(site[0])), int(round(site[1]))
        y_lo, y_hi = max(y0 - radius, 0), min(y0 + radius + 1, rows)
        x_lo, x_hi = max(x0 - radius, 0), min(x0 + radius + 1, cols)
        window = score[y_lo:y_hi, x_lo:x_hi]
        if window.size == 0:
            continue
        wy, wx = np.unravel_index(int(np.argmax(window)), window.shape)
        if window[wy, wx] < threshold:
            continue
        x, y = x_lo + int(wx), y_lo + int(wy)
        found.append((x, y))
        known = np.vstack([known, (x, y)])
        blacken_circle(score, x, y, exclusion)

    return found


def check_spot_pos(
    positions: Sequence[SpotPosition],
    lattice_vectors: Sequence[LatticeVector],
    reject_tolerance: float,
    snap_tolerance: float,
) -> List[SpotPosition]:
    """
    Remove or snap positions that stray from the best-fit lattice.

    The lattice origin and vectors are refitted by least squares over every
    position's integer lattice coordinates. Positions farther than
    `reject_tolerance` from their lattice site are dropped; positions farther
    than `snap_tolerance` are moved onto it. Order is preserved and
    duplicates created by snapping are removed.

    Args:
        positions: Spot positions, the first is the lattice origin
        lattice_vectors: One or two lattice vectors
        reject_tolerance: Deviation beyond which a position is removed
        snap_tolerance: Deviation beyond which a position is snapped

    Returns:
        Checked positions
    """
    if not lattice_vectors or len(positions) < len(lattice_vectors) + 2:
        return list(positions)

    pts = np.asarray(positions, dtype=np.float64)
    basis = np.column_stack([np.asarray(v, dtype=np.float64) for v in lattice_vectors])
    indices = _lattice_indices(pts, pts[0], basis)

    design = np.column_stack([np.ones(len(pts)), indices])
    coeffs, _, rank, _ = np.linalg.lstsq(design, pts, rcond=None)
    if rank < design.shape[1]:
        return list(positions)
    predicted = design @ coeffs
    deviation = np.hypot(*(pts - predicted).T)

    checked: List[SpotPosition] = []
    for position, site, dev in zip(positions, predicted, deviation):
        if dev > reject_tolerance:
            logger.debug("Rejecting spot %s (%.1f px off lattice)", position, dev)
            continue
        if dev > snap_tolerance:
            position = (int(round(site[0])), int(round(site[1])))
        if position not in checked:
            checked.append(position)
    return checked


def locate_spots(
    aligned_mean: np.ndarray,
    radius: int,
    thickness: int,
    params: Optional[SpotParams] = None,
    compute: Optional[ArrayCompute] = None,
) -> SpotSearch:
    """
    Find spot centers on the aligned average.

    Args:
        aligned_mean: Aligned average, NaN where undefined
        radius: Spot radius in pixels
        thickness: Annulus thickness in pixels
        params: Spot parameters
        compute: Compute instance (default: process-wide)

    Returns:
        SpotSearch with positions in discovery order
    """
    params = params or SpotParams()
    if radius < 1:
        raise PreconditionError(f"Spot radius must be at least 1, got {radius}")

    image = fill_undefined(np.asarray(aligned_mean, dtype=np.float64))
    score = spot_score_map(image, radius, thickness, params, compute)

    positions, work, first = detect_spots(score, radius, params)
    n_initial = len(positions)
    logger.debug("Greedy pass found %d spots", n_initial)

    tolerance = max(1.0, params.lattice_tolerance_factor * radius)
    vectors = get_lattice_vectors(positions, tolerance, params.lattice_count_fraction)
    if vectors:
        exclusion = max(float(radius), params.exclusion_factor * radius)
        extra = find_other_spots(
            work, positions, vectors, radius, params.accept_fraction * first, exclusion
        )
        positions = positions + extra
        shortest = min(float(np.hypot(*v)) for v in vectors)
        snap = radius / 2 if params.snap_tolerance is None else params.snap_tolerance
        positions = check_spot_pos(positions, vectors, params.reject_fraction * shortest, snap)

    logger.info("Located %d spots (%d found greedily), lattice %s", len(positions), n_initial, vectors)
    return SpotSearch(positions=positions, lattice_vectors=vectors, score_map=score, n_initial=n_initial)
