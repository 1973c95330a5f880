"""
Spot radius estimation.

Every image's gradient filtrate is matched against annuli of a coarse grid
of candidate radii. Images are added one at a time until the radial
frequency histograms of the filtered spectra stop changing shape, measured
by their error-weighted lag-1 autocorrelation, or until the image budget is
spent. The best radius is then refined at unit resolution together with the
annulus thickness.
"""

import logging
import math
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np

from ..exceptions import PreconditionError
from ..models import ConvergenceState, RadiusEstimate
from ..profiles import RadiusParams
from .compute import ArrayCompute, get_compute
from .kernels import annulus, gaussian, normalized, odd_thickness
from .preprocessing import gradient_magnitude, validate_stack
from .statistics import SpectrumAccumulator, error_weighted_centroid

logger = logging.getLogger(__name__)


class ConvergenceTracker:
    """
    Accumulating -> Converged | Exhausted state machine.

    Converged once a new value improves on the previous one by less than
    `decay_threshold`, Exhausted once `max_steps` values have been seen
    without converging.
    """

    def __init__(self, decay_threshold: float, max_steps: int):
        if max_steps < 1:
            raise PreconditionError(f"max_steps must be at least 1, got {max_steps}")
        self.decay_threshold = decay_threshold
        self.max_steps = max_steps
        self.history: List[float] = []
        self.state = ConvergenceState.ACCUMULATING

    @property
    def done(self) -> bool:
        return self.state is not ConvergenceState.ACCUMULATING

    def update(self, value: float) -> ConvergenceState:
        if self.done:
            return self.state
        self.history.append(value)
        if len(self.history) >= 2 and self.history[-1] - self.history[-2] < self.decay_threshold:
            self.state = ConvergenceState.CONVERGED
        elif len(self.history) >= self.max_steps:
            self.state = ConvergenceState.EXHAUSTED
        return self.state


def matched_response(
    image_spectrum: np.ndarray,
    template_spectrum: np.ndarray,
    compute: ArrayCompute,
) -> float:
    """Peak-above-mean of an image correlated with a template."""
    corr = compute.ifft2d(compute.multiply(image_spectrum, template_spectrum))
    return float(corr.max() - corr.mean())


def circle_size_upper_bound(
    images: Union[np.ndarray, Sequence[np.ndarray]],
    params: Optional[RadiusParams] = None,
    compute: Optional[ArrayCompute] = None,
) -> int:
    """
    Upper bound on the spot radius from the images' amplitude spectra.

    The blurred image spectra are histogrammed against radial frequency
    until the histogram converges; a disk of radius R has most of its power
    below frequency 1/R, so the inverse of the error-weighted centroid
    frequency bounds the radius from above.

    Args:
        images: Image stack
        params: Radius parameters (gauss_sigma, n_bins, max_images, decay_threshold)
        compute: Compute instance (default: process-wide)

    Returns:
        Radius upper bound in pixels, between an eighth and a quarter of the
        smaller image side
    """
    stack = validate_stack(images)
    params = params or RadiusParams()
    compute = compute or get_compute()
    shape = stack.shape[1:]

    blur = gaussian(shape, params.gauss_sigma, compute)
    histogram = SpectrumAccumulator(shape, params.n_bins)
    tracker = ConvergenceTracker(params.decay_threshold, min(params.max_images, len(stack)))

    for image in stack:
        spectrum = compute.fft2d(image - image.mean())
        histogram.add(np.abs(compute.multiply(spectrum, blur.spectrum)))
        if tracker.update(histogram.autocorrelation()) is not ConvergenceState.ACCUMULATING:
            break

    centroid = histogram.centroid()
    limit = min(shape) // 4
    bound = limit if centroid <= 0 else int(math.ceil(1.0 / centroid))
    # Noise-dominated spectra pull the centroid up; keep a floor of an eighth of the frame
    floor = max(min(shape) // 8, params.min_radius + 1)
    bound = int(np.clip(bound, floor, max(limit, floor)))
    logger.debug("Spectral radius bound %d px (centroid %.4f cycles/px)", bound, centroid)
    return bound


def refine_annulus_param(
    gradient_spectra: Sequence[np.ndarray],
    radius: int,
    search_range: int,
    blur: np.ndarray,
    thickness_fraction: float = 0.5,
    compute: Optional[ArrayCompute] = None,
) -> Tuple[int, int]:
    """
    Refine a coarse radius at unit resolution and find the annulus thickness.

    Radii within `radius ± search_range` are scored with thin (1 px) annuli.
    The thickness is the widest odd annulus around the best radius whose
    response, once its flat background is removed, keeps at least
    `thickness_fraction` of the thin annulus response.

    Args:
        gradient_spectra: FFTs of the gradient filtrates of the images used
        radius: Coarse radius estimate
        search_range: Half width of the radius search window
        blur: Gaussian spectrum applied to every template
        thickness_fraction: Response ratio that bounds the thickness
        compute: Compute instance (default: process-wide)

    Returns:
        Tuple of (radius, thickness)
    """
    compute = compute or get_compute()
    shape = gradient_spectra[0].shape

    def response(r: float, t: int) -> float:
        template = normalized(annulus(shape, r, t, compute)).spectrum * blur
        return sum(matched_response(s, template, compute) for s in gradient_spectra)

    lo = max(1, radius - search_range)
    candidates = np.arange(lo, radius + search_range + 1)
    scores = np.array([response(r, 1) for r in candidates])
    best = int(candidates[int(np.argmax(scores))])

    base = scores.max()
    thickness = 1
    if base > 0:
        for t in range(3, 2 * search_range + 2, 2):
            if response(best, t) < thickness_fraction * base:
                break
            thickness = t

    logger.debug("Refined radius %d -> %d, thickness %d", radius, best, thickness)
    return best, thickness


def estimate_radius(
    images: Union[np.ndarray, Sequence[np.ndarray]],
    min_radius: Optional[int] = None,
    max_radius: Optional[int] = None,
    init_thickness: Optional[int] = None,
    max_images: Optional[int] = None,
    params: Optional[RadiusParams] = None,
    compute: Optional[ArrayCompute] = None,
) -> RadiusEstimate:
    """
    Estimate the characteristic spot radius and annulus thickness.

    Explicit arguments override the matching fields of `params`.

    Args:
        images: Image stack
        min_radius: Smallest candidate radius in pixels
        max_radius: Largest candidate radius (None = spectral upper bound)
        init_thickness: Coarse grid spacing and candidate annulus thickness
        max_images: Image budget for the convergence loop
        params: Radius parameters
        compute: Compute instance (default: process-wide)

    Returns:
        RadiusEstimate with the stopping state of the convergence loop
    """
    stack = validate_stack(images)
    params = params or RadiusParams()
    compute = compute or get_compute()
    shape = stack.shape[1:]

    min_radius = params.min_radius if min_radius is None else min_radius
    max_radius = params.max_radius if max_radius is None else max_radius
    init_thickness = params.init_thickness if init_thickness is None else init_thickness
    max_images = params.max_images if max_images is None else max_images

    if min_radius < 1:
        raise PreconditionError(f"min_radius must be at least 1, got {min_radius}")
    if max_images < 1:
        raise PreconditionError(f"max_images must be at least 1, got {max_images}")
    if max_radius is None:
        max_radius = circle_size_upper_bound(stack, params, compute)
    if max_radius <= min_radius:
        raise PreconditionError(f"max_radius ({max_radius}) must exceed min_radius ({min_radius})")

    step = max(int(init_thickness), 1)
    radii = np.arange(min_radius, max_radius + 1, step)
    blur = gaussian(shape, params.gauss_sigma, compute).spectrum
    templates = [normalized(annulus(shape, r, step, compute)).spectrum * blur for r in radii]
    histograms = [SpectrumAccumulator(shape, params.n_bins) for _ in radii]

    budget = min(max_images, len(stack))
    tracker = ConvergenceTracker(params.decay_threshold, budget)
    responses = []
    gradient_spectra = []

    for n, image in enumerate(stack[:budget]):
        grad_spectrum = compute.fft2d(gradient_magnitude(image))
        gradient_spectra.append(grad_spectrum)

        row = []
        for template, histogram in zip(templates, histograms):
            histogram.add(np.abs(compute.multiply(grad_spectrum, template)))
            row.append(matched_response(grad_spectrum, template, compute))
        responses.append(row)

        signal = float(np.mean([h.autocorrelation() for h in histograms]))
        state = tracker.update(signal)
        logger.debug("Radius image %d: autocorrelation %.5f (%s)", n, signal, state.value)
        if tracker.done:
            break

    responses = np.asarray(responses)
    used = len(responses)
    mean_response = responses.mean(axis=0)
    if used > 1:
        errors = responses.std(axis=0, ddof=1) / np.sqrt(used)
    else:
        errors = np.ones_like(mean_response)

    best = int(np.argmax(mean_response))
    lo, hi = max(best - 1, 0), min(best + 2, len(radii))
    window = mean_response[lo:hi] - mean_response.min()
    coarse = int(round(error_weighted_centroid(radii[lo:hi], window, errors[lo:hi])))

    search_range = max(params.refine_range, step)
    radius, thickness = refine_annulus_param(
        gradient_spectra,
        coarse,
        search_range,
        blur,
        params.thickness_fraction,
        compute,
    )

    estimate = RadiusEstimate(
        radius=radius,
        thickness=odd_thickness(thickness),
        images_used=used,
        state=tracker.state,
        autocorrelation=tracker.history[-1] if tracker.history else 0.0,
    )
    logger.info(
        "Spot radius %d px, thickness %d px from %d images (%s)",
        estimate.radius, estimate.thickness, used, estimate.state.value,
    )
    return estimate
