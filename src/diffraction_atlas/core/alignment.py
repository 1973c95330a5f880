"""
Stack alignment by phase correlation of primed images.

Raw diffraction frames are dominated by a smooth background and noise, so
each frame is first "primed": windowed, matched against annulus (spot edge)
and circle (spot body) templates, and reduced to the product of the two
responses. Every pair of primed frames is then phase correlated and the
pairwise shifts are combined by weighted least squares into one offset per
frame.

Offsets follow image_i(x) = image_0(x - d_i): a spot at p in image 0 is at
p + d_i in image i.
"""

import itertools
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np
from scipy.sparse import coo_matrix
from scipy.sparse.csgraph import connected_components

from ..exceptions import PreconditionError
from ..models import (
    AlignedAverage,
    AlignmentOffset,
    FrequencyTemplate,
    ImageState,
    RelativePosition,
)
from ..profiles import AlignmentParams
from .compute import ArrayCompute, get_compute
from .kernels import gaussian
from .preprocessing import apply_window, gradient_magnitude, validate_stack
from .statistics import pearson_corr

logger = logging.getLogger(__name__)


def max_phase_corr(
    spectrum_a: np.ndarray,
    spectrum_b: np.ndarray,
    index_a: int = 0,
    index_b: int = 1,
    weight: Optional[np.ndarray] = None,
    compute: Optional[ArrayCompute] = None,
) -> AlignmentOffset:
    """
    Locate the phase correlation peak of two image spectra.

    Args:
        spectrum_a: FFT of the reference image
        spectrum_b: FFT of the displaced image
        index_a: Stack index of the reference image
        index_b: Stack index of the displaced image
        weight: Optional low-pass weight applied to the cross-power spectrum
        compute: Compute instance (default: process-wide)

    Returns:
        AlignmentOffset with the displacement of b relative to a and a score
        of 1.0 for identical, shifted content
    """
    compute = compute or get_compute()
    cross = compute.multiply(spectrum_b, np.conj(spectrum_a))
    normalised = compute.divide(cross, np.abs(cross), eps=1e-12)
    if weight is not None:
        normalised = compute.multiply(normalised, weight)
        scale = float(np.abs(weight).mean())
    else:
        scale = 1.0

    corr = compute.ifft2d(normalised)
    rows, cols = corr.shape
    peak_y, peak_x = np.unravel_index(int(np.argmax(corr)), corr.shape)
    score = float(corr[peak_y, peak_x]) / scale if scale > 0 else 0.0

    # Peaks past the midpoint are negative shifts
    dy = int(peak_y) - rows if peak_y > rows // 2 else int(peak_y)
    dx = int(peak_x) - cols if peak_x > cols // 2 else int(peak_x)
    return AlignmentOffset(dx=dx, dy=dy, score=score, image_a=index_a, image_b=index_b)


def refine_integer_shift(
    image_a: np.ndarray,
    image_b: np.ndarray,
    dx: int,
    dy: int,
    search: int = 2,
    margin: int = 1,
) -> Tuple[int, int]:
    """
    Refine a coarse shift of b relative to a on the unwindowed images.

    The window applied before phase correlation pulls the peak towards
    zero shift by up to a pixel. Every integer shift within `search` of the
    coarse one is scored by the Pearson correlation of the two images over
    their overlap, with `margin` pixels trimmed from each border.

    Returns:
        Best (dx, dy); the coarse shift wins ties
    """
    rows, cols = image_a.shape

    def overlap_score(sx: int, sy: int) -> float:
        y_lo, y_hi = max(0, -sy) + margin, min(rows, rows - sy) - margin
        x_lo, x_hi = max(0, -sx) + margin, min(cols, cols - sx) - margin
        if y_hi - y_lo < 2 or x_hi - x_lo < 2:
            return -np.inf
        return pearson_corr(
            image_a[y_lo:y_hi, x_lo:x_hi],
            image_b[y_lo + sy:y_hi + sy, x_lo + sx:x_hi + sx],
        )

    best, best_score = (dx, dy), overlap_score(dx, dy)
    for sy in range(dy - search, dy + search + 1):
        for sx in range(dx - search, dx + search + 1):
            score = overlap_score(sx, sy)
            if score > best_score:
                best, best_score = (sx, sy), score
    return best


class AlignmentEngine:
    """
    Pairwise phase-correlation alignment of an image stack.

    Each image moves UNPRIMED -> PRIMED -> CORRELATED. Correlating a pair
    needs both images primed; the global solve needs every image correlated,
    and `correlate_all` correlates every pair rather than a spanning tree.
    """

    def __init__(
        self,
        images: Union[np.ndarray, Sequence[np.ndarray]],
        hann_window: np.ndarray,
        annulus_template: FrequencyTemplate,
        circle_template: FrequencyTemplate,
        params: Optional[AlignmentParams] = None,
        compute: Optional[ArrayCompute] = None,
        workers: int = 1,
    ):
        self.images = validate_stack(images)
        shape = self.images.shape[1:]
        for name, array in (
            ("Hann window", hann_window),
            ("annulus template", annulus_template.spectrum),
            ("circle template", circle_template.spectrum),
        ):
            if array.shape != shape:
                raise PreconditionError(f"{name} has shape {array.shape}, images are {shape}")

        self.hann_window = hann_window
        self.annulus_template = annulus_template
        self.circle_template = circle_template
        self.params = params or AlignmentParams()
        self.compute = compute or get_compute()
        self.workers = max(1, workers)

        n = len(self.images)
        self.states = [ImageState.UNPRIMED] * n
        self._primed: List[Optional[np.ndarray]] = [None] * n
        self._gradients: List[Optional[np.ndarray]] = [None] * n
        self._correlated_pairs = set()
        self.offsets: List[AlignmentOffset] = []
        self._weight = gaussian(shape, self.params.cross_power_sigma, self.compute).spectrum.real

    @property
    def n_images(self) -> int:
        return len(self.images)

    def _prepare(self, index: int):
        # CPU side of priming: window and gradient filtrates
        image = self.images[index]
        windowed = apply_window(image, self.hann_window)
        return windowed - windowed.mean(), gradient_magnitude(windowed), gradient_magnitude(image)

    def _finish_priming(
        self,
        index: int,
        windowed: np.ndarray,
        gradient: np.ndarray,
        raw_gradient: np.ndarray,
    ) -> None:
        compute = self.compute
        annulus_resp = compute.ifft2d(compute.multiply(compute.fft2d(gradient), self.annulus_template.spectrum))
        circle_resp = compute.ifft2d(compute.multiply(compute.fft2d(windowed), self.circle_template.spectrum))
        primed = np.clip(annulus_resp, 0, None) * np.clip(circle_resp, 0, None)
        self._primed[index] = compute.fft2d(primed)
        self._gradients[index] = raw_gradient
        self.states[index] = ImageState.PRIMED

    def prime(self, index: int) -> None:
        """Prime one image."""
        self._finish_priming(index, *self._prepare(index))

    def prime_all(self) -> None:
        """Prime every unprimed image, preparing them in a thread pool."""
        pending = [i for i, s in enumerate(self.states) if s is ImageState.UNPRIMED]
        with ThreadPoolExecutor(max_workers=self.workers) as executor:
            prepared = list(executor.map(self._prepare, pending))
        # Transforms are issued from this thread only
        for index, filtrates in zip(pending, prepared):
            self._finish_priming(index, *filtrates)
        logger.debug("Primed %d images", len(pending))

    def correlate(self, index_a: int, index_b: int) -> AlignmentOffset:
        """Phase correlate two primed images."""
        for index in (index_a, index_b):
            if self.states[index] is ImageState.UNPRIMED:
                raise PreconditionError(f"Image {index} must be primed before it is correlated")

        offset = max_phase_corr(
            self._primed[index_a],
            self._primed[index_b],
            index_a,
            index_b,
            weight=self._weight,
            compute=self.compute,
        )
        if self.params.refine_range > 0:
            dx, dy = refine_integer_shift(
                self._gradients[index_a],
                self._gradients[index_b],
                offset.dx,
                offset.dy,
                self.params.refine_range,
            )
            offset = AlignmentOffset(dx=dx, dy=dy, score=offset.score, image_a=index_a, image_b=index_b)
        self.offsets.append(offset)
        self._correlated_pairs.add((min(index_a, index_b), max(index_a, index_b)))
        for index in (index_a, index_b):
            if self._all_pairs_done(index):
                self.states[index] = ImageState.CORRELATED
        return offset

    def _all_pairs_done(self, index: int) -> bool:
        return all(
            (min(index, other), max(index, other)) in self._correlated_pairs
            for other in range(self.n_images)
            if other != index
        )

    def correlate_all(self) -> List[AlignmentOffset]:
        """Correlate every pair of images that has not been correlated yet."""
        for a, b in itertools.combinations(range(self.n_images), 2):
            if (a, b) not in self._correlated_pairs:
                offset = self.correlate(a, b)
                logger.debug(
                    "Pair (%d, %d): shift (%d, %d), score %.3f",
                    a, b, offset.dx, offset.dy, offset.score,
                )
        if self.n_images == 1:
            self.states[0] = ImageState.CORRELATED
        return list(self.offsets)

    def relative_positions(self) -> List[RelativePosition]:
        """Globally consistent offset of every image relative to image 0."""
        waiting = [i for i, s in enumerate(self.states) if s is not ImageState.CORRELATED]
        if waiting:
            raise PreconditionError(f"Images {waiting} have not been correlated with every other image")
        return refine_relative_positions(self.offsets, self.n_images)

    def run(self) -> List[RelativePosition]:
        self.prime_all()
        self.correlate_all()
        return self.relative_positions()


def refine_relative_positions(
    offsets: Sequence[AlignmentOffset],
    n_images: int,
) -> List[RelativePosition]:
    """
    Combine pairwise offsets into one offset per image by weighted least squares.

    Each pair contributes the equation d_b - d_a = (dx, dy) weighted by its
    (non-negative) correlation score; image 0 is fixed at the origin.

    Args:
        offsets: Pairwise measurements
        n_images: Number of images in the stack

    Returns:
        Integer RelativePosition for every image

    Raises:
        PreconditionError: If the positively weighted pairs do not connect every image
    """
    if n_images < 1:
        raise PreconditionError("Cannot refine positions of an empty stack")
    if n_images == 1:
        return [RelativePosition(index=0, dx=0, dy=0)]

    used = [o for o in offsets if o.score > 0 and o.image_a != o.image_b]
    for o in used:
        if not (0 <= o.image_a < n_images and 0 <= o.image_b < n_images):
            raise PreconditionError(f"Offset refers to image outside the stack: ({o.image_a}, {o.image_b})")

    rows = [o.image_a for o in used]
    cols = [o.image_b for o in used]
    graph = coo_matrix((np.ones(len(used)), (rows, cols)), shape=(n_images, n_images))
    n_components, labels = connected_components(graph, directed=False)
    if n_components > 1:
        detached = [i for i in range(n_images) if labels[i] != labels[0]]
        raise PreconditionError(f"Alignment graph is disconnected; images {detached} are not linked to image 0")

    # Unknowns are d_1 .. d_{n-1}
    design = np.zeros((len(used), n_images - 1))
    targets = np.zeros((len(used), 2))
    for row, o in enumerate(used):
        w = np.sqrt(o.score)
        if o.image_b > 0:
            design[row, o.image_b - 1] += w
        if o.image_a > 0:
            design[row, o.image_a - 1] -= w
        targets[row] = (w * o.dx, w * o.dy)

    solution, _, _, _ = np.linalg.lstsq(design, targets, rcond=None)
    positions = [RelativePosition(index=0, dx=0, dy=0)]
    for i in range(1, n_images):
        positions.append(
            RelativePosition(index=i, dx=int(round(solution[i - 1, 0])), dy=int(round(solution[i - 1, 1])))
        )
    return positions


def compute_relative_positions(
    images: Union[np.ndarray, Sequence[np.ndarray]],
    hann_window: np.ndarray,
    annulus_template: FrequencyTemplate,
    circle_template: FrequencyTemplate,
    params: Optional[AlignmentParams] = None,
    compute: Optional[ArrayCompute] = None,
    workers: int = 1,
) -> List[RelativePosition]:
    """
    Offsets of every image relative to image 0.

    Args:
        images: Image stack
        hann_window: Window lookup table with the images' shape
        annulus_template: Spot-edge matched filter
        circle_template: Spot-body matched filter
        params: Alignment parameters
        compute: Compute instance (default: process-wide)
        workers: Thread pool size for image preparation

    Returns:
        List of RelativePosition, image 0 at (0, 0)
    """
    engine = AlignmentEngine(
        images, hann_window, annulus_template, circle_template,
        params=params, compute=compute, workers=workers,
    )
    return engine.run()


def align_and_average(
    images: Union[np.ndarray, Sequence[np.ndarray]],
    positions: Sequence[RelativePosition],
) -> AlignedAverage:
    """
    Overlay every image at its offset and accumulate intensity and coverage.

    Image i is placed so that its content lines up with image 0: its top-left
    pixel lands at canvas (origin - d_i).

    Args:
        images: Image stack
        positions: One RelativePosition per image

    Returns:
        AlignedAverage whose canvas covers every image footprint
    """
    stack = validate_stack(images)
    if len(positions) != len(stack):
        raise PreconditionError(f"Got {len(positions)} positions for {len(stack)} images")

    rows, cols = stack.shape[1:]
    by_index = {p.index: p for p in positions}
    if sorted(by_index) != list(range(len(stack))):
        raise PreconditionError("Positions must cover every image index exactly once")
    dxs = np.array([by_index[i].dx for i in range(len(stack))])
    dys = np.array([by_index[i].dy for i in range(len(stack))])

    origin = (int(dxs.max()), int(dys.max()))
    height = rows + int(dys.max() - dys.min())
    width = cols + int(dxs.max() - dxs.min())

    accumulator = np.zeros((height, width))
    overlap_count = np.zeros((height, width), dtype=np.int64)
    for image, dx, dy in zip(stack, dxs, dys):
        x0 = origin[0] - dx
        y0 = origin[1] - dy
        accumulator[y0:y0 + rows, x0:x0 + cols] += image
        overlap_count[y0:y0 + rows, x0:x0 + cols] += 1

    logger.debug("Aligned average canvas %dx%d, origin %s", width, height, origin)
    return AlignedAverage(accumulator=accumulator, overlap_count=overlap_count, origin=origin)
