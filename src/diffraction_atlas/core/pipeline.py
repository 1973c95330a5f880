"""End-to-end processing of a diffraction image stack."""

import logging
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np

from ..models import AtlasResult, Ellipse, RelativePosition, SpotPosition
from ..profiles import PipelineConfig, get_profile
from .alignment import AlignmentEngine, align_and_average
from .backend import ClusteringBackend, SklearnBackend
from .compute import ArrayCompute, create_compute
from .condenser import estimate_condenser_profile
from .ellipses import fit_ellipses
from .geometry import summarize_geometry
from .kernels import annulus, blurred, circle, gaussian, normalized, recursive_self_convolution
from .preprocessing import create_hann_window, fill_undefined, load_stack, validate_stack
from .radius import estimate_radius
from .spot_maps import create_spot_maps
from .spots import locate_spots
from .symmetry import find_symmetry_axes

logger = logging.getLogger(__name__)


def intensity_centroid(image: np.ndarray) -> Tuple[float, float]:
    """(x, y) centroid of the intensity above the median."""
    weights = np.clip(image - np.median(image), 0, None)
    total = weights.sum()
    if total <= 0:
        return (image.shape[1] - 1) / 2, (image.shape[0] - 1) / 2
    ys, xs = np.indices(image.shape)
    return float((weights * xs).sum() / total), float((weights * ys).sum() / total)


def spots_in_image(
    canvas_positions: Sequence[SpotPosition],
    origin: Tuple[int, int],
    position: RelativePosition,
) -> List[SpotPosition]:
    """Canvas spot positions expressed in one image's own frame."""
    return [
        (int(x - origin[0] + position.dx), int(y - origin[1] + position.dy))
        for x, y in canvas_positions
    ]


def process_stack(
    images: Union[np.ndarray, Sequence[np.ndarray]],
    config: Optional[PipelineConfig] = None,
    compute: Optional[ArrayCompute] = None,
    backend: Optional[ClusteringBackend] = None,
    source: str = "<memory>",
) -> AtlasResult:
    """
    Process an image stack end-to-end.

    Main entry point for stack processing.

    Args:
        images: Image stack
        config: Pipeline configuration (default profile if None)
        compute: Compute instance (default: one with config.threads FFT workers)
        backend: Clustering backend (default: scikit-learn)
        source: Label stored in the result

    Returns:
        AtlasResult with every stage's output
    """
    config = config or get_profile("default")
    compute = compute or create_compute(config.threads)
    backend = backend or SklearnBackend()

    stack = validate_stack(images)
    n_images, rows, cols = stack.shape
    shape = (rows, cols)
    logger.info("Processing %d images of %dx%d from %s", n_images, cols, rows, source)

    # Radius
    estimate = estimate_radius(stack, params=config.radius, compute=compute)
    radius, thickness = estimate.radius, estimate.thickness

    # Templates shared by the alignment stage
    hann = create_hann_window(rows, cols)
    blur = gaussian(shape, config.alignment.gauss_sigma, compute)
    ring = recursive_self_convolution(
        blurred(normalized(annulus(shape, radius, thickness, compute)), blur),
        config.alignment.recursion_order,
    )
    body = blurred(normalized(circle(shape, radius, compute)), blur)

    # Alignment
    engine = AlignmentEngine(
        stack, hann, ring, body,
        params=config.alignment, compute=compute, workers=config.threads,
    )
    positions = engine.run()
    aligned = align_and_average(stack, positions)
    mean = aligned.mean()
    filled = fill_undefined(mean)
    logger.info("Aligned %d images, offsets %s", n_images, [(p.dx, p.dy) for p in positions])

    # Symmetry cross-check
    symmetry = None
    if config.symmetry.enabled:
        symmetry = find_symmetry_axes(filled, intensity_centroid(filled), params=config.symmetry)

    # Spots
    search = locate_spots(mean, radius, thickness, config.spots, compute)
    spot_maps = create_spot_maps(
        stack, search.positions, positions, radius,
        origin=aligned.origin, workers=config.threads,
    )

    # Condenser profile from one spot's self-overlap
    condenser = None
    if config.condenser.enabled and config.condenser.spot_index < search.n_spots:
        condenser = estimate_condenser_profile(
            stack, search.positions[config.condenser.spot_index], positions, radius,
            origin=aligned.origin, params=config.condenser,
        )

    # Ellipses, per image in its own frame
    inner = max(1.0, config.ellipse.inner_factor * radius)
    outer = max(inner + 1.0, config.ellipse.outer_factor * radius)
    ellipses: List[List[Ellipse]] = []
    for image, position in zip(stack, positions):
        local = spots_in_image(search.positions, aligned.origin, position)
        inside = [0 <= x < cols and 0 <= y < rows for x, y in local]
        fitted = iter(
            fit_ellipses(
                image,
                [p for p, ok in zip(local, inside) if ok],
                (inner, outer),
                params=config.ellipse,
                backend=backend,
                workers=config.threads,
            )
        )
        ellipses.append([
            next(fitted) if ok else Ellipse.invalid((float(x), float(y)))
            for (x, y), ok in zip(local, inside)
        ])

    all_fits = [e for row in ellipses for e in row]
    geometry = summarize_geometry(filled, all_fits, search.positions, radius) if search.positions else None

    result = AtlasResult(
        source=source,
        n_images=n_images,
        radius=estimate,
        offsets=list(engine.offsets),
        positions=positions,
        aligned=aligned,
        spots=search,
        spot_maps=spot_maps,
        ellipses=ellipses,
        symmetry=symmetry,
        geometry=geometry,
        condenser=condenser,
    )
    logger.info(
        "Found %d spots, %d/%d valid ellipse fits",
        search.n_spots, result.n_valid_ellipses, len(all_fits),
    )
    return result


def process_path(
    path: Union[str, Path],
    config: Optional[PipelineConfig] = None,
    compute: Optional[ArrayCompute] = None,
    backend: Optional[ClusteringBackend] = None,
) -> AtlasResult:
    """Load a stack from disk and process it."""
    stack = load_stack(path)
    return process_stack(stack, config, compute, backend, source=str(path))
