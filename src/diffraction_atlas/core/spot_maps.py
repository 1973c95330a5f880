"""Per-spot accumulation of every image's neighborhood around a spot."""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import List, Sequence, Tuple, Union

import numpy as np
from skimage.draw import disk

from ..exceptions import PreconditionError
from ..models import RelativePosition, SpotMap, SpotPosition
from .preprocessing import validate_stack

logger = logging.getLogger(__name__)


def _disk_mask(radius: int) -> np.ndarray:
    size = 2 * radius + 1
    mask = np.zeros((size, size), dtype=bool)
    rr, cc = disk((radius, radius), radius + 0.5, shape=mask.shape)
    mask[rr, cc] = True
    return mask


def image_offsets(relative_positions: Sequence[RelativePosition], n_images: int) -> np.ndarray:
    """(dx, dy) of every image as an (n_images, 2) array in index order."""
    by_index = {p.index: p for p in relative_positions}
    if sorted(by_index) != list(range(n_images)):
        raise PreconditionError("Positions must cover every image index exactly once")
    return np.array([(by_index[i].dx, by_index[i].dy) for i in range(n_images)], dtype=np.int64)


def build_spot_map(
    stack: np.ndarray,
    spot_index: int,
    position: SpotPosition,
    offsets: np.ndarray,
    radius: int,
    origin: Tuple[int, int] = (0, 0),
) -> SpotMap:
    """
    Accumulate one spot's neighborhood from every image.

    Image i sees the canvas position P at P - origin + d_i. Its disk
    neighborhood is added to the map at d_i - min(d), so the map shows
    the full range of detector positions the spot swept across.

    Args:
        stack: (n_images, rows, cols) image stack
        spot_index: Index of the spot in the located sequence
        position: Spot position on the aligned-average canvas
        offsets: (n_images, 2) array of (dx, dy) per image
        radius: Neighborhood radius in pixels
        origin: Canvas position of image 0's top-left pixel

    Returns:
        SpotMap with per-pixel contribution counts
    """
    _, rows, cols = stack.shape
    size = 2 * radius + 1
    lo = offsets.min(axis=0)
    span = offsets.max(axis=0) - lo
    accumulator = np.zeros((size + span[1], size + span[0]))
    counts = np.zeros(accumulator.shape, dtype=np.int64)
    mask = _disk_mask(radius)

    for image, (dx, dy) in zip(stack, offsets):
        # Top-left of the neighborhood in this image's own frame
        x0 = position[0] - origin[0] + dx - radius
        y0 = position[1] - origin[1] + dy - radius
        ix_lo, ix_hi = max(x0, 0), min(x0 + size, cols)
        iy_lo, iy_hi = max(y0, 0), min(y0 + size, rows)
        if ix_lo >= ix_hi or iy_lo >= iy_hi:
            continue

        patch_mask = mask[iy_lo - y0:iy_hi - y0, ix_lo - x0:ix_hi - x0]
        mx = dx - lo[0] + (ix_lo - x0)
        my = dy - lo[1] + (iy_lo - y0)
        region = (slice(my, my + patch_mask.shape[0]), slice(mx, mx + patch_mask.shape[1]))
        accumulator[region] += np.where(patch_mask, image[iy_lo:iy_hi, ix_lo:ix_hi], 0.0)
        counts[region] += patch_mask

    return SpotMap(spot_index=spot_index, position=tuple(position), accumulator=accumulator, counts=counts)


def create_spot_maps(
    images: Union[np.ndarray, Sequence[np.ndarray]],
    spot_positions: Sequence[SpotPosition],
    relative_positions: Sequence[RelativePosition],
    radius: int,
    origin: Tuple[int, int] = (0, 0),
    workers: int = 1,
) -> List[SpotMap]:
    """
    Build one accumulation map per spot.

    Args:
        images: Image stack
        spot_positions: Spot positions on the aligned-average canvas
        relative_positions: One RelativePosition per image
        radius: Neighborhood radius in pixels
        origin: Canvas position of image 0's top-left pixel ((0, 0) when the
            spot positions are already in image 0's frame)
        workers: Thread pool size

    Returns:
        SpotMaps in the order of `spot_positions`
    """
    stack = validate_stack(images)
    if radius < 1:
        raise PreconditionError(f"Spot map radius must be at least 1, got {radius}")
    if len(relative_positions) != len(stack):
        raise PreconditionError(f"Got {len(relative_positions)} positions for {len(stack)} images")

    offsets = image_offsets(relative_positions, len(stack))

    def build(item):
        index, position = item
        return build_spot_map(stack, index, position, offsets, radius, origin)

    with ThreadPoolExecutor(max_workers=max(1, workers)) as executor:
        maps = list(executor.map(build, enumerate(spot_positions)))
    logger.debug("Built %d spot maps of radius %d", len(maps), radius)
    return maps
