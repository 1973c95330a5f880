"""Image stack loading, validation and filtering."""

import logging
from pathlib import Path
from typing import List, Sequence, Tuple, Union

import numpy as np
from PIL import Image, ImageSequence
from skimage import filters
from skimage.util import img_as_float

from ..exceptions import PreconditionError

logger = logging.getLogger(__name__)

IMAGE_SUFFIXES = {".tif", ".tiff", ".png", ".jpg", ".jpeg", ".bmp"}


def to_grayscale(image: np.ndarray) -> np.ndarray:
    """
    Convert image to a single float64 channel if needed.

    RGB input uses the luminosity method, other channel counts are averaged.

    Args:
        image: Input image (2D, or 3D with channels last)

    Returns:
        Grayscale image as float64
    """
    if image.ndim == 3:
        if image.shape[2] in (3, 4):
            return np.dot(img_as_float(image[..., :3]), [0.2989, 0.5870, 0.1140])
        return img_as_float(image).mean(axis=2)
    return img_as_float(image).astype(np.float64, copy=False)


def _frames_from_file(path: Path) -> List[np.ndarray]:
    frames = []
    with Image.open(path) as img:
        for frame in ImageSequence.Iterator(img):
            if frame.mode in ("P", "LA", "PA"):
                frame = frame.convert("RGB")
            frames.append(to_grayscale(np.array(frame)))
    return frames


def load_stack(path: Union[str, Path]) -> np.ndarray:
    """
    Load an image stack from disk.

    Accepts a multi-frame TIFF, a single image file, or a directory of
    images (loaded in name order).

    Args:
        path: Path to a stack file or a directory

    Returns:
        Stack as a (n_images, rows, cols) float64 array
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Image stack not found: {path}")

    if path.is_dir():
        files = sorted(p for p in path.iterdir() if p.suffix.lower() in IMAGE_SUFFIXES)
        frames = [frame for p in files for frame in _frames_from_file(p)]
    else:
        frames = _frames_from_file(path)

    logger.debug("Loaded %d frames from %s", len(frames), path)
    return validate_stack(frames)


def validate_stack(images: Union[np.ndarray, Sequence[np.ndarray]]) -> np.ndarray:
    """
    Check that images form a non-empty stack of equally sized 2D frames.

    Multi-channel frames are reduced to grayscale.

    Args:
        images: Sequence of 2D (or channels-last 3D) arrays, or a 3D array

    Returns:
        Stack as a (n_images, rows, cols) float64 array

    Raises:
        PreconditionError: If the stack is empty or the frames disagree in shape
    """
    if isinstance(images, np.ndarray) and images.ndim == 2:
        images = [images]
    if images is None or len(images) == 0:
        raise PreconditionError("Image stack is empty")

    frames = []
    for i, image in enumerate(images):
        image = np.asarray(image)
        if image.ndim == 3:
            image = to_grayscale(image)
        if image.ndim != 2:
            raise PreconditionError(f"Image {i} must be 2D, got shape {image.shape}")
        if image.size == 0:
            raise PreconditionError(f"Image {i} is empty")
        frames.append(image.astype(np.float64, copy=False))

    shape = frames[0].shape
    for i, frame in enumerate(frames[1:], start=1):
        if frame.shape != shape:
            raise PreconditionError(
                f"Image {i} has shape {frame.shape}, expected {shape} like image 0"
            )
    return np.stack(frames)


def gradient_magnitude(image: np.ndarray, operator: str = "sobel") -> np.ndarray:
    """
    Gradient magnitude filtrate of an image.

    Args:
        image: 2D image
        operator: "sobel" or "scharr"

    Returns:
        Gradient magnitude, same shape as the input
    """
    if operator == "sobel":
        return filters.sobel(image)
    if operator == "scharr":
        return filters.scharr(image)
    raise ValueError(f"Unknown gradient operator '{operator}'. Use 'sobel' or 'scharr'")


def create_hann_window(rows: int, cols: int) -> np.ndarray:
    """2D Hann window lookup table, shared by every image of a stack."""
    return np.outer(np.hanning(rows), np.hanning(cols))


def apply_window(image: np.ndarray, window: np.ndarray) -> np.ndarray:
    if image.shape != window.shape:
        raise PreconditionError(f"Window shape {window.shape} does not match image shape {image.shape}")
    return image * window


def threshold_proportion(
    image: np.ndarray,
    fraction: float,
    hist_bins: int = 256,
    non_zero: bool = False,
) -> np.ndarray:
    """
    Mask the brightest `fraction` of pixels, found from the intensity histogram.

    The threshold is the lower edge of the histogram bin at which the
    cumulative count from the top first reaches `fraction` of the considered
    pixels. With `non_zero` only non-zero pixels are counted and marked.

    Args:
        image: Array of intensities (any shape)
        fraction: Proportion of pixels to keep, in (0, 1]
        hist_bins: Number of histogram bins
        non_zero: Ignore zero-valued pixels

    Returns:
        Boolean mask with the shape of `image`
    """
    if not 0 < fraction <= 1:
        raise ValueError(f"fraction must be in (0, 1], got {fraction}")

    considered = image != 0 if non_zero else np.ones(image.shape, dtype=bool)
    values = image[considered]
    if values.size == 0:
        raise PreconditionError("No pixels to threshold")

    vmin, vmax = float(values.min()), float(values.max())
    if vmax - vmin < 1e-12:
        return considered

    counts, edges = np.histogram(values, bins=hist_bins, range=(vmin, vmax))
    from_top = np.cumsum(counts[::-1])
    target = fraction * values.size
    bin_from_top = int(np.searchsorted(from_top, target))
    threshold = edges[hist_bins - 1 - min(bin_from_top, hist_bins - 1)]

    return considered & (image >= threshold)


def fill_undefined(image: np.ndarray) -> np.ndarray:
    """Replace NaN pixels with the median of the defined ones."""
    defined = np.isfinite(image)
    if not defined.any():
        raise PreconditionError("Image has no defined pixels")
    if defined.all():
        return image.copy()
    filled = image.copy()
    filled[~defined] = np.median(image[defined])
    return filled


def get_stack_info(stack: np.ndarray) -> dict:
    """
    Get basic stack statistics.

    Args:
        stack: (n_images, rows, cols) array

    Returns:
        Dictionary with stack info
    """
    return {
        "n_images": int(stack.shape[0]),
        "shape": tuple(stack.shape[1:]),
        "dtype": str(stack.dtype),
        "min": float(stack.min()),
        "max": float(stack.max()),
        "mean": float(stack.mean()),
        "std": float(stack.std()),
    }
