"""
Synthetic diffraction stacks with known ground truth.

Used by the benchmark command and the test suite. Spots are uniform
disks (or ellipses) on a hexagonal lattice, blurred and shifted by a
known integer offset per image.
"""

from dataclasses import dataclass
from typing import List, Tuple

import numpy as np
from scipy import ndimage
from skimage.draw import ellipse as draw_ellipse

HEX_INDICES = [(0, 0), (1, 0), (-1, 0), (0, 1), (0, -1), (1, -1), (-1, 1)]


@dataclass
class SyntheticStack:
    """A generated stack and the parameters it was built from."""

    images: np.ndarray  # (n, rows, cols)
    shifts: List[Tuple[int, int]]  # (dx, dy) of each image's content relative to image 0
    positions: List[Tuple[int, int]]  # spot centres in image 0
    radius: float
    lattice: Tuple[Tuple[int, int], Tuple[int, int]]


def make_spot_stack(
    n_images: int = 5,
    shape: Tuple[int, int] = (256, 256),
    radius: float = 8,
    spacing: int = 40,
    blur_sigma: float = 1.0,
    noise: float = 0.02,
    max_shift: int = 6,
    seed: int = 0,
    background: float = 0.1,
    amplitude: float = 1.0,
    aspect: float = 1.0,
    angle: float = 0.0,
    background_slope: float = 0.0,
) -> SyntheticStack:
    """
    Generate a stack of shifted hexagonal spot patterns.

    Args:
        n_images: Number of frames
        shape: (rows, cols) of each frame
        radius: Spot radius in pixels (semi-minor axis when aspect > 1)
        spacing: Lattice constant in pixels
        blur_sigma: Gaussian blur applied to each frame
        noise: Standard deviation of additive Gaussian noise
        max_shift: Largest |dx| or |dy| of a frame relative to frame 0
        seed: Random seed
        background: Constant background level
        amplitude: Spot intensity above background
        aspect: Semi-major / semi-minor ratio of every spot
        angle: Major axis orientation in radians, measured from +x toward +y
        background_slope: Background change across the frame width along x

    Returns:
        SyntheticStack
    """
    rng = np.random.default_rng(seed)
    rows, cols = shape
    cx, cy = cols // 2, rows // 2
    v1 = (spacing, 0)
    v2 = (spacing // 2, int(round(spacing * np.sqrt(3) / 2)))
    base = [(cx + i * v1[0] + j * v2[0], cy + i * v1[1] + j * v2[1]) for i, j in HEX_INDICES]

    shifts = [(0, 0)] + [
        (int(rng.integers(-max_shift, max_shift + 1)), int(rng.integers(-max_shift, max_shift + 1)))
        for _ in range(n_images - 1)
    ]

    xs = np.arange(cols) - (cols - 1) / 2
    floor = background + background_slope * xs[np.newaxis, :] / cols

    images = np.empty((n_images, rows, cols))
    for k, (dx, dy) in enumerate(shifts):
        frame = np.zeros(shape)
        for x, y in base:
            # skimage measures rotation from the row axis
            rr, cc = draw_ellipse(
                y + dy, x + dx, radius, radius * aspect,
                shape=shape, rotation=-angle,
            )
            frame[rr, cc] = amplitude
        if blur_sigma > 0:
            frame = ndimage.gaussian_filter(frame, blur_sigma)
        images[k] = frame + floor + rng.normal(0.0, noise, shape)

    return SyntheticStack(
        images=images,
        shifts=shifts,
        positions=base,
        radius=float(radius),
        lattice=(v1, v2),
    )
