"""Pytest fixtures for diffraction atlas tests."""

import numpy as np
import pytest
from scipy import ndimage

from diffraction_atlas.core.compute import create_compute
from diffraction_atlas.core.pipeline import process_stack
from diffraction_atlas.profiles import get_profile
from diffraction_atlas.synthetic import make_spot_stack


@pytest.fixture
def compute():
    """Compute instance with the built-in kernels."""
    return create_compute(workers=2)


@pytest.fixture
def spot_stack():
    """Five noisy 256x256 frames with seven r=8 spots and known shifts."""
    return make_spot_stack(n_images=5, shape=(256, 256), radius=8, spacing=40, noise=0.02, seed=0)


@pytest.fixture
def clean_stack():
    """Noise-free two-frame stack for exact alignment checks."""
    return make_spot_stack(n_images=2, shape=(128, 128), radius=6, spacing=30, noise=0.0, max_shift=5, seed=7)


@pytest.fixture
def disk_image():
    """A single blurred disk of radius 8 at (32, 32) on a 64x64 background."""
    image = np.full((64, 64), 0.1)
    y, x = np.ogrid[:64, :64]
    image[(x - 32) ** 2 + (y - 32) ** 2 <= 8 ** 2] = 1.0
    return ndimage.gaussian_filter(image, 1.0)


@pytest.fixture
def elongated_image():
    """A blurred ellipse with semi-axes 10 (along x) and 6 (along y) at (40, 40)."""
    image = np.zeros((80, 80))
    y, x = np.ogrid[:80, :80]
    image[((x - 40) / 10.0) ** 2 + ((y - 40) / 6.0) ** 2 <= 1] = 1.0
    return ndimage.gaussian_filter(image, 1.0)


@pytest.fixture
def square_lattice():
    """Spot positions on a 5x5 square lattice with spacing 20."""
    return [(20 + 20 * i, 20 + 20 * j) for j in range(5) for i in range(5)]


@pytest.fixture(scope="session")
def atlas_stack():
    """The reference scenario: five 256x256 frames, seven r=8 spots, noise and shifts."""
    return make_spot_stack(n_images=5, shape=(256, 256), radius=8, spacing=40, noise=0.02, seed=11)


@pytest.fixture(scope="session")
def atlas_result(atlas_stack):
    """Full pipeline result on the reference scenario, shared across modules."""
    config = get_profile("default")
    config.threads = 2
    return process_stack(atlas_stack.images, config, source="synthetic")
