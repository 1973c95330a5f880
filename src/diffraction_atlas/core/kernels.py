"""
Frequency-domain matched-filter templates.

Disks, annuli and Gaussians all have closed-form Fourier transforms, so the
templates are generated directly in frequency space rather than drawn
spatially and transformed.
"""

from typing import Optional, Tuple

import numpy as np
from scipy.special import j1

from ..exceptions import PreconditionError
from ..models import FrequencyTemplate
from .compute import ArrayCompute, get_compute


def odd_thickness(thickness: int) -> int:
    """Coerce an annulus thickness to the next odd value (at least 1)."""
    thickness = max(int(thickness), 1)
    return thickness if thickness % 2 else thickness + 1


def radial_frequency(shape: Tuple[int, int]) -> np.ndarray:
    """Radial frequency (cycles/pixel) of every FFT sample."""
    fy = np.fft.fftfreq(shape[0])[:, None]
    fx = np.fft.fftfreq(shape[1])[None, :]
    return np.hypot(fx, fy)


def _disk_spectrum(k: np.ndarray, radius: float) -> np.ndarray:
    # FT of a uniform disk: R * J1(2 pi R k) / k, pi R^2 at k = 0
    if radius <= 0:
        return np.zeros(k.shape)
    spectrum = np.full(k.shape, np.pi * radius ** 2)
    nonzero = k > 0
    spectrum[nonzero] = radius * j1(2 * np.pi * radius * k[nonzero]) / k[nonzero]
    return spectrum


def _gaussian_kernel(shape: Tuple[int, int], sigma: float) -> np.ndarray:
    if sigma < 0:
        raise ValueError(f"sigma must be non-negative, got {sigma}")
    k = radial_frequency(shape)
    return np.exp(-2 * np.pi ** 2 * sigma ** 2 * k ** 2).astype(np.complex128)


def _annulus_kernel(shape: Tuple[int, int], radius: float, thickness: int) -> np.ndarray:
    if radius <= 0:
        raise ValueError(f"radius must be positive, got {radius}")
    k = radial_frequency(shape)
    half = odd_thickness(thickness) / 2
    outer = _disk_spectrum(k, radius + half)
    inner = _disk_spectrum(k, max(radius - half, 0.0))
    return (outer - inner).astype(np.complex128)


def _circle_kernel(shape: Tuple[int, int], radius: float) -> np.ndarray:
    if radius <= 0:
        raise ValueError(f"radius must be positive, got {radius}")
    return _disk_spectrum(radial_frequency(shape), radius).astype(np.complex128)


def register_builtin_kernels(compute: ArrayCompute) -> None:
    compute.register_kernel("gaussian", _gaussian_kernel)
    compute.register_kernel("annulus", _annulus_kernel)
    compute.register_kernel("circle", _circle_kernel)


def gaussian(
    shape: Tuple[int, int],
    sigma: float,
    compute: Optional[ArrayCompute] = None,
) -> FrequencyTemplate:
    """
    Gaussian blur template with unit DC gain.

    Args:
        shape: (rows, cols) of the images it will filter
        sigma: Spatial standard deviation in pixels
        compute: Compute instance (default: process-wide)

    Returns:
        FrequencyTemplate of kind "gaussian"
    """
    compute = compute or get_compute()
    spectrum = compute.run_kernel("gaussian", tuple(shape), sigma)
    return FrequencyTemplate(spectrum=spectrum, kind="gaussian", sigma=sigma)


def annulus(
    shape: Tuple[int, int],
    radius: float,
    thickness: int,
    compute: Optional[ArrayCompute] = None,
) -> FrequencyTemplate:
    """
    Annulus template centred on `radius`, `thickness` pixels wide.

    Thickness is coerced to odd so the ring has a well-defined central radius.
    The inner edge is clamped at zero for thick rings around small radii.

    Args:
        shape: (rows, cols) of the images it will filter
        radius: Central radius in pixels
        thickness: Ring width in pixels
        compute: Compute instance (default: process-wide)

    Returns:
        FrequencyTemplate of kind "annulus"
    """
    compute = compute or get_compute()
    thickness = odd_thickness(thickness)
    spectrum = compute.run_kernel("annulus", tuple(shape), radius, thickness)
    return FrequencyTemplate(spectrum=spectrum, kind="annulus", radius=radius, thickness=thickness)


def circle(
    shape: Tuple[int, int],
    radius: float,
    compute: Optional[ArrayCompute] = None,
) -> FrequencyTemplate:
    """Filled disk template of the given radius."""
    compute = compute or get_compute()
    spectrum = compute.run_kernel("circle", tuple(shape), radius)
    return FrequencyTemplate(spectrum=spectrum, kind="circle", radius=radius)


def recursive_self_convolution(template: FrequencyTemplate, n: int) -> FrequencyTemplate:
    """
    Convolve a template with itself n times.

    In frequency space this is the n-th elementwise power of the spectrum.

    Args:
        template: Template to sharpen
        n: Number of copies in the convolution (1 returns a copy)

    Returns:
        New template with `order` multiplied by n
    """
    if n < 1:
        raise PreconditionError(f"Self-convolution order must be at least 1, got {n}")
    return FrequencyTemplate(
        spectrum=template.spectrum ** n,
        kind=template.kind,
        radius=template.radius,
        thickness=template.thickness,
        sigma=template.sigma,
        order=template.order * n,
    )


def normalized(template: FrequencyTemplate) -> FrequencyTemplate:
    """Scale a template so its spatial kernel sums to one."""
    dc = template.spectrum[0, 0]
    if abs(dc) < 1e-12:
        raise PreconditionError(f"Cannot normalise {template.kind} template with zero DC component")
    return FrequencyTemplate(
        spectrum=template.spectrum / dc,
        kind=template.kind,
        radius=template.radius,
        thickness=template.thickness,
        sigma=template.sigma,
        order=template.order,
    )


def blurred(template: FrequencyTemplate, blur: FrequencyTemplate) -> FrequencyTemplate:
    """Convolve a template with a Gaussian template."""
    if template.shape != blur.shape:
        raise PreconditionError(f"Template shapes differ: {template.shape} vs {blur.shape}")
    return FrequencyTemplate(
        spectrum=template.spectrum * blur.spectrum,
        kind=template.kind,
        radius=template.radius,
        thickness=template.thickness,
        sigma=blur.sigma,
        order=template.order,
    )


def cross_correlate(
    image_spectrum: np.ndarray,
    template: FrequencyTemplate,
    compute: Optional[ArrayCompute] = None,
) -> np.ndarray:
    """Real-space correlation of an image spectrum with a symmetric template."""
    compute = compute or get_compute()
    # All templates here are real and radially symmetric, so correlation equals convolution
    return compute.ifft2d(compute.multiply(image_spectrum, template.spectrum))


def annulus_area(radius: float, thickness: int) -> float:
    """Analytic pixel sum of an annulus template."""
    half = odd_thickness(thickness) / 2
    inner = max(radius - half, 0.0)
    return float(np.pi * ((radius + half) ** 2 - inner ** 2))
