"""Configuration profiles for different acquisition conditions."""

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple


@dataclass
class RadiusParams:
    """Spot radius estimation."""

    min_radius: int = 3
    max_radius: Optional[int] = None  # None = spectral upper bound
    init_thickness: int = 3  # coarse grid spacing and annulus thickness
    max_images: int = 10
    decay_threshold: float = 0.01  # autocorrelation gain below which the histograms are stable
    n_bins: int = 64
    gauss_sigma: float = 1.0
    refine_range: int = 3
    thickness_fraction: float = 0.5  # response kept when widening the annulus


@dataclass
class AlignmentParams:
    """Phase correlation alignment."""

    gauss_sigma: float = 1.0
    recursion_order: int = 2  # annulus self-convolutions used to sharpen peaks
    cross_power_sigma: float = 1.0  # spatial sigma of the cross-power low-pass weight
    refine_range: int = 2  # integer search around the correlation peak, 0 disables


@dataclass
class SymmetryParams:
    """Mirror-axis cross-check."""

    enabled: bool = True
    num_angles: int = 120
    target_size: int = 128
    candidate_counts: Tuple[int, ...] = (2, 3, 4, 6)
    refine_range: int = 3  # perpendicular offset search, downsampled pixels


@dataclass
class SpotParams:
    """Spot location on the aligned average."""

    gauss_sigma: float = 1.0
    noise_floor: float = 0.2  # fraction of the strongest response
    exclusion_factor: float = 2.0  # blackened disk radius / spot radius
    max_spots: int = 200
    lattice_tolerance_factor: float = 0.5  # displacement cluster radius / spot radius
    lattice_count_fraction: float = 0.5
    accept_fraction: float = 0.1  # lattice predictions need this fraction of the strongest response
    reject_fraction: float = 0.3  # lattice deviation / shortest lattice vector
    snap_tolerance: Optional[float] = None  # None = spot radius / 2


@dataclass
class EllipseParams:
    """Per-spot ellipse fitting."""

    inner_factor: float = 0.6  # annular mask inner radius / spot radius
    outer_factor: float = 1.4
    cluster_fraction: float = 0.5  # maximum share of mask pixels kept as edge pixels
    max_iter: int = 20
    tolerance: float = 1e-6
    distance_accuracy: float = 1e-3
    hist_bins: int = 256


@dataclass
class CondenserParams:
    """Condenser profile fit from a spot's self-overlap."""

    enabled: bool = True
    spot_index: int = 0  # located spot used for the fit, in discovery order
    max_images: int = 10
    min_fraction: float = 0.05  # samples need this fraction of the spot peak in both images
    max_nfev: int = 200


@dataclass
class PipelineConfig:
    """Complete parameter set for one pipeline run."""

    name: str
    description: str
    threads: int = 4
    radius: RadiusParams = field(default_factory=RadiusParams)
    alignment: AlignmentParams = field(default_factory=AlignmentParams)
    symmetry: SymmetryParams = field(default_factory=SymmetryParams)
    spots: SpotParams = field(default_factory=SpotParams)
    ellipse: EllipseParams = field(default_factory=EllipseParams)
    condenser: CondenserParams = field(default_factory=CondenserParams)


# Built-in profiles
PROFILES = {
    "default": PipelineConfig(
        name="default",
        description="Default parameters for general use",
    ),
    "fast": PipelineConfig(
        name="fast",
        description="Fewer images for the radius estimate, no symmetry check or condenser fit",
        radius=RadiusParams(max_images=4, n_bins=32),
        symmetry=SymmetryParams(enabled=False),
        ellipse=EllipseParams(max_iter=10, tolerance=1e-5),
        condenser=CondenserParams(enabled=False),
    ),
    "fine": PipelineConfig(
        name="fine",
        description="Dense angular sampling and tight convergence for clean data",
        radius=RadiusParams(init_thickness=1, decay_threshold=0.002, refine_range=4),
        symmetry=SymmetryParams(num_angles=240, target_size=256),
        ellipse=EllipseParams(max_iter=50, tolerance=1e-9, distance_accuracy=1e-4),
    ),
    "noisy": PipelineConfig(
        name="noisy",
        description="Low-dose stacks: stronger smoothing, stricter spot acceptance",
        radius=RadiusParams(gauss_sigma=2.0, max_images=20, decay_threshold=0.005),
        alignment=AlignmentParams(gauss_sigma=2.0, recursion_order=3, cross_power_sigma=2.0),
        spots=SpotParams(gauss_sigma=2.0, noise_floor=0.3, accept_fraction=0.2),
    ),
}


def get_profile(name: str) -> PipelineConfig:
    """Get a copy of a configuration profile by name."""
    if name not in PROFILES:
        available = ", ".join(PROFILES.keys())
        raise ValueError(f"Unknown profile '{name}'. Available: {available}")
    return copy.deepcopy(PROFILES[name])


def list_profiles() -> list[str]:
    """List all available profile names."""
    return list(PROFILES.keys())


def profile_help() -> str:
    """Get help text describing all profiles."""
    lines = ["Available profiles:"]
    for name, profile in PROFILES.items():
        lines.append(f"  {name}: {profile.description}")
    return "\n".join(lines)


def apply_overrides(config: PipelineConfig, overrides: Dict[str, Any]) -> PipelineConfig:
    """
    Apply dotted-key overrides such as {"radius.min_radius": 4}.

    None values are skipped so unset CLI options keep the profile value.

    Args:
        config: Configuration to update in place
        overrides: Mapping of "section.field" (or top-level field) to value

    Returns:
        The updated configuration
    """
    for key, value in overrides.items():
        if value is None:
            continue
        target = config
        *sections, attr = key.split(".")
        for section in sections:
            if not hasattr(target, section):
                raise ValueError(f"Unknown configuration section '{section}' in '{key}'")
            target = getattr(target, section)
        if not hasattr(target, attr):
            raise ValueError(f"Unknown configuration option '{key}'")
        setattr(target, attr, value)
    return config
