"""Data models for diffraction stack analysis."""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

import numpy as np

from .exceptions import PreconditionError

SpotPosition = Tuple[int, int]  # (x, y) on the aligned-average canvas
LatticeVector = Tuple[int, int]  # (dx, dy)


class ConvergenceState(str, Enum):
    """Stopping reason of an accumulate-until-stable loop."""

    ACCUMULATING = "accumulating"
    CONVERGED = "converged"
    EXHAUSTED = "exhausted"


class ImageState(str, Enum):
    """Per-image progress through the alignment engine."""

    UNPRIMED = "unprimed"
    PRIMED = "primed"
    CORRELATED = "correlated"


@dataclass
class FrequencyTemplate:
    """Fourier transform of a spatial kernel, in unshifted FFT layout."""

    spectrum: np.ndarray  # complex, same shape as the images it filters
    kind: str  # "gaussian", "annulus" or "circle"
    radius: Optional[float] = None
    thickness: Optional[int] = None
    sigma: Optional[float] = None
    order: int = 1  # number of self-convolutions folded in

    @property
    def shape(self) -> Tuple[int, int]:
        return self.spectrum.shape


@dataclass
class RadiusEstimate:
    """Characteristic spot radius and annulus thickness of a stack."""

    radius: int
    thickness: int
    images_used: int = 0
    state: ConvergenceState = ConvergenceState.EXHAUSTED
    autocorrelation: float = 0.0

    def __post_init__(self):
        if self.radius <= 0:
            raise PreconditionError(f"Spot radius must be positive, got {self.radius}")
        self.thickness = int(self.thickness)
        if self.thickness % 2 == 0:
            self.thickness += 1

    @property
    def inner_radius(self) -> float:
        return max(self.radius - self.thickness / 2, 0.0)

    @property
    def outer_radius(self) -> float:
        return self.radius + self.thickness / 2


@dataclass
class AlignmentOffset:
    """Measured displacement of image_b's content relative to image_a's."""

    dx: int
    dy: int
    score: float  # phase correlation peak, 1.0 for a perfect match
    image_a: int
    image_b: int


@dataclass
class RelativePosition:
    """Integer offset of one image relative to image 0."""

    index: int
    dx: int
    dy: int


@dataclass
class AlignedAverage:
    """Overlap-weighted sum of an aligned stack."""

    accumulator: np.ndarray
    overlap_count: np.ndarray
    origin: Tuple[int, int]  # canvas (x, y) of image 0's top-left pixel

    @property
    def shape(self) -> Tuple[int, int]:
        return self.accumulator.shape

    @property
    def defined(self) -> np.ndarray:
        """Mask of pixels covered by at least one image."""
        return self.overlap_count > 0

    def mean(self) -> np.ndarray:
        """Per-pixel mean, NaN where no image contributed."""
        mean = np.full(self.accumulator.shape, np.nan)
        covered = self.defined
        mean[covered] = self.accumulator[covered] / self.overlap_count[covered]
        return mean


@dataclass
class SpotSearch:
    """Spots found on the aligned average."""

    positions: List[SpotPosition]  # discovery order
    lattice_vectors: List[LatticeVector]
    score_map: np.ndarray
    n_initial: int = 0  # spots found before lattice extension

    @property
    def n_spots(self) -> int:
        return len(self.positions)


@dataclass
class SpotMap:
    """Accumulated neighborhood of one spot across the whole stack."""

    spot_index: int
    position: SpotPosition
    accumulator: np.ndarray
    counts: np.ndarray

    def mean(self) -> np.ndarray:
        mean = np.full(self.accumulator.shape, np.nan)
        covered = self.counts > 0
        mean[covered] = self.accumulator[covered] / self.counts[covered]
        return mean


@dataclass
class SymmetryLine:
    """A candidate mirror line through (x, y) at the given angle."""

    x: float
    y: float
    angle: float  # radians in [0, pi)
    score: float  # Pearson correlation of the image with its reflection


@dataclass
class SymmetryResult:
    """Mirror axes of an averaged pattern."""

    lines: List[SymmetryLine]
    center: Optional[Tuple[float, float]]
    correlations: np.ndarray  # angular correlation curve over [0, pi)
    downsample_factor: int = 1

    @property
    def n_axes(self) -> int:
        return len(self.lines)


@dataclass
class ConicCoefficients:
    """Conic a*x^2 + 2b*xy + c*y^2 + 2f0(d*x + e*y) + f0^2*f = 0."""

    a: float
    b: float
    c: float
    d: float
    e: float
    f: float
    f0: float = 1.0

    def general(self) -> Tuple[float, float, float, float, float, float]:
        """Coefficients (A, B, C, D, E, F) of Ax^2 + Bxy + Cy^2 + Dx + Ey + F = 0."""
        return (
            self.a,
            2 * self.b,
            self.c,
            2 * self.f0 * self.d,
            2 * self.f0 * self.e,
            self.f0 ** 2 * self.f,
        )

    @property
    def is_ellipse(self) -> bool:
        A, B, C, _, _, _ = self.general()
        return 4 * A * C - B ** 2 > 0


@dataclass
class ConicFit:
    """Result of an iterative conic fit."""

    conic: ConicCoefficients
    iterations: int
    converged: bool
    n_points: int = 0


@dataclass
class Ellipse:
    """Center/axes/rotation form of a conic."""

    center: Tuple[float, float]
    a: float  # semi-major
    b: float  # semi-minor
    angle: float  # major axis orientation, radians in [0, pi)
    is_ellipse: bool
    extrema: List[Tuple[float, float]] = field(default_factory=list)  # top, right, bottom, left

    @classmethod
    def invalid(cls, center: Tuple[float, float] = (float("nan"), float("nan"))) -> "Ellipse":
        """Marker for a spot whose conic is not a real ellipse."""
        return cls(center=center, a=0.0, b=0.0, angle=0.0, is_ellipse=False)

    @property
    def has_area(self) -> bool:
        """True for a real ellipse with positive axes."""
        return self.is_ellipse and self.b > 0

    @property
    def aspect_ratio(self) -> Optional[float]:
        """Major/minor ratio, 1.0 for a circle."""
        if self.has_area:
            return self.a / self.b
        return None

    def translated(self, dx: float, dy: float) -> "Ellipse":
        """Copy of this ellipse shifted by (dx, dy)."""
        return Ellipse(
            center=(self.center[0] + dx, self.center[1] + dy),
            a=self.a,
            b=self.b,
            angle=self.angle,
            is_ellipse=self.is_ellipse,
            extrema=[(x + dx, y + dy) for x, y in self.extrema],
        )


@dataclass
class GeometrySummary:
    """Detector geometry inferred from the fitted ellipses."""

    n_valid: int
    mean_aspect_ratio: Optional[float] = None
    elongation_angle: Optional[float] = None  # radians in [0, pi)
    incidence_sign: Optional[float] = None  # +1.0 or -1.0


@dataclass
class CondenserProfile:
    """Radial intensity profile of the illuminating aperture, fitted as a cubic Bezier curve."""

    params: Tuple[float, float, float, float, float]  # x1, a2, b1, b2, b3
    radius: int
    profile: np.ndarray  # (2r+1, 2r+1), 1.0 at the centre, zero outside the disk
    cost: float
    n_samples: int

    @property
    def edge_level(self) -> float:
        """Profile value at the disk edge relative to the centre."""
        return self.params[4]


@dataclass
class AtlasResult:
    """Complete results for one image stack."""

    source: str
    n_images: int
    radius: RadiusEstimate
    offsets: List[AlignmentOffset]
    positions: List[RelativePosition]
    aligned: AlignedAverage
    spots: SpotSearch
    spot_maps: List[SpotMap] = field(default_factory=list)
    ellipses: List[List[Ellipse]] = field(default_factory=list)  # [image][spot]
    symmetry: Optional[SymmetryResult] = None
    geometry: Optional[GeometrySummary] = None
    condenser: Optional[CondenserProfile] = None

    @property
    def n_valid_ellipses(self) -> int:
        return sum(e.is_ellipse for row in self.ellipses for e in row)

    def summary_dict(self) -> dict:
        """Return a dictionary summary for CSV output."""
        geometry = self.geometry or GeometrySummary(n_valid=0)
        center = self.symmetry.center if self.symmetry else None
        return {
            "source": self.source,
            "n_images": self.n_images,
            "radius_px": self.radius.radius,
            "thickness_px": self.radius.thickness,
            "radius_state": self.radius.state.value,
            "images_used_for_radius": self.radius.images_used,
            "n_spots": self.spots.n_spots,
            "n_lattice_vectors": len(self.spots.lattice_vectors),
            "n_valid_ellipses": self.n_valid_ellipses,
            "mean_aspect_ratio": (
                round(geometry.mean_aspect_ratio, 4) if geometry.mean_aspect_ratio else "N/A"
            ),
            "elongation_angle_rad": (
                round(geometry.elongation_angle, 4) if geometry.elongation_angle is not None else "N/A"
            ),
            "incidence_sign": geometry.incidence_sign if geometry.incidence_sign is not None else "N/A",
            "symmetry_center": f"{center[0]:.1f},{center[1]:.1f}" if center else "N/A",
            "condenser_edge_level": round(self.condenser.edge_level, 4) if self.condenser else "N/A",
        }
