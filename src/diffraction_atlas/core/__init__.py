"""Core processing modules for diffraction stack analysis."""

from .compute import ArrayCompute, create_compute, get_compute
from .preprocessing import load_stack, validate_stack
from .radius import estimate_radius
from .alignment import AlignmentEngine, align_and_average, compute_relative_positions
from .symmetry import find_symmetry_axes
from .spots import locate_spots
from .spot_maps import create_spot_maps
from .condenser import estimate_condenser_profile, fit_condenser_profile
from .conic import ellipse_points_from_conic, hyper_renormalization
from .ellipses import fit_ellipses
from .pipeline import process_path, process_stack

__all__ = [
    "ArrayCompute",
    "create_compute",
    "get_compute",
    "load_stack",
    "validate_stack",
    "estimate_radius",
    "AlignmentEngine",
    "align_and_average",
    "compute_relative_positions",
    "find_symmetry_axes",
    "locate_spots",
    "create_spot_maps",
    "estimate_condenser_profile",
    "fit_condenser_profile",
    "ellipse_points_from_conic",
    "hyper_renormalization",
    "fit_ellipses",
    "process_path",
    "process_stack",
]
