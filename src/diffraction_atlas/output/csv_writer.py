"""CSV output for stack results."""

import csv
from pathlib import Path
from typing import Dict

from ..models import AtlasResult

OFFSET_FIELDS = ["image_a", "image_b", "dx", "dy", "score"]
POSITION_FIELDS = ["image", "dx", "dy"]
SPOT_FIELDS = ["spot", "x", "y", "map_pixels", "map_max_count"]
ELLIPSE_FIELDS = [
    "image", "spot", "center_x", "center_y", "semi_major", "semi_minor",
    "angle_rad", "aspect_ratio", "is_ellipse",
]


def _fmt(value, digits: int = 4):
    if value is None:
        return ""
    return round(float(value), digits)


def write_offsets_csv(result: AtlasResult, path: Path) -> Path:
    """One row per correlated image pair."""
    with open(path, "w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=OFFSET_FIELDS)
        writer.writeheader()
        for offset in result.offsets:
            writer.writerow({
                "image_a": offset.image_a,
                "image_b": offset.image_b,
                "dx": offset.dx,
                "dy": offset.dy,
                "score": _fmt(offset.score),
            })
    return path


def write_positions_csv(result: AtlasResult, path: Path) -> Path:
    with open(path, "w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=POSITION_FIELDS)
        writer.writeheader()
        for position in result.positions:
            writer.writerow({"image": position.index, "dx": position.dx, "dy": position.dy})
    return path


def write_spots_csv(result: AtlasResult, path: Path) -> Path:
    """One row per spot, in discovery order, with its spot-map coverage."""
    maps = {m.spot_index: m for m in result.spot_maps}
    with open(path, "w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=SPOT_FIELDS)
        writer.writeheader()
        for index, (x, y) in enumerate(result.spots.positions):
            spot_map = maps.get(index)
            writer.writerow({
                "spot": index,
                "x": x,
                "y": y,
                "map_pixels": int((spot_map.counts > 0).sum()) if spot_map else 0,
                "map_max_count": int(spot_map.counts.max()) if spot_map else 0,
            })
    return path


def write_ellipses_csv(result: AtlasResult, path: Path) -> Path:
    """One row per (image, spot) ellipse fit, in image coordinates."""
    with open(path, "w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=ELLIPSE_FIELDS)
        writer.writeheader()
        for image_index, row in enumerate(result.ellipses):
            for spot_index, ellipse in enumerate(row):
                writer.writerow({
                    "image": image_index,
                    "spot": spot_index,
                    "center_x": _fmt(ellipse.center[0], 3),
                    "center_y": _fmt(ellipse.center[1], 3),
                    "semi_major": _fmt(ellipse.a, 3),
                    "semi_minor": _fmt(ellipse.b, 3),
                    "angle_rad": _fmt(ellipse.angle),
                    "aspect_ratio": _fmt(ellipse.aspect_ratio),
                    "is_ellipse": ellipse.is_ellipse,
                })
    return path


def write_summary_csv(result: AtlasResult, path: Path) -> Path:
    summary = result.summary_dict()
    with open(path, "w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=list(summary.keys()))
        writer.writeheader()
        writer.writerow(summary)
    return path


def write_all_outputs(result: AtlasResult, session_dir: Path, base_name: str) -> Dict[str, Path]:
    """
    Write every CSV for one stack.

    Args:
        result: Pipeline result
        session_dir: Output directory
        base_name: File name prefix

    Returns:
        Dictionary of output kind -> written path
    """
    session_dir = Path(session_dir)
    session_dir.mkdir(parents=True, exist_ok=True)
    return {
        "summary": write_summary_csv(result, session_dir / f"{base_name}_summary.csv"),
        "offsets": write_offsets_csv(result, session_dir / f"{base_name}_offsets.csv"),
        "positions": write_positions_csv(result, session_dir / f"{base_name}_positions.csv"),
        "spots": write_spots_csv(result, session_dir / f"{base_name}_spots.csv"),
        "ellipses": write_ellipses_csv(result, session_dir / f"{base_name}_ellipses.csv"),
    }
