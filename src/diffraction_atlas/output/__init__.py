"""Output writers and session logging."""

from .csv_writer import write_all_outputs, write_ellipses_csv, write_offsets_csv, write_spots_csv, write_summary_csv
from .logger import create_session_dir, setup_logger

__all__ = [
    "write_all_outputs",
    "write_ellipses_csv",
    "write_offsets_csv",
    "write_spots_csv",
    "write_summary_csv",
    "create_session_dir",
    "setup_logger",
]
