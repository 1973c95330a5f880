"""Session logging to console and file."""

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional, Sequence, Tuple

from rich.console import Console
from rich.logging import RichHandler

LOGGER_NAME = "diffraction_atlas"

console = Console()


def create_session_dir(base: Path) -> Path:
    """Create a timestamped output directory under `base`."""
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    session_dir = Path(base) / f"session_{timestamp}"
    session_dir.mkdir(parents=True, exist_ok=True)
    return session_dir


def setup_logger(session_dir: Path, verbose: bool = False) -> logging.Logger:
    """
    Set up the package logger to write to both console and file.

    Library modules log under this logger's namespace, so their stage
    messages reach the same handlers.

    Args:
        session_dir: Directory receiving session.log
        verbose: Show debug messages on the console

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)

    # Clear any existing handlers to avoid duplicates
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()

    # File handler - captures everything
    file_handler = logging.FileHandler(Path(session_dir) / "session.log", mode="a", encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(
        logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
    )

    console_handler = RichHandler(console=console, show_path=False, markup=True)
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    console_handler.setFormatter(logging.Formatter("%(message)s"))

    logger.addHandler(file_handler)
    logger.addHandler(console_handler)
    logger.debug("Log file: %s", Path(session_dir) / "session.log")
    return logger


def log_stack_start(logger: logging.Logger, source: str, n_images: int, shape: Tuple[int, int]) -> None:
    logger.info(f"[bold]Processing:[/bold] {source} ({n_images} images, {shape[1]}x{shape[0]} px)")


def log_radius(logger: logging.Logger, radius: int, thickness: int, state: str, images_used: int) -> None:
    logger.info(f"Spot radius: {radius} px, annulus thickness {thickness} px ({state} after {images_used} images)")


def log_alignment(logger: logging.Logger, offsets: Sequence[Tuple[int, int]], n_pairs: int) -> None:
    logger.info(f"Aligned {len(offsets)} images from {n_pairs} pairwise correlations")
    logger.debug(f"Offsets: {list(offsets)}")


def log_spots(logger: logging.Logger, n_spots: int, n_initial: int, n_vectors: int) -> None:
    logger.info(f"Spots located: {n_spots} ({n_initial} greedy, {n_vectors} lattice vectors)")


def log_ellipses(logger: logging.Logger, n_valid: int, n_total: int, mean_ratio: Optional[float] = None) -> None:
    msg = f"Ellipse fits: {n_valid}/{n_total} valid"
    if mean_ratio is not None:
        msg += f", mean aspect ratio {mean_ratio:.3f}"
    logger.info(msg)


def log_output(logger: logging.Logger, session_dir: str) -> None:
    logger.info(f"[green]Output saved to:[/green] {session_dir}")


def log_warning(logger: logging.Logger, message: str) -> None:
    logger.warning(f"[yellow]{message}[/yellow]")


def log_error(logger: logging.Logger, message: str) -> None:
    logger.error(f"[red]{message}[/red]")
