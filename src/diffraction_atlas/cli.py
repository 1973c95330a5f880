"""Command-line interface for diffraction stack analysis."""

import sys
from pathlib import Path

from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich_argparse import RichHelpFormatter

import argparse

from .core.pipeline import process_stack
from .core.preprocessing import get_stack_info, load_stack
from .output.csv_writer import write_all_outputs
from .output.logger import (
    setup_logger,
    log_stack_start,
    log_radius,
    log_alignment,
    log_spots,
    log_ellipses,
    log_output,
    log_warning,
    log_error,
    create_session_dir,
)
from .profiles import apply_overrides, get_profile, list_profiles, profile_help
from .synthetic import make_spot_stack

console = Console()


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="atlas-analyze",
        description="Align electron diffraction stacks and fit spot ellipses",
        epilog="Run 'atlas-analyze <command> --help' for command-specific options.",
        formatter_class=RichHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Process command
    process_parser = subparsers.add_parser(
        "process",
        help="Process one image stack",
        formatter_class=RichHelpFormatter,
    )
    process_parser.add_argument(
        "stack",
        type=Path,
        help="Multi-frame TIFF, single image, or directory of frames",
    )
    process_parser.add_argument(
        "-o", "--output",
        type=Path,
        default=Path("output"),
        help="Output directory (default: ./output)",
    )
    process_parser.add_argument(
        "--profile",
        type=str,
        default="default",
        choices=list_profiles(),
        help="Preset parameter profile (default: default)",
    )
    process_parser.add_argument(
        "--min-radius",
        type=int,
        default=None,
        help="Smallest spot radius considered, in pixels (default: 3, or from profile)",
    )
    process_parser.add_argument(
        "--max-radius",
        type=int,
        default=None,
        help="Largest spot radius considered, in pixels (default: a quarter of the short side)",
    )
    process_parser.add_argument(
        "--init-thickness",
        type=int,
        default=None,
        help="Starting annulus thickness, made odd (default: 3, or from profile)",
    )
    process_parser.add_argument(
        "--max-images",
        type=int,
        default=None,
        help="Most images used for the radius estimate (default: 10, or from profile)",
    )
    process_parser.add_argument(
        "--threads",
        type=int,
        default=None,
        help="Worker threads for FFTs and per-image work (default: 4, or from profile)",
    )
    process_parser.add_argument(
        "--no-symmetry",
        action="store_true",
        help="Skip the mirror-symmetry check",
    )
    process_parser.add_argument(
        "--no-condenser",
        action="store_true",
        help="Skip the condenser profile fit",
    )
    process_parser.add_argument(
        "--cluster-fraction",
        type=float,
        default=None,
        help="Largest share of a spot's annulus kept as edge pixels, 0-1 (default: 0.5)",
    )
    process_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Verbose output",
    )

    # Benchmark command (synthetic stacks with known ground truth)
    benchmark_parser = subparsers.add_parser(
        "benchmark",
        help="Run the pipeline on synthetic stacks with known radius and shifts",
        formatter_class=RichHelpFormatter,
    )
    benchmark_parser.add_argument(
        "--profile",
        type=str,
        default="default",
        choices=list_profiles(),
        help="Profile to benchmark (default: default)",
    )
    benchmark_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Verbose output",
    )

    subparsers.add_parser(
        "profiles",
        help="List parameter profiles",
        formatter_class=RichHelpFormatter,
    )

    return parser


def build_config(args: argparse.Namespace):
    """Profile named on the command line with CLI overrides applied."""
    config = get_profile(args.profile)
    overrides = {
        "radius.min_radius": args.min_radius,
        "radius.max_radius": args.max_radius,
        "radius.init_thickness": args.init_thickness,
        "radius.max_images": args.max_images,
        "threads": args.threads,
        "ellipse.cluster_fraction": args.cluster_fraction,
    }
    if args.no_symmetry:
        overrides["symmetry.enabled"] = False
    if args.no_condenser:
        overrides["condenser.enabled"] = False
    return apply_overrides(config, overrides)


def process_single_stack(args: argparse.Namespace) -> int:
    """Process one stack."""
    session_dir = create_session_dir(args.output)
    logger = setup_logger(session_dir, verbose=args.verbose)

    stack_path = args.stack
    if not stack_path.exists():
        log_error(logger, f"Stack not found: {stack_path}")
        return 1

    try:
        config = build_config(args)
        if args.verbose:
            console.print(f"[cyan]Using profile:[/cyan] {config.name} - {config.description}")

        stack = load_stack(stack_path)
        info = get_stack_info(stack)
        log_stack_start(logger, str(stack_path), info["n_images"], info["shape"])

        result = process_stack(stack, config, source=str(stack_path))

        log_radius(
            logger,
            result.radius.radius,
            result.radius.thickness,
            result.radius.state.value,
            result.radius.images_used,
        )
        log_alignment(logger, [(p.dx, p.dy) for p in result.positions], len(result.offsets))
        weak = [o for o in result.offsets if o.score <= 0]
        if weak:
            log_warning(logger, f"{len(weak)} image pairs had no usable correlation peak")
        log_spots(logger, result.spots.n_spots, result.spots.n_initial, len(result.spots.lattice_vectors))
        if result.spots.n_spots == 0:
            log_warning(logger, "No spots found - check the radius bounds and the noise floor")
        n_fits = sum(len(row) for row in result.ellipses)
        geometry = result.geometry
        log_ellipses(
            logger,
            result.n_valid_ellipses,
            n_fits,
            geometry.mean_aspect_ratio if geometry else None,
        )

        base_name = stack_path.stem
        write_all_outputs(result, session_dir, base_name)
        log_output(logger, str(session_dir))

        summary = result.summary_dict()
        table = Table(title="Stack Results")
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="green")
        table.add_row("Images", str(result.n_images))
        table.add_row("Spot Radius", f"{result.radius.radius} px (thickness {result.radius.thickness})")
        table.add_row("Spots Located", str(result.spots.n_spots))
        table.add_row("Lattice Vectors", str(len(result.spots.lattice_vectors)))
        table.add_row("Valid Ellipses", f"{result.n_valid_ellipses}/{n_fits}")
        table.add_row("Mean Aspect Ratio", str(summary["mean_aspect_ratio"]))
        table.add_row("Elongation Angle", str(summary["elongation_angle_rad"]))
        table.add_row("Incidence Sign", str(summary["incidence_sign"]))
        if result.symmetry is not None:
            table.add_row("Mirror Axes", f"{result.symmetry.n_axes} (center {summary['symmetry_center']})")
        if result.condenser is not None:
            table.add_row("Condenser Edge Level", str(summary["condenser_edge_level"]))
        table.add_row("Output Directory", str(session_dir))
        console.print(table)

        return 0

    except Exception as e:
        log_error(logger, f"Error processing stack: {e}")
        if args.verbose:
            console.print_exception()
        return 1


# Synthetic benchmark cases: (name, generator kwargs)
BENCHMARK_CASES = [
    ("round spots r=8", dict(radius=8, spacing=40, seed=1)),
    ("round spots r=5", dict(radius=5, spacing=32, seed=2)),
    ("large spots r=12", dict(radius=12, spacing=56, seed=3, max_shift=4)),
    ("noisy r=8", dict(radius=8, spacing=40, seed=4, noise=0.08)),
    ("elongated r=7", dict(radius=7, spacing=44, seed=5, aspect=1.3)),
]

RADIUS_TOLERANCE_PX = 2


def run_benchmark(args: argparse.Namespace) -> int:
    """Run the pipeline on synthetic stacks and check radius, shifts and spot count."""
    config = get_profile(args.profile)

    console.print(Panel.fit("[bold]Benchmark: Synthetic Stacks with Known Ground Truth[/bold]"))

    passed = 0
    failed = 0

    table = Table(title=f"Benchmark Results (profile: {config.name})")
    table.add_column("Test Case", style="cyan")
    table.add_column("Radius", style="white")
    table.add_column("Measured", style="white")
    table.add_column("Shifts", style="white")
    table.add_column("Spots", style="white")
    table.add_column("Ellipses", style="white")
    table.add_column("Status", style="bold")

    for name, kwargs in BENCHMARK_CASES:
        synthetic = make_spot_stack(**kwargs)
        try:
            result = process_stack(synthetic.images, config, source=name)

            radius_ok = abs(result.radius.radius - synthetic.radius) <= RADIUS_TOLERANCE_PX
            measured = [(p.dx, p.dy) for p in result.positions]
            shifts_ok = measured == list(synthetic.shifts)
            spots_ok = result.spots.n_spots >= len(synthetic.positions)

            if radius_ok and shifts_ok and spots_ok:
                status = "[green]PASS[/green]"
                passed += 1
            else:
                status = "[red]FAIL[/red]"
                failed += 1

            n_fits = sum(len(row) for row in result.ellipses)
            table.add_row(
                name,
                f"{synthetic.radius:.0f}",
                str(result.radius.radius),
                "exact" if shifts_ok else "off",
                f"{result.spots.n_spots}/{len(synthetic.positions)}",
                f"{result.n_valid_ellipses}/{n_fits}",
                status,
            )
        except Exception as e:
            table.add_row(name, f"{synthetic.radius:.0f}", "-", "-", "-", "-", f"[red]ERROR: {str(e)[:20]}[/red]")
            failed += 1
            if args.verbose:
                console.print_exception()

    console.print(table)

    total = passed + failed
    console.print(f"\n[bold]Summary:[/bold] {passed}/{total} passed, {failed} failed")

    if failed == 0:
        console.print("[bold green]All benchmarks within tolerance![/bold green]")
        return 0
    else:
        return 1


def show_profiles(args: argparse.Namespace) -> int:
    """Print the available profiles."""
    console.print(profile_help())
    return 0


def main(argv=None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    if args.command == "process":
        return process_single_stack(args)
    elif args.command == "benchmark":
        return run_benchmark(args)
    elif args.command == "profiles":
        return show_profiles(args)
    else:
        parser.print_help()
        return 0


if __name__ == "__main__":
    sys.exit(main())
