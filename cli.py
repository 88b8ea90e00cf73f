"""Command-line interface for object clustering."""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from batch import process_batch
from config import apply_overrides, load_clustering_config, save_clustering_config
from progress import ProgressRenderer

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Group the labeled regions of mask images into clusters."
    )
    parser.add_argument(
        "--masks-dir",
        type=Path,
        default=Path("masks"),
        help="Directory containing label masks (.png, .tif, .tiff or .npy).",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=Path("output"),
        help="Directory to write cluster masks, overlays and CSV files.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="Optional JSON file with clustering settings; command-line options take precedence.",
    )
    parser.add_argument(
        "--save-config",
        type=Path,
        help="Write the effective settings to this JSON file.",
    )
    parser.add_argument(
        "--max-clusters",
        type=int,
        help="Upper bound on the number of clusters per mask (default: 20).",
    )
    parser.add_argument(
        "--seed",
        type=int,
        help="Seed for reproducible runs; omit for a fresh random seed.",
    )
    parser.add_argument(
        "--fitter",
        choices=["gmm", "de"],
        help="Mixture fitter: 'gmm' (expectation maximization) or 'de' (differential evolution).",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Number of parallel worker processes (default: CPU count, 1 = sequential).",
    )
    parser.add_argument(
        "--label-regions",
        action="store_true",
        default=None,
        help="Treat masks as binary and label their 8-connected components first.",
    )
    parser.add_argument(
        "--no-overlay",
        action="store_true",
        help="Skip rendering colored overlay images.",
    )
    parser.add_argument(
        "--overwrite",
        action="store_true",
        help="Overwrite existing cluster masks and overlays.",
    )
    parser.add_argument(
        "--recursive",
        action="store_true",
        help="Search the masks directory recursively.",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Logging verbosity.",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        help="Also write log records to this file.",
    )

    args = parser.parse_args(argv)
    if args.max_clusters is not None and args.max_clusters < 1:
        parser.error("--max-clusters must be >= 1")
    if args.workers is not None and args.workers < 1:
        parser.error("--workers must be >= 1")
    return args


def configure_logging(level: str, log_file: Optional[Path] = None) -> None:
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(level=getattr(logging, level), format=LOG_FORMAT, handlers=handlers, force=True)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for CLI."""
    args = parse_args(argv)
    configure_logging(args.log_level, args.log_file)

    try:
        settings = load_clustering_config(args.config)
        settings = apply_overrides(
            settings,
            {
                "max_clusters": args.max_clusters,
                "seed": args.seed,
                "fitter": args.fitter,
                "label_regions": args.label_regions,
            },
        )
    except ValueError as exc:
        logger.error(f"Failed to load settings: {exc}")
        return 1

    if args.save_config is not None:
        save_clustering_config(settings, args.save_config)
        logger.info(f"Saved settings to {args.save_config}")

    try:
        renderer = ProgressRenderer(enable=sys.stdout.isatty())
        summary = process_batch(
            masks_dir=args.masks_dir,
            output_dir=args.output_dir,
            settings=settings,
            overwrite=args.overwrite,
            save_overlays=not args.no_overlay,
            max_workers=args.workers,
            progress_renderer=renderer,
            recursive=args.recursive,
        )
    except FileNotFoundError as exc:
        logger.error(str(exc))
        return 1

    print(
        f"Clustered {summary['succeeded']} of {summary['processed']} mask(s). "
        f"Cluster masks in {args.output_dir / 'Clusters'}, assignments.csv and summary.csv in {args.output_dir}."
    )
    if summary["failed"]:
        for item in summary.get("errors", []):
            print(f"  failed: {item['filename']}: {item['error']}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
