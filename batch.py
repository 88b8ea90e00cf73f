"""Batch processing functions for object clustering."""

import logging
import multiprocessing
import time
from concurrent.futures import ProcessPoolExecutor, as_completed
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np

from annotation import render_cluster_overlay
from config import ClusteringSettings
from image_io import ensure_output, iter_masks, save_label_mask
from output import write_assignments_csv, write_summary_csv
from processing import process_mask, summarize_result
from progress import ProgressRenderer
from random_source import NumpyRandomSource

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, float, Optional[float]], None]


def process_batch(
    masks_dir: Path,
    output_dir: Path,
    settings: ClusteringSettings,
    overwrite: bool = False,
    save_overlays: bool = True,
    progress_cb: Optional[ProgressCallback] = None,
    max_workers: Optional[int] = None,
    progress_renderer: Optional[ProgressRenderer] = None,
    mask_paths_override: Optional[List[Path]] = None,
    recursive: bool = False,
) -> Dict[str, object]:
    """Cluster every mask in a directory; returns summary payload for the CLI.

    Args:
        masks_dir: Directory containing label masks
        output_dir: Directory to write cluster masks, overlays and CSV files
        settings: Clustering parameters shared by all masks
        overwrite: Whether to overwrite existing cluster masks and overlays
        save_overlays: Whether to render a colored overlay per mask
        progress_cb: Optional callback for progress updates
            Signature: (current: int, total: int, elapsed: float, estimated_remaining: Optional[float])
        max_workers: Number of parallel workers (None = CPU count, 1 = sequential)
        progress_renderer: Optional terminal progress bar
        mask_paths_override: Explicit list of masks to use instead of scanning masks_dir
        recursive: Whether to scan masks_dir recursively

    Returns:
        Dictionary with processing summary
    """
    mask_paths = (
        list(mask_paths_override) if mask_paths_override is not None else list(iter_masks(masks_dir, recursive))
    )
    if not mask_paths:
        raise FileNotFoundError(f"No masks found in {masks_dir}")

    ensure_output(output_dir)
    ensure_output(output_dir / "Clusters")
    if save_overlays:
        ensure_output(output_dir / "Overlays")

    # One independent seed per mask, fixed by input order
    seeds = np.random.SeedSequence(settings.seed).spawn(len(mask_paths))
    worker_args = [
        (path, output_dir, settings, seed, overwrite, save_overlays) for path, seed in zip(mask_paths, seeds)
    ]

    if max_workers is None:
        max_workers = multiprocessing.cpu_count()
    use_parallel = max_workers > 1 and len(mask_paths) > 1

    if progress_renderer is not None:
        progress_renderer.reset(len(mask_paths))

    logger.info(
        f"Clustering {len(mask_paths)} mask(s) "
        f"{'with ' + str(max_workers) + ' workers' if use_parallel else 'sequentially'}"
    )
    if use_parallel:
        per_mask = _process_batch_parallel(worker_args, max_workers, progress_cb, progress_renderer)
    else:
        per_mask = _process_batch_sequential(worker_args, progress_cb, progress_renderer)

    write_assignments_csv(output_dir / "assignments.csv", per_mask)
    write_summary_csv(output_dir / "summary.csv", per_mask, settings=settings)

    errors = [{"filename": item["filename"], "error": item["error"]} for item in per_mask if item.get("error")]
    result: Dict[str, object] = {
        "processed": len(mask_paths),
        "succeeded": len(mask_paths) - len(errors),
        "failed": len(errors),
        "details": per_mask,
        "output_dir": str(output_dir),
    }
    if errors:
        result["errors"] = errors
    return result


def _report_progress(
    current: int,
    total: int,
    start_time: float,
    record: Dict[str, object],
    progress_cb: Optional[ProgressCallback],
    progress_renderer: Optional[ProgressRenderer],
) -> None:
    if progress_renderer is not None:
        progress_renderer.update(
            current,
            clusters=int(record.get("cluster_count", 0) or 0),
            failed=bool(record.get("error")),
        )
    if progress_cb is not None:
        elapsed = time.time() - start_time
        estimated_remaining = elapsed / current * (total - current) if current > 0 else None
        progress_cb(current, total, elapsed, estimated_remaining)


def _process_batch_sequential(
    worker_args: List[Tuple],
    progress_cb: Optional[ProgressCallback],
    progress_renderer: Optional[ProgressRenderer],
) -> List[Dict[str, object]]:
    per_mask: List[Dict[str, object]] = []
    start_time = time.time()
    for idx, args in enumerate(worker_args):
        record = cluster_mask_worker(args)
        per_mask.append(record)
        _report_progress(idx + 1, len(worker_args), start_time, record, progress_cb, progress_renderer)
    return per_mask


def _process_batch_parallel(
    worker_args: List[Tuple],
    max_workers: int,
    progress_cb: Optional[ProgressCallback],
    progress_renderer: Optional[ProgressRenderer],
) -> List[Dict[str, object]]:
    records: Dict[int, Dict[str, object]] = {}
    start_time = time.time()

    with ProcessPoolExecutor(max_workers=max_workers) as executor:
        future_to_index = {
            executor.submit(cluster_mask_worker, args): idx for idx, args in enumerate(worker_args)
        }
        for future in as_completed(future_to_index):
            idx = future_to_index[future]
            try:
                record = future.result()
            except Exception as exc:
                # the worker process itself died; the worker catches its own errors
                path = worker_args[idx][0]
                logger.error(f"Worker for {path.name} failed: {exc}", exc_info=True)
                record = _failure_record(path, exc)
            records[idx] = record
            _report_progress(len(records), len(worker_args), start_time, record, progress_cb, progress_renderer)

    # Restore input order
    return [records[idx] for idx in range(len(worker_args))]


def _failure_record(path: Path, exc: BaseException) -> Dict[str, object]:
    return {"filename": path.name, "regions": [], "cluster_count": 0, "error": str(exc)}


def cluster_mask_worker(args: Tuple) -> Dict[str, object]:
    """Cluster one mask and write its outputs.

    Args:
        args: Tuple of (path, output_dir, settings, seed, overwrite, save_overlays)

    Returns:
        Dictionary with clustering results or error information
    """
    path, output_dir, settings, seed, overwrite, save_overlays = args
    try:
        result = process_mask(path, settings, NumpyRandomSource(seed))
        record = summarize_result(path, result)

        cluster_path = output_dir / "Clusters" / f"{path.stem}_clusters.png"
        if overwrite or not (cluster_path.exists() or cluster_path.with_suffix(".npy").exists()):
            record["cluster_mask_path"] = str(save_label_mask(cluster_path, result.cluster_mask))

        if save_overlays:
            overlay_path = output_dir / "Overlays" / f"{path.stem}_overlay.png"
            if overwrite or not overlay_path.exists():
                overlay = render_cluster_overlay(result.cluster_mask, result.object_mask)
                overlay.save(overlay_path, format="PNG")
                overlay.close()
        return record
    except Exception as exc:
        # Record the failure and keep the batch going
        logger.error(f"Failed to cluster {path.name}: {exc}", exc_info=True)
        return _failure_record(path, exc)
