"""Core processing pipeline functions."""

import logging
from pathlib import Path
from typing import Dict, Optional

from clustering import ObjectClustering
from config import ClusteringSettings
from image_io import load_label_mask
from masks import label_connected_components
from mixture import MixtureModelFitter
from models import ClusteringResult
from random_source import UniformRandomSource

logger = logging.getLogger(__name__)


def process_mask(
    path: Path,
    settings: ClusteringSettings,
    rng: UniformRandomSource,
    label_regions: Optional[bool] = None,
    fitter: Optional[MixtureModelFitter] = None,
) -> ClusteringResult:
    """Cluster the regions of one mask file.

    Args:
        path: Path to a label mask (or a binary mask when labeling regions)
        settings: Clustering parameters
        rng: Random source for this mask only
        label_regions: Treat the file as binary and label its connected
            components first (default: settings.label_regions)
        fitter: Optional mixture-model fitter overriding settings.fitter

    Returns:
        ClusteringResult for the mask
    """
    mask = load_label_mask(path)
    if label_regions is None:
        label_regions = settings.label_regions
    if label_regions:
        mask = label_connected_components(mask)

    engine = ObjectClustering(rng=rng, fitter=fitter, settings=settings)
    result = engine.complex_clustering(mask, max_clusters=settings.max_clusters)
    logger.info(
        f"{path.name}: {len(result.objects)} region(s) in {result.cluster_count} cluster(s) "
        f"after {result.attempts} attempt(s)"
    )
    return result


def summarize_result(path: Path, result: ClusteringResult) -> Dict[str, object]:
    """Serializable per-mask record used by the CSV writers and batch summary."""
    regions = []
    for object_id in sorted(result.objects):
        obj = result.objects[object_id]
        regions.append(
            {
                "region": int(object_id),
                "cluster": int(result.assignments[object_id]),
                "x": obj.centroid.x,
                "y": obj.centroid.y,
                "z": obj.centroid.z,
                "pixel_count": obj.pixel_count,
            }
        )
    return {
        "filename": path.name,
        "region_count": len(regions),
        "cluster_count": result.cluster_count,
        "cluster_sizes": result.cluster_sizes(),
        "ratio": result.ratio,
        "log_likelihood": result.log_likelihood,
        "attempts": result.attempts,
        "regions": regions,
        "error": None,
    }
