"""Output generation functions for object clustering."""

import csv
import math
from pathlib import Path
from typing import Dict, Iterable, Optional

from config import ClusteringSettings


def _format_float(value: Optional[float]) -> str:
    if value is None or not math.isfinite(value):
        return ""
    return f"{value:.4f}"


def write_assignments_csv(output_csv: Path, per_mask: Iterable[Dict[str, object]]) -> int:
    """Write one row per region with its cluster and centroid; returns the row count."""
    rows = 0
    with output_csv.open("w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(["Filename", "Region", "Cluster", "Centroid_X", "Centroid_Y", "Centroid_Z", "Pixel_Count"])
        for item in per_mask:
            for region in item.get("regions", []) or []:
                writer.writerow(
                    [
                        item.get("filename", ""),
                        region["region"],
                        region["cluster"],
                        f"{region['x']:.2f}",
                        f"{region['y']:.2f}",
                        f"{region['z']:.2f}",
                        region["pixel_count"],
                    ]
                )
                rows += 1
    return rows


def write_summary_csv(
    output_csv: Path,
    per_mask: Iterable[Dict[str, object]],
    settings: Optional[ClusteringSettings] = None,
) -> None:
    """Write per-mask clustering stats followed by overall totals."""
    per_mask_list = list(per_mask)

    succeeded = 0
    failed = 0
    total_regions = 0
    total_clusters = 0

    with output_csv.open("w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)

        # Section 1: per-mask stats
        writer.writerow(
            [
                "Filename",
                "Status",
                "Region_Count",
                "Cluster_Count",
                "Ratio",
                "Log_Likelihood",
                "Attempts",
                "Error",
            ]
        )
        for item in per_mask_list:
            error = item.get("error")
            if error:
                failed += 1
                writer.writerow([item.get("filename", ""), "Failed", "", "", "", "", "", error])
                continue

            succeeded += 1
            region_count = int(item.get("region_count", 0) or 0)
            cluster_count = int(item.get("cluster_count", 0) or 0)
            total_regions += region_count
            total_clusters += cluster_count
            writer.writerow(
                [
                    item.get("filename", ""),
                    "OK",
                    region_count,
                    cluster_count,
                    _format_float(item.get("ratio")),
                    _format_float(item.get("log_likelihood")),
                    item.get("attempts", ""),
                    "",
                ]
            )

        # Section 2: summary totals
        writer.writerow([])
        writer.writerow(["Statistic", "Value"])
        writer.writerow(["Total_Masks", len(per_mask_list)])
        writer.writerow(["Succeeded", succeeded])
        writer.writerow(["Failed", failed])
        writer.writerow(["Total_Regions", total_regions])
        writer.writerow(["Total_Clusters", total_clusters])
        avg_clusters = total_clusters / succeeded if succeeded > 0 else 0.0
        writer.writerow(["Average_Clusters_Per_Mask", f"{avg_clusters:.2f}"])
        if settings is not None:
            writer.writerow(["Fitter", settings.fitter])
            writer.writerow(["Max_Clusters", settings.max_clusters])
            writer.writerow(["Seed", settings.seed if settings.seed is not None else ""])
