"""Cluster overlay rendering."""

import colorsys
from typing import Optional

import numpy as np
from PIL import Image, ImageDraw

from masks import region_statistics


def generate_colors(n_clusters: int) -> np.ndarray:
    """Palette of n_clusters + 1 RGB colors; index 0 (background) is black."""
    hues = np.linspace(0, 1, max(n_clusters, 1), endpoint=False)
    colors = [[0, 0, 0]] + [
        [int(c * 255) for c in colorsys.hsv_to_rgb(h, 0.65, 0.95)]
        for h in hues[:n_clusters]
    ]
    return np.array(colors, dtype=np.uint8)


def render_cluster_overlay(
    cluster_mask: np.ndarray,
    object_mask: Optional[np.ndarray] = None,
    marker_radius: int = 2,
) -> Image.Image:
    """Color every region by its cluster and mark region centroids.

    Args:
        cluster_mask: cluster labels 1..K, (Y, X) or (Z, Y, X)
        object_mask: optional region labels; centroids are marked per region
            when given, per cluster otherwise
        marker_radius: radius in pixels of the centroid markers

    Returns:
        RGB PIL Image; 3D masks are max-projected along z.
    """
    clusters_2d = cluster_mask.max(axis=0) if cluster_mask.ndim == 3 else cluster_mask
    palette = generate_colors(int(clusters_2d.max()))
    overlay = Image.fromarray(palette[clusters_2d.astype(np.int64)])
    draw = ImageDraw.Draw(overlay)

    markers = clusters_2d
    if object_mask is not None:
        markers = object_mask.max(axis=0) if object_mask.ndim == 3 else object_mask
    for cx, cy, _ in region_statistics(markers).centroids:
        draw.ellipse(
            [cx - marker_radius, cy - marker_radius, cx + marker_radius, cy + marker_radius],
            outline="white",
        )
    return overlay
