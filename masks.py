"""Label-mask operations used by the clustering engine.

Label masks are integer numpy arrays shaped (Y, X) or (Z, Y, X); 0 is
background and every positive value names one region. Coordinates handed to
the clustering code are (x, y, z) with z = 0 for 2D masks.
"""

from typing import NamedTuple, Optional, Sequence

import cv2
import numpy as np
from scipy import ndimage

from errors import LabelMaskError

# Value painted into every foreground pixel before smearing
SMEAR_FILL_VALUE = 4095.0
# Default blur sigma as a fraction of the mask width
SMEAR_WIDTH_FRACTION = 1.0 / 40.0


class RegionStatistics(NamedTuple):
    """Per-label pixel counts and coordinate sums of a label mask."""
    labels: np.ndarray  # sorted positive label values
    pixel_counts: np.ndarray
    coordinate_sums: np.ndarray  # (n, 3) sums of x, y, z

    @property
    def centroids(self) -> np.ndarray:
        return self.coordinate_sums / self.pixel_counts[:, None]


def validate_label_mask(mask: np.ndarray) -> np.ndarray:
    """Return the mask as a non-negative integer array or raise LabelMaskError."""
    array = np.asarray(mask)
    if array.ndim not in (2, 3):
        raise LabelMaskError(f"Label mask must be 2D or 3D, got shape {array.shape}")
    if array.dtype == bool:
        return array.astype(np.int32)
    if not np.issubdtype(array.dtype, np.integer):
        if not np.issubdtype(array.dtype, np.floating) or not np.all(np.isfinite(array)):
            raise LabelMaskError(f"Unsupported label mask dtype {array.dtype}")
        if np.any(array != np.round(array)):
            raise LabelMaskError("Label mask contains non-integer values")
        array = array.astype(np.int64)
    if array.size and array.min() < 0:
        raise LabelMaskError("Label mask contains negative labels")
    return array


def histogram(mask: np.ndarray) -> np.ndarray:
    """Pixel count for every label value from 0 to the maximum label."""
    array = validate_label_mask(mask)
    return np.bincount(array.ravel())


def max_label(mask: np.ndarray) -> int:
    array = validate_label_mask(mask)
    return int(array.max()) if array.size else 0


def _xyz_coordinates(shape: Sequence[int], nonzero: tuple) -> np.ndarray:
    """Convert np.nonzero output into an (n, 3) array of x, y, z."""
    if len(shape) == 2:
        y, x = nonzero
        z = np.zeros_like(x)
    else:
        z, y, x = nonzero
    return np.column_stack((x, y, z)).astype(float)


def region_statistics(mask: np.ndarray) -> RegionStatistics:
    """Pixel counts and coordinate sums for every region present in the mask."""
    array = validate_label_mask(mask)
    nonzero = np.nonzero(array)
    values = array[nonzero]
    if values.size == 0:
        return RegionStatistics(
            labels=np.zeros(0, dtype=np.int64),
            pixel_counts=np.zeros(0, dtype=np.int64),
            coordinate_sums=np.zeros((0, 3), dtype=float),
        )

    coords = _xyz_coordinates(array.shape, nonzero)
    labels, inverse, counts = np.unique(values, return_inverse=True, return_counts=True)
    sums = np.column_stack(
        [np.bincount(inverse, weights=coords[:, axis], minlength=labels.size) for axis in range(3)]
    )
    return RegionStatistics(labels=labels.astype(np.int64), pixel_counts=counts, coordinate_sums=sums)


def relabel_consecutive(mask: np.ndarray) -> np.ndarray:
    """Renumber labels 1..N in order of first appearance in raster order.

    Applying this twice gives the same result as applying it once.
    """
    array = validate_label_mask(mask)
    flat = array.ravel()
    nonzero_index = np.flatnonzero(flat)
    output = np.zeros(array.shape, dtype=np.int32)
    if nonzero_index.size == 0:
        return output

    values = flat[nonzero_index]
    unique_values, first_index = np.unique(values, return_index=True)
    in_raster_order = unique_values[np.argsort(first_index, kind="stable")]

    lookup = np.zeros(int(unique_values.max()) + 1, dtype=np.int32)
    lookup[in_raster_order] = np.arange(1, in_raster_order.size + 1, dtype=np.int32)
    output.ravel()[nonzero_index] = lookup[values]
    return output


def apply_mask(mask: np.ndarray, reference: np.ndarray) -> np.ndarray:
    """Zero every pixel of `mask` where `reference` is zero."""
    array = validate_label_mask(mask)
    reference_array = np.asarray(reference)
    if reference_array.shape != array.shape:
        raise LabelMaskError(f"Reference shape {reference_array.shape} does not match mask shape {array.shape}")
    return np.where(reference_array != 0, array, 0).astype(array.dtype)


def label_connected_components(mask: np.ndarray) -> np.ndarray:
    """Label 8-connected (2D) or 26-connected (3D) foreground components.

    Every nonzero pixel is foreground; labels come out consecutive in raster order.
    """
    foreground = np.asarray(mask) > 0
    if foreground.ndim == 2:
        _, labels = cv2.connectedComponents(foreground.astype(np.uint8), connectivity=8, ltype=cv2.CV_32S)
        return labels.astype(np.int32)
    if foreground.ndim == 3:
        labels, _ = ndimage.label(foreground, structure=np.ones((3, 3, 3), dtype=bool))
        return labels.astype(np.int32)
    raise LabelMaskError(f"Cannot label a mask with shape {foreground.shape}")


def default_smear_sigma(shape: Sequence[int]) -> float:
    """Blur sigma in pixels scaled to the mask width."""
    return max(float(shape[-1]) * SMEAR_WIDTH_FRACTION, 1.0)


def smear_mask(
    mask: np.ndarray,
    sigma: Optional[float] = None,
    truncate: float = 4.0,
) -> np.ndarray:
    """Long-range Gaussian blur of the foreground so neighbouring regions merge.

    The blur is applied within each plane; the returned float image is nonzero
    wherever a foreground pixel lies within `truncate * sigma` of it.
    """
    array = validate_label_mask(mask)
    if sigma is None:
        sigma = default_smear_sigma(array.shape)
    filled = np.where(array > 0, SMEAR_FILL_VALUE, 0.0)
    sigmas = (sigma, sigma) if array.ndim == 2 else (0.0, sigma, sigma)
    return ndimage.gaussian_filter(filled, sigma=sigmas, truncate=truncate, mode="constant")
