"""Label-mask I/O utilities for object clustering."""

import os
from pathlib import Path
from typing import Iterable

import cv2
import numpy as np

from config import SUPPORTED_EXTS
from errors import LabelMaskError

MAX_PNG_LABEL = 65535


def iter_masks(masks_dir: Path, recursive: bool = False) -> Iterable[Path]:
    """Mask discovery using os.scandir() for large directories.

    Args:
        masks_dir: Directory to search for label masks
        recursive: If True, search subdirectories recursively (uses rglob)

    Yields:
        Path objects for supported mask files, sorted
    """
    if recursive:
        paths = {
            path
            for path in masks_dir.rglob("*")
            if path.is_file() and path.suffix.lower() in SUPPORTED_EXTS
        }
        yield from sorted(paths)
        return

    paths = []
    with os.scandir(masks_dir) as entries:
        for entry in entries:
            if entry.is_file():
                path = Path(entry.path)
                if path.suffix.lower() in SUPPORTED_EXTS:
                    paths.append(path)
    yield from sorted(paths)


def ensure_output(output_dir: Path) -> None:
    """Ensure output directory exists."""
    output_dir.mkdir(parents=True, exist_ok=True)


def load_label_mask(path: Path) -> np.ndarray:
    """Load a label mask as an integer array shaped (Y, X) or (Z, Y, X).

    `.npy` files are read with numpy; images are read unchanged by OpenCV so
    16-bit labels survive, and multi-page TIFFs become a (Z, Y, X) stack.
    """
    suffix = path.suffix.lower()
    if suffix == ".npy":
        mask = np.load(path, allow_pickle=False)
    elif suffix in (".tif", ".tiff"):
        ok, pages = cv2.imreadmulti(str(path), flags=cv2.IMREAD_UNCHANGED)
        if not ok or not pages:
            raise ValueError(f"Failed to load mask: {path}")
        mask = pages[0] if len(pages) == 1 else np.stack(pages)
    else:
        mask = cv2.imread(str(path), cv2.IMREAD_UNCHANGED)
        if mask is None:
            raise ValueError(f"Failed to load mask: {path}")
        if mask.ndim == 3:
            raise LabelMaskError(f"Expected a single-channel label image, got shape {mask.shape}: {path}")

    if not np.issubdtype(mask.dtype, np.integer) and mask.dtype != bool:
        raise LabelMaskError(f"Label mask {path} has non-integer dtype {mask.dtype}")
    return mask


def save_label_mask(path: Path, mask: np.ndarray) -> Path:
    """Save a label mask; 2D masks that fit in 16 bits become PNG/TIFF, anything else `.npy`.

    Returns:
        The path actually written (the suffix may change to `.npy`).
    """
    array = np.asarray(mask)
    if path.suffix.lower() == ".npy" or array.ndim != 2 or (array.size and array.max() > MAX_PNG_LABEL):
        target = path.with_suffix(".npy")
        np.save(target, array)
        return target

    if not cv2.imwrite(str(path), array.astype(np.uint16)):
        raise OSError(f"Failed to write mask: {path}")
    return path
