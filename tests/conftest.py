# tests/conftest.py
from typing import Tuple

import numpy as np
import pytest

from random_source import NumpyRandomSource

SQUARE = 2
SPACING = 4


def paint_plus_group(mask: np.ndarray, center: Tuple[int, int], first_label: int) -> int:
    """Paint five 2x2 squares in a plus shape (center and four arms); returns the next free label."""
    cx, cy = center
    offsets = [(0, -SPACING), (-SPACING, 0), (0, 0), (SPACING, 0), (0, SPACING)]
    label = first_label
    for dx, dy in offsets:
        x, y = cx + dx, cy + dy
        mask[y:y + SQUARE, x:x + SQUARE] = label
        label += 1
    return label


@pytest.fixture
def rng():
    return NumpyRandomSource(12345)


@pytest.fixture
def two_group_mask():
    mask = np.zeros((100, 100), dtype=np.int32)
    next_label = paint_plus_group(mask, (20, 20), 1)
    paint_plus_group(mask, (75, 75), next_label)
    return mask


@pytest.fixture
def one_group_mask():
    mask = np.zeros((100, 100), dtype=np.int32)
    paint_plus_group(mask, (50, 50), 1)
    return mask
