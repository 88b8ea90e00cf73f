"""Exception types raised by the clustering engine and minimizers."""

from typing import Optional

import numpy as np


class ClusteringError(Exception):
    """Base class for clustering failures."""


class InvalidClusterCount(ClusteringError, ValueError):
    """Requested cluster count is impossible for the available objects."""

    def __init__(self, k: int, n_objects: int):
        super().__init__(f"Cannot form {k} cluster(s) from {n_objects} object(s).")
        self.k = k
        self.n_objects = n_objects


class EmptyClusterError(ClusteringError):
    """A mask or cluster that must contain objects contains none."""


class LabelMaskError(ClusteringError, ValueError):
    """Label mask is malformed (wrong shape, negative labels, unlabeled objects)."""


class FitFailedError(ClusteringError):
    """Mixture-model fitting could not produce a finite likelihood."""


class MaxIterationsExceeded(RuntimeError):
    """Nelder-Mead search hit its iteration cap before reaching tolerance.

    Carries the best vertex found so far so callers can still use it.
    """

    def __init__(self, point: np.ndarray, value: float, iterations: int, tolerance: Optional[float] = None):
        message = f"Simplex search stopped after {iterations} iterations (best value {value:g})"
        if tolerance is not None:
            message += f"; last relative tolerance {tolerance:g}"
        super().__init__(message)
        self.point = point
        self.value = value
        self.iterations = iterations
        self.tolerance = tolerance
