"""Configuration and constants for object clustering."""

import json
from pathlib import Path
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field, ValidationError

SUPPORTED_EXTS = (".png", ".tif", ".tiff", ".npy")

DEFAULT_MAX_CLUSTERS = 20
# A split is only accepted when its inter-cluster distance ratio is below this
RATIO_CUTOFF = 0.89
NUM_REPEATS = 3
# Largest sub-cluster count tried per cluster, depending on how many clusters exist
K_MAX_FEW_CLUSTERS = 6
K_MAX_MANY_CLUSTERS = 4
FEW_CLUSTERS_THRESHOLD = 3
BLUR_TRUNCATE = 4.0
DEFAULT_REG_COVAR = 1.0
DEFAULT_GMM_MAX_ITER = 100
DEFAULT_DE_MAX_GENERATIONS = 2000


class ClusteringSettings(BaseModel):
    """Tunable parameters of one clustering run."""
    max_clusters: int = Field(DEFAULT_MAX_CLUSTERS, ge=1)
    ratio_cutoff: float = Field(RATIO_CUTOFF, gt=0.0)
    num_repeats: int = Field(NUM_REPEATS, ge=1)
    k_max_few_clusters: int = Field(K_MAX_FEW_CLUSTERS, ge=2)
    k_max_many_clusters: int = Field(K_MAX_MANY_CLUSTERS, ge=2)
    few_clusters_threshold: int = Field(FEW_CLUSTERS_THRESHOLD, ge=1)
    blur_sigma: Optional[float] = Field(None, gt=0.0)  # None = mask width / 40
    blur_truncate: float = Field(BLUR_TRUNCATE, gt=0.0)
    fitter: Literal["gmm", "de"] = "gmm"
    reg_covar: float = Field(DEFAULT_REG_COVAR, gt=0.0)
    gmm_max_iter: int = Field(DEFAULT_GMM_MAX_ITER, ge=1)
    de_max_generations: int = Field(DEFAULT_DE_MAX_GENERATIONS, ge=1)
    seed: Optional[int] = Field(None, ge=0)
    label_regions: bool = False


def apply_overrides(settings: ClusteringSettings, overrides: Dict[str, Any]) -> ClusteringSettings:
    """Return validated settings with every non-None override applied."""
    data = settings.model_dump()
    data.update({key: value for key, value in overrides.items() if value is not None})
    try:
        return ClusteringSettings.model_validate(data)
    except ValidationError as exc:
        raise ValueError(f"Invalid clustering settings: {exc}") from exc


def load_clustering_config(config_file: Optional[Path] = None) -> ClusteringSettings:
    """Load clustering settings from a JSON config file.

    Args:
        config_file: Optional path to a JSON object with setting overrides

    Returns:
        Settings with the file's values merged over the defaults. A missing file
        yields the defaults.

    Raises:
        ValueError: if the file is not valid JSON or holds invalid values
    """
    if config_file is None or not config_file.exists():
        return ClusteringSettings()

    try:
        with config_file.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Malformed clustering config {config_file}: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError(f"Clustering config {config_file} must hold a JSON object")
    return apply_overrides(ClusteringSettings(), data)


def save_clustering_config(settings: ClusteringSettings, config_file: Path) -> None:
    """Persist settings to disk for later CLI runs."""
    config_file.parent.mkdir(parents=True, exist_ok=True)
    with config_file.open("w", encoding="utf-8") as f:
        json.dump(settings.model_dump(), f, indent=2)
