"""Object clustering: seeding, geometric grouping and adaptive subdivision."""

import logging
import math
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
from scipy.spatial.distance import cdist, pdist

from config import ClusteringSettings
from errors import EmptyClusterError, InvalidClusterCount, LabelMaskError
from masks import (
    apply_mask,
    label_connected_components,
    region_statistics,
    relabel_consecutive,
    smear_mask,
    validate_label_mask,
)
from mixture import MixtureModelFitter, build_fitter
from models import (
    Cluster,
    ClusteringResult,
    ClusterObject,
    ClusterState,
    MixtureFit,
    ObjectId,
    Vector3,
)
from random_source import UniformRandomSource

logger = logging.getLogger(__name__)

# Stand-in mean intra-cluster distance for clusters with a single member,
# as a fraction of the largest distance between the pair of clusters
ZERO_COUNT_SCALING_FACTOR = 4.0
RATIO_EPSILON = 1e-9


def initialize_objects(object_mask: np.ndarray) -> Dict[ObjectId, ClusterObject]:
    """One ClusterObject per region, keyed by label, with its pixel-mean centroid."""
    stats = region_statistics(object_mask)
    if stats.labels.size == 0:
        raise EmptyClusterError("Label mask contains no regions")
    objects: Dict[ObjectId, ClusterObject] = {}
    for label, count, centroid in zip(stats.labels, stats.pixel_counts, stats.centroids):
        object_id = ObjectId(int(label))
        objects[object_id] = ClusterObject(
            object_id=object_id,
            centroid=Vector3.from_array(centroid),
            pixel_count=int(count),
        )
    return objects


def kmeans_plus_plus_centers(
    objects: Sequence[ClusterObject],
    k: int,
    rng: UniformRandomSource,
) -> List[Vector3]:
    """Pick k seed centers among the objects by K-means++.

    The first center is drawn uniformly; each further center is drawn with
    probability proportional to the squared distance to its nearest chosen center.
    """
    n_objects = len(objects)
    if k < 1 or k > n_objects:
        raise InvalidClusterCount(k, n_objects)

    positions = np.array([o.centroid.as_array() for o in objects], dtype=float).reshape(-1, 3)
    chosen = [rng.next_int(n_objects)]
    min_squared = np.sum((positions - positions[chosen[0]]) ** 2, axis=1)

    while len(chosen) < k:
        total = float(min_squared.sum())
        if total <= 0.0:
            # every remaining object coincides with a chosen center
            remaining = [i for i in range(n_objects) if i not in chosen]
            next_index = remaining[rng.next_int(len(remaining))]
        else:
            cumulative = np.cumsum(min_squared) / total
            next_index = int(np.searchsorted(cumulative, rng.next_double(), side="right"))
            if next_index >= n_objects:
                next_index = int(np.flatnonzero(min_squared > 0)[-1])
        chosen.append(next_index)
        min_squared = np.minimum(min_squared, np.sum((positions - positions[next_index]) ** 2, axis=1))

    return [objects[i].centroid for i in chosen]


def assign_to_nearest(
    objects: Mapping[ObjectId, ClusterObject],
    centers: Sequence[Vector3],
) -> ClusterState:
    """Clusters 1..k at the given centers, each object joining its nearest center."""
    clusters = [Cluster(cluster_id=i + 1, centroid=center) for i, center in enumerate(centers)]
    state = ClusterState(objects=dict(objects), clusters=clusters)
    object_ids = state.object_ids()
    center_array = np.array([c.as_array() for c in centers]).reshape(-1, 3)
    nearest = np.argmin(cdist(state.positions_array(), center_array), axis=1)
    state.assign({oid: int(nearest[i]) + 1 for i, oid in enumerate(object_ids)})
    return state


def initialize_clusters_kmeans_plus_plus(
    object_mask: np.ndarray,
    k: int,
    rng: UniformRandomSource,
) -> ClusterState:
    """Objects from a label mask, grouped into k clusters by K-means++ seeding."""
    objects = initialize_objects(object_mask)
    ordered = [objects[oid] for oid in sorted(objects)]
    centers = kmeans_plus_plus_centers(ordered, k, rng)
    return assign_to_nearest(objects, centers)


def initialize_clusters_from_cluster_mask(object_mask: np.ndarray, cluster_mask: np.ndarray) -> ClusterState:
    """Objects from a label mask, grouped by the cluster label found under each region.

    A region is read at its first foreground pixel (raster order) that carries
    a nonzero cluster label.
    """
    objects_array = validate_label_mask(object_mask)
    clusters_array = validate_label_mask(cluster_mask)
    if objects_array.shape != clusters_array.shape:
        raise LabelMaskError(
            f"Cluster mask shape {clusters_array.shape} does not match object mask shape {objects_array.shape}"
        )
    objects = initialize_objects(objects_array)

    object_flat = objects_array.ravel()
    cluster_flat = clusters_array.ravel()
    covered = np.flatnonzero((object_flat > 0) & (cluster_flat > 0))
    labels, first_index = np.unique(object_flat[covered], return_index=True)
    assignment = {
        ObjectId(int(label)): int(cluster_flat[covered[index]]) for label, index in zip(labels, first_index)
    }

    missing = sorted(set(objects) - set(assignment))
    if missing:
        raise LabelMaskError(f"{len(missing)} region(s) have no cluster label, e.g. region {missing[0]}")
    return ClusterState.from_assignment(objects, assignment)


def inter_cluster_distance_ratio(state: ClusterState) -> float:
    """Mean over cluster pairs of 2 * (mean_a + mean_b) / max_inter; lower means better separated.

    mean_a and mean_b are mean pairwise distances inside each cluster,
    max_inter the largest distance between members of the two clusters. A
    cluster with one member uses max_inter / 4 as its mean. With a single
    cluster the score is 4 * mean_intra / max_intra.
    """
    clusters = state.nonempty_clusters()
    if not clusters:
        raise EmptyClusterError("No cluster has any members")

    member_positions = [np.array([o.centroid.as_array() for o in state.members(c)]) for c in clusters]
    intra_means: List[Optional[float]] = []
    intra_max = 0.0
    for positions in member_positions:
        if len(positions) < 2:
            intra_means.append(None)
            continue
        distances = pdist(positions)
        intra_means.append(float(distances.mean()))
        intra_max = max(intra_max, float(distances.max()))

    if len(clusters) == 1:
        mean_intra = intra_means[0] or 0.0
        return ZERO_COUNT_SCALING_FACTOR * mean_intra / (intra_max + RATIO_EPSILON)

    ratios = []
    for a in range(len(clusters)):
        for b in range(a + 1, len(clusters)):
            max_inter = float(cdist(member_positions[a], member_positions[b]).max())
            if max_inter <= 0.0:
                # coincident clusters are never a useful split
                ratios.append(math.inf)
                continue
            fallback = max_inter / ZERO_COUNT_SCALING_FACTOR
            mean_a = intra_means[a] if intra_means[a] is not None else fallback
            mean_b = intra_means[b] if intra_means[b] is not None else fallback
            ratios.append(2.0 * (mean_a + mean_b) / max_inter)
    return float(np.mean(ratios))


def clusters_to_mask(object_mask: np.ndarray, assignment: Mapping[ObjectId, int]) -> np.ndarray:
    """Paint every region with its cluster id; regions without a cluster become 0."""
    objects_array = validate_label_mask(object_mask)
    lookup = np.zeros(int(objects_array.max()) + 1 if objects_array.size else 1, dtype=np.int32)
    for object_id, cluster_id in assignment.items():
        if object_id < lookup.size:
            lookup[object_id] = cluster_id
    return lookup[objects_array]


def renumber_in_raster_order(object_mask: np.ndarray, assignment: Mapping[ObjectId, int]) -> Dict[ObjectId, int]:
    """Renumber cluster ids 1..K in the order their first pixel appears in raster order.

    The painted mask of the result equals relabel_consecutive of the painted
    mask of the input.
    """
    flat = validate_label_mask(object_mask).ravel()
    foreground = np.flatnonzero(flat)
    labels, first_index = np.unique(flat[foreground], return_index=True)
    first_pixel = {int(label): int(index) for label, index in zip(labels, first_index)}

    cluster_first: Dict[int, int] = {}
    for object_id, cluster_id in assignment.items():
        position = first_pixel.get(int(object_id))
        if position is None:
            continue
        cluster_first[cluster_id] = min(position, cluster_first.get(cluster_id, position))

    new_ids = {cid: rank + 1 for rank, cid in enumerate(sorted(cluster_first, key=cluster_first.__getitem__))}
    return {oid: new_ids[cid] for oid, cid in assignment.items() if cid in new_ids}


def do_basic_clustering(
    object_mask: np.ndarray,
    smeared: Optional[np.ndarray] = None,
    sigma: Optional[float] = None,
    truncate: float = 4.0,
) -> np.ndarray:
    """Group regions whose blurred footprints touch.

    Args:
        object_mask: label mask of the regions
        smeared: optional precomputed blurred image of the same shape
        sigma: blur sigma in pixels (default: mask width / 40)
        truncate: blur radius in sigmas

    Returns:
        Cluster mask labeled 1..K in raster order, zero outside the regions.
    """
    objects_array = validate_label_mask(object_mask)
    if smeared is None:
        smeared = smear_mask(objects_array, sigma=sigma, truncate=truncate)
    elif np.shape(smeared) != objects_array.shape:
        raise LabelMaskError(f"Smeared image shape {np.shape(smeared)} does not match mask shape {objects_array.shape}")

    blobs = label_connected_components(smeared)
    blob_stats = region_statistics(blobs)
    if blob_stats.labels.size == 0:
        raise EmptyClusterError("Blurred mask has no foreground")

    foreground = objects_array > 0
    uncovered = foreground & (blobs == 0)
    if np.any(uncovered):
        coords = np.argwhere(uncovered)[:, ::-1].astype(float)
        if coords.shape[1] == 2:
            coords = np.column_stack((coords, np.zeros(len(coords))))
        nearest = np.argmin(cdist(coords, blob_stats.centroids), axis=1)
        blobs = blobs.copy()
        blobs[uncovered] = blob_stats.labels[nearest]

    # a region takes the blob under its first pixel in raster order
    flat_foreground = np.flatnonzero(foreground.ravel())
    region_labels, first_index = np.unique(objects_array.ravel()[flat_foreground], return_index=True)

    lookup = np.zeros(int(objects_array.max()) + 1, dtype=np.int64)
    lookup[region_labels] = blobs.ravel()[flat_foreground[first_index]]
    return relabel_consecutive(lookup[objects_array])


class ObjectClustering:
    """Adaptive clustering of the regions of a label mask.

    Starts from a geometric grouping, then repeatedly tries to split every
    cluster with a mixture model and keeps a split only when it separates
    the members well and does not lower the total log-likelihood.

    Args:
        rng: random source owned by this instance
        fitter: mixture-model fitter (default: chosen by settings.fitter)
        settings: tuning parameters
    """

    def __init__(
        self,
        rng: UniformRandomSource,
        fitter: Optional[MixtureModelFitter] = None,
        settings: Optional[ClusteringSettings] = None,
    ):
        self.rng = rng
        self.settings = settings or ClusteringSettings()
        self.fitter = fitter or build_fitter(self.settings)

    def basic_clustering(self, object_mask: np.ndarray, smeared: Optional[np.ndarray] = None) -> np.ndarray:
        return do_basic_clustering(
            object_mask,
            smeared=smeared,
            sigma=self.settings.blur_sigma,
            truncate=self.settings.blur_truncate,
        )

    def complex_clustering(
        self,
        object_mask: np.ndarray,
        max_clusters: Optional[int] = None,
        smeared: Optional[np.ndarray] = None,
    ) -> ClusteringResult:
        """Geometric grouping followed by adaptive subdivision."""
        objects_array = relabel_consecutive(object_mask)
        cluster_mask = self.basic_clustering(objects_array, smeared=smeared)
        return self.cluster_with_initialized_clusters(objects_array, cluster_mask, max_clusters)

    def cluster_with_initialized_clusters(
        self,
        object_mask: np.ndarray,
        cluster_mask: np.ndarray,
        max_clusters: Optional[int] = None,
    ) -> ClusteringResult:
        """Refine an existing cluster mask by adaptive subdivision.

        Args:
            object_mask: label mask of the regions
            cluster_mask: initial cluster labels; every region must lie under one
            max_clusters: cluster count that ends the search once a candidate exceeds it (default: settings)

        Returns:
            ClusteringResult with a cluster mask labeled 1..K in raster order.
        """
        if max_clusters is None:
            max_clusters = self.settings.max_clusters
        objects_array = relabel_consecutive(object_mask)
        if max_clusters < 1:
            raise InvalidClusterCount(max_clusters, int(objects_array.max()))
        clusters_array = relabel_consecutive(apply_mask(cluster_mask, objects_array))
        initial = initialize_clusters_from_cluster_mask(objects_array, clusters_array)
        objects = initial.objects

        best_assignment = renumber_in_raster_order(objects_array, initial.membership)
        best_count = len(set(best_assignment.values()))
        best_ratio = math.inf
        best_log_likelihood = -math.inf
        attempts = 0
        unchanged = 0
        logger.debug(f"Starting subdivision from {best_count} cluster(s) over {len(objects)} region(s)")

        while True:
            attempts += 1
            candidate, log_likelihood = self._subdivide(objects, best_assignment, best_count)
            candidate = renumber_in_raster_order(objects_array, candidate)
            candidate_count = len(set(candidate.values()))
            ratio = inter_cluster_distance_ratio(ClusterState.from_assignment(objects, candidate))
            previous_count = best_count
            if attempts == 1 or (log_likelihood >= best_log_likelihood and ratio < best_ratio):
                best_assignment = candidate
                best_count = candidate_count
                best_ratio = ratio
                best_log_likelihood = log_likelihood
                logger.debug(
                    f"Attempt {attempts}: accepted {candidate_count} cluster(s), "
                    f"ratio {ratio:.4f}, log-likelihood {log_likelihood:.3f}"
                )
            else:
                logger.debug(f"Attempt {attempts}: rejected {candidate_count} cluster(s), ratio {ratio:.4f}")

            if candidate_count > max_clusters:
                logger.info(
                    f"Attempt {attempts}: {candidate_count} clusters exceeds the limit of {max_clusters}; stopping"
                )
                break
            unchanged = unchanged + 1 if best_count == previous_count else 0
            if unchanged >= self.settings.num_repeats or attempts >= max_clusters:
                break

        final_state = ClusterState.from_assignment(objects, best_assignment)
        if math.isinf(best_ratio):
            best_ratio = inter_cluster_distance_ratio(final_state)
            best_log_likelihood = math.nan
        logger.info(f"Best guess number of clusters: {best_count}")
        return ClusteringResult(
            cluster_mask=clusters_to_mask(objects_array, best_assignment),
            object_mask=objects_array,
            assignments=dict(best_assignment),
            cluster_count=best_count,
            ratio=best_ratio,
            log_likelihood=best_log_likelihood,
            attempts=attempts,
            objects=objects,
        )

    def _k_max(self, cluster_count: int) -> int:
        if cluster_count < self.settings.few_clusters_threshold:
            return self.settings.k_max_few_clusters
        return self.settings.k_max_many_clusters

    def _subdivide(
        self,
        objects: Dict[ObjectId, ClusterObject],
        assignment: Mapping[ObjectId, int],
        cluster_count: int,
    ) -> Tuple[Dict[ObjectId, int], float]:
        """Try to split every cluster once; returns the new assignment and its total log-likelihood."""
        k_max = self._k_max(cluster_count)
        candidate = dict(assignment)
        next_free = max(assignment.values()) + 1
        total_log_likelihood = 0.0

        current = ClusterState.from_assignment(objects, assignment)
        for cluster in current.clusters:
            cluster_id = cluster.cluster_id
            members = current.members(cluster)
            split = self._best_split(members, k_max)
            if split is None:
                total_log_likelihood += self.fitter.fit(members, 1, self.rng).log_likelihood
                continue

            fit, ratio, group_count = split
            total_log_likelihood += fit.log_likelihood
            for member in members:
                group = fit.assignment[member.object_id]
                candidate[member.object_id] = cluster_id if group == 0 else next_free + group - 1
            next_free += group_count - 1
            logger.debug(
                f"Cluster {cluster_id} with {len(members)} region(s) split into {group_count} (ratio {ratio:.4f})"
            )

        return candidate, total_log_likelihood

    def _best_split(
        self,
        members: List[ClusterObject],
        k_max: int,
    ) -> Optional[Tuple[MixtureFit, float, int]]:
        """Best-separated mixture split of one cluster's members, if any passes the ratio cutoff."""
        sub_objects = {o.object_id: o for o in members}
        best: Optional[Tuple[MixtureFit, float, int]] = None
        best_ratio = math.inf

        for group_count in range(2, min(k_max, len(members))):
            for _ in range(self.settings.num_repeats):
                centers = kmeans_plus_plus_centers(members, group_count, self.rng)
                fit = self.fitter.fit(
                    members,
                    group_count,
                    self.rng,
                    initial_centers=np.array([c.as_array() for c in centers]),
                )
                if len(set(fit.assignment.values())) < 2:
                    continue
                trial = ClusterState.from_assignment(sub_objects, {oid: g + 1 for oid, g in fit.assignment.items()})
                ratio = inter_cluster_distance_ratio(trial)
                if ratio < self.settings.ratio_cutoff and ratio < best_ratio:
                    best = (fit, ratio, group_count)
                    best_ratio = ratio
        return best


def do_complex_clustering(
    object_mask: np.ndarray,
    max_clusters: int,
    rng: UniformRandomSource,
    fitter: Optional[MixtureModelFitter] = None,
    settings: Optional[ClusteringSettings] = None,
    smeared: Optional[np.ndarray] = None,
) -> np.ndarray:
    """Cluster mask (1..K) from basic clustering followed by adaptive subdivision."""
    engine = ObjectClustering(rng=rng, fitter=fitter, settings=settings)
    return engine.complex_clustering(object_mask, max_clusters=max_clusters, smeared=smeared).cluster_mask


def do_clustering_with_initialized_clusters(
    object_mask: np.ndarray,
    cluster_mask: np.ndarray,
    max_clusters: int,
    rng: UniformRandomSource,
    fitter: Optional[MixtureModelFitter] = None,
    settings: Optional[ClusteringSettings] = None,
) -> np.ndarray:
    """Cluster mask (1..K) refined from an existing cluster mask."""
    engine = ObjectClustering(rng=rng, fitter=fitter, settings=settings)
    return engine.cluster_with_initialized_clusters(object_mask, cluster_mask, max_clusters).cluster_mask
