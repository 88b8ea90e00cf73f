import math

import numpy as np
import pytest

from clustering import (
    ObjectClustering,
    assign_to_nearest,
    clusters_to_mask,
    do_basic_clustering,
    do_clustering_with_initialized_clusters,
    do_complex_clustering,
    initialize_clusters_from_cluster_mask,
    initialize_clusters_kmeans_plus_plus,
    initialize_objects,
    inter_cluster_distance_ratio,
    kmeans_plus_plus_centers,
    renumber_in_raster_order,
)
from config import ClusteringSettings
from errors import EmptyClusterError, InvalidClusterCount, LabelMaskError
from models import ClusterObject, ClusterState, MixtureFit, ObjectId, Vector3
from random_source import NumpyRandomSource


def make_objects(points):
    return {
        ObjectId(i + 1): ClusterObject(object_id=ObjectId(i + 1), centroid=Vector3(*p))
        for i, p in enumerate(points)
    }


def group_values(mask, reference, labels):
    """Distinct values of `mask` under the given labels of `reference`."""
    return set(np.unique(mask[np.isin(reference, labels)]))


def test_initialize_objects_reads_centroids(two_group_mask):
    objects = initialize_objects(two_group_mask)
    assert sorted(objects) == list(range(1, 11))
    assert objects[ObjectId(3)].centroid == Vector3(20.5, 20.5, 0.0)
    assert objects[ObjectId(3)].pixel_count == 4


def test_initialize_objects_rejects_empty_mask():
    with pytest.raises(EmptyClusterError):
        initialize_objects(np.zeros((10, 10), dtype=np.int32))


def test_kmeans_plus_plus_rejects_impossible_counts(rng):
    objects = list(make_objects([(0, 0), (1, 1)]).values())
    with pytest.raises(InvalidClusterCount):
        kmeans_plus_plus_centers(objects, 0, rng)
    with pytest.raises(InvalidClusterCount):
        kmeans_plus_plus_centers(objects, 3, rng)


def test_kmeans_plus_plus_handles_coincident_objects(rng):
    objects = list(make_objects([(5, 5), (5, 5), (5, 5)]).values())
    centers = kmeans_plus_plus_centers(objects, 3, rng)
    assert len(centers) == 3
    assert all(c == Vector3(5, 5) for c in centers)


def test_kmeans_plus_plus_recovers_separated_groups():
    base = [(0, 0), (100, 0), (0, 100)]
    points = [(bx + dx, by + dy) for bx, by in base for dx, dy in [(0, 0), (2, 1), (1, 3), (-2, 2)]]
    objects = make_objects(points)
    truth = [i // 4 for i in range(len(points))]

    recovered = 0
    trials = 20
    for seed in range(trials):
        state = assign_to_nearest(objects, kmeans_plus_plus_centers(list(objects.values()), 3, NumpyRandomSource(seed)))
        labels = [state.membership[oid] for oid in sorted(objects)]
        same_partition = all(
            (labels[i] == labels[j]) == (truth[i] == truth[j])
            for i in range(len(points))
            for j in range(len(points))
        )
        recovered += same_partition
    assert recovered >= 0.9 * trials


def test_kmeans_initialization_from_mask(two_group_mask, rng):
    state = initialize_clusters_kmeans_plus_plus(two_group_mask, 2, rng)
    assert len(state.nonempty_clusters()) == 2
    assert all(len(c.object_ids) == 5 for c in state.clusters)


def test_initialize_from_cluster_mask_reads_labels(two_group_mask):
    cluster_mask = np.zeros_like(two_group_mask)
    cluster_mask[two_group_mask > 0] = 4
    cluster_mask[two_group_mask > 5] = 8
    state = initialize_clusters_from_cluster_mask(two_group_mask, cluster_mask)
    assert [c.cluster_id for c in state.clusters] == [4, 8]
    assert state.clusters[0].object_ids == {1, 2, 3, 4, 5}


def test_initialize_from_cluster_mask_requires_every_region(two_group_mask):
    cluster_mask = np.where(two_group_mask == 1, 0, 1) * (two_group_mask > 0)
    with pytest.raises(LabelMaskError):
        initialize_clusters_from_cluster_mask(two_group_mask, cluster_mask)


def test_ratio_is_symmetric_and_non_negative():
    objects = make_objects([(0, 0), (1, 0), (0, 1), (10, 10), (11, 10), (30, 0)])
    ratio = inter_cluster_distance_ratio(ClusterState.from_assignment(objects, {1: 1, 2: 1, 3: 1, 4: 2, 5: 2, 6: 3}))
    relabeled = inter_cluster_distance_ratio(ClusterState.from_assignment(objects, {1: 9, 2: 9, 3: 9, 4: 4, 5: 4, 6: 1}))
    assert ratio >= 0
    assert ratio == pytest.approx(relabeled)

    reversed_objects = dict(reversed(list(objects.items())))
    reordered = inter_cluster_distance_ratio(
        ClusterState.from_assignment(reversed_objects, {6: 3, 5: 2, 4: 2, 3: 1, 2: 1, 1: 1})
    )
    assert ratio == pytest.approx(reordered)


def test_ratio_drops_when_separated_halves_are_split():
    objects = make_objects([(0, 0), (1, 0), (0, 1), (40, 40), (41, 40), (40, 41)])
    together = inter_cluster_distance_ratio(ClusterState.from_assignment(objects, {i: 1 for i in range(1, 7)}))
    split = inter_cluster_distance_ratio(ClusterState.from_assignment(objects, {1: 1, 2: 1, 3: 1, 4: 2, 5: 2, 6: 2}))
    assert split < together
    assert split < 0.89


def test_ratio_of_two_singletons_uses_fallback():
    objects = make_objects([(0, 0), (10, 0)])
    ratio = inter_cluster_distance_ratio(ClusterState.from_assignment(objects, {1: 1, 2: 2}))
    assert ratio == pytest.approx(1.0)


def test_ratio_of_coincident_clusters_is_infinite():
    objects = make_objects([(3, 3), (3, 3)])
    assert math.isinf(inter_cluster_distance_ratio(ClusterState.from_assignment(objects, {1: 1, 2: 2})))


def test_clusters_to_mask_and_raster_renumbering(two_group_mask):
    assignment = {ObjectId(i): (7 if i > 5 else 3) for i in range(1, 11)}
    renumbered = renumber_in_raster_order(two_group_mask, assignment)
    assert set(renumbered.values()) == {1, 2}
    mask = clusters_to_mask(two_group_mask, renumbered)
    assert group_values(mask, two_group_mask, [1, 2, 3, 4, 5]) == {1}
    assert group_values(mask, two_group_mask, [6, 7, 8, 9, 10]) == {2}
    assert np.all(mask[two_group_mask == 0] == 0)


def test_basic_clustering_groups_nearby_regions(two_group_mask):
    clusters = do_basic_clustering(two_group_mask)
    assert clusters.max() == 2
    assert group_values(clusters, two_group_mask, [1, 2, 3, 4, 5]) == {1}
    assert group_values(clusters, two_group_mask, [6, 7, 8, 9, 10]) == {2}
    assert np.all(clusters[two_group_mask == 0] == 0)


def test_basic_clustering_with_precomputed_smear(two_group_mask):
    smeared = np.where(two_group_mask > 0, 1.0, 0.0)
    clusters = do_basic_clustering(two_group_mask, smeared=smeared)
    # without blur every region is its own blob
    assert clusters.max() == 10


def test_basic_clustering_follows_first_pixel_of_each_region():
    mask = np.zeros((8, 8), dtype=np.int32)
    mask[0, 0:6] = 1
    mask[5, 0] = 2
    # two separate blobs: a column at x=0 and a row segment at y=0, x>=2
    smeared = np.zeros((8, 8))
    smeared[0:6, 0] = 1.0
    smeared[0, 2:6] = 1.0

    clusters = do_basic_clustering(mask, smeared=smeared)
    # region 1 starts in the column blob although most of its pixels lie in the row blob
    assert clusters[0, 0] == clusters[5, 0] == 1
    assert set(np.unique(clusters[mask == 1])) == {1}
    assert clusters.max() == 1


def test_basic_clustering_rejects_empty_mask():
    with pytest.raises(EmptyClusterError):
        do_basic_clustering(np.zeros((20, 20), dtype=np.int32))


def test_complex_clustering_finds_two_groups(two_group_mask, rng):
    result = ObjectClustering(rng=rng).complex_clustering(two_group_mask, max_clusters=20)
    assert result.cluster_count == 2
    assert result.cluster_sizes() == {1: 5, 2: 5}
    assert group_values(result.cluster_mask, two_group_mask, [1, 2, 3, 4, 5]) == {1}
    assert group_values(result.cluster_mask, two_group_mask, [6, 7, 8, 9, 10]) == {2}
    assert result.attempts >= 1


def test_complex_clustering_keeps_a_tight_group_whole(one_group_mask, rng):
    clusters = do_complex_clustering(one_group_mask, 20, rng)
    assert set(np.unique(clusters)) == {0, 1}


def test_subdivision_splits_a_single_initial_cluster(two_group_mask, rng):
    everything = (two_group_mask > 0).astype(np.int32)
    clusters = do_clustering_with_initialized_clusters(two_group_mask, everything, 20, rng)
    assert clusters.max() == 2
    assert group_values(clusters, two_group_mask, [1, 2, 3, 4, 5]) == {1}
    assert group_values(clusters, two_group_mask, [6, 7, 8, 9, 10]) == {2}


def test_split_past_max_clusters_is_kept_and_ends_the_search(two_group_mask, rng):
    everything = (two_group_mask > 0).astype(np.int32)
    engine = ObjectClustering(rng=rng)
    result = engine.cluster_with_initialized_clusters(two_group_mask, everything, max_clusters=1)
    assert result.attempts == 1
    assert result.cluster_count == 2
    assert group_values(result.cluster_mask, two_group_mask, [1, 2, 3, 4, 5]) == {1}
    assert group_values(result.cluster_mask, two_group_mask, [6, 7, 8, 9, 10]) == {2}


def test_invalid_max_clusters_raises(two_group_mask, rng):
    with pytest.raises(InvalidClusterCount):
        ObjectClustering(rng=rng).complex_clustering(two_group_mask, max_clusters=0)


def test_clustering_is_reproducible_for_a_seed(two_group_mask):
    everything = (two_group_mask > 0).astype(np.int32)
    settings = ClusteringSettings(max_clusters=5)
    first = do_clustering_with_initialized_clusters(two_group_mask, everything, 5, NumpyRandomSource(3), settings=settings)
    second = do_clustering_with_initialized_clusters(two_group_mask, everything, 5, NumpyRandomSource(3), settings=settings)
    np.testing.assert_array_equal(first, second)


def test_labels_with_gaps_are_accepted(two_group_mask, rng):
    gapped = np.where(two_group_mask > 0, two_group_mask * 10, 0)
    result = ObjectClustering(rng=rng).complex_clustering(gapped)
    assert result.cluster_count == 2
    assert sorted(result.objects) == list(range(1, 11))


class ScriptedFitter:
    """Returns the given partitions in turn, then repeats the last one."""

    def __init__(self, partitions):
        self.partitions = partitions
        self.calls = 0

    def fit(self, objects, k, rng, initial_centers=None):
        partition = self.partitions[min(self.calls, len(self.partitions) - 1)]
        self.calls += 1
        return MixtureFit(
            assignment={o.object_id: partition[o.object_id] for o in objects},
            log_likelihood=-float(self.calls),
            centers=np.zeros((k, 3)),
        )


def test_best_split_keeps_the_first_of_equally_separated_partitions(rng):
    objects = make_objects([(0, 0), (1, 0), (0, 50), (1, 50)])
    first = {1: 0, 2: 0, 3: 1, 4: 1}
    mirrored = {1: 1, 2: 1, 3: 0, 4: 0}
    fitter = ScriptedFitter([first, mirrored])
    engine = ObjectClustering(rng=rng, fitter=fitter)

    def ratio_of(partition):
        return inter_cluster_distance_ratio(ClusterState.from_assignment(objects, {k: v + 1 for k, v in partition.items()}))

    ratio_first = ratio_of(first)
    ratio_mirrored = ratio_of(mirrored)
    assert ratio_first == ratio_mirrored < 0.89

    fit, ratio, group_count = engine._best_split(list(objects.values()), k_max=4)
    assert fitter.calls == 6
    assert fit.assignment == first
    assert fit.log_likelihood == -1.0
    assert ratio == ratio_first
    assert group_count == 2
