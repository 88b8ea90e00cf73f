"""Data models for object clustering."""

import math
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, NewType, Optional, Protocol, Set

import numpy as np

ObjectId = NewType("ObjectId", int)


@dataclass(frozen=True)
class Vector3:
    """Immutable 3D point or displacement."""
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0

    def __add__(self, other: "Vector3") -> "Vector3":
        return Vector3(self.x + other.x, self.y + other.y, self.z + other.z)

    def __sub__(self, other: "Vector3") -> "Vector3":
        return Vector3(self.x - other.x, self.y - other.y, self.z - other.z)

    def scale(self, factor: float) -> "Vector3":
        return Vector3(self.x * factor, self.y * factor, self.z * factor)

    def norm(self) -> float:
        return math.sqrt(self.x * self.x + self.y * self.y + self.z * self.z)

    def distance_to(self, other: "Vector3") -> float:
        return (other - self).norm()

    def as_array(self) -> np.ndarray:
        return np.array([self.x, self.y, self.z], dtype=float)

    @classmethod
    def from_array(cls, values: Iterable[float]) -> "Vector3":
        x, y, z = (float(v) for v in values)
        return cls(x, y, z)


class Positioned(Protocol):
    """Anything with a 3D position and a Euclidean distance to other positioned things."""

    @property
    def position(self) -> Vector3:
        ...

    def distance_to(self, other: "Positioned") -> float:
        ...


@dataclass(eq=False)
class ClusterObject:
    """One detected region of a label mask."""
    object_id: ObjectId
    centroid: Vector3
    pixel_count: int = 0
    most_probable_cluster: int = 0  # scratch field written by mixture fits
    probability: float = 0.0  # density under the assigned component, for reporting

    @property
    def position(self) -> Vector3:
        return self.centroid

    def distance_to(self, other: Positioned) -> float:
        return self.centroid.distance_to(other.position)


@dataclass(eq=False)
class Cluster:
    """A group of regions; owns the ids of its member objects."""
    cluster_id: int
    centroid: Optional[Vector3] = None
    object_ids: Set[ObjectId] = field(default_factory=set)

    @property
    def position(self) -> Vector3:
        if self.centroid is None:
            raise ValueError(f"Cluster {self.cluster_id} has no centroid")
        return self.centroid

    def distance_to(self, other: Positioned) -> float:
        return self.position.distance_to(other.position)

    def recompute_centroid(self, objects: Mapping[ObjectId, ClusterObject]) -> None:
        """Set the centroid to the mean of the member centroids (unset when empty)."""
        if not self.object_ids:
            self.centroid = None
            return
        total = Vector3()
        for oid in self.object_ids:
            total = total + objects[oid].centroid
        self.centroid = total.scale(1.0 / len(self.object_ids))


@dataclass
class ClusterState:
    """Objects, clusters and the derived object -> cluster index.

    Clusters own their member ids; `membership` is rebuilt by `assign` and is
    never edited on its own, so the two views cannot drift apart.
    """
    objects: Dict[ObjectId, ClusterObject]
    clusters: List[Cluster]
    membership: Dict[ObjectId, int] = field(default_factory=dict)

    @classmethod
    def from_assignment(
        cls,
        objects: Dict[ObjectId, ClusterObject],
        assignment: Mapping[ObjectId, int],
    ) -> "ClusterState":
        """Build a state whose cluster ids are exactly the values used in `assignment`."""
        cluster_ids = sorted(set(assignment.values()))
        state = cls(objects=objects, clusters=[Cluster(cluster_id=cid) for cid in cluster_ids])
        state.assign(assignment)
        return state

    def assign(self, assignment: Mapping[ObjectId, int]) -> None:
        """Replace all memberships; every object must map to an existing cluster id."""
        by_id = {c.cluster_id: c for c in self.clusters}
        for cluster in self.clusters:
            cluster.object_ids = set()
        for oid in self.objects:
            cid = assignment[oid]
            if cid not in by_id:
                raise KeyError(f"Object {oid} assigned to unknown cluster {cid}")
            by_id[cid].object_ids.add(oid)
        self.rebuild_index()
        for cluster in self.clusters:
            cluster.recompute_centroid(self.objects)

    def rebuild_index(self) -> None:
        self.membership = {
            oid: cluster.cluster_id for cluster in self.clusters for oid in cluster.object_ids
        }

    def members(self, cluster: Cluster) -> List[ClusterObject]:
        return [self.objects[oid] for oid in sorted(cluster.object_ids)]

    def nonempty_clusters(self) -> List[Cluster]:
        return [c for c in self.clusters if c.object_ids]

    def object_ids(self) -> List[ObjectId]:
        return sorted(self.objects)

    def positions_array(self) -> np.ndarray:
        """Object centroids as an (n, 3) array ordered by object id."""
        return np.array([self.objects[oid].centroid.as_array() for oid in self.object_ids()]).reshape(-1, 3)


@dataclass
class MixtureFit:
    """Outcome of one mixture-model fit."""
    assignment: Dict[ObjectId, int]  # 0-based component index per object
    log_likelihood: float
    centers: np.ndarray


@dataclass
class ClusteringResult:
    """Final output of one clustering invocation."""
    cluster_mask: np.ndarray
    object_mask: np.ndarray
    assignments: Dict[ObjectId, int]
    cluster_count: int
    ratio: float
    log_likelihood: float
    attempts: int
    objects: Dict[ObjectId, ClusterObject] = field(default_factory=dict)

    def cluster_sizes(self) -> Dict[int, int]:
        sizes: Dict[int, int] = {}
        for cid in self.assignments.values():
            sizes[cid] = sizes.get(cid, 0) + 1
        return dict(sorted(sizes.items()))
