"""Records and status messages produced by the loop closing engine."""

from __future__ import annotations

from dataclasses import dataclass

from ..pose import SE3


@dataclass(frozen=True, eq=False)
class LoopClosureRecord:
    """A confirmed loop closure between two clusters.

    Attributes:
        query_id: Cluster being processed when the loop was found
        match_id: Older cluster it was matched to
        num_inliers: PnP inliers of the verification
        similarity: Hash similarity of the pair
        relative_pose: T_match_query measured by verification
    """

    query_id: int
    match_id: int
    num_inliers: int
    similarity: float
    relative_pose: SE3

    @property
    def pair(self) -> frozenset[int]:
        """Unordered pair of cluster IDs."""
        return frozenset((self.query_id, self.match_id))


@dataclass
class NeighborhoodResult:
    """Outcome of verifying a cluster against its temporal neighbors.

    Attributes:
        cluster_id: ID of the verified cluster
        neighbor_ids: Neighbors examined (distinct source frames)
        num_correspondences: Pooled 2D-3D correspondences
        num_inliers: PnP inliers (0 when estimation was skipped)
        pose: Estimated world pose of the cluster, if any
    """

    cluster_id: int
    neighbor_ids: list[int]
    num_correspondences: int = 0
    num_inliers: int = 0
    pose: SE3 | None = None


@dataclass
class EngineStatus:
    """Gauges published by the loop closing engine every tick.

    Attributes:
        queue_depth: Clusters waiting to be processed
        num_loop_closures: Confirmed loop closures so far
        neighborhood_inliers: Inliers of the last neighborhood check
        failed_clusters: Clusters whose processing failed
        pending_edges: Loop closure edges waiting for their vertices
    """

    queue_depth: int
    num_loop_closures: int
    neighborhood_inliers: int = 0
    failed_clusters: int = 0
    pending_edges: int = 0
