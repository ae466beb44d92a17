"""Pose graph maintenance and global optimization.

Every processed cluster becomes a vertex holding an optimizable pose.
Consecutive vertices are tied by sequential edges built from their input
poses; confirmed loop closures add edges between non-adjacent vertices.
When a loop closure is added, optimizing the graph distributes the
accumulated drift across the entire trajectory by minimizing the error of
all relative pose constraints.

Unlike bundle adjustment which optimizes poses AND 3D points,
pose graph optimization only optimizes poses (faster, global).

Vertices are created from a queue of clusters drained by a polling loop,
independent of the loop closing engine, so a slow loop closure search never
delays vertex creation.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

import cv2
import numpy as np
from scipy.optimize import least_squares
from scipy.sparse import lil_matrix

from ..cluster import Cluster
from ..config import PoseGraphConfig, validate_camera_matrix
from ..errors import UnknownVertexError
from ..pose import SE3

logger = logging.getLogger(__name__)

PoseListener = Callable[[dict[int, SE3], list["PoseEdge"]], None]


class EdgeKind(Enum):
    """Kind of constraint between two vertices."""

    SEQUENTIAL = "sequential"
    LOOP_CLOSURE = "loop_closure"


def edge_weight(inlier_count: int) -> float:
    """Optimizer weight of an edge; strictly increasing in inlier count."""
    return 1.0 + float(inlier_count)


@dataclass
class PoseEdge:
    """An edge in the pose graph.

    Attributes:
        from_id: Source vertex ID
        to_id: Target vertex ID
        measurement: Measured relative transform T_from_to
        inlier_count: Geometric inliers that produced the measurement
        kind: Sequential or loop closure
    """

    from_id: int
    to_id: int
    measurement: SE3
    inlier_count: int
    kind: EdgeKind = EdgeKind.LOOP_CLOSURE

    @property
    def weight(self) -> float:
        """Confidence weight derived from the inlier count."""
        return edge_weight(self.inlier_count)

    @property
    def information(self) -> np.ndarray:
        """6x6 information matrix (weight * identity)."""
        return self.weight * np.eye(6, dtype=np.float64)

    @property
    def is_loop(self) -> bool:
        """Whether this is a loop closure edge."""
        return self.kind is EdgeKind.LOOP_CLOSURE


class PoseGraph:
    """Pose graph for global trajectory optimization.

    Vertices are addressed by vertex ID. Clusters inserted from the queue
    are also reachable by cluster ID through cluster_handle, the narrow
    graph handle given to the loop closing engine.
    """

    def __init__(
        self,
        camera_matrix: np.ndarray,
        config: PoseGraphConfig | None = None,
    ) -> None:
        """Initialize an empty pose graph.

        Args:
            camera_matrix: 3x3 camera intrinsics, shared with loop closing
            config: Pose graph configuration

        Raises:
            ConfigurationError: If the camera matrix is missing or malformed
        """
        self._camera_matrix = validate_camera_matrix(camera_matrix)
        self._config = config or PoseGraphConfig()

        # Graph structure, guarded by the graph lock
        self._graph_lock = threading.RLock()
        self._poses: dict[int, SE3] = {}
        self._edges: list[PoseEdge] = []
        self._next_vertex_id = 0
        self._needs_optimization = False

        # Clusters waiting to become vertices
        self._queue_lock = threading.Lock()
        self._cluster_queue: deque[Cluster] = deque()
        self._last_cluster: Cluster | None = None
        self._last_vertex_id: int | None = None
        self._cluster_vertices: dict[int, int] = {}

        self._listeners: list[PoseListener] = []
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()

    # ------------------------------------------------------------------
    # Graph handle
    # ------------------------------------------------------------------

    def get_camera_matrix(self) -> np.ndarray:
        """Return a copy of the 3x3 camera intrinsics."""
        return self._camera_matrix.copy()

    def add_vertex(self, pose: SE3) -> int:
        """Add a vertex seeded with the given pose.

        Args:
            pose: Initial camera pose in world frame

        Returns:
            The new vertex ID (strictly increasing from 0)
        """
        with self._graph_lock:
            vertex_id = self._next_vertex_id
            self._poses[vertex_id] = SE3(
                rotation=pose.rotation.copy(),
                translation=pose.translation.copy(),
            )
            self._next_vertex_id += 1
        return vertex_id

    def add_edge(
        self,
        i: int,
        j: int,
        transform: SE3,
        inlier_count: int,
        kind: EdgeKind = EdgeKind.LOOP_CLOSURE,
    ) -> PoseEdge:
        """Add a constraint edge between two existing vertices.

        Args:
            i: Source vertex ID
            j: Target vertex ID
            transform: Measured relative transform T_i_j
            inlier_count: Inliers supporting the measurement
            kind: Edge kind (loop closure by default)

        Returns:
            The inserted edge

        Raises:
            UnknownVertexError: If i or j is not a vertex (graph unchanged)
            ValueError: If i == j or inlier_count is negative
        """
        if i == j:
            raise ValueError(f"Edge endpoints must differ, got {i} twice")
        if inlier_count < 0:
            raise ValueError(f"Inlier count must be >= 0, got {inlier_count}")

        with self._graph_lock:
            for vertex_id in (i, j):
                if vertex_id not in self._poses:
                    raise UnknownVertexError(vertex_id)

            edge = PoseEdge(
                from_id=i,
                to_id=j,
                measurement=SE3(
                    rotation=transform.rotation.copy(),
                    translation=transform.translation.copy(),
                ),
                inlier_count=int(inlier_count),
                kind=kind,
            )
            self._edges.append(edge)
            if edge.is_loop:
                self._needs_optimization = True

        return edge

    def vertex_of(self, cluster_id: int) -> int | None:
        """Vertex ID of a cluster inserted from the queue, or None."""
        with self._graph_lock:
            return self._cluster_vertices.get(cluster_id)

    def add_cluster_edge(
        self,
        cluster_i: int,
        cluster_j: int,
        transform: SE3,
        inlier_count: int,
    ) -> PoseEdge:
        """Add a loop closure edge between the vertices of two clusters.

        Raises:
            UnknownVertexError: If a cluster has no vertex yet; vertex_id
                is the cluster ID (graph unchanged)
        """
        with self._graph_lock:
            vertex_ids = []
            for cluster_id in (cluster_i, cluster_j):
                vertex_id = self._cluster_vertices.get(cluster_id)
                if vertex_id is None:
                    raise UnknownVertexError(cluster_id)
                vertex_ids.append(vertex_id)
            return self.add_edge(vertex_ids[0], vertex_ids[1], transform, inlier_count)

    @property
    def cluster_handle(self) -> ClusterGraphHandle:
        """Graph handle for the loop closing engine (cluster IDs)."""
        return ClusterGraphHandle(self)

    # ------------------------------------------------------------------
    # Cluster queue
    # ------------------------------------------------------------------

    def enqueue(self, cluster: Cluster) -> None:
        """Queue a cluster to be inserted as a vertex."""
        with self._queue_lock:
            self._cluster_queue.append(cluster)

    def spin_once(self) -> bool:
        """Insert the next queued cluster, if any.

        Returns:
            True if a cluster was processed
        """
        with self._queue_lock:
            if not self._cluster_queue:
                return False
            cluster = self._cluster_queue.popleft()

        self._insert_cluster(cluster)
        return True

    def process_pending(self) -> int:
        """Insert every queued cluster; returns how many were processed."""
        count = 0
        while self.spin_once():
            count += 1
        return count

    def _insert_cluster(self, cluster: Cluster) -> None:
        """Create the vertex of a cluster and its sequential edge."""
        with self._graph_lock:
            if cluster.id in self._cluster_vertices:
                logger.warning(
                    "Cluster %d already has vertex %d, ignoring it",
                    cluster.id,
                    self._cluster_vertices[cluster.id],
                )
                return

            vertex_id = self.add_vertex(cluster.pose)
            self._cluster_vertices[cluster.id] = vertex_id

            if self._last_cluster is not None:
                relative_pose = self._last_cluster.pose.inverse().compose(
                    cluster.pose
                )
                self.add_edge(
                    self._last_vertex_id,
                    vertex_id,
                    relative_pose,
                    self._config.sequential_inliers,
                    kind=EdgeKind.SEQUENTIAL,
                )

            self._last_cluster = cluster
            self._last_vertex_id = vertex_id

    def run(self, stop_event: threading.Event | None = None) -> None:
        """Vertex insertion loop; returns once stop_event is set.

        Polls the queue at the configured tick rate, inserting one cluster
        per tick. When the queue is idle and a loop closure edge arrived
        since the last solve, the graph is optimized.
        """
        stop_event = stop_event or self._stop_event
        period = 1.0 / self._config.tick_rate

        while not stop_event.is_set():
            try:
                processed = self.spin_once()
                if (
                    not processed
                    and self._config.optimize_on_loop
                    and self._needs_optimization
                ):
                    self.optimize()
            except Exception:
                logger.exception("Pose graph update failed")

            stop_event.wait(period)

    def start(self) -> None:
        """Run the insertion loop in a background thread."""
        if self._thread is not None:
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self.run,
            args=(self._stop_event,),
            name="pose-graph",
            daemon=True,
        )
        self._thread.start()
        logger.info("Pose graph started")

    def stop(self, timeout: float = 5.0) -> None:
        """Signal the insertion loop to stop and wait for it."""
        if self._thread is None:
            return

        self._stop_event.set()
        self._thread.join(timeout=timeout)
        if self._thread.is_alive():
            logger.warning("Pose graph thread did not stop within %.1fs", timeout)
        self._thread = None
        logger.info("Pose graph stopped")

    # ------------------------------------------------------------------
    # Optimization
    # ------------------------------------------------------------------

    def add_listener(self, listener: PoseListener) -> None:
        """Register a callback receiving (poses, edges) after each solve."""
        self._listeners.append(listener)

    def optimize(self, max_iterations: int | None = None) -> dict[int, SE3]:
        """Optimize all vertex poses; the first vertex is held fixed.

        The graph is locked for the whole solve, so concurrent vertex or
        edge insertions wait and apply afterwards.

        Args:
            max_iterations: Maximum optimization iterations (per parameter)

        Returns:
            Dictionary of optimized poses (vertex_id -> SE3)
        """
        if max_iterations is None:
            max_iterations = self._config.max_iterations

        with self._graph_lock:
            if len(self._poses) >= 2 and self._edges:
                self._solve(max_iterations)
            self._needs_optimization = False
            optimized = self.poses
            edges = list(self._edges)

        for listener in self._listeners:
            listener(optimized, edges)

        return optimized

    def _solve(self, max_iterations: int) -> None:
        """Run least squares over all edges and write poses back."""
        # Sorted vertex IDs for consistent ordering; index 0 is fixed
        pose_ids = sorted(self._poses.keys())
        id_to_idx = {pid: i for i, pid in enumerate(pose_ids)}
        fixed_pose = self._poses[pose_ids[0]]
        edges = list(self._edges)

        # Each free pose: 6 params (rvec: 3, tvec: 3)
        params = []
        for pid in pose_ids[1:]:
            rvec, tvec = self._poses[pid].to_rvec_tvec()
            params.extend(rvec)
            params.extend(tvec)
        params = np.array(params, dtype=np.float64)

        if len(params) == 0:
            return

        n_residuals = len(edges) * 6
        jac_sparsity = lil_matrix((n_residuals, len(params)), dtype=np.float64)
        for e_idx, edge in enumerate(edges):
            rows = slice(e_idx * 6, e_idx * 6 + 6)
            for vertex_id in (edge.from_id, edge.to_id):
                idx = id_to_idx[vertex_id]
                if idx == 0:
                    continue
                start = (idx - 1) * 6
                jac_sparsity[rows, start : start + 6] = 1
        jac_sparsity = jac_sparsity.tocsr()

        sqrt_weights = [np.sqrt(edge.weight) for edge in edges]

        def unpack(x: np.ndarray) -> list[SE3]:
            poses = [fixed_pose]
            for k in range(len(pose_ids) - 1):
                offset = k * 6
                R, _ = cv2.Rodrigues(x[offset : offset + 3])
                poses.append(SE3(rotation=R, translation=x[offset + 3 : offset + 6]))
            return poses

        def residuals(x: np.ndarray) -> np.ndarray:
            poses = unpack(x)
            out = np.empty(n_residuals, dtype=np.float64)
            for e_idx, edge in enumerate(edges):
                T_i = poses[id_to_idx[edge.from_id]]
                T_j = poses[id_to_idx[edge.to_id]]

                # Error: log((T_i^-1 T_j)^-1 T_ij_meas)
                T_ij_pred = T_i.inverse().compose(T_j)
                error = T_ij_pred.inverse().compose(edge.measurement).log()
                out[e_idx * 6 : e_idx * 6 + 6] = sqrt_weights[e_idx] * error
            return out

        result = least_squares(
            residuals,
            params,
            method="trf",  # 'lm' doesn't support jac_sparsity
            jac_sparsity=jac_sparsity,
            ftol=1e-10,
            xtol=1e-10,
            gtol=1e-10,
            max_nfev=max_iterations * len(params),
        )

        for pid, pose in zip(pose_ids[1:], unpack(result.x)[1:]):
            self._poses[pid] = pose

        logger.info(
            "Pose graph optimized: %d vertices, %d edges, cost %.6g -> %.6g",
            len(pose_ids),
            len(edges),
            0.5 * float(np.sum(residuals(params) ** 2)),
            float(result.cost),
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_pose(self, vertex_id: int) -> SE3 | None:
        """Get the current pose estimate of a vertex, or None."""
        with self._graph_lock:
            pose = self._poses.get(vertex_id)
            if pose is None:
                return None
            return SE3(rotation=pose.rotation.copy(), translation=pose.translation.copy())

    def has_vertex(self, vertex_id: int) -> bool:
        """True if the vertex exists."""
        with self._graph_lock:
            return vertex_id in self._poses

    @property
    def poses(self) -> dict[int, SE3]:
        """Get all poses (read-only copy)."""
        with self._graph_lock:
            return {
                k: SE3(rotation=v.rotation.copy(), translation=v.translation.copy())
                for k, v in self._poses.items()
            }

    @property
    def edges(self) -> list[PoseEdge]:
        """All edges in insertion order."""
        with self._graph_lock:
            return list(self._edges)

    @property
    def loop_edges(self) -> list[PoseEdge]:
        """Loop closure edges in insertion order."""
        with self._graph_lock:
            return [edge for edge in self._edges if edge.is_loop]

    @property
    def num_vertices(self) -> int:
        """Number of vertices in graph."""
        with self._graph_lock:
            return len(self._poses)

    @property
    def num_edges(self) -> int:
        """Total number of edges in graph."""
        with self._graph_lock:
            return len(self._edges)

    @property
    def num_loop_edges(self) -> int:
        """Number of loop closure edges."""
        return len(self.loop_edges)

    @property
    def queue_depth(self) -> int:
        """Clusters waiting to become vertices."""
        with self._queue_lock:
            return len(self._cluster_queue)

    @property
    def needs_optimization(self) -> bool:
        """True when a loop closure edge was added since the last solve."""
        return self._needs_optimization

    @property
    def is_running(self) -> bool:
        """Check if the insertion thread is running."""
        return self._thread is not None and self._thread.is_alive()


class ClusterGraphHandle:
    """Pose graph view addressing vertices by cluster ID."""

    def __init__(self, graph: PoseGraph) -> None:
        self._graph = graph

    def get_camera_matrix(self) -> np.ndarray:
        return self._graph.get_camera_matrix()

    def add_edge(
        self, i: int, j: int, transform: SE3, inlier_count: int
    ) -> PoseEdge:
        """Add a loop closure edge from cluster i to cluster j."""
        return self._graph.add_cluster_edge(i, j, transform, inlier_count)
