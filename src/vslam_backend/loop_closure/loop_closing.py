"""Loop closing engine.

For every incoming cluster the engine runs, in order:
1. Ingest: persist the cluster and index its hash signature
2. Neighborhood check: PnP of the cluster against its temporal neighbors
   (local consistency diagnostic)
3. Hash search: rank older, non-neighbor clusters by signature similarity
4. Geometric confirmation: verify the best candidates with PnP + RANSAC
   and add a loop closure edge to the pose graph for the first match.
   The edge waits in a pending list until the pose graph has created
   both vertices.

Clusters arrive through a queue drained by a polling loop, one cluster per
tick, so producers never wait for processing.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable
from typing import Protocol

import numpy as np

from ..cluster import Cluster
from ..config import HashConfig, LoopClosingConfig, validate_camera_matrix
from ..errors import (
    DuplicateLoopClosureError,
    InitializationError,
    InvalidClusterError,
    StoreWriteError,
    UnknownVertexError,
)
from ..pose import SE3
from .cluster_store import ClusterStore
from .geometric_verification import GeometricVerifier, VerificationResult
from .hashing import HashDescriptor
from .messages import EngineStatus, LoopClosureRecord, NeighborhoodResult

logger = logging.getLogger(__name__)

StatusObserver = Callable[[EngineStatus], None]


class GraphHandle(Protocol):
    """What the loop closing engine needs from the pose graph."""

    def get_camera_matrix(self) -> np.ndarray: ...

    def add_edge(
        self, i: int, j: int, transform: SE3, inlier_count: int
    ) -> object: ...


class LoopClosingEngine:
    """Detects loop closures between incoming clusters and past ones."""

    def __init__(
        self,
        graph: GraphHandle,
        store: ClusterStore | None = None,
        config: LoopClosingConfig | None = None,
        hash_config: HashConfig | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            graph: Pose graph handle receiving loop closure edges
            store: Cluster store (default: one in config.store_directory)
            config: Loop closing configuration
            hash_config: Hash descriptor configuration

        Raises:
            ConfigurationError: If the graph has no valid camera matrix
        """
        self._config = config or LoopClosingConfig()
        self._graph = graph
        self._store = (
            store if store is not None else ClusterStore(self._config.store_directory)
        )
        self._hash = HashDescriptor(hash_config)
        self._verifier = GeometricVerifier(
            camera_matrix=validate_camera_matrix(graph.get_camera_matrix()),
            ratio=self._config.ratio,
            reprojection_error=self._config.reprojection_error,
            iterations=self._config.ransac_iterations,
            max_inliers=self._config.max_inliers,
            min_inliers=self._config.min_inliers,
        )

        self._queue_lock = threading.Lock()
        self._cluster_queue: deque[Cluster] = deque()

        # Hash table and loop closure records, guarded by the state lock
        self._state_lock = threading.Lock()
        self._hash_table: list[tuple[int, np.ndarray]] = []
        self._hash_index: dict[int, int] = {}
        self._loop_closures: list[LoopClosureRecord] = []
        self._confirmed_pairs: set[frozenset[int]] = set()
        self._pending_edges: list[LoopClosureRecord] = []

        self._failed_clusters: list[int] = []
        self._last_neighborhood: NeighborhoodResult | None = None

        self._observers: list[StatusObserver] = []
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()

    # ------------------------------------------------------------------
    # Queue and lifecycle
    # ------------------------------------------------------------------

    def enqueue(self, cluster: Cluster) -> None:
        """Queue a cluster for processing; returns immediately."""
        with self._queue_lock:
            self._cluster_queue.append(cluster)

    def add_observer(self, observer: StatusObserver) -> None:
        """Register a callback receiving an EngineStatus every tick."""
        self._observers.append(observer)

    def spin_once(self) -> bool:
        """Process the next queued cluster, if any.

        Deferred loop closure edges are retried first.

        Returns:
            True if a cluster was taken from the queue
        """
        self.flush_pending_edges()

        with self._queue_lock:
            if not self._cluster_queue:
                return False
            cluster = self._cluster_queue.popleft()

        self.process_cluster(cluster)
        return True

    def process_pending(self) -> int:
        """Process every queued cluster; returns how many were processed."""
        count = 0
        while self.spin_once():
            count += 1
        return count

    def run(self, stop_event: threading.Event | None = None) -> None:
        """Processing loop; returns once stop_event is set.

        Polls the queue at config.tick_rate and processes at most one
        cluster per tick. A failing cluster is logged and skipped;
        initialization errors end the loop.
        """
        stop_event = stop_event or self._stop_event
        period = 1.0 / self._config.tick_rate

        if not self._store.is_open:
            self._store.open()

        while not stop_event.is_set():
            try:
                self.spin_once()
            except InitializationError:
                raise
            except Exception:
                # Already logged for store failures; the loop keeps going
                logger.exception("Loop closing failed for a cluster")

            if self._observers:
                self._publish_status()

            stop_event.wait(period)

    def start(self) -> None:
        """Open the store and run the processing loop in a thread.

        Raises:
            StoreInitializationError: If the store directory can't be created
        """
        if self._thread is not None:
            return

        self._store.open()
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self.run,
            args=(self._stop_event,),
            name="loop-closing",
            daemon=True,
        )
        self._thread.start()
        logger.info("Loop closing started (store: %s)", self._store.directory)

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the processing loop and clear the cluster store.

        The cluster being processed, including its store write, completes
        before the loop exits; queued clusters are dropped. If the thread
        outlives the timeout the store is left in place, and calling stop()
        again waits for it once more.
        """
        if self._thread is not None:
            self._stop_event.set()
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning(
                    "Loop closing thread did not stop within %.1fs, "
                    "cluster store kept",
                    timeout,
                )
                return
            self._thread = None

        pending = self.num_pending_edges
        if pending:
            logger.warning(
                "%d loop closure edges never inserted, vertices missing", pending
            )

        self.finalize()
        logger.info(
            "Loop closing stopped (%d loop closures)", self.num_loop_closures
        )

    def finalize(self) -> None:
        """Remove the per-run cluster files."""
        self._store.clear()

    def _publish_status(self) -> None:
        status = self.status
        for observer in self._observers:
            try:
                observer(status)
            except Exception:
                logger.exception("Status observer failed")

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def process_cluster(self, cluster: Cluster) -> LoopClosureRecord | None:
        """Run the full pipeline for one cluster.

        Args:
            cluster: Cluster to process

        Returns:
            The confirmed loop closure, or None

        Raises:
            InvalidClusterError: If the cluster data is inconsistent
            StoreWriteError: If the cluster cannot be persisted
        """
        self._ingest(cluster)

        self._last_neighborhood = self.search_in_neighborhood(cluster)

        candidates = self.get_candidates(cluster.id)
        if not candidates:
            return None

        return self._confirm_loop(cluster, candidates)

    def _ingest(self, cluster: Cluster) -> None:
        """Persist the cluster and append its signature to the hash table."""
        if not isinstance(cluster, Cluster):
            raise InvalidClusterError(f"Expected a Cluster, got {type(cluster)!r}")

        if not self._store.is_open:
            self._store.open()

        try:
            self._store.write(cluster)
        except StoreWriteError:
            self._failed_clusters.append(cluster.id)
            logger.error("Cluster %d could not be stored; skipping it", cluster.id)
            raise

        if not self._hash.is_initialized:
            if cluster.num_features == 0:
                logger.warning(
                    "Cluster %d has no descriptors; hash not initialized, "
                    "cluster not indexed",
                    cluster.id,
                )
                return
            self._hash.initialize(cluster.descriptors)

        signature = self._hash.compute(cluster.descriptors)
        with self._state_lock:
            self._hash_index[cluster.id] = len(self._hash_table)
            self._hash_table.append((cluster.id, signature))

    def select_neighbors(self, cluster: Cluster) -> list[Cluster]:
        """Collect the temporal neighbors of a cluster.

        Walks back from cluster.id - 1, skipping clusters built from the
        same source frame and clusters that can't be read, until
        config.neighbors neighbors are found or IDs run out.
        """
        neighbors: list[Cluster] = []
        neighbor_id = cluster.id - 1

        while len(neighbors) < self._config.neighbors and neighbor_id >= 0:
            neighbor = self._store.read(neighbor_id)
            if neighbor is not None and neighbor.frame_id != cluster.frame_id:
                neighbors.append(neighbor)
            neighbor_id -= 1

        return neighbors

    def search_in_neighborhood(self, cluster: Cluster) -> NeighborhoodResult:
        """Estimate the cluster pose from its temporal neighbors.

        Neighbors matching more than config.min_match_percentage of their
        descriptors contribute their matched 3D points (in world frame)
        paired with the cluster's keypoints. The pooled correspondences
        feed a PnP + RANSAC estimate. The result is diagnostic only.
        """
        neighbors = self.select_neighbors(cluster)

        points_2d: list[np.ndarray] = []
        points_3d: list[np.ndarray] = []

        for neighbor in neighbors:
            matches = self._verifier.match(cluster.descriptors, neighbor.descriptors)
            percentage = self._verifier.match_percentage(
                len(matches), cluster.num_features, neighbor.num_features
            )
            if percentage <= self._config.min_match_percentage:
                continue

            neighbor_world = neighbor.points_world()
            for m in matches:
                points_2d.append(cluster.keypoints[m.queryIdx])
                points_3d.append(neighbor_world[m.trainIdx])

        result = NeighborhoodResult(
            cluster_id=cluster.id,
            neighbor_ids=[n.id for n in neighbors],
            num_correspondences=len(points_2d),
        )

        if points_2d:
            estimate = self._verifier.estimate_pose(
                np.array(points_3d), np.array(points_2d)
            )
            result.num_inliers = estimate.num_inliers
            if estimate.success:
                # PnP gives T_camera_world
                result.pose = estimate.pose.inverse()

        logger.debug(
            "Cluster %d neighborhood: %d neighbors, %d correspondences, %d inliers",
            cluster.id,
            len(neighbors),
            result.num_correspondences,
            result.num_inliers,
        )
        return result

    def get_candidates(self, cluster_id: int) -> list[tuple[int, float]]:
        """Rank older clusters by hash similarity to a cluster.

        The most recent config.neighbors + 1 hash table entries (the
        cluster and its temporal neighbors) are never candidates, nor are
        clusters already confirmed as a loop closure with this one.

        Args:
            cluster_id: ID of an indexed cluster

        Returns:
            Up to config.n_candidates (cluster_id, similarity) pairs, best
            first, ties broken by lower ID
        """
        with self._state_lock:
            window = self._config.neighbors + 1
            if len(self._hash_table) <= window:
                return []

            index = self._hash_index.get(cluster_id)
            if index is None:
                return []

            excluded = {
                other
                for pair in self._confirmed_pairs
                if cluster_id in pair
                for other in pair
                if other != cluster_id
            }
            query = self._hash_table[index][1]
            searchable = self._hash_table[: len(self._hash_table) - window]

        scored = [
            (candidate_id, self._hash.similarity(query, signature))
            for candidate_id, signature in searchable
            if candidate_id != cluster_id and candidate_id not in excluded
        ]
        scored.sort(key=lambda item: (-item[1], item[0]))
        return scored[: self._config.n_candidates]

    def _confirm_loop(
        self,
        cluster: Cluster,
        candidates: list[tuple[int, float]],
    ) -> LoopClosureRecord | None:
        """Verify candidates best-first; record the first valid one."""
        for candidate_id, similarity in candidates:
            candidate = self._store.read(candidate_id)
            if candidate is None:
                logger.warning(
                    "Candidate %d for cluster %d is unavailable, skipping",
                    candidate_id,
                    cluster.id,
                )
                continue

            verification = self._verifier.verify(cluster, candidate)
            logger.debug(
                "Cluster %d vs candidate %d: score %.3f, %d matches, %d inliers",
                cluster.id,
                candidate_id,
                similarity,
                verification.num_matches,
                verification.num_inliers,
            )
            if not verification.is_valid:
                continue

            return self._accept(cluster, candidate_id, similarity, verification)

        return None

    def _accept(
        self,
        cluster: Cluster,
        candidate_id: int,
        similarity: float,
        verification: VerificationResult,
    ) -> LoopClosureRecord:
        """Record the pair and insert its loop closure edge.

        When the pose graph has not created both vertices yet, the edge is
        kept pending and inserted by a later flush_pending_edges().

        Raises:
            DuplicateLoopClosureError: If the pair is already confirmed
        """
        pair = frozenset((cluster.id, candidate_id))
        record = LoopClosureRecord(
            query_id=cluster.id,
            match_id=candidate_id,
            num_inliers=verification.num_inliers,
            similarity=similarity,
            relative_pose=verification.relative_pose,
        )
        with self._state_lock:
            if pair in self._confirmed_pairs:
                raise DuplicateLoopClosureError(
                    f"Loop closure {candidate_id} <-> {cluster.id} already confirmed"
                )
            self._confirmed_pairs.add(pair)
            self._loop_closures.append(record)

        logger.info(
            "Loop closure detected: cluster %d -> cluster %d "
            "(score=%.2f, inliers=%d)",
            cluster.id,
            candidate_id,
            similarity,
            verification.num_inliers,
        )

        missing = self._insert_edge(record)
        if missing is not None:
            logger.info(
                "Loop closure edge %d -> %d deferred, %d not in pose graph yet",
                candidate_id,
                cluster.id,
                missing,
            )
            with self._state_lock:
                self._pending_edges.append(record)
        return record

    def _insert_edge(self, record: LoopClosureRecord) -> int | None:
        """Add the edge match -> query; returns the missing vertex, if any."""
        try:
            self._graph.add_edge(
                record.match_id,
                record.query_id,
                record.relative_pose,
                record.num_inliers,
            )
        except UnknownVertexError as e:
            return e.vertex_id
        return None

    def flush_pending_edges(self) -> int:
        """Insert deferred loop closure edges whose vertices now exist.

        Returns:
            Number of edges inserted
        """
        with self._state_lock:
            pending = self._pending_edges
            self._pending_edges = []
        if not pending:
            return 0

        still_pending = []
        for record in pending:
            if self._insert_edge(record) is None:
                logger.info(
                    "Loop closure edge %d -> %d inserted",
                    record.match_id,
                    record.query_id,
                )
            else:
                still_pending.append(record)

        with self._state_lock:
            self._pending_edges[:0] = still_pending
        return len(pending) - len(still_pending)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def status(self) -> EngineStatus:
        """Current gauges."""
        neighborhood = self._last_neighborhood
        return EngineStatus(
            queue_depth=self.queue_depth,
            num_loop_closures=self.num_loop_closures,
            neighborhood_inliers=neighborhood.num_inliers if neighborhood else 0,
            failed_clusters=len(self._failed_clusters),
            pending_edges=self.num_pending_edges,
        )

    @property
    def queue_depth(self) -> int:
        """Clusters waiting to be processed."""
        with self._queue_lock:
            return len(self._cluster_queue)

    @property
    def loop_closures(self) -> list[LoopClosureRecord]:
        """Confirmed loop closures in detection order."""
        with self._state_lock:
            return list(self._loop_closures)

    @property
    def num_loop_closures(self) -> int:
        """Number of confirmed loop closures."""
        with self._state_lock:
            return len(self._loop_closures)

    @property
    def num_pending_edges(self) -> int:
        """Confirmed loop closures whose edge is not in the pose graph yet."""
        with self._state_lock:
            return len(self._pending_edges)

    @property
    def hash_table_size(self) -> int:
        """Number of indexed clusters."""
        with self._state_lock:
            return len(self._hash_table)

    @property
    def failed_clusters(self) -> list[int]:
        """IDs of clusters whose store write failed."""
        return list(self._failed_clusters)

    @property
    def last_neighborhood(self) -> NeighborhoodResult | None:
        """Neighborhood check of the last processed cluster."""
        return self._last_neighborhood

    @property
    def store(self) -> ClusterStore:
        """The cluster store."""
        return self._store

    @property
    def is_running(self) -> bool:
        """Check if the processing thread is running."""
        return self._thread is not None and self._thread.is_alive()
