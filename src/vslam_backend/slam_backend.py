"""SLAM backend orchestrating loop closing and the pose graph.

SLAMBackend combines:
- Pose Graph: one vertex per cluster, sequential and loop closure edges
- Loop Closing Engine: place recognition and geometric verification

Every cluster from the front-end is fanned out to both components. Each
drains its own queue in its own thread, so a slow loop closure search
never holds back vertex creation. Confirmed loop closures flow from the
engine into the graph through its narrow graph handle.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from .cluster import Cluster
from .config import BackendConfig, load_config
from .loop_closure import (
    ClusterStore,
    LoopClosingEngine,
    LoopClosureRecord,
    PoseGraph,
)
from .pose import SE3

if TYPE_CHECKING:
    from .visualization import RerunVisualizer

logger = logging.getLogger(__name__)


@dataclass
class BackendStats:
    """Statistics from the SLAM backend."""

    num_clusters: int = 0
    num_vertices: int = 0
    num_edges: int = 0
    num_loop_closures: int = 0
    loop_closing_queue: int = 0
    pose_graph_queue: int = 0


class SLAMBackend:
    """Loop closing and pose graph optimization for a cluster stream."""

    def __init__(
        self,
        config: BackendConfig,
        visualizer: RerunVisualizer | None = None,
    ) -> None:
        """Initialize the backend.

        Args:
            config: Backend configuration (camera matrix required)
            visualizer: Optional live visualization
        """
        self._config = config
        self._pose_graph = PoseGraph(
            camera_matrix=config.camera_matrix,
            config=config.pose_graph,
        )
        self._loop_closing = LoopClosingEngine(
            graph=self._pose_graph.cluster_handle,
            store=ClusterStore(config.loop_closing.store_directory),
            config=config.loop_closing,
            hash_config=config.hash,
        )
        self._num_clusters = 0

        if visualizer is not None:
            self._loop_closing.add_observer(visualizer.log_status)
            self._pose_graph.add_listener(visualizer.log_pose_graph)

    @classmethod
    def from_config_path(
        cls,
        config_path: str | Path,
        visualizer: RerunVisualizer | None = None,
    ) -> SLAMBackend:
        """Create SLAMBackend from a YAML configuration file.

        Raises:
            FileNotFoundError: If the file doesn't exist
            ConfigurationError: If the configuration is invalid
        """
        return cls(config=load_config(config_path), visualizer=visualizer)

    def start(self) -> None:
        """Start the pose graph and loop closing threads."""
        self._pose_graph.start()
        self._loop_closing.start()

    def stop(self) -> None:
        """Stop both threads; the cluster store is cleared."""
        # Stop loop closing first (it inserts edges into the graph)
        self._loop_closing.stop()
        self._pose_graph.stop()

    def add_cluster(self, cluster: Cluster) -> None:
        """Send a cluster from the front-end to both components."""
        self._pose_graph.enqueue(cluster)
        self._loop_closing.enqueue(cluster)
        self._num_clusters += 1

    def process_pending(self) -> None:
        """Drain both queues synchronously (without the threads).

        Vertices are inserted first so loop closure edges always find
        their endpoints.
        """
        self._pose_graph.process_pending()
        self._loop_closing.process_pending()

    def optimize(self) -> dict[int, SE3]:
        """Run pose graph optimization now."""
        return self._pose_graph.optimize()

    @property
    def poses(self) -> dict[int, SE3]:
        """Current vertex poses."""
        return self._pose_graph.poses

    @property
    def loop_closures(self) -> list[LoopClosureRecord]:
        """Confirmed loop closures."""
        return self._loop_closing.loop_closures

    @property
    def pose_graph(self) -> PoseGraph:
        """The pose graph."""
        return self._pose_graph

    @property
    def loop_closing(self) -> LoopClosingEngine:
        """The loop closing engine."""
        return self._loop_closing

    @property
    def stats(self) -> BackendStats:
        """Get backend statistics."""
        return BackendStats(
            num_clusters=self._num_clusters,
            num_vertices=self._pose_graph.num_vertices,
            num_edges=self._pose_graph.num_edges,
            num_loop_closures=self._loop_closing.num_loop_closures,
            loop_closing_queue=self._loop_closing.queue_depth,
            pose_graph_queue=self._pose_graph.queue_depth,
        )

    def __enter__(self) -> SLAMBackend:
        """Context manager entry - starts the backend."""
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Context manager exit - stops the backend."""
        self.stop()
