"""Rerun-based visualization of the loop closing backend."""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
import rerun as rr
import rerun.blueprint as rrb

if TYPE_CHECKING:
    from ..loop_closure.messages import EngineStatus
    from ..loop_closure.pose_graph import PoseEdge
    from ..pose import SE3


class RerunVisualizer:
    """Live view of the backend state.

    Entity hierarchy:
        status/
            queue_depth         - Loop closing queue depth
            loop_closures       - Confirmed loop closures
            neighborhood_inliers - Inliers of the last neighborhood check
        world/
            trajectory          - Optimized vertex poses (line strip)
            vertices            - Vertex positions
            loop_closures       - Loop closure edges (red segments)

    Both log methods match the observer signatures of the engine and the
    pose graph, so they can be registered directly as callbacks.
    """

    def __init__(self, app_name: str = "vslam-backend", spawn: bool = True) -> None:
        """Initialize Rerun visualization.

        Args:
            app_name: Name for the Rerun application window
            spawn: If True, automatically spawn the Rerun viewer
        """
        rr.init(app_name, spawn=spawn)
        rr.log("world", rr.ViewCoordinates.RDF, static=True)
        rr.send_blueprint(
            rrb.Blueprint(
                rrb.Horizontal(
                    contents=[
                        rrb.Spatial3DView(name="Pose Graph", origin="world"),
                        rrb.TimeSeriesView(name="Status", origin="status"),
                    ]
                )
            )
        )
        self._tick = 0
        self._num_solves = 0

    def log_status(self, status: EngineStatus) -> None:
        """Log the loop closing gauges as time series."""
        rr.set_time("tick", sequence=self._tick)
        self._tick += 1

        rr.log("status/queue_depth", rr.Scalars(float(status.queue_depth)))
        rr.log("status/loop_closures", rr.Scalars(float(status.num_loop_closures)))
        rr.log(
            "status/neighborhood_inliers",
            rr.Scalars(float(status.neighborhood_inliers)),
        )

    def log_pose_graph(
        self,
        poses: dict[int, SE3],
        edges: list[PoseEdge],
    ) -> None:
        """Log optimized poses and loop closure edges."""
        if not poses:
            return

        rr.set_time("optimization", sequence=self._num_solves)
        self._num_solves += 1

        ids = sorted(poses)
        positions = np.array([poses[i].translation for i in ids])

        rr.log(
            "world/trajectory",
            rr.LineStrips3D([positions], colors=[[0, 255, 0]], radii=0.01),
        )
        rr.log(
            "world/vertices",
            rr.Points3D(positions, colors=[[0, 150, 255]], radii=0.02),
        )

        segments = [
            [poses[edge.from_id].translation, poses[edge.to_id].translation]
            for edge in edges
            if edge.is_loop and edge.from_id in poses and edge.to_id in poses
        ]
        if segments:
            rr.log(
                "world/loop_closures",
                rr.LineStrips3D(segments, colors=[[255, 0, 0]], radii=0.015),
            )
