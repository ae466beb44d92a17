"""Cluster: immutable keyframe snapshot produced by the visual front-end.

A cluster groups the features of one keyframe together with the 3D points
triangulated for them. Row i of ``keypoints``, ``descriptors`` and
``points`` always refers to the same feature.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from .errors import InvalidClusterError
from .pose import SE3


def _frozen_array(values: np.ndarray, dtype=None) -> np.ndarray:
    array = np.array(values, dtype=dtype, copy=True)
    array.setflags(write=False)
    return array


@dataclass(frozen=True, eq=False)
class Cluster:
    """Keyframe snapshot: pose, 2D keypoints, descriptors and 3D points.

    Attributes:
        id: Sequential cluster ID assigned by the front-end
        frame_id: ID of the source camera frame (shared by clusters built
            from the same image)
        pose: Camera pose T_world_camera
        keypoints: 2D keypoint locations, shape (N, 2)
        descriptors: Feature descriptors, shape (N, D). uint8 for binary
            descriptors (ORB), float32 for real-valued ones (SIFT)
        points: 3D points in the camera frame, shape (N, 3)

    Raises:
        InvalidClusterError: If the three feature arrays disagree in length
            or have the wrong shape
    """

    id: int
    frame_id: int
    pose: SE3
    keypoints: np.ndarray  # (N, 2)
    descriptors: np.ndarray  # (N, D)
    points: np.ndarray  # (N, 3)

    def __post_init__(self) -> None:
        keypoints = np.asarray(self.keypoints, dtype=np.float32)
        points = np.asarray(self.points, dtype=np.float64)
        descriptors = np.asarray(self.descriptors)

        # Empty inputs come in all sorts of shapes, normalize them
        if keypoints.size == 0:
            keypoints = keypoints.reshape(0, 2)
        if points.size == 0:
            points = points.reshape(0, 3)
        if descriptors.ndim == 1 and descriptors.size == 0:
            descriptors = descriptors.reshape(0, 0)

        if keypoints.ndim != 2 or keypoints.shape[1] != 2:
            raise InvalidClusterError(
                f"Cluster {self.id}: keypoints must be Nx2, got {keypoints.shape}"
            )
        if points.ndim != 2 or points.shape[1] != 3:
            raise InvalidClusterError(
                f"Cluster {self.id}: points must be Nx3, got {points.shape}"
            )
        if descriptors.ndim != 2:
            raise InvalidClusterError(
                f"Cluster {self.id}: descriptors must be a 2D matrix, "
                f"got {descriptors.shape}"
            )
        if not (len(keypoints) == len(descriptors) == len(points)):
            raise InvalidClusterError(
                f"Cluster {self.id}: {len(keypoints)} keypoints, "
                f"{len(descriptors)} descriptors and {len(points)} points"
            )

        object.__setattr__(self, "id", int(self.id))
        object.__setattr__(self, "frame_id", int(self.frame_id))
        object.__setattr__(self, "keypoints", _frozen_array(keypoints))
        object.__setattr__(self, "descriptors", _frozen_array(descriptors))
        object.__setattr__(self, "points", _frozen_array(points))

    def points_world(self) -> np.ndarray:
        """Return the 3D points transformed into world coordinates."""
        if len(self.points) == 0:
            return np.empty((0, 3), dtype=np.float64)
        return self.pose.transform_points(self.points)

    @property
    def num_features(self) -> int:
        """Number of features (keypoints = descriptors = points)."""
        return len(self.keypoints)

    def __len__(self) -> int:
        return len(self.keypoints)
