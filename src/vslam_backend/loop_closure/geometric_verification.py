"""Geometric verification of cluster pairs.

Two clusters are related geometrically by matching their descriptors with
a ratio test, pairing the keypoints of one with the 3D points of the other,
and estimating the camera pose with PnP + RANSAC. The number of RANSAC
inliers measures how much the pair agrees, which filters out perceptual
aliasing (different places that look alike).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import cv2
import numpy as np

from ..cluster import Cluster
from ..pose import SE3

logger = logging.getLogger(__name__)

# solvePnP needs at least this many 2D-3D correspondences
MIN_CORRESPONDENCES = 4


@dataclass
class PoseEstimate:
    """Result of a robust PnP pose estimation.

    Attributes:
        success: Whether a pose was estimated
        pose: T_camera_object, maps object points into the camera frame
        num_inliers: RANSAC inliers (capped at the verifier's max_inliers)
        num_correspondences: 2D-3D pairs given to the solver
    """

    success: bool
    pose: SE3 | None = None
    num_inliers: int = 0
    num_correspondences: int = 0


@dataclass
class VerificationResult:
    """Result of verifying a query cluster against a candidate.

    Attributes:
        is_valid: Whether the pair is geometrically consistent
        relative_pose: T_candidate_query, pose of the query camera in the
            candidate camera frame
        num_inliers: Number of PnP inliers
        num_matches: Number of ratio-test matches
        match_percentage: Matches relative to the smaller descriptor set
    """

    is_valid: bool
    relative_pose: SE3 | None = None
    num_inliers: int = 0
    num_matches: int = 0
    match_percentage: int = 0


class GeometricVerifier:
    """Ratio-test descriptor matching and PnP + RANSAC pose verification."""

    def __init__(
        self,
        camera_matrix: np.ndarray,
        ratio: float = 0.8,
        reprojection_error: float = 1.3,
        iterations: int = 100,
        max_inliers: int = 100,
        min_inliers: int = 30,
    ) -> None:
        """Initialize geometric verifier.

        Args:
            camera_matrix: 3x3 camera intrinsics matrix
            ratio: Lowe's ratio test threshold
            reprojection_error: RANSAC reprojection threshold in pixels
            iterations: RANSAC iteration cap
            max_inliers: Cap on the reported inlier count
            min_inliers: Minimum inliers for a valid pair
        """
        self._camera_matrix = np.asarray(camera_matrix, dtype=np.float64)
        self._ratio = ratio
        self._reprojection_error = reprojection_error
        self._iterations = iterations
        self._max_inliers = max_inliers
        self._min_inliers = min_inliers

        self._hamming_matcher = cv2.BFMatcher(cv2.NORM_HAMMING, crossCheck=False)
        self._l2_matcher = cv2.BFMatcher(cv2.NORM_L2, crossCheck=False)

    def match(self, query: np.ndarray, train: np.ndarray) -> list[cv2.DMatch]:
        """Match descriptors using the ratio test.

        Args:
            query: Query descriptors (N, D)
            train: Train descriptors (M, D)

        Returns:
            Accepted matches (queryIdx indexes query, trainIdx indexes train)
        """
        if len(query) < 2 or len(train) < 2:
            return []

        query = np.asarray(query)
        train = np.asarray(train)

        if query.dtype == np.uint8 and train.dtype == np.uint8:
            matcher = self._hamming_matcher
            query = np.array(query, order="C")
            train = np.array(train, order="C")
        else:
            matcher = self._l2_matcher
            query = np.array(query, dtype=np.float32, order="C")
            train = np.array(train, dtype=np.float32, order="C")

        knn_matches = matcher.knnMatch(query, train, k=2)

        good_matches = []
        for match_pair in knn_matches:
            if len(match_pair) == 2:
                m, n = match_pair
                if m.distance < self._ratio * n.distance:
                    good_matches.append(m)

        return good_matches

    @staticmethod
    def match_percentage(num_matches: int, num_query: int, num_train: int) -> int:
        """Matches as a percentage of the smaller descriptor set."""
        smallest = min(num_query, num_train)
        if smallest == 0:
            return 0
        return int(round(100.0 * num_matches / smallest))

    def estimate_pose(
        self,
        points_3d: np.ndarray,
        points_2d: np.ndarray,
    ) -> PoseEstimate:
        """Estimate a camera pose from 2D-3D correspondences.

        Degenerate input (fewer than 4 correspondences) or a solver failure
        yields an unsuccessful estimate instead of an exception.

        Args:
            points_3d: Object points (N, 3)
            points_2d: Image points (N, 2)

        Returns:
            PoseEstimate with T_camera_object on success
        """
        points_3d = np.array(points_3d, dtype=np.float64).reshape(-1, 3)
        points_2d = np.array(points_2d, dtype=np.float64).reshape(-1, 2)
        n = len(points_3d)

        if n < MIN_CORRESPONDENCES or len(points_2d) != n:
            return PoseEstimate(success=False, num_correspondences=n)

        try:
            success, rvec, tvec, inliers = cv2.solvePnPRansac(
                objectPoints=points_3d,
                imagePoints=points_2d,
                cameraMatrix=self._camera_matrix,
                distCoeffs=None,
                iterationsCount=self._iterations,
                reprojectionError=self._reprojection_error,
                confidence=0.99,
                flags=cv2.SOLVEPNP_ITERATIVE,
            )
        except cv2.error as e:
            logger.debug("solvePnPRansac failed on %d correspondences: %s", n, e)
            return PoseEstimate(success=False, num_correspondences=n)

        if not success or inliers is None:
            return PoseEstimate(success=False, num_correspondences=n)

        return PoseEstimate(
            success=True,
            pose=SE3.from_rvec_tvec(rvec, tvec),
            num_inliers=min(len(inliers), self._max_inliers),
            num_correspondences=n,
        )

    def verify(self, query: Cluster, candidate: Cluster) -> VerificationResult:
        """Verify a query cluster against a candidate cluster.

        Query keypoints are paired with the candidate's 3D points (in the
        candidate camera frame), so the PnP pose is T_query_candidate.

        Args:
            query: The cluster being processed
            candidate: A previously stored cluster

        Returns:
            VerificationResult; valid when inliers reach min_inliers
        """
        matches = self.match(query.descriptors, candidate.descriptors)
        percentage = self.match_percentage(
            len(matches), len(query.descriptors), len(candidate.descriptors)
        )

        if len(matches) < MIN_CORRESPONDENCES:
            return VerificationResult(
                is_valid=False,
                num_matches=len(matches),
                match_percentage=percentage,
            )

        points_2d = np.array([query.keypoints[m.queryIdx] for m in matches])
        points_3d = np.array([candidate.points[m.trainIdx] for m in matches])

        estimate = self.estimate_pose(points_3d, points_2d)
        if not estimate.success or estimate.num_inliers < self._min_inliers:
            return VerificationResult(
                is_valid=False,
                num_inliers=estimate.num_inliers,
                num_matches=len(matches),
                match_percentage=percentage,
            )

        return VerificationResult(
            is_valid=True,
            relative_pose=estimate.pose.inverse(),
            num_inliers=estimate.num_inliers,
            num_matches=len(matches),
            match_percentage=percentage,
        )

    @property
    def camera_matrix(self) -> np.ndarray:
        """3x3 camera intrinsics."""
        return self._camera_matrix.copy()
