"""Loop closure detection and pose graph maintenance.

Detects when the camera revisits a previously seen location and keeps a
pose graph that can be optimized to correct accumulated drift.

Key components:
- HashDescriptor: Compact global signature for place recognition
- ClusterStore: Durable per-run storage of processed clusters
- GeometricVerifier: Ratio-test matching and PnP + RANSAC verification
- LoopClosingEngine: Queue-driven loop closure pipeline
- PoseGraph: Vertex/edge bookkeeping and global optimization
"""

from .cluster_store import ClusterStore
from .geometric_verification import GeometricVerifier, PoseEstimate, VerificationResult
from .hashing import HashDescriptor
from .loop_closing import GraphHandle, LoopClosingEngine
from .messages import EngineStatus, LoopClosureRecord, NeighborhoodResult
from .pose_graph import ClusterGraphHandle, EdgeKind, PoseEdge, PoseGraph, edge_weight

__all__ = [
    # Hashing
    "HashDescriptor",
    # Storage
    "ClusterStore",
    # Geometric Verification
    "GeometricVerifier",
    "PoseEstimate",
    "VerificationResult",
    # Loop Closing
    "LoopClosingEngine",
    "GraphHandle",
    # Pose Graph
    "PoseGraph",
    "ClusterGraphHandle",
    "PoseEdge",
    "EdgeKind",
    "edge_weight",
    # Messages
    "LoopClosureRecord",
    "NeighborhoodResult",
    "EngineStatus",
]
