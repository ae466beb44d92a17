"""vslam-backend - loop closure detection and pose graph optimization."""

__version__ = "0.1.0"

# Re-export main classes for convenient imports
from .cluster import Cluster
from .config import (
    BackendConfig,
    CameraIntrinsics,
    HashConfig,
    LoopClosingConfig,
    PoseGraphConfig,
    load_config,
)
from .errors import (
    ConfigurationError,
    DuplicateClusterError,
    DuplicateLoopClosureError,
    HashNotInitializedError,
    InitializationError,
    InvalidClusterError,
    InvariantViolation,
    StoreInitializationError,
    StoreWriteError,
    UnknownVertexError,
    VSLAMBackendError,
)
from .loop_closure import (
    ClusterStore,
    EdgeKind,
    EngineStatus,
    GeometricVerifier,
    HashDescriptor,
    LoopClosingEngine,
    LoopClosureRecord,
    PoseGraph,
)
from .pose import SE3
from .slam_backend import BackendStats, SLAMBackend

__all__ = [
    "__version__",
    # Data
    "Cluster",
    "SE3",
    # Configuration
    "BackendConfig",
    "CameraIntrinsics",
    "HashConfig",
    "LoopClosingConfig",
    "PoseGraphConfig",
    "load_config",
    # Backend
    "SLAMBackend",
    "BackendStats",
    # Loop Closure
    "LoopClosingEngine",
    "LoopClosureRecord",
    "EngineStatus",
    "HashDescriptor",
    "ClusterStore",
    "GeometricVerifier",
    # Pose Graph
    "PoseGraph",
    "EdgeKind",
    # Errors
    "VSLAMBackendError",
    "InitializationError",
    "ConfigurationError",
    "StoreInitializationError",
    "StoreWriteError",
    "InvalidClusterError",
    "HashNotInitializedError",
    "InvariantViolation",
    "UnknownVertexError",
    "DuplicateLoopClosureError",
    "DuplicateClusterError",
]
