"""Exception types raised by the SLAM backend.

Errors fall into three groups:
- Initialization errors (bad configuration, unusable working directory)
  are fatal and stop the backend.
- Per-cluster errors (invalid input, failed store write) abort the
  processing of a single cluster; the processing loops keep running.
- Invariant violations signal a caller or logic fault (unknown vertex,
  pair confirmed twice) and are kept distinct from runtime data problems.
"""


class VSLAMBackendError(Exception):
    """Base class for all backend errors."""


class InitializationError(VSLAMBackendError):
    """The backend cannot start."""


class ConfigurationError(InitializationError):
    """Configuration is missing or malformed (e.g. no camera matrix)."""


class StoreInitializationError(InitializationError):
    """The cluster store working directory cannot be created."""


class StoreWriteError(VSLAMBackendError):
    """A cluster could not be persisted to the cluster store."""


class InvalidClusterError(VSLAMBackendError, ValueError):
    """Cluster data violates the keypoint/descriptor/point invariant."""


class HashNotInitializedError(VSLAMBackendError, RuntimeError):
    """The hash descriptor was used before being initialized."""


class InvariantViolation(VSLAMBackendError):
    """A structural invariant would be broken by the requested operation."""


class UnknownVertexError(InvariantViolation):
    """An edge references a vertex that does not exist in the pose graph."""

    def __init__(self, vertex_id: int) -> None:
        super().__init__(f"Unknown vertex: {vertex_id}")
        self.vertex_id = vertex_id


class DuplicateLoopClosureError(InvariantViolation):
    """A loop closure between the same pair of clusters was confirmed twice."""


class DuplicateClusterError(InvariantViolation):
    """A cluster id was written to the cluster store more than once."""
