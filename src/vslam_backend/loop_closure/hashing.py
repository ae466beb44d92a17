"""Global hash descriptor for fast place recognition.

Each cluster is summarized by a fixed-length signature obtained by
projecting its descriptor matrix onto a small set of random orthonormal
vectors:

    signature[k, j] = sum_i basis[k, i] * descriptors[i, j]

for every projection vector k and descriptor dimension j. The basis is
drawn once, lazily, from the dimensions of the very first descriptor set
seen, so every signature of a run lives in the same space. Binary
descriptors (ORB, uint8) are unpacked to bits before projection.

Unlike a Bag of Words vocabulary, no offline training is needed.
"""

from __future__ import annotations

import numpy as np

from ..config import HashConfig
from ..errors import HashNotInitializedError


def _as_float_descriptors(descriptors: np.ndarray) -> np.ndarray:
    """Convert a descriptor matrix to float rows (bits for binary ones)."""
    descriptors = np.asarray(descriptors)
    if descriptors.dtype == np.uint8:
        return np.unpackbits(descriptors, axis=1).astype(np.float32)
    return descriptors.astype(np.float32)


class HashDescriptor:
    """Random-projection hash of a descriptor set.

    Signatures have length n_projections * descriptor_width regardless of
    how many descriptors the set contains.
    """

    def __init__(self, config: HashConfig | None = None) -> None:
        self._config = config or HashConfig()
        self._basis: np.ndarray | None = None  # (n_projections, n_rows)
        self._width: int | None = None

    def initialize(self, descriptors: np.ndarray) -> None:
        """Fix the projection basis from a descriptor set.

        Only the first call has an effect.

        Args:
            descriptors: Descriptor matrix, shape (N, D)

        Raises:
            ValueError: If the descriptor set is empty
        """
        if self.is_initialized:
            return

        data = _as_float_descriptors(descriptors)
        if data.ndim != 2 or len(data) == 0 or data.shape[1] == 0:
            raise ValueError("Cannot initialize hash from an empty descriptor set")

        n_rows = min(len(data), self._config.max_features)
        n_projections = min(self._config.n_projections, n_rows)

        # Orthonormal random vectors: Q factor of a Gaussian matrix
        rng = np.random.default_rng(self._config.seed)
        gaussian = rng.standard_normal((n_rows, n_projections))
        q, _ = np.linalg.qr(gaussian)

        self._basis = q.T.astype(np.float32)
        self._width = data.shape[1]

    def compute(self, descriptors: np.ndarray) -> np.ndarray:
        """Compute the hash signature of a descriptor set.

        Args:
            descriptors: Descriptor matrix, shape (N, D)

        Returns:
            Signature vector, shape (n_projections * D,)

        Raises:
            HashNotInitializedError: If called before initialize()
            ValueError: If the descriptor width differs from the basis
        """
        if self._basis is None:
            raise HashNotInitializedError("Hash descriptor is not initialized")

        data = _as_float_descriptors(descriptors)
        if len(data) == 0:
            return np.zeros(self.signature_size, dtype=np.float32)
        if data.shape[1] != self._width:
            raise ValueError(
                f"Descriptor width {data.shape[1]} does not match "
                f"hash width {self._width}"
            )

        n = min(len(data), self._basis.shape[1])
        projection = self._basis[:, :n] @ data[:n]  # (n_projections, D)
        return projection.flatten()

    def similarity(self, signature_a: np.ndarray, signature_b: np.ndarray) -> float:
        """Similarity between two signatures, in (0, 1].

        1 / (1 + mean absolute difference); identical signatures score 1.

        Raises:
            HashNotInitializedError: If called before initialize()
            ValueError: If the signatures differ in length
        """
        if self._basis is None:
            raise HashNotInitializedError("Hash descriptor is not initialized")

        a = np.asarray(signature_a, dtype=np.float64)
        b = np.asarray(signature_b, dtype=np.float64)
        if a.shape != b.shape:
            raise ValueError(
                f"Signature shapes differ: {a.shape} vs {b.shape}"
            )
        if a.size == 0:
            return 1.0

        return float(1.0 / (1.0 + np.mean(np.abs(a - b))))

    @property
    def is_initialized(self) -> bool:
        """True once the basis has been fixed."""
        return self._basis is not None

    @property
    def signature_size(self) -> int:
        """Length of every signature (0 before initialization)."""
        if self._basis is None:
            return 0
        return self._basis.shape[0] * self._width
