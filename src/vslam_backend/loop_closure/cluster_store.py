"""Durable per-run store of processed clusters.

The loop closing engine persists every cluster it processes so that the
full feature data of old clusters can be re-read during verification
without keeping it all in memory. Each cluster is written once, as
``<id>.npz``, inside a working directory that is wiped when the store is
opened and when it is cleared at shutdown.
"""

from __future__ import annotations

import logging
import os
import shutil
import threading
import zipfile
from pathlib import Path

import numpy as np

from ..cluster import Cluster
from ..errors import (
    DuplicateClusterError,
    StoreInitializationError,
    StoreWriteError,
)
from ..pose import SE3

logger = logging.getLogger(__name__)


class ClusterStore:
    """Write-once, file-backed cluster storage keyed by cluster ID."""

    def __init__(self, directory: str | Path) -> None:
        """Initialize the store (no filesystem access until open()).

        Args:
            directory: Working directory for the cluster files
        """
        self._directory = Path(directory)
        self._lock = threading.Lock()
        self._written: set[int] = set()
        self._is_open = False

    def open(self) -> None:
        """Create a fresh, empty working directory.

        Raises:
            StoreInitializationError: If the directory cannot be created
        """
        try:
            if self._directory.is_dir():
                shutil.rmtree(self._directory)
            self._directory.mkdir(parents=True)
        except OSError as e:
            raise StoreInitializationError(
                f"Cannot create cluster store directory {self._directory}: {e}"
            ) from e

        with self._lock:
            self._written.clear()
            self._is_open = True
        logger.debug("Cluster store opened at %s", self._directory)

    def write(self, cluster: Cluster) -> None:
        """Persist a cluster.

        The file is written to a temporary name and renamed into place, so
        readers never observe a partially written cluster.

        Raises:
            DuplicateClusterError: If this cluster ID was already written
            StoreWriteError: If the cluster cannot be written
        """
        path = self._path(cluster.id)
        tmp_path = path.with_suffix(".tmp")

        with self._lock:
            if cluster.id in self._written or path.exists():
                raise DuplicateClusterError(
                    f"Cluster {cluster.id} is already stored"
                )

            try:
                with open(tmp_path, "wb") as f:
                    np.savez(
                        f,
                        id=np.int64(cluster.id),
                        frame_id=np.int64(cluster.frame_id),
                        pose=cluster.pose.to_matrix(),
                        keypoints=cluster.keypoints,
                        descriptors=cluster.descriptors,
                        points=cluster.points,
                    )
                os.replace(tmp_path, path)
            except OSError as e:
                tmp_path.unlink(missing_ok=True)
                raise StoreWriteError(
                    f"Cannot write cluster {cluster.id} to {path}: {e}"
                ) from e

            self._written.add(cluster.id)

    def read(self, cluster_id: int) -> Cluster | None:
        """Reconstruct a stored cluster.

        Args:
            cluster_id: ID of the cluster

        Returns:
            The cluster, or None if it is unknown or its file is unreadable
        """
        path = self._path(cluster_id)
        if not path.exists():
            return None

        try:
            with np.load(path, allow_pickle=False) as data:
                return Cluster(
                    id=int(data["id"]),
                    frame_id=int(data["frame_id"]),
                    pose=SE3.from_matrix(data["pose"]),
                    keypoints=data["keypoints"],
                    descriptors=data["descriptors"],
                    points=data["points"],
                )
        except (OSError, ValueError, KeyError, EOFError, zipfile.BadZipFile) as e:
            # InvalidClusterError is a ValueError too
            logger.warning("Unreadable cluster file %s: %s", path, e)
            return None

    def contains(self, cluster_id: int) -> bool:
        """True if the cluster file exists."""
        return self._path(cluster_id).exists()

    def clear(self) -> None:
        """Remove the working directory and everything in it."""
        with self._lock:
            if self._directory.is_dir():
                shutil.rmtree(self._directory, ignore_errors=True)
            self._written.clear()
            self._is_open = False
        logger.debug("Cluster store cleared at %s", self._directory)

    def _path(self, cluster_id: int) -> Path:
        return self._directory / f"{int(cluster_id)}.npz"

    @property
    def directory(self) -> Path:
        """Working directory of the store."""
        return self._directory

    @property
    def is_open(self) -> bool:
        """True between open() and clear()."""
        return self._is_open

    def __len__(self) -> int:
        return len(self._written)
