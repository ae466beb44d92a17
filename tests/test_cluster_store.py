"""Tests for the per-run cluster store."""

from pathlib import Path

import numpy as np
import pytest

from vslam_backend.errors import (
    DuplicateClusterError,
    StoreInitializationError,
    StoreWriteError,
)
from vslam_backend.loop_closure import ClusterStore
from vslam_backend.pose import SE3


@pytest.fixture
def store(store_dir: Path) -> ClusterStore:
    store = ClusterStore(store_dir)
    store.open()
    return store


class TestClusterStore:
    """Test suite for ClusterStore."""

    def test_open_creates_directory(self, store_dir: Path):
        """open() creates the working directory."""
        store = ClusterStore(store_dir)
        assert not store_dir.exists()

        store.open()

        assert store_dir.is_dir()
        assert store.is_open
        assert len(store) == 0

    def test_open_removes_stale_files(self, store_dir: Path):
        """Files from a previous run are discarded."""
        store_dir.mkdir(parents=True)
        (store_dir / "0.npz").write_bytes(b"stale")

        store = ClusterStore(store_dir)
        store.open()

        assert not store.contains(0)

    def test_open_failure(self, tmp_path: Path):
        """A directory that can't be created is an initialization error."""
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")

        with pytest.raises(StoreInitializationError, match="Cannot create"):
            ClusterStore(blocker / "store").open()

    def test_write_read_round_trip(self, store: ClusterStore, scene):
        """A stored cluster is reconstructed with all its data."""
        pose = SE3.from_rvec_tvec([0.1, 0.2, 0.3], [1.0, -2.0, 0.5])
        cluster = scene.cluster(4, frame_id=9, pose=pose)

        store.write(cluster)
        restored = store.read(4)

        assert restored is not None
        assert restored.id == 4
        assert restored.frame_id == 9
        assert np.allclose(restored.pose.to_matrix(), pose.to_matrix())
        assert np.allclose(restored.keypoints, cluster.keypoints)
        assert np.array_equal(restored.descriptors, cluster.descriptors)
        assert restored.descriptors.dtype == np.uint8
        assert np.allclose(restored.points, cluster.points)
        assert store.contains(4)
        assert len(store) == 1

    def test_read_is_idempotent(self, store: ClusterStore, scene):
        """Reading twice returns equal clusters."""
        store.write(scene.cluster(0))

        first = store.read(0)
        second = store.read(0)

        assert np.array_equal(first.descriptors, second.descriptors)

    def test_read_unknown(self, store: ClusterStore):
        """Unknown IDs read as None."""
        assert store.read(123) is None

    def test_read_corrupt(self, store: ClusterStore, store_dir: Path):
        """Corrupt files read as None instead of raising."""
        (store_dir / "7.npz").write_bytes(b"definitely not a zip archive")

        assert store.read(7) is None

    def test_write_once(self, store: ClusterStore, scene):
        """A cluster ID can only be written once."""
        store.write(scene.cluster(1))

        with pytest.raises(DuplicateClusterError):
            store.write(scene.cluster(1))

    def test_write_without_directory(self, store_dir: Path, scene):
        """Writing into a missing directory is a store write error."""
        store = ClusterStore(store_dir)

        with pytest.raises(StoreWriteError, match="Cannot write cluster 0"):
            store.write(scene.cluster(0))
        assert not store.contains(0)

    def test_clear(self, store: ClusterStore, store_dir: Path, scene):
        """clear() removes every persisted cluster."""
        store.write(scene.cluster(0))
        store.write(scene.cluster(1))

        store.clear()

        assert not store_dir.exists()
        assert not store.is_open
        assert store.read(0) is None
        assert len(store) == 0
