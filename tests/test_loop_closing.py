"""Tests for the loop closing engine."""

import logging
import threading

import numpy as np
import pytest

from vslam_backend.config import LoopClosingConfig
from vslam_backend.errors import (
    ConfigurationError,
    DuplicateLoopClosureError,
    InvalidClusterError,
    StoreWriteError,
)
from vslam_backend.loop_closure import (
    ClusterStore,
    LoopClosingEngine,
    PoseGraph,
    VerificationResult,
    edge_weight,
)
from vslam_backend.pose import SE3


def feed(engine, pose_graph, clusters):
    """Insert each cluster as a vertex, then run it through the engine."""
    records = []
    for cluster in clusters:
        pose_graph.enqueue(cluster)
        pose_graph.process_pending()
        records.append(engine.process_cluster(cluster))
    return records


@pytest.fixture
def loop_sequence(scene):
    """Place 0, four unrelated places, then a revisit of place 0."""
    place = scene.cluster(0)
    others = [scene.cluster(i) for i in range(1, 5)]
    return [place, *others, scene.revisit(place, 5)]


class _FakeGraph:
    def __init__(self, camera_matrix):
        self.camera_matrix = camera_matrix
        self.edges = []

    def get_camera_matrix(self):
        return self.camera_matrix

    def add_edge(self, i, j, transform, inlier_count):
        self.edges.append((i, j, transform, inlier_count))


class TestLoopDetection:
    """End-to-end detection."""

    def test_revisit_closes_loop(self, engine, pose_graph, loop_sequence, scene):
        """Revisiting place 0 adds one loop closure edge 0 -> 5."""
        records = feed(engine, pose_graph, loop_sequence)

        assert records[:5] == [None] * 5
        record = records[5]
        assert record is not None
        assert (record.match_id, record.query_id) == (0, 5)
        assert record.num_inliers >= 20
        assert np.allclose(
            record.relative_pose.to_matrix(),
            scene.default_relative().to_matrix(),
            atol=1e-4,
        )

        assert engine.loop_closures == [record]
        loop_edges = pose_graph.loop_edges
        assert len(loop_edges) == 1
        edge = loop_edges[0]
        assert (edge.from_id, edge.to_id) == (0, 5)
        assert edge.weight == edge_weight(record.num_inliers)
        assert pose_graph.needs_optimization

    def test_works_against_any_graph_handle(self, camera_matrix, lc_config, loop_sequence):
        """The engine only needs get_camera_matrix and add_edge."""
        graph = _FakeGraph(camera_matrix)
        engine = LoopClosingEngine(graph, ClusterStore(lc_config.store_directory), lc_config)

        for cluster in loop_sequence:
            engine.process_cluster(cluster)
        engine.finalize()

        assert [(i, j) for i, j, _, _ in graph.edges] == [(0, 5)]

    def test_requires_camera_matrix(self, lc_config):
        """A graph without intrinsics can't host the engine."""
        with pytest.raises(ConfigurationError):
            LoopClosingEngine(_FakeGraph(None), config=lc_config)

    def test_unavailable_candidate_skipped(self, engine, pose_graph, scene, store_dir):
        """A candidate whose file is gone is skipped, the next one verifies."""
        place = scene.cluster(0)
        copy = scene.cluster(1, points=place.points, descriptors=place.descriptors)
        sequence = [place, copy, scene.cluster(2), scene.cluster(3)]
        feed(engine, pose_graph, sequence)

        (store_dir / "0.npz").unlink()
        (record,) = feed(engine, pose_graph, [scene.revisit(place, 4)])

        assert record is not None
        assert record.match_id == 1

    def test_loop_edge_waits_for_vertices(self, engine, pose_graph, loop_sequence):
        """A loop confirmed before its vertices exist is inserted later."""
        for cluster in loop_sequence:
            pose_graph.enqueue(cluster)
            engine.enqueue(cluster)

        engine.process_pending()

        (record,) = engine.loop_closures
        assert (record.match_id, record.query_id) == (0, 5)
        assert engine.num_pending_edges == 1
        assert engine.status.pending_edges == 1
        assert pose_graph.num_loop_edges == 0

        pose_graph.process_pending()
        engine.process_pending()

        assert engine.num_pending_edges == 0
        (edge,) = pose_graph.loop_edges
        assert (edge.from_id, edge.to_id) == (0, 5)
        assert edge.inlier_count == record.num_inliers
        assert engine.num_loop_closures == 1

    def test_pending_edge_kept_until_both_vertices(
        self, engine, pose_graph, loop_sequence
    ):
        """Flushing with only one endpoint present keeps the edge pending."""
        for cluster in loop_sequence:
            engine.process_cluster(cluster)
        pose_graph.enqueue(loop_sequence[0])
        pose_graph.process_pending()

        assert engine.flush_pending_edges() == 0
        assert engine.num_pending_edges == 1

        for cluster in loop_sequence[1:]:
            pose_graph.enqueue(cluster)
        pose_graph.process_pending()

        assert engine.flush_pending_edges() == 1
        assert pose_graph.num_loop_edges == 1

    def test_confirmed_pair_excluded(self, engine, pose_graph, loop_sequence):
        """A confirmed partner is never a candidate again."""
        feed(engine, pose_graph, loop_sequence)

        candidate_ids = [cid for cid, _ in engine.get_candidates(5)]
        assert 0 not in candidate_ids

        verification = VerificationResult(
            is_valid=True, relative_pose=SE3.identity(), num_inliers=40
        )
        with pytest.raises(DuplicateLoopClosureError):
            engine._accept(loop_sequence[5], 0, 1.0, verification)
        assert pose_graph.num_loop_edges == 1


class TestCandidates:
    """Hash candidate search."""

    @pytest.fixture
    def wide_engine(self, pose_graph, store_dir):
        config = LoopClosingConfig(neighbors=5, min_inliers=20, store_directory=store_dir)
        engine = LoopClosingEngine(
            pose_graph.cluster_handle, ClusterStore(store_dir), config
        )
        yield engine
        engine.stop()

    def test_recent_clusters_excluded(self, wide_engine, scene):
        """With 5 neighbors, cluster 10 searches clusters 0 to 4 only."""
        for i in range(11):
            wide_engine.process_cluster(scene.cluster(i))

        candidates = wide_engine.get_candidates(10)

        assert sorted(cid for cid, _ in candidates) == [0, 1, 2, 3, 4]
        scores = [score for _, score in candidates]
        assert scores == sorted(scores, reverse=True)

    def test_small_table_has_no_candidates(self, wide_engine, scene):
        """Nothing is searched until the table outgrows the window."""
        for i in range(6):
            wide_engine.process_cluster(scene.cluster(i))

        assert wide_engine.get_candidates(5) == []

    def test_never_own_candidate(self, wide_engine, scene):
        """An old cluster is not its own candidate."""
        for i in range(11):
            wide_engine.process_cluster(scene.cluster(i))

        candidate_ids = [cid for cid, _ in wide_engine.get_candidates(1)]

        assert 1 not in candidate_ids
        assert len(candidate_ids) == 4

    def test_unindexed_cluster(self, engine):
        """Unknown IDs have no candidates."""
        assert engine.get_candidates(42) == []

    def test_ties_prefer_lower_id(self, engine, scene):
        """Equal scores rank the older cluster first."""
        place = scene.cluster(0)
        engine.process_cluster(place)
        engine.process_cluster(
            scene.cluster(1, points=place.points, descriptors=place.descriptors)
        )
        for i in range(2, 6):
            engine.process_cluster(scene.cluster(i))

        candidates = engine.get_candidates(5)

        ids = [cid for cid, _ in candidates]
        scores = dict(candidates)
        assert scores[0] == scores[1]
        assert ids.index(0) < ids.index(1)


class TestNeighborhood:
    """Temporal neighborhood check."""

    def test_same_frame_neighbors_skipped(self, engine, scene):
        """Clusters of the same source frame are not neighbors."""
        clusters = [
            scene.cluster(0, frame_id=0),
            scene.cluster(1, frame_id=1),
            scene.cluster(2, frame_id=2),
            scene.cluster(3, frame_id=2),
        ]
        for cluster in clusters:
            engine.process_cluster(cluster)

        neighbors = engine.select_neighbors(clusters[3])

        assert [n.id for n in neighbors] == [1, 0]
        assert engine.last_neighborhood.neighbor_ids == [1, 0]

    def test_first_cluster_has_no_neighbors(self, engine, scene):
        """Cluster 0 has nobody to look back to."""
        engine.process_cluster(scene.cluster(0))

        result = engine.last_neighborhood
        assert result.neighbor_ids == []
        assert result.num_correspondences == 0
        assert result.pose is None

    def test_neighborhood_pose(self, engine, scene):
        """A neighbor seeing the same points locates the cluster."""
        place = scene.cluster(0)
        revisit = scene.revisit(place, 1)
        engine.process_cluster(place)
        engine.process_cluster(revisit)

        result = engine.last_neighborhood
        assert result.num_correspondences == place.num_features
        assert result.num_inliers == place.num_features
        assert np.allclose(
            result.pose.to_matrix(), revisit.pose.to_matrix(), atol=1e-4
        )
        assert engine.status.neighborhood_inliers == place.num_features

    def test_unrelated_neighbors_ignored(self, engine, scene):
        """Neighbors below the match percentage contribute nothing."""
        engine.process_cluster(scene.cluster(0))
        engine.process_cluster(scene.cluster(1))

        result = engine.last_neighborhood
        assert result.neighbor_ids == [0]
        assert result.num_correspondences == 0


class TestIngest:
    """Cluster intake and failure handling."""

    def test_not_a_cluster(self, engine):
        """Anything but a Cluster is rejected."""
        with pytest.raises(InvalidClusterError):
            engine.process_cluster({"id": 0})

    def test_empty_first_cluster(self, engine, scene):
        """An empty cluster can't initialize the hash and isn't indexed."""
        empty = scene.cluster(
            0, points=np.empty((0, 3)), descriptors=np.empty((0, 32), dtype=np.uint8)
        )

        engine.process_cluster(empty)
        assert engine.hash_table_size == 0
        assert engine.store.contains(0)

        engine.process_cluster(scene.cluster(1))
        assert engine.hash_table_size == 1

    def test_store_failure_skips_cluster(self, engine, scene, monkeypatch):
        """A failed write drops the cluster; the loop keeps processing."""
        write = engine.store.write

        def flaky_write(cluster):
            if cluster.id == 0:
                raise StoreWriteError("disk full")
            write(cluster)

        monkeypatch.setattr(engine.store, "write", flaky_write)

        statuses = []
        stop_event = threading.Event()

        def observer(status):
            statuses.append(status)
            if status.queue_depth == 0:
                stop_event.set()

        engine.add_observer(observer)
        engine.enqueue(scene.cluster(0))
        engine.enqueue(scene.cluster(1))

        engine.run(stop_event)

        assert engine.failed_clusters == [0]
        assert engine.hash_table_size == 1
        assert not engine.store.contains(0)
        assert engine.store.contains(1)
        assert [s.queue_depth for s in statuses] == [1, 0]
        assert statuses[-1].failed_clusters == 1

    def test_failing_observer_does_not_stop_loop(self, engine, scene):
        """Observer exceptions are logged, not raised."""
        stop_event = threading.Event()

        def broken(status):
            raise RuntimeError("viewer gone")

        engine.add_observer(broken)
        engine.add_observer(lambda status: stop_event.set())
        engine.enqueue(scene.cluster(0))

        engine.run(stop_event)

        assert engine.hash_table_size == 1


class TestLifecycle:
    """Threaded processing."""

    def test_threaded_detection(self, engine, pose_graph, loop_sequence, store_dir):
        """The engine thread detects the loop and stop() clears the store."""
        for cluster in loop_sequence:
            pose_graph.enqueue(cluster)
        pose_graph.process_pending()

        engine.start()
        assert engine.is_running
        for cluster in loop_sequence:
            engine.enqueue(cluster)

        done = threading.Event()
        for _ in range(500):
            if engine.num_loop_closures == 1:
                done.set()
                break
            done.wait(0.01)

        engine.stop()

        assert done.is_set()
        assert not engine.is_running
        assert engine.num_loop_closures == 1
        assert not store_dir.exists()

    def test_start_opens_fresh_store(self, engine, store_dir):
        """Leftover files are removed when the engine starts."""
        store_dir.mkdir(parents=True)
        (store_dir / "3.npz").write_bytes(b"old run")

        engine.start()

        assert store_dir.is_dir()
        assert not (store_dir / "3.npz").exists()

    def test_stop_waits_for_cluster_in_flight(
        self, engine, scene, store_dir, monkeypatch, caplog
    ):
        """A thread still busy after the timeout keeps its store."""
        started = threading.Event()
        release = threading.Event()
        process_cluster = engine.process_cluster

        def slow_process(cluster):
            started.set()
            release.wait(5.0)
            return process_cluster(cluster)

        monkeypatch.setattr(engine, "process_cluster", slow_process)
        engine.start()
        engine.enqueue(scene.cluster(0))
        assert started.wait(5.0)

        with caplog.at_level(logging.WARNING):
            engine.stop(timeout=0.05)

        assert engine.is_running
        assert store_dir.is_dir()
        assert "cluster store kept" in caplog.text

        release.set()
        engine.stop()

        assert not engine.is_running
        assert not store_dir.exists()
