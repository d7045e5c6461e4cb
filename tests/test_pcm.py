"""
Unit tests for PCM outlier removal.

Tests cover:
- threshold semantics of the odometry and loop-closure checks
- maximum-clique selection of loop closures (including demotion)
- separator edges and inter-robot loop closures
- malformed input (duplicates, unknown nodes)
- the structured decision log
"""

import json

import gtsam
import numpy as np
import pytest

from robust_pgo.geometry import PoseWithDistance
from robust_pgo.keys import make_key
from robust_pgo.models import BetweenFactor, PriorFactor
from robust_pgo.pcm import PCM, AcceptAll, MeasurementStatus, PCMConfig
from robust_pgo.trajectory import DuplicateMeasurementError, PoseGraphError, UnknownNodeError
from robust_pgo_common.decision_log import DecisionLogger


def _feed_chain(pcm, graph):
    assert pcm.process(graph.prior)
    assert all(pcm.process_all(graph.odometry))


# =============================================================================
# Thresholds
# =============================================================================


class TestThresholds:
    """Reference scenario: prior + 49 odometry + 3 noisy loop closures."""

    def test_zero_odom_threshold_rejects_loop_closures(self, single_robot):
        pcm = PCM(0.0, 10.0)
        _feed_chain(pcm, single_robot)
        results = pcm.process_all(single_robot.loop_closures)
        assert results == [False, False, False]
        assert len(pcm.current_accepted_factors()) == 50
        assert pcm.stats()["loop_closures"] == 0
        assert pcm.stats()["rejected"] == 3
        lc = single_robot.loop_closures[0]
        assert pcm.status(lc.key1, lc.key2) == MeasurementStatus.REJECTED

    def test_large_thresholds_accept_everything(self, single_robot):
        pcm = PCM(100.0, 100.0)
        _feed_chain(pcm, single_robot)
        assert pcm.process_all(single_robot.loop_closures) == [True, True, True]
        assert len(pcm.current_accepted_factors()) == 53
        assert len(pcm.inliers()) == 3
        assert pcm.stats()["graph_edges"] == 3

    def test_default_thresholds_accept_consistent_loop_closures(self, single_robot):
        pcm = PCM.from_config(PCMConfig())
        _feed_chain(pcm, single_robot)
        assert pcm.process_all(single_robot.loop_closures) == [True, True, True]

    def test_negative_threshold_raises(self):
        with pytest.raises(ValueError):
            PCM(-1.0, 1.0)

    def test_bad_config_raises(self):
        with pytest.raises(ValueError):
            PCM.from_config(PCMConfig(uncertainty="entropy"))
        with pytest.raises(ValueError):
            PCM.from_config(PCMConfig(clique="greedy"))

    def test_odometry_extends_trajectory(self, single_robot):
        pcm = PCM(10.0, 10.0)
        _feed_chain(pcm, single_robot)
        last = single_robot.key(single_robot.n - 1)
        assert pcm.trajectories.pose(last).pose.equals(single_robot.truth[last], 1e-6)
        odo = single_robot.odometry[0]
        assert pcm.status(odo.key1, odo.key2) == MeasurementStatus.ODOMETRY
        assert pcm.stats()["odometry"] == 49

    def test_accepted_factor_order(self, single_robot):
        pcm = PCM(10.0, 10.0)
        _feed_chain(pcm, single_robot)
        pcm.process_all(single_robot.loop_closures)
        accepted = pcm.current_accepted_factors()
        assert accepted[0] is single_robot.prior
        assert accepted[1:50] == single_robot.odometry
        assert accepted[50:] == single_robot.loop_closures


# =============================================================================
# Maximum clique selection
# =============================================================================


class TestCliqueSelection:
    """Gross outliers pass the odometry check but not the pairwise one."""

    def test_outliers_excluded(self, single_robot):
        pcm = PCM(1e6, 3.0)
        _feed_chain(pcm, single_robot)
        good, bad = single_robot.loop_closures, single_robot.outliers
        stream = [good[0], bad[0], good[1], bad[1], good[2]]
        pcm.process_all(stream)

        assert {(r.i, r.j) for r in pcm.inliers()} == {(f.key1, f.key2) for f in good}
        assert {(r.i, r.j) for r in pcm.outliers()} == {(f.key1, f.key2) for f in bad}
        accepted = pcm.current_accepted_factors()
        assert len(accepted) == 53
        assert all(f not in accepted for f in bad)
        for f in bad:
            assert pcm.status(f.key1, f.key2) == MeasurementStatus.OUTLIER

    def test_early_outlier_is_demoted(self, single_robot):
        pcm = PCM(1e6, 3.0)
        _feed_chain(pcm, single_robot)
        bad = single_robot.outliers[0]
        good = single_robot.loop_closures
        assert pcm.process(bad) is True
        assert pcm.process(good[0]) is False
        assert pcm.process(good[1]) is True
        assert pcm.status(bad.key1, bad.key2) == MeasurementStatus.OUTLIER
        assert pcm.status(good[0].key1, good[0].key2) == MeasurementStatus.INLIER

    def test_exact_and_incremental_agree(self, single_robot):
        stream = single_robot.loop_closures + single_robot.outliers
        results = {}
        for method in ("exact", "incremental"):
            pcm = PCM(1e6, 3.0, clique=method)
            _feed_chain(pcm, single_robot)
            pcm.process_all(stream)
            results[method] = [(r.i, r.j) for r in pcm.inliers()]
        assert results["exact"] == results["incremental"]

    @pytest.mark.parametrize("clique", ["exact", "incremental"])
    def test_replay_gives_same_inliers(self, single_robot, clique):
        good, bad = single_robot.loop_closures, single_robot.outliers
        stream = bad + good
        runs = []
        for _ in range(2):
            pcm = PCM(1e6, 3.0, clique=clique)
            _feed_chain(pcm, single_robot)
            decisions = pcm.process_all(stream)
            runs.append((decisions,
                         [(r.i, r.j) for r in pcm.inliers()],
                         [(r.i, r.j) for r in pcm.outliers()],
                         [id(f) for f in pcm.current_accepted_factors()]))
        assert runs[0] == runs[1]
        assert runs[0][0][0] is True
        assert runs[0][1] == [(f.key1, f.key2) for f in good]
        assert sorted(runs[0][2]) == sorted((f.key1, f.key2) for f in bad)

    def test_distance_variant(self, single_robot):
        pcm = PCM(1e6, 0.05, uncertainty=PoseWithDistance)
        _feed_chain(pcm, single_robot)
        pcm.process_all(single_robot.loop_closures + single_robot.outliers)
        assert len(pcm.inliers()) == 3
        assert len(pcm.outliers()) == 2

    def test_accept_all_baseline(self, single_robot):
        baseline = AcceptAll()
        factors = [single_robot.prior] + single_robot.odometry + single_robot.outliers
        assert all(baseline.process_all(factors))
        assert baseline.current_accepted_factors() == factors


# =============================================================================
# Multiple robots
# =============================================================================


class TestSeparator:
    """A separator edge starts the second robot's trajectory."""

    def _pcm(self, two_robots, separator=None):
        pcm = PCM(10.0, 10.0)
        pcm.process(two_robots.prior)
        pcm.process_all(two_robots.odometry_a)
        assert pcm.process(separator or two_robots.separator)
        assert all(pcm.process_all(two_robots.odometry_b))
        return pcm

    def test_separator_starts_trajectory(self, two_robots):
        pcm = self._pcm(two_robots)
        b0, b19 = two_robots.b(0), two_robots.b(19)
        assert pcm.status(two_robots.a(5), b0) == MeasurementStatus.SEPARATOR
        assert pcm.trajectories.pose(b0).pose.equals(two_robots.truth[b0], 1e-6)
        assert pcm.trajectories.pose(b19).pose.equals(two_robots.truth[b19], 1e-6)
        assert sorted(pcm.trajectories.robots()) == ["a", "b"]

    def test_reversed_separator(self, two_robots):
        sep = two_robots.separator
        reverse = BetweenFactor(sep.key2, sep.key1, sep.pose.inverse(), sep.covariance)
        pcm = self._pcm(two_robots, reverse)
        b0 = two_robots.b(0)
        assert pcm.trajectories.pose(b0).pose.equals(two_robots.truth[b0], 1e-6)

    def test_inter_robot_loop_closures(self, two_robots):
        pcm = self._pcm(two_robots)
        assert pcm.process_all(two_robots.inter_loop_closures) == [True, True]
        assert all(r.is_separator for r in pcm.inliers())
        # prior + 2 x 19 odometry + separator + inliers
        assert len(pcm.current_accepted_factors()) == 1 + 38 + 1 + 2
        stats = pcm.stats()
        assert stats["separators"] == 1
        assert stats["inliers"] == 2


# =============================================================================
# Malformed input
# =============================================================================


class TestMalformedInput:
    """Invariant violations raise and leave the stores untouched."""

    def test_duplicate_odometry_raises(self, single_robot):
        pcm = PCM(10.0, 10.0)
        _feed_chain(pcm, single_robot)
        with pytest.raises(DuplicateMeasurementError):
            pcm.process(single_robot.odometry[3])
        assert pcm.stats()["odometry"] == 49

    def test_duplicate_loop_closure_raises(self, single_robot):
        pcm = PCM(10.0, 10.0)
        _feed_chain(pcm, single_robot)
        lc = single_robot.loop_closures[0]
        pcm.process(lc)
        with pytest.raises(DuplicateMeasurementError):
            pcm.process(lc)
        assert len(pcm.graph) == 1

    def test_duplicate_prior_raises(self, single_robot):
        pcm = PCM(10.0, 10.0)
        pcm.process(single_robot.prior)
        with pytest.raises(DuplicateMeasurementError):
            pcm.process(single_robot.prior)

    def test_unknown_node_raises(self, single_robot):
        pcm = PCM(10.0, 10.0)
        _feed_chain(pcm, single_robot)
        lc = BetweenFactor(single_robot.key(3), single_robot.key(99), gtsam.Pose3(), np.eye(6))
        with pytest.raises(UnknownNodeError):
            pcm.process(lc)
        odo = BetweenFactor(single_robot.key(70), single_robot.key(71), gtsam.Pose3(), np.eye(6))
        with pytest.raises(UnknownNodeError):
            pcm.process(odo)
        assert len(pcm.transforms) == 49
        assert pcm.stats()["rejected"] == 0
        assert issubclass(UnknownNodeError, PoseGraphError)

    def test_odometry_before_prior_raises(self, single_robot):
        pcm = PCM(10.0, 10.0)
        with pytest.raises(UnknownNodeError):
            pcm.process(single_robot.odometry[0])

    def test_prior_inside_started_trajectory_raises(self, single_robot):
        pcm = PCM(10.0, 10.0)
        _feed_chain(pcm, single_robot)
        with pytest.raises(PoseGraphError):
            pcm.process(PriorFactor(make_key("a", 80), gtsam.Pose3(), np.eye(6)))


# =============================================================================
# Re-seeding and decision log
# =============================================================================


class TestReseed:
    def test_reseed_moves_poses(self, single_robot):
        pcm = PCM(10.0, 10.0)
        _feed_chain(pcm, single_robot)
        k = single_robot.key(10)
        moved = single_robot.truth[k].compose(gtsam.Pose3(gtsam.Rot3(), np.array([0.0, 0.0, 1.0])))
        pcm.reseed({k: moved})
        assert pcm.trajectories.pose(k).pose.equals(moved, 1e-12)


class TestDecisionLog:
    def test_jsonl_one_line_per_decision(self, single_robot, tmp_path):
        path = tmp_path / "decisions.jsonl"
        decisions = DecisionLogger(extra_fields={"run": "test"}, log_path=str(path), emit_to_logger=False)
        pcm = PCM(100.0, 100.0, decisions=decisions)
        _feed_chain(pcm, single_robot)
        pcm.process_all(single_robot.loop_closures)
        decisions.close()

        lines = path.read_text(encoding="utf-8").splitlines()
        events = [json.loads(line) for line in lines]
        assert len(events) == sum(decisions.counts.values())
        assert decisions.counts == {"prior": 1, "odometry": 49, "loop_closure": 3, "clique": 3}
        assert all(e["run"] == "test" for e in events)
        last = events[-1]
        assert last["event"] == "clique" and last["size"] == 3

    def test_rejections_are_logged(self, single_robot, tmp_path):
        path = tmp_path / "decisions.jsonl"
        decisions = DecisionLogger(log_path=str(path), emit_to_logger=False)
        pcm = PCM(0.0, 10.0, decisions=decisions)
        _feed_chain(pcm, single_robot)
        pcm.process_all(single_robot.loop_closures)
        decisions.close()
        events = [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]
        rejected = [e for e in events if e["event"] == "loop_closure"]
        assert len(rejected) == 3
        assert not any(e["admitted"] for e in rejected)
        assert all(e["distance"] > 0.0 for e in rejected)

    def test_disabled_logger_is_silent(self, single_robot):
        decisions = DecisionLogger(enabled=False)
        pcm = PCM(10.0, 10.0, decisions=decisions)
        _feed_chain(pcm, single_robot)
        assert decisions.counts == {}
