"""End-to-end tests of the command line entry point."""

import csv
import json
from types import SimpleNamespace

import numpy as np
import pytest

import main
from robust_pgo.keys import key_label


def _pose_json(pose):
    return {"rotation": np.asarray(pose.rotation().quaternion()).tolist(),
            "translation": np.asarray(pose.translation()).tolist()}


def _write_jrl(path, graph, with_outliers=False, with_prior=True):
    betweens = graph.odometry + graph.loop_closures + (graph.outliers if with_outliers else [])
    frames = []
    if with_prior:
        frames.append({"stamp": 0.0, "measurements": [dict(
            type="PriorFactorPose3", key=key_label(graph.prior.key),
            prior=_pose_json(graph.prior.pose), covariance=graph.prior.covariance.ravel().tolist())]})
    outlier_coords = []
    for f in betweens:
        if f.is_outlier:
            outlier_coords.append([len(frames), 0])
        frames.append({"stamp": f.stamp, "measurements": [dict(
            type="BetweenFactorPose3", key1=key_label(f.key1), key2=key_label(f.key2),
            measurement=_pose_json(f.pose), covariance=f.covariance.ravel().tolist())]})
    doc = {
        "name": "synthetic",
        "measurements": {"a": frames},
        "outlier factors": {"a": outlier_coords},
        "initialisation": {"a": [dict(key=key_label(k), **_pose_json(p)) for k, p in graph.truth.items()]},
        "ground truth": {"a": [dict(key=key_label(k), **_pose_json(p)) for k, p in graph.truth.items()]},
    }
    path.write_text(json.dumps(doc), encoding="utf-8")
    return str(path)


class TestCommandLine:
    def test_batch_run_writes_artifacts(self, single_robot, tmp_path):
        jrl = _write_jrl(tmp_path / "graph.jrl", single_robot)
        out = tmp_path / "out"
        main.main(["--jrl", jrl, "--export-path", str(out), "--odom-threshold", "100",
                   "--lc-threshold", "100", "--plot", "--eval-gt", "--log", "WARNING"])

        stats = json.loads((out / "graph_stats.json").read_text(encoding="utf-8"))
        assert stats["accepted_factors"] == 53
        assert stats["values"] == 50
        assert len(stats["inliers"]) == 3
        assert (out / "trajectories_xy.png").exists()
        assert (out / "decisions.jsonl").exists()

        metrics = json.loads((out / "metrics.json").read_text(encoding="utf-8"))
        assert metrics["ate"]["matches"] == 50
        assert metrics["ate"]["rmse"] < 0.05

        with open(out / "trajectories" / "trajectory_a.csv", newline="", encoding="utf-8") as fh:
            rows = list(csv.DictReader(fh))
        assert len(rows) == 50
        assert rows[0]["key"] == "a0"

    def test_zero_threshold_rejects_loop_closures(self, single_robot, tmp_path):
        jrl = _write_jrl(tmp_path / "graph.jrl", single_robot)
        out = tmp_path / "out"
        main.main(["--jrl", jrl, "--export-path", str(out), "--odom-threshold", "0",
                   "--lc-threshold", "10", "--log", "WARNING"])
        stats = json.loads((out / "graph_stats.json").read_text(encoding="utf-8"))
        assert stats["accepted_factors"] == 50
        assert len(stats["rejected"]) == 3

    def test_stream_isam2_with_labelled_outliers(self, single_robot, tmp_path):
        jrl = _write_jrl(tmp_path / "graph.jrl", single_robot, with_outliers=True)
        out = tmp_path / "out"
        main.main(["--jrl", jrl, "--export-path", str(out), "--odom-threshold", "1e6",
                   "--lc-threshold", "3", "--mode", "stream", "--solver", "isam2",
                   "--batch-size", "10", "--log", "WARNING"])
        metrics = json.loads((out / "metrics.json").read_text(encoding="utf-8"))["loop_closures"]
        assert metrics["labelled"] == 5
        assert metrics["precision"] == pytest.approx(1.0)
        assert metrics["recall"] == pytest.approx(1.0)

    def test_missing_prior_is_anchored(self, single_robot, tmp_path):
        jrl = _write_jrl(tmp_path / "graph.jrl", single_robot, with_prior=False)
        out = tmp_path / "out"
        main.main(["--jrl", jrl, "--export-path", str(out), "--log", "WARNING"])
        stats = json.loads((out / "graph_stats.json").read_text(encoding="utf-8"))
        assert stats["pcm"]["priors"] == 1
        assert stats["accepted_factors"] == 53

    def test_two_robots_without_priors(self, two_robots, tmp_path):
        graph = SimpleNamespace(
            truth=two_robots.truth,
            prior=None,
            odometry=two_robots.odometry_a + [two_robots.separator] + two_robots.odometry_b,
            loop_closures=two_robots.inter_loop_closures,
            outliers=[],
        )
        jrl = _write_jrl(tmp_path / "graph.jrl", graph, with_prior=False)
        out = tmp_path / "out"
        main.main(["--jrl", jrl, "--export-path", str(out), "--log", "WARNING"])
        stats = json.loads((out / "graph_stats.json").read_text(encoding="utf-8"))
        assert stats["pcm"]["separators"] == 1
        assert stats["accepted_factors"] == 42
        assert stats["values"] == 40
        assert (out / "trajectories" / "trajectory_b.csv").exists()
