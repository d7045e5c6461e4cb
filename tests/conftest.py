"""
Shared fixtures: synthetic pose graphs with known ground truth.

Odometry is noise free, so the trajectory built from it equals the ground
truth; loop closures are the true relative poses with a small perturbation,
and gross outliers are the true relative poses composed with a large error.
"""

import math
from types import SimpleNamespace
from typing import Dict, List

import gtsam
import numpy as np
import pytest

from robust_pgo.keys import make_key
from robust_pgo.models import BetweenFactor, PriorFactor


ODOM_SIGMAS = np.array([0.01, 0.01, 0.01, 0.05, 0.05, 0.05])
LC_SIGMAS = np.array([0.02, 0.02, 0.02, 0.1, 0.1, 0.1])
PRIOR_SIGMAS = np.full(6, 1e-3)

LOOP_PAIRS = [(0, 40), (5, 45), (10, 48)]


def cov_from(sigmas: np.ndarray) -> np.ndarray:
    return np.diag(np.asarray(sigmas, dtype=float) ** 2)


def chain(robot: str, n: int, start: gtsam.Pose3) -> Dict[int, gtsam.Pose3]:
    """Ground-truth poses of a slowly climbing circle, ``n`` nodes."""
    step = gtsam.Pose3(gtsam.Rot3.Rz(2.0 * math.pi / n), np.array([1.0, 0.0, 0.02]))
    poses = {make_key(robot, 0): start}
    pose = start
    for idx in range(1, n):
        pose = pose.compose(step)
        poses[make_key(robot, idx)] = pose
    return poses


def odometry(robot: str, truth: Dict[int, gtsam.Pose3], n: int) -> List[BetweenFactor]:
    out = []
    for idx in range(n - 1):
        k1, k2 = make_key(robot, idx), make_key(robot, idx + 1)
        out.append(BetweenFactor(k1, k2, truth[k1].between(truth[k2]), cov_from(ODOM_SIGMAS),
                                 stamp=float(idx + 1)))
    return out


def loop_closure(truth, k1, k2, rng, scale=1e-3, is_outlier=False) -> BetweenFactor:
    noise = gtsam.Pose3.Expmap(rng.normal(0.0, scale, 6))
    return BetweenFactor(k1, k2, truth[k1].between(truth[k2]).compose(noise), cov_from(LC_SIGMAS),
                         stamp=100.0, is_outlier=is_outlier)


def gross_outlier(truth, k1, k2, yaw, offset) -> BetweenFactor:
    error = gtsam.Pose3(gtsam.Rot3.Rz(yaw), np.asarray(offset, dtype=float))
    return BetweenFactor(k1, k2, truth[k1].between(truth[k2]).compose(error), cov_from(LC_SIGMAS),
                         stamp=100.0, is_outlier=True)


@pytest.fixture
def rng():
    return np.random.default_rng(7)


@pytest.fixture
def single_robot(rng):
    """One prior, 49 odometry edges (50 nodes), 3 good loop closures, 2 outliers."""
    n = 50
    truth = chain("a", n, gtsam.Pose3())
    a = lambda idx: make_key("a", idx)
    prior = PriorFactor(a(0), truth[a(0)], cov_from(PRIOR_SIGMAS))
    return SimpleNamespace(
        n=n,
        truth=truth,
        key=a,
        prior=prior,
        odometry=odometry("a", truth, n),
        loop_closures=[loop_closure(truth, a(i), a(j), rng) for i, j in LOOP_PAIRS],
        outliers=[
            gross_outlier(truth, a(2), a(30), 1.2, [15.0, -10.0, 3.0]),
            gross_outlier(truth, a(8), a(35), -0.8, [-6.0, 12.0, -4.0]),
        ],
    )


@pytest.fixture
def two_robots(rng):
    """Robot ``a`` (prior, 20 nodes) and robot ``b`` started by a separator a5 -> b0."""
    n = 20
    truth_a = chain("a", n, gtsam.Pose3())
    a = lambda idx: make_key("a", idx)
    b = lambda idx: make_key("b", idx)
    sep_pose = gtsam.Pose3(gtsam.Rot3.Rz(0.5), np.array([2.0, 1.0, 0.0]))
    truth_b = chain("b", n, truth_a[a(5)].compose(sep_pose))
    truth = {**truth_a, **truth_b}
    return SimpleNamespace(
        truth=truth,
        a=a,
        b=b,
        prior=PriorFactor(a(0), truth[a(0)], cov_from(PRIOR_SIGMAS)),
        odometry_a=odometry("a", truth_a, n),
        separator=BetweenFactor(a(5), b(0), sep_pose, cov_from(ODOM_SIGMAS)),
        odometry_b=odometry("b", truth_b, n),
        inter_loop_closures=[loop_closure(truth, a(2), b(6), rng),
                             loop_closure(truth, a(4), b(9), rng)],
    )
