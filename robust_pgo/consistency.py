"""Residual tests against the odometry chain and between loop closures."""
from dataclasses import dataclass

from .trajectory import TrajectoryStore, Transform


@dataclass(frozen=True)
class ConsistencyResult:
    consistent: bool
    distance: float


class ConsistencyChecker:
    """Mahalanobis (or distance-normalised) tests with ``norm <= threshold``.

    odom_threshold: agreement of a single measurement with the chain it
        spans (odometry against an already anchored node, loop closures
        against the odometry-implied relative pose).
    lc_threshold: agreement of two loop closures closed through the chain.
    """

    def __init__(self, trajectories: TrajectoryStore, odom_threshold: float, lc_threshold: float):
        if odom_threshold < 0 or lc_threshold < 0:
            raise ValueError("Consistency thresholds must be non-negative")
        self.trajectories = trajectories
        self.odom_threshold = float(odom_threshold)
        self.lc_threshold = float(lc_threshold)

    def residual(self, i: int, j: int, measured):
        """``T_ij * z_ij^-1`` where ``T_ij`` is implied by the trajectory."""
        implied = self.trajectories.pose_between(i, j)
        return implied.compose(measured.inverse())

    def check_odometry(self, i: int, j: int, measured) -> ConsistencyResult:
        dist = self.residual(i, j, measured).norm()
        return ConsistencyResult(dist <= self.odom_threshold, dist)

    def check_loop_closure(self, i: int, j: int, measured) -> ConsistencyResult:
        dist = self.residual(i, j, measured).norm()
        return ConsistencyResult(dist <= self.odom_threshold, dist)

    def pairwise_distance(self, a: Transform, b: Transform) -> float:
        """Norm of the loop i1 -> j1 -> j2 -> i2 -> i1 closed by ``a`` and ``b``."""
        j1_j2 = self.trajectories.pose_between(a.j, b.j)
        i2_i1 = self.trajectories.pose_between(b.i, a.i)
        loop = a.pose.compose(j1_j2).compose(b.pose.inverse()).compose(i2_i1)
        return loop.norm()

    def check_pair(self, a: Transform, b: Transform) -> ConsistencyResult:
        dist = self.pairwise_distance(a, b)
        return ConsistencyResult(dist <= self.lc_threshold, dist)
