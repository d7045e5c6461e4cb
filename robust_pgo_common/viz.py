from typing import Dict, Iterable, Mapping, Optional
import numpy as np

import matplotlib
matplotlib.use("Agg")  # for headless export
import matplotlib.pyplot as plt

from robust_pgo.keys import index_of, robot_of


def _xy(pose):
    t = np.asarray(pose.translation(), dtype=float).reshape(-1)
    return float(t[0]), float(t[1])


def extract_xy_per_robot(estimate: Mapping[int, object]) -> Dict[str, np.ndarray]:
    by_robot: Dict[str, list] = {}
    for k in sorted(estimate, key=lambda x: (robot_of(x), index_of(x))):
        by_robot.setdefault(robot_of(k), []).append(_xy(estimate[k]))
    return {rid: np.asarray(coords) for rid, coords in by_robot.items() if coords}


def _draw_edges(estimate, edges, **style):
    drawn = False
    for i, j in edges:
        if i not in estimate or j not in estimate:
            continue
        (x1, y1), (x2, y2) = _xy(estimate[i]), _xy(estimate[j])
        kwargs = dict(style)
        if drawn:
            kwargs.pop("label", None)
        plt.plot([x1, x2], [y1, y2], **kwargs)
        drawn = True


def plot_loop_closures_xy(estimate: Mapping[int, object],
                          inliers: Iterable = (),
                          outliers: Iterable = (),
                          rejected: Iterable = (),
                          path_png: str = "trajectory.png",
                          ground_truth: Optional[Mapping[int, object]] = None):
    """Trajectories (XY) with loop closures coloured by PCM decision.

    Edge iterables hold ``(key1, key2)`` pairs.
    """
    plt.figure(figsize=(10, 7))
    for rid, xy in extract_xy_per_robot(estimate).items():
        plt.plot(xy[:, 0], xy[:, 1], label=f"{rid} est")
    if ground_truth:
        for rid, xy in extract_xy_per_robot(ground_truth).items():
            plt.plot(xy[:, 0], xy[:, 1], linestyle="--", label=f"{rid} gt")
    _draw_edges(estimate, rejected, color="0.7", linewidth=0.6, label="rejected")
    _draw_edges(estimate, outliers, color="tab:red", linewidth=0.8, label="outlier")
    _draw_edges(estimate, inliers, color="tab:green", linewidth=1.0, label="inlier")
    plt.axis("equal")
    plt.xlabel("x [m]"); plt.ylabel("y [m]")
    plt.legend()
    plt.title("Trajectories (XY) and loop closures")
    plt.tight_layout()
    plt.savefig(path_png, dpi=150)
    plt.close()
