from typing import Dict, Iterable, List, Mapping, Optional, Set
import logging

try:
    import gtsam
except Exception:
    gtsam = None

from .geometry import POSE3, PoseSpace, space_of
from .keys import key_label
from .models import BetweenFactor, Factor, PriorFactor
from .robust import gaussian_from_covariance, robustify

logger = logging.getLogger("robust_pgo.graph")


class FactorGraphBuilder:
    """Turns accepted measurements into GTSAM factors.

    IMPORTANT: We DO NOT reuse the exact same factor object across two graphs.
    Some GTSAM Python wheels mis-handle shared_ptr lifetime across multiple
    NonlinearFactorGraphs, leading to use-after-free or double-delete; every
    ``build`` creates fresh factor objects.
    """

    def __init__(self, robust_kind: Optional[str] = None, robust_k: Optional[float] = None):
        if gtsam is None:
            raise RuntimeError("GTSAM not available; cannot build graph")
        self.robust_kind = robust_kind
        self.robust_k = robust_k
        self.counts = {"prior": 0, "between": 0}

    def _noise(self, cov):
        n = gaussian_from_covariance(cov)
        return robustify(n, self.robust_kind, self.robust_k)

    def factor(self, f: Factor):
        if not isinstance(f, (PriorFactor, BetweenFactor)):
            raise TypeError(f"Unsupported factor type: {type(f).__name__}")
        space = space_of(f.pose)
        noise = self._noise(f.covariance)
        if isinstance(f, PriorFactor):
            ctor = gtsam.PriorFactorPose3 if space is POSE3 else gtsam.PriorFactorPose2
            return ctor(f.key, f.pose, noise)
        ctor = gtsam.BetweenFactorPose3 if space is POSE3 else gtsam.BetweenFactorPose2
        return ctor(f.key1, f.key2, f.pose, noise)

    def build(self, factors: Iterable[Factor]) -> "gtsam.NonlinearFactorGraph":
        graph = gtsam.NonlinearFactorGraph()
        for f in factors:
            graph.add(self.factor(f))
            self.counts["prior" if isinstance(f, PriorFactor) else "between"] += 1
        return graph


def factor_keys(factors: Iterable[Factor]) -> List[int]:
    """Keys touched by ``factors`` in first-seen order."""
    seen: Set[int] = set()
    out: List[int] = []
    for f in factors:
        for k in f.keys():
            if k not in seen:
                seen.add(k)
                out.append(k)
    return out


def values_from(poses: Mapping[int, object]) -> "gtsam.Values":
    if gtsam is None:
        raise RuntimeError("GTSAM not available; cannot build Values")
    values = gtsam.Values()
    for key, pose in poses.items():
        values.insert(key, pose)
    return values


def values_to_dict(values: "gtsam.Values", space: PoseSpace = POSE3) -> Dict[int, object]:
    getter = values.atPose3 if space is POSE3 else values.atPose2
    out: Dict[int, object] = {}
    for key in values.keys():
        try:
            out[int(key)] = getter(key)
        except RuntimeError:
            logger.warning("Value %s is not a %s; skipped", key_label(int(key)), space.name)
    return out
