from dataclasses import dataclass, field
from typing import List, Optional, Dict, Any, Tuple, Union
import numpy as np

try:
    import gtsam
except Exception:
    gtsam = None

@dataclass
class Quaternion:
    """Quaternion in [w, x, y, z] order.

    Why: We explicitly model the ordering to avoid confusion. The JRL layout
    uses wxyz; if your dataset differs, convert at the loader.
    """
    w: float
    x: float
    y: float
    z: float

    def to_numpy(self) -> np.ndarray:
        return np.array([self.w, self.x, self.y, self.z], dtype=float)

@dataclass
class Translation:
    x: float
    y: float
    z: float

    def to_numpy(self) -> np.ndarray:
        return np.array([self.x, self.y, self.z], dtype=float)


def pose3_from(rot: Quaternion, trans: Translation):
    if gtsam is None:
        raise RuntimeError("GTSAM not available; cannot build Pose3")
    R = gtsam.Rot3.Quaternion(rot.w, rot.x, rot.y, rot.z)
    return gtsam.Pose3(R, trans.to_numpy())


@dataclass(eq=False)
class PriorFactor:
    """Absolute pose measurement on one node (gtsam.Pose2 or gtsam.Pose3)."""
    key: int
    pose: Any
    covariance: np.ndarray
    stamp: float = 0.0

    def keys(self) -> Tuple[int, ...]:
        return (self.key,)

@dataclass(eq=False)
class BetweenFactor:
    """Relative pose measurement ``key1 -> key2``.

    ``is_outlier`` carries a dataset label for evaluation only; the outlier
    remover never reads it.
    """
    key1: int
    key2: int
    pose: Any
    covariance: np.ndarray
    stamp: float = 0.0
    is_outlier: Optional[bool] = None

    def keys(self) -> Tuple[int, int]:
        return (self.key1, self.key2)

Factor = Union[PriorFactor, BetweenFactor]

@dataclass
class InitEntry:
    key: int
    pose: Any

@dataclass
class JRLDocument:
    measurements: Dict[str, List[Dict[str, Any]]]
    outlier_factors: Any
    initialisation: Any
    ground_truth: Any = None
    metadata: Dict[str, Any] = field(default_factory=dict)

def to_covariance(cov_list: List[float], dim: int = 6) -> np.ndarray:
    """Convert a flat list (dim*dim) or nested list (dim x dim) to an ndarray.

    Why: JRL may store covariance either flattened row-major or as a 2-D list.
    We normalize the shape here; degenerate blocks are handled by the pose
    algebra, not rejected.
    """
    arr = np.asarray(cov_list, dtype=float)
    if arr.size == dim * dim and arr.ndim == 1:
        return arr.reshape(dim, dim)
    if arr.ndim == 2 and arr.shape == (dim, dim):
        return arr
    raise ValueError(f"Expected {dim * dim} elements for a {dim}x{dim} covariance, "
                     f"got shape {arr.shape} size {arr.size}")
