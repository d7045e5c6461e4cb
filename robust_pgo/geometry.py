"""Pose algebra with uncertainty.

Two flavours share one interface (``identity``, ``from_prior``,
``from_between``, ``compose``, ``inverse``, ``between``, ``norm``):

- ``PoseWithCovariance`` propagates a Lie-algebra covariance to first order
  using GTSAM's composition/inversion Jacobians (expressed via adjoint maps).
- ``PoseWithDistance`` tracks the travelled path length instead and scales the
  residual by it.

Both are written once against a ``PoseSpace`` capability so Pose2 and Pose3
use the same code. Instances are immutable; every operation returns a new one.
"""
from dataclasses import dataclass
import logging
import math
from typing import Optional, Tuple

import numpy as np
import gtsam

logger = logging.getLogger("robust_pgo.geometry")


@dataclass(frozen=True)
class PoseSpace:
    """What the algebra needs to know about one rigid transform type.

    Index tuples refer to GTSAM's tangent ordering (``Logmap`` output), which
    is rotation-first for Pose3 and translation-first for Pose2.
    """
    name: str
    pose_type: type
    dim: int
    rotation_idx: Tuple[int, ...]
    translation_idx: Tuple[int, ...]

    def identity(self):
        return self.pose_type()

    def logmap(self, pose) -> np.ndarray:
        return np.asarray(self.pose_type.Logmap(pose), dtype=float).reshape(self.dim)

    def adjoint(self, pose) -> np.ndarray:
        return np.asarray(pose.AdjointMap(), dtype=float).reshape(self.dim, self.dim)

    def translation_norm(self, pose) -> float:
        return float(np.linalg.norm(np.asarray(pose.translation(), dtype=float)))


POSE2 = PoseSpace("Pose2", gtsam.Pose2, 3, (2,), (0, 1))
POSE3 = PoseSpace("Pose3", gtsam.Pose3, 6, (0, 1, 2), (3, 4, 5))


def space_of(pose) -> PoseSpace:
    if isinstance(pose, gtsam.Pose3):
        return POSE3
    if isinstance(pose, gtsam.Pose2):
        return POSE2
    raise TypeError(f"Unsupported pose type: {type(pose).__name__}")


def _frozen(mat: np.ndarray) -> np.ndarray:
    out = np.array(mat, dtype=float)
    out.setflags(write=False)
    return out


def _is_psd(cov: np.ndarray) -> bool:
    try:
        np.linalg.cholesky(cov)
        return True
    except np.linalg.LinAlgError:
        return False


def sanitize_covariance(cov: np.ndarray, space: PoseSpace) -> np.ndarray:
    """Keep only the translation block when the rotation block is degenerate.

    A non-finite trace of the rotation block (NaN or inf anywhere on its
    diagonal) would poison every later composition, so the rotation block and
    the cross terms are zeroed and the translation block is copied as is.
    """
    cov = np.array(cov, dtype=float).reshape(space.dim, space.dim)
    r = np.ix_(space.rotation_idx, space.rotation_idx)
    if np.isfinite(np.trace(cov[r])):
        return cov
    t = np.ix_(space.translation_idx, space.translation_idx)
    out = np.zeros_like(cov)
    out[t] = cov[t]
    return out


class PoseWithCovariance:
    """A pose together with its covariance (tangent space of the pose)."""

    __slots__ = ("pose", "covariance", "space", "covariance_valid")

    def __init__(self, pose, covariance: Optional[np.ndarray] = None,
                 covariance_valid: bool = True):
        space = space_of(pose)
        if covariance is None:
            covariance = np.zeros((space.dim, space.dim))
        covariance = np.asarray(covariance, dtype=float)
        if covariance.shape != (space.dim, space.dim):
            raise ValueError(f"{space.name} covariance must be {space.dim}x{space.dim}, "
                             f"got {covariance.shape}")
        object.__setattr__(self, "pose", pose)
        object.__setattr__(self, "covariance", _frozen(covariance))
        object.__setattr__(self, "space", space)
        object.__setattr__(self, "covariance_valid", bool(covariance_valid))

    def __setattr__(self, name, value):
        raise AttributeError(f"{type(self).__name__} is immutable")

    def __repr__(self) -> str:
        return f"PoseWithCovariance({self.pose!r}, trace={np.trace(self.covariance):.3g})"

    @classmethod
    def identity(cls, space: PoseSpace = POSE3) -> "PoseWithCovariance":
        return cls(space.identity())

    @classmethod
    def from_prior(cls, factor) -> "PoseWithCovariance":
        """Prior measurements anchor the chain with zero uncertainty."""
        return cls(factor.pose)

    @classmethod
    def from_between(cls, factor) -> "PoseWithCovariance":
        space = space_of(factor.pose)
        return cls(factor.pose, sanitize_covariance(factor.covariance, space))

    def compose(self, other: "PoseWithCovariance") -> "PoseWithCovariance":
        # d(AB)/dA = Ad(B^-1), d(AB)/dB = I
        Ha = self.space.adjoint(other.pose.inverse())
        cov = Ha @ self.covariance @ Ha.T + other.covariance
        return PoseWithCovariance(self.pose.compose(other.pose), cov)

    def inverse(self) -> "PoseWithCovariance":
        Ha = -self.space.adjoint(self.pose)
        return PoseWithCovariance(self.pose.inverse(), Ha @ self.covariance @ Ha.T)

    def between(self, other: "PoseWithCovariance") -> "PoseWithCovariance":
        """Relative pose ``self^-1 * other``.

        Cov = Cov_other - Ha Cov_self Ha^T is only a first-order approximation
        and may lose positive semi-definiteness. In that case the covariance is
        recomputed in the opposite direction, Cov_self - Hb Cov_other Hb^T with
        Hb the Jacobian of ``other.between(self)`` w.r.t. ``other``. If that is
        not PSD either the result is returned anyway and flagged through
        ``covariance_valid``; downstream norms are then approximate.
        """
        pose = self.pose.between(other.pose)
        Ha = -self.space.adjoint(pose.inverse())
        cov = other.covariance - Ha @ self.covariance @ Ha.T
        if _is_psd(cov):
            return PoseWithCovariance(pose, cov)

        Hb = -self.space.adjoint(pose)
        cov = self.covariance - Hb @ other.covariance @ Hb.T
        valid = _is_psd(cov)
        if not valid:
            logger.debug("Covariance of between(%s) is not PSD in either direction", self.space.name)
        return PoseWithCovariance(pose, cov, covariance_valid=valid)

    def norm(self) -> float:
        """Mahalanobis norm of Logmap(pose) against the own covariance.

        Degenerate directions carry no information (pseudo-inverse). A
        negative or non-finite quadratic form maps to ``inf``.
        """
        xi = self.space.logmap(self.pose)
        info = np.linalg.pinv(self.covariance)
        q = float(xi @ info @ xi)
        if not math.isfinite(q) or q < 0.0:
            return math.inf
        return math.sqrt(q)


class PoseWithDistance:
    """A pose together with the path length accumulated to reach it."""

    __slots__ = ("pose", "distance", "space")

    def __init__(self, pose, distance: float = 0.0):
        object.__setattr__(self, "pose", pose)
        object.__setattr__(self, "distance", float(distance))
        object.__setattr__(self, "space", space_of(pose))

    def __setattr__(self, name, value):
        raise AttributeError(f"{type(self).__name__} is immutable")

    def __repr__(self) -> str:
        return f"PoseWithDistance({self.pose!r}, distance={self.distance:.3g})"

    @classmethod
    def identity(cls, space: PoseSpace = POSE3) -> "PoseWithDistance":
        return cls(space.identity())

    @classmethod
    def from_prior(cls, factor) -> "PoseWithDistance":
        return cls(factor.pose)

    @classmethod
    def from_between(cls, factor) -> "PoseWithDistance":
        return cls(factor.pose, space_of(factor.pose).translation_norm(factor.pose))

    def compose(self, other: "PoseWithDistance") -> "PoseWithDistance":
        return PoseWithDistance(self.pose.compose(other.pose),
                                self.distance + self.space.translation_norm(other.pose))

    def inverse(self) -> "PoseWithDistance":
        return PoseWithDistance(self.pose.inverse(), self.distance)

    def between(self, other: "PoseWithDistance") -> "PoseWithDistance":
        return PoseWithDistance(self.pose.between(other.pose), abs(other.distance - self.distance))

    def norm(self) -> float:
        err = float(np.linalg.norm(self.space.logmap(self.pose)))
        if self.distance > 0.0:
            return err / self.distance
        return 0.0 if err == 0.0 else math.inf


UNCERTAINTY_TYPES = {
    "covariance": PoseWithCovariance,
    "distance": PoseWithDistance,
}
