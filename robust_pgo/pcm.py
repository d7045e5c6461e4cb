"""Outlier removal by Pairwise Consistency Maximization (PCM).

Odometry builds the per-robot trajectories. Each loop-closure candidate is
first compared with the relative pose implied by odometry; survivors enter a
consistency graph where an edge means "these two loop closures agree with each
other through the odometry chain". The loop closures forwarded to the solver
are the vertices of the maximum clique of that graph, re-evaluated every time
a new vertex is added.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
import logging
from typing import Dict, Iterable, List, Mapping, Optional, Tuple, Type

from robust_pgo_common.decision_log import DecisionLogger

from .clique import ConsistencyGraph
from .consistency import ConsistencyChecker
from .geometry import PoseWithCovariance, UNCERTAINTY_TYPES
from .keys import are_consecutive, key_label, robot_of
from .models import BetweenFactor, Factor, PriorFactor
from .trajectory import (DuplicateMeasurementError, PoseGraphError, Transform, TransformKind,
                         TransformStore, TrajectoryStore, UnknownNodeError)


@dataclass
class PCMConfig:
    """Thresholds are cutoffs on the consistency norm (``norm <= threshold``).

    A threshold of 0 requires exact agreement; a large value disables the
    corresponding check.
    """
    odom_threshold: float = 10.0
    lc_threshold: float = 10.0
    uncertainty: str = "covariance"  # or "distance"
    clique: str = "incremental"      # or "exact"


class MeasurementStatus(str, Enum):
    ODOMETRY = "odometry"
    SEPARATOR = "separator"
    INLIER = "inlier"
    OUTLIER = "outlier"
    REJECTED = "rejected"


class OutlierRemoval(ABC):
    """Decides which measurements reach the solver."""

    @abstractmethod
    def process(self, factor: Factor) -> bool:
        """Offer one measurement; True if it is currently accepted."""

    @abstractmethod
    def current_accepted_factors(self) -> List[Factor]:
        """Factors to hand to the solver, in acceptance order."""

    def process_all(self, factors: Iterable[Factor]) -> List[bool]:
        return [self.process(f) for f in factors]

    def reseed(self, estimate: Mapping[int, object]) -> None:
        """Receive the solver's current estimate (optional)."""
        return None


class AcceptAll(OutlierRemoval):
    """Forwards everything; baseline for comparing against PCM."""

    def __init__(self):
        self._factors: List[Factor] = []

    def process(self, factor: Factor) -> bool:
        self._factors.append(factor)
        return True

    def current_accepted_factors(self) -> List[Factor]:
        return list(self._factors)


class PCM(OutlierRemoval):
    """Pairwise Consistency Maximization over loop closures.

    Args:
        odom_threshold: cutoff for a measurement against the odometry chain.
        lc_threshold: cutoff for a pair of loop closures.
        uncertainty: ``PoseWithCovariance`` or ``PoseWithDistance``.
        clique: ``"incremental"`` or ``"exact"`` maximum clique maintenance.
        logger: diagnostics sink; defaults to ``robust_pgo.pcm``.
        decisions: structured decision events; defaults to a logger-only sink.

    Malformed input (unknown nodes, duplicate keys, gaps in a trajectory)
    raises a ``PoseGraphError`` and leaves all stores untouched.
    """

    def __init__(self, odom_threshold: float, lc_threshold: float,
                 uncertainty: Type = PoseWithCovariance,
                 clique: str = "incremental",
                 logger: Optional[logging.Logger] = None,
                 decisions: Optional[DecisionLogger] = None):
        self.uncertainty = uncertainty
        self.log = logger or logging.getLogger("robust_pgo.pcm")
        self.decisions = decisions or DecisionLogger()
        self.trajectories = TrajectoryStore()
        self.transforms = TransformStore()
        self.checker = ConsistencyChecker(self.trajectories, odom_threshold, lc_threshold)
        self.graph = ConsistencyGraph(clique)
        self._priors: Dict[int, PriorFactor] = {}
        self._rejected: List[BetweenFactor] = []
        self._rejected_keys: Dict[Tuple[int, int], int] = {}
        self._inliers: set = set()

    @classmethod
    def from_config(cls, cfg: PCMConfig, **kwargs) -> "PCM":
        if cfg.uncertainty not in UNCERTAINTY_TYPES:
            raise ValueError(f"Unsupported uncertainty model: {cfg.uncertainty}")
        return cls(cfg.odom_threshold, cfg.lc_threshold,
                   uncertainty=UNCERTAINTY_TYPES[cfg.uncertainty], clique=cfg.clique, **kwargs)

    # -- classification ---------------------------------------------------

    def classify(self, factor: Factor) -> str:
        """Return ``prior``, ``odometry``, ``separator`` or ``loop_closure``."""
        if isinstance(factor, PriorFactor):
            return "prior"
        i, j = factor.key1, factor.key2
        if are_consecutive(i, j) and i in self.trajectories:
            return "odometry"
        started = self.trajectories.robots()
        if i in self.trajectories and robot_of(j) not in started:
            return "separator"
        if j in self.trajectories and robot_of(i) not in started:
            return "separator"
        return "loop_closure"

    def process(self, factor: Factor) -> bool:
        kind = self.classify(factor)
        if kind == "prior":
            return self.accept_prior(factor)
        if kind == "odometry":
            return self.accept_odometry(factor)
        if kind == "separator":
            return self.accept_separator(factor)
        return self.accept_loop_closure(factor)

    # -- acceptance -------------------------------------------------------

    def accept_prior(self, factor: PriorFactor) -> bool:
        key = factor.key
        if key in self._priors:
            raise DuplicateMeasurementError(f"Prior on {key_label(key)} already stored")
        if key not in self.trajectories:
            if robot_of(key) in self.trajectories.robots():
                raise PoseGraphError(
                    f"Prior on {key_label(key)} does not extend trajectory '{robot_of(key)}'")
            self.trajectories.start(key, self.uncertainty.from_prior(factor))
        self._priors[key] = factor
        self.decisions.prior(key_label(key))
        self.log.debug("Prior on %s accepted", key_label(key))
        return True

    def accept_odometry(self, factor: BetweenFactor) -> bool:
        """Extend the trajectory, or check against it if the node exists."""
        i, j = factor.key1, factor.key2
        if not are_consecutive(i, j):
            raise PoseGraphError(f"{key_label(i)}->{key_label(j)} is not an odometry edge")
        self._check_new(i, j)
        if i not in self.trajectories:
            raise UnknownNodeError(f"Odometry starts at unknown node {key_label(i)}")
        measured = self.uncertainty.from_between(factor)

        if j not in self.trajectories:
            self.trajectories.append(i, j, measured)
            self.transforms.insert(i, j, measured, False, TransformKind.ODOMETRY, factor)
            self.decisions.odometry(key_label(i), key_label(j), True)
            return True

        result = self.checker.check_odometry(i, j, measured)
        self.decisions.odometry(key_label(i), key_label(j), result.consistent, result.distance)
        if not result.consistent:
            self._reject(factor)
            self.log.debug("Odometry %s->%s rejected (%.3f > %.3f)", key_label(i), key_label(j),
                           result.distance, self.checker.odom_threshold)
            return False
        self.transforms.insert(i, j, measured, False, TransformKind.ODOMETRY, factor)
        return True

    def accept_separator(self, factor: BetweenFactor) -> bool:
        """Edge into the first node of a robot that has no trajectory yet."""
        i, j = factor.key1, factor.key2
        self._check_new(i, j)
        started = self.trajectories.robots()
        measured = self.uncertainty.from_between(factor)
        if i in self.trajectories and robot_of(j) not in started:
            new_key = j
            self.trajectories.start(j, self.trajectories.pose(i).compose(measured))
        elif j in self.trajectories and robot_of(i) not in started:
            new_key = i
            self.trajectories.start(i, self.trajectories.pose(j).compose(measured.inverse()))
        else:
            raise PoseGraphError(f"{key_label(i)}->{key_label(j)} does not start a new trajectory")
        self.transforms.insert(i, j, measured, True, TransformKind.SEPARATOR, factor)
        self.decisions.separator(key_label(i), key_label(j))
        self.log.info("Separator %s->%s starts trajectory '%s'", key_label(i), key_label(j), robot_of(new_key))
        return True

    def accept_loop_closure(self, factor: BetweenFactor) -> bool:
        """Admit to the consistency graph if odometry agrees; True if inlier."""
        i, j = factor.key1, factor.key2
        self._check_new(i, j)
        for key in (i, j):
            if key not in self.trajectories:
                raise UnknownNodeError(f"Loop closure references unknown node {key_label(key)}")
        measured = self.uncertainty.from_between(factor)

        result = self.checker.check_loop_closure(i, j, measured)
        if not result.consistent:
            self._reject(factor)
            self.decisions.loop_closure(key_label(i), key_label(j), False, result.distance)
            self.log.debug("Loop closure %s->%s rejected by odometry check (%.3f > %.3f)",
                           key_label(i), key_label(j), result.distance, self.checker.odom_threshold)
            return False

        record = self.transforms.insert(i, j, measured, robot_of(i) != robot_of(j),
                                        TransformKind.LOOP_CLOSURE, factor)
        neighbors = [v for v, idx in enumerate(self.graph.records)
                     if self.checker.check_pair(self.transforms.at(idx), record).consistent]
        self.graph.add_vertex(record.index, neighbors)
        self.decisions.loop_closure(key_label(i), key_label(j), True, result.distance,
                                    consistent_with=len(neighbors))
        self._refresh_inliers()
        return record.index in self._inliers

    # -- queries ----------------------------------------------------------

    def current_accepted_factors(self) -> List[Factor]:
        out: List[Factor] = list(self._priors.values())
        for record in self.transforms:
            if record.kind != TransformKind.LOOP_CLOSURE or record.index in self._inliers:
                out.append(record.factor)
        return out

    def loop_closures(self) -> List[Transform]:
        return self.transforms.of_kind(TransformKind.LOOP_CLOSURE)

    def inliers(self) -> List[Transform]:
        return [r for r in self.loop_closures() if r.index in self._inliers]

    def outliers(self) -> List[Transform]:
        return [r for r in self.loop_closures() if r.index not in self._inliers]

    def rejected(self) -> List[BetweenFactor]:
        return list(self._rejected)

    def status(self, i: int, j: int) -> Optional[MeasurementStatus]:
        """Current state of the measurement ``i -> j`` (None if never seen)."""
        record = self.transforms.get(i, j)
        if record is not None:
            if record.kind == TransformKind.ODOMETRY:
                return MeasurementStatus.ODOMETRY
            if record.kind == TransformKind.SEPARATOR:
                return MeasurementStatus.SEPARATOR
            if record.index in self._inliers:
                return MeasurementStatus.INLIER
            return MeasurementStatus.OUTLIER
        if (i, j) in self._rejected_keys:
            return MeasurementStatus.REJECTED
        return None

    def stats(self) -> Dict[str, int]:
        return {
            "priors": len(self._priors),
            "odometry": len(self.transforms.of_kind(TransformKind.ODOMETRY)),
            "separators": len(self.transforms.of_kind(TransformKind.SEPARATOR)),
            "loop_closures": len(self.loop_closures()),
            "inliers": len(self._inliers),
            "rejected": len(self._rejected),
            "graph_edges": self.graph.num_edges(),
        }

    def reseed(self, estimate: Mapping[int, object]) -> None:
        replaced = self.trajectories.reseed(estimate)
        self.log.debug("Re-seeded %d trajectory poses from the solver estimate", replaced)

    # -- internals --------------------------------------------------------

    def _check_new(self, i: int, j: int) -> None:
        if (i, j) in self.transforms:
            raise DuplicateMeasurementError(f"Measurement {key_label(i)}->{key_label(j)} already stored")

    def _reject(self, factor: BetweenFactor) -> None:
        key = (factor.key1, factor.key2)
        self._rejected_keys[key] = self._rejected_keys.get(key, 0) + 1
        self._rejected.append(factor)

    def _refresh_inliers(self) -> None:
        new = set(self.graph.clique_records())
        promoted = sorted(new - self._inliers)
        demoted = sorted(self._inliers - new)
        self._inliers = new
        def label(idx: int) -> str:
            record = self.transforms.at(idx)
            return f"{key_label(record.i)}->{key_label(record.j)}"

        self.decisions.clique(len(new), len(self.graph), self.graph.num_edges(),
                              promoted=[label(x) for x in promoted], demoted=[label(x) for x in demoted])
        if demoted:
            self.log.info("Loop-closure inliers %d/%d (dropped %s)", len(new), len(self.graph),
                          ", ".join(label(x) for x in demoted))
        else:
            self.log.debug("Loop-closure inliers %d/%d", len(new), len(self.graph))
