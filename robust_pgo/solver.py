from typing import Dict, Iterable, List, Mapping, Optional, Sequence
import logging
import math
import time

try:
    import gtsam
except Exception:
    gtsam = None

from .geometry import POSE3, PoseSpace, space_of
from .graph import FactorGraphBuilder, factor_keys, values_from, values_to_dict
from .keys import are_consecutive, key_label, robot_of
from .models import BetweenFactor, Factor, PriorFactor
from .pcm import OutlierRemoval

logger = logging.getLogger("robust_pgo.solver")

SOLVERS = ("batch", "isam2")


def _max_translation_delta(previous: Mapping[int, object], current: Mapping[int, object]) -> float:
    """Largest translation change of a key present in both estimates."""
    max_delta = 0.0
    for key, pose in current.items():
        prev = previous.get(key)
        if prev is None:
            continue
        a = prev.translation()
        b = pose.translation()
        delta = math.sqrt(sum((float(x) - float(y)) ** 2 for x, y in zip(a, b)))
        if delta > max_delta:
            max_delta = delta
    return max_delta


class ISAM2Manager:
    """Thin manager around GTSAM's iSAM2 (API-compatible across wheels)."""

    def __init__(self,
                 relinearize_threshold: float = 0.1,
                 relinearize_skip: int = 10,
                 cache_linearized: bool = True):
        if gtsam is None:
            raise RuntimeError("GTSAM not available; cannot run iSAM2")
        params = gtsam.ISAM2Params()

        # Compat helpers (some wheels use setters, others properties)
        def _set(obj, prop: str, value, setter: Optional[str] = None):
            if hasattr(obj, prop):
                try:
                    setattr(obj, prop, value); return
                except Exception:
                    pass
            if setter and hasattr(obj, setter):
                getattr(obj, setter)(value)

        _set(params, "relinearizeThreshold", relinearize_threshold, "setRelinearizeThreshold")
        _set(params, "relinearizeSkip",      relinearize_skip,      "setRelinearizeSkip")
        _set(params, "cacheLinearizedFactors", cache_linearized,    "setCacheLinearizedFactors")
        _set(params, "enableRelinearization", True,                 "setEnableRelinearization")

        self.isam = gtsam.ISAM2(params)
        self._estimate = gtsam.Values()

    def update(self, graph: "gtsam.NonlinearFactorGraph", initial: "gtsam.Values"):
        self.isam.update(graph, initial)
        self._estimate = self.isam.calculateEstimate()

    @property
    def estimate(self) -> "gtsam.Values":
        return self._estimate


def optimize_batch(graph: "gtsam.NonlinearFactorGraph",
                   initial: "gtsam.Values",
                   max_iters: int = 100) -> "gtsam.Values":
    """Levenberg-Marquardt batch solve of the whole accepted graph."""
    if gtsam is None:
        raise RuntimeError("GTSAM not available; cannot optimize")
    params = gtsam.LevenbergMarquardtParams()
    params.setlambdaInitial(1e-3)
    params.setMaxIterations(max_iters)
    opt = gtsam.LevenbergMarquardtOptimizer(graph, initial, params)
    return opt.optimize()


def order_for_load(factors: Iterable[Factor], started: Iterable[str] = ()) -> List[Factor]:
    """Replay order for a graph read in arbitrary order.

    Priors come first. A robot's odometry (sorted by key) follows as soon as
    the robot is anchored: by a prior, by ``started`` (robots the outlier
    remover already tracks) or by an edge from an anchored robot, which is
    emitted just before that odometry. Edges landing on the first node of a
    chain win over other cross-robot edges. Unreachable chains come next,
    then all remaining edges as given.
    """
    priors: List[PriorFactor] = []
    chains: Dict[str, List[BetweenFactor]] = {}
    edges: List[BetweenFactor] = []
    for f in factors:
        if isinstance(f, PriorFactor):
            priors.append(f)
        elif are_consecutive(f.key1, f.key2):
            chains.setdefault(robot_of(f.key1), []).append(f)
        else:
            edges.append(f)
    for chain in chains.values():
        chain.sort(key=lambda f: f.key1)

    ordered: List[Factor] = list(priors)
    anchored = set(started) | {robot_of(f.key) for f in priors}
    pending = sorted(chains)
    bridges: set = set()

    def emit_anchored():
        for rid in [r for r in pending if r in anchored]:
            ordered.extend(chains[rid])
            pending.remove(rid)

    def lands_on_start(f: BetweenFactor) -> bool:
        new_key = f.key2 if robot_of(f.key1) in anchored else f.key1
        chain = chains.get(robot_of(new_key))
        return not chain or chain[0].key1 == new_key

    emit_anchored()
    while pending:
        crossing = [n for n, f in enumerate(edges) if n not in bridges
                    and (robot_of(f.key1) in anchored) != (robot_of(f.key2) in anchored)]
        if not crossing:
            break
        n = next((n for n in crossing if lands_on_start(edges[n])), crossing[0])
        bridges.add(n)
        ordered.append(edges[n])
        anchored.update((robot_of(edges[n].key1), robot_of(edges[n].key2)))
        emit_anchored()
    for rid in pending:
        logger.debug("No anchor for trajectory '%s'; replaying its odometry unanchored", rid)
        ordered.extend(chains[rid])
    ordered.extend(f for n, f in enumerate(edges) if n not in bridges)
    return ordered


class RobustPGO:
    """Outlier-robust pose graph optimization.

    Every candidate measurement goes through ``outlier_removal`` first; only
    the factors it currently accepts reach GTSAM. The estimate is recomputed
    after each call that changes the accepted set.

    Args:
        outlier_removal: decides which factors reach the solver (e.g. ``PCM``).
        solver: ``"batch"`` (Levenberg-Marquardt over the full graph) or
            ``"isam2"`` (incremental).
        robust_kind / robust_k: optional Huber/Cauchy kernel on every factor.
        reseed: hand each new estimate back to the outlier remover.
    """

    def __init__(self, outlier_removal: OutlierRemoval,
                 solver: str = "batch",
                 robust_kind: Optional[str] = None,
                 robust_k: Optional[float] = None,
                 reseed: bool = False,
                 max_iters: int = 100,
                 relinearize_threshold: float = 0.1,
                 relinearize_skip: int = 10):
        if gtsam is None:
            raise RuntimeError("GTSAM not available; cannot run RobustPGO")
        if solver not in SOLVERS:
            raise ValueError(f"Unsupported solver: {solver}")
        self.outlier_removal = outlier_removal
        self.solver = solver
        self.builder = FactorGraphBuilder(robust_kind, robust_k)
        self.reseed = reseed
        self.max_iters = max_iters
        self._isam_params = (relinearize_threshold, relinearize_skip)
        self._isam: Optional[ISAM2Manager] = None
        self._isam_fed: List[int] = []
        self._isam_keys: set = set()
        self._guesses: Dict[int, object] = {}
        self._space: PoseSpace = POSE3
        self._estimate = gtsam.Values()
        self._accepted: List[Factor] = []
        self.solve_count = 0

    # -- input ------------------------------------------------------------

    def load_graph(self, factors: Sequence[Factor], values: Optional[Mapping[int, object]] = None,
                   prior: Optional[PriorFactor] = None) -> None:
        """Initialise from a full graph; ``prior`` anchors the first robot."""
        self._add_guesses(values)
        head = [prior] if prior is not None else []
        self._ingest(order_for_load(head + list(factors), self._started_robots()))
        self._solve()

    def add_graph(self, factors: Sequence[Factor], values: Optional[Mapping[int, object]] = None,
                  bridge: Optional[Sequence[BetweenFactor]] = None) -> None:
        """Merge another robot's graph; ``bridge`` holds the separator edges."""
        self._add_guesses(values)
        # bridges are the first candidates for starting the new trajectories
        self._ingest(order_for_load(list(bridge or []) + list(factors), self._started_robots()))
        self._solve()

    def update(self, factors: Sequence[Factor] = (), values: Optional[Mapping[int, object]] = None) -> bool:
        """Feed new measurements in arrival order; True if a solve ran."""
        self._add_guesses(values)
        self._ingest(factors)
        if [id(f) for f in self.outlier_removal.current_accepted_factors()] == [id(f) for f in self._accepted]:
            logger.debug("Accepted set unchanged; skipping solve")
            return False
        self._solve()
        return True

    # -- output -----------------------------------------------------------

    def accepted_factors(self) -> List[Factor]:
        return list(self._accepted)

    def get_factors_unsafe(self) -> "gtsam.NonlinearFactorGraph":
        """GTSAM graph of the accepted factors (fresh factor objects)."""
        return self.builder.build(self._accepted)

    def calculate_estimate(self) -> "gtsam.Values":
        return self._estimate

    def estimate_dict(self) -> Dict[int, object]:
        return values_to_dict(self._estimate, self._space)

    # -- internals --------------------------------------------------------

    def _add_guesses(self, values: Optional[Mapping[int, object]]) -> None:
        if values:
            self._guesses.update({int(k): v for k, v in values.items()})

    def _ingest(self, factors: Iterable[Factor]) -> None:
        for f in factors:
            self._space = space_of(f.pose)
            accepted = self.outlier_removal.process(f)
            if isinstance(f, BetweenFactor):
                logger.debug("%s->%s %s", key_label(f.key1), key_label(f.key2),
                             "accepted" if accepted else "not accepted")

    def _started_robots(self) -> List[str]:
        trajectories = getattr(self.outlier_removal, "trajectories", None)
        return trajectories.robots() if trajectories is not None else []

    def _initial_pose(self, key: int):
        # trajectory poses come from odometry (or the last reseed) only
        trajectories = getattr(self.outlier_removal, "trajectories", None)
        if trajectories is not None and key in trajectories:
            return trajectories.pose(key).pose
        if self._estimate.exists(key):
            return (self._estimate.atPose3 if self._space is POSE3 else self._estimate.atPose2)(key)
        if key in self._guesses:
            return self._guesses[key]
        logger.warning("Missing initialization for key %s; using identity.", key_label(key))
        return self._space.identity()

    def _initial_values(self, keys: Iterable[int]) -> "gtsam.Values":
        return values_from({k: self._initial_pose(k) for k in keys})

    def _solve(self) -> None:
        accepted = self.outlier_removal.current_accepted_factors()
        if not accepted:
            self._accepted = []
            self._estimate = gtsam.Values()
            return
        previous = values_to_dict(self._estimate, self._space)
        start = time.perf_counter()
        if self.solver == "batch":
            graph = self.builder.build(accepted)
            initial = self._initial_values(factor_keys(accepted))
            self._estimate = optimize_batch(graph, initial, self.max_iters)
        else:
            self._estimate = self._solve_isam2(accepted)
        self._accepted = list(accepted)
        self.solve_count += 1
        current = values_to_dict(self._estimate, self._space)
        logger.info("Solve %d (%s): %d factors, %d values in %.3fs, max translation delta %.3f",
                    self.solve_count, self.solver, len(accepted), self._estimate.size(),
                    time.perf_counter() - start, _max_translation_delta(previous, current))
        if self.reseed:
            self.outlier_removal.reseed(current)

    def _solve_isam2(self, accepted: List[Factor]) -> "gtsam.Values":
        """Feed only new factors; rebuild when a fed factor was withdrawn."""
        ids = {id(f) for f in accepted}
        if self._isam is None or any(fid not in ids for fid in self._isam_fed):
            if self._isam is not None:
                logger.info("Accepted loop closures changed; rebuilding iSAM2")
            self._isam = ISAM2Manager(*self._isam_params)
            self._isam_fed = []
            self._isam_keys = set()
        fed = set(self._isam_fed)
        new = [f for f in accepted if id(f) not in fed]
        new_keys = [k for k in factor_keys(new) if k not in self._isam_keys]
        self._isam.update(self.builder.build(new), self._initial_values(new_keys))
        self._isam_fed.extend(id(f) for f in new)
        self._isam_keys.update(new_keys)
        return self._isam.estimate
