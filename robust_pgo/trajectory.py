"""Trajectory and transform stores owned by the outlier remover.

``TrajectoryStore`` keeps one append-only pose chain per robot; all chains
are expressed in a common frame once they are anchored (by a prior, or by a
separator edge composed onto another robot's pose). ``TransformStore`` is an
arena of accepted measurement records: each record gets a stable integer
index on insertion and is also reachable through its ``(i, j)`` key.
"""
from dataclasses import dataclass
from enum import Enum
import logging
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

from .keys import robot_of, key_label

logger = logging.getLogger("robust_pgo.trajectory")


class PoseGraphError(ValueError):
    """Raised when a measurement would break the stores' invariants."""


class UnknownNodeError(PoseGraphError):
    """A measurement references a node that is not in any trajectory."""


class DuplicateMeasurementError(PoseGraphError):
    """A record (or a node) with the same key was already accepted."""


class TransformKind(str, Enum):
    ODOMETRY = "odometry"
    LOOP_CLOSURE = "loop_closure"
    SEPARATOR = "separator"


@dataclass(frozen=True)
class Transform:
    """One accepted relative measurement ``i -> j``."""
    index: int
    i: int
    j: int
    pose: Any  # PoseWithCovariance | PoseWithDistance
    is_separator: bool
    kind: TransformKind
    factor: Any = None

    @property
    def key(self) -> Tuple[int, int]:
        return (self.i, self.j)


class Trajectory:
    """Pose chain of one robot, ordered by insertion (= node index)."""

    def __init__(self, robot: str, start_key: int, start_pose):
        self.robot = robot
        self.start_id = start_key
        self.end_id = start_key
        self.poses: Dict[int, Any] = {start_key: start_pose}

    def __len__(self) -> int:
        return len(self.poses)

    def __contains__(self, key: int) -> bool:
        return key in self.poses

    def append(self, prev_key: int, key: int, relative) -> Any:
        if prev_key != self.end_id:
            raise PoseGraphError(
                f"Cannot append {key_label(key)} after {key_label(prev_key)}: "
                f"trajectory '{self.robot}' ends at {key_label(self.end_id)}")
        if key in self.poses:
            raise DuplicateMeasurementError(f"Node {key_label(key)} already in trajectory '{self.robot}'")
        pose = self.poses[self.end_id].compose(relative)
        self.poses[key] = pose
        self.end_id = key
        return pose


class TrajectoryStore:
    """Per-robot trajectories addressed by node key."""

    def __init__(self):
        self.trajectories: Dict[str, Trajectory] = {}

    def __contains__(self, key: int) -> bool:
        traj = self.trajectories.get(robot_of(key))
        return traj is not None and key in traj

    def __len__(self) -> int:
        return sum(len(t) for t in self.trajectories.values())

    def robots(self) -> List[str]:
        return list(self.trajectories)

    def keys(self) -> Iterator[int]:
        for traj in self.trajectories.values():
            yield from traj.poses

    def start(self, key: int, pose) -> None:
        """Open the trajectory of ``robot_of(key)`` at an absolute pose."""
        rid = robot_of(key)
        if rid in self.trajectories:
            raise DuplicateMeasurementError(
                f"Trajectory '{rid}' already started at {key_label(self.trajectories[rid].start_id)}")
        self.trajectories[rid] = Trajectory(rid, key, pose)
        logger.debug("Started trajectory '%s' at %s", rid, key_label(key))

    def append(self, prev_key: int, key: int, relative) -> Any:
        """Compose ``relative`` onto the last pose of ``prev_key``'s robot."""
        traj = self.trajectories.get(robot_of(prev_key))
        if traj is None or prev_key not in traj:
            raise UnknownNodeError(f"Unknown node {key_label(prev_key)}")
        if robot_of(key) != traj.robot:
            raise PoseGraphError(f"{key_label(key)} does not belong to trajectory '{traj.robot}'")
        return traj.append(prev_key, key, relative)

    def pose(self, key: int):
        traj = self.trajectories.get(robot_of(key))
        if traj is None or key not in traj:
            raise UnknownNodeError(f"Unknown node {key_label(key)}")
        return traj.poses[key]

    def pose_between(self, i: int, j: int):
        return self.pose(i).between(self.pose(j))

    def reseed(self, estimate: Mapping[int, Any]) -> int:
        """Replace stored poses by solver estimates, keeping uncertainty.

        Keys unknown to the store are ignored. Returns the number of poses
        replaced.
        """
        replaced = 0
        for traj in self.trajectories.values():
            for key, current in traj.poses.items():
                if key not in estimate:
                    continue
                traj.poses[key] = _with_pose(current, estimate[key])
                replaced += 1
        return replaced


def _with_pose(current, pose):
    if hasattr(current, "covariance"):
        return type(current)(pose, current.covariance, current.covariance_valid)
    return type(current)(pose, current.distance)


class TransformStore:
    """Arena of accepted measurement records keyed by ``(i, j)``."""

    def __init__(self):
        self._records: List[Transform] = []
        self._by_key: Dict[Tuple[int, int], int] = {}

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[Transform]:
        return iter(self._records)

    def __contains__(self, key: Tuple[int, int]) -> bool:
        return tuple(key) in self._by_key

    def insert(self, i: int, j: int, pose, is_separator: bool,
               kind: TransformKind = TransformKind.LOOP_CLOSURE, factor: Any = None) -> Transform:
        """Add a record; a second record for the same ``(i, j)`` is an error."""
        if (i, j) in self._by_key:
            raise DuplicateMeasurementError(f"Measurement {key_label(i)}->{key_label(j)} already stored")
        record = Transform(len(self._records), i, j, pose, bool(is_separator), kind, factor)
        self._records.append(record)
        self._by_key[(i, j)] = record.index
        return record

    def get(self, i: int, j: int) -> Optional[Transform]:
        idx = self._by_key.get((i, j))
        return None if idx is None else self._records[idx]

    def at(self, index: int) -> Transform:
        return self._records[index]

    def of_kind(self, kind: TransformKind) -> List[Transform]:
        return [r for r in self._records if r.kind == kind]

