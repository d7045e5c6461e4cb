"""Node keys: robot tag + index, packed with the gtsam.Symbol bit layout.

The top 8 bits hold the robot character and the low 56 bits the node index,
so ``make_key('a', 3) == gtsam.symbol('a', 3)`` and keys sort by robot first,
then by index.
"""
from typing import Union

_CHR_BITS = 8
_INDEX_BITS = 64 - _CHR_BITS
_INDEX_MASK = (1 << _INDEX_BITS) - 1

GLOBAL_ROBOT = "global"


def make_key(robot: str, index: int) -> int:
    """Key for node ``index`` of robot ``robot`` (a single character)."""
    if len(robot) != 1 or ord(robot) > 0xFF:
        raise ValueError(f"Robot tag must be a single character, got {robot!r}")
    if index < 0 or index > _INDEX_MASK:
        raise ValueError(f"Node index out of range: {index}")
    return (ord(robot) << _INDEX_BITS) | int(index)


def robot_of(key: int) -> str:
    """Robot tag of a key; plain integer keys belong to the global robot."""
    code = (int(key) >> _INDEX_BITS) & 0xFF
    return chr(code) if code else GLOBAL_ROBOT


def index_of(key: int) -> int:
    return int(key) & _INDEX_MASK


def key_label(key: int) -> str:
    """Human readable label, e.g. ``a12`` (or ``12`` for plain keys)."""
    rid = robot_of(key)
    if rid == GLOBAL_ROBOT:
        return str(index_of(key))
    return f"{rid}{index_of(key)}"


def parse_key(key: Union[str, int]) -> int:
    """Parse dataset keys: ints stay ints, ``"a12"`` becomes symbol('a', 12)."""
    if isinstance(key, bool):
        raise ValueError(f"Invalid key {key!r}")
    if isinstance(key, int):
        return key
    kid = str(key).strip()
    if kid.isdigit():
        return int(kid)
    digits = kid[1:]
    if kid and kid[0].isalpha() and digits.isdigit():
        return make_key(kid[0], int(digits))
    raise ValueError(f"Cannot interpret key {key!r}")


def are_consecutive(i: int, j: int) -> bool:
    """True when ``j`` directly follows ``i`` on the same robot."""
    return robot_of(i) == robot_of(j) and index_of(j) == index_of(i) + 1
