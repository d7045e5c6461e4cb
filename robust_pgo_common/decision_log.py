"""Structured decision events (accept / reject / clique updates)."""
from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, Iterable, Optional

logger = logging.getLogger("robust_pgo.decisions")


class DecisionLogger:
    """Emit one JSON event per outlier-rejection decision.

    Events go to the ``robust_pgo.decisions`` logger at DEBUG level and, when
    ``log_path`` is given, to a JSON-lines file. ``enabled=False`` silences
    both, which is what a quiet run uses.
    """

    def __init__(
        self,
        enabled: bool = True,
        extra_fields: Optional[Dict[str, Any]] = None,
        log_path: Optional[str] = None,
        emit_to_logger: bool = True,
    ):
        self.enabled = enabled
        self._extra = extra_fields.copy() if extra_fields else {}
        self._emit_to_logger = emit_to_logger
        self._fh = None
        self.counts: Dict[str, int] = {}
        if log_path:
            self._fh = open(log_path, "w", encoding="utf-8")

    def _emit(self, event: str, **fields: Any) -> None:
        if not self.enabled:
            return
        self.counts[event] = self.counts.get(event, 0) + 1
        payload = {"event": event, "ts": time.time()}
        payload.update(self._extra)
        payload.update({k: v for k, v in fields.items() if v is not None})
        if self._emit_to_logger:
            logger.debug("DECISION %s", json.dumps(payload, sort_keys=True))
        if self._fh:
            self._fh.write(json.dumps(payload, sort_keys=True) + "\n")
            self._fh.flush()

    def prior(self, key: str) -> None:
        self._emit("prior", key=key)

    def odometry(self, key1: str, key2: str, accepted: bool, distance: Optional[float] = None) -> None:
        self._emit("odometry", key1=key1, key2=key2, accepted=accepted,
                   distance=None if distance is None else _finite_or_none(distance))

    def separator(self, key1: str, key2: str) -> None:
        self._emit("separator", key1=key1, key2=key2)

    def loop_closure(self, key1: str, key2: str, admitted: bool, distance: float, **fields: Any) -> None:
        self._emit("loop_closure", key1=key1, key2=key2, admitted=admitted,
                   distance=_finite_or_none(distance), **fields)

    def clique(self, size: int, vertices: int, edges: int,
               promoted: Iterable[str] = (), demoted: Iterable[str] = ()) -> None:
        self._emit("clique", size=size, vertices=vertices, edges=edges,
                   promoted=list(promoted) or None, demoted=list(demoted) or None)

    def close(self) -> None:
        if self._fh:
            try:
                self._fh.close()
            finally:
                self._fh = None


def _finite_or_none(value: float) -> Optional[float]:
    # json.dumps would write Infinity, which is not valid JSON
    if value != value or value in (float("inf"), float("-inf")):
        return None
    return float(value)
