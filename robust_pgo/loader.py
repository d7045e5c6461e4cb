import json
from typing import Dict, Any, Iterator, Optional, List, Tuple, Set
from dataclasses import dataclass
import logging

from .keys import parse_key
from .models import (
    Quaternion, Translation, InitEntry, PriorFactor, BetweenFactor, Factor,
    JRLDocument, pose3_from, to_covariance
)

logger = logging.getLogger("robust_pgo.loader")


@dataclass
class LoaderConfig:
    quaternion_order: str = "wxyz"   # dataset uses [w,x,y,z]
    validate_schema: bool = True


def _q_from_list(q: List[float], order: str) -> Quaternion:
    if order == "wxyz":
        if len(q) != 4: raise ValueError("Quaternion must be [w,x,y,z]")
        return Quaternion(q[0], q[1], q[2], q[3])
    elif order == "xyzw":
        if len(q) != 4: raise ValueError("Quaternion must be [x,y,z,w]")
        return Quaternion(q[3], q[0], q[1], q[2])
    else:
        raise ValueError(f"Unsupported quaternion order: {order}")


def _t_from_list(t: List[float]) -> Translation:
    if len(t) != 3: raise ValueError("Translation must be [x,y,z]")
    return Translation(t[0], t[1], t[2])


def _pose_from(d: Dict[str, Any], cfg: LoaderConfig):
    return pose3_from(_q_from_list(d["rotation"], cfg.quaternion_order), _t_from_list(d["translation"]))


def load_jrl(path: str, cfg: Optional[LoaderConfig] = None) -> JRLDocument:
    cfg = cfg or LoaderConfig()
    if cfg.quaternion_order not in ("wxyz", "xyzw"):
        raise ValueError(f"Unsupported quaternion order: {cfg.quaternion_order}")
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    doc = JRLDocument(
        measurements=data.get("measurements", {}),
        outlier_factors=data.get("outlier factors", []) or data.get("outlier_factors", []),
        initialisation=data.get("initialisation", []) or data.get("initialization", []),
        ground_truth=data.get("ground truth", {}) or data.get("groundtruth", {}) or data.get("ground_truth", {}),
        metadata={k: data[k] for k in ("name", "robots") if k in data},
    )
    if cfg.validate_schema:
        if not isinstance(doc.measurements, (dict, list)):
            logger.warning("measurements is not dict/list; got %s", type(doc.measurements))
        if not isinstance(doc.initialisation, (list, dict)):
            logger.warning("initialisation is not list/dict; got %s", type(doc.initialisation))
    return doc


def _as_index_pair(item: Any) -> Optional[Tuple[int, int]]:
    """Return (frame_idx, measurement_idx) if `item` encodes such coordinates."""
    if isinstance(item, (list, tuple)) and len(item) >= 2:
        try:
            return int(item[0]), int(item[1])
        except (TypeError, ValueError):
            return None
    if isinstance(item, dict):
        frame = item.get("frame", item.get("frame_idx"))
        meas = item.get("measurement", item.get("measurement_idx"))
        if frame is None or meas is None:
            return None
        try:
            return int(frame), int(meas)
        except (TypeError, ValueError):
            return None
    return None


def _build_outlier_lookup(entries: Any) -> Dict[str, Set[Tuple[int, int]]]:
    """Map robot id -> {(frame_idx, measurement_idx), ...} of labelled outliers."""
    lookup: Dict[str, Set[Tuple[int, int]]] = {}
    if isinstance(entries, dict):
        for rid, seq in entries.items():
            coords = {p for p in map(_as_index_pair, seq or []) if p is not None} if isinstance(seq, list) else set()
            if coords:
                lookup[str(rid)] = coords
    elif isinstance(entries, list):
        coords = {p for p in map(_as_index_pair, entries) if p is not None}
        if coords:
            lookup["global"] = coords
    return lookup


def _is_flagged(lookup: Dict[str, Set[Tuple[int, int]]], rid: str, frame_idx: int, meas_idx: int) -> bool:
    pair = (frame_idx, meas_idx)
    return pair in lookup.get(str(rid), ()) or pair in lookup.get("global", ())


def iter_init_entries(doc: JRLDocument, cfg: Optional[LoaderConfig] = None) -> Iterator[InitEntry]:
    """Yield InitEntry. Supports list OR dict-per-robot."""
    cfg = cfg or LoaderConfig()
    init = doc.initialisation or []
    if isinstance(init, list):
        iterable = [("global", x) for x in init]
    elif isinstance(init, dict):
        iterable = [(rid, x) for rid, lst in init.items() for x in (lst or [])]
    else:
        iterable = []

    for idx, (rid, it) in enumerate(iterable):
        try:
            yield InitEntry(key=parse_key(it["key"]), pose=_pose_from(it.get("prior", it), cfg))
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Skipping malformed initialization[%s][%d]: %s", rid, idx, e)


def initial_values(doc: JRLDocument, cfg: Optional[LoaderConfig] = None) -> Dict[int, Any]:
    return {e.key: e.pose for e in iter_init_entries(doc, cfg)}


def _parse_prior(meas: Dict[str, Any], stamp: float, cfg: LoaderConfig) -> Optional[PriorFactor]:
    try:
        return PriorFactor(key=parse_key(meas["key"]), pose=_pose_from(meas.get("prior", meas), cfg),
                           covariance=to_covariance(meas["covariance"]), stamp=float(stamp))
    except (KeyError, TypeError, ValueError) as e:
        logger.warning("Skipping PriorFactorPose3: %s", e)
        return None


def _parse_between(meas: Dict[str, Any], stamp: float, cfg: LoaderConfig,
                   is_outlier: Optional[bool]) -> Optional[BetweenFactor]:
    try:
        key1 = meas.get("key1", meas.get("key_from"))
        key2 = meas.get("key2", meas.get("key_to"))
        if key1 is None or key2 is None:
            raise KeyError("Missing key1/key2 (or key_from/key_to)")
        return BetweenFactor(key1=parse_key(key1), key2=parse_key(key2),
                             pose=_pose_from(meas.get("measurement", meas), cfg),
                             covariance=to_covariance(meas["covariance"]), stamp=float(stamp),
                             is_outlier=is_outlier)
    except (KeyError, TypeError, ValueError) as e:
        logger.warning("Skipping BetweenFactorPose3: %s", e)
        return None


def _parse(meas: Dict[str, Any], stamp: float, cfg: LoaderConfig,
           is_outlier: Optional[bool] = None) -> Optional[Factor]:
    t = (meas.get("type") or "").strip()
    if t == "PriorFactorPose3":
        return _parse_prior(meas, stamp, cfg)
    if t == "BetweenFactorPose3":
        return _parse_between(meas, stamp, cfg, is_outlier)
    logger.debug("Ignoring measurement of type %r", t)
    return None


def iter_measurements(doc: JRLDocument, cfg: Optional[LoaderConfig] = None) -> Iterator[Factor]:
    """Yield Prior/Between factors sorted by 'stamp' (stable within a stamp).

    Handles:
    - dict per robot: measurements['a'] is a LIST OF FRAMES with {'stamp','measurements':[...]}
    - flat list with 'type' per item

    Measurements listed under ``outlier factors`` are kept and tagged
    ``is_outlier=True``; when the document carries labels every other
    between factor is tagged ``is_outlier=False``.
    """
    cfg = cfg or LoaderConfig()
    out: List[Factor] = []
    lookup = _build_outlier_lookup(doc.outlier_factors)
    labelled = bool(lookup)
    flagged = 0

    ms = doc.measurements
    if isinstance(ms, dict):
        for rid, seq in (ms or {}).items():
            if not isinstance(seq, list):
                logger.warning("Skipping measurements['%s']: expected a list of frames", rid)
                continue
            for frame_idx, frame in enumerate(seq):
                stamp = frame.get("stamp", 0.0)
                for meas_idx, m in enumerate(frame.get("measurements", []) or []):
                    is_outlier = None
                    if labelled:
                        is_outlier = _is_flagged(lookup, rid, frame_idx, meas_idx)
                        flagged += int(is_outlier)
                    f = _parse(m, stamp, cfg, is_outlier)
                    if f is not None:
                        out.append(f)
    elif isinstance(ms, list):
        for m in ms:
            f = _parse(m, m.get("stamp", 0.0), cfg)
            if f is not None:
                out.append(f)

    if labelled:
        logger.info("Tagged %d labelled outliers among %d measurements", flagged, len(out))

    out.sort(key=lambda x: x.stamp)
    yield from out


def groundtruth_by_key(doc: JRLDocument, cfg: Optional[LoaderConfig] = None) -> Dict[int, Any]:
    """Ground-truth poses by key; accepts ``{"a": [{key, rotation, translation}]}``."""
    cfg = cfg or LoaderConfig()
    gt = doc.ground_truth
    out: Dict[int, Any] = {}
    if not isinstance(gt, dict):
        return out
    for rid, seq in gt.items():
        if not isinstance(seq, list):
            continue
        for idx, item in enumerate(seq):
            try:
                out[parse_key(item["key"])] = _pose_from(item.get("pose", item), cfg)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping groundtruth[%s][%d]: %s", rid, idx, e)
    return out
