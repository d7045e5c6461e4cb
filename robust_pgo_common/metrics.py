from typing import Any, Dict, Iterable, Mapping, Optional
import math

import numpy as np


def _translation_xyz(pose) -> np.ndarray:
    t = np.asarray(pose.translation(), dtype=float).reshape(-1)
    if t.size == 2:
        t = np.append(t, 0.0)
    return t


def _umeyama(A: np.ndarray, B: np.ndarray, with_scale: bool = False):
    """Rigid (optionally similarity) alignment from A->B (Nx3). Returns R(3x3), t(3), s."""
    assert A.shape == B.shape and A.shape[1] == 3
    muA, muB = A.mean(0), B.mean(0)
    AA, BB = A - muA, B - muB
    C = AA.T @ BB / A.shape[0]
    U, S, Vt = np.linalg.svd(C)
    R = Vt.T @ U.T
    if np.linalg.det(R) < 0:
        Vt[-1, :] *= -1
        R = Vt.T @ U.T
    if with_scale:
        varA = (AA**2).sum() / A.shape[0]
        s = (S.sum() / varA) if varA > 0 else 1.0
    else:
        s = 1.0
    t = muB - s * (R @ muA)
    return R, t, s


def classification_metrics(decisions: Iterable[Any]) -> Dict[str, Optional[float]]:
    """Score loop-closure decisions against dataset labels.

    ``decisions`` yields ``(factor, accepted)`` pairs; factors without an
    ``is_outlier`` label are ignored. Positive class = inlier (accepted).
    """
    tp = fp = tn = fn = 0
    for factor, accepted in decisions:
        label = getattr(factor, "is_outlier", None)
        if label is None:
            continue
        if accepted and not label:
            tp += 1
        elif accepted and label:
            fp += 1
        elif not accepted and label:
            tn += 1
        else:
            fn += 1
    precision = tp / (tp + fp) if (tp + fp) else None
    recall = tp / (tp + fn) if (tp + fn) else None
    f1 = None
    if precision is not None and recall is not None and (precision + recall) > 0:
        f1 = 2 * precision * recall / (precision + recall)
    return {
        "labelled": tp + fp + tn + fn,
        "true_positives": tp,
        "false_positives": fp,
        "true_negatives": tn,
        "false_negatives": fn,
        "precision": precision,
        "recall": recall,
        "f1": f1,
    }


def align_and_ate(estimate: Mapping[int, Any], ground_truth: Mapping[int, Any],
                  with_scale: bool = False) -> Dict[str, Any]:
    """Compute SE(3) alignment and ATE-RMSE over keys present in both maps."""
    common = sorted(k for k in estimate if k in ground_truth)
    if len(common) < 3:
        return {"matches": len(common), "rmse": None}
    X_est = np.array([_translation_xyz(estimate[k]) for k in common])
    X_gt = np.array([_translation_xyz(ground_truth[k]) for k in common])
    R, t, s = _umeyama(X_est, X_gt, with_scale=with_scale)
    X_aligned = s * (X_est @ R.T) + t
    err = X_aligned - X_gt
    rmse = math.sqrt((err**2).sum(axis=1).mean())
    return {
        "matches": len(common),
        "rmse": rmse,
        "R": R.tolist(),
        "t": t.tolist(),
        "s": s,
    }
