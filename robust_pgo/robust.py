from typing import Optional
import numpy as np

try:
    import gtsam
except Exception:
    gtsam = None

HUBER_K = 1.345
CAUCHY_K = 1.0


def make_spd(cov: np.ndarray, eps: float = 1e-9) -> np.ndarray:
    """Diagonal shift that makes ``cov`` positive definite.

    Accepted factors can carry singular covariances: a zeroed rotation block
    from a degenerate measurement, or an all-zero matrix. Non-finite entries
    count as zero. The result is symmetric with its lowest eigenvalue lifted
    to at least ``eps``.
    """
    cov = np.where(np.isfinite(cov), np.asarray(cov, dtype=float), 0.0)
    cov = 0.5 * (cov + cov.T)
    shift = eps - min(float(np.linalg.eigvalsh(cov).min()), 0.0)
    return cov + np.eye(cov.shape[0]) * shift


def gaussian_from_covariance(cov: np.ndarray):
    """GTSAM Gaussian noise model for a (possibly singular) covariance."""
    if gtsam is None:
        raise RuntimeError("GTSAM not available; cannot build noise model")
    return gtsam.noiseModel.Gaussian.Covariance(np.ascontiguousarray(make_spd(cov), dtype=np.float64))


def robustify(base, kind: Optional[str] = None, k: Optional[float] = None):
    """Put an M-estimator around ``base``.

    ``kind`` is ``"huber"``, ``"cauchy"``, or ``None``/``"none"`` for the
    plain model. PCM already filters the loop closures; the kernel only
    dampens the residual inconsistency of what it lets through.
    """
    if gtsam is None:
        raise RuntimeError("GTSAM not available; cannot build robust model")
    name = (kind or "none").lower()
    if name == "none":
        return base
    if name == "huber":
        loss = gtsam.noiseModel.mEstimator.Huber(HUBER_K if k is None else k)
    elif name == "cauchy":
        loss = gtsam.noiseModel.mEstimator.Cauchy(CAUCHY_K if k is None else k)
    else:
        raise ValueError(f"Unsupported robust kernel: {kind}")
    return gtsam.noiseModel.Robust.Create(loss, base)
