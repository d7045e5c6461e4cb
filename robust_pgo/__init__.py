"""robust_pgo: pairwise-consistency outlier rejection for pose graphs.

This package provides:
- An uncertainty-aware pose algebra (covariance or path-distance flavour)
- Per-robot trajectory and accepted-transform stores
- Consistency checks for odometry, loop closures and loop-closure pairs
- A consistency graph with exact (incremental) maximum clique selection
- The PCM outlier remover and a RobustPGO wrapper around GTSAM solvers
- A JSON dataset loader (JRL layout)

Design intent:
The decision logic (geometry, trajectory, consistency, clique, pcm) never
touches the solver; the solver boundary lives in graph/solver so either side
can be swapped without touching the other.
"""
__all__ = [
    "keys", "models", "geometry", "trajectory", "consistency", "clique",
    "pcm", "robust", "graph", "solver", "loader",
]
__version__ = "0.1.0"
