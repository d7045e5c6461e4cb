import argparse, os, json, csv, logging
from typing import Dict, List, Optional

import numpy as np

from robust_pgo.geometry import POSE3, space_of
from robust_pgo.keys import index_of, key_label, robot_of
from robust_pgo.loader import (load_jrl, initial_values, iter_measurements, groundtruth_by_key,
                               LoaderConfig)
from robust_pgo.models import BetweenFactor, Factor, PriorFactor
from robust_pgo.pcm import PCM, PCMConfig
from robust_pgo.clique import CLIQUE_METHODS
from robust_pgo.solver import RobustPGO
from robust_pgo_common.decision_log import DecisionLogger
from robust_pgo_common.metrics import align_and_ate, classification_metrics
from robust_pgo_common.viz import plot_loop_closures_xy

logger = logging.getLogger("robust_pgo.main")

ANCHOR_SIGMA = 1e-3


def parse_args(argv=None):
    ap = argparse.ArgumentParser(description="Outlier-robust pose graph optimization (PCM) for JRL datasets.")
    ap.add_argument("--jrl", required=True, help="Path to .jrl JSON")
    ap.add_argument("--export-path", required=True, help="Directory to write outputs")
    ap.add_argument("--odom-threshold", type=float, default=10.0,
                    help="Consistency cutoff of a measurement against the odometry chain")
    ap.add_argument("--lc-threshold", type=float, default=10.0,
                    help="Consistency cutoff between two loop closures")
    ap.add_argument("--uncertainty", choices=["covariance", "distance"], default="covariance",
                    help="Uncertainty model used by the consistency norm")
    ap.add_argument("--clique", choices=list(CLIQUE_METHODS), default="incremental",
                    help="Maximum clique maintenance strategy")
    ap.add_argument("--solver", choices=["isam2", "batch"], default="batch",
                    help="Choose iSAM2 (incremental) or LM (batch) solver")
    ap.add_argument("--mode", choices=["batch", "stream"], default="batch",
                    help="Load the whole graph at once, or stream measurements in stamp order")
    ap.add_argument("--batch-size", type=int, default=100, help="Measurements per update in stream mode")
    ap.add_argument("--robust", choices=["none", "huber", "cauchy"], default="none", help="Robust kernel")
    ap.add_argument("--robust-k", type=float, default=None, help="Robust tuning parameter")
    ap.add_argument("--relin-th", type=float, default=0.1, help="iSAM2 relinearize threshold")
    ap.add_argument("--relin-skip", type=int, default=10, help="iSAM2 relinearize skip")
    ap.add_argument("--max-iters", type=int, default=100, help="LM iterations per batch solve")
    ap.add_argument("--reseed", action="store_true",
                    help="Feed each solver estimate back into the trajectory store")
    ap.add_argument("--quat-order", choices=["wxyz", "xyzw"], default="wxyz", help="Quaternion order in file")
    ap.add_argument("--eval-gt", action="store_true", help="Align to ground truth and report ATE")
    ap.add_argument("--plot", action="store_true", help="Export an XY plot with loop-closure decisions")
    ap.add_argument("--decisions-log", default=None,
                    help="JSON-lines file of PCM decisions (default: <export-path>/decisions.jsonl)")
    ap.add_argument("--log", default="INFO", help="Logging level")
    return ap.parse_args(argv)


def ensure_dir(p):
    os.makedirs(p, exist_ok=True)


def anchor_prior(factors: List[Factor], guesses: Dict[int, object]) -> Optional[PriorFactor]:
    """Prior on the first node when the dataset carries none."""
    if any(isinstance(f, PriorFactor) for f in factors):
        return None
    betweens = [f for f in factors if isinstance(f, BetweenFactor)]
    if not betweens:
        return None
    key = min(min(f.key1, f.key2) for f in betweens)
    space = space_of(betweens[0].pose)
    pose = guesses.get(key, space.identity())
    logger.warning("Dataset has no prior; anchoring %s", key_label(key))
    return PriorFactor(key=key, pose=pose, covariance=np.eye(space.dim) * ANCHOR_SIGMA ** 2)


def export_csv_per_robot(estimate: Dict[int, object], out_dir: str):
    ensure_dir(out_dir)
    by_robot: Dict[str, List[int]] = {}
    for k in estimate:
        by_robot.setdefault(robot_of(k), []).append(k)
    for rid, keys in by_robot.items():
        rows = []
        for k in sorted(keys, key=index_of):
            p = estimate[k]
            if space_of(p) is POSE3:
                t = np.asarray(p.translation(), dtype=float)
                q = np.asarray(p.rotation().quaternion(), dtype=float)  # [w, x, y, z]
                rows.append({"key": key_label(k), "x": t[0], "y": t[1], "z": t[2],
                             "qw": q[0], "qx": q[1], "qy": q[2], "qz": q[3]})
            else:
                rows.append({"key": key_label(k), "x": p.x(), "y": p.y(), "theta": p.theta()})
        headers = list(rows[0]) if rows else ["key"]
        csv_path = os.path.join(out_dir, f"trajectory_{rid}.csv")
        with open(csv_path, "w", newline="", encoding="utf-8") as f:
            w = csv.DictWriter(f, fieldnames=headers)
            w.writeheader()
            for r in rows:
                w.writerow(r)


def export_stats_json(pgo: RobustPGO, pcm: PCM, graph_error: float, out_path: str):
    def edges(records):
        return [[key_label(r.i), key_label(r.j)] for r in records]

    payload = {
        "pcm": pcm.stats(),
        "accepted_factors": len(pgo.accepted_factors()),
        "values": pgo.calculate_estimate().size(),
        "solves": pgo.solve_count,
        "final_error": graph_error,
        "inliers": edges(pcm.inliers()),
        "outliers": edges(pcm.outliers()),
        "rejected": [[key_label(f.key1), key_label(f.key2)] for f in pcm.rejected()],
    }
    with open(out_path, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2)


def loop_closure_decisions(pcm: PCM):
    """(factor, accepted) for every loop-closure candidate PCM has seen."""
    out = [(r.factor, False) for r in pcm.outliers()]
    out += [(r.factor, True) for r in pcm.inliers()]
    out += [(f, False) for f in pcm.rejected()]
    return out


def run(args) -> RobustPGO:
    out_dir = os.path.abspath(args.export_path)
    ensure_dir(out_dir)

    cfg = LoaderConfig(quaternion_order=args.quat_order, validate_schema=True)
    doc = load_jrl(args.jrl, cfg)
    guesses = initial_values(doc, cfg)
    factors = list(iter_measurements(doc, cfg))
    if not factors:
        raise ValueError("No factors found in dataset")
    logger.info("Loaded %d measurements and %d initial values from %s",
                len(factors), len(guesses), args.jrl)

    decisions_path = args.decisions_log or os.path.join(out_dir, "decisions.jsonl")
    decisions = DecisionLogger(extra_fields={"dataset": os.path.basename(args.jrl)},
                               log_path=decisions_path, emit_to_logger=True)
    pcm = PCM.from_config(PCMConfig(odom_threshold=args.odom_threshold,
                                    lc_threshold=args.lc_threshold,
                                    uncertainty=args.uncertainty,
                                    clique=args.clique),
                          decisions=decisions)
    pgo = RobustPGO(pcm, solver=args.solver,
                    robust_kind=None if args.robust == "none" else args.robust,
                    robust_k=args.robust_k, reseed=args.reseed, max_iters=args.max_iters,
                    relinearize_threshold=args.relin_th, relinearize_skip=args.relin_skip)
    try:
        prior = anchor_prior(factors, guesses)
        if args.mode == "batch":
            pgo.load_graph(factors, guesses, prior)
        else:
            if prior is not None:
                pgo.update([prior], guesses)
            for start in range(0, len(factors), max(args.batch_size, 1)):
                pgo.update(factors[start:start + args.batch_size], guesses)
    finally:
        decisions.close()

    estimate = pgo.estimate_dict()
    final_err = pgo.get_factors_unsafe().error(pgo.calculate_estimate())
    stats = pcm.stats()
    print(f"PCM: {stats}")
    print(f"Accepted factors: {len(pgo.accepted_factors())}, values: {len(estimate)}")
    print(f"Final graph error: {final_err:.6f}")

    metrics = {"loop_closures": classification_metrics(loop_closure_decisions(pcm))}
    if metrics["loop_closures"]["labelled"]:
        m = metrics["loop_closures"]
        print(f"Loop closures: precision={m['precision']}, recall={m['recall']}")

    gt = groundtruth_by_key(doc, cfg) if args.eval_gt else {}
    if args.eval_gt:
        metrics["ate"] = align_and_ate(estimate, gt)
        print(f"ATE (aligned): matches={metrics['ate']['matches']}, rmse={metrics['ate']['rmse']}")
    with open(os.path.join(out_dir, "metrics.json"), "w", encoding="utf-8") as f:
        json.dump(metrics, f, indent=2)

    export_csv_per_robot(estimate, os.path.join(out_dir, "trajectories"))
    export_stats_json(pgo, pcm, final_err, os.path.join(out_dir, "graph_stats.json"))
    if args.plot:
        plot_loop_closures_xy(estimate,
                              inliers=[r.key for r in pcm.inliers()],
                              outliers=[r.key for r in pcm.outliers()],
                              rejected=[(f.key1, f.key2) for f in pcm.rejected()],
                              path_png=os.path.join(out_dir, "trajectories_xy.png"),
                              ground_truth=gt or None)
    print(f"Artifacts written to: {out_dir}")
    return pgo


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(level=args.log.upper(),
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    run(args)


if __name__ == "__main__":
    main()
