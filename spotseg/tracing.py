"""Per-sweep diagnostics history kept on a segmentation state."""
import logging
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

logger = logging.getLogger(__name__)

# Summed across partitions when histories are merged.
ADDITIVE_KEYS = ("n_components", "n_noise", "log_likelihood", "n_reassigned")
# Averaged across partitions, weighted by partition size.
WEIGHTED_KEYS = ("reassigned_frac", "noise_density")
HISTORY_KEYS = ADDITIVE_KEYS + WEIGHTED_KEYS


def new_tracer(n_points: int = 0) -> Dict[str, Any]:
    tracer: Dict[str, Any] = {k: [] for k in HISTORY_KEYS}
    tracer["n_points"] = int(n_points)
    tracer["n_iterations"] = 0
    tracer["status"] = None
    return tracer


def trace_step(tracer: Dict[str, Any], **values) -> None:
    for key, value in values.items():
        tracer.setdefault(key, []).append(value)
    tracer["n_iterations"] = tracer.get("n_iterations", 0) + 1


def _padded(values: List[float], length: int, fill: float = np.nan) -> np.ndarray:
    arr = np.asarray(values, dtype=np.float64)
    if len(arr) == 0:
        # no sweeps ran: the partition's current value, or NaN to leave it out
        return np.full(length, fill, dtype=np.float64)
    if len(arr) < length:
        # partitions that converged early keep their last value
        arr = np.concatenate([arr, np.full(length - len(arr), arr[-1])])
    return arr


def merge_tracers(tracers: Sequence[Dict[str, Any]], n_points: Optional[Sequence[int]] = None,
                  current: Optional[Sequence[Dict[str, float]]] = None) -> Dict[str, Any]:
    """Combine partition histories into one history aligned by sweep number.

    `current` holds, per partition, values used in place of a history that has no
    entries (a partition stopped before its first sweep), e.g. its component count.
    Keys without such a value leave that partition out of the sums and averages.
    """
    if n_points is None:
        n_points = [t.get("n_points", 0) for t in tracers]
    if current is None:
        current = [{} for _ in tracers]
    weights = np.asarray(n_points, dtype=np.float64)
    if weights.sum() <= 0:
        weights = np.ones(len(tracers))

    res = new_tracer(int(sum(n_points)))
    length = max([len(t.get("n_components", [])) for t in tracers] + [0])
    for key in HISTORY_KEYS:
        if length == 0:
            continue
        stacked = np.vstack([_padded(t.get(key, []), length, cur.get(key, np.nan))
                             for t, cur in zip(tracers, current)])
        present = ~np.isnan(stacked)
        if key in ADDITIVE_KEYS:
            res[key] = np.where(present, stacked, 0.0).sum(axis=0).tolist()
        else:
            w = weights[:, None] * present
            total = w.sum(axis=0)
            avg = (w * np.where(present, stacked, 0.0)).sum(axis=0) / np.where(total > 0, total, 1.0)
            res[key] = np.where(total > 0, avg, np.nan).tolist()

    res["n_iterations"] = length
    statuses = [t.get("status") for t in tracers]
    res["status"] = statuses[0] if len(set(statuses)) == 1 else "mixed"
    res["partitions"] = [dict(t) for t in tracers]

    fingerprints = {t.get("params_fingerprint") for t in tracers if t.get("params_fingerprint")}
    if len(fingerprints) > 1:
        logger.warning("Merging partitions segmented with %d different parameter sets", len(fingerprints))
    if len(fingerprints) == 1:
        res["params_fingerprint"] = fingerprints.pop()
    return res
