from typing import Any, Callable, Dict, List, Literal, Optional, Sequence, Tuple
import logging
import os

import numpy as np
import pandas as pd

from .bmm_algorithm import EngineStatus, run_bmm
from .bmm_data import SegmentationState, merge_states
from .component import CenterPrior, Component, components_from_assignment
from .config import fingerprint_params, load_params_yaml, segmentation_params
from .io import ensure_dir, save_table
from .logging_utils import setup_logger
from .tracing import HISTORY_KEYS
from .triangulation import adjacency_list, adjacency_weights

logger = logging.getLogger(__name__)


def _preferred_n_jobs() -> int:
    """Return preferred parallel worker count.

    Env var SPOTSEG_N_JOBS is an explicit override.
    Fallback heuristic: use ~1/3 of available CPUs, cap <=32.
    """
    v_raw = os.environ.get("SPOTSEG_N_JOBS", "").strip()
    if v_raw:
        v = int(v_raw)
        if v > 0:
            return v
    cpu = max(1, os.cpu_count() or 4)
    return max(1, min(32, cpu // 3 if cpu >= 3 else 1))


def _joblib_backend() -> str:
    # 'loky' for CPU-bound partitions; override via SPOTSEG_JOBLIB_BACKEND (e.g. 'threading').
    return os.environ.get("SPOTSEG_JOBLIB_BACKEND", "loky")


def build_state(df: pd.DataFrame, components: List[Component], assignment, sampler: Component,
                params: Optional[Dict[str, Any]] = None) -> SegmentationState:
    """Build the proximity graph for `df` and wrap everything into a segmentation state."""
    params = params or segmentation_params()
    adj = adjacency_list(df, filter=bool(params['graph']['filter']), n_mads=float(params['graph']['n_mads']),
                         random_state=params.get('random_state'))
    weights = adjacency_weights(adj, real_edge_weight=float(params['real_edge_weight']),
                                self_weight=params.get('self_edge_weight'))
    return SegmentationState(components, df, adj, weights, float(params['real_edge_weight']), sampler,
                             assignment, k_neighbors=int(params['k_neighbors']),
                             update_priors=params['update_priors'])


def run_state(state: SegmentationState, params: Optional[Dict[str, Any]] = None,
              should_stop: Optional[Callable[[], bool]] = None, show_progress: bool = False) -> EngineStatus:
    params = params or segmentation_params()
    bmm = params['bmm']
    return run_bmm(
        state,
        max_iters=int(bmm['max_iters']),
        tol=float(bmm['tol']),
        stochastic=bool(bmm['stochastic']),
        size_penalty=float(bmm['size_penalty']),
        min_noise_frac=float(bmm['min_noise_frac']),
        new_components_per_sweep=int(bmm['new_components_per_sweep']),
        update_cooccurrence=bool(bmm['update_cooccurrence']),
        time_budget=bmm.get('time_budget'),
        should_stop=should_stop,
        random_state=params.get('random_state'),
        show_progress=show_progress,
        params_fingerprint=fingerprint_params(params),
    )


def segment_molecules(df: pd.DataFrame, components: List[Component], assignment, sampler: Component,
                      params: Optional[Dict[str, Any]] = None, should_stop: Optional[Callable[[], bool]] = None,
                      show_progress: bool = False) -> SegmentationState:
    """Segment one partition: graph, state, then sweeps until convergence."""
    state = build_state(df, components, assignment, sampler, params)
    run_state(state, params, should_stop=should_stop, show_progress=show_progress)
    return state


def split_into_frames(df: pd.DataFrame, n_frames: int) -> List[np.ndarray]:
    """Split molecules into `n_frames` vertical strips of roughly equal size (x quantiles).

    Returns row positions of each frame. Every frame must keep at least 3
    non-collinear molecules for triangulation.
    """
    n = len(df)
    if n_frames <= 1 or n == 0:
        return [np.arange(n)]
    xs = df["x"].to_numpy(dtype=np.float64)
    borders = np.quantile(xs, np.linspace(0, 1, n_frames + 1)[1:-1])
    frame_ids = np.searchsorted(borders, xs, side="right")
    return [np.flatnonzero(frame_ids == f) for f in range(n_frames) if (frame_ids == f).any()]


def _frame_inputs(df: pd.DataFrame, assignment: np.ndarray, frame_idx: np.ndarray, sampler: Component,
                  centers: Optional[Sequence[Optional[CenterPrior]]]) -> Tuple[pd.DataFrame, List[Component], np.ndarray]:
    sub = df.iloc[frame_idx].reset_index(drop=True)
    global_ids = assignment[frame_idx]
    used = np.unique(global_ids[global_ids > 0])
    local = np.zeros(len(frame_idx), dtype=np.int64)
    local[global_ids > 0] = np.searchsorted(used, global_ids[global_ids > 0]) + 1
    frame_centers = None
    if centers is not None:
        frame_centers = [centers[g - 1] if g - 1 < len(centers) else None for g in used]
    comps = components_from_assignment(sub[["x", "y"]].to_numpy(), sub["gene"].to_numpy(), local, sampler,
                                       centers=frame_centers)
    return sub, comps, local


def _segment_frame(sub: pd.DataFrame, comps: List[Component], local: np.ndarray, sampler: Component,
                   params: Dict[str, Any]) -> SegmentationState:
    return segment_molecules(sub, comps, local, sampler, params)


def segment_partitions(df: pd.DataFrame, assignment, sampler: Component,
                       centers: Optional[Sequence[Optional[CenterPrior]]] = None,
                       params: Optional[Dict[str, Any]] = None, n_frames: Optional[int] = None,
                       n_jobs: Optional[int] = None) -> SegmentationState:
    """Segment x-strips of `df` as independent tasks and merge the results.

    `assignment` is the initial (global) assignment from the seeding step; components are
    rebuilt per frame from it, so a cell crossing a frame border becomes one component per frame.
    Note that the merged table is ordered frame by frame, not in the input order.
    """
    from joblib import Parallel, delayed

    params = params or segmentation_params()
    n_frames = int(n_frames or params['partitions']['n_frames'] or 1)
    assignment = np.asarray(assignment, dtype=np.int64)
    frames = split_into_frames(df, n_frames)
    inputs = [_frame_inputs(df, assignment, idx, sampler, centers) for idx in frames]
    logger.info("Segmenting %d frames of sizes %s", len(frames), [len(f) for f in frames])

    if len(inputs) == 1:
        states = [_segment_frame(*inputs[0], sampler, params)]
    else:
        n_jobs = int(n_jobs or params['partitions'].get('n_jobs') or _preferred_n_jobs())
        states = Parallel(n_jobs=min(n_jobs, len(inputs)), backend=_joblib_backend(), verbose=0)(
            delayed(_segment_frame)(sub, comps, local, sampler, params) for sub, comps, local in inputs
        )
    return merge_states(states)


def write_outputs(state: SegmentationState, out_dir: str, gene_names: Optional[Sequence[str]] = None,
                  final_format: Literal["parquet", "csv"] = "csv", add_qc: bool = True) -> Dict[str, str]:
    ensure_dir(out_dir)
    ext = "parquet" if final_format == "parquet" else "csv"
    seg_path = os.path.join(out_dir, f"segmentation.{ext}")
    stat_path = os.path.join(out_dir, f"cell_stats.{ext}")
    save_table(state.segmentation_table(gene_names), seg_path)
    save_table(state.cell_statistics_table(add_qc=add_qc), stat_path)

    history = {k: state.tracer[k] for k in HISTORY_KEYS if k in state.tracer}
    hist_path = os.path.join(out_dir, "trace_history.csv")
    if history and len({len(v) for v in history.values()}) == 1:
        pd.DataFrame(history).to_csv(hist_path, index_label="iteration")
    else:
        hist_path = None
    logger.info("Wrote %s and %s", seg_path, stat_path)
    return {"segmentation": seg_path, "cell_stats": stat_path, "trace_history": hist_path}


def run_pipeline(df: pd.DataFrame, assignment, sampler: Component, out_dir: Optional[str] = None,
                 centers: Optional[Sequence[Optional[CenterPrior]]] = None, gene_names: Optional[Sequence[str]] = None,
                 params_path: Optional[str] = None, final_format: Literal["parquet", "csv"] = "csv",
                 **overrides) -> SegmentationState:
    """Load parameters, segment (partitioned when `partitions.n_frames` > 1) and optionally write outputs."""
    setup_logger(out_dir)
    params = segmentation_params(load_params_yaml(params_path), **overrides)
    logger.info("spotseg pipeline start: %d molecules", len(df))
    try:
        state = segment_partitions(df, assignment, sampler, centers=centers, params=params)
    except Exception:
        logger.exception("Segmentation failed")
        raise
    if out_dir:
        write_outputs(state, out_dir, gene_names=gene_names, final_format=final_format)
    logger.info("Pipeline finished: %d cells, %d noise molecules",
                int((state.molecules_per_cell() > 0).sum()), int((state.assignment == 0).sum()))
    return state
