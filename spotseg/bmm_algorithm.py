"""Iterative reassignment of molecules between mixture components and noise.

Each iteration optionally seeds new components in noise regions, re-estimates
the noise model, then sweeps over all molecules and moves each one to its
best-scoring candidate. Components emptied by the sweep are pruned and the
survivors are refit on their new membership (according to the prior-update
policy), so the returned state always carries parameters fit to its assignment.
"""
import logging
import time
from enum import Enum
from typing import Callable, Optional, Union

import numpy as np
from scipy.special import softmax

from .bmm_data import SegmentationState, UpdatePriors
from .component import Component
from .errors import InvalidComponentReference
from .progress import progress_iter
from .tracing import trace_step

logger = logging.getLogger(__name__)


class EngineStatus(str, Enum):
    INITIALIZED = "initialized"
    SWEEPING = "sweeping"
    PRIOR_UPDATE = "prior_update"
    PRUNING = "pruning"
    CONVERGED = "converged"
    MAX_ITER_REACHED = "max_iter_reached"
    STOPPED = "stopped"


def _members_by_component(assignment: np.ndarray, n_components: int):
    order = np.argsort(assignment, kind="stable")
    bounds = np.searchsorted(assignment[order], np.arange(n_components + 2))
    return order, bounds


def update_noise_density(state: SegmentationState, min_noise_frac: float = 1e-3) -> float:
    """Uniform background over the bounding box and the gene vocabulary,
    scaled by the fraction of molecules currently assigned to noise."""
    if state.n_points == 0:
        state.noise_density = 0.0
        return 0.0
    extent = np.ptp(state.position_data, axis=0)
    area = float(np.prod(extent))
    if area <= 0:
        area = float(max(extent.max(), 1.0))
    noise_frac = max(float((state.assignment == 0).mean()), min_noise_frac)
    state.noise_density = noise_frac / (area * state.n_genes)
    return state.noise_density


def _edge_arrays(state: SegmentationState):
    lens = np.fromiter((len(ap) for ap in state.adjacent_points), dtype=np.int64, count=state.n_points)
    rows = np.repeat(np.arange(state.n_points), lens)
    cols = np.concatenate(state.adjacent_points) if state.n_points > 0 else np.empty(0, dtype=np.int64)
    mask = rows != cols
    return rows[mask], cols[mask]


def estimate_gene_cooccurrence(state: SegmentationState) -> np.ndarray:
    """Gene co-occurrence around noise molecules.

    Counts (gene_i, gene_j) over graph edges of molecules assigned to noise,
    symmetrises the counts, adds a pseudocount and normalises rows. Without noise
    molecules the current matrix is kept.
    """
    rows, cols = _edge_arrays(state)
    is_noise = state.assignment[rows] == 0
    if not is_noise.any():
        return state.gene_probs_given_single_transcript
    n_genes = state.n_genes
    genes = state.composition_data
    counts = np.zeros((n_genes, n_genes))
    np.add.at(counts, (genes[rows[is_noise]], genes[cols[is_noise]]), 1.0)
    counts = counts + counts.T + 1.0
    state.gene_probs_given_single_transcript = counts / counts.sum(axis=1, keepdims=True)
    return state.gene_probs_given_single_transcript


def noise_covariates(state: SegmentationState) -> np.ndarray:
    """Per-molecule log ratio of neighbour co-occurrence against a uniform vocabulary.

    Zero for molecules without graph neighbours and everywhere while the
    co-occurrence matrix is uniform.
    """
    res = np.zeros(state.n_points)
    rows, cols = _edge_arrays(state)
    if len(rows) == 0:
        return res
    genes = state.composition_data
    probs = state.gene_probs_given_single_transcript[genes[rows], genes[cols]]
    sums = np.bincount(rows, weights=probs, minlength=state.n_points)
    cnt = np.bincount(rows, minlength=state.n_points)
    has = cnt > 0
    res[has] = np.log(state.n_genes * sums[has] / cnt[has])
    return res


def sweep(state: SegmentationState, rng: np.random.Generator, stochastic: bool = False,
          size_penalty: float = 1.0, noise_cov: Optional[np.ndarray] = None) -> int:
    """One pass over all molecules in random order. Returns the number of reassigned molecules."""
    if noise_cov is None:
        noise_cov = noise_covariates(state)
    n_comps = len(state.components)
    log_noise = np.log(state.noise_density) if state.noise_density > 0 else -np.inf
    assignment = state.assignment
    positions = state.position_data
    genes = state.composition_data
    confidence = state.confidence
    real_edge_weight = state.real_edge_weight

    n_changed = 0
    for i in rng.permutation(state.n_points):
        adj = state.adjacent_points[i]
        weights = state.adjacent_weights[i]
        adj_ids = assignment[adj]
        cur = assignment[i]
        cand = np.unique(np.concatenate([adj_ids, assignment[state.knn_neighbors[i]], [cur]]))
        cand = cand[cand > 0]
        if len(cand) > 0 and cand[-1] > n_comps:
            raise InvalidComponentReference(
                f"Molecule {i} neighbours refer to component {cand[-1]}, only {n_comps} exist")

        conf = confidence[i]
        x, y = positions[i]
        gene = genes[i]
        scores = np.empty(len(cand) + 1)
        noise_mass = weights[adj_ids == 0].sum()
        scores[0] = log_noise + noise_cov[i] + (1.0 - conf) * (real_edge_weight + noise_mass)
        for j, k in enumerate(cand):
            comp = state.components[k - 1]
            n_other = comp.n_samples - (1 if cur == k else 0)
            if n_other < 0:
                raise InvalidComponentReference(f"Component {k} has negative size {comp.n_samples}")
            smooth = weights[adj_ids == k].sum()
            scores[j + 1] = (comp.log_density(x, y, gene) + conf * smooth
                             - size_penalty * np.log(n_other + 1.0))

        if not np.isfinite(scores.max()):
            continue
        # scores[0] is noise
        if stochastic:
            pick = int(rng.choice(len(scores), p=softmax(scores)))
        else:
            pick = int(np.argmax(scores))
        new = 0 if pick == 0 else int(cand[pick - 1])
        if new != cur:
            state.assign(i, new)
            n_changed += 1
    return n_changed


def drop_unused_components(state: SegmentationState) -> int:
    """Remove empty droppable components and renumber the assignment."""
    keep = np.array([c.n_samples > 0 or not c.can_be_dropped for c in state.components], dtype=bool)
    if keep.all():
        return 0
    dropped = np.flatnonzero(~keep) + 1
    if np.isin(state.assignment, dropped).any():
        raise InvalidComponentReference(f"Pruned components still hold molecules: {dropped.tolist()[:10]}")
    new_ids = np.zeros(len(state.components) + 1, dtype=np.int64)
    new_ids[1:][keep] = np.arange(1, int(keep.sum()) + 1)
    state.assignment[:] = new_ids[state.assignment]
    state.components = [c for c, k in zip(state.components, keep) if k]
    return len(dropped)


def update_components(state: SegmentationState) -> int:
    """Refit component parameters from current membership according to `state.update_priors`."""
    policy = state.update_priors
    if policy == UpdatePriors.NO:
        return 0
    order, bounds = _members_by_component(state.assignment, len(state.components))
    n_updated = 0
    for cid, comp in enumerate(state.components, start=1):
        if policy == UpdatePriors.CENTERS and comp.center_prior is None:
            continue
        idx = order[bounds[cid]:bounds[cid + 1]]
        if len(idx) == 0:
            continue
        comp.update(state.position_data[idx], state.composition_data[idx])
        n_updated += 1
    return n_updated


def add_new_components(state: SegmentationState, n_new: int, rng: np.random.Generator) -> int:
    """Seed droppable components in regions currently explained by noise.

    For each seed a location is drawn from the template component centred on a random
    noise molecule. The noise molecules among the KNN neighbours of the molecule nearest
    to that draw become the members of the new component, which is then refit on them.
    Seeds with fewer than `Component.min_points` such molecules are skipped, so isolated
    noise molecules never start a cell. Returns the number of components added.
    """
    if n_new <= 0 or state.n_points == 0:
        return 0
    noise_idx = np.flatnonzero(state.assignment == 0)
    if len(noise_idx) == 0:
        return 0

    n_added = 0
    for anchor in rng.choice(noise_idx, size=min(int(n_new), len(noise_idx)), replace=False):
        comp = state.distribution_sampler.copy()
        comp.n_samples = 0
        comp.can_be_dropped = True
        comp.center_prior = None
        comp.position_params.set_params(mean=state.position_data[anchor])
        x, y, _ = comp.sample(rng)
        seed = int(state.position_knn_tree.query([[x, y]], k=1, return_distance=False)[0, 0])
        members = state.knn_neighbors[seed]
        members = members[state.assignment[members] == 0]
        if len(members) < Component.min_points:
            continue

        comp.update(state.position_data[members], state.composition_data[members], blend_prior=False)
        state.components.append(comp)
        cid = len(state.components)
        for i in members:
            state.assign(int(i), cid)
        n_added += 1
    if n_added > 0:
        logger.debug("Seeded %d new components in noise regions", n_added)
    return n_added


def log_likelihood(state: SegmentationState, noise_cov: Optional[np.ndarray] = None) -> float:
    """Sum over molecules of the log density under their current component or noise."""
    if noise_cov is None:
        noise_cov = noise_covariates(state)
    total = 0.0
    order, bounds = _members_by_component(state.assignment, len(state.components))
    noise_idx = order[bounds[0]:bounds[1]]
    if len(noise_idx) > 0:
        log_noise = np.log(state.noise_density) if state.noise_density > 0 else -np.inf
        total += float(np.sum(log_noise + noise_cov[noise_idx]))
    for cid, comp in enumerate(state.components, start=1):
        idx = order[bounds[cid]:bounds[cid + 1]]
        if len(idx) > 0:
            total += float(comp.log_densities(state.position_data[idx], state.composition_data[idx]).sum())
    return total


def run_bmm(state: SegmentationState, max_iters: int = 100, tol: float = 1e-3, stochastic: bool = False,
            size_penalty: float = 1.0, min_noise_frac: float = 1e-3, new_components_per_sweep: int = 0,
            update_cooccurrence: bool = True, time_budget: Optional[float] = None,
            should_stop: Optional[Callable[[], bool]] = None,
            random_state: Optional[Union[int, np.random.Generator]] = None,
            show_progress: bool = False, params_fingerprint: Optional[str] = None) -> EngineStatus:
    """Run reassignment sweeps on `state` until convergence or a budget runs out.

    Convergence is reached when the fraction of molecules reassigned in a sweep is
    at most `tol`. `time_budget` (seconds) and `should_stop` are checked between
    sweeps only, so the state is always consistent when the function returns.
    Per-sweep statistics are appended to `state.tracer`.
    """
    rng = np.random.default_rng(random_state)
    status = EngineStatus.INITIALIZED
    state.tracer["status"] = status.value
    if params_fingerprint is not None:
        state.tracer["params_fingerprint"] = params_fingerprint
    n = state.n_points
    logger.info("BMM start: %d molecules, %d components, update_priors=%s",
                n, len(state.components), state.update_priors.value)

    start = time.perf_counter()
    iterator = progress_iter(range(max_iters), desc="BMM sweeps", total=max_iters, show=show_progress)
    for it in iterator:
        if should_stop is not None and should_stop():
            status = EngineStatus.STOPPED
            logger.info("BMM stopped on request after %d sweeps", it)
            break
        if time_budget is not None and time.perf_counter() - start >= time_budget:
            status = EngineStatus.MAX_ITER_REACHED
            logger.info("BMM time budget of %.1fs exhausted after %d sweeps", time_budget, it)
            break

        snapshot = state.assignment.copy()
        comps_snapshot = list(state.components)
        sizes_snapshot = [c.n_samples for c in comps_snapshot]
        try:
            if new_components_per_sweep > 0:
                add_new_components(state, new_components_per_sweep, rng)
            update_noise_density(state, min_noise_frac=min_noise_frac)
            if update_cooccurrence:
                estimate_gene_cooccurrence(state)
            noise_cov = noise_covariates(state)

            status = EngineStatus.SWEEPING
            n_changed = sweep(state, rng, stochastic=stochastic, size_penalty=size_penalty, noise_cov=noise_cov)
            status = EngineStatus.PRUNING
            n_dropped = drop_unused_components(state)
            status = EngineStatus.PRIOR_UPDATE
            update_components(state)
        except InvalidComponentReference:
            state.assignment[:] = snapshot
            state.components = comps_snapshot
            for c, s in zip(comps_snapshot, sizes_snapshot):
                c.n_samples = s
            state.tracer["status"] = status.value
            logger.exception("BMM aborted in sweep %d; state restored to the previous sweep", it + 1)
            raise

        frac = n_changed / max(n, 1)
        ll = log_likelihood(state, noise_cov)
        trace_step(
            state.tracer,
            n_components=len(state.components),
            n_noise=int((state.assignment == 0).sum()),
            log_likelihood=ll,
            n_reassigned=n_changed,
            reassigned_frac=frac,
            noise_density=state.noise_density,
        )
        logger.debug("Sweep %d: reassigned=%d (%.4f), dropped=%d, components=%d, loglik=%.3f",
                     it + 1, n_changed, frac, n_dropped, len(state.components), ll)
        if frac <= tol:
            status = EngineStatus.CONVERGED
            break
    else:
        status = EngineStatus.MAX_ITER_REACHED

    state.tracer["status"] = status.value
    logger.info("BMM finished: status=%s after %d sweeps, %d components, %d noise molecules",
                status.value, state.tracer["n_iterations"], len(state.components),
                int((state.assignment == 0).sum()))
    return status
