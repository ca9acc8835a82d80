import copy
import logging
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Union

import numpy as np
import pandas as pd
from shapely.geometry import MultiPoint
from sklearn.neighbors import KDTree

from .component import Component
from .errors import AssignmentOutOfRange, InconsistentPartitions, InvalidComponentReference, InvalidSchema
from .io import DEFAULT_CONFIDENCE
from .tracing import merge_tracers, new_tracer

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ("x", "y", "gene")


class UpdatePriors(str, Enum):
    NO = "no"
    ALL = "all"
    CENTERS = "centers"


def resolve_update_priors(value: Union[str, UpdatePriors, bool], components: Sequence[Component]) -> UpdatePriors:
    """Parse the prior-update policy; `centers` becomes `no` when every component is droppable,
    as then no component carries a seeded center."""
    if value is False:
        # YAML reads an unquoted `no` as boolean false
        value = UpdatePriors.NO
    policy = UpdatePriors(value)
    if policy == UpdatePriors.CENTERS and all(c.can_be_dropped for c in components):
        logger.info("update_priors=centers with no seeded components; using update_priors=no")
        policy = UpdatePriors.NO
    return policy


def _knn_neighbors(tree: KDTree, points: np.ndarray, k: int) -> np.ndarray:
    n = points.shape[0]
    k = max(1, min(int(k), n))
    ind = tree.query(points, k=k, return_distance=False, sort_results=True)
    return np.asarray(ind, dtype=np.int64)


class SegmentationState:
    """Molecules, proximity graph, mixture components and the current assignment.

    Component ``k`` is ``components[k - 1]``; assignment value 0 is noise.

    Parameters
    ----------
    components : initial components (ownership passes to the state).
    x : point table with columns `x`, `y`, `gene` and optionally `confidence`.
    adjacent_points, adjacent_weights : proximity graph, see `spotseg.triangulation`.
    real_edge_weight : weight of an ordinary (non-self) graph edge.
    distribution_sampler : template component used to seed new components.
    assignment : initial assignment, values in ``0..len(components)``.
    k_neighbors : fan-out of the KNN index.
    update_priors : `no` (freeze), `all` (refit all) or `centers` (refit seeded components).
    """

    def __init__(self, components: List[Component], x: pd.DataFrame, adjacent_points: List[np.ndarray],
                 adjacent_weights: List[np.ndarray], real_edge_weight: float, distribution_sampler: Component,
                 assignment, k_neighbors: int = 20, update_priors: Union[str, UpdatePriors] = UpdatePriors.NO):
        missing = set(REQUIRED_COLUMNS) - set(x.columns)
        if missing:
            raise InvalidSchema(f"Point table must have columns 'x', 'y' and 'gene'; missing: {sorted(missing)}")

        assignment = np.array(assignment, dtype=np.int64, copy=True)
        n = len(x)
        if len(assignment) != n:
            raise AssignmentOutOfRange(f"Assignment length {len(assignment)} does not match {n} points")
        if n > 0 and assignment.max() > len(components):
            raise AssignmentOutOfRange(
                f"Too large component id: {assignment.max()}, maximum available: {len(components)}")
        if n > 0 and assignment.min() < 0:
            raise AssignmentOutOfRange(f"Negative component id: {assignment.min()}")
        if len(adjacent_points) != n or len(adjacent_weights) != n:
            raise InvalidSchema(f"Adjacency lists cover {len(adjacent_points)} points, expected {n}")
        if real_edge_weight <= 0:
            raise ValueError(f"real_edge_weight must be positive, got {real_edge_weight}")

        n_genes = distribution_sampler.n_genes
        genes = x["gene"].to_numpy()
        if not np.issubdtype(genes.dtype, np.integer):
            raise InvalidSchema(f"Column 'gene' must hold integer indices, got dtype {genes.dtype}")
        if n > 0 and (genes.min() < 0 or genes.max() >= n_genes):
            raise InvalidSchema(f"Gene indices must lie in [0, {n_genes}), got [{genes.min()}, {genes.max()}]")

        self.update_priors = resolve_update_priors(update_priors, components)

        x = x.copy(deep=True).reset_index(drop=True)
        if "confidence" not in x.columns:
            x["confidence"] = DEFAULT_CONFIDENCE
        self.x = x
        self.position_data = x[["x", "y"]].to_numpy(dtype=np.float64)
        self.composition_data = x["gene"].to_numpy(dtype=np.int64)
        self.confidence = x["confidence"].to_numpy(dtype=np.float64)

        self.adjacent_points = adjacent_points
        self.adjacent_weights = adjacent_weights
        self.real_edge_weight = float(real_edge_weight)

        self.k_neighbors = int(k_neighbors)
        if n > 0:
            self.position_knn_tree = KDTree(self.position_data)
            self.knn_neighbors = _knn_neighbors(self.position_knn_tree, self.position_data, self.k_neighbors)
        else:
            self.position_knn_tree = None
            self.knn_neighbors = np.empty((0, 0), dtype=np.int64)

        self.components = components
        self.distribution_sampler = distribution_sampler.copy()
        self.assignment = assignment
        self.noise_density = 0.0
        self.gene_probs_given_single_transcript = np.full((n_genes, n_genes), 1.0 / n_genes)
        self.tracer: Dict[str, Any] = new_tracer(n)

        self.recount_samples()

    @property
    def n_points(self) -> int:
        return len(self.assignment)

    @property
    def n_genes(self) -> int:
        return self.distribution_sampler.n_genes

    def recount_samples(self) -> None:
        counts = self.molecules_per_cell()
        for c, cnt in zip(self.components, counts):
            c.n_samples = int(cnt)

    def molecules_per_cell(self) -> np.ndarray:
        """Number of molecules assigned to each component id ``1..len(components)``."""
        return np.bincount(self.assignment, minlength=len(self.components) + 1)[1:]

    def assign(self, point_ind: int, component_id: int) -> None:
        if component_id > len(self.components) or component_id < 0:
            raise AssignmentOutOfRange(
                f"Too large component id: {component_id}, maximum available: {len(self.components)}")
        old = self.assignment[point_ind]
        if old == component_id:
            return
        if old > 0:
            self.components[old - 1].n_samples -= 1
        if component_id > 0:
            self.components[component_id - 1].n_samples += 1
        self.assignment[point_ind] = component_id

    def check_consistency(self) -> None:
        if self.n_points == 0:
            return
        if self.assignment.max() > len(self.components) or self.assignment.min() < 0:
            raise InvalidComponentReference(
                f"Assignment refers to component {self.assignment.max()} of {len(self.components)}")
        counts = self.molecules_per_cell()
        stored = np.array([c.n_samples for c in self.components], dtype=np.int64)
        bad = np.flatnonzero(counts != stored)
        if len(bad) > 0:
            raise InvalidComponentReference(
                f"n_samples out of sync for components {(bad + 1).tolist()[:10]}")

    def positions_of(self, component_id: int) -> np.ndarray:
        return self.position_data[self.assignment == component_id]

    def segmentation_table(self, gene_names: Optional[Sequence[str]] = None) -> pd.DataFrame:
        df = self.x.copy()
        df["cell"] = self.assignment.copy()
        df["is_noise"] = self.assignment == 0
        if gene_names is not None:
            df["gene"] = np.asarray(gene_names, dtype=object)[df["gene"].to_numpy()]
        return df

    def cell_statistics_table(self, add_qc: bool = True) -> pd.DataFrame:
        n_comps = len(self.components)
        counts = self.molecules_per_cell()
        ids = np.arange(1, n_comps + 1)
        df = pd.DataFrame({"cell": ids})

        sums = np.zeros((n_comps + 1, 2))
        np.add.at(sums, self.assignment, self.position_data)
        with np.errstate(invalid="ignore", divide="ignore"):
            centroids = sums[1:] / counts[:, None]
        df["x"] = centroids[:, 0]
        df["y"] = centroids[:, 1]

        df["has_center"] = [c.center_prior is not None for c in self.components]
        df["x_prior"] = [np.nan if c.center_prior is None else c.center_prior.mean[0] for c in self.components]
        df["y_prior"] = [np.nan if c.center_prior is None else c.center_prior.mean[1] for c in self.components]

        df = df[counts > 0].reset_index(drop=True)
        if add_qc:
            order = np.argsort(self.assignment, kind="stable")
            bounds = np.searchsorted(self.assignment[order], np.arange(n_comps + 2))
            areas, elongations, hulls = [], [], []
            for cid in df["cell"]:
                pts = self.position_data[order[bounds[cid]:bounds[cid + 1]]]
                hull = MultiPoint([tuple(p) for p in pts]).convex_hull
                hulls.append(hull)
                areas.append(hull.area)
                if len(pts) > 1:
                    vals = np.linalg.eigvalsh(np.cov(pts.T))
                    elongations.append(vals[1] / vals[0] if vals[0] > 0 else np.inf)
                else:
                    elongations.append(np.nan)
            df["area"] = areas
            df["n_transcripts"] = counts[df["cell"].to_numpy() - 1]
            df["density"] = df["n_transcripts"] / df["area"].where(df["area"] > 0)
            df["elongation"] = elongations
            df["hull_polygon"] = hulls
        return df

    def __repr__(self) -> str:
        return (f"SegmentationState(n_points={self.n_points}, n_components={len(self.components)}, "
                f"n_noise={int((self.assignment == 0).sum())}, update_priors={self.update_priors.value})")


def merge_states(states: Sequence[SegmentationState]) -> SegmentationState:
    """Stitch independently segmented partitions into one state.

    Point indices in adjacency lists are offset by the number of preceding points and
    non-noise assignments by the number of preceding components. Graphs are not connected
    across partition borders.
    """
    if len(states) == 0:
        raise InconsistentPartitions("Nothing to merge: no partitions given")
    ref = states[0]
    for i, st in enumerate(states[1:], start=1):
        if st.real_edge_weight != ref.real_edge_weight:
            raise InconsistentPartitions(
                f"Partition {i} has real_edge_weight={st.real_edge_weight}, expected {ref.real_edge_weight}")
        if st.k_neighbors != ref.k_neighbors:
            raise InconsistentPartitions(
                f"Partition {i} has k_neighbors={st.k_neighbors}, expected {ref.k_neighbors}")
        if st.n_genes != ref.n_genes:
            raise InconsistentPartitions(
                f"Partition {i} sampler covers {st.n_genes} genes, expected {ref.n_genes}")

    x = pd.concat([st.x for st in states], ignore_index=True)
    components = [c.copy() for st in states for c in st.components]

    adjacent_points: List[np.ndarray] = []
    adjacent_weights: List[np.ndarray] = []
    assignments = []
    ap_offset = 0
    assignment_offset = 0
    for st in states:
        adjacent_points.extend(ap + ap_offset for ap in st.adjacent_points)
        adjacent_weights.extend(w.copy() for w in st.adjacent_weights)
        cur = st.assignment.copy()
        cur[cur > 0] += assignment_offset
        assignments.append(cur)
        ap_offset += st.n_points
        assignment_offset += len(st.components)

    policies = {st.update_priors for st in states}
    # a partition may have degraded `centers` to `no`; the merged set is re-resolved
    update_priors = UpdatePriors.CENTERS if UpdatePriors.CENTERS in policies else ref.update_priors

    res = SegmentationState(components, x, adjacent_points, adjacent_weights, ref.real_edge_weight,
                            copy.deepcopy(ref.distribution_sampler), np.concatenate(assignments),
                            k_neighbors=ref.k_neighbors, update_priors=update_priors)
    res.noise_density = float(np.average([st.noise_density for st in states],
                                         weights=[max(st.n_points, 1) for st in states]))
    current = [{"n_components": len(st.components), "n_noise": int((st.assignment == 0).sum()), "n_reassigned": 0}
               for st in states]
    res.tracer = merge_tracers([st.tracer for st in states], [st.n_points for st in states], current)
    logger.info("Merged %d partitions: %d points, %d components", len(states), res.n_points, len(components))
    return res
