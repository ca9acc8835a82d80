"""Proximity graph over molecule positions.

The graph is the Delaunay triangulation of the points with overly long edges
removed. Every point is also adjacent to itself, which keeps the neighbourhood
sums used by the assignment engine free of special cases.
"""
import logging
from collections import Counter
from typing import List, Optional, Union

import numpy as np
import pandas as pd
import scipy.sparse as sp
from scipy.sparse.csgraph import connected_components as _csgraph_components
from scipy.spatial import Delaunay, QhullError
from scipy.stats import median_abs_deviation

from .errors import DegenerateGeometry

logger = logging.getLogger(__name__)

HASH_DECIMALS = 3
JITTER_SCALE = 2e-3


def position_data(df: pd.DataFrame) -> np.ndarray:
    return df[["x", "y"]].to_numpy(dtype=np.float64)


def _normalize_positions(points: np.ndarray) -> np.ndarray:
    pts = points - points.min()
    scale = pts.max()
    if not np.isfinite(scale) or scale <= 0:
        raise DegenerateGeometry("All points share the same coordinates; cannot triangulate")
    pts /= scale * 1.1
    pts += 1.01
    return pts


def _jitter_duplicates(points: np.ndarray, rng: np.random.Generator) -> np.ndarray:
    rounded = np.round(points, HASH_DECIMALS)
    hashes = [f"{x} {y}" for x, y in rounded]
    counts = Counter(hashes)
    is_duplicated = np.array([counts[h] > 1 for h in hashes], dtype=bool)
    n_dup = int(is_duplicated.sum())
    if n_dup > 0:
        logger.debug("Jittering %d duplicated points", n_dup)
        points[is_duplicated] += (rng.random((n_dup, 2)) - 0.5) * JITTER_SCALE
    return points


def delaunay_edges(points: np.ndarray) -> np.ndarray:
    """Unique undirected edges of the Delaunay triangulation, shape (n_edges, 2)."""
    try:
        tess = Delaunay(points)
    except (QhullError, ValueError) as e:
        raise DegenerateGeometry(f"Delaunay triangulation failed: {e}") from e
    simplices = tess.simplices
    edges = np.vstack([simplices[:, [0, 1]], simplices[:, [1, 2]], simplices[:, [0, 2]]])
    edges.sort(axis=1)
    return np.unique(edges, axis=0)


def filter_long_edges(points: np.ndarray, edges: np.ndarray, n_mads: float = 2.0) -> np.ndarray:
    if len(edges) == 0:
        return edges
    lengths = np.sqrt(((points[edges[:, 0]] - points[edges[:, 1]]) ** 2).sum(axis=1))
    adj_dists = np.log10(lengths)
    d_threshold = np.median(adj_dists) + n_mads * median_abs_deviation(adj_dists, scale="normal")
    # tolerance keeps equal-length edges together when the MAD collapses to zero
    keep = adj_dists <= d_threshold + 1e-9
    logger.debug("Edge filter: threshold=%.4f, kept %d/%d edges", d_threshold, int(keep.sum()), len(edges))
    return edges[keep]


def adjacency_list(points: Union[np.ndarray, pd.DataFrame], filter: bool = True, n_mads: float = 2.0,
                   random_state: Optional[Union[int, np.random.Generator]] = None) -> List[np.ndarray]:
    """Per-point adjacency from the Delaunay triangulation of `points`.

    Parameters
    ----------
    points : array of shape (n, 2) or a data frame with `x` and `y` columns.
    filter : drop edges with log-length above ``median + n_mads * MAD``.
    n_mads : MAD multiplier for the edge filter.
    random_state : seed or generator for the jitter applied to duplicated points.

    Returns
    -------
    List of int arrays; entry ``i`` holds the neighbours of point ``i`` followed by ``i`` itself.
    """
    if isinstance(points, pd.DataFrame):
        points = position_data(points)
    points = np.array(points, dtype=np.float64, copy=True)
    if points.ndim != 2 or points.shape[1] != 2:
        raise ValueError(f"points must have shape (n, 2), got {points.shape}")
    n = points.shape[0]
    if n < 3:
        raise DegenerateGeometry(f"At least 3 points are required for triangulation, got {n}")

    rng = np.random.default_rng(random_state)
    points = _normalize_positions(points)
    points = _jitter_duplicates(points, rng)

    edge_list = delaunay_edges(points)
    if filter:
        edge_list = filter_long_edges(points, edge_list, n_mads=n_mads)

    src = np.concatenate([edge_list[:, 0], edge_list[:, 1]])
    dst = np.concatenate([edge_list[:, 1], edge_list[:, 0]])
    order = np.argsort(src, kind="stable")
    src, dst = src[order], dst[order]
    bounds = np.searchsorted(src, np.arange(n + 1))

    res = []
    for i in range(n):
        neighbors = np.sort(dst[bounds[i]:bounds[i + 1]])
        res.append(np.append(neighbors, i).astype(np.int64))
    return res


def adjacency_weights(adjacent_points: List[np.ndarray], real_edge_weight: float = 1.0,
                      self_weight: Optional[float] = None) -> List[np.ndarray]:
    """Edge weights parallel to `adjacent_points`.

    Ordinary edges get `real_edge_weight`; the self-loop gets `self_weight`
    (half of `real_edge_weight` when not given).
    """
    if real_edge_weight <= 0:
        raise ValueError(f"real_edge_weight must be positive, got {real_edge_weight}")
    if self_weight is None:
        self_weight = real_edge_weight / 2
    weights = []
    for i, ap in enumerate(adjacent_points):
        w = np.full(len(ap), real_edge_weight, dtype=np.float64)
        w[ap == i] = self_weight
        weights.append(w)
    return weights


def edge_count(adjacent_points: List[np.ndarray]) -> int:
    """Number of undirected edges, self-loops excluded."""
    n_directed = sum(int((ap != i).sum()) for i, ap in enumerate(adjacent_points))
    return n_directed // 2


def _to_sparse(adjacent_points: List[np.ndarray]) -> sp.csr_matrix:
    n = len(adjacent_points)
    rows = np.repeat(np.arange(n), [len(ap) for ap in adjacent_points])
    cols = np.concatenate(adjacent_points) if n > 0 else np.empty(0, dtype=np.int64)
    data = np.ones(len(cols), dtype=np.int8)
    return sp.csr_matrix((data, (rows, cols)), shape=(n, n))


def connected_components(adjacent_points: List[np.ndarray]) -> List[np.ndarray]:
    """Groups of mutually reachable point indices, largest group first."""
    if len(adjacent_points) == 0:
        return []
    n_comp, labels = _csgraph_components(_to_sparse(adjacent_points), directed=False)
    groups = [np.flatnonzero(labels == c) for c in range(n_comp)]
    groups.sort(key=lambda g: (-len(g), g[0]))
    return groups
