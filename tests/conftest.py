"""Shared test fixtures."""

import numpy as np
import pandas as pd
import pytest

from spotseg.component import components_from_assignment, default_sampler
from spotseg.triangulation import adjacency_list, adjacency_weights
from spotseg.bmm_data import SegmentationState

N_GENES = 4
CLUSTER_CENTERS = np.array([[0.0, 0.0], [10.0, 0.0]])
CLUSTER_SIZE = 30


def make_two_clusters(seed: int = 0, n_per_cluster: int = CLUSTER_SIZE, spread: float = 0.5):
    """Two well separated blobs; blob A mostly expresses genes 0/1, blob B genes 2/3."""
    rng = np.random.default_rng(seed)
    xs, genes, truth = [], [], []
    gene_probs = [[0.45, 0.45, 0.05, 0.05], [0.05, 0.05, 0.45, 0.45]]
    for cid, (center, probs) in enumerate(zip(CLUSTER_CENTERS, gene_probs), start=1):
        xs.append(rng.normal(center, spread, size=(n_per_cluster, 2)))
        genes.append(rng.choice(N_GENES, size=n_per_cluster, p=probs))
        truth.append(np.full(n_per_cluster, cid))
    pos = np.vstack(xs)
    df = pd.DataFrame({"x": pos[:, 0], "y": pos[:, 1], "gene": np.concatenate(genes).astype(np.int64)})
    return df, np.concatenate(truth).astype(np.int64)


def make_state(df: pd.DataFrame, assignment, components=None, update_priors="no", k_neighbors: int = 20,
               real_edge_weight: float = 1.0, n_genes: int = N_GENES, centers=None) -> SegmentationState:
    sampler = default_sampler(n_genes, cov=np.eye(2) * 0.25)
    if components is None:
        components = components_from_assignment(df[["x", "y"]].to_numpy(), df["gene"].to_numpy(),
                                                np.asarray(assignment), sampler, centers=centers)
    adj = adjacency_list(df, random_state=0)
    weights = adjacency_weights(adj, real_edge_weight=real_edge_weight)
    return SegmentationState(components, df, adj, weights, real_edge_weight, sampler, assignment,
                             k_neighbors=k_neighbors, update_priors=update_priors)


@pytest.fixture
def two_clusters():
    return make_two_clusters()


@pytest.fixture
def small_df():
    """Five non-collinear molecules."""
    return pd.DataFrame({
        "x": [0.0, 1.0, 0.0, 1.0, 0.5],
        "y": [0.0, 0.0, 1.0, 1.0, 0.4],
        "gene": np.array([0, 1, 2, 3, 0], dtype=np.int64),
    })
