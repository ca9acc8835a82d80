import numpy as np
import pandas as pd
import pytest

from spotseg.bmm_algorithm import run_bmm
from spotseg.bmm_data import merge_states
from spotseg.component import default_sampler
from spotseg.errors import InconsistentPartitions
from spotseg.tracing import merge_tracers, new_tracer, trace_step

from tests.conftest import N_GENES, make_state


def _partition(offset: float, assignment, n_genes: int = N_GENES, **kwargs):
    df = pd.DataFrame({
        "x": np.array([0.0, 1.0, 0.0, 1.0, 0.5]) + offset,
        "y": [0.0, 0.0, 1.0, 1.0, 0.4],
        "gene": np.array([0, 1, 2, 3, 0], dtype=np.int64) % n_genes,
    })
    sampler = default_sampler(n_genes)
    comps = [sampler.copy(), sampler.copy()]
    return make_state(df, np.asarray(assignment), components=comps, n_genes=n_genes, **kwargs)


def test_merge_two_partitions_offsets_ids():
    a = _partition(0.0, [1, 1, 2, 0, 2])
    b = _partition(100.0, [2, 0, 1, 1, 2])
    merged = merge_states([a, b])

    assert merged.n_points == 10
    assert len(merged.components) == 4
    assert merged.assignment.tolist() == [1, 1, 2, 0, 2, 4, 0, 3, 3, 4]
    assert merged.molecules_per_cell().tolist() == [2, 2, 2, 2]
    assert [c.n_samples for c in merged.components] == [2, 2, 2, 2]
    merged.check_consistency()

    # adjacency of the second partition is shifted by its point offset
    for i, ap in enumerate(b.adjacent_points):
        np.testing.assert_array_equal(merged.adjacent_points[5 + i], ap + 5)
    np.testing.assert_allclose(merged.x["x"].to_numpy()[5:], b.x["x"].to_numpy())
    assert merged.knn_neighbors.shape[0] == 10


def test_merge_does_not_alias_partitions():
    a = _partition(0.0, [1, 1, 2, 0, 2])
    b = _partition(100.0, [2, 0, 1, 1, 2])
    merged = merge_states([a, b])
    merged.assign(0, 0)
    assert a.assignment[0] == 1
    assert a.components[0].n_samples == 2


def test_merge_counts_are_order_insensitive():
    a = _partition(0.0, [1, 1, 2, 0, 2])
    b = _partition(100.0, [2, 0, 1, 1, 2])
    c = _partition(200.0, [0, 0, 0, 1, 1])

    stepwise = merge_states([merge_states([a, b]), c])
    direct = merge_states([a, b, c])
    assert stepwise.n_points == direct.n_points == 15
    assert len(stepwise.components) == len(direct.components) == 6
    np.testing.assert_array_equal(stepwise.assignment, direct.assignment)


def test_merge_rejects_inconsistent_partitions():
    a = _partition(0.0, [1, 1, 2, 0, 2])
    with pytest.raises(InconsistentPartitions):
        merge_states([a, _partition(100.0, [0] * 5, real_edge_weight=2.0)])
    with pytest.raises(InconsistentPartitions):
        merge_states([a, _partition(100.0, [0] * 5, k_neighbors=5)])
    with pytest.raises(InconsistentPartitions):
        merge_states([a, _partition(100.0, [0] * 5, n_genes=3)])
    with pytest.raises(InconsistentPartitions):
        merge_states([])


def test_merge_combines_histories(two_clusters):
    df, truth = two_clusters
    left = make_state(df, truth, update_priors="all")
    right = make_state(df, truth, update_priors="all")
    run_bmm(left, max_iters=3, tol=-1.0, random_state=0)
    run_bmm(right, max_iters=2, tol=-1.0, random_state=0)

    merged = merge_states([left, right])
    assert merged.tracer["n_iterations"] == 3
    assert merged.tracer["n_components"] == [4, 4, 4]
    assert len(merged.tracer["partitions"]) == 2
    assert merged.tracer["n_points"] == 2 * len(df)
    assert merged.tracer["status"] == "max_iter_reached"


def test_merge_tracers_weights_fractions():
    t1, t2 = new_tracer(10), new_tracer(30)
    trace_step(t1, n_components=2, n_noise=1, log_likelihood=-5.0, n_reassigned=1,
               reassigned_frac=0.1, noise_density=1.0)
    trace_step(t2, n_components=3, n_noise=0, log_likelihood=-7.0, n_reassigned=6,
               reassigned_frac=0.2, noise_density=2.0)
    trace_step(t2, n_components=3, n_noise=0, log_likelihood=-6.0, n_reassigned=0,
               reassigned_frac=0.0, noise_density=2.0)
    merged = merge_tracers([t1, t2])
    assert merged["n_components"] == [5, 5]
    assert merged["log_likelihood"] == [-12.0, -11.0]
    assert merged["reassigned_frac"][0] == pytest.approx((10 * 0.1 + 30 * 0.2) / 40)
    assert merged["n_iterations"] == 2


def test_merge_counts_partition_stopped_before_first_sweep(two_clusters):
    df, truth = two_clusters
    ran = make_state(df, truth, update_priors="all")
    idle = make_state(df, truth, update_priors="all")
    run_bmm(ran, max_iters=3, tol=-1.0, random_state=0)
    run_bmm(idle, max_iters=3, should_stop=lambda: True)
    assert idle.tracer["n_iterations"] == 0

    merged = merge_states([ran, idle])
    assert merged.tracer["n_components"] == [4, 4, 4]
    idle_noise = int((idle.assignment == 0).sum())
    assert merged.tracer["n_noise"] == [n + idle_noise for n in ran.tracer["n_noise"]]
    np.testing.assert_allclose(merged.tracer["log_likelihood"], ran.tracer["log_likelihood"])
    np.testing.assert_allclose(merged.tracer["reassigned_frac"], ran.tracer["reassigned_frac"])
    assert merged.tracer["status"] == "mixed"


def test_merge_tracers_without_history_or_fallback():
    ran, idle = new_tracer(10), new_tracer(10)
    trace_step(ran, n_components=2, n_noise=1, log_likelihood=-5.0, n_reassigned=1,
               reassigned_frac=0.1, noise_density=1.0)
    merged = merge_tracers([ran, idle])
    assert merged["n_components"] == [2.0]
    assert merged["noise_density"] == [1.0]

    merged = merge_tracers([ran, idle], current=[{}, {"n_components": 3}])
    assert merged["n_components"] == [5.0]
