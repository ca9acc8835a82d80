import numpy as np
import pytest
from scipy.stats import multivariate_normal

from spotseg.component import CenterPrior, Component, components_from_assignment, default_sampler
from spotseg.distributions import CategoricalSmoothed, Normal2D


def _component(mean=(0.0, 0.0), cov=((1.0, 0.2), (0.2, 2.0)), counts=(3, 1, 0, 0), prior=None):
    return Component(Normal2D(mean, cov), CategoricalSmoothed(counts), center_prior=prior)


def test_normal_logpdf_matches_scipy():
    dist = Normal2D([1.0, -2.0], [[2.0, 0.3], [0.3, 0.5]])
    pts = np.array([[0.0, 0.0], [1.0, -2.0], [3.5, 1.0]])
    expected = multivariate_normal(mean=[1.0, -2.0], cov=[[2.0, 0.3], [0.3, 0.5]]).logpdf(pts)
    np.testing.assert_allclose(dist.logpdf_many(pts), expected)
    assert dist.logpdf(3.5, 1.0) == pytest.approx(expected[2])


def test_singular_covariance_is_regularized():
    dist = Normal2D([0.0, 0.0], np.zeros((2, 2)))
    assert np.isfinite(dist.logpdf(0.0, 0.0))
    assert np.all(np.linalg.eigvalsh(dist.cov) >= Normal2D.min_variance * 0.999)


def test_categorical_smoothing():
    cat = CategoricalSmoothed([2, 0, 0], smooth=1.0)
    np.testing.assert_allclose(cat.probs, [0.6, 0.2, 0.2])
    assert np.isfinite(cat.logpdf(1))
    cat.fit(np.array([1, 1, 1, 2]))
    np.testing.assert_allclose(cat.counts, [0, 3, 1])
    with pytest.raises(ValueError):
        cat.set_counts([1, 2])


def test_log_density_is_sum_of_channels():
    c = _component()
    expected = c.position_params.logpdf(0.5, 0.5) + c.composition_params.logpdf(1)
    assert c.log_density(0.5, 0.5, 1) == pytest.approx(expected)
    assert c.log_density_position(0.5, 0.5) + c.log_density_composition(1) == pytest.approx(expected)


def test_center_prior_adds_to_spatial_term():
    prior = CenterPrior([1.0, 1.0], np.eye(2) * 4.0)
    c = _component(prior=prior)
    plain = c.position_params.logpdf(0.3, -0.2)
    assert c.log_density_position(0.3, -0.2) == pytest.approx(plain + prior.logpdf(0.3, -0.2))
    pts = np.array([[0.3, -0.2], [2.0, 2.0]])
    genes = np.array([0, 1])
    dens = c.log_densities(pts, genes)
    assert dens[0] == pytest.approx(c.log_density(0.3, -0.2, 0))
    assert dens[1] == pytest.approx(c.log_density(2.0, 2.0, 1))


def test_update_refits_from_members():
    rng = np.random.default_rng(0)
    pts = rng.normal([5.0, -3.0], [1.0, 2.0], size=(500, 2))
    genes = rng.choice(4, size=500, p=[0.7, 0.1, 0.1, 0.1])
    c = _component()
    c.update(pts, genes)
    np.testing.assert_allclose(c.position_params.mean, pts.mean(axis=0))
    np.testing.assert_allclose(c.position_params.cov, np.cov(pts.T, bias=True), rtol=1e-6)
    assert np.argmax(c.composition_params.probs) == 0


def test_update_blends_mean_with_center_prior():
    prior = CenterPrior([0.0, 0.0], np.eye(2), weight=2.0)
    c = _component(prior=prior)
    pts = np.array([[4.0, 4.0], [4.0, 4.0]])
    c.update(pts, np.array([0, 0]))
    np.testing.assert_allclose(c.position_params.mean, [2.0, 2.0])

    c2 = _component(prior=prior)
    c2.update(pts, np.array([0, 0]), blend_prior=False)
    np.testing.assert_allclose(c2.position_params.mean, [4.0, 4.0])


def test_update_with_few_points_keeps_covariance():
    c = _component()
    cov_before = c.position_params.cov.copy()
    c.update(np.array([[3.0, 3.0]]), np.array([2]))
    np.testing.assert_allclose(c.position_params.mean, [3.0, 3.0])
    np.testing.assert_allclose(c.position_params.cov, cov_before)

    c.update(np.empty((0, 2)), np.empty(0, dtype=int))
    np.testing.assert_allclose(c.position_params.mean, [3.0, 3.0])


def test_sample_draws_from_parameters():
    rng = np.random.default_rng(1)
    c = _component(mean=(10.0, 10.0), cov=np.eye(2) * 0.01, counts=(0, 0, 50, 0))
    draws = [c.sample(rng) for _ in range(200)]
    xs = np.array([[d[0], d[1]] for d in draws])
    genes = np.array([d[2] for d in draws])
    assert np.abs(xs.mean(axis=0) - 10.0).max() < 0.05
    assert set(genes.tolist()) <= {0, 1, 2, 3}
    assert np.mean(genes == 2) > 0.8


def test_copy_is_independent():
    c = _component(prior=CenterPrior([0.0, 0.0], np.eye(2)))
    c2 = c.copy()
    c2.position_params.set_params(mean=[9.0, 9.0])
    c2.composition_params.set_counts([0, 0, 0, 9])
    assert c.position_params.mean.tolist() == [0.0, 0.0]
    assert c.composition_params.counts.tolist() == [3, 1, 0, 0]
    assert c2.center_prior is not c.center_prior


def test_components_from_assignment():
    sampler = default_sampler(3)
    pos = np.array([[0.0, 0.0], [0.1, 0.0], [0.0, 0.1], [5.0, 5.0], [5.1, 5.0], [5.0, 5.1], [9.0, 9.0]])
    genes = np.array([0, 0, 1, 2, 2, 2, 1])
    assignment = np.array([1, 1, 1, 2, 2, 2, 0])
    centers = [None, CenterPrior([5.0, 5.0], np.eye(2))]
    comps = components_from_assignment(pos, genes, assignment, sampler, centers=centers)
    assert len(comps) == 2
    assert comps[0].can_be_dropped and comps[0].center_prior is None
    assert not comps[1].can_be_dropped and comps[1].center_prior is centers[1]
    np.testing.assert_allclose(comps[0].position_params.mean, pos[:3].mean(axis=0))
    assert np.argmax(comps[1].composition_params.probs) == 2
    # sampler itself stays untouched
    assert sampler.composition_params.counts.sum() == 0
