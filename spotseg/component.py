"""Mixture components: one cell hypothesis each."""
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .distributions import CategoricalSmoothed, Normal2D, empirical_mean_cov


@dataclass(eq=False)
class CenterPrior:
    """Gaussian prior on a component mean, e.g. a nucleus center from staining.

    `weight` is the pseudo-count the prior contributes when the mean and
    covariance are re-estimated.
    """
    mean: np.ndarray
    cov: np.ndarray
    weight: float = 1.0
    _dist: Normal2D = field(init=False, repr=False)

    def __post_init__(self):
        self.mean = np.asarray(self.mean, dtype=np.float64).reshape(2)
        self.cov = np.asarray(self.cov, dtype=np.float64).reshape(2, 2)
        self._dist = Normal2D(self.mean, self.cov)

    def logpdf(self, x: float, y: float) -> float:
        return self._dist.logpdf(x, y)

    def logpdf_many(self, points: np.ndarray) -> np.ndarray:
        return self._dist.logpdf_many(points)

    def copy(self) -> "CenterPrior":
        return CenterPrior(self.mean.copy(), self.cov.copy(), self.weight)


class Component:
    min_points = 3

    def __init__(self, position_params: Normal2D, composition_params: CategoricalSmoothed,
                 center_prior: Optional[CenterPrior] = None, can_be_dropped: bool = True,
                 n_samples: int = 0):
        self.position_params = position_params
        self.composition_params = composition_params
        self.center_prior = center_prior
        self.can_be_dropped = can_be_dropped
        self.n_samples = n_samples

    @property
    def n_genes(self) -> int:
        return self.composition_params.n_categories

    def log_density_position(self, x: float, y: float) -> float:
        d = self.position_params.logpdf(x, y)
        if self.center_prior is not None:
            d += self.center_prior.logpdf(x, y)
        return d

    def log_density_composition(self, gene: int) -> float:
        return self.composition_params.logpdf(gene)

    def log_density(self, x: float, y: float, gene: int) -> float:
        return self.log_density_position(x, y) + self.log_density_composition(gene)

    def log_densities(self, positions: np.ndarray, genes: np.ndarray) -> np.ndarray:
        d = self.position_params.logpdf_many(positions) + self.composition_params.logpdf_many(genes)
        if self.center_prior is not None:
            d += self.center_prior.logpdf_many(positions)
        return d

    def update(self, positions: np.ndarray, genes: np.ndarray, blend_prior: bool = True) -> "Component":
        """Re-estimate both densities from the molecules currently assigned to the component."""
        positions = np.asarray(positions, dtype=np.float64).reshape(-1, 2)
        n = len(positions)
        if n == 0:
            return self

        self.composition_params.fit(genes)

        mean, scatter = empirical_mean_cov(positions)
        cov = scatter if n >= self.min_points else None
        if blend_prior and self.center_prior is not None:
            w = self.center_prior.weight
            prior_mean = self.center_prior.mean
            mean = (n * mean + w * prior_mean) / (n + w)
            if cov is not None:
                cov = (n * cov + w * self.center_prior.cov) / (n + w)
        self.position_params.set_params(mean=mean, cov=cov)
        return self

    def sample(self, rng: np.random.Generator) -> Tuple[float, float, int]:
        x, y = self.position_params.sample(rng)
        gene = int(self.composition_params.sample(rng))
        return float(x), float(y), gene

    def copy(self) -> "Component":
        return Component(
            self.position_params.copy(),
            self.composition_params.copy(),
            center_prior=None if self.center_prior is None else self.center_prior.copy(),
            can_be_dropped=self.can_be_dropped,
            n_samples=self.n_samples,
        )

    def __repr__(self) -> str:
        return (f"Component(mean={self.position_params.mean.round(3).tolist()}, n_samples={self.n_samples}, "
                f"has_center={self.center_prior is not None}, can_be_dropped={self.can_be_dropped})")


def default_sampler(n_genes: int, cov=None, smooth: float = 1.0) -> Component:
    """Template component used to seed new components.

    `cov` is the expected cell covariance; unit variance when not given.
    """
    if cov is None:
        cov = np.eye(2)
    return Component(Normal2D(np.zeros(2), cov), CategoricalSmoothed.uniform(n_genes, smooth=smooth))


def components_from_assignment(positions: np.ndarray, genes: np.ndarray, assignment: np.ndarray,
                               sampler: Component, centers: Optional[Sequence[Optional[CenterPrior]]] = None
                               ) -> List[Component]:
    """Build one component per id in ``1..assignment.max()`` from an external initial assignment.

    Each component starts as a copy of `sampler` refit on its molecules. Components with a
    center prior start at the prior mean and cannot be dropped.
    """
    positions = np.asarray(positions, dtype=np.float64)
    genes = np.asarray(genes, dtype=np.int64)
    assignment = np.asarray(assignment, dtype=np.int64)
    n_comps = int(assignment.max()) if len(assignment) else 0
    if centers is not None:
        n_comps = max(n_comps, len(centers))

    components = []
    for cid in range(1, n_comps + 1):
        c = sampler.copy()
        c.n_samples = 0
        prior = centers[cid - 1] if centers is not None and cid - 1 < len(centers) else None
        if prior is not None:
            c.center_prior = prior
            c.can_be_dropped = False
            c.position_params.set_params(mean=prior.mean)
        mask = assignment == cid
        if mask.any():
            c.update(positions[mask], genes[mask])
        components.append(c)
    return components
