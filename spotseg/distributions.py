"""Densities used by mixture components: a 2D Gaussian and a smoothed categorical."""
from typing import Optional, Tuple

import numpy as np

_LOG_2PI = np.log(2 * np.pi)


class Normal2D:
    """Bivariate normal with cached inverse covariance and log-determinant."""

    min_variance = 1e-6

    def __init__(self, mean, cov):
        self.mean = np.asarray(mean, dtype=np.float64).reshape(2)
        self.cov = self._regularize(np.asarray(cov, dtype=np.float64).reshape(2, 2))
        self._refresh()

    @classmethod
    def _regularize(cls, cov: np.ndarray) -> np.ndarray:
        cov = (cov + cov.T) / 2
        vals, vecs = np.linalg.eigh(cov)
        vals = np.maximum(vals, cls.min_variance)
        return (vecs * vals) @ vecs.T

    def _refresh(self) -> None:
        self._inv = np.linalg.inv(self.cov)
        self._logdet = float(np.log(np.linalg.det(self.cov)))

    def set_params(self, mean=None, cov=None) -> "Normal2D":
        if mean is not None:
            self.mean = np.asarray(mean, dtype=np.float64).reshape(2)
        if cov is not None:
            self.cov = self._regularize(np.asarray(cov, dtype=np.float64).reshape(2, 2))
        self._refresh()
        return self

    def logpdf(self, x: float, y: float) -> float:
        dx = x - self.mean[0]
        dy = y - self.mean[1]
        inv = self._inv
        maha = dx * dx * inv[0, 0] + 2.0 * dx * dy * inv[0, 1] + dy * dy * inv[1, 1]
        return -0.5 * (maha + self._logdet) - _LOG_2PI

    def logpdf_many(self, points: np.ndarray) -> np.ndarray:
        d = np.asarray(points, dtype=np.float64) - self.mean
        maha = np.einsum("ij,jk,ik->i", d, self._inv, d)
        return -0.5 * (maha + self._logdet) - _LOG_2PI

    def sample(self, rng: np.random.Generator, size: Optional[int] = None) -> np.ndarray:
        return rng.multivariate_normal(self.mean, self.cov, size=size)

    def copy(self) -> "Normal2D":
        return Normal2D(self.mean.copy(), self.cov.copy())

    def __repr__(self) -> str:
        return f"Normal2D(mean={self.mean.tolist()}, cov={self.cov.tolist()})"


class CategoricalSmoothed:
    """Categorical distribution over gene labels, estimated from counts with a pseudocount."""

    def __init__(self, counts, smooth: float = 1.0):
        self.counts = np.asarray(counts, dtype=np.float64).copy()
        if self.counts.ndim != 1 or len(self.counts) == 0:
            raise ValueError("counts must be a non-empty 1D array")
        if smooth <= 0:
            raise ValueError(f"smooth must be positive, got {smooth}")
        self.smooth = float(smooth)
        self._refresh()

    @classmethod
    def uniform(cls, n_categories: int, smooth: float = 1.0) -> "CategoricalSmoothed":
        return cls(np.zeros(n_categories), smooth=smooth)

    @property
    def n_categories(self) -> int:
        return len(self.counts)

    def _refresh(self) -> None:
        total = self.counts.sum() + self.smooth * len(self.counts)
        self._log_probs = np.log(self.counts + self.smooth) - np.log(total)

    @property
    def probs(self) -> np.ndarray:
        return np.exp(self._log_probs)

    def set_counts(self, counts) -> "CategoricalSmoothed":
        counts = np.asarray(counts, dtype=np.float64)
        if counts.shape != self.counts.shape:
            raise ValueError(f"Expected {self.n_categories} categories, got {counts.shape}")
        self.counts = counts.copy()
        self._refresh()
        return self

    def fit(self, values: np.ndarray) -> "CategoricalSmoothed":
        return self.set_counts(np.bincount(np.asarray(values, dtype=np.int64), minlength=self.n_categories))

    def logpdf(self, value: int) -> float:
        return float(self._log_probs[value])

    def logpdf_many(self, values: np.ndarray) -> np.ndarray:
        return self._log_probs[np.asarray(values, dtype=np.int64)]

    def sample(self, rng: np.random.Generator, size: Optional[int] = None):
        return rng.choice(self.n_categories, size=size, p=self.probs)

    def copy(self) -> "CategoricalSmoothed":
        return CategoricalSmoothed(self.counts.copy(), smooth=self.smooth)

    def __repr__(self) -> str:
        return f"CategoricalSmoothed(n_categories={self.n_categories}, n={self.counts.sum():.0f}, smooth={self.smooth})"


def empirical_mean_cov(points: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Mean and biased scatter covariance of `points` (shape (n, 2), n >= 1)."""
    mean = points.mean(axis=0)
    d = points - mean
    cov = d.T @ d / len(points)
    return mean, cov
