"""Reference models with known asymptotic behaviour.

These small analytic likelihoods implement `quickcls.model.StatModel`. They are
used for closure tests and as minimal examples of the model interface:

- `GaussianModel`: one Gaussian measurement `x ~ N(mu * s + b, sigma)`.
  The profile likelihood is exactly quadratic, so the asymptotic formulae are
  exact and the limits have closed forms.
- `GaussianConstraintModel`: adds a nuisance `theta` shifting the mean by
  `delta * theta`, constrained by a unit Gaussian around the global
  observable `theta_obs`.
- `CountingModel`: multi-bin Poisson counting experiment with a relative
  background normalisation uncertainty (Gaussian-constrained nuisance).
"""

from __future__ import annotations

import math
from typing import Sequence, Tuple

import numpy as np
from scipy.special import gammaln

from .model import Dataset, Parameter


class GaussianModel:
    def __init__(
        self,
        *,
        signal: float = 1.0,
        background: float = 0.0,
        sigma: float = 1.0,
        poi: str = "mu",
        poi_bounds: Tuple[float, float] = (-10.0, 10.0),
    ):
        if not (sigma > 0.0):
            raise ValueError("sigma must be > 0")
        self.signal = float(signal)
        self.background = float(background)
        self.sigma = float(sigma)
        self.poi = poi
        self.poi_bounds = (float(poi_bounds[0]), float(poi_bounds[1]))

    @property
    def pois(self) -> Tuple[str, ...]:
        return (self.poi,)

    @property
    def nuisances(self) -> Tuple[str, ...]:
        return ()

    @property
    def global_observables(self) -> Tuple[str, ...]:
        return ()

    @property
    def sigma_mu(self) -> float:
        """Standard deviation of the maximum-likelihood estimate of the POI."""
        return self.sigma / abs(self.signal)

    def parameters(self) -> Sequence[Parameter]:
        return [Parameter(self.poi, 1.0, *self.poi_bounds)]

    def mean(self, values: np.ndarray) -> float:
        return float(values[0]) * self.signal + self.background

    def nll(self, values: np.ndarray, data: Dataset) -> float:
        x = float(data.observations[0])
        pull = (x - self.mean(values)) / self.sigma
        return 0.5 * pull * pull

    def expected_data(self, values: np.ndarray) -> Dataset:
        return Dataset("expected", [self.mean(values)])

    def dataset(self, x: float, name: str = "obsData") -> Dataset:
        return Dataset(name, [float(x)])


class GaussianConstraintModel:
    def __init__(
        self,
        *,
        signal: float = 1.0,
        background: float = 0.0,
        sigma: float = 1.0,
        delta: float = 0.5,
        poi: str = "mu",
        poi_bounds: Tuple[float, float] = (-10.0, 10.0),
    ):
        if not (sigma > 0.0):
            raise ValueError("sigma must be > 0")
        self.signal = float(signal)
        self.background = float(background)
        self.sigma = float(sigma)
        self.delta = float(delta)
        self.poi = poi
        self.poi_bounds = (float(poi_bounds[0]), float(poi_bounds[1]))

    @property
    def pois(self) -> Tuple[str, ...]:
        return (self.poi,)

    @property
    def nuisances(self) -> Tuple[str, ...]:
        return ("theta",)

    @property
    def global_observables(self) -> Tuple[str, ...]:
        return ("theta_obs",)

    @property
    def sigma_mu(self) -> float:
        # Profiling theta adds delta^2 to the measurement variance.
        return math.sqrt(self.sigma**2 + self.delta**2) / abs(self.signal)

    def parameters(self) -> Sequence[Parameter]:
        return [
            Parameter(self.poi, 1.0, *self.poi_bounds),
            Parameter("theta", 0.0, -5.0, 5.0),
            Parameter("theta_obs", 0.0, -5.0, 5.0, constant=True),
        ]

    def mean(self, values: np.ndarray) -> float:
        return float(values[0]) * self.signal + self.background + self.delta * float(values[1])

    def nll(self, values: np.ndarray, data: Dataset) -> float:
        x = float(data.observations[0])
        pull = (x - self.mean(values)) / self.sigma
        constraint = float(values[2]) - float(values[1])
        return 0.5 * pull * pull + 0.5 * constraint * constraint

    def expected_data(self, values: np.ndarray) -> Dataset:
        return Dataset("expected", [self.mean(values)], {"theta_obs": float(values[1])})

    def dataset(self, x: float, theta_obs: float = 0.0, name: str = "obsData") -> Dataset:
        return Dataset(name, [float(x)], {"theta_obs": float(theta_obs)})


class CountingModel:
    def __init__(
        self,
        signal: Sequence[float],
        background: Sequence[float],
        *,
        bkg_uncertainty: float = 0.1,
        poi: str = "mu",
        poi_bounds: Tuple[float, float] = (0.0, 20.0),
    ):
        self.signal = np.asarray(signal, dtype=np.float64)
        self.background = np.asarray(background, dtype=np.float64)
        if self.signal.shape != self.background.shape or self.signal.ndim != 1:
            raise ValueError("signal and background must be 1D arrays of the same length")
        if np.any(self.background <= 0.0):
            raise ValueError("background yields must be > 0")
        self.bkg_uncertainty = float(bkg_uncertainty)
        self.poi = poi
        self.poi_bounds = (float(poi_bounds[0]), float(poi_bounds[1]))

    @property
    def pois(self) -> Tuple[str, ...]:
        return (self.poi,)

    @property
    def nuisances(self) -> Tuple[str, ...]:
        return ("bkg_norm",)

    @property
    def global_observables(self) -> Tuple[str, ...]:
        return ("bkg_norm_obs",)

    def parameters(self) -> Sequence[Parameter]:
        return [
            Parameter(self.poi, 1.0, *self.poi_bounds),
            Parameter("bkg_norm", 0.0, -5.0, 5.0),
            Parameter("bkg_norm_obs", 0.0, -5.0, 5.0, constant=True),
        ]

    def rates(self, values: np.ndarray) -> np.ndarray:
        mu, theta = float(values[0]), float(values[1])
        # Log-normal response keeps the background positive for any theta.
        bkg = self.background * math.exp(math.log1p(self.bkg_uncertainty) * theta)
        return np.maximum(mu * self.signal + bkg, 1e-12)

    def nll(self, values: np.ndarray, data: Dataset) -> float:
        n = data.observations
        lam = self.rates(values)
        poisson = float(np.sum(lam - n * np.log(lam) + gammaln(n + 1.0)))
        constraint = float(values[2]) - float(values[1])
        return poisson + 0.5 * constraint * constraint

    def expected_data(self, values: np.ndarray) -> Dataset:
        return Dataset("expected", self.rates(values), {"bkg_norm_obs": float(values[1])})

    def dataset(self, counts: Sequence[float], bkg_norm_obs: float = 0.0, name: str = "obsData") -> Dataset:
        return Dataset(name, counts, {"bkg_norm_obs": float(bkg_norm_obs)})


__all__ = [
    "GaussianModel",
    "GaussianConstraintModel",
    "CountingModel",
]
