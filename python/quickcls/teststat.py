"""One-sided profile likelihood ratio test statistic.

    q_mu = 2 * (NLL(mu, theta_hat_mu) - NLL(mu_hat, theta_hat))   if mu_hat <= mu
    q_mu = 0                                                      if mu_hat >  mu

With the tilde variant the reference fit is bounded at the POI's physical
boundary: if mu_hat < 0 the reference is the conditional fit at mu = 0, i.e.
q~_mu equals q_mu evaluated with mu_hat clamped to zero. The asymptotic
formulae must be evaluated with the same `tilde` flag.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Dict, List, Optional, Tuple

import numpy as np

from .minimize import FitResult, RobustMinimizer
from .model import Dataset, ParameterState, StatModel

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class TestStatisticValue:
    __test__ = False

    mu: float
    q: float
    muhat: float
    nll_conditional: float
    nll_reference: float
    tilde: bool
    one_sided: bool
    boundary: bool
    reliable: bool
    retries: int


def q_mu(nll_conditional: float, nll_reference: float, mu: float, muhat: float) -> float:
    """One-sided q_mu from a conditional/reference NLL pair, floored at zero."""
    if muhat > mu:
        return 0.0
    return max(2.0 * (float(nll_conditional) - float(nll_reference)), 0.0)


def q_mu_tilde(
    nll_conditional: float,
    nll_global: float,
    nll_at_zero: float,
    mu: float,
    muhat: float,
) -> float:
    """q~_mu: the reference switches to the mu = 0 fit when mu_hat < 0."""
    if muhat < 0.0:
        return q_mu(nll_conditional, nll_at_zero, mu, 0.0)
    return q_mu(nll_conditional, nll_global, mu, muhat)


class Profiler:
    """Fits of one model to one dataset.

    Holds a private clone of the parameter state; every conditional fit starts
    from that base state, or from the previous best fits when predictive fits
    are enabled (linear extrapolation in mu of the last two conditional fits).
    Global and boundary fits are cached.
    """

    def __init__(
        self,
        model: StatModel,
        data: Dataset,
        state: ParameterState,
        minimizer: RobustMinimizer,
        *,
        poi: str,
        tilde: bool = True,
        use_pred_fit: bool = False,
    ):
        self.model = model
        self.data = data
        self.minimizer = minimizer
        self.poi = poi
        self.tilde = bool(tilde)
        self.use_pred_fit = bool(use_pred_fit)
        self._base = state.clone()
        self._base.load(data.global_observables)
        self._global: Optional[FitResult] = None
        self._boundary: Optional[FitResult] = None
        self._conditional: Dict[float, FitResult] = {}
        self._history: List[Tuple[float, np.ndarray]] = []

    def fork(self, minimizer: Optional[RobustMinimizer] = None) -> "Profiler":
        """Independent profiler sharing the fits already made."""
        other = Profiler(
            self.model,
            self.data,
            self._base,
            minimizer or self.minimizer,
            poi=self.poi,
            tilde=self.tilde,
            use_pred_fit=self.use_pred_fit,
        )
        other._global = self._global
        other._boundary = self._boundary
        other._conditional = dict(self._conditional)
        other._history = list(self._history)
        return other

    @property
    def n_fits(self) -> int:
        return len(self._conditional) + (self._global is not None) + (self._boundary is not None)

    def global_fit(self) -> FitResult:
        if self._global is not None:
            return self._global
        tag = self.data.asimov
        if tag is not None:
            # The best fit of an Asimov dataset is its generating point.
            fit = self.conditional_fit(tag.mu)
        else:
            work = self._base.clone()
            work.set_constant(self.poi, False)
            fit = self.minimizer.minimize(self.model, self.data, work)
            log.debug(f"global fit on {self.data.name}: {self.poi}hat = {fit.value(self.poi):.6g}, nll = {fit.nll:.6f}")
        self._global = fit
        return fit

    @property
    def muhat(self) -> float:
        tag = self.data.asimov
        if tag is not None:
            return float(tag.mu)
        return self.global_fit().value(self.poi)

    def boundary_fit(self) -> FitResult:
        if self._boundary is None:
            self._boundary = self.conditional_fit(0.0)
        return self._boundary

    def reference(self) -> Tuple[FitResult, bool]:
        """Reference fit for q_mu and whether the zero boundary was applied."""
        fit = self.global_fit()
        if self.tilde and self.muhat < 0.0:
            return self.boundary_fit(), True
        return fit, False

    def conditional_fit(self, mu: float) -> FitResult:
        mu = float(mu)
        cached = self._conditional.get(mu)
        if cached is not None:
            return cached

        work = self._base.clone()
        work.fix_at(self.poi, mu)
        start = self._predicted_start(mu)
        if start is not None:
            mask = work.floating_mask()
            work.values[mask] = start[mask]
            work.clip_to_bounds()

        fit = self.minimizer.minimize(self.model, self.data, work)
        self._conditional[mu] = fit
        if fit.converged:
            self._history.append((mu, fit.values.copy()))
        return fit

    def _predicted_start(self, mu: float) -> Optional[np.ndarray]:
        if not self.use_pred_fit or not self._history:
            return None
        if len(self._history) == 1:
            return self._history[-1][1]
        (mu1, v1), (mu2, v2) = self._history[-2], self._history[-1]
        if mu2 == mu1:
            return v2
        return v2 + (v2 - v1) * (mu - mu2) / (mu2 - mu1)

    def evaluate(self, mu: float) -> TestStatisticValue:
        mu = float(mu)
        cond = self.conditional_fit(mu)
        ref, boundary = self.reference()
        muhat = self.muhat
        eff_muhat = 0.0 if boundary else muhat
        q = q_mu(cond.nll, ref.nll, mu, eff_muhat)
        reliable = cond.converged and ref.converged
        return TestStatisticValue(
            mu=mu,
            q=q,
            muhat=muhat,
            nll_conditional=cond.nll,
            nll_reference=ref.nll,
            tilde=self.tilde,
            one_sided=eff_muhat > mu,
            boundary=boundary,
            reliable=reliable,
            retries=cond.retries + ref.retries,
        )


__all__ = ["TestStatisticValue", "q_mu", "q_mu_tilde", "Profiler"]
