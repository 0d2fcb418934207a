"""Expected limits: median and the +-1/+-2 sigma bands.

All expected limits are derived from the background-only Asimov dataset
(`asimovData_0`). For a band at N sigma the Asimov data is assumed fluctuated
by N standard deviations, which only shifts the background p-value:

    CLs_N(mu) = expected_cls(q_mu,A(mu), N)

and each band is a separate `LimitScanner` run on that function.

With `better_bands` the Gaussian shift is replaced by a dedicated Asimov
dataset per band: first find mu_N with sqrt(q_mu,A(mu_N)) = |N|, then build
an Asimov dataset at +-mu_N (nuisances profiled on the conditioning data) and
scan it as if it were observed data, with q_mu,A still taken from
`asimovData_0`. Negative bands are refined only when `better_negative_bands`
or `profile_negative_at_zero` is set; the latter profiles the nuisances at
mu = 0 instead of at -mu_N.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import math
from typing import Callable, Optional

from scipy.stats import norm

from . import asymptotics
from .asimov import AsimovBuilder
from .config import LimitConfig
from .minimize import RobustMinimizer
from .model import ConditioningMode, Dataset, ParameterState, StatModel
from .scan import LimitPoint, LimitScanner, ScanResult, band_proposal, observed_proposal
from .teststat import Profiler

log = logging.getLogger(__name__)

SIGMAS = (-2, -1, 0, 1, 2)


def band_label(n_sigma: float) -> str:
    if n_sigma == 0:
        return "median"
    return f"{'+' if n_sigma > 0 else '-'}{abs(n_sigma):g}sigma"


@dataclass(frozen=True)
class BandScan:
    n_sigma: float
    refined: bool
    scan: ScanResult
    asimov_mu: Optional[float] = None
    located: Optional[ScanResult] = None

    @property
    def iterations(self) -> int:
        return self.scan.iterations + (self.located.iterations if self.located is not None else 0)

    @property
    def retries(self) -> int:
        return self.scan.retries + (self.located.retries if self.located is not None else 0)

    @property
    def reliable(self) -> bool:
        return self.scan.reliable and (self.located is None or self.located.converged)


class BandComputer:
    def __init__(
        self,
        model: StatModel,
        asimov0: Profiler,
        state: ParameterState,
        *,
        poi: str,
        config: LimitConfig,
        minimizer_factory: Callable[[], RobustMinimizer],
        conditioning_data: Optional[Dataset] = None,
    ):
        self.model = model
        self.asimov0 = asimov0
        self.state = state.clone()
        self.poi = poi
        self.config = config
        self.minimizer_factory = minimizer_factory
        self.conditioning_data = conditioning_data
        self.tilde = bool(config.do_tilde)
        self.target_cls = config.target_cls

    def scanner(self, target_cls: Optional[float] = None) -> LimitScanner:
        return LimitScanner(
            target_cls=self.target_cls if target_cls is None else target_cls,
            precision=self.config.precision,
            max_iterations=self.config.max_iterations,
        )

    def is_refined(self, n_sigma: float) -> bool:
        if n_sigma == 0 or not self.config.better_bands:
            return False
        return n_sigma > 0 or self.config.refine_negative_bands

    def fork_asimov0(self) -> Profiler:
        """Profiler on asimovData_0 with its own minimizer, for use in another thread."""
        return self.asimov0.fork(self.minimizer_factory())

    def initial_guess(self, n_sigma: float, median: Optional[float]) -> float:
        if median is not None and math.isfinite(median) and median > 0.0:
            guess = asymptotics.band_approximation(median, n_sigma, self.target_cls)
            if math.isfinite(guess) and guess > 0.0:
                return guess
        v = self.state.value(self.poi)
        return v if v > 0.0 else 1.0

    def compute(self, n_sigma: float, *, median: Optional[float] = None, asimov0: Optional[Profiler] = None) -> BandScan:
        asimov0 = asimov0 if asimov0 is not None else self.fork_asimov0()
        guess = self.initial_guess(n_sigma, median)
        if self.is_refined(n_sigma):
            return self._refined(n_sigma, asimov0, guess)
        return BandScan(n_sigma, False, self._shifted(n_sigma, asimov0, guess))

    def _shifted(self, n_sigma: float, asimov0: Profiler, guess: float) -> ScanResult:
        tilde = self.tilde

        def evaluate(mu: float) -> LimitPoint:
            tv = asimov0.evaluate(mu)
            return LimitPoint(
                mu=mu,
                cls=asymptotics.expected_cls(tv.q, n_sigma, tilde),
                q_mu=tv.q,
                q_mu_a=tv.q,
                muhat=0.0,
                reliable=tv.reliable,
                retries=tv.retries,
            )

        propose = band_proposal(self.target_cls, n_sigma, tilde=tilde)
        return self.scanner().find(evaluate, propose, guess, label=f"expected {band_label(n_sigma)}")

    def band_mu(self, n_sigma: float, asimov0: Profiler, guess: float) -> ScanResult:
        """Find mu_N > 0 with sqrt(q_mu,A(mu_N)) = |N| on asimovData_0."""
        k = abs(float(n_sigma))

        def evaluate(mu: float) -> LimitPoint:
            tv = asimov0.evaluate(mu)
            return LimitPoint(
                mu=mu,
                cls=2.0 * float(norm.sf(math.sqrt(tv.q))),
                q_mu=tv.q,
                q_mu_a=tv.q,
                muhat=0.0,
                reliable=tv.reliable,
                retries=tv.retries,
            )

        def propose(point: LimitPoint) -> Optional[float]:
            if not (point.q_mu_a > 0.0):
                return None
            return k * point.mu / math.sqrt(point.q_mu_a)

        return self.scanner(2.0 * float(norm.sf(k))).find(evaluate, propose, guess, label=f"mu at {band_label(n_sigma)}")

    def _refined(self, n_sigma: float, asimov0: Profiler, guess: float) -> BandScan:
        label = band_label(n_sigma)
        located = self.band_mu(n_sigma, asimov0, guess)
        if not math.isfinite(located.limit):
            log.warning(f"could not locate the Asimov point for the {label} band, using the shifted expectation")
            return BandScan(n_sigma, False, self._shifted(n_sigma, asimov0, guess))
        mu_n = math.copysign(located.limit, n_sigma)

        minimizer = asimov0.minimizer
        builder = AsimovBuilder(self.model, minimizer, poi=self.poi)
        profile_mu = 0.0 if (n_sigma < 0 and self.config.profile_negative_at_zero) else mu_n
        if self.config.use_conditional_expected and self.conditioning_data is not None:
            mode = ConditioningMode.CONDITIONAL
        else:
            mode = ConditioningMode.NOMINAL
        build = builder.build(
            mu_n,
            mode,
            self.state,
            conditioning_data=self.conditioning_data,
            profile_mu=profile_mu,
            name=f"asimovData_{label}",
        )

        band = Profiler(
            self.model,
            build.dataset,
            self.state,
            minimizer,
            poi=self.poi,
            tilde=self.tilde,
            use_pred_fit=self.config.use_pred_fit,
        )
        tilde = self.tilde

        def evaluate(mu: float) -> LimitPoint:
            tv = band.evaluate(mu)
            ta = asimov0.evaluate(mu)
            return LimitPoint(
                mu=mu,
                cls=asymptotics.cls(tv.q, ta.q, tilde),
                q_mu=tv.q,
                q_mu_a=ta.q,
                muhat=tv.muhat,
                reliable=tv.reliable and ta.reliable and build.reliable,
                retries=tv.retries + ta.retries,
            )

        propose = observed_proposal(self.target_cls, tilde=tilde)
        scan = self.scanner().find(evaluate, propose, guess, label=f"expected {label}")
        return BandScan(n_sigma, True, scan, asimov_mu=mu_n, located=located)


__all__ = ["SIGMAS", "BandScan", "BandComputer", "band_label"]
