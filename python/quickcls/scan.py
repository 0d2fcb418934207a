"""Iterative search for the CLs = target crossing along the POI axis.

Each iteration evaluates CLs at the current guess (fits happen inside the
`evaluate` callback) and asks a `propose` callback for the next guess. The
proposals come from the asymptotic Gaussian model calibrated on the point just
evaluated (`observed_proposal`, `band_proposal`), which converges in one or two
steps for well-behaved likelihoods.

The proposal is safeguarded by a bracket: every evaluated point with
CLs > target raises the lower end, every point with CLs < target lowers the
upper end, and a proposal outside the bracket is replaced by bisection. The
scan stops when the step or the bracket width drops below
`precision * |mu|`, or after `max_iterations`.

CLs(mu) is assumed to be non-increasing. The trace is checked after the scan
and a violation is reported on the result instead of being silently ignored.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import math
from typing import Callable, Optional, Sequence, Tuple

import scipy.optimize

from . import asymptotics

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class LimitPoint:
    mu: float
    cls: float
    q_mu: float = math.nan
    q_mu_a: float = math.nan
    muhat: float = math.nan
    reliable: bool = True
    retries: int = 0

    @property
    def finite(self) -> bool:
        return math.isfinite(self.cls)


@dataclass(frozen=True)
class ScanResult:
    limit: float
    converged: bool
    iterations: int
    trace: Tuple[LimitPoint, ...]
    monotonic: bool
    reliable: bool
    message: str = ""

    @property
    def retries(self) -> int:
        return sum(p.retries for p in self.trace)


Evaluate = Callable[[float], LimitPoint]
Propose = Callable[[LimitPoint], Optional[float]]


def is_monotonic(trace: Sequence[LimitPoint], *, tolerance: float = 1e-4) -> bool:
    """True if CLs does not increase with mu (beyond `tolerance`) along the trace."""
    pts = sorted((p for p in trace if p.finite), key=lambda p: p.mu)
    for a, b in zip(pts, pts[1:]):
        if b.mu > a.mu and b.cls > a.cls + tolerance:
            return False
    return True


def solve_crossing(cls_model: Callable[[float], float], target: float, *, start: float) -> Optional[float]:
    """Root of a decreasing model CLs(mu) - target on mu > 0, or None if there is none."""

    def f(mu: float) -> float:
        return cls_model(mu) - target

    hi = max(abs(float(start)), 1e-9)
    for _ in range(200):
        fv = f(hi)
        if math.isnan(fv):
            return None
        if fv < 0.0:
            break
        hi *= 2.0
    else:
        return None

    lo = hi
    while lo > 1e-300:
        lo *= 0.5
        if f(lo) > 0.0:
            break
    else:
        return None
    return float(scipy.optimize.brentq(f, lo, hi, xtol=1e-14, rtol=1e-12, maxiter=500))


def _sigma_b(point: LimitPoint) -> float:
    if not (point.q_mu_a > 0.0) or not (point.mu > 0.0):
        return math.inf
    return point.mu / math.sqrt(point.q_mu_a)


def observed_proposal(target_cls: float, *, tilde: bool = True) -> Propose:
    """Next guess for a scan on data: Gaussian model with sigma from q_mu and q_mu,A."""

    def propose(point: LimitPoint) -> Optional[float]:
        sigma_b = _sigma_b(point)
        if not math.isfinite(sigma_b):
            return None
        sigma_obs = asymptotics.sigma_from_q(point.mu, point.muhat, point.q_mu, tilde)
        if not (math.isfinite(sigma_obs) and sigma_obs > 0.0):
            sigma_obs = sigma_b
        muhat = point.muhat if math.isfinite(point.muhat) else 0.0

        def model(mu: float) -> float:
            q = asymptotics.q_from_sigma(mu, muhat, sigma_obs, tilde)
            return asymptotics.cls(q, (mu / sigma_b) ** 2, tilde)

        return solve_crossing(model, target_cls, start=point.mu)

    return propose


def band_proposal(target_cls: float, n_sigma: float, *, tilde: bool = True) -> Propose:
    """Next guess for an expected band: Gaussian model with sigma from q_mu,A."""

    def propose(point: LimitPoint) -> Optional[float]:
        sigma_b = _sigma_b(point)
        if not math.isfinite(sigma_b):
            return None

        def model(mu: float) -> float:
            return asymptotics.expected_cls((mu / sigma_b) ** 2, n_sigma, tilde)

        return solve_crossing(model, target_cls, start=point.mu)

    return propose


class LimitScanner:
    def __init__(
        self,
        *,
        target_cls: float = 0.05,
        precision: float = 0.005,
        max_iterations: int = 100,
        monotonic_tolerance: float = 1e-4,
    ):
        self.target_cls = float(target_cls)
        self.precision = float(precision)
        self.max_iterations = int(max_iterations)
        self.monotonic_tolerance = float(monotonic_tolerance)

    def find(self, evaluate: Evaluate, propose: Propose, initial_guess: float, *, label: str = "limit") -> ScanResult:
        target = self.target_cls
        mu = float(initial_guess)
        if not (mu > 0.0):
            mu = 1.0
        lo = 0.0  # CLs(0) = 1 > target for an upper limit
        hi = math.inf
        trace: list[LimitPoint] = []
        limit = math.nan
        converged = False
        message = ""

        for iteration in range(1, self.max_iterations + 1):
            point = evaluate(mu)
            trace.append(point)
            log.debug(f"{label}: it {iteration} mu = {mu:.6g} CLs = {point.cls:.6g}{'' if point.reliable else ' (unreliable)'}")

            if point.finite:
                if point.cls > target:
                    lo = max(lo, mu)
                elif point.cls < target:
                    hi = min(hi, mu)
                else:
                    limit, converged = mu, True
                    break

            proposal = propose(point) if point.finite else None
            newton = proposal is not None and math.isfinite(proposal) and proposal > 0.0
            if newton and not (lo < proposal < hi):
                # Outside the bracket only a step below tolerance is accepted (it converges).
                newton = abs(proposal - mu) <= self.precision * abs(proposal)
            if not newton:
                proposal = self._fallback(mu, lo, hi, point.finite)

            # A bisection step only bounds the error through the bracket width.
            tol = self.precision * abs(proposal)
            if (newton and abs(proposal - mu) <= tol) or (math.isfinite(hi) and hi - lo <= tol):
                limit, converged = proposal, True
                break
            mu = proposal
        else:
            limit = mu
            message = f"no convergence after {self.max_iterations} iterations"
            log.warning(f"{label}: {message}, last guess {mu:.6g}")

        monotonic = is_monotonic(trace, tolerance=self.monotonic_tolerance)
        if not monotonic:
            message = (message + "; " if message else "") + "non-monotonic CLs trace"
            log.warning(f"{label}: CLs is not monotonic in the scanned range, the crossing may be wrong")

        terminal_ok = bool(trace) and trace[-1].reliable
        if trace and not terminal_ok:
            message = (message + "; " if message else "") + "terminal point fit did not converge"
        reliable = converged and monotonic and terminal_ok
        if converged:
            log.info(f"{label}: {limit:.6g} after {len(trace)} iteration(s)")
        return ScanResult(
            limit=float(limit),
            converged=converged,
            iterations=len(trace),
            trace=tuple(trace),
            monotonic=monotonic,
            reliable=reliable,
            message=message,
        )

    @staticmethod
    def _fallback(mu: float, lo: float, hi: float, finite: bool) -> float:
        if not finite and lo < mu < hi and math.isfinite(hi):
            # The bracket did not move; step away from the failed point.
            return 0.5 * (lo + mu)
        if math.isfinite(hi):
            return 0.5 * (lo + hi)
        return 2.0 * max(mu, lo)


__all__ = [
    "LimitPoint",
    "ScanResult",
    "LimitScanner",
    "is_monotonic",
    "solve_crossing",
    "observed_proposal",
    "band_proposal",
]
