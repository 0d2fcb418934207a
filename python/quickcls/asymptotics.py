"""Closed-form asymptotic p-values for the one-sided profile likelihood ratio.

Formulae from Cowan, Cranmer, Gross, Vitells, Eur. Phys. J. C 71 (2011) 1554.
`q` is the test statistic on the data, `q_a` the same statistic on the
background-only Asimov dataset (so `sigma = mu / sqrt(q_a)`).

For q_mu (and for q~_mu while q <= q_a):

    p_mu = 1 - Phi(sqrt(q))
    p_b  = 1 - Phi(sqrt(q_a) - sqrt(q))

For q~_mu with q > q_a:

    p_mu = 1 - Phi((q + q_a) / (2 sqrt(q_a)))
    p_b  = 1 - Phi((q_a - q) / (2 sqrt(q_a)))

CLs = p_mu / (1 - p_b) is evaluated in log space so that it stays finite for
large q (CLs -> 0) and never divides by zero at q_a -> 0 (CLs -> 1).
"""

from __future__ import annotations

import math
from typing import Tuple

from scipy.stats import norm


def _branch_args(q: float, q_a: float, tilde: bool) -> Tuple[float, float]:
    """Return (x_mu, x_b) with p_mu = sf(x_mu) and 1 - p_b = cdf(x_b)."""
    q = max(float(q), 0.0)
    q_a = float(q_a)
    if not tilde or q <= q_a:
        sq = math.sqrt(q)
        return sq, math.sqrt(q_a) - sq
    sqa = math.sqrt(q_a)
    return (q + q_a) / (2.0 * sqa), (q_a - q) / (2.0 * sqa)


def p_mu(q: float, q_a: float, tilde: bool = True) -> float:
    """Signal+background p-value."""
    if q_a <= 0.0:
        return float(norm.sf(math.sqrt(max(float(q), 0.0))))
    x_mu, _ = _branch_args(q, q_a, tilde)
    return float(norm.sf(x_mu))


def p_b(q: float, q_a: float, tilde: bool = True) -> float:
    """Background-only p-value (1 - CLb)."""
    if q_a <= 0.0:
        return 0.5
    _, x_b = _branch_args(q, q_a, tilde)
    return float(norm.sf(x_b))


def cls(q: float, q_a: float, tilde: bool = True) -> float:
    q = float(q)
    q_a = float(q_a)
    if math.isnan(q) or math.isnan(q_a):
        return math.nan
    if q_a <= 0.0:
        # No sensitivity: p_mu and 1 - p_b coincide.
        return 1.0
    if math.isinf(q):
        return 0.0
    x_mu, x_b = _branch_args(q, q_a, tilde)
    log_cls = float(norm.logsf(x_mu)) - float(norm.logcdf(x_b))
    if math.isnan(log_cls):
        return 0.0
    return min(max(math.exp(log_cls), 0.0), 1.0)


def significance(p: float) -> float:
    """One-sided significance Z = Phi^-1(1 - p)."""
    return float(norm.isf(float(p)))


def q_from_sigma(mu: float, muhat: float, sigma: float, tilde: bool = True) -> float:
    """Test statistic predicted by a Gaussian likelihood of width `sigma`."""
    mu = float(mu)
    muhat = float(muhat)
    if muhat > mu:
        return 0.0
    if tilde and muhat < 0.0:
        return (mu * mu - 2.0 * mu * muhat) / (sigma * sigma)
    d = mu - muhat
    return d * d / (sigma * sigma)


def sigma_from_q(mu: float, muhat: float, q: float, tilde: bool = True) -> float:
    """Width of the Gaussian likelihood that reproduces `q` at `mu`."""
    if not (q > 0.0):
        return math.inf
    mu = float(mu)
    muhat = float(muhat)
    if tilde and muhat < 0.0 and mu > muhat:
        return math.sqrt(mu * mu - 2.0 * mu * muhat) / math.sqrt(q)
    return abs(mu - muhat) / math.sqrt(q)


def expected_cls(q_a: float, n_sigma: float, tilde: bool = True) -> float:
    """CLs for the Asimov expectation fluctuated by `n_sigma` standard deviations.

    Positive `n_sigma` corresponds to an upward fluctuation of the data (a
    weaker limit). `n_sigma = 0` is the median expected CLs.
    """
    if q_a <= 0.0:
        return 1.0
    sqa = math.sqrt(q_a)
    q = q_from_sigma(sqa, float(n_sigma), 1.0, tilde)
    return cls(q, q_a, tilde)


def band_approximation(median: float, n_sigma: float, target_cls: float) -> float:
    """Gaussian approximation of an expected band from the median limit."""
    sigma = float(median) / float(norm.isf(0.5 * target_cls))
    return sigma * (float(norm.isf(target_cls * norm.cdf(n_sigma))) + float(n_sigma))


__all__ = [
    "p_mu",
    "p_b",
    "cls",
    "significance",
    "q_from_sigma",
    "sigma_from_q",
    "expected_cls",
    "band_approximation",
]
