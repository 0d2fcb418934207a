from __future__ import annotations

import pytest

from quickcls.asimov import AsimovBuilder
from quickcls.minimize import MinimizerConfig, RobustMinimizer
from quickcls.model import ConditioningMode, prepare_state
from quickcls.models import GaussianConstraintModel, GaussianModel
from quickcls.teststat import Profiler, q_mu, q_mu_tilde

from _tolerances import Q_MU_ATOL


def profiler(model, data, *, tilde=True, use_pred_fit=False):
    state, (poi,) = prepare_state(model)
    minimizer = RobustMinimizer(MinimizerConfig(tolerance=1e-4, strategy=1))
    return Profiler(model, data, state, minimizer, poi=poi, tilde=tilde, use_pred_fit=use_pred_fit)


def test_q_mu_helpers():
    assert q_mu(3.0, 1.0, mu=2.0, muhat=0.5) == pytest.approx(4.0)
    assert q_mu(3.0, 1.0, mu=2.0, muhat=2.5) == 0.0
    # Fit noise can make the conditional NLL dip below the reference.
    assert q_mu(0.99999, 1.0, mu=2.0, muhat=0.5) == 0.0
    assert q_mu_tilde(5.0, 1.0, 2.0, mu=1.0, muhat=-0.5) == pytest.approx(6.0)
    assert q_mu_tilde(5.0, 1.0, 2.0, mu=1.0, muhat=0.5) == pytest.approx(8.0)


def test_gaussian_q_mu_is_quadratic():
    model = GaussianModel(sigma=1.0)
    prof = profiler(model, model.dataset(0.5))
    assert prof.muhat == pytest.approx(0.5, abs=1e-4)

    tv = prof.evaluate(2.0)
    assert tv.q == pytest.approx(2.25, abs=Q_MU_ATOL)
    assert not tv.one_sided and not tv.boundary
    assert tv.reliable

    below = prof.evaluate(0.3)
    assert below.q == 0.0
    assert below.one_sided


def test_tilde_equals_q_with_muhat_clamped_to_zero():
    model = GaussianConstraintModel(sigma=1.0, delta=0.5)
    data = model.dataset(-1.0)
    tilde = profiler(model, data, tilde=True)
    plain = profiler(model, data, tilde=False)

    muhat = tilde.muhat
    assert muhat == pytest.approx(-1.0, abs=1e-3)
    var = model.sigma_mu**2

    for mu in (0.5, 1.0, 2.5):
        tv = tilde.evaluate(mu)
        assert tv.boundary
        clamped = 2.0 * (tilde.conditional_fit(mu).nll - tilde.conditional_fit(0.0).nll)
        assert tv.q == pytest.approx(clamped, abs=Q_MU_ATOL)
        assert tv.q == pytest.approx(
            q_mu_tilde(tv.nll_conditional, tilde.global_fit().nll, tilde.boundary_fit().nll, mu, muhat),
            abs=Q_MU_ATOL,
        )
        # Analytic q~ for a Gaussian likelihood with mu_hat < 0.
        assert tv.q == pytest.approx((mu * mu - 2.0 * mu * muhat) / var, abs=1e-3)

        # Without the boundary the reference is the global fit.
        assert plain.evaluate(mu).q == pytest.approx((mu - muhat) ** 2 / var, abs=1e-3)
        assert plain.evaluate(mu).q > tv.q


def test_asimov_reference_is_generating_point():
    model = GaussianConstraintModel(delta=0.5)
    state, (poi,) = prepare_state(model)
    minimizer = RobustMinimizer(MinimizerConfig(tolerance=1e-4))
    build = AsimovBuilder(model, minimizer, poi=poi).build(0.0, ConditioningMode.NOMINAL, state)
    prof = Profiler(model, build.dataset, state, minimizer, poi=poi)

    assert prof.muhat == 0.0
    calls = minimizer.backend_calls
    tv = prof.evaluate(1.0)
    # q_mu,A = mu^2 / sigma^2 on the background-only Asimov data.
    assert tv.q == pytest.approx(1.0 / model.sigma_mu**2, abs=1e-3)
    # The reference fit is the conditional fit at mu = 0, cached afterwards.
    assert prof.n_fits == 3
    prof.evaluate(1.0)
    assert minimizer.backend_calls == calls + 2


def test_predictive_start_extrapolates_previous_fits():
    model = GaussianConstraintModel(delta=0.5)
    prof = profiler(model, model.dataset(0.0), use_pred_fit=True)
    prof.conditional_fit(1.0)
    prof.conditional_fit(2.0)
    start = prof._predicted_start(3.0)
    t1 = prof.conditional_fit(1.0).value("theta")
    t2 = prof.conditional_fit(2.0).value("theta")
    assert start[1] == pytest.approx(2.0 * t2 - t1)

    fit = prof.conditional_fit(3.0)
    assert fit.converged
    assert fit.value("theta") == pytest.approx(-model.delta * 3.0 / (1.0 + model.delta**2), abs=1e-3)


def test_fork_shares_cached_fits_but_not_future_ones():
    model = GaussianConstraintModel(delta=0.5)
    prof = profiler(model, model.dataset(0.3))
    prof.evaluate(1.0)
    child = prof.fork(RobustMinimizer(MinimizerConfig(tolerance=1e-4)))
    assert child.n_fits == prof.n_fits
    child.evaluate(2.0)
    assert child.n_fits == prof.n_fits + 1


def test_asimov_generated_below_poi_range_keeps_its_best_fit():
    model = GaussianConstraintModel(delta=0.5, poi_bounds=(0.0, 10.0))
    state, (poi,) = prepare_state(model)
    minimizer = RobustMinimizer(MinimizerConfig(tolerance=1e-4))
    build = AsimovBuilder(model, minimizer, poi=poi).build(-1.0, ConditioningMode.NOMINAL, state)
    prof = Profiler(model, build.dataset, state, minimizer, poi=poi, tilde=False)

    assert prof.global_fit().value("mu") == -1.0
    # q_mu,A = (mu - mu')^2 / sigma^2 with mu' = -1 outside the declared range.
    assert prof.evaluate(1.0).q == pytest.approx(4.0 / model.sigma_mu**2, abs=1e-3)
    assert prof.conditional_fit(-0.5).value("mu") == -0.5
