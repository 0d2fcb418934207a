"""RobustMinimizer: retry ladder, budget and real backends."""

from __future__ import annotations

import math
import threading
import time
import warnings

import numpy as np
import pytest

from quickcls.errors import FitBudgetExhausted
from quickcls.minimize import (
    BackendResult,
    Converged,
    Exhausted,
    FitFailureBudget,
    FitStatus,
    MinimizerConfig,
    Retry,
    RobustMinimizer,
    escalate,
    first_attempt,
    quiet_warnings,
    transition,
)
from quickcls.model import ParameterState, prepare_state
from quickcls.models import CountingModel, GaussianConstraintModel

from _tolerances import PARAM_VALUE_ATOL


class ScriptedBackend:
    """Backend double: converges on the attempts listed in `converge_on`."""

    def __init__(self, converge_on=(), fval=None):
        self.converge_on = set(converge_on)
        self.fval = fval
        self.calls = []

    def minimize(self, fcn, x0, bounds, *, names, strategy, print_level, tolerance, max_calls):
        k = len(self.calls)
        self.calls.append({"x0": np.array(x0, copy=True), "strategy": strategy, "tolerance": tolerance})
        fval = float(fcn(np.asarray(x0))) if self.fval is None else self.fval
        return BackendResult(
            valid=k in self.converge_on,
            fval=fval,
            x=np.array(x0, copy=True),
            errors=np.full(len(x0), 0.1),
            covariance_ok=False,
            ncalls=1,
        )


def constrained_setup(x: float = 1.5):
    model = GaussianConstraintModel(delta=0.5)
    state, _ = prepare_state(model)
    return model, model.dataset(x), state


def test_escalation_ladder():
    cfg = MinimizerConfig(strategy=0, tolerance=0.1, jitter=0.1)
    a0, a1, a2, a3, a4 = (escalate(cfg, k) for k in range(5))
    assert (a0.strategy, a1.strategy, a2.strategy, a3.strategy) == (0, 1, 2, 2)
    assert not a0.jitter and not a1.jitter and a2.jitter and a3.jitter
    assert a0.tolerance == a1.tolerance == a2.tolerance == pytest.approx(0.1)
    assert a3.tolerance == pytest.approx(0.01)
    assert a4.tolerance == pytest.approx(0.001)

    assert escalate(MinimizerConfig(strategy=2), 1).strategy == 2
    assert not escalate(MinimizerConfig(jitter=0.0), 3).jitter


def test_transition_state_machine():
    cfg = MinimizerConfig(max_retries=2)
    a = first_attempt(cfg)
    assert isinstance(transition(cfg, a, True), Converged)

    step = transition(cfg, a, False)
    assert isinstance(step, Retry) and step.attempt.index == 1
    step = transition(cfg, step.attempt, False)
    assert isinstance(step, Retry) and step.attempt.index == 2
    assert isinstance(transition(cfg, step.attempt, False), Exhausted)


@pytest.mark.parametrize("max_retries", [0, 1, 3, 5])
def test_retry_budget_bounds_backend_calls(max_retries):
    model, data, state = constrained_setup()
    backend = ScriptedBackend()
    m = RobustMinimizer(MinimizerConfig(max_retries=max_retries), backend=backend)
    result = m.minimize(model, data, state)

    assert len(backend.calls) == max_retries + 1
    assert m.backend_calls == max_retries + 1
    assert result.status is FitStatus.RETRY_LIMIT
    assert result.attempts == max_retries + 1
    assert result.retries == max_retries
    assert math.isfinite(result.nll)


def test_retry_stops_at_first_convergence():
    model, data, state = constrained_setup()
    backend = ScriptedBackend(converge_on={1})
    result = RobustMinimizer(MinimizerConfig(max_retries=4, strategy=0), backend=backend).minimize(model, data, state)

    assert result.converged
    assert result.attempts == 2
    assert [c["strategy"] for c in backend.calls] == [0, 1]


def test_no_finite_attempt_is_failed():
    model, data, state = constrained_setup()
    backend = ScriptedBackend(fval=math.nan)
    result = RobustMinimizer(MinimizerConfig(max_retries=2), backend=backend).minimize(model, data, state)

    assert result.status is FitStatus.FAILED
    assert math.isnan(result.nll)
    assert len(backend.calls) == 3


def test_backend_exceptions_count_as_failed_attempts():
    class Raising:
        calls = 0

        def minimize(self, *args, **kwargs):
            Raising.calls += 1
            raise FloatingPointError("overflow in nll")

    model, data, state = constrained_setup()
    result = RobustMinimizer(MinimizerConfig(max_retries=1), backend=Raising()).minimize(model, data, state)
    assert result.status is FitStatus.FAILED
    assert Raising.calls == 2


def test_jitter_is_seeded_and_deterministic():
    model, data, state = constrained_setup()

    def run(seed):
        backend = ScriptedBackend()
        RobustMinimizer(MinimizerConfig(max_retries=3, seed=seed, jitter=0.5), backend=backend).minimize(
            model, data, state.clone()
        )
        return [c["x0"] for c in backend.calls]

    a, b, c = run(7), run(7), run(8)
    for xa, xb in zip(a, b):
        np.testing.assert_array_equal(xa, xb)
    # Attempts 0 and 1 start from the same values, jitter starts at attempt 2.
    np.testing.assert_array_equal(a[0], a[1])
    assert not np.array_equal(a[0], a[2])
    assert not np.array_equal(a[2], c[2])


@pytest.mark.parametrize("min_algo,tolerance", [("minuit", 1e-4), ("scipy", 0.1)])
def test_real_backends_fit_constrained_gaussian(min_algo, tolerance):
    model, data, state = constrained_setup(x=1.5)
    result = RobustMinimizer(MinimizerConfig(min_algo=min_algo, tolerance=tolerance)).minimize(model, data, state)

    assert result.converged
    # Global minimum: mu = x, theta = theta_obs = 0, nll = 0.
    assert result.value("mu") == pytest.approx(1.5, abs=PARAM_VALUE_ATOL)
    assert result.value("theta") == pytest.approx(0.0, abs=PARAM_VALUE_ATOL)
    assert result.nll == pytest.approx(0.0, abs=1e-6)
    # The state receives the best fit.
    assert state.value("mu") == pytest.approx(1.5, abs=PARAM_VALUE_ATOL)


@pytest.mark.parametrize("min_algo,tolerance", [("minuit", 1e-4), ("scipy", 0.1)])
def test_real_backends_conditional_fit(min_algo, tolerance):
    model, data, state = constrained_setup(x=2.0)
    state.set_value("mu", 0.0)
    state.set_constant("mu", True)
    result = RobustMinimizer(MinimizerConfig(min_algo=min_algo, tolerance=tolerance, strategy=1)).minimize(model, data, state)

    delta = model.delta
    theta = delta * 2.0 / (1.0 + delta**2)
    assert result.converged
    assert result.value("mu") == 0.0
    assert result.value("theta") == pytest.approx(theta, abs=PARAM_VALUE_ATOL)


def test_counting_model_fit_with_minuit():
    model = CountingModel([5.0, 10.0], [50.0, 40.0], bkg_uncertainty=0.1)
    state, _ = prepare_state(model)
    data = model.dataset([60.0, 55.0])
    result = RobustMinimizer(MinimizerConfig(strategy=1)).minimize(model, data, state)
    assert result.converged
    assert result.value("mu") > 0.0
    assert result.covariance_ok


def test_no_floating_parameters_skips_backend():
    model, data, state = constrained_setup()
    state.set_all_constant(state.names, True)
    backend = ScriptedBackend()
    result = RobustMinimizer(backend=backend).minimize(model, data, state)
    assert result.converged
    assert result.attempts == 0
    assert backend.calls == []
    assert result.nll == pytest.approx(model.nll(state.values, data))


def test_nll_offset_is_added_back():
    model, data, state = constrained_setup(x=3.0)
    state.set_value("mu", 0.0)
    state.set_constant("mu", True)
    on = RobustMinimizer(MinimizerConfig(nll_offset=True, tolerance=1e-4)).minimize(model, data, state.clone())
    off = RobustMinimizer(MinimizerConfig(nll_offset=False, tolerance=1e-4)).minimize(model, data, state.clone())
    assert on.nll == pytest.approx(off.nll, abs=1e-6)


def test_failure_budget():
    model, data, state = constrained_setup()
    budget = FitFailureBudget(1)
    m = RobustMinimizer(MinimizerConfig(max_retries=0), backend=ScriptedBackend(), budget=budget)
    m.minimize(model, data, state.clone())
    assert budget.failures == 1
    with pytest.raises(FitBudgetExhausted) as exc:
        m.minimize(model, data, state.clone())
    assert exc.value.failures == 2
    assert exc.value.budget == 1


def test_global_observables_are_loaded_from_data():
    model = GaussianConstraintModel()
    state = ParameterState.from_model(model)
    data = model.dataset(0.0, theta_obs=0.7)
    RobustMinimizer(MinimizerConfig(tolerance=1e-3)).minimize(model, data, state)
    assert state.value("theta_obs") == pytest.approx(0.7)


class NoisyBackend(ScriptedBackend):
    """Warns, then sleeps before converging, so calls from two threads overlap."""

    def __init__(self, delay=0.0):
        super().__init__(converge_on=[0])
        self.delay = delay

    def minimize(self, fcn, x0, bounds, **kwargs):
        warnings.warn("backend chatter", RuntimeWarning)
        time.sleep(self.delay)
        return super().minimize(fcn, x0, bounds, **kwargs)


@pytest.mark.parametrize("kill_below_fatal,n_records", [(True, 0), (False, 1)])
def test_backend_warnings_silenced_on_main_thread(kill_below_fatal, n_records):
    model, data, state = constrained_setup()
    m = RobustMinimizer(MinimizerConfig(kill_below_fatal=kill_below_fatal), backend=NoisyBackend())
    with warnings.catch_warnings(record=True) as records:
        warnings.simplefilter("always")
        m.minimize(model, data, state)
    assert len([r for r in records if "chatter" in str(r.message)]) == n_records


def test_concurrent_fits_leave_warning_filters_untouched():
    model, data, state = constrained_setup()
    before = list(warnings.filters)
    errors = []

    def fit(delay):
        try:
            m = RobustMinimizer(MinimizerConfig(kill_below_fatal=True), backend=NoisyBackend(delay))
            m.minimize(model, data, state.clone())
        except Exception as e:
            errors.append(e)

    with warnings.catch_warnings():
        warnings.simplefilter("ignore", RuntimeWarning)
        inner = list(warnings.filters)
        threads = [threading.Thread(target=fit, args=(d,)) for d in (0.1, 0.2)]
        threads[0].start()
        time.sleep(0.03)
        threads[1].start()
        for t in threads:
            t.join()
        assert list(warnings.filters) == inner
    assert errors == []
    assert list(warnings.filters) == before


def test_quiet_warnings_is_a_no_op_off_the_main_thread():
    seen = []

    def worker():
        before = list(warnings.filters)
        with quiet_warnings(True):
            seen.append(list(warnings.filters) == before)

    t = threading.Thread(target=worker)
    t.start()
    t.join()
    assert seen == [True]
