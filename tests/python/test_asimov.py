from __future__ import annotations

import numpy as np
import pytest

from quickcls.asimov import AsimovBuilder
from quickcls.minimize import MinimizerConfig, RobustMinimizer
from quickcls.model import ConditioningMode, prepare_state
from quickcls.models import CountingModel, GaussianConstraintModel

from _tolerances import PARAM_VALUE_ATOL


def setup(model=None):
    model = model or GaussianConstraintModel(delta=0.5)
    state, (poi,) = prepare_state(model)
    minimizer = RobustMinimizer(MinimizerConfig(tolerance=1e-4))
    return model, state, AsimovBuilder(model, minimizer, poi=poi), minimizer


@pytest.mark.parametrize("mode", list(ConditioningMode))
def test_asimov_build_is_idempotent(mode):
    model = CountingModel([3.0, 6.0, 2.0], [20.0, 35.0, 12.0], bkg_uncertainty=0.15)
    model, state, builder, _ = setup(model)
    data = model.dataset([25.0, 30.0, 16.0])
    before = state.snapshot()

    a = builder.build(1.0, mode, state, conditioning_data=data)
    b = builder.build(1.0, mode, state, conditioning_data=data)

    np.testing.assert_array_equal(a.dataset.observations, b.dataset.observations)
    assert a.dataset.global_observables == b.dataset.global_observables
    assert state.snapshot() == before


def test_conditional_asimov_profiles_nuisances_at_mu():
    model, state, builder, _ = setup()
    data = model.dataset(2.0)
    build = builder.build(0.0, ConditioningMode.CONDITIONAL, state, conditioning_data=data)

    theta = model.delta * 2.0 / (1.0 + model.delta**2)
    assert build.reliable
    assert build.nuisances["theta"] == pytest.approx(theta, abs=PARAM_VALUE_ATOL)
    assert build.dataset.observations[0] == pytest.approx(model.delta * theta, abs=PARAM_VALUE_ATOL)
    assert build.dataset.global_observables["theta_obs"] == pytest.approx(theta, abs=PARAM_VALUE_ATOL)
    assert build.dataset.name == "asimovData_0"
    tag = build.dataset.asimov
    assert tag.mu == 0.0 and tag.mode is ConditioningMode.CONDITIONAL and tag.profile_mu == 0.0


def test_conditional_asimov_with_separate_profile_point():
    model, state, builder, _ = setup()
    data = model.dataset(2.0)
    build = builder.build(-1.0, ConditioningMode.CONDITIONAL, state, conditioning_data=data, profile_mu=0.0)

    theta = model.delta * 2.0 / (1.0 + model.delta**2)
    assert build.dataset.asimov.mu == -1.0
    assert build.dataset.asimov.profile_mu == 0.0
    assert build.dataset.observations[0] == pytest.approx(-1.0 + model.delta * theta, abs=PARAM_VALUE_ATOL)


def test_unconditional_asimov_uses_global_fit():
    model, state, builder, _ = setup()
    data = model.dataset(1.7)
    build = builder.build(0.0, ConditioningMode.UNCONDITIONAL, state, conditioning_data=data)

    assert build.nuisances["theta"] == pytest.approx(0.0, abs=PARAM_VALUE_ATOL)
    assert build.dataset.asimov.profile_mu == pytest.approx(1.7, abs=PARAM_VALUE_ATOL)
    assert build.dataset.observations[0] == pytest.approx(0.0, abs=PARAM_VALUE_ATOL)


def test_nominal_asimov_runs_no_fit():
    model, state, builder, minimizer = setup()
    build = builder.build(0.5, ConditioningMode.NOMINAL, state)
    assert minimizer.backend_calls == 0
    assert build.fit is None and build.reliable
    assert build.dataset.observations[0] == pytest.approx(0.5)


def test_fitted_modes_require_conditioning_data():
    _, state, builder, _ = setup()
    with pytest.raises(ValueError):
        builder.build(0.0, ConditioningMode.CONDITIONAL, state)


def test_conditioning_point_below_poi_range_is_not_clipped():
    model, state, builder, _ = setup(GaussianConstraintModel(delta=0.5, poi_bounds=(0.0, 10.0)))
    data = model.dataset(2.0)
    build = builder.build(-1.0, ConditioningMode.CONDITIONAL, state, conditioning_data=data)

    # theta profiled at mu = -1, not at the lower edge mu = 0.
    theta = model.delta * 3.0 / (1.0 + model.delta**2)
    assert build.dataset.asimov.profile_mu == -1.0
    assert build.nuisances["theta"] == pytest.approx(theta, abs=PARAM_VALUE_ATOL)
    assert build.dataset.observations[0] == pytest.approx(-1.0 + model.delta * theta, abs=PARAM_VALUE_ATOL)
    assert state.bounds("mu") == (0.0, 10.0)
