"""Asimov pseudo-data construction.

An Asimov dataset is the model expectation at a chosen parameter point; no
random numbers are involved. The nuisance parameters of that point come from
one of three conditioning modes:

- CONDITIONAL: fit the nuisances to the conditioning data with the POI fixed
  at `profile_mu` (defaults to the generating mu),
- UNCONDITIONAL: take the nuisances from the global best fit,
- NOMINAL: no fit; nuisances keep their current (snapshot) values.

The builder always works on a clone of the supplied state, so building the
same dataset twice from the same state gives identical observations.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import math
from typing import Mapping, Optional

from .minimize import FitResult, RobustMinimizer
from .model import AsimovTag, ConditioningMode, Dataset, ParameterState, StatModel

log = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class AsimovBuild:
    dataset: Dataset
    fit: Optional[FitResult]
    nuisances: Mapping[str, float]

    @property
    def reliable(self) -> bool:
        return self.fit is None or self.fit.converged


class AsimovBuilder:
    def __init__(self, model: StatModel, minimizer: RobustMinimizer, *, poi: str):
        self.model = model
        self.minimizer = minimizer
        self.poi = poi

    def build(
        self,
        mu: float,
        mode: ConditioningMode,
        state: ParameterState,
        *,
        conditioning_data: Optional[Dataset] = None,
        profile_mu: Optional[float] = None,
        name: Optional[str] = None,
    ) -> AsimovBuild:
        mode = ConditioningMode(mode)
        work = state.clone()
        fit: Optional[FitResult] = None

        if mode is ConditioningMode.NOMINAL:
            prof = float(mu) if profile_mu is None else float(profile_mu)
        else:
            if conditioning_data is None:
                raise ValueError(f"{mode.value} Asimov construction requires conditioning data")
            if mode is ConditioningMode.CONDITIONAL:
                prof = float(mu) if profile_mu is None else float(profile_mu)
                work.fix_at(self.poi, prof)
                log.debug(f"profiling nuisances on {conditioning_data.name} at {self.poi} = {prof:g}")
            else:
                work.set_constant(self.poi, False)
                log.debug(f"profiling nuisances on {conditioning_data.name} at the global best fit")
            fit = self.minimizer.minimize(self.model, conditioning_data, work)
            if mode is ConditioningMode.UNCONDITIONAL:
                prof = fit.value(self.poi)
            if not fit.converged:
                log.warning(f"conditioning fit for Asimov data at {self.poi} = {mu:g} did not converge")

        work.set_value(self.poi, float(mu))
        expected = self.model.expected_data(work.values)
        tag = AsimovTag(float(mu), mode, prof if not math.isnan(prof) else float(mu))
        dataset = expected.tagged(name or f"asimovData_{float(mu):g}", tag)
        nuisances = {n: work.value(n) for n in self.model.nuisances if n in work}
        log.info(f"built {dataset.name} ({mode.value}, profiled at {self.poi} = {tag.profile_mu:g})")
        return AsimovBuild(dataset, fit, nuisances)


__all__ = ["AsimovBuild", "AsimovBuilder"]
