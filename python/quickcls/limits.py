"""Asymptotic CLs upper limits for one POI.

A run goes through

    INIT -> MODEL_VALIDATED -> EXPECTED_SCAN / OBSERVED_SCAN -> DONE | FAILED

1. the parameter state is prepared (global observables constant, nuisances
   floating, POIs configured) and the model is validated,
2. the background-only Asimov dataset `asimovData_0` is built, with the
   nuisances profiled on the observed data at mu = 0 unless the run is
   blinded or `conditional_expected` is off,
3. the median expected limit is scanned on `asimovData_0`,
4. the observed limit and the four bands are independent tasks; each gets its
   own minimizer and its own clone of the parameter state and they can run in
   a thread pool (`n_workers > 1`).

With `do_blind` the observed dataset is never handed to a minimizer: no
observed limit is computed and the Asimov nuisances stay at their nominal
values.

`FAILED` is reached when more fits fail than `max_fit_failures` allows. The
result then carries every limit that finished before the budget ran out.
"""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
import logging
import math
from pathlib import Path
from typing import Callable, Dict, Mapping, Optional, Sequence

from . import asymptotics
from .asimov import AsimovBuilder
from .bands import SIGMAS, BandComputer, BandScan, band_label
from .config import LimitConfig
from .errors import FitBudgetExhausted, ModelValidationError
from .minimize import FitFailureBudget, MinimizerConfig, RobustMinimizer, quiet_warnings
from .model import ConditioningMode, Dataset, ParameterState, PoiSpec, StatModel, check_model, prepare_state
from .results import LimitEstimate, LimitResult, RunStatus, write_json
from .scan import LimitPoint, LimitScanner, ScanResult, observed_proposal
from .teststat import Profiler

log = logging.getLogger(__name__)


class AsymptoticCLs:
    def __init__(
        self,
        model: StatModel,
        data: Dataset,
        *,
        config: Optional[LimitConfig] = None,
        pois: Optional[Sequence[PoiSpec]] = None,
        fix_nps: Sequence[str] = (),
        snapshot: Optional[Mapping[str, float]] = None,
    ):
        self.config = (config or LimitConfig()).validate()
        self.model = model
        self.data = data
        self.pois = list(pois) if pois else None
        self.fix_nps = tuple(fix_nps)
        self.snapshot = dict(snapshot) if snapshot else None
        if self.config.verbose:
            logging.getLogger("quickcls").setLevel(logging.DEBUG)

        self.status = RunStatus.INIT
        self.budget = FitFailureBudget(self.config.max_fit_failures)
        self.minimizer_config = MinimizerConfig.from_limit_config(self.config)
        self.state: Optional[ParameterState] = None
        self.poi: Optional[str] = None
        self.asimov0: Optional[Profiler] = None

    def make_minimizer(self) -> RobustMinimizer:
        return RobustMinimizer(self.minimizer_config, budget=self.budget)

    def _transition(self, status: RunStatus) -> None:
        log.debug(f"run state {self.status.value} -> {status.value}")
        self.status = status

    def setup(self) -> str:
        state, selected = prepare_state(self.model, pois=self.pois, fix_nps=self.fix_nps, snapshot=self.snapshot)
        try:
            check_model(self.model, state)
        except ModelValidationError:
            self._transition(RunStatus.FAILED)
            raise
        if not selected:
            self._transition(RunStatus.FAILED)
            raise ModelValidationError(["none of the requested POIs is a model parameter"])
        if len(selected) > 1:
            log.info(f"computing limits on {selected[0]}; {', '.join(selected[1:])} are treated as fit parameters")
        self.state = state
        self.poi = selected[0]
        self._transition(RunStatus.MODEL_VALIDATED)
        return self.poi

    def build_asimov0(self) -> Profiler:
        assert self.state is not None and self.poi is not None
        cfg = self.config
        minimizer = self.make_minimizer()
        builder = AsimovBuilder(self.model, minimizer, poi=self.poi)
        if cfg.use_conditional_expected:
            build = builder.build(0.0, ConditioningMode.CONDITIONAL, self.state, conditioning_data=self.data, name="asimovData_0")
        else:
            build = builder.build(0.0, ConditioningMode.NOMINAL, self.state, name="asimovData_0")
        self.asimov0 = Profiler(
            self.model,
            build.dataset,
            self.state,
            minimizer,
            poi=self.poi,
            tilde=cfg.do_tilde,
            use_pred_fit=cfg.use_pred_fit,
        )
        return self.asimov0

    def band_computer(self) -> BandComputer:
        assert self.state is not None and self.poi is not None and self.asimov0 is not None
        return BandComputer(
            self.model,
            self.asimov0,
            self.state,
            poi=self.poi,
            config=self.config,
            minimizer_factory=self.make_minimizer,
            conditioning_data=self.data if self.config.use_conditional_expected else None,
        )

    def observed(self, asimov0: Profiler, *, initial_guess: Optional[float] = None) -> ScanResult:
        """Scan the observed dataset; never called on a blinded run."""
        assert self.state is not None and self.poi is not None
        cfg = self.config
        if not cfg.compute_observed:
            raise RuntimeError("observed limit requested on a blinded run")
        obs = Profiler(
            self.model,
            self.data,
            self.state,
            asimov0.minimizer,
            poi=self.poi,
            tilde=cfg.do_tilde,
            use_pred_fit=cfg.use_pred_fit,
        )
        tilde = cfg.do_tilde

        def evaluate(mu: float) -> LimitPoint:
            tv = obs.evaluate(mu)
            ta = asimov0.evaluate(mu)
            return LimitPoint(
                mu=mu,
                cls=asymptotics.cls(tv.q, ta.q, tilde),
                q_mu=tv.q,
                q_mu_a=ta.q,
                muhat=tv.muhat,
                reliable=tv.reliable and ta.reliable,
                retries=tv.retries + ta.retries,
            )

        scanner = LimitScanner(target_cls=cfg.target_cls, precision=cfg.precision, max_iterations=cfg.max_iterations)
        guess = initial_guess if initial_guess is not None and initial_guess > 0.0 else self._default_guess()
        return scanner.find(evaluate, observed_proposal(cfg.target_cls, tilde=tilde), guess, label="observed")

    def _default_guess(self) -> float:
        assert self.state is not None and self.poi is not None
        v = self.state.value(self.poi)
        return v if math.isfinite(v) and v > 0.0 else 1.0

    def run(self) -> LimitResult:
        cfg = self.config
        poi = self.poi or self.setup()
        result = LimitResult(poi=poi, target_cl=cfg.target_cl, status=self.status, config=cfg.to_dict())
        if cfg.do_blind:
            log.info("running blinded: the observed dataset will not be used")

        try:
            self._transition(RunStatus.EXPECTED_SCAN)
            asimov0 = self.build_asimov0()
            bands = self.band_computer()

            median: Optional[float] = None
            if cfg.do_exp:
                med = bands.compute(0, asimov0=asimov0)
                result.expected[0] = LimitEstimate.from_band(med)
                median = med.scan.limit

            tasks: Dict[str, Callable[[], object]] = {}
            if cfg.compute_observed:
                tasks["observed"] = self._observed_task(bands, median)
            if cfg.do_exp:
                for n in SIGMAS:
                    if n != 0:
                        tasks[band_label(n)] = self._band_task(bands, n, median)

            self._run_tasks(tasks, result)
        except FitBudgetExhausted as e:
            log.error(f"{e}; returning the limits computed so far")
            self._transition(RunStatus.FAILED)
            result.message = str(e)
        else:
            self._transition(RunStatus.DONE)

        result.status = self.status
        result.fit_failures = self.budget.failures
        log.info(result.summary())
        return result

    def _observed_task(self, bands: BandComputer, median: Optional[float]) -> Callable[[], ScanResult]:
        asimov0 = bands.fork_asimov0()

        def task() -> ScanResult:
            self._transition(RunStatus.OBSERVED_SCAN)
            return self.observed(asimov0, initial_guess=median)

        return task

    def _band_task(self, bands: BandComputer, n_sigma: int, median: Optional[float]) -> Callable[[], BandScan]:
        asimov0 = bands.fork_asimov0()

        def task() -> BandScan:
            return bands.compute(n_sigma, median=median, asimov0=asimov0)

        return task

    def _run_tasks(self, tasks: Dict[str, Callable[[], object]], result: LimitResult) -> None:
        if self.config.n_workers <= 1 or len(tasks) <= 1:
            for name, task in tasks.items():
                self._store(result, name, task())
            return

        with quiet_warnings(self.config.kill_below_fatal), ThreadPoolExecutor(max_workers=self.config.n_workers) as pool:
            futures: Dict[str, Future] = {name: pool.submit(task) for name, task in tasks.items()}
            error: Optional[FitBudgetExhausted] = None
            for name, future in futures.items():
                if future.cancelled():
                    log.info(f"task {name} cancelled after the fit failure budget ran out")
                    continue
                try:
                    self._store(result, name, future.result())
                except FitBudgetExhausted as e:
                    error = error or e
                    for other in futures.values():
                        other.cancel()
            if error is not None:
                raise error

    @staticmethod
    def _store(result: LimitResult, name: str, outcome: object) -> None:
        if isinstance(outcome, BandScan):
            result.expected[int(outcome.n_sigma)] = LimitEstimate.from_band(outcome)
        elif isinstance(outcome, ScanResult):
            result.observed = LimitEstimate.from_scan(outcome)
        else:
            raise TypeError(f"unexpected result for task {name}: {type(outcome).__name__}")


def run_asymptotic_cls(
    model: StatModel,
    data: Dataset,
    *,
    config: Optional[LimitConfig] = None,
    pois: Optional[Sequence[PoiSpec]] = None,
    fix_nps: Sequence[str] = (),
    snapshot: Optional[Mapping[str, float]] = None,
    target_cl: Optional[float] = None,
    output: Optional[str | Path] = None,
) -> LimitResult:
    """Compute the observed and expected CLs upper limits on the first selected POI.

    `target_cl` overrides the value in `config`. With `output` the result is
    also written as JSON.
    """
    cfg = config or LimitConfig()
    if target_cl is not None:
        cfg = cfg.replace(target_cl=float(target_cl))
    runner = AsymptoticCLs(model, data, config=cfg, pois=pois, fix_nps=fix_nps, snapshot=snapshot)
    result = runner.run()
    if output is not None:
        path = write_json(result, output)
        log.info(f"results written to {path}")
    return result


__all__ = ["AsymptoticCLs", "run_asymptotic_cls"]
