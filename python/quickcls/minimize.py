"""Likelihood minimization with a deterministic retry ladder.

A single minimization is a small state machine:

    Attempt(0) -> Converged
               -> Retry(Attempt(1)) -> ... -> Exhausted

Each retry escalates robustness:

- attempt 1 raises the minimizer strategy by one (at most 2),
- attempt 2 and later use strategy 2 and jitter the floating starting values
  with a `numpy.random.default_rng(seed + k)` draw,
- attempt 3 and later also tighten the tolerance by 10x per step.

The ladder never performs more than `max_retries + 1` backend calls. When no
attempt converges the best finite attempt is returned with status
`retry_limit`; if no attempt produced a finite NLL the status is `failed`.
Either way the caller decides what to do: a failed scan point is reported, not
raised.

Backends:
- `MinuitBackend` (iminuit MIGRAD, HESSE for strategy >= 1),
- `ScipyBackend` (scipy L-BFGS-B; strategy >= 1 adds a finite-difference
  Hessian, strategy 2 restarts once from the minimum).
"""

from __future__ import annotations

import contextlib
from dataclasses import dataclass
import enum
import logging
import math
import threading
from typing import Callable, Optional, Protocol, Sequence, Tuple, Union
import warnings

import numpy as np

from .config import LimitConfig
from .errors import FitBudgetExhausted
from .model import Dataset, ParameterState, StatModel

log = logging.getLogger(__name__)


class FitStatus(str, enum.Enum):
    CONVERGED = "converged"
    RETRY_LIMIT = "retry_limit"
    FAILED = "failed"


@dataclass(frozen=True, eq=False)
class FitResult:
    status: FitStatus
    nll: float
    names: Tuple[str, ...]
    values: np.ndarray
    errors: np.ndarray
    covariance_ok: bool
    attempts: int
    strategy: int

    @property
    def converged(self) -> bool:
        return self.status is FitStatus.CONVERGED

    @property
    def retries(self) -> int:
        return max(0, self.attempts - 1)

    def value(self, name: str) -> float:
        return float(self.values[self.names.index(name)])

    def error(self, name: str) -> float:
        return float(self.errors[self.names.index(name)])


@dataclass(frozen=True)
class MinimizerConfig:
    min_algo: str = "minuit"
    strategy: int = 0
    print_level: int = -1
    max_retries: int = 3
    tolerance: float = 0.1
    max_calls: int = 100_000
    nll_offset: bool = True
    opt_const: int = 2
    seed: int = 0
    jitter: float = 0.1
    kill_below_fatal: bool = True

    @classmethod
    def from_limit_config(cls, config: LimitConfig) -> MinimizerConfig:
        return cls(
            min_algo=config.min_algo,
            strategy=config.strategy,
            print_level=config.print_level,
            max_retries=config.max_retries,
            tolerance=config.tolerance,
            max_calls=config.max_calls,
            nll_offset=config.nll_offset,
            opt_const=config.opt_const,
            seed=config.seed,
            jitter=config.jitter,
            kill_below_fatal=config.kill_below_fatal,
        )


# ---------------------------------------------------------------------------
# Retry ladder
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Attempt:
    index: int
    strategy: int
    tolerance: float
    jitter: bool


@dataclass(frozen=True)
class Converged:
    attempt: Attempt


@dataclass(frozen=True)
class Retry:
    attempt: Attempt


@dataclass(frozen=True)
class Exhausted:
    attempt: Attempt


Transition = Union[Converged, Retry, Exhausted]


def escalate(config: MinimizerConfig, k: int) -> Attempt:
    """Minimizer settings for attempt `k` (0-based)."""
    if k <= 0:
        strategy = int(config.strategy)
    elif k == 1:
        strategy = min(int(config.strategy) + 1, 2)
    else:
        strategy = 2
    tolerance = float(config.tolerance) * (0.1 ** max(0, k - 2))
    return Attempt(index=k, strategy=strategy, tolerance=tolerance, jitter=k >= 2 and config.jitter > 0.0)


def first_attempt(config: MinimizerConfig) -> Attempt:
    return escalate(config, 0)


def transition(config: MinimizerConfig, attempt: Attempt, converged: bool) -> Transition:
    if converged:
        return Converged(attempt)
    if attempt.index >= int(config.max_retries):
        return Exhausted(attempt)
    return Retry(escalate(config, attempt.index + 1))


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------


@dataclass(frozen=True, eq=False)
class BackendResult:
    valid: bool
    fval: float
    x: np.ndarray
    errors: np.ndarray
    covariance_ok: bool
    ncalls: int
    message: str = ""


class MinimizerBackend(Protocol):
    def minimize(
        self,
        fcn: Callable[[np.ndarray], float],
        x0: np.ndarray,
        bounds: Sequence[Tuple[float, float]],
        *,
        names: Sequence[str],
        strategy: int,
        print_level: int,
        tolerance: float,
        max_calls: int,
    ) -> BackendResult: ...


class MinuitBackend:
    """MIGRAD via iminuit; the objective is an NLL, so errordef is 0.5."""

    def minimize(self, fcn, x0, bounds, *, names, strategy, print_level, tolerance, max_calls) -> BackendResult:
        import iminuit

        m = iminuit.Minuit(fcn, np.asarray(x0, dtype=np.float64), name=list(names))
        m.errordef = iminuit.Minuit.LIKELIHOOD
        m.limits = [(float(lo), float(hi)) for lo, hi in bounds]
        m.strategy = int(strategy)
        m.print_level = max(int(print_level), 0)
        m.tol = float(tolerance)

        m.migrad(ncall=int(max_calls))
        if strategy >= 1 and m.valid:
            m.hesse()

        return BackendResult(
            valid=bool(m.valid),
            fval=float(m.fval),
            x=np.asarray(m.values, dtype=np.float64),
            errors=np.asarray(m.errors, dtype=np.float64),
            covariance_ok=bool(m.accurate),
            ncalls=int(m.nfcn),
            message="" if m.valid else str(m.fmin),
        )


class ScipyBackend:
    """L-BFGS-B via scipy.optimize."""

    def minimize(self, fcn, x0, bounds, *, names, strategy, print_level, tolerance, max_calls) -> BackendResult:
        import scipy.optimize

        scipy_bounds = [(_finite_or_none(lo), _finite_or_none(hi)) for lo, hi in bounds]
        # Scale the L-BFGS-B stopping rules with the Minuit-style tolerance (default 0.1).
        scale = float(tolerance) / 0.1
        options = {"maxfun": int(max_calls), "ftol": 2.2e-9 * scale, "gtol": 1e-6 * scale}

        res = scipy.optimize.minimize(fcn, np.asarray(x0, dtype=np.float64), method="L-BFGS-B", bounds=scipy_bounds, options=options)
        ncalls = int(res.nfev)
        if strategy >= 2 and res.success:
            res2 = scipy.optimize.minimize(fcn, res.x, method="L-BFGS-B", bounds=scipy_bounds, options=options)
            ncalls += int(res2.nfev)
            if res2.success and res2.fun <= res.fun:
                res = res2

        x = np.asarray(res.x, dtype=np.float64)
        fval = float(res.fun)
        if print_level > 0:
            log.info(f"L-BFGS-B: fval={fval:.6f} nfev={ncalls} message={res.message}")

        covariance_ok = False
        if strategy >= 1:
            hess = numerical_hessian(fcn, x, bounds)
            errors, covariance_ok = _errors_from_hessian(hess)
        else:
            inv = np.atleast_2d(res.hess_inv.todense())
            diag = np.diag(inv)
            errors = np.sqrt(np.where(diag > 0.0, diag, np.nan))

        return BackendResult(
            valid=bool(res.success) and math.isfinite(fval),
            fval=fval,
            x=x,
            errors=errors,
            covariance_ok=covariance_ok,
            ncalls=ncalls,
            message=str(res.message),
        )


BACKENDS = {"minuit": MinuitBackend, "scipy": ScipyBackend}


def make_backend(min_algo: str) -> MinimizerBackend:
    try:
        return BACKENDS[min_algo]()
    except KeyError as exc:
        raise ValueError(f"unknown min_algo: {min_algo!r}") from exc


@contextlib.contextmanager
def quiet_warnings(enabled: bool = True):
    """Silence warnings while active.

    The warnings filter list is process-global, so only the main thread edits
    it; worker threads inherit whatever filter the main thread installed.
    """
    if not (enabled and threading.current_thread() is threading.main_thread()):
        yield
        return
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        yield


def _finite_or_none(v: float) -> Optional[float]:
    return float(v) if math.isfinite(v) else None


def numerical_hessian(fcn, x: np.ndarray, bounds: Sequence[Tuple[float, float]]) -> np.ndarray:
    """Central finite-difference Hessian, with steps kept inside `bounds`."""
    x = np.asarray(x, dtype=np.float64)
    n = x.size
    h = 1e-4 * np.maximum(1.0, np.abs(x))
    center = x.copy()
    for i, (lo, hi) in enumerate(bounds):
        # Shift the stencil centre away from a bound so every point is evaluable.
        center[i] = min(max(center[i], lo + h[i]), hi - h[i]) if hi - lo > 2 * h[i] else center[i]

    f0 = fcn(center)
    hess = np.zeros((n, n))
    for i in range(n):
        ei = np.zeros(n)
        ei[i] = h[i]
        fp = fcn(center + ei)
        fm = fcn(center - ei)
        hess[i, i] = (fp - 2.0 * f0 + fm) / (h[i] * h[i])
        for j in range(i + 1, n):
            ej = np.zeros(n)
            ej[j] = h[j]
            fpp = fcn(center + ei + ej)
            fpm = fcn(center + ei - ej)
            fmp = fcn(center - ei + ej)
            fmm = fcn(center - ei - ej)
            hess[i, j] = hess[j, i] = (fpp - fpm - fmp + fmm) / (4.0 * h[i] * h[j])
    return hess


def _errors_from_hessian(hess: np.ndarray) -> Tuple[np.ndarray, bool]:
    n = hess.shape[0]
    try:
        np.linalg.cholesky(hess)
    except np.linalg.LinAlgError:
        diag = np.diag(hess)
        return np.where(diag > 0.0, 1.0 / np.sqrt(np.abs(diag)), np.nan), False
    cov = np.linalg.inv(hess)
    return np.sqrt(np.diag(cov)).reshape(n), True


# ---------------------------------------------------------------------------
# Failure budget
# ---------------------------------------------------------------------------


class FitFailureBudget:
    """Counts non-converged fits across a run; shared by parallel tasks."""

    def __init__(self, max_failures: int):
        self.max_failures = int(max_failures)
        self._failures = 0
        self._lock = threading.Lock()

    @property
    def failures(self) -> int:
        with self._lock:
            return self._failures

    def record(self, result: FitResult) -> None:
        if result.converged:
            return
        with self._lock:
            self._failures += 1
            failures = self._failures
        if failures > self.max_failures:
            raise FitBudgetExhausted(failures, self.max_failures)


# ---------------------------------------------------------------------------
# Robust minimizer
# ---------------------------------------------------------------------------


class _Objective:
    def __init__(self, model: StatModel, data: Dataset, full: np.ndarray, idx: np.ndarray, *, cache: bool):
        self.model = model
        self.data = data
        self.full = full.copy()
        self.idx = idx
        self.offset = 0.0
        self.ncalls = 0
        self._cache: Optional[dict] = {} if cache else None

    def full_values(self, x: np.ndarray) -> np.ndarray:
        out = self.full.copy()
        out[self.idx] = x
        return out

    def raw(self, x: np.ndarray) -> float:
        key = None
        if self._cache is not None:
            key = np.asarray(x, dtype=np.float64).tobytes()
            hit = self._cache.get(key)
            if hit is not None:
                return hit
        self.ncalls += 1
        v = float(self.model.nll(self.full_values(x), self.data))
        if key is not None:
            self._cache[key] = v
        return v

    def __call__(self, x: np.ndarray) -> float:
        return self.raw(x) - self.offset


class RobustMinimizer:
    """Minimize a model NLL on a dataset starting from a `ParameterState`.

    The supplied state is updated in place: floating parameters receive the
    best-fit values and errors, and the dataset's global observables are
    loaded. Callers that must not see this side effect pass a clone.
    """

    def __init__(
        self,
        config: Optional[MinimizerConfig] = None,
        *,
        backend: Optional[MinimizerBackend] = None,
        budget: Optional[FitFailureBudget] = None,
    ):
        self.config = config or MinimizerConfig()
        self.backend = backend if backend is not None else make_backend(self.config.min_algo)
        self.budget = budget
        self.backend_calls = 0

    def minimize(self, model: StatModel, data: Dataset, state: ParameterState) -> FitResult:
        cfg = self.config
        state.load(data.global_observables)
        state.clip_to_bounds()

        idx = np.flatnonzero(state.floating_mask())
        if idx.size == 0:
            nll = float(model.nll(state.values, data))
            status = FitStatus.CONVERGED if math.isfinite(nll) else FitStatus.FAILED
            result = FitResult(status, nll, state.names, state.values.copy(), np.zeros(len(state)), True, 0, cfg.strategy)
            self._record(result)
            return result

        objective = _Objective(model, data, state.values, idx, cache=cfg.opt_const >= 1)
        start = state.values[idx].copy()
        bounds = list(zip(state.lower[idx], state.upper[idx]))
        names = [state.names[i] for i in idx]
        if cfg.nll_offset:
            offset = objective.raw(start)
            objective.offset = offset if math.isfinite(offset) else 0.0

        attempt = first_attempt(cfg)
        best: Optional[Tuple[Attempt, BackendResult]] = None
        attempts = 0
        while True:
            x0 = self._start_point(attempt, start, bounds, best)
            outcome = self._run_attempt(objective, attempt, x0, bounds, names)
            attempts += 1
            if outcome is not None and math.isfinite(outcome.fval):
                if best is None or outcome.valid or (not best[1].valid and outcome.fval < best[1].fval):
                    best = (attempt, outcome)

            step = transition(cfg, attempt, outcome is not None and outcome.valid and math.isfinite(outcome.fval))
            if isinstance(step, Retry):
                log.warning(
                    f"fit on {data.name} did not converge (attempt {attempt.index + 1}), retrying with "
                    f"strategy {step.attempt.strategy}{' and jittered start' if step.attempt.jitter else ''}"
                )
                attempt = step.attempt
                continue
            if isinstance(step, Exhausted):
                log.warning(f"fit on {data.name} did not converge after {attempts} attempt(s)")
            break

        result = self._finish(objective, state, idx, best, attempts, converged=isinstance(step, Converged))
        self._record(result)
        return result

    def _record(self, result: FitResult) -> None:
        if self.budget is not None:
            self.budget.record(result)

    def _start_point(self, attempt: Attempt, start: np.ndarray, bounds, best) -> np.ndarray:
        if not attempt.jitter:
            return start.copy()
        lo = np.array([b[0] for b in bounds])
        hi = np.array([b[1] for b in bounds])
        width = np.where(np.isfinite(hi - lo), 0.1 * (hi - lo), 0.1 * np.maximum(1.0, np.abs(start)))
        if best is not None:
            errs = best[1].errors
            width = np.where(np.isfinite(errs) & (errs > 0.0), errs, width)
        rng = np.random.default_rng(int(self.config.seed) + attempt.index)
        x0 = start + float(self.config.jitter) * width * rng.standard_normal(start.size)
        return np.clip(x0, lo, hi)

    def _run_attempt(self, objective: _Objective, attempt: Attempt, x0, bounds, names) -> Optional[BackendResult]:
        cfg = self.config
        log.debug(f"attempt {attempt.index}: strategy={attempt.strategy} tol={attempt.tolerance:g}")
        self.backend_calls += 1
        try:
            with quiet_warnings(cfg.kill_below_fatal):
                return self.backend.minimize(
                    objective,
                    x0,
                    bounds,
                    names=names,
                    strategy=attempt.strategy,
                    print_level=cfg.print_level,
                    tolerance=attempt.tolerance,
                    max_calls=cfg.max_calls,
                )
        except (ArithmeticError, ValueError, np.linalg.LinAlgError) as e:
            log.warning(f"minimization attempt {attempt.index} raised {type(e).__name__}: {e}")
            return None

    def _finish(self, objective: _Objective, state: ParameterState, idx: np.ndarray, best, attempts: int, *, converged: bool) -> FitResult:
        if best is None:
            return FitResult(
                FitStatus.FAILED,
                math.nan,
                state.names,
                state.values.copy(),
                np.full(len(state), np.nan),
                False,
                attempts,
                self.config.strategy,
            )

        attempt, outcome = best
        state.values[idx] = outcome.x
        state.errors[idx] = outcome.errors
        status = FitStatus.CONVERGED if converged else FitStatus.RETRY_LIMIT
        errors = np.zeros(len(state))
        errors[idx] = outcome.errors
        return FitResult(
            status,
            float(outcome.fval) + objective.offset,
            state.names,
            state.values.copy(),
            errors,
            bool(outcome.covariance_ok),
            attempts,
            attempt.strategy,
        )


__all__ = [
    "FitStatus",
    "FitResult",
    "MinimizerConfig",
    "Attempt",
    "Converged",
    "Retry",
    "Exhausted",
    "escalate",
    "first_attempt",
    "transition",
    "BackendResult",
    "MinimizerBackend",
    "MinuitBackend",
    "ScipyBackend",
    "make_backend",
    "quiet_warnings",
    "numerical_hessian",
    "FitFailureBudget",
    "RobustMinimizer",
]
