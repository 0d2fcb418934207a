"""Model interface, parameter state and datasets.

The statistical model itself is supplied by an external library (see
`quickcls.pyhf_model`) or by the small reference models in `quickcls.models`.
Anything implementing `StatModel` can be used:

- `parameters()` returns the parameter definitions in vector order,
- `pois`, `nuisances`, `global_observables` name the three disjoint subsets,
- `nll(values, dataset)` evaluates the negative log-likelihood,
- `expected_data(values)` returns the model expectation as a `Dataset`
  (observations plus matching global observables).

Constant/floating flags are not stored on the model. They live in a
`ParameterState`, an explicit value that every minimization receives and that
parallel tasks clone.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import enum
import fnmatch
import logging
import math
from typing import Iterable, Mapping, Optional, Protocol, Sequence, Tuple, runtime_checkable

import numpy as np

from .errors import ModelValidationError

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Parameter:
    name: str
    value: float
    lower: float = -math.inf
    upper: float = math.inf
    constant: bool = False


@dataclass(frozen=True)
class PoiSpec:
    """Typed hypothesis descriptor for one parameter of interest.

    - `value` and `bounds` given: float the POI from `value` within `bounds`
    - only `value` given: fix the POI at `value`
    - neither: float the POI from its current value
    """

    name: str
    value: Optional[float] = None
    bounds: Optional[Tuple[float, float]] = None

    @property
    def constant(self) -> bool:
        return self.value is not None and self.bounds is None


class ConditioningMode(str, enum.Enum):
    CONDITIONAL = "conditional"
    UNCONDITIONAL = "unconditional"
    NOMINAL = "nominal"


@dataclass(frozen=True)
class AsimovTag:
    mu: float
    mode: ConditioningMode
    profile_mu: float


@dataclass(frozen=True, eq=False)
class Dataset:
    name: str
    observations: np.ndarray
    global_observables: Mapping[str, float] = field(default_factory=dict)
    asimov: Optional[AsimovTag] = None

    def __post_init__(self) -> None:
        obs = np.array(self.observations, dtype=np.float64)
        obs.setflags(write=False)
        object.__setattr__(self, "observations", obs)
        object.__setattr__(self, "global_observables", dict(self.global_observables))

    @property
    def is_asimov(self) -> bool:
        return self.asimov is not None

    def tagged(self, name: str, tag: AsimovTag) -> "Dataset":
        return Dataset(name, self.observations, self.global_observables, tag)


@runtime_checkable
class StatModel(Protocol):
    @property
    def pois(self) -> Tuple[str, ...]: ...

    @property
    def nuisances(self) -> Tuple[str, ...]: ...

    @property
    def global_observables(self) -> Tuple[str, ...]: ...

    def parameters(self) -> Sequence[Parameter]: ...

    def nll(self, values: np.ndarray, data: Dataset) -> float: ...

    def expected_data(self, values: np.ndarray) -> Dataset: ...


class ParameterState:
    """Values, bounds and constant flags of every model parameter."""

    def __init__(
        self,
        names: Sequence[str],
        values: Sequence[float],
        lower: Sequence[float],
        upper: Sequence[float],
        constant: Sequence[bool],
        errors: Optional[Sequence[float]] = None,
    ):
        self.names: Tuple[str, ...] = tuple(str(n) for n in names)
        n = len(self.names)
        self.values = np.array(values, dtype=np.float64)
        self.lower = np.array(lower, dtype=np.float64)
        self.upper = np.array(upper, dtype=np.float64)
        self.constant = np.array(constant, dtype=bool)
        self.errors = np.zeros(n) if errors is None else np.array(errors, dtype=np.float64)
        for arr in (self.values, self.lower, self.upper, self.constant, self.errors):
            if arr.shape != (n,):
                raise ValueError("parameter arrays must all have one entry per parameter")
        self._index = {name: i for i, name in enumerate(self.names)}
        if len(self._index) != n:
            raise ValueError("parameter names must be unique")

    @classmethod
    def from_model(cls, model: StatModel) -> "ParameterState":
        pars = list(model.parameters())
        return cls(
            [p.name for p in pars],
            [p.value for p in pars],
            [p.lower for p in pars],
            [p.upper for p in pars],
            [p.constant for p in pars],
        )

    def clone(self) -> "ParameterState":
        return ParameterState(self.names, self.values, self.lower, self.upper, self.constant, self.errors)

    def __len__(self) -> int:
        return len(self.names)

    def __contains__(self, name: object) -> bool:
        return name in self._index

    def index(self, name: str) -> int:
        try:
            return self._index[name]
        except KeyError as exc:
            raise KeyError(f"unknown parameter name: {name!r}") from exc

    def value(self, name: str) -> float:
        return float(self.values[self.index(name)])

    def set_value(self, name: str, value: float) -> None:
        self.values[self.index(name)] = float(value)

    def set_constant(self, name: str, constant: bool = True) -> None:
        self.constant[self.index(name)] = bool(constant)

    def set_all_constant(self, names: Iterable[str], constant: bool = True) -> None:
        for name in names:
            self.set_constant(name, constant)

    def is_constant(self, name: str) -> bool:
        return bool(self.constant[self.index(name)])

    def set_range(self, name: str, lower: float, upper: float) -> None:
        if not (float(lower) < float(upper)):
            raise ValueError(f"invalid range for {name}: [{lower}, {upper}]")
        i = self.index(name)
        self.lower[i] = float(lower)
        self.upper[i] = float(upper)

    def fix_at(self, name: str, value: float) -> None:
        """Hold `name` constant at `value`, widening its range if `value` lies outside it."""
        i = self.index(name)
        value = float(value)
        if not (self.lower[i] <= value <= self.upper[i]):
            log.debug(f"extending the range of {name} to include {value:g}")
            self.lower[i] = min(self.lower[i], value)
            self.upper[i] = max(self.upper[i], value)
        self.values[i] = value
        self.constant[i] = True

    def bounds(self, name: str) -> Tuple[float, float]:
        i = self.index(name)
        return float(self.lower[i]), float(self.upper[i])

    def floating_mask(self) -> np.ndarray:
        return ~self.constant

    def floating_names(self) -> Tuple[str, ...]:
        return tuple(n for n, c in zip(self.names, self.constant) if not c)

    def snapshot(self) -> dict[str, float]:
        return {n: float(v) for n, v in zip(self.names, self.values)}

    def load(self, values: Mapping[str, float]) -> None:
        """Load a snapshot; names that are not model parameters are ignored."""
        for name, value in values.items():
            i = self._index.get(name)
            if i is not None:
                self.values[i] = float(value)

    def clip_to_bounds(self) -> None:
        np.clip(self.values, self.lower, self.upper, out=self.values)

    def apply_hypothesis(self, spec: PoiSpec) -> None:
        if spec.bounds is not None:
            lo, hi = spec.bounds
            self.set_range(spec.name, lo, hi)
        if spec.value is not None:
            self.set_value(spec.name, spec.value)
        self.set_constant(spec.name, spec.constant)

    def describe(self, name: str) -> str:
        i = self.index(name)
        flag = "C" if self.constant[i] else "L"
        return f"{name} = {self.values[i]:.6g} {flag}({self.lower[i]:.6g} - {self.upper[i]:.6g})"


def model_issues(model: StatModel, state: ParameterState) -> list[str]:
    """Return a list of structural problems; empty means the model is usable."""
    issues: list[str] = []
    pois = tuple(model.pois)
    nps = tuple(model.nuisances)
    gos = tuple(model.global_observables)

    if not pois:
        issues.append("model defines no parameters of interest")

    subsets = {"POI": set(pois), "NP": set(nps), "GO": set(gos)}
    for a, b in (("POI", "NP"), ("POI", "GO"), ("NP", "GO")):
        common = subsets[a] & subsets[b]
        if common:
            issues.append(f"{a} and {b} sets overlap: {', '.join(sorted(common))}")

    for kind, names in (("POI", pois), ("NP", nps), ("GO", gos)):
        for name in names:
            if name not in state:
                issues.append(f"{kind} {name!r} is not a model parameter")

    for i, name in enumerate(state.names):
        lo, hi, v = state.lower[i], state.upper[i], state.values[i]
        if math.isnan(lo) or math.isnan(hi) or not (lo < hi):
            issues.append(f"parameter {name!r} has a malformed range [{lo}, {hi}]")
        elif not math.isfinite(v):
            issues.append(f"parameter {name!r} has a non-finite value")
        elif not (lo <= v <= hi):
            issues.append(f"parameter {name!r} value {v} lies outside its range [{lo}, {hi}]")

    for name in gos:
        if name in state and not state.is_constant(name):
            issues.append(f"global observable {name!r} is not constant")
    return issues


def check_model(model: StatModel, state: ParameterState) -> None:
    issues = model_issues(model, state)
    if issues:
        for issue in issues:
            log.error(issue)
        raise ModelValidationError(issues)
    log.info("sanity checks on the model: OK")


def prepare_state(
    model: StatModel,
    *,
    pois: Optional[Sequence[PoiSpec]] = None,
    fix_nps: Sequence[str] = (),
    snapshot: Optional[Mapping[str, float]] = None,
) -> Tuple[ParameterState, Tuple[str, ...]]:
    """Build the initial state of a run and the list of scanned POIs.

    Global observables are constant, nuisances float, POIs are constant unless
    selected. Without `pois` the first model POI is floated. NP patterns in
    `fix_nps` are shell-style globs.
    """
    state = ParameterState.from_model(model)
    if snapshot:
        state.load(snapshot)

    state.set_all_constant(model.global_observables, True)
    state.set_all_constant([n for n in model.nuisances if n in state], False)
    state.set_all_constant([n for n in model.pois if n in state], True)

    for pattern in fix_nps:
        for name in fnmatch.filter(model.nuisances, pattern):
            log.info(f"fixing nuisance parameter {name}")
            state.set_constant(name, True)

    selected: list[str] = []
    if pois:
        for spec in pois:
            if spec.name not in state:
                log.warning(f"variable {spec.name} not in model, skipping")
                continue
            state.apply_hypothesis(spec)
            selected.append(spec.name)
            log.info(f"POI {state.describe(spec.name)}")
    elif model.pois:
        first = model.pois[0]
        log.info(f"no POIs specified, floating only the first POI {first}")
        state.set_constant(first, False)
        selected.append(first)
    return state, tuple(selected)


__all__ = [
    "Parameter",
    "PoiSpec",
    "ConditioningMode",
    "AsimovTag",
    "Dataset",
    "StatModel",
    "ParameterState",
    "model_issues",
    "check_model",
    "prepare_state",
]
