"""Run configuration for asymptotic CLs limits.

Option files are YAML mappings using the field names of `LimitConfig`:

    min_algo: minuit
    strategy: 1
    better_bands: false
    do_blind: false
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from .errors import ConfigurationError

MIN_ALGOS = ("minuit", "scipy")


@dataclass(frozen=True)
class LimitConfig:
    # Minimizer
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
    use_pred_fit: bool = False

    # Bands
    better_bands: bool = True
    better_negative_bands: bool = False
    profile_negative_at_zero: bool = False

    # Limits
    target_cl: float = 0.95
    precision: float = 0.005
    max_iterations: int = 100
    max_fit_failures: int = 50
    do_exp: bool = True
    do_obs: bool = True
    do_blind: bool = True
    do_tilde: bool = True
    conditional_expected: bool = True

    # Execution
    n_workers: int = 1
    verbose: bool = False

    @property
    def target_cls(self) -> float:
        return 1.0 - float(self.target_cl)

    @property
    def compute_observed(self) -> bool:
        """Observed limits are never computed on a blinded run."""
        return bool(self.do_obs) and not bool(self.do_blind)

    @property
    def use_conditional_expected(self) -> bool:
        """Conditioning the Asimov nuisances reads the observed data, so blinding disables it."""
        return bool(self.conditional_expected) and not bool(self.do_blind)

    @property
    def refine_negative_bands(self) -> bool:
        return bool(self.better_negative_bands) or bool(self.profile_negative_at_zero)

    def validate(self) -> "LimitConfig":
        if self.min_algo not in MIN_ALGOS:
            raise ConfigurationError(
                f"unknown min_algo {self.min_algo!r}; expected one of {', '.join(MIN_ALGOS)}",
                keys=["min_algo"],
            )
        if self.strategy not in (0, 1, 2):
            raise ConfigurationError("strategy must be 0, 1 or 2", keys=["strategy"])
        if self.max_retries < 0:
            raise ConfigurationError("max_retries must be >= 0", keys=["max_retries"])
        if not (0.0 < float(self.target_cl) < 1.0):
            raise ConfigurationError("target_cl must be in (0, 1)", keys=["target_cl"])
        if not (0.0 < float(self.precision) < 1.0):
            raise ConfigurationError("precision must be in (0, 1)", keys=["precision"])
        if self.max_iterations < 1:
            raise ConfigurationError("max_iterations must be >= 1", keys=["max_iterations"])
        if self.max_fit_failures < 0:
            raise ConfigurationError("max_fit_failures must be >= 0", keys=["max_fit_failures"])
        if not (float(self.tolerance) > 0.0):
            raise ConfigurationError("tolerance must be > 0", keys=["tolerance"])
        if self.max_calls < 1:
            raise ConfigurationError("max_calls must be >= 1", keys=["max_calls"])
        if float(self.jitter) < 0.0:
            raise ConfigurationError("jitter must be >= 0", keys=["jitter"])
        if self.opt_const < 0:
            raise ConfigurationError("opt_const must be >= 0", keys=["opt_const"])
        if self.n_workers < 1:
            raise ConfigurationError("n_workers must be >= 1", keys=["n_workers"])
        if self.better_negative_bands and self.profile_negative_at_zero:
            raise ConfigurationError(
                "better_negative_bands and profile_negative_at_zero are mutually exclusive",
                keys=["better_negative_bands", "profile_negative_at_zero"],
            )
        if not (self.do_exp or self.compute_observed):
            raise ConfigurationError(
                "nothing to compute: do_exp is off and the observed limit is disabled or blinded",
                keys=["do_exp", "do_obs", "do_blind"],
            )
        return self

    def replace(self, **changes: Any) -> "LimitConfig":
        return dataclasses.replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "LimitConfig":
        known = {f.name: f for f in dataclasses.fields(cls)}
        unknown = sorted(k for k in data if k not in known)
        if unknown:
            raise ConfigurationError("unknown configuration options", keys=unknown)

        kwargs: dict[str, Any] = {}
        for key, raw in data.items():
            default = known[key].default
            kwargs[key] = _coerce(key, raw, type(default))
        return cls(**kwargs)

    @classmethod
    def from_yaml(cls, path: str | Path) -> "LimitConfig":
        import yaml

        p = Path(path)
        try:
            doc = yaml.safe_load(p.read_text(encoding="utf-8"))
        except yaml.YAMLError as e:
            raise ConfigurationError(f"{p}: invalid YAML: {e}") from e
        if doc is None:
            doc = {}
        if not isinstance(doc, Mapping):
            raise ConfigurationError(f"{p}: expected a mapping at the top level")
        return cls.from_mapping(doc)


def _coerce(key: str, raw: Any, kind: type) -> Any:
    if kind is bool:
        if isinstance(raw, bool):
            return raw
        if isinstance(raw, int) and raw in (0, 1):
            return bool(raw)
        if isinstance(raw, str) and raw.strip().lower() in ("true", "false", "1", "0", "yes", "no"):
            return raw.strip().lower() in ("true", "1", "yes")
        raise ConfigurationError(f"expected a boolean, got {raw!r}", keys=[key])
    if kind is int:
        if isinstance(raw, bool) or not isinstance(raw, (int, str)):
            raise ConfigurationError(f"expected an integer, got {raw!r}", keys=[key])
        try:
            return int(raw)
        except ValueError as e:
            raise ConfigurationError(f"expected an integer, got {raw!r}", keys=[key]) from e
    if kind is float:
        if isinstance(raw, bool):
            raise ConfigurationError(f"expected a number, got {raw!r}", keys=[key])
        try:
            return float(raw)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"expected a number, got {raw!r}", keys=[key]) from e
    return str(raw)


__all__ = ["LimitConfig", "MIN_ALGOS"]
