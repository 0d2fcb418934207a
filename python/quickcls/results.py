"""Limit results and their JSON persistence."""

from __future__ import annotations

from dataclasses import dataclass, field
import enum
import json
import math
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .bands import BandScan
from .scan import ScanResult

EXPECTED_KEYS = {
    -2: "exp_limit_m2",
    -1: "exp_limit_m1",
    0: "exp_limit_0",
    1: "exp_limit_p1",
    2: "exp_limit_p2",
}
OBSERVED_KEY = "obs_limit"


class RunStatus(str, enum.Enum):
    INIT = "init"
    MODEL_VALIDATED = "model_validated"
    OBSERVED_SCAN = "observed_scan"
    EXPECTED_SCAN = "expected_scan"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class LimitEstimate:
    value: float
    converged: bool
    reliable: bool
    iterations: int
    retries: int
    monotonic: bool = True
    message: str = ""

    @classmethod
    def from_scan(cls, scan: ScanResult) -> "LimitEstimate":
        return cls(
            value=float(scan.limit),
            converged=scan.converged,
            reliable=scan.reliable,
            iterations=scan.iterations,
            retries=scan.retries,
            monotonic=scan.monotonic,
            message=scan.message,
        )

    @classmethod
    def from_band(cls, band: BandScan) -> "LimitEstimate":
        scan = band.scan
        return cls(
            value=float(scan.limit),
            converged=scan.converged,
            reliable=band.reliable,
            iterations=band.iterations,
            retries=band.retries,
            monotonic=scan.monotonic,
            message=scan.message,
        )


@dataclass
class LimitResult:
    poi: str
    target_cl: float
    status: RunStatus = RunStatus.INIT
    observed: Optional[LimitEstimate] = None
    expected: Dict[int, LimitEstimate] = field(default_factory=dict)
    fit_failures: int = 0
    config: Dict[str, Any] = field(default_factory=dict)
    message: str = ""

    @property
    def obs_limit(self) -> Optional[float]:
        return None if self.observed is None else self.observed.value

    def expected_limit(self, n_sigma: int) -> Optional[float]:
        est = self.expected.get(int(n_sigma))
        return None if est is None else est.value

    @property
    def median(self) -> Optional[float]:
        return self.expected_limit(0)

    @property
    def complete(self) -> bool:
        return self.status is RunStatus.DONE

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "poi": self.poi,
            "target_cl": float(self.target_cl),
            "status": self.status.value,
            "fit_failures": int(self.fit_failures),
            "config": dict(self.config),
        }
        if self.message:
            out["message"] = self.message
        _put(out, OBSERVED_KEY, self.observed)
        for n, key in EXPECTED_KEYS.items():
            _put(out, key, self.expected.get(n))
        return out

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "LimitResult":
        expected = {}
        for n, key in EXPECTED_KEYS.items():
            est = _get(data, key)
            if est is not None:
                expected[n] = est
        return cls(
            poi=str(data["poi"]),
            target_cl=float(data["target_cl"]),
            status=RunStatus(data.get("status", RunStatus.DONE.value)),
            observed=_get(data, OBSERVED_KEY),
            expected=expected,
            fit_failures=int(data.get("fit_failures", 0)),
            config=dict(data.get("config", {})),
            message=str(data.get("message", "")),
        )

    def summary(self) -> str:
        lines = [f"{self.poi} limits at {100.0 * self.target_cl:g}% CL ({self.status.value})"]
        if self.observed is not None:
            lines.append(f"  observed : {_fmt(self.observed)}")
        for n in sorted(self.expected):
            name = "median" if n == 0 else f"{n:+d} sigma"
            lines.append(f"  {name:9s}: {_fmt(self.expected[n])}")
        return "\n".join(lines)


def _fmt(est: LimitEstimate) -> str:
    flag = "" if est.reliable else "  [unreliable]"
    return f"{est.value:.6g}{flag}"


def _json_number(v: float) -> Optional[float]:
    return float(v) if math.isfinite(v) else None


def _put(out: dict[str, Any], key: str, est: Optional[LimitEstimate]) -> None:
    if est is None:
        out[key] = None
        return
    out[key] = _json_number(est.value)
    out[f"{key}_iterations"] = int(est.iterations)
    out[f"{key}_retries"] = int(est.retries)
    out[f"{key}_converged"] = bool(est.converged)
    out[f"{key}_reliable"] = bool(est.reliable)
    out[f"{key}_monotonic"] = bool(est.monotonic)


def _get(data: Mapping[str, Any], key: str) -> Optional[LimitEstimate]:
    if data.get(f"{key}_iterations") is None:
        return None
    value = data.get(key)
    return LimitEstimate(
        value=math.nan if value is None else float(value),
        converged=bool(data.get(f"{key}_converged", False)),
        reliable=bool(data.get(f"{key}_reliable", False)),
        iterations=int(data[f"{key}_iterations"]),
        retries=int(data.get(f"{key}_retries", 0)),
        monotonic=bool(data.get(f"{key}_monotonic", True)),
    )


def write_json(result: LimitResult, path: str | Path) -> Path:
    p = Path(path)
    if str(p.parent) and not p.parent.exists():
        p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(json.dumps(result.to_dict(), indent=2, sort_keys=True) + "\n", encoding="utf-8")
    return p


def read_json(path: str | Path) -> LimitResult:
    return LimitResult.from_dict(json.loads(Path(path).read_text(encoding="utf-8")))


__all__ = [
    "EXPECTED_KEYS",
    "OBSERVED_KEY",
    "RunStatus",
    "LimitEstimate",
    "LimitResult",
    "write_json",
    "read_json",
]
