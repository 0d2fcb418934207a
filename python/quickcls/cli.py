from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .config import LimitConfig
from .errors import ConfigurationError, QuickClsError
from .model import PoiSpec


def parse_poi(text: str) -> PoiSpec:
    """`name`, `name=value` (fixed) or `name=value_lo_hi` (floating in [lo, hi])."""
    name, sep, rest = text.strip().partition("=")
    name = name.strip()
    if not name:
        raise ConfigurationError(f"empty POI name in {text!r}", keys=["poi"])
    if not sep:
        return PoiSpec(name)
    parts = rest.split("_")
    try:
        vals = [float(p) for p in parts]
    except ValueError as e:
        raise ConfigurationError(f"cannot parse POI specification {text!r}", keys=["poi"]) from e
    if len(vals) == 1:
        return PoiSpec(name, value=vals[0])
    if len(vals) == 3:
        lo, hi = vals[1], vals[2]
        if not lo < hi:
            raise ConfigurationError(f"POI range must satisfy lo < hi in {text!r}", keys=["poi"])
        return PoiSpec(name, value=vals[0], bounds=(lo, hi))
    raise ConfigurationError(f"expected name, name=value or name=value_lo_hi, got {text!r}", keys=["poi"])


def parse_pois(text: Optional[str]) -> List[PoiSpec]:
    if not text:
        return []
    return [parse_poi(t) for t in text.split(",") if t.strip()]


def parse_patterns(text: Optional[str]) -> List[str]:
    if not text:
        return []
    return [t.strip() for t in text.split(",") if t.strip()]


def parse_overrides(items: Sequence[str]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for item in items:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise ConfigurationError(f"expected key=value, got {item!r}")
        out[key.strip().replace("-", "_")] = value.strip()
    return out


def build_config(args: argparse.Namespace) -> LimitConfig:
    base: Dict[str, Any] = {}
    if args.config is not None:
        base = LimitConfig.from_yaml(args.config).to_dict()
    base.update(parse_overrides(args.set or []))
    if args.target_cl is not None:
        base["target_cl"] = args.target_cl
    if args.min_algo is not None:
        base["min_algo"] = args.min_algo
    if args.strategy is not None:
        base["strategy"] = args.strategy
    if args.precision is not None:
        base["precision"] = args.precision
    if args.workers is not None:
        base["n_workers"] = args.workers
    if args.unblind:
        base["do_blind"] = False
    if args.verbose:
        base["verbose"] = True
    return LimitConfig.from_mapping(base).validate()


def _load_snapshot(path: Optional[Path]) -> Optional[Dict[str, float]]:
    if path is None:
        return None
    doc = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(doc, dict):
        raise ConfigurationError(f"{path}: snapshot must be a JSON object of name -> value", keys=["snapshot"])
    return {str(k): float(v) for k, v in doc.items()}


def _cmd_limits(args: argparse.Namespace) -> int:
    from . import set_logging
    from .limits import run_asymptotic_cls
    from .pyhf_model import from_workspace, load_workspace

    try:
        config = build_config(args)
        set_logging(logging.DEBUG if config.verbose else logging.INFO)
        model, data = from_workspace(load_workspace(args.workspace), args.measurement)
        result = run_asymptotic_cls(
            model,
            data,
            config=config,
            pois=parse_pois(args.poi) or None,
            fix_nps=parse_patterns(args.fix_np),
            snapshot=_load_snapshot(args.snapshot),
            output=args.output,
        )
    except QuickClsError as e:
        raise SystemExit(str(e)) from e

    print(json.dumps(result.to_dict(), indent=2, sort_keys=True))
    return 0 if result.complete else 1


def main(argv: list[str] | None = None) -> int:
    ap = argparse.ArgumentParser(prog="python -m quickcls.cli")
    sub = ap.add_subparsers(dest="command", required=True)

    p = sub.add_parser("limits", help="Asymptotic CLs upper limits for a pyhf workspace.")
    p.add_argument("--workspace", type=Path, required=True, help="Path to a pyhf JSON workspace.")
    p.add_argument("--measurement", type=str, default=None, help="Measurement name (default: the workspace's first).")
    p.add_argument("--poi", type=str, default=None, help="POIs, e.g. 'mu=1_0_10,mu2=0.5'.")
    p.add_argument("--fix-np", type=str, default=None, help="Comma separated NP names or glob patterns to fix.")
    p.add_argument("--snapshot", type=Path, default=None, help="JSON object of parameter values to start from.")
    p.add_argument("--config", type=Path, default=None, help="YAML file with LimitConfig options.")
    p.add_argument("--output", type=Path, default=None, help="Write the result record to this JSON file.")
    p.add_argument("--target-cl", type=float, default=None, help="Confidence level (default 0.95).")
    p.add_argument("--min-algo", type=str, default=None, choices=["minuit", "scipy"], help="Minimizer backend.")
    p.add_argument("--strategy", type=int, default=None, choices=[0, 1, 2], help="Minimizer strategy.")
    p.add_argument("--precision", type=float, default=None, help="Relative precision on the limit.")
    p.add_argument("--workers", type=int, default=None, help="Threads for the observed and band scans.")
    p.add_argument("--unblind", action="store_true", help="Compute the observed limit (sets do_blind=false).")
    p.add_argument(
        "--set",
        action="append",
        metavar="KEY=VALUE",
        help="Override any LimitConfig option, e.g. --set better_bands=false. May be repeated.",
    )
    p.add_argument("--verbose", action="store_true", help="Debug logging.")

    args = ap.parse_args(argv)
    if args.command == "limits":
        return _cmd_limits(args)
    raise SystemExit(f"unknown command: {args.command}")


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
