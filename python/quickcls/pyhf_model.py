"""Adapter exposing a `pyhf` model through the `StatModel` interface.

pyhf stores the auxiliary measurements of the constraint terms in the data
vector rather than as model parameters, so the adapter has no global
observables: `expected_data` already returns the auxdata that matches the
nuisance values (the usual Asimov convention). Parameters that pyhf marks as
fixed are kept constant and are not listed as nuisances.

Parameter names follow `model.config.par_names`, e.g. `uncorr_bkguncrt[1]`.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Mapping, Optional, Sequence, Tuple

import numpy as np

from .model import Dataset, Parameter


class PyhfModel:
    def __init__(self, pdf: Any, *, name: str = "pyhf"):
        self.pdf = pdf
        self.name = name
        cfg = pdf.config
        if cfg.poi_index is None:
            raise ValueError("pyhf model has no parameter of interest")
        self._names: Tuple[str, ...] = tuple(str(n) for n in cfg.par_names)
        self._init = [float(v) for v in cfg.suggested_init()]
        self._bounds = [(float(lo), float(hi)) for lo, hi in cfg.suggested_bounds()]
        self._fixed = [bool(f) for f in cfg.suggested_fixed()]
        self._poi = self._names[int(cfg.poi_index)]

    @property
    def pois(self) -> Tuple[str, ...]:
        return (self._poi,)

    @property
    def nuisances(self) -> Tuple[str, ...]:
        return tuple(n for n, fixed in zip(self._names, self._fixed) if n != self._poi and not fixed)

    @property
    def global_observables(self) -> Tuple[str, ...]:
        return ()

    def parameters(self) -> Sequence[Parameter]:
        return [
            Parameter(n, v, lo, hi, constant=fixed)
            for n, v, (lo, hi), fixed in zip(self._names, self._init, self._bounds, self._fixed)
        ]

    def nll(self, values: np.ndarray, data: Dataset) -> float:
        logpdf = self.pdf.logpdf(np.asarray(values, dtype=np.float64), np.asarray(data.observations))
        return -float(np.asarray(logpdf, dtype=np.float64).reshape(-1)[0])

    def expected_data(self, values: np.ndarray) -> Dataset:
        expected = self.pdf.expected_data(np.asarray(values, dtype=np.float64))
        return Dataset("expected", np.asarray(expected, dtype=np.float64))


def load_workspace(path: str | Path) -> dict:
    return json.loads(Path(path).read_text(encoding="utf-8"))


def from_workspace(
    spec: Mapping[str, Any],
    measurement: Optional[str] = None,
    *,
    modifier_settings: Optional[Mapping[str, Any]] = None,
    data_name: str = "obsData",
) -> Tuple[PyhfModel, Dataset]:
    """Build the model and the observed dataset of a pyhf JSON workspace."""
    import pyhf

    ws = pyhf.Workspace(dict(spec))
    kwargs: dict[str, Any] = {}
    if measurement is not None:
        kwargs["measurement_name"] = measurement
    if modifier_settings is not None:
        kwargs["modifier_settings"] = dict(modifier_settings)
    pdf = ws.model(**kwargs)
    data = Dataset(data_name, np.asarray(ws.data(pdf), dtype=np.float64))
    return PyhfModel(pdf, name=measurement or "pyhf"), data


__all__ = ["PyhfModel", "from_workspace", "load_workspace"]
