"""quickcls: asymptotic CLs exclusion limits.

Quickstart:

    from quickcls import LimitConfig, run_asymptotic_cls
    from quickcls.pyhf_model import from_workspace, load_workspace

    model, data = from_workspace(load_workspace("workspace.json"))
    result = run_asymptotic_cls(model, data, config=LimitConfig(do_blind=False))
    print(result.summary())
"""

from __future__ import annotations

import logging

from .config import LimitConfig
from .errors import ConfigurationError, FitBudgetExhausted, ModelValidationError, QuickClsError
from .limits import AsymptoticCLs, run_asymptotic_cls
from .model import Dataset, Parameter, ParameterState, PoiSpec, StatModel
from .results import LimitEstimate, LimitResult, RunStatus, read_json, write_json

__version__ = "0.1.0"


def set_logging(level: int = logging.INFO) -> None:
    """Basic console logging for quickcls; pyhf and iminuit only report warnings."""
    logging.basicConfig(format="%(levelname)s - %(name)s - %(message)s")
    logging.getLogger("quickcls").setLevel(level)
    logging.getLogger("pyhf").setLevel(logging.WARNING)
    logging.getLogger("iminuit").setLevel(logging.WARNING)


__all__ = [
    "__version__",
    "set_logging",
    "LimitConfig",
    "QuickClsError",
    "ConfigurationError",
    "ModelValidationError",
    "FitBudgetExhausted",
    "AsymptoticCLs",
    "run_asymptotic_cls",
    "Dataset",
    "Parameter",
    "ParameterState",
    "PoiSpec",
    "StatModel",
    "LimitEstimate",
    "LimitResult",
    "RunStatus",
    "read_json",
    "write_json",
]
