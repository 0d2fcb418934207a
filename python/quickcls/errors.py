"""Exception types raised by quickcls.

Only configuration and model-structure problems are fatal. Non-converging fits
are reported through `FitResult.status` and `LimitPoint.reliable`; the only
fit-related exception is `FitBudgetExhausted`, raised once a run has seen more
failed fits than its configured budget allows.
"""

from __future__ import annotations

from typing import Iterable, Sequence


class QuickClsError(Exception):
    """Base class for quickcls errors."""


class ConfigurationError(QuickClsError, ValueError):
    def __init__(self, message: str, *, keys: Iterable[str] = ()):
        self.keys = tuple(keys)
        if self.keys:
            message = f"{message} (keys: {', '.join(self.keys)})"
        super().__init__(message)


class ModelValidationError(QuickClsError, ValueError):
    def __init__(self, issues: Sequence[str]):
        self.issues = list(issues)
        lines = "\n".join(f"  - {issue}" for issue in self.issues)
        super().__init__(f"model failed validation ({len(self.issues)} issue(s)):\n{lines}")


class FitBudgetExhausted(QuickClsError, RuntimeError):
    def __init__(self, failures: int, budget: int):
        self.failures = int(failures)
        self.budget = int(budget)
        super().__init__(f"fit failure budget exhausted: {self.failures} failed fits (budget {self.budget})")


__all__ = [
    "QuickClsError",
    "ConfigurationError",
    "ModelValidationError",
    "FitBudgetExhausted",
]
