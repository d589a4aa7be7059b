"""Exception taxonomy for the familial aggregation pipeline.

Two families of errors, with different handling contracts:

* **Caller / configuration mistakes** — :class:`InvalidOutcomeError`,
  :class:`InvalidCohortError`, :class:`InvalidPriorError`.  These
  subclass :class:`ValueError`, are raised before any model is fitted,
  and abort the offending configuration.
* **Expected per-cell conditions** — :class:`EmptyDatasetError`,
  :class:`ConvergenceError`, :class:`SamplingError`.  The orchestrator
  catches these, records a status on the cell's
  :class:`~familial_aggregation._results.AnalysisResult`, and moves on
  to the next cell.

Every error also inherits :class:`FamilialAggregationError` so callers
can catch the whole package in one clause.
"""

from __future__ import annotations


class FamilialAggregationError(Exception):
    """Base class for all package errors."""


class InvalidOutcomeError(FamilialAggregationError, ValueError):
    """Raised when an outcome name is not in the enumerated outcome set."""

    def __init__(self, outcome: str, allowed: tuple[str, ...]) -> None:
        self.outcome = outcome
        self.allowed = allowed
        super().__init__(
            f"Unknown outcome {outcome!r}. Choose from: {list(allowed)}"
        )


class InvalidCohortError(FamilialAggregationError, ValueError):
    """Raised when a cohort filter is not in the enumerated cohort set."""

    def __init__(self, cohort: str, allowed: tuple[str, ...]) -> None:
        self.cohort = cohort
        self.allowed = allowed
        super().__init__(f"Unknown cohort {cohort!r}. Choose from: {list(allowed)}")


class InvalidPriorError(FamilialAggregationError, ValueError):
    """Raised for conflicting, duplicate, or ill-typed prior overrides."""


class EmptyDatasetError(FamilialAggregationError):
    """Signal: no analysable rows remain for an (outcome, scope) pair.

    Not a failure.  The orchestrator records ``status = "no_data"``.
    """

    def __init__(self, outcome: str, scope: str) -> None:
        self.outcome = outcome
        self.scope = scope
        super().__init__(
            f"No families with two or more complete records for "
            f"outcome {outcome!r} in scope {scope!r}."
        )


class ConvergenceError(FamilialAggregationError, RuntimeError):
    """Raised when the maximum-likelihood solver fails to converge.

    Expected for variance components very close to zero on small
    datasets; the orchestrator falls back to Bayesian-only reporting.
    """


class SamplingError(FamilialAggregationError, RuntimeError):
    """Raised when the MCMC solver fails or returns unusable draws."""
