"""Typed result objects for the familial aggregation pipeline.

Frozen dataclasses that provide:

* **Attribute access** — ``result.p_value``, ``result.status``, etc.
* **Dict-like access** — ``result["p_value"]``, ``result.get("key")``,
  ``"key" in result`` for consumers that prefer bracket syntax.
* **Serialisation** — ``.to_dict()`` returns a plain ``dict[str, Any]``
  with NumPy types and nested records converted to native Python.

Two layers:

* :class:`FitResult` — one fitted model (frequentist or Bayesian),
  including a ``no_data`` sentinel for empty datasets.
* :class:`AnalysisResult` — one row of the final output grid:
  (outcome, scope, method[, prior variant]) with test statistics,
  effect sizes, and a status.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import TYPE_CHECKING, Any, ClassVar, Literal

import numpy as np

if TYPE_CHECKING:
    from .bayes_factor import BayesFactor
    from .icc import ICCEstimate

Method = Literal["frequentist", "bayesian"]
Status = Literal["ok", "no_data", "non_convergence", "failed"]

STATUS_OK: Status = "ok"
STATUS_NO_DATA: Status = "no_data"
STATUS_NON_CONVERGENCE: Status = "non_convergence"
STATUS_FAILED: Status = "failed"

# ------------------------------------------------------------------ #
# Serialisation helper
# ------------------------------------------------------------------ #


def _numpy_to_python(obj: Any) -> Any:
    """Recursively convert NumPy scalars/arrays to Python-native types.

    Handles nested dicts, lists, np.ndarray, np.integer, np.floating,
    and nested result records so that :meth:`to_dict` returns a fully
    JSON-serialisable structure.
    """
    if isinstance(obj, _DictAccessMixin):
        return obj.to_dict()
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, np.bool_):
        return bool(obj)
    if isinstance(obj, np.integer):
        return int(obj)
    if isinstance(obj, np.floating):
        return float(obj)
    if isinstance(obj, dict):
        return {k: _numpy_to_python(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_numpy_to_python(item) for item in obj]
    return obj


# ------------------------------------------------------------------ #
# Dict-compatibility mixin
# ------------------------------------------------------------------ #


class _DictAccessMixin:
    """Dict-like access convenience for result dataclasses.

    Supports three access patterns:

    1. ``result["key"]``     — raises ``KeyError`` on miss
    2. ``result.get(key, d)`` — returns *d* on miss (default ``None``)
    3. ``"key" in result``   — membership test

    Subclasses may override ``_SERIALIZERS`` to register custom
    conversion functions for non-primitive fields, and
    ``_EXCLUDE_FROM_DICT`` to leave bulky fields out of
    :meth:`to_dict`.
    """

    _SERIALIZERS: ClassVar[dict[str, Any]] = {}
    _EXCLUDE_FROM_DICT: ClassVar[frozenset[str]] = frozenset()

    def __getitem__(self, key: str) -> Any:
        try:
            return getattr(self, key)
        except AttributeError:
            raise KeyError(key) from None

    def get(self, key: str, default: Any = None) -> Any:
        return getattr(self, key, default)

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, str):
            return False
        return hasattr(self, key)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a plain dictionary.

        Applies per-field serializers from ``_SERIALIZERS``, then runs
        :func:`_numpy_to_python` on every value.
        """
        result: dict[str, Any] = {}
        for f in fields(self):  # type: ignore[arg-type]
            if f.name in self._EXCLUDE_FROM_DICT:
                continue
            val = getattr(self, f.name)
            if f.name in self._SERIALIZERS:
                val = self._SERIALIZERS[f.name](val)
            result[f.name] = _numpy_to_python(val)
        return result


# ------------------------------------------------------------------ #
# Model-level records
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class CoefficientRow(_DictAccessMixin):
    """One fixed-effect row.

    Frequentist rows carry a Wald standard error and a 95 % Wald
    interval; Bayesian rows carry the posterior SD as ``std_error``
    and the 2.5 %/97.5 % posterior quantiles as bounds.
    """

    term: str
    estimate: float
    std_error: float
    lower: float
    upper: float
    significant: bool


@dataclass(frozen=True)
class VarianceComponent(_DictAccessMixin):
    """Random-intercept SD for one grouping level.

    ``lower``/``upper`` are 95 % credible bounds on the Bayesian path
    and ``nan`` on the frequentist path.
    """

    level: str
    sd: float
    lower: float = float("nan")
    upper: float = float("nan")


@dataclass(frozen=True)
class FitResult(_DictAccessMixin):
    """One fitted model.

    Attributes:
        method: ``"frequentist"`` or ``"bayesian"``.
        outcome: Outcome column.
        scope: Cohort name or ``"all"``.
        grouping: ``"single"``, ``"nested"`` or ``"none"``.
        coefficients: Fixed-effect table in design-column order.
        variance_components: One entry per random-intercept level.
        log_likelihood: Maximised log-likelihood (frequentist only).
        n_obs: Rows used.
        n_groups: Number of groups per random-intercept level.
        converged: Solver convergence flag.
        diagnostics: Solver diagnostics (iterations, divergences,
            R-hat, ESS, cache hit, …).
        sd_draws: Posterior SD draws per level (Bayesian only).
        sd_prior_draws: Prior SD draws per level (Bayesian only).
        dropped_terms: Aliased design columns removed before fitting.
        is_empty: ``True`` for the ``no_data`` sentinel.
    """

    _EXCLUDE_FROM_DICT: ClassVar[frozenset[str]] = frozenset(
        {"sd_draws", "sd_prior_draws"}
    )

    method: Method
    outcome: str
    scope: str
    grouping: str
    coefficients: tuple[CoefficientRow, ...] = ()
    variance_components: tuple[VarianceComponent, ...] = ()
    log_likelihood: float = float("nan")
    n_obs: int = 0
    n_groups: dict[str, int] = field(default_factory=dict)
    converged: bool = True
    diagnostics: dict[str, Any] = field(default_factory=dict)
    sd_draws: dict[str, np.ndarray] = field(default_factory=dict)
    sd_prior_draws: dict[str, np.ndarray] = field(default_factory=dict)
    dropped_terms: tuple[str, ...] = ()
    is_empty: bool = False

    @classmethod
    def no_data(cls, method: Method, outcome: str, scope: str, grouping: str) -> FitResult:
        """Sentinel for an (outcome, scope) with no analysable rows."""
        return cls(
            method=method,
            outcome=outcome,
            scope=scope,
            grouping=grouping,
            converged=False,
            is_empty=True,
        )

    def variance_component(self, level: str) -> VarianceComponent | None:
        for component in self.variance_components:
            if component.level == level:
                return component
        return None


@dataclass(frozen=True)
class LikelihoodRatioTest(_DictAccessMixin):
    """Boundary-corrected LRT for the family variance component."""

    statistic: float
    p_value: float
    naive_p_value: float
    significant: bool
    nested: bool


# ------------------------------------------------------------------ #
# AnalysisResult
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class AnalysisResult(_DictAccessMixin):
    """One row of the analysis grid.

    Frequentist rows fill the LRT fields; Bayesian rows fill
    ``bayes_factors`` and credible bounds.  Both fill ``icc`` when a
    fit succeeded.  Fields that do not apply stay ``nan`` / empty.

    Attributes:
        outcome: Outcome analysed.
        scope: Cohort name or ``"all"``.
        grouping: ``"single"`` or ``"nested"``.
        method: ``"frequentist"`` or ``"bayesian"``.
        prior_variant: Prior-sensitivity variant name (Bayesian only).
        status: ``"ok"``, ``"no_data"``, ``"non_convergence"`` or
            ``"failed"``.
        n_obs: Rows in the filtered dataset.
        n_families: Families in the filtered dataset.
        lrt_statistic: Likelihood-ratio statistic.
        p_value: Self–Liang mixture p-value.
        naive_p_value: Uncorrected ``P[χ²₁ ≥ LRT]``.
        significant: ``p_value < 0.05``.
        icc: ICC per random-intercept level (one for single, cohort
            then family for nested).
        bayes_factors: Savage–Dickey BF₁₀ per variance component.
        fixed_effects: Fixed-effect table.
        variance_components: Variance-component table.
        diagnostics: Solver diagnostics.
        message: Human-readable status detail.
    """

    outcome: str
    scope: str
    grouping: str
    method: Method
    status: Status
    prior_variant: str | None = None
    n_obs: int = 0
    n_families: int = 0
    lrt_statistic: float = float("nan")
    p_value: float = float("nan")
    naive_p_value: float = float("nan")
    significant: bool = False
    icc: tuple[ICCEstimate, ...] = ()
    bayes_factors: tuple[BayesFactor, ...] = ()
    fixed_effects: tuple[CoefficientRow, ...] = ()
    variance_components: tuple[VarianceComponent, ...] = ()
    diagnostics: dict[str, Any] = field(default_factory=dict)
    message: str = ""

    @property
    def is_ok(self) -> bool:
        return self.status == STATUS_OK

    def icc_for(self, level: str) -> ICCEstimate | None:
        for estimate in self.icc:
            if estimate.level == level:
                return estimate
        return None

    def bayes_factor_for(self, level: str) -> BayesFactor | None:
        target = f"sd_{level}"
        for bf in self.bayes_factors:
            if bf.parameter == target:
                return bf
        return None
