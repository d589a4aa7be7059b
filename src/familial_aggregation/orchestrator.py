"""Batch driver over the outcome × scope × method grid.

Grid order (deterministic, independent of parallelism):

1. outcomes in declaration order;
2. grouping modes in the order given — ``"single"`` expands to one
   cell per cohort (declaration order), ``"nested"`` to the pooled
   ``"all"`` scope;
3. within a cell, the frequentist row first, then one Bayesian row
   per prior variant.

Per-cell outcome handling:

* empty dataset → ``no_data`` for every method, no solver called;
* :class:`~familial_aggregation.errors.ConvergenceError` →
  frequentist ``non_convergence`` (Bayesian rows still run);
* :class:`~familial_aggregation.errors.SamplingError` → Bayesian
  ``failed`` for that prior variant;
* any other exception from a fit → ``failed`` for that method, logged
  with its traceback; the remaining methods and cells still run.

Caller mistakes (unknown outcome, cohort, grouping mode, a cohort
label in the table outside the enumeration, or a bad prior variant)
are raised before any model is fitted.

With ``RunConfig.n_jobs != 1`` cells run on a joblib thread pool
(``prefer="threads"``); the pool returns results in submission order,
so the output order matches the sequential path.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

from joblib import Parallel, delayed

from ._cache import MemoryFitCache, NetCDFFitCache
from ._compat import SubjectTable, _ensure_pandas_df
from ._config import RunConfig
from ._results import (
    STATUS_FAILED,
    STATUS_NO_DATA,
    STATUS_NON_CONVERGENCE,
    STATUS_OK,
    AnalysisResult,
    FitResult,
)
from .bayes_factor import BayesFactor, bf_against_zero
from .bayesian import BayesianFitter
from .dataset import (
    COHORTS,
    GROUPING_COLUMNS,
    OUTCOMES,
    PREDICTOR_COLUMNS,
    CohortDataset,
    validate_cohort,
    validate_outcome,
)
from .errors import ConvergenceError, InvalidPriorError, SamplingError
from .frequentist import FrequentistFitter
from .icc import icc_from_components
from .model_spec import DEFAULT_PRIOR_VARIANTS, PriorVariant, build_model_spec

logger = logging.getLogger(__name__)

GROUPING_MODES: tuple[str, ...] = ("single", "nested")
METHODS: tuple[str, ...] = ("frequentist", "bayesian")


@dataclass(frozen=True)
class _Cell:
    """One (outcome, grouping mode, scope) unit of work."""

    outcome: str
    mode: str
    dataset: CohortDataset

    @property
    def scope(self) -> str:
        return self.dataset.scope


class AnalysisOrchestrator:
    """Run the full analysis grid and collect :class:`AnalysisResult` rows.

    Args:
        frequentist: ML fitter; built from ``config.backend`` when
            ``None``.
        bayesian: MCMC fitter; built from ``config`` (cache directory,
            refit policy, seed) when ``None``.
        config: Run settings.  Defaults to :class:`RunConfig()`.
        outcomes: Enumerated outcome set for this study.
        cohorts: Enumerated cohort set for this study.
    """

    def __init__(
        self,
        frequentist: FrequentistFitter | None = None,
        bayesian: BayesianFitter | None = None,
        config: RunConfig | None = None,
        *,
        outcomes: tuple[str, ...] = OUTCOMES,
        cohorts: tuple[str, ...] = COHORTS,
    ) -> None:
        self.config = config if config is not None else RunConfig()
        self.frequentist = (
            frequentist if frequentist is not None else FrequentistFitter(backend=self.config.backend)
        )
        if bayesian is None:
            cache = (
                NetCDFFitCache(self.config.cache_dir)
                if self.config.cache_dir is not None
                else MemoryFitCache()
            )
            bayesian = BayesianFitter(
                cache=cache,
                refit=self.config.refit,
                random_seed=self.config.random_seed,
                time_limit=self.config.time_limit,
            )
        self.bayesian = bayesian
        self.outcomes = tuple(outcomes)
        self.cohorts = tuple(cohorts)

    # ---- Public API ------------------------------------------------

    def run(
        self,
        subjects: SubjectTable,
        outcomes: Sequence[str] | None = None,
        cohorts: Sequence[str] | None = None,
        grouping_modes: Sequence[str] = GROUPING_MODES,
        priors: Sequence[PriorVariant] | None = None,
        *,
        methods: Sequence[str] = METHODS,
    ) -> list[AnalysisResult]:
        """Fit every cell of the grid.

        Args:
            subjects: Subject table (pandas or Polars).
            outcomes: Subset of outcomes; all enumerated outcomes when
                ``None``.  Reported in declaration order.
            cohorts: Subset of cohorts for the ``"single"`` mode; all
                when ``None``.  Reported in declaration order.
            grouping_modes: Any of ``"single"`` and ``"nested"``.
            priors: Prior variants for the Bayesian rows; the default
                variants when ``None``.
            methods: Any of ``"frequentist"`` and ``"bayesian"``.

        Returns:
            One :class:`AnalysisResult` per (cell, method[, variant]).

        Raises:
            InvalidOutcomeError: Unknown outcome.
            InvalidCohortError: Unknown cohort.
            InvalidPriorError: Invalid or duplicate prior variants.
            ValueError: Unknown grouping mode or method, or a malformed
                subject table.
        """
        outcome_list = self._ordered(outcomes, self.outcomes, validate_outcome)
        cohort_list = self._ordered(cohorts, self.cohorts, validate_cohort)
        modes = list(dict.fromkeys(grouping_modes))
        unknown_modes = [m for m in modes if m not in GROUPING_MODES]
        if unknown_modes:
            raise ValueError(f"Unknown grouping modes {unknown_modes}. Choose from: {list(GROUPING_MODES)}")
        method_set = set(methods)
        if not method_set <= set(METHODS):
            raise ValueError(f"Unknown methods {sorted(method_set - set(METHODS))}. Choose from: {list(METHODS)}")
        variants = self._validate_variants(priors) if "bayesian" in method_set else ()

        df = _ensure_pandas_df(
            subjects,
            name="subjects",
            columns=[*GROUPING_COLUMNS, *PREDICTOR_COLUMNS, *outcome_list],
        )
        cells = self._build_cells(df, outcome_list, cohort_list, modes)
        logger.info(
            "Running %d cells (%d outcomes, modes=%s, %d prior variants)",
            len(cells),
            len(outcome_list),
            modes,
            len(variants),
        )

        if self.config.n_jobs == 1:
            per_cell = [self._run_cell(cell, method_set, variants) for cell in cells]
        else:
            per_cell = Parallel(n_jobs=self.config.n_jobs, prefer="threads")(
                delayed(self._run_cell)(cell, method_set, variants) for cell in cells
            )
        return [row for rows in per_cell for row in rows]

    # ---- Validation and grid ---------------------------------------

    @staticmethod
    def _ordered(requested, enumeration, validator) -> list[str]:
        if requested is None:
            return list(enumeration)
        for name in requested:
            validator(name, enumeration)
        wanted = set(requested)
        return [name for name in enumeration if name in wanted]

    @staticmethod
    def _validate_variants(priors: Sequence[PriorVariant] | None) -> tuple[PriorVariant, ...]:
        variants = tuple(DEFAULT_PRIOR_VARIANTS if priors is None else priors)
        seen: set[str] = set()
        for variant in variants:
            if not isinstance(variant, PriorVariant):
                raise InvalidPriorError(f"Expected PriorVariant, got {type(variant).__name__}")
            if variant.name in seen:
                raise InvalidPriorError(f"Duplicate prior variant name {variant.name!r}")
            seen.add(variant.name)
            variant.config.validate()
        return variants

    def _build_cells(self, df, outcomes: list[str], cohorts: list[str], modes: list[str]) -> list[_Cell]:
        cells: list[_Cell] = []
        for outcome in outcomes:
            for mode in modes:
                if mode == "single":
                    for cohort in cohorts:
                        dataset = CohortDataset.build(
                            df, outcome, cohort, outcomes=self.outcomes, cohorts=self.cohorts
                        )
                        cells.append(_Cell(outcome, mode, dataset))
                else:
                    dataset = CohortDataset.build(
                        df, outcome, None, outcomes=self.outcomes, cohorts=self.cohorts
                    )
                    cells.append(_Cell(outcome, mode, dataset))
        return cells

    # ---- Cells -----------------------------------------------------

    def _run_cell(
        self,
        cell: _Cell,
        methods: set[str],
        variants: tuple[PriorVariant, ...],
    ) -> list[AnalysisResult]:
        rows: list[AnalysisResult] = []
        if cell.dataset.is_empty:
            logger.info("%s/%s: no analysable data", cell.outcome, cell.scope)
            if "frequentist" in methods:
                rows.append(self._no_data_row(cell, "frequentist", None))
            for variant in variants:
                rows.append(self._no_data_row(cell, "bayesian", variant.name))
            return rows

        if "frequentist" in methods:
            rows.append(self._frequentist_row(cell))
        for variant in variants:
            rows.append(self._bayesian_row(cell, variant))
        return rows

    def _base(self, cell: _Cell) -> dict:
        return {
            "outcome": cell.outcome,
            "scope": cell.scope,
            "grouping": cell.mode,
            "n_obs": cell.dataset.n_obs,
            "n_families": cell.dataset.n_families,
        }

    def _no_data_row(self, cell: _Cell, method: str, variant: str | None) -> AnalysisResult:
        return AnalysisResult(
            method=method,
            status=STATUS_NO_DATA,
            prior_variant=variant,
            message=(
                f"No families with two or more complete records for "
                f"{cell.outcome} in {cell.scope}."
            ),
            **self._base(cell),
        )

    def _failed_row(
        self, cell: _Cell, method: str, variant: str | None, exc: Exception
    ) -> AnalysisResult:
        return AnalysisResult(
            method=method,
            status=STATUS_FAILED,
            prior_variant=variant,
            message=f"{type(exc).__name__}: {exc}",
            **self._base(cell),
        )

    def _frequentist_row(self, cell: _Cell) -> AnalysisResult:
        spec = build_model_spec(cell.outcome, cell.mode, outcomes=self.outcomes)
        try:
            full, _null, lrt = self.frequentist.fit_and_test(cell.dataset, spec)
        except ConvergenceError as exc:
            logger.warning("%s/%s: frequentist fit did not converge: %s", cell.outcome, cell.scope, exc)
            return AnalysisResult(
                method="frequentist",
                status=STATUS_NON_CONVERGENCE,
                message=str(exc),
                **self._base(cell),
            )
        except Exception as exc:
            logger.warning(
                "%s/%s: frequentist fit failed", cell.outcome, cell.scope, exc_info=True
            )
            return self._failed_row(cell, "frequentist", None, exc)

        logger.info(
            "%s/%s: LRT=%.3f p=%.4g", cell.outcome, cell.scope, lrt.statistic, lrt.p_value
        )
        return AnalysisResult(
            method="frequentist",
            status=STATUS_OK,
            lrt_statistic=lrt.statistic,
            p_value=lrt.p_value,
            naive_p_value=lrt.naive_p_value,
            significant=lrt.significant,
            icc=icc_from_components(full.variance_components),
            fixed_effects=full.coefficients,
            variance_components=full.variance_components,
            diagnostics=dict(full.diagnostics),
            message=_dropped_message(full),
            **self._base(cell),
        )

    def _bayesian_row(self, cell: _Cell, variant: PriorVariant) -> AnalysisResult:
        spec = build_model_spec(cell.outcome, cell.mode, variant.config, outcomes=self.outcomes)
        try:
            fit = self.bayesian.fit(cell.dataset, spec)
        except SamplingError as exc:
            logger.warning(
                "%s/%s [%s]: sampling failed: %s", cell.outcome, cell.scope, variant.name, exc
            )
            return AnalysisResult(
                method="bayesian",
                status=STATUS_FAILED,
                prior_variant=variant.name,
                message=str(exc),
                **self._base(cell),
            )
        except Exception as exc:
            logger.warning(
                "%s/%s [%s]: Bayesian fit failed",
                cell.outcome,
                cell.scope,
                variant.name,
                exc_info=True,
            )
            return self._failed_row(cell, "bayesian", variant.name, exc)

        bayes_factors = tuple(
            _bayes_factor(fit, level) for level in spec.random_levels
        )
        message = _dropped_message(fit)
        if not fit.converged:
            message = "; ".join(
                m for m in (message, "sampler diagnostics flagged (divergences or R-hat)") if m
            )
        return AnalysisResult(
            method="bayesian",
            status=STATUS_OK,
            prior_variant=variant.name,
            icc=icc_from_components(fit.variance_components),
            bayes_factors=bayes_factors,
            fixed_effects=fit.coefficients,
            variance_components=fit.variance_components,
            diagnostics=dict(fit.diagnostics),
            message=message,
            **self._base(cell),
        )


def _bayes_factor(fit: FitResult, level: str) -> BayesFactor:
    return bf_against_zero(
        fit.sd_draws.get(level, ()),
        fit.sd_prior_draws.get(level, ()),
        parameter=f"sd_{level}",
    )


def _dropped_message(fit: FitResult) -> str:
    if not fit.dropped_terms:
        return ""
    return f"dropped aliased terms: {', '.join(fit.dropped_terms)}"
