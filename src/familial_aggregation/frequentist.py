"""Maximum-likelihood GLMM fits and the boundary-corrected LRT.

:class:`FrequentistFitter` fits the full model described by a
:class:`~familial_aggregation.model_spec.ModelSpec` and its null
comparator (the same model without the family random intercept),
then compares them with a likelihood-ratio test whose reference
distribution is the Self–Liang mixture (see :mod:`.pvalues`).

Failure policy
--------------
* Optimiser non-convergence, a non-finite log-likelihood, a
  linear-algebra failure, or a ``ValueError`` raised inside the
  solver (SciPy or statsmodels rejecting the problem) in either fit
  raises :class:`~familial_aggregation.errors.ConvergenceError`.
* A family SD estimated on the zero boundary is a *singular fit*, not
  an error: the LRT is ~0 and the p-value ~0.5.
"""

from __future__ import annotations

import logging

import numpy as np
from scipy import stats

from ._results import CoefficientRow, FitResult, LikelihoodRatioTest, VarianceComponent
from ._solvers import MLSolverProtocol, resolve_ml_solver
from .dataset import CohortDataset
from .errors import ConvergenceError
from .model_spec import DesignMatrix, ModelSpec
from .pvalues import (
    SIGNIFICANCE_LEVEL,
    is_significant,
    lrt_statistic,
    naive_pvalue,
    self_liang_pvalue,
)

logger = logging.getLogger(__name__)

_Z_975 = float(stats.norm.ppf(0.975))
_SINGULAR_SD = 1e-3


class FrequentistFitter:
    """Fit full and null GLMMs by maximum likelihood and test the family SD.

    Args:
        solver: ML engine; resolved from *backend* (or the configured
            backend policy) when ``None``.
        backend: ``"numpy"`` or ``"jax"``; ignored when *solver* is
            given.
    """

    def __init__(
        self,
        solver: MLSolverProtocol | None = None,
        backend: str | None = None,
    ) -> None:
        self._solver = solver
        self._backend = backend

    @property
    def solver(self) -> MLSolverProtocol:
        if self._solver is None:
            self._solver = resolve_ml_solver(self._backend)
        return self._solver

    def fit(self, dataset: CohortDataset, spec: ModelSpec) -> tuple[FitResult, FitResult]:
        """Fit the full model and its null comparator.

        Returns:
            ``(full, null)`` fit results.

        Raises:
            EmptyDatasetError: *dataset* has no rows.
            ConvergenceError: Either fit failed numerically.
            ValueError: *spec* does not match the dataset's scope.
        """
        dataset.require_data()
        spec.validate_scope(dataset)
        design = spec.design_matrix(dataset)
        y = dataset.response()

        full = self._fit_one(dataset, spec, design, y)
        null = self._fit_one(dataset, spec.null_spec(), design, y)
        return full, null

    def test(self, full: FitResult, null: FitResult, spec: ModelSpec) -> LikelihoodRatioTest:
        """Self–Liang LRT of the family variance component."""
        lrt = lrt_statistic(null.log_likelihood, full.log_likelihood)
        p_value = self_liang_pvalue(lrt, nested=spec.is_nested)
        return LikelihoodRatioTest(
            statistic=lrt,
            p_value=p_value,
            naive_p_value=naive_pvalue(lrt),
            significant=is_significant(p_value),
            nested=spec.is_nested,
        )

    def fit_and_test(
        self, dataset: CohortDataset, spec: ModelSpec
    ) -> tuple[FitResult, FitResult, LikelihoodRatioTest]:
        full, null = self.fit(dataset, spec)
        return full, null, self.test(full, null, spec)

    # ---- Internals -------------------------------------------------

    def _fit_one(
        self,
        dataset: CohortDataset,
        spec: ModelSpec,
        design: DesignMatrix,
        y: np.ndarray,
    ) -> FitResult:
        groups = spec.group_codes(dataset)
        label = f"{spec.outcome}/{dataset.scope} ({spec.grouping_name})"
        try:
            solution = self.solver.fit(design.values, y, groups)
        except (np.linalg.LinAlgError, FloatingPointError) as exc:
            raise ConvergenceError(f"{label}: linear algebra failure: {exc}") from exc
        except ValueError as exc:
            raise ConvergenceError(f"{label}: solver failure: {exc}") from exc

        if not np.isfinite(solution.loglik):
            raise ConvergenceError(f"{label}: non-finite log-likelihood")
        if not solution.converged:
            detail = f": {solution.message}" if solution.message else ""
            raise ConvergenceError(f"{label}: solver did not converge{detail}")

        coefficients = []
        for term, estimate, se in zip(design.terms, solution.beta, solution.std_errors):
            estimate = float(estimate)
            se = float(se)
            with np.errstate(divide="ignore", invalid="ignore"):
                p_wald = float(2.0 * stats.norm.sf(abs(estimate / se)))
            coefficients.append(
                CoefficientRow(
                    term=term,
                    estimate=estimate,
                    std_error=se,
                    lower=estimate - _Z_975 * se,
                    upper=estimate + _Z_975 * se,
                    significant=bool(np.isfinite(p_wald) and p_wald < SIGNIFICANCE_LEVEL),
                )
            )

        components = tuple(
            VarianceComponent(level=level, sd=float(solution.sds[level]))
            for level in spec.random_levels
        )
        for component in components:
            if component.sd < _SINGULAR_SD:
                logger.debug("%s: boundary (singular) fit for %s", label, component.level)

        return FitResult(
            method="frequentist",
            outcome=spec.outcome,
            scope=dataset.scope,
            grouping=spec.grouping_name,
            coefficients=tuple(coefficients),
            variance_components=components,
            log_likelihood=float(solution.loglik),
            n_obs=dataset.n_obs,
            n_groups={level: int(np.unique(codes).size) for level, codes in groups.items()},
            converged=True,
            diagnostics={
                "solver": getattr(self.solver, "name", type(self.solver).__name__),
                "n_iter": solution.n_iter,
                "message": solution.message,
            },
            dropped_terms=design.dropped,
        )
