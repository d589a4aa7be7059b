"""Bayesian GLMM fits with cached posterior artifacts.

:class:`BayesianFitter` samples the random-intercept logistic model
through an :class:`~familial_aggregation._solvers.MCMCSolverProtocol`
engine (PyMC by default) and summarises the posterior:

* fixed effects — posterior mean, SD and 2.5 %/97.5 % quantiles; a
  term is flagged when its 95 % interval excludes zero;
* variance components — posterior mean SD with 95 % bounds, plus the
  raw posterior and prior SD draws for the Savage–Dickey Bayes
  factor;
* diagnostics — divergent transitions, max R-hat, min bulk ESS.

Sampling defaults: 4 chains × (1000 warm-up + 1000 draws), target
acceptance 0.85 (single) / 0.95 (nested), flat fixed-effect priors and
half-Student-t(3, 0, 2.5) SD priors.

Caching
-------
Every fit is memoised under
:meth:`~familial_aggregation.model_spec.ModelSpec.cache_key`.  A
stored artifact is authoritative: it is loaded instead of resampled
unless the fitter was built with ``refit=True``.  The check, sample
and save steps run under the key's lock.
"""

from __future__ import annotations

import logging
import warnings
from collections.abc import Mapping
from typing import Any

import arviz as az
import numpy as np

from ._cache import FitCache, MemoryFitCache
from ._results import CoefficientRow, FitResult, VarianceComponent
from ._solvers import MCMCSolverProtocol, SamplerControl, default_mcmc_solver
from .dataset import CohortDataset
from .errors import SamplingError
from .model_spec import DesignMatrix, ModelSpec

logger = logging.getLogger(__name__)

RHAT_THRESHOLD: float = 1.01


class BayesianFitter:
    """Posterior sampling and summaries for one :class:`ModelSpec`.

    Args:
        solver: MCMC engine; PyMC when ``None``.
        cache: Fit store; a fresh :class:`MemoryFitCache` when ``None``.
        refit: Resample even when the cache holds the key, and
            overwrite the entry.
        random_seed: Seed forwarded to the sampler.
        **control_overrides: Replace :class:`SamplerControl` fields
            (``chains``, ``tune``, ``draws``, ``target_accept``,
            ``extra``).
    """

    def __init__(
        self,
        solver: MCMCSolverProtocol | None = None,
        cache: FitCache | None = None,
        *,
        refit: bool = False,
        random_seed: int | None = None,
        **control_overrides: Any,
    ) -> None:
        self._solver = solver
        self.cache: FitCache = cache if cache is not None else MemoryFitCache()
        self.refit = refit
        self.random_seed = random_seed
        self.control_overrides = control_overrides

    @property
    def solver(self) -> MCMCSolverProtocol:
        if self._solver is None:
            self._solver = default_mcmc_solver()
        return self._solver

    def control_for(self, spec: ModelSpec) -> SamplerControl:
        return SamplerControl.for_grouping(
            spec.is_nested, random_seed=self.random_seed, **self.control_overrides
        )

    def fit(
        self,
        dataset: CohortDataset,
        spec: ModelSpec,
        *,
        scope_key: str | None = None,
    ) -> FitResult:
        """Sample (or load) the posterior for *spec* on *dataset*.

        Args:
            dataset: Filtered dataset.  An empty dataset returns the
                ``no_data`` sentinel without sampling.
            spec: Model specification.
            scope_key: Replaces ``dataset.scope`` in the cache key.

        Raises:
            SamplingError: The sampler failed or returned unusable
                draws.
        """
        if dataset.is_empty:
            return FitResult.no_data("bayesian", spec.outcome, dataset.scope, spec.grouping_name)
        spec.validate_scope(dataset)

        design = spec.design_matrix(dataset)
        groups = spec.group_codes(dataset)
        key = spec.cache_key(scope_key or dataset.scope)

        with self.cache.lock(key):
            cache_hit = not self.refit and self.cache.contains(key)
            if cache_hit:
                logger.info("Using cached fit %s", key)
                try:
                    idata = self.cache.load(key)
                except (OSError, ValueError, KeyError) as exc:
                    raise SamplingError(
                        f"{key}: cached fit could not be read ({exc}); refit to replace it"
                    ) from exc
            else:
                idata = self._sample(dataset, spec, design, groups)
                try:
                    self.cache.save(key, idata, overwrite=self.refit)
                except OSError as exc:
                    logger.warning("Could not cache fit %s: %s", key, exc)

        try:
            return self._summarise(idata, dataset, spec, design, groups, key)
        except (KeyError, ValueError, IndexError) as exc:
            raise SamplingError(f"{key}: posterior could not be summarised: {exc}") from exc

    # ---- Internals -------------------------------------------------

    def _sample(
        self,
        dataset: CohortDataset,
        spec: ModelSpec,
        design: DesignMatrix,
        groups: Mapping[str, np.ndarray],
    ) -> az.InferenceData:
        control = self.control_for(spec)
        logger.info(
            "Sampling %s/%s (%s, %s)",
            spec.outcome,
            dataset.scope,
            spec.grouping_name,
            spec.priors.label,
        )
        try:
            idata = self.solver.sample(
                design.values,
                dataset.response(),
                design.terms,
                groups,
                spec.priors,
                control,
            )
        except (RuntimeError, ValueError, FloatingPointError, np.linalg.LinAlgError) as exc:
            raise SamplingError(
                f"{spec.outcome}/{dataset.scope}: sampler failed: {exc}"
            ) from exc

        required = ["b", *(f"sd_{level}" for level in spec.random_levels)]
        posterior = getattr(idata, "posterior", None)
        missing = [] if posterior is None else [v for v in required if v not in posterior]
        if posterior is None or missing:
            raise SamplingError(
                f"{spec.outcome}/{dataset.scope}: sampler output lacks "
                f"posterior variables {missing or required}"
            )
        return idata

    def _summarise(
        self,
        idata: az.InferenceData,
        dataset: CohortDataset,
        spec: ModelSpec,
        design: DesignMatrix,
        groups: Mapping[str, np.ndarray],
        key: str,
    ) -> FitResult:
        posterior = idata.posterior
        b = posterior["b"]
        terms = [str(t) for t in b.coords["term"].values] if "term" in b.coords else list(design.terms)
        b_draws = np.asarray(b.values, dtype=np.float64).reshape(-1, len(terms))
        if not np.all(np.isfinite(b_draws)):
            raise SamplingError(f"{spec.outcome}/{dataset.scope}: non-finite posterior draws")

        lower, upper = np.quantile(b_draws, [0.025, 0.975], axis=0)
        coefficients = tuple(
            CoefficientRow(
                term=term,
                estimate=float(b_draws[:, j].mean()),
                std_error=float(b_draws[:, j].std(ddof=1)),
                lower=float(lower[j]),
                upper=float(upper[j]),
                significant=bool(lower[j] > 0.0 or upper[j] < 0.0),
            )
            for j, term in enumerate(terms)
        )

        has_prior = "prior" in idata.groups()
        components = []
        sd_draws: dict[str, np.ndarray] = {}
        sd_prior_draws: dict[str, np.ndarray] = {}
        for level in spec.random_levels:
            name = f"sd_{level}"
            draws = np.asarray(posterior[name].values, dtype=np.float64).ravel()
            sd_draws[level] = draws
            if has_prior and name in idata.prior:
                sd_prior_draws[level] = np.asarray(idata.prior[name].values, dtype=np.float64).ravel()
            q_lo, q_hi = np.quantile(draws, [0.025, 0.975])
            components.append(
                VarianceComponent(level=level, sd=float(draws.mean()), lower=float(q_lo), upper=float(q_hi))
            )

        diagnostics = self._diagnostics(idata, spec)
        diagnostics["cache_key"] = key
        diagnostics["prior"] = spec.priors.label
        converged = diagnostics["divergences"] == 0 and not (
            np.isfinite(diagnostics["max_rhat"]) and diagnostics["max_rhat"] > RHAT_THRESHOLD
        )
        if not converged:
            warnings.warn(
                f"{spec.outcome}/{dataset.scope} ({spec.grouping_name}): "
                f"{diagnostics['divergences']} divergent transitions, "
                f"max R-hat {diagnostics['max_rhat']:.3f}. "
                f"Posterior summaries may be unreliable.",
                RuntimeWarning,
                stacklevel=3,
            )

        return FitResult(
            method="bayesian",
            outcome=spec.outcome,
            scope=dataset.scope,
            grouping=spec.grouping_name,
            coefficients=coefficients,
            variance_components=tuple(components),
            n_obs=dataset.n_obs,
            n_groups={level: int(np.unique(codes).size) for level, codes in groups.items()},
            converged=converged,
            diagnostics=diagnostics,
            sd_draws=sd_draws,
            sd_prior_draws=sd_prior_draws,
            dropped_terms=design.dropped,
        )

    @staticmethod
    def _diagnostics(idata: az.InferenceData, spec: ModelSpec) -> dict[str, Any]:
        divergences = 0
        sample_stats = getattr(idata, "sample_stats", None)
        if sample_stats is not None and "diverging" in sample_stats:
            divergences = int(np.asarray(sample_stats["diverging"].values).sum())

        var_names = ["b", *(f"sd_{level}" for level in spec.random_levels)]
        posterior = idata.posterior
        n_chains = int(posterior.sizes.get("chain", 1))
        max_rhat = float("nan")
        if n_chains > 1:
            rhat = az.rhat(idata, var_names=var_names)
            max_rhat = float(max(float(np.nanmax(rhat[v].values)) for v in var_names))
        ess = az.ess(idata, var_names=var_names, method="bulk")
        min_ess = float(min(float(np.nanmin(ess[v].values)) for v in var_names))

        return {
            "divergences": divergences,
            "max_rhat": max_rhat,
            "min_ess_bulk": min_ess,
            "chains": n_chains,
            "draws": int(posterior.sizes.get("draw", 0)),
        }
