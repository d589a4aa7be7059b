"""familial_aggregation — Variance-component tests for familial aggregation.

Tests whether binary epilepsy outcomes cluster within families, per
cohort and pooled across cohorts, with random-intercept logistic
GLMMs.  Each (outcome, scope) is analysed two ways:

* frequentist — Laplace maximum likelihood and a likelihood-ratio test
  against the Self–Liang boundary mixture;
* Bayesian — PyMC posterior with a Savage–Dickey Bayes factor, under
  one or more prior-sensitivity variants;

and summarised with latent-scale intraclass correlations.

Public API:
    .. autosummary::
        AnalysisOrchestrator
        CohortDataset
        ModelSpec
        build_model_spec
        Single
        Nested
        Prior
        PriorTerm
        PriorConfig
        PriorVariant
        FrequentistFitter
        BayesianFitter
        NetCDFFitCache
        MemoryFitCache
        icc_single
        icc_nested
        bf_against_zero
        self_liang_pvalue
        naive_pvalue
        lrt_statistic
        results_to_frame
        print_results_table
        RunConfig
        get_backend
        set_backend
        AnalysisResult
        FitResult
"""

from ._cache import MemoryFitCache, NetCDFFitCache
from ._config import RunConfig, get_backend, set_backend
from ._results import (
    AnalysisResult,
    CoefficientRow,
    FitResult,
    LikelihoodRatioTest,
    VarianceComponent,
)
from ._solvers import MLSolution, SamplerControl
from .bayes_factor import BayesFactor, bf_against_zero
from .bayesian import BayesianFitter
from .dataset import ALL_COHORTS, COHORTS, EPITYPES, OUTCOMES, CohortDataset
from .display import print_results_table, results_to_frame
from .errors import (
    ConvergenceError,
    EmptyDatasetError,
    FamilialAggregationError,
    InvalidCohortError,
    InvalidOutcomeError,
    InvalidPriorError,
    SamplingError,
)
from .frequentist import FrequentistFitter
from .icc import LOGISTIC_RESIDUAL_VARIANCE, ICCEstimate, icc_nested, icc_single
from .model_spec import (
    DEFAULT_PRIOR_VARIANTS,
    ModelSpec,
    Nested,
    Prior,
    PriorConfig,
    PriorTerm,
    PriorVariant,
    Single,
    build_model_spec,
)
from .orchestrator import AnalysisOrchestrator
from .pvalues import SIGNIFICANCE_LEVEL, lrt_statistic, naive_pvalue, self_liang_pvalue

__version__ = "0.1.0"

__all__ = [
    "ALL_COHORTS",
    "COHORTS",
    "DEFAULT_PRIOR_VARIANTS",
    "EPITYPES",
    "LOGISTIC_RESIDUAL_VARIANCE",
    "OUTCOMES",
    "SIGNIFICANCE_LEVEL",
    "AnalysisOrchestrator",
    "AnalysisResult",
    "BayesFactor",
    "BayesianFitter",
    "CoefficientRow",
    "CohortDataset",
    "ConvergenceError",
    "EmptyDatasetError",
    "FamilialAggregationError",
    "FitResult",
    "FrequentistFitter",
    "ICCEstimate",
    "InvalidCohortError",
    "InvalidOutcomeError",
    "InvalidPriorError",
    "LikelihoodRatioTest",
    "MLSolution",
    "MemoryFitCache",
    "ModelSpec",
    "NetCDFFitCache",
    "Nested",
    "Prior",
    "PriorConfig",
    "PriorTerm",
    "PriorVariant",
    "RunConfig",
    "SamplerControl",
    "SamplingError",
    "Single",
    "VarianceComponent",
    "bf_against_zero",
    "build_model_spec",
    "get_backend",
    "icc_nested",
    "icc_single",
    "lrt_statistic",
    "naive_pvalue",
    "print_results_table",
    "results_to_frame",
    "self_liang_pvalue",
    "set_backend",
]
