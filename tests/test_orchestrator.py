"""Tests for the analysis grid driver."""

import math
import threading

import arviz as az
import numpy as np
import pandas as pd
import pytest

from familial_aggregation._cache import MemoryFitCache, NetCDFFitCache
from familial_aggregation._config import RunConfig
from familial_aggregation._solvers import MLSolution
from familial_aggregation.bayesian import BayesianFitter
from familial_aggregation.errors import (
    InvalidCohortError,
    InvalidOutcomeError,
    InvalidPriorError,
)
from familial_aggregation.frequentist import FrequentistFitter
from familial_aggregation.icc import LOGISTIC_RESIDUAL_VARIANCE
from familial_aggregation.model_spec import (
    DEFAULT_PRIOR_VARIANTS,
    Prior,
    PriorConfig,
    PriorVariant,
    build_model_spec,
)
from familial_aggregation.orchestrator import AnalysisOrchestrator

pytestmark = pytest.mark.filterwarnings("ignore::RuntimeWarning")

_DEFAULT_ONLY = [PriorVariant("default")]


def _subjects(cohorts=("EPGP", "Epi4K")):
    rows = []
    epitypes = ["Focal", "GGE", "Other"]
    for cohort in cohorts:
        for f in range(4):
            for i in range(3):
                rows.append({
                    "cohort": cohort,
                    "family_id": f"F{f}",
                    "individual_id": f"{cohort}-F{f}-{i}",
                    "epitype": epitypes[(f + i) % 3],
                    "age": 18.0 + 7.0 * i + 3.0 * f,
                    "age_onset": 3.0 + 2.0 * i + f * f,
                    "febrile_seizures": (f + i) % 2,
                    "migraine": int(f < 2),
                })
    return pd.DataFrame(rows)


class _FakeMLSolver:
    name = "fake"

    def __init__(self, converged=True):
        self.converged = converged
        self.calls = 0

    def fit(self, X, y, groups):
        self.calls += 1
        p = X.shape[1]
        return MLSolution(
            beta=np.zeros(p),
            std_errors=np.ones(p),
            sds={level: 1.0 for level in groups},
            loglik=-10.0 + 2.0 * len(groups),
            converged=self.converged,
            message="" if self.converged else "iteration limit",
        )


class _FakeSampler:
    def __init__(self, raise_exc=None):
        self.raise_exc = raise_exc
        self.calls = 0

    def sample(self, X, y, terms, groups, priors, control):
        self.calls += 1
        if self.raise_exc is not None:
            raise self.raise_exc
        rng = np.random.default_rng(11)
        shape = (control.chains, control.draws)
        posterior = {"b": rng.normal(size=(*shape, len(terms)))}
        prior = {}
        for level in groups:
            posterior[f"sd_{level}"] = np.abs(rng.normal(2.0, 0.3, size=shape))
            prior[f"sd_{level}"] = np.abs(rng.standard_t(3, size=shape) * 2.5)
        return az.from_dict(
            posterior=posterior,
            prior=prior,
            sample_stats={"diverging": np.zeros(shape, dtype=bool)},
            coords={"term": list(terms)},
            dims={"b": ["term"]},
        )


def _orchestrator(ml=None, sampler=None, config=None):
    return AnalysisOrchestrator(
        frequentist=FrequentistFitter(solver=ml or _FakeMLSolver()),
        bayesian=BayesianFitter(solver=sampler or _FakeSampler(), chains=2, draws=300, tune=0),
        config=config,
    )


def _keys(results):
    return [(r.outcome, r.scope, r.grouping, r.method, r.prior_variant) for r in results]


class TestGridOrder:
    def test_declaration_order(self):
        results = _orchestrator().run(
            _subjects(),
            outcomes=["migraine", "febrile_seizures"],
            cohorts=["Epi4K", "EPGP"],
            grouping_modes=["single"],
            priors=_DEFAULT_ONLY,
        )
        assert _keys(results) == [
            ("febrile_seizures", "EPGP", "single", "frequentist", None),
            ("febrile_seizures", "EPGP", "single", "bayesian", "default"),
            ("febrile_seizures", "Epi4K", "single", "frequentist", None),
            ("febrile_seizures", "Epi4K", "single", "bayesian", "default"),
            ("migraine", "EPGP", "single", "frequentist", None),
            ("migraine", "EPGP", "single", "bayesian", "default"),
            ("migraine", "Epi4K", "single", "frequentist", None),
            ("migraine", "Epi4K", "single", "bayesian", "default"),
        ]
        assert all(r.is_ok for r in results)

    def test_parallel_matches_sequential(self):
        kwargs = dict(
            outcomes=["migraine", "febrile_seizures"],
            cohorts=["EPGP", "Epi4K"],
            priors=_DEFAULT_ONLY,
        )
        sequential = _orchestrator().run(_subjects(), **kwargs)
        parallel = _orchestrator(config=RunConfig(n_jobs=2)).run(_subjects(), **kwargs)
        assert _keys(parallel) == _keys(sequential)
        assert [r.p_value for r in parallel] == pytest.approx(
            [r.p_value for r in sequential], nan_ok=True
        )

    def test_nested_follows_single(self):
        results = _orchestrator().run(
            _subjects(),
            outcomes=["migraine"],
            cohorts=["EPGP"],
            priors=_DEFAULT_ONLY,
        )
        assert [(r.scope, r.grouping) for r in results] == [
            ("EPGP", "single"),
            ("EPGP", "single"),
            ("all", "nested"),
            ("all", "nested"),
        ]

    def test_default_prior_variants(self):
        results = _orchestrator().run(
            _subjects(), outcomes=["migraine"], cohorts=["EPGP"], grouping_modes=["single"]
        )
        names = [r.prior_variant for r in results if r.method == "bayesian"]
        assert names == [v.name for v in DEFAULT_PRIOR_VARIANTS]

    def test_frequentist_only(self):
        sampler = _FakeSampler()
        results = _orchestrator(sampler=sampler).run(
            _subjects(), outcomes=["migraine"], methods=["frequentist"]
        )
        assert {r.method for r in results} == {"frequentist"}
        assert sampler.calls == 0


class TestRows:
    def test_frequentist_row(self):
        (row,) = _orchestrator().run(
            _subjects(),
            outcomes=["migraine"],
            cohorts=["EPGP"],
            grouping_modes=["single"],
            methods=["frequentist"],
        )
        # Fake log-likelihoods: full -8, null -10.
        assert row.lrt_statistic == pytest.approx(4.0)
        assert row.significant
        assert row.n_obs == 12 and row.n_families == 4
        expected = 1.0 / (1.0 + LOGISTIC_RESIDUAL_VARIANCE)
        assert row.icc_for("family").estimate == pytest.approx(expected)
        assert row.bayes_factors == ()

    def test_bayesian_row(self):
        (row,) = _orchestrator().run(
            _subjects(),
            outcomes=["migraine"],
            cohorts=["EPGP"],
            grouping_modes=["single"],
            priors=_DEFAULT_ONLY,
            methods=["bayesian"],
        )
        assert row.method == "bayesian"
        assert math.isnan(row.p_value)
        assert not row.significant
        bf = row.bayes_factor_for("family")
        assert bf is not None and bf.bf10 > 1.0
        icc = row.icc_for("family")
        assert icc.lower < icc.estimate < icc.upper

    def test_nested_rows_have_two_levels(self):
        results = _orchestrator().run(
            _subjects(), outcomes=["migraine"], grouping_modes=["nested"], priors=_DEFAULT_ONLY
        )
        freq, bayes = results
        assert [i.level for i in freq.icc] == ["cohort", "family"]
        assert [bf.parameter for bf in bayes.bayes_factors] == ["sd_cohort", "sd_family"]
        assert freq.p_value >= freq.naive_p_value


class TestStatuses:
    def test_empty_cohort_is_no_data(self):
        ml = _FakeMLSolver()
        sampler = _FakeSampler()
        results = _orchestrator(ml, sampler).run(
            _subjects(),
            outcomes=["migraine"],
            cohorts=["Melbourne"],
            grouping_modes=["single"],
            priors=_DEFAULT_ONLY,
        )
        assert [r.status for r in results] == ["no_data", "no_data"]
        assert ml.calls == 0 and sampler.calls == 0
        assert results[0].n_obs == 0

    def test_non_convergence_keeps_bayesian(self):
        results = _orchestrator(ml=_FakeMLSolver(converged=False)).run(
            _subjects(),
            outcomes=["migraine"],
            cohorts=["EPGP"],
            grouping_modes=["single"],
            priors=_DEFAULT_ONLY,
        )
        assert [r.status for r in results] == ["non_convergence", "ok"]
        assert "did not converge" in results[0].message
        assert math.isnan(results[0].p_value)

    def test_sampling_failure(self):
        sampler = _FakeSampler(raise_exc=RuntimeError("initial evaluation failed"))
        results = _orchestrator(sampler=sampler).run(
            _subjects(),
            outcomes=["migraine"],
            cohorts=["EPGP"],
            grouping_modes=["single"],
            priors=_DEFAULT_ONLY,
        )
        assert [r.status for r in results] == ["ok", "failed"]
        assert "initial evaluation failed" in results[1].message


class TestValidation:
    def test_unknown_outcome(self):
        ml = _FakeMLSolver()
        with pytest.raises(InvalidOutcomeError):
            _orchestrator(ml).run(_subjects(), outcomes=["height"])
        assert ml.calls == 0

    def test_unknown_cohort(self):
        with pytest.raises(InvalidCohortError):
            _orchestrator().run(_subjects(), cohorts=["Atlantis"])

    def test_unknown_grouping_mode(self):
        with pytest.raises(ValueError, match="grouping"):
            _orchestrator().run(_subjects(), grouping_modes=["crossed"])

    def test_duplicate_prior_variants(self):
        variants = [PriorVariant("a"), PriorVariant("a", PriorConfig(variance=Prior.half_normal(1)))]
        with pytest.raises(InvalidPriorError, match="Duplicate"):
            _orchestrator().run(_subjects(), priors=variants)

    def test_non_variant_prior(self):
        with pytest.raises(InvalidPriorError):
            _orchestrator().run(_subjects(), priors=[PriorConfig()])

    def test_invalid_prior_config(self):
        bad = PriorVariant("bad", PriorConfig(variance=Prior.normal(0, 1)))
        ml = _FakeMLSolver()
        with pytest.raises(InvalidPriorError):
            _orchestrator(ml).run(_subjects(), priors=[bad])
        assert ml.calls == 0


class TestConstruction:
    def test_default_memory_cache(self):
        orchestrator = AnalysisOrchestrator()
        assert isinstance(orchestrator.bayesian.cache, MemoryFitCache)
        assert not orchestrator.bayesian.refit

    def test_config_wires_cache_and_refit(self, tmp_path):
        config = RunConfig(cache_dir=tmp_path, refit=True, random_seed=5)
        orchestrator = AnalysisOrchestrator(config=config)
        assert isinstance(orchestrator.bayesian.cache, NetCDFFitCache)
        assert orchestrator.bayesian.refit
        assert orchestrator.bayesian.random_seed == 5


class _FailOnceMLSolver(_FakeMLSolver):
    """Raises *exc* on the first call, then behaves like the fake solver."""

    def __init__(self, exc):
        super().__init__()
        self.exc = exc
        self._lock = threading.Lock()

    def fit(self, X, y, groups):
        with self._lock:
            first = self.calls == 0
            if first:
                self.calls += 1
        if first:
            raise self.exc
        return super().fit(X, y, groups)


class _FailOnceSampler(_FakeSampler):
    def __init__(self, exc):
        super().__init__()
        self.exc = exc

    def sample(self, X, y, terms, groups, priors, control):
        if self.calls == 0:
            self.calls += 1
            raise self.exc
        return super().sample(X, y, terms, groups, priors, control)


class TestCellIsolation:
    def _run(self, ml=None, sampler=None, config=None, bayesian=None):
        orchestrator = _orchestrator(ml, sampler, config)
        if bayesian is not None:
            orchestrator.bayesian = bayesian
        return orchestrator.run(
            _subjects(),
            outcomes=["migraine"],
            cohorts=["EPGP", "Epi4K"],
            grouping_modes=["single"],
            priors=_DEFAULT_ONLY,
        )

    def test_solver_value_error_is_non_convergence(self):
        results = self._run(ml=_FailOnceMLSolver(ValueError("x0 violates bound constraints")))
        assert [r.status for r in results] == ["non_convergence", "ok", "ok", "ok"]
        assert "bound constraints" in results[0].message

    def test_unexpected_frequentist_error_is_failed(self):
        results = self._run(ml=_FailOnceMLSolver(KeyError("family")))
        assert [r.status for r in results] == ["failed", "ok", "ok", "ok"]
        assert results[0].message.startswith("KeyError")
        assert results[2].scope == "Epi4K"

    def test_unexpected_bayesian_error_is_failed(self):
        results = self._run(sampler=_FailOnceSampler(TypeError("unsupported operand")))
        assert [r.status for r in results] == ["ok", "failed", "ok", "ok"]
        assert results[1].prior_variant == "default"
        assert "unsupported operand" in results[1].message

    def test_unreadable_cache_entry_is_failed(self, tmp_path):
        cache = NetCDFFitCache(tmp_path)
        spec = build_model_spec("migraine", "single", _DEFAULT_ONLY[0].config)
        cache.path_for(spec.cache_key("EPGP")).write_bytes(b"not a netcdf file")
        bayesian = BayesianFitter(solver=_FakeSampler(), cache=cache, chains=2, draws=300, tune=0)

        results = self._run(bayesian=bayesian)
        assert [r.status for r in results] == ["ok", "failed", "ok", "ok"]
        assert "could not be read" in results[1].message
        assert results[3].scope == "Epi4K" and results[3].is_ok

    def test_parallel_run_isolates_failures(self):
        results = self._run(
            ml=_FailOnceMLSolver(KeyError("family")), config=RunConfig(n_jobs=2)
        )
        assert [r.status for r in results].count("failed") == 1
        assert [r.status for r in results].count("ok") == 3


class TestTimeLimit:
    def test_config_time_limit_reaches_sampler_control(self):
        orchestrator = AnalysisOrchestrator(config=RunConfig(time_limit=30.0))
        control = orchestrator.bayesian.control_for(build_model_spec("migraine", "single"))
        assert control.time_limit == 30.0

    def test_no_limit_by_default(self):
        control = AnalysisOrchestrator().bayesian.control_for(build_model_spec("migraine", "nested"))
        assert control.time_limit is None
