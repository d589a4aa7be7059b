"""Integration tests: the grid driver over the real Laplace solver.

Tests cover:
- A strongly aggregated cohort is significant with a large family ICC
- Families with no within-family correlation sit on the boundary
- Singleton-only cohorts report no_data alongside fitted cohorts
- Repeated runs are deterministic
- Results flatten to a frame and serialise through to_dict()
"""

from __future__ import annotations

import json

import arviz as az
import numpy as np
import pandas as pd
import pytest

from familial_aggregation import (
    AnalysisOrchestrator,
    BayesianFitter,
    FrequentistFitter,
    PriorVariant,
    results_to_frame,
)

pytestmark = pytest.mark.filterwarnings("ignore::RuntimeWarning")

# ------------------------------------------------------------------ #
# Shared fixtures
# ------------------------------------------------------------------ #

_POSITIVE_PATTERNS = [("Focal", 30.0, 10.0), ("GGE", 40.0, 12.0), ("Other", 50.0, 15.0)]
_INDEPENDENT_PATTERNS = [
    ("Focal", 20.0, 5.0),
    ("GGE", 30.0, 8.0),
    ("Other", 40.0, 10.0),
    ("Focal", 50.0, 25.0),
]
_INDEPENDENT_ONES = [(0, 1), (2, 3), (0, 2), (1, 3), (0, 3), (1, 2), (0, 1), (2, 3)]


def _member(cohort, family, i, pattern, y):
    epitype, age, onset = pattern
    return {
        "cohort": cohort,
        "family_id": family,
        "individual_id": f"{cohort}-{family}-{i}",
        "epitype": epitype,
        "age": age,
        "age_onset": onset,
        "febrile_seizures": y,
    }


def _subjects() -> pd.DataFrame:
    """EPGP aggregated, Epi4K independent, Melbourne singletons only."""
    rows = []
    for family, size, y in (("F1", 3, 1), ("F2", 3, 0), ("F3", 1, 1), ("F4", 4, 1)):
        for i in range(size):
            rows.append(_member("EPGP", family, i, _POSITIVE_PATTERNS[i % 3], y))
    for f, ones in enumerate(_INDEPENDENT_ONES):
        for i, pattern in enumerate(_INDEPENDENT_PATTERNS):
            rows.append(_member("Epi4K", f"F{f}", i, pattern, int(i in ones)))
    for f in range(3):
        rows.append(_member("Melbourne", f"S{f}", 0, _POSITIVE_PATTERNS[0], f % 2))
    return pd.DataFrame(rows)


class _FakeSampler:
    def sample(self, X, y, terms, groups, priors, control):
        rng = np.random.default_rng(0)
        shape = (control.chains, control.draws)
        posterior = {"b": rng.normal(size=(*shape, len(terms)))}
        prior = {}
        for level in groups:
            posterior[f"sd_{level}"] = np.abs(rng.normal(1.0, 0.5, size=shape))
            prior[f"sd_{level}"] = np.abs(rng.standard_t(3, size=shape) * 2.5)
        return az.from_dict(
            posterior=posterior,
            prior=prior,
            sample_stats={"diverging": np.zeros(shape, dtype=bool)},
            coords={"term": list(terms)},
            dims={"b": ["term"]},
        )


def _run():
    orchestrator = AnalysisOrchestrator(
        frequentist=FrequentistFitter(backend="numpy"),
        bayesian=BayesianFitter(solver=_FakeSampler(), chains=2, draws=300, tune=0),
    )
    return orchestrator.run(
        _subjects(),
        outcomes=["febrile_seizures"],
        cohorts=["EPGP", "Epi4K", "Melbourne"],
        grouping_modes=["single"],
        priors=[PriorVariant("default")],
    )


def _row(results, scope, method):
    (match,) = [r for r in results if r.scope == scope and r.method == method]
    return match


# ------------------------------------------------------------------ #
# Tests
# ------------------------------------------------------------------ #


class TestFamilialSignal:
    def test_aggregated_cohort_is_significant(self):
        row = _row(_run(), "EPGP", "frequentist")
        assert row.is_ok
        assert row.n_obs == 10
        assert row.n_families == 3
        assert row.p_value < 0.05
        assert row.significant
        assert row.icc_for("family").estimate > 0.5
        assert "dropped aliased terms" in row.message

    def test_independent_cohort_on_boundary(self):
        row = _row(_run(), "Epi4K", "frequentist")
        assert row.is_ok
        assert row.lrt_statistic == pytest.approx(0.0, abs=1e-3)
        assert row.p_value == pytest.approx(0.5, abs=1e-2)
        assert row.naive_p_value == pytest.approx(1.0, abs=2e-2)
        assert not row.significant
        assert row.icc_for("family").estimate < 0.01

    def test_singleton_cohort_is_no_data(self):
        results = _run()
        assert _row(results, "Melbourne", "frequentist").status == "no_data"
        assert _row(results, "Melbourne", "bayesian").status == "no_data"


class TestDeterminism:
    def test_repeated_runs_identical(self):
        first = results_to_frame(_run())
        second = results_to_frame(_run())
        pd.testing.assert_frame_equal(first, second)


class TestSerialisation:
    def test_frame_shape(self):
        frame = results_to_frame(_run())
        assert list(frame["scope"]) == ["EPGP", "EPGP", "Epi4K", "Epi4K", "Melbourne", "Melbourne"]
        assert list(frame["method"][:2]) == ["frequentist", "bayesian"]

    def test_to_dict_is_json_serialisable(self):
        for result in _run():
            payload = result.to_dict()
            text = json.dumps(payload, default=str)
            assert json.loads(text)["outcome"] == "febrile_seizures"

    def test_dict_access(self):
        row = _row(_run(), "EPGP", "frequentist")
        assert row["p_value"] == row.p_value
        assert "icc" in row
        assert row.get("missing", 1) == 1
