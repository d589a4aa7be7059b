"""End-to-end smoke tests with the real PyMC sampler.

These tests draw short NUTS chains, so they take tens of seconds.
All tests are marked ``@pytest.mark.slow``; deselect them with::

    pytest -m "not slow"
"""

import numpy as np
import pandas as pd
import pytest

from familial_aggregation import (
    AnalysisOrchestrator,
    BayesianFitter,
    NetCDFFitCache,
    PriorVariant,
    RunConfig,
    build_model_spec,
)
from familial_aggregation.dataset import CohortDataset

pm = pytest.importorskip("pymc")

pytestmark = [
    pytest.mark.slow,
    pytest.mark.filterwarnings("ignore::RuntimeWarning"),
    pytest.mark.filterwarnings("ignore::UserWarning"),
]


def _simulated_cohort(cohort="EPGP", n_families=25, size=4, sd=1.5, seed=3):
    rng = np.random.default_rng(seed)
    rows = []
    for f in range(n_families):
        u = rng.normal(0.0, sd)
        for i in range(size):
            age = float(rng.uniform(10, 70))
            eta = -0.5 + u + 0.01 * (age - 40)
            rows.append({
                "cohort": cohort,
                "family_id": f"F{f}",
                "individual_id": f"F{f}-{i}",
                "epitype": rng.choice(["Focal", "GGE", "Other"]),
                "age": age,
                "age_onset": float(rng.uniform(1, 10)),
                "febrile_seizures": int(rng.uniform() < 1 / (1 + np.exp(-eta))),
            })
    return pd.DataFrame(rows)


class TestPyMCSampler:
    def test_single_fit_and_prior_draws(self):
        ds = CohortDataset.build(_simulated_cohort(), "febrile_seizures", "EPGP")
        spec = build_model_spec("febrile_seizures", "single")
        fitter = BayesianFitter(random_seed=1, chains=2, tune=300, draws=300)
        fit = fitter.fit(ds, spec)

        assert fit.sd_draws["family"].shape == (600,)
        assert fit.sd_prior_draws["family"].shape == (600,)
        assert np.all(fit.sd_draws["family"] >= 0)
        assert fit.variance_components[0].sd > 0
        assert [c.term for c in fit.coefficients][0] == "Intercept"

    def test_orchestrator_with_disk_cache(self, tmp_path):
        subjects = _simulated_cohort()
        config = RunConfig(cache_dir=tmp_path, random_seed=2)
        orchestrator = AnalysisOrchestrator(config=config)
        orchestrator.bayesian.control_overrides.update(chains=2, tune=200, draws=200)

        results = orchestrator.run(
            subjects,
            outcomes=["febrile_seizures"],
            cohorts=["EPGP"],
            grouping_modes=["single"],
            priors=[PriorVariant("default")],
        )
        assert [r.status for r in results] == ["ok", "ok"]
        bayes = results[1]
        assert bayes.bayes_factor_for("family") is not None
        key = build_model_spec("febrile_seizures", "single").cache_key("EPGP")
        assert NetCDFFitCache(tmp_path).contains(key)
