"""Tests for the display module."""

import math

import pandas as pd

from familial_aggregation._results import AnalysisResult, VarianceComponent
from familial_aggregation.bayes_factor import BayesFactor
from familial_aggregation.display import (
    _fmt,
    _significance_marker,
    _truncate,
    print_results_table,
    results_to_frame,
)
from familial_aggregation.icc import ICCEstimate


def _frequentist(p_value=0.003, **kwargs):
    defaults = dict(
        outcome="febrile_seizures",
        scope="EPGP",
        grouping="single",
        method="frequentist",
        status="ok",
        n_obs=120,
        n_families=40,
        lrt_statistic=7.5,
        p_value=p_value,
        naive_p_value=2 * p_value,
        significant=p_value < 0.05,
        icc=(ICCEstimate("family", 0.31),),
        variance_components=(VarianceComponent("family", 1.2),),
    )
    defaults.update(kwargs)
    return AnalysisResult(**defaults)


def _bayesian(**kwargs):
    defaults = dict(
        outcome="febrile_seizures",
        scope="EPGP",
        grouping="single",
        method="bayesian",
        status="ok",
        prior_variant="default",
        n_obs=120,
        n_families=40,
        icc=(ICCEstimate("family", 0.28, 0.05, 0.55),),
        bayes_factors=(BayesFactor("sd_family", 0.05, 0.4, 0.125, 8.0),),
        variance_components=(VarianceComponent("family", 1.1, 0.4, 2.0),),
        diagnostics={"divergences": 0, "max_rhat": 1.002, "min_ess_bulk": 950.0},
    )
    defaults.update(kwargs)
    return AnalysisResult(**defaults)


class TestTruncate:
    def test_short_name_unchanged(self):
        assert _truncate("abc", 10) == "abc"

    def test_exact_length_unchanged(self):
        assert _truncate("abcdefghij", 10) == "abcdefghij"

    def test_long_name_truncated(self):
        result = _truncate("abcdefghijk", 10)
        assert len(result) == 10
        assert result.endswith("...")


class TestFormatting:
    def test_fmt_nan_and_none(self):
        assert _fmt(float("nan")) == "N/A"
        assert _fmt(None) == "N/A"

    def test_fmt_inf(self):
        assert _fmt(float("inf")) == "inf"

    def test_markers(self):
        assert _significance_marker(0.001) == "(**)"
        assert _significance_marker(0.03) == "(*)"
        assert _significance_marker(0.2) == "(ns)"
        assert _significance_marker(float("nan")) == ""


class TestResultsToFrame:
    def test_columns_flattened(self):
        frame = results_to_frame([_frequentist(), _bayesian()])
        assert isinstance(frame, pd.DataFrame)
        assert len(frame) == 2
        assert frame.loc[0, "icc_family"] == 0.31
        assert frame.loc[1, "icc_family_lower"] == 0.05
        assert frame.loc[1, "bf10_family"] == 8.0
        assert frame.loc[1, "sd_family_upper"] == 2.0
        assert frame.loc[1, "max_rhat"] == 1.002
        assert math.isnan(frame.loc[0, "bf10_family"])

    def test_nested_columns(self):
        nested = _frequentist(
            scope="all",
            grouping="nested",
            icc=(ICCEstimate("cohort", 0.02), ICCEstimate("family", 0.3)),
        )
        frame = results_to_frame([nested])
        assert {"icc_cohort", "icc_family"} <= set(frame.columns)

    def test_empty(self):
        frame = results_to_frame([])
        assert frame.empty
        assert "outcome" in frame.columns


class TestPrintResultsTable:
    def test_prints_without_error(self, capsys):
        print_results_table([_frequentist(), _bayesian()])
        out = capsys.readouterr().out
        assert "Familial Aggregation Results" in out
        assert "febrile_seizures" in out
        assert "(**)" in out
        assert "bayes:default" in out
        assert "8.00" in out

    def test_line_width(self, capsys):
        print_results_table([_frequentist(), _bayesian()])
        out = capsys.readouterr().out
        assert max(len(line) for line in out.splitlines()) <= 80

    def test_status_rows_and_notes(self, capsys):
        failed = _frequentist(
            status="non_convergence",
            message="febrile_seizures/EPGP (single): solver did not converge",
            icc=(),
        )
        empty = _bayesian(scope="Columbia", status="no_data", message="No families")
        print_results_table([failed, empty])
        out = capsys.readouterr().out
        assert "non_convergence" in out
        assert "no_data" in out
        assert "Notes:" in out
        assert "No families" not in out

    def test_custom_title(self, capsys):
        print_results_table([_frequentist()], title="Sensitivity")
        assert "Sensitivity" in capsys.readouterr().out
