"""Tabular export and ASCII display for analysis results.

:func:`results_to_frame` flattens a list of
:class:`~familial_aggregation._results.AnalysisResult` into one pandas
row per result, suitable for writing to CSV or handing to a report
generator.  :func:`print_results_table` renders the same grid as a
fixed-width summary in the statsmodels style.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

import pandas as pd

from .pvalues import SIGNIFICANCE_LEVEL

if TYPE_CHECKING:
    from ._results import AnalysisResult

_FRAME_COLUMNS = [
    "outcome",
    "scope",
    "grouping",
    "method",
    "prior_variant",
    "status",
    "n_obs",
    "n_families",
    "lrt_statistic",
    "p_value",
    "naive_p_value",
    "significant",
    "message",
]


def _truncate(name: str, max_len: int) -> str:
    """Truncate *name* to *max_len*, appending ``'...'`` if needed."""
    if len(name) <= max_len:
        return name
    return name[: max_len - 3] + "..."


def _fmt(val: float | None, spec: str = ".3f") -> str:
    """Format a number, rendering ``None`` and ``nan`` as ``'N/A'``."""
    if val is None or (isinstance(val, float) and math.isnan(val)):
        return "N/A"
    if isinstance(val, float) and math.isinf(val):
        return "inf" if val > 0 else "-inf"
    return format(val, spec)


def _significance_marker(p_value: float) -> str:
    """``(**)`` for p < 0.01, ``(*)`` for p < 0.05, ``(ns)`` otherwise."""
    if p_value is None or math.isnan(p_value):
        return ""
    if p_value < 0.01:
        return "(**)"
    if p_value < SIGNIFICANCE_LEVEL:
        return "(*)"
    return "(ns)"


def results_to_frame(results: Sequence[AnalysisResult]) -> pd.DataFrame:
    """One row per result with flattened ICC, Bayes-factor, and SD columns.

    Per-level quantities are spread into ``icc_<level>``,
    ``icc_<level>_lower``, ``icc_<level>_upper``, ``sd_<level>``,
    ``sd_<level>_lower``, ``sd_<level>_upper`` and ``bf10_<level>``
    columns so rows from single and nested models share one frame.
    """
    rows: list[dict[str, Any]] = []
    for result in results:
        row: dict[str, Any] = {col: getattr(result, col) for col in _FRAME_COLUMNS}
        for icc in result.icc:
            row[f"icc_{icc.level}"] = icc.estimate
            row[f"icc_{icc.level}_lower"] = icc.lower
            row[f"icc_{icc.level}_upper"] = icc.upper
        for component in result.variance_components:
            row[f"sd_{component.level}"] = component.sd
            row[f"sd_{component.level}_lower"] = component.lower
            row[f"sd_{component.level}_upper"] = component.upper
        for bf in result.bayes_factors:
            row[f"bf10_{bf.parameter.removeprefix('sd_')}"] = bf.bf10
        for key in ("divergences", "max_rhat", "min_ess_bulk"):
            if key in result.diagnostics:
                row[key] = result.diagnostics[key]
        rows.append(row)
    return pd.DataFrame(rows, columns=None if rows else _FRAME_COLUMNS)


def print_results_table(
    results: Sequence[AnalysisResult],
    *,
    title: str = "Familial Aggregation Results",
) -> None:
    """Print the analysis grid as an 80-column ASCII table.

    Frequentist rows show the LRT statistic, the Self–Liang p-value
    with a significance marker, and the family ICC.  Bayesian rows
    show the prior variant, the family ICC with its 95 % bounds, and
    the Savage–Dickey BF₁₀ for the family SD.

    Args:
        results: Output of
            :meth:`~familial_aggregation.orchestrator.AnalysisOrchestrator.run`.
        title: Title for the output table.
    """
    print("=" * 80)
    print(f"{title:^80}")
    print("=" * 80)
    print(
        f"{'Outcome':<22}{'Scope':<10}{'Method':<14}"
        f"{'Stat':>9}{'P / BF10':>12}{'ICC (family)':>13}"
    )
    print("-" * 80)

    notes: list[str] = []
    current_outcome = None
    for result in results:
        if current_outcome is not None and result.outcome != current_outcome:
            print()
        current_outcome = result.outcome

        method = "freq" if result.method == "frequentist" else f"bayes:{result.prior_variant}"
        head = (
            f"{_truncate(result.outcome, 21):<22}{_truncate(result.scope, 9):<10}"
            f"{_truncate(method, 13):<14}"
        )
        if not result.is_ok:
            print(f"{head}{result.status:>34}")
            if result.message and result.status != "no_data":
                notes.append(f"{result.outcome}/{result.scope} [{method}]: {result.message}")
            continue

        family_icc = result.icc_for("family")
        icc_str = _fmt(family_icc.estimate if family_icc else None)
        if result.method == "frequentist":
            marker = _significance_marker(result.p_value)
            p_str = f"{_fmt(result.p_value, '.4f')} {marker}".rstrip()
            print(f"{head}{_fmt(result.lrt_statistic, '.3f'):>9}{p_str:>12}{icc_str:>13}")
        else:
            bf = result.bayes_factor_for("family")
            bf_str = _fmt(bf.bf10 if bf else None, ".2f")
            print(f"{head}{'':>9}{bf_str:>12}{icc_str:>13}")
            if family_icc is not None:
                bounds = f"[{_fmt(family_icc.lower)}, {_fmt(family_icc.upper)}]"
                print(f"{'':<66}{bounds:>14}")
        if result.message:
            notes.append(f"{result.outcome}/{result.scope} [{method}]: {result.message}")

    print("-" * 80)
    print("Signif: (**) p < 0.01, (*) p < 0.05, (ns) not significant.")
    print("P: Self-Liang mixture; ICC on the latent logistic scale.")
    if notes:
        print("-" * 80)
        print("Notes:")
        for note in notes:
            print(f"  {_truncate(note, 76)}")
    print("=" * 80)
