"""Boundary-corrected likelihood-ratio p-values.

Testing a variance component against zero puts the null value on the
boundary of the parameter space, so the usual χ² reference for the
likelihood-ratio statistic is wrong.

Self–Liang mixture
------------------
Self & Liang (1987) show that for one variance component with the
null on the boundary, the LRT is asymptotically a 50:50 mixture of a
point mass at zero and χ²₁:

    p = ½ · P[χ²₁ ≥ LRT]

For the nested cohort/family model the family variance is tested
while the cohort variance stays in the model, and the reference is
taken as a 50:50 mixture of χ²₁ and χ²₂:

    p = ½ · P[χ²₁ ≥ LRT] + ½ · P[χ²₂ ≥ LRT]

The equal weights are an approximation; the exact mixing weights for
two correlated boundary parameters depend on the Fisher information.

Naive p-value
-------------
``P[χ²₁ ≥ LRT]`` ignores the boundary and is reported for reference
only.  It is twice the single-level corrected p-value, and never
larger than the nested mixture (``P[χ²₂ ≥ x] ≥ P[χ²₁ ≥ x]``).

Reference:
    Self, S. G. & Liang, K.-Y. (1987). Asymptotic properties of
    maximum likelihood estimators and likelihood ratio tests under
    nonstandard conditions. *JASA*, 82(398), 605–610.
"""

from __future__ import annotations

import numpy as np
from scipy import stats

SIGNIFICANCE_LEVEL: float = 0.05
"""Fixed significance threshold for every test in the pipeline."""


def lrt_statistic(loglik_null: float, loglik_full: float) -> float:
    """``-2 (ℓ_null - ℓ_full)``, truncated below at zero.

    A slightly negative statistic is optimiser noise at the boundary.
    Non-finite inputs yield ``nan``.
    """
    if not (np.isfinite(loglik_null) and np.isfinite(loglik_full)):
        return float("nan")
    return max(0.0, -2.0 * (float(loglik_null) - float(loglik_full)))


def naive_pvalue(lrt: float) -> float:
    """``P[χ²₁ ≥ LRT]`` without boundary correction."""
    return float(stats.chi2.sf(lrt, df=1))


def self_liang_pvalue(lrt: float, nested: bool = False) -> float:
    """Mixture-χ² p-value for a variance component on the boundary.

    Args:
        lrt: Likelihood-ratio statistic (≥ 0).
        nested: ``False`` for the single-level ½χ²₀ + ½χ²₁ mixture,
            ``True`` for the nested ½χ²₁ + ½χ²₂ mixture.

    Returns:
        The p-value, or ``nan`` for a non-finite statistic.
    """
    if not np.isfinite(lrt):
        return float("nan")
    if nested:
        return float(0.5 * stats.chi2.sf(lrt, df=1) + 0.5 * stats.chi2.sf(lrt, df=2))
    return float(0.5 * stats.chi2.sf(lrt, df=1))


def is_significant(p_value: float) -> bool:
    """``p < 0.05``; ``nan`` is never significant."""
    return bool(np.isfinite(p_value) and p_value < SIGNIFICANCE_LEVEL)
