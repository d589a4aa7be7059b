"""Intraclass correlation on the latent logistic scale.

For a logistic GLMM the level-1 residual variance on the latent scale
is the variance of the standard logistic distribution, ``π²/3``.  The
ICC for a random-intercept level is its share of total latent
variance:

    single:  ICC   = σ²_f / (σ²_f + π²/3)
    nested:  ICC_c = σ²_c / (σ²_c + σ²_f + π²/3)
             ICC_f = σ²_f / (σ²_f + σ²_c + π²/3)

Interval limitation
-------------------
Bounds are transformed endpoint-wise: the lower ICC bound uses the
lower SD bound(s), the upper uses the upper.  For the single-level
ICC this is exact (the map is monotone).  For the nested ICCs it is
not a proper interval for the ratio: each ICC increases in its own
component but decreases in the other, and the joint posterior of the
two SDs is ignored.  A draw-wise ICC would fix this; the endpoint
form is kept for comparability with published results.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

from ._results import VarianceComponent, _DictAccessMixin

LOGISTIC_RESIDUAL_VARIANCE: float = math.pi**2 / 3.0
"""Latent residual variance of the standard logistic distribution."""


@dataclass(frozen=True)
class ICCEstimate(_DictAccessMixin):
    """ICC point estimate with endpoint-wise bounds (``nan`` if absent)."""

    level: str
    estimate: float
    lower: float = float("nan")
    upper: float = float("nan")


def _share(own_sd: float, other_sd: float = 0.0) -> float:
    """``σ²_own / (σ²_own + σ²_other + π²/3)``; non-finite in, ``nan`` out."""
    if not (math.isfinite(own_sd) and math.isfinite(other_sd)):
        return float("nan")
    own = own_sd**2
    return own / (own + other_sd**2 + LOGISTIC_RESIDUAL_VARIANCE)


def icc_single(family: VarianceComponent) -> ICCEstimate:
    """ICC for a single random intercept.

    Args:
        family: SD point estimate and optional bounds.

    Returns:
        :class:`ICCEstimate` at ``family.level``; in ``[0, 1)`` for
        finite inputs and exactly 0 at SD 0.
    """
    return ICCEstimate(
        level=family.level,
        estimate=_share(family.sd),
        lower=_share(family.lower),
        upper=_share(family.upper),
    )


def icc_nested(
    cohort: VarianceComponent, family: VarianceComponent
) -> tuple[ICCEstimate, ICCEstimate]:
    """Cohort- and family-level ICCs for the nested model.

    Returns:
        ``(icc_cohort, icc_family)``, each with endpoint-wise bounds.
    """
    icc_cohort = ICCEstimate(
        level=cohort.level,
        estimate=_share(cohort.sd, family.sd),
        lower=_share(cohort.lower, family.lower),
        upper=_share(cohort.upper, family.upper),
    )
    icc_family = ICCEstimate(
        level=family.level,
        estimate=_share(family.sd, cohort.sd),
        lower=_share(family.lower, cohort.lower),
        upper=_share(family.upper, cohort.upper),
    )
    return icc_cohort, icc_family


def icc_from_components(
    components: tuple[VarianceComponent, ...],
) -> tuple[ICCEstimate, ...]:
    """Dispatch on the number of variance components (0, 1 or 2)."""
    by_level = {c.level: c for c in components}
    if not components:
        return ()
    if len(components) == 1:
        return (icc_single(components[0]),)
    if set(by_level) == {"cohort", "family"}:
        return icc_nested(by_level["cohort"], by_level["family"])
    msg = f"Unsupported variance components: {sorted(by_level)}"
    raise ValueError(msg)
