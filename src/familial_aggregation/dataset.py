"""Validated, filtered per-analysis subsets of the subject table.

A :class:`CohortDataset` is the unit handed to both fitters.  It is
built fresh for every (outcome, scope) pair and never mutated
afterwards.

Filtering policy
----------------
1. **Column selection** — grouping (``cohort``, ``family_id``,
   ``individual_id``), predictors (``epitype``, ``age``,
   ``age_onset``) and the selected outcome.
2. **Cohort filter** — optional single cohort; ``None`` selects the
   pooled scope ``"all"``.
3. **Complete cases** — any row missing one of the selected columns is
   dropped.
4. **Family-size filter** — only families with two or more distinct
   individuals survive.  A singleton family contributes no
   within-family correlation and destabilises the variance estimate.
5. **Factor re-derivation** — ``family_id`` becomes a categorical whose
   levels are exactly the surviving families, so no stale level leaks
   into a model.

Families are keyed by ``(cohort, family_id)``: identifiers are only
unique within a cohort, and two cohorts may reuse a label.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd

from ._compat import SubjectTable, _ensure_pandas_df
from .errors import EmptyDatasetError, InvalidCohortError, InvalidOutcomeError

logger = logging.getLogger(__name__)

# ------------------------------------------------------------------ #
# Study enumerations
# ------------------------------------------------------------------ #

COHORTS: tuple[str, ...] = ("EPGP", "Epi4K", "Melbourne", "Columbia")
"""Cohorts in declaration (iteration) order."""

OUTCOMES: tuple[str, ...] = (
    "febrile_seizures",
    "psychiatric_comorbidity",
    "intellectual_disability",
    "migraine",
    "drug_resistance",
    "status_epilepticus",
    "photosensitivity",
)
"""Supported binary outcomes in declaration order."""

EPITYPES: tuple[str, ...] = ("Focal", "GGE", "Other")
"""Epilepsy type levels; the first is the treatment-coding reference."""

ALL_COHORTS = "all"
"""Scope label for the pooled (nested cohort/family) analysis."""

GROUPING_COLUMNS: tuple[str, ...] = ("cohort", "family_id", "individual_id")
PREDICTOR_COLUMNS: tuple[str, ...] = ("epitype", "age", "age_onset")


def validate_outcome(outcome: str, outcomes: tuple[str, ...] = OUTCOMES) -> str:
    """Return *outcome* unchanged or raise :class:`InvalidOutcomeError`."""
    if outcome not in outcomes:
        raise InvalidOutcomeError(outcome, tuple(outcomes))
    return outcome


def validate_cohort(cohort: str, cohorts: tuple[str, ...] = COHORTS) -> str:
    """Return *cohort* unchanged or raise :class:`InvalidCohortError`."""
    if cohort not in cohorts:
        raise InvalidCohortError(cohort, tuple(cohorts))
    return cohort


def _validate_subject_table(
    df: pd.DataFrame, outcome: str, cohorts: tuple[str, ...] = COHORTS
) -> None:
    """Check columns and value domains of the raw subject table.

    Missing values are allowed (complete-case filtering handles them);
    present values must be in-domain.  Cohort labels are checked
    against *cohorts* so a mislabelled cohort cannot enter the pooled
    model as an extra level.

    Raises:
        InvalidCohortError: A present cohort label is not enumerated.
        ValueError: On a missing column, a non-binary outcome value,
            an unknown epitype, or a negative age.
    """
    required = (*GROUPING_COLUMNS, *PREDICTOR_COLUMNS, outcome)
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise ValueError(f"Subject table is missing required columns: {missing}")

    y = df[outcome].dropna()
    bad_y = ~y.isin([0, 1])
    if bad_y.any():
        raise ValueError(
            f"Outcome {outcome!r} must be binary 0/1. "
            f"Got values: {sorted(y[bad_y].unique().tolist())[:10]}"
        )

    labels = df["cohort"].dropna().astype(str)
    unknown = sorted(set(labels.unique()) - set(cohorts))
    if unknown:
        raise InvalidCohortError(unknown[0], tuple(cohorts))

    epitype = df["epitype"].dropna()
    bad_epi = ~epitype.isin(EPITYPES)
    if bad_epi.any():
        raise ValueError(
            f"Unknown epitype values: {sorted(epitype[bad_epi].astype(str).unique())}. "
            f"Expected one of {list(EPITYPES)}."
        )

    for col in ("age", "age_onset"):
        values = pd.to_numeric(df[col], errors="coerce")
        if (values.dropna() < 0).any():
            raise ValueError(f"Column {col!r} must be non-negative.")


@dataclass(frozen=True)
class CohortDataset:
    """Filtered, complete-case view for one (outcome, scope) analysis.

    Attributes:
        outcome: Outcome column analysed.
        scope: Cohort name, or :data:`ALL_COHORTS` for the pooled scope.
        frame: Surviving rows.  ``family_id`` is a categorical scoped
            to those rows; ``cohort`` likewise.  Treat as read-only.
    """

    outcome: str
    scope: str
    frame: pd.DataFrame

    @classmethod
    def build(
        cls,
        subjects: SubjectTable,
        outcome: str,
        cohort: str | None = None,
        *,
        outcomes: tuple[str, ...] = OUTCOMES,
        cohorts: tuple[str, ...] = COHORTS,
    ) -> CohortDataset:
        """Select, filter, and validate the rows for one analysis.

        Args:
            subjects: Full subject table (pandas or Polars).
            outcome: Outcome column; must be in *outcomes*.
            cohort: Optional single-cohort filter; must be in
                *cohorts*.  ``None`` selects all cohorts.
            outcomes: Enumerated outcome set.
            cohorts: Enumerated cohort set.

        Returns:
            A dataset with zero or more rows.  Zero rows is a valid
            state; see :meth:`require_data`.

        Raises:
            InvalidOutcomeError: *outcome* not enumerated.
            InvalidCohortError: *cohort*, or a cohort label in the
                table, is not enumerated.
            ValueError: Malformed subject table.
        """
        validate_outcome(outcome, outcomes)
        if cohort is not None:
            validate_cohort(cohort, cohorts)

        columns = [*GROUPING_COLUMNS, *PREDICTOR_COLUMNS, outcome]
        df = _ensure_pandas_df(subjects, name="subjects", columns=columns)
        _validate_subject_table(df, outcome, tuple(cohorts))

        frame = df.loc[:, columns].copy()

        if cohort is not None:
            frame = frame.loc[frame["cohort"].astype(str) == cohort]

        frame = frame.dropna(subset=columns)

        # Family-size filter on distinct individuals per (cohort, family).
        frame["cohort"] = frame["cohort"].astype(str)
        frame["family_id"] = frame["family_id"].astype(str)
        sizes = frame.groupby(["cohort", "family_id"], sort=False)[
            "individual_id"
        ].transform("nunique")
        n_before = len(frame)
        frame = frame.loc[sizes >= 2]
        if n_before != len(frame):
            logger.debug(
                "%s/%s: dropped %d rows from singleton families",
                outcome,
                cohort or ALL_COHORTS,
                n_before - len(frame),
            )

        frame = frame.reset_index(drop=True)
        frame["cohort"] = pd.Categorical(frame["cohort"])
        frame["family_id"] = pd.Categorical(frame["family_id"])
        frame["epitype"] = pd.Categorical(frame["epitype"], categories=list(EPITYPES))
        frame["age"] = frame["age"].astype(np.float64)
        frame["age_onset"] = frame["age_onset"].astype(np.float64)
        frame[outcome] = frame[outcome].astype(np.float64)

        return cls(outcome=outcome, scope=cohort or ALL_COHORTS, frame=frame)

    # ---- Shape -----------------------------------------------------

    @property
    def n_obs(self) -> int:
        return len(self.frame)

    @property
    def n_families(self) -> int:
        if self.is_empty:
            return 0
        return int(
            self.frame.groupby(["cohort", "family_id"], observed=True).ngroups
        )

    @property
    def n_cohorts(self) -> int:
        return int(self.frame["cohort"].nunique())

    @property
    def is_empty(self) -> bool:
        return len(self.frame) == 0

    @property
    def is_pooled(self) -> bool:
        return self.scope == ALL_COHORTS

    def require_data(self) -> CohortDataset:
        """Return ``self`` or raise :class:`EmptyDatasetError` if empty."""
        if self.is_empty:
            raise EmptyDatasetError(self.outcome, self.scope)
        return self

    # ---- Arrays ----------------------------------------------------

    def response(self) -> np.ndarray:
        """Binary outcome vector ``(n,)`` as float64."""
        return self.frame[self.outcome].to_numpy(dtype=np.float64)

    def family_codes(self) -> np.ndarray:
        """0-based family index per row, keyed by ``(cohort, family_id)``."""
        return (
            self.frame.groupby(["cohort", "family_id"], observed=True, sort=True)
            .ngroup()
            .to_numpy(dtype=np.int64)
        )

    def cohort_codes(self) -> np.ndarray:
        """0-based cohort index per row."""
        return self.frame["cohort"].cat.remove_unused_categories().cat.codes.to_numpy(
            dtype=np.int64
        )

    def family_sizes(self) -> pd.Series:
        """Number of distinct individuals per surviving family."""
        return self.frame.groupby(["cohort", "family_id"], observed=True)[
            "individual_id"
        ].nunique()
