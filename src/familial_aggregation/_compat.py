"""Subject-table boundary: pandas internally, Polars accepted.

Every fit works on a ``pandas.DataFrame``.  A caller holding a
``polars.DataFrame`` or ``polars.LazyFrame`` can pass it to
:meth:`~familial_aggregation.dataset.CohortDataset.build` or
:meth:`~familial_aggregation.orchestrator.AnalysisOrchestrator.run`
directly.  Only the columns the analysis reads are converted, so a
wide phenotype export (or a lazy scan of one) never materialises its
unused columns in pandas.

Polars is an optional extra (``pip install familial-aggregation[polars]``).
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING, TypeAlias

import pandas as pd

if TYPE_CHECKING:
    import polars as pl

    SubjectTable: TypeAlias = pd.DataFrame | pl.DataFrame | pl.LazyFrame
else:
    SubjectTable: TypeAlias = pd.DataFrame

try:
    import polars as pl

    _HAS_POLARS = True
except ImportError:
    _HAS_POLARS = False


def _polars_columns(obj: pl.DataFrame | pl.LazyFrame) -> list[str]:
    if isinstance(obj, pl.LazyFrame):
        return list(obj.collect_schema().names())
    return list(obj.columns)


def _ensure_pandas_df(
    obj: SubjectTable,
    *,
    name: str = "subjects",
    columns: Sequence[str] | None = None,
) -> pd.DataFrame:
    """Return the subject table *obj* as a :class:`pandas.DataFrame`.

    A pandas frame is returned as-is.  For Polars input, *columns*
    (when given) restricts the conversion to those columns; names
    absent from the table are skipped here and reported by the
    caller's own column validation.

    Raises:
        TypeError: If *obj* is not a pandas or Polars frame.
    """
    if isinstance(obj, pd.DataFrame):
        return obj

    if _HAS_POLARS and isinstance(obj, (pl.DataFrame, pl.LazyFrame)):
        if columns is not None:
            present = set(_polars_columns(obj))
            obj = obj.select([c for c in dict.fromkeys(columns) if c in present])
        if isinstance(obj, pl.LazyFrame):
            obj = obj.collect()
        return obj.to_pandas()

    raise TypeError(
        f"'{name}' must be a pandas DataFrame"
        + (" or Polars DataFrame/LazyFrame" if _HAS_POLARS else "")
        + f", got {type(obj).__name__}."
    )
