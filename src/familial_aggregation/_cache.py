"""Persistent and in-memory stores for Bayesian fit artifacts.

A fit is identified by a deterministic key built from (outcome,
scope, grouping, prior configuration); see
:meth:`~familial_aggregation.model_spec.ModelSpec.cache_key`.

Contract (both stores):

* ``contains(key)`` / ``load(key)`` read a stored artifact.
* ``save(key, idata, overwrite=False)`` writes once per key; an
  existing entry is kept unless *overwrite* is set (the refit path).
* ``lock(key)`` returns a per-key re-entrant lock.  The Bayesian
  fitter holds it across check → sample → save so two cells racing
  on the same key sample once.

:class:`NetCDFFitCache` writes ArviZ NetCDF to a temporary file in the
target directory and renames it into place, so readers never observe
a partially written artifact.
"""

from __future__ import annotations

import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    import arviz as az

logger = logging.getLogger(__name__)


@runtime_checkable
class FitCache(Protocol):
    """Key → ``InferenceData`` store with per-key locking."""

    def contains(self, key: str) -> bool: ...

    def load(self, key: str) -> az.InferenceData: ...

    def save(self, key: str, idata: az.InferenceData, *, overwrite: bool = False) -> None: ...

    def lock(self, key: str) -> Any: ...


class _KeyLocks:
    """Lazily created re-entrant lock per key."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    def get(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.RLock()
            return lock


class MemoryFitCache:
    """In-process store; lives as long as the fitter that owns it."""

    def __init__(self) -> None:
        self._store: dict[str, Any] = {}
        self._locks = _KeyLocks()

    def contains(self, key: str) -> bool:
        return key in self._store

    def load(self, key: str) -> az.InferenceData:
        return self._store[key]

    def save(self, key: str, idata: az.InferenceData, *, overwrite: bool = False) -> None:
        if key in self._store and not overwrite:
            return
        self._store[key] = idata

    def lock(self, key: str) -> threading.RLock:
        return self._locks.get(key)

    def __len__(self) -> int:
        return len(self._store)


class NetCDFFitCache:
    """One ArviZ NetCDF file per key under *directory*.

    Args:
        directory: Cache directory; created if missing.
    """

    suffix = ".nc"

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._locks = _KeyLocks()

    def path_for(self, key: str) -> Path:
        return self.directory / f"{key}{self.suffix}"

    def contains(self, key: str) -> bool:
        return self.path_for(key).is_file()

    def load(self, key: str) -> az.InferenceData:
        import arviz as az

        path = self.path_for(key)
        logger.debug("Loading cached fit %s", path)
        return az.from_netcdf(path)

    def save(self, key: str, idata: az.InferenceData, *, overwrite: bool = False) -> None:
        import arviz as az

        path = self.path_for(key)
        if path.exists() and not overwrite:
            logger.debug("Cache entry %s exists; not overwriting", path)
            return
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{key}.", suffix=".tmp", dir=self.directory
        )
        os.close(fd)
        try:
            az.to_netcdf(idata, tmp_name)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.debug("Saved fit %s", path)

    def lock(self, key: str) -> threading.RLock:
        return self._locks.get(key)
