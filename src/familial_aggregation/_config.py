"""Run configuration for the familial_aggregation package.

Two layers:

* **ML backend policy** — whether the Laplace solver uses JAX autodiff
  gradients or the NumPy/SciPy path.  Resolution order (first match
  wins):

    1. Programmatic override via :func:`set_backend`.
    2. The ``FAMILIAL_AGGREGATION_BACKEND`` environment variable.
    3. Auto-detection: ``"jax"`` if JAX is importable, else ``"numpy"``.

* :class:`RunConfig` — per-run settings (refit policy, cache location,
  parallelism, seed) passed explicitly into the orchestrator and
  fitters.  Nothing in a run reads ambient state except the backend
  policy above.

Examples:
    Force the NumPy solver from the shell::

        export FAMILIAL_AGGREGATION_BACKEND=numpy

    Refit every Bayesian model, ignoring cached artifacts::

        RunConfig(refit=True, cache_dir="fits/")
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

_VALID_BACKENDS = {"jax", "numpy", "auto"}

# Sentinel indicating "no programmatic override has been set".
_backend_override: str | None = None


def _jax_is_available() -> bool:
    """Return ``True`` if JAX can be imported."""
    try:
        import jax  # noqa: F401

        return True
    except ImportError:
        return False


def get_backend() -> str:
    """Return the active ML backend name (``"jax"`` or ``"numpy"``)."""
    if _backend_override is not None and _backend_override != "auto":
        return _backend_override

    env = os.environ.get("FAMILIAL_AGGREGATION_BACKEND", "").strip().lower()
    if env in ("jax", "numpy"):
        return env

    return "jax" if _jax_is_available() else "numpy"


def set_backend(name: str) -> None:
    """Override the ML backend selection.

    Args:
        name: One of ``"jax"``, ``"numpy"``, or ``"auto"``
            (case-insensitive).  ``"auto"`` restores the default
            resolution order.

    Raises:
        ValueError: If *name* is not a recognised backend.
    """
    global _backend_override
    normalised = name.strip().lower()
    if normalised not in _VALID_BACKENDS:
        raise ValueError(
            f"Unknown backend '{name}'. Choose from: {sorted(_VALID_BACKENDS)}"
        )
    _backend_override = normalised


@dataclass(frozen=True)
class RunConfig:
    """Explicit per-run settings.

    Attributes:
        refit: When ``True`` the Bayesian fitter ignores cached fits
            and resamples, overwriting the cache entry.  When
            ``False`` (default) a cached fit for the same
            configuration key is authoritative.
        cache_dir: Directory for the on-disk fit cache.  ``None``
            keeps fits in memory for the lifetime of the fitter.
        n_jobs: Number of grid cells fitted concurrently (joblib
            threads).  ``1`` runs sequentially.
        random_seed: Seed forwarded to the MCMC sampler.
        backend: ML backend override for this run (``"numpy"`` /
            ``"jax"``); ``None`` follows :func:`get_backend`.
        time_limit: Wall-time limit in seconds for each Bayesian fit.  A
            fit that runs over is stopped and reported as ``failed``
            while the other cells carry on.  ``None`` (default) means
            no limit.
    """

    refit: bool = False
    cache_dir: str | Path | None = None
    n_jobs: int = 1
    random_seed: int | None = None
    backend: str | None = None
    time_limit: float | None = None

    def __post_init__(self) -> None:
        if self.n_jobs == 0:
            raise ValueError("n_jobs must be a non-zero integer (use -1 for all cores).")
        if self.time_limit is not None and not self.time_limit > 0:
            raise ValueError(f"time_limit must be positive, got {self.time_limit}.")
        if self.backend is not None and self.backend not in ("jax", "numpy"):
            raise ValueError(
                f"Unknown backend '{self.backend}'. Choose from: ['jax', 'numpy']"
            )
