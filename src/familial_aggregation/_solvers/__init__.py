"""Numerical engines behind narrow interfaces.

The fitters never touch an optimiser or sampler directly.  They talk
to one of two protocols:

* :class:`MLSolverProtocol` — maximum-likelihood fit of a
  random-intercept logistic GLMM (Laplace approximation) or, with no
  grouping factors, a plain logistic GLM.
* :class:`MCMCSolverProtocol` — posterior sampling of the same model
  with a prior configuration, returning ArviZ ``InferenceData``.

Resolution of the ML solver follows the policy in :mod:`._config`:

1. Explicit name passed to :func:`resolve_ml_solver`.
2. :func:`~familial_aggregation._config.get_backend` (programmatic
   override, then ``FAMILIAL_AGGREGATION_BACKEND``, then auto).

When ``"jax"`` is requested explicitly but JAX is not installed an
:class:`ImportError` is raised; only the auto policy degrades to
NumPy.

Adding a new engine requires a module implementing one of the
protocols and a branch in the matching resolver.  Fitters and the
orchestrator need no changes.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import numpy as np

from .._config import get_backend

if TYPE_CHECKING:
    from ..model_spec import PriorConfig

# ------------------------------------------------------------------ #
# Solver results and controls
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class MLSolution:
    """Maximum-likelihood estimates returned by an ML solver.

    Attributes:
        beta: Fixed-effect estimates ``(p,)`` in design-column order.
        std_errors: Wald standard errors ``(p,)``.
        sds: Random-intercept standard deviation per grouping level,
            in the order the levels were passed.
        loglik: Maximised (Laplace-approximate) log-likelihood.
        converged: Whether both the outer optimiser and the inner
            mode search reported convergence.
        n_iter: Outer iterations (or IRLS iterations for a GLM).
        message: Optimiser status text.
    """

    beta: np.ndarray
    std_errors: np.ndarray
    sds: dict[str, float]
    loglik: float
    converged: bool
    n_iter: int = 0
    message: str = ""


@dataclass(frozen=True)
class SamplerControl:
    """MCMC run settings.

    Defaults are 4 chains of 1000 warm-up plus 1000 retained draws.
    The acceptance target is 0.85 for single-level models and 0.95
    for nested models, where the funnel geometry between the two
    variance components produces divergences at lower targets.

    ``time_limit`` (seconds of wall time for one fit, warm-up
    included) is checked after every draw; ``None`` means no limit.
    """

    chains: int = 4
    tune: int = 1000
    draws: int = 1000
    target_accept: float = 0.85
    random_seed: int | None = None
    time_limit: float | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def for_grouping(
        cls, nested: bool, random_seed: int | None = None, **overrides: Any
    ) -> SamplerControl:
        target = 0.95 if nested else 0.85
        params: dict[str, Any] = {"target_accept": target, "random_seed": random_seed}
        params.update(overrides)
        return cls(**params)


# ------------------------------------------------------------------ #
# Protocols
# ------------------------------------------------------------------ #


@runtime_checkable
class MLSolverProtocol(Protocol):
    """Maximum-likelihood engine for (random-intercept) logistic models."""

    @property
    def name(self) -> str: ...

    def fit(
        self,
        X: np.ndarray,
        y: np.ndarray,
        groups: Mapping[str, np.ndarray],
    ) -> MLSolution:
        """Fit the model.

        Args:
            X: Fixed-effect design ``(n, p)`` WITH intercept column.
            y: Binary response ``(n,)``.
            groups: Ordered mapping of grouping level to 0-based
                group index per row.  Empty for a plain GLM.

        Returns:
            :class:`MLSolution`.  Numerical trouble is reported via
            ``converged=False`` or a non-finite ``loglik``; solvers
            may also raise :class:`numpy.linalg.LinAlgError`.
        """
        ...


@runtime_checkable
class MCMCSolverProtocol(Protocol):
    """Posterior sampler for the Bayesian random-intercept model."""

    def sample(
        self,
        X: np.ndarray,
        y: np.ndarray,
        terms: Sequence[str],
        groups: Mapping[str, np.ndarray],
        priors: PriorConfig,
        control: SamplerControl,
    ) -> Any:
        """Draw from the posterior and from the prior.

        Returns:
            ``arviz.InferenceData`` whose ``posterior`` group holds
            ``b`` (dimension ``term``, coordinates *terms*) and one
            ``sd_<level>`` per grouping level, and whose ``prior``
            group holds the same ``sd_<level>`` variables.
        """
        ...


# ------------------------------------------------------------------ #
# Resolution
# ------------------------------------------------------------------ #


def resolve_ml_solver(name: str | None = None) -> MLSolverProtocol:
    """Return an ML solver for *name* (or the configured backend).

    Raises:
        ImportError: ``"jax"`` requested but JAX is not installed.
        ValueError: Unknown solver name.
    """
    choice = (name or get_backend()).strip().lower()
    if choice == "numpy":
        from ._numpy import NumpyLaplaceSolver

        return NumpyLaplaceSolver()
    if choice == "jax":
        from ._jax import JaxLaplaceSolver

        solver = JaxLaplaceSolver()
        if not solver.is_available:
            raise ImportError(
                "JAX backend requested but JAX is not installed. "
                "Install it with: pip install 'familial-aggregation[jax]'"
            )
        return solver
    raise ValueError(f"Unknown ML solver {name!r}. Choose from: ['jax', 'numpy']")


def default_mcmc_solver() -> MCMCSolverProtocol:
    """Return the PyMC sampler."""
    from ._pymc import PyMCSampler

    return PyMCSampler()


__all__ = [
    "MCMCSolverProtocol",
    "MLSolution",
    "MLSolverProtocol",
    "SamplerControl",
    "default_mcmc_solver",
    "resolve_ml_solver",
]
