"""PyMC sampler for the Bayesian random-intercept logistic model.

Model (non-centred)::

    b[term]        ~ fixed-effect prior        (default: flat)
    sd_<level>     ~ variance prior            (default: half-Student-t(3, 0, 2.5))
    z_<level>[g]   ~ Normal(0, 1)
    eta            = X @ b + Σ_level sd_<level> * z_<level>[code]
    y              ~ Bernoulli(logit_p = eta)

The non-centred parameterisation avoids the funnel between each SD
and its group effects when families are small.  Prior draws of every
``sd_<level>`` come from a separate model holding only those
variables, so flat fixed-effect priors (which cannot be forward
sampled) never enter prior sampling.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping, Sequence
from typing import TYPE_CHECKING, Any

import numpy as np

from ..errors import SamplingError

if TYPE_CHECKING:
    import arviz as az

    from ..model_spec import Prior, PriorConfig
    from . import SamplerControl

logger = logging.getLogger(__name__)


def _prior_variable(pm: Any, name: str, prior: Prior, **kwargs: Any) -> Any:
    """Create the PyMC random variable for *prior* inside the active model."""
    params = prior.params
    if prior.distribution == "flat":
        return pm.Flat(name, **kwargs)
    if prior.distribution == "normal":
        return pm.Normal(name, mu=params[0], sigma=params[1], **kwargs)
    if prior.distribution == "student_t":
        return pm.StudentT(name, nu=params[0], mu=params[1], sigma=params[2], **kwargs)
    if prior.distribution == "half_normal":
        return pm.HalfNormal(name, sigma=params[0], **kwargs)
    if prior.distribution == "half_student_t":
        return pm.HalfStudentT(name, nu=params[0], sigma=params[1], **kwargs)
    if prior.distribution == "half_cauchy":
        return pm.HalfCauchy(name, beta=params[0], **kwargs)
    if prior.distribution == "exponential":
        return pm.Exponential(name, lam=params[0], **kwargs)
    msg = f"No PyMC mapping for prior {prior.distribution!r}"
    raise ValueError(msg)


def _deadline_callback(time_limit: float) -> Callable[..., None]:
    """Return a ``pm.sample`` callback that stops sampling after *time_limit* s.

    PyMC calls it in the main process after every draw of every chain,
    so raising here ends the run and the worker processes with it.  A
    single draw that never returns is not interrupted.
    """
    deadline = time.monotonic() + time_limit
    n_draws = 0

    def callback(trace: Any, draw: Any) -> None:
        nonlocal n_draws
        n_draws += 1
        if time.monotonic() > deadline:
            raise SamplingError(
                f"time limit of {time_limit:g} s exceeded after {n_draws} draws"
            )

    return callback


class PyMCSampler:
    """NUTS sampling via PyMC, returning ArviZ ``InferenceData``.

    Implements :class:`~familial_aggregation._solvers.MCMCSolverProtocol`.
    """

    def sample(
        self,
        X: np.ndarray,
        y: np.ndarray,
        terms: Sequence[str],
        groups: Mapping[str, np.ndarray],
        priors: PriorConfig,
        control: SamplerControl,
    ) -> az.InferenceData:
        import pymc as pm

        X = np.asarray(X, dtype=np.float64)
        y = np.asarray(y, dtype=np.int64)
        n_groups = {
            level: int(np.max(codes)) + 1 for level, codes in groups.items()
        }
        coords: dict[str, Any] = {"term": list(terms)}
        for level, size in n_groups.items():
            coords[level] = np.arange(size)

        with pm.Model(coords=coords):
            b = _prior_variable(pm, "b", priors.resolved_fixed_effects, dims="term")
            eta = pm.math.dot(X, b)
            for level, codes in groups.items():
                sd = _prior_variable(pm, f"sd_{level}", priors.resolved_variance)
                z = pm.Normal(f"z_{level}", mu=0.0, sigma=1.0, dims=level)
                eta = eta + sd * z[np.asarray(codes, dtype=np.int64)]
            pm.Bernoulli("y_obs", logit_p=eta, observed=y)

            sample_kwargs: dict[str, Any] = {"progressbar": False}
            if control.time_limit is not None:
                sample_kwargs["callback"] = _deadline_callback(control.time_limit)
            sample_kwargs.update(control.extra)
            logger.debug(
                "Sampling %d chains x (%d tune + %d draws), target_accept=%.2f",
                control.chains,
                control.tune,
                control.draws,
                control.target_accept,
            )
            idata = pm.sample(
                draws=control.draws,
                tune=control.tune,
                chains=control.chains,
                target_accept=control.target_accept,
                random_seed=control.random_seed,
                **sample_kwargs,
            )

        if groups:
            with pm.Model():
                for level in groups:
                    _prior_variable(pm, f"sd_{level}", priors.resolved_variance)
                prior_idata = pm.sample_prior_predictive(
                    draws=control.chains * control.draws,
                    random_seed=control.random_seed,
                )
            idata.extend(prior_idata)

        return idata
