"""NumPy/SciPy Laplace solver for random-intercept logistic GLMMs.

Model
~~~~~
.. math::
    \\operatorname{logit} P(y_i = 1) = x_i^\\top\\beta
        + \\sum_k u_{k, g_k(i)}, \\qquad
    u_{k, j} \\sim N(0, \\sigma_k^2)

with one random intercept per grouping level *k* (one level for a
per-cohort family model, two for the nested cohort/family model).

Laplace approximation
~~~~~~~~~~~~~~~~~~~~~
For fixed :math:`\\theta = (\\log\\sigma_1, …, \\log\\sigma_K)` the
inner loop finds the joint mode :math:`(\\hat\\beta, \\hat u)` of the
penalised log-likelihood by Newton–Raphson on the Henderson
mixed-model equations

.. math::
    \\begin{bmatrix} X^\\top W X & X^\\top W Z \\\\
                     Z^\\top W X & Z^\\top W Z + \\Gamma^{-1}
    \\end{bmatrix}
    \\begin{bmatrix} \\delta\\beta \\\\ \\delta u \\end{bmatrix}
    = \\begin{bmatrix} X^\\top (y - \\mu) \\\\
                       Z^\\top (y - \\mu) - \\Gamma^{-1} u \\end{bmatrix}

solved through the Schur complement
:math:`S = X^\\top W X - X^\\top W Z\\, C_{22}^{-1} Z^\\top W X`.
Steps that increase the penalised objective are halved (Marschner
2011, ``glm2``).  The marginal NLL at the mode is

.. math::
    -\\ell(y \\mid \\hat\\beta, \\hat u)
      + \\tfrac12 \\hat u^\\top \\Gamma^{-1} \\hat u
      + \\tfrac12 \\log\\lvert I + \\Lambda Z^\\top W Z \\Lambda\\rvert

with :math:`\\Lambda = \\operatorname{diag}(\\sigma)`, which equals
:math:`\\tfrac12\\log|\\Gamma| + \\tfrac12\\log|C_{22}|` but stays
accurate as :math:`\\sigma \\to 0`.  At the lower bound the objective
reduces to the GLM NLL, so a variance on the boundary yields an LRT
of zero rather than an error.

Outer loop
~~~~~~~~~~
:math:`\\theta` is optimised within ``[-8, 5]``: bounded Brent for a
single component, L-BFGS-B with a Powell fallback for two.  Each
component's lower bound is also evaluated so boundary optima are
found exactly.

Models without grouping factors are fitted with ``statsmodels`` GLM
(Binomial family).
"""

from __future__ import annotations

import logging
import warnings
from collections.abc import Callable, Mapping
from dataclasses import dataclass

import numpy as np
import statsmodels.api as sm
from scipy.optimize import minimize, minimize_scalar
from scipy.special import expit
from statsmodels.tools.sm_exceptions import ConvergenceWarning, PerfectSeparationWarning

from . import MLSolution

logger = logging.getLogger(__name__)

# ------------------------------------------------------------------ #
# Solver defaults
# ------------------------------------------------------------------ #

THETA_BOUNDS: tuple[float, float] = (-8.0, 5.0)
"""Bounds on log-SD.  ``exp(-8) ≈ 3e-4`` is numerically zero on the
logit scale; ``exp(5) ≈ 148`` is far beyond any plausible family
effect."""

_DEFAULT_TOL: float = 1e-8
_MAX_INNER: int = 50
_MAX_STEP_HALVE: int = 10

# ------------------------------------------------------------------ #
# Shared numerics
# ------------------------------------------------------------------ #


def _logistic_nll_np(y: np.ndarray, eta: np.ndarray) -> float:
    """Bernoulli-logit NLL, overflow-safe via ``logaddexp``."""
    return float(np.sum(np.logaddexp(0.0, eta) - y * eta))


def _indicator_design(
    groups: Mapping[str, np.ndarray], n: int
) -> tuple[np.ndarray, list[int]]:
    """Stack one-hot indicator blocks for every grouping level.

    Returns:
        ``(Z, sizes)`` where ``Z`` is ``(n, Σ G_k)`` and ``sizes[k]``
        is the number of groups in level *k*.
    """
    blocks: list[np.ndarray] = []
    sizes: list[int] = []
    for level, codes in groups.items():
        codes = np.asarray(codes, dtype=np.int64)
        if codes.shape != (n,):
            msg = f"Group codes for {level!r} must have shape ({n},), got {codes.shape}"
            raise ValueError(msg)
        if n and codes.min() < 0:
            msg = f"Group codes for {level!r} must be non-negative."
            raise ValueError(msg)
        G_k = int(codes.max()) + 1 if n else 0
        block = np.zeros((n, G_k))
        block[np.arange(n), codes] = 1.0
        blocks.append(block)
        sizes.append(G_k)
    return np.hstack(blocks), sizes


def _expand_theta(theta: np.ndarray, sizes: list[int]) -> np.ndarray:
    """Per-column SD vector ``(q,)`` from per-level log-SDs."""
    return np.repeat(np.exp(np.asarray(theta, dtype=np.float64)), sizes)


def _fit_glm_irls(
    X: np.ndarray,
    y: np.ndarray,
    *,
    max_iter: int = 25,
    tol: float = _DEFAULT_TOL,
    max_step_halve: int = 5,
) -> np.ndarray:
    """Logistic IRLS with step-halving; GLM warm start for the inner loop.

    The ``lme4::glmer()`` initialisation strategy: start the joint
    mode search from the fixed-effects-only fit rather than zero.
    Returns the last finite iterate when IRLS does not converge.
    """
    p = X.shape[1]
    eta_init = np.log(np.maximum(y, 0.0) + 0.5)
    beta: np.ndarray = np.linalg.solve(X.T @ X + 1e-8 * np.eye(p), X.T @ eta_init)
    eta = X @ beta
    dev = _logistic_nll_np(y, eta)

    for _it in range(max_iter):
        mu = expit(eta)
        w = np.clip(mu * (1.0 - mu), 1e-10, None)
        z = eta + (y - mu) / w
        sqrt_w = np.sqrt(w)
        beta_new, _, _, _ = np.linalg.lstsq(X * sqrt_w[:, None], z * sqrt_w, rcond=None)
        if not np.all(np.isfinite(beta_new)):
            break

        eta_new = X @ beta_new
        dev_new = _logistic_nll_np(y, eta_new)
        for _halve in range(max_step_halve):
            if dev_new <= dev + 1e-12:
                break
            beta_new = 0.5 * (beta + beta_new)
            eta_new = X @ beta_new
            dev_new = _logistic_nll_np(y, eta_new)

        delta_beta = float(np.max(np.abs(beta_new - beta)))
        delta_dev = abs(dev_new - dev) / (abs(dev) + 0.1)
        beta, eta, dev = beta_new, eta_new, dev_new
        if delta_beta < tol or delta_dev < tol:
            break

    return beta


@dataclass(frozen=True)
class _Mode:
    """Joint mode of the penalised likelihood at fixed variance parameters."""

    beta: np.ndarray
    u: np.ndarray
    nll: float
    schur: np.ndarray
    converged: bool
    n_iter: int


def _henderson_blocks(
    X: np.ndarray, Z: np.ndarray, w: np.ndarray, gamma_inv: np.ndarray
) -> tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """Return ``(XtWZ, ZtWZ, C22, S)`` at working weights *w*."""
    Xw = X * w[:, None]
    XtWX = X.T @ Xw
    XtWZ = Xw.T @ Z
    ZtWZ = Z.T @ (Z * w[:, None])
    C22 = ZtWZ + np.diag(gamma_inv)
    S = XtWX - XtWZ @ np.linalg.solve(C22, XtWZ.T)
    return XtWZ, ZtWZ, C22, S


def _penalised_mode(
    X: np.ndarray,
    Z: np.ndarray,
    y: np.ndarray,
    sd: np.ndarray,
    beta_init: np.ndarray,
    *,
    max_iter: int = _MAX_INNER,
    tol: float = _DEFAULT_TOL,
) -> _Mode:
    """Newton–Raphson for ``(β̂, û)`` and the Laplace NLL at the mode.

    Args:
        X: Fixed-effect design ``(n, p)`` with intercept.
        Z: Indicator design ``(n, q)``.
        y: Binary response ``(n,)``.
        sd: Per-column random-effect SD ``(q,)``.
        beta_init: GLM warm start ``(p,)``.

    Raises:
        numpy.linalg.LinAlgError: Singular Henderson system.
    """
    gamma_inv = 1.0 / sd**2
    beta = beta_init.copy()
    u = np.zeros(Z.shape[1])
    eta = X @ beta
    objective = _logistic_nll_np(y, eta)
    converged = False
    n_iter = 0

    for n_iter in range(1, max_iter + 1):
        mu = expit(eta)
        w = np.clip(mu * (1.0 - mu), 1e-10, None)
        resid = y - mu
        g_beta = X.T @ resid
        g_u = Z.T @ resid - gamma_inv * u

        XtWZ, _, C22, S = _henderson_blocks(X, Z, w, gamma_inv)
        C22_inv_gu = np.linalg.solve(C22, g_u)
        C22_inv_ZtWX = np.linalg.solve(C22, XtWZ.T)
        d_beta = np.linalg.solve(S, g_beta - XtWZ @ C22_inv_gu)
        d_u = C22_inv_gu - C22_inv_ZtWX @ d_beta

        # ---- Step-halving on the penalised objective ----
        step = 1.0
        accepted = False
        for _halve in range(_MAX_STEP_HALVE + 1):
            beta_new = beta + step * d_beta
            u_new = u + step * d_u
            eta_new = X @ beta_new + Z @ u_new
            objective_new = _logistic_nll_np(y, eta_new) + 0.5 * float(
                u_new @ (gamma_inv * u_new)
            )
            if np.isfinite(objective_new) and objective_new <= objective + 1e-12 * max(
                1.0, abs(objective)
            ):
                accepted = True
                break
            step *= 0.5

        if not accepted:
            # No descent along the Newton direction: already at the mode
            # up to rounding, provided the gradient is negligible.
            grad_max = float(np.max(np.abs(np.concatenate([g_beta, g_u]))))
            converged = grad_max < 1e-4
            break

        delta = step * float(np.max(np.abs(np.concatenate([d_beta, d_u]))))
        rel_change = abs(objective - objective_new) / (abs(objective) + 0.1)
        beta, u, eta, objective = beta_new, u_new, eta_new, objective_new
        if delta < tol or rel_change < tol * tol:
            converged = True
            break

    # ---- Laplace NLL at the mode ----
    mu = expit(eta)
    w = np.clip(mu * (1.0 - mu), 1e-10, None)
    _, ZtWZ, _, S = _henderson_blocks(X, Z, w, gamma_inv)
    M = np.eye(Z.shape[1]) + sd[:, None] * ZtWZ * sd[None, :]
    log_det = 2.0 * float(np.sum(np.log(np.diag(np.linalg.cholesky(M)))))
    nll = objective + 0.5 * log_det

    return _Mode(beta=beta, u=u, nll=nll, schur=S, converged=converged, n_iter=n_iter)


def _wald_std_errors(information: np.ndarray) -> np.ndarray:
    cov = np.linalg.inv(information)
    return np.sqrt(np.clip(np.diag(cov), 0.0, None))


# ------------------------------------------------------------------ #
# Solver
# ------------------------------------------------------------------ #


class NumpyLaplaceSolver:
    """Laplace-approximate ML for random-intercept logistic models.

    Implements :class:`~familial_aggregation._solvers.MLSolverProtocol`.

    Args:
        theta_bounds: Box constraint on each log-SD.
        max_inner: Maximum Newton iterations for the joint mode.
        max_outer: Maximum outer optimiser iterations.
        tol: Inner convergence tolerance.
    """

    def __init__(
        self,
        *,
        theta_bounds: tuple[float, float] = THETA_BOUNDS,
        max_inner: int = _MAX_INNER,
        max_outer: int = 200,
        tol: float = _DEFAULT_TOL,
    ) -> None:
        self.theta_bounds = theta_bounds
        self.max_inner = max_inner
        self.max_outer = max_outer
        self.tol = tol

    @property
    def name(self) -> str:
        return "numpy"

    @property
    def is_available(self) -> bool:
        return True

    def fit(
        self,
        X: np.ndarray,
        y: np.ndarray,
        groups: Mapping[str, np.ndarray],
    ) -> MLSolution:
        X = np.asarray(X, dtype=np.float64)
        y = np.asarray(y, dtype=np.float64)
        if not groups:
            return self._fit_glm(X, y)

        levels = list(groups)
        Z, sizes = _indicator_design(groups, X.shape[0])
        beta_init = _fit_glm_irls(X, y, tol=self.tol)

        def mode_at(theta: np.ndarray) -> _Mode:
            return _penalised_mode(
                X,
                Z,
                y,
                _expand_theta(theta, sizes),
                beta_init,
                max_iter=self.max_inner,
                tol=self.tol,
            )

        def objective(theta: np.ndarray) -> float:
            try:
                nll = mode_at(theta).nll
            except np.linalg.LinAlgError:
                return 1e30
            return nll if np.isfinite(nll) else 1e30

        theta, opt_converged, n_iter, message = self._minimise_theta(
            objective, X, Z, y, sizes, beta_init
        )
        theta = self._check_lower_bounds(objective, theta)

        mode = mode_at(theta)
        sds = {level: float(np.exp(t)) for level, t in zip(levels, theta)}
        logger.debug(
            "Laplace fit: theta=%s nll=%.6f outer_converged=%s inner_converged=%s",
            np.round(theta, 4),
            mode.nll,
            opt_converged,
            mode.converged,
        )
        return MLSolution(
            beta=mode.beta,
            std_errors=_wald_std_errors(mode.schur),
            sds=sds,
            loglik=-mode.nll,
            converged=bool(opt_converged and mode.converged),
            n_iter=n_iter,
            message=message,
        )

    # ---- Outer optimisation ----------------------------------------

    def _minimise_theta(
        self,
        objective: Callable[[np.ndarray], float],
        X: np.ndarray,
        Z: np.ndarray,
        y: np.ndarray,
        sizes: list[int],
        beta_init: np.ndarray,
    ) -> tuple[np.ndarray, bool, int, str]:
        """Minimise the Laplace NLL over log-SDs.

        Returns:
            ``(theta, converged, n_iter, message)``.
        """
        lo, hi = self.theta_bounds
        k = len(sizes)
        if k == 1:
            res = minimize_scalar(
                lambda t: objective(np.array([t])),
                bounds=(lo, hi),
                method="bounded",
                options={"xatol": 1e-6, "maxiter": self.max_outer},
            )
            return np.array([float(res.x)]), bool(res.success), int(res.nfev), str(res.message)

        bounds = [(lo, hi)] * k
        res = minimize(
            objective,
            np.zeros(k),
            method="L-BFGS-B",
            bounds=bounds,
            options={"maxiter": self.max_outer},
        )
        if not res.success:
            logger.debug("L-BFGS-B did not converge (%s); retrying with Powell", res.message)
            res = minimize(
                objective,
                np.clip(res.x, lo, hi),
                method="Powell",
                bounds=bounds,
                options={"maxiter": self.max_outer * 10},
            )
        return np.asarray(res.x, dtype=np.float64), bool(res.success), int(res.nit), str(res.message)

    def _check_lower_bounds(
        self, objective: Callable[[np.ndarray], float], theta: np.ndarray
    ) -> np.ndarray:
        """Move any component to its lower bound if that lowers the NLL."""
        lo, _ = self.theta_bounds
        best = np.array(theta, dtype=np.float64)
        best_value = objective(best)
        for j in range(best.size):
            candidate = best.copy()
            candidate[j] = lo
            value = objective(candidate)
            if value < best_value:
                best, best_value = candidate, value
        return best

    # ---- No grouping factors ---------------------------------------

    def _fit_glm(self, X: np.ndarray, y: np.ndarray) -> MLSolution:
        """Plain logistic GLM via statsmodels.

        Convergence and perfect-separation warnings are captured and
        reported as ``converged=False``.
        """
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always", ConvergenceWarning)
            warnings.simplefilter("always", PerfectSeparationWarning)
            result = sm.GLM(y, X, family=sm.families.Binomial()).fit(maxiter=100, tol=self.tol)

        trouble = [
            str(w.message)
            for w in caught
            if issubclass(w.category, (ConvergenceWarning, PerfectSeparationWarning))
        ]
        converged = bool(getattr(result, "converged", True)) and not trouble
        history = getattr(result, "fit_history", None) or {}
        return MLSolution(
            beta=np.asarray(result.params, dtype=np.float64),
            std_errors=np.asarray(result.bse, dtype=np.float64),
            sds={},
            loglik=float(result.llf),
            converged=converged,
            n_iter=int(history.get("iteration", 0)),
            message="; ".join(trouble),
        )
