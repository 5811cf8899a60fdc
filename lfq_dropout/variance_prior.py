"""Scaled inverse-chi-squared prior on protein variances.

Protein variances follow sigma^2 ~ Inv-chi^2(d0, s0^2). A sample variance
s^2 on d residual degrees of freedom then satisfies s^2 / s0^2 ~ F(d, d0),
which is the likelihood maximized here. Because missingness gives every
protein its own d, there is no closed form; the moment estimator of
Smyth (2004) only provides the starting point.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
from scipy import stats
from scipy.optimize import minimize
from scipy.special import digamma, polygamma

from .errors import NumericalError

logger = logging.getLogger(__name__)

# Default minimum number of usable variance estimates for a fit
MIN_VARIANCE_ESTIMATES = 5

# Bounds on the prior degrees of freedom
MIN_PRIOR_DF = 0.1
MAX_PRIOR_DF = 1e6


@dataclass(frozen=True)
class VariancePrior:
    """Inverse-chi-squared prior: degrees of freedom and variance scale."""

    df: float
    scale: float

    def __post_init__(self):
        if not (self.df > 0 and self.scale > 0):
            raise NumericalError(
                f"Variance prior needs positive df and scale, got ({self.df}, {self.scale})"
            )
        object.__setattr__(self, 'df', float(self.df))
        object.__setattr__(self, 'scale', float(self.scale))


def moderated_variance(raw_var, df, prior: VariancePrior) -> np.ndarray:
    """Posterior variance (d0 s0^2 + d s^2) / (d0 + d)."""
    raw_var = np.asarray(raw_var, dtype=float)
    df = np.asarray(df, dtype=float)
    return (prior.df * prior.scale + df * raw_var) / (prior.df + df)


def _log_minus_digamma(x: np.ndarray) -> np.ndarray:
    return np.log(x) - digamma(x)


def _trigamma_inverse(x: float) -> float:
    """Solve trigamma(y) = x for y by Newton iteration."""
    if x > 1e7:
        return 1.0 / np.sqrt(x)
    if x < 1e-6:
        return 1.0 / x

    y = 0.5 + 1.0 / x
    for _ in range(50):
        tri = float(polygamma(1, y))
        dif = tri * (1.0 - tri / x) / float(polygamma(2, y))
        y = y + dif
        if abs(dif / y) < 1e-10:
            break
    return y


def _moment_estimate(variances: np.ndarray, df: np.ndarray) -> tuple[float, float]:
    """Moment matching on the log scale (Smyth 2004)."""
    e = np.log(variances) + _log_minus_digamma(df / 2)
    emean = float(np.mean(e))
    evar = float(np.var(e, ddof=1)) - float(np.mean(polygamma(1, df / 2)))

    if evar > 0:
        prior_df = float(np.clip(2.0 * _trigamma_inverse(evar), MIN_PRIOR_DF, MAX_PRIOR_DF))
        prior_scale = float(np.exp(emean - _log_minus_digamma(prior_df / 2)))
    else:
        prior_df = MAX_PRIOR_DF
        prior_scale = float(np.mean(variances))
    return prior_df, prior_scale


def _negative_log_likelihood(
    theta: np.ndarray,
    variances: np.ndarray,
    df: np.ndarray,
) -> tuple[float, np.ndarray]:
    """F-distribution likelihood of the variances and its gradient.

    Parameters are (log d0, log s0^2).
    """
    log_d0, log_s0 = theta
    d0 = np.exp(log_d0)
    s0 = np.exp(log_s0)

    x = variances / s0
    ll = np.sum(stats.f.logpdf(x, df, d0) - log_s0)

    q = df * x / d0
    one_plus_q = 1.0 + q
    grad_log_s0 = np.sum(-df / 2 + (df + d0) / 2 * q / one_plus_q)
    grad_d0 = np.sum(
        (d0 * q - df) / (2 * d0 * one_plus_q)
        - 0.5 * np.log1p(q)
        - 0.5 * digamma(d0 / 2)
        + 0.5 * digamma((df + d0) / 2)
    )
    grad_log_d0 = d0 * grad_d0

    return -ll, -np.array([grad_log_d0, grad_log_s0])


def fit_variance_prior(
    variances,
    df,
    min_proteins: int = MIN_VARIANCE_ESTIMATES,
    start: VariancePrior | None = None,
) -> VariancePrior:
    """Fit the inverse-chi-squared prior to per-protein variance estimates.

    Args:
        variances: Per-protein variance estimates
        df: Residual degrees of freedom of each estimate
        min_proteins: Minimum number of usable estimates
        start: Starting values; defaults to the moment estimate

    Returns:
        Fitted VariancePrior

    Raises:
        NumericalError: If fewer than min_proteins estimates are usable

    """
    variances = np.asarray(variances, dtype=float)
    df = np.broadcast_to(np.asarray(df, dtype=float), variances.shape)

    # Zero or one observation leaves no residual degrees of freedom
    usable = np.isfinite(variances) & (variances > 0) & np.isfinite(df) & (df >= 1)
    n_usable = int(usable.sum())
    if n_usable < min_proteins:
        raise NumericalError(
            f"Only {n_usable} proteins have usable variance estimates; "
            f"need at least {min_proteins} to fit the variance prior"
        )
    if n_usable < len(variances):
        logger.debug(f"Variance prior: excluded {len(variances) - n_usable} unusable estimates")

    variances = variances[usable]
    df = df[usable]

    if start is None:
        start_df, start_scale = _moment_estimate(variances, df)
    else:
        start_df, start_scale = start.df, start.scale

    df_bounds = (np.log(MIN_PRIOR_DF), np.log(MAX_PRIOR_DF))
    theta0 = np.array([np.clip(np.log(start_df), *df_bounds), np.log(start_scale)])

    result = minimize(
        _negative_log_likelihood,
        theta0,
        args=(variances, df),
        jac=True,
        method='L-BFGS-B',
        bounds=[df_bounds, (None, None)],
        options={'ftol': 1e-14, 'gtol': 1e-9, 'maxiter': 500},
    )
    if not np.all(np.isfinite(result.x)):
        raise NumericalError(f"Variance prior fit diverged: {result.message}")
    if not result.success:
        logger.debug(f"Variance prior optimizer stopped early: {result.message}")

    return VariancePrior(df=float(np.exp(result.x[0])), scale=float(np.exp(result.x[1])))
