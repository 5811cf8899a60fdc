"""Moments of censored normal distributions.

A dropped-out value is a draw from the latent intensity distribution that
ended up below the detection limit. Two flavours are needed:

- ``truncated_normal_moments``: plain truncation, X ~ N(mu, sd^2) given
  X < t (or X > t).
- ``probit_censored_moments``: the detection limit itself is fuzzy. With a
  probit dropout curve P(missing | y) = Phi((rho - y) / w) the value is
  missing exactly when y + w * eps < rho for an independent standard
  normal eps, so the moments follow from truncating u = y + w * eps and
  projecting back onto y.

All ratios phi/Phi are evaluated in log space. The variance factor
1 - a*lambda - lambda^2 cancels catastrophically once a is a few dozen
standard deviations into the lower tail, where it is replaced by its
asymptotic expansion in 1/a^2.
"""

from __future__ import annotations

import logging

import numpy as np
from scipy.special import log_ndtr

from .errors import NumericalError

logger = logging.getLogger(__name__)

# Standardized thresholds below this value use the asymptotic expansion of
# the truncated variance instead of the closed form. Both agree to about
# 1e-8 here.
ASYMPTOTIC_THRESHOLD = -30.0

# Coefficients of u, u^2, ... with u = 1/a^2 in the expansion
# 1 - a*lambda - lambda^2 = u - 6u^2 + 50u^3 - 518u^4 + 6354u^5 + ...
_ASYMPTOTIC_COEFFICIENTS = (1.0, -6.0, 50.0, -518.0, 6354.0)

_LOG_SQRT_2PI = 0.5 * np.log(2.0 * np.pi)


def log_norm_pdf(z: np.ndarray) -> np.ndarray:
    """Log density of the standard normal."""
    z = np.asarray(z, dtype=float)
    return -0.5 * z * z - _LOG_SQRT_2PI


def inverse_mills_ratio(z: np.ndarray) -> np.ndarray:
    """phi(z) / Phi(z), computed as exp(log phi - log Phi).

    Stays finite for very negative z where both phi and Phi underflow; there
    the ratio approaches -z.
    """
    z = np.asarray(z, dtype=float)
    log_cdf = log_ndtr(z)
    return np.exp(log_norm_pdf(z) - log_cdf)


def upper_truncation_factors(alpha: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Standardized mean shift and variance factor for X < t.

    With alpha = (t - mu) / sd the conditional mean is mu - sd * lam and the
    conditional variance is sd^2 * factor.
    """
    lam = inverse_mills_ratio(alpha)
    factor = 1.0 - alpha * lam - lam * lam

    far = alpha < ASYMPTOTIC_THRESHOLD
    if np.any(far):
        u = 1.0 / alpha[far] ** 2
        series = np.zeros_like(u)
        for coefficient in reversed(_ASYMPTOTIC_COEFFICIENTS):
            series = (series + coefficient) * u
        factor[far] = series

    # The closed form can lose its last digits for moderately negative alpha
    factor = np.clip(factor, np.finfo(float).tiny, 1.0)
    return lam, factor


def truncated_normal_moments(
    mean,
    sd,
    threshold,
    upper: bool = True,
) -> tuple[np.ndarray, np.ndarray]:
    """Mean and variance of a normal conditioned on one side of a threshold.

    Args:
        mean: Mean of the latent normal (broadcastable)
        sd: Standard deviation of the latent normal, >= 0
        threshold: Truncation point t
        upper: True conditions on X < t (the value dropped out),
            False on X > t

    Returns:
        Tuple of (conditional mean, conditional variance) arrays

    Raises:
        NumericalError: If sd is negative or non-finite, or if the
            truncation probability is exactly zero in log space

    """
    mean, sd, threshold = np.broadcast_arrays(
        np.asarray(mean, dtype=float),
        np.asarray(sd, dtype=float),
        np.asarray(threshold, dtype=float),
    )
    if np.any(~np.isfinite(sd)) or np.any(sd < 0):
        raise NumericalError("Standard deviation must be finite and non-negative")

    # Mirror the lower-truncation case onto the upper one
    sign = 1.0 if upper else -1.0
    mu = sign * mean
    t = sign * threshold

    cond_mean = np.empty(mu.shape)
    cond_var = np.zeros(mu.shape)

    point_mass = sd == 0
    if np.any(point_mass):
        # Limit of sd -> 0: mass concentrates at min(mu, t)
        cond_mean[point_mass] = np.minimum(mu[point_mass], t[point_mass])

    spread = ~point_mass
    if np.any(spread):
        s = sd[spread]
        alpha = (t[spread] - mu[spread]) / s
        if np.any(log_ndtr(alpha) == -np.inf):
            raise NumericalError(
                "Truncation probability underflowed to zero; "
                f"standardized threshold {alpha.min():.3g}"
            )
        lam, factor = upper_truncation_factors(alpha)
        cond_mean[spread] = mu[spread] - s * lam
        cond_var[spread] = s * s * factor

    return sign * cond_mean, cond_var


def probit_censored_moments(
    mean,
    var,
    inflection,
    width,
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Moments of a latent normal value given that it dropped out.

    The latent value y ~ N(mean, var) is missing with probability
    Phi((inflection - y) / width).

    Args:
        mean: Latent mean
        var: Latent variance, >= 0
        inflection: Dropout curve inflection point
        width: Positive dropout curve width (absolute scale)

    Returns:
        Tuple of (conditional mean, conditional variance, log P(missing))

    """
    mean, var, inflection, width = np.broadcast_arrays(
        np.asarray(mean, dtype=float),
        np.asarray(var, dtype=float),
        np.asarray(inflection, dtype=float),
        np.asarray(width, dtype=float),
    )
    if np.any(var < 0) or np.any(width <= 0):
        raise NumericalError("Latent variance must be >= 0 and curve width > 0")

    total_var = var + width * width
    total_sd = np.sqrt(total_var)
    u_mean, u_var = truncated_normal_moments(mean, total_sd, inflection, upper=True)

    # Regression of y on u: y = mean + k (u - mean) + independent noise
    k = var / total_var
    cond_mean = mean + k * (u_mean - mean)
    cond_var = var - k * var + k * k * u_var
    log_p_missing = log_ndtr((inflection - mean) / total_sd)

    return cond_mean, np.maximum(cond_var, 0.0), log_p_missing
