"""Per-sample probit dropout curves.

The probability that a value with latent log-intensity x is missing in a
sample is modelled as

    P(missing | x) = Phi((inflection - x) / |scale|)

Scale sign convention: curves always fall with intensity. The scale is
stored negative (as returned by the fits); a positive scale passed in is
normalized to its negative on construction, so both signs describe the
same curve.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
from scipy.optimize import minimize
from scipy.special import log_ndtr, ndtr, ndtri

from .errors import NumericalError
from .truncnorm import inverse_mills_ratio

logger = logging.getLogger(__name__)

# Bounds on the curve width during fitting (log2 intensity units)
MIN_WIDTH = 1e-2
MAX_WIDTH = 1e3

# Flat curves for degenerate columns sit this many widths beyond the data
FLAT_CURVE_OFFSET = 10.0

# Missing fractions are clipped to this range before the probit transform
_FRACTION_CLIP = (0.01, 0.99)


@dataclass(frozen=True)
class DropoutCurveParams:
    """Inflection point and scale of one sample's dropout curve."""

    inflection: float
    scale: float  # Stored negative; abs(scale) is the curve width

    def __post_init__(self):
        if not np.isfinite(self.inflection) or not np.isfinite(self.scale):
            raise NumericalError(
                f"Dropout curve parameters must be finite: ({self.inflection}, {self.scale})"
            )
        if self.scale == 0:
            raise NumericalError("Dropout curve scale must be non-zero")
        object.__setattr__(self, 'inflection', float(self.inflection))
        object.__setattr__(self, 'scale', -abs(float(self.scale)))

    @property
    def width(self) -> float:
        return -self.scale


def evaluate(x, params: DropoutCurveParams, log: bool = False, complement: bool = False):
    """Probability that a value of latent intensity x is missing.

    Args:
        x: Latent log-intensities (scalar or array)
        params: Dropout curve parameters
        log: Return the natural log of the probability
        complement: Return P(observed) = 1 - P(missing) instead

    Returns:
        Probability (or log-probability) with the shape of x

    """
    z = (params.inflection - np.asarray(x, dtype=float)) / params.width
    if complement:
        z = -z
    if log:
        return log_ndtr(z)
    return ndtr(z)


def _spread(values: np.ndarray) -> float:
    """Interquartile range, or 1.0 when it collapses."""
    q75, q25 = np.percentile(values, [75, 25])
    iqr = float(q75 - q25)
    return iqr if iqr > 0 else 1.0


def flat_curve(latent_intensities, missing_everywhere: bool) -> DropoutCurveParams:
    """Wide curve for a column without usable contrast.

    Placed FLAT_CURVE_OFFSET widths below the smallest value (nothing drops
    out) or above the largest value (everything drops out).
    """
    x = np.asarray(latent_intensities, dtype=float)
    x = x[np.isfinite(x)]
    if len(x) == 0:
        raise NumericalError("Cannot place a dropout curve without any intensities")
    width = _spread(x)
    if missing_everywhere:
        inflection = x.max() + FLAT_CURVE_OFFSET * width
    else:
        inflection = x.min() - FLAT_CURVE_OFFSET * width
    return DropoutCurveParams(inflection, -width)


def _negative_log_likelihood(
    theta: np.ndarray,
    x: np.ndarray,
    missing: np.ndarray,
    latent_var: np.ndarray,
) -> tuple[float, np.ndarray]:
    """Probit dropout likelihood and its gradient in (inflection, log width)."""
    rho, log_width = theta
    width = np.exp(log_width)

    # Observed: log P(observed | x) = log Phi((x - rho) / w)
    obs = ~missing
    z_obs = (x[obs] - rho) / width
    ll = log_ndtr(z_obs).sum()
    h_obs = inverse_mills_ratio(z_obs)
    grad_rho = -(h_obs / width).sum()
    grad_lw = -(h_obs * z_obs).sum()

    # Missing: marginal log P(missing) = log Phi((rho - m) / sqrt(w^2 + v))
    total_var = width * width + latent_var[missing]
    total_sd = np.sqrt(total_var)
    z_mis = (rho - x[missing]) / total_sd
    ll += log_ndtr(z_mis).sum()
    h_mis = inverse_mills_ratio(z_mis)
    grad_rho += (h_mis / total_sd).sum()
    grad_lw += -(h_mis * z_mis * width * width / total_var).sum()

    return -ll, -np.array([grad_rho, grad_lw])


def fit(
    latent_intensities,
    missing,
    latent_variances=None,
    start: DropoutCurveParams | None = None,
) -> DropoutCurveParams:
    """Maximum likelihood fit of a probit dropout curve for one sample.

    Observed entries carry their measured intensity. Missing entries carry the
    mean of their latent distribution and, in ``latent_variances``, its
    variance, which widens the curve they are compared against.

    Args:
        latent_intensities: Intensity per protein (observed value, or latent
            mean for missing entries)
        missing: Boolean missingness indicator per protein
        latent_variances: Latent variance per protein (ignored for observed
            entries); zeros if None
        start: Starting parameters; defaults to the median intensity and
            minus the interquartile range

    Returns:
        Fitted DropoutCurveParams

    Raises:
        NumericalError: If the inputs contain no finite intensities

    """
    x = np.asarray(latent_intensities, dtype=float)
    missing = np.asarray(missing, dtype=bool)
    if latent_variances is None:
        latent_var = np.zeros_like(x)
    else:
        latent_var = np.maximum(np.asarray(latent_variances, dtype=float), 0.0)
    if x.shape != missing.shape or x.shape != latent_var.shape:
        raise NumericalError("Intensities, missingness and variances must have equal length")

    usable = np.isfinite(x) & np.isfinite(latent_var)
    x, missing, latent_var = x[usable], missing[usable], latent_var[usable]
    if len(x) == 0:
        raise NumericalError("No finite intensities to fit a dropout curve")

    if not missing.any():
        logger.debug("No missing values in sample - using flat dropout curve")
        return flat_curve(x, missing_everywhere=False)
    if missing.all():
        logger.debug("All values missing in sample - using flat dropout curve")
        return flat_curve(x, missing_everywhere=True)

    spread = _spread(x)
    if start is None:
        start = DropoutCurveParams(float(np.median(x)), -spread)

    rho_bounds = (x.min() - 2 * FLAT_CURVE_OFFSET * spread, x.max() + 2 * FLAT_CURVE_OFFSET * spread)
    width_bounds = (np.log(MIN_WIDTH), np.log(MAX_WIDTH))
    theta0 = np.array([
        np.clip(start.inflection, *rho_bounds),
        np.clip(np.log(start.width), *width_bounds),
    ])

    result = minimize(
        _negative_log_likelihood,
        theta0,
        args=(x, missing, latent_var),
        jac=True,
        method='L-BFGS-B',
        bounds=[rho_bounds, width_bounds],
        options={'ftol': 1e-14, 'gtol': 1e-9, 'maxiter': 500},
    )
    if not np.all(np.isfinite(result.x)):
        raise NumericalError(f"Dropout curve fit diverged: {result.message}")
    if not result.success:
        logger.debug(f"Dropout curve optimizer stopped early: {result.message}")

    return DropoutCurveParams(float(result.x[0]), -float(np.exp(result.x[1])))


def initial_dropout_curve(sample_values, row_means) -> DropoutCurveParams:
    """Crude dropout curve from missing fractions in low and high intensity bins.

    Proteins are split at the median of their mean observed intensity. The
    missing fraction in each half, placed at the half's median intensity,
    gives two points on the probit curve.

    Args:
        sample_values: One sample's column (NaN = missing)
        row_means: Mean observed intensity of each protein across all samples

    Returns:
        DropoutCurveParams for the sample

    """
    values = np.asarray(sample_values, dtype=float)
    row_means = np.asarray(row_means, dtype=float)
    missing = np.isnan(values)
    observed_values = values[~missing]

    if len(observed_values) == 0:
        return flat_curve(row_means, missing_everywhere=True)
    if not missing.any():
        return flat_curve(observed_values, missing_everywhere=False)

    split = np.median(row_means)
    low = row_means <= split
    high = ~low
    if not low.any() or not high.any():
        return DropoutCurveParams(float(np.median(row_means)), -_spread(row_means))

    x_low, x_high = np.median(row_means[low]), np.median(row_means[high])
    p_low = np.clip(missing[low].mean(), *_FRACTION_CLIP)
    p_high = np.clip(missing[high].mean(), *_FRACTION_CLIP)
    z_low, z_high = ndtri(p_low), ndtri(p_high)

    if z_low <= z_high or x_high <= x_low:
        # No intensity dependence visible at this resolution
        return DropoutCurveParams(float(np.median(row_means)), -_spread(row_means))

    width = float(np.clip((x_high - x_low) / (z_low - z_high), MIN_WIDTH, MAX_WIDTH))
    inflection = float(x_low + width * z_low)
    return DropoutCurveParams(inflection, -width)
