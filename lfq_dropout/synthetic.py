"""Synthetic LFQ matrices with known hyper-parameters.

Data are drawn from the same generative model the EM fits: condition means
from the location prior, protein variances from the inverse-chi-squared
prior, and dropouts from per-sample probit curves. A fixed fraction of
proteins is shifted by +/- effect_size in every condition after the first.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
from scipy.special import ndtr

from .data_io import IntensityMatrix
from .dropout_curve import DropoutCurveParams
from .hyperparameters import GlobalLocationScale
from .variance_prior import VariancePrior

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class SyntheticData:
    """Observed matrix plus the ground truth it was drawn from.

    Proteins whose values all dropped out are removed, so every array has
    one row per protein in ``matrix``.
    """

    matrix: IntensityMatrix
    complete: np.ndarray         # Latent intensities before dropout
    group_means: np.ndarray      # n_proteins x n_conditions
    protein_variances: np.ndarray
    changed: np.ndarray          # True for shifted proteins
    dropout_curves: tuple[DropoutCurveParams, ...]
    location: GlobalLocationScale
    variance_prior: VariancePrior


def generate_synthetic_data(
    n_proteins: int,
    n_conditions: int = 2,
    n_replicates: int = 3,
    frac_changed: float = 0.1,
    dropout_inflection=18.5,
    dropout_scale=-1.2,
    location_mean: float = 20.0,
    location_variance: float = 5.0,
    variance_prior_scale: float = 0.05,
    variance_prior_df: float = 2.0,
    effect_size: float = 2.0,
    random_seed: int | None = None,
) -> SyntheticData:
    """Draw a synthetic intensity matrix.

    Args:
        n_proteins: Number of proteins drawn (before removing empty rows)
        n_conditions: Number of conditions
        n_replicates: Samples per condition
        frac_changed: Fraction of proteins shifted between conditions
        dropout_inflection: Inflection point, scalar or one per sample
        dropout_scale: Curve scale, scalar or one per sample
        location_mean: Mean of the condition means
        location_variance: Variance of the condition means
        variance_prior_scale: Scale s0^2 of the variance prior
        variance_prior_df: Degrees of freedom of the variance prior
        effect_size: Absolute shift of changed proteins
        random_seed: Seed for numpy's default_rng

    Returns:
        SyntheticData

    """
    if n_proteins < 1 or n_conditions < 1 or n_replicates < 1:
        raise ValueError("n_proteins, n_conditions and n_replicates must be positive")
    if not 0 <= frac_changed <= 1:
        raise ValueError(f"frac_changed must be within [0, 1], got {frac_changed}")

    rng = np.random.default_rng(random_seed)
    n_samples = n_conditions * n_replicates
    condition_index = np.repeat(np.arange(n_conditions), n_replicates)

    inflections = np.broadcast_to(np.asarray(dropout_inflection, dtype=float), (n_samples,))
    scales = np.broadcast_to(np.asarray(dropout_scale, dtype=float), (n_samples,))
    curves = tuple(DropoutCurveParams(r, s) for r, s in zip(inflections, scales))
    widths = np.array([c.width for c in curves])

    base = rng.normal(location_mean, np.sqrt(location_variance), size=n_proteins)
    group_means = np.repeat(base[:, np.newaxis], n_conditions, axis=1)

    n_changed = int(round(frac_changed * n_proteins))
    changed = np.zeros(n_proteins, dtype=bool)
    changed[rng.choice(n_proteins, size=n_changed, replace=False)] = True
    if n_conditions > 1 and n_changed > 0:
        signs = rng.choice([-1.0, 1.0], size=(n_changed, n_conditions - 1))
        group_means[changed, 1:] += effect_size * signs

    protein_variances = (
        variance_prior_df * variance_prior_scale / rng.chisquare(variance_prior_df, size=n_proteins)
    )
    complete = rng.normal(
        group_means[:, condition_index], np.sqrt(protein_variances)[:, np.newaxis],
    )

    p_missing = ndtr((inflections[np.newaxis, :] - complete) / widths[np.newaxis, :])
    dropped = rng.random(complete.shape) < p_missing
    values = np.where(dropped, np.nan, complete)

    keep = (~dropped).any(axis=1)
    if not keep.all():
        logger.debug(f"Removed {int((~keep).sum())} proteins without observed values")

    condition_names = [f'cond_{k + 1}' for k in range(n_conditions)]
    samples = tuple(
        f'{condition_names[k]}-{r + 1}' for k in range(n_conditions) for r in range(n_replicates)
    )
    proteins = tuple(f'protein_{i + 1}' for i in np.flatnonzero(keep))

    matrix = IntensityMatrix(
        values=values[keep],
        proteins=proteins,
        samples=samples,
        conditions=tuple(condition_names[k] for k in condition_index),
    )
    logger.info(
        f"Generated {matrix.n_proteins} proteins x {n_samples} samples "
        f"({matrix.fraction_missing:.1%} missing, {int(changed[keep].sum())} changed)"
    )

    return SyntheticData(
        matrix=matrix,
        complete=complete[keep],
        group_means=group_means[keep],
        protein_variances=protein_variances[keep],
        changed=changed[keep],
        dropout_curves=curves,
        location=GlobalLocationScale(location_mean, location_variance),
        variance_prior=VariancePrior(variance_prior_df, variance_prior_scale),
    )
