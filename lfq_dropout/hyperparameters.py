"""Hyper-parameter estimation by Expectation-Maximization.

Model for protein i, sample j in condition k = c(j):

    mu_ik      ~ N(mu0, var0)                      (location prior)
    sigma_i^2  ~ Inv-chi^2(d0, s0^2)               (variance prior)
    y_ij       ~ N(mu_ik, sigma_i^2)               (latent intensity)
    P(y_ij missing | y_ij) = Phi((rho_j - y_ij) / w_j)   (dropout curve)

The hyper-parameters (rho_j, w_j), (mu0, var0) and (d0, s0^2) are shared by
all proteins and estimated by alternating

- E-step: per protein, the posterior mode of every condition mean under the
  censored likelihood and the moderated protein variance, where each missing
  cell contributes its censored moments.
- M-step: a dropout curve fit per sample, the location prior from the
  pooled condition means, and the variance prior from the completed-data
  variances.

The proteins are independent given the hyper-parameters, so the E-step is
vectorized over rows and can be split into row blocks handled by worker
processes.
"""

from __future__ import annotations

import logging
import warnings
from collections.abc import Callable
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass, replace
from enum import Enum

import numpy as np
import pandas as pd

from . import dropout_curve
from .data_io import IntensityMatrix
from .dropout_curve import DropoutCurveParams, initial_dropout_curve
from .errors import InputError, NonConvergenceWarning, NumericalError
from .truncnorm import probit_censored_moments, upper_truncation_factors
from .variance_prior import (
    MIN_VARIANCE_ESTIMATES,
    VariancePrior,
    fit_variance_prior,
    moderated_variance,
)

logger = logging.getLogger(__name__)

# Newton iterations for the condition means inside one E-step
MAX_NEWTON_ITER = 50
NEWTON_TOL = 1e-10
MAX_NEWTON_STEP = 5.0

# Relative change in protein variance that ends the inner E-step loop
INNER_TOL = 1e-10


class FitStatus(Enum):
    INITIALIZING = 'initializing'
    ITERATING = 'iterating'
    CONVERGED = 'converged'
    MAX_ITER_REACHED = 'max_iter_reached'
    FAILED = 'failed'


@dataclass(frozen=True)
class GlobalLocationScale:
    """Population distribution of true condition means."""

    mean: float
    variance: float

    def __post_init__(self):
        if not np.isfinite(self.mean) or not (np.isfinite(self.variance) and self.variance > 0):
            raise NumericalError(
                f"Invalid location prior ({self.mean}, {self.variance})"
            )
        object.__setattr__(self, 'mean', float(self.mean))
        object.__setattr__(self, 'variance', float(self.variance))


@dataclass(frozen=True)
class FitState:
    """Hyper-parameters plus convergence metadata.

    A new FitState is created every EM iteration; the one returned by
    fit_hyperparameters is final and safe to share.
    """

    samples: tuple[str, ...]
    dropout_curves: tuple[DropoutCurveParams, ...]
    location: GlobalLocationScale
    variance_prior: VariancePrior
    n_iter: int = 0
    error: float = float('inf')
    converged: bool = False
    status: FitStatus = FitStatus.INITIALIZING

    def __post_init__(self):
        if len(self.samples) != len(self.dropout_curves):
            raise InputError(
                f"{len(self.dropout_curves)} dropout curves for {len(self.samples)} samples"
            )

    @property
    def inflections(self) -> np.ndarray:
        return np.array([c.inflection for c in self.dropout_curves])

    @property
    def widths(self) -> np.ndarray:
        return np.array([c.width for c in self.dropout_curves])

    def parameter_vector(self) -> np.ndarray:
        """All hyper-parameters, positive ones on log scale.

        Order: inflections, log widths, location mean, log location variance,
        log prior df, log prior scale.
        """
        return np.concatenate([
            self.inflections,
            np.log(self.widths),
            [
                self.location.mean,
                np.log(self.location.variance),
                np.log(self.variance_prior.df),
                np.log(self.variance_prior.scale),
            ],
        ])

    def dropout_frame(self) -> pd.DataFrame:
        """One row per sample with its dropout curve."""
        return pd.DataFrame({
            'sample': list(self.samples),
            'inflection': self.inflections,
            'scale': [c.scale for c in self.dropout_curves],
        })

    def to_dict(self) -> dict:
        return {
            'samples': list(self.samples),
            'dropout_curves': [
                {'sample': s, 'inflection': c.inflection, 'scale': c.scale}
                for s, c in zip(self.samples, self.dropout_curves)
            ],
            'location': {'mean': self.location.mean, 'variance': self.location.variance},
            'variance_prior': {'df': self.variance_prior.df, 'scale': self.variance_prior.scale},
            'n_iter': self.n_iter,
            'error': self.error if np.isfinite(self.error) else None,
            'converged': self.converged,
            'status': self.status.value,
        }

    @classmethod
    def from_dict(cls, data: dict) -> FitState:
        error = data.get('error')
        return cls(
            samples=tuple(data['samples']),
            dropout_curves=tuple(
                DropoutCurveParams(c['inflection'], c['scale']) for c in data['dropout_curves']
            ),
            location=GlobalLocationScale(**data['location']),
            variance_prior=VariancePrior(**data['variance_prior']),
            n_iter=int(data.get('n_iter', 0)),
            error=float('inf') if error is None else float(error),
            converged=bool(data.get('converged', False)),
            status=FitStatus(data.get('status', FitStatus.INITIALIZING.value)),
        )


@dataclass
class EMConfig:
    """Settings for fit_hyperparameters."""

    max_iter: int = 200
    tolerance: float = 1e-4
    n_subsample: int | None = None     # Rows used for fitting (None = all)
    verbose: bool = False              # Log every iteration at INFO level
    random_seed: int | None = None     # Subsampling seed
    min_variance_estimates: int = MIN_VARIANCE_ESTIMATES
    n_workers: int = 1                 # Processes for the E-step
    inner_iter: int = 10               # Mean/variance alternations per E-step

    def __post_init__(self):
        if self.max_iter < 1:
            raise ValueError(f"max_iter must be >= 1, got {self.max_iter}")
        if not self.tolerance > 0:
            raise ValueError(f"tolerance must be positive, got {self.tolerance}")
        if self.n_subsample is not None and self.n_subsample < 1:
            raise ValueError(f"n_subsample must be >= 1, got {self.n_subsample}")
        if self.n_workers < 1:
            raise ValueError(f"n_workers must be >= 1, got {self.n_workers}")
        if self.inner_iter < 1:
            raise ValueError(f"inner_iter must be >= 1, got {self.inner_iter}")


@dataclass
class SufficientStats:
    """Per protein x condition summaries produced by one E-step."""

    n_observed: np.ndarray       # n x K
    observed_mean: np.ndarray    # n x K, NaN without observations
    observed_var: np.ndarray     # n x K uncorrected, NaN without observations
    n_missing: np.ndarray        # n x K
    latent_mean: np.ndarray      # n x K posterior mode of the condition mean
    latent_mean_var: np.ndarray  # n x K posterior variance of the condition mean
    latent_var: np.ndarray       # n, moderated protein variance
    raw_var: np.ndarray          # n, completed-data residual variance
    df: np.ndarray               # n, observed residual df


def _sum_by_condition(cells: np.ndarray, condition_index: np.ndarray, n_conditions: int) -> np.ndarray:
    """Row sums of cells within each condition (n x m -> n x K)."""
    out = np.zeros((cells.shape[0], n_conditions))
    for k in range(n_conditions):
        out[:, k] = cells[:, condition_index == k].sum(axis=1)
    return out


def _observed_condition_stats(values, condition_index, n_conditions):
    """Counts, means and sums of squares of the observed values per condition."""
    observed = ~np.isnan(values)
    y = np.where(observed, values, 0.0)
    n_obs = _sum_by_condition(observed.astype(float), condition_index, n_conditions)
    sums = _sum_by_condition(y, condition_index, n_conditions)

    has_obs = n_obs > 0
    means = np.full(n_obs.shape, np.nan)
    means[has_obs] = sums[has_obs] / n_obs[has_obs]

    dev = np.where(observed, y - np.nan_to_num(means)[:, condition_index], 0.0)
    ss = _sum_by_condition(dev * dev, condition_index, n_conditions)
    return n_obs, means, ss


def _mean_derivatives(mu, sigma2, y, observed, condition_index, n_conditions,
                      inflections, widths, location):
    """Gradient and Hessian of the log posterior of each condition mean."""
    mu_cells = mu[:, condition_index]
    s2 = sigma2[:, np.newaxis]

    grad_cells = np.where(observed, (y - mu_cells) / s2, 0.0)
    hess_cells = np.where(observed, -1.0 / s2, 0.0)

    # Missing cells: log Phi((rho - mu) / sqrt(w^2 + sigma^2))
    total_var = widths[np.newaxis, :] ** 2 + s2
    total_sd = np.sqrt(total_var)
    z = (inflections[np.newaxis, :] - mu_cells) / total_sd
    lam, factor = upper_truncation_factors(z.ravel())
    lam = lam.reshape(z.shape)
    curvature = (1.0 - factor).reshape(z.shape)

    missing = ~observed
    grad_cells = np.where(missing, -lam / total_sd, grad_cells)
    hess_cells = np.where(missing, -curvature / total_var, hess_cells)

    grad = _sum_by_condition(grad_cells, condition_index, n_conditions)
    grad += (location.mean - mu) / location.variance
    hess = _sum_by_condition(hess_cells, condition_index, n_conditions)
    hess -= 1.0 / location.variance
    return grad, hess


def _newton_means(mu, sigma2, y, observed, condition_index, n_conditions,
                  inflections, widths, location):
    """Posterior modes of the condition means and their Laplace variances.

    Rows stop updating individually once their Newton step is below
    NEWTON_TOL.
    """
    mu = mu.copy()
    active = np.ones(mu.shape[0], dtype=bool)
    for _ in range(MAX_NEWTON_ITER):
        rows = np.flatnonzero(active)
        grad, hess = _mean_derivatives(
            mu[rows], sigma2[rows], y[rows], observed[rows],
            condition_index, n_conditions, inflections, widths, location,
        )
        step = np.clip(-grad / hess, -MAX_NEWTON_STEP, MAX_NEWTON_STEP)
        mu[rows] += step
        active[rows[np.abs(step).max(axis=1) < NEWTON_TOL]] = False
        if not active.any():
            break

    _, hess = _mean_derivatives(
        mu, sigma2, y, observed, condition_index, n_conditions, inflections, widths, location,
    )
    return mu, -1.0 / hess


def _expected_rss(mu, sigma2, y, observed, condition_index, inflections, widths):
    """Expected residual sum of squares, censored moments for missing cells."""
    mu_cells = mu[:, condition_index]
    resid = np.where(observed, (y - mu_cells) ** 2, 0.0)

    missing = ~observed
    if missing.any():
        rows, cols = np.nonzero(missing)
        cond_mean, cond_var, _ = probit_censored_moments(
            mu_cells[rows, cols], sigma2[rows], inflections[cols], widths[cols],
        )
        resid[rows, cols] = cond_var + (cond_mean - mu_cells[rows, cols]) ** 2

    return resid.sum(axis=1)


def _e_step_block(values, condition_index, n_conditions, state: FitState, inner_iter: int) -> SufficientStats:
    observed = ~np.isnan(values)
    y = np.where(observed, values, 0.0)
    inflections = state.inflections
    widths = state.widths
    location = state.location
    prior = state.variance_prior

    n_obs, obs_mean, obs_ss = _observed_condition_stats(values, condition_index, n_conditions)
    has_obs = n_obs > 0
    obs_var = np.full(n_obs.shape, np.nan)
    obs_var[has_obs] = obs_ss[has_obs] / n_obs[has_obs]
    n_cells = np.bincount(condition_index, minlength=n_conditions)
    n_missing = n_cells[np.newaxis, :] - n_obs

    # Residual degrees of freedom of the completed data and of the observed values
    complete_df = max(values.shape[1] - n_conditions, 0)
    observed_df = n_obs.sum(axis=1) - has_obs.sum(axis=1)

    mu = np.where(has_obs, np.nan_to_num(obs_mean), location.mean)
    sigma2 = np.full(values.shape[0], prior.scale)
    raw_var = sigma2.copy()
    mu_var = np.full(mu.shape, location.variance)

    active = np.ones(values.shape[0], dtype=bool)
    for _ in range(inner_iter):
        rows = np.flatnonzero(active)
        mu_rows, mu_var_rows = _newton_means(
            mu[rows], sigma2[rows], y[rows], observed[rows],
            condition_index, n_conditions, inflections, widths, location,
        )
        mu[rows] = mu_rows
        mu_var[rows] = mu_var_rows

        rss = _expected_rss(
            mu_rows, sigma2[rows], y[rows], observed[rows], condition_index, inflections, widths,
        )
        raw_var[rows] = rss / max(complete_df, 1)
        new_sigma2 = moderated_variance(raw_var[rows], complete_df, prior)
        change = np.abs(new_sigma2 - sigma2[rows]) / sigma2[rows]
        sigma2[rows] = new_sigma2
        active[rows[change < INNER_TOL]] = False
        if not active.any():
            break

    return SufficientStats(
        n_observed=n_obs.astype(int),
        observed_mean=obs_mean,
        observed_var=obs_var,
        n_missing=n_missing.astype(int),
        latent_mean=mu,
        latent_mean_var=mu_var,
        latent_var=sigma2,
        raw_var=raw_var,
        df=observed_df.astype(float),
    )


def _e_step_worker(args) -> SufficientStats:
    """Process-pool entry point; args is the tuple for _e_step_block."""
    return _e_step_block(*args)


def _concat_stats(blocks: list[SufficientStats]) -> SufficientStats:
    return SufficientStats(**{
        name: np.concatenate([getattr(b, name) for b in blocks])
        for name in SufficientStats.__dataclass_fields__
    })


def e_step(
    values: np.ndarray,
    condition_index: np.ndarray,
    state: FitState,
    inner_iter: int = 10,
    n_workers: int = 1,
) -> SufficientStats:
    """Latent condition means and protein variances under the current state.

    Args:
        values: n_proteins x n_samples log-intensities, NaN = missing
        condition_index: Integer condition per sample
        state: Current hyper-parameters (read only)
        inner_iter: Alternations between mean and variance updates
        n_workers: Worker processes; rows are split into contiguous blocks

    Returns:
        SufficientStats for every row

    """
    condition_index = np.asarray(condition_index, dtype=int)
    n_conditions = int(condition_index.max()) + 1

    n_rows = values.shape[0]
    if n_workers <= 1 or n_rows < 2 * n_workers:
        return _e_step_block(values, condition_index, n_conditions, state, inner_iter)

    bounds = np.linspace(0, n_rows, n_workers + 1).astype(int)
    tasks = [
        (values[lo:hi], condition_index, n_conditions, state, inner_iter)
        for lo, hi in zip(bounds[:-1], bounds[1:])
    ]
    with ProcessPoolExecutor(max_workers=n_workers) as executor:
        blocks = list(executor.map(_e_step_worker, tasks))
    return _concat_stats(blocks)


def m_step(
    values: np.ndarray,
    condition_index: np.ndarray,
    stats: SufficientStats,
    state: FitState,
    min_variance_estimates: int = MIN_VARIANCE_ESTIMATES,
) -> tuple[tuple[DropoutCurveParams, ...], GlobalLocationScale, VariancePrior]:
    """Re-fit all hyper-parameters from one E-step.

    Raises:
        NumericalError: Propagated from the dropout curve or variance prior fits

    """
    observed = ~np.isnan(values)
    mu_cells = stats.latent_mean[:, condition_index]
    predictive_var = stats.latent_var[:, np.newaxis] + stats.latent_mean_var[:, condition_index]
    latent = np.where(observed, values, mu_cells)
    latent_var = np.where(observed, 0.0, predictive_var)

    curves = tuple(
        dropout_curve.fit(
            latent[:, j], ~observed[:, j], latent_var[:, j], start=state.dropout_curves[j],
        )
        for j in range(values.shape[1])
    )

    means = stats.latent_mean.ravel()
    loc_mean = means.mean()
    loc_var = np.mean((means - loc_mean) ** 2 + stats.latent_mean_var.ravel())
    location = GlobalLocationScale(loc_mean, loc_var)

    variance_prior = fit_variance_prior(
        stats.raw_var, stats.df, min_proteins=min_variance_estimates, start=state.variance_prior,
    )
    return curves, location, variance_prior


def convergence_error(old: FitState, new: FitState) -> float:
    """Largest change in the parameter vector, relative to 1 + |old|."""
    old_vec = old.parameter_vector()
    new_vec = new.parameter_vector()
    return float(np.max(np.abs(new_vec - old_vec) / (1.0 + np.abs(old_vec))))


def initial_state(
    values: np.ndarray,
    condition_index: np.ndarray,
    samples: tuple[str, ...],
    min_variance_estimates: int = MIN_VARIANCE_ESTIMATES,
) -> FitState:
    """Starting hyper-parameters from the observed values alone.

    Raises:
        NumericalError: If too few proteins have replicate observations
            to fit the variance prior

    """
    condition_index = np.asarray(condition_index, dtype=int)
    n_conditions = int(condition_index.max()) + 1
    observed = ~np.isnan(values)

    observed_values = values[observed]
    location = GlobalLocationScale(observed_values.mean(), observed_values.var())

    row_means = np.where(observed, values, 0.0).sum(axis=1) / observed.sum(axis=1)
    curves = tuple(initial_dropout_curve(values[:, j], row_means) for j in range(values.shape[1]))

    n_obs, _, obs_ss = _observed_condition_stats(values, condition_index, n_conditions)
    df = n_obs.sum(axis=1) - (n_obs > 0).sum(axis=1)
    raw_var = np.full(values.shape[0], np.nan)
    has_df = df > 0
    raw_var[has_df] = obs_ss.sum(axis=1)[has_df] / df[has_df]
    variance_prior = fit_variance_prior(raw_var, df, min_proteins=min_variance_estimates)

    return FitState(
        samples=tuple(samples),
        dropout_curves=curves,
        location=location,
        variance_prior=variance_prior,
    )


def _select_rows(n_rows: int, n_subsample: int | None, random_seed: int | None) -> np.ndarray:
    if n_subsample is None or n_subsample >= n_rows:
        return np.arange(n_rows)
    rng = np.random.default_rng(random_seed)
    return np.sort(rng.choice(n_rows, size=n_subsample, replace=False))


def fit_hyperparameters(
    matrix: IntensityMatrix,
    config: EMConfig | None = None,
    initial: FitState | None = None,
    progress: Callable[[FitState], None] | None = None,
) -> FitState:
    """Fit dropout curves, location prior and variance prior by EM.

    Args:
        matrix: Protein x sample intensities with experimental design
        config: EM settings (defaults to EMConfig())
        initial: Starting hyper-parameters, e.g. a previous fit; computed
            from the observed values when None
        progress: Called with the new FitState after every iteration

    Returns:
        Final FitState with status CONVERGED or MAX_ITER_REACHED

    Raises:
        InputError: If ``initial`` was fitted on different samples
        NumericalError: If a sub-fit breaks down; the fit is abandoned

    """
    config = config or EMConfig()
    condition_index = matrix.condition_index

    rows = _select_rows(matrix.n_proteins, config.n_subsample, config.random_seed)
    fit_matrix = matrix if len(rows) == matrix.n_proteins else matrix.subset_rows(rows)
    values = np.asarray(fit_matrix.values)

    logger.info(
        f"Fitting hyper-parameters: {len(rows)} of {matrix.n_proteins} proteins, "
        f"{matrix.n_samples} samples, {len(matrix.condition_levels)} conditions, "
        f"{np.isnan(values).mean():.1%} missing"
    )

    iteration = 0
    try:
        if initial is None:
            state = initial_state(values, condition_index, matrix.samples, config.min_variance_estimates)
        else:
            if tuple(initial.samples) != matrix.samples:
                raise InputError("Initial FitState was fitted on different samples")
            state = replace(
                initial, n_iter=0, error=float('inf'), converged=False,
                status=FitStatus.INITIALIZING,
            )
        state = replace(state, status=FitStatus.ITERATING)

        for iteration in range(1, config.max_iter + 1):
            stats = e_step(values, condition_index, state, config.inner_iter, config.n_workers)
            curves, location, variance_prior = m_step(
                values, condition_index, stats, state, config.min_variance_estimates,
            )
            candidate = replace(
                state,
                dropout_curves=curves,
                location=location,
                variance_prior=variance_prior,
                n_iter=iteration,
            )
            error = convergence_error(state, candidate)
            converged = error < config.tolerance
            state = replace(
                candidate,
                error=error,
                converged=converged,
                status=FitStatus.CONVERGED if converged else FitStatus.ITERATING,
            )

            message = (
                f"  Iteration {iteration}: error={error:.3g}, "
                f"location=({location.mean:.3f}, {location.variance:.3f}), "
                f"variance prior=(df={variance_prior.df:.3f}, scale={variance_prior.scale:.4f})"
            )
            if config.verbose:
                logger.info(message)
            else:
                logger.debug(message)
            if progress is not None:
                progress(state)

            if converged:
                break
    except NumericalError as e:
        logger.error(f"Hyper-parameter fit {FitStatus.FAILED.value} at iteration {iteration}: {e}")
        raise

    if state.converged:
        logger.info(f"Converged after {state.n_iter} iterations (error={state.error:.3g})")
    else:
        state = replace(state, status=FitStatus.MAX_ITER_REACHED)
        message = (
            f"EM did not converge after {config.max_iter} iterations "
            f"(error={state.error:.3g}, tolerance={config.tolerance:g})"
        )
        logger.warning(message)
        warnings.warn(message, NonConvergenceWarning, stacklevel=2)

    return state


def estimate_protein_means(
    matrix: IntensityMatrix,
    state: FitState,
    inner_iter: int = 10,
    n_workers: int = 1,
) -> pd.DataFrame:
    """Posterior condition means of every protein under fitted hyper-parameters.

    Returns:
        DataFrame indexed by protein with, per condition, the posterior mean
        ('<condition>_mean'), its standard deviation ('<condition>_sd') and the
        number of observed values ('<condition>_n_observed'), plus the
        moderated protein variance ('variance')

    """
    if tuple(state.samples) != matrix.samples:
        raise InputError("FitState was fitted on different samples")

    stats = e_step(
        np.asarray(matrix.values), matrix.condition_index, state, inner_iter, n_workers,
    )
    columns = {}
    for k, condition in enumerate(matrix.condition_levels):
        columns[f'{condition}_mean'] = stats.latent_mean[:, k]
        columns[f'{condition}_sd'] = np.sqrt(stats.latent_mean_var[:, k])
        columns[f'{condition}_n_observed'] = stats.n_observed[:, k]
    columns['variance'] = stats.latent_var
    return pd.DataFrame(columns, index=pd.Index(matrix.proteins, name='protein'))
