"""Contracts for consumers of a fitted FitState.

Posterior sampling, sample distances and differential testing live outside
this package. They consume an IntensityMatrix together with a FitState;
the protocols below fix their call signatures and result containers.
LaplacePosteriorSampler is a light-weight sampler that satisfies the
sampling contract with a normal approximation to each condition mean.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable

import numpy as np
import pandas as pd

from .data_io import IntensityMatrix
from .hyperparameters import FitState, e_step


@dataclass(eq=False)
class DistanceEstimate:
    """Sample x sample distances and their standard deviations."""

    mean: pd.DataFrame
    sd: pd.DataFrame


@dataclass(eq=False)
class DifferentialTestResult:
    """Per-protein result of contrasting two sets of posterior draws."""

    pval: pd.Series
    adj_pval: pd.Series
    diff: pd.Series        # Posterior mean difference
    diff_lower: pd.Series  # Credible interval bounds
    diff_upper: pd.Series


@runtime_checkable
class PosteriorSampler(Protocol):
    def sample(
        self,
        matrix: IntensityMatrix,
        state: FitState,
        n_draws: int,
        random_seed: int | None = None,
    ) -> np.ndarray:
        """Draws of the condition means, shape (n_draws, n_proteins, n_conditions)."""
        ...


@runtime_checkable
class DistanceApproximator(Protocol):
    def __call__(self, matrix: IntensityMatrix, state: FitState) -> DistanceEstimate:
        ...


@runtime_checkable
class DifferentialTest(Protocol):
    def __call__(self, draws_a: np.ndarray, draws_b: np.ndarray) -> DifferentialTestResult:
        ...


class LaplacePosteriorSampler:
    """Normal approximation around the posterior mode of each condition mean."""

    def __init__(self, inner_iter: int = 10, n_workers: int = 1):
        self.inner_iter = inner_iter
        self.n_workers = n_workers

    def sample(
        self,
        matrix: IntensityMatrix,
        state: FitState,
        n_draws: int,
        random_seed: int | None = None,
    ) -> np.ndarray:
        stats = e_step(
            np.asarray(matrix.values), matrix.condition_index, state,
            self.inner_iter, self.n_workers,
        )
        rng = np.random.default_rng(random_seed)
        noise = rng.standard_normal((n_draws,) + stats.latent_mean.shape)
        return stats.latent_mean + noise * np.sqrt(stats.latent_mean_var)
