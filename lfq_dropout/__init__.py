"""
lfq-dropout: dropout-aware hyper-parameter estimation for label-free proteomics

Fits per-sample probit dropout curves, a location prior on protein
intensities and an inverse-chi-squared prior on protein variances to a
protein x sample log-intensity matrix whose missing values are mostly
low-intensity dropouts (missing not at random).
"""

__version__ = "0.1.0"

from .errors import (
    InputError,
    NumericalError,
    NonConvergenceWarning,
)
from .truncnorm import (
    truncated_normal_moments,
    probit_censored_moments,
)
from .dropout_curve import (
    DropoutCurveParams,
    evaluate,
    fit as fit_dropout_curve,
)
from .variance_prior import (
    VariancePrior,
    fit_variance_prior,
)
from .data_io import (
    IntensityMatrix,
    load_intensity_table,
    load_design,
    median_normalization,
)
from .hyperparameters import (
    EMConfig,
    FitState,
    FitStatus,
    GlobalLocationScale,
    SufficientStats,
    fit_hyperparameters,
    estimate_protein_means,
)
from .synthetic import (
    SyntheticData,
    generate_synthetic_data,
)
from .interfaces import (
    PosteriorSampler,
    DistanceApproximator,
    DifferentialTest,
    LaplacePosteriorSampler,
)
