"""Tests for EM hyper-parameter estimation."""

import json
import logging

import numpy as np
import pytest

from lfq_dropout.data_io import IntensityMatrix
from lfq_dropout.dropout_curve import DropoutCurveParams, evaluate
from lfq_dropout.errors import InputError, NonConvergenceWarning, NumericalError
from lfq_dropout.hyperparameters import (
    _select_rows,
    EMConfig,
    FitState,
    FitStatus,
    GlobalLocationScale,
    convergence_error,
    e_step,
    estimate_protein_means,
    fit_hyperparameters,
    initial_state,
)
from lfq_dropout.synthetic import generate_synthetic_data
from lfq_dropout.variance_prior import VariancePrior


@pytest.fixture(scope='module')
def synthetic():
    """Default synthetic data set: 1000 proteins, 2 x 3 samples."""
    return generate_synthetic_data(1000, random_seed=42)


@pytest.fixture(scope='module')
def fitted(synthetic):
    """Full EM fit on the synthetic data set."""
    return fit_hyperparameters(synthetic.matrix, EMConfig(random_seed=1))


def _replace_values(matrix, values):
    return IntensityMatrix(values, matrix.proteins, matrix.samples, matrix.conditions)


def _handcrafted_state(samples, inflection=19.0, width=1.0):
    return FitState(
        samples=tuple(samples),
        dropout_curves=tuple(DropoutCurveParams(inflection, -width) for _ in samples),
        location=GlobalLocationScale(20.0, 1e4),
        variance_prior=VariancePrior(4.0, 0.1),
    )


class TestFitHyperparameters:
    """Tests for recovering known hyper-parameters."""

    def test_converges(self, fitted):
        """Test status and metadata of the final state."""
        assert fitted.converged
        assert fitted.status == FitStatus.CONVERGED
        assert fitted.n_iter >= 1
        assert fitted.error < 1e-4

    def test_recovers_dropout_curves(self, fitted, synthetic):
        """Test inflection and width of every sample's curve."""
        for curve in fitted.dropout_curves:
            assert curve.inflection == pytest.approx(18.5, abs=0.5)
            assert curve.width == pytest.approx(1.2, rel=0.2)
            assert curve.scale < 0

    def test_recovers_location(self, fitted):
        """Test the location prior."""
        assert fitted.location.mean == pytest.approx(20.0, abs=0.5)
        assert 4.0 <= fitted.location.variance <= 6.5

    def test_recovers_variance_prior_scale(self, fitted):
        """Test the variance prior scale is within a factor of two."""
        assert 0.025 <= fitted.variance_prior.scale <= 0.1
        assert fitted.variance_prior.df > 0

    def test_restart_from_converged_state(self, fitted, synthetic):
        """Test that a converged state is a fixed point."""
        again = fit_hyperparameters(synthetic.matrix, EMConfig(), initial=fitted)

        assert again.converged
        assert again.n_iter == 1
        np.testing.assert_allclose(
            again.parameter_vector(), fitted.parameter_vector(), rtol=1e-3, atol=1e-3,
        )

    def test_initial_from_other_samples_raises(self, fitted, synthetic):
        """Test that the initial state must match the matrix samples."""
        other = FitState.from_dict({**fitted.to_dict(), 'samples': [f'x{i}' for i in range(6)]})

        with pytest.raises(InputError):
            fit_hyperparameters(synthetic.matrix, initial=other)

    def test_single_observation_row(self, synthetic):
        """Test a protein observed only once."""
        values = np.array(synthetic.matrix.values)
        values[0] = np.nan
        values[0, 2] = 21.0
        matrix = _replace_values(synthetic.matrix, values)

        state = fit_hyperparameters(matrix, EMConfig(tolerance=1e-3))
        means = estimate_protein_means(matrix, state)

        assert np.all(np.isfinite(means.iloc[0].to_numpy(dtype=float)))
        assert means.iloc[0]['variance'] > 0

    def test_all_observed_sample_gets_flat_curve(self, synthetic):
        """Test a sample without dropouts."""
        values = np.array(synthetic.matrix.values)
        values[:, 0] = synthetic.complete[:, 0]
        matrix = _replace_values(synthetic.matrix, values)

        state = fit_hyperparameters(matrix, EMConfig(tolerance=1e-3))

        assert evaluate(np.nanmin(values[:, 0]), state.dropout_curves[0]) < 1e-6
        assert state.dropout_curves[1].inflection == pytest.approx(18.5, abs=0.7)

    @pytest.mark.filterwarnings("ignore::lfq_dropout.errors.NonConvergenceWarning")
    def test_subsample_is_deterministic(self, synthetic):
        """Test that a fixed seed selects the same proteins."""
        config = EMConfig(n_subsample=300, random_seed=5, max_iter=5)

        a = fit_hyperparameters(synthetic.matrix, config)
        b = fit_hyperparameters(synthetic.matrix, config)

        np.testing.assert_array_equal(a.parameter_vector(), b.parameter_vector())

    @pytest.mark.filterwarnings("ignore::lfq_dropout.errors.NonConvergenceWarning")
    def test_subsample_fits_selected_rows(self, synthetic):
        """Test that subsampling is a fit on the selected proteins only."""
        matrix = synthetic.matrix
        rows = _select_rows(matrix.n_proteins, 300, 5)

        subsampled = fit_hyperparameters(matrix, EMConfig(n_subsample=300, random_seed=5, max_iter=2))
        direct = fit_hyperparameters(matrix.subset_rows(rows), EMConfig(max_iter=2))

        assert len(rows) == 300
        np.testing.assert_array_equal(subsampled.parameter_vector(), direct.parameter_vector())

    def test_max_iter_reached_warns(self, synthetic):
        """Test the non-convergence warning and final status."""
        with pytest.warns(NonConvergenceWarning):
            state = fit_hyperparameters(synthetic.matrix, EMConfig(max_iter=1))

        assert state.status == FitStatus.MAX_ITER_REACHED
        assert not state.converged
        assert state.n_iter == 1

    @pytest.mark.filterwarnings("ignore::lfq_dropout.errors.NonConvergenceWarning")
    def test_verbose_and_progress_do_not_change_result(self, synthetic, caplog):
        """Test that reporting options leave the numbers untouched."""
        seen = []

        quiet = fit_hyperparameters(synthetic.matrix, EMConfig(max_iter=3))
        with caplog.at_level(logging.INFO, logger='lfq_dropout.hyperparameters'):
            loud = fit_hyperparameters(
                synthetic.matrix, EMConfig(max_iter=3, verbose=True), progress=seen.append,
            )

        np.testing.assert_array_equal(quiet.parameter_vector(), loud.parameter_vector())
        assert [s.n_iter for s in seen] == [1, 2, 3]
        assert all(s.status == FitStatus.ITERATING for s in seen)
        assert 'Iteration 3' in caplog.text

    def test_too_few_variance_estimates_fails(self, synthetic, caplog):
        """Test that an unfittable variance prior aborts the fit."""
        config = EMConfig(min_variance_estimates=10 ** 6)

        with pytest.raises(NumericalError):
            fit_hyperparameters(synthetic.matrix, config)
        assert 'failed' in caplog.text


class TestEStep:
    """Tests for the E-step on handcrafted states."""

    def test_censoring_pulls_mean_down(self):
        """Test that missing cells near the curve lower the condition mean."""
        values = np.array([
            [19.0, np.nan, 19.4, 22.0, 22.1, 21.9],
            [19.1, 19.3, 19.2, 22.0, 22.1, 21.9],
        ])
        condition_index = np.array([0, 0, 0, 1, 1, 1])
        state = _handcrafted_state([f'S{j}' for j in range(6)])

        stats = e_step(values, condition_index, state)

        assert stats.latent_mean[0, 0] < 19.2
        assert stats.latent_mean[1, 0] == pytest.approx(19.2, abs=1e-3)
        assert stats.latent_mean[0, 1] == pytest.approx(22.0, abs=1e-3)
        np.testing.assert_array_equal(stats.n_observed, [[2, 3], [3, 3]])
        np.testing.assert_array_equal(stats.n_missing, [[1, 0], [0, 0]])
        np.testing.assert_array_equal(stats.df, [3.0, 4.0])

    def test_unobserved_condition_uses_curve_and_prior(self):
        """Test a condition with only missing cells sits below the curve."""
        values = np.array([
            [np.nan, np.nan, np.nan, 22.0, 22.1, 21.9],
            [19.1, 19.3, 19.2, 22.0, 22.1, 21.9],
        ])
        condition_index = np.array([0, 0, 0, 1, 1, 1])
        state = _handcrafted_state([f'S{j}' for j in range(6)])

        stats = e_step(values, condition_index, state)

        assert np.isnan(stats.observed_mean[0, 0])
        assert np.isfinite(stats.latent_mean[0, 0])
        assert stats.latent_mean[0, 0] < 19.0
        assert stats.latent_mean_var[0, 0] > stats.latent_mean_var[1, 0]

    def test_variance_is_moderated(self):
        """Test that protein variances lie between raw and prior scale."""
        values = np.array([
            [19.0, 19.0, 19.0, 22.0, 22.0, 22.0],
            [18.0, 20.0, 19.0, 21.0, 23.0, 22.0],
        ])
        condition_index = np.array([0, 0, 0, 1, 1, 1])
        state = _handcrafted_state([f'S{j}' for j in range(6)], inflection=10.0)

        stats = e_step(values, condition_index, state)

        assert 0 < stats.latent_var[0] < 0.1
        assert 0.1 < stats.latent_var[1] < 1.0

    def test_blocks_match_single_process(self, fitted, synthetic):
        """Test that worker processes reproduce the serial result."""
        values = np.asarray(synthetic.matrix.values)
        condition_index = synthetic.matrix.condition_index

        serial = e_step(values, condition_index, fitted, n_workers=1)
        parallel = e_step(values, condition_index, fitted, n_workers=2)

        np.testing.assert_allclose(parallel.latent_mean, serial.latent_mean, rtol=1e-12)
        np.testing.assert_allclose(parallel.latent_var, serial.latent_var, rtol=1e-12)
        np.testing.assert_array_equal(parallel.n_observed, serial.n_observed)


class TestInitialState:
    """Tests for starting values."""

    def test_initial_state(self, synthetic):
        """Test that starting values are in a sensible range."""
        matrix = synthetic.matrix
        state = initial_state(np.asarray(matrix.values), matrix.condition_index, matrix.samples)

        assert state.status == FitStatus.INITIALIZING
        assert len(state.dropout_curves) == matrix.n_samples
        assert 18.0 < state.location.mean < 23.0
        assert all(c.scale < 0 for c in state.dropout_curves)


class TestFitState:
    """Tests for the FitState container."""

    def test_dict_round_trip(self, fitted):
        """Test serialization through JSON."""
        restored = FitState.from_dict(json.loads(json.dumps(fitted.to_dict())))
        assert restored == fitted

    def test_unconverged_error_serializes_as_null(self):
        """Test that an infinite error is written as null."""
        state = _handcrafted_state(['S1'])
        data = state.to_dict()

        assert data['error'] is None
        assert data['status'] == 'initializing'
        assert FitState.from_dict(data).error == float('inf')

    def test_curve_count_must_match_samples(self):
        """Test the sample/curve length check."""
        with pytest.raises(InputError):
            FitState(
                samples=('S1', 'S2'),
                dropout_curves=(DropoutCurveParams(18.0, -1.0),),
                location=GlobalLocationScale(20.0, 4.0),
                variance_prior=VariancePrior(3.0, 0.1),
            )

    def test_dropout_frame(self, fitted):
        """Test the per-sample table."""
        frame = fitted.dropout_frame()

        assert list(frame.columns) == ['sample', 'inflection', 'scale']
        assert len(frame) == 6
        assert (frame['scale'] < 0).all()

    def test_convergence_error_of_identical_states(self, fitted):
        """Test zero distance between a state and itself."""
        assert convergence_error(fitted, fitted) == 0.0

    def test_convergence_error_is_relative(self):
        """Test the scaling by 1 + |old|."""
        old = _handcrafted_state(['S1'])
        new = FitState(
            samples=('S1',),
            dropout_curves=(DropoutCurveParams(21.0, -1.0),),
            location=old.location,
            variance_prior=old.variance_prior,
        )
        assert convergence_error(old, new) == pytest.approx(2.0 / 20.0)

    @pytest.mark.parametrize('mean, variance', [(np.nan, 1.0), (0.0, 0.0), (0.0, -1.0)])
    def test_invalid_location_raises(self, mean, variance):
        """Test location prior validation."""
        with pytest.raises(NumericalError):
            GlobalLocationScale(mean, variance)


class TestEMConfig:
    """Tests for EM settings validation."""

    @pytest.mark.parametrize('kwargs', [
        {'max_iter': 0},
        {'tolerance': 0.0},
        {'n_subsample': 0},
        {'n_workers': 0},
        {'inner_iter': 0},
    ])
    def test_invalid_settings_raise(self, kwargs):
        """Test rejected settings."""
        with pytest.raises(ValueError):
            EMConfig(**kwargs)

    def test_defaults(self):
        """Test default settings."""
        config = EMConfig()
        assert config.max_iter == 200
        assert config.tolerance == 1e-4
        assert config.n_subsample is None


class TestEstimateProteinMeans:
    """Tests for posterior condition means."""

    def test_columns(self, fitted, synthetic):
        """Test the output table layout."""
        means = estimate_protein_means(synthetic.matrix, fitted)

        assert list(means.columns) == [
            'cond_1_mean', 'cond_1_sd', 'cond_1_n_observed',
            'cond_2_mean', 'cond_2_sd', 'cond_2_n_observed',
            'variance',
        ]
        assert means.index.name == 'protein'
        assert len(means) == synthetic.matrix.n_proteins
        assert np.all(np.isfinite(means.to_numpy(dtype=float)))

    def test_means_track_truth(self, fitted, synthetic):
        """Test correlation of posterior means with the true means."""
        means = estimate_protein_means(synthetic.matrix, fitted)

        r = np.corrcoef(means['cond_1_mean'], synthetic.group_means[:, 0])[0, 1]
        assert r > 0.95

    def test_sample_mismatch_raises(self, fitted, synthetic):
        """Test a state fitted on other samples."""
        other = FitState.from_dict({**fitted.to_dict(), 'samples': [f'x{i}' for i in range(6)]})

        with pytest.raises(InputError):
            estimate_protein_means(synthetic.matrix, other)
