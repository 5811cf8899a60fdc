"""Tests for CLI module."""

import argparse
import json
import sys

import pandas as pd
import pytest
import yaml

from lfq_dropout.cli import (
    _deep_merge,
    cmd_fit,
    cmd_simulate,
    load_config,
    main,
)


def _simulate(output_dir, n_proteins=300, seed=1):
    args = argparse.Namespace(
        output_dir=str(output_dir),
        n_proteins=n_proteins,
        n_conditions=2,
        n_replicates=3,
        frac_changed=0.1,
        effect_size=2.0,
        seed=seed,
    )
    return cmd_simulate(args)


def _fit_args(data_dir, output_dir, config=None, initial=None):
    return argparse.Namespace(
        input=str(data_dir / 'intensities.tsv'),
        design=str(data_dir / 'design.tsv'),
        output_dir=str(output_dir),
        config=str(config) if config else None,
        initial=str(initial) if initial else None,
        verbose=False,
    )


class TestDeepMerge:
    """Tests for deep merge utility."""

    def test_simple_merge(self):
        """Test merging flat dictionaries."""
        result = _deep_merge({"a": 1, "b": 2}, {"b": 3, "c": 4})
        assert result == {"a": 1, "b": 3, "c": 4}

    def test_nested_merge(self):
        """Test merging nested dictionaries."""
        base = {"em": {"max_iter": 200, "tolerance": 1e-4}, "output": {"format": "tsv"}}
        override = {"em": {"max_iter": 10}}

        result = _deep_merge(base, override)

        assert result == {"em": {"max_iter": 10, "tolerance": 1e-4}, "output": {"format": "tsv"}}
        assert base["em"]["max_iter"] == 200


class TestLoadConfig:
    """Tests for configuration loading."""

    def test_default_config(self):
        """Test defaults when no file is given."""
        config = load_config(None)

        assert config["em"]["max_iter"] == 200
        assert config["em"]["tolerance"] == 1e-4
        assert config["data"]["zero_is_missing"] is True
        assert config["output"]["format"] == "tsv"

    def test_yaml_override(self, tmp_path):
        """Test partial YAML override."""
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump({"em": {"max_iter": 7, "n_workers": 2}}))

        config = load_config(path)

        assert config["em"]["max_iter"] == 7
        assert config["em"]["n_workers"] == 2
        assert config["em"]["inner_iter"] == 10

    def test_empty_yaml(self, tmp_path):
        """Test an empty config file falls back to defaults."""
        path = tmp_path / "config.yaml"
        path.write_text("")

        assert load_config(path) == load_config(None)


class TestSimulateCommand:
    """Tests for the simulate subcommand."""

    def test_writes_data_set(self, tmp_path):
        """Test output files of simulate."""
        assert _simulate(tmp_path, n_proteins=100) == 0

        intensities = pd.read_csv(tmp_path / "intensities.tsv", sep="\t", index_col=0)
        design = pd.read_csv(tmp_path / "design.tsv", sep="\t")
        with open(tmp_path / "truth.json") as f:
            truth = json.load(f)

        assert list(design.columns) == ["Sample", "Condition"]
        assert list(intensities.columns) == list(design["Sample"])
        assert len(truth["dropout_curves"]) == 6
        assert truth["variance_prior"]["df"] == 2.0
        assert truth["dropout_curves"][0]["scale"] < 0

    def test_main_dispatch(self, tmp_path, monkeypatch):
        """Test running simulate through main()."""
        monkeypatch.setattr(
            sys, "argv", ["lfq-dropout", "simulate", "-o", str(tmp_path), "-n", "50", "--seed", "3"],
        )
        assert main() == 0
        assert (tmp_path / "design.tsv").exists()

    def test_main_without_command(self, monkeypatch):
        """Test that a missing subcommand prints help and returns 1."""
        monkeypatch.setattr(sys, "argv", ["lfq-dropout"])
        assert main() == 1


@pytest.mark.filterwarnings("ignore::lfq_dropout.errors.NonConvergenceWarning")
class TestFitCommand:
    """Tests for the fit subcommand."""

    @pytest.fixture
    def data_dir(self, tmp_path):
        data_dir = tmp_path / "data"
        _simulate(data_dir)
        return data_dir

    @pytest.fixture
    def config_path(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump({"em": {"max_iter": 5, "tolerance": 1e-3}}))
        return path

    def test_fit_writes_outputs(self, data_dir, config_path, tmp_path):
        """Test hyper-parameters, dropout curves and posterior means."""
        out = tmp_path / "fit"

        assert cmd_fit(_fit_args(data_dir, out, config=config_path)) == 0

        with open(out / "hyperparameters.json") as f:
            metadata = json.load(f)
        curves = pd.read_csv(out / "dropout_curves.tsv", sep="\t")
        means = pd.read_csv(out / "protein_means.tsv", sep="\t", index_col=0)

        assert metadata["data"]["n_samples"] == 6
        assert metadata["parameters"]["em"]["max_iter"] == 5
        assert metadata["fit"]["n_iter"] <= 5
        assert list(curves.columns) == ["sample", "inflection", "scale"]
        assert (curves["scale"] < 0).all()
        assert "cond_1_mean" in means.columns
        assert means.index.name == "protein"

    def test_fit_resumes_from_previous(self, data_dir, config_path, tmp_path):
        """Test --initial with a previous hyperparameters.json."""
        first = tmp_path / "first"
        second = tmp_path / "second"
        assert cmd_fit(_fit_args(data_dir, first, config=config_path)) == 0

        assert cmd_fit(
            _fit_args(data_dir, second, config=config_path, initial=first / "hyperparameters.json")
        ) == 0

        with open(second / "hyperparameters.json") as f:
            assert json.load(f)["fit"]["samples"][0] == "cond_1-1"

    def test_parquet_output(self, data_dir, tmp_path):
        """Test the parquet output format."""
        config = tmp_path / "parquet.yaml"
        config.write_text(yaml.safe_dump({
            "em": {"max_iter": 2},
            "output": {"format": "parquet", "posterior_means": False},
        }))
        out = tmp_path / "fit"

        assert cmd_fit(_fit_args(data_dir, out, config=config)) == 0
        assert (out / "dropout_curves.parquet").exists()
        assert not (out / "protein_means.parquet").exists()

    def test_design_missing_samples_returns_2(self, data_dir, config_path, tmp_path):
        """Test that an incomplete design is reported as input error."""
        design = pd.read_csv(data_dir / "design.tsv", sep="\t").iloc[:3]
        design.to_csv(data_dir / "design.tsv", sep="\t", index=False)

        assert cmd_fit(_fit_args(data_dir, tmp_path / "fit", config=config_path)) == 2

    @pytest.mark.parametrize("em_section", [
        {"max_iterations": 10},
        {"max_iter": 0},
        {"tolerance": -1.0},
    ])
    def test_invalid_em_config_returns_1(self, data_dir, tmp_path, em_section):
        """Test that an unknown or invalid em setting is a usage error."""
        config = tmp_path / "bad.yaml"
        config.write_text(yaml.safe_dump({"em": em_section}))

        assert cmd_fit(_fit_args(data_dir, tmp_path / "fit", config=config)) == 1
        assert not (tmp_path / "fit").exists()
