"""Command-line interface for lfq-dropout.

Fits the dropout model hyper-parameters of a label-free protein intensity
matrix and writes them, together with posterior condition means, for
downstream sampling and testing.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

import numpy as np
import pandas as pd
import yaml

from .data_io import IntensityMatrix, load_design, load_intensity_table, median_normalization
from .errors import InputError, NumericalError
from .hyperparameters import EMConfig, FitState, estimate_protein_means, fit_hyperparameters
from .synthetic import generate_synthetic_data

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )


def load_config(config_path: Path | None) -> dict:
    """Load configuration from YAML file or return defaults."""
    defaults = {
        'data': {
            'protein_column': None,       # First column when None
            'zero_is_missing': True,
            'log_transform': False,       # Set True for linear-scale intensities
            'median_normalize': False,
        },
        'em': {
            'max_iter': 200,
            'tolerance': 0.0001,
            'n_subsample': None,
            'verbose': False,
            'random_seed': None,
            'min_variance_estimates': 5,
            'n_workers': 1,
            'inner_iter': 10,
        },
        'output': {
            'posterior_means': True,
            'format': 'tsv',              # tsv or parquet
        },
    }

    if config_path and config_path.exists():
        with open(config_path) as f:
            user_config = yaml.safe_load(f) or {}
        # Deep merge user config over defaults
        defaults = _deep_merge(defaults, user_config)

    return defaults


def _deep_merge(base: dict, override: dict) -> dict:
    """Deep merge override dict into base dict."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _package_version() -> str:
    try:
        from importlib.metadata import version
        return version('lfq-dropout')
    except Exception:
        return 'development'


def generate_fit_metadata(
    config: dict,
    matrix: IntensityMatrix,
    state: FitState,
    input_files: list[str],
) -> dict:
    """Fit result plus provenance for the hyperparameters JSON."""
    return {
        'version': _package_version(),
        'processing_date': datetime.now(timezone.utc).isoformat(),
        'source_files': input_files,
        'data': {
            'n_proteins': matrix.n_proteins,
            'n_samples': matrix.n_samples,
            'conditions': list(matrix.condition_levels),
            'fraction_missing': matrix.fraction_missing,
        },
        'parameters': config,
        'fit': state.to_dict(),
    }


def _write_table(df: pd.DataFrame, path: Path, fmt: str) -> Path:
    if fmt == 'parquet':
        path = path.with_suffix('.parquet')
        df.to_parquet(path)
    else:
        path = path.with_suffix('.tsv')
        df.to_csv(path, sep='\t')
    return path


def cmd_fit(args: argparse.Namespace) -> int:
    """Fit hyper-parameters for an intensity matrix."""
    config = load_config(Path(args.config) if args.config else None)
    data_cfg = config['data']

    try:
        em_config = EMConfig(**config['em'])
    except (TypeError, ValueError) as e:
        logger.error(f"Invalid em configuration: {e}")
        return 1
    if args.verbose:
        em_config.verbose = True

    try:
        intensities = load_intensity_table(
            Path(args.input),
            protein_column=data_cfg.get('protein_column'),
            zero_is_missing=data_cfg.get('zero_is_missing', True),
            log_transform=data_cfg.get('log_transform', False),
        )
        if data_cfg.get('median_normalize', False):
            intensities = median_normalization(intensities)

        design = load_design(Path(args.design))
        # Proteins without any observation carry no information
        empty = intensities.isna().all(axis=1)
        if empty.any():
            logger.info(f"Dropping {int(empty.sum())} proteins without observed values")
            intensities = intensities[~empty]
        matrix = IntensityMatrix.from_frame(intensities, design)

        initial = None
        if args.initial:
            with open(args.initial) as f:
                initial = FitState.from_dict(json.load(f)['fit'])

        state = fit_hyperparameters(matrix, em_config, initial=initial)
    except (InputError, NumericalError) as e:
        logger.error(str(e))
        return 2

    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    metadata = generate_fit_metadata(config, matrix, state, [args.input, args.design])
    metadata_path = output_dir / 'hyperparameters.json'
    with open(metadata_path, 'w') as f:
        json.dump(metadata, f, indent=2)
    logger.info(f"Saved hyper-parameters to {metadata_path}")

    out_fmt = config['output'].get('format', 'tsv')
    curves_path = _write_table(state.dropout_frame().set_index('sample'), output_dir / 'dropout_curves', out_fmt)
    logger.info(f"Saved dropout curves to {curves_path}")

    if config['output'].get('posterior_means', True):
        means = estimate_protein_means(matrix, state, em_config.inner_iter, em_config.n_workers)
        means_path = _write_table(means, output_dir / 'protein_means', out_fmt)
        logger.info(f"Saved posterior means for {len(means)} proteins to {means_path}")

    if not state.converged:
        logger.warning("Hyper-parameters did not converge; consider raising em.max_iter")

    return 0


def cmd_simulate(args: argparse.Namespace) -> int:
    """Write a synthetic intensity matrix, design and ground truth."""
    data = generate_synthetic_data(
        n_proteins=args.n_proteins,
        n_conditions=args.n_conditions,
        n_replicates=args.n_replicates,
        frac_changed=args.frac_changed,
        effect_size=args.effect_size,
        random_seed=args.seed,
    )

    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    intensities = data.matrix.to_frame()
    intensities.index.name = 'protein'
    intensities.to_csv(output_dir / 'intensities.tsv', sep='\t')

    design = pd.DataFrame({
        'Sample': list(data.matrix.samples),
        'Condition': list(data.matrix.conditions),
    })
    design.to_csv(output_dir / 'design.tsv', sep='\t', index=False)

    truth = {
        'dropout_curves': [
            {'sample': s, 'inflection': c.inflection, 'scale': c.scale}
            for s, c in zip(data.matrix.samples, data.dropout_curves)
        ],
        'location': {'mean': data.location.mean, 'variance': data.location.variance},
        'variance_prior': {'df': data.variance_prior.df, 'scale': data.variance_prior.scale},
        'changed_proteins': [
            p for p, changed in zip(data.matrix.proteins, data.changed) if changed
        ],
        'fraction_missing': float(np.isnan(data.matrix.values).mean()),
    }
    with open(output_dir / 'truth.json', 'w') as f:
        json.dump(truth, f, indent=2)

    logger.info(f"Wrote synthetic data set to {output_dir}")
    return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog='lfq-dropout',
        description='lfq-dropout: dropout-aware hyper-parameter estimation for LFQ proteomics\n\n'
                    'Primary usage:\n'
                    '  lfq-dropout fit -i intensities.tsv -d design.tsv -o output_dir/ -c config.yaml',
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('-v', '--verbose', action='store_true', help='Verbose output')
    parser.add_argument('--version', action='version', version=f'%(prog)s {_package_version()}')

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    fit_parser = subparsers.add_parser(
        'fit',
        help='Fit dropout curves, location prior and variance prior',
    )
    fit_parser.add_argument('-i', '--input', required=True,
                            help='Protein x sample intensity table (CSV/TSV/parquet)')
    fit_parser.add_argument('-d', '--design', required=True,
                            help='Design table with Sample and Condition columns')
    fit_parser.add_argument('-o', '--output-dir', required=True, help='Output directory')
    fit_parser.add_argument('-c', '--config', help='Configuration YAML file')
    fit_parser.add_argument('--initial', help='hyperparameters.json of a previous fit to start from')

    sim_parser = subparsers.add_parser('simulate', help='Write a synthetic data set')
    sim_parser.add_argument('-o', '--output-dir', required=True, help='Output directory')
    sim_parser.add_argument('-n', '--n-proteins', type=int, default=1000)
    sim_parser.add_argument('--n-conditions', type=int, default=2)
    sim_parser.add_argument('--n-replicates', type=int, default=3)
    sim_parser.add_argument('--frac-changed', type=float, default=0.1)
    sim_parser.add_argument('--effect-size', type=float, default=2.0)
    sim_parser.add_argument('--seed', type=int, default=None)

    args = parser.parse_args()

    setup_logging(args.verbose)

    if args.command == 'fit':
        return cmd_fit(args)
    elif args.command == 'simulate':
        return cmd_simulate(args)
    else:
        parser.print_help()
        return 1


if __name__ == '__main__':
    sys.exit(main())
