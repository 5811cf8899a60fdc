"""Intensity matrix container and table loading.

An IntensityMatrix is the protein x sample matrix of log-intensities that
every fit works on. Missing values are NaN. The experimental design assigns
each sample to one condition.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import numpy as np
import pandas as pd
import pyarrow.parquet as pq

from .errors import InputError

logger = logging.getLogger(__name__)

# Design table columns
DESIGN_SAMPLE_COLUMNS = ['Sample', 'SampleName', 'ReplicateName']
DESIGN_CONDITION_COLUMNS = ['Condition', 'Group']


@dataclass(frozen=True, eq=False)
class IntensityMatrix:
    """Protein x sample log-intensities with an experimental design.

    Immutable once built: ``values`` is a read-only array.
    """

    values: np.ndarray         # n_proteins x n_samples, NaN = missing
    proteins: tuple[str, ...]
    samples: tuple[str, ...]
    conditions: tuple[str, ...]  # Condition label per sample

    def __post_init__(self):
        try:
            values = np.array(self.values, dtype=float)
        except (TypeError, ValueError) as e:
            raise InputError(f"Intensity matrix contains non-numeric cells: {e}") from e
        if values.ndim != 2:
            raise InputError(f"Intensity matrix must be 2-D, got {values.ndim} dimensions")
        if np.isinf(values).any():
            raise InputError("Intensity matrix contains infinite values")

        proteins = tuple(str(p) for p in self.proteins)
        samples = tuple(str(s) for s in self.samples)
        conditions = tuple(str(c) for c in self.conditions)

        n_proteins, n_samples = values.shape
        if len(proteins) != n_proteins:
            raise InputError(f"{len(proteins)} protein names for {n_proteins} rows")
        if len(samples) != n_samples:
            raise InputError(f"{len(samples)} sample names for {n_samples} columns")
        if len(conditions) != n_samples:
            raise InputError(
                f"Design assigns {len(conditions)} conditions but the matrix has {n_samples} samples"
            )
        if len(set(samples)) != n_samples:
            dups = sorted({s for s in samples if samples.count(s) > 1})
            raise InputError(f"Duplicate sample names: {dups}")
        if len(set(proteins)) != n_proteins:
            raise InputError("Duplicate protein identifiers")

        empty_rows = ~(~np.isnan(values)).any(axis=1)
        if empty_rows.any():
            empty = [proteins[i] for i in np.flatnonzero(empty_rows)[:5]]
            raise InputError(
                f"{int(empty_rows.sum())} proteins have no observed value (e.g. {empty})"
            )

        values.flags.writeable = False
        object.__setattr__(self, 'values', values)
        object.__setattr__(self, 'proteins', proteins)
        object.__setattr__(self, 'samples', samples)
        object.__setattr__(self, 'conditions', conditions)

    @property
    def n_proteins(self) -> int:
        return self.values.shape[0]

    @property
    def n_samples(self) -> int:
        return self.values.shape[1]

    @property
    def observed(self) -> np.ndarray:
        """Boolean mask of observed cells."""
        return ~np.isnan(self.values)

    @property
    def condition_levels(self) -> tuple[str, ...]:
        """Distinct conditions in order of first appearance."""
        return tuple(dict.fromkeys(self.conditions))

    @property
    def condition_index(self) -> np.ndarray:
        """Integer condition code per sample, indexing condition_levels."""
        lookup = {c: i for i, c in enumerate(self.condition_levels)}
        return np.array([lookup[c] for c in self.conditions], dtype=int)

    @property
    def fraction_missing(self) -> float:
        return float(np.isnan(self.values).mean())

    def subset_rows(self, rows) -> IntensityMatrix:
        """Matrix restricted to the given row indices."""
        rows = np.asarray(rows, dtype=int)
        return IntensityMatrix(
            values=self.values[rows],
            proteins=tuple(self.proteins[i] for i in rows),
            samples=self.samples,
            conditions=self.conditions,
        )

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.values, index=list(self.proteins), columns=list(self.samples))

    @classmethod
    def from_frame(cls, df: pd.DataFrame, conditions) -> IntensityMatrix:
        """Build from a protein x sample DataFrame.

        Args:
            df: DataFrame indexed by protein with one column per sample
            conditions: Condition per sample, either a sequence in column
                order or a mapping / Series keyed by sample name

        """
        samples = [str(c) for c in df.columns]
        if isinstance(conditions, (dict, pd.Series)):
            lookup = {str(k): v for k, v in dict(conditions).items()}
            missing = [s for s in samples if s not in lookup]
            if missing:
                raise InputError(f"Samples missing from design: {missing}")
            conditions = [lookup[s] for s in samples]

        non_numeric = [
            c for c in df.columns if not pd.api.types.is_numeric_dtype(df[c])
        ]
        if non_numeric:
            raise InputError(f"Non-numeric intensity columns: {non_numeric}")

        return cls(
            values=df.to_numpy(dtype=float),
            proteins=tuple(str(p) for p in df.index),
            samples=tuple(samples),
            conditions=tuple(conditions),
        )


def _read_table(filepath: Path) -> pd.DataFrame:
    """Read a CSV, TSV or parquet table."""
    suffix = filepath.suffix.lower()
    if suffix == '.parquet':
        return pq.read_table(filepath).to_pandas()
    sep = '\t' if suffix in ['.tsv', '.txt'] else ','
    return pd.read_csv(filepath, sep=sep)


def load_intensity_table(
    filepath: Path,
    protein_column: str | None = None,
    sample_columns: list[str] | None = None,
    zero_is_missing: bool = True,
    log_transform: bool = False,
) -> pd.DataFrame:
    """Load a protein x sample intensity table.

    Args:
        filepath: CSV, TSV or parquet file
        protein_column: Column with protein identifiers (default: first column)
        sample_columns: Intensity columns (default: all numeric columns)
        zero_is_missing: Treat zero intensities as missing
        log_transform: Apply log2 to the intensities

    Returns:
        DataFrame indexed by protein, one float column per sample

    Raises:
        InputError: If a requested column is absent or no intensity column is found

    """
    filepath = Path(filepath)
    table = _read_table(filepath)

    if protein_column is None:
        protein_column = table.columns[0]
    if protein_column not in table.columns:
        raise InputError(f"Protein column '{protein_column}' not found in {filepath.name}")

    if sample_columns is None:
        sample_columns = [
            c for c in table.columns
            if c != protein_column and pd.api.types.is_numeric_dtype(table[c])
        ]
    missing_cols = [c for c in sample_columns if c not in table.columns]
    if missing_cols:
        raise InputError(f"Intensity columns not found: {missing_cols}")
    if not sample_columns:
        raise InputError(f"No numeric intensity columns in {filepath.name}")

    intensities = table.set_index(protein_column)[sample_columns]
    try:
        intensities = intensities.apply(pd.to_numeric, errors='raise').astype(float)
    except (TypeError, ValueError) as e:
        raise InputError(f"Non-numeric intensity values in {filepath.name}: {e}") from e

    if zero_is_missing:
        intensities = intensities.mask(intensities == 0)
    if log_transform:
        if (intensities < 0).any().any():
            raise InputError("Cannot log-transform negative intensities")
        intensities = np.log2(intensities)

    n_missing = int(intensities.isna().sum().sum())
    logger.info(
        f"Loaded {len(intensities)} proteins x {len(sample_columns)} samples "
        f"from {filepath.name} ({n_missing} missing values)"
    )
    return intensities


def load_design(filepath: Path) -> pd.Series:
    """Load and validate an experimental design table.

    The table needs one sample column (Sample, SampleName or ReplicateName)
    and one condition column (Condition or Group).

    Returns:
        Series mapping sample name to condition label

    Raises:
        InputError: If validation fails

    """
    filepath = Path(filepath)
    design = _read_table(filepath)

    sample_col = next((c for c in DESIGN_SAMPLE_COLUMNS if c in design.columns), None)
    condition_col = next((c for c in DESIGN_CONDITION_COLUMNS if c in design.columns), None)
    if sample_col is None or condition_col is None:
        raise InputError(
            f"Design needs a sample column {DESIGN_SAMPLE_COLUMNS} "
            f"and a condition column {DESIGN_CONDITION_COLUMNS}"
        )

    duplicates = design[design[sample_col].duplicated()][sample_col].tolist()
    if duplicates:
        raise InputError(f"Duplicate sample entries in design: {duplicates}")
    if design[condition_col].isna().any():
        raise InputError("Every sample in the design needs a condition")

    return pd.Series(
        design[condition_col].astype(str).values,
        index=design[sample_col].astype(str).values,
        name='condition',
    )


def median_normalization(df: pd.DataFrame) -> pd.DataFrame:
    """Shift each sample so its median matches the mean of sample medians.

    Operates on log-intensities; missing values stay missing.
    """
    medians = df.median(axis=0, skipna=True)
    target = medians.mean()
    logger.debug(f"Median normalization to {target:.3f}")
    return df - medians + target
