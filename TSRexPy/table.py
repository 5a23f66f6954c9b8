"""
Interval tables - column names and validation for TSS and TSR tables

Every table handled by TSRexPy is a pandas DataFrame. The column names
below are the stable contract shared by clustering, association, metrics,
conditioning and any downstream consumer.
"""

import logging
from typing import Dict, Iterable, List, Optional

import numpy as np
import pandas as pd

from TSRexPy.exceptions import ConfigurationError, DataIntegrityError

logger = logging.getLogger(__name__)

# Shared coordinate columns
SAMPLE = 'sample'
CHR = 'chr'
POS = 'pos'
STRAND = 'strand'
SCORE = 'score'
NORMALIZED_SCORE = 'normalized_score'

# TSR columns
TSR_ID = 'tsr_id'
START = 'start'
END = 'end'
N_TSS = 'n_tss'
N_SUPPORTING_SAMPLES = 'n_supporting_samples'

# Association / dominance columns
DOMINANT = 'dominant'
DOMINANT_TSS = 'dominant_tss'
DOMINANT_SCORE = 'dominant_score'
DOMINANT_SAMPLE = 'dominant_sample'
N_MEMBERS = 'n_members'

# Metric columns
WIDTH = 'width'
IQR_LOWER = 'iqr_lower'
IQR_UPPER = 'iqr_upper'
IQR_WIDTH = 'iqr_width'
SHAPE_INDEX = 'shape_index'
SHAPE_SCORE = 'shape_score'
SHAPE_CLASS = 'shape_class'

TSS_KEY = [SAMPLE, CHR, POS, STRAND]
TSS_COLUMNS = [SAMPLE, CHR, POS, STRAND, SCORE]
TSR_COLUMNS = [TSR_ID, SAMPLE, CHR, START, END, STRAND, SCORE, N_TSS, N_SUPPORTING_SAMPLES]
TSR_DTYPES = {
    TSR_ID: np.int64, SAMPLE: str, CHR: str, START: np.int64, END: np.int64,
    STRAND: str, SCORE: float, N_TSS: np.int64, N_SUPPORTING_SAMPLES: np.int64,
}
COORDINATE_COLUMNS = [CHR, POS, STRAND]
STRANDS = ('+', '-')


def require_columns(table: pd.DataFrame, columns: Iterable[str], what: str = "table") -> None:
    """Raise ConfigurationError naming every column missing from the table."""
    missing = [c for c in columns if c not in table.columns]
    if missing:
        raise ConfigurationError(
            f"Column(s) {missing} not found in {what}. Available: {list(table.columns)}"
        )


def get_column(table: pd.DataFrame, name: str) -> pd.Series:
    """Look up a column by name, failing with ConfigurationError if absent."""
    require_columns(table, [name])
    return table[name]


def _check_strands(table: pd.DataFrame, what: str) -> None:
    bad = set(table[STRAND].unique()) - set(STRANDS)
    if bad:
        raise DataIntegrityError(f"{what} contains unknown strand value(s): {sorted(map(str, bad))}")


def validate_tss_table(table: pd.DataFrame, score_column: str = SCORE) -> pd.DataFrame:
    """
    Validate a long-format TSS table and return a normalized copy.

    Args:
        table: TSS table with sample, chr, pos, strand and a score column
        score_column: Column holding the per-position score

    Returns:
        Copy of the table with typed columns and a fresh index

    Raises:
        DataIntegrityError: missing columns, bad strands, non-positive
            positions or duplicated (sample, chr, pos, strand) keys
    """
    missing = [c for c in TSS_KEY + [score_column] if c not in table.columns]
    if missing:
        raise DataIntegrityError(f"TSS table is missing required column(s): {missing}")

    df = table.copy()
    df[SAMPLE] = df[SAMPLE].astype(str)
    df[CHR] = df[CHR].astype(str)
    df[STRAND] = df[STRAND].astype(str)
    df[POS] = df[POS].astype(np.int64)
    df[score_column] = df[score_column].astype(float)
    if NORMALIZED_SCORE in df.columns:
        df[NORMALIZED_SCORE] = df[NORMALIZED_SCORE].astype(float)

    _check_strands(df, "TSS table")
    if (df[POS] < 1).any():
        raise DataIntegrityError("TSS positions are 1-based and must be >= 1")

    dup = df.duplicated(TSS_KEY, keep=False)
    if dup.any():
        examples = df.loc[dup, TSS_KEY].head(3).to_dict('records')
        raise DataIntegrityError(
            f"{int(dup.sum())} TSS records share a (sample, chr, pos, strand) key, e.g. {examples}"
        )
    return df.reset_index(drop=True)


def validate_tsr_table(table: pd.DataFrame) -> pd.DataFrame:
    """Validate a TSR table (coordinates, strand, start <= end) and return a copy."""
    missing = [c for c in [SAMPLE, CHR, START, END, STRAND] if c not in table.columns]
    if missing:
        raise DataIntegrityError(f"TSR table is missing required column(s): {missing}")

    df = table.copy()
    df[SAMPLE] = df[SAMPLE].astype(str)
    df[CHR] = df[CHR].astype(str)
    df[STRAND] = df[STRAND].astype(str)
    df[START] = df[START].astype(np.int64)
    df[END] = df[END].astype(np.int64)

    _check_strands(df, "TSR table")
    if (df[START] > df[END]).any():
        raise DataIntegrityError("TSR table contains intervals with start > end")
    if TSR_ID not in df.columns:
        df[TSR_ID] = np.arange(1, len(df) + 1)
    elif df[TSR_ID].duplicated().any():
        raise DataIntegrityError("TSR table contains duplicated tsr_id values")
    return df


def tss_from_wide(table: pd.DataFrame, samples: Optional[List[str]] = None) -> pd.DataFrame:
    """
    Convert a wide TSS table to the long layout.

    The wide layout has chr, pos, strand and one count column per sample.
    Zero counts are dropped.

    Args:
        table: Wide TSS table
        samples: Sample columns to keep (default: every non-coordinate column)

    Returns:
        Long TSS table (sample, chr, pos, strand, score)
    """
    require_columns(table, COORDINATE_COLUMNS, "wide TSS table")
    if samples is None:
        samples = [c for c in table.columns if c not in COORDINATE_COLUMNS]
    require_columns(table, samples, "wide TSS table")

    long_df = table.melt(
        id_vars=COORDINATE_COLUMNS, value_vars=samples,
        var_name=SAMPLE, value_name=SCORE
    )
    long_df = long_df[long_df[SCORE] > 0]
    logger.debug(f"Converted wide table ({len(table)} rows, {len(samples)} samples) "
                 f"to {len(long_df)} long records")
    return long_df[TSS_COLUMNS].reset_index(drop=True)


def tss_from_samples(tables: Dict[str, pd.DataFrame]) -> pd.DataFrame:
    """
    Concatenate per-sample TSS tables into one long table.

    Args:
        tables: Mapping of sample name -> table with chr, pos, strand, score

    Returns:
        Long TSS table with a sample column
    """
    frames = []
    for name, df in tables.items():
        require_columns(df, COORDINATE_COLUMNS + [SCORE], f"TSS table of sample '{name}'")
        part = df.copy()
        part[SAMPLE] = name
        frames.append(part)
    if not frames:
        return pd.DataFrame(columns=TSS_COLUMNS)
    combined = pd.concat(frames, ignore_index=True)
    leading = [c for c in TSS_COLUMNS if c in combined.columns]
    return combined[leading + [c for c in combined.columns if c not in leading]]


def sort_intervals(table: pd.DataFrame) -> pd.DataFrame:
    """Sort a TSR table into the global order (chr, strand, start, sample)."""
    return table.sort_values(
        [CHR, STRAND, START, SAMPLE], kind='mergesort'
    ).reset_index(drop=True)


def empty_tsr_table() -> pd.DataFrame:
    """A TSR table with no rows and the column types clustering produces."""
    return pd.DataFrame({c: pd.Series(dtype=TSR_DTYPES[c]) for c in TSR_COLUMNS})
