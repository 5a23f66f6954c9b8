#!/usr/bin/env python3
"""
Collaborators - Boundary contracts with annotation, normalization and
differential-analysis tools

The core hands coordinate tables and count matrices out and checks that
what comes back can be reconciled with the rows it sent. Anything that
cannot be reconciled raises CollaboratorContractViolation; rows are never
dropped silently.
"""

import typer
import pandas as pd
import numpy as np
from typing import Callable, List, Optional
from pathlib import Path
import logging

from TSRexPy import table as tbl
from TSRexPy.exceptions import CollaboratorContractViolation, ConfigurationError

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

__version__ = "0.1.0"

app = typer.Typer(help=f"Count matrices and collaborator hand-off (v{__version__})")

LOG2_FOLD_CHANGE = 'log2_fold_change'
PADJ = 'padj'
DIFFERENTIAL_COLUMNS = [LOG2_FOLD_CHANGE, PADJ]


def annotation_request(table: pd.DataFrame) -> pd.DataFrame:
    """
    Coordinate columns handed to an annotation tool.

    TSR tables send chr/start/end/strand (plus dominant_tss when present),
    TSS tables send chr/pos/strand. The row index is the row identity the
    response must keep.
    """
    if tbl.START in table.columns:
        cols = [tbl.CHR, tbl.START, tbl.END, tbl.STRAND]
        if tbl.DOMINANT_TSS in table.columns:
            cols.append(tbl.DOMINANT_TSS)
    else:
        cols = list(tbl.COORDINATE_COLUMNS)
    tbl.require_columns(table, cols, "table to annotate")
    return table[cols].copy()


def reconcile_annotation(table: pd.DataFrame, response: pd.DataFrame) -> pd.DataFrame:
    """
    Merge annotation labels back onto the table.

    Args:
        table: Table that was sent out
        response: Annotator output; must carry the same row index

    Returns:
        Copy of the table with the response's new columns appended
    """
    if len(response) != len(table):
        raise CollaboratorContractViolation(
            f"Malformed annotation response: expected {len(table)} rows, got {len(response)}",
            collaborator="annotation", expected=len(table), received=len(response),
        )
    if response.index.has_duplicates or not response.index.sort_values().equals(table.index.sort_values()):
        raise CollaboratorContractViolation(
            "Malformed annotation response: row identity does not match the request",
            collaborator="annotation",
        )

    labels = [c for c in response.columns if c not in table.columns]
    if not labels:
        logger.warning("Annotation response added no new columns")
    result = table.copy()
    for col in labels:
        result[col] = response[col].reindex(table.index).values
    logger.info(f"Attached annotation column(s) {labels} to {len(result)} rows")
    return result


def annotate(table: pd.DataFrame, annotator: Callable[[pd.DataFrame], pd.DataFrame]) -> pd.DataFrame:
    """Send the table's coordinates to an annotator and reconcile its answer."""
    response = annotator(annotation_request(table))
    if not isinstance(response, pd.DataFrame):
        raise CollaboratorContractViolation(
            f"Malformed annotation response: expected a DataFrame, got {type(response).__name__}",
            collaborator="annotation",
        )
    return reconcile_annotation(table, response)


def count_matrix(tss_df: pd.DataFrame,
                 id_column: str = tbl.TSR_ID,
                 score_column: str = tbl.SCORE,
                 samples: Optional[List[str]] = None) -> pd.DataFrame:
    """
    Build an interval x sample count matrix from associated TSSs.

    Args:
        tss_df: TSS table with an interval id column (e.g. tsr_id)
        id_column: Interval identifier column
        score_column: Score summed per interval and sample
        samples: Sample columns to report (default: every sample present)

    Returns:
        DataFrame indexed by interval id, one column per sample, zeros
        where a sample has no TSS in the interval
    """
    tbl.require_columns(tss_df, [id_column, tbl.SAMPLE, score_column], "TSS table")
    members = tss_df[tss_df[id_column].notna()]
    if pd.api.types.is_numeric_dtype(members[id_column]):
        members = members.assign(**{id_column: members[id_column].astype(np.int64)})
    matrix = members.pivot_table(
        index=id_column, columns=tbl.SAMPLE, values=score_column,
        aggfunc='sum', fill_value=0,
    )
    if samples is not None:
        matrix = matrix.reindex(columns=samples, fill_value=0)
    matrix.columns.name = None
    matrix = matrix.sort_index()
    logger.info(f"Count matrix: {matrix.shape[0]} intervals x {matrix.shape[1]} samples")
    return matrix


def normalize_tpm(matrix: pd.DataFrame) -> pd.DataFrame:
    """
    Normalize raw counts to TPM (Tags Per Million).

    Args:
        matrix: Interval x sample count matrix

    Returns:
        Matrix with TPM values
    """
    result = matrix.astype(float).copy()

    for col in matrix.columns:
        total = matrix[col].sum()
        if total > 0:
            result[col] = matrix[col] / total * 1e6
        else:
            result[col] = 0.0
            logger.warning(f"Sample {col} has zero total counts")

    return result


def reconcile_normalized(matrix: pd.DataFrame, normalized: pd.DataFrame) -> pd.DataFrame:
    """Check a normalizer's output has the same shape, rows and samples as its input."""
    if not isinstance(normalized, pd.DataFrame) or normalized.shape != matrix.shape:
        shape = getattr(normalized, 'shape', None)
        raise CollaboratorContractViolation(
            f"Normalization returned shape {shape}, expected {matrix.shape}",
            collaborator="normalization", expected=matrix.shape, received=shape,
        )
    if not normalized.index.equals(matrix.index) or set(normalized.columns) != set(matrix.columns):
        raise CollaboratorContractViolation(
            "Normalization returned different interval ids or samples than it was given",
            collaborator="normalization",
        )
    return normalized[list(matrix.columns)]


def normalize_counts(matrix: pd.DataFrame,
                     normalizer: Callable[[pd.DataFrame], pd.DataFrame] = normalize_tpm) -> pd.DataFrame:
    """Run a normalizer on a count matrix and verify the result."""
    return reconcile_normalized(matrix, normalizer(matrix.copy()))


def attach_differential(tsr_df: pd.DataFrame,
                        result: pd.DataFrame,
                        id_column: str = tbl.TSR_ID) -> pd.DataFrame:
    """
    Join a differential-test result onto the TSR table.

    Args:
        tsr_df: TSR table (one row per interval id)
        result: Differential result with the id column, log2_fold_change and padj
        id_column: Interval identifier column

    Returns:
        TSR-diff table: the TSR rows that were tested, with the result columns
    """
    tbl.require_columns(tsr_df, [id_column], "TSR table")
    missing = [c for c in [id_column] + DIFFERENTIAL_COLUMNS if c not in result.columns]
    if missing:
        raise CollaboratorContractViolation(
            f"Differential result is missing column(s): {missing}",
            collaborator="differential", expected=[id_column] + DIFFERENTIAL_COLUMNS,
            received=list(result.columns),
        )
    if result[id_column].duplicated().any():
        raise CollaboratorContractViolation(
            "Differential result reports an interval id more than once",
            collaborator="differential",
        )
    unknown = sorted(set(result[id_column]) - set(tsr_df[id_column]))
    if unknown:
        raise CollaboratorContractViolation(
            f"Differential result contains {len(unknown)} unknown interval id(s), e.g. {unknown[:5]}",
            collaborator="differential", received=unknown[:5],
        )

    extra = [c for c in result.columns if c != id_column and c not in tsr_df.columns]
    diff_df = tsr_df.merge(result[[id_column] + extra], on=id_column, how='inner')
    logger.info(f"Attached differential results for {len(diff_df)}/{len(tsr_df)} TSRs")
    return diff_df


@app.command("matrix")
def matrix_command(
    tss_file: Path = typer.Option(
        ..., "-t", "--tss",
        help="Associated TSS table (with tsr_id column)"
    ),
    output_file: Path = typer.Option(
        ..., "-o", "--output",
        help="Output count matrix"
    ),
    id_column: str = typer.Option(
        tbl.TSR_ID, "--id-column",
        help="Interval identifier column"
    ),
    normalize: bool = typer.Option(
        False, "--normalize/--no-normalize",
        help="Normalize to TPM"
    ),
):
    """
    Build an interval x sample count matrix for normalization or differential tools.

    Example:
        tsrexpy collaborate matrix -t tss.assoc.tsv -o counts.tsv --normalize
    """
    logger.info(f"Reading TSS table: {tss_file}")
    df = pd.read_csv(tss_file, sep='\t')

    try:
        matrix = count_matrix(df, id_column=id_column)
    except ConfigurationError as e:
        raise typer.BadParameter(str(e))

    if normalize:
        matrix = normalize_counts(matrix)
        logger.info("Normalized to TPM")

    for col in matrix.columns:
        logger.info(f"Library size for {col}: {matrix[col].sum():,.2f}")

    matrix.to_csv(output_file, sep='\t', index_label=id_column)
    logger.info(f"Saved count matrix to {output_file}")


if __name__ == '__main__':
    app()
