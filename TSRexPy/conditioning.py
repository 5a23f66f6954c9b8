#!/usr/bin/env python3
"""
Conditioning - Group, quantile and order any TSS/TSR table

A ConditioningDescriptor carries up to three independent settings:
a grouping column, a quantiling spec and an ordering spec. condition()
applies them in that order and returns index-based partitions of the
table; the table itself is never modified.
"""

import typer
import pandas as pd
import numpy as np
from dataclasses import dataclass
from typing import Any, List, NamedTuple, Optional, Tuple
from pathlib import Path
import logging

from TSRexPy import table as tbl
from TSRexPy.exceptions import ConfigurationError

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

__version__ = "0.1.0"

app = typer.Typer(help=f"Group, quantile and order TSS/TSR tables (v{__version__})")

GROUP_COLUMN = 'condition_group'
BUCKET_COLUMN = 'condition_bucket'


@dataclass(frozen=True)
class QuantileSpec:
    """Split rows into n_bins equally sized buckets of a numeric column.

    Bucket 1 holds the highest values unless ascending is set.
    """

    column: str
    n_bins: int
    ascending: bool = False

    def __post_init__(self):
        if isinstance(self.n_bins, bool) or not isinstance(self.n_bins, (int, np.integer)):
            raise ConfigurationError(f"n_bins must be an integer, got {self.n_bins!r}")
        if self.n_bins <= 0:
            raise ConfigurationError(f"n_bins must be > 0, got {self.n_bins}")


@dataclass(frozen=True)
class OrderSpec:
    column: str
    descending: bool = False


@dataclass(frozen=True)
class ConditioningDescriptor:
    grouping: Optional[str] = None
    quantiling: Optional[QuantileSpec] = None
    ordering: Optional[OrderSpec] = None

    def columns(self) -> List[str]:
        """Column names referenced by this descriptor."""
        cols = []
        if self.grouping is not None:
            cols.append(self.grouping)
        if self.quantiling is not None:
            cols.append(self.quantiling.column)
        if self.ordering is not None:
            cols.append(self.ordering.column)
        return cols

    @property
    def is_empty(self) -> bool:
        return self.grouping is None and self.quantiling is None and self.ordering is None


class ConditionedGroup(NamedTuple):
    key: Any
    index: pd.Index
    positions: np.ndarray


def _stable_order(values: pd.Series, descending: bool) -> np.ndarray:
    """Positions that sort values stably, missing values last."""
    ordered = values.reset_index(drop=True).sort_values(
        ascending=not descending, kind='mergesort', na_position='last'
    )
    return ordered.index.to_numpy()


def _groups(table: pd.DataFrame, descriptor: ConditioningDescriptor) -> List[Tuple[Any, np.ndarray]]:
    if descriptor.grouping is None:
        return [(None, np.arange(len(table)))]

    codes, uniques = pd.factorize(table[descriptor.grouping], sort=False, use_na_sentinel=False)
    groups = [(uniques[k], np.nonzero(codes == k)[0]) for k in range(len(uniques))]

    ordering = descriptor.ordering
    if ordering is not None and ordering.column == descriptor.grouping:
        keys = pd.Series([key for key, _ in groups])
        groups = [groups[i] for i in _stable_order(keys, ordering.descending)]
    return groups


def _quantile_buckets(table: pd.DataFrame, positions: np.ndarray,
                      spec: QuantileSpec) -> List[Tuple[int, np.ndarray]]:
    values = table[spec.column].iloc[positions]
    ranked = positions[_stable_order(values, descending=not spec.ascending)]
    # array_split gives the remainder rows to the leading buckets
    chunks = np.array_split(ranked, spec.n_bins)
    return [(bucket, np.sort(chunk)) for bucket, chunk in enumerate(chunks, start=1)]


def _validate(table: pd.DataFrame, descriptor: ConditioningDescriptor) -> None:
    tbl.require_columns(table, descriptor.columns(), "table to condition")
    spec = descriptor.quantiling
    if spec is not None and not pd.api.types.is_numeric_dtype(table[spec.column]):
        raise ConfigurationError(
            f"Quantiling column '{spec.column}' must be numeric, got {table[spec.column].dtype}"
        )


def condition(table: pd.DataFrame, descriptor: ConditioningDescriptor) -> List[ConditionedGroup]:
    """
    Partition a table according to a conditioning descriptor.

    Grouping is applied first, quantiling second (within each group) and
    ordering last (within each group/bucket partition).

    Args:
        table: Any TSS, TSR or TSR-diff table
        descriptor: Grouping, quantiling and ordering settings

    Returns:
        Ordered list of ConditionedGroup(key, index, positions). The key is
        None, the group value, the bucket number or (group value, bucket
        number), depending on which settings are active.
    """
    _validate(table, descriptor)

    partitions = []
    for group_key, positions in _groups(table, descriptor):
        if descriptor.quantiling is None:
            partitions.append((group_key, positions))
            continue
        for bucket, bucket_positions in _quantile_buckets(table, positions, descriptor.quantiling):
            key = bucket if descriptor.grouping is None else (group_key, bucket)
            partitions.append((key, bucket_positions))

    ordering = descriptor.ordering
    result = []
    for key, positions in partitions:
        if ordering is not None and len(positions) > 1:
            values = table[ordering.column].iloc[positions]
            positions = positions[_stable_order(values, ordering.descending)]
        result.append(ConditionedGroup(key, table.index[positions], positions))

    logger.debug(f"Conditioned {len(table)} rows into {len(result)} partitions")
    return result


def condition_frames(table: pd.DataFrame,
                     descriptor: ConditioningDescriptor) -> List[Tuple[Any, pd.DataFrame]]:
    """Materialize each partition of condition() as a DataFrame."""
    return [(group.key, table.iloc[group.positions]) for group in condition(table, descriptor)]


def conditioned_table(table: pd.DataFrame, descriptor: ConditioningDescriptor) -> pd.DataFrame:
    """
    Flatten the partitions into one table for export.

    Rows appear in partition order; condition_group and condition_bucket
    columns record the partition each row belongs to.
    """
    frames = []
    for group in condition(table, descriptor):
        frame = table.iloc[group.positions].copy()
        if descriptor.grouping is not None and descriptor.quantiling is not None:
            frame[GROUP_COLUMN], frame[BUCKET_COLUMN] = group.key
        elif descriptor.grouping is not None:
            frame[GROUP_COLUMN] = group.key
        elif descriptor.quantiling is not None:
            frame[BUCKET_COLUMN] = group.key
        frames.append(frame)
    if not frames:
        return table.iloc[0:0].copy()
    return pd.concat(frames)


def build_descriptor(group_by: Optional[str] = None,
                     quantile_by: Optional[str] = None,
                     n_bins: Optional[int] = None,
                     ascending: bool = False,
                     order_by: Optional[str] = None,
                     descending: bool = False) -> ConditioningDescriptor:
    """Build a descriptor from flat options (as given on the command line)."""
    quantiling = None
    if quantile_by is not None:
        if n_bins is None:
            raise ConfigurationError("Quantiling needs a number of bins")
        quantiling = QuantileSpec(quantile_by, n_bins, ascending)
    elif n_bins is not None:
        raise ConfigurationError("A number of bins was given without a quantiling column")
    ordering = OrderSpec(order_by, descending) if order_by is not None else None
    return ConditioningDescriptor(grouping=group_by, quantiling=quantiling, ordering=ordering)


@app.command("run")
def run_command(
    input_file: Path = typer.Option(
        ..., "-i", "--input",
        help="Input table (TSS, TSR or differential TSR table)"
    ),
    output_file: Path = typer.Option(
        ..., "-o", "--output",
        help="Output table with condition_group/condition_bucket columns"
    ),
    group_by: Optional[str] = typer.Option(
        None, "-g", "--group-by",
        help="Column to group rows by"
    ),
    quantile_by: Optional[str] = typer.Option(
        None, "-q", "--quantile-by",
        help="Numeric column to split into quantile buckets"
    ),
    n_bins: Optional[int] = typer.Option(
        None, "-n", "--n-bins",
        help="Number of quantile buckets"
    ),
    ascending: bool = typer.Option(
        False, "--ascending",
        help="Bucket 1 holds the lowest values instead of the highest"
    ),
    order_by: Optional[str] = typer.Option(
        None, "--order-by",
        help="Column to order rows by within each partition"
    ),
    descending: bool = typer.Option(
        False, "--descending",
        help="Order rows in descending order"
    ),
):
    """
    Group, quantile and order a table.

    Example:
        tsrexpy condition run -i tsr.metrics.tsv -o conditioned.tsv -g sample -q score -n 5 --order-by iqr_width
    """
    logger.info(f"Reading input table: {input_file}")
    df = pd.read_csv(input_file, sep='\t')

    try:
        descriptor = build_descriptor(group_by, quantile_by, n_bins, ascending, order_by, descending)
        result = conditioned_table(df, descriptor)
    except ConfigurationError as e:
        raise typer.BadParameter(str(e))

    result.to_csv(output_file, sep='\t', index=False)
    logger.info(f"Saved {len(result)} conditioned rows to {output_file}")


if __name__ == '__main__':
    app()
