#!/usr/bin/env python3
"""
TSR Metrics - Width, interquantile width and shape of each TSR

Interquantile width: span between the positions holding the lower and
upper quantiles of cumulative score mass (midpoint between two positions
when a quantile falls exactly on their boundary).
SI (Shape Index): Hoskins et al. 2011
PSS (Promoter Shape Score): Lu and Lin 2019
"""

import typer
import pandas as pd
import numpy as np
from dataclasses import dataclass
from typing import Optional, Tuple, Union
from pathlib import Path
import logging
from multiprocessing import Pool

from TSRexPy import table as tbl
from TSRexPy.config import MetricsConfig, load_config, override
from TSRexPy.exceptions import ConfigurationError, DataIntegrityError

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

__version__ = "0.2.0"

app = typer.Typer(help=f"Calculate TSR width and shape metrics (v{__version__})")

PEAKED = 'peaked'
BROAD = 'broad'
UNDEFINED = 'undefined'

METRIC_COLUMNS = [tbl.WIDTH, tbl.IQR_LOWER, tbl.IQR_UPPER, tbl.IQR_WIDTH,
                  tbl.SHAPE_INDEX, tbl.SHAPE_SCORE, tbl.SHAPE_CLASS]
METRIC_DTYPES = {
    tbl.WIDTH: np.int64, tbl.IQR_LOWER: float, tbl.IQR_UPPER: float, tbl.IQR_WIDTH: float,
    tbl.SHAPE_INDEX: float, tbl.SHAPE_SCORE: float, tbl.SHAPE_CLASS: object,
}


@dataclass(frozen=True)
class TSRMetrics:
    width: int
    iqr_lower: float
    iqr_upper: float
    iqr_width: float
    shape_index: float
    shape_score: float
    shape_class: str


@dataclass(frozen=True)
class UndefinedMetrics:
    """Result for a TSR whose members carry no score mass."""

    width: int
    reason: str
    shape_class: str = UNDEFINED


def calculate_pss(tags: np.ndarray, interquantile_width: float) -> float:
    """
    Calculate Promoter Shape Score (PSS).

    PSS = -sum(p_i * log2(p_i)) * log2(IQW)

    Lower PSS = sharper promoter. PSS = 0 for singletons.

    Args:
        tags: Scores of the TSS positions inside the interquantile region
        interquantile_width: Width of the interquantile region

    Returns:
        Promoter Shape Score
    """
    if len(tags) == 0 or interquantile_width <= 1:
        return 0.0

    total = tags.sum()
    if total == 0 or len(tags) == 1:
        return 0.0

    probs = tags / total
    probs = probs[probs > 0]
    entropy = -np.sum(probs * np.log2(probs))
    return float(entropy * np.log2(interquantile_width))


def calculate_si(tags: np.ndarray) -> float:
    """
    Calculate Shape Index (SI).

    SI = 2 + sum(p_i * log2(p_i))

    Higher SI = sharper promoter. SI = 2 for singletons.

    Args:
        tags: Scores of the TSS positions within the TSR

    Returns:
        Shape Index
    """
    if len(tags) == 0:
        return 0.0

    total = tags.sum()
    if total == 0:
        return 0.0

    if len(tags) == 1:
        return 2.0

    probs = tags / total
    probs = probs[probs > 0]
    return float(2.0 + np.sum(probs * np.log2(probs)))


def collapse_positions(positions: np.ndarray, scores: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Sum scores per distinct position and drop positions without positive mass."""
    positions = np.asarray(positions, dtype=np.int64)
    scores = np.asarray(scores, dtype=float)
    uniq, inverse = np.unique(positions, return_inverse=True)
    mass = np.bincount(inverse, weights=scores, minlength=len(uniq))
    keep = mass > 0
    return uniq[keep], mass[keep]


def _quantile_position(pos: np.ndarray, cum: np.ndarray, q: float) -> float:
    """First position whose cumulative fraction reaches q; midway to the next when q lands on it."""
    i = min(int(np.searchsorted(cum, q, side='left')), len(pos) - 1)
    if i > 0 and np.isclose(cum[i - 1], q):
        i -= 1
    if np.isclose(cum[i], q) and i + 1 < len(pos):
        return float(pos[i] + pos[i + 1]) / 2.0
    return float(pos[i])


def interquantile_bounds(positions: np.ndarray, scores: np.ndarray,
                         lower: float = 0.25, upper: float = 0.75) -> Optional[Tuple[float, float]]:
    """
    Positions holding the lower and upper quantiles of cumulative score mass.

    Each position x_i owns the cumulative mass range (F_{i-1}, F_i], so a
    quantile resolves to the first position with F_i >= q. When q equals
    F_i exactly the boundary falls between x_i and x_{i+1} and the
    midpoint of the two is used.

    Returns:
        (lower position, upper position), or None without score mass
    """
    pos, mass = collapse_positions(positions, scores)
    if len(pos) == 0:
        return None
    cum = np.cumsum(mass) / mass.sum()
    return _quantile_position(pos, cum, lower), _quantile_position(pos, cum, upper)


def classify_shape(iqr_width: float, peaked_threshold: float) -> str:
    """'peaked' when the interquantile width is at most the threshold, else 'broad'."""
    if iqr_width is None or np.isnan(iqr_width):
        return UNDEFINED
    return PEAKED if iqr_width <= peaked_threshold else BROAD


def compute_tsr_metrics(positions: np.ndarray, scores: np.ndarray, start: int, end: int,
                        config: Optional[MetricsConfig] = None) -> Union[TSRMetrics, UndefinedMetrics]:
    """
    Compute all metrics of one TSR from its member TSSs.

    Args:
        positions: Member TSS positions
        scores: Member TSS scores
        start: TSR start
        end: TSR end
        config: Quantiles and classification threshold

    Returns:
        TSRMetrics, or UndefinedMetrics when no member carries score mass
    """
    config = config or MetricsConfig()
    width = int(end - start + 1)

    bounds = interquantile_bounds(positions, scores, config.lower_quantile, config.upper_quantile)
    if bounds is None:
        reason = "no members" if len(positions) == 0 else "members carry no score mass"
        return UndefinedMetrics(width=width, reason=reason)

    lower, upper = bounds
    iqr_width = upper - lower + 1
    pos, mass = collapse_positions(positions, scores)
    in_iqr = mass[(pos >= lower) & (pos <= upper)]

    return TSRMetrics(
        width=width,
        iqr_lower=lower,
        iqr_upper=upper,
        iqr_width=iqr_width,
        shape_index=calculate_si(mass),
        shape_score=calculate_pss(in_iqr, iqr_width),
        shape_class=classify_shape(iqr_width, config.peaked_threshold),
    )


def _metrics_row(result: Union[TSRMetrics, UndefinedMetrics]) -> dict:
    if isinstance(result, UndefinedMetrics):
        return {
            tbl.WIDTH: result.width,
            tbl.IQR_LOWER: np.nan,
            tbl.IQR_UPPER: np.nan,
            tbl.IQR_WIDTH: np.nan,
            tbl.SHAPE_INDEX: np.nan,
            tbl.SHAPE_SCORE: np.nan,
            tbl.SHAPE_CLASS: UNDEFINED,
        }
    return {
        tbl.WIDTH: result.width,
        tbl.IQR_LOWER: result.iqr_lower,
        tbl.IQR_UPPER: result.iqr_upper,
        tbl.IQR_WIDTH: result.iqr_width,
        tbl.SHAPE_INDEX: result.shape_index,
        tbl.SHAPE_SCORE: result.shape_score,
        tbl.SHAPE_CLASS: result.shape_class,
    }


def calculate_metrics_for_tsr(args) -> dict:
    """
    Calculate metrics for a single TSR.

    Args:
        args: Tuple of (positions, scores, start, end, config)

    Returns:
        Dictionary of metric columns
    """
    positions, scores, start, end, config = args
    return _metrics_row(compute_tsr_metrics(positions, scores, start, end, config))


def tsr_metrics(tss_df: pd.DataFrame, tsr_df: pd.DataFrame,
                config: Optional[MetricsConfig] = None) -> pd.DataFrame:
    """
    Add metric columns to a TSR table.

    Args:
        tss_df: TSS table with a tsr_id column (from association)
        tsr_df: TSR table
        config: Metric parameters

    Returns:
        Copy of the TSR table with width, iqr_lower, iqr_upper, iqr_width,
        shape_index, shape_score and shape_class columns, in input order
    """
    config = config or MetricsConfig()
    tbl.require_columns(tss_df, [tbl.TSR_ID, tbl.POS, config.score_column], "TSS table")
    tsr = tbl.validate_tsr_table(tsr_df.drop(columns=METRIC_COLUMNS, errors='ignore'))

    members = tss_df[tss_df[tbl.TSR_ID].notna()]
    grouped = {
        int(tsr_id): (group[tbl.POS].values, group[config.score_column].values)
        for tsr_id, group in members.groupby(members[tbl.TSR_ID].astype(np.int64))
    }
    empty = (np.zeros(0, dtype=np.int64), np.zeros(0, dtype=float))

    args_list = []
    for tsr_id, start, end in zip(tsr[tbl.TSR_ID].astype(np.int64), tsr[tbl.START], tsr[tbl.END]):
        positions, scores = grouped.get(int(tsr_id), empty)
        args_list.append((positions, scores, int(start), int(end), config))

    if config.processes > 1 and len(args_list) > 1:
        with Pool(processes=config.processes) as pool:
            results = pool.map(calculate_metrics_for_tsr, args_list)
    else:
        results = [calculate_metrics_for_tsr(args) for args in args_list]

    metrics_df = pd.DataFrame(results, columns=METRIC_COLUMNS).astype(METRIC_DTYPES)
    result = tsr.copy()
    for col in METRIC_COLUMNS:
        result[col] = metrics_df[col].values

    n_undefined = int((result[tbl.SHAPE_CLASS] == UNDEFINED).sum())
    if n_undefined:
        logger.warning(f"{n_undefined} TSRs have undefined metrics (no scored members)")
    logger.info(f"Computed metrics for {len(result)} TSRs "
                f"(quantiles {config.lower_quantile}-{config.upper_quantile}, "
                f"peaked threshold {config.peaked_threshold})")
    return result


@app.command("run")
def run_command(
    tss_file: Path = typer.Option(
        ..., "-t", "--tss",
        help="Associated TSS table (with tsr_id column)"
    ),
    tsr_file: Path = typer.Option(
        ..., "-r", "--tsr",
        help="TSR table"
    ),
    output_file: Path = typer.Option(
        ..., "-o", "--output",
        help="Output TSR table with metric columns"
    ),
    lower_quantile: Optional[float] = typer.Option(
        None, "--lower-quantile",
        help="Lower quantile of cumulative score mass (default 0.25)"
    ),
    upper_quantile: Optional[float] = typer.Option(
        None, "--upper-quantile",
        help="Upper quantile of cumulative score mass (default 0.75)"
    ),
    peaked_threshold: Optional[float] = typer.Option(
        None, "--peaked-threshold",
        help="Maximum interquantile width of a 'peaked' TSR (default 10)"
    ),
    config_file: Optional[Path] = typer.Option(
        None, "-c", "--config",
        help="YAML config file (metrics section)"
    ),
    processes: Optional[int] = typer.Option(
        None, "-p", "--processes",
        help="Number of processes"
    ),
):
    """
    Calculate width, interquantile width and shape class of each TSR.

    Example:
        tsrexpy metrics run -t tss.assoc.tsv -r tsr.tsv -o tsr.metrics.tsv --peaked-threshold 10
    """
    try:
        base = load_config(config_file)[1] if config_file else MetricsConfig()
        config = override(
            base, lower_quantile=lower_quantile, upper_quantile=upper_quantile,
            peaked_threshold=peaked_threshold, processes=processes,
        )
        logger.info(f"Loading TSS table: {tss_file}")
        tss_df = pd.read_csv(tss_file, sep='\t')
        logger.info(f"Loading TSR table: {tsr_file}")
        tsr_df = pd.read_csv(tsr_file, sep='\t')
        result_df = tsr_metrics(tss_df, tsr_df, config)
    except ConfigurationError as e:
        raise typer.BadParameter(str(e))
    except DataIntegrityError as e:
        logger.error(str(e))
        raise typer.Exit(1)

    result_df.to_csv(output_file, sep='\t', index=False)
    logger.info(f"Saved results to {output_file}")

    class_counts = result_df[tbl.SHAPE_CLASS].value_counts()
    logger.info("Shape classes:")
    for cls, count in class_counts.items():
        pct = count / len(result_df) * 100
        logger.info(f"  {cls}: {count} ({pct:.1f}%)")


if __name__ == '__main__':
    app()
