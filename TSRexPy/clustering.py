#!/usr/bin/env python3
"""
Clustering - Merge TSS records into transcription start regions (TSRs)

Per chromosome and strand: drop TSSs below the score threshold, keep only
positions supported by enough samples, then greedily merge consecutive
positions separated by at most `max_distance` bp. Samples are clustered
separately, or pooled into consensus TSRs.
"""

import typer
import pandas as pd
import numpy as np
from typing import Optional, List
from pathlib import Path
import logging
from multiprocessing import Pool

from TSRexPy import table as tbl
from TSRexPy.config import ClusteringConfig, load_config, override
from TSRexPy.exceptions import ConfigurationError, DataIntegrityError

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

__version__ = "0.2.0"

app = typer.Typer(help=f"Cluster TSSs into transcription start regions (v{__version__})")


def count_support(tss_df: pd.DataFrame) -> pd.DataFrame:
    """
    Count how many distinct samples have a TSS at each position.

    Args:
        tss_df: TSS records already filtered by the score threshold

    Returns:
        DataFrame with chr, strand, pos and n_supporting_samples
    """
    support = (
        tss_df.groupby([tbl.CHR, tbl.STRAND, tbl.POS])[tbl.SAMPLE]
        .nunique()
        .rename(tbl.N_SUPPORTING_SAMPLES)
        .reset_index()
    )
    return support


def filter_by_support(tss_df: pd.DataFrame, n_samples: int) -> pd.DataFrame:
    """Keep records at positions supported by at least `n_samples` samples."""
    if n_samples <= 1 or tss_df.empty:
        return tss_df
    support = count_support(tss_df)
    supported = support[support[tbl.N_SUPPORTING_SAMPLES] >= n_samples]
    key = [tbl.CHR, tbl.STRAND, tbl.POS]
    mask = pd.MultiIndex.from_frame(tss_df[key]).isin(pd.MultiIndex.from_frame(supported[key]))
    logger.info(f"Sample support filter (n >= {n_samples}): "
                f"{len(supported)}/{len(support)} positions kept")
    return tss_df[mask]


def merge_positions(positions: np.ndarray, max_distance: int) -> np.ndarray:
    """
    Greedy distance merge over sorted positions.

    Consecutive positions whose gap is <= max_distance share a label.

    Args:
        positions: Positions sorted ascending (duplicates allowed)
        max_distance: Maximum gap to merge across

    Returns:
        Integer cluster label (starting at 0) for each position
    """
    positions = np.asarray(positions)
    if len(positions) == 0:
        return np.zeros(0, dtype=int)
    if np.any(np.diff(positions) < 0):
        raise ValueError("positions must be sorted ascending")
    breaks = np.diff(positions) > max_distance
    return np.concatenate([[0], np.cumsum(breaks)]).astype(int)


def _cluster_partition(args) -> pd.DataFrame:
    """Cluster the records of one (chr, strand[, sample]) partition."""
    key, group, max_distance, score_column, label = args

    group = group.sort_values([tbl.POS, tbl.SAMPLE], kind='mergesort')
    labels = merge_positions(group[tbl.POS].values, max_distance)
    group = group.assign(_cluster=labels)

    clusters = group.groupby('_cluster', sort=True).agg(
        start=(tbl.POS, 'min'),
        end=(tbl.POS, 'max'),
        score=(score_column, 'sum'),
        n_tss=(tbl.POS, 'size'),
        n_supporting_samples=(tbl.SAMPLE, 'nunique'),
    ).reset_index(drop=True)

    clusters[tbl.SAMPLE] = label
    clusters[tbl.CHR] = group[tbl.CHR].iloc[0]
    clusters[tbl.STRAND] = group[tbl.STRAND].iloc[0]
    logger.debug(f"Partition {key}: {len(group)} TSSs -> {len(clusters)} TSRs")
    return clusters


def cluster_tss(tss_df: pd.DataFrame, config: Optional[ClusteringConfig] = None) -> pd.DataFrame:
    """
    Cluster TSS records into TSRs.

    Args:
        tss_df: Long TSS table (sample, chr, pos, strand, score)
        config: Clustering parameters (defaults when omitted)

    Returns:
        TSR table (tsr_id, sample, chr, start, end, strand, score, n_tss,
        n_supporting_samples) in global (chr, strand, start, sample) order
    """
    config = config or ClusteringConfig()
    score_column = config.score_column
    df = tbl.validate_tss_table(tss_df, score_column)

    passing = df[df[score_column] >= config.threshold]
    logger.info(f"Score threshold {config.threshold}: {len(passing)}/{len(df)} TSS records kept")

    n_available = passing[tbl.SAMPLE].nunique()
    if config.n_samples > n_available:
        logger.warning(f"n_samples={config.n_samples} exceeds the {n_available} samples "
                       f"with TSSs above threshold; no TSR can be formed")
    passing = filter_by_support(passing, config.n_samples)

    if config.consensus:
        partition_cols = [tbl.CHR, tbl.STRAND]
    else:
        partition_cols = [tbl.SAMPLE, tbl.CHR, tbl.STRAND]

    tasks = []
    for key, group in passing.groupby(partition_cols, sort=True):
        label = config.consensus_name if config.consensus else group[tbl.SAMPLE].iloc[0]
        tasks.append((key, group, config.max_distance, score_column, label))

    if config.processes > 1 and len(tasks) > 1:
        with Pool(processes=config.processes) as pool:
            results = pool.map(_cluster_partition, tasks)
    else:
        results = [_cluster_partition(task) for task in tasks]

    if not results:
        logger.warning("No TSS passed the clustering filters; returning an empty TSR table")
        return tbl.empty_tsr_table()

    tsr_df = tbl.sort_intervals(pd.concat(results, ignore_index=True))
    tsr_df[tbl.TSR_ID] = np.arange(1, len(tsr_df) + 1)
    tsr_df = tsr_df[tbl.TSR_COLUMNS]

    mode = f"consensus '{config.consensus_name}'" if config.consensus else "per-sample"
    logger.info(f"Clustered {len(passing)} TSSs into {len(tsr_df)} {mode} TSRs "
                f"(max_distance={config.max_distance})")
    return tsr_df


def read_tss_table(path: Path, wide: bool = False, samples: Optional[List[str]] = None) -> pd.DataFrame:
    """Read a tab-delimited TSS table in long or wide layout."""
    logger.info(f"Reading TSS table: {path}")
    df = pd.read_csv(path, sep='\t')
    if wide:
        df = tbl.tss_from_wide(df, samples)
    elif samples:
        df = df[df[tbl.SAMPLE].astype(str).isin(samples)]
    return df


def resolve_clustering_config(config_file: Optional[Path], **changes) -> ClusteringConfig:
    """Merge a YAML config file (if any) with command-line overrides."""
    base = load_config(config_file)[0] if config_file else ClusteringConfig()
    return override(base, **changes)


@app.command("run")
def run_command(
    input_file: Path = typer.Option(
        ..., "-i", "--input",
        help="Input TSS table (long: sample, chr, pos, strand, score; or wide with --wide)"
    ),
    output_file: Path = typer.Option(
        ..., "-o", "--output",
        help="Output TSR table"
    ),
    max_distance: Optional[int] = typer.Option(
        None, "-d", "--max-distance",
        help="Maximum gap between TSSs merged into one TSR (default 25)"
    ),
    threshold: Optional[float] = typer.Option(
        None, "-t", "--threshold",
        help="Minimum TSS score to take part in clustering (default 1)"
    ),
    n_samples: Optional[int] = typer.Option(
        None, "-n", "--n-samples",
        help="Minimum number of samples passing the threshold at a position (default 1)"
    ),
    consensus: bool = typer.Option(
        False, "--consensus",
        help="Pool samples into consensus TSRs instead of clustering each sample"
    ),
    samples: Optional[str] = typer.Option(
        None, "-s", "--samples",
        help="Samples to cluster (space-separated, default all)"
    ),
    wide: bool = typer.Option(
        False, "--wide",
        help="Input is a wide table (chr, pos, strand, one column per sample)"
    ),
    config_file: Optional[Path] = typer.Option(
        None, "-c", "--config",
        help="YAML config file (clustering section)"
    ),
    processes: Optional[int] = typer.Option(
        None, "-p", "--processes",
        help="Number of processes"
    ),
):
    """
    Cluster TSSs into transcription start regions.

    Example:
        tsrexpy clustering run -i tss.tsv -o tsr.tsv -d 25 -t 3 -n 2 --consensus
    """
    sample_list = samples.split() if samples else None
    try:
        config = resolve_clustering_config(
            config_file, max_distance=max_distance, threshold=threshold,
            n_samples=n_samples, consensus=consensus or None, processes=processes,
        )
        tss_df = read_tss_table(input_file, wide=wide, samples=sample_list)
        tsr_df = cluster_tss(tss_df, config)
    except ConfigurationError as e:
        raise typer.BadParameter(str(e))
    except DataIntegrityError as e:
        logger.error(str(e))
        raise typer.Exit(1)

    tsr_df.to_csv(output_file, sep='\t', index=False)
    logger.info(f"Saved {len(tsr_df)} TSRs to {output_file}")


if __name__ == '__main__':
    app()
