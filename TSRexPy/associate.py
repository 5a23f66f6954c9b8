#!/usr/bin/env python3
"""
Associate - Assign TSSs to their containing TSR and mark dominant TSSs

A TSS belongs to a TSR when it lies on the same chromosome and strand,
within [start, end], and its sample belongs to the TSR's sample group.
The dominant TSS of a TSR is its highest-scoring member; ties go to the
leftmost position, then to the lexically smallest sample.
"""

import typer
import pandas as pd
import numpy as np
from typing import Dict, List, Optional, Tuple
from pathlib import Path
import logging

from TSRexPy import table as tbl
from TSRexPy.exceptions import ConfigurationError, DataIntegrityError

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

__version__ = "0.1.0"

app = typer.Typer(help=f"Associate TSSs with TSRs and mark dominant TSSs (v{__version__})")

ASSOCIATION_COLUMNS = [tbl.TSR_ID, tbl.DOMINANT]
DOMINANCE_COLUMNS = [tbl.DOMINANT_TSS, tbl.DOMINANT_SCORE, tbl.DOMINANT_SAMPLE, tbl.N_MEMBERS]


def resolve_sample_groups(tsr_samples: List[str],
                          tss_samples: List[str],
                          sample_map: Optional[Dict[str, List[str]]] = None,
                          consensus_name: str = "consensus") -> Dict[str, List[str]]:
    """
    Work out which TSS samples each TSR sample label owns.

    Args:
        tsr_samples: Distinct values of the TSR sample column
        tss_samples: Distinct values of the TSS sample column
        sample_map: Explicit TSR sample -> TSS samples mapping (takes precedence)
        consensus_name: Label of pooled TSRs, which own every TSS sample

    Returns:
        Dictionary mapping TSR sample labels to lists of TSS samples
    """
    groups = {}
    for label in tsr_samples:
        if sample_map and label in sample_map:
            members = [str(s) for s in sample_map[label]]
            unknown = sorted(set(members) - set(tss_samples))
            if unknown:
                raise ConfigurationError(
                    f"sample_map entry '{label}' references unknown TSS sample(s): {unknown}"
                )
        elif label in tss_samples:
            members = [label]
        elif label == consensus_name:
            members = list(tss_samples)
        else:
            raise ConfigurationError(
                f"TSR sample '{label}' matches no TSS sample; pass a sample_map for it"
            )
        groups[label] = members
    return groups


def _containing(starts: np.ndarray, ends: np.ndarray, ids: np.ndarray,
                pos: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Find the interval containing each position.

    Returns:
        Tuple of (tsr id or -1 per position, number of containing intervals)
    """
    order = np.argsort(starts, kind='mergesort')
    starts, ends, ids = starts[order], ends[order], ids[order]

    # intervals with start <= p, minus those that already ended before p
    counts = (np.searchsorted(starts, pos, side='right')
              - np.searchsorted(np.sort(ends), pos, side='left'))

    found = np.full(len(pos), -1, dtype=np.int64)
    candidate = np.searchsorted(starts, pos, side='right') - 1
    single = counts == 1
    direct = single & (candidate >= 0)
    direct[direct] = ends[candidate[direct]] >= pos[direct]
    found[direct] = ids[candidate[direct]]

    # nested intervals: the last-starting interval is not the container
    for i in np.nonzero(single & ~direct)[0]:
        hit = np.nonzero((starts <= pos[i]) & (ends >= pos[i]))[0]
        found[i] = ids[hit[0]]
    return found, counts


def associate_with_tsr(tss_df: pd.DataFrame,
                       tsr_df: pd.DataFrame,
                       sample_map: Optional[Dict[str, List[str]]] = None,
                       consensus_name: str = "consensus",
                       score_column: str = tbl.SCORE) -> pd.DataFrame:
    """
    Attach the containing TSR to every TSS.

    Args:
        tss_df: Full (unfiltered) TSS table
        tsr_df: TSR table from clustering
        sample_map: Optional TSR sample -> TSS samples mapping
        consensus_name: Label of pooled TSRs
        score_column: TSS score column

    Returns:
        Copy of the TSS table with a nullable integer tsr_id column
        (<NA> for TSSs outside every TSR)
    """
    result = tss_df.drop(columns=ASSOCIATION_COLUMNS, errors='ignore').copy()
    checked = tbl.validate_tss_table(result, score_column)
    tsr = tbl.validate_tsr_table(tsr_df)

    pos = checked[tbl.POS].values
    chroms = checked[tbl.CHR].values
    strands = checked[tbl.STRAND].values
    samples = checked[tbl.SAMPLE].values

    groups = resolve_sample_groups(
        sorted(tsr[tbl.SAMPLE].unique()), sorted(set(samples)), sample_map, consensus_name
    )

    assigned = np.full(len(checked), -1, dtype=np.int64)
    hits = np.zeros(len(checked), dtype=np.int64)

    for (label, chr_, strand), ivs in tsr.groupby([tbl.SAMPLE, tbl.CHR, tbl.STRAND], sort=True):
        rows = np.nonzero(
            (chroms == chr_) & (strands == strand) & np.isin(samples, groups[label])
        )[0]
        if len(rows) == 0:
            continue
        found, counts = _containing(
            ivs[tbl.START].values, ivs[tbl.END].values,
            ivs[tbl.TSR_ID].values.astype(np.int64), pos[rows]
        )
        hits[rows] += counts
        inside = found >= 0
        assigned[rows[inside]] = found[inside]

    if (hits > 1).any():
        bad = checked.loc[hits > 1, tbl.TSS_KEY].head(3).to_dict('records')
        raise DataIntegrityError(
            f"{int((hits > 1).sum())} TSSs fall inside more than one TSR, e.g. {bad}"
        )

    empty = sorted(set(tsr[tbl.TSR_ID].astype(np.int64)) - set(assigned[assigned >= 0]))
    if empty:
        raise DataIntegrityError(f"{len(empty)} TSRs have no member TSS, e.g. tsr_id {empty[:5]}")

    result[tbl.TSR_ID] = pd.Series(assigned, index=result.index).where(assigned >= 0).astype('Int64')

    n_assoc = int((assigned >= 0).sum())
    logger.info(f"Associated {n_assoc}/{len(result)} TSSs with {len(tsr)} TSRs")
    return result


def mark_dominant(tss_df: pd.DataFrame,
                  tsr_df: pd.DataFrame,
                  score_column: str = tbl.SCORE) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Mark the dominant TSS of every TSR.

    Args:
        tss_df: TSS table with a tsr_id column (from associate_with_tsr)
        tsr_df: TSR table
        score_column: TSS score column used for ranking

    Returns:
        Tuple of (TSS table with a boolean 'dominant' column,
                  TSR table with dominant_tss, dominant_score,
                  dominant_sample and n_members)
    """
    tbl.require_columns(tss_df, [tbl.TSR_ID, score_column] + tbl.TSS_KEY, "TSS table")
    tss = tss_df.drop(columns=[tbl.DOMINANT], errors='ignore').copy()
    tsr = tbl.validate_tsr_table(tsr_df.drop(columns=DOMINANCE_COLUMNS, errors='ignore'))

    ranked = tss.assign(_row=np.arange(len(tss)))
    ranked = ranked[ranked[tbl.TSR_ID].notna()]
    ranked = ranked.assign(**{tbl.TSR_ID: ranked[tbl.TSR_ID].astype(np.int64),
                              tbl.SAMPLE: ranked[tbl.SAMPLE].astype(str)})
    ranked = ranked.sort_values(
        [tbl.TSR_ID, score_column, tbl.POS, tbl.SAMPLE],
        ascending=[True, False, True, True],
        kind='mergesort',
    )
    dominant = ranked.drop_duplicates(tbl.TSR_ID, keep='first').set_index(tbl.TSR_ID)
    n_members = ranked.groupby(tbl.TSR_ID).size()

    tsr_ids = tsr[tbl.TSR_ID].astype(np.int64)
    missing = sorted(set(tsr_ids) - set(dominant.index))
    if missing:
        raise DataIntegrityError(f"{len(missing)} TSRs have no member TSS, e.g. tsr_id {missing[:5]}")

    is_dominant = np.zeros(len(tss), dtype=bool)
    is_dominant[dominant['_row'].values] = True
    tss[tbl.DOMINANT] = is_dominant

    tsr[tbl.DOMINANT_TSS] = tsr_ids.map(dominant[tbl.POS]).astype(np.int64).values
    tsr[tbl.DOMINANT_SCORE] = tsr_ids.map(dominant[score_column]).astype(float).values
    tsr[tbl.DOMINANT_SAMPLE] = tsr_ids.map(dominant[tbl.SAMPLE]).astype(object).values
    tsr[tbl.N_MEMBERS] = tsr_ids.map(n_members).astype(np.int64).values

    logger.info(f"Marked {len(dominant)} dominant TSSs")
    return tss, tsr


def associate_and_mark(tss_df: pd.DataFrame,
                       tsr_df: pd.DataFrame,
                       sample_map: Optional[Dict[str, List[str]]] = None,
                       consensus_name: str = "consensus",
                       score_column: str = tbl.SCORE) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Run association and dominance marking in one go."""
    tss = associate_with_tsr(tss_df, tsr_df, sample_map, consensus_name, score_column)
    return mark_dominant(tss, tsr_df, score_column)


def parse_sample_map(entries: Optional[List[str]]) -> Optional[Dict[str, List[str]]]:
    """Parse 'label=sampleA,sampleB' strings into a sample map."""
    if not entries:
        return None
    sample_map = {}
    for entry in entries:
        if '=' not in entry:
            raise ConfigurationError(f"Sample map entry must look like label=s1,s2: {entry}")
        label, members = entry.split('=', 1)
        sample_map[label.strip()] = [m.strip() for m in members.split(',') if m.strip()]
    return sample_map


@app.command("run")
def run_command(
    tss_file: Path = typer.Option(
        ..., "-t", "--tss",
        help="Input TSS table (long layout)"
    ),
    tsr_file: Path = typer.Option(
        ..., "-r", "--tsr",
        help="Input TSR table (from clustering)"
    ),
    tss_output: Path = typer.Option(
        ..., "--tss-output",
        help="Output TSS table with tsr_id and dominant columns"
    ),
    tsr_output: Path = typer.Option(
        ..., "--tsr-output",
        help="Output TSR table with dominant TSS columns"
    ),
    sample_map: Optional[List[str]] = typer.Option(
        None, "-m", "--sample-map",
        help="TSR sample to TSS samples, e.g. 'pooled=ctrl1,ctrl2' (repeatable)"
    ),
    consensus_name: str = typer.Option(
        "consensus", "--consensus-name",
        help="Sample label of consensus TSRs"
    ),
):
    """
    Associate TSSs with TSRs and mark the dominant TSS of each TSR.

    Example:
        tsrexpy associate run -t tss.tsv -r tsr.tsv --tss-output tss.assoc.tsv --tsr-output tsr.dom.tsv
    """
    logger.info(f"Loading TSS table: {tss_file}")
    tss_df = pd.read_csv(tss_file, sep='\t')
    logger.info(f"Loading TSR table: {tsr_file}")
    tsr_df = pd.read_csv(tsr_file, sep='\t')

    try:
        tss_out, tsr_out = associate_and_mark(
            tss_df, tsr_df, parse_sample_map(sample_map), consensus_name
        )
    except ConfigurationError as e:
        raise typer.BadParameter(str(e))
    except DataIntegrityError as e:
        logger.error(str(e))
        raise typer.Exit(1)

    tss_out.to_csv(tss_output, sep='\t', index=False)
    tsr_out.to_csv(tsr_output, sep='\t', index=False)
    logger.info(f"Saved {len(tss_out)} TSSs to {tss_output} and {len(tsr_out)} TSRs to {tsr_output}")


if __name__ == '__main__':
    app()
