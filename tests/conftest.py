"""Pytest configuration for TSRexPy tests."""

import sys
from pathlib import Path

import pandas as pd
import pytest

# Make the package importable without installation
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def make_tss(records):
    """Build a long TSS table from (sample, chr, pos, strand, score) tuples."""
    return pd.DataFrame(records, columns=['sample', 'chr', 'pos', 'strand', 'score'])


@pytest.fixture
def single_sample_tss():
    """One sample, one TSR candidate at 50-60 and a weak TSS at 200."""
    return make_tss([
        ('s1', 'chr1', 50, '+', 10),
        ('s1', 'chr1', 55, '+', 10),
        ('s1', 'chr1', 60, '+', 3),
        ('s1', 'chr1', 200, '+', 1),
    ])


@pytest.fixture
def two_sample_tss():
    """Two samples sharing positions 100 and 300; 105 only passes in A."""
    return make_tss([
        ('A', 'chr1', 100, '+', 5),
        ('A', 'chr1', 105, '+', 5),
        ('A', 'chr1', 300, '+', 5),
        ('B', 'chr1', 100, '+', 4),
        ('B', 'chr1', 105, '+', 1),
        ('B', 'chr1', 300, '+', 3),
    ])


@pytest.fixture
def multi_chrom_tss():
    """Several chromosomes, strands and samples for determinism checks."""
    records = []
    for sample, offset in [('ctrl', 0), ('treat', 3)]:
        for chr_ in ['chr2', 'chr1', 'chrX']:
            for strand in ['-', '+']:
                for i, pos in enumerate([10, 18, 25, 90, 95, 400, 410, 700]):
                    records.append((sample, chr_, pos + offset, strand, (i % 4) + 1 + offset))
    return make_tss(records)
