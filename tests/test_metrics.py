"""Tests for TSR metrics."""

import numpy as np
import pandas as pd
import pytest

from TSRexPy.associate import associate_and_mark
from TSRexPy.clustering import cluster_tss
from TSRexPy.config import ClusteringConfig, MetricsConfig
from TSRexPy.metrics import (
    BROAD,
    PEAKED,
    UNDEFINED,
    TSRMetrics,
    UndefinedMetrics,
    calculate_pss,
    calculate_si,
    classify_shape,
    collapse_positions,
    compute_tsr_metrics,
    interquantile_bounds,
    tsr_metrics,
)
from conftest import make_tss


class TestShapeScores:
    """Test SI and PSS."""

    def test_si_singleton(self):
        assert calculate_si(np.array([5.0])) == 2.0

    def test_si_two_equal_positions(self):
        assert calculate_si(np.array([1.0, 1.0])) == pytest.approx(1.0)

    def test_si_empty(self):
        assert calculate_si(np.array([])) == 0.0

    def test_pss_singleton(self):
        assert calculate_pss(np.array([5.0]), 1) == 0.0

    def test_pss(self):
        """Entropy of two equal positions (1 bit) times log2(4)."""
        assert calculate_pss(np.array([1.0, 1.0]), 4) == pytest.approx(2.0)


class TestInterquantile:
    """Test interquantile bounds on cumulative score mass."""

    def test_evenly_spread(self):
        """Four equal positions: 25% and 75% fall on record boundaries."""
        bounds = interquantile_bounds(np.array([10, 20, 30, 40]), np.ones(4))
        assert bounds == (15.0, 35.0)

    def test_boundary_between_records(self):
        """The 50% mark sits exactly between the second and third record."""
        bounds = interquantile_bounds(np.array([10, 20, 30, 40]), np.ones(4), 0.5, 0.9)
        assert bounds == (25.0, 40.0)

    def test_quantile_inside_a_position_mass(self):
        """Both quantiles fall inside the mass owned by a single position."""
        lower, upper = interquantile_bounds(np.array([100, 200]), np.array([1.0, 1.0]))
        assert (lower, upper) == (100.0, 200.0)

    def test_dominant_position_holds_both_bounds(self):
        bounds = interquantile_bounds(np.array([100, 120]), np.array([1.0, 100.0]))
        assert bounds == (120.0, 120.0)

    def test_bounds_contain_central_peak(self):
        lower, upper = interquantile_bounds(np.array([100, 101, 102]), np.array([1.0, 10.0, 1.0]))
        assert lower <= 101 <= upper
        assert (lower, upper) == (101.0, 101.0)

    def test_skewed_with_light_tail(self):
        """A heavy position at 50 and a long light tail to the right."""
        positions = np.array([50, 60, 70, 80, 90])
        scores = np.array([40.0, 2.0, 2.0, 2.0, 2.0])

        lower, upper = interquantile_bounds(positions, scores)

        assert (lower, upper) == (50.0, 50.0)

    def test_unsorted_input(self):
        assert interquantile_bounds(np.array([40, 10, 30, 20]), np.ones(4)) == (15.0, 35.0)

    def test_custom_quantiles(self):
        bounds = interquantile_bounds(np.array([10, 20, 30, 40]), np.ones(4), 0.5, 1.0)
        assert bounds == (25.0, 40.0)

    def test_no_mass(self):
        assert interquantile_bounds(np.array([10, 20]), np.zeros(2)) is None

    def test_collapse_positions(self):
        """Scores from several samples at one position are summed."""
        pos, mass = collapse_positions(np.array([110, 100, 100]), np.array([2.0, 1.0, 1.0]))
        assert list(pos) == [100, 110]
        assert list(mass) == [2.0, 2.0]


class TestComputeMetrics:
    """Test metrics of a single TSR."""

    def test_singleton(self):
        result = compute_tsr_metrics(np.array([100]), np.array([5.0]), 100, 100)

        assert isinstance(result, TSRMetrics)
        assert result.width == 1
        assert result.iqr_lower == result.iqr_upper == 100.0
        assert result.iqr_width == 1.0
        assert result.shape_index == 2.0
        assert result.shape_score == 0.0
        assert result.shape_class == PEAKED

    def test_broad(self):
        result = compute_tsr_metrics(np.array([100, 200]), np.array([1.0, 1.0]), 100, 200)

        assert result.width == 101
        assert result.iqr_width == 101.0
        assert result.shape_class == BROAD

    def test_dominant_position_with_light_tail_is_peaked(self):
        """Nearly all mass at 120; the lone read at 100 does not widen the TSR."""
        result = compute_tsr_metrics(np.array([100, 120]), np.array([1.0, 100.0]), 100, 120)

        assert result.width == 21
        assert result.iqr_lower <= 120 <= result.iqr_upper
        assert result.iqr_width == 1.0
        assert result.shape_class == PEAKED

    def test_central_peak_is_peaked(self):
        result = compute_tsr_metrics(np.array([100, 101, 102]), np.array([1.0, 10.0, 1.0]), 100, 102)

        assert (result.iqr_lower, result.iqr_upper) == (101.0, 101.0)
        assert result.shape_class == PEAKED

    def test_shape_score_uses_positions_inside_bounds(self):
        """Bounds 15-35 keep the records at 20 and 30: one bit of entropy times log2(21)."""
        result = compute_tsr_metrics(np.array([10, 20, 30, 40]), np.ones(4), 10, 40)

        assert result.shape_score == pytest.approx(np.log2(21))

    def test_threshold_is_configurable(self):
        positions, scores = np.array([10, 20, 30, 40]), np.ones(4)

        loose = compute_tsr_metrics(positions, scores, 10, 40, MetricsConfig(peaked_threshold=25))
        strict = compute_tsr_metrics(positions, scores, 10, 40, MetricsConfig(peaked_threshold=20))

        assert loose.iqr_width == 21.0
        assert loose.shape_class == PEAKED
        assert strict.shape_class == BROAD

    def test_threshold_is_inclusive(self):
        assert classify_shape(10.0, 10.0) == PEAKED
        assert classify_shape(10.5, 10.0) == BROAD

    def test_no_members(self):
        result = compute_tsr_metrics(np.array([], dtype=int), np.array([]), 100, 120)

        assert isinstance(result, UndefinedMetrics)
        assert result.width == 21
        assert result.reason == "no members"
        assert result.shape_class == UNDEFINED

    def test_zero_scores(self):
        result = compute_tsr_metrics(np.array([100, 101]), np.array([0.0, 0.0]), 100, 101)

        assert isinstance(result, UndefinedMetrics)
        assert result.reason == "members carry no score mass"


class TestMetricsTable:
    """Test metrics over a TSR table."""

    def _pipeline(self, tss, **kwargs):
        tsr = cluster_tss(tss, ClusteringConfig(**kwargs))
        return associate_and_mark(tss, tsr)

    def test_columns_added(self, single_sample_tss):
        tss, tsr = self._pipeline(single_sample_tss, max_distance=10, threshold=2)

        result = tsr_metrics(tss, tsr)

        row = result.iloc[0]
        assert row['width'] == 11
        assert row['iqr_lower'] == 50.0
        assert row['shape_class'] in (PEAKED, BROAD)
        assert list(result.columns[:len(tsr.columns)]) == list(tsr.columns)

    def test_undefined_row(self):
        tss = make_tss([
            ('s1', 'chr1', 100, '+', 5),
            ('s1', 'chr1', 500, '+', 5),
        ])
        tss['tsr_id'] = pd.array([1, pd.NA], dtype='Int64')
        tsr = pd.DataFrame({
            'tsr_id': [1, 2], 'sample': ['s1', 's1'], 'chr': ['chr1', 'chr1'],
            'start': [100, 300], 'end': [100, 320], 'strand': ['+', '+'],
        })

        result = tsr_metrics(tss, tsr)

        assert list(result['shape_class']) == [PEAKED, UNDEFINED]
        assert np.isnan(result.loc[1, 'iqr_width'])
        assert result.loc[1, 'width'] == 21

    def test_rerun_replaces_columns(self, single_sample_tss):
        tss, tsr = self._pipeline(single_sample_tss, max_distance=10, threshold=2)
        once = tsr_metrics(tss, tsr)
        twice = tsr_metrics(tss, once)
        pd.testing.assert_frame_equal(once, twice)

    def test_parallel_matches_serial(self, multi_chrom_tss):
        tss, tsr = self._pipeline(multi_chrom_tss, max_distance=8, threshold=2)

        serial = tsr_metrics(tss, tsr)
        parallel = tsr_metrics(tss, tsr, MetricsConfig(processes=2))

        pd.testing.assert_frame_equal(serial, parallel)

    def test_empty_tsr_table_keeps_numeric_types(self):
        tss = make_tss([('s1', 'chr1', 100, '+', 1)])
        tsr = cluster_tss(tss, ClusteringConfig(threshold=5))
        tss, tsr = associate_and_mark(tss, tsr)

        result = tsr_metrics(tss, tsr)

        assert result.empty
        assert result['width'].dtype == np.int64
        for col in ['iqr_lower', 'iqr_upper', 'iqr_width', 'shape_index', 'shape_score']:
            assert result[col].dtype == np.float64
        assert tsr['dominant_sample'].dtype == object
