"""Tests for the conditioning pipeline."""

import numpy as np
import pandas as pd
import pytest

from TSRexPy.conditioning import (
    BUCKET_COLUMN,
    GROUP_COLUMN,
    ConditioningDescriptor,
    OrderSpec,
    QuantileSpec,
    build_descriptor,
    condition,
    condition_frames,
    conditioned_table,
)
from TSRexPy.exceptions import ConfigurationError


@pytest.fixture
def tsr_table():
    """Six TSR-like rows with a non-default index."""
    return pd.DataFrame({
        'sample': ['a', 'b', 'a', 'c', 'b', 'a'],
        'score': [5, 3, 5, 1, 8, 2],
        'width': [1, 2, 3, 4, 5, 6],
        'label': ['x', 'y', 'x', 'y', 'x', 'y'],
    }, index=[10, 11, 12, 13, 14, 15])


def positions(groups):
    return [list(g.positions) for g in groups]


class TestNoConditioning:
    """Test the empty descriptor."""

    def test_round_trip(self, tsr_table):
        """Nothing set returns the table unchanged in content and order."""
        groups = condition(tsr_table, ConditioningDescriptor())

        assert len(groups) == 1
        assert groups[0].key is None
        assert list(groups[0].index) == list(tsr_table.index)

        [(_, frame)] = condition_frames(tsr_table, ConditioningDescriptor())
        pd.testing.assert_frame_equal(frame, tsr_table)

    def test_is_empty(self):
        assert ConditioningDescriptor().is_empty
        assert not ConditioningDescriptor(grouping='sample').is_empty


class TestGrouping:
    """Test grouping by column."""

    def test_first_seen_order(self, tsr_table):
        groups = condition(tsr_table, ConditioningDescriptor(grouping='sample'))

        assert [g.key for g in groups] == ['a', 'b', 'c']
        assert positions(groups) == [[0, 2, 5], [1, 4], [3]]
        assert list(groups[0].index) == [10, 12, 15]

    def test_ordering_on_group_key_sorts_groups(self, tsr_table):
        descriptor = ConditioningDescriptor(
            grouping='sample', ordering=OrderSpec('sample', descending=True)
        )
        groups = condition(tsr_table, descriptor)
        assert [g.key for g in groups] == ['c', 'b', 'a']

    def test_missing_values_form_a_group(self):
        df = pd.DataFrame({'gene': ['g1', None, 'g1'], 'score': [1, 2, 3]})

        groups = condition(df, ConditioningDescriptor(grouping='gene'))

        assert groups[0].key == 'g1'
        assert pd.isna(groups[1].key)
        assert positions(groups) == [[0, 2], [1]]


class TestQuantiling:
    """Test quantile buckets."""

    def test_descending_by_default(self, tsr_table):
        """Bucket 1 holds the highest scores; remainder rows go to the earlier buckets."""
        groups = condition(tsr_table, ConditioningDescriptor(quantiling=QuantileSpec('score', 4)))

        assert [g.key for g in groups] == [1, 2, 3, 4]
        assert [len(g.index) for g in groups] == [2, 2, 1, 1]
        assert positions(groups) == [[0, 4], [1, 2], [5], [3]]

    def test_ascending(self, tsr_table):
        spec = QuantileSpec('score', 4, ascending=True)
        groups = condition(tsr_table, ConditioningDescriptor(quantiling=spec))

        assert positions(groups) == [[3, 5], [0, 1], [2], [4]]

    @pytest.mark.parametrize("n_bins", range(1, 11))
    def test_completeness(self, tsr_table, n_bins):
        """Bucket sizes sum to the row count and each row appears once."""
        groups = condition(tsr_table, ConditioningDescriptor(quantiling=QuantileSpec('score', n_bins)))

        assert len(groups) == n_bins
        assert sum(len(g.index) for g in groups) == len(tsr_table)
        seen = sorted(p for g in groups for p in g.positions)
        assert seen == list(range(len(tsr_table)))

    def test_remainder_goes_to_earlier_buckets(self):
        df = pd.DataFrame({'score': np.arange(10)})
        groups = condition(df, ConditioningDescriptor(quantiling=QuantileSpec('score', 3)))
        assert [len(g.index) for g in groups] == [4, 3, 3]

    def test_missing_values_sort_last(self):
        df = pd.DataFrame({'score': [np.nan, 1.0, 5.0, 3.0]})
        groups = condition(df, ConditioningDescriptor(quantiling=QuantileSpec('score', 2)))
        assert positions(groups) == [[2, 3], [0, 1]]

    def test_within_groups(self, tsr_table):
        descriptor = ConditioningDescriptor(grouping='sample', quantiling=QuantileSpec('score', 2))

        groups = condition(tsr_table, descriptor)

        assert [g.key for g in groups] == [('a', 1), ('a', 2), ('b', 1), ('b', 2), ('c', 1), ('c', 2)]
        assert positions(groups) == [[0, 2], [5], [4], [1], [3], []]

    def test_zero_bins(self):
        with pytest.raises(ConfigurationError):
            QuantileSpec('score', 0)

    def test_non_integer_bins(self):
        with pytest.raises(ConfigurationError):
            QuantileSpec('score', 2.5)

    def test_non_numeric_column(self, tsr_table):
        with pytest.raises(ConfigurationError, match="numeric"):
            condition(tsr_table, ConditioningDescriptor(quantiling=QuantileSpec('label', 2)))


class TestOrdering:
    """Test row ordering."""

    def test_ascending_is_stable(self, tsr_table):
        groups = condition(tsr_table, ConditioningDescriptor(ordering=OrderSpec('score')))
        assert positions(groups) == [[3, 5, 1, 0, 2, 4]]

    def test_descending_is_stable(self, tsr_table):
        """Tied rows 0 and 2 keep their relative order."""
        groups = condition(tsr_table, ConditioningDescriptor(ordering=OrderSpec('score', descending=True)))
        assert positions(groups) == [[4, 0, 2, 1, 5, 3]]

    def test_all_three_combined(self, tsr_table):
        """Group, then quantile within the group, then order within the bucket."""
        descriptor = ConditioningDescriptor(
            grouping='sample',
            quantiling=QuantileSpec('score', 2),
            ordering=OrderSpec('width', descending=True),
        )
        groups = condition(tsr_table, descriptor)

        assert positions(groups)[0] == [2, 0]
        assert list(groups[0].index) == [12, 10]


class TestContract:
    """Test error reporting and non-mutation."""

    def test_unknown_column_reported_at_call(self, tsr_table):
        """Descriptors are built freely; the column is checked on use."""
        descriptor = ConditioningDescriptor(ordering=OrderSpec('not_a_column'))
        with pytest.raises(ConfigurationError, match="not_a_column"):
            condition(tsr_table, descriptor)

    @pytest.mark.parametrize("descriptor", [
        ConditioningDescriptor(grouping='gene'),
        ConditioningDescriptor(quantiling=QuantileSpec('tpm', 3)),
    ])
    def test_unknown_columns(self, tsr_table, descriptor):
        with pytest.raises(ConfigurationError):
            condition(tsr_table, descriptor)

    def test_table_not_mutated(self, tsr_table):
        before = tsr_table.copy()
        descriptor = ConditioningDescriptor(
            grouping='sample', quantiling=QuantileSpec('score', 2), ordering=OrderSpec('width')
        )
        conditioned_table(tsr_table, descriptor)
        pd.testing.assert_frame_equal(tsr_table, before)

    def test_repeated_calls_identical(self, tsr_table):
        descriptor = ConditioningDescriptor(grouping='label', quantiling=QuantileSpec('score', 3))
        assert positions(condition(tsr_table, descriptor)) == positions(condition(tsr_table, descriptor))


class TestConditionedTable:
    """Test the flattened export form."""

    def test_group_and_bucket_columns(self, tsr_table):
        descriptor = ConditioningDescriptor(grouping='sample', quantiling=QuantileSpec('score', 2))

        result = conditioned_table(tsr_table, descriptor)

        assert list(result.index) == [10, 12, 15, 14, 11, 13]
        assert list(result[GROUP_COLUMN]) == ['a', 'a', 'a', 'b', 'b', 'c']
        assert list(result[BUCKET_COLUMN]) == [1, 1, 2, 1, 2, 1]

    def test_empty_descriptor(self, tsr_table):
        pd.testing.assert_frame_equal(conditioned_table(tsr_table, ConditioningDescriptor()), tsr_table)


class TestBuildDescriptor:
    """Test building descriptors from flat options."""

    def test_full(self):
        descriptor = build_descriptor('sample', 'score', 5, False, 'width', True)
        assert descriptor == ConditioningDescriptor(
            grouping='sample',
            quantiling=QuantileSpec('score', 5),
            ordering=OrderSpec('width', descending=True),
        )

    def test_bins_without_column(self):
        with pytest.raises(ConfigurationError):
            build_descriptor(n_bins=3)

    def test_column_without_bins(self):
        with pytest.raises(ConfigurationError):
            build_descriptor(quantile_by='score')
