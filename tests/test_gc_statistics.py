import numpy as np
import pytest

import BinClean as bc
from conftest import make_bins, concat_bins


def empty_buckets():
    return [np.array([], dtype=float) for _ in range(bc.NUM_GC_BUCKETS)]


def test_quartiles_match_numpy():
    values = np.arange(1, 101, dtype=float)
    assert bc.quartiles(values) == pytest.approx(tuple(np.percentile(values, [25, 50, 75])))


def test_quartiles_of_empty_sample_are_nan():
    assert all(np.isnan(q) for q in bc.quartiles(np.array([])))


def test_weighted_quantiles_unit_weights():
    values = np.array([4.0, 1.0, 3.0, 2.0])
    result = bc.weighted_quantiles(values, np.ones(4), [0.25, 0.5, 1.0])
    np.testing.assert_array_equal(result, [1.0, 2.0, 4.0])


def test_weighted_quantiles_respect_weights():
    values = np.array([1.0, 2.0, 3.0, 4.0])
    weights = np.array([1.0, 1.0, 1.0, 10.0])
    assert bc.weighted_quantiles(values, weights, [0.5])[0] == 4.0


def test_weighted_counts_halve_weight_per_step():
    counts_by_gc = empty_buckets()
    counts_by_gc[50] = np.full(10, 100.0)
    counts_by_gc[49] = np.full(30, 90.0)
    counts_by_gc[51] = np.full(30, 110.0)
    counts_by_gc[48] = np.full(40, 80.0)

    values, weights = bc.get_weighted_counts(counts_by_gc, 50, min_count=100)
    assert len(values) == 110
    assert set(weights[values == 100.0]) == {1.0}
    assert set(weights[(values == 90.0) | (values == 110.0)]) == {0.5}
    assert set(weights[values == 80.0]) == {0.25}


def test_weighted_counts_stop_once_enough_samples():
    counts_by_gc = empty_buckets()
    counts_by_gc[49] = np.full(60, 90.0)
    counts_by_gc[51] = np.full(60, 110.0)
    counts_by_gc[47] = np.full(60, 70.0)

    values, _ = bc.get_weighted_counts(counts_by_gc, 50, min_count=100)
    assert len(values) == 120
    assert 70.0 not in values


def test_empty_bucket_with_populated_neighbours_has_finite_median():
    counts_by_gc = empty_buckets()
    counts_by_gc[49] = np.full(60, 90.0)
    counts_by_gc[51] = np.full(60, 110.0)

    values, weights = bc.get_weighted_counts(counts_by_gc, 50, min_count=100)
    median = bc.weighted_quantiles(values, weights, [0.5])[0]
    assert np.isfinite(median)
    assert median == 90.0


def test_weighted_counts_at_gc_edge_expand_one_way():
    counts_by_gc = empty_buckets()
    counts_by_gc[3] = np.full(5, 7.0)

    values, weights = bc.get_weighted_counts(counts_by_gc, 0, min_count=100)
    np.testing.assert_array_equal(values, np.full(5, 7.0))
    np.testing.assert_array_equal(weights, np.full(5, 0.125))


def test_weighted_counts_without_any_data():
    values, weights = bc.get_weighted_counts(empty_buckets(), 50, min_count=100)
    assert len(values) == 0
    assert len(weights) == 0


def test_bucket_statistics_direct_and_fallback():
    counts_by_gc = empty_buckets()
    counts_by_gc[40] = np.arange(90, 111, dtype=float)
    counts_by_gc[41] = np.array([500.0])
    counts = np.concatenate(counts_by_gc)

    gc_stats = bc.GCBucketStatistics.from_counts(counts_by_gc, counts, min_count=5)
    assert gc_stats.bucket_medians[40] == 100.0
    assert gc_stats.bucket_iqrs[40] == 10.0
    # Bucket 41 has one value of its own, topped up from bucket 40 at half weight
    assert np.isfinite(gc_stats.bucket_medians[41])
    assert np.isfinite(gc_stats.bucket_medians[0])
    assert gc_stats.global_median == np.median(counts)
    assert gc_stats.bucket_sizes[40] == 21


def test_bucket_statistics_without_data_are_nan():
    gc_stats = bc.GCBucketStatistics.from_counts(empty_buckets(), np.array([]), min_count=100)
    assert np.isnan(gc_stats.bucket_medians).all()
    assert np.isnan(gc_stats.global_median)


def test_counts_by_gc_uses_autosomes_only(config):
    bins = concat_bins(make_bins([1, 2, 3], chrom='chr1', gc=[40, 40, 41]),
                       make_bins([100, 200], chrom='chrX', gc=40))

    counts_by_gc, counts = bc.get_counts_by_gc(bins, config)
    assert len(counts_by_gc) == bc.NUM_GC_BUCKETS
    np.testing.assert_array_equal(counts_by_gc[40], [1, 2])
    np.testing.assert_array_equal(counts_by_gc[41], [3])
    assert sorted(counts) == [1, 2, 3]


def test_counts_by_gc_restricted_to_targets():
    bins = make_bins([1, 2, 3], gc=40, size=100)
    config = bc.CleanConfig(manifest_regions={'chr1': [bc.ManifestRegion('chr1', 101, 150)]})

    _, counts = bc.get_counts_by_gc(bins, config)
    np.testing.assert_array_equal(counts, [2])


def test_explicit_autosome_set():
    assert bc.is_autosome('chr7')
    assert bc.is_autosome('7')
    assert not bc.is_autosome('chrX')
    assert not bc.is_autosome('chrM')
    assert not bc.is_autosome('chr1_KI270706v1_random')
    assert bc.is_autosome('chrZ', autosomes={'chrZ'})
    assert not bc.is_autosome('chr1', autosomes={'chrZ'})
