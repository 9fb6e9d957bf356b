#!/usr/bin/env python3
"""
Bin cleaning for read-depth CNV calling
Raw per-window read counts → outlier/size/FFPE filtering → GC normalization

This module takes the binned read counts produced upstream of segmentation and
returns a cleaned, bias-corrected set of bins:
1. On-target restriction against a targeted-sequencing manifest
2. Chi-squared point-outlier removal and large-bin removal
3. Local standard deviation (FFPE artifact) estimation and removal
4. Median-ratio GC normalization with variance stabilization by GC bucket

Version: 1.0
"""

import numpy as np
import pandas as pd
import gzip
import argparse
import logging
import sys
import os
import time
import signal
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Sequence, Set, Tuple
from pathlib import Path
from scipy import stats

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Constants
BIN_COLUMNS = ['chrom', 'start', 'end', 'gc', 'count']
NUM_GC_BUCKETS = 101  # GC content 0-100 inclusive
DEFAULT_MIN_BINS_PER_GC = 100
DEFAULT_FFPE_THRESHOLD = 20.0  # Separates FF from noisy FFPE samples (training set of ~40 samples)
CHI2_CRITICAL_VALUE = round(float(stats.chi2.ppf(0.99, df=1)), 3)  # 6.635
SIZE_PERCENTILE = 98
MIN_BINS_FOR_SIZE_FILTER = 100 // (100 - SIZE_PERCENTILE)  # Below this the cut keeps every bin
LOCAL_SD_WINDOW = 20  # Consecutive count differences per local SD window
LOCAL_SD_AVERAGE_CUTOFF = 5.0
MIN_BINS_FOR_LOCAL_SD = 50000  # Targeted/low coverage data is too sparse for the windowed estimator
MIN_BINS_FOR_VARIANCE_NORMALIZATION = 500000  # Large exome panels and whole genomes only
IQR_SIGNIFICANCE_FACTOR = 2.0
# Empirically tuned: a bucket is compressed once 0.8x its IQR exceeds the global
# IQR, and deviations from the bucket median are divided by 0.8x the IQR ratio.
IQR_COMPRESSION_FACTOR = 0.8
IQR_SIGNIFICANT_GC_MIN = 10  # Extreme GC buckets are unreliable for the significance test
IQR_SIGNIFICANT_GC_MAX = 90  # Exclusive
HISTOGRAM_MAX_COUNT = 1024


# Global utility functions
def validate_file_exists(filepath: str, description: str = "File") -> None:
    """Validate that a file exists and is readable."""
    if not os.path.exists(filepath):
        raise FileNotFoundError(f"{description} not found: {filepath}")
    if not os.access(filepath, os.R_OK):
        raise PermissionError(f"{description} is not readable: {filepath}")

def setup_logging_with_file(output_dir: str, log_name: str = "binclean") -> None:
    """Set up logging with both file and console output."""
    log_file = Path(output_dir) / f"{log_name}_{time.strftime('%Y%m%d_%H%M%S')}.log"

    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    file_handler = logging.FileHandler(log_file)
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.handlers = []  # Clear existing handlers
    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)

    logger.info(f"Logging to file: {log_file}")

def is_autosome(chrom: str, autosomes: Optional[Set[str]] = None) -> bool:
    """
    Classify a chromosome name as autosomal.

    With an explicit autosome set, membership decides. Otherwise numeric names
    ('1'..'22', 'chr1'..'chr22', any numbered contig) are autosomes and
    X, Y, M and unplaced contigs are not.
    """
    if autosomes is not None:
        return chrom in autosomes
    name = chrom[3:] if chrom.lower().startswith('chr') else chrom
    return name.isdigit()

def _open_text(filepath: str, mode: str = 'rt'):
    if str(filepath).endswith('.gz'):
        return gzip.open(filepath, mode)
    return open(filepath, mode)


@dataclass(frozen=True)
class ManifestRegion:
    """Targeted region from a sequencing manifest (1-based, inclusive)."""
    chrom: str
    start: int
    end: int


@dataclass
class CleanConfig:
    """Options for a bin cleaning run, threaded explicitly into every stage."""
    perform_gc_normalization: bool = False
    filter_large_bins: bool = False
    remove_outliers: bool = False
    ffpe_output_path: Optional[str] = None
    manifest_regions: Optional[Dict[str, List[ManifestRegion]]] = None
    min_bins_per_gc_bucket: int = DEFAULT_MIN_BINS_PER_GC
    weighted_median_floor: int = DEFAULT_MIN_BINS_PER_GC
    ffpe_threshold: float = DEFAULT_FFPE_THRESHOLD
    autosomes: Optional[Set[str]] = None

    def __post_init__(self):
        if self.min_bins_per_gc_bucket < 1:
            raise ValueError(f"min_bins_per_gc_bucket must be positive: {self.min_bins_per_gc_bucket}")
        if self.weighted_median_floor < 1:
            raise ValueError(f"weighted_median_floor must be positive: {self.weighted_median_floor}")


@dataclass
class StageResult:
    """Output of one cleaning stage: the surviving bins, or the reason it was skipped."""
    name: str
    bins: pd.DataFrame
    skipped: bool = False
    reason: str = ''
    details: Dict = field(default_factory=dict)


@dataclass
class CleanResult:
    """Final cleaned bins plus the per-stage record of the run."""
    bins: pd.DataFrame
    local_sd_average: Optional[float]
    stages: List[StageResult]

    def stage(self, name: str) -> List[StageResult]:
        return [s for s in self.stages if s.name == name]


def prepare_bins(bins: pd.DataFrame) -> pd.DataFrame:
    """
    Return a copy of a bin table with canonical dtypes and a mad_of_diffs column.

    Raises:
        ValueError: If required columns are missing or values are out of range
    """
    missing = [c for c in BIN_COLUMNS if c not in bins.columns]
    if missing:
        raise ValueError(f"Bin table is missing columns: {missing}")

    prepared = bins.reset_index(drop=True).copy()
    prepared['chrom'] = prepared['chrom'].astype(str)
    prepared['start'] = prepared['start'].astype(np.int64)
    prepared['end'] = prepared['end'].astype(np.int64)
    prepared['gc'] = prepared['gc'].astype(np.int64)
    prepared['count'] = prepared['count'].astype(float)
    if 'mad_of_diffs' not in prepared.columns:
        prepared['mad_of_diffs'] = np.nan

    if len(prepared) == 0:
        return prepared
    if ((prepared['gc'] < 0) | (prepared['gc'] >= NUM_GC_BUCKETS)).any():
        raise ValueError("GC values must lie in 0-100")
    if (~(prepared['count'] >= 0)).any():
        raise ValueError("Bin counts must be non-negative numbers")
    if (prepared['end'] <= prepared['start']).any():
        raise ValueError("Bin end must be greater than start")

    # Same-chromosome bins must be contiguous and sorted by start
    chrom = prepared['chrom'].to_numpy()
    changes = np.flatnonzero(chrom[1:] != chrom[:-1]) + 1
    run_chroms = chrom[np.concatenate(([0], changes))]
    if len(set(run_chroms)) != len(run_chroms):
        logger.warning("Bins for the same chromosome are not contiguous")
    starts = prepared['start'].to_numpy()
    same_chrom = chrom[1:] == chrom[:-1]
    if np.any(same_chrom & (starts[1:] < starts[:-1])):
        logger.warning("Bins are not sorted by start within a chromosome")

    return prepared

def bin_sizes(bins: pd.DataFrame) -> np.ndarray:
    """Genomic size of every bin (end - start)."""
    return (bins['end'] - bins['start']).to_numpy()


# Interval intersection
#
# Bins (0-based half-open) and manifest regions (1-based inclusive) are merged
# with one forward-only region cursor per chromosome. Both inputs are sorted and
# non-overlapping, so a region ending before the current bin can never overlap a
# later bin on that chromosome; the cursor only advances and resets to 0 when the
# chromosome changes.

def _advance_cursor(regions: List[ManifestRegion], region_index: int, bin_start: int) -> int:
    while region_index < len(regions) and regions[region_index].end < bin_start + 1:
        region_index += 1
    return region_index

def iter_on_target_positions(chroms: Sequence[str], starts: Sequence[int], ends: Sequence[int],
                             regions_by_chrom: Dict[str, List[ManifestRegion]]) -> Iterator[int]:
    """Yield the positions of bins overlapping at least one manifest region."""
    current_chrom = None
    regions = None
    region_index = 0
    for i, chrom in enumerate(chroms):
        if chrom != current_chrom:
            current_chrom = chrom
            regions = regions_by_chrom.get(chrom)
            region_index = 0
        if not regions:
            continue
        region_index = _advance_cursor(regions, region_index, starts[i])
        if region_index < len(regions) and regions[region_index].start <= ends[i]:
            yield i

def on_target_mask(bins: pd.DataFrame, regions_by_chrom: Dict[str, List[ManifestRegion]]) -> np.ndarray:
    mask = np.zeros(len(bins), dtype=bool)
    positions = list(iter_on_target_positions(
        bins['chrom'].tolist(), bins['start'].tolist(), bins['end'].tolist(), regions_by_chrom
    ))
    mask[positions] = True
    return mask

def get_on_target_bins(bins: pd.DataFrame, regions_by_chrom: Dict[str, List[ManifestRegion]]) -> pd.DataFrame:
    """Subset of bins overlapping a manifest region, in input order."""
    return bins[on_target_mask(bins, regions_by_chrom)].reset_index(drop=True)

def intersect_bins_with_regions(bins: pd.DataFrame,
                                regions_by_chrom: Dict[str, List[ManifestRegion]]) -> pd.DataFrame:
    """
    Split bins at manifest region boundaries.

    Every bin overlapping one or more regions yields one row per overlapping
    region, clipped to the overlap and converted back to 0-based half-open
    coordinates, in region order. Bins overlapping no region are dropped. Bins
    must be genome-sorted and mutually non-overlapping.

    Args:
        bins: Bin table
        regions_by_chrom: Sorted, non-overlapping regions per chromosome

    Returns:
        Bin table of clipped intervals; other columns are carried over
    """
    chroms = bins['chrom'].tolist()
    starts = bins['start'].tolist()
    ends = bins['end'].tolist()

    positions = []
    clipped_starts = []
    clipped_ends = []
    current_chrom = None
    regions = None
    region_index = 0
    for i, chrom in enumerate(chroms):
        if chrom != current_chrom:
            current_chrom = chrom
            regions = regions_by_chrom.get(chrom)
            region_index = 0
        if not regions:
            continue
        region_index = _advance_cursor(regions, region_index, starts[i])
        # A region may span several bins, so scan ahead without moving the cursor
        j = region_index
        while j < len(regions) and regions[j].start <= ends[i]:
            positions.append(i)
            clipped_starts.append(max(starts[i], regions[j].start - 1))
            clipped_ends.append(min(ends[i], regions[j].end))
            j += 1

    result = bins.iloc[positions].reset_index(drop=True)
    result['start'] = np.asarray(clipped_starts, dtype=np.int64)
    result['end'] = np.asarray(clipped_ends, dtype=np.int64)
    return result


# GC bucketing and robust statistics

def analysis_mask(bins: pd.DataFrame, config: CleanConfig) -> np.ndarray:
    """Bins that feed the GC statistics: autosomal, and on-target when a manifest is set."""
    chrom_is_autosome = {c: is_autosome(c, config.autosomes) for c in bins['chrom'].unique()}
    mask = bins['chrom'].map(chrom_is_autosome).to_numpy(dtype=bool)
    if config.manifest_regions is not None:
        mask &= on_target_mask(bins, config.manifest_regions)
    return mask

def get_counts_by_gc(bins: pd.DataFrame, config: CleanConfig) -> Tuple[List[np.ndarray], np.ndarray]:
    """
    Group autosomal (on-target) counts by GC bucket.

    Returns:
        Tuple of (one count array per GC bucket 0-100, all selected counts)
    """
    mask = analysis_mask(bins, config)
    gc = bins['gc'].to_numpy()[mask]
    counts = bins['count'].to_numpy(dtype=float)[mask]

    order = np.argsort(gc, kind='stable')
    boundaries = np.searchsorted(gc[order], np.arange(1, NUM_GC_BUCKETS))
    counts_by_gc = np.split(counts[order], boundaries)
    return counts_by_gc, counts

def quartiles(values: np.ndarray) -> Tuple[float, float, float]:
    """25th, 50th and 75th percentiles; NaN for an empty sample."""
    if len(values) == 0:
        return (np.nan, np.nan, np.nan)
    q1, q2, q3 = np.percentile(values, [25, 50, 75])
    return (float(q1), float(q2), float(q3))

def weighted_quantiles(values: np.ndarray, weights: np.ndarray, quantiles: Sequence[float]) -> np.ndarray:
    """
    Weighted quantiles from sorted cumulative weights.

    Each quantile q is the smallest value whose cumulative weight reaches
    q * total weight. An empty sample gives NaN for every quantile.
    """
    values = np.asarray(values, dtype=float)
    weights = np.asarray(weights, dtype=float)
    if len(values) == 0:
        return np.full(len(quantiles), np.nan)

    sorted_idx = np.argsort(values, kind='stable')
    sorted_values = values[sorted_idx]
    cumsum = np.cumsum(weights[sorted_idx])
    targets = np.asarray(quantiles, dtype=float) * cumsum[-1]
    positions = np.minimum(np.searchsorted(cumsum, targets), len(sorted_values) - 1)
    return sorted_values[positions]

def get_weighted_counts(counts_by_gc: List[np.ndarray], gc_bucket: int,
                        min_count: int) -> Tuple[np.ndarray, np.ndarray]:
    """
    Build a weighted sample for a GC bucket with too few counts of its own.

    The window grows symmetrically around the bucket one step at a time. The
    bucket's own counts get weight 1, the two neighbours 1/2, two-away
    neighbours 1/4, and so on, until at least min_count values are gathered or
    both window edges fall outside 0-100. Statistics from this sample blend in
    the behaviour of neighbouring GC content.

    Returns:
        Tuple of (values, weights)
    """
    values = []
    weights = []
    n_values = 0
    radius = 0
    weight = 1.0
    while n_values < min_count:
        window_end = gc_bucket + radius
        window_start = gc_bucket - radius
        if window_end >= len(counts_by_gc) and window_start < 0:
            break

        if window_end < len(counts_by_gc):
            values.append(counts_by_gc[window_end])
            weights.append(np.full(len(counts_by_gc[window_end]), weight))
            n_values += len(counts_by_gc[window_end])

        if window_start != window_end and window_start >= 0:
            values.append(counts_by_gc[window_start])
            weights.append(np.full(len(counts_by_gc[window_start]), weight))
            n_values += len(counts_by_gc[window_start])

        radius += 1
        weight /= 2

    if not values:
        return np.array([], dtype=float), np.array([], dtype=float)
    return np.concatenate(values), np.concatenate(weights)


@dataclass
class GCBucketStatistics:
    """
    Genome-wide and per-GC-bucket quartiles of bin counts.

    Buckets with at least min_count samples use their own quartiles; sparser
    buckets use weighted quantiles of a neighbourhood sample (see
    get_weighted_counts). A bucket is NaN only when no bucket has data.
    """
    global_quartiles: Tuple[float, float, float]
    bucket_quartiles: np.ndarray  # shape (NUM_GC_BUCKETS, 3)
    bucket_sizes: np.ndarray

    @classmethod
    def from_counts(cls, counts_by_gc: List[np.ndarray], counts: np.ndarray,
                    min_count: int) -> 'GCBucketStatistics':
        bucket_quartiles = np.full((len(counts_by_gc), 3), np.nan)
        n_fallback = 0
        for gc_bucket, bucket_counts in enumerate(counts_by_gc):
            if len(bucket_counts) >= min_count:
                bucket_quartiles[gc_bucket] = quartiles(bucket_counts)
            else:
                weighted_values, weights = get_weighted_counts(counts_by_gc, gc_bucket, min_count)
                bucket_quartiles[gc_bucket] = weighted_quantiles(weighted_values, weights, [0.25, 0.5, 0.75])
                n_fallback += 1
        logger.debug(f"GC statistics: {n_fallback} of {len(counts_by_gc)} buckets used weighted fallback")

        return cls(
            global_quartiles=quartiles(counts),
            bucket_quartiles=bucket_quartiles,
            bucket_sizes=np.array([len(c) for c in counts_by_gc])
        )

    @property
    def global_median(self) -> float:
        return self.global_quartiles[1]

    @property
    def global_iqr(self) -> float:
        return self.global_quartiles[2] - self.global_quartiles[0]

    @property
    def bucket_medians(self) -> np.ndarray:
        return self.bucket_quartiles[:, 1]

    @property
    def bucket_iqrs(self) -> np.ndarray:
        return self.bucket_quartiles[:, 2] - self.bucket_quartiles[:, 0]


# Normalizers

def normalize_by_gc(bins: pd.DataFrame, config: CleanConfig) -> StageResult:
    """
    Simple median-ratio GC normalization.

    Statistics come from autosomal (on-target) bins, but every bin is rescaled
    by global_median / bucket_median. Buckets with a zero or undefined median
    are left untouched.
    """
    counts_by_gc, counts = get_counts_by_gc(bins, config)
    if len(counts) == 0:
        reason = "No autosomal bins available for GC statistics"
        logger.warning(f"{reason}; skipping GC normalization")
        return StageResult('gc_normalization', bins, skipped=True, reason=reason)

    gc_stats = GCBucketStatistics.from_counts(counts_by_gc, counts, config.min_bins_per_gc_bucket)
    bucket_median = gc_stats.bucket_medians[bins['gc'].to_numpy()]
    valid = np.isfinite(bucket_median) & (bucket_median > 0)

    normalized = bins.copy()
    values = normalized['count'].to_numpy(dtype=float, copy=True)
    values[valid] = gc_stats.global_median * values[valid] / bucket_median[valid]
    normalized['count'] = values

    logger.debug(f"GC normalization: global median {gc_stats.global_median:.3f}, "
                 f"{int(np.sum(~valid))} bins left untouched")
    return StageResult('gc_normalization', normalized,
                       details={'global_median': gc_stats.global_median,
                                'untouched_bins': int(np.sum(~valid))})

def normalize_variance_by_gc(bins: pd.DataFrame, config: CleanConfig) -> Tuple[StageResult, bool]:
    """
    Variance stabilization by GC bucket.

    A bucket is significant when its IQR is more than twice the global IQR
    (checked over GC 10-89). If any bucket is significant, every bin whose
    bucket IQR exceeds 1.25x the global IQR has its deviation from the bucket
    median divided by 0.8x the bucket/global IQR ratio. That divisor is always
    above 1, so compressed counts move toward a non-negative median and stay
    non-negative.
    Compression moves the mean, so callers re-run normalize_by_gc when the
    returned flag is set.

    Returns:
        Tuple of (stage result, whether any bin was compressed)
    """
    counts_by_gc, counts = get_counts_by_gc(bins, config)
    if len(counts) == 0:
        reason = "No autosomal bins available for GC statistics"
        logger.warning(f"{reason}; skipping variance normalization")
        return StageResult('variance_normalization', bins, skipped=True, reason=reason), False

    gc_stats = GCBucketStatistics.from_counts(counts_by_gc, counts, config.min_bins_per_gc_bucket)
    global_iqr = gc_stats.global_iqr
    if not global_iqr > 0:
        reason = f"Global IQR is {global_iqr}"
        logger.warning(f"{reason}; skipping variance normalization")
        return StageResult('variance_normalization', bins, skipped=True, reason=reason), False

    local_iqr = gc_stats.bucket_iqrs
    tested_iqr = local_iqr[IQR_SIGNIFICANT_GC_MIN:IQR_SIGNIFICANT_GC_MAX]
    significant_iqr_counter = int(np.sum(tested_iqr > IQR_SIGNIFICANCE_FACTOR * global_iqr))
    details = {'global_iqr': global_iqr, 'significant_iqr_counter': significant_iqr_counter}
    if significant_iqr_counter == 0:
        details['compressed_bins'] = 0
        return StageResult('variance_normalization', bins, details=details), False

    gc = bins['gc'].to_numpy()
    bin_iqr = local_iqr[gc]
    bin_median = gc_stats.bucket_medians[gc]
    mask = (bin_iqr * IQR_COMPRESSION_FACTOR > global_iqr) & np.isfinite(bin_median)

    normalized = bins.copy()
    values = normalized['count'].to_numpy(dtype=float, copy=True)
    ratio_iqr = bin_iqr[mask] / global_iqr
    values[mask] = bin_median[mask] + (values[mask] - bin_median[mask]) / (ratio_iqr * IQR_COMPRESSION_FACTOR)
    normalized['count'] = values

    details['compressed_bins'] = int(np.sum(mask))
    logger.info(f"Variance normalization: {significant_iqr_counter} GC buckets with large IQR, "
                f"{details['compressed_bins']} bins compressed")
    return StageResult('variance_normalization', normalized, details=details), bool(mask.any())


# Outlier filters

def chi_squared_statistic(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Poisson chi-squared statistic for pairs of counts; zero where a + b == 0."""
    a = np.asarray(a, dtype=float)
    b = np.asarray(b, dtype=float)
    mu = (a + b) / 2
    with np.errstate(divide='ignore', invalid='ignore'):
        chi2 = ((a - mu) ** 2 + (b - mu) ** 2) / mu
    return np.where(a + b == 0, 0.0, chi2)

def significantly_different(a: float, b: float) -> bool:
    """True if two counts are unlikely to come from the same Poisson distribution."""
    if a + b == 0:
        return False
    mu = (a + b) / 2
    chi2 = ((a - mu) ** 2 + (b - mu) ** 2) / mu
    return chi2 > CHI2_CRITICAL_VALUE

def remove_outliers(bins: pd.DataFrame) -> StageResult:
    """
    Remove point outliers: bins significantly different from both neighbours.

    A bin is kept when it is similar to at least one same-chromosome
    neighbour, or when it has no same-chromosome neighbour at all. A bin
    flanked by other chromosomes on both sides is dropped.
    """
    n = len(bins)
    if n == 0:
        logger.warning("No bins for outlier removal")
        return StageResult('outlier_removal', bins, skipped=True, reason="Empty bin set")

    chrom = bins['chrom'].to_numpy()
    counts = bins['count'].to_numpy(dtype=float)
    positions = np.arange(n)
    has_prev = positions > 0
    has_next = positions < n - 1

    same_prev = np.zeros(n, dtype=bool)
    same_prev[1:] = chrom[1:] == chrom[:-1]
    same_next = np.zeros(n, dtype=bool)
    same_next[:-1] = same_prev[1:]

    # different[i] compares bin i with bin i + 1
    different = chi_squared_statistic(counts[:-1], counts[1:]) > CHI2_CRITICAL_VALUE
    similar_prev = np.zeros(n, dtype=bool)
    similar_prev[1:] = same_prev[1:] & ~different
    similar_next = np.zeros(n, dtype=bool)
    similar_next[:-1] = same_next[:-1] & ~different

    flanked = has_prev & ~same_prev & has_next & ~same_next
    isolated = ~same_prev & ~same_next & ~flanked
    keep = similar_prev | similar_next | isolated

    return StageResult('outlier_removal', bins[keep].reset_index(drop=True),
                       details={'removed': int(n - keep.sum())})

def remove_big_bins(bins: pd.DataFrame) -> StageResult:
    """
    Remove genomically large bins, typically centromeres and other nasty regions.

    The threshold is the 98th percentile bin size, taken as the ceil(0.98 * n)-th
    smallest size; bins strictly larger are dropped.
    """
    n = len(bins)
    if n < MIN_BINS_FOR_SIZE_FILTER:
        reason = f"Too few bins to do size filtering ({n} < {MIN_BINS_FOR_SIZE_FILTER})"
        logger.warning(reason)
        return StageResult('size_filter', bins, skipped=True, reason=reason)

    sizes = bin_sizes(bins)
    index = (SIZE_PERCENTILE * n + 99) // 100 - 1
    threshold = int(np.sort(sizes)[index])
    keep = sizes <= threshold

    logger.debug(f"Size filter threshold: {threshold} bp")
    return StageResult('size_filter', bins[keep].reset_index(drop=True),
                       details={'threshold': threshold, 'removed': int(n - keep.sum())})

def _annotate_local_sd(bins: pd.DataFrame) -> Tuple[pd.DataFrame, np.ndarray, np.ndarray]:
    """
    Annotate bins with the SD of their window of consecutive count differences.

    Differences approximate a Skellam distribution centred on zero, so the
    metric is agnostic to copy number changes. Bins past the last full window
    keep a NaN annotation.
    """
    annotated = bins.copy()
    diffs = np.diff(annotated['count'].to_numpy(dtype=float))
    n_windows = len(diffs) // LOCAL_SD_WINDOW
    mad_of_diffs = np.full(len(annotated), np.nan)
    if n_windows == 0:
        annotated['mad_of_diffs'] = mad_of_diffs
        return annotated, np.array([], dtype=float), np.array([], dtype=object)

    covered = n_windows * LOCAL_SD_WINDOW
    local_sds = diffs[:covered].reshape(n_windows, LOCAL_SD_WINDOW).std(axis=1, ddof=1)
    mad_of_diffs[:covered] = np.repeat(local_sds, LOCAL_SD_WINDOW)
    annotated['mad_of_diffs'] = mad_of_diffs
    window_chroms = annotated['chrom'].to_numpy()[0:covered:LOCAL_SD_WINDOW]
    return annotated, local_sds, window_chroms

def local_standard_deviation_average(local_sds: np.ndarray, window_chroms: np.ndarray) -> float:
    """Average of per-chromosome mean window SDs."""
    if len(local_sds) == 0:
        return np.nan
    per_chrom = pd.Series(local_sds).groupby(window_chroms, sort=False).mean()
    return float(per_chrom.mean())

def get_local_standard_deviation(bins: pd.DataFrame) -> StageResult:
    """
    Estimate the local standard deviation (FFPE) metric.

    Standard deviation of consecutive-bin count differences over windows of 20
    differences has a distinct distribution in FFPE compared to fresh frozen
    samples. Every bin is annotated with its window SD (mad_of_diffs), and the
    genome-wide average of per-chromosome mean window SDs is reported as
    details['local_sd_average'].
    """
    annotated, local_sds, window_chroms = _annotate_local_sd(bins)
    if len(local_sds) == 0:
        reason = f"Too few bins for a {LOCAL_SD_WINDOW}-difference window"
        logger.warning(reason)
        return StageResult('local_sd_estimation', annotated, skipped=True, reason=reason,
                           details={'local_sd_average': np.nan})

    local_sd_average = local_standard_deviation_average(local_sds, window_chroms)
    logger.info(f"Local SD average: {local_sd_average:.3f} over {len(local_sds)} windows")
    return StageResult('local_sd_estimation', annotated,
                       details={'local_sd_average': local_sd_average})

def remove_bins_with_extreme_local_sd(bins: pd.DataFrame, local_sd_average: float,
                                      threshold: float) -> StageResult:
    """
    Remove bins whose window SD exceeds twice the threshold.

    Samples whose local SD average is at most 5.0 are not stripped at all.
    """
    annotated, _, _ = _annotate_local_sd(bins)
    if not local_sd_average > LOCAL_SD_AVERAGE_CUTOFF:
        reason = f"Local SD average {local_sd_average:.3f} does not exceed {LOCAL_SD_AVERAGE_CUTOFF}"
        logger.info(f"{reason}; keeping all bins")
        return StageResult('local_sd_removal', annotated, skipped=True, reason=reason)

    keep = ~(annotated['mad_of_diffs'].to_numpy() > threshold * 2.0)
    return StageResult('local_sd_removal', annotated[keep].reset_index(drop=True),
                       details={'removed': int(len(annotated) - keep.sum())})

def remove_bins_with_extreme_gc(bins: pd.DataFrame, threshold: int, config: CleanConfig) -> StageResult:
    """
    Remove bins whose GC bucket holds too few autosomal (on-target) bins.

    The per-bucket median used for normalization is unstable when the bucket
    is sparse. The threshold is capped by the average bucket population,
    itself floored at config.weighted_median_floor.
    """
    mask = analysis_mask(bins, config)
    gc = bins['gc'].to_numpy()
    gc_population = np.bincount(gc[mask], minlength=NUM_GC_BUCKETS)
    total = int(mask.sum())

    average_per_gc = max(config.weighted_median_floor, int(total / NUM_GC_BUCKETS))
    threshold = min(threshold, average_per_gc)
    keep = gc_population[gc] >= threshold

    return StageResult('extreme_gc_removal', bins[keep].reset_index(drop=True),
                       details={'threshold': threshold, 'removed': int(len(bins) - keep.sum())})


# Pipeline driver

def _log_stage(result: StageResult, n_in: int) -> None:
    if result.skipped:
        logger.info(f"Stage {result.name} skipped: {result.reason}")
    else:
        logger.info(f"Stage {result.name}: {n_in} -> {len(result.bins)} bins")

def clean_bins(bins: pd.DataFrame, config: CleanConfig) -> CleanResult:
    """
    Run the cleaning stages in their fixed order.

    Outlier removal, size filtering, local SD estimation (written to
    config.ffpe_output_path), local SD removal, then GC normalization. Each
    stage is toggled by config and degrades to a logged no-op when its input
    cannot support it.

    Args:
        bins: Bin table sorted by chromosome and start
        config: Cleaning options

    Returns:
        CleanResult with the cleaned bins and every stage's result
    """
    bins = prepare_bins(bins)
    stages = []
    local_sd_average = None

    def run(result: StageResult, n_in: int) -> pd.DataFrame:
        _log_stage(result, n_in)
        stages.append(result)
        return result.bins

    logger.info(f"Cleaning {len(bins)} bins")

    if config.remove_outliers:
        bins = run(remove_outliers(bins), len(bins))

    if config.filter_large_bins:
        bins = run(remove_big_bins(bins), len(bins))

    if config.ffpe_output_path is not None:
        if len(bins) < MIN_BINS_FOR_LOCAL_SD:
            reason = f"Too few bins for local SD estimation ({len(bins)} < {MIN_BINS_FOR_LOCAL_SD})"
            logger.warning(reason)
            stages.append(StageResult('local_sd_estimation', bins, skipped=True, reason=reason))
        else:
            estimation = get_local_standard_deviation(bins)
            bins = run(estimation, len(bins))
            local_sd_average = estimation.details['local_sd_average']
            write_local_sd(config.ffpe_output_path, local_sd_average)

            bins = run(remove_bins_with_extreme_local_sd(bins, local_sd_average, config.ffpe_threshold),
                       len(bins))

    if config.perform_gc_normalization:
        stripped = remove_bins_with_extreme_gc(bins, config.min_bins_per_gc_bucket, config)
        if len(stripped.bins) == 0:
            reason = "Coverage too low to perform GC correction"
            logger.warning(f"{reason}; proceeding without GC correction")
            stages.append(StageResult('gc_normalization', bins, skipped=True, reason=reason))
        else:
            bins = run(stripped, len(bins))
            bins = run(normalize_by_gc(bins, config), len(bins))
            if len(bins) > MIN_BINS_FOR_VARIANCE_NORMALIZATION:
                variance_result, compressed = normalize_variance_by_gc(bins, config)
                bins = run(variance_result, len(bins))
                # Compression shifts the mean; re-center with a second simple pass
                if compressed:
                    bins = run(normalize_by_gc(bins, config), len(bins))

    logger.info(f"Cleaning finished with {len(bins)} bins")
    return CleanResult(bins=bins, local_sd_average=local_sd_average, stages=stages)


# File I/O

def read_bins(bins_file: str, debug: bool = False) -> pd.DataFrame:
    """
    Read a tab-delimited bin file (chrom, start, end, gc, count), optionally gzipped.

    Malformed lines are skipped with a warning naming the line number.

    Raises:
        FileNotFoundError: If file doesn't exist
        ValueError: If no valid bins are found
    """
    validate_file_exists(bins_file, "Bins file")

    records = []
    line_num = 0

    try:
        with _open_text(bins_file) as f:
            for line in f:
                line_num += 1
                if not line.strip() or line.startswith('#'):
                    continue
                parts = line.rstrip('\n').split('\t')

                if len(parts) < 5:
                    if debug:
                        logger.debug(f"Line {line_num}: Skipping line with {len(parts)} columns")
                    continue

                try:
                    record = {
                        'chrom': parts[0],
                        'start': int(parts[1]),
                        'end': int(parts[2]),
                        'gc': int(parts[3]),
                        'count': float(parts[4])
                    }
                except ValueError as e:
                    logger.warning(f"Line {line_num} in {bins_file}: {e}")
                    continue

                if not 0 <= record['gc'] < NUM_GC_BUCKETS:
                    logger.warning(f"Line {line_num} in {bins_file}: GC {record['gc']} outside 0-100")
                    continue
                if record['end'] <= record['start']:
                    logger.warning(f"Line {line_num} in {bins_file}: end {record['end']} <= start {record['start']}")
                    continue
                if not record['count'] >= 0:
                    logger.warning(f"Line {line_num} in {bins_file}: invalid count {record['count']}")
                    continue
                records.append(record)

    except (OSError, UnicodeDecodeError) as e:
        logger.error(f"Error reading {bins_file} at line {line_num}: {e}")
        raise

    if debug:
        logger.debug(f"Successfully read {len(records)} bins from {bins_file}")

    if len(records) == 0:
        raise ValueError(f"No valid bins found in {bins_file}")

    return prepare_bins(pd.DataFrame(records, columns=BIN_COLUMNS))

def write_bins(bins: pd.DataFrame, output_file: str) -> None:
    """Write bins as tab-delimited text; gzip when the name ends in .gz."""
    bins[BIN_COLUMNS].to_csv(output_file, sep='\t', header=False, index=False, compression='infer')
    logger.info(f"Wrote {len(bins)} bins to {output_file}")

def write_local_sd(output_file: str, local_sd_average: float) -> None:
    """Write the local SD average as a single plain-text value."""
    with open(output_file, 'w') as f:
        f.write(f"{local_sd_average}\n")
    logger.info(f"Wrote local SD average to {output_file}")

def load_manifest_regions(manifest_file: str) -> Dict[str, List[ManifestRegion]]:
    """
    Load targeted regions from a BED file as 1-based inclusive ManifestRegions.

    Header, track and comment lines are ignored. Regions are sorted by start
    within each chromosome.

    Raises:
        FileNotFoundError: If the manifest doesn't exist
        ValueError: If no regions are found
    """
    validate_file_exists(manifest_file, "Manifest file")

    regions_by_chrom: Dict[str, List[ManifestRegion]] = {}
    with _open_text(manifest_file) as f:
        for line_num, line in enumerate(f, 1):
            if not line.strip() or line.startswith(('#', 'track', 'browser')):
                continue
            parts = line.rstrip('\n').split('\t')
            try:
                region = ManifestRegion(parts[0], int(parts[1]) + 1, int(parts[2]))
            except (IndexError, ValueError) as e:
                logger.warning(f"Line {line_num} in {manifest_file}: {e}")
                continue
            regions_by_chrom.setdefault(region.chrom, []).append(region)

    if not regions_by_chrom:
        raise ValueError(f"No valid regions found in {manifest_file}")

    for regions in regions_by_chrom.values():
        regions.sort(key=lambda r: r.start)
    logger.info(f"Loaded {sum(len(r) for r in regions_by_chrom.values())} manifest regions "
                f"on {len(regions_by_chrom)} chromosomes")
    return regions_by_chrom

def write_counts_by_gc_histogram(bins: pd.DataFrame, output_file: str) -> None:
    """Debugging aid: table of bin counts (rows 0-1023) by GC bucket (columns)."""
    counts = bins['count'].to_numpy(dtype=float)
    gc = bins['gc'].to_numpy()
    valid = (counts >= 0) & (counts < HISTOGRAM_MAX_COUNT)

    histogram = np.zeros((HISTOGRAM_MAX_COUNT, NUM_GC_BUCKETS), dtype=np.int64)
    np.add.at(histogram, (counts[valid].astype(np.int64), gc[valid]), 1)

    histogram_df = pd.DataFrame(histogram, columns=[f'GC{i}' for i in range(NUM_GC_BUCKETS)])
    histogram_df.index.name = '#Bin\\GC'
    histogram_df.to_csv(output_file, sep='\t')
    logger.info(f"Wrote counts-by-GC histogram to {output_file}")

def print_clean_summary(result: CleanResult, sample_name: str) -> None:
    """Print a per-stage summary of a cleaning run."""
    print(f"\n{'='*60}")
    print(f"Bin Cleaning Summary for {sample_name}")
    print(f"{'='*60}")

    if not result.stages:
        print("\nNo cleaning stages were run")

    for stage in result.stages:
        if stage.skipped:
            print(f"  {stage.name}: skipped ({stage.reason})")
        elif 'removed' in stage.details:
            print(f"  {stage.name}: {stage.details['removed']:,} bins removed")
        else:
            print(f"  {stage.name}: {len(stage.bins):,} bins")

    if result.local_sd_average is not None:
        print(f"\nLocal SD average: {result.local_sd_average:.3f}")

    print(f"\nBins retained: {len(result.bins):,}")
    if len(result.bins) > 0:
        print("\nPer-chromosome bins:")
        for chrom, n in result.bins.groupby('chrom', sort=False).size().items():
            print(f"  {chrom}: {n:,}")


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for bin cleaning."""
    parser = argparse.ArgumentParser(
        description='Correct bin counts based on genomic parameters',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:

# Outlier and size filtering only
bincleaner -i sample.binned.gz -o sample.cleaned.gz -r -s

# Whole genome: outliers, size, FFPE filter and GC normalization
bincleaner -i sample.binned.gz -o sample.cleaned.gz -r -s -g -f FilterRegions.txt

# Targeted panel: restrict GC statistics to on-target bins
bincleaner -i sample.binned.gz -o sample.cleaned.gz -g -t manifest.bed
        """
    )
    parser.add_argument('-i', '--infile', required=True,
                        help='Input bins file (chrom, start, end, gc, count), optionally gzipped')
    parser.add_argument('-o', '--outfile', required=True,
                        help='Output file for cleaned bins')
    parser.add_argument('-g', '--gcnorm', action='store_true',
                        help='Perform GC normalization')
    parser.add_argument('-s', '--filtsize', action='store_true',
                        help='Filter out genomically large bins')
    parser.add_argument('-r', '--outliers', action='store_true',
                        help='Filter outlier points')
    parser.add_argument('-f', '--ffpeoutliers',
                        help='Filter regions of FFPE biases and write the local SD average to this file')
    parser.add_argument('-t', '--manifest',
                        help='Targeted regions (BED) used to restrict GC statistics to on-target bins')
    parser.add_argument('-w', '--weighted-median', type=int, default=DEFAULT_MIN_BINS_PER_GC,
                        help=f'Minimum number of bins per GC required to calculate weighted median '
                             f'(default: {DEFAULT_MIN_BINS_PER_GC})')
    parser.add_argument('--min-bins-per-gc', type=int, default=DEFAULT_MIN_BINS_PER_GC,
                        help=f'Minimum bins in a GC bucket for direct statistics (default: {DEFAULT_MIN_BINS_PER_GC})')
    parser.add_argument('--gc-histogram',
                        help='Write a counts-by-GC histogram of the cleaned bins (debugging)')
    parser.add_argument('--show-summary', action='store_true',
                        help='Print a per-stage summary')
    parser.add_argument('--debug', action='store_true',
                        help='Enable debug mode with verbose output')

    args = parser.parse_args(argv)

    if args.debug:
        logger.setLevel(logging.DEBUG)
        logger.debug("Debug mode enabled")

    try:
        output_dir = Path(args.outfile).resolve().parent
        output_dir.mkdir(parents=True, exist_ok=True)
        setup_logging_with_file(str(output_dir), "binclean")

        bins = read_bins(args.infile, debug=args.debug)
        manifest_regions = load_manifest_regions(args.manifest) if args.manifest else None

        config = CleanConfig(
            perform_gc_normalization=args.gcnorm,
            filter_large_bins=args.filtsize,
            remove_outliers=args.outliers,
            ffpe_output_path=args.ffpeoutliers,
            manifest_regions=manifest_regions,
            min_bins_per_gc_bucket=args.min_bins_per_gc,
            weighted_median_floor=args.weighted_median
        )

        start_time = time.time()
        result = clean_bins(bins, config)
        write_bins(result.bins, args.outfile)
        logger.info(f"Cleaned {len(bins)} -> {len(result.bins)} bins in {time.time() - start_time:.1f} seconds")

        if args.gc_histogram:
            write_counts_by_gc_histogram(result.bins, args.gc_histogram)

        if args.show_summary:
            sample_name = os.path.basename(args.infile).split('.')[0]
            print_clean_summary(result, sample_name)

    except Exception as e:
        logger.error(f"Bin cleaning failed: {e}")
        if args.debug:
            import traceback
            traceback.print_exc()
        return 1

    return 0

if __name__ == '__main__':
    # Handle Ctrl+C gracefully
    signal.signal(signal.SIGINT, lambda x, y: sys.exit(130))
    sys.exit(main())
