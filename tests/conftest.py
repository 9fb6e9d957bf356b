import numpy as np
import pandas as pd
import pytest

import BinClean as bc


def make_bins(counts, chrom='chr1', gc=50, size=1000, offset=0):
    """Contiguous bins on one chromosome; gc and size may be scalars or sequences."""
    counts = np.asarray(counts, dtype=float)
    n = len(counts)
    gcs = np.broadcast_to(np.asarray(gc), (n,))
    sizes = np.broadcast_to(np.asarray(size), (n,))
    ends = offset + np.cumsum(sizes)
    starts = ends - sizes
    return pd.DataFrame({
        'chrom': [chrom] * n,
        'start': starts.astype(np.int64),
        'end': ends.astype(np.int64),
        'gc': gcs.astype(np.int64),
        'count': counts,
    })


def concat_bins(*frames):
    return bc.prepare_bins(pd.concat(frames, ignore_index=True))


@pytest.fixture
def config():
    return bc.CleanConfig()


@pytest.fixture
def rng():
    return np.random.default_rng(20240611)
