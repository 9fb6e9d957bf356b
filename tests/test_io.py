import gzip

import numpy as np
import pandas as pd
import pytest

import BinClean as bc
from conftest import make_bins, concat_bins


def write_lines(path, lines):
    opener = gzip.open if str(path).endswith('.gz') else open
    with opener(path, 'wt') as f:
        f.write('\n'.join(lines) + '\n')


def test_read_bins_skips_malformed_lines(tmp_path):
    path = tmp_path / 'sample.binned'
    write_lines(path, [
        'chr1\t0\t1000\t40\t12.5',
        'chr1\t1000\t2000\t41',             # too few columns
        'chr1\t2000\t3000\tforty\t10',      # bad GC
        'chr1\t3000\t4000\t140\t10',        # GC out of range
        'chr1\t5000\t4000\t40\t10',         # end before start
        'chr1\t6000\t7000\t40\t-3',         # negative count
        'chr2\t0\t1000\t55\t20',
    ])

    bins = bc.read_bins(str(path))
    assert bins['chrom'].tolist() == ['chr1', 'chr2']
    assert bins['count'].tolist() == [12.5, 20.0]
    assert bins['mad_of_diffs'].isna().all()


def test_read_bins_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        bc.read_bins(str(tmp_path / 'missing.binned.gz'))


def test_read_bins_without_valid_lines(tmp_path):
    path = tmp_path / 'empty.binned'
    write_lines(path, ['# header only'])
    with pytest.raises(ValueError, match='No valid bins'):
        bc.read_bins(str(path))


def test_gzipped_bins_round_trip(tmp_path):
    bins = concat_bins(make_bins([1.5, 2.0, 3.25], chrom='chr1', gc=[30, 40, 50]),
                       make_bins([4.0], chrom='chrX', gc=60))
    path = tmp_path / 'cleaned.binned.gz'
    bc.write_bins(bins, str(path))

    with gzip.open(path, 'rt') as f:
        first = f.readline().rstrip('\n').split('\t')
    assert first == ['chr1', '0', '1000', '30', '1.5']

    reread = bc.read_bins(str(path))
    pd.testing.assert_frame_equal(reread[bc.BIN_COLUMNS], bins[bc.BIN_COLUMNS])


def test_load_manifest_regions_converts_to_one_based(tmp_path):
    path = tmp_path / 'manifest.bed'
    write_lines(path, [
        'track name=targets',
        'chr1\t500\t600',
        'chr1\t100\t200\ttarget_a',
        'chr2\t0\t50',
        'chr2\tbad\t50',
    ])

    regions = bc.load_manifest_regions(str(path))
    assert regions['chr1'] == [bc.ManifestRegion('chr1', 101, 200), bc.ManifestRegion('chr1', 501, 600)]
    assert regions['chr2'] == [bc.ManifestRegion('chr2', 1, 50)]


def test_load_manifest_regions_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        bc.load_manifest_regions(str(tmp_path / 'manifest.bed'))


def test_counts_by_gc_histogram(tmp_path):
    bins = make_bins([0.0, 3.7, 3.2, 2000.0], gc=[10, 20, 20, 20])
    path = tmp_path / 'CountsByGC.txt'
    bc.write_counts_by_gc_histogram(bins, str(path))

    table = pd.read_csv(path, sep='\t', index_col=0)
    assert table.shape == (bc.HISTOGRAM_MAX_COUNT, bc.NUM_GC_BUCKETS)
    assert table.loc[0, 'GC10'] == 1
    assert table.loc[3, 'GC20'] == 2
    assert table.to_numpy().sum() == 3


def test_cli_cleans_bins(tmp_path):
    infile = tmp_path / 'sample.binned.gz'
    outfile = tmp_path / 'out' / 'sample.cleaned.gz'
    counts = np.full(100, 100.0)
    counts[30] = 4000.0
    bc.write_bins(make_bins(counts), str(infile))

    status = bc.main(['-i', str(infile), '-o', str(outfile), '-r', '-s', '--show-summary'])
    assert status == 0
    cleaned = bc.read_bins(str(outfile))
    assert len(cleaned) == 99
    assert 4000.0 not in cleaned['count'].tolist()


def test_cli_with_manifest_and_small_ffpe_input(tmp_path):
    infile = tmp_path / 'sample.binned'
    outfile = tmp_path / 'sample.cleaned'
    manifest = tmp_path / 'manifest.bed'
    sd_file = tmp_path / 'FilterRegions.txt'
    bc.write_bins(make_bins(np.full(50, 100.0)), str(infile))
    write_lines(manifest, ['chr1\t0\t10000'])

    status = bc.main(['-i', str(infile), '-o', str(outfile), '-g', '-t', str(manifest),
                      '-f', str(sd_file)])
    assert status == 0
    assert outfile.exists()
    assert not sd_file.exists()


def test_cli_missing_input_fails_without_output(tmp_path):
    outfile = tmp_path / 'sample.cleaned'
    status = bc.main(['-i', str(tmp_path / 'missing.binned'), '-o', str(outfile)])
    assert status == 1
    assert not outfile.exists()


def test_cli_missing_manifest_fails_without_output(tmp_path):
    infile = tmp_path / 'sample.binned'
    outfile = tmp_path / 'sample.cleaned'
    bc.write_bins(make_bins(np.full(10, 100.0)), str(infile))

    status = bc.main(['-i', str(infile), '-o', str(outfile), '-g', '-t', str(tmp_path / 'manifest.bed')])
    assert status == 1
    assert not outfile.exists()
