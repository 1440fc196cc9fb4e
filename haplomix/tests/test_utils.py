"""Tests for the log-gamma provider, simplex mapping and count-file I/O."""

import gzip

import numpy as np
import pytest
from scipy.special import gammaln

from haplomix.types import CountRecord
from haplomix.utils import (
    LogGamma,
    frequencies_from_unconstrained,
    inverse_stick_breaking,
    load_count_files,
    parse_count_file,
    parse_count_line,
    read_file_list,
    stick_breaking,
    unconstrained_from_frequencies,
    write_count_file,
    write_file_list,
)


class TestLogGamma:
    def test_scalar_and_array(self):
        lg = LogGamma()
        assert lg(5.0) == pytest.approx(np.log(24.0))
        x = np.array([0.5, 1.0, 10.0, 1e4])
        np.testing.assert_allclose(lg(x), gammaln(x))

    def test_cache_agrees_and_records_hits(self):
        lg = LogGamma(cache_size=16)
        first = lg(100.6)
        second = lg(100.6)
        assert first == second == pytest.approx(gammaln(100.6))
        info = lg.cache_info()
        assert info.hits == 1
        assert info.misses == 1

    def test_array_calls_bypass_cache(self):
        lg = LogGamma(cache_size=16)
        x = np.array([100.6, 100.6, 3.0])
        np.testing.assert_allclose(lg(x), gammaln(x))
        info = lg.cache_info()
        assert info.hits == 0
        assert info.misses == 0
        assert info.currsize == 0

    def test_cache_disabled(self):
        assert LogGamma().cache_info() is None

    def test_negative_cache_size(self):
        with pytest.raises(ValueError):
            LogGamma(cache_size=-1)


class TestStickBreaking:
    def test_known_values(self):
        np.testing.assert_allclose(stick_breaking([0.5, 0.5]), [0.5, 0.25, 0.25])
        np.testing.assert_allclose(stick_breaking([]), [1.0])

    @pytest.mark.parametrize("n_haplotypes", [2, 3, 5])
    def test_round_trip(self, n_haplotypes):
        rng = np.random.default_rng(n_haplotypes)
        pi = rng.dirichlet(np.ones(n_haplotypes))
        np.testing.assert_allclose(stick_breaking(inverse_stick_breaking(pi)), pi, atol=1e-12)

    def test_used_up_stick(self):
        theta = inverse_stick_breaking([1.0, 0.0, 0.0])
        assert theta[0] == 1.0
        assert theta[1] == 0.5

    def test_unconstrained_maps_to_simplex(self):
        rng = np.random.default_rng(0)
        for _ in range(20):
            pi = frequencies_from_unconstrained(rng.normal(scale=5.0, size=3))
            assert len(pi) == 4
            assert np.all(pi >= 0)
            assert pi.sum() == pytest.approx(1.0)

    def test_unconstrained_round_trip(self):
        pi = np.array([0.5, 0.3, 0.2])
        x = unconstrained_from_frequencies(pi)
        assert np.all(np.isfinite(x))
        np.testing.assert_allclose(frequencies_from_unconstrained(x), pi)

    def test_unconstrained_finite_at_boundary(self):
        x = unconstrained_from_frequencies(np.array([1.0, 0.0]))
        assert np.all(np.isfinite(x))


class TestParseCountLine:
    def test_comma_separated(self):
        rec = parse_count_line("chr1,12,A,5,4,1,0,0,0,0,2\n")
        assert rec.position == 12
        np.testing.assert_array_equal(rec.counts, [[5, 1, 0, 0], [4, 0, 0, 2]])

    def test_tab_separated(self):
        rec = parse_count_line("chr1\t3\tC\t0\t0\t7\t8\t0\t0\t0\t0")
        np.testing.assert_array_equal(rec.counts, [[0, 7, 0, 0], [0, 8, 0, 0]])

    def test_too_few_fields(self):
        with pytest.raises(ValueError, match="fields"):
            parse_count_line("chr1,3,C,0,0,7")

    def test_non_numeric(self):
        with pytest.raises(ValueError):
            parse_count_line("chr1,3,C,0,x,7,8,0,0,0,0")

    def test_negative(self):
        with pytest.raises(ValueError):
            parse_count_line("chr1,3,C,0,-1,7,8,0,0,0,0")


class TestCountFiles:
    def test_write_then_parse(self, tmp_path):
        records = [
            CountRecord(1, np.array([[3, 0, 0, 0], [2, 1, 0, 0]])),
            CountRecord(2, np.array([[0, 0, 0, 9], [0, 0, 0, 7]])),
        ]
        path = tmp_path / "tp.csv"
        write_count_file(records, path)
        text = path.read_text().splitlines()
        assert text[0].startswith("Reference,Position")
        assert text[2].split(",")[2] == "T"

        parsed = list(parse_count_file(path))
        assert [r.position for r in parsed] == [1, 2]
        np.testing.assert_array_equal(parsed[0].counts, records[0].counts)

    def test_gzipped(self, tmp_path):
        path = tmp_path / "tp.csv.gz"
        with gzip.open(path, "wt") as fh:
            fh.write("Reference,Position,RefBase,A+,A-,C+,C-,G+,G-,T+,T-\n")
            fh.write("ref,5,G,0,0,0,0,3,4,0,0\n")
        (rec,) = parse_count_file(path)
        assert rec.position == 5
        assert rec.total == 7

    def test_malformed_line_reports_location(self, tmp_path):
        path = tmp_path / "bad.csv"
        path.write_text("ref,1,A,1,1,0,0,0,0,0,0\nref,2,A,1,1\n")
        with pytest.raises(ValueError, match="bad.csv:2"):
            list(parse_count_file(path))

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            list(parse_count_file(tmp_path / "missing.csv"))


class TestFileList:
    def test_resolves_relative_to_list(self, tmp_path):
        sub = tmp_path / "data"
        sub.mkdir()
        (sub / "files.txt").write_text("# timepoints\nt0.csv\n\nt1.csv\n")
        files = read_file_list(sub / "files.txt")
        assert files == [sub.resolve() / "t0.csv", sub.resolve() / "t1.csv"]

    def test_missing_list(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            read_file_list(tmp_path / "nope.txt")

    def test_empty_list(self, tmp_path):
        path = tmp_path / "files.txt"
        path.write_text("\n# nothing\n")
        with pytest.raises(ValueError):
            read_file_list(path)

    def test_load_count_files(self, tmp_path):
        for t in range(3):
            write_count_file(
                [CountRecord(10, np.array([[t, 0, 0, 0], [0, 0, 0, 0]]))],
                tmp_path / f"t{t}.csv",
            )
        write_file_list([tmp_path / f"t{t}.csv" for t in range(3)], tmp_path / "files.txt")
        assert (tmp_path / "files.txt").read_text().splitlines() == ["t0.csv", "t1.csv", "t2.csv"]

        by_timepoint = load_count_files(tmp_path / "files.txt")
        assert len(by_timepoint) == 3
        assert [recs[0].total for recs in by_timepoint] == [0, 1, 2]
