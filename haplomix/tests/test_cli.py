"""Tests for the command-line interface."""

import json

from click.testing import CliRunner

from haplomix import __version__
from haplomix.cli import cli


def _simulate(runner, out, *extra):
    return runner.invoke(
        cli,
        ["simulate", "--sites", "40", "--timepoints", "2", "--coverage", "60",
         "--divergence", "0.1", "-o", str(out), *extra],
    )


class TestCli:
    def test_version(self):
        result = CliRunner().invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_simulate(self, tmp_path):
        runner = CliRunner()
        result = _simulate(runner, tmp_path / "sim", "--frequencies", "0.9,0.1;0.6,0.4")
        assert result.exit_code == 0, result.output
        assert (tmp_path / "sim" / "files.txt").exists()
        assert (tmp_path / "sim" / "timepoint_01.csv").exists()
        truth = json.loads((tmp_path / "sim" / "ground_truth.json").read_text())
        assert truth["pi_hap"] == [[0.9, 0.1], [0.6, 0.4]]

    def test_simulate_bad_frequencies(self, tmp_path):
        result = _simulate(CliRunner(), tmp_path / "sim", "--frequencies", "0.5,x")
        assert result.exit_code != 0
        assert "frequencies" in result.output

    def test_simulate_frequency_shape_mismatch(self, tmp_path):
        result = _simulate(CliRunner(), tmp_path / "sim", "--frequencies", "0.5,0.5")
        assert result.exit_code != 0

    def test_infer_writes_outputs(self, tmp_path):
        runner = CliRunner()
        assert _simulate(runner, tmp_path / "sim").exit_code == 0
        out = tmp_path / "out"
        result = runner.invoke(
            cli,
            ["infer", str(tmp_path / "sim" / "files.txt"), "--max-iterations", "2",
             "-o", str(out)],
        )
        assert result.exit_code == 0, result.output
        assert "Results for nHaplotypes = 2" in result.output
        for name in ("report.txt", "haplotypes.fasta", "frequencies.csv", "result.json",
                     "frequencies.pdf", "log_likelihood.pdf"):
            assert (out / name).exists(), name
        data = json.loads((out / "result.json").read_text())
        assert data["n_iterations"] <= 2

    def test_infer_without_plots(self, tmp_path):
        runner = CliRunner()
        _simulate(runner, tmp_path / "sim")
        out = tmp_path / "out"
        result = runner.invoke(
            cli,
            ["infer", str(tmp_path / "sim" / "files.txt"), "--max-iterations", "1",
             "--no-plots", "-o", str(out)],
        )
        assert result.exit_code == 0, result.output
        assert not (out / "frequencies.pdf").exists()

    def test_infer_invalid_option(self, tmp_path):
        runner = CliRunner()
        _simulate(runner, tmp_path / "sim")
        result = runner.invoke(
            cli, ["infer", str(tmp_path / "sim" / "files.txt"), "-n", "0"]
        )
        assert result.exit_code != 0
        assert "n_haplotypes" in result.output

    def test_infer_malformed_count_file(self, tmp_path):
        (tmp_path / "t0.csv").write_text("ref,1,A,1,2\n")
        (tmp_path / "files.txt").write_text("t0.csv\n")
        result = CliRunner().invoke(cli, ["infer", str(tmp_path / "files.txt")])
        assert result.exit_code != 0
        assert "t0.csv:1" in result.output

    def test_infer_missing_count_file(self, tmp_path):
        (tmp_path / "files.txt").write_text("missing.csv\n")
        result = CliRunner().invoke(cli, ["infer", str(tmp_path / "files.txt")])
        assert result.exit_code != 0
        assert "not found" in result.output
