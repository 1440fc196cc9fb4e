"""Tests for text, FASTA, CSV and figure output."""

import json

import numpy as np
import pytest

from haplomix.plots import plot_frequency_trajectories, plot_log_likelihood_trace
from haplomix.report import format_fasta, format_report, write_frequencies_csv
from haplomix.types import ConvergenceDiagnostics, HaplotypeResult


@pytest.fixture
def result():
    return HaplotypeResult(
        n_haplotypes=2,
        alpha0=95.5,
        alpha_e=0.25,
        pi_hap=np.array([[0.7, 0.3], [0.4, 0.6], [0.1, 0.9]]),
        haplotypes=["ACGTN", "ACTTN"],
        consensus_probabilities=np.array([[1, 1, 0.9, 1, 0], [1, 1, 0.8, 1, 0]]),
        start_position=10,
        cardinality_mass=np.array([0.0, 0.95, 0.05, 0.0, 0.0]),
        log_likelihood=-1234.5,
        n_sites=6,
        n_active_sites=4,
        n_variable_sites=1,
        convergence=ConvergenceDiagnostics(
            log_likelihoods=[-1500.0, -1240.0, -1234.5], n_iterations=2, converged=True
        ),
    )


class TestHaplotypeResult:
    def test_derived_values(self, result):
        assert result.n_timepoints == 3
        assert result.n_parameters == 3 + 1 * 3
        assert result.error_rate == pytest.approx(0.25 / 95.75)

    def test_json(self, result, tmp_path):
        result.save(tmp_path / "r.json")
        data = json.loads((tmp_path / "r.json").read_text())
        assert data["pi_hap"][2] == [0.1, 0.9]
        assert data["cardinality_mass"] == [0.95, 0.05, 0.0, 0.0]
        assert data["log_likelihood_trace"] == [-1500.0, -1240.0, -1234.5]
        assert data["converged"] is True


class TestReport:
    def test_report_sections(self, result):
        text = format_report(result)
        lines = text.splitlines()
        assert lines[0] == "Results for nHaplotypes = 2"
        assert lines[1] == "Number of adjustable parameters: 6"
        assert lines[2] == "Final likelihood: -1234.500000"
        assert lines[3].startswith("Dirichlet parameters for errors: 95.5\t0.25\t0.95")
        assert "Sites: 6 read, 4 active, 1 variable" in lines
        idx = lines.index("Haplotype frequencies")
        assert lines[idx + 1] == "0\t0.700000\t0.300000"
        assert lines[idx + 3] == "2\t0.100000\t0.900000"
        assert lines[idx + 4] == "Haplotypes"
        assert lines[-4:] == [">Haplo_0", "ACGTN", ">Haplo_1", "ACTTN"]

    def test_fasta_wrapping(self, result):
        fasta = format_fasta(result, width=2)
        assert fasta.splitlines()[:4] == [">Haplo_0", "AC", "GT", "N"]

    def test_fasta_empty_sequences(self, result):
        result.haplotypes = ["", ""]
        assert format_fasta(result) == ">Haplo_0\n\n>Haplo_1\n\n"

    def test_frequencies_csv(self, result, tmp_path):
        path = tmp_path / "freq.csv"
        write_frequencies_csv(result, path)
        rows = path.read_text().splitlines()
        assert rows[0] == "timepoint,Haplo_0,Haplo_1"
        assert rows[2] == "1,0.400000,0.600000"
        assert len(rows) == 4


class TestPlots:
    def test_frequency_trajectories(self, result, tmp_path):
        out = tmp_path / "freq.pdf"
        plot_frequency_trajectories(result, out)
        assert out.exists()
        assert out.stat().st_size > 0

    def test_log_likelihood_trace(self, result, tmp_path):
        out = tmp_path / "ll.png"
        plot_log_likelihood_trace(result, out)
        assert out.exists()
