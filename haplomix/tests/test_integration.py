"""End-to-end integration tests for haplomix.

Tests the full pipeline: simulate -> write count files -> load -> fit -> report.
"""

import json

import numpy as np
import pytest

from haplomix.corpus import Corpus, FitConfig
from haplomix.report import format_report, write_fasta, write_frequencies_csv
from haplomix.simulator import SimulationConfig, simulate_time_series, write_count_files


def _best_permutation(fitted, truth):
    """Column order of ``fitted`` closest to ``truth`` (two haplotypes)."""
    identity = np.abs(fitted - truth).sum()
    swapped = np.abs(fitted[:, ::-1] - truth).sum()
    return [0, 1] if identity <= swapped else [1, 0]


def _identity(a, b):
    return sum(x == y for x, y in zip(a, b)) / len(b)


@pytest.fixture(scope="module")
def simulated(tmp_path_factory):
    cfg = SimulationConfig(
        n_haplotypes=2,
        n_sites=150,
        n_timepoints=2,
        divergence=0.1,
        frequencies=np.array([[0.8, 0.2], [0.65, 0.35]]),
        coverage=150.0,
        error_rate=0.005,
        random_seed=42,
    )
    records, truth = simulate_time_series(cfg)
    list_path = write_count_files(records, tmp_path_factory.mktemp("sim"))
    return list_path, truth


@pytest.fixture(scope="module")
def fitted(simulated):
    list_path, _ = simulated
    corpus = Corpus.from_file_list(list_path, FitConfig(max_iterations=4))
    return corpus, corpus.fit()


class TestFullPipeline:
    """Simulate -> fit -> compare with ground truth."""

    def test_corpus_matches_simulation(self, simulated, fitted):
        _, truth = simulated
        corpus, result = fitted
        assert result.n_sites == 150
        assert result.n_active_sites == 150
        assert result.start_position == truth.start_position
        assert all(len(h) == 150 for h in result.haplotypes)

    def test_frequencies_recovered(self, simulated, fitted):
        _, truth = simulated
        _, result = fitted
        np.testing.assert_allclose(result.pi_hap.sum(axis=1), 1.0)
        order = _best_permutation(result.pi_hap, truth.pi_hap)
        np.testing.assert_allclose(result.pi_hap[:, order], truth.pi_hap, atol=0.05)

    def test_haplotypes_recovered(self, simulated, fitted):
        _, truth = simulated
        _, result = fitted
        order = _best_permutation(result.pi_hap, truth.pi_hap)
        for fitted_idx, true_seq in zip(order, truth.haplotypes):
            assert _identity(result.haplotypes[fitted_idx], true_seq) >= 0.95

    def test_shared_sites_called_on_every_haplotype(self, simulated, fitted):
        _, truth = simulated
        _, result = fitted
        variable = set(truth.variable_positions)
        shared = [
            i for i in range(len(truth.haplotypes[0]))
            if i + truth.start_position not in variable
        ]
        for seq in result.haplotypes:
            matches = sum(seq[i] == truth.haplotypes[0][i] for i in shared)
            assert matches / len(shared) >= 0.98

    def test_error_model_is_plausible(self, fitted):
        _, result = fitted
        assert result.alpha0 > result.alpha_e
        assert result.error_rate < 0.05

    def test_likelihood_trace(self, fitted):
        _, result = fitted
        trace = result.convergence.log_likelihoods
        assert len(trace) == result.convergence.n_iterations + 1
        assert all(np.isfinite(trace))
        assert trace[-1] > trace[0]

    def test_outputs(self, fitted, tmp_path):
        _, result = fitted
        write_fasta(result, tmp_path / "haplotypes.fasta")
        write_frequencies_csv(result, tmp_path / "frequencies.csv")
        result.save(tmp_path / "result.json")

        fasta = (tmp_path / "haplotypes.fasta").read_text().splitlines()
        assert fasta[0] == ">Haplo_0"
        assert (tmp_path / "frequencies.csv").read_text().splitlines()[0] == (
            "timepoint,Haplo_0,Haplo_1"
        )
        data = json.loads((tmp_path / "result.json").read_text())
        assert data["n_parameters"] == 3 + 1 * 2
        assert data["haplotypes"] == result.haplotypes
        assert "Final likelihood" in format_report(result)
