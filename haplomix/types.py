"""Core data types for haplomix.

Dataclasses for count records, model parameters, convergence diagnostics
and inference outputs. Result objects serialise to JSON-compatible dicts.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import numpy as np

BASES = ("A", "C", "G", "T")
N_BASES = 4
N_STRANDS = 2


@dataclass
class CountRecord:
    """Strand-resolved base counts for one site at one timepoint.

    Attributes:
        position: Site index (genomic position).
        counts: Integer array of shape (2, 4), ``counts[strand][base]``.
            Strand 0 is the forward strand; bases are ordered A, C, G, T.
    """

    position: int
    counts: np.ndarray  # (2, 4)

    def __post_init__(self) -> None:
        self.counts = np.asarray(self.counts, dtype=np.int64)
        if self.counts.shape != (N_STRANDS, N_BASES):
            raise ValueError(
                f"counts must have shape (2, 4), got {self.counts.shape}"
            )
        if np.any(self.counts < 0):
            raise ValueError(f"Negative read count at position {self.position}")

    @property
    def total(self) -> int:
        return int(self.counts.sum())


@dataclass
class ModelParameters:
    """Continuous model parameters.

    Attributes:
        alpha0: Dirichlet pseudo-count for bases carried by a haplotype.
        alpha_e: Dirichlet pseudo-count spread over error bases.
        pi_hap: Haplotype frequencies, shape (n_timepoints, n_haplotypes).
            Every row lies on the simplex.
    """

    alpha0: float
    alpha_e: float
    pi_hap: np.ndarray  # (T, H)

    @property
    def n_timepoints(self) -> int:
        return self.pi_hap.shape[0]

    @property
    def n_haplotypes(self) -> int:
        return self.pi_hap.shape[1]

    @property
    def error_rate(self) -> float:
        """Expected fraction of reads not matching the carried base."""
        return self.alpha_e / (self.alpha0 + self.alpha_e)

    def copy(self) -> ModelParameters:
        return ModelParameters(self.alpha0, self.alpha_e, self.pi_hap.copy())


@dataclass
class ConvergenceDiagnostics:
    """Diagnostics for the outer optimisation loop.

    Attributes:
        log_likelihoods: Total log-likelihood after every re-assignment pass
            (entry 0 is the pass on the starting parameters).
        n_iterations: Number of outer iterations performed.
        converged: Whether the relative improvement fell below threshold
            before the iteration cap.
        optimizer_failures: Number of optimiser calls that reported
            non-convergence.
    """

    log_likelihoods: list[float] = field(default_factory=list)
    n_iterations: int = 0
    converged: bool = False
    optimizer_failures: int = 0


@dataclass
class HaplotypeResult:
    """Complete haplomix output for one dataset.

    Attributes:
        n_haplotypes: Number of latent haplotypes (H).
        alpha0: Fitted pseudo-count for the carried base.
        alpha_e: Fitted pseudo-count for error bases.
        pi_hap: Haplotype frequencies per timepoint, shape (T, H).
        haplotypes: Consensus sequence per haplotype.
        consensus_probabilities: Probability of the reported base,
            shape (H, L) where L is the sequence length.
        start_position: Position of the first character of every sequence.
        cardinality_mass: Prior mass on assignments using exactly k
            distinct bases (index 0 unused), shape (5,).
        log_likelihood: Final total log-likelihood.
        n_sites: Number of sites read from the input.
        n_active_sites: Sites with at least one read.
        n_variable_sites: Active sites with more than one observed base.
        convergence: Outer-loop diagnostics.
    """

    n_haplotypes: int
    alpha0: float
    alpha_e: float
    pi_hap: np.ndarray  # (T, H)
    haplotypes: list[str]
    consensus_probabilities: np.ndarray  # (H, L)
    start_position: int
    cardinality_mass: np.ndarray  # (5,)
    log_likelihood: float
    n_sites: int = 0
    n_active_sites: int = 0
    n_variable_sites: int = 0
    convergence: ConvergenceDiagnostics = field(
        default_factory=ConvergenceDiagnostics
    )

    @property
    def n_timepoints(self) -> int:
        return self.pi_hap.shape[0]

    @property
    def error_rate(self) -> float:
        return self.alpha_e / (self.alpha0 + self.alpha_e)

    @property
    def n_parameters(self) -> int:
        """Number of adjustable parameters reported alongside the fit."""
        return 3 + (self.n_haplotypes - 1) * self.n_timepoints

    def to_dict(self) -> dict[str, Any]:
        """Serialize to JSON-compatible dict (numpy arrays -> lists)."""
        return {
            "n_haplotypes": self.n_haplotypes,
            "n_parameters": self.n_parameters,
            "alpha0": self.alpha0,
            "alpha_e": self.alpha_e,
            "error_rate": self.error_rate,
            "pi_hap": self.pi_hap.tolist(),
            "haplotypes": list(self.haplotypes),
            "consensus_probabilities": self.consensus_probabilities.tolist(),
            "start_position": self.start_position,
            "cardinality_mass": self.cardinality_mass[1:].tolist(),
            "log_likelihood": self.log_likelihood,
            "n_sites": self.n_sites,
            "n_active_sites": self.n_active_sites,
            "n_variable_sites": self.n_variable_sites,
            "log_likelihood_trace": list(self.convergence.log_likelihoods),
            "n_iterations": self.convergence.n_iterations,
            "converged": self.convergence.converged,
        }

    def save(self, path: Path) -> None:
        """Save result to JSON file."""
        path.write_text(json.dumps(self.to_dict(), indent=2))


@dataclass
class SimulationGroundTruth:
    """Ground truth from the simulator.

    Attributes:
        haplotypes: True haplotype sequences (length n_sites each).
        pi_hap: True haplotype frequencies, shape (T, H).
        variable_positions: Positions where haplotypes differ.
        error_rate: Per-read error rate used for simulation.
        start_position: Position of the first simulated site.
    """

    haplotypes: list[str]
    pi_hap: np.ndarray
    variable_positions: list[int] = field(default_factory=list)
    error_rate: float = 0.0
    start_position: int = 1

    def to_dict(self) -> dict[str, Any]:
        """Serialize to JSON-compatible dict."""
        return {
            "haplotypes": list(self.haplotypes),
            "pi_hap": self.pi_hap.tolist(),
            "variable_positions": list(self.variable_positions),
            "error_rate": self.error_rate,
            "start_position": self.start_position,
        }

    def save(self, path: Path) -> None:
        """Save ground truth to JSON file."""
        path.write_text(json.dumps(self.to_dict(), indent=2))
