"""Haplotype-to-base assignments and their Dirichlet-multinomial likelihood.

An assignment maps every haplotype to the base it carries at a site. With
H haplotypes there are ``4**H`` assignments, indexed by the integer whose
base-4 digits (least significant first) are the bases of haplotypes
0..H-1.

The catalog of assignment shapes is immutable and built once per run. The
parameter-dependent quantities (per-timepoint base mixture and Dirichlet
pseudo-counts) live in a separate AssignmentTable that is rebuilt whenever
the haplotype frequencies or the error model change.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from haplomix.types import N_BASES
from haplomix.utils import LogGamma


class InvalidAssignmentIndex(ValueError):
    """Assignment index outside ``[0, 4**n_haplotypes)``."""


@dataclass(frozen=True)
class Assignment:
    """One candidate haplotype -> base mapping.

    Attributes:
        bases: Base index (0..3) carried by each haplotype.
    """

    bases: tuple[int, ...]

    @classmethod
    def from_index(cls, index: int, n_haplotypes: int) -> Assignment:
        if n_haplotypes < 1:
            raise ValueError(f"n_haplotypes must be >= 1, got {n_haplotypes}")
        n_assign = N_BASES**n_haplotypes
        if not 0 <= index < n_assign:
            raise InvalidAssignmentIndex(
                f"assignment index {index} outside [0, {n_assign})"
            )
        bases = tuple((index // N_BASES**h) % N_BASES for h in range(n_haplotypes))
        return cls(bases)

    @property
    def index(self) -> int:
        return sum(b * N_BASES**h for h, b in enumerate(self.bases))

    @property
    def n_haplotypes(self) -> int:
        return len(self.bases)

    @property
    def present_bases(self) -> frozenset[int]:
        return frozenset(self.bases)

    @property
    def n_present(self) -> int:
        return len(self.present_bases)

    @property
    def n_absent(self) -> int:
        return N_BASES - self.n_present


@dataclass(frozen=True)
class AssignmentCatalog:
    """All ``4**H`` assignments in array form.

    Attributes:
        n_haplotypes: H.
        bases: (n_assign, H) base index per haplotype.
        present: (n_assign, 4) whether the assignment uses each base.
        n_present: (n_assign,) number of distinct bases used.
        n_assign_diff_bases: (5,) number of assignments using exactly k
            distinct bases; index 0 is always 0.
    """

    n_haplotypes: int
    bases: np.ndarray
    present: np.ndarray
    n_present: np.ndarray
    n_assign_diff_bases: np.ndarray

    def __len__(self) -> int:
        return self.bases.shape[0]

    def __getitem__(self, index: int) -> Assignment:
        return Assignment(tuple(int(b) for b in self.bases[index]))

    @property
    def one_hot(self) -> np.ndarray:
        """(n_assign, H, 4) indicator of the base carried by each haplotype."""
        return (self.bases[:, :, np.newaxis] == np.arange(N_BASES)).astype(np.float64)

    def compatible_with(self, observed: np.ndarray) -> np.ndarray:
        """Indices of assignments using only bases in ``observed`` (bool 4-vector)."""
        observed = np.asarray(observed, dtype=bool)
        return np.flatnonzero(~np.any(self.present & ~observed, axis=1))


def build_catalog(n_haplotypes: int) -> AssignmentCatalog:
    """Decode every assignment index for ``n_haplotypes`` haplotypes."""
    if n_haplotypes < 1:
        raise ValueError(f"n_haplotypes must be >= 1, got {n_haplotypes}")
    n_assign = N_BASES**n_haplotypes
    indices = np.arange(n_assign)
    powers = N_BASES ** np.arange(n_haplotypes)
    bases = (indices[:, np.newaxis] // powers) % N_BASES
    present = np.zeros((n_assign, N_BASES), dtype=bool)
    for h in range(n_haplotypes):
        present[indices, bases[:, h]] = True
    n_present = present.sum(axis=1)
    n_assign_diff_bases = np.bincount(n_present, minlength=N_BASES + 1)
    return AssignmentCatalog(
        n_haplotypes=n_haplotypes,
        bases=bases,
        present=present,
        n_present=n_present,
        n_assign_diff_bases=n_assign_diff_bases,
    )


@dataclass(frozen=True)
class AssignmentTable:
    """Parameter-dependent quantities for every assignment and timepoint.

    Attributes:
        alpha0: Pseudo-count for a base carried by the mixture.
        alpha_e: Pseudo-count for an error base.
        pi_hap: (T, H) haplotype frequencies the table was built from.
        mixture: (n_assign, T, 4) summed frequency of haplotypes carrying
            each base.
        alpha_obs: (n_assign, T, 4) Dirichlet pseudo-counts,
            ``mixture * alpha0 + (1 - mixture) * alpha_e``.
        sum_alpha: (n_assign, T) sum of ``alpha_obs`` over bases.
    """

    alpha0: float
    alpha_e: float
    pi_hap: np.ndarray
    mixture: np.ndarray
    alpha_obs: np.ndarray
    sum_alpha: np.ndarray

    def with_alphas(self, alpha0: float, alpha_e: float) -> AssignmentTable:
        """New table with a different error model and the same frequencies."""
        alpha_obs, sum_alpha = _pseudo_counts(self.mixture, alpha0, alpha_e)
        return AssignmentTable(
            alpha0, alpha_e, self.pi_hap, self.mixture, alpha_obs, sum_alpha
        )

    def with_timepoint(
        self, catalog: AssignmentCatalog, timepoint: int, pi_t: np.ndarray
    ) -> AssignmentTable:
        """New table with the frequencies of one timepoint replaced."""
        pi_hap = self.pi_hap.copy()
        pi_hap[timepoint] = pi_t
        mixture = self.mixture.copy()
        mixture[:, timepoint, :] = np.einsum("ahb,h->ab", catalog.one_hot, pi_t)
        alpha_obs = self.alpha_obs.copy()
        sum_alpha = self.sum_alpha.copy()
        alpha_obs[:, timepoint, :], sum_alpha[:, timepoint] = _pseudo_counts(
            mixture[:, timepoint, :], self.alpha0, self.alpha_e
        )
        return AssignmentTable(
            self.alpha0, self.alpha_e, pi_hap, mixture, alpha_obs, sum_alpha
        )


def _pseudo_counts(
    mixture: np.ndarray, alpha0: float, alpha_e: float
) -> tuple[np.ndarray, np.ndarray]:
    alpha_obs = mixture * alpha0 + (1.0 - mixture) * alpha_e
    return alpha_obs, alpha_obs.sum(axis=-1)


def compute_assignment_table(
    catalog: AssignmentCatalog,
    pi_hap: np.ndarray,
    alpha0: float,
    alpha_e: float,
) -> AssignmentTable:
    """Build the table for all timepoints.

    Args:
        catalog: Assignment shapes.
        pi_hap: (T, H) haplotype frequencies, each row on the simplex.
        alpha0: Pseudo-count for carried bases (> 0).
        alpha_e: Pseudo-count for error bases (> 0).
    """
    pi_hap = np.asarray(pi_hap, dtype=np.float64)
    if pi_hap.ndim != 2 or pi_hap.shape[1] != catalog.n_haplotypes:
        raise ValueError(
            f"pi_hap must have shape (T, {catalog.n_haplotypes}), got {pi_hap.shape}"
        )
    mixture = np.einsum("ahb,th->atb", catalog.one_hot, pi_hap)
    alpha_obs, sum_alpha = _pseudo_counts(mixture, alpha0, alpha_e)
    return AssignmentTable(alpha0, alpha_e, pi_hap, mixture, alpha_obs, sum_alpha)


def log_likelihood(
    table: AssignmentTable,
    indices: np.ndarray,
    timepoint: int,
    strand_counts: np.ndarray,
    strand_totals: np.ndarray,
    log_gamma: LogGamma,
) -> np.ndarray:
    """Dirichlet-multinomial log-likelihood of one site at one timepoint.

    Each strand is an independent replicate drawn with the same pseudo-count
    vector:

        lgG(sum a) - lgG(sum a + N_s) + sum_b [lgG(a_b + n_sb) - lgG(a_b)]

    summed over the two strands. Bases with no reads contribute exactly 0
    and are skipped.

    Args:
        table: Current parameter table.
        indices: Assignment indices to evaluate.
        timepoint: Timepoint index.
        strand_counts: (2, 4) read counts per strand and base.
        strand_totals: (2,) read totals per strand.
        log_gamma: Log-gamma provider.

    Returns:
        (len(indices),) log-likelihoods.
    """
    alpha = table.alpha_obs[indices, timepoint]  # (m, 4)
    sum_alpha = table.sum_alpha[indices, timepoint]  # (m,)
    result = np.zeros(len(indices))
    for strand in range(strand_counts.shape[0]):
        total = strand_totals[strand]
        if total == 0:
            continue
        result += log_gamma(sum_alpha) - log_gamma(sum_alpha + total)
        for base in np.flatnonzero(strand_counts[strand]):
            n = strand_counts[strand, base]
            result += log_gamma(alpha[:, base] + n) - log_gamma(alpha[:, base])
    return result
