"""Per-site read counts, assignment posteriors and likelihoods.

A SiteModel holds every read count observed at one genomic position and
the posterior over the assignments that are possible there. Assignments
proposing a base never observed at the site are excluded when the site is
finalised; the site keeps only the indices of the remaining assignments
into the shared catalog.
"""

from __future__ import annotations

import logging

import numpy as np
from scipy.special import logsumexp

from haplomix.assignment import AssignmentCatalog, AssignmentTable, log_likelihood
from haplomix.types import N_BASES, N_STRANDS
from haplomix.utils import LogGamma

logger = logging.getLogger(__name__)

DEFAULT_PRUNE_THRESHOLD = 0.01


class SiteModel:
    """Read counts and assignment posterior for one genomic position.

    Lifecycle: counts are added with :meth:`ingest_timepoint`, then
    :meth:`finalize` is called exactly once to decide whether the site is
    active and to build its local catalog. :meth:`assign_haplotypes`
    refreshes the posterior for the current parameters;
    :meth:`site_log_likelihood` and :meth:`site_timepoint_log_likelihood`
    reuse that posterior while the continuous parameters move.

    Attributes:
        position: Site index.
        strand_counts: (T, 2, 4) reads per timepoint, strand and base.
        strand_totals: (T, 2) reads per timepoint and strand.
        base_counts: (T, 4) reads per timepoint and base.
        totals: (T,) reads per timepoint.
        has_data: (T,) timepoint has at least one read.
        timepoint_conserved: (T,) all reads at the timepoint show one base.
        timepoint_conserved_base: (T,) that base, -1 if not conserved.
        observed_bases: (4,) base seen at any timepoint.
        conserved_base: Last base observed while ingesting.
        active: At least one base observed.
        conserved: Exactly one base observed over all timepoints.
        assignment_indices: Catalog indices of the locally possible
            assignments (None until finalised).
        prob_assignment: Posterior over ``assignment_indices``.
        est_prob_diff_bases: (5,) posterior-derived share of assignments
            using exactly k distinct bases, with the prior's own
            contribution removed. Index 0 is unused.
    """

    def __init__(self, position: int, n_timepoints: int, n_haplotypes: int):
        self.position = position
        self.n_timepoints = n_timepoints
        self.n_haplotypes = n_haplotypes

        self.strand_counts = np.zeros((n_timepoints, N_STRANDS, N_BASES), dtype=np.int64)
        self.strand_totals = np.zeros((n_timepoints, N_STRANDS), dtype=np.int64)
        self.base_counts = np.zeros((n_timepoints, N_BASES), dtype=np.int64)
        self.totals = np.zeros(n_timepoints, dtype=np.int64)
        self.has_data = np.zeros(n_timepoints, dtype=bool)
        self.timepoint_conserved = np.zeros(n_timepoints, dtype=bool)
        self.timepoint_conserved_base = np.full(n_timepoints, -1)

        self.observed_bases = np.zeros(N_BASES, dtype=bool)
        self.conserved_base = -1
        self.active = False
        self.conserved = False

        self.assignment_indices: np.ndarray | None = None
        self._cardinality: np.ndarray | None = None
        self._local_bases: np.ndarray | None = None
        self.prob_assignment: np.ndarray | None = None
        self.est_prob_diff_bases = np.zeros(N_BASES + 1)

    def __repr__(self) -> str:
        return (
            f"SiteModel(position={self.position}, active={self.active}, "
            f"conserved={self.conserved})"
        )

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def ingest_timepoint(self, timepoint: int, counts: np.ndarray) -> None:
        """Add strand/base counts observed at ``timepoint``.

        Repeated calls for the same timepoint accumulate.

        Args:
            timepoint: Timepoint index.
            counts: (2, 4) reads per strand and base.
        """
        if self.assignment_indices is not None:
            raise RuntimeError(f"Site {self.position} is already finalised")
        counts = np.asarray(counts, dtype=np.int64)
        if counts.shape != (N_STRANDS, N_BASES):
            raise ValueError(f"counts must have shape (2, 4), got {counts.shape}")
        if np.any(counts < 0):
            raise ValueError(f"Negative read count at site {self.position}")

        self.strand_counts[timepoint] += counts
        self.strand_totals[timepoint] = self.strand_counts[timepoint].sum(axis=1)
        self.base_counts[timepoint] = self.strand_counts[timepoint].sum(axis=0)
        self.totals[timepoint] = self.base_counts[timepoint].sum()

        for base in np.flatnonzero(counts.sum(axis=0)):
            self.conserved_base = int(base)
            self.observed_bases[base] = True

        self.has_data[timepoint] = self.totals[timepoint] > 0
        top = int(np.argmax(self.base_counts[timepoint]))
        if self.has_data[timepoint] and self.base_counts[timepoint, top] == self.totals[timepoint]:
            self.timepoint_conserved[timepoint] = True
            self.timepoint_conserved_base[timepoint] = top
        else:
            self.timepoint_conserved[timepoint] = False
            self.timepoint_conserved_base[timepoint] = -1

    def finalize(self, catalog: AssignmentCatalog) -> bool:
        """Decide activity and build the local catalog.

        Sets ``active`` (any base observed) and ``conserved`` (exactly one
        base observed) and keeps the catalog indices of assignments whose
        bases were all observed here. Must be called once, after all counts
        are ingested and before any likelihood call.

        Returns:
            Whether the site is active.
        """
        if self.assignment_indices is not None:
            raise RuntimeError(f"Site {self.position} is already finalised")
        n_observed = int(self.observed_bases.sum())
        self.active = n_observed > 0
        self.conserved = n_observed == 1
        if self.active:
            indices = catalog.compatible_with(self.observed_bases)
        else:
            indices = np.zeros(0, dtype=np.int64)
        self.assignment_indices = indices
        self._cardinality = catalog.n_present[indices]
        self._local_bases = catalog.bases[indices]
        return self.active

    # ------------------------------------------------------------------
    # Likelihoods
    # ------------------------------------------------------------------

    def assign_haplotypes(
        self, table: AssignmentTable, priors: np.ndarray, log_gamma: LogGamma
    ) -> float:
        """Refresh the assignment posterior and return the site log-likelihood.

        Every local assignment is scored as its cardinality log-prior plus
        its log-likelihood summed over timepoints; the site log-likelihood
        is the log-sum-exp of the scores. Conserved sites have a single
        possible assignment and use the closed form directly.
        """
        self._require_active()
        est = np.zeros(N_BASES + 1)
        if self.conserved:
            self.prob_assignment = np.ones(len(self.assignment_indices))
            est[1] = 1.0
            self.est_prob_diff_bases = est
            return float(priors[1]) + sum(
                self._conserved_timepoint(t, table, log_gamma)
                for t in range(self.n_timepoints)
            )

        log_prior = priors[self._cardinality]
        scores = log_prior + self._timepoint_log_likelihoods(
            table, self.assignment_indices, log_gamma
        ).sum(axis=1)
        best_idx = int(np.argmax(scores))
        best = scores[best_idx]
        weights = np.exp(scores - best)
        sum_weights = weights.sum()
        self.prob_assignment = weights / sum_weights

        # Support for each cardinality with the prior's own weight removed.
        contrib = np.exp(scores - best - log_prior + priors[self._cardinality[best_idx]])
        est = np.bincount(self._cardinality, weights=contrib, minlength=N_BASES + 1)
        est[0] = 0.0
        self.est_prob_diff_bases = est / est.sum()
        return float(best + np.log(sum_weights))

    def site_log_likelihood(
        self,
        table: AssignmentTable,
        priors: np.ndarray,
        log_gamma: LogGamma,
        prune_threshold: float = DEFAULT_PRUNE_THRESHOLD,
    ) -> float:
        """Log-likelihood under the current, fixed assignment posterior.

        Used as the error-model objective. Assignments with posterior at or
        below ``prune_threshold`` are left out; each timepoint contributes
        the log of the posterior-weighted likelihood of the retained
        assignments, and the posterior-weighted log-prior is added once.
        """
        self._require_active()
        if self.conserved:
            return float(priors[1]) + sum(
                self._conserved_timepoint(t, table, log_gamma)
                for t in range(self.n_timepoints)
            )
        keep = self._retained(prune_threshold)
        weights = self.prob_assignment[keep]
        lls = self._timepoint_log_likelihoods(
            table, self.assignment_indices[keep], log_gamma
        )
        total = float(np.dot(weights, priors[self._cardinality[keep]]))
        for t in np.flatnonzero(self.has_data):
            total += float(logsumexp(lls[:, t], b=weights))
        return total

    def site_timepoint_log_likelihood(
        self,
        timepoint: int,
        table: AssignmentTable,
        log_gamma: LogGamma,
        prune_threshold: float = DEFAULT_PRUNE_THRESHOLD,
    ) -> float:
        """Data term of :meth:`site_log_likelihood` for one timepoint.

        Used as the frequency objective for ``timepoint`` while the
        posterior and all other timepoints stay fixed. Carries no prior
        term.
        """
        self._require_active()
        if self.conserved:
            return self._conserved_timepoint(timepoint, table, log_gamma)
        if not self.has_data[timepoint]:
            return 0.0
        keep = self._retained(prune_threshold)
        indices = self.assignment_indices[keep]
        lls = log_likelihood(
            table,
            indices,
            timepoint,
            self.strand_counts[timepoint],
            self.strand_totals[timepoint],
            log_gamma,
        )
        return float(logsumexp(lls, b=self.prob_assignment[keep]))

    def consensus_bases(self) -> np.ndarray:
        """(H, 4) posterior probability of each base for every haplotype."""
        self._require_active()
        probs = np.zeros((self.n_haplotypes, N_BASES))
        if self.conserved:
            probs[:, self.conserved_base] = 1.0
            return probs
        self._require_posterior()
        one_hot = self._local_bases[:, :, np.newaxis] == np.arange(N_BASES)
        return np.einsum("a,ahb->hb", self.prob_assignment, one_hot.astype(np.float64))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _conserved_timepoint(
        self, timepoint: int, table: AssignmentTable, log_gamma: LogGamma
    ) -> float:
        """Closed-form likelihood of the single assignment of a conserved site."""
        alpha0 = table.alpha0
        sum_alpha = alpha0 + (N_BASES - 1) * table.alpha_e
        ll = 0.0
        for total in self.strand_totals[timepoint]:
            if total == 0:
                continue
            ll += (
                log_gamma(sum_alpha)
                - log_gamma(sum_alpha + total)
                + log_gamma(alpha0 + total)
                - log_gamma(alpha0)
            )
        return ll

    def _timepoint_log_likelihoods(
        self, table: AssignmentTable, indices: np.ndarray, log_gamma: LogGamma
    ) -> np.ndarray:
        """(len(indices), T) assignment log-likelihood per timepoint."""
        lls = np.zeros((len(indices), self.n_timepoints))
        for t in np.flatnonzero(self.has_data):
            lls[:, t] = log_likelihood(
                table,
                indices,
                t,
                self.strand_counts[t],
                self.strand_totals[t],
                log_gamma,
            )
        return lls

    def _retained(self, prune_threshold: float) -> np.ndarray:
        """Local positions of assignments above the pruning threshold.

        Falls back to the most probable assignment when none passes.
        """
        self._require_posterior()
        keep = np.flatnonzero(self.prob_assignment > prune_threshold)
        if keep.size == 0:
            keep = np.array([int(np.argmax(self.prob_assignment))])
        return keep

    def _require_active(self) -> None:
        if self.assignment_indices is None:
            raise RuntimeError(f"Site {self.position} has not been finalised")
        if not self.active:
            raise RuntimeError(f"Site {self.position} has no reads")

    def _require_posterior(self) -> None:
        if self.prob_assignment is None:
            raise RuntimeError(
                f"Site {self.position} has no assignment posterior; "
                "call assign_haplotypes first"
            )
