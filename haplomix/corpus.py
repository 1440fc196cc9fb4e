"""Dataset-level inference engine for haplomix.

THE CORE MODULE. Alternates between:
- fitting the Dirichlet error model (alpha0, alpha_e) with scipy's
  derivative-free minimiser,
- fitting every timepoint's haplotype frequencies in turn,
- re-assigning haplotype bases at every site (soft E-step over the
  assignment catalog),
- refreshing the prior over how many distinct bases a site carries.

The continuous fits hold the assignment posterior fixed, so each outer
iteration is a soft-EM step with numerical M-steps.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Union

import numpy as np
from scipy.optimize import minimize

from haplomix.assignment import (
    AssignmentCatalog,
    AssignmentTable,
    build_catalog,
    compute_assignment_table,
)
from haplomix.site import SiteModel
from haplomix.types import (
    BASES,
    N_BASES,
    ConvergenceDiagnostics,
    CountRecord,
    HaplotypeResult,
    ModelParameters,
)
from haplomix.utils import (
    LogGamma,
    frequencies_from_unconstrained,
    load_count_files,
    unconstrained_from_frequencies,
)

logger = logging.getLogger(__name__)

# Guards log(0) for cardinalities no assignment can reach.
_PRIOR_EPS = 1e-20
# Error-model search space, in log units.
_LOG_ALPHA_BOUNDS = (np.log(1e-6), np.log(1e6))


@dataclass
class FitConfig:
    """Configuration for haplotype inference.

    Attributes:
        n_haplotypes: Number of latent haplotypes.
        alpha0: Starting pseudo-count for the carried base.
        alpha_e: Starting pseudo-count for each error base.
        max_iterations: Maximum outer iterations.
        convergence_threshold: Relative change in log-likelihood below which
            the outer loop stops. 0 always runs ``max_iterations``.
        prune_threshold: Posterior mass at or below which an assignment is
            left out of the fixed-posterior likelihoods.
        subsample_fractions: Fraction of active sites used for the
            error-model fit on the first and on later iterations.
        refresh_priors: Re-estimate the cardinality prior after every
            re-assignment pass.
        initial_prior_mass: Starting prior mass on sites carrying 1, 2, 3
            and 4 distinct bases.
        optimizer_method: ``scipy.optimize.minimize`` method.
        optimizer_max_iter: Iteration budget per optimiser call.
        optimizer_tolerance: ``tol`` passed to the optimiser.
        consensus_threshold: A haplotype base is reported only if its
            posterior exceeds this value; otherwise ``N``.
        gamma_cache_size: Memoised log-gamma values (0 disables).
        random_seed: Seed for subsampling and starting frequencies.
    """

    n_haplotypes: int = 2
    alpha0: float = 100.0
    alpha_e: float = 0.2
    max_iterations: int = 10
    convergence_threshold: float = 1e-6
    prune_threshold: float = 0.01
    subsample_fractions: tuple[float, float] = (1.0, 1.0)
    refresh_priors: bool = True
    initial_prior_mass: tuple[float, float, float, float] = (0.9, 0.07, 0.02, 0.01)
    optimizer_method: str = "Nelder-Mead"
    optimizer_max_iter: int = 200
    optimizer_tolerance: float = 1e-4
    consensus_threshold: float = 0.5
    gamma_cache_size: int = 0
    random_seed: int = 42

    def __post_init__(self) -> None:
        if self.n_haplotypes < 1:
            raise ValueError(f"n_haplotypes must be >= 1, got {self.n_haplotypes}")
        if self.alpha0 <= 0 or self.alpha_e <= 0:
            raise ValueError(
                f"alpha0 and alpha_e must be > 0, got {self.alpha0}, {self.alpha_e}"
            )
        if self.max_iterations < 0:
            raise ValueError(f"max_iterations must be >= 0, got {self.max_iterations}")
        if not 0.0 <= self.prune_threshold < 1.0:
            raise ValueError(
                f"prune_threshold must be in [0, 1), got {self.prune_threshold}"
            )
        if len(self.subsample_fractions) != 2 or not all(
            0.0 <= f <= 1.0 for f in self.subsample_fractions
        ):
            raise ValueError(
                f"subsample_fractions must be two values in [0, 1], "
                f"got {self.subsample_fractions}"
            )
        if len(self.initial_prior_mass) != N_BASES or any(
            m <= 0 for m in self.initial_prior_mass
        ):
            raise ValueError(
                f"initial_prior_mass must be 4 positive values, "
                f"got {self.initial_prior_mass}"
            )
        if not 0.0 <= self.consensus_threshold < 1.0:
            raise ValueError(
                f"consensus_threshold must be in [0, 1), got {self.consensus_threshold}"
            )


# ---------------------------------------------------------------------------
# Optimisation phases
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ErrorModelFit:
    """Optimise (log alpha0, log alpha_e) with frequencies held fixed."""


@dataclass(frozen=True)
class FrequencyFit:
    """Optimise the stick-breaking coordinates of one timepoint."""

    timepoint: int


Phase = Union[ErrorModelFit, FrequencyFit]


def initial_priors(
    catalog: AssignmentCatalog, prior_mass: Sequence[float]
) -> np.ndarray:
    """Log-prior per assignment of each cardinality (index 0 unused)."""
    priors = np.zeros(N_BASES + 1)
    counts = catalog.n_assign_diff_bases[1:]
    priors[1:] = np.log(np.asarray(prior_mass, dtype=np.float64) / (counts + _PRIOR_EPS))
    return priors


class Corpus:
    """All sites of a dataset plus the current model parameters.

    Usage:
        corpus = Corpus.from_file_list(path, FitConfig(n_haplotypes=3))
        result = corpus.fit()
    """

    def __init__(
        self,
        records_by_timepoint: Sequence[Sequence[CountRecord]],
        config: FitConfig | None = None,
        log_gamma: LogGamma | None = None,
    ):
        self.config = cfg = config or FitConfig()
        self.n_timepoints = len(records_by_timepoint)
        if self.n_timepoints == 0:
            raise ValueError("At least one timepoint is required")
        self.n_haplotypes = cfg.n_haplotypes
        self.catalog = build_catalog(cfg.n_haplotypes)
        self.log_gamma = log_gamma or LogGamma(cfg.gamma_cache_size)

        self.sites: dict[int, SiteModel] = {}
        for timepoint, records in enumerate(records_by_timepoint):
            for rec in records:
                site = self.sites.get(rec.position)
                if site is None:
                    site = SiteModel(rec.position, self.n_timepoints, self.n_haplotypes)
                    self.sites[rec.position] = site
                site.ingest_timepoint(timepoint, rec.counts)

        rng = np.random.default_rng(cfg.random_seed)
        early_frac, late_frac = cfg.subsample_fractions
        self.active_sites: list[SiteModel] = []
        self.variable_sites: list[SiteModel] = []
        early: list[SiteModel] = []
        late: list[SiteModel] = []
        for site in self.sites.values():
            if not site.finalize(self.catalog):
                continue
            self.active_sites.append(site)
            if rng.random() < early_frac:
                early.append(site)
            if rng.random() < late_frac:
                late.append(site)
            if not site.conserved:
                self.variable_sites.append(site)
        self.subsample_sites = (early, late)

        self.priors = initial_priors(self.catalog, cfg.initial_prior_mass)
        self.table: AssignmentTable = compute_assignment_table(
            self.catalog, self._initial_frequencies(rng), cfg.alpha0, cfg.alpha_e
        )
        self.phase: Phase = ErrorModelFit()
        self.iteration = 0
        self.log_likelihood = float("nan")
        self.diagnostics = ConvergenceDiagnostics()
        self._n_evaluations = 0

        logger.info(
            "Loaded %d sites over %d timepoints: %d active, %d variable, "
            "%d assignments for %d haplotypes",
            len(self.sites), self.n_timepoints, len(self.active_sites),
            len(self.variable_sites), len(self.catalog), self.n_haplotypes,
        )

    @classmethod
    def from_file_list(
        cls,
        path: Path,
        config: FitConfig | None = None,
        log_gamma: LogGamma | None = None,
    ) -> Corpus:
        """Build a corpus from a list-of-files file (one file per timepoint)."""
        logger.info("Reading count files listed in %s", path)
        return cls(load_count_files(Path(path)), config, log_gamma)

    @property
    def parameters(self) -> ModelParameters:
        """Snapshot of the current continuous parameters."""
        return ModelParameters(
            alpha0=self.table.alpha0,
            alpha_e=self.table.alpha_e,
            pi_hap=self.table.pi_hap.copy(),
        )

    def set_parameters(self, params: ModelParameters) -> None:
        """Replace all continuous parameters."""
        if params.pi_hap.shape != (self.n_timepoints, self.n_haplotypes):
            raise ValueError(
                f"pi_hap must have shape ({self.n_timepoints}, {self.n_haplotypes}), "
                f"got {params.pi_hap.shape}"
            )
        self.table = compute_assignment_table(
            self.catalog, params.pi_hap, params.alpha0, params.alpha_e
        )

    # ------------------------------------------------------------------
    # Objective
    # ------------------------------------------------------------------

    def total_log_likelihood(self, phase: Phase | None = None) -> float:
        """Fixed-posterior log-likelihood relevant to ``phase``."""
        phase = phase if phase is not None else self.phase
        cfg = self.config
        if isinstance(phase, ErrorModelFit):
            return sum(
                site.site_log_likelihood(
                    self.table, self.priors, self.log_gamma, cfg.prune_threshold
                )
                for site in self._error_model_sites()
            )
        if isinstance(phase, FrequencyFit):
            return sum(
                site.site_timepoint_log_likelihood(
                    phase.timepoint, self.table, self.log_gamma, cfg.prune_threshold
                )
                for site in self.variable_sites
            )
        raise TypeError(f"Unknown optimisation phase: {phase!r}")

    def objective(self, x: np.ndarray, phase: Phase | None = None) -> float:
        """Negative log-likelihood at optimiser coordinates ``x``.

        Moves the current parameters to ``x`` as a side effect.
        """
        phase = phase if phase is not None else self.phase
        self._set_point(x, phase)
        value = self.total_log_likelihood(phase)
        self._n_evaluations += 1
        if self._n_evaluations % 50 == 0:
            logger.debug(
                "Evaluation %d (%s): LL=%.4f", self._n_evaluations, phase, value
            )
        if not np.isfinite(value):
            return np.inf
        return -value

    def _set_point(self, x: np.ndarray, phase: Phase) -> None:
        if isinstance(phase, ErrorModelFit):
            alpha0, alpha_e = np.exp(np.clip(x, *_LOG_ALPHA_BOUNDS))
            self.table = self.table.with_alphas(float(alpha0), float(alpha_e))
        elif isinstance(phase, FrequencyFit):
            pi_t = frequencies_from_unconstrained(x)
            self.table = self.table.with_timepoint(self.catalog, phase.timepoint, pi_t)
        else:
            raise TypeError(f"Unknown optimisation phase: {phase!r}")

    def _error_model_sites(self) -> list[SiteModel]:
        """Sites used for the error-model fit at the current iteration."""
        early_frac, late_frac = self.config.subsample_fractions
        if self.iteration == 0 and early_frac < 1.0:
            sites = self.subsample_sites[0]
        elif self.iteration > 0 and late_frac < 1.0:
            sites = self.subsample_sites[1]
        else:
            return self.active_sites
        return sites if sites else self.active_sites

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def fit_error_model(self) -> None:
        """Phase A: fit (alpha0, alpha_e) with frequencies fixed."""
        self.phase = ErrorModelFit()
        x0 = np.log([self.table.alpha0, self.table.alpha_e])
        x = self._minimize(x0, self.phase)
        self._set_point(x, self.phase)
        logger.debug(
            "Error model: alpha0=%.4f alpha_e=%.4f", self.table.alpha0, self.table.alpha_e
        )

    def fit_frequencies(self, timepoint: int) -> None:
        """Phase B: fit the haplotype frequencies of one timepoint."""
        if self.n_haplotypes == 1 or not self.variable_sites:
            return
        if not any(site.has_data[timepoint] for site in self.variable_sites):
            logger.debug("Timepoint %d has no variable-site reads; skipping", timepoint)
            return
        self.phase = FrequencyFit(timepoint)
        x0 = unconstrained_from_frequencies(self.table.pi_hap[timepoint])
        x = self._minimize(x0, self.phase)
        self._set_point(x, self.phase)
        logger.debug(
            "Timepoint %d frequencies: %s",
            timepoint, np.array2string(self.table.pi_hap[timepoint], precision=4),
        )

    def _minimize(self, x0: np.ndarray, phase: Phase) -> np.ndarray:
        cfg = self.config
        res = minimize(
            self.objective,
            x0,
            args=(phase,),
            method=cfg.optimizer_method,
            tol=cfg.optimizer_tolerance,
            options={"maxiter": cfg.optimizer_max_iter},
        )
        if not res.success:
            self.diagnostics.optimizer_failures += 1
            logger.warning("%s did not converge: %s", phase, res.message)
        return np.asarray(res.x, dtype=np.float64)

    def assign_haplotypes(self) -> float:
        """Refresh every active site's posterior; return the total log-likelihood."""
        self.log_likelihood = float(
            sum(
                site.assign_haplotypes(self.table, self.priors, self.log_gamma)
                for site in self.active_sites
            )
        )
        return self.log_likelihood

    def refresh_priors(self) -> None:
        """Re-estimate the cardinality prior from the current posteriors."""
        if not self.active_sites:
            return
        count = np.zeros(N_BASES + 1)
        for site in self.active_sites:
            if site.conserved:
                count[1] += 1.0
            else:
                count += site.est_prob_diff_bases
        n_active = len(self.active_sites)
        n_assign = self.catalog.n_assign_diff_bases
        priors = np.zeros(N_BASES + 1)
        priors[1:] = np.log(
            (count[1:] + _PRIOR_EPS) / (n_active * (n_assign[1:] + _PRIOR_EPS))
        )
        self.priors = priors
        logger.debug(
            "Cardinality prior mass: %s",
            np.array2string(self.cardinality_mass[1:], precision=4),
        )

    @property
    def cardinality_mass(self) -> np.ndarray:
        """Prior mass on sites carrying exactly k distinct bases."""
        mass = self.catalog.n_assign_diff_bases * np.exp(self.priors)
        mass[0] = 0.0
        return mass

    # ------------------------------------------------------------------
    # Outer loop
    # ------------------------------------------------------------------

    def fit(self) -> HaplotypeResult:
        """Run the alternating optimisation and return the fitted result."""
        cfg = self.config
        if not self.active_sites:
            logger.warning("No sites with reads; nothing to fit")
            self.log_likelihood = 0.0
            return self.result()

        trace = [self.assign_haplotypes()]
        converged = False
        n_iterations = 0
        for iteration in range(cfg.max_iterations):
            self.iteration = iteration
            self.fit_error_model()
            for timepoint in range(self.n_timepoints):
                self.fit_frequencies(timepoint)
            ll = self.assign_haplotypes()
            if cfg.refresh_priors:
                self.refresh_priors()
            prev_ll = trace[-1]
            trace.append(ll)
            n_iterations = iteration + 1

            logger.info(
                "Iteration %d/%d: LL=%.4f alpha0=%.3f alpha_e=%.4f",
                n_iterations, cfg.max_iterations, ll,
                self.table.alpha0, self.table.alpha_e,
            )

            if abs(prev_ll) > 0:
                rel_change = abs(ll - prev_ll) / abs(prev_ll)
            else:
                rel_change = abs(ll - prev_ll)
            if rel_change < cfg.convergence_threshold:
                converged = True
                break

        self.diagnostics.log_likelihoods = trace
        self.diagnostics.n_iterations = n_iterations
        self.diagnostics.converged = converged
        if converged:
            logger.info("Converged after %d iterations", n_iterations)
        return self.result()

    # ------------------------------------------------------------------
    # Output building
    # ------------------------------------------------------------------

    def result(self) -> HaplotypeResult:
        """Consensus haplotypes and parameters for the current state."""
        H = self.n_haplotypes
        if self.active_sites:
            start = min(site.position for site in self.active_sites)
            end = max(site.position for site in self.active_sites)
            length = end - start + 1
        else:
            start, length = 0, 0

        codes = np.full((H, length), -1, dtype=np.int64)
        probs = np.zeros((H, length))
        for site in self.active_sites:
            col = site.position - start
            if site.conserved:
                codes[:, col] = site.conserved_base
                probs[:, col] = 1.0
                continue
            base_probs = site.consensus_bases()
            # argmax keeps the lowest base index on ties.
            best = np.argmax(base_probs, axis=1)
            best_p = base_probs[np.arange(H), best]
            called = best_p > self.config.consensus_threshold
            codes[called, col] = best[called]
            probs[called, col] = best_p[called]

        haplotypes = [
            "".join(BASES[c] if c >= 0 else "N" for c in row) for row in codes
        ]
        params = self.parameters
        return HaplotypeResult(
            n_haplotypes=H,
            alpha0=params.alpha0,
            alpha_e=params.alpha_e,
            pi_hap=params.pi_hap,
            haplotypes=haplotypes,
            consensus_probabilities=probs,
            start_position=start,
            cardinality_mass=self.cardinality_mass,
            log_likelihood=self.log_likelihood,
            n_sites=len(self.sites),
            n_active_sites=len(self.active_sites),
            n_variable_sites=len(self.variable_sites),
            convergence=self.diagnostics,
        )

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    def _initial_frequencies(self, rng: np.random.Generator) -> np.ndarray:
        """Distinct, decreasing starting frequencies shared by all timepoints.

        Equal frequencies make haplotypes interchangeable, so the posterior
        could never separate them.
        """
        pi = np.sort(rng.dirichlet(np.ones(self.n_haplotypes)))[::-1]
        return np.tile(pi, (self.n_timepoints, 1))
