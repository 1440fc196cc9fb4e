"""haplomix: haplotype mixture inference from time-series read counts.

A probabilistic model that jointly infers a small number of latent
haplotypes, their relative abundance at every sequencing timepoint, and a
global Dirichlet sequencing-error model from strand-resolved base counts.
"""

__version__ = "0.3.0"
