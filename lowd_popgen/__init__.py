"""lowd-popgen: low-dimensional haploid population genetics on the genotype hypercube.

The population is a distribution over the 2^L genotypes of L biallelic loci,
evolved in discrete generations by:
  - Selection (pointwise reweighting by exp(log-fitness))
  - Mutation (first-order flow along each locus axis)
  - Recombination (Walsh-coefficient convolution, O(3^L), free or genetic map)
  - Resampling (mixed Poisson / Gaussian drift for finite N)
"""

from lowd_popgen.hypercube import Hypercube
from lowd_popgen.population import HaploidPopulation
from lowd_popgen.types import ErrorCode, PopGenError, Representation

__version__ = "0.1.0"

__all__ = [
    "ErrorCode",
    "HaploidPopulation",
    "Hypercube",
    "PopGenError",
    "Representation",
]
