"""Recombination in Walsh-coefficient space.

For two parents drawn independently from the same distribution, the
recombinant's coefficient on a locus subset S factors over the ways S is
split between mother (M) and father (P):

  free recombination:  r.c[S] = 2^(L−|S|) · Σ_j c[M(S,j)] · c[P(S,j)]
  genetic map:         r.c[S] = 2^L · Σ_j R[S][j] · c[M(S,j)] · c[P(S,j)]

where j ∈ [0, 2^|S|) and the q-th set bit of S goes to M if bit q of j is
set, otherwise to P. Summed over all S this is Σ_S 2^|S| = 3^L terms instead
of the 4^L of an explicit pair convolution.

Layout: every per-partition quantity lives in one flat buffer of length 3^L.
Subsets are ordered by (popcount, S); ``offset[S]`` is the start of S's
block of 2^|S| entries. The maternal/paternal index tables and the
crossover-pattern table R share that layout, so one gather and one
``np.add.reduceat`` evaluate all of r.c.

Crossover patterns (genetic map ρ): bit k of a pattern is the parental
strand inherited at locus k. Locus k continues the strand of locus k−1 with
probability ½(1 + e^(−2ρ[k])) and switches with ½(1 − e^(−2ρ[k])); locus 0 is
compared with locus L−1, so ρ[0] closes the chromosome. A large ρ[0]
(LINEAR_CHROMOSOME_RATE) frees the starting strand and models a linear
chromosome. Patterns with an odd number of switches get weight zero.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from lowd_popgen.types import (
    LINEAR_CHROMOSOME_RATE,
    PATTERN_TABLE_WARN_LOCI,
    AllocationError,
    BadArgumentError,
    popcount_table,
)

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════
# PARTITION TABLE (flat 3^L layout)
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class PartitionTable:
    """Maternal/paternal submask indices for every (S, j), flat layout."""
    L: int
    subsets: np.ndarray        # (2^L,) S sorted by (popcount, S)
    order_sorted: np.ndarray   # (2^L,) popcount of subsets[i]
    offset: np.ndarray         # (2^L,) offset[S] into the flat buffers
    starts: np.ndarray         # (2^L,) offset[subsets[i]], increasing
    maternal: np.ndarray       # (3^L,) M(S, j)
    paternal: np.ndarray       # (3^L,) P(S, j) = S ^ M(S, j)

    @property
    def size(self) -> int:
        return len(self.maternal)

    def block(self, flat: np.ndarray, subset: int) -> np.ndarray:
        """View of the 2^|S| entries of ``flat`` belonging to ``subset``."""
        start = int(self.offset[subset])
        return flat[start:start + (1 << bin(subset).count('1'))]

    def subsets_of_order(self, s: int) -> np.ndarray:
        lo, hi = np.searchsorted(self.order_sorted, [s, s + 1])
        return self.subsets[lo:hi]


def _set_bit_positions(subsets: np.ndarray, L: int, s: int) -> np.ndarray:
    """(n_subsets, s) ascending locus indices of the set bits of each S."""
    bits = (subsets[:, None] >> np.arange(L)) & 1
    return np.nonzero(bits)[1].reshape(len(subsets), s)


def build_partition_table(L: int) -> PartitionTable:
    """Enumerate M(S, j) for all subsets S and partitions j.

    Raises:
        AllocationError: If the 3^L index buffers cannot be allocated.
    """
    order = popcount_table(L)
    subsets = np.argsort(order, kind='stable')
    order_sorted = order[subsets]
    sizes = np.left_shift(1, order_sorted)
    starts = np.zeros(1 << L, dtype=np.int64)
    starts[1:] = np.cumsum(sizes)[:-1]
    offset = np.empty(1 << L, dtype=np.int64)
    offset[subsets] = starts

    try:
        maternal = np.empty(3 ** L, dtype=np.int64)
        for s in range(L + 1):
            lo, hi = np.searchsorted(order_sorted, [s, s + 1])
            block_subsets = subsets[lo:hi]
            positions = _set_bit_positions(block_subsets, L, s)
            j = np.arange(1 << s)
            j_bits = (j[:, None] >> np.arange(s)) & 1               # (2^s, s)
            masks = j_bits @ np.left_shift(1, positions).T         # (2^s, n_subsets)
            first = starts[lo]
            maternal[first:first + masks.size] = masks.T.ravel()
        paternal = np.repeat(subsets, sizes) ^ maternal
    except MemoryError as exc:
        raise AllocationError(f"cannot allocate 3^{L} partition table") from exc

    return PartitionTable(
        L=L,
        subsets=subsets,
        order_sorted=order_sorted,
        offset=offset,
        starts=starts,
        maternal=maternal,
        paternal=paternal,
    )


# ═══════════════════════════════════════════════════════════════════════
# GENETIC MAP → CROSSOVER PATTERNS
# ═══════════════════════════════════════════════════════════════════════

def normalize_recombination_rates(
    rates: Sequence[float],
    L: int,
    circular: bool = False,
) -> np.ndarray:
    """Bring user rates to the L-entry form used by the pattern table.

    Accepted lengths:
      - L − 1 (linear only): rates between successive loci; the rate
        before the first locus is set to LINEAR_CHROMOSOME_RATE.
      - L: rates[0] is the rate before the first locus (for a circular
        chromosome: between locus L−1 and locus 0).
      - L + 1: as L, the trailing entry lies beyond the last locus and is
        ignored.

    Raises:
        BadArgumentError: Wrong length, negative or non-finite rates.
    """
    rates = np.asarray(rates, dtype=np.float64).ravel()
    if np.any(~np.isfinite(rates)) or np.any(rates < 0):
        raise BadArgumentError(f"recombination rates must be finite and >= 0, got {rates}")

    if circular:
        if len(rates) != L:
            raise BadArgumentError(
                f"circular chromosome needs {L} recombination rates, got {len(rates)}"
            )
        return rates.copy()

    if len(rates) == L - 1:
        return np.concatenate([[LINEAR_CHROMOSOME_RATE], rates])
    if len(rates) == L:
        return rates.copy()
    if len(rates) == L + 1:
        logger.debug("ignoring trailing recombination rate %g", rates[-1])
        return rates[:L].copy()
    raise BadArgumentError(
        f"expected {L - 1}, {L} or {L + 1} recombination rates for L={L}, got {len(rates)}"
    )


def crossover_pattern_weights(rates: np.ndarray) -> np.ndarray:
    """Probability of every full crossover pattern i ∈ [0, 2^L).

    Args:
        rates: (L,) rates, rates[k] between locus k−1 and k (k=0 wraps).

    Returns:
        (2^L,) float64 summing to one; odd-switch patterns are zero.
    """
    L = len(rates)
    patterns = np.arange(1 << L)
    strand = (patterns[:, None] >> np.arange(L)) & 1
    previous = np.roll(strand, 1, axis=1)
    same = strand == previous

    decay = np.exp(-2.0 * rates)
    weights = np.prod(np.where(same, 0.5 * (1.0 + decay), 0.5 * (1.0 - decay)), axis=1)
    switches = np.count_nonzero(~same, axis=1)
    weights[switches % 2 == 1] = 0.0
    return weights / weights.sum()


def build_recombination_patterns(
    rates: np.ndarray,
    table: PartitionTable,
) -> np.ndarray:
    """Fill the flat R table: R[full] from the map, the rest by marginalization.

    Subsets are processed by decreasing size. For S of size s, k is the
    least-significant locus not in S and S' = S ∪ {k}; since every locus
    below k is in S, k sits at bit k of S's pattern index, and

      R[S][p] = R[S'][p_low] + R[S'][p_low | 1 << k]

    with p_low = p with a zero bit inserted at position k.

    Returns:
        (3^L,) float64, in table layout.
    """
    L = table.L
    try:
        patterns = np.empty(table.size, dtype=np.float64)
    except MemoryError as exc:
        raise AllocationError(f"cannot allocate 3^{L} recombination patterns") from exc

    full = (1 << L) - 1
    start = int(table.offset[full])
    patterns[start:start + (1 << L)] = crossover_pattern_weights(rates)

    for s in range(L - 1, -1, -1):
        block_subsets = table.subsets_of_order(s)
        lowbit = ~block_subsets & (block_subsets + 1)
        below = (lowbit - 1)[:, None]
        p = np.arange(1 << s)[None, :]
        p_low = (p & below) | ((p & ~below) << 1)
        source = table.offset[block_subsets | lowbit][:, None] + p_low
        target = table.offset[block_subsets][:, None] + p
        patterns[target] = patterns[source] + patterns[source + lowbit[:, None]]

    return patterns


def check_pattern_table_size(L: int) -> None:
    """Warn when the 3^L pattern table gets large."""
    if L > PATTERN_TABLE_WARN_LOCI:
        warnings.warn(
            f"recombination pattern table for L={L} holds 3^{L} = {3 ** L:,} "
            f"entries; general recombination is intended for small L",
            ResourceWarning,
            stacklevel=3,
        )


# ═══════════════════════════════════════════════════════════════════════
# RECOMBINANT DISTRIBUTION
# ═══════════════════════════════════════════════════════════════════════

def recombinant_coefficients(
    pop_coeff: np.ndarray,
    table: PartitionTable,
    patterns: Optional[np.ndarray] = None,
) -> np.ndarray:
    """Walsh coefficients of the recombinant distribution.

    Args:
        pop_coeff: (2^L,) population coefficients c[S].
        table: Partition table for L.
        patterns: Flat R table, or None for free recombination.

    Returns:
        (2^L,) coefficients r.c[S] with r.c[0] = 2^-L.
    """
    L = table.L
    terms = pop_coeff[table.maternal] * pop_coeff[table.paternal]
    if patterns is None:
        sums = np.add.reduceat(terms, table.starts)
        sums *= 2.0 ** (L - table.order_sorted)
    else:
        terms *= patterns
        sums = np.add.reduceat(terms, table.starts)
        sums *= float(1 << L)

    rec_coeff = np.empty(1 << L, dtype=np.float64)
    rec_coeff[table.subsets] = sums
    rec_coeff[0] = 1.0 / (1 << L)
    return rec_coeff


def explicit_recombinant_distribution(
    pop_values: np.ndarray,
    pattern_weights: Optional[np.ndarray] = None,
) -> np.ndarray:
    """O(4^L) recombinant distribution from explicit parent pairs.

    Offspring g takes the loci set in pattern i from its mother and the rest
    from its father; the remaining parental loci run over every genotype.

    Args:
        pop_values: (2^L,) genotype distribution.
        pattern_weights: (2^L,) crossover-pattern probabilities, or None for
            free recombination (uniform 2^-L).

    Returns:
        (2^L,) recombinant genotype distribution.
    """
    size = len(pop_values)
    if pattern_weights is None:
        pattern_weights = np.full(size, 1.0 / size)
    mask = size - 1
    offspring = np.arange(size)[:, None]
    other = np.arange(size)[None, :]
    result = np.zeros(size, dtype=np.float64)
    for pattern, weight in enumerate(pattern_weights):
        if weight == 0.0:
            continue
        mother = (offspring & pattern) | (other & ~pattern & mask)
        father = (offspring & ~pattern & mask) | (other & pattern)
        result += weight * (pop_values[mother] * pop_values[father]).sum(axis=1)
    return result
