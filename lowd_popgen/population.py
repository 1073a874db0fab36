"""Haploid population engine on the genotype hypercube.

Owns four hypercubes (population, fitness, mutants, recombinants), the
per-locus mutation rates, the crossover-pattern table, and the engine RNG.
One generation of evolve() is

  population (VALUE) → select → mutate → recombine (COEFF round trip)
                     → resample → population (VALUE)

evolve_norec() skips recombination, evolve_deterministic() skips
resampling. Evolve loops return an ErrorCode (0 on success) and stop at the
first failing operator; the individual operators raise PopGenError
subclasses instead.

Spin convention for observables: s_k = 2·allele − 1, so
  χ_k          = ⟨s_k⟩        = −2^L · c[{k}]
  moment(k, l) = ⟨s_k s_l⟩    =  2^L · c[{k, l}]
  LD(k, l)     = moment(k, l) − χ_k χ_l
and in general ⟨∏_{k∈S} s_k⟩ = (−1)^|S| · 2^L · c[S].

Not reentrant: never call evolve from inside an operator of the same engine.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, Iterable, Optional, Sequence, Tuple

import numpy as np
from scipy.special import entr

from lowd_popgen.hypercube import Hypercube
from lowd_popgen.recombination import (
    PartitionTable,
    build_partition_table,
    build_recombination_patterns,
    check_pattern_table_size,
    explicit_recombinant_distribution,
    normalize_recombination_rates,
    recombinant_coefficients,
)
from lowd_popgen.rng import (
    create_rng_hierarchy,
    derive_seed,
    restore_rng_state,
    rng_state_snapshot,
)
from lowd_popgen.types import (
    CONTINUOUS_THRESHOLD,
    EPSILON_EXTINCT,
    LONG_TIME_GENERATION,
    MAX_LOCI,
    BadArgumentError,
    ErrorCode,
    ExtinctionError,
    FitnessStatistics,
    PopGenError,
    Representation,
    StateError,
)

logger = logging.getLogger(__name__)

FORWARD = 0    # row of mutation_rates: 0 → 1
BACKWARD = 1   # row of mutation_rates: 1 → 0


class HaploidPopulation:
    """Distribution over 2^L haploid genotypes evolving in discrete generations."""

    def __init__(self, L: int, N: float, seed: int = 0):
        """Allocate the engine.

        Args:
            L: Number of biallelic loci (1 ≤ L ≤ MAX_LOCI).
            N: Population size used by resample() (real, > 0).
            seed: Master RNG seed; 0 derives one from the wall clock and the
                process id (stored in ``self.seed``).

        Raises:
            BadArgumentError: Invalid L, N or seed.
            AllocationError: Hypercubes could not be allocated.
        """
        if not isinstance(L, (int, np.integer)) or not 1 <= L <= MAX_LOCI:
            raise BadArgumentError(f"number of loci must be in [1, {MAX_LOCI}], got {L!r}")
        if not isinstance(seed, (int, np.integer)) or seed < 0:
            raise BadArgumentError(f"seed must be a non-negative integer, got {seed!r}")

        self.number_of_loci = int(L)
        self.population_size = N
        self.seed = int(seed) if seed else derive_seed()

        self._rngs = create_rng_hierarchy(self.seed)
        self.rng = self._rngs['engine']
        self.fitness = Hypercube(L, self._rngs['fitness'])
        self.population = Hypercube(L, self._rngs['population'])
        self.mutants = Hypercube(L, self._rngs['mutants'])
        self.recombinants = Hypercube(L, self._rngs['recombinants'])

        self.mutation_rates = np.zeros((2, self.number_of_loci), dtype=np.float64)
        self.outcrossing_rate = 0.0
        self.circular = False
        self.recombination_rates: Optional[np.ndarray] = None
        self._partitions: Optional[PartitionTable] = None
        self._patterns: Optional[np.ndarray] = None

        self.generation = 0
        self.long_time_generation = 0
        self.extinct = False

    def __repr__(self) -> str:
        return (
            f"HaploidPopulation(L={self.number_of_loci}, N={self.population_size:g}, "
            f"generation={self.get_generation()})"
        )

    # ═══════════════════════════════════════════════════════════════════
    # CONFIGURATION
    # ═══════════════════════════════════════════════════════════════════

    @property
    def L(self) -> int:
        return self.number_of_loci

    @property
    def population_size(self) -> float:
        return self._population_size

    @population_size.setter
    def population_size(self, N: float) -> None:
        N = float(N)
        if not np.isfinite(N) or N <= 0:
            raise BadArgumentError(f"population size must be positive and finite, got {N}")
        self._population_size = N

    @property
    def outcrossing_rate(self) -> float:
        return self._outcrossing_rate

    @outcrossing_rate.setter
    def outcrossing_rate(self, alpha: float) -> None:
        alpha = float(alpha)
        if not 0.0 <= alpha <= 1.0:
            raise BadArgumentError(f"outcrossing rate must be in [0, 1], got {alpha}")
        self._outcrossing_rate = alpha

    @property
    def free_recombination(self) -> bool:
        return self._patterns is None

    def _locus_array(self, values, name: str) -> np.ndarray:
        try:
            return np.broadcast_to(
                np.asarray(values, dtype=np.float64), (self.number_of_loci,)
            ).copy()
        except ValueError as exc:
            raise BadArgumentError(
                f"{name} must be a scalar or have {self.number_of_loci} entries"
            ) from exc

    def set_mutation_rate(self, forward, backward=None) -> None:
        """Set mutation rates.

        Forms accepted:
          set_mutation_rate(mu)              same rate, all loci, both directions
          set_mutation_rate(mu_f, mu_b)      forward / backward, all loci
          set_mutation_rate(mu[L])           per locus, both directions
          set_mutation_rate(mu_f[L], mu_b[L])
          set_mutation_rate(mu[2, L])        row 0 forward, row 1 backward

        Raises:
            BadArgumentError: Wrong shape, or a rate outside [0, 0.5].
        """
        forward = np.asarray(forward, dtype=np.float64)
        if backward is None and forward.shape == (2, self.number_of_loci):
            rates = forward.copy()
        else:
            fwd = self._locus_array(forward, "forward mutation rate")
            bwd = fwd if backward is None else self._locus_array(
                backward, "backward mutation rate"
            )
            rates = np.vstack([fwd, bwd])

        if not np.all(np.isfinite(rates)) or np.any(rates < 0) or np.any(rates > 0.5):
            raise BadArgumentError(f"mutation rates must be in [0, 0.5], got {rates}")
        self.mutation_rates = rates

    def _partition_table(self) -> PartitionTable:
        if self._partitions is None:
            check_pattern_table_size(self.number_of_loci)
            self._partitions = build_partition_table(self.number_of_loci)
        return self._partitions

    def set_recombination_rates(self, rates: Sequence[float]) -> None:
        """Build the crossover-pattern table from a genetic map.

        Switches the engine to obligate recombination under the map (the
        whole population is replaced by recombinants each generation). The
        previous table is released before the new one is built.

        Args:
            rates: Recombination rates. Linear chromosome: L−1 rates between
                loci, or L rates whose first entry is the rate before the first
                locus (use a large value, e.g. 50). Circular chromosome
                (``self.circular``): exactly L rates, rates[0] joining locus
                L−1 to locus 0.

        Raises:
            BadArgumentError: Bad length or negative rates.
            AllocationError: The 3^L table does not fit in memory.
        """
        rates_L = normalize_recombination_rates(rates, self.number_of_loci, self.circular)
        self._patterns = None
        table = self._partition_table()
        self._patterns = build_recombination_patterns(rates_L, table)
        self.recombination_rates = rates_L
        logger.debug(
            "recombination patterns built for L=%d (%d entries)",
            self.number_of_loci, table.size,
        )

    def set_free_recombination(self) -> None:
        """Drop the pattern table; recombination becomes free and α-blended."""
        self._patterns = None
        self.recombination_rates = None

    def recombination_patterns(self, subset: int) -> np.ndarray:
        """Copy of R[S]: inheritance-pattern probabilities on locus subset S."""
        if self._patterns is None:
            raise StateError("no recombination patterns: free recombination is active")
        if not 0 <= subset < (1 << self.number_of_loci):
            raise BadArgumentError(f"subset {subset} out of range")
        return self._partitions.block(self._patterns, subset).copy()

    # ── fitness landscape ─────────────────────────────────────────────

    def set_fitness_function(self, pairs: Iterable[Tuple[int, float]]) -> None:
        """Sparse log-fitness: F(g) = f for each (g, f); all others 0."""
        self.fitness.init_list(pairs)

    def set_fitness_coefficients(self, pairs: Iterable[Tuple[int, float]]) -> None:
        """F(g) = Σ_S f_S · ∏_{k∈S} s_k(g) for each (S, f_S)."""
        pairs = list(pairs)
        signs = [(-1.0) ** bin(int(subset)).count('1') for subset, _ in pairs]
        self.fitness.init_coeff_list(
            (subset, sign * value) for (subset, value), sign in zip(pairs, signs)
        )
        self.fitness.fft_coeff_to_value()

    def set_fitness_additive(self, coefficients) -> None:
        """Additive landscape F(g) = Σ_k h_k · s_k(g)."""
        h = self._locus_array(coefficients, "additive fitness coefficients")
        self.set_fitness_coefficients(
            (1 << locus, h[locus]) for locus in range(self.number_of_loci)
        )

    # ═══════════════════════════════════════════════════════════════════
    # INITIALIZATION
    # ═══════════════════════════════════════════════════════════════════

    def _reset_clock(self) -> None:
        self.generation = 0
        self.long_time_generation = 0
        self.extinct = False

    def init_frequencies(self, frequencies: Sequence[float]) -> None:
        """Linkage-equilibrium start: v[g] = ∏_k ν_k^b_k (1 − ν_k)^(1 − b_k).

        Note: a broad initial fitness distribution can collapse diversity in
        the first few generations; check get_fitness_statistics() first.

        Raises:
            BadArgumentError: Wrong length or a frequency outside [0, 1].
        """
        nu = np.asarray(frequencies, dtype=np.float64)
        if nu.shape != (self.number_of_loci,):
            raise BadArgumentError(
                f"need {self.number_of_loci} allele frequencies, got shape {nu.shape}"
            )
        if np.any(~np.isfinite(nu)) or np.any(nu < 0) or np.any(nu > 1):
            raise BadArgumentError(f"allele frequencies must be in [0, 1], got {nu}")

        genotypes = np.arange(1 << self.number_of_loci)
        v = self.population.v
        v[:] = 1.0
        for locus in range(self.number_of_loci):
            carrier = (genotypes >> locus) & 1
            v *= np.where(carrier, nu[locus], 1.0 - nu[locus])
        self.population.set_tag(Representation.VALUE)
        self._reset_clock()

    def init_genotypes(self, pairs: Iterable[Tuple[int, float]]) -> None:
        """Sparse start: listed (genotype, weight) pairs, normalized to one.

        Raises:
            BadArgumentError: Genotype out of range or negative weight.
            ExtinctionError: All weights (near) zero.
        """
        pairs = list(pairs)
        if any(weight < 0 for _, weight in pairs):
            raise BadArgumentError("genotype weights must be non-negative")
        self.population.init_list(pairs, normalize=True)
        self._reset_clock()

    # ═══════════════════════════════════════════════════════════════════
    # OPERATORS
    # ═══════════════════════════════════════════════════════════════════

    def select(self) -> None:
        """v[g] ← v[g]·exp(F[g]), renormalized."""
        self.fitness.require(Representation.VALUE, "select (fitness)")
        v = self.population.ensure_value()
        with np.errstate(over='ignore', invalid='ignore'):
            v *= np.exp(self.fitness.v)
        self.population.normalize()

    def mutate(self) -> None:
        """First-order mutation flow along every locus axis; conserves Σv."""
        v = self.population.ensure_value()
        delta = self.mutants.v
        delta[:] = 0.0
        forward = self.mutation_rates[FORWARD]
        backward = self.mutation_rates[BACKWARD]
        for locus in range(self.number_of_loci):
            if forward[locus] == 0.0 and backward[locus] == 0.0:
                continue
            pv = v.reshape(-1, 2, 1 << locus)
            dv = delta.reshape(-1, 2, 1 << locus)
            # net flow 0 → 1 at this locus
            flow = forward[locus] * pv[:, 0, :] - backward[locus] * pv[:, 1, :]
            dv[:, 0, :] -= flow
            dv[:, 1, :] += flow
        self.mutants.set_tag(Representation.VALUE)
        v += delta

    def calculate_recombinants(self) -> np.ndarray:
        """Recombinant distribution r into self.recombinants (VALUE form)."""
        rec_coeff = recombinant_coefficients(
            self.population.ensure_coeff(), self._partition_table(), self._patterns,
        )
        self.recombinants.c[:] = rec_coeff
        self.recombinants.set_tag(Representation.COEFF)
        self.recombinants.fft_coeff_to_value()
        return self.recombinants.v

    def recombine(self) -> None:
        """Mate: α-blend with recombinants (free) or full replacement (map)."""
        if self.free_recombination and self.outcrossing_rate == 0.0:
            self.population.ensure_value()
            return
        r = self.calculate_recombinants()
        v = self.population.ensure_value()
        if self.free_recombination:
            v += self.outcrossing_rate * (r - v)
        else:
            v[:] = r

    def resample(self, n: Optional[float] = None) -> None:
        """Finite-population drift.

        Genotypes expected to hold fewer than CONTINUOUS_THRESHOLD
        individuals get a Poisson count; the rest get Gaussian noise of
        variance v/N. Poisson draws come first (ascending genotype), then the
        Gaussian ones. Gaussian draws may leave a slightly negative entry;
        it is kept as is and treated as zero by the next Poisson draw.

        Args:
            n: Effective size for this call; the stored N if None or < 1.

        Raises:
            ExtinctionError: Σv < EPSILON_EXTINCT after sampling.
        """
        pop_size = self.population_size if n is None or n < 1.0 else float(n)
        v = self.population.ensure_value()
        rare = v < CONTINUOUS_THRESHOLD / pop_size
        common = ~rare

        v[rare] = self.rng.poisson(np.clip(pop_size * v[rare], 0.0, None)) / pop_size
        v[common] += self.rng.normal(0.0, np.sqrt(v[common] / pop_size))

        total = float(v.sum())
        if total < EPSILON_EXTINCT:
            raise ExtinctionError(f"population went extinct (total mass {total:.3g})")
        v *= 1.0 / total

    # ═══════════════════════════════════════════════════════════════════
    # EVOLUTION LOOPS
    # ═══════════════════════════════════════════════════════════════════

    def _advance_generation(self) -> None:
        self.generation += 1
        if self.generation > LONG_TIME_GENERATION:
            self.generation -= LONG_TIME_GENERATION
            self.long_time_generation += LONG_TIME_GENERATION

    def _run(self, gen: int, steps: Sequence[Callable[[], None]], label: str) -> int:
        if gen < 0:
            logger.warning("%s: negative number of generations %d", label, gen)
            return ErrorCode.BADARG
        if self.extinct:
            logger.warning("%s: population is extinct, re-initialize first", label)
            return ErrorCode.EXTINCT

        logger.debug("%s: %d generations from %d", label, gen, self.get_generation())
        for _ in range(gen):
            try:
                for step in steps:
                    step()
            except PopGenError as exc:
                if isinstance(exc, ExtinctionError):
                    self.extinct = True
                logger.warning(
                    "%s stopped at generation %d: %s", label, self.get_generation(), exc
                )
                return exc.code
            self._advance_generation()
        return ErrorCode.OK

    def evolve(self, gen: int = 1) -> int:
        """select → mutate → recombine → resample, ``gen`` times."""
        return self._run(gen, (self.select, self.mutate, self.recombine, self.resample), "evolve")

    def evolve_norec(self, gen: int = 1) -> int:
        """select → mutate → resample, ``gen`` times."""
        return self._run(gen, (self.select, self.mutate, self.resample), "evolve_norec")

    def evolve_deterministic(self, gen: int = 1) -> int:
        """select → mutate → recombine, ``gen`` times (no drift)."""
        return self._run(
            gen, (self.select, self.mutate, self.recombine), "evolve_deterministic"
        )

    def get_generation(self) -> int:
        return self.long_time_generation + self.generation

    # ═══════════════════════════════════════════════════════════════════
    # OBSERVABLES
    # ═══════════════════════════════════════════════════════════════════

    def _check_locus(self, locus: int) -> int:
        if not 0 <= locus < self.number_of_loci:
            raise BadArgumentError(
                f"locus {locus} out of range for L={self.number_of_loci}"
            )
        return int(locus)

    def _spin_moment(self, subset: int) -> float:
        c = self.population.ensure_coeff()
        sign = -1.0 if bin(subset).count('1') % 2 else 1.0
        return sign * (1 << self.number_of_loci) * float(c[subset])

    def get_chi(self, locus: int) -> float:
        """⟨s_k⟩ = 2ν_k − 1."""
        return self._spin_moment(1 << self._check_locus(locus))

    def get_allele_frequency(self, locus: int) -> float:
        """Frequency of the derived allele (1) at ``locus``."""
        return 0.5 * (1.0 + self.get_chi(locus))

    def get_moment(self, locus1: int, locus2: int) -> float:
        """⟨s_k s_l⟩ (1 when k == l)."""
        return self._spin_moment(
            (1 << self._check_locus(locus1)) ^ (1 << self._check_locus(locus2))
        )

    def get_LD(self, locus1: int, locus2: int) -> float:
        """Linkage disequilibrium ⟨s_k s_l⟩ − ⟨s_k⟩⟨s_l⟩."""
        return self.get_moment(locus1, locus2) - self.get_chi(locus1) * self.get_chi(locus2)

    def chi(self) -> np.ndarray:
        """(L,) vector of ⟨s_k⟩."""
        c = self.population.ensure_coeff()
        return -float(1 << self.number_of_loci) * c[1 << np.arange(self.number_of_loci)]

    def allele_frequencies(self) -> np.ndarray:
        return 0.5 * (1.0 + self.chi())

    def LD_matrix(self) -> np.ndarray:
        """(L, L) matrix of LD(k, l); the diagonal holds 1 − χ_k²."""
        loci = np.arange(self.number_of_loci)
        pair_subsets = (1 << loci)[:, None] ^ (1 << loci)[None, :]
        c = self.population.ensure_coeff()
        moments = float(1 << self.number_of_loci) * c[pair_subsets]
        chi = self.chi()
        return moments - np.outer(chi, chi)

    def get_genotype_frequency(self, genotype: int) -> float:
        return self.population.get_value(genotype)

    def get_fitness(self, genotype: int) -> float:
        return self.fitness.get_value(genotype)

    def genotype_entropy(self) -> float:
        """−Σ_g v[g] ln v[g], with 0·ln 0 = 0 (negative entries count as 0)."""
        v = self.population.ensure_value()
        return float(entr(np.clip(v, 0.0, None)).sum())

    def allele_entropy(self) -> float:
        """Σ_k of the binary entropy of the allele frequency at locus k."""
        nu = np.clip(self.allele_frequencies(), 0.0, 1.0)
        return float((entr(nu) + entr(1.0 - nu)).sum())

    def get_fitness_statistics(self) -> FitnessStatistics:
        """Population mean and variance of log-fitness."""
        self.fitness.require(Representation.VALUE, "get_fitness_statistics (fitness)")
        v = self.population.ensure_value()
        F = self.fitness.v
        mean = float(np.dot(v, F))
        return FitnessStatistics(mean=mean, variance=float(np.dot(v, F * F)) - mean * mean)

    def participation_ratio(self) -> float:
        """Σ_g v[g]²; the inverse is an effective number of genotypes."""
        v = self.population.ensure_value()
        return float(np.dot(v, v))

    def random_genomes(self, n: int) -> np.ndarray:
        """Draw ``n`` genotypes from the current distribution (engine RNG)."""
        if n < 0:
            raise BadArgumentError(f"number of genomes must be non-negative, got {n}")
        p = np.clip(self.population.ensure_value(), 0.0, None)
        return self.rng.choice(len(p), size=int(n), p=p / p.sum())

    # ═══════════════════════════════════════════════════════════════════
    # DIAGNOSTICS & CHECKPOINTS
    # ═══════════════════════════════════════════════════════════════════

    def check_recombinant_distribution(self) -> float:
        """Max |coefficient-space − explicit pair convolution| recombinants.

        Costs O(4^L); meant for small L.
        """
        fast = self.calculate_recombinants().copy()
        if self._patterns is None:
            weights = None
        else:
            weights = self._partitions.block(
                self._patterns, (1 << self.number_of_loci) - 1
            )
        slow = explicit_recombinant_distribution(self.population.ensure_value(), weights)
        deviation = float(np.max(np.abs(fast - slow)))
        logger.debug("recombinant deviation (fourier vs explicit): %g", deviation)
        return deviation

    def rng_state(self) -> Dict[str, dict]:
        return rng_state_snapshot(self._rngs)

    def restore_rng_state(self, states: Dict[str, dict]) -> None:
        restore_rng_state(self._rngs, states)
