"""Simulation driver: config → engine → recorded trajectory.

  - build_population(): SimulationConfig → ready HaploidPopulation
      (mutation rates, recombination model, fitness landscape, initial state)
  - run_simulation(): evolves in chunks of run.record_interval generations
      and records allele frequencies, fitness moments and entropies
  - sample_mutation_drift_equilibrium() / diffusion_equilibrium():
      stationary allele-frequency distribution under mutation and drift,
      sampled and predicted by diffusion theory

The loop stops at the first non-zero error code; SimResult keeps what was
recorded up to that point together with the code.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np
from scipy import stats

from lowd_popgen.config import SimulationConfig, default_config
from lowd_popgen.population import HaploidPopulation
from lowd_popgen.types import ErrorCode, error_for_code

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════
# ENGINE CONSTRUCTION
# ═══════════════════════════════════════════════════════════════════════

def build_population(config: Optional[SimulationConfig] = None) -> HaploidPopulation:
    """Construct and initialize an engine from a validated config."""
    if config is None:
        config = default_config()
    pop_cfg = config.population
    L = pop_cfg.L

    pop = HaploidPopulation(L, pop_cfg.N, pop_cfg.seed)

    mut = config.mutation
    if mut.forward is not None:
        backward = mut.backward if mut.backward is not None else mut.forward
        pop.set_mutation_rate(mut.forward, backward)
    else:
        pop.set_mutation_rate(mut.rate)

    rec = config.recombination
    pop.outcrossing_rate = rec.outcrossing_rate
    pop.circular = rec.circular
    if rec.model == "map":
        pop.set_recombination_rates(rec.rates)

    fit = config.fitness
    if fit.additive is not None:
        pop.set_fitness_additive(fit.additive)
    if fit.coefficients:
        pop.set_fitness_coefficients((int(s), float(f)) for s, f in fit.coefficients)
    if fit.values:
        pop.set_fitness_function((int(g), float(f)) for g, f in fit.values)

    init = config.initial
    if init.mode == "genotypes":
        pop.init_genotypes((int(g), float(w)) for g, w in init.genotypes)
    else:
        freqs = init.frequencies if init.frequencies is not None else [0.5] * L
        pop.init_frequencies(freqs)

    return pop


# ═══════════════════════════════════════════════════════════════════════
# SIMULATION RESULT
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class SimResult:
    """Trajectory recorded by run_simulation()."""
    n_generations: int = 0
    seed: int = 0
    # Timeseries (length = number of records, first record at generation 0)
    generations: Optional[np.ndarray] = None
    allele_freq: Optional[np.ndarray] = None        # (n_records, L)
    fitness_mean: Optional[np.ndarray] = None
    fitness_variance: Optional[np.ndarray] = None
    genotype_entropy: Optional[np.ndarray] = None
    allele_entropy: Optional[np.ndarray] = None

    # Final state
    final_distribution: Optional[np.ndarray] = None  # (2^L,)
    error_code: int = ErrorCode.OK
    extinct: bool = False


_EVOLVE_METHODS = {
    "full": "evolve",
    "norec": "evolve_norec",
    "deterministic": "evolve_deterministic",
}


def run_simulation(
    config: Optional[SimulationConfig] = None,
    population: Optional[HaploidPopulation] = None,
) -> SimResult:
    """Evolve a population and record observables every record_interval.

    Args:
        config: Run configuration; default_config() if None.
        population: Pre-built engine to evolve instead of building one from
            ``config`` (config.run still controls the loop).

    Returns:
        SimResult with the recorded timeseries and the final distribution.
    """
    if config is None:
        config = default_config()
    pop = population if population is not None else build_population(config)
    run = config.run
    step = getattr(pop, _EVOLVE_METHODS[run.mode])

    n_records = run.generations // run.record_interval + 2
    L = pop.number_of_loci
    generations = np.zeros(n_records, dtype=np.int64)
    allele_freq = np.zeros((n_records, L), dtype=np.float64)
    fitness_mean = np.zeros(n_records, dtype=np.float64)
    fitness_variance = np.zeros(n_records, dtype=np.float64)
    genotype_entropy = np.zeros(n_records, dtype=np.float64)
    allele_entropy = np.zeros(n_records, dtype=np.float64)

    def record(i: int) -> None:
        generations[i] = pop.get_generation()
        allele_freq[i] = pop.allele_frequencies()
        fit_stats = pop.get_fitness_statistics()
        fitness_mean[i] = fit_stats.mean
        fitness_variance[i] = fit_stats.variance
        genotype_entropy[i] = pop.genotype_entropy()
        allele_entropy[i] = pop.allele_entropy()

    record(0)
    n_rec = 1
    done = 0
    err = ErrorCode.OK
    while done < run.generations:
        chunk = min(run.record_interval, run.generations - done)
        err = step(chunk)
        if err != ErrorCode.OK:
            logger.warning(
                "run stopped after %d of %d generations (error %d)",
                done, run.generations, int(err),
            )
            break
        done += chunk
        record(n_rec)
        n_rec += 1

    return SimResult(
        n_generations=done,
        seed=pop.seed,
        generations=generations[:n_rec].copy(),
        allele_freq=allele_freq[:n_rec].copy(),
        fitness_mean=fitness_mean[:n_rec].copy(),
        fitness_variance=fitness_variance[:n_rec].copy(),
        genotype_entropy=genotype_entropy[:n_rec].copy(),
        allele_entropy=allele_entropy[:n_rec].copy(),
        final_distribution=pop.population.ensure_value().copy(),
        error_code=int(err),
        extinct=pop.extinct,
    )


# ═══════════════════════════════════════════════════════════════════════
# MUTATION-DRIFT EQUILIBRIUM
# ═══════════════════════════════════════════════════════════════════════

def sample_mutation_drift_equilibrium(
    pop: HaploidPopulation,
    n_samples: int,
    interval: int,
    n_burnin: Optional[int] = None,
) -> np.ndarray:
    """Collect χ_k = ⟨s_k⟩ samples under mutation and drift.

    Uses evolve_norec(); with a flat fitness landscape selection is inert.

    Args:
        pop: Initialized engine (mutation rates set).
        n_samples: Number of samples per locus.
        interval: Generations between samples.
        n_burnin: Generations before the first sample (default 2N).

    Returns:
        (n_samples, L) array of χ values in [−1, 1].

    Raises:
        PopGenError: If an evolve call fails (e.g. extinction).
    """
    if n_burnin is None:
        n_burnin = int(2 * pop.population_size)

    def advance(n: int) -> None:
        err = pop.evolve_norec(n)
        if err != ErrorCode.OK:
            raise error_for_code(err, f"evolve_norec failed with error {int(err)}")

    advance(n_burnin)
    samples = np.zeros((n_samples, pop.number_of_loci), dtype=np.float64)
    for i in range(n_samples):
        advance(interval)
        samples[i] = pop.chi()
    return samples


def diffusion_equilibrium(
    N: float,
    mu_forward: float,
    mu_backward: float,
):
    """Stationary distribution of χ = 2ν − 1 from diffusion theory.

    Density ∝ ((1+χ)/2)^(2Nμ_f − 1) · ((1−χ)/2)^(2Nμ_b − 1), i.e. a
    Beta(2Nμ_f, 2Nμ_b) distribution rescaled to [−1, 1].
    """
    return stats.beta(2.0 * N * mu_forward, 2.0 * N * mu_backward, loc=-1.0, scale=2.0)
