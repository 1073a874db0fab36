"""Configuration system for lowd-popgen.

Hierarchical YAML configuration with deep-merge support:
  base.yaml → scenario override → programmatic overrides (parameter sweeps)

Each dataclass section maps 1:1 to a top-level YAML key; unknown keys are
ignored. validate_config() raises ValueError naming the offending field and
warns (UserWarning) about settings that are legal but outside the regime the
operators are accurate in.

Example YAML:

    population: {L: 4, N: 10000, seed: 42}
    mutation: {forward: 1.0e-3, backward: 1.0e-3}
    recombination: {model: map, rates: [50, 0.5, 0.5, 0.5]}
    fitness: {additive: [0.01, 0.0, -0.01, 0.02]}
    initial: {mode: frequencies, frequencies: [0.5, 0.5, 0.5, 0.5]}
    run: {mode: full, generations: 1000, record_interval: 10}
"""

from __future__ import annotations

import dataclasses
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from lowd_popgen.types import MAX_LOCI


# ═══════════════════════════════════════════════════════════════════════
# CONFIGURATION DATACLASSES
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class PopulationSection:
    """Engine construction parameters."""
    L: int = 4                   # number of biallelic loci
    N: float = 1000.0            # population size for resampling
    seed: int = 0                # 0 = derive from wall clock + pid


@dataclass
class MutationSection:
    """Mutation rates (per locus per generation).

    ``rate`` applies to both directions unless ``forward`` is given;
    ``backward`` defaults to ``forward``. Either may be a scalar or a list
    with one entry per locus.
    """
    rate: float = 0.0
    forward: Optional[Any] = None     # 0 → 1
    backward: Optional[Any] = None    # 1 → 0


@dataclass
class RecombinationSection:
    """Recombination model.

    model: "free" — free recombination; a fraction outcrossing_rate re-mates
           "map"  — obligate mating under the genetic map in ``rates``
    """
    model: str = "free"
    outcrossing_rate: float = 0.0
    rates: Optional[List[float]] = None
    circular: bool = False


@dataclass
class FitnessSection:
    """Log-fitness landscape; the three parts are applied in this order.

    additive:     h_k, F = Σ h_k s_k
    coefficients: [[subset, f_S], ...], F = Σ f_S ∏ s_k (replaces additive)
    values:       [[genotype, F], ...] (replaces both)
    """
    additive: Optional[List[float]] = None
    coefficients: List[List[float]] = field(default_factory=list)
    values: List[List[float]] = field(default_factory=list)


@dataclass
class InitialSection:
    """Initial distribution.

    mode: "frequencies" — linkage equilibrium at ``frequencies``
                          (all 0.5 if omitted)
          "genotypes"   — sparse [[genotype, weight], ...], normalized
    """
    mode: str = "frequencies"
    frequencies: Optional[List[float]] = None
    genotypes: List[List[float]] = field(default_factory=list)


@dataclass
class RunSection:
    """Evolution loop control."""
    mode: str = "full"           # "full", "norec", "deterministic"
    generations: int = 100
    record_interval: int = 1


@dataclass
class SimulationConfig:
    """Complete simulation configuration.

    Load from YAML via `load_config()`. Sections map 1:1 to YAML top-level keys.
    """
    population: PopulationSection = field(default_factory=PopulationSection)
    mutation: MutationSection = field(default_factory=MutationSection)
    recombination: RecombinationSection = field(default_factory=RecombinationSection)
    fitness: FitnessSection = field(default_factory=FitnessSection)
    initial: InitialSection = field(default_factory=InitialSection)
    run: RunSection = field(default_factory=RunSection)


# ═══════════════════════════════════════════════════════════════════════
# YAML LOADING & MERGING
# ═══════════════════════════════════════════════════════════════════════

def deep_merge(base: Dict, override: Dict) -> Dict:
    """Recursively merge override into base. Modifies base in place.

    - Dict values are merged recursively
    - Non-dict values are replaced
    - Keys in override but not base are added
    """
    for key, value in override.items():
        if (
            key in base
            and isinstance(base[key], dict)
            and isinstance(value, dict)
        ):
            deep_merge(base[key], value)
        else:
            base[key] = value
    return base


_SECTION_MAP = {
    'population': PopulationSection,
    'mutation': MutationSection,
    'recombination': RecombinationSection,
    'fitness': FitnessSection,
    'initial': InitialSection,
    'run': RunSection,
}


def _dict_to_section(section_cls, data: Dict) -> Any:
    """Convert a dict to a dataclass, ignoring unknown keys."""
    valid_fields = {f.name for f in dataclasses.fields(section_cls)}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    return section_cls(**filtered)


def _yaml_to_config(data: Dict) -> SimulationConfig:
    """Convert a merged YAML dict to a SimulationConfig."""
    sections = {}
    for key, cls in _SECTION_MAP.items():
        if key in data and isinstance(data[key], dict):
            sections[key] = _dict_to_section(cls, data[key])
        else:
            sections[key] = cls()
    return SimulationConfig(**sections)


def _per_locus(value, L: int, name: str) -> List[float]:
    """Expand a scalar or list to L floats; ValueError on wrong length."""
    if isinstance(value, (list, tuple)):
        if len(value) != L:
            raise ValueError(f"{name} must have {L} entries, got {len(value)}")
        return [float(x) for x in value]
    return [float(value)] * L


def validate_config(config: SimulationConfig) -> None:
    """Validate configuration constraints. Raises ValueError on failure.

    Checks:
      - L, N, seed ranges
      - Mutation rates in [0, 0.5]; warns when μ·L is not small
      - Recombination model, outcrossing rate, map length
      - Fitness and initial-state indices inside the hypercube
      - Run mode and lengths
    """
    pop = config.population
    if not isinstance(pop.L, int) or not 1 <= pop.L <= MAX_LOCI:
        raise ValueError(f"population.L must be an integer in [1, {MAX_LOCI}], got {pop.L!r}")
    if pop.N <= 0:
        raise ValueError(f"population.N must be positive, got {pop.N}")
    if pop.seed < 0:
        raise ValueError("population.seed must be non-negative")
    L = pop.L
    size = 1 << L

    # Mutation
    mut = config.mutation
    if mut.forward is not None:
        forward = _per_locus(mut.forward, L, "mutation.forward")
        backward = _per_locus(
            mut.backward if mut.backward is not None else mut.forward,
            L, "mutation.backward",
        )
    else:
        forward = backward = _per_locus(mut.rate, L, "mutation.rate")
    for rate in forward + backward:
        if not 0.0 <= rate <= 0.5:
            raise ValueError(f"mutation rates must be in [0, 0.5], got {rate}")
    if max(sum(forward), sum(backward)) > 0.1:
        warnings.warn(
            "total mutation rate per genome exceeds 0.1; the first-order "
            "mutation update assumes mu*L << 1",
            UserWarning,
            stacklevel=2,
        )

    # Recombination
    rec = config.recombination
    valid_models = {"free", "map"}
    if rec.model not in valid_models:
        raise ValueError(
            f"recombination.model must be one of {valid_models}, got '{rec.model}'"
        )
    if not 0.0 <= rec.outcrossing_rate <= 1.0:
        raise ValueError(
            f"recombination.outcrossing_rate must be in [0, 1], got {rec.outcrossing_rate}"
        )
    if rec.model == "map":
        if rec.rates is None:
            raise ValueError("recombination.rates required when model='map'")
        allowed = {L} if rec.circular else {L - 1, L, L + 1}
        if len(rec.rates) not in allowed:
            raise ValueError(
                f"recombination.rates must have one of {sorted(allowed)} entries "
                f"for L={L}, got {len(rec.rates)}"
            )
        if any(r < 0 for r in rec.rates):
            raise ValueError("recombination.rates must be non-negative")

    # Fitness
    fit = config.fitness
    if fit.additive is not None and len(fit.additive) != L:
        raise ValueError(f"fitness.additive must have {L} entries, got {len(fit.additive)}")
    for name, pairs in (("fitness.coefficients", fit.coefficients),
                        ("fitness.values", fit.values)):
        for pair in pairs:
            if len(pair) != 2 or not 0 <= int(pair[0]) < size:
                raise ValueError(f"{name} entries must be [index < {size}, value], got {pair}")

    # Initial state
    init = config.initial
    valid_init = {"frequencies", "genotypes"}
    if init.mode not in valid_init:
        raise ValueError(f"initial.mode must be one of {valid_init}, got '{init.mode}'")
    if init.mode == "frequencies" and init.frequencies is not None:
        if len(init.frequencies) != L:
            raise ValueError(
                f"initial.frequencies must have {L} entries, got {len(init.frequencies)}"
            )
        if any(not 0.0 <= f <= 1.0 for f in init.frequencies):
            raise ValueError("initial.frequencies must be in [0, 1]")
    if init.mode == "genotypes":
        if not init.genotypes:
            raise ValueError("initial.genotypes required when mode='genotypes'")
        for pair in init.genotypes:
            if len(pair) != 2 or not 0 <= int(pair[0]) < size or pair[1] < 0:
                raise ValueError(
                    f"initial.genotypes entries must be [genotype < {size}, weight >= 0], "
                    f"got {pair}"
                )

    # Run
    run = config.run
    valid_modes = {"full", "norec", "deterministic"}
    if run.mode not in valid_modes:
        raise ValueError(f"run.mode must be one of {valid_modes}, got '{run.mode}'")
    if run.generations < 0:
        raise ValueError(f"run.generations must be >= 0, got {run.generations}")
    if run.record_interval < 1:
        raise ValueError(f"run.record_interval must be >= 1, got {run.record_interval}")


def load_config(
    base_path: Union[str, Path],
    scenario_path: Optional[Union[str, Path]] = None,
    overrides: Optional[Dict] = None,
) -> SimulationConfig:
    """Load and merge hierarchical YAML configuration.

    Merge order: base → scenario → overrides.
    Each layer overrides only the fields it specifies.

    Raises:
        FileNotFoundError: If base_path doesn't exist.
        ValueError: If validation fails.
    """
    base_path = Path(base_path)
    if not base_path.exists():
        raise FileNotFoundError(f"Config file not found: {base_path}")

    with open(base_path) as f:
        config_dict = yaml.safe_load(f) or {}

    if scenario_path is not None:
        scenario_path = Path(scenario_path)
        if scenario_path.exists():
            with open(scenario_path) as f:
                scenario = yaml.safe_load(f) or {}
            deep_merge(config_dict, scenario)

    if overrides is not None:
        deep_merge(config_dict, overrides)

    config = _yaml_to_config(config_dict)
    validate_config(config)
    return config


def config_from_dict(data: Dict) -> SimulationConfig:
    """Build and validate a config from an already-parsed mapping."""
    config = _yaml_to_config(data)
    validate_config(config)
    return config


def default_config() -> SimulationConfig:
    """Return a SimulationConfig with all default values."""
    config = SimulationConfig()
    validate_config(config)
    return config
