"""Core data types for lowd-popgen.

This module is the SINGLE SOURCE OF TRUTH for:
  - Representation enumeration (which side of a hypercube is authoritative)
  - ErrorCode enumeration and the PopGenError exception hierarchy
  - Numerical constants shared by the operators (extinction threshold,
    Poisson/Gaussian switch, long-time generation fold)
  - Small result objects returned by the engine (FitnessStatistics)

All modules import these types from here.
"""

from dataclasses import dataclass
from enum import IntEnum

import numpy as np


# ═══════════════════════════════════════════════════════════════════════
# ENUMERATIONS
# ═══════════════════════════════════════════════════════════════════════

class Representation(IntEnum):
    """Authoritative side of a hypercube.

    VALUE: v[g], genotype space.
    COEFF: c[S], Walsh-Hadamard coefficient space.
    """
    VALUE = 0
    COEFF = 1


class ErrorCode(IntEnum):
    """Return codes of the evolve loops (0 = success)."""
    OK       = 0
    MEMERR   = -1   # allocation failure (mostly the 3^L pattern table)
    BADARG   = -2   # invalid L, N, rate, frequency, genotype
    EXTINCT  = -3   # total mass collapsed below EPSILON_EXTINCT
    STATEERR = -4   # wrong representation tag or non-finite values


# ═══════════════════════════════════════════════════════════════════════
# EXCEPTIONS
# ═══════════════════════════════════════════════════════════════════════

class PopGenError(Exception):
    """Base class; ``code`` is the ErrorCode reported by evolve loops."""
    code = ErrorCode.STATEERR


class BadArgumentError(PopGenError, ValueError):
    code = ErrorCode.BADARG


class AllocationError(PopGenError, MemoryError):
    code = ErrorCode.MEMERR


class ExtinctionError(PopGenError):
    code = ErrorCode.EXTINCT


class StateError(PopGenError):
    code = ErrorCode.STATEERR


# ═══════════════════════════════════════════════════════════════════════
# CONSTANTS
# ═══════════════════════════════════════════════════════════════════════

EPSILON_EXTINCT: float = 1e-12       # total mass below which a population is extinct
CONTINUOUS_THRESHOLD: int = 20       # expected counts above which drift is Gaussian
LONG_TIME_GENERATION: int = 10**9    # generation counter fold
LINEAR_CHROMOSOME_RATE: float = 50.0 # "before first locus" rate that frees the start strand

MAX_LOCI: int = 30                   # 2^30 doubles is already 8 GB per buffer
PATTERN_TABLE_WARN_LOCI: int = 14    # 3^14 ≈ 4.8M entries per flat table


# ═══════════════════════════════════════════════════════════════════════
# RESULT OBJECTS
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class FitnessStatistics:
    """Population mean and variance of log-fitness."""
    mean: float = 0.0
    variance: float = 0.0


def popcount_table(L: int) -> np.ndarray:
    """order[S] = popcount(S) for S in [0, 2^L), int64.

    Built by doubling: the upper half of each prefix is the lower half + 1.
    """
    order = np.zeros(1 << L, dtype=np.int64)
    for k in range(L):
        order[1 << k:1 << (k + 1)] = order[:1 << k] + 1
    return order


_ERRORS_BY_CODE = {
    ErrorCode.MEMERR: AllocationError,
    ErrorCode.BADARG: BadArgumentError,
    ErrorCode.EXTINCT: ExtinctionError,
    ErrorCode.STATEERR: StateError,
}


def error_for_code(code: int, message: str) -> PopGenError:
    """Exception instance matching a non-zero evolve return code."""
    return _ERRORS_BY_CODE.get(ErrorCode(code), PopGenError)(message)
