"""Genotype hypercube with a dual VALUE / COEFF representation.

A hypercube is a real function on the L-dimensional Boolean cube, stored as
two dense arrays of length 2^L:

  v[g]  VALUE form, indexed by genotype g (bit k = allele at locus k)
  c[S]  COEFF form, Walsh-Hadamard coefficients indexed by locus subset S

with the (non-unitary) convention used throughout the engine:

  c[S] = 2^-L · Σ_g χ_S(g) v[g]        χ_S(g) = (−1)^popcount(g ∧ S)
  v[g] =        Σ_S χ_S(g) c[S]

so that c[0] = Σv / 2^L. Exactly one side is authoritative at any time and
``tag`` records which. Transforms overwrite the other side and flip the tag.

Callers writing ``v`` or ``c`` directly MUST call set_tag() afterwards; the
tag is a contract, not a lock. Operators that need a particular side call
ensure_value() / ensure_coeff(), which transform only when required.
"""

from __future__ import annotations

from typing import Iterable, Optional, Tuple

import numpy as np

from lowd_popgen.types import (
    EPSILON_EXTINCT,
    MAX_LOCI,
    AllocationError,
    BadArgumentError,
    ExtinctionError,
    Representation,
    StateError,
    popcount_table,
)


def _walsh_butterflies(x: np.ndarray, L: int) -> None:
    """Unnormalized in-place WHT: L radix-2 stages, one per locus axis."""
    for k in range(L):
        view = x.reshape(-1, 2, 1 << k)
        lo = view[:, 0, :].copy()
        view[:, 0, :] += view[:, 1, :]
        view[:, 1, :] = lo - view[:, 1, :]


class Hypercube:
    """Dense 2^L array with VALUE/COEFF tag, transforms and initializers."""

    def __init__(self, L: int, rng: Optional[np.random.Generator] = None):
        """Allocate zeroed VALUE and COEFF buffers and the order table.

        Args:
            L: Number of loci (0 ≤ L ≤ MAX_LOCI).
            rng: Stream for init_rand_gauss(); a fresh default_rng() if None.

        Raises:
            BadArgumentError: L out of range.
            AllocationError: Buffers could not be allocated.
        """
        if not isinstance(L, (int, np.integer)) or L < 0 or L > MAX_LOCI:
            raise BadArgumentError(f"number of loci must be in [0, {MAX_LOCI}], got {L!r}")
        self.L = int(L)
        self.size = 1 << self.L
        try:
            self.v = np.zeros(self.size, dtype=np.float64)
            self.c = np.zeros(self.size, dtype=np.float64)
            self.order = popcount_table(self.L)
        except MemoryError as exc:
            raise AllocationError(
                f"cannot allocate hypercube buffers for L={self.L}"
            ) from exc
        self.tag = Representation.VALUE
        self.rng = rng if rng is not None else np.random.default_rng()

    def __repr__(self) -> str:
        return f"Hypercube(L={self.L}, tag={self.tag.name})"

    # ── tag discipline ────────────────────────────────────────────────

    def set_tag(self, tag: Representation) -> None:
        """Declare which side is authoritative. Does not touch the data."""
        self.tag = Representation(tag)

    def require(self, tag: Representation, operation: str = "") -> None:
        """Raise StateError unless the hypercube is in ``tag`` form."""
        if self.tag != tag:
            raise StateError(
                f"{operation or 'operation'} requires {Representation(tag).name} "
                f"form, hypercube is in {self.tag.name} form"
            )

    def ensure_value(self) -> np.ndarray:
        """Materialize VALUE form if needed; return v."""
        if self.tag == Representation.COEFF:
            self.fft_coeff_to_value()
        return self.v

    def ensure_coeff(self) -> np.ndarray:
        """Materialize COEFF form if needed; return c."""
        if self.tag == Representation.VALUE:
            self.fft_value_to_coeff()
        return self.c

    @property
    def values(self) -> np.ndarray:
        return self.ensure_value()

    @property
    def coefficients(self) -> np.ndarray:
        return self.ensure_coeff()

    # ── transforms ────────────────────────────────────────────────────

    def fft_value_to_coeff(self) -> None:
        """Forward WHT v → c; tag becomes COEFF."""
        self.require(Representation.VALUE, "fft_value_to_coeff")
        self.c[:] = self.v
        _walsh_butterflies(self.c, self.L)
        self.c *= 1.0 / self.size
        self.tag = Representation.COEFF

    def fft_coeff_to_value(self) -> None:
        """Inverse WHT c → v; tag becomes VALUE."""
        self.require(Representation.COEFF, "fft_coeff_to_value")
        self.v[:] = self.c
        _walsh_butterflies(self.v, self.L)
        self.tag = Representation.VALUE

    # ── arithmetic ────────────────────────────────────────────────────

    def scale(self, factor: float) -> None:
        """Multiply the authoritative array by ``factor``."""
        if self.tag == Representation.VALUE:
            self.v *= factor
        else:
            self.c *= factor

    def normalize(self) -> float:
        """Scale VALUE form so Σv = 1.

        Returns:
            The sum before normalization.

        Raises:
            StateError: Not in VALUE form, or the sum is not finite.
            ExtinctionError: Σv < EPSILON_EXTINCT.
        """
        self.require(Representation.VALUE, "normalize")
        total = float(self.v.sum())
        if not np.isfinite(total):
            raise StateError(f"non-finite total mass {total}")
        if total < EPSILON_EXTINCT:
            raise ExtinctionError(f"total mass {total:.3g} below {EPSILON_EXTINCT}")
        self.v *= 1.0 / total
        return total

    # ── initializers ──────────────────────────────────────────────────

    def _check_index(self, index) -> int:
        if not isinstance(index, (int, np.integer)) or not 0 <= index < self.size:
            raise BadArgumentError(
                f"index {index!r} out of range for L={self.L} (size {self.size})"
            )
        return int(index)

    def init_list(
        self,
        pairs: Iterable[Tuple[int, float]],
        normalize: bool = False,
    ) -> None:
        """Zero v, then set v[g] = p for each (g, p); tag VALUE.

        Later pairs overwrite earlier ones with the same genotype.
        """
        self.v[:] = 0.0
        for index, value in pairs:
            self.v[self._check_index(index)] = value
        self.tag = Representation.VALUE
        if normalize:
            self.normalize()

    def init_coeff_list(self, pairs: Iterable[Tuple[int, float]]) -> None:
        """Zero c, then set c[S] = x for each (S, x); tag COEFF."""
        self.c[:] = 0.0
        for index, value in pairs:
            self.c[self._check_index(index)] = value
        self.tag = Representation.COEFF

    def init_rand_gauss(self, sigma: float) -> None:
        """Fill v with N(0, sigma²) draws from this hypercube's stream."""
        if sigma < 0:
            raise BadArgumentError(f"sigma must be non-negative, got {sigma}")
        self.v[:] = self.rng.normal(0.0, sigma, size=self.size)
        self.tag = Representation.VALUE

    # ── queries ───────────────────────────────────────────────────────

    def get_value(self, genotype: int) -> float:
        return float(self.ensure_value()[self._check_index(genotype)])

    def get_coeff(self, subset: int) -> float:
        return float(self.ensure_coeff()[self._check_index(subset)])
