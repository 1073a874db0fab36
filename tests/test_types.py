"""Tests for lowd_popgen.types — enums, exception hierarchy, helpers."""

import numpy as np
import pytest

from lowd_popgen.types import (
    EPSILON_EXTINCT,
    AllocationError,
    BadArgumentError,
    ErrorCode,
    ExtinctionError,
    FitnessStatistics,
    PopGenError,
    Representation,
    StateError,
    error_for_code,
    popcount_table,
)


class TestErrorCode:
    def test_values(self):
        assert ErrorCode.OK == 0
        assert ErrorCode.MEMERR == -1
        assert ErrorCode.BADARG == -2
        assert ErrorCode.EXTINCT == -3
        assert ErrorCode.STATEERR == -4

    def test_representation_values(self):
        assert Representation.VALUE == 0
        assert Representation.COEFF == 1


class TestExceptions:
    @pytest.mark.parametrize("cls, code", [
        (AllocationError, ErrorCode.MEMERR),
        (BadArgumentError, ErrorCode.BADARG),
        (ExtinctionError, ErrorCode.EXTINCT),
        (StateError, ErrorCode.STATEERR),
    ])
    def test_codes(self, cls, code):
        assert issubclass(cls, PopGenError)
        assert cls("x").code == code

    def test_builtin_bases(self):
        """Callers catching ValueError / MemoryError still see these."""
        assert issubclass(BadArgumentError, ValueError)
        assert issubclass(AllocationError, MemoryError)

    def test_error_for_code(self):
        exc = error_for_code(ErrorCode.EXTINCT, "gone")
        assert isinstance(exc, ExtinctionError)
        assert str(exc) == "gone"
        assert isinstance(error_for_code(-2, "bad"), BadArgumentError)


class TestPopcountTable:
    def test_matches_bin_count(self):
        L = 7
        order = popcount_table(L)
        expected = [bin(s).count('1') for s in range(1 << L)]
        np.testing.assert_array_equal(order, expected)

    def test_zero_loci(self):
        np.testing.assert_array_equal(popcount_table(0), [0])


class TestFitnessStatistics:
    def test_defaults(self):
        stats = FitnessStatistics()
        assert stats.mean == 0.0
        assert stats.variance == 0.0

    def test_epsilon_is_small(self):
        assert 0 < EPSILON_EXTINCT < 1e-9
