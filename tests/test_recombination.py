"""Tests for lowd_popgen.recombination — partition table, crossover patterns,
coefficient-space recombinants against the explicit pair convolution."""

import warnings

import numpy as np
import pytest

from lowd_popgen.hypercube import Hypercube
from lowd_popgen.recombination import (
    build_partition_table,
    build_recombination_patterns,
    check_pattern_table_size,
    crossover_pattern_weights,
    explicit_recombinant_distribution,
    normalize_recombination_rates,
    recombinant_coefficients,
)
from lowd_popgen.types import LINEAR_CHROMOSOME_RATE, BadArgumentError


def random_distribution(L, seed):
    rng = np.random.default_rng(seed)
    v = rng.random(1 << L)
    return v / v.sum()


def coefficients(v):
    L = int(np.log2(len(v)))
    h = Hypercube(L)
    h.v[:] = v
    h.fft_value_to_coeff()
    return h.c.copy()


def values(c):
    L = int(np.log2(len(c)))
    h = Hypercube(L)
    h.init_coeff_list(enumerate(c))
    h.fft_coeff_to_value()
    return h.v.copy()


# ── partition table ──────────────────────────────────────────────────

class TestPartitionTable:
    @pytest.mark.parametrize("L", [1, 3, 5])
    def test_size_is_three_to_the_L(self, L):
        table = build_partition_table(L)
        assert table.size == 3 ** L
        assert len(table.paternal) == 3 ** L

    def test_subsets_sorted_by_order(self):
        table = build_partition_table(4)
        orders = [bin(int(s)).count('1') for s in table.subsets]
        assert orders == sorted(orders)
        assert sorted(table.subsets.tolist()) == list(range(16))

    def test_blocks_partition_each_subset(self):
        """M(S,j) | P(S,j) = S, M & P = 0, and the M(S,·) run over all submasks."""
        table = build_partition_table(4)
        for S in range(16):
            m = table.block(table.maternal, S)
            p = table.block(table.paternal, S)
            np.testing.assert_array_equal(m | p, S)
            np.testing.assert_array_equal(m & p, 0)
            submasks = sorted(x for x in range(16) if x & ~S == 0)
            assert sorted(m.tolist()) == submasks

    def test_partition_index_convention(self):
        """Bit q of j sends the q-th set locus of S to the mother."""
        table = build_partition_table(3)
        m = table.block(table.maternal, 0b101)
        np.testing.assert_array_equal(m, [0b000, 0b001, 0b100, 0b101])

    def test_subsets_of_order(self):
        table = build_partition_table(3)
        assert sorted(table.subsets_of_order(2).tolist()) == [3, 5, 6]
        assert table.subsets_of_order(0).tolist() == [0]


# ── recombination rates ──────────────────────────────────────────────

class TestNormalizeRates:
    def test_linear_short_prepends_free_start(self):
        rates = normalize_recombination_rates([0.1, 0.2, 0.3], 4)
        np.testing.assert_array_equal(rates, [LINEAR_CHROMOSOME_RATE, 0.1, 0.2, 0.3])

    def test_linear_L_kept(self):
        rates = normalize_recombination_rates([50, 0.1, 0.2, 0.3], 4)
        np.testing.assert_array_equal(rates, [50, 0.1, 0.2, 0.3])

    def test_linear_trailing_dropped(self):
        rates = normalize_recombination_rates([50, 0.5, 0.5, 0.5, 0.5], 4)
        np.testing.assert_array_equal(rates, [50, 0.5, 0.5, 0.5])

    def test_circular_needs_exactly_L(self):
        np.testing.assert_array_equal(
            normalize_recombination_rates([0.1] * 4, 4, circular=True), [0.1] * 4
        )
        with pytest.raises(BadArgumentError):
            normalize_recombination_rates([0.1] * 3, 4, circular=True)

    @pytest.mark.parametrize("rates", [[0.1, 0.1], [0.1] * 6, [0.1, -0.1, 0.1], [np.nan] * 3])
    def test_rejected(self, rates):
        with pytest.raises(BadArgumentError):
            normalize_recombination_rates(rates, 4)


# ── crossover patterns ───────────────────────────────────────────────

class TestCrossoverPatterns:
    def test_normalized_and_even(self):
        weights = crossover_pattern_weights(np.array([50.0, 0.3, 0.1, 0.7]))
        assert weights.sum() == pytest.approx(1.0)
        for pattern, w in enumerate(weights):
            strand = [(pattern >> k) & 1 for k in range(4)]
            switches = sum(strand[k] != strand[k - 1] for k in range(4))
            if switches % 2:
                assert w == 0.0

    def test_no_recombination_keeps_whole_strands(self):
        weights = crossover_pattern_weights(np.array([50.0, 0.0, 0.0]))
        np.testing.assert_allclose(weights[[0, 7]], [0.5, 0.5])
        assert weights[1:7].sum() == pytest.approx(0.0)

    def test_tight_circle_keeps_whole_strands(self):
        weights = crossover_pattern_weights(np.zeros(3))
        np.testing.assert_allclose(weights[[0, 7]], [0.5, 0.5])

    def test_marginals_sum_to_one(self):
        L = 4
        table = build_partition_table(L)
        rates = normalize_recombination_rates([0.2, 0.05, 1.0], L)
        patterns = build_recombination_patterns(rates, table)
        for S in range(1 << L):
            assert table.block(patterns, S).sum() == pytest.approx(1.0)
        assert table.block(patterns, 0)[0] == pytest.approx(1.0)

    def test_marginals_match_brute_force(self):
        L = 4
        table = build_partition_table(L)
        rates = np.array([50.0, 0.2, 0.05, 1.0])
        full = crossover_pattern_weights(rates)
        patterns = build_recombination_patterns(rates, table)
        for S in range(1 << L):
            loci = [k for k in range(L) if S >> k & 1]
            expected = np.zeros(1 << len(loci))
            for pattern, w in enumerate(full):
                j = sum(((pattern >> k) & 1) << q for q, k in enumerate(loci))
                expected[j] += w
            np.testing.assert_allclose(table.block(patterns, S), expected, atol=1e-14)

    def test_two_locus_recombination_probability(self):
        """P(loci k, l on different strands) = ½(1 − e^(−2Σρ)) on a linear map."""
        L = 3
        table = build_partition_table(L)
        rates = np.array([50.0, 0.3, 0.4])
        patterns = build_recombination_patterns(rates, table)
        r02 = table.block(patterns, 0b101)
        # j = 1 and j = 2: the two loci come from different parents
        assert r02[1] + r02[2] == pytest.approx(0.5 * (1 - np.exp(-2 * 0.7)))

    def test_large_table_warning(self):
        with pytest.warns(ResourceWarning):
            check_pattern_table_size(15)
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            check_pattern_table_size(10)


# ── recombinant distribution ─────────────────────────────────────────

class TestRecombinantCoefficients:
    @pytest.mark.parametrize("L", [1, 2, 4, 6])
    def test_free_matches_explicit(self, L):
        v = random_distribution(L, seed=L)
        table = build_partition_table(L)
        fast = values(recombinant_coefficients(coefficients(v), table))
        slow = explicit_recombinant_distribution(v)
        np.testing.assert_allclose(fast, slow, atol=1e-9)

    @pytest.mark.parametrize("circular", [False, True])
    def test_map_matches_explicit(self, circular):
        L = 5
        v = random_distribution(L, seed=99)
        table = build_partition_table(L)
        raw = [0.3, 0.1, 0.5, 0.05, 0.2] if circular else [50, 0.3, 0.1, 0.5, 0.05]
        rates = normalize_recombination_rates(raw, L, circular)
        patterns = build_recombination_patterns(rates, table)
        full = table.block(patterns, (1 << L) - 1)

        fast = values(recombinant_coefficients(coefficients(v), table, patterns))
        slow = explicit_recombinant_distribution(v, full)
        np.testing.assert_allclose(fast, slow, atol=1e-9)

    def test_normalization(self):
        L = 3
        table = build_partition_table(L)
        rc = recombinant_coefficients(coefficients(random_distribution(L, 3)), table)
        assert rc[0] == pytest.approx(1.0 / 8)
        assert values(rc).sum() == pytest.approx(1.0)

    def test_linkage_equilibrium_is_fixed_point(self):
        """A product distribution is unchanged by free recombination."""
        L = 4
        nu = np.array([0.1, 0.4, 0.7, 0.9])
        g = np.arange(1 << L)
        v = np.prod(np.where((g[:, None] >> np.arange(L)) & 1, nu, 1 - nu), axis=1)
        table = build_partition_table(L)
        r = values(recombinant_coefficients(coefficients(v), table))
        np.testing.assert_allclose(r, v, atol=1e-12)

    def test_explicit_sums_to_one(self):
        v = random_distribution(3, seed=5)
        assert explicit_recombinant_distribution(v).sum() == pytest.approx(1.0)
