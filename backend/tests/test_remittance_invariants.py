# Overview: Pytest coverage for remittance invariants and the idempotence decision.

import pytest

from remitcore.services.remittance_invariants import (
    INVARIANT_COUNT,
    INVARIANT_SUM,
    SUM_TOLERANCE_CENTS,
    RemittanceInvariantError,
    assert_count_invariant,
    assert_sum_invariant,
    assert_sum_invariant_exact,
    check_idempotence,
)


class TestSumInvariantExact:

    def test_exact_match_passes(self):
        assert_sum_invariant_exact(10000, 10000)
        assert_sum_invariant_exact(0, 0)

    @pytest.mark.parametrize("delta", [1, -1])
    def test_one_cent_off_fails(self, delta):
        with pytest.raises(RemittanceInvariantError) as exc_info:
            assert_sum_invariant_exact(10000, 10000 + delta)
        assert exc_info.value.code == INVARIANT_SUM
        assert exc_info.value.details["deltaCents"] == 1
        assert str(exc_info.value).startswith("[R-SUM-1]")


class TestSumInvariantTolerance:
    """Legacy reconciliation only."""

    def test_within_tolerance_passes(self):
        assert_sum_invariant(10000, 10000 + SUM_TOLERANCE_CENTS)
        assert_sum_invariant(10000, 10000 - SUM_TOLERANCE_CENTS)

    def test_compares_absolute_values(self):
        assert_sum_invariant(-10000, 10000)

    def test_beyond_tolerance_fails(self):
        with pytest.raises(RemittanceInvariantError) as exc_info:
            assert_sum_invariant(10000, 10000 + SUM_TOLERANCE_CENTS + 1)
        assert exc_info.value.code == INVARIANT_SUM
        assert exc_info.value.details["tolerance"] == SUM_TOLERANCE_CENTS


class TestCountInvariant:

    @pytest.mark.parametrize("n", [0, 1, 2, 50, 103])
    def test_passes_iff_lengths_match(self, n):
        ids = list(range(n))
        assert_count_invariant(ids, n)
        with pytest.raises(RemittanceInvariantError) as exc_info:
            assert_count_invariant(ids, n + 1)
        assert exc_info.value.code == INVARIANT_COUNT


class TestCheckIdempotence:

    def test_no_previous_hash_processes(self):
        assert check_idempotence(None, "abc").should_process is True

    def test_same_hash_is_noop(self):
        decision = check_idempotence("abc", "abc", "processed")
        assert decision.should_process is False

    def test_different_hash_processes(self):
        assert check_idempotence("abc", "def", "processed").should_process is True

    @pytest.mark.parametrize("status", ["undone", "undone_legacy"])
    def test_undone_forces_reprocess_even_with_same_hash(self, status):
        decision = check_idempotence("abc", "abc", status)
        assert decision.should_process is True
        assert "undone" in decision.reason.lower()
