"""Tests for minor-unit arithmetic and split computation."""

from decimal import Decimal

import pytest

from splitledger.exceptions import (
    CurrencyMismatchError,
    InvalidAmountError,
    SplitMismatchError,
)
from splitledger.models import Money, SplitSpec
from splitledger.money import (
    compute_splits,
    order_participants,
    split_equal,
    split_exact,
    split_percentage,
)

from .conftest import ALICE, BOB, CAROL, usd


class TestMoney:
    """Tests for the Money value type."""

    def test_rejects_float_amount(self):
        """Floats never enter the ledger."""
        with pytest.raises(InvalidAmountError):
            Money(amount=10.5, currency="USD")

    def test_rejects_bool_amount(self):
        with pytest.raises(InvalidAmountError):
            Money(amount=True, currency="USD")

    def test_rejects_malformed_currency(self):
        with pytest.raises(InvalidAmountError):
            Money(amount=100, currency="US")

    def test_normalizes_currency_case(self):
        assert Money(amount=1, currency="eur").currency == "EUR"

    def test_arithmetic_keeps_currency(self):
        assert usd(100) + usd(23) == usd(123)
        assert usd(100) - usd(123) == usd(-23)
        assert -usd(5) == usd(-5)
        assert abs(usd(-5)) == usd(5)
        assert usd(1) < usd(2)

    def test_mixing_currencies_fails(self):
        with pytest.raises(CurrencyMismatchError):
            usd(1) + Money(amount=1, currency="EUR")


class TestSplitEqual:
    """Tests for split_equal."""

    def test_hundred_among_three(self):
        """100 among 3 yields [34, 33, 33]."""
        shares = split_equal(usd(100), 3)

        assert [s.amount for s in shares] == [34, 33, 33]

    @pytest.mark.parametrize("total,n", [(1, 7), (999, 4), (10_000_001, 13), (5, 5)])
    def test_exact_and_balanced(self, total, n):
        """Shares sum to the total and differ by at most one unit."""
        amounts = [s.amount for s in split_equal(usd(total), n)]

        assert sum(amounts) == total
        assert len(amounts) == n
        assert min(amounts) >= 0
        assert max(amounts) - min(amounts) <= 1

    @pytest.mark.parametrize("total,n", [(0, 3), (-100, 3), (100, 0), (100, -1)])
    def test_invalid_inputs(self, total, n):
        with pytest.raises(InvalidAmountError):
            split_equal(usd(total), n)


class TestSplitExact:
    """Tests for split_exact."""

    def test_matching_shares_pass_through(self):
        shares = [usd(70), usd(30)]

        assert split_exact(usd(100), shares) == shares

    def test_mismatch(self):
        with pytest.raises(SplitMismatchError):
            split_exact(usd(100), [usd(70), usd(29)])

    def test_negative_share(self):
        with pytest.raises(InvalidAmountError):
            split_exact(usd(100), [usd(110), usd(-10)])

    def test_non_positive_total(self):
        with pytest.raises(InvalidAmountError):
            split_exact(usd(0), [usd(0)])


class TestSplitPercentage:
    """Tests for split_percentage."""

    def test_last_entry_absorbs_residual(self):
        """333.3 + 333.3 + 333.4 round to 333 each; the last takes the spare unit."""
        shares = split_percentage(
            usd(1000), [Decimal("33.33"), Decimal("33.33"), Decimal("33.34")]
        )

        assert [s.amount for s in shares] == [333, 333, 334]

    def test_rounds_half_to_even(self):
        """2.5 rounds to 2 twice, and the last entry picks up the difference."""
        shares = split_percentage(usd(10), [Decimal(25), Decimal(25), Decimal(50)])

        assert [s.amount for s in shares] == [2, 2, 6]

    def test_excess_skips_zero_percent_last_entry(self):
        """1.5 rounds up to 2 twice; the 0% entry cannot give the unit back."""
        shares = split_percentage(usd(3), [Decimal(50), Decimal(50), Decimal(0)])

        assert [s.amount for s in shares] == [2, 1, 0]

    def test_excess_spread_over_several_entries(self):
        """0.6 rounds up to 1 five times, two units over a total of 3."""
        shares = split_percentage(usd(3), [Decimal(20)] * 5)

        assert [s.amount for s in shares] == [1, 1, 1, 0, 0]

    def test_zero_percent_payer_in_expense(self):
        spec = SplitSpec.percentage({ALICE: 0, BOB: 50, CAROL: 50})

        splits = compute_splits(usd(3), spec, payer_id=ALICE)

        assert [(s.participant_id, s.share.amount) for s in splits] == [
            (BOB, 2),
            (CAROL, 1),
            (ALICE, 0),
        ]

    def test_percentages_must_total_100(self):
        with pytest.raises(SplitMismatchError):
            split_percentage(usd(100), [Decimal(50), Decimal(40)])

    def test_negative_percentage(self):
        with pytest.raises(InvalidAmountError):
            split_percentage(usd(100), [Decimal(150), Decimal(-50)])


class TestComputeSplits:
    """Tests for turning a SplitSpec into shares."""

    def test_payer_is_ordered_last(self):
        assert order_participants([CAROL, ALICE, BOB], payer_id=ALICE) == [BOB, CAROL, ALICE]

    def test_payer_outside_split(self):
        assert order_participants([CAROL, BOB], payer_id=ALICE) == [BOB, CAROL]

    def test_equal_split_remainder_goes_to_non_payers_first(self):
        splits = compute_splits(usd(100), SplitSpec.equal([ALICE, BOB, CAROL]), ALICE)

        assert {s.participant_id: s.share.amount for s in splits} == {
            BOB: 34,
            CAROL: 33,
            ALICE: 33,
        }

    def test_exact_split(self):
        splits = compute_splits(usd(100), SplitSpec.exact({BOB: 60, CAROL: 40}), ALICE)

        assert {s.participant_id: s.share.amount for s in splits} == {BOB: 60, CAROL: 40}

    def test_percentage_split(self):
        spec = SplitSpec.percentage({ALICE: 50, BOB: "25", CAROL: Decimal(25)})

        splits = compute_splits(usd(400), spec, ALICE)

        assert sum(s.share.amount for s in splits) == 400
        assert {s.participant_id: s.share.amount for s in splits}[ALICE] == 200

    def test_duplicate_participants_rejected(self):
        with pytest.raises(SplitMismatchError):
            compute_splits(usd(100), SplitSpec.equal([BOB, BOB]), ALICE)

    def test_empty_split_rejected(self):
        with pytest.raises(InvalidAmountError):
            compute_splits(usd(100), SplitSpec.equal([]), ALICE)
