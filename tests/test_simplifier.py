"""Tests for greedy debt simplification."""

import pytest

from splitledger.simplifier import simplify_debts

X, Y, Z = 10, 20, 30


def as_tuples(instructions):
    return [(i.from_id, i.to_id, i.amount.amount) for i in instructions]


class TestSimplifyDebts:
    """Tests for simplify_debts."""

    def test_largest_debtor_pays_first(self):
        """X +50, Y -20, Z -30 gives Z->X 30 then Y->X 20."""
        result = simplify_debts({X: 50, Y: -20, Z: -30}, "USD")

        assert as_tuples(result) == [(Z, X, 30), (Y, X, 20)]

    def test_zero_positions_are_ignored(self):
        result = simplify_debts({X: 10, Y: -10, Z: 0}, "USD")

        assert as_tuples(result) == [(Y, X, 10)]

    def test_empty_and_settled(self):
        assert simplify_debts({}, "USD") == []
        assert simplify_debts({X: 0, Y: 0}, "USD") == []

    def test_ties_break_by_ascending_id(self):
        result = simplify_debts({1: 10, 2: 10, 3: -10, 4: -10}, "USD")

        assert as_tuples(result) == [(3, 1, 10), (4, 2, 10)]

    def test_one_debtor_many_creditors(self):
        result = simplify_debts({1: 30, 2: 20, 3: 10, 4: -60}, "EUR")

        assert as_tuples(result) == [(4, 1, 30), (4, 2, 20), (4, 3, 10)]
        assert all(i.amount.currency == "EUR" for i in result)

    def test_conservation_and_transaction_bound(self):
        positions = {1: 700, 2: -250, 3: -125, 4: 90, 5: -415, 6: 0, 7: 5, 8: -5}

        result = simplify_debts(positions, "USD")

        owed_to_creditors = sum(v for v in positions.values() if v > 0)
        assert sum(i.amount.amount for i in result) == owed_to_creditors
        non_zero = sum(1 for v in positions.values() if v != 0)
        assert len(result) <= non_zero - 1

        # Applying the payments zeroes every position
        remaining = dict(positions)
        for i in result:
            remaining[i.from_id] += i.amount.amount
            remaining[i.to_id] -= i.amount.amount
        assert all(v == 0 for v in remaining.values())

    def test_unbalanced_positions_rejected(self):
        with pytest.raises(ValueError):
            simplify_debts({X: 50, Y: -20}, "USD")
