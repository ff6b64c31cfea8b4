"""Tests for LedgerMutator."""

import pytest

from splitledger.balances import BalanceStore
from splitledger.exceptions import SettlementExceedsBalanceError
from splitledger.ledger import LedgerMutator
from splitledger.models import ExpenseSplit, SettlementStatus

from .conftest import ALICE, BOB, CAROL, usd


@pytest.fixture
def store(db):
    return BalanceStore(db)


@pytest.fixture
def mutator(db, store):
    return LedgerMutator(db, store)


@pytest.fixture
def expense(db):
    """A 100 cent expense paid by Alice, with its group."""
    with db.transaction():
        group = db.insert_group("Flat", "USD")
        return db.insert_expense(group.id, ALICE, usd(100), "Pizza")


@pytest.fixture
def splits():
    return [
        ExpenseSplit(participant_id=BOB, share=usd(34)),
        ExpenseSplit(participant_id=CAROL, share=usd(33)),
        ExpenseSplit(participant_id=ALICE, share=usd(33)),
    ]


def owed(store, group_id, debtor, creditor):
    """Signed amount debtor owes creditor."""
    balance = store.get(group_id, debtor, creditor)
    if balance is None:
        return 0
    return balance.amount.amount if balance.debtor_id == debtor else -balance.amount.amount


class TestExpenseDeltas:
    """Tests for record_expense and reverse_expense."""

    def test_requires_transaction(self, mutator, expense, splits):
        with pytest.raises(RuntimeError):
            mutator.record_expense(expense, splits)

    def test_participants_owe_payer(self, db, store, mutator, expense, splits):
        with db.transaction():
            mutator.record_expense(expense, splits)

        assert owed(store, expense.group_id, BOB, ALICE) == 34
        assert owed(store, expense.group_id, CAROL, ALICE) == 33
        assert len(store.list(expense.group_id)) == 2

    def test_zero_shares_are_skipped(self, db, store, mutator, expense):
        with db.transaction():
            mutator.record_expense(
                expense,
                [
                    ExpenseSplit(participant_id=BOB, share=usd(100)),
                    ExpenseSplit(participant_id=CAROL, share=usd(0)),
                ],
            )

        assert store.get(expense.group_id, CAROL, ALICE) is None

    def test_reverse_undoes_record(self, db, store, mutator, expense, splits):
        with db.transaction():
            mutator.record_expense(expense, splits)
        with db.transaction():
            mutator.reverse_expense(expense, splits)

        assert store.list(expense.group_id) == []


class TestSettlementDeltas:
    """Tests for record_settlement_completed."""

    def _settlement(self, db, group_id, from_id, to_id, amount):
        return db.insert_settlement(
            group_id, from_id, to_id, usd(amount), SettlementStatus.COMPLETED
        )

    def test_pays_down_debt(self, db, store, mutator, expense, splits):
        with db.transaction():
            mutator.record_expense(expense, splits)
        with db.transaction():
            settlement = self._settlement(db, expense.group_id, BOB, ALICE, 20)
            mutator.record_settlement_completed(settlement)

        assert owed(store, expense.group_id, BOB, ALICE) == 14

    def test_overpayment_rejected_by_default(self, db, store, mutator, expense, splits):
        with db.transaction():
            mutator.record_expense(expense, splits)

        with pytest.raises(SettlementExceedsBalanceError) as exc_info:
            with db.transaction():
                settlement = self._settlement(db, expense.group_id, BOB, ALICE, 35)
                mutator.record_settlement_completed(settlement)

        assert exc_info.value.outstanding == 34
        assert exc_info.value.attempted == 35
        assert owed(store, expense.group_id, BOB, ALICE) == 34
        assert db.list_settlements(expense.group_id) == []

    def test_paying_a_creditor_is_overpayment(self, db, mutator, expense, splits):
        """Alice owes nobody, so any payment from Alice overpays."""
        with db.transaction():
            mutator.record_expense(expense, splits)

        with pytest.raises(SettlementExceedsBalanceError):
            with db.transaction():
                settlement = self._settlement(db, expense.group_id, ALICE, BOB, 1)
                mutator.record_settlement_completed(settlement)

    def test_overpayment_allowed_by_policy(self, db, store, expense, splits):
        mutator = LedgerMutator(db, store, allow_overpayment=True)
        with db.transaction():
            mutator.record_expense(expense, splits)
        with db.transaction():
            settlement = self._settlement(db, expense.group_id, BOB, ALICE, 40)
            mutator.record_settlement_completed(settlement)

        assert owed(store, expense.group_id, ALICE, BOB) == 6

    def test_per_call_override(self, db, store, mutator, expense, splits):
        with db.transaction():
            mutator.record_expense(expense, splits)
        with db.transaction():
            settlement = self._settlement(db, expense.group_id, BOB, ALICE, 40)
            mutator.record_settlement_completed(settlement, allow_overpayment=True)

        assert owed(store, expense.group_id, ALICE, BOB) == 6

    def test_simplified_payment_across_pairs(self, db, store, mutator, expense):
        """Carol owes Bob and Bob owes Alice, so Carol may pay Alice directly."""
        with db.transaction():
            store.apply_delta(expense.group_id, CAROL, BOB, usd(30))
            store.apply_delta(expense.group_id, BOB, ALICE, usd(30))
        with db.transaction():
            settlement = self._settlement(db, expense.group_id, CAROL, ALICE, 30)
            mutator.record_settlement_completed(settlement)

        positions = store.net_positions(expense.group_id)
        assert all(amount == 0 for amount in positions.values())
        assert store.list(expense.group_id) == []
        assert len(db.list_nettings(expense.group_id)) == 3

    def test_excess_over_direct_debt_is_netted(self, db, store, mutator, expense):
        """Bob owes Alice 10 and Carol 20, Carol owes Alice 20: Bob may pay Alice 30."""
        with db.transaction():
            store.apply_delta(expense.group_id, BOB, ALICE, usd(10))
            store.apply_delta(expense.group_id, BOB, CAROL, usd(20))
            store.apply_delta(expense.group_id, CAROL, ALICE, usd(20))
        with db.transaction():
            settlement = self._settlement(db, expense.group_id, BOB, ALICE, 30)
            mutator.record_settlement_completed(settlement)

        assert store.list(expense.group_id) == []

    def test_excess_that_would_flip_pair_rejected(self, db, store, mutator, expense):
        with db.transaction():
            store.apply_delta(expense.group_id, BOB, ALICE, usd(10))
            store.apply_delta(expense.group_id, BOB, CAROL, usd(20))

        with pytest.raises(SettlementExceedsBalanceError) as exc_info:
            with db.transaction():
                settlement = self._settlement(db, expense.group_id, BOB, ALICE, 30)
                mutator.record_settlement_completed(settlement)

        assert exc_info.value.outstanding == 10
        assert owed(store, expense.group_id, BOB, ALICE) == 10
        assert db.list_nettings(expense.group_id) == []

    def test_payment_to_user_owed_nothing_rejected(self, db, store, mutator, expense):
        """Bob owes Alice; paying Carol instead would make Carol a debtor."""
        with db.transaction():
            store.apply_delta(expense.group_id, BOB, ALICE, usd(30))

        with pytest.raises(SettlementExceedsBalanceError):
            with db.transaction():
                settlement = self._settlement(db, expense.group_id, BOB, CAROL, 30)
                mutator.record_settlement_completed(settlement)
