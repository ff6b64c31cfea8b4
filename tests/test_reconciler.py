"""Tests for the Reconciler."""

from splitledger.models import SplitSpec
from splitledger.reconciler import Reconciler

from .conftest import ALICE, BOB, CAROL, usd


class TestRecompute:
    """Tests for Reconciler.recompute."""

    def test_matches_incremental_balances(self, service, group):
        service.record_expense(group.id, ALICE, usd(100), SplitSpec.equal([ALICE, BOB, CAROL]))
        service.record_expense(group.id, BOB, usd(90), SplitSpec.exact({ALICE: 60, CAROL: 30}))
        service.complete_settlement(group.id, CAROL, ALICE, usd(10))

        recomputed = service.reconciler.recompute(group.id)
        stored = service.get_group_balances(group.id)

        assert [(b.debtor_id, b.creditor_id, b.amount) for b in recomputed] == [
            (b.debtor_id, b.creditor_id, b.amount) for b in stored
        ]

    def test_ignores_pending_and_cancelled_settlements(self, service, group):
        service.record_expense(group.id, ALICE, usd(100), SplitSpec.equal([ALICE, BOB, CAROL]))
        service.propose_settlement(group.id, BOB, ALICE, usd(34))
        cancelled = service.propose_settlement(group.id, CAROL, ALICE, usd(33))
        service.cancel_settlement(cancelled.id)

        recomputed = service.reconciler.recompute(group.id)

        assert {(b.debtor_id, b.amount.amount) for b in recomputed} == {(BOB, 34), (CAROL, 33)}

    def test_empty_group(self, service, group):
        assert service.reconciler.recompute(group.id) == []


class TestDiff:
    """Tests for Reconciler.diff."""

    def test_untouched_ledger_has_no_discrepancies(self, service, group):
        service.record_expense(group.id, ALICE, usd(100), SplitSpec.equal([ALICE, BOB, CAROL]))

        assert service.reconcile(group.id) == []

    def test_reports_tampered_row(self, service, db, group):
        service.record_expense(group.id, ALICE, usd(100), SplitSpec.equal([ALICE, BOB, CAROL]))
        with db.transaction():
            db.upsert_balance(group.id, BOB, ALICE, 40)

        discrepancies = service.reconcile(group.id)

        assert len(discrepancies) == 1
        d = discrepancies[0]
        assert (d.user_a, d.user_b) == (ALICE, BOB)
        # Signed in "Alice owes Bob" terms, so Bob owing Alice is negative
        assert d.stored == usd(-40)
        assert d.expected == usd(-34)
        assert d.delta == usd(-6)

    def test_reports_missing_row(self, service, db, group):
        service.record_expense(group.id, ALICE, usd(100), SplitSpec.equal([ALICE, BOB, CAROL]))
        with db.transaction():
            db.delete_balance_pair(group.id, CAROL, ALICE)

        discrepancies = service.reconcile(group.id)

        assert [(d.user_a, d.user_b, d.stored.amount, d.expected.amount) for d in discrepancies] == [
            (ALICE, CAROL, 0, -33)
        ]

    def test_never_corrects_drift(self, service, db, group):
        service.record_expense(group.id, ALICE, usd(100), SplitSpec.equal([ALICE, BOB, CAROL]))
        with db.transaction():
            db.upsert_balance(group.id, BOB, ALICE, 40)

        service.reconcile(group.id)

        assert service.balances.get(group.id, BOB, ALICE).amount == usd(40)
        assert len(service.reconcile(group.id)) == 1

    def test_epsilon_tolerates_small_drift(self, service, db, group):
        service.record_expense(group.id, ALICE, usd(100), SplitSpec.equal([ALICE, BOB, CAROL]))
        with db.transaction():
            db.upsert_balance(group.id, BOB, ALICE, 35)

        assert Reconciler(db, epsilon=1).diff(group.id) == []
        assert len(Reconciler(db, epsilon=0).diff(group.id)) == 1
