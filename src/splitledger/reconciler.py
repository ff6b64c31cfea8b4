"""Reconciliation of stored balances against expense and settlement history."""

import logging

from .balances import Pair, accumulate, directed
from .db import Database
from .models import Balance, Discrepancy, Money, SettlementStatus


class Reconciler:
    """Recomputes a group's balances from history and reports drift.

    Nothing here writes to the database. Discrepancies are reported for an
    operator to investigate and are never corrected automatically.
    """

    def __init__(self, database: Database, epsilon: int = 0):
        """Initialize the reconciler."""
        self.db = database
        self.epsilon = epsilon

    def _replay(self, group_id: int) -> dict[Pair, int]:
        """
        Replay every expense split, completed settlement and debt netting of a group.

        Uses the same accumulation rule as BalanceStore.apply_delta. Nettings
        are replayed as recorded, so the order of events does not matter.

        Returns:
            Signed pair amounts keyed by pair_key (low id owes high id)
        """
        edges: dict[Pair, int] = {}

        splits_by_expense = self.db.list_group_splits(group_id)
        for expense in self.db.list_expenses(group_id):
            for split in splits_by_expense.get(expense.id, []):
                if split.participant_id == expense.payer_id or split.share.amount <= 0:
                    continue
                accumulate(edges, split.participant_id, expense.payer_id, split.share.amount)

        for settlement in self.db.list_settlements(group_id, SettlementStatus.COMPLETED):
            # Paying from -> to is a debt of to -> from that nets the original
            accumulate(edges, settlement.to_id, settlement.from_id, settlement.amount.amount)

        for netting in self.db.list_nettings(group_id):
            accumulate(edges, netting.debtor_id, netting.creditor_id, -netting.amount.amount)

        return edges

    def recompute(self, group_id: int) -> list[Balance]:
        """
        Compute what the balance table should hold for a group.

        Reads from one consistent snapshot of expenses, splits and
        settlements, without touching the live balance rows.

        Args:
            group_id: Group to recompute

        Returns:
            Canonical balance rows ordered by (debtor_id, creditor_id)
        """
        with self.db.snapshot():
            group = self.db.get_group(group_id)
            if group is None:
                raise RuntimeError(f"Cannot recompute unknown group {group_id}")
            edges = self._replay(group_id)

        balances = []
        for key, signed in edges.items():
            debtor_id, creditor_id, amount = directed(key, signed)
            balances.append(
                Balance(
                    group_id=group_id,
                    debtor_id=debtor_id,
                    creditor_id=creditor_id,
                    amount=Money(amount=amount, currency=group.currency),
                )
            )
        balances.sort(key=lambda b: (b.debtor_id, b.creditor_id))
        return balances

    def diff(self, group_id: int) -> list[Discrepancy]:
        """
        Compare stored balances with recomputed ones.

        A pair is reported when its stored and expected amounts differ by
        more than the configured epsilon (in minor units).

        Args:
            group_id: Group to reconcile

        Returns:
            Discrepancies ordered by pair; empty when the ledger is consistent
        """
        with self.db.snapshot():
            group = self.db.get_group(group_id)
            if group is None:
                raise RuntimeError(f"Cannot reconcile unknown group {group_id}")
            expected = self._replay(group_id)
            stored: dict[Pair, int] = {}
            for balance in self.db.list_balances(group_id):
                accumulate(
                    stored, balance.debtor_id, balance.creditor_id, balance.amount.amount
                )

        discrepancies = []
        for key in sorted(set(expected) | set(stored)):
            stored_amount = stored.get(key, 0)
            expected_amount = expected.get(key, 0)
            delta = stored_amount - expected_amount
            if abs(delta) <= self.epsilon:
                continue

            user_a, user_b = key
            discrepancies.append(
                Discrepancy(
                    group_id=group_id,
                    user_a=user_a,
                    user_b=user_b,
                    stored=Money(amount=stored_amount, currency=group.currency),
                    expected=Money(amount=expected_amount, currency=group.currency),
                    delta=Money(amount=delta, currency=group.currency),
                )
            )
            logging.warning(
                f"Balance drift in group {group_id} for pair {user_a}/{user_b}: "
                f"stored {stored_amount}, expected {expected_amount} (delta {delta})"
            )

        if not discrepancies:
            logging.info(f"Group {group_id} reconciled with no discrepancies")

        return discrepancies

