"""Translate expense and settlement events into balance deltas."""

import logging

from .balances import BalanceStore, accumulate, net_out_cycles, owed
from .db import Database
from .exceptions import SettlementExceedsBalanceError
from .models import Expense, ExpenseSplit, Money, Settlement, SettlementStatus

logger = logging.getLogger(__name__)


class LedgerMutator:
    """
    Applies the balance deltas implied by ledger events.

    Every method must run inside Database.transaction(); the caller owns the
    transaction so that several events (e.g. reverse then record during an
    expense update) commit or roll back together.
    """

    def __init__(
        self,
        database: Database,
        balances: BalanceStore,
        allow_overpayment: bool = False,
    ):
        """Initialize the mutator."""
        self.db = database
        self.balances = balances
        self.allow_overpayment = allow_overpayment

    def _require_transaction(self):
        if not self.db.conn.in_transaction:
            raise RuntimeError("Ledger mutations must run inside a write transaction")

    def _apply_splits(self, expense: Expense, splits: list[ExpenseSplit], sign: int):
        self._require_transaction()
        for split in splits:
            if split.participant_id == expense.payer_id or split.share.amount <= 0:
                continue
            delta = split.share if sign > 0 else -split.share
            self.balances.apply_delta(
                expense.group_id, split.participant_id, expense.payer_id, delta
            )

    def record_expense(self, expense: Expense, splits: list[ExpenseSplit]):
        """Each non-payer participant comes to owe the payer their share."""
        self._apply_splits(expense, splits, sign=1)
        logger.debug(f"Applied expense {expense.id} across {len(splits)} splits")

    def reverse_expense(self, expense: Expense, splits: list[ExpenseSplit]):
        """Undo exactly what record_expense applied for these splits."""
        self._apply_splits(expense, splits, sign=-1)
        logger.debug(f"Reversed expense {expense.id} across {len(splits)} splits")

    def plan_settlement(
        self, settlement: Settlement, allow_overpayment: bool | None = None
    ) -> list[tuple[int, int, int]]:
        """
        Work out the debt nettings a settlement causes and check it for overpayment.

        Paying to_id beyond what from_id owes them leaves to_id owing from_id.
        That reversed debt is first netted around any cycle of debts leading
        back from from_id to to_id. A payment is within balance when, after
        netting, from_id is not a larger creditor of to_id than before. A pair
        with no row may also take a payment up to both from_id's net debt and
        to_id's net credit, which is what simplified payments between users
        with no direct debt need.

        Returns:
            (debtor_id, creditor_id, amount) for each debt the settlement cancels

        Raises:
            SettlementExceedsBalanceError: Unless overpayment is allowed
        """
        group_id = settlement.group_id
        from_id, to_id = settlement.from_id, settlement.to_id

        edges = self.balances.edges(group_id)
        payee_owed_before = owed(edges, to_id, from_id)
        payer_owes = -self.balances.net_position(group_id, from_id).amount
        payee_is_owed = self.balances.net_position(group_id, to_id).amount

        accumulate(edges, to_id, from_id, settlement.amount.amount)
        nettings = net_out_cycles(edges, to_id, from_id)
        payee_owed_after = owed(edges, to_id, from_id)

        allowed = self.allow_overpayment if allow_overpayment is None else allow_overpayment
        if allowed or payee_owed_after <= max(payee_owed_before, 0):
            return nettings
        if payee_owed_before == 0 and settlement.amount.amount <= min(payer_owes, payee_is_owed):
            return nettings

        raise SettlementExceedsBalanceError(
            from_id=from_id,
            to_id=to_id,
            outstanding=-payee_owed_before,
            attempted=settlement.amount.amount,
        )

    def record_settlement_completed(
        self, settlement: Settlement, allow_overpayment: bool | None = None
    ):
        """
        Pay down what settlement.from_id owes settlement.to_id.

        Applied as a debt from the payee to the payer, which nets the
        existing debt in the other direction. Any cycle this closes is
        cancelled and recorded as debt nettings of the settlement.
        """
        self._require_transaction()
        if settlement.status is SettlementStatus.CANCELLED:
            raise ValueError(f"Settlement {settlement.id} is cancelled")

        nettings = self.plan_settlement(settlement, allow_overpayment=allow_overpayment)

        group_id = settlement.group_id
        currency = settlement.amount.currency
        self.balances.apply_delta(
            group_id, settlement.to_id, settlement.from_id, settlement.amount
        )
        for debtor_id, creditor_id, amount in nettings:
            netted = Money(amount=amount, currency=currency)
            self.balances.apply_delta(group_id, debtor_id, creditor_id, -netted)
            self.db.insert_netting(group_id, settlement.id, debtor_id, creditor_id, netted)

        logger.debug(
            f"Applied settlement {settlement.id}: {settlement.from_id} paid "
            f"{settlement.to_id} {settlement.amount}, {len(nettings)} debts netted"
        )
