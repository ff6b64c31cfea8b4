"""Service layer exposing the ledger to an application.

Composes the balance store, ledger mutator, reconciler and debt simplifier.
Every mutating call validates its input and writes inside one serializable
transaction while holding the group's write lock, so a failure at any point
leaves the ledger exactly as it was.
"""

import logging
import time
from collections.abc import Callable, Iterable
from typing import TypeVar

from .balances import BalanceStore
from .config import Settings
from .db import Database
from .exceptions import (
    CurrencyMismatchError,
    ExpenseNotFoundError,
    GroupNotFoundError,
    InvalidAmountError,
    InvalidSettlementTransitionError,
    ParticipantHasBalanceError,
    SelfSettlementError,
    SettlementNotFoundError,
    TransactionConflictError,
    UnknownParticipantError,
)
from .ledger import LedgerMutator
from .locks import GroupLocks
from .models import (
    Balance,
    DebtNetting,
    Discrepancy,
    Expense,
    ExpenseSplit,
    Group,
    Money,
    NetPosition,
    Participant,
    Settlement,
    SettlementInstruction,
    SettlementStatus,
    SplitSpec,
)
from .money import compute_splits
from .reconciler import Reconciler
from .simplifier import simplify_debts

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LedgerService:
    """Entry point for recording expenses and settlements and reading balances."""

    def __init__(self, settings: Settings, database: Database):
        """Initialize the ledger service."""
        self.settings = settings
        self.db = database
        self.balances = BalanceStore(database)
        self.mutator = LedgerMutator(
            database, self.balances, allow_overpayment=settings.allow_overpayment
        )
        self.reconciler = Reconciler(database, epsilon=settings.reconcile_epsilon)
        self.locks = GroupLocks(timeout=settings.lock_timeout_seconds)

    # ========================================================================
    # Internal helpers
    # ========================================================================

    def _write(self, group_id: int, operation: Callable[[], T]) -> T:
        """
        Run operation in a write transaction under the group's lock.

        Retries TransactionConflictError with exponential backoff. Lock
        timeouts and validation errors propagate immediately.
        """
        attempt = 0
        while True:
            try:
                with self.locks.hold(group_id):
                    with self.db.transaction():
                        return operation()
            except TransactionConflictError as e:
                if attempt >= self.settings.conflict_max_retries:
                    raise
                delay = self.settings.conflict_backoff_seconds * (2**attempt)
                attempt += 1
                logger.warning(
                    f"Write conflict on group {group_id} ({e}), "
                    f"retry {attempt}/{self.settings.conflict_max_retries} in {delay:.2f}s"
                )
                time.sleep(delay)

    def _require_group(self, group_id: int) -> Group:
        group = self.db.get_group(group_id)
        if group is None:
            raise GroupNotFoundError(f"Group {group_id} does not exist")
        return group

    def _require_participants(self, group_id: int, user_ids: Iterable[int]):
        active = self.db.active_participant_ids(group_id)
        for user_id in user_ids:
            if user_id not in active:
                raise UnknownParticipantError(group_id, user_id)

    def _check_amount(self, group: Group, amount: Money):
        if not isinstance(amount, Money):
            raise InvalidAmountError(f"Expected Money, got {type(amount).__name__}")
        if amount.currency != group.currency:
            raise CurrencyMismatchError(
                f"Amount in {amount.currency} but group {group.id} uses {group.currency}"
            )
        if amount.amount <= 0:
            raise InvalidAmountError(f"Amount must be positive, got {amount}")

    def _check_settlement(self, group: Group, from_id: int, to_id: int, amount: Money):
        self._check_amount(group, amount)
        if from_id == to_id:
            raise SelfSettlementError(f"User {from_id} cannot settle with themselves")
        self._require_participants(group.id, (from_id, to_id))

    def _expense_group_id(self, expense_id: int) -> int:
        expense = self.db.get_expense(expense_id)
        if expense is None:
            raise ExpenseNotFoundError(f"Expense {expense_id} does not exist")
        return expense.group_id

    def _settlement_group_id(self, settlement_id: int) -> int:
        settlement = self.db.get_settlement(settlement_id)
        if settlement is None:
            raise SettlementNotFoundError(f"Settlement {settlement_id} does not exist")
        return settlement.group_id

    # ========================================================================
    # Groups and participants
    # ========================================================================

    def create_group(self, name: str, currency: str | None = None) -> Group:
        """Create a group with a fixed currency."""
        code = Money.zero(currency or self.settings.default_currency).currency
        with self.db.transaction():
            group = self.db.insert_group(name, code)
        logger.info(f"Created group {group.id} ({group.name}, {group.currency})")
        return group

    def get_group(self, group_id: int) -> Group:
        return self._require_group(group_id)

    def add_participant(
        self, group_id: int, user_id: int, name: str | None = None
    ) -> Participant:
        """Add a user to a group, re-activating them if they were removed."""

        def op() -> Participant:
            self._require_group(group_id)
            return self.db.upsert_participant(group_id, user_id, name)

        participant = self._write(group_id, op)
        logger.info(f"Added user {user_id} to group {group_id}")
        return participant

    def remove_participant(self, group_id: int, user_id: int):
        """
        Remove a user from a group.

        Raises:
            ParticipantHasBalanceError: While the user has any non-zero balance
        """

        def op():
            self._require_group(group_id)
            self._require_participants(group_id, (user_id,))
            if self.db.list_user_balances(group_id, user_id):
                raise ParticipantHasBalanceError(group_id, user_id)
            self.db.mark_participant_removed(group_id, user_id)

        self._write(group_id, op)
        logger.info(f"Removed user {user_id} from group {group_id}")

    def list_participants(
        self, group_id: int, include_removed: bool = False
    ) -> list[Participant]:
        self._require_group(group_id)
        return self.db.list_participants(group_id, include_removed=include_removed)

    # ========================================================================
    # Expenses
    # ========================================================================

    def record_expense(
        self,
        group_id: int,
        payer_id: int,
        amount: Money,
        split_spec: SplitSpec,
        description: str | None = None,
    ) -> int:
        """
        Record an expense and update balances.

        Returns:
            The new expense id
        """

        def op() -> int:
            group = self._require_group(group_id)
            self._check_amount(group, amount)
            splits = compute_splits(amount, split_spec, payer_id)
            self._require_participants(
                group_id, [payer_id, *(s.participant_id for s in splits)]
            )

            expense = self.db.insert_expense(group_id, payer_id, amount, description)
            self.db.insert_splits(expense.id, splits)
            self.mutator.record_expense(expense, splits)
            return expense.id

        expense_id = self._write(group_id, op)
        logger.info(f"Recorded expense {expense_id} in group {group_id}: {amount}")
        return expense_id

    def update_expense(
        self,
        expense_id: int,
        new_amount: Money,
        new_split_spec: SplitSpec,
        description: str | None = None,
    ) -> Expense:
        """
        Change an expense's amount and split.

        The old splits are reversed and the new ones recorded in the same
        transaction. If the new split is invalid nothing changes.
        """
        group_id = self._expense_group_id(expense_id)

        def op() -> Expense:
            expense = self.db.get_expense(expense_id)
            if expense is None:
                raise ExpenseNotFoundError(f"Expense {expense_id} does not exist")
            group = self._require_group(expense.group_id)
            self._check_amount(group, new_amount)
            new_splits = compute_splits(new_amount, new_split_spec, expense.payer_id)
            self._require_participants(
                group.id, [expense.payer_id, *(s.participant_id for s in new_splits)]
            )

            old_splits = self.db.get_splits(expense_id)
            self.mutator.reverse_expense(expense, old_splits)

            updated = self.db.update_expense(expense_id, new_amount, description)
            self.db.delete_splits(expense_id)
            self.db.insert_splits(expense_id, new_splits)
            self.mutator.record_expense(updated, new_splits)
            return updated

        updated = self._write(group_id, op)
        logger.info(f"Updated expense {expense_id} in group {group_id}: {new_amount}")
        return updated

    def delete_expense(self, expense_id: int):
        """Delete an expense, reversing exactly the deltas it applied."""
        group_id = self._expense_group_id(expense_id)

        def op():
            expense = self.db.get_expense(expense_id)
            if expense is None:
                raise ExpenseNotFoundError(f"Expense {expense_id} does not exist")
            self.mutator.reverse_expense(expense, self.db.get_splits(expense_id))
            self.db.delete_expense(expense_id)

        self._write(group_id, op)
        logger.info(f"Deleted expense {expense_id} from group {group_id}")

    def get_expense(self, expense_id: int) -> Expense:
        expense = self.db.get_expense(expense_id)
        if expense is None:
            raise ExpenseNotFoundError(f"Expense {expense_id} does not exist")
        return expense

    def get_expense_splits(self, expense_id: int) -> list[ExpenseSplit]:
        self.get_expense(expense_id)
        return self.db.get_splits(expense_id)

    def list_expenses(self, group_id: int) -> list[Expense]:
        self._require_group(group_id)
        return self.db.list_expenses(group_id)

    # ========================================================================
    # Balances
    # ========================================================================

    def get_group_balances(self, group_id: int) -> list[Balance]:
        """All non-zero who-owes-whom rows of a group."""
        self._require_group(group_id)
        return self.balances.list(group_id)

    def get_user_net_position(self, group_id: int, user_id: int) -> Money:
        """What a user is owed minus what they owe in a group."""
        self._require_group(group_id)
        if self.db.get_participant(group_id, user_id) is None:
            raise UnknownParticipantError(group_id, user_id)
        return self.balances.net_position(group_id, user_id)

    def get_net_positions(self, group_id: int) -> list[NetPosition]:
        """Net position of every current participant, ordered by user id."""
        group = self._require_group(group_id)
        with self.db.snapshot():
            positions = self.balances.net_positions(group_id)
            user_ids = self.db.active_participant_ids(group_id) | set(positions)
        return [
            NetPosition(
                user_id=user_id,
                amount=Money(amount=positions.get(user_id, 0), currency=group.currency),
            )
            for user_id in sorted(user_ids)
        ]

    def is_group_settled(self, group_id: int) -> bool:
        """True when every net position in the group is zero."""
        self._require_group(group_id)
        return not any(self.balances.net_positions(group_id).values())

    # ========================================================================
    # Settlements
    # ========================================================================

    def suggest_settlements(self, group_id: int) -> list[SettlementInstruction]:
        """Payments that would settle every debt in the group."""
        group = self._require_group(group_id)
        positions = self.balances.net_positions(group_id)
        return simplify_debts(positions, group.currency)

    def complete_settlement(
        self,
        group_id: int,
        from_id: int,
        to_id: int,
        amount: Money,
        allow_overpayment: bool | None = None,
    ) -> int:
        """
        Record a payment from from_id to to_id and reduce their debt.

        Returns:
            The new settlement id

        Raises:
            SettlementExceedsBalanceError: If the payment would leave to_id
                owing from_id and overpayment is not allowed
        """

        def op() -> int:
            group = self._require_group(group_id)
            self._check_settlement(group, from_id, to_id, amount)
            settlement = self.db.insert_settlement(
                group_id, from_id, to_id, amount, SettlementStatus.COMPLETED
            )
            self.mutator.record_settlement_completed(
                settlement, allow_overpayment=allow_overpayment
            )
            return settlement.id

        settlement_id = self._write(group_id, op)
        logger.info(
            f"Completed settlement {settlement_id} in group {group_id}: "
            f"{from_id} paid {to_id} {amount}"
        )
        return settlement_id

    def propose_settlement(
        self, group_id: int, from_id: int, to_id: int, amount: Money
    ) -> Settlement:
        """Create a pending settlement. Balances are untouched until it is accepted."""

        def op() -> Settlement:
            group = self._require_group(group_id)
            self._check_settlement(group, from_id, to_id, amount)
            return self.db.insert_settlement(
                group_id, from_id, to_id, amount, SettlementStatus.PENDING
            )

        settlement = self._write(group_id, op)
        logger.info(f"Proposed settlement {settlement.id} in group {group_id}")
        return settlement

    def propose_suggested_settlements(self, group_id: int) -> list[Settlement]:
        """
        Persist every suggested payment as a pending settlement.

        A payment already pending between the same payer and payee is not
        proposed again.

        Returns:
            Only the settlements created by this call
        """

        def op() -> list[Settlement]:
            group = self._require_group(group_id)
            instructions = simplify_debts(
                self.balances.net_positions(group_id), group.currency
            )
            pending = {
                (s.from_id, s.to_id)
                for s in self.db.list_settlements(group_id, SettlementStatus.PENDING)
            }
            return [
                self.db.insert_settlement(
                    group_id, ins.from_id, ins.to_id, ins.amount, SettlementStatus.PENDING
                )
                for ins in instructions
                if (ins.from_id, ins.to_id) not in pending
            ]

        settlements = self._write(group_id, op)
        logger.info(
            f"Proposed {len(settlements)} suggested settlements in group {group_id}"
        )
        return settlements

    def accept_settlement(
        self, settlement_id: int, allow_overpayment: bool | None = None
    ) -> Settlement:
        """Mark a pending settlement completed and apply it to balances."""
        group_id = self._settlement_group_id(settlement_id)

        def op() -> Settlement:
            settlement = self.db.get_settlement(settlement_id)
            if settlement is None:
                raise SettlementNotFoundError(f"Settlement {settlement_id} does not exist")
            if settlement.status is not SettlementStatus.PENDING:
                raise InvalidSettlementTransitionError(
                    settlement_id, settlement.status.value, SettlementStatus.COMPLETED.value
                )
            self._require_participants(group_id, (settlement.from_id, settlement.to_id))
            completed = self.db.set_settlement_status(
                settlement_id, SettlementStatus.COMPLETED
            )
            self.mutator.record_settlement_completed(
                completed, allow_overpayment=allow_overpayment
            )
            return completed

        completed = self._write(group_id, op)
        logger.info(f"Accepted settlement {settlement_id} in group {group_id}")
        return completed

    def cancel_settlement(self, settlement_id: int) -> Settlement:
        """Cancel a pending settlement."""
        group_id = self._settlement_group_id(settlement_id)

        def op() -> Settlement:
            settlement = self.db.get_settlement(settlement_id)
            if settlement is None:
                raise SettlementNotFoundError(f"Settlement {settlement_id} does not exist")
            if settlement.status is not SettlementStatus.PENDING:
                raise InvalidSettlementTransitionError(
                    settlement_id, settlement.status.value, SettlementStatus.CANCELLED.value
                )
            return self.db.set_settlement_status(settlement_id, SettlementStatus.CANCELLED)

        cancelled = self._write(group_id, op)
        logger.info(f"Cancelled settlement {settlement_id} in group {group_id}")
        return cancelled

    def get_settlement(self, settlement_id: int) -> Settlement:
        settlement = self.db.get_settlement(settlement_id)
        if settlement is None:
            raise SettlementNotFoundError(f"Settlement {settlement_id} does not exist")
        return settlement

    def list_settlements(
        self, group_id: int, status: SettlementStatus | None = None
    ) -> list[Settlement]:
        self._require_group(group_id)
        return self.db.list_settlements(group_id, status)

    def list_debt_nettings(self, group_id: int) -> list[DebtNetting]:
        """Debts cancelled around cycles by completed settlements, oldest first."""
        self._require_group(group_id)
        return self.db.list_nettings(group_id)

    # ========================================================================
    # Reconciliation
    # ========================================================================

    def reconcile(self, group_id: int) -> list[Discrepancy]:
        """
        Compare stored balances against history.

        Discrepancies are returned and logged, never corrected.
        """
        self._require_group(group_id)
        return self.reconciler.diff(group_id)
