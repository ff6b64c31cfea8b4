"""SplitLedger - Shared expense balances and debt simplification."""

__version__ = "0.1.0"

from .balances import BalanceStore
from .config import Settings, load_settings
from .db import Database
from .ledger import LedgerMutator
from .models import (
    Balance,
    DebtNetting,
    Discrepancy,
    Expense,
    ExpenseSplit,
    Money,
    Settlement,
    SettlementInstruction,
    SettlementStatus,
    SplitSpec,
)
from .money import split_equal, split_exact, split_percentage
from .reconciler import Reconciler
from .service import LedgerService
from .simplifier import simplify_debts

__all__ = [
    "Settings",
    "load_settings",
    "Database",
    "BalanceStore",
    "LedgerMutator",
    "Reconciler",
    "LedgerService",
    "Balance",
    "DebtNetting",
    "Discrepancy",
    "Expense",
    "ExpenseSplit",
    "Money",
    "Settlement",
    "SettlementInstruction",
    "SettlementStatus",
    "SplitSpec",
    "split_equal",
    "split_exact",
    "split_percentage",
    "simplify_debts",
]
