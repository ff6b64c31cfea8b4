"""Pydantic domain models for SplitLedger."""

from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .exceptions import CurrencyMismatchError, InvalidAmountError, SplitMismatchError


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


# ============================================================================
# Money
# ============================================================================


class Money(BaseModel):
    """An integer amount of minor units (e.g. cents) in a single currency.

    Amounts are signed so that net positions and reconciliation deltas can be
    expressed with the same type. Floats are never accepted.
    """

    model_config = ConfigDict(frozen=True)

    amount: int
    currency: str

    @field_validator("amount", mode="before")
    @classmethod
    def _amount_is_integer(cls, value: Any) -> int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise InvalidAmountError(
                f"Money amount must be an integer number of minor units, got {value!r}"
            )
        return value

    @field_validator("currency", mode="before")
    @classmethod
    def _currency_is_iso_code(cls, value: Any) -> str:
        if not isinstance(value, str) or len(value) != 3 or not value.isalpha():
            raise InvalidAmountError(f"Invalid ISO currency code: {value!r}")
        return value.upper()

    @classmethod
    def zero(cls, currency: str) -> "Money":
        return cls(amount=0, currency=currency)

    def _same_currency(self, other: "Money") -> None:
        if self.currency != other.currency:
            raise CurrencyMismatchError(
                f"Cannot combine {self.currency} with {other.currency}"
            )

    def __add__(self, other: "Money") -> "Money":
        if not isinstance(other, Money):
            return NotImplemented
        self._same_currency(other)
        return Money(amount=self.amount + other.amount, currency=self.currency)

    def __sub__(self, other: "Money") -> "Money":
        if not isinstance(other, Money):
            return NotImplemented
        self._same_currency(other)
        return Money(amount=self.amount - other.amount, currency=self.currency)

    def __neg__(self) -> "Money":
        return Money(amount=-self.amount, currency=self.currency)

    def __abs__(self) -> "Money":
        return Money(amount=abs(self.amount), currency=self.currency)

    def __lt__(self, other: "Money") -> bool:
        self._same_currency(other)
        return self.amount < other.amount

    def __le__(self, other: "Money") -> bool:
        self._same_currency(other)
        return self.amount <= other.amount

    def __gt__(self, other: "Money") -> bool:
        self._same_currency(other)
        return self.amount > other.amount

    def __ge__(self, other: "Money") -> bool:
        self._same_currency(other)
        return self.amount >= other.amount

    def __str__(self) -> str:
        return f"{self.amount} {self.currency}"


# ============================================================================
# Groups and participants
# ============================================================================


class Group(BaseModel):
    """A group of users sharing expenses in one currency."""

    id: int
    name: str
    currency: str
    created_at: datetime = Field(default_factory=utcnow)


class Participant(BaseModel):
    """A user's membership in a group."""

    group_id: int
    user_id: int
    name: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    removed_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.removed_at is None


# ============================================================================
# Expenses
# ============================================================================


class SplitKind(str, Enum):
    EQUAL = "equal"
    EXACT = "exact"
    PERCENTAGE = "percentage"


class SplitSpec(BaseModel):
    """How an expense total is divided among participants.

    Only the field matching ``kind`` is consulted:
    - equal: participant_ids
    - exact: shares (participant_id -> minor units)
    - percentage: percentages (participant_id -> percent, summing to 100)
    """

    kind: SplitKind
    participant_ids: list[int] = Field(default_factory=list)
    shares: dict[int, int] = Field(default_factory=dict)
    percentages: dict[int, Decimal] = Field(default_factory=dict)

    @classmethod
    def equal(cls, participant_ids: list[int]) -> "SplitSpec":
        return cls(kind=SplitKind.EQUAL, participant_ids=list(participant_ids))

    @classmethod
    def exact(cls, shares: dict[int, int]) -> "SplitSpec":
        return cls(kind=SplitKind.EXACT, shares=dict(shares))

    @classmethod
    def percentage(cls, percentages: dict[int, Decimal | int | str]) -> "SplitSpec":
        return cls(
            kind=SplitKind.PERCENTAGE,
            percentages={k: Decimal(str(v)) for k, v in percentages.items()},
        )

    def participants(self) -> list[int]:
        """Participant ids referenced by this spec."""
        if self.kind is SplitKind.EQUAL:
            if len(set(self.participant_ids)) != len(self.participant_ids):
                raise SplitMismatchError(
                    "A participant may appear only once in an equal split"
                )
            return list(self.participant_ids)
        if self.kind is SplitKind.EXACT:
            return list(self.shares)
        return list(self.percentages)


class Expense(BaseModel):
    """An expense paid by one participant on behalf of the group."""

    id: int
    group_id: int
    payer_id: int
    amount: Money
    description: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime | None = None


class ExpenseSplit(BaseModel):
    """One participant's share of an expense."""

    expense_id: int | None = None  # None until the expense row exists
    participant_id: int
    share: Money


# ============================================================================
# Ledger
# ============================================================================


class Balance(BaseModel):
    """A canonical debt row: debtor owes creditor a positive amount."""

    group_id: int
    debtor_id: int
    creditor_id: int
    amount: Money
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _check_invariants(self) -> "Balance":
        if self.debtor_id == self.creditor_id:
            raise ValueError("A balance cannot point from a user to themselves")
        if self.amount.amount <= 0:
            raise ValueError("Zero or negative balance rows are never stored")
        return self


class SettlementStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not SettlementStatus.PENDING


class Settlement(BaseModel):
    """A payment from one participant to another."""

    id: int
    group_id: int
    from_id: int
    to_id: int
    amount: Money
    status: SettlementStatus = SettlementStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None


class DebtNetting(BaseModel):
    """Debt cancelled around a cycle when a settlement was applied.

    Reduces what debtor owes creditor by amount. Every netting of a cycle
    leaves all net positions unchanged.
    """

    id: int
    group_id: int
    settlement_id: int
    debtor_id: int
    creditor_id: int
    amount: Money


class SettlementInstruction(BaseModel):
    """A suggested payment produced by the debt simplifier."""

    model_config = ConfigDict(frozen=True)

    from_id: int
    to_id: int
    amount: Money


class NetPosition(BaseModel):
    """What a user is owed minus what they owe. Positive means net creditor."""

    user_id: int
    amount: Money


class Discrepancy(BaseModel):
    """A pair whose stored balance differs from the one replayed from history.

    ``stored`` and ``expected`` are signed in "user_a owes user_b" terms, with
    ``user_a < user_b``. A negative value means user_b owes user_a.
    """

    group_id: int
    user_a: int
    user_b: int
    stored: Money
    expected: Money
    delta: Money
