"""Custom exceptions for SplitLedger."""


class SplitLedgerError(Exception):
    """Base exception for all SplitLedger errors."""

    pass


class ConfigurationError(SplitLedgerError):
    """Raised when configuration is invalid or missing."""

    pass


# ============================================================================
# Validation errors (permanent, rejected before any write)
# ============================================================================


class ValidationError(SplitLedgerError):
    """Base class for permanent failures. Retrying will not help."""

    pass


class InvalidAmountError(ValidationError):
    """Raised when a money value is non-positive or malformed."""

    pass


class SplitMismatchError(ValidationError):
    """Raised when split shares do not add up to the expense total."""

    pass


class UnknownParticipantError(ValidationError):
    """Raised when a user is not an active participant of the group."""

    def __init__(self, group_id: int, user_id: int, message: str | None = None):
        self.group_id = group_id
        self.user_id = user_id
        super().__init__(
            message or f"User {user_id} is not a participant of group {group_id}"
        )


class SettlementExceedsBalanceError(ValidationError):
    """Raised when a settlement would overpay the debt between two users."""

    def __init__(self, from_id: int, to_id: int, outstanding: int, attempted: int):
        self.from_id = from_id
        self.to_id = to_id
        self.outstanding = outstanding
        self.attempted = attempted
        super().__init__(
            f"Settlement of {attempted} from {from_id} to {to_id} exceeds "
            f"outstanding debt of {max(outstanding, 0)}"
        )


class CurrencyMismatchError(ValidationError):
    """Raised when amounts in different currencies are combined."""

    pass


class SelfSettlementError(ValidationError):
    """Raised when a settlement names the same user on both sides."""

    pass


class ParticipantHasBalanceError(ValidationError):
    """Raised when removing a participant that still has open balances."""

    def __init__(self, group_id: int, user_id: int):
        self.group_id = group_id
        self.user_id = user_id
        super().__init__(
            f"User {user_id} still has non-zero balances in group {group_id}"
        )


class GroupNotFoundError(ValidationError):
    """Raised when a group id does not exist."""

    pass


class ExpenseNotFoundError(ValidationError):
    """Raised when an expense id does not exist."""

    pass


class SettlementNotFoundError(ValidationError):
    """Raised when a settlement id does not exist."""

    pass


class InvalidSettlementTransitionError(ValidationError):
    """Raised when a settlement is moved out of a terminal state."""

    def __init__(self, settlement_id: int, current: str, target: str):
        self.settlement_id = settlement_id
        self.current = current
        self.target = target
        super().__init__(
            f"Settlement {settlement_id} cannot move from {current} to {target}"
        )


# ============================================================================
# Transient errors (caller may retry with backoff)
# ============================================================================


class TransientError(SplitLedgerError):
    """Base class for infrastructure failures that may succeed on retry."""

    pass


class LockTimeoutError(TransientError):
    """Raised when the per-group write lock cannot be acquired in time."""

    def __init__(self, group_id: int, timeout: float):
        self.group_id = group_id
        self.timeout = timeout
        super().__init__(
            f"Timed out after {timeout:.2f}s waiting for ledger lock on group {group_id}"
        )


class TransactionConflictError(TransientError):
    """Raised when the datastore refuses a write transaction due to contention."""

    pass
