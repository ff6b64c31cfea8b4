"""Integer minor-unit arithmetic and expense split computation."""

import logging
from collections.abc import Iterable, Sequence
from decimal import ROUND_HALF_EVEN, Decimal

from .exceptions import InvalidAmountError, SplitMismatchError
from .models import ExpenseSplit, Money, SplitKind, SplitSpec

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")


def _require_positive_total(total: Money) -> None:
    if total.amount <= 0:
        raise InvalidAmountError(f"Amount must be positive, got {total}")


def split_equal(total: Money, n: int) -> list[Money]:
    """
    Split a total into n shares that differ by at most one minor unit.

    The remainder is handed out one unit at a time to the first entries, so
    callers control who absorbs it through the order they assign shares in.

    Args:
        total: Positive amount to split
        n: Number of shares

    Returns:
        n amounts summing exactly to total

    Raises:
        InvalidAmountError: If total <= 0 or n <= 0
    """
    _require_positive_total(total)
    if isinstance(n, bool) or not isinstance(n, int) or n <= 0:
        raise InvalidAmountError(f"Cannot split between {n!r} participants")

    base, remainder = divmod(total.amount, n)
    shares = [
        Money(amount=base + (1 if i < remainder else 0), currency=total.currency)
        for i in range(n)
    ]

    assert sum(s.amount for s in shares) == total.amount, "Equal split lost units"
    return shares


def split_exact(total: Money, shares: Sequence[Money]) -> list[Money]:
    """
    Validate caller-provided shares against the total.

    Raises:
        InvalidAmountError: If total <= 0, shares is empty or a share is negative
        SplitMismatchError: If the shares do not sum to total
    """
    _require_positive_total(total)
    if not shares:
        raise InvalidAmountError("Cannot split between 0 participants")

    for share in shares:
        if share.currency != total.currency:
            raise InvalidAmountError(
                f"Share currency {share.currency} does not match {total.currency}"
            )
        if share.amount < 0:
            raise InvalidAmountError(f"Share must not be negative, got {share}")

    actual = sum(share.amount for share in shares)
    if actual != total.amount:
        raise SplitMismatchError(
            f"Split shares sum to {actual} but expense total is {total.amount}"
        )
    return list(shares)


def split_percentage(total: Money, percentages: Sequence[Decimal]) -> list[Money]:
    """
    Split a total by percentages.

    Each share is rounded half-to-even independently, then the residual is
    absorbed from the back so the sum is exact: a shortfall goes to the last
    share, an excess is taken from the last shares that are above zero.

    Raises:
        InvalidAmountError: If total <= 0, percentages is empty or one is negative
        SplitMismatchError: If percentages do not sum to 100
    """
    _require_positive_total(total)
    if not percentages:
        raise InvalidAmountError("Cannot split between 0 participants")

    pcts = [Decimal(str(p)) for p in percentages]
    if any(p < 0 for p in pcts):
        raise InvalidAmountError("Percentages must not be negative")
    if sum(pcts) != HUNDRED:
        raise SplitMismatchError(f"Percentages sum to {sum(pcts)}, expected 100")

    amounts = [
        int(
            (Decimal(total.amount) * pct / HUNDRED).quantize(
                Decimal("1"), rounding=ROUND_HALF_EVEN
            )
        )
        for pct in pcts
    ]

    residual = total.amount - sum(amounts)
    if residual > 0:
        amounts[-1] += residual
    # Over-rounding is taken back one unit at a time from the last non-zero shares
    index = len(amounts) - 1
    for _ in range(-residual):
        while amounts[index] == 0:
            index -= 1
        amounts[index] -= 1
    if residual:
        logger.debug(f"Applied percentage rounding residual of {residual}")

    return [Money(amount=a, currency=total.currency) for a in amounts]


def order_participants(participant_ids: Iterable[int], payer_id: int) -> list[int]:
    """
    Deterministic share order: ascending id with the payer moved last.

    Remainder units go to the front of this order and percentage residuals
    to the back, so non-payers absorb remainders before the payer does.
    """
    ids = sorted(set(participant_ids))
    if payer_id in ids:
        ids.remove(payer_id)
        ids.append(payer_id)
    return ids


def compute_splits(total: Money, spec: SplitSpec, payer_id: int) -> list[ExpenseSplit]:
    """
    Turn a split specification into per-participant shares.

    Returns splits in the deterministic order of order_participants. The
    shares always sum exactly to total.
    """
    ids = spec.participants()
    ordered = order_participants(ids, payer_id)

    if spec.kind is SplitKind.EQUAL:
        shares = split_equal(total, len(ordered))
    elif spec.kind is SplitKind.EXACT:
        shares = split_exact(
            total,
            [Money(amount=spec.shares[pid], currency=total.currency) for pid in ordered],
        )
    else:
        shares = split_percentage(total, [spec.percentages[pid] for pid in ordered])

    return [
        ExpenseSplit(participant_id=pid, share=share)
        for pid, share in zip(ordered, shares, strict=True)
    ]
