"""Greedy debt simplification."""

from collections.abc import Mapping

from .models import Money, SettlementInstruction


def simplify_debts(
    positions: Mapping[int, int], currency: str
) -> list[SettlementInstruction]:
    """
    Collapse net positions into a short list of payments.

    Matches the largest remaining debtor with the largest remaining creditor
    until one side runs out. Ties break by ascending user id. This is not an
    optimal minimum-transaction solver, but it emits at most n - 1 payments
    for n users with a non-zero position.

    Args:
        positions: Signed net position per user (positive = is owed money)
        currency: Currency of the emitted amounts

    Returns:
        Payment instructions in the order they were matched

    Raises:
        ValueError: If the positions do not sum to zero
    """
    if sum(positions.values()) != 0:
        raise ValueError(
            f"Net positions must sum to zero, got {sum(positions.values())}"
        )

    creditors = [[uid, amt] for uid, amt in positions.items() if amt > 0]
    debtors = [[uid, -amt] for uid, amt in positions.items() if amt < 0]

    creditors.sort(key=lambda x: (-x[1], x[0]))
    debtors.sort(key=lambda x: (-x[1], x[0]))

    out: list[SettlementInstruction] = []
    i = 0
    j = 0
    while i < len(debtors) and j < len(creditors):
        debtor_id, owe = debtors[i]
        creditor_id, receive = creditors[j]
        amount = min(owe, receive)
        if amount > 0:
            out.append(
                SettlementInstruction(
                    from_id=debtor_id,
                    to_id=creditor_id,
                    amount=Money(amount=amount, currency=currency),
                )
            )
        debtors[i][1] = owe - amount
        creditors[j][1] = receive - amount
        if debtors[i][1] == 0:
            i += 1
        if creditors[j][1] == 0:
            j += 1

    expected = sum(amt for _uid, amt in positions.items() if amt > 0)
    assert sum(ins.amount.amount for ins in out) == expected, "Simplification lost money"
    return out
