"""Pairwise balance store with canonical debt direction."""

import logging
from collections import defaultdict, deque

from .db import Database
from .exceptions import CurrencyMismatchError
from .models import Balance, Group, Money

logger = logging.getLogger(__name__)

Pair = tuple[int, int]


def pair_key(a: int, b: int) -> Pair:
    """Order-independent key for a pair of users."""
    return (a, b) if a < b else (b, a)


def accumulate(edges: dict[Pair, int], debtor_id: int, creditor_id: int, delta: int):
    """
    Add delta to the directed debt debtor -> creditor in a map of pair amounts.

    ``edges`` maps pair_key(a, b) to a signed amount meaning "low id owes high
    id". Opposing debts net out and zero entries are dropped, so the map
    always holds at most one non-zero amount per unordered pair.
    """
    if debtor_id == creditor_id:
        raise ValueError(f"Debtor and creditor are the same user ({debtor_id})")

    key = pair_key(debtor_id, creditor_id)
    signed = delta if debtor_id == key[0] else -delta
    net = edges.get(key, 0) + signed
    if net == 0:
        edges.pop(key, None)
    else:
        edges[key] = net


def directed(key: Pair, signed: int) -> tuple[int, int, int]:
    """Turn a signed pair amount into (debtor_id, creditor_id, amount)."""
    low, high = key
    if signed >= 0:
        return low, high, signed
    return high, low, -signed


def owed(edges: dict[Pair, int], debtor_id: int, creditor_id: int) -> int:
    """What debtor owes creditor in a map of pair amounts. Negative when reversed."""
    key = pair_key(debtor_id, creditor_id)
    signed = edges.get(key, 0)
    return signed if debtor_id == key[0] else -signed


def find_debt_chain(
    edges: dict[Pair, int], start_id: int, end_id: int
) -> list[tuple[int, int]] | None:
    """
    Shortest chain of debts start owes ... owes end, as (debtor, creditor) hops.

    Breadth-first with creditors visited in ascending id order, so the chain
    found for a given map is always the same.
    """
    owes: dict[int, list[int]] = defaultdict(list)
    for key, signed in edges.items():
        debtor_id, creditor_id, _ = directed(key, signed)
        owes[debtor_id].append(creditor_id)

    previous: dict[int, int | None] = {start_id: None}
    queue = deque([start_id])
    while queue and end_id not in previous:
        user_id = queue.popleft()
        for creditor_id in sorted(owes.get(user_id, [])):
            if creditor_id not in previous:
                previous[creditor_id] = user_id
                queue.append(creditor_id)

    if end_id not in previous:
        return None

    chain = []
    node = end_id
    while previous[node] is not None:
        prior = previous[node]
        chain.append((prior, node))
        node = prior
    chain.reverse()
    return chain


def net_out_cycles(
    edges: dict[Pair, int], debtor_id: int, creditor_id: int
) -> list[tuple[int, int, int]]:
    """
    Cancel the debt cycles that run through debtor -> creditor.

    While creditor still owes debtor along some chain, the chain and the debt
    itself form a cycle. The smallest debt on the cycle is taken off every
    hop, which leaves every net position unchanged. ``edges`` is updated in
    place.

    Returns:
        (debtor_id, creditor_id, amount) for each debt reduced, in order
    """
    cancelled = []
    while owed(edges, debtor_id, creditor_id) > 0:
        chain = find_debt_chain(edges, creditor_id, debtor_id)
        if chain is None:
            break
        cycle = [(debtor_id, creditor_id), *chain]
        amount = min(owed(edges, d, c) for d, c in cycle)
        for d, c in cycle:
            accumulate(edges, d, c, -amount)
            cancelled.append((d, c, amount))
    return cancelled


class BalanceStore:
    """
    Persisted who-owes-whom table for each group.

    Exactly one row exists per unordered pair with a non-zero debt, pointing
    from debtor to creditor with a positive amount. All writes go through
    apply_delta, which nets opposing debts.
    """

    def __init__(self, database: Database):
        """Initialize the balance store."""
        self.db = database

    def _group(self, group_id: int) -> Group:
        group = self.db.get_group(group_id)
        if group is None:
            raise RuntimeError(f"Balance operation on unknown group {group_id}")
        return group

    def get(self, group_id: int, a: int, b: int) -> Balance | None:
        """Return the canonical row for the unordered pair {a, b}, if any."""
        return self.db.get_balance_for_pair(group_id, a, b)

    def apply_delta(
        self, group_id: int, debtor_id: int, creditor_id: int, delta: Money
    ) -> Balance | None:
        """
        Add delta to what debtor owes creditor.

        A negative delta, or one larger than an opposing debt, flips the row
        so that it points the other way. Must run inside a write transaction.

        Returns:
            The resulting row, or None when the pair nets to zero
        """
        group = self._group(group_id)
        if delta.currency != group.currency:
            raise CurrencyMismatchError(
                f"Delta in {delta.currency} applied to group {group_id} in {group.currency}"
            )

        edges: dict[Pair, int] = {}
        existing = self.get(group_id, debtor_id, creditor_id)
        if existing is not None:
            accumulate(edges, existing.debtor_id, existing.creditor_id, existing.amount.amount)
        accumulate(edges, debtor_id, creditor_id, delta.amount)

        key = pair_key(debtor_id, creditor_id)
        if key not in edges:
            self.db.delete_balance_pair(group_id, debtor_id, creditor_id)
            logger.debug(
                f"Group {group_id}: {debtor_id}->{creditor_id} {delta.amount:+d} settles pair"
            )
            return None

        new_debtor, new_creditor, amount = directed(key, edges[key])
        if existing is not None and existing.debtor_id != new_debtor:
            self.db.delete_balance_pair(group_id, debtor_id, creditor_id)
        self.db.upsert_balance(group_id, new_debtor, new_creditor, amount)

        logger.debug(
            f"Group {group_id}: {debtor_id}->{creditor_id} {delta.amount:+d}, "
            f"now {new_debtor} owes {new_creditor} {amount}"
        )
        return self.get(group_id, debtor_id, creditor_id)

    def net_position(self, group_id: int, user_id: int) -> Money:
        """What the user is owed minus what they owe. Positive means net creditor."""
        group = self._group(group_id)
        total = 0
        for balance in self.db.list_user_balances(group_id, user_id):
            if balance.creditor_id == user_id:
                total += balance.amount.amount
            else:
                total -= balance.amount.amount
        return Money(amount=total, currency=group.currency)

    def net_positions(self, group_id: int) -> dict[int, int]:
        """Signed net position of every user appearing in a balance row."""
        positions: dict[int, int] = defaultdict(int)
        for balance in self.db.list_balances(group_id):
            positions[balance.creditor_id] += balance.amount.amount
            positions[balance.debtor_id] -= balance.amount.amount
        return dict(positions)

    def edges(self, group_id: int) -> dict[Pair, int]:
        """Stored rows of a group as signed pair amounts, for in-memory planning."""
        edges: dict[Pair, int] = {}
        for balance in self.db.list_balances(group_id):
            accumulate(edges, balance.debtor_id, balance.creditor_id, balance.amount.amount)
        return edges

    def list(self, group_id: int) -> list[Balance]:
        """All non-zero balance rows of a group."""
        return self.db.list_balances(group_id)
