"""Net settlement optimizer: turns unsettled shares into a transfer plan.

The matching is the greedy largest-debtor-vs-largest-creditor heuristic. It
is deterministic and needs at most N-1 transfers for N members with a nonzero
balance, but it is NOT guaranteed to find the minimum number of transfers
(that problem is NP-hard in general). Callers needing exact minimality must
not rely on this module.
"""

import heapq
import logging
from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING

from .exceptions import InvariantViolation
from .models import (
    Address,
    Identity,
    NetBalance,
    Obligation,
    TransferPlan,
    TransferPlanEntry,
    canonical_key,
)
from .splitting import from_minor_units

if TYPE_CHECKING:
    from .ledger import ObligationLedger

logger = logging.getLogger(__name__)


def compute_net_balances(
    obligations: Iterable[Obligation],
    member_key: Callable[[Identity | Address], str] = canonical_key,
    exponent: int = 2,
) -> list[NetBalance]:
    """
    Compute each member's net balance from unsettled obligations.

    Positive = is owed money (creditor), negative = owes money (debtor).

    Args:
        obligations: Unsettled shares with their creditors
        member_key: Canonical key function used to merge references
        exponent: Minor-unit digits for the decimal view

    Returns:
        Balances sorted by member key, including zero balances

    Raises:
        InvariantViolation: If the balances do not sum to zero
    """
    balances: dict[str, int] = {}
    members: dict[str, Identity | Address] = {}

    def remember(ref: Identity | Address) -> str:
        key = member_key(ref)
        known = members.get(key)
        # Prefer the identity form when a member appears both ways
        if known is None or (isinstance(known, Address) and isinstance(ref, Identity)):
            members[key] = ref
        balances.setdefault(key, 0)
        return key

    for obligation in obligations:
        creditor = remember(obligation.creditor)
        debtor = remember(obligation.debtor)
        balances[creditor] += obligation.amount_minor
        balances[debtor] -= obligation.amount_minor

    total = sum(balances.values())
    if total != 0:
        raise InvariantViolation(None, f"Net balances sum to {total}, expected 0")

    return [
        NetBalance(
            member=members[key],
            member_key=key,
            balance_minor=balances[key],
            balance=from_minor_units(balances[key], exponent),
        )
        for key in sorted(balances)
    ]


def plan_transfers(
    balances: Iterable[NetBalance], exponent: int = 2
) -> list[TransferPlanEntry]:
    """
    Greedy min-cash-flow matching over net balances.

    Repeatedly pairs the largest-magnitude debtor with the largest-magnitude
    creditor and transfers the smaller of the two magnitudes. Ties are broken
    by member key so identical input always yields an identical plan.

    Args:
        balances: Net balances (must sum to zero)
        exponent: Minor-unit digits for the decimal amounts

    Returns:
        Ordered transfer entries; empty when nothing is owed
    """
    members: dict[str, Identity | Address] = {}
    creditors: list[tuple[int, str]] = []  # (-amount, key) as a max-heap
    debtors: list[tuple[int, str]] = []  # (-amount owed, key) as a max-heap

    for balance in balances:
        members[balance.member_key] = balance.member
        if balance.balance_minor > 0:
            heapq.heappush(creditors, (-balance.balance_minor, balance.member_key))
        elif balance.balance_minor < 0:
            heapq.heappush(debtors, (balance.balance_minor, balance.member_key))

    entries = []

    while creditors and debtors:
        credit_neg, creditor = heapq.heappop(creditors)
        debt_neg, debtor = heapq.heappop(debtors)

        credit = -credit_neg
        debt = -debt_neg
        transfer = min(credit, debt)

        entries.append(
            TransferPlanEntry(
                debtor=members[debtor],
                creditor=members[creditor],
                amount=from_minor_units(transfer, exponent),
            )
        )

        remaining_credit = credit - transfer
        remaining_debt = debt - transfer
        if remaining_credit > 0:
            heapq.heappush(creditors, (-remaining_credit, creditor))
        if remaining_debt > 0:
            heapq.heappush(debtors, (-remaining_debt, debtor))

    if creditors or debtors:
        raise InvariantViolation(None, "Balances left unmatched after planning")

    return entries


class SettlementOptimizer:
    """Computes transfer plans for a group from the ledger's unsettled shares."""

    def __init__(self, ledger: "ObligationLedger"):
        """Initialize the optimizer."""
        self.ledger = ledger

    def optimize(self, group_id: str) -> TransferPlan:
        """
        Compute a transfer plan that clears every balance in a group.

        Args:
            group_id: The group to settle

        Returns:
            The plan; plan.is_empty when there is nothing to settle
        """
        exponent = self.ledger.settings.currency_exponent
        balances = self.ledger.net_balances(group_id)
        entries = plan_transfers(balances, exponent)

        if entries:
            logger.info(
                f"Planned {len(entries)} transfers for group {group_id} "
                f"({sum(1 for b in balances if b.balance_minor)} members with balance)"
            )
        else:
            logger.info(f"Nothing to settle in group {group_id}")

        return TransferPlan(group_id=group_id, entries=entries, balances=balances)
