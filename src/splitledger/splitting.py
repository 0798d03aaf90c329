"""Split policy engine: turns one expense into per-member shares.

All arithmetic is done on integer minor units so that shares always add up
exactly to the expense amount.
"""

import logging
from collections.abc import Callable
from decimal import ROUND_HALF_UP, Decimal

from .exceptions import InvalidPolicyInput, InvariantViolation, PercentageSumMismatch
from .models import (
    Address,
    Identity,
    PercentageAllocation,
    Share,
    SplitPolicy,
    SplitResult,
    canonical_key,
)

logger = logging.getLogger(__name__)

DEFAULT_PERCENTAGE_TOLERANCE = Decimal("0.01")

MemberKeyFunc = Callable[[Identity | Address], str]


def to_minor_units(amount: Decimal, exponent: int = 2) -> int:
    """
    Convert a decimal amount to integer minor units.
    Uses ROUND_HALF_UP for consistency.

    Args:
        amount: Amount in major units (e.g. dollars)
        exponent: Number of minor-unit digits (2 for cents)

    Returns:
        Amount in minor units (integer)
    """
    scaled = Decimal(amount).scaleb(exponent)
    minor = int(scaled.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if scaled != minor:
        logger.warning(f"Amount {amount} has sub-minor-unit precision, rounded")
    return minor


def from_minor_units(minor: int, exponent: int = 2) -> Decimal:
    """Convert integer minor units back to a decimal amount."""
    return Decimal(minor).scaleb(-exponent)


def _round_share(amount_minor: int, percentage: Decimal) -> int:
    share = Decimal(amount_minor) * percentage / Decimal(100)
    return int(share.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def compute_shares(
    amount_minor: int,
    payer: Identity | Address,
    creator: Identity | Address,
    participants: list[Identity | Address],
    policy: SplitPolicy,
    percentages: list[PercentageAllocation] | None = None,
    *,
    member_key: MemberKeyFunc = canonical_key,
    tolerance: Decimal = DEFAULT_PERCENTAGE_TOLERANCE,
) -> SplitResult:
    """
    Compute each participant's share of an expense.

    Policies:
    - single-payer: the payer covers only themselves, no shares.
    - payer-covers-others: every participant owes the payer the WHOLE
      amount, independently. This is "I paid this bill, and separately each
      of you owes me an equivalent bill", not a split.
    - equal-split: the amount is divided over participants plus the creator.
      The creator's portion is returned as creator_share_minor. The last
      participant absorbs the integer-division remainder.
    - percentage-split: each share is round_half_up(pct / 100 * amount).
      The creator may hold a percentage too (default 0). The last
      participant absorbs whatever rounding leaves over.

    Args:
        amount_minor: Expense amount in minor units
        payer: Who paid
        creator: Who recorded the expense (never liable to itself)
        participants: Debtors, in input order
        policy: The split policy
        percentages: Required for percentage split only
        member_key: Canonical key function used to compare members
        tolerance: Allowed deviation of the percentage sum from 100

    Returns:
        Shares plus the creator's implicit share

    Raises:
        InvalidPolicyInput: If the input cannot be split under the policy
        PercentageSumMismatch: If percentages do not sum to 100
    """
    if amount_minor <= 0:
        raise InvalidPolicyInput(f"Amount must be positive, got {amount_minor}")

    payer_key = member_key(payer)
    creator_key = member_key(creator)
    participant_keys = [member_key(p) for p in participants]

    if len(set(participant_keys)) != len(participant_keys):
        raise InvalidPolicyInput("A participant is listed more than once")
    if creator_key in participant_keys:
        raise InvalidPolicyInput(
            f"Creator {creator} cannot be listed as a participant of their own expense"
        )
    if payer_key in participant_keys:
        raise InvalidPolicyInput(f"Payer {payer} cannot owe a share to themselves")
    if percentages is not None and policy != SplitPolicy.PERCENTAGE_SPLIT:
        raise InvalidPolicyInput("Percentages are only valid for percentage split")

    if policy == SplitPolicy.SINGLE_PAYER:
        if participants:
            raise InvalidPolicyInput("Single-payer expenses cannot have participants")
        return SplitResult(shares=[], creator_share_minor=0)

    if not participants:
        raise InvalidPolicyInput(
            f"Policy {policy.value} requires at least one participant besides the creator"
        )

    if policy == SplitPolicy.PAYER_COVERS_OTHERS:
        shares = [Share(debtor=p, owed_minor=amount_minor) for p in participants]
        return SplitResult(shares=shares, creator_share_minor=0)

    if policy == SplitPolicy.EQUAL_SPLIT:
        return _split_equally(amount_minor, participants)

    return _split_by_percentage(
        amount_minor,
        creator_key,
        participants,
        participant_keys,
        percentages,
        member_key,
        tolerance,
    )


def _split_equally(
    amount_minor: int, participants: list[Identity | Address]
) -> SplitResult:
    total_count = len(participants) + 1  # creator included
    base, remainder = divmod(amount_minor, total_count)

    shares = [Share(debtor=p, owed_minor=base) for p in participants]
    if remainder:
        shares[-1].owed_minor += remainder
        logger.debug(f"Assigned remainder {remainder} to {participants[-1]}")

    return SplitResult(shares=shares, creator_share_minor=base)


def _split_by_percentage(
    amount_minor: int,
    creator_key: str,
    participants: list[Identity | Address],
    participant_keys: list[str],
    percentages: list[PercentageAllocation] | None,
    member_key: MemberKeyFunc,
    tolerance: Decimal,
) -> SplitResult:
    if not percentages:
        raise InvalidPolicyInput("Percentages are required for percentage split")

    by_key: dict[str, Decimal] = {}
    for allocation in percentages:
        key = member_key(allocation.member)
        if key in by_key:
            raise InvalidPolicyInput(
                f"Percentage for {allocation.member} is given more than once"
            )
        if key != creator_key and key not in participant_keys:
            raise InvalidPolicyInput(
                f"{allocation.member} has a percentage but is not a participant"
            )
        if not Decimal(0) <= allocation.percentage <= Decimal(100):
            raise InvalidPolicyInput(
                f"Percentage for {allocation.member} must be between 0 and 100"
            )
        by_key[key] = allocation.percentage

    missing = [p for p, key in zip(participants, participant_keys) if key not in by_key]
    if missing:
        raise InvalidPolicyInput(
            f"Missing percentage for participant(s): {', '.join(map(str, missing))}"
        )

    total = sum(by_key.values(), Decimal(0))
    if abs(total - Decimal(100)) > tolerance:
        raise PercentageSumMismatch(total, tolerance)

    creator_percentage = by_key.get(creator_key, Decimal(0))
    creator_share = _round_share(amount_minor, creator_percentage)
    shares = [
        Share(
            debtor=p,
            owed_minor=_round_share(amount_minor, by_key[key]),
            percentage=by_key[key],
        )
        for p, key in zip(participants, participant_keys)
    ]

    residual = amount_minor - creator_share - sum(s.owed_minor for s in shares)
    if residual:
        last = shares[-1]
        if last.owed_minor + residual < 0:
            raise InvalidPolicyInput(
                f"Rounding residual {residual} cannot be absorbed by {last.debtor}"
            )
        last.owed_minor += residual
        logger.debug(f"Applied rounding adjustment {residual} to {last.debtor}")

    return SplitResult(
        shares=shares,
        creator_share_minor=creator_share,
        creator_percentage=by_key.get(creator_key),
    )


def verify_share_sum(
    expense_id: int | None,
    amount_minor: int,
    policy: SplitPolicy,
    shares: list[Share],
    creator_share_minor: int,
    payer_key: str,
    member_key: MemberKeyFunc = canonical_key,
) -> None:
    """
    Check the sum-of-shares post-condition for an expense.

    Shares are aggregated per debtor, since accepting a transfer plan may
    split one debtor's share into a settled part and an unsettled remainder.

    Raises:
        InvariantViolation: If the stored shares do not reconcile to the amount
    """
    per_debtor: dict[str, int] = {}
    for share in shares:
        if share.owed_minor < 0:
            raise InvariantViolation(
                expense_id, f"Negative share {share.owed_minor} for {share.debtor}"
            )
        key = member_key(share.debtor)
        if key == payer_key:
            raise InvariantViolation(expense_id, f"Payer {share.debtor} owes itself")
        per_debtor[key] = per_debtor.get(key, 0) + share.owed_minor

    if policy == SplitPolicy.SINGLE_PAYER:
        if shares:
            raise InvariantViolation(
                expense_id, f"Single-payer expense has {len(shares)} shares"
            )
        return

    if policy == SplitPolicy.PAYER_COVERS_OTHERS:
        wrong = {k: v for k, v in per_debtor.items() if v != amount_minor}
        if wrong:
            raise InvariantViolation(
                expense_id,
                f"Payer-covers-others shares must each equal {amount_minor}: {wrong}",
            )
        return

    total = sum(per_debtor.values()) + creator_share_minor
    if total != amount_minor:
        raise InvariantViolation(
            expense_id,
            f"Shares sum to {total} (creator share {creator_share_minor}), "
            f"expected {amount_minor}",
        )
