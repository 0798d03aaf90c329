"""Obligation ledger: the durable record of expenses, shares and settlements.

Every mutation is serialized per group and runs inside one database
transaction, so it is applied completely or not at all.
"""

import logging
import threading
from collections import deque
from collections.abc import Iterable
from contextlib import ExitStack
from datetime import UTC, datetime
from decimal import Decimal

import pydantic

from .config import Settings
from .db import Database
from .exceptions import (
    ForbiddenError,
    InvariantViolation,
    NotFoundError,
    ValidationError,
)
from .members import MemberDirectory
from .models import (
    AcceptPlanRequest,
    Address,
    AppliedTransfer,
    Expense,
    ExpenseInput,
    ExpenseUpdate,
    ExpenseView,
    Identity,
    Member,
    NetBalance,
    Obligation,
    OptimizeRequest,
    PercentageAllocation,
    SettlementOutcome,
    SettlementRequest,
    Share,
    SplitPolicy,
    TransferPlan,
    TransferPlanEntry,
    utcnow,
)
from .optimizer import SettlementOptimizer, compute_net_balances
from .splitting import (
    compute_shares,
    from_minor_units,
    to_minor_units,
    verify_share_sum,
)

logger = logging.getLogger(__name__)


def _coerce(model: type[pydantic.BaseModel], payload):
    """Validate a dict payload into a model, mapping errors to ValidationError."""
    if isinstance(payload, model):
        return payload
    try:
        return model.model_validate(payload)
    except pydantic.ValidationError as e:
        raise ValidationError(f"Invalid {model.__name__}: {e}") from e


def _as_utc(moment: datetime | None) -> datetime:
    if moment is None:
        return utcnow()
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


class ObligationLedger:
    """Service for recording expenses and settling the shares they create."""

    def __init__(
        self,
        settings: Settings,
        database: Database,
        directory: MemberDirectory | None = None,
    ):
        """Initialize the ledger."""
        self.settings = settings
        self.db = database
        self.directory = directory or MemberDirectory(database)
        self._group_locks: dict[str, threading.Lock] = {}
        self._group_locks_guard = threading.Lock()

    # ========================================================================
    # Helpers
    # ========================================================================

    def _group_lock(self, group_id: str) -> threading.Lock:
        with self._group_locks_guard:
            return self._group_locks.setdefault(group_id, threading.Lock())

    def _key(self, ref: Identity | Address) -> str:
        return self.directory.canonical_key(ref)

    def _to_minor(self, amount: Decimal) -> int:
        return to_minor_units(amount, self.settings.currency_exponent)

    def _require_expense(self, expense_id: int) -> Expense:
        expense = self.db.get_expense(expense_id)
        if expense is None:
            raise NotFoundError(f"Expense {expense_id} not found")
        return expense

    def _require_creator(self, expense: Expense, actor: Identity | Address):
        if self._key(actor) != self._key(expense.creator):
            raise ForbiddenError(
                f"Only the creator of expense {expense.id} may modify it"
            )

    def _group_of(self, expense_id: int) -> str:
        with self.db.snapshot():
            return self._require_expense(expense_id).group_id

    def _verify_stored(self, expense_id: int):
        """Re-read an expense inside the open transaction and check its shares."""
        stored = self._require_expense(expense_id)
        try:
            verify_share_sum(
                expense_id=expense_id,
                amount_minor=stored.amount_minor,
                policy=stored.policy,
                shares=stored.shares,
                creator_share_minor=stored.creator_share_minor,
                payer_key=self._key(stored.payer),
                member_key=self._key,
            )
        except InvariantViolation as e:
            logger.error(f"Invariant violation on expense {expense_id}: {e}")
            raise

    def _current_debtors(self, expense: Expense) -> list[Identity | Address]:
        seen: set[str] = set()
        debtors = []
        for share in expense.shares:
            key = self._key(share.debtor)
            if key not in seen:
                seen.add(key)
                debtors.append(share.debtor)
        return debtors

    def _current_percentages(self, expense: Expense) -> list[PercentageAllocation]:
        seen: set[str] = set()
        allocations = []
        for share in expense.shares:
            key = self._key(share.debtor)
            if share.percentage is not None and key not in seen:
                seen.add(key)
                allocations.append(
                    PercentageAllocation(member=share.debtor, percentage=share.percentage)
                )
        if expense.creator_percentage is not None:
            allocations.append(
                PercentageAllocation(
                    member=expense.creator, percentage=expense.creator_percentage
                )
            )
        return allocations

    def _carry_over_settlements(self, previous: Expense, shares: list[Share]):
        """
        Keep settled status for debtors who stay on an edited expense.

        Only a debtor whose whole prior obligation was settled keeps the flag,
        with the first settlement's timestamp and actor.
        """
        prior: dict[str, list[Share]] = {}
        for share in previous.shares:
            prior.setdefault(self._key(share.debtor), []).append(share)

        for share in shares:
            old = prior.get(self._key(share.debtor))
            if not old or not all(s.settled for s in old):
                continue
            first = min(old, key=lambda s: s.settled_at or utcnow())
            share.settled = True
            share.settled_at = first.settled_at
            share.settled_by = first.settled_by

    # ========================================================================
    # Expense operations
    # ========================================================================

    def create_expense(self, group_id: str, payload: ExpenseInput | dict) -> Expense:
        """
        Record an expense and compute its shares.

        Args:
            group_id: The owning group
            payload: Amount, payer, creator, policy, participants, ...

        Returns:
            The stored expense with its shares

        Raises:
            ValidationError: On malformed input (nothing is written)
        """
        payload = _coerce(ExpenseInput, payload)
        creator = payload.creator or payload.payer
        amount_minor = self._to_minor(payload.amount)

        split = compute_shares(
            amount_minor,
            payload.payer,
            creator,
            payload.participants,
            payload.policy,
            payload.percentages,
            member_key=self._key,
            tolerance=self.settings.percentage_tolerance,
        )

        now = utcnow()
        expense = Expense(
            group_id=group_id,
            amount_minor=amount_minor,
            payer=payload.payer,
            creator=creator,
            policy=payload.policy,
            creator_share_minor=split.creator_share_minor,
            creator_percentage=split.creator_percentage,
            description=payload.description,
            category=payload.category,
            occurred_at=_as_utc(payload.occurred_at),
            created_at=now,
            updated_at=now,
            shares=split.shares,
        )

        with self._group_lock(group_id), self.db.transaction():
            expense.id = self.db.insert_expense(expense)
            self._verify_stored(expense.id)

        logger.info(
            f"Created expense {expense.id} in group {group_id}: "
            f"{payload.amount} {payload.policy.value} with {len(expense.shares)} shares"
        )
        return expense

    def edit_expense(
        self,
        expense_id: int,
        changes: ExpenseUpdate | dict,
        actor: Identity | Address,
    ) -> Expense:
        """
        Edit an expense and recompute all of its shares.

        Settled status carries over only for debtors who remain participants
        and whose previous obligation was fully settled.

        Raises:
            NotFoundError: If the expense does not exist
            ForbiddenError: If actor is not the creator
            ValidationError: On malformed input (nothing is written)
        """
        changes = _coerce(ExpenseUpdate, changes)
        group_id = self._group_of(expense_id)

        with self._group_lock(group_id), self.db.transaction():
            current = self._require_expense(expense_id)
            self._require_creator(current, actor)

            policy = changes.policy or current.policy
            amount_minor = (
                self._to_minor(changes.amount)
                if changes.amount is not None
                else current.amount_minor
            )

            participants = changes.participants
            if participants is None:
                participants = (
                    [] if policy == SplitPolicy.SINGLE_PAYER
                    else self._current_debtors(current)
                )

            percentages = changes.percentages
            if (
                percentages is None
                and policy == SplitPolicy.PERCENTAGE_SPLIT
                and current.policy == SplitPolicy.PERCENTAGE_SPLIT
            ):
                percentages = self._current_percentages(current)

            split = compute_shares(
                amount_minor,
                current.payer,
                current.creator,
                participants,
                policy,
                percentages,
                member_key=self._key,
                tolerance=self.settings.percentage_tolerance,
            )
            self._carry_over_settlements(current, split.shares)

            updated = current.model_copy(
                update={
                    "amount_minor": amount_minor,
                    "policy": policy,
                    "creator_share_minor": split.creator_share_minor,
                    "creator_percentage": split.creator_percentage,
                    "description": (
                        changes.description
                        if changes.description is not None
                        else current.description
                    ),
                    "category": (
                        changes.category
                        if changes.category is not None
                        else current.category
                    ),
                    "occurred_at": (
                        _as_utc(changes.occurred_at)
                        if changes.occurred_at is not None
                        else current.occurred_at
                    ),
                    "updated_at": utcnow(),
                    "shares": split.shares,
                }
            )
            self.db.update_expense(updated)
            self._verify_stored(expense_id)

        logger.info(
            f"Edited expense {expense_id}: {policy.value}, "
            f"{len(updated.shares)} shares"
        )
        return updated

    def delete_expense(self, expense_id: int, actor: Identity | Address) -> None:
        """
        Delete an expense and all of its shares.

        Raises:
            NotFoundError: If the expense does not exist
            ForbiddenError: If actor is not the creator
        """
        group_id = self._group_of(expense_id)

        with self._group_lock(group_id), self.db.transaction():
            expense = self._require_expense(expense_id)
            self._require_creator(expense, actor)
            self.db.delete_expense(expense_id)

        logger.info(f"Deleted expense {expense_id} from group {group_id}")

    def get_expense(self, expense_id: int) -> Expense:
        """Get one expense with its shares."""
        with self.db.snapshot():
            return self._require_expense(expense_id)

    def list_expenses(self, group_id: str) -> list[Expense]:
        """Get every expense in a group, oldest first."""
        with self.db.snapshot():
            return self.db.list_expenses(group_id)

    def view(self, expense: Expense) -> ExpenseView:
        """Boundary view of an expense with decimal amounts."""
        return ExpenseView.from_expense(expense, self.settings.currency_exponent)

    # ========================================================================
    # Settlement operations
    # ========================================================================

    def settle_share(
        self,
        expense_id: int,
        debtor: Identity | Address,
        actor: Identity | Address,
    ) -> SettlementOutcome:
        """
        Mark a debtor's share of an expense as settled.

        Either the debtor ("I paid") or the payer ("I received payment") may
        settle. Settling again is a no-op that keeps the first timestamp.

        Raises:
            NotFoundError: If the expense or the debtor's share is missing
            ForbiddenError: If actor is neither the debtor nor the payer
        """
        group_id = self._group_of(expense_id)
        debtor_key = self._key(debtor)
        actor_key = self._key(actor)

        with self._group_lock(group_id), self.db.transaction():
            expense = self._require_expense(expense_id)
            matches = [s for s in expense.shares if self._key(s.debtor) == debtor_key]
            if not matches:
                raise NotFoundError(
                    f"{debtor} has no share in expense {expense_id}"
                )

            if actor_key not in (debtor_key, self._key(expense.payer)):
                raise ForbiddenError(
                    f"{actor} may not settle {debtor}'s share of expense {expense_id}"
                )

            pending = [s for s in matches if not s.settled]
            if not pending:
                logger.debug(
                    f"Share of {debtor} in expense {expense_id} already settled"
                )
                return SettlementOutcome.ALREADY_SETTLED

            now = utcnow()
            for share in pending:
                self.db.mark_share_settled(share.id, now, actor)

        logger.info(f"Settled {debtor}'s share of expense {expense_id} (by {actor})")
        return SettlementOutcome.SETTLED

    def list_unsettled(self, group_id: str) -> list[Obligation]:
        """Get every unsettled share in a group, oldest first."""
        with self.db.snapshot():
            obligations = self.db.list_unsettled_obligations(group_id)
        logger.debug(f"Group {group_id} has {len(obligations)} unsettled shares")
        return obligations

    def net_balances(self, group_id: str) -> list[NetBalance]:
        """Get each member's net balance in a group."""
        return compute_net_balances(
            self.list_unsettled(group_id),
            member_key=self._key,
            exponent=self.settings.currency_exponent,
        )

    def optimize(self, group_id: str) -> TransferPlan:
        """Compute a transfer plan that clears every balance in a group."""
        return SettlementOptimizer(self).optimize(group_id)

    def accept_plan(
        self,
        group_id: str,
        entries: Iterable[TransferPlanEntry | dict],
        actor: Identity | Address | None = None,
    ) -> list[AppliedTransfer]:
        """
        Apply accepted transfer plan entries to the underlying shares.

        A transfer from D to C first settles D's unsettled shares on expenses
        paid by C, oldest first. If the amount runs out inside a share, that
        share is split: the settled part keeps the transferred amount and the
        remainder stays unsettled.

        A netted plan can ask D to pay C more than D owes C directly (D pays
        on behalf of someone who owes C). The excess follows a chain of
        outstanding shares from D to C, oldest debts first, and every share
        on the chain is settled by the amount passed through it. When no
        chain reaches C, the excess is pooled with the rest of the plan: the
        other accepted entries may leave someone short who D can reach. If
        nothing can absorb it, the plan over-settles and is rejected.

        The whole plan is one transaction.

        Args:
            group_id: The group the plan belongs to
            entries: Transfers to apply
            actor: Who accepted the plan (defaults to each debtor)

        Returns:
            One AppliedTransfer per entry

        Raises:
            ValidationError: If an entry is malformed or the plan pays more
                than is owed
        """
        entries = [_coerce(TransferPlanEntry, e) for e in entries]
        if not entries:
            return []

        applied = []
        with self._group_lock(group_id), self.db.transaction():
            now = utcnow()
            touched: set[int] = set()
            # Unplaced leftovers: positive means the member has paid beyond
            # their reachable debts, negative means they were paid too little
            excess: dict[str, int] = {}
            by_debtor: dict[str, AppliedTransfer] = {}

            for entry in entries:
                result, leftover = self._apply_direct(
                    group_id, entry, actor, now, touched
                )
                applied.append(result)
                debtor_key = self._key(entry.debtor)
                creditor_key = self._key(entry.creditor)
                by_debtor.setdefault(debtor_key, result)

                while leftover:
                    path = self._find_path(group_id, debtor_key, {creditor_key})
                    if path is None:
                        break
                    moved, share_ids = self._settle_path(
                        path, leftover, actor, now, touched
                    )
                    result.routed_share_ids.extend(share_ids)
                    leftover -= moved

                if leftover:
                    excess[debtor_key] = excess.get(debtor_key, 0) + leftover
                    excess[creditor_key] = excess.get(creditor_key, 0) - leftover

            self._route_excess(group_id, excess, by_debtor, actor, now, touched)

            for expense_id in sorted(touched):
                self._verify_stored(expense_id)

        routed = sum(len(r.routed_share_ids) for r in applied)
        logger.info(
            f"Applied {len(applied)} transfers in group {group_id}, "
            f"touching {len(touched)} expenses ({routed} shares settled by netting)"
        )
        return applied

    def _settle_part(
        self,
        obligation: Obligation,
        amount_minor: int,
        settled_by: Identity | Address,
        now: datetime,
    ) -> int | None:
        """Settle up to amount_minor of an obligation; returns a remainder id if split."""
        if obligation.amount_minor <= amount_minor:
            self.db.mark_share_settled(obligation.share_id, now, settled_by)
            return None

        remainder_id = self.db.split_share(
            obligation.share_id, amount_minor, now, settled_by
        )
        logger.debug(
            f"Split share {obligation.share_id}: {amount_minor} settled, "
            f"{obligation.amount_minor - amount_minor} left as share {remainder_id}"
        )
        return remainder_id

    def _apply_direct(
        self,
        group_id: str,
        entry: TransferPlanEntry,
        actor: Identity | Address | None,
        now: datetime,
        touched: set[int],
    ) -> tuple[AppliedTransfer, int]:
        amount_minor = self._to_minor(entry.amount)
        debtor_key = self._key(entry.debtor)
        creditor_key = self._key(entry.creditor)

        if amount_minor <= 0:
            raise ValidationError(f"Transfer amount must be positive: {entry.amount}")
        if debtor_key == creditor_key:
            raise ValidationError(f"Transfer from {entry.debtor} to themselves")

        candidates = [
            ob
            for ob in self.db.list_unsettled_obligations(group_id)
            if self._key(ob.debtor) == debtor_key
            and self._key(ob.creditor) == creditor_key
        ]

        settled_by = actor or entry.debtor
        result = AppliedTransfer(entry=entry)
        remaining = amount_minor

        for obligation in candidates:
            if remaining == 0:
                break
            touched.add(obligation.expense_id)
            remainder_id = self._settle_part(obligation, remaining, settled_by, now)
            result.settled_share_ids.append(obligation.share_id)
            if remainder_id is not None:
                result.remainder_share_ids.append(remainder_id)
            remaining -= min(remaining, obligation.amount_minor)

        result.netted_amount = from_minor_units(
            remaining, self.settings.currency_exponent
        )
        return result, remaining

    def _find_path(
        self, group_id: str, source: str, targets: set[str]
    ) -> list[Obligation] | None:
        """
        Breadth-first search for a chain of unsettled shares from source to
        any of targets. Each member's debts are tried oldest first.

        Returns:
            The shares along the chain, or None when no target is reachable
        """
        debts: dict[str, list[Obligation]] = {}
        for ob in self.db.list_unsettled_obligations(group_id):
            debts.setdefault(self._key(ob.debtor), []).append(ob)

        via: dict[str, Obligation | None] = {source: None}
        queue = deque([source])
        while queue:
            member = queue.popleft()
            if member != source and member in targets:
                path = []
                while via[member] is not None:
                    step = via[member]
                    path.append(step)
                    member = self._key(step.debtor)
                return path[::-1]
            for ob in debts.get(member, []):
                creditor = self._key(ob.creditor)
                if creditor not in via:
                    via[creditor] = ob
                    queue.append(creditor)
        return None

    def _settle_path(
        self,
        path: list[Obligation],
        amount_minor: int,
        actor: Identity | Address | None,
        now: datetime,
        touched: set[int],
    ) -> tuple[int, list[int]]:
        """Pass up to amount_minor along a chain; returns the amount and share ids."""
        moved = min([amount_minor] + [ob.amount_minor for ob in path])
        share_ids = []
        for ob in path:
            touched.add(ob.expense_id)
            self._settle_part(ob, moved, actor or ob.debtor, now)
            share_ids.append(ob.share_id)
        return moved, share_ids

    def _route_excess(
        self,
        group_id: str,
        excess: dict[str, int],
        by_debtor: dict[str, AppliedTransfer],
        actor: Identity | Address | None,
        now: datetime,
        touched: set[int],
    ):
        """
        Place leftovers no single entry could route to its own creditor.

        Each step moves money from a member with positive excess along the
        nearest chain of shares to a member with negative excess. When the
        whole plan is accepted the remaining shares carry exactly these
        excesses, so a chain always exists.
        """
        while True:
            sources = sorted(k for k, v in excess.items() if v > 0)
            if not sources:
                return

            source = sources[0]
            sinks = {k for k, v in excess.items() if v < 0}
            path = self._find_path(group_id, source, sinks)
            if path is None:
                logger.warning(
                    f"Rejected plan for group {group_id}: {source} would overpay "
                    f"by {excess[source]} minor units"
                )
                overpaid = from_minor_units(
                    excess[source], self.settings.currency_exponent
                )
                raise ValidationError(
                    f"Plan pays more than is owed: {source} would overpay by {overpaid}"
                )

            sink = self._key(path[-1].creditor)
            moved, share_ids = self._settle_path(
                path, min(excess[source], -excess[sink]), actor, now, touched
            )
            by_debtor[source].routed_share_ids.extend(share_ids)
            excess[source] -= moved
            excess[sink] += moved

    # ========================================================================
    # Request payloads
    # ========================================================================

    def settle_request(self, request: SettlementRequest | dict) -> SettlementOutcome:
        """Settle a share from a SettlementRequest payload."""
        request = _coerce(SettlementRequest, request)
        return self.settle_share(request.expense_id, request.debtor, request.actor)

    def optimize_request(self, request: OptimizeRequest | dict) -> TransferPlan:
        """Compute a transfer plan from an OptimizeRequest payload."""
        request = _coerce(OptimizeRequest, request)
        return self.optimize(request.group_id)

    def accept_request(
        self, request: AcceptPlanRequest | dict
    ) -> list[AppliedTransfer]:
        """Apply a transfer plan from an AcceptPlanRequest payload."""
        request = _coerce(AcceptPlanRequest, request)
        return self.accept_plan(request.group_id, request.entries, request.actor)

    # ========================================================================
    # Members
    # ========================================================================

    def register_member(
        self,
        identity_key: str,
        address: str | None = None,
        display_name: str | None = None,
    ) -> Member:
        """
        Link a contact address to an identity.

        Expenses that already mention either form are locked while the link
        is checked, so no mutation can slip a conflicting share in between.

        Raises:
            ValidationError: If the address is taken or the link would make an
                existing share's debtor the same member as its payer or creator
        """
        groups = []
        if address:
            groups = self.directory.affected_groups(identity_key, address)
        with ExitStack() as stack:
            for group_id in groups:
                stack.enter_context(self._group_lock(group_id))
            return self.directory.register(identity_key, address, display_name)
