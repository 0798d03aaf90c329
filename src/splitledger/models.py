"""Pydantic domain models for SplitLedger."""

from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Literal

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    field_validator,
)


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


# ============================================================================
# Member references
# ============================================================================


class Identity(BaseModel):
    """A member known by a stable account key."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["identity"] = "identity"
    key: str = Field(min_length=1)

    def __str__(self) -> str:
        return self.key


class Address(BaseModel):
    """A member known only by a contact address (e.g. email)."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["address"] = "address"
    value: str = Field(min_length=1)

    @field_validator("value")
    @classmethod
    def _normalize(cls, value: str) -> str:
        return value.strip().lower()

    def __str__(self) -> str:
        return self.value


def parse_member_ref(text: str) -> "Identity | Address":
    """
    Parse a member reference from user-supplied text.

    Examples:
        "id:alice"        -> Identity(key="alice")
        "email:A@x.io"    -> Address(value="a@x.io")
        "bob@example.com" -> Address(value="bob@example.com")
        "carol"           -> Identity(key="carol")
    """
    text = text.strip()
    if text.startswith("id:"):
        return Identity(key=text[3:])
    if text.startswith("email:"):
        return Address(value=text[6:])
    if "@" in text:
        return Address(value=text)
    return Identity(key=text)


def _coerce_member_ref(value):
    if isinstance(value, str):
        return parse_member_ref(value)
    return value


MemberRef = Annotated[
    Identity | Address,
    Field(discriminator="kind"),
    BeforeValidator(_coerce_member_ref),
]


def canonical_key(ref: Identity | Address) -> str:
    """
    Canonical comparison key for a reference, without directory lookups.

    Addresses that have been registered to an identity resolve to that
    identity only through MemberDirectory.canonical_key.
    """
    if isinstance(ref, Identity):
        return ref.key
    return f"address:{ref.value}"


class Member(BaseModel):
    """A registry entry linking an identity to a contact address."""

    identity_key: str
    address: str | None = None
    display_name: str | None = None


# ============================================================================
# Ledger records
# ============================================================================


class SplitPolicy(str, Enum):
    """How an expense amount is turned into shares."""

    SINGLE_PAYER = "payer_single"
    PAYER_COVERS_OTHERS = "payer_for_others"
    EQUAL_SPLIT = "equal_split"
    PERCENTAGE_SPLIT = "percentage_split"


class Share(BaseModel):
    """One debtor's obligation arising from an expense (amounts in minor units)."""

    id: int | None = None
    expense_id: int | None = None
    debtor: MemberRef
    owed_minor: int = Field(ge=0)
    percentage: Decimal | None = None  # only under percentage split
    settled: bool = False
    settled_at: datetime | None = None
    settled_by: MemberRef | None = None


class Expense(BaseModel):
    """A recorded group purchase with one payer and a split policy.

    The creator's own portion under equal/percentage split is kept in
    creator_share_minor; the creator never holds a Share record.
    """

    id: int | None = None
    group_id: str
    amount_minor: int = Field(gt=0)
    payer: MemberRef
    creator: MemberRef
    policy: SplitPolicy
    creator_share_minor: int = 0
    creator_percentage: Decimal | None = None
    description: str = ""
    category: str | None = None
    occurred_at: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    shares: list[Share] = Field(default_factory=list)


class SplitResult(BaseModel):
    """Output of the split policy engine."""

    shares: list[Share]
    creator_share_minor: int = 0
    creator_percentage: Decimal | None = None


class Obligation(BaseModel):
    """An unsettled share seen together with its creditor."""

    share_id: int
    expense_id: int
    group_id: str
    creditor: MemberRef
    debtor: MemberRef
    amount_minor: int
    occurred_at: datetime


class SettlementOutcome(str, Enum):
    """Result of a settle request; retries are successes, not errors."""

    SETTLED = "settled"
    ALREADY_SETTLED = "already_settled"


# ============================================================================
# Input payloads
# ============================================================================


class PercentageAllocation(BaseModel):
    """A member's percentage under percentage split."""

    member: MemberRef
    percentage: Decimal


class ExpenseInput(BaseModel):
    """Payload for creating an expense."""

    amount: Decimal
    payer: MemberRef
    creator: MemberRef | None = None  # defaults to payer
    policy: SplitPolicy = SplitPolicy.EQUAL_SPLIT
    participants: list[MemberRef] = Field(default_factory=list)
    percentages: list[PercentageAllocation] | None = None
    description: str = ""
    category: str | None = None
    occurred_at: datetime | None = None


class ExpenseUpdate(BaseModel):
    """Payload for editing an expense. Omitted fields keep their value."""

    amount: Decimal | None = None
    policy: SplitPolicy | None = None
    participants: list[MemberRef] | None = None
    percentages: list[PercentageAllocation] | None = None
    description: str | None = None
    category: str | None = None
    occurred_at: datetime | None = None


class SettlementRequest(BaseModel):
    """Payload for settling one share."""

    expense_id: int
    debtor: MemberRef
    actor: MemberRef


class OptimizeRequest(BaseModel):
    """Payload for computing a transfer plan."""

    group_id: str


# ============================================================================
# Views and derived results
# ============================================================================


class NetBalance(BaseModel):
    """A member's unsettled creditor-minus-debtor position in a group."""

    member: MemberRef
    member_key: str
    balance_minor: int
    balance: Decimal


class TransferPlanEntry(BaseModel):
    """A proposed payment from a debtor to a creditor."""

    model_config = ConfigDict(populate_by_name=True)

    debtor: MemberRef = Field(alias="from")
    creditor: MemberRef = Field(alias="to")
    amount: Decimal


class TransferPlan(BaseModel):
    """An ordered list of transfers that zeroes every balance in a group."""

    group_id: str
    entries: list[TransferPlanEntry] = Field(default_factory=list)
    balances: list[NetBalance] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        """True when there is nothing to settle."""
        return not self.entries


class AcceptPlanRequest(BaseModel):
    """Payload for applying a transfer plan."""

    group_id: str
    entries: list[TransferPlanEntry]
    actor: MemberRef | None = None


class AppliedTransfer(BaseModel):
    """How one accepted plan entry was applied to shares."""

    entry: TransferPlanEntry
    settled_share_ids: list[int] = Field(default_factory=list)
    remainder_share_ids: list[int] = Field(default_factory=list)
    routed_share_ids: list[int] = Field(default_factory=list)  # settled by netting
    netted_amount: Decimal = Decimal(0)  # paid on behalf of others

    @property
    def shares_settled(self) -> int:
        """Shares settled directly or by passing the payment along a chain."""
        return len(self.settled_share_ids) + len(self.routed_share_ids)


class ShareView(BaseModel):
    """Boundary view of a share with decimal amounts."""

    debtor: MemberRef
    owed_amount: Decimal
    percentage: Decimal | None = None
    settled: bool
    settled_at: datetime | None = None
    settled_by: MemberRef | None = None


class ExpenseView(BaseModel):
    """Boundary view of an expense with decimal amounts."""

    id: int
    group_id: str
    amount: Decimal
    payer: MemberRef
    creator: MemberRef
    policy: SplitPolicy
    creator_share: Decimal
    description: str
    category: str | None = None
    occurred_at: datetime
    shares: list[ShareView]

    @classmethod
    def from_expense(cls, expense: Expense, exponent: int = 2) -> "ExpenseView":
        """Build a view from a stored expense."""
        scale = Decimal(10) ** -exponent
        return cls(
            id=expense.id,
            group_id=expense.group_id,
            amount=Decimal(expense.amount_minor) * scale,
            payer=expense.payer,
            creator=expense.creator,
            policy=expense.policy,
            creator_share=Decimal(expense.creator_share_minor) * scale,
            description=expense.description,
            category=expense.category,
            occurred_at=expense.occurred_at,
            shares=[
                ShareView(
                    debtor=share.debtor,
                    owed_amount=Decimal(share.owed_minor) * scale,
                    percentage=share.percentage,
                    settled=share.settled,
                    settled_at=share.settled_at,
                    settled_by=share.settled_by,
                )
                for share in expense.shares
            ],
        )
