"""Member reference resolution and the address -> identity cache."""

import logging
import sqlite3
import threading

from .db import Database
from .exceptions import ValidationError
from .models import Address, Identity, Member

logger = logging.getLogger(__name__)


def normalize_address(address: str) -> str:
    """
    Normalize a contact address for consistent matching.

    Args:
        address: The raw address

    Returns:
        Normalized address (lowercase, stripped)
    """
    return address.lower().strip()


class MemberDirectory:
    """Resolves member references to canonical comparison keys.

    An Address that has been registered to an identity compares equal to
    that Identity. Lookups are cached; register() keeps the cache current.
    """

    def __init__(self, database: Database):
        """Initialize the directory."""
        self.db = database
        self._cache: dict[str, str | None] = {}
        self._lock = threading.Lock()

    def canonical_key(self, ref: Identity | Address) -> str:
        """
        Get the canonical comparison key for a member reference.

        Args:
            ref: An identity or address reference

        Returns:
            The identity key, or "address:<normalized>" for unknown addresses
        """
        if isinstance(ref, Identity):
            return ref.key

        address = normalize_address(ref.value)
        identity_key = self._resolve(address)
        return identity_key if identity_key else f"address:{address}"

    def same_member(self, a: Identity | Address, b: Identity | Address) -> bool:
        """Check whether two references denote the same member."""
        return self.canonical_key(a) == self.canonical_key(b)

    def _resolve(self, address: str) -> str | None:
        with self._lock:
            if address in self._cache:
                return self._cache[address]

        member = self.db.get_member_by_address(address)
        identity_key = member.identity_key if member else None

        with self._lock:
            self._cache[address] = identity_key

        if identity_key:
            logger.debug(f"Resolved address '{address}' -> {identity_key}")
        return identity_key

    def register(
        self,
        identity_key: str,
        address: str | None = None,
        display_name: str | None = None,
    ) -> Member:
        """
        Register a member, optionally linking a contact address.

        Args:
            identity_key: The stable identity key
            address: Optional contact address to link
            display_name: Optional human-readable name

        Returns:
            The saved member

        Raises:
            ValidationError: If the address already belongs to another member,
                or if linking it would make an existing expense's debtor the
                same member as its payer, its creator or another debtor
        """
        normalized = normalize_address(address) if address else None
        member = Member(
            identity_key=identity_key,
            address=normalized,
            display_name=display_name,
        )

        try:
            with self.db.transaction():
                if normalized:
                    self._check_merge(identity_key, normalized)
                self.db.save_member(member)
        except sqlite3.IntegrityError as e:
            raise ValidationError(
                f"Address {normalized} is already registered to another member"
            ) from e

        with self._lock:
            # Drop any stale mapping for addresses this identity used before
            self._cache = {
                k: v for k, v in self._cache.items() if v != identity_key
            }
            if normalized:
                self._cache[normalized] = identity_key

        logger.info(f"Registered member {identity_key} (address: {normalized})")
        return member

    def affected_groups(self, identity_key: str, address: str) -> list[str]:
        """Groups with expenses that mention the identity or the address."""
        expenses = self.db.list_expenses_mentioning(
            [Identity(key=identity_key), Address(value=normalize_address(address))]
        )
        return sorted({e.group_id for e in expenses})

    def _check_merge(self, identity_key: str, address: str):
        """Reject a link that would make a debtor owe themselves or appear twice."""
        if self._resolve(address) not in (None, identity_key):
            return  # taken; save_member reports it

        def linked_key(ref: Identity | Address) -> str:
            if isinstance(ref, Address):
                value = normalize_address(ref.value)
                if value == address:
                    return identity_key
                if self._resolve(value) == identity_key:
                    # The identity's previous address is unlinked
                    return f"address:{value}"
            return self.canonical_key(ref)

        expenses = self.db.list_expenses_mentioning(
            [Identity(key=identity_key), Address(value=address)]
        )
        for expense in expenses:
            owners = {linked_key(expense.payer), linked_key(expense.creator)}
            debtors = {linked_key(s.debtor) for s in expense.shares}
            distinct = {self.canonical_key(s.debtor) for s in expense.shares}
            if owners & debtors or len(debtors) < len(distinct):
                raise ValidationError(
                    f"Cannot link {address} to {identity_key}: expense "
                    f"{expense.id} would list the same member twice"
                )

    def display_name(self, ref: Identity | Address) -> str:
        """Human-readable label for a member reference."""
        key = self.canonical_key(ref)
        for member in self.db.list_members():
            if member.identity_key == key and member.display_name:
                return member.display_name
        return str(ref)
