"""Tests for member references, payload models and the member directory."""

from decimal import Decimal

import pydantic
import pytest

from splitledger.exceptions import ValidationError
from splitledger.members import MemberDirectory, normalize_address
from splitledger.models import (
    Address,
    ExpenseInput,
    Identity,
    SplitPolicy,
    TransferPlanEntry,
    canonical_key,
    parse_member_ref,
)


class TestMemberRefParsing:
    """Test parsing member references from text."""

    @pytest.mark.parametrize(
        "text, expected",
        [
            ("alice", Identity(key="alice")),
            ("id:alice", Identity(key="alice")),
            ("  bob  ", Identity(key="bob")),
            ("bob@example.com", Address(value="bob@example.com")),
            ("email:Bob@Example.com", Address(value="bob@example.com")),
            ("id:odd@key", Identity(key="odd@key")),
        ],
    )
    def test_parse(self, text, expected):
        assert parse_member_ref(text) == expected

    def test_addresses_compare_case_insensitively(self):
        assert Address(value=" Bob@Example.COM ") == Address(value="bob@example.com")

    def test_canonical_keys(self):
        assert canonical_key(Identity(key="alice")) == "alice"
        assert canonical_key(Address(value="A@X.io")) == "address:a@x.io"

    def test_payload_accepts_strings_and_tagged_dicts(self):
        payload = ExpenseInput(
            amount=Decimal("12.00"),
            payer="alice",
            participants=["bob@example.com", {"kind": "identity", "key": "carol"}],
        )

        assert payload.payer == Identity(key="alice")
        assert payload.participants == [
            Address(value="bob@example.com"),
            Identity(key="carol"),
        ]
        assert payload.policy == SplitPolicy.EQUAL_SPLIT
        assert payload.creator is None

    def test_empty_identity_rejected(self):
        with pytest.raises(pydantic.ValidationError):
            Identity(key="")


class TestTransferPlanEntry:
    """Plan entries use from/to on the wire."""

    def test_aliases(self):
        entry = TransferPlanEntry.model_validate(
            {"from": "bob", "to": "alice", "amount": "12.50"}
        )

        assert entry.debtor == Identity(key="bob")
        assert entry.creditor == Identity(key="alice")
        assert entry.amount == Decimal("12.50")

    def test_field_names_also_accepted(self):
        entry = TransferPlanEntry(debtor="bob", creditor="alice", amount=Decimal("1"))

        assert entry.model_dump(by_alias=True)["from"] == Identity(key="bob").model_dump()


class TestMemberDirectory:
    """Test address registration and canonical key resolution."""

    def test_normalize_address(self):
        assert normalize_address("  Bob@Example.COM ") == "bob@example.com"

    def test_unregistered_address(self, db):
        directory = MemberDirectory(db)

        assert directory.canonical_key(Address(value="x@y.z")) == "address:x@y.z"

    def test_registered_address_resolves_to_identity(self, db):
        directory = MemberDirectory(db)
        directory.register("bob", "Bob@Example.com", "Bob")

        assert directory.canonical_key(Address(value="bob@example.com")) == "bob"
        assert directory.same_member(Identity(key="bob"), Address(value="BOB@example.com"))
        assert directory.display_name(Address(value="bob@example.com")) == "Bob"

    def test_registration_updates_cached_lookups(self, db):
        directory = MemberDirectory(db)
        address = Address(value="bob@example.com")
        assert directory.canonical_key(address) == "address:bob@example.com"

        directory.register("bob", "bob@example.com")

        assert directory.canonical_key(address) == "bob"

    def test_readdressing_drops_old_mapping(self, db):
        directory = MemberDirectory(db)
        directory.register("bob", "old@example.com")
        directory.register("bob", "new@example.com")

        assert directory.canonical_key(Address(value="old@example.com")) == (
            "address:old@example.com"
        )
        assert directory.canonical_key(Address(value="new@example.com")) == "bob"

    def test_address_taken_by_another_member(self, db):
        directory = MemberDirectory(db)
        directory.register("bob", "shared@example.com")

        with pytest.raises(ValidationError, match="already registered"):
            directory.register("carol", "shared@example.com")

        assert directory.canonical_key(Address(value="shared@example.com")) == "bob"

    def test_display_name_falls_back_to_reference(self, db):
        directory = MemberDirectory(db)

        assert directory.display_name(Identity(key="zoe")) == "zoe"

    def test_directory_is_shared_with_new_instances(self, db):
        MemberDirectory(db).register("bob", "bob@example.com")

        assert MemberDirectory(db).canonical_key(Address(value="bob@example.com")) == "bob"
