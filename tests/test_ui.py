"""Tests for the interactive member picker and plan review."""

from decimal import Decimal
from unittest.mock import patch

from prompt_toolkit.document import Document

from splitledger.models import Member, TransferPlanEntry
from splitledger.ui import MemberCompleter, fuzzy_match, review_plan_interactive


def entry(debtor, creditor, amount):
    return TransferPlanEntry(debtor=debtor, creditor=creditor, amount=Decimal(amount))


class TestFuzzyMatch:
    """Test in-order character matching."""

    def test_matches_in_order(self):
        assert fuzzy_match("alc", "alice")
        assert fuzzy_match("bx", "bob@example.com")

    def test_rejects_out_of_order(self):
        assert not fuzzy_match("cla", "alice")

    def test_empty_query_matches(self):
        assert fuzzy_match("", "anything")


class TestMemberCompleter:
    """Members complete by identity key and by address."""

    def completions(self, text):
        completer = MemberCompleter(
            [
                Member(identity_key="bob", address="bob@example.com", display_name="Bob"),
                Member(identity_key="carol"),
            ]
        )
        return [c.text for c in completer.get_completions(Document(text), None)]

    def test_empty_query_lists_everything(self):
        assert self.completions("") == ["bob", "bob@example.com", "carol"]

    def test_address_search(self):
        assert self.completions("exa") == ["bob@example.com"]

    def test_display_name_search(self):
        assert self.completions("(bob")[0] == "bob"


class TestReviewPlan:
    """Test per-transfer confirmation."""

    def test_accepts_confirmed_entries(self):
        entries = [entry("bob", "alice", "30"), entry("carol", "alice", "20")]

        with patch("builtins.input", side_effect=["", "n"]):
            accepted = review_plan_interactive(entries)

        assert accepted == entries[:1]

    def test_interrupt_accepts_nothing(self):
        entries = [entry("bob", "alice", "30"), entry("carol", "alice", "20")]

        with patch("builtins.input", side_effect=["y", KeyboardInterrupt]):
            assert review_plan_interactive(entries) == []
