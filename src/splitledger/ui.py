"""Interactive UI components for picking members and reviewing transfer plans."""

import logging
from typing import Any

from prompt_toolkit import PromptSession
from prompt_toolkit.completion import Completer, Completion
from prompt_toolkit.document import Document

from .models import Address, Identity, Member, TransferPlanEntry, parse_member_ref

logger = logging.getLogger(__name__)


class MemberCompleter(Completer):
    """Fuzzy search completer for registered members."""

    def __init__(self, members: list[Member]):
        """Initialize the completer with known members."""
        self.members = members

        # Each member is searchable by identity key and by address
        self.searchable: list[tuple[str, str]] = []
        for member in members:
            label = member.identity_key
            if member.display_name:
                label = f"{member.identity_key} ({member.display_name})"
            self.searchable.append((member.identity_key, label))
            if member.address:
                self.searchable.append((member.address, f"{member.address} -> {label}"))

    def get_completions(self, document: Document, complete_event: Any):
        """Get fuzzy-matched completions."""
        query = document.text.lower()

        for text, display in self.searchable:
            if not query or fuzzy_match(query, display.lower()):
                yield Completion(
                    text=text,
                    start_position=-len(document.text),
                    display=display,
                )


def fuzzy_match(query: str, text: str) -> bool:
    """
    Fuzzy match: all characters in query must appear in order in text.

    Example:
        query="alc" matches "alice"
        query="bx" matches "bob@example.com"
    """
    query_idx = 0
    for char in text:
        if query_idx < len(query) and char == query[query_idx]:
            query_idx += 1
    return query_idx == len(query)


def select_member_interactive(
    members: list[Member], prompt: str = "Member: "
) -> Identity | Address | None:
    """
    Interactive member selection with fuzzy search.

    Any text is accepted, so unregistered addresses can be entered too.

    Returns:
        The parsed member reference, or None to skip
    """
    print("   Type to search, press Enter to confirm, Ctrl+C to skip\n")

    completer = MemberCompleter(members)
    session: PromptSession[str] = PromptSession(completer=completer)

    try:
        result = session.prompt(prompt, complete_while_typing=True)
    except KeyboardInterrupt:
        print("\n⏭️  Skipped")
        return None
    except EOFError:
        return None

    if not result.strip():
        return None

    ref = parse_member_ref(result)
    logger.info(f"User selected member: {ref}")
    return ref


def confirm_transfer(entry: TransferPlanEntry, index: int, total: int) -> bool:
    """
    Simple yes/no confirmation for one transfer plan entry.

    Returns:
        True if confirmed, False otherwise
    """
    print(f"\n💸 Transfer {index}/{total}")
    print(f"   {entry.debtor} → {entry.creditor}: {entry.amount}")

    response = input("   Accept? [Y/n] ").strip().lower()

    return response in ("", "y", "yes")


def review_plan_interactive(entries: list[TransferPlanEntry]) -> list[TransferPlanEntry]:
    """Ask about each plan entry in turn and return the accepted ones."""
    accepted = []
    try:
        for i, entry in enumerate(entries, 1):
            if confirm_transfer(entry, i, len(entries)):
                accepted.append(entry)
    except (KeyboardInterrupt, EOFError):
        print("\n⏭️  Review stopped")
        return []
    return accepted
