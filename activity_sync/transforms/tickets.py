"""Ticket reference extraction from branch names, titles and descriptions."""

import re
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from ..models import LinkedTicket, TicketSource, TicketSystem

__all__ = ["extract", "extract_from_activity", "merge", "deduplicate"]


@dataclass(frozen=True)
class _Pattern:
    regex: "re.Pattern[str]"
    system: TicketSystem
    to_key: Callable[[str], str] = lambda captured: captured


# Order matters: earlier patterns win when deduplicating.
_PATTERNS = (
    # PROJ-123 style keys (Jira, YouTrack, Linear share this shape)
    _Pattern(re.compile(r"\b([A-Z][A-Z0-9]+-\d+)\b"), TicketSystem.JIRA),
    _Pattern(re.compile(r"\bAB#(\d+)\b"), TicketSystem.AZURE_BOARDS, lambda n: f"AB#{n}"),
    # Bare work item ids in branch names, e.g. feat/717018-description
    _Pattern(
        re.compile(r"(?<=[/_])(\d{5,})(?=-|_|$)"),
        TicketSystem.AZURE_BOARDS,
        lambda n: f"AB#{n}",
    ),
    _Pattern(re.compile(r"\b(?:sc-|shortcut-)(\d+)\b"), TicketSystem.SHORTCUT, lambda n: f"sc-{n}"),
)

_GENERIC_ISSUE = re.compile(r"(?<![A-Za-z])#(\d+)\b")


def extract(
    text: Optional[str],
    source: TicketSource,
    default_system: TicketSystem = TicketSystem.UNKNOWN,
) -> list[LinkedTicket]:
    """Find ticket references in one piece of text.

    Generic ``#123`` references are attributed to ``default_system``,
    since only the provider knows what they point at.
    """
    if not text:
        return []

    tickets = []
    for pattern in _PATTERNS:
        for match in pattern.regex.finditer(text):
            tickets.append(
                LinkedTicket(system=pattern.system, key=pattern.to_key(match.group(1)), source=source)
            )
    for match in _GENERIC_ISSUE.finditer(text):
        tickets.append(LinkedTicket(system=default_system, key=f"#{match.group(1)}", source=source))
    return tickets


def extract_from_activity(
    branch_name: Optional[str] = None,
    title: Optional[str] = None,
    description: Optional[str] = None,
    default_system: TicketSystem = TicketSystem.UNKNOWN,
) -> list[LinkedTicket]:
    """Extract from branch, then title, then description; first occurrence wins."""
    tickets = (
        extract(branch_name, TicketSource.BRANCH, default_system)
        + extract(title, TicketSource.TITLE, default_system)
        + extract(description, TicketSource.DESCRIPTION, default_system)
    )
    return deduplicate(tickets)


def deduplicate(tickets: Iterable[LinkedTicket]) -> list[LinkedTicket]:
    """Drop repeated keys (case-insensitive), keeping the first."""
    seen: set[str] = set()
    result = []
    for ticket in tickets:
        normalized = ticket.key.upper()
        if normalized not in seen:
            seen.add(normalized)
            result.append(ticket)
    return result


def merge(extracted: Iterable[LinkedTicket], api_linked: Iterable[LinkedTicket]) -> list[LinkedTicket]:
    """API-linked tickets first, then extracted ones the API did not report."""
    result = list(api_linked)
    existing = {t.key.upper() for t in result}
    for ticket in extracted:
        if ticket.key.upper() not in existing:
            result.append(ticket)
    return result
