"""
Turns activated entries into the two prompt blocks spliced around the
character description.
"""

from typing import Iterable, List, Tuple

from loreloom.models import WorldBookEntry
from loreloom.scan_text import SEPARATOR


def sort_entries(entries: Iterable[WorldBookEntry]) -> List[WorldBookEntry]:
    """Ascending ``order``; ties keep their incoming position."""
    return sorted(entries, key=lambda entry: entry.order)


def assemble(entries: Iterable[WorldBookEntry]) -> Tuple[str, str]:
    """Return ``(before, after)``. Empty sides are empty strings."""
    before: List[str] = []
    after: List[str] = []
    for entry in sort_entries(entries):
        if not entry.content:
            continue
        if entry.position == "before":
            before.append(entry.content)
        else:
            after.append(entry.content)
    return SEPARATOR.join(before), SEPARATOR.join(after)
