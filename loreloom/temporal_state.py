"""
Sticky / cooldown / delay bookkeeping across turns.

State is scoped to one world book and one chat session. Counters count
turns (activation passes):

- an entry that fires sets ``sticky`` and ``cooldown`` counters to the
  entry's configured values (overriding whatever was left);
- while its sticky counter is above zero the entry is force-activated
  without re-testing keys, and the counter ticks down once per turn;
- cooldown is held while an entry is sticky, then ticks down once per turn;
  while it is above zero the entry cannot fire;
- counters never go below zero and zero counters are dropped.
"""

import logging
import threading
from typing import Dict, Iterable, Literal, NamedTuple, Optional, Set, Tuple

from pydantic import BaseModel, ConfigDict, Field

from loreloom.database import db_clear_temporal_state, db_get_temporal_state, db_save_temporal_state
from loreloom.models import WorldBookEntry

logger = logging.getLogger(__name__)


class TemporalState(BaseModel):
    model_config = ConfigDict(frozen=True)

    sticky: Dict[str, int] = Field(default_factory=dict)
    cooldown: Dict[str, int] = Field(default_factory=dict)

    def sticky_remaining(self, entry_id: str) -> int:
        return self.sticky.get(entry_id, 0)

    def cooldown_remaining(self, entry_id: str) -> int:
        return self.cooldown.get(entry_id, 0)

    def is_empty(self) -> bool:
        return not self.sticky and not self.cooldown


EMPTY_STATE = TemporalState()


class Eligibility(NamedTuple):
    status: Literal["eligible", "forced", "blocked"]
    note: Optional[str] = None


def check_eligibility(entry: WorldBookEntry, state: TemporalState, conversation_length: int) -> Eligibility:
    """Decide whether an entry may be tested this turn."""
    if not entry.enabled:
        return Eligibility("blocked", "disabled")
    if entry.strategy == "vectorized":
        return Eligibility("blocked", "vectorized strategy is not supported")

    sticky = state.sticky_remaining(entry.id)
    if sticky > 0:
        return Eligibility("forced", f"sticky ({sticky} turns remaining)")

    cooldown = state.cooldown_remaining(entry.id)
    if cooldown > 0:
        return Eligibility("blocked", f"cooldown ({cooldown} turns remaining)")

    if entry.delay > conversation_length:
        return Eligibility("blocked", f"delay (needs {entry.delay} messages, have {conversation_length})")

    return Eligibility("eligible")


def advance_state(
    state: TemporalState,
    entries: Iterable[WorldBookEntry],
    fired_ids: Set[str],
    forced_ids: Set[str],
) -> TemporalState:
    """Produce next turn's state from this turn's outcome.

    ``fired_ids`` are entries that activated through keys, constancy or
    recursion; ``forced_ids`` are entries kept alive by stickiness.
    Counters for entries that are no longer in the book are discarded.
    """
    sticky: Dict[str, int] = {}
    cooldown: Dict[str, int] = {}

    for entry in entries:
        entry_id = entry.id
        sticky_left = state.sticky_remaining(entry_id)
        cooldown_left = state.cooldown_remaining(entry_id)

        if entry_id in fired_ids:
            sticky_left, cooldown_left = entry.sticky, entry.cooldown
        elif entry_id in forced_ids:
            sticky_left = max(sticky_left - 1, 0)
        else:
            sticky_left = max(sticky_left - 1, 0)
            cooldown_left = max(cooldown_left - 1, 0)

        if sticky_left > 0:
            sticky[entry_id] = sticky_left
        if cooldown_left > 0:
            cooldown[entry_id] = cooldown_left

    return TemporalState(sticky=sticky, cooldown=cooldown)


class TemporalStateTracker:
    """In-memory temporal state, one slot per (world book, session)."""

    def __init__(self):
        self._states: Dict[Tuple[str, str], TemporalState] = {}
        self.lock = threading.RLock()

    def get_state(self, world_book_id: str, session_id: str) -> TemporalState:
        with self.lock:
            return self._states.get((world_book_id, session_id), EMPTY_STATE)

    def save_state(self, world_book_id: str, session_id: str, state: TemporalState) -> None:
        with self.lock:
            if state.is_empty():
                self._states.pop((world_book_id, session_id), None)
            else:
                self._states[(world_book_id, session_id)] = state

    def reset(self, session_id: Optional[str] = None, world_book_id: Optional[str] = None) -> int:
        """Forget state matching the given session and/or book. Returns slots cleared."""
        with self.lock:
            doomed = [
                key for key in self._states
                if (world_book_id is None or key[0] == world_book_id)
                and (session_id is None or key[1] == session_id)
            ]
            for key in doomed:
                del self._states[key]
            return len(doomed)


class SqliteTemporalStateTracker(TemporalStateTracker):
    """Temporal state persisted in the ``worldbook_temporal_state`` table."""

    def get_state(self, world_book_id: str, session_id: str) -> TemporalState:
        with self.lock:
            raw = db_get_temporal_state(world_book_id, session_id)
            return TemporalState(sticky=raw["sticky"], cooldown=raw["cooldown"])

    def save_state(self, world_book_id: str, session_id: str, state: TemporalState) -> None:
        with self.lock:
            if not db_save_temporal_state(world_book_id, session_id, dict(state.sticky), dict(state.cooldown)):
                logger.warning(f"[TEMPORAL] Failed to persist state for book {world_book_id} session {session_id}")

    def reset(self, session_id: Optional[str] = None, world_book_id: Optional[str] = None) -> int:
        with self.lock:
            return db_clear_temporal_state(world_book_id=world_book_id, session_id=session_id)
