"""
Per-turn world info pipeline.

Loads the world books linked to a character, runs one activation pass per
book with that book's own temporal state, persists the new state, and
assembles a single before/after pair from the combined activations.
"""

import logging
from typing import List, Optional, Sequence

from loreloom.activation import ActivationOrchestrator
from loreloom.database import db_get_world_books_for_character
from loreloom.models import ChatMessage, WorldBook, WorldBookEntry, WorldInfoResult
from loreloom.output_assembler import assemble
from loreloom.temporal_state import EMPTY_STATE, SqliteTemporalStateTracker, TemporalStateTracker

logger = logging.getLogger(__name__)

DEFAULT_SESSION = "default"

_default_tracker: Optional[TemporalStateTracker] = None


def get_default_tracker() -> TemporalStateTracker:
    global _default_tracker
    if _default_tracker is None:
        _default_tracker = SqliteTemporalStateTracker()
    return _default_tracker


def evaluate_world_books(
    books: Sequence[WorldBook],
    messages: Optional[Sequence[ChatMessage]] = None,
    scan_text: str = "",
    tracker: Optional[TemporalStateTracker] = None,
    session_id: str = DEFAULT_SESSION,
    character_name: Optional[str] = None,
    player_name: Optional[str] = None,
    orchestrator: Optional[ActivationOrchestrator] = None,
) -> WorldInfoResult:
    """Evaluate several books for one turn.

    Each book keeps its own temporal state. Activated entries are
    concatenated in book order before the final sort, so ``order`` ties
    across books resolve by book position, then entry position.
    Without a tracker every pass starts from an empty state and nothing is
    persisted.
    """
    orchestrator = orchestrator or ActivationOrchestrator()

    entries: List[WorldBookEntry] = []
    result = WorldInfoResult()

    for book in books:
        state = tracker.get_state(book.id, session_id) if tracker else EMPTY_STATE
        outcome = orchestrator.activate(
            book,
            scan_text=scan_text,
            messages=messages,
            state=state,
            character_name=character_name,
            player_name=player_name,
        )
        if tracker and book.enabled:
            tracker.save_state(book.id, session_id, outcome.state)

        entries.extend(outcome.entries)
        result.activations.extend(outcome.activated)
        result.skipped.update(outcome.skipped)
        result.log.extend(outcome.log)

    result.before, result.after = assemble(entries)
    logger.info(f"[WORLDBOOK] {len(books)} book(s), {len(entries)} entr{'y' if len(entries) == 1 else 'ies'} active "
                f"(session {session_id})")
    return result


async def generate_world_info(
    character_id: str,
    messages: Sequence[ChatMessage],
    session_id: str = DEFAULT_SESSION,
    character_name: Optional[str] = None,
    player_name: Optional[str] = None,
    tracker: Optional[TemporalStateTracker] = None,
    orchestrator: Optional[ActivationOrchestrator] = None,
) -> WorldInfoResult:
    """Evaluate every world book linked to ``character_id`` for this turn."""
    books = db_get_world_books_for_character(character_id)
    if not books:
        return WorldInfoResult()

    return evaluate_world_books(
        books,
        messages=messages,
        tracker=tracker or get_default_tracker(),
        session_id=session_id,
        character_name=character_name,
        player_name=player_name,
        orchestrator=orchestrator,
    )


async def generate_world_info_before(character_id: str, messages: Sequence[ChatMessage], **kwargs) -> str:
    # Each call is a full turn and advances temporal state.
    return (await generate_world_info(character_id, messages, **kwargs)).before


async def generate_world_info_after(character_id: str, messages: Sequence[ChatMessage], **kwargs) -> str:
    return (await generate_world_info(character_id, messages, **kwargs)).after
