"""
World book activation pass.

One pass runs per chat turn and decides which entries of a world book are
injected into the prompt:

1. eligibility - disabled, vectorized, cooling-down and delayed entries are
   dropped; entries with sticky turns left are force-activated as-is
2. constant entries become candidates
3. selective entries are keyword-tested against the scan window
4. every candidate passes the probability gate independently
5. (optional) the scan window widens until ``min_activations`` is met
6. recursion - activated content is appended to the scan text and the
   remaining entries are re-tested, one step at a time, until a step adds
   nothing or ``max_recursion_steps`` is reached (0 disables recursion)
7. temporal state for the next turn is derived from the outcome

Entries are never mutated. The outcome of a pass is an ``ActivationResult``
built from immutable step records, so a book snapshot can be reused across
turns safely.
"""

import logging
from typing import Dict, FrozenSet, List, NamedTuple, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field

from loreloom.keyword_matcher import KeywordMatcher
from loreloom.macros import preprocess_scan_text
from loreloom.models import ChatMessage, EntryActivation, WorldBook, WorldBookEntry
from loreloom.probability import ProbabilityGate
from loreloom.scan_text import SEPARATOR, compose_scan_text, make_speaker_resolver
from loreloom.temporal_state import EMPTY_STATE, TemporalState, advance_state, check_eligibility

logger = logging.getLogger(__name__)


class ActivationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    world_book_id: str
    activated: List[EntryActivation] = Field(default_factory=list)
    # Activated entries in the book's own array order
    entries: List[WorldBookEntry] = Field(default_factory=list)
    skipped: Dict[str, str] = Field(default_factory=dict)
    state: TemporalState = Field(default_factory=TemporalState)
    log: List[str] = Field(default_factory=list)

    @property
    def activated_ids(self) -> List[str]:
        return [a.entry_id for a in self.activated]


class PassState(NamedTuple):
    """Immutable accumulator threaded through the steps of one pass."""
    activations: Tuple[EntryActivation, ...] = ()
    rejected: FrozenSet[str] = frozenset()
    log: Tuple[str, ...] = ()

    @property
    def activated_ids(self) -> FrozenSet[str]:
        return frozenset(a.entry_id for a in self.activations)

    def with_activation(self, activation: EntryActivation, line: str) -> "PassState":
        return PassState(self.activations + (activation,), self.rejected, self.log + (line,))

    def with_rejection(self, entry_id: str, line: str) -> "PassState":
        return PassState(self.activations, self.rejected | {entry_id}, self.log + (line,))

    def with_log(self, line: str) -> "PassState":
        return PassState(self.activations, self.rejected, self.log + (line,))


class ScanWindow:
    """Scan text per window depth, composed lazily and cached for one pass."""

    def __init__(
        self,
        book: WorldBook,
        scan_text: str = "",
        messages: Optional[Sequence[ChatMessage]] = None,
        character_name: Optional[str] = None,
        player_name: Optional[str] = None,
    ):
        self.settings = book.settings
        self.scan_text = scan_text or ""
        self.messages = list(messages) if messages is not None else None
        self.character_name = character_name
        self.player_name = player_name
        self.speaker_name_of = make_speaker_resolver(character_name, player_name)
        self._cache: Dict[int, str] = {}

    @property
    def history_length(self) -> int:
        return len(self.messages) if self.messages is not None else 0

    def depth_for(self, entry: WorldBookEntry) -> int:
        if entry.scan_depth is not None:
            return entry.scan_depth
        return self.settings.scan_depth

    def text(self, depth: int) -> str:
        if depth not in self._cache:
            if self.messages is None:
                raw = self.scan_text
            else:
                raw = compose_scan_text(self.messages, depth, self.settings.include_names, self.speaker_name_of)
            self._cache[depth] = preprocess_scan_text(raw, self.character_name, self.player_name)
        return self._cache[depth]


class ActivationOrchestrator:
    def __init__(self, gate: Optional[ProbabilityGate] = None):
        self.gate = gate or ProbabilityGate()

    def _gate(self, acc: PassState, entry: WorldBookEntry, activation: EntryActivation) -> PassState:
        if self.gate.passes(entry):
            return acc.with_activation(activation, f"Activated '{entry.title or entry.id}' ({activation.reason})")
        return acc.with_rejection(entry.id, f"Probability gate rejected '{entry.title or entry.id}' ({entry.probability}%)")

    def _test(self, acc: PassState, entry: WorldBookEntry, matcher: KeywordMatcher,
              text: str, reason: str, depth: Optional[int], step: int = 0) -> PassState:
        match = matcher.evaluate(text, entry)
        if not match.matched:
            return acc
        activation = EntryActivation(
            entry_id=entry.id,
            title=entry.title,
            reason=reason,
            matched_keys=match.matched_keys,
            recursion_step=step,
            scan_depth=depth,
        )
        return self._gate(acc, entry, activation)

    def initial_pass(self, acc: PassState, candidates: Sequence[WorldBookEntry],
                     matcher: KeywordMatcher, window: ScanWindow) -> PassState:
        """Constant entries first, then keyword-tested selective entries."""
        for entry in candidates:
            if entry.strategy == "constant" and not entry.delay_until_recursion:
                acc = self._gate(acc, entry, EntryActivation(entry_id=entry.id, title=entry.title, reason="constant"))

        for entry in candidates:
            if entry.strategy == "selective" and not entry.delay_until_recursion:
                depth = window.depth_for(entry)
                acc = self._test(acc, entry, matcher, window.text(depth), "keyword", depth)
        return acc

    def expand_for_min_activations(self, acc: PassState, book: WorldBook, candidates: Sequence[WorldBookEntry],
                                   matcher: KeywordMatcher, window: ScanWindow) -> PassState:
        """Widen the book-level window one message at a time until enough entries fire."""
        settings = book.settings
        if settings.min_activations <= 0 or window.messages is None or settings.scan_depth <= 0:
            return acc

        limit = window.history_length
        if settings.max_depth > 0:
            limit = min(limit, settings.max_depth)

        depth = settings.scan_depth
        while len(acc.activations) < settings.min_activations and depth < limit:
            depth += 1
            acc = acc.with_log(f"Min activations: widening scan window to {depth} messages")
            text = window.text(depth)
            for entry in candidates:
                if (entry.strategy != "selective" or entry.delay_until_recursion or entry.scan_depth is not None
                        or entry.id in acc.activated_ids or entry.id in acc.rejected):
                    continue
                acc = self._test(acc, entry, matcher, text, "min_activations", depth)
        return acc

    def recursion_step(self, step: int, acc: PassState, book: WorldBook, candidates: Sequence[WorldBookEntry],
                       matcher: KeywordMatcher, window: ScanWindow) -> PassState:
        """Run one recursion step and return the extended accumulator.

        Content of every entry activated so far (except ``prevent_recursion``
        ones) is appended to the scan window; entries not yet activated or
        rejected, not ``exclude_recursion``, and whose recursion delay has
        elapsed are tested against it.
        """
        entries_by_id = {entry.id: entry for entry in book.entries}
        recursed_content = SEPARATOR.join(
            entries_by_id[a.entry_id].content
            for a in acc.activations
            if not entries_by_id[a.entry_id].prevent_recursion and entries_by_id[a.entry_id].content
        )

        done = acc.activated_ids | acc.rejected
        for entry in candidates:
            if entry.id in done or entry.exclude_recursion:
                continue
            if entry.delay_until_recursion and step < max(1, entry.recursion_level):
                continue
            depth = window.depth_for(entry)
            text = window.text(depth)
            if recursed_content:
                text = f"{text}{SEPARATOR}{recursed_content}" if text else recursed_content
            acc = self._test(acc, entry, matcher, text, "recursion", depth, step)
        return acc

    def activate(
        self,
        book: WorldBook,
        scan_text: str = "",
        messages: Optional[Sequence[ChatMessage]] = None,
        state: Optional[TemporalState] = None,
        character_name: Optional[str] = None,
        player_name: Optional[str] = None,
        conversation_length: Optional[int] = None,
    ) -> ActivationResult:
        """Run one activation pass over a world book snapshot.

        ``messages`` (the chat history) takes precedence over ``scan_text``;
        without messages the raw ``scan_text`` is scanned for every depth.
        ``conversation_length`` drives entry delays and defaults to the
        number of messages.
        """
        if state is None:
            state = EMPTY_STATE
        label = book.name or book.id

        if not book.enabled:
            logger.debug(f"[WORLDBOOK] '{label}' is disabled; skipping activation")
            return ActivationResult(world_book_id=book.id, state=state, log=[f"World book '{label}' is disabled"])

        window = ScanWindow(book, scan_text, messages, character_name, player_name)
        if conversation_length is None:
            conversation_length = window.history_length
        matcher = KeywordMatcher(book.settings)

        skipped: Dict[str, str] = {}
        candidates: List[WorldBookEntry] = []
        forced_ids = set()
        acc = PassState()

        for entry in book.entries:
            eligibility = check_eligibility(entry, state, conversation_length)
            if eligibility.status == "blocked":
                skipped[entry.id] = eligibility.note
            elif eligibility.status == "forced":
                forced_ids.add(entry.id)
                acc = acc.with_activation(
                    EntryActivation(entry_id=entry.id, title=entry.title, reason="sticky"),
                    f"Kept '{entry.title or entry.id}' active: {eligibility.note}",
                )
            else:
                candidates.append(entry)

        acc = self.initial_pass(acc, candidates, matcher, window)
        acc = self.expand_for_min_activations(acc, book, candidates, matcher, window)

        max_steps = book.settings.max_recursion_steps
        steps_run = 0
        for step in range(1, max_steps + 1):
            before = len(acc.activations)
            acc = self.recursion_step(step, acc, book, candidates, matcher, window)
            steps_run = step
            added = len(acc.activations) - before
            logger.debug(f"[RECURSION] '{label}' step {step}/{max_steps}: {added} new")
            acc = acc.with_log(f"Recursion step {step}: {added} new activation(s)")
            if not added:
                break

        activated_ids = acc.activated_ids
        for entry in candidates:
            if entry.id in activated_ids:
                continue
            if entry.id in acc.rejected:
                skipped[entry.id] = "probability gate rejected"
            elif entry.delay_until_recursion and entry.exclude_recursion:
                skipped[entry.id] = "delayed until recursion but excluded from recursion"
            elif entry.delay_until_recursion and steps_run < max(1, entry.recursion_level):
                skipped[entry.id] = f"delayed until recursion step {max(1, entry.recursion_level)}"
            elif entry.strategy == "selective" and entry.scan_depth == 0:
                skipped[entry.id] = "scan depth 0"
            else:
                skipped[entry.id] = "no keyword match"

        fired_ids = set(activated_ids) - forced_ids
        next_state = advance_state(state, book.entries, fired_ids, forced_ids)

        log = list(acc.log)
        log.append(f"World book '{label}': {len(acc.activations)} entr{'y' if len(acc.activations) == 1 else 'ies'} active")
        for line in log:
            logger.debug(f"[WORLDBOOK] {line}")

        return ActivationResult(
            world_book_id=book.id,
            activated=list(acc.activations),
            entries=[entry for entry in book.entries if entry.id in activated_ids],
            skipped=skipped,
            state=next_state,
            log=log,
        )
