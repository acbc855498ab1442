"""
World book data model.

Entries and books are plain pydantic models. Attributes are snake_case in
Python; JSON uses camelCase aliases (``primaryKeys``, ``selectiveLogic``...)
and both spellings are accepted on input.
"""

import uuid
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from loreloom.config_loader import CONFIG

Strategy = Literal["constant", "selective", "vectorized"]
SelectiveLogic = Literal["andAny", "andAll", "notAny", "notAll"]
Position = Literal["before", "after"]
ActivationReason = Literal["constant", "keyword", "sticky", "recursion", "min_activations"]


def _new_id() -> str:
    return uuid.uuid4().hex


def _book_default(key: str):
    return CONFIG["world_book"][key]


class LoreModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class WorldBookEntry(LoreModel):
    id: str = Field(default_factory=_new_id)
    title: str = ""
    content: str = ""
    enabled: bool = True
    strategy: Strategy = "selective"

    primary_keys: List[str] = Field(default_factory=list)
    secondary_keys: List[str] = Field(default_factory=list)
    selective_logic: SelectiveLogic = "andAny"
    # None inherits the book setting
    case_sensitive: Optional[bool] = None
    match_whole_words: Optional[bool] = None

    order: int = 100
    position: Position = "after"

    exclude_recursion: bool = False
    prevent_recursion: bool = False
    delay_until_recursion: bool = False
    recursion_level: int = Field(default=0, ge=0)

    probability: int = Field(default=100, ge=0, le=100)
    sticky: int = Field(default=0, ge=0)
    cooldown: int = Field(default=0, ge=0)
    delay: int = Field(default=0, ge=0)

    scan_depth: Optional[int] = Field(default=None, ge=0)


class WorldBookSettings(LoreModel):
    scan_depth: int = Field(default_factory=lambda: _book_default("scan_depth"))
    include_names: bool = Field(default_factory=lambda: _book_default("include_names"))
    # 0 disables recursion entirely
    max_recursion_steps: int = Field(default_factory=lambda: _book_default("max_recursion_steps"), ge=0)
    min_activations: int = Field(default_factory=lambda: _book_default("min_activations"), ge=0)
    max_depth: int = Field(default_factory=lambda: _book_default("max_depth"), ge=0)
    case_sensitive: bool = Field(default_factory=lambda: _book_default("case_sensitive"))
    match_whole_words: bool = Field(default_factory=lambda: _book_default("match_whole_words"))


class WorldBook(LoreModel):
    id: str = Field(default_factory=_new_id)
    name: str = ""
    description: str = ""
    entries: List[WorldBookEntry] = Field(default_factory=list)
    settings: WorldBookSettings = Field(default_factory=WorldBookSettings)
    character_ids: List[str] = Field(default_factory=list)
    enabled: bool = True

    def get_entry(self, entry_id: str) -> Optional[WorldBookEntry]:
        for entry in self.entries:
            if entry.id == entry_id:
                return entry
        return None


class ChatMessage(LoreModel):
    role: str
    content: str
    speaker_name: Optional[str] = None


class EntryActivation(LoreModel):
    """Why and how one entry was activated during a pass."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    entry_id: str
    title: str = ""
    reason: ActivationReason
    matched_keys: List[str] = Field(default_factory=list)
    recursion_step: int = 0
    scan_depth: Optional[int] = None


class WorldInfoResult(LoreModel):
    before: str = ""
    after: str = ""
    activations: List[EntryActivation] = Field(default_factory=list)
    skipped: Dict[str, str] = Field(default_factory=dict)
    log: List[str] = Field(default_factory=list)
