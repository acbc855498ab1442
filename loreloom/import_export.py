"""
World book import / export.

Two input shapes are accepted:

- native LoreLoom JSON - the camelCase dump of ``WorldBook`` with an
  ``entries`` list
- SillyTavern lorebooks - ``{"entries": {"0": {...}, "1": {...}}}`` where
  each entry uses SillyTavern field names (``key``, ``keysecondary``,
  ``comment``, ``disable``...)

Export always produces the native shape.
"""

import json
import logging
import os
from typing import Any, Dict, List, Optional

from loreloom.config_loader import CONFIG, resolve_path
from loreloom.database import db_get_world_book_by_name, db_save_world_book
from loreloom.models import WorldBook, WorldBookEntry

logger = logging.getLogger(__name__)

# SillyTavern world_info_logic enum
SILLYTAVERN_LOGIC = {
    0: "andAny",
    1: "notAll",
    2: "notAny",
    3: "andAll",
}

SILLYTAVERN_SUFFIXES = ["_plist", "_worldinfo", "_json"]


def normalize_world_name(filename: str) -> str:
    """Remove SillyTavern suffixes from a world book filename.

    'exampleworld_plist_worldinfo.json' → 'exampleworld'
    """
    name = os.path.basename(filename)
    if name.endswith(".json"):
        name = name[:-len(".json")]
    stripped = True
    while stripped:
        stripped = False
        for suffix in SILLYTAVERN_SUFFIXES:
            if name.endswith(suffix) and len(name) > len(suffix):
                name = name[:-len(suffix)]
                stripped = True
    return name


def is_sillytavern_format(data: Any) -> bool:
    return isinstance(data, dict) and isinstance(data.get("entries"), dict)


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [k.strip() for k in value.split(",") if k.strip()]
    return [str(k) for k in value if k is not None]


def _as_int(value: Any, default: int = 0) -> int:
    if value is None or isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def convert_sillytavern_entry(uid: str, raw: Dict[str, Any]) -> WorldBookEntry:
    """Map one SillyTavern entry onto a ``WorldBookEntry``."""
    if raw.get("constant"):
        strategy = "constant"
    elif raw.get("vectorized"):
        strategy = "vectorized"
    else:
        strategy = "selective"

    delay_until_recursion = raw.get("delayUntilRecursion", False)
    recursion_level = 0
    if not isinstance(delay_until_recursion, bool):
        recursion_level = max(_as_int(delay_until_recursion), 0)
        delay_until_recursion = recursion_level > 0

    probability = _as_int(raw.get("probability"), 100)
    if raw.get("useProbability") is False:
        probability = 100

    scan_depth = raw.get("scanDepth")

    return WorldBookEntry(
        id=str(raw.get("uid", uid)),
        title=raw.get("comment") or "",
        content=raw.get("content") or "",
        enabled=not raw.get("disable", False),
        strategy=strategy,
        primary_keys=_as_list(raw.get("key")),
        secondary_keys=_as_list(raw.get("keysecondary")),
        selective_logic=SILLYTAVERN_LOGIC.get(_as_int(raw.get("selectiveLogic")), "andAny"),
        case_sensitive=raw.get("caseSensitive"),
        match_whole_words=raw.get("matchWholeWords"),
        order=_as_int(raw.get("order"), 100),
        position="before" if _as_int(raw.get("position")) == 0 else "after",
        exclude_recursion=bool(raw.get("excludeRecursion", False)),
        prevent_recursion=bool(raw.get("preventRecursion", False)),
        delay_until_recursion=bool(delay_until_recursion),
        recursion_level=recursion_level,
        probability=min(max(probability, 0), 100),
        sticky=max(_as_int(raw.get("sticky")), 0),
        cooldown=max(_as_int(raw.get("cooldown")), 0),
        delay=max(_as_int(raw.get("delay")), 0),
        scan_depth=None if scan_depth is None else max(_as_int(scan_depth), 0),
    )


def convert_sillytavern_world(data: Dict[str, Any], name: str) -> WorldBook:
    raw_entries = [(uid, raw) for uid, raw in data.get("entries", {}).items() if isinstance(raw, dict)]
    raw_entries.sort(key=lambda item: (_as_int(item[1].get("displayIndex"), _as_int(item[0])), item[0]))

    entries = []
    seen = set()
    for uid, raw in raw_entries:
        entry = convert_sillytavern_entry(uid, raw)
        if entry.id in seen:
            entry = entry.model_copy(update={"id": f"{entry.id}-{uid}"})
        seen.add(entry.id)
        entries.append(entry)

    return WorldBook(
        name=data.get("name") or name,
        description=data.get("description") or "",
        entries=entries,
    )


def import_world_book(data: Any, name: Optional[str] = None) -> WorldBook:
    """Build a ``WorldBook`` from native or SillyTavern JSON.

    Raises ``ValueError`` (pydantic's ``ValidationError`` included) for
    documents that are neither.
    """
    if not isinstance(data, dict):
        raise ValueError("World book JSON must be an object")

    if is_sillytavern_format(data):
        book = convert_sillytavern_world(data, name or "Imported World")
    else:
        book = WorldBook.model_validate(data)

    if name and not book.name:
        book = book.model_copy(update={"name": name})
    return book


def export_world_book(book: WorldBook) -> Dict[str, Any]:
    return book.model_dump(mode="json", by_alias=True)


def import_world_book_json_files(directory: Optional[str] = None, force: bool = False) -> int:
    """Import world book JSON files to database.

    Args:
        directory: Folder to scan (defaults to storage.worldbook_dir)
        force: If True, reimport even if a book with that name exists (keeps its id and links)

    Returns:
        Number of world books imported
    """
    import_count = 0
    wb_dir = directory or resolve_path(CONFIG["storage"]["worldbook_dir"])

    if not os.path.exists(wb_dir):
        return 0

    for f in sorted(os.listdir(wb_dir)):
        if not f.endswith(".json"):
            continue
        name = normalize_world_name(f)
        file_path = os.path.join(wb_dir, f)
        try:
            existing = db_get_world_book_by_name(name)
            if existing is not None and not force:
                continue

            with open(file_path, "r", encoding="utf-8") as wf:
                data = json.load(wf)
            book = import_world_book(data, name)
            book = book.model_copy(update={"name": name})
            if existing is not None:
                links = list(dict.fromkeys(existing.character_ids + book.character_ids))
                book = book.model_copy(update={"id": existing.id, "character_ids": links})

            if db_save_world_book(book):
                import_count += 1
                logger.info(f"[IMPORT] Imported world book: {name} ({len(book.entries)} entries)")
        except (OSError, ValueError) as e:
            logger.warning(f"[IMPORT] Failed to import world book {f}: {e}")

    if import_count > 0:
        logger.info(f"[IMPORT] World book import complete: {import_count} books")

    return import_count
