# LoreLoom world book service
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import logging
import random
from typing import Any, Dict, List, Optional
from pydantic import BaseModel

from loreloom.config_loader import CONFIG
from loreloom.database import (
    init_db, verify_database_health,
    db_get_world_book, db_get_all_world_books, db_save_world_book, db_delete_world_book,
    db_link_character, db_unlink_character,
)
from loreloom.activation import ActivationOrchestrator
from loreloom.import_export import export_world_book, import_world_book, import_world_book_json_files
from loreloom.models import ChatMessage, WorldBook, WorldBookEntry
from loreloom.output_assembler import assemble
from loreloom.probability import AlwaysAccept, ProbabilityGate
from loreloom.temporal_state import TemporalState
from loreloom.world_info import DEFAULT_SESSION, generate_world_info, get_default_tracker

logging.basicConfig(
    level=CONFIG["server"]["log_level"],
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    if not verify_database_health():
        logger.warning("[DB] Database health check failed - app may not function correctly")

    if CONFIG["features"]["auto_import"]:
        logger.info("[IMPORT] Scanning for new world book JSON files...")
        imported = import_world_book_json_files()
        if not imported:
            logger.info("[IMPORT] No new world book files to import")
    yield


app = FastAPI(title="LoreLoom", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CONFIG["server"]["cors_origins"],
    allow_methods=["*"],
    allow_headers=["*"],
)


class WorldBookTestRequest(BaseModel):
    text: str = ""
    messages: Optional[List[ChatMessage]] = None
    character_name: Optional[str] = None
    player_name: Optional[str] = None
    conversation_length: Optional[int] = None
    state: Optional[TemporalState] = None
    ignore_probability: bool = False
    seed: Optional[int] = None


class WorldInfoRequest(BaseModel):
    character_id: str
    messages: List[ChatMessage] = []
    session_id: str = DEFAULT_SESSION
    character_name: Optional[str] = None
    player_name: Optional[str] = None


def _not_found(world_book_id: str) -> JSONResponse:
    return JSONResponse({"success": False, "error": f"World book not found: {world_book_id}"}, status_code=404)


@app.get("/api/health")
async def health():
    return {"status": "ok", "database": verify_database_health()}


@app.get("/api/worldbooks")
async def list_world_books():
    return [export_world_book(book) for book in db_get_all_world_books()]


@app.post("/api/worldbooks")
async def save_world_book(book: WorldBook):
    if not db_save_world_book(book):
        return {"success": False, "error": "Failed to save world book"}
    logger.info(f"[WORLDBOOK] Saved world book: {book.name} ({len(book.entries)} entries)")
    return {"success": True, "id": book.id}


@app.post("/api/worldbooks/import")
async def import_world_book_endpoint(data: Dict[str, Any], name: Optional[str] = None):
    """Import native or SillyTavern world book JSON."""
    try:
        book = import_world_book(data, name)
    except ValueError as e:
        return JSONResponse({"success": False, "error": str(e)}, status_code=400)

    if not db_save_world_book(book):
        return {"success": False, "error": "Failed to save world book"}
    logger.info(f"[IMPORT] Imported world book: {book.name} ({len(book.entries)} entries)")
    return {"success": True, "id": book.id, "entries": len(book.entries)}


@app.post("/api/worldbooks/reimport")
async def reimport_world_books():
    """Re-import every JSON file in the world book folder, overwriting existing books."""
    imported = import_world_book_json_files(force=True)
    return {"success": True, "imported": imported}


@app.get("/api/worldbooks/{world_book_id}")
async def get_world_book(world_book_id: str):
    book = db_get_world_book(world_book_id)
    if book is None:
        return _not_found(world_book_id)
    return export_world_book(book)


@app.delete("/api/worldbooks/{world_book_id}")
async def delete_world_book(world_book_id: str):
    if not db_delete_world_book(world_book_id):
        return _not_found(world_book_id)
    logger.info(f"[WORLDBOOK] Deleted world book: {world_book_id}")
    return {"success": True, "id": world_book_id}


@app.get("/api/worldbooks/{world_book_id}/export")
async def export_world_book_endpoint(world_book_id: str):
    book = db_get_world_book(world_book_id)
    if book is None:
        return _not_found(world_book_id)
    return export_world_book(book)


@app.post("/api/worldbooks/{world_book_id}/entries")
async def save_entry(world_book_id: str, entry: WorldBookEntry):
    """Add an entry, or replace the entry with the same id in place."""
    book = db_get_world_book(world_book_id)
    if book is None:
        return _not_found(world_book_id)

    entries = list(book.entries)
    for index, existing in enumerate(entries):
        if existing.id == entry.id:
            entries[index] = entry
            break
    else:
        entries.append(entry)

    if not db_save_world_book(book.model_copy(update={"entries": entries})):
        return {"success": False, "error": "Failed to save entry"}
    return {"success": True, "id": entry.id}


@app.delete("/api/worldbooks/{world_book_id}/entries/{entry_id}")
async def delete_entry(world_book_id: str, entry_id: str):
    book = db_get_world_book(world_book_id)
    if book is None:
        return _not_found(world_book_id)
    if book.get_entry(entry_id) is None:
        return JSONResponse({"success": False, "error": f"Entry not found: {entry_id}"}, status_code=404)

    entries = [entry for entry in book.entries if entry.id != entry_id]
    if not db_save_world_book(book.model_copy(update={"entries": entries})):
        return {"success": False, "error": "Failed to delete entry"}
    return {"success": True, "id": entry_id}


@app.post("/api/worldbooks/{world_book_id}/characters/{character_id}")
async def link_character(world_book_id: str, character_id: str):
    if not db_link_character(world_book_id, character_id):
        return _not_found(world_book_id)
    return {"success": True}


@app.delete("/api/worldbooks/{world_book_id}/characters/{character_id}")
async def unlink_character(world_book_id: str, character_id: str):
    if not db_unlink_character(world_book_id, character_id):
        return {"success": False, "error": "Character is not linked to this world book"}
    return {"success": True}


@app.post("/api/worldbooks/{world_book_id}/test")
async def test_world_book(world_book_id: str, request: WorldBookTestRequest):
    """Run one activation pass against test text without touching stored state."""
    book = db_get_world_book(world_book_id)
    if book is None:
        return _not_found(world_book_id)

    rng = random.Random(request.seed)
    gate = AlwaysAccept() if request.ignore_probability else ProbabilityGate(rng)
    result = ActivationOrchestrator(gate).activate(
        book,
        scan_text=request.text,
        messages=request.messages,
        state=request.state,
        character_name=request.character_name,
        player_name=request.player_name,
        conversation_length=request.conversation_length,
    )
    before, after = assemble(result.entries)

    return {
        "success": True,
        "before": before,
        "after": after,
        "activations": [a.model_dump(by_alias=True) for a in result.activated],
        "skipped": result.skipped,
        "state": result.state.model_dump(),
        "log": result.log,
    }


@app.post("/api/world-info")
async def world_info(request: WorldInfoRequest):
    """Evaluate the character's linked world books for one chat turn."""
    result = await generate_world_info(
        request.character_id,
        request.messages,
        session_id=request.session_id,
        character_name=request.character_name,
        player_name=request.player_name,
        tracker=get_default_tracker(),
    )
    return {"success": True, **result.model_dump(by_alias=True)}


@app.delete("/api/world-info/state/{session_id}")
async def reset_world_info_state(session_id: str):
    cleared = get_default_tracker().reset(session_id=session_id)
    logger.info(f"[TEMPORAL] Cleared {cleared} state slot(s) for session {session_id}")
    return {"success": True, "cleared": cleared}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=CONFIG["server"]["host"], port=CONFIG["server"]["port"])
