"""
Shared pytest fixtures for the LoreLoom test suite.

Provides:
    - temp_db: every test runs against a fresh sqlite file under tmp_path
    - make_entry / make_book: builders for world book models
    - FixedRandom: deterministic stand-in for random.Random
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from loreloom import database  # noqa: E402
from loreloom.models import ChatMessage, WorldBook, WorldBookEntry, WorldBookSettings  # noqa: E402


class FixedRandom:
    """Returns queued values from random(), then repeats the last one."""

    def __init__(self, *values):
        self.values = list(values) or [0.0]

    def random(self):
        if len(self.values) > 1:
            return self.values.pop(0)
        return self.values[0]


@pytest.fixture(autouse=True)
def temp_db(tmp_path):
    """Point the storage module at a throwaway database."""
    original_path = database.DB_PATH
    db_path = str(tmp_path / "loreloom_test.db")
    database.set_db_path(db_path)
    database.init_db()
    yield db_path
    database.set_db_path(original_path)


def make_entry(**fields) -> WorldBookEntry:
    fields.setdefault("title", fields.get("id", "entry"))
    fields.setdefault("content", f"{fields['title']} content")
    return WorldBookEntry(**fields)


def make_book(*entries: WorldBookEntry, **settings) -> WorldBook:
    return WorldBook(name="Test Book", entries=list(entries), settings=WorldBookSettings(**settings))


def chat(*lines) -> list:
    """Alternating user/assistant messages from plain strings."""
    return [
        ChatMessage(role="user" if i % 2 == 0 else "assistant", content=line)
        for i, line in enumerate(lines)
    ]
