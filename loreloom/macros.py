"""
Macro substitution for scanned text.

Only the name macros matter for keyword scanning: ``{{char}}``/``<char>`` and
``{{user}}``/``<user>``. Everything else is left untouched.
"""

import re
from typing import Optional

CHAR_MACRO = re.compile(r"\{\{char\}\}|<char>")
USER_MACRO = re.compile(r"\{\{user\}\}|<user>")


def preprocess_scan_text(text: str, character_name: Optional[str] = None, player_name: Optional[str] = None) -> str:
    """Replace character/player name macros before the text is scanned.

    A macro is only replaced when the matching name is known; an empty name
    leaves the macro in place.
    """
    if not text:
        return ""

    processed = text
    if character_name:
        processed = CHAR_MACRO.sub(lambda _: character_name, processed)
    if player_name:
        processed = USER_MACRO.sub(lambda _: player_name, processed)
    return processed
