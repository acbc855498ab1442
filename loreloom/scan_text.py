"""
Builds the text blob that world book keys are scanned against.
"""

from typing import Callable, List, Optional, Sequence

from loreloom.models import ChatMessage

SEPARATOR = "\n\n"

SpeakerResolver = Callable[[ChatMessage], str]


def make_speaker_resolver(character_name: Optional[str] = None, player_name: Optional[str] = None) -> SpeakerResolver:
    """Resolve a message's speaker: explicit name first, then role-based names."""
    def speaker_name_of(message: ChatMessage) -> str:
        if message.speaker_name:
            return message.speaker_name
        if message.role == "user":
            return player_name or "User"
        return character_name or "Narrator"
    return speaker_name_of


def recent_messages(messages: Sequence[ChatMessage], depth: int) -> List[ChatMessage]:
    """Last ``depth`` messages; ``depth <= 0`` means the whole history."""
    if depth <= 0:
        return list(messages)
    return list(messages[-depth:])


def compose_scan_text(
    messages: Sequence[ChatMessage],
    depth: int,
    include_names: bool,
    speaker_name_of: Optional[SpeakerResolver] = None,
) -> str:
    """Join the most recent ``depth`` messages, optionally as ``Name: content`` lines.

    This is the book-level window. An entry-level depth of 0 ("never scan")
    is handled by the keyword matcher and must not be passed here.
    """
    if speaker_name_of is None:
        speaker_name_of = make_speaker_resolver()

    lines = []
    for message in recent_messages(messages, depth):
        if include_names:
            lines.append(f"{speaker_name_of(message)}: {message.content}")
        else:
            lines.append(message.content)
    return SEPARATOR.join(lines)
