"""
Keyword matching for world book entries.

An entry matches when at least one primary key is found in the scanned text
and its secondary keys satisfy the entry's selective logic:

    andAny  - at least one secondary key matches
    andAll  - every secondary key matches
    notAny  - no secondary key matches
    notAll  - at least one secondary key fails

Keys are literal strings or ``/pattern/flags`` regular expressions. Literal
keys honour the entry's case sensitivity and whole-word settings; both
settings fall back to the book defaults when the entry leaves them unset.
"""

from typing import List, NamedTuple, Optional

from loreloom.models import WorldBookEntry, WorldBookSettings
from loreloom.regex_safety import compile_regex_key, compile_whole_word, parse_regex_key


class KeyMatch(NamedTuple):
    matched: bool
    matched_keys: List[str]


NO_MATCH = KeyMatch(False, [])


def _clean_keys(keys: List[str]) -> List[str]:
    return [k for k in keys if k and k.strip()]


class KeywordMatcher:
    def __init__(self, settings: Optional[WorldBookSettings] = None):
        self.settings = settings or WorldBookSettings()

    def _case_sensitive(self, entry: WorldBookEntry) -> bool:
        if entry.case_sensitive is None:
            return self.settings.case_sensitive
        return entry.case_sensitive

    def _whole_words(self, entry: WorldBookEntry) -> bool:
        if entry.match_whole_words is None:
            return self.settings.match_whole_words
        return entry.match_whole_words

    def key_matches(self, key: str, text: str, case_sensitive: bool, whole_words: bool) -> bool:
        """Test a single key against text. Never raises."""
        if parse_regex_key(key) is not None:
            pattern = compile_regex_key(key, case_sensitive)
            if pattern is None:
                return False
            return pattern.search(text) is not None

        if whole_words:
            return compile_whole_word(key, case_sensitive).search(text) is not None
        if case_sensitive:
            return key in text
        return key.lower() in text.lower()

    def evaluate(self, text: str, entry: WorldBookEntry) -> KeyMatch:
        """Match an entry against text, reporting which keys fired."""
        if entry.strategy == "constant":
            return KeyMatch(True, [])
        if entry.strategy != "selective":
            return NO_MATCH
        if entry.scan_depth == 0:
            return NO_MATCH

        primary_keys = _clean_keys(entry.primary_keys)
        if not primary_keys or not text:
            return NO_MATCH

        case_sensitive = self._case_sensitive(entry)
        whole_words = self._whole_words(entry)

        matched_primary = [k for k in primary_keys if self.key_matches(k, text, case_sensitive, whole_words)]
        if not matched_primary:
            return NO_MATCH

        secondary_keys = _clean_keys(entry.secondary_keys)
        if not secondary_keys:
            return KeyMatch(True, matched_primary)

        matched_secondary = [k for k in secondary_keys if self.key_matches(k, text, case_sensitive, whole_words)]
        logic = entry.selective_logic

        if logic == "andAny":
            passed = bool(matched_secondary)
        elif logic == "andAll":
            passed = len(matched_secondary) == len(secondary_keys)
        elif logic == "notAny":
            passed = not matched_secondary
        elif logic == "notAll":
            passed = len(matched_secondary) < len(secondary_keys)
        else:
            passed = True

        if not passed:
            return NO_MATCH
        if logic in ("andAny", "andAll"):
            return KeyMatch(True, matched_primary + matched_secondary)
        return KeyMatch(True, matched_primary)

    def matches(self, text: str, entry: WorldBookEntry) -> bool:
        return self.evaluate(text, entry).matched
