"""
Validated regex construction for user-authored world book keys.

Keys written as ``/pattern/flags`` are compiled as regular expressions.
Because keys are user content, patterns are screened before compiling:
overlong patterns and nested quantifiers (the usual catastrophic
backtracking shapes) are rejected. Rejected or invalid patterns fail
closed - callers treat them as "no match".
"""

import functools
import logging
import re
from typing import NamedTuple, Optional, Pattern

from loreloom.config_loader import CONFIG

logger = logging.getLogger(__name__)

# /pattern/flags - flags restricted to the JavaScript flag alphabet so that
# path-like literals such as "/usr/bin" stay literal keys
REGEX_KEY = re.compile(r"^/(.+)/([dgimsuvy]*)$", re.DOTALL)

# Heuristics for catastrophic backtracking risks
_DANGEROUS_CHECKS = [
    re.compile(r"\([^)]*[+*]\)[+*?]"),        # (a+)+, (a*)*, (a+)?
    re.compile(r"\([^)]*[+*]\)\{"),           # (a+){n,m}
    re.compile(r"\(\w+\+\)\+"),               # (word+)+
    re.compile(r"\(\w+\*\)\*"),               # (word*)*
    re.compile(r"\(\w+\?\)\?"),               # (word?)?
]

# Flags that change matching; the rest (g, y, d, u, v) are meaningless for a
# single boolean search and are accepted but ignored
_FLAG_MAP = {
    "i": re.IGNORECASE,
    "m": re.MULTILINE,
    "s": re.DOTALL,
}

# JavaScript named groups -> Python syntax
_JS_NAMED_GROUP = re.compile(r"\(\?<([A-Za-z_][A-Za-z0-9_]*)>")
_JS_NAMED_BACKREF = re.compile(r"\\k<([A-Za-z_][A-Za-z0-9_]*)>")


class RegexKey(NamedTuple):
    pattern: str
    flags: str


def parse_regex_key(key: str) -> Optional[RegexKey]:
    """Split a ``/pattern/flags`` key. Returns None for literal keys."""
    if not key or not key.startswith("/"):
        return None
    match = REGEX_KEY.match(key)
    if not match:
        return None
    return RegexKey(match.group(1), match.group(2))


def check_pattern(pattern: str, max_len: Optional[int] = None, reject_nested: Optional[bool] = None) -> Optional[str]:
    """Return an error message if the pattern is unsafe or invalid, else None."""
    regex_config = CONFIG["regex"]
    if max_len is None:
        max_len = regex_config["max_pattern_length"]
    if reject_nested is None:
        reject_nested = regex_config["reject_nested_quantifiers"]

    if not pattern:
        return "Empty pattern"
    if max_len and len(pattern) > max_len:
        return f"Pattern too long (max {max_len})"
    if reject_nested:
        for check in _DANGEROUS_CHECKS:
            if check.search(pattern):
                return "Pattern contains nested quantifiers (catastrophic backtracking risk)"
    try:
        re.compile(_translate_js_syntax(pattern))
    except re.error as e:
        return f"Invalid regex: {e}"
    return None


def compile_flags(flags: str) -> Optional[int]:
    """Map a JavaScript flag string to ``re`` flags. None if the string is invalid."""
    if len(set(flags)) != len(flags):
        return None  # duplicate flags are a syntax error in JS
    value = 0
    for flag in flags:
        value |= _FLAG_MAP.get(flag, 0)
    return value


def _translate_js_syntax(pattern: str) -> str:
    pattern = _JS_NAMED_GROUP.sub(r"(?P<\1>", pattern)
    return _JS_NAMED_BACKREF.sub(r"(?P=\1)", pattern)


@functools.lru_cache(maxsize=1024)
def compile_regex_key(key: str, case_sensitive: bool) -> Optional[Pattern]:
    """Compile a ``/pattern/flags`` key.

    Explicit flags replace the entry's case sensitivity; a key without flags
    inherits it. Returns None (and logs once per key) when the key is
    malformed or rejected as unsafe.
    """
    parsed = parse_regex_key(key)
    if parsed is None:
        return None

    if parsed.flags:
        flags = compile_flags(parsed.flags)
        if flags is None:
            logger.warning(f"[REGEX] Invalid flags in key {key!r}; treating as no match")
            return None
    else:
        flags = 0 if case_sensitive else re.IGNORECASE

    error = check_pattern(parsed.pattern)
    if error:
        logger.warning(f"[REGEX] Rejected key {key!r}: {error}")
        return None

    return re.compile(_translate_js_syntax(parsed.pattern), flags)


@functools.lru_cache(maxsize=4096)
def compile_whole_word(key: str, case_sensitive: bool) -> Pattern:
    """Compile a literal key bounded so it cannot match inside a longer word."""
    flags = 0 if case_sensitive else re.IGNORECASE
    return re.compile(r"(?<!\w)" + re.escape(key) + r"(?!\w)", flags)
