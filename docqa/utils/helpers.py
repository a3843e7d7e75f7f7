"""Shared utility functions used across the engine."""
from __future__ import annotations

import re
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import orjson


# --- Text Utilities -----------------------------------------------------------

STOP_WORDS: frozenset[str] = frozenset(
    {
        "what", "when", "where", "which", "that", "this", "these", "those",
        "with", "from", "into", "onto", "upon", "over", "under", "above",
        "below", "between", "among", "through", "during", "before", "after",
        "since", "until", "while", "because", "although", "though", "even",
        "such", "like", "than", "then", "here", "there", "why", "how", "all",
        "any", "both", "each", "few", "more", "most", "other", "some", "only",
        "own", "same", "so", "too", "very", "can", "will", "just", "should",
        "now", "about", "get", "got", "does", "have", "been", "were", "their",
    }
)

_WORD_SPLIT = re.compile(r"\W+")
_PUNCT = re.compile(r"[^\w\s]")
_WS = re.compile(r"\s+")


def clean_text(text: str) -> str:
    """Remove control characters and normalise whitespace."""
    # Strip control chars (keep newlines/tabs)
    text = re.sub(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]", "", text)
    # Collapse excessive blank lines
    text = re.sub(r"\n{3,}", "\n\n", text)
    # Collapse horizontal whitespace runs
    text = re.sub(r"[ \t]{2,}", " ", text)
    return text.strip()


def truncate_text(text: str, max_chars: int = 300) -> str:
    """Truncate text for display purposes."""
    if len(text) <= max_chars:
        return text
    return text[:max_chars].rstrip() + "..."


def words(text: str) -> list[str]:
    """Lowercase word tokens split on non-word characters (empty tokens dropped)."""
    return [w for w in _WORD_SPLIT.split(text.lower()) if w]


def is_stop_word(word: str) -> bool:
    return word.lower() in STOP_WORDS


def question_keywords(question: str, min_length: int = 4) -> list[str]:
    """All salient question words: at least min_length chars and not a stop word."""
    return [w for w in words(question) if len(w) >= min_length and not is_stop_word(w)]


def extract_keywords(question: str, max_keywords: int = 3) -> list[str]:
    """
    Up to max_keywords salient words in order of first appearance.

    Salient = longer than 3 characters and not a stop word.
    """
    seen: set[str] = set()
    out: list[str] = []
    for w in question_keywords(question):
        if w in seen:
            continue
        seen.add(w)
        out.append(w)
        if len(out) >= max_keywords:
            break
    return out


def normalize_question(question: str, max_length: Optional[int] = None) -> str:
    """Lowercase, strip punctuation, collapse whitespace, optionally cap length."""
    norm = _PUNCT.sub("", question.lower())
    norm = _WS.sub(" ", norm).strip()
    if max_length is not None:
        norm = norm[:max_length]
    return norm


def levenshtein_distance(a: str, b: str) -> int:
    """Classic edit distance (insert/delete/substitute, unit cost)."""
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    prev = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        cur = [i]
        for j, cb in enumerate(b, start=1):
            cost = 0 if ca == cb else 1
            cur.append(min(prev[j - 1] + cost, cur[j - 1] + 1, prev[j] + 1))
        prev = cur
    return prev[-1]


def jaccard_similarity(text1: str, text2: str, min_word_length: int = 3) -> float:
    """Jaccard overlap of the word sets (words of at least min_word_length chars)."""
    if not text1 or not text2:
        return 0.0
    set1 = {w for w in words(text1) if len(w) >= min_word_length}
    set2 = {w for w in words(text2) if len(w) >= min_word_length}
    union = set1 | set2
    if not union:
        return 0.0
    return len(set1 & set2) / len(union)


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


# --- Hashing ------------------------------------------------------------------

_FNV64_OFFSET = 0xCBF29CE484222325
_FNV64_PRIME = 0x100000001B3
_MASK64 = 0xFFFFFFFFFFFFFFFF


def fnv1a_64(text: str) -> str:
    """64-bit FNV-1a over the UTF-8 bytes, as 16 hex chars."""
    h = _FNV64_OFFSET
    for byte in text.encode("utf-8"):
        h ^= byte
        h = (h * _FNV64_PRIME) & _MASK64
    return f"{h:016x}"


# --- Dates --------------------------------------------------------------------

EPOCH_MILLIS_THRESHOLD = 1e11


def parse_datetime(value: Any) -> Optional[datetime]:
    """Best-effort parse of ISO strings / epoch seconds / datetimes. None if unparsable."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        # Values this large are epoch milliseconds
        seconds = value / 1000 if abs(value) > EPOCH_MILLIS_THRESHOLD else value
        try:
            return datetime.fromtimestamp(seconds)
        except (ValueError, OverflowError, OSError):
            return None
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    return None


# --- File I/O -----------------------------------------------------------------

def save_json(data: Any, path: str | Path) -> None:
    """Serialise data to JSON using orjson (fast, handles datetime/UUID)."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as f:
        f.write(orjson.dumps(data, option=orjson.OPT_INDENT_2 | orjson.OPT_NON_STR_KEYS))


def load_json(path: str | Path) -> Any:
    """Load JSON data from file."""
    with open(Path(path), "rb") as f:
        return orjson.loads(f.read())


def dumps_pretty(data: Any) -> str:
    return orjson.dumps(data, option=orjson.OPT_INDENT_2 | orjson.OPT_NON_STR_KEYS).decode("utf-8")

