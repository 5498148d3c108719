"""Text normalization for keyword matching (case, accents, apostrophes, whitespace)."""

import re
import unicodedata

_APOSTROPHES = str.maketrans({"’": "'", "‘": "'", "ʼ": "'", "`": "'"})
_WORD_RE = re.compile(r"[\w'-]+")


def fold(text: str) -> str:
    """Lowercase, strip accents, unify apostrophes and collapse whitespace."""
    if not text:
        return ""
    text = unicodedata.normalize("NFKD", text.translate(_APOSTROPHES))
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    return re.sub(r"\s+", " ", text.lower()).strip()


def tokens(text: str, min_length: int = 3) -> list[str]:
    """Folded words of at least `min_length` characters."""
    return [w for w in _WORD_RE.findall(fold(text)) if len(w) >= min_length]


def truncate(text: str, max_length: int = 100, suffix: str = "...") -> str:
    if len(text) <= max_length:
        return text
    return text[: max_length - len(suffix)] + suffix
