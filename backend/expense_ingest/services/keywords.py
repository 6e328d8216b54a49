import re
import unicodedata

_WHITESPACE = re.compile(r"\s+")


def normalize_keyword(value: str | None) -> str:
    """Lowercase, strip diacritics and collapse whitespace for stable substring matching."""
    if not value or not value.strip():
        return ""
    lowered = value.strip().lower()
    decomposed = unicodedata.normalize("NFD", lowered)
    stripped = "".join(ch for ch in decomposed if unicodedata.category(ch) != "Mn")
    composed = unicodedata.normalize("NFC", stripped)
    return _WHITESPACE.sub(" ", composed)
