# text_normalizer.py
# -----------------------------------------------------------------------------
# Free-text -> comparable tokens (lower-case, accent-less, no stop-words).
#
# Default path: lower-case, NFD, drop combining marks, replace anything that
# is not [a-z0-9 whitespace] with a space, split, drop stop-words. Letters NFD
# cannot decompose (đ) fall out with the punctuation, and stop-words are
# compared after accents are gone, so only unaccented entries ("cho", "do")
# ever match.
#
# accent_aware_stopwords=True matches stop-words on the accented word first
# and maps đ -> d, so "để" is dropped while "đề" survives as "de".
# -----------------------------------------------------------------------------

import re
import unicodedata
from typing import List, Optional

# Minimal Vietnamese stop-word list; very common function words only.
STOPWORDS = frozenset([
    "và", "là", "của", "các", "một", "những", "được", "trong", "để", "với",
    "khi", "đã", "có", "cho", "ra", "như", "về", "sự", "từ", "cũng", "này",
    "đó", "đây", "thì", "lại", "mà", "đến", "nhưng", "trên", "hay", "hoặc",
    "vì", "nên", "do", "bởi", "tại", "theo",
])

# Letters NFD does not decompose.
_SPECIAL_LETTERS = {"đ": "d", "Đ": "d", "ø": "o", "ł": "l", "ß": "ss", "æ": "ae", "œ": "oe"}

_COMBINING_RE = re.compile("[\u0300-\u036f]")
_NON_TOKEN_RE = re.compile(r"[^a-z0-9\s]+")
_WORD_RE = re.compile(r"\w+", re.UNICODE)
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")


def strip_accents(text: str) -> str:
    """Remove combining diacritics (NFD) and map letters that have no decomposition."""
    decomposed = unicodedata.normalize("NFD", text or "")
    out = []
    for ch in decomposed:
        if unicodedata.combining(ch):
            continue
        out.append(_SPECIAL_LETTERS.get(ch, ch))
    return "".join(out)


def _normalize_accent_aware(text: str) -> List[str]:
    lowered = unicodedata.normalize("NFC", text).lower()
    tokens: List[str] = []
    for word in _WORD_RE.findall(lowered):
        if word in STOPWORDS:
            continue
        ascii_word = _NON_ALNUM_RE.sub(" ", strip_accents(word).lower())
        tokens.extend(ascii_word.split())
    return tokens


def normalize(text: Optional[str], accent_aware_stopwords: bool = False) -> List[str]:
    if not text:
        return []
    if accent_aware_stopwords:
        return _normalize_accent_aware(str(text))
    processed = _COMBINING_RE.sub("", unicodedata.normalize("NFD", str(text).lower()))
    processed = _NON_TOKEN_RE.sub(" ", processed)
    return [t for t in processed.split() if t not in STOPWORDS]


def normalized_phrase(text: Optional[str], accent_aware_stopwords: bool = False) -> str:
    return " ".join(normalize(text, accent_aware_stopwords))
