from __future__ import annotations

import re
from typing import Any, List

from rapidfuzz.distance import Levenshtein

# Honorifics are compared without their trailing dot.
NAME_PREFIXES = frozenset(
    {"mr", "mrs", "ms", "dr", "prof", "professor", "shri", "smt", "kumari"}
)
NAME_SUFFIXES = frozenset(
    {"sir", "mam", "ma'am", "maam", "madam", "madem", "mem", "ji", "g", "sahab", "sahib"}
)

_WHITESPACE_RE = re.compile(r"\s+")


def _bare(token: str) -> str:
    return token.replace(".", "")


def _strip_honorifics(tokens: List[str]) -> List[str]:
    """
    Drop leading prefixes and trailing suffixes, never the last remaining token.

    Both ends are stripped until they stop matching so that normalizing an
    already normalized name is a no-op ("Dr Dr Rao" -> "Rao" in one pass).
    """
    while len(tokens) > 1 and _bare(tokens[0]) in NAME_PREFIXES:
        tokens = tokens[1:]
    while len(tokens) > 1 and _bare(tokens[-1]) in NAME_SUFFIXES:
        tokens = tokens[:-1]
    return tokens


def normalize_name(raw: Any) -> str:
    """
    Normalize a free-text person name for comparison and display.

    "DR.  Smith " -> "Smith", "a.k. sharma sir" -> "A K Sharma".
    Non-string input (None, numbers, NaN) normalizes to "".
    """
    if not isinstance(raw, str):
        return ""

    text = raw.lower().strip()
    # "." is an abbreviation separator here ("Dr.Rao", "A.K."), not punctuation to keep
    text = text.replace(".", " ")
    text = _WHITESPACE_RE.sub(" ", text).strip()
    if not text:
        return ""

    tokens = _strip_honorifics(text.split(" "))
    return " ".join(tok.capitalize() for tok in tokens)


def levenshtein_distance(a: str, b: str) -> int:
    """Classic edit distance with unit insert/delete/substitute costs."""
    return int(Levenshtein.distance(a, b))


def similarity(a: str, b: str) -> float:
    """
    1 - distance / max(len(a), len(b)), in [0, 1]; two empty strings give 1.0.

    Callers normalize both names first.
    """
    return float(Levenshtein.normalized_similarity(a, b))


def names_match(a: str, b: str, threshold: float) -> bool:
    """
    Match rule shared by grouping and suggestions, on normalized names.

    Besides the similarity threshold, a name contained in the other counts as
    a match when the shorter one has at least 4 characters ("Tanvi" vs
    "Tanvi Madaan").
    """
    if similarity(a, b) >= threshold:
        return True

    lower_a, lower_b = a.lower(), b.lower()
    if lower_a in lower_b or lower_b in lower_a:
        shorter = lower_a if len(lower_a) < len(lower_b) else lower_b
        return len(shorter) >= 4
    return False
