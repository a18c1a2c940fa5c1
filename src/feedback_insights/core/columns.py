from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

import pandas as pd

from feedback_insights.core.cells import cell_text, column_texts

# ---------------------------------------------------------------------------
# Response scoring
# ---------------------------------------------------------------------------

LIKERT_SCORES: Dict[str, int] = {
    "strongly agree": 5,
    "agree": 4,
    "neutral": 3,
    "disagree": 2,
    "strongly disagree": 1,
    "excellent": 5,
    "very good": 4,
    "good": 3,
    "satisfactory": 2,
    "poor": 1,
    "5": 5,
    "4": 4,
    "3": 3,
    "2": 2,
    "1": 1,
}

MIN_SCORE = 1
MAX_SCORE = 5

# ---------------------------------------------------------------------------
# Classification heuristics
# ---------------------------------------------------------------------------

# Shorter headers are identifiers ("Roll No", "Section"), not question text
MIN_QUESTION_HEADER_LENGTH = 15
QUESTION_SAMPLE_SIZE = 100

METADATA_HEADER_PATTERNS = (
    "timestamp",
    "email",
    "school name",
    "department",
    "semester",
    "class-section",
    "name of faculty",
    "course name",
    "special remark",
)

FILTER_KEYWORDS = (
    "department", "course", "year", "section", "semester",
    "faculty", "teacher", "professor", "subject", "gender",
    "branch", "batch", "division", "program", "class", "school",
)

# Only applied to headers that matched no filter keyword
FILTER_EXCLUDE_EXACT = frozenset({"email", "id", "roll", "sn", "sr no", "serial"})

# More distinct values than this is free text, not a facet
MAX_FILTER_VALUES = 500

# Header keywords used to locate the rollup dimensions
FACULTY_KEYWORDS = ("faculty", "teacher")
COURSE_KEYWORDS = ("course", "subject")
SECTION_KEYWORDS = ("section", "class")
SEMESTER_KEYWORDS = ("semester",)
DEPARTMENT_KEYWORDS = ("department",)
TIMESTAMP_KEYWORDS = ("timestamp", "date", "time")


@dataclass
class ColumnClassification:
    question_columns: List[str] = field(default_factory=list)
    filter_columns: Dict[str, List[str]] = field(default_factory=dict)


def _parse_real(text: str) -> Optional[float]:
    try:
        value = float(text)
    except (TypeError, ValueError):
        return None
    if math.isnan(value) or math.isinf(value):
        return None
    return value


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def score_value(raw: Any) -> Optional[int]:
    """
    Map one response cell to a 1..5 score, or None when it is not a rating.

    Numbers in range are rounded half-up; text goes through LIKERT_SCORES
    (case-insensitive) and then numeric parsing.
    """
    if isinstance(raw, bool) or raw is None:
        return None

    if isinstance(raw, (int, float)):
        number: Optional[float] = float(raw)
        if math.isnan(number):
            return None
    else:
        text = cell_text(raw).lower()
        if not text:
            return None
        mapped = LIKERT_SCORES.get(text)
        if mapped is not None:
            return mapped
        number = _parse_real(text)

    if number is None or not (MIN_SCORE <= number <= MAX_SCORE):
        return None
    return _round_half_up(number)


def looks_like_rating(raw: Any) -> bool:
    text = cell_text(raw).lower()
    if not text:
        return False
    if text in LIKERT_SCORES:
        return True
    number = _parse_real(text)
    return number is not None and MIN_SCORE <= number <= MAX_SCORE


def is_metadata_header(header: str) -> bool:
    lower = header.lower().strip()
    if "remark" in lower and "special" in lower:
        return True
    return any(lower == p or lower.startswith(p) for p in METADATA_HEADER_PATTERNS)


def is_question_column(header: str, sample: Iterable[Any]) -> bool:
    if len(header.strip()) < MIN_QUESTION_HEADER_LENGTH:
        return False
    if is_metadata_header(header):
        return False
    return any(looks_like_rating(v) for v in sample)


def is_filter_header(header: str) -> bool:
    lower = header.lower().strip()
    matched = any(k in lower for k in FILTER_KEYWORDS)
    # A keyword match wins over the exclusion list
    if not matched and lower in FILTER_EXCLUDE_EXACT:
        return False
    return matched


def filter_column_values(header: str, values: Iterable[Any]) -> Optional[List[str]]:
    """Sorted distinct values for a facet column, or None when it is not one."""
    if not is_filter_header(header):
        return None

    distinct = {cell_text(v) for v in values}
    distinct.discard("")
    if not (1 <= len(distinct) <= MAX_FILTER_VALUES):
        return None
    return sorted(distinct)


def identify_question_columns(headers: Sequence[str], frame: pd.DataFrame) -> List[str]:
    sample = frame.head(QUESTION_SAMPLE_SIZE)
    out: List[str] = []
    for header in headers:
        if header not in sample.columns:
            continue
        if is_question_column(header, sample[header].tolist()):
            out.append(header)
    return out


def identify_filter_columns(headers: Sequence[str], frame: pd.DataFrame) -> Dict[str, List[str]]:
    filters: Dict[str, List[str]] = {}
    for header in headers:
        if header not in frame.columns:
            continue
        values = filter_column_values(header, frame[header].tolist())
        if values is not None:
            filters[header] = values
    return filters


def classify_columns(headers: Sequence[str], frame: pd.DataFrame) -> ColumnClassification:
    return ColumnClassification(
        question_columns=identify_question_columns(headers, frame),
        filter_columns=identify_filter_columns(headers, frame),
    )


def find_column(headers: Sequence[str], keywords: Sequence[str]) -> Optional[str]:
    """First header containing any keyword (case-insensitive)."""
    for header in headers:
        lower = header.lower()
        if any(k in lower for k in keywords):
            return header
    return None


def distinct_texts(frame: pd.DataFrame, column: Optional[str]) -> List[str]:
    if column is None:
        return []
    seen: Dict[str, None] = {}
    for text in column_texts(frame, column):
        if text:
            seen.setdefault(text, None)
    return list(seen)
