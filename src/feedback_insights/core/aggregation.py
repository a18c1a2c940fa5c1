from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

import logging
import time

import pandas as pd

from feedback_insights.core.cells import cell_text, column_texts
from feedback_insights.core.columns import (
    COURSE_KEYWORDS,
    DEPARTMENT_KEYWORDS,
    FACULTY_KEYWORDS,
    SECTION_KEYWORDS,
    SEMESTER_KEYWORDS,
    TIMESTAMP_KEYWORDS,
    distinct_texts,
    find_column,
    identify_question_columns,
    score_value,
)
from feedback_insights.core.grouping import NameMapping
from feedback_insights.core.overlay import overlay_siblings, resolve_overlay_label

logger = logging.getLogger(__name__)

FilterState = Mapping[str, Sequence[str]]
CategoryOverlay = Mapping[str, Sequence[str]]
SourceOverlay = Mapping[str, CategoryOverlay]

DISTRIBUTION_LABELS = {
    5: "Strongly Agree",
    4: "Agree",
    3: "Neutral",
    2: "Disagree",
    1: "Strongly Disagree",
}

# Lower bound (inclusive) of each rating label, best first
RATING_THRESHOLDS = (
    (4.5, "Excellent"),
    (4.0, "Very Good"),
    (3.5, "Good"),
    (3.0, "Satisfactory"),
)

TOP_GROUPS = 10
TOP_PERFORMERS = 5
NEEDS_IMPROVEMENT_BELOW = 3.0
TREND_BUCKETS = 10

# Joins section/semester/course into one group key; never typed into a sheet
_KEY_SEP = "\x1f"


def rating_label(score: float) -> str:
    for bound, label in RATING_THRESHOLDS:
        if score >= bound:
            return label
    return "Needs Improvement"


def _round2(value: float) -> float:
    return round(float(value), 2)


# ---------------------------------------------------------------------------
# Result records
# ---------------------------------------------------------------------------

@dataclass
class QuestionScore:
    question: str
    score: float
    distribution: Dict[str, int]
    valid_responses: int


@dataclass
class GroupScore:
    name: str
    score: float
    count: int


@dataclass
class FacultyScore:
    name: str
    score: float
    feedback_count: int
    courses_handled: List[str]
    sections_handled: List[str]
    rating: str
    rank: int = 0


@dataclass
class CourseScore:
    course_name: str
    average_score: float
    feedback_count: int
    sections: List[str]


@dataclass
class SectionScore:
    section: str
    semester: str
    course: str
    average_score: float
    feedback_count: int


@dataclass
class SemesterScore:
    semester: str
    score: float
    count: int


@dataclass
class TrendPoint:
    label: str    # "Jan W3"
    period: str   # "2024-01-W3", sortable
    value: float


@dataclass
class OverallStats:
    total_faculty: int = 0
    total_courses: int = 0
    total_sections: int = 0
    average_by_parameter: List[QuestionScore] = field(default_factory=list)


@dataclass
class Analytics:
    """
    Aggregate view of one (filtered) response set.

    An empty response set yields the zero-valued record from Analytics(), so
    callers never need to tell "missing" from "empty".
    """
    total_responses: int = 0
    average_rating: float = 0.0
    question_scores: List[QuestionScore] = field(default_factory=list)
    department_wise: List[GroupScore] = field(default_factory=list)
    time_trends: List[TrendPoint] = field(default_factory=list)
    faculty_scores: List[FacultyScore] = field(default_factory=list)
    section_wise: List[SectionScore] = field(default_factory=list)
    course_wise: List[CourseScore] = field(default_factory=list)
    semester_wise: List[SemesterScore] = field(default_factory=list)
    overall_stats: OverallStats = field(default_factory=OverallStats)
    top_performers: List[FacultyScore] = field(default_factory=list)
    needs_improvement: List[FacultyScore] = field(default_factory=list)
    name_normalization: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Filtering
# ---------------------------------------------------------------------------

def expand_selection(
    category: str,
    values: Iterable[Any],
    name_mapping: Optional[NameMapping] = None,
    name_column: Optional[str] = None,
    overlay: Optional[SourceOverlay] = None,
) -> Set[str]:
    """
    Values a category's cells are matched against.

    A user merge overlay for the category replaces the automatic grouping for
    that category. Otherwise the name column expands every selected spelling
    to all spellings of its group, so picking one variant selects its siblings.
    """
    selected = [cell_text(v) for v in values]
    category_overlay = (overlay or {}).get(category) or {}

    if category_overlay:
        expanded: Set[str] = set()
        for value in selected:
            expanded.update(overlay_siblings(value, category_overlay))
        return expanded

    if name_mapping is not None and name_column is not None and category == name_column:
        expanded = set()
        for value in selected:
            expanded.update(name_mapping.variants_for(value))
        return expanded

    return set(selected)


def apply_filters(
    frame: pd.DataFrame,
    filter_state: Optional[FilterState],
    name_mapping: Optional[NameMapping] = None,
    name_column: Optional[str] = None,
    overlay: Optional[SourceOverlay] = None,
) -> pd.DataFrame:
    """
    Multi-select facet filtering: AND across categories, OR within one.

    Categories without selected values, and categories that are not columns
    of the frame, are ignored. Without any active category the input frame is
    returned unchanged.
    """
    active: List[Tuple[str, Set[str]]] = []
    for category, values in (filter_state or {}).items():
        if not values or category not in frame.columns:
            continue
        active.append(
            (category, expand_selection(category, values, name_mapping, name_column, overlay))
        )

    if not active:
        return frame

    t0 = time.perf_counter()
    mask = pd.Series(True, index=frame.index)
    for category, allowed in active:
        mask &= column_texts(frame, category).isin(allowed)

    out = frame[mask]
    logger.info(
        "Filtered %s -> %s rows in %.1fms",
        len(frame), len(out), (time.perf_counter() - t0) * 1000,
    )
    return out


def resolve_names(
    frame: pd.DataFrame,
    name_column: Optional[str],
    name_mapping: Optional[NameMapping] = None,
    overlay: Optional[SourceOverlay] = None,
) -> pd.DataFrame:
    """
    Copy of frame whose name column holds display labels instead of spellings.

    Overlay canonicals win over automatic canonicals; unknown names stay raw.
    """
    if name_column is None or name_column not in frame.columns:
        return frame

    category_overlay = (overlay or {}).get(name_column) or {}
    if not category_overlay and name_mapping is None:
        return frame

    def label(raw: Any) -> str:
        text = cell_text(raw)
        if not text:
            return text
        if category_overlay:
            return resolve_overlay_label(text, category_overlay)
        return name_mapping.canonical_for(text)

    out = frame.copy()
    out[name_column] = frame[name_column].map(label)
    return out


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

def score_frame(frame: pd.DataFrame, question_columns: Sequence[str]) -> pd.DataFrame:
    """Per-cell 1..5 scores (NaN where the cell is not a rating)."""
    cols = [q for q in question_columns if q in frame.columns]
    return pd.DataFrame(
        {q: frame[q].map(score_value).astype("float64") for q in cols},
        index=frame.index,
    )


def row_scores(scores: pd.DataFrame) -> pd.Series:
    """Each row's mean over its valid question scores (NaN when it has none)."""
    if scores.shape[1] == 0:
        return pd.Series(float("nan"), index=scores.index)
    return scores.mean(axis=1, skipna=True)


def calculate_question_scores(scores: pd.DataFrame) -> List[QuestionScore]:
    out: List[QuestionScore] = []
    for question in scores.columns:
        valid = scores[question].dropna()
        distribution = {label: 0 for label in DISTRIBUTION_LABELS.values()}
        for value, n in valid.astype(int).value_counts().items():
            distribution[DISTRIBUTION_LABELS[int(value)]] = int(n)

        out.append(
            QuestionScore(
                question=question,
                score=_round2(valid.mean()) if len(valid) else 0.0,
                distribution=distribution,
                valid_responses=int(len(valid)),
            )
        )
    return out


def _rollup(keys: pd.Series, scores: pd.Series) -> List[Tuple[str, float, int]]:
    """(key, mean of row means, scored row count) per non-empty key, first-seen order."""
    work = pd.DataFrame({"key": keys.values, "score": scores.values})
    work = work[(work["key"] != "") & work["score"].notna()]
    if work.empty:
        return []
    grouped = work.groupby("key", sort=False)["score"].agg(["mean", "count"])
    return [(str(k), float(r["mean"]), int(r["count"])) for k, r in grouped.iterrows()]


def _by_score_desc(items: List[Any], attr: str) -> List[Any]:
    # sorted() is stable: equal scores keep first-seen order
    return sorted(items, key=lambda x: getattr(x, attr), reverse=True)


def _handled_by(frame: pd.DataFrame, key_column: str, value_column: Optional[str]) -> Dict[str, List[str]]:
    """Distinct non-empty values of value_column per key, first-seen order."""
    handled: Dict[str, Dict[str, None]] = {}
    if value_column is None:
        return {}
    for key, value in zip(column_texts(frame, key_column), column_texts(frame, value_column)):
        if key and value:
            handled.setdefault(key, {}).setdefault(value, None)
    return {k: list(v) for k, v in handled.items()}


def calculate_group_scores(frame: pd.DataFrame, column: Optional[str], scores: pd.Series) -> List[GroupScore]:
    if column is None:
        return []
    groups = [
        GroupScore(name=k, score=_round2(mean), count=n)
        for k, mean, n in _rollup(column_texts(frame, column), scores)
    ]
    return _by_score_desc(groups, "score")[:TOP_GROUPS]


def calculate_faculty_scores(
    frame: pd.DataFrame,
    headers: Sequence[str],
    scores: pd.Series,
) -> List[FacultyScore]:
    faculty_col = find_column(headers, FACULTY_KEYWORDS)
    if faculty_col is None:
        return []
    course_col = find_column(headers, COURSE_KEYWORDS)
    section_col = find_column(headers, SECTION_KEYWORDS)

    courses = _handled_by(frame, faculty_col, course_col)
    sections = _handled_by(frame, faculty_col, section_col)

    faculty = [
        FacultyScore(
            name=name,
            score=_round2(mean),
            feedback_count=n,
            courses_handled=courses.get(name, []),
            sections_handled=sections.get(name, []),
            rating=rating_label(mean),
        )
        for name, mean, n in _rollup(column_texts(frame, faculty_col), scores)
    ]
    faculty = _by_score_desc(faculty, "score")

    # Dense rank: equal scores share a rank, the next score gets rank + 1
    rank = 0
    previous: Optional[float] = None
    for f in faculty:
        if previous is None or f.score != previous:
            rank += 1
            previous = f.score
        f.rank = rank
    return faculty


def calculate_course_scores(frame: pd.DataFrame, headers: Sequence[str], scores: pd.Series) -> List[CourseScore]:
    course_col = find_column(headers, COURSE_KEYWORDS)
    if course_col is None:
        return []
    sections = _handled_by(frame, course_col, find_column(headers, SECTION_KEYWORDS))
    courses = [
        CourseScore(
            course_name=name,
            average_score=_round2(mean),
            feedback_count=n,
            sections=sections.get(name, []),
        )
        for name, mean, n in _rollup(column_texts(frame, course_col), scores)
    ]
    return _by_score_desc(courses, "average_score")


def calculate_section_scores(frame: pd.DataFrame, headers: Sequence[str], scores: pd.Series) -> List[SectionScore]:
    section_col = find_column(headers, SECTION_KEYWORDS)
    if section_col is None:
        return []
    semester_col = find_column(headers, SEMESTER_KEYWORDS)
    course_col = find_column(headers, COURSE_KEYWORDS)

    section = column_texts(frame, section_col)
    semester = column_texts(frame, semester_col) if semester_col else pd.Series("", index=frame.index)
    course = column_texts(frame, course_col) if course_col else pd.Series("", index=frame.index)

    # Rows without a section are skipped even if semester/course are set
    keys = (section + _KEY_SEP + semester + _KEY_SEP + course).where(section != "", "")

    out: List[SectionScore] = []
    for key, mean, n in _rollup(keys, scores):
        sec, sem, crs = key.split(_KEY_SEP, 2)
        out.append(
            SectionScore(section=sec, semester=sem, course=crs, average_score=_round2(mean), feedback_count=n)
        )
    return _by_score_desc(out, "average_score")


def calculate_semester_scores(frame: pd.DataFrame, headers: Sequence[str], scores: pd.Series) -> List[SemesterScore]:
    semester_col = find_column(headers, SEMESTER_KEYWORDS)
    if semester_col is None:
        return []
    semesters = [
        SemesterScore(semester=name, score=_round2(mean), count=n)
        for name, mean, n in _rollup(column_texts(frame, semester_col), scores)
    ]
    return sorted(semesters, key=lambda s: s.semester)


def calculate_time_trends(frame: pd.DataFrame, headers: Sequence[str], scores: pd.Series) -> List[TrendPoint]:
    """
    Mean of row scores per month/week-of-month bucket, the last TREND_BUCKETS
    buckets in chronological order. Week of month is ceil(day / 7).
    """
    ts_col = find_column(headers, TIMESTAMP_KEYWORDS)
    if ts_col is None:
        return []

    texts = column_texts(frame, ts_col)
    # Offset-bearing and naive stamps can share a column; both are bucketed in UTC
    stamps = pd.to_datetime(texts.where(texts != ""), errors="coerce", format="mixed", utc=True)
    work = pd.DataFrame({"ts": stamps.values, "score": scores.values}).dropna()
    if work.empty:
        return []

    work["year"] = work["ts"].dt.year
    work["month"] = work["ts"].dt.month
    work["week"] = (work["ts"].dt.day / 7).apply(math.ceil)

    grouped = work.groupby(["year", "month", "week"], sort=True)
    buckets = grouped.agg(value=("score", "mean"), first=("ts", "min")).tail(TREND_BUCKETS)

    out: List[TrendPoint] = []
    for (year, month, week), row in buckets.iterrows():
        out.append(
            TrendPoint(
                label=f"{row['first'].strftime('%b')} W{int(week)}",
                period=f"{int(year):04d}-{int(month):02d}-W{int(week)}",
                value=_round2(row["value"]),
            )
        )
    return out


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------

def compute_aggregates(
    frame: pd.DataFrame,
    headers: Sequence[str],
    question_columns: Sequence[str],
) -> Analytics:
    """
    Aggregate a response set that has already been filtered.

    The overall average is the unweighted mean of the per-question scores, so
    every question weighs the same regardless of how many answers it got.
    Group rollups average each row's own question mean, then average those
    row means within the group.
    """
    if len(frame) == 0:
        return Analytics()

    cell_scores = score_frame(frame, question_columns)
    question_scores = calculate_question_scores(cell_scores)
    average_rating = (
        sum(q.score for q in question_scores) / len(question_scores) if question_scores else 0.0
    )

    per_row = row_scores(cell_scores)

    # Already ordered best first
    faculty_scores = calculate_faculty_scores(frame, headers, per_row)

    stats = OverallStats(
        total_faculty=len(distinct_texts(frame, find_column(headers, FACULTY_KEYWORDS))),
        total_courses=len(distinct_texts(frame, find_column(headers, COURSE_KEYWORDS))),
        total_sections=len(distinct_texts(frame, find_column(headers, SECTION_KEYWORDS))),
        average_by_parameter=question_scores,
    )

    return Analytics(
        total_responses=int(len(frame)),
        average_rating=_round2(average_rating),
        question_scores=question_scores,
        department_wise=calculate_group_scores(
            frame, find_column(headers, DEPARTMENT_KEYWORDS), per_row
        ),
        time_trends=calculate_time_trends(frame, headers, per_row),
        faculty_scores=faculty_scores,
        section_wise=calculate_section_scores(frame, headers, per_row),
        course_wise=calculate_course_scores(frame, headers, per_row),
        semester_wise=calculate_semester_scores(frame, headers, per_row),
        overall_stats=stats,
        top_performers=faculty_scores[:TOP_PERFORMERS],
        needs_improvement=[f for f in faculty_scores if f.score < NEEDS_IMPROVEMENT_BELOW][:TOP_PERFORMERS],
    )


def analyze(
    frame: pd.DataFrame,
    headers: Sequence[str],
    filter_state: Optional[FilterState] = None,
    name_mapping: Optional[NameMapping] = None,
    name_column: Optional[str] = None,
    overlay: Optional[SourceOverlay] = None,
) -> Analytics:
    """Filter on raw spellings, fold names into display labels, then aggregate."""
    filtered = apply_filters(frame, filter_state, name_mapping, name_column, overlay)
    question_columns = identify_question_columns(headers, filtered)
    resolved = resolve_names(filtered, name_column, name_mapping, overlay)
    analytics = compute_aggregates(resolved, headers, question_columns)

    if name_mapping is not None:
        analytics.name_normalization = {
            "original_count": name_mapping.total_original,
            "normalized_count": name_mapping.total_normalized,
            "groups": [g.to_dict() for g in name_mapping.groups],
        }
    return analytics
