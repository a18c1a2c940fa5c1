"""
Per-faculty report, one row per display label.

Each row carries the faculty's context (school, department, semester,
section and course of its first response), the average of every question,
an overall average and the remarks worth reading. A summary row averages
every included response per question.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import logging

import pandas as pd

from feedback_insights.core.aggregation import SourceOverlay, resolve_names, score_frame
from feedback_insights.core.cells import cell_text, column_texts
from feedback_insights.core.columns import (
    COURSE_KEYWORDS,
    DEPARTMENT_KEYWORDS,
    FACULTY_KEYWORDS,
    SECTION_KEYWORDS,
    SEMESTER_KEYWORDS,
    find_column,
    identify_question_columns,
)
from feedback_insights.core.grouping import NameMapping

logger = logging.getLogger(__name__)

SCHOOL_KEYWORDS = ("school",)
REMARK_KEYWORDS = ("remark", "comment", "feedback", "suggestion")

# Remarks that carry no information about the teaching
FILLER_REMARKS = frozenset(
    {"na", "n/a", "nil", "none", "good", "ok", "okay", "nice", "fine", "-", ".", "..", "..."}
)

UNKNOWN_FACULTY = "Unknown"
SUMMARY_LABEL = "AVERAGE SUMMARY"


def is_valid_comment(text: Any) -> bool:
    """A remark of at least two words that is not a filler like "good" or "n/a"."""
    lower = cell_text(text).lower()
    if not lower or lower in FILLER_REMARKS:
        return False
    return len(lower.split()) > 1


def _average(values: pd.Series) -> Optional[float]:
    valid = values.dropna()
    if valid.empty:
        return None
    return round(float(valid.mean()), 2)


def _overall(averages: Sequence[Optional[float]]) -> float:
    present = [a for a in averages if a is not None]
    if not present:
        return 0.0
    return round(sum(present) / len(present), 2)


@dataclass
class FacultyReportRow:
    faculty: str
    school: str = ""
    department: str = ""
    semester: str = ""
    section: str = ""
    course: str = ""
    # One per report question, in question order; 0.0 where nobody answered
    question_averages: List[float] = field(default_factory=list)
    overall_average: float = 0.0
    response_count: int = 0
    remarks: List[str] = field(default_factory=list)


@dataclass
class FacultyReport:
    questions: List[str] = field(default_factory=list)
    rows: List[FacultyReportRow] = field(default_factory=list)
    summary_averages: List[float] = field(default_factory=list)
    summary_overall: float = 0.0

    def question_codes(self) -> Dict[str, str]:
        """Short column codes ("Q1", "Q2"...) for the question headers."""
        return {f"Q{i}": q for i, q in enumerate(self.questions, start=1)}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "questions": [{"code": code, "question": q} for code, q in self.question_codes().items()],
            "rows": [asdict(r) for r in self.rows],
            "summary": {
                "label": SUMMARY_LABEL,
                "question_averages": list(self.summary_averages),
                "overall_average": self.summary_overall,
            },
        }


def build_faculty_report(
    frame: pd.DataFrame,
    headers: Sequence[str],
    name_mapping: Optional[NameMapping] = None,
    name_column: Optional[str] = None,
    overlay: Optional[SourceOverlay] = None,
) -> FacultyReport:
    """
    Report for an already filtered frame, grouped by faculty display label.

    Merged names (overlay first, then automatic groups) share one row. Rows
    with an empty faculty cell are left out; a sheet without a faculty
    column is reported as a single "Unknown" faculty.
    """
    questions = identify_question_columns(headers, frame)
    others = [h for h in headers if h not in questions]

    remark_col = find_column(others, REMARK_KEYWORDS)
    context = [h for h in others if h != remark_col]
    faculty_col = name_column or find_column(context, FACULTY_KEYWORDS)
    info_cols = {
        "school": find_column(context, SCHOOL_KEYWORDS),
        "department": find_column(context, DEPARTMENT_KEYWORDS),
        "semester": find_column(context, SEMESTER_KEYWORDS),
        "section": find_column(context, SECTION_KEYWORDS),
        "course": find_column(context, COURSE_KEYWORDS),
    }

    resolved = resolve_names(frame, faculty_col, name_mapping, overlay)
    if faculty_col is None:
        labels = pd.Series(UNKNOWN_FACULTY, index=resolved.index, dtype=object)
    else:
        labels = column_texts(resolved, faculty_col)

    keep = labels != ""
    resolved, labels = resolved[keep], labels[keep]
    scores = score_frame(resolved, questions)

    rows: List[FacultyReportRow] = []
    for label in dict.fromkeys(labels):
        mask = labels == label
        part = resolved[mask]
        averages = [_average(scores.loc[mask, q]) for q in questions]
        first = part.iloc[0]
        remarks = (
            [t for t in column_texts(part, remark_col) if is_valid_comment(t)]
            if remark_col is not None
            else []
        )
        rows.append(
            FacultyReportRow(
                faculty=label,
                question_averages=[a if a is not None else 0.0 for a in averages],
                overall_average=_overall(averages),
                response_count=int(mask.sum()),
                remarks=remarks,
                **{k: (cell_text(first[c]) if c is not None else "") for k, c in info_cols.items()},
            )
        )

    summary = [_average(scores[q]) for q in questions]
    logger.info("Built faculty report: %s faculty over %s responses", len(rows), len(resolved))
    return FacultyReport(
        questions=list(questions),
        rows=rows,
        summary_averages=[a if a is not None else 0.0 for a in summary],
        summary_overall=_overall(summary),
    )
