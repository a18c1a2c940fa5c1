import pandas as pd
import pytest

from feedback_insights.core.grouping import build_name_mapping
from feedback_insights.core.report import (
    SUMMARY_LABEL,
    build_faculty_report,
    is_valid_comment,
)

Q1 = "Explains concepts clearly and patiently"
Q2 = "Encourages questions during the lecture"
FACULTY = "Name of Faculty"
REMARKS = "Special Remarks about the course"
HEADERS = [
    "Timestamp", "School Name", "Department", "Semester", "Class-Section",
    FACULTY, "Course Name", Q1, Q2, REMARKS,
]


def _frame():
    rows = [
        ["2024-01-05", "SOE", "CSE", "Sem 1", "A", "Dr. Rao", "Maths", "5", "4", "Explains every topic with examples"],
        ["2024-01-06", "SOE", "CSE", "Sem 1", "A", "Rao Sir", "Maths", "3", "", "good"],
        ["2024-01-07", "SOE", "ECE", "Sem 2", "B", "Sharma", "Physics", "1", "2", "n/a"],
        ["2024-01-08", "SOE", "ECE", "Sem 2", "B", "", "Physics", "1", "1", "Needs more practice"],
    ]
    return pd.DataFrame(rows, columns=HEADERS, dtype=object)


def _report(frame=None, overlay=None):
    frame = _frame() if frame is None else frame
    mapping = build_name_mapping(frame, FACULTY)
    return build_faculty_report(frame, HEADERS, mapping, FACULTY, overlay)


@pytest.mark.parametrize(
    "text, expected",
    [
        ("Explains every topic with examples", True),
        ("  more labs please ", True),
        ("good", False),
        ("N/A", False),
        ("...", False),
        ("excellent", False),
        ("", False),
        (None, False),
    ],
)
def test_is_valid_comment(text, expected):
    assert is_valid_comment(text) is expected


def test_one_row_per_faculty_label():
    report = _report()

    assert report.questions == [Q1, Q2]
    assert [r.faculty for r in report.rows] == ["Rao", "Sharma"]

    rao, sharma = report.rows
    assert rao.question_averages == [4.0, 4.0]
    assert rao.overall_average == 4.0
    assert rao.response_count == 2
    assert (rao.school, rao.department, rao.semester, rao.section, rao.course) == (
        "SOE", "CSE", "Sem 1", "A", "Maths",
    )
    assert rao.remarks == ["Explains every topic with examples"]

    assert sharma.question_averages == [1.0, 2.0]
    assert sharma.overall_average == 1.5
    assert sharma.remarks == []


def test_summary_averages_every_included_response():
    report = _report()
    # The row without a faculty name is left out of the summary too
    assert report.summary_averages == [3.0, 3.0]
    assert report.summary_overall == 3.0


def test_merged_names_share_a_row():
    overlay = {FACULTY: {"Science Team": ["Dr. Rao", "Sharma"]}}
    report = _report(overlay=overlay)

    assert [(r.faculty, r.response_count) for r in report.rows] == [("Science Team", 2), ("Rao Sir", 1)]


def test_unanswered_question_averages_zero():
    frame = _frame()
    frame.loc[2, Q2] = ""
    report = _report(frame)

    sharma = report.rows[1]
    assert sharma.question_averages == [1.0, 0.0]
    assert sharma.overall_average == 1.0


def test_sheet_without_faculty_column():
    headers = ["Department", Q1]
    frame = pd.DataFrame([["CSE", "4"], ["ECE", "2"]], columns=headers, dtype=object)

    report = build_faculty_report(frame, headers)
    assert [(r.faculty, r.response_count, r.overall_average) for r in report.rows] == [("Unknown", 2, 3.0)]
    assert report.rows[0].department == "CSE"


def test_to_dict_uses_question_codes():
    payload = _report().to_dict()

    assert payload["questions"] == [{"code": "Q1", "question": Q1}, {"code": "Q2", "question": Q2}]
    assert payload["rows"][0]["faculty"] == "Rao"
    assert payload["summary"] == {"label": SUMMARY_LABEL, "question_averages": [3.0, 3.0], "overall_average": 3.0}
