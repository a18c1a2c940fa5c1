import pandas as pd

from feedback_insights.core.aggregation import (
    Analytics,
    analyze,
    apply_filters,
    calculate_faculty_scores,
    calculate_group_scores,
    calculate_time_trends,
    compute_aggregates,
    expand_selection,
    rating_label,
)
from feedback_insights.core.grouping import build_name_mapping

QUESTION = "Explains concepts clearly and patiently"
FACULTY = "Name of Faculty"
HEADERS = ["Timestamp", "Department", "Semester", "Class-Section", FACULTY, "Course Name", QUESTION]


def _rao_frame():
    rows = [
        ["2024-01-05 10:00:00", "CSE", "Sem 1", "A", "Dr. Rao", "Maths", "5"],
        ["2024-01-06 10:00:00", "CSE", "Sem 1", "A", "Rao Sir", "Maths", "4"],
        ["2024-01-20 10:00:00", "ECE", "Sem 2", "B", "RAO", "Physics", "3"],
    ]
    return pd.DataFrame(rows, columns=HEADERS, dtype=object)


def _analyze(frame, filter_state=None, overlay=None):
    mapping = build_name_mapping(frame, FACULTY)
    return analyze(frame, HEADERS, filter_state, mapping, FACULTY, overlay)


def test_spelling_variants_fold_into_one_faculty():
    result = _analyze(_rao_frame())

    assert result.total_responses == 3
    assert result.average_rating == 4.0
    assert len(result.faculty_scores) == 1

    rao = result.faculty_scores[0]
    assert rao.name == "Rao"
    assert rao.feedback_count == 3
    assert rao.score == 4.0
    assert rao.rating == "Very Good"
    assert rao.rank == 1
    assert rao.courses_handled == ["Maths", "Physics"]
    assert rao.sections_handled == ["A", "B"]

    assert result.overall_stats.total_faculty == 1
    assert result.overall_stats.total_courses == 2
    assert result.overall_stats.total_sections == 2
    assert result.name_normalization["original_count"] == 3
    assert result.name_normalization["normalized_count"] == 1


def test_question_distribution():
    result = _analyze(_rao_frame())
    (question,) = result.question_scores

    assert question.question == QUESTION
    assert question.score == 4.0
    assert question.valid_responses == 3
    assert question.distribution == {
        "Strongly Agree": 1,
        "Agree": 1,
        "Neutral": 1,
        "Disagree": 0,
        "Strongly Disagree": 0,
    }


def test_group_rollups():
    result = _analyze(_rao_frame())

    assert [(d.name, d.score, d.count) for d in result.department_wise] == [("CSE", 4.5, 2), ("ECE", 3.0, 1)]
    assert [(s.semester, s.score) for s in result.semester_wise] == [("Sem 1", 4.5), ("Sem 2", 3.0)]
    assert [(c.course_name, c.average_score, c.sections) for c in result.course_wise] == [
        ("Maths", 4.5, ["A"]),
        ("Physics", 3.0, ["B"]),
    ]
    assert [(s.section, s.semester, s.course, s.feedback_count) for s in result.section_wise] == [
        ("A", "Sem 1", "Maths", 2),
        ("B", "Sem 2", "Physics", 1),
    ]


def test_time_trends_bucket_by_week_of_month():
    result = _analyze(_rao_frame())
    assert [(t.label, t.period, t.value) for t in result.time_trends] == [
        ("Jan W1", "2024-01-W1", 4.5),
        ("Jan W3", "2024-01-W3", 3.0),
    ]


def test_time_trends_keep_last_ten_buckets():
    stamps = [f"2023-{m:02d}-15 09:00:00" for m in range(1, 13)]
    frame = pd.DataFrame({"Timestamp": stamps}, dtype=object)
    scores = pd.Series([4.0] * 12, index=frame.index)

    trends = calculate_time_trends(frame, ["Timestamp"], scores)
    assert len(trends) == 10
    assert trends[0].period == "2023-03-W3"
    assert trends[-1].period == "2023-12-W3"


def test_selecting_one_variant_selects_its_group():
    frame = _rao_frame()
    result = _analyze(frame, {FACULTY: ["RAO"]})
    assert result.total_responses == 3

    # Without automatic grouping only the literal spelling matches
    assert len(apply_filters(frame, {FACULTY: ["RAO"]})) == 1


def test_filters_and_across_categories():
    frame = _rao_frame()
    assert len(apply_filters(frame, {"Department": ["CSE"]})) == 2
    assert len(apply_filters(frame, {"Department": ["CSE", "ECE"]})) == 3
    assert len(apply_filters(frame, {"Department": ["CSE"], "Course Name": ["Physics"]})) == 0


def test_filters_are_composable_and_monotone():
    frame = _rao_frame()
    narrow = apply_filters(frame, {"Department": ["CSE"]})
    wider = apply_filters(frame, {"Department": ["CSE", "ECE"]})
    stacked = apply_filters(frame, {"Department": ["CSE"], "Semester": ["Sem 1"]})

    assert set(narrow.index) <= set(wider.index)
    assert set(stacked.index) <= set(narrow.index)
    assert list(apply_filters(narrow, {"Semester": ["Sem 1"]}).index) == list(stacked.index)


def test_inactive_and_unknown_filters_are_ignored():
    frame = _rao_frame()
    assert apply_filters(frame, None) is frame
    assert apply_filters(frame, {"Department": []}) is frame
    assert apply_filters(frame, {"Not A Column": ["x"]}) is frame


def test_filtered_rows_keep_original_spellings():
    frame = _rao_frame()
    mapping = build_name_mapping(frame, FACULTY)
    out = apply_filters(frame, {FACULTY: ["Rao"]}, mapping, FACULTY)
    assert list(out[FACULTY]) == ["Dr. Rao", "Rao Sir", "RAO"]


def test_overlay_replaces_automatic_grouping():
    overlay = {FACULTY: {"Professor Rao": ["Dr. Rao", "Rao Sir"]}}
    result = _analyze(_rao_frame(), overlay=overlay)

    assert [(f.name, f.score, f.feedback_count, f.rank) for f in result.faculty_scores] == [
        ("Professor Rao", 4.5, 2, 1),
        ("RAO", 3.0, 1, 2),
    ]

    filtered = _analyze(_rao_frame(), {FACULTY: ["Professor Rao"]}, overlay=overlay)
    assert filtered.total_responses == 2


def test_expand_selection():
    frame = _rao_frame()
    mapping = build_name_mapping(frame, FACULTY)
    overlay = {FACULTY: {"Professor Rao": ["Dr. Rao"]}}

    assert expand_selection("Department", ["CSE"], mapping, FACULTY) == {"CSE"}
    assert expand_selection(FACULTY, ["Rao Sir"], mapping, FACULTY) == {"Dr. Rao", "Rao Sir", "RAO"}
    assert expand_selection(FACULTY, ["Dr. Rao"], mapping, FACULTY, overlay) == {"Dr. Rao", "Professor Rao"}


def test_no_matching_rows_gives_zero_record():
    result = _analyze(_rao_frame(), {"Department": ["MECH"]})
    assert result.total_responses == 0
    assert result.average_rating == 0.0
    assert result.faculty_scores == []
    assert result.time_trends == []


def test_empty_frame_is_default_analytics():
    empty = pd.DataFrame(columns=HEADERS, dtype=object)
    assert compute_aggregates(empty, HEADERS, [QUESTION]) == Analytics()


def test_rows_without_scores_are_not_counted_in_rollups():
    frame = _rao_frame()
    frame.loc[2, QUESTION] = "no opinion"
    result = _analyze(frame)

    assert result.total_responses == 3
    assert result.faculty_scores[0].feedback_count == 2
    assert [d.name for d in result.department_wise] == ["CSE"]


def test_dense_rank_and_needs_improvement():
    names = ["A", "B", "C", "D"]
    frame = pd.DataFrame({FACULTY: names}, dtype=object)
    scores = pd.Series([5.0, 5.0, 4.0, 2.0], index=frame.index)

    faculty = calculate_faculty_scores(frame, [FACULTY], scores)
    assert [(f.name, f.rank) for f in faculty] == [("A", 1), ("B", 1), ("C", 2), ("D", 3)]

    result = compute_aggregates(
        pd.DataFrame({FACULTY: names, QUESTION: ["5", "5", "4", "2"]}, dtype=object),
        [FACULTY, QUESTION],
        [QUESTION],
    )
    assert [f.name for f in result.top_performers] == ["A", "B", "C", "D"]
    assert [f.name for f in result.needs_improvement] == ["D"]


def test_rating_labels():
    assert rating_label(4.5) == "Excellent"
    assert rating_label(4.49) == "Very Good"
    assert rating_label(3.5) == "Good"
    assert rating_label(3.0) == "Satisfactory"
    assert rating_label(2.99) == "Needs Improvement"


def test_mixed_cell_types_score_alike():
    frame = pd.DataFrame({FACULTY: ["A", "A", "A"], QUESTION: [4.0, "4", " Agree "]}, dtype=object)
    result = compute_aggregates(frame, [FACULTY, QUESTION], [QUESTION])
    assert result.question_scores[0].score == 4.0
    assert result.question_scores[0].distribution["Agree"] == 3


def test_time_trends_accept_naive_and_offset_stamps_together():
    frame = pd.DataFrame(
        {"Timestamp": ["2024-01-05 10:00:00", "2024-01-06T10:00:00+05:30", "not a date"]},
        dtype=object,
    )
    scores = pd.Series([5.0, 3.0, 4.0], index=frame.index)

    trends = calculate_time_trends(frame, ["Timestamp"], scores)
    assert [(t.label, t.period, t.value) for t in trends] == [("Jan W1", "2024-01-W1", 4.0)]


def test_department_rollup_keeps_top_ten_by_score():
    departments = [f"D{i:02d}" for i in range(12)]
    frame = pd.DataFrame({"Department": departments}, dtype=object)
    scores = pd.Series([1.0 + 0.3 * i for i in range(12)], index=frame.index)

    groups = calculate_group_scores(frame, "Department", scores)
    assert len(groups) == 10
    assert [g.name for g in groups] == [f"D{i:02d}" for i in range(11, 1, -1)]
    assert [g.score for g in groups] == sorted((g.score for g in groups), reverse=True)


def test_department_wise_is_capped_at_ten():
    rows = [[f"Dept {i:02d}", str(1 + i % 5)] for i in range(11)]
    frame = pd.DataFrame(rows, columns=["Department", QUESTION], dtype=object)

    result = compute_aggregates(frame, ["Department", QUESTION], [QUESTION])
    assert len(result.department_wise) == 10
    assert [d.score for d in result.department_wise] == sorted(
        (d.score for d in result.department_wise), reverse=True
    )
    # Equal scores keep sheet order, so the last of the lowest-scored departments drops out
    assert "Dept 10" not in [d.name for d in result.department_wise]


def test_punctuation_only_faculty_names_still_roll_up():
    rows = [
        ["2024-01-05 10:00:00", "CSE", "Sem 1", "A", ".", "Maths", "5"],
        ["2024-01-06 10:00:00", "CSE", "Sem 1", "A", "..", "Maths", "3"],
        ["2024-01-07 10:00:00", "CSE", "Sem 1", "A", "Rao", "Maths", "4"],
    ]
    result = _analyze(pd.DataFrame(rows, columns=HEADERS, dtype=object))

    counts = {f.name: f.feedback_count for f in result.faculty_scores}
    assert counts == {".": 2, "Rao": 1}
