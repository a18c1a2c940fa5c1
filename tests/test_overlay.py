import json

import pytest

from feedback_insights.core.overlay import (
    MergeOverlayStore,
    MergeRequestError,
    display_options,
    merge_into,
    overlay_siblings,
    resolve_overlay_label,
    suggest_similar,
)

FACULTY = "Name of Faculty"


def test_merge_into_creates_entry():
    assert merge_into({}, " Rao ", ["Dr. Rao", "Rao Sir", "Dr. Rao"]) == {"Rao": ["Dr. Rao", "Rao Sir"]}


def test_merge_into_moves_variants_out_of_other_entries():
    existing = {"X": ["a", "b"], "Y": ["c"]}
    assert merge_into(existing, "Z", ["b", "c"]) == {"X": ["a"], "Z": ["b", "c"]}
    # Input is not modified
    assert existing == {"X": ["a", "b"], "Y": ["c"]}


@pytest.mark.parametrize(
    "canonical, variants",
    [("Rao", ["Dr. Rao"]), ("Rao", ["Dr. Rao", "Dr. Rao"]), ("  ", ["a", "b"]), ("Rao", [])],
)
def test_merge_into_rejects_bad_requests(canonical, variants):
    with pytest.raises(MergeRequestError):
        merge_into({}, canonical, variants)


def test_resolution_helpers():
    overlay = {"Rao": ["Dr. Rao", "Rao Sir"]}
    assert resolve_overlay_label("Rao Sir", overlay) == "Rao"
    assert resolve_overlay_label("Sharma", overlay) == "Sharma"
    assert set(overlay_siblings("Rao", overlay)) == {"Rao", "Dr. Rao", "Rao Sir"}
    assert overlay_siblings("Sharma", overlay) == ["Sharma"]


def test_display_options_group_under_labels():
    options = display_options(["Dr. Rao", "Rao Sir", "RAO"], {"Rao": ["Dr. Rao", "Rao Sir"]})
    assert [o.to_dict() for o in options] == [
        {"label": "Rao", "variants": ["Dr. Rao", "Rao Sir"], "variant_count": 2},
        {"label": "RAO", "variants": ["RAO"], "variant_count": 1},
    ]
    assert [o.label for o in display_options(["b", "a"])] == ["b", "a"]


def test_suggest_similar():
    names = ["Dr. Rao", "Rao Sir", "Sharma", "RAO", "Rao Sir"]
    assert suggest_similar(["Dr. Rao"], names) == ["Rao Sir", "RAO"]
    assert suggest_similar([], names) == []


def test_store_persists_merges(tmp_path):
    path = tmp_path / "merged_names.json"
    store = MergeOverlayStore(path)

    updated = store.merge_names("alice", "sheet1", FACULTY, "Rao", ["Dr. Rao", "Rao Sir"])
    assert updated == {"Rao": ["Dr. Rao", "Rao Sir"]}

    on_disk = json.loads(path.read_text(encoding="utf-8"))
    assert on_disk == {"alice": {"sheet1": {FACULTY: {"Rao": ["Dr. Rao", "Rao Sir"]}}}}

    reloaded = MergeOverlayStore(path)
    assert reloaded.get("alice", "sheet1") == {FACULTY: {"Rao": ["Dr. Rao", "Rao Sir"]}}
    assert reloaded.get("bob", "sheet1") == {}
    assert reloaded.get_all("alice") == {"sheet1": {FACULTY: {"Rao": ["Dr. Rao", "Rao Sir"]}}}


def test_store_get_returns_a_copy(tmp_path):
    store = MergeOverlayStore(tmp_path / "m.json")
    store.merge_names("alice", "sheet1", FACULTY, "Rao", ["Dr. Rao", "Rao Sir"])

    snapshot = store.get("alice", "sheet1")
    snapshot[FACULTY]["Rao"].append("RAO")
    assert store.get("alice", "sheet1")[FACULTY]["Rao"] == ["Dr. Rao", "Rao Sir"]


def test_rejected_merge_leaves_file_untouched(tmp_path):
    path = tmp_path / "merged_names.json"
    store = MergeOverlayStore(path)
    store.merge_names("alice", "sheet1", FACULTY, "Rao", ["Dr. Rao", "Rao Sir"])
    before = path.read_bytes()

    with pytest.raises(MergeRequestError):
        store.merge_names("alice", "sheet1", FACULTY, "Sharma", ["Sharma"])
    with pytest.raises(MergeRequestError):
        store.merge_names("alice", "sheet1", "", "Sharma", ["Sharma", "Sarma"])

    assert path.read_bytes() == before


def test_unmerge_prunes_empty_levels(tmp_path):
    path = tmp_path / "merged_names.json"
    store = MergeOverlayStore(path)
    store.merge_names("alice", "sheet1", FACULTY, "Rao", ["Dr. Rao", "Rao Sir"])

    assert store.unmerge("alice", "sheet1", FACULTY, "Rao") is True
    assert store.unmerge("alice", "sheet1", FACULTY, "Rao") is False
    assert json.loads(path.read_text(encoding="utf-8")) == {}


def test_replace_validates_and_overwrites(tmp_path):
    store = MergeOverlayStore(tmp_path / "m.json")
    store.merge_names("alice", "sheet1", FACULTY, "Rao", ["Dr. Rao", "Rao Sir"])

    replaced = store.replace("alice", "sheet1", {"Department": {"CS": ["CSE", "Computer Science"]}, "Empty": {}})
    assert replaced == {"Department": {"CS": ["CSE", "Computer Science"]}}
    assert store.get("alice", "sheet1") == replaced

    with pytest.raises(MergeRequestError):
        store.replace("alice", "sheet1", ["not", "a", "dict"])
    with pytest.raises(MergeRequestError):
        store.replace("alice", "sheet1", {"Department": {"CS": "CSE"}})
    assert store.get("alice", "sheet1") == replaced

    assert store.replace("alice", "sheet1", {}) == {}
    assert store.get_all("alice") == {}


def test_memory_only_store():
    store = MergeOverlayStore()
    store.merge_names("alice", "sheet1", FACULTY, "Rao", ["Dr. Rao", "Rao Sir"])
    assert store.get("alice", "sheet1") == {FACULTY: {"Rao": ["Dr. Rao", "Rao Sir"]}}
