from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import logging

import pandas as pd

from feedback_insights.core.cells import column_texts
from feedback_insights.core.names import names_match, normalize_name

logger = logging.getLogger(__name__)

DEFAULT_GROUP_THRESHOLD = 0.75

# Substrings that mark the column holding the person names we reconcile
NAME_COLUMN_KEYWORDS = ("faculty", "teacher")


@dataclass
class NameGroup:
    """Raw spellings believed to refer to one person, under one display label."""
    canonical: str
    variants: List[str]
    total_count: int

    def to_dict(self) -> Dict[str, object]:
        return {
            "canonical": self.canonical,
            "variants": list(self.variants),
            "total_feedbacks": self.total_count,
        }


@dataclass
class NameMapping:
    """
    Result of one automatic grouping pass over a name column.

    mapping:          raw variant -> canonical label
    reverse_mapping:  canonical label -> every raw variant under it
    """
    name_column: str
    groups: List[NameGroup]
    mapping: Dict[str, str] = field(default_factory=dict)
    reverse_mapping: Dict[str, List[str]] = field(default_factory=dict)
    total_original: int = 0

    @property
    def total_normalized(self) -> int:
        return len(self.groups)

    def canonical_for(self, raw: str) -> str:
        return self.mapping.get(raw, raw)

    def variants_for(self, raw: str) -> List[str]:
        return self.reverse_mapping.get(self.canonical_for(raw), [raw])


@dataclass
class _Candidate:
    original: str
    normalized: str
    count: int


def find_name_column(headers: Sequence[str]) -> Optional[str]:
    for header in headers:
        lower = header.lower()
        if any(k in lower for k in NAME_COLUMN_KEYWORDS):
            return header
    return None


def elect_canonical(members: Iterable[Tuple[str, int]]) -> str:
    """
    Pick the display label for a group of (raw, count) members.

    Counts are summed per raw string; the highest total wins, ties go to the
    longest normalized form, and the winner is returned normalized. A winner
    made only of dots and spaces keeps its trimmed raw text.
    """
    totals: Dict[str, int] = {}
    for raw, count in members:
        totals[raw] = totals.get(raw, 0) + count

    # max() keeps the first of equal keys, so ties beyond length follow input order
    winner = max(totals.items(), key=lambda kv: (kv[1], len(normalize_name(kv[0]))))
    return normalize_name(winner[0]) or winner[0].strip()


def group_names(
    variants: Sequence[Tuple[str, int]],
    threshold: float = DEFAULT_GROUP_THRESHOLD,
) -> List[NameGroup]:
    """
    Partition raw names into groups of probable same-person spellings.

    This is a greedy, order-sensitive clustering on purpose: the most frequent
    names seed groups, and each seed scans the still-unassigned names exactly
    once. The result is not a global optimum, but it is stable for a stable
    input order, which keeps canonical labels from drifting between runs.
    """
    candidates = [
        _Candidate(original=raw, normalized=normalize_name(raw), count=int(count))
        for raw, count in variants
    ]
    # sorted() is stable, so equal counts keep their input order
    candidates = sorted(candidates, key=lambda c: c.count, reverse=True)

    groups: List[NameGroup] = []
    assigned: set = set()

    for seed in candidates:
        if seed.original in assigned:
            continue

        members = [seed]
        assigned.add(seed.original)

        for other in candidates:
            if other.original in assigned:
                continue
            if names_match(seed.normalized, other.normalized, threshold):
                members.append(other)
                assigned.add(other.original)

        groups.append(
            NameGroup(
                canonical=elect_canonical((m.original, m.count) for m in members),
                variants=[m.original for m in members],
                total_count=sum(m.count for m in members),
            )
        )

    return groups


def count_names(frame: pd.DataFrame, name_column: str) -> List[Tuple[str, int]]:
    """Distinct trimmed, non-empty names with their counts, in first-seen order."""
    counts: Dict[str, int] = {}
    for name in column_texts(frame, name_column):
        if name:
            counts[name] = counts.get(name, 0) + 1
    return list(counts.items())


def build_name_mapping(
    frame: pd.DataFrame,
    name_column: str,
    threshold: float = DEFAULT_GROUP_THRESHOLD,
) -> NameMapping:
    observed = count_names(frame, name_column)
    groups = group_names(observed, threshold=threshold)

    mapping: Dict[str, str] = {}
    reverse_mapping: Dict[str, List[str]] = {}
    for group in groups:
        # Two groups can elect the same label; their variants then share it
        reverse_mapping.setdefault(group.canonical, []).extend(group.variants)
        for variant in group.variants:
            mapping[variant] = group.canonical

    logger.info(
        "Name normalization for '%s': %s original names -> %s groups",
        name_column, len(observed), len(groups),
    )

    return NameMapping(
        name_column=name_column,
        groups=groups,
        mapping=mapping,
        reverse_mapping=reverse_mapping,
        total_original=len(observed),
    )
