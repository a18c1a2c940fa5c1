from __future__ import annotations

import json
import os
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import logging

from feedback_insights.core.names import names_match, normalize_name

logger = logging.getLogger(__name__)

DEFAULT_SUGGEST_THRESHOLD = 0.65

# canonical -> variants, for one category of one source
CategoryOverlay = Dict[str, List[str]]
# category -> CategoryOverlay, for one source
SourceOverlay = Dict[str, CategoryOverlay]


class MergeRequestError(ValueError):
    """Raised when a merge request is rejected before anything is persisted."""


@dataclass
class DisplayOption:
    label: str
    variants: List[str]

    @property
    def variant_count(self) -> int:
        return len(self.variants)

    def to_dict(self) -> Dict[str, Any]:
        return {"label": self.label, "variants": list(self.variants), "variant_count": self.variant_count}


# ---------------------------------------------------------------------------
# Resolution helpers (pure)
# ---------------------------------------------------------------------------

def find_overlay_entry(value: str, category_overlay: Mapping[str, Sequence[str]]) -> Optional[str]:
    """Canonical of the first entry listing value as a variant or as its canonical."""
    for canonical, variants in category_overlay.items():
        if value == canonical or value in variants:
            return canonical
    return None


def resolve_overlay_label(value: str, category_overlay: Mapping[str, Sequence[str]]) -> str:
    canonical = find_overlay_entry(value, category_overlay)
    return value if canonical is None else canonical


def overlay_siblings(value: str, category_overlay: Mapping[str, Sequence[str]]) -> List[str]:
    """value plus every spelling merged with it (and the canonical label itself)."""
    canonical = find_overlay_entry(value, category_overlay)
    if canonical is None:
        return [value]
    return [value, canonical, *category_overlay[canonical]]


def display_options(
    values: Iterable[str],
    category_overlay: Optional[Mapping[str, Sequence[str]]] = None,
) -> List[DisplayOption]:
    """Group raw facet values under their resolved labels, first-seen order."""
    grouped: Dict[str, List[str]] = {}
    for value in values:
        label = resolve_overlay_label(value, category_overlay or {})
        grouped.setdefault(label, []).append(value)
    return [DisplayOption(label=k, variants=v) for k, v in grouped.items()]


def suggest_similar(
    selected: Sequence[str],
    all_names: Iterable[str],
    threshold: float = DEFAULT_SUGGEST_THRESHOLD,
) -> List[str]:
    """
    Names the user may want to fold into a merge; purely advisory.

    Uses the grouping match rule at a looser threshold against each selected
    name. Already selected names are never suggested.
    """
    chosen = set(selected)
    targets = [normalize_name(s) for s in selected]
    targets = [t for t in targets if t]

    out: List[str] = []
    for name in all_names:
        if name in chosen or name in out:
            continue
        candidate = normalize_name(name)
        if not candidate:
            continue
        if any(names_match(t, candidate, threshold) for t in targets):
            out.append(name)
    return out


def merge_into(
    category_overlay: Mapping[str, Sequence[str]],
    canonical: str,
    variants: Sequence[str],
) -> CategoryOverlay:
    """
    New category overlay with variants moved under canonical.

    The variants are removed from any entry that held them, and entries left
    empty are dropped.
    """
    canonical = (canonical or "").strip()
    unique: List[str] = []
    for v in variants:
        v = str(v).strip()
        if v and v not in unique:
            unique.append(v)

    if not canonical:
        raise MergeRequestError("A canonical name is required to merge names.")
    if len(unique) < 2:
        raise MergeRequestError("Select at least two names to merge.")

    out: CategoryOverlay = {}
    for existing, members in category_overlay.items():
        kept = [m for m in members if m not in unique]
        if kept:
            out[existing] = kept
    out[canonical] = unique
    return out


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

def _validate_source_overlay(overlay: Any) -> SourceOverlay:
    if not isinstance(overlay, dict):
        raise MergeRequestError("Merged names must be an object of categories.")

    clean: SourceOverlay = {}
    for category, entries in overlay.items():
        if not isinstance(entries, dict):
            raise MergeRequestError(f"Merged names for '{category}' must be an object.")
        cat: CategoryOverlay = {}
        for canonical, variants in entries.items():
            if not isinstance(variants, list) or not all(isinstance(v, str) for v in variants):
                raise MergeRequestError(
                    f"Variants for '{canonical}' in '{category}' must be a list of strings."
                )
            if variants:
                cat[str(canonical)] = list(variants)
        if cat:
            clean[str(category)] = cat
    return clean


class MergeOverlayStore:
    """
    User merge overlays persisted as one JSON document:

      {account: {source_id: {category: {canonical: [variants]}}}}

    Entries stay until the user edits them. Every write rewrites the file via
    a temp file + rename so a crash never leaves half a document behind.
    """

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = Path(path) if path is not None else None
        self._lock = threading.Lock()
        self._data: Optional[Dict[str, Dict[str, SourceOverlay]]] = None

    # -- internal -----------------------------------------------------------

    def _load(self) -> Dict[str, Dict[str, SourceOverlay]]:
        if self._data is not None:
            return self._data

        if self.path is None or not self.path.exists():
            self._data = {}
            return self._data

        with self.path.open("r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Merge overlay file {self.path} does not hold a JSON object.")
        self._data = data
        logger.info("Loaded merge overlays for %s account(s) from %s", len(data), self.path)
        return self._data

    def _save(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=str(self.path.parent), prefix=".merged_names.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self._data, f, ensure_ascii=False, indent=2)
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    # -- reads --------------------------------------------------------------

    def get(self, account: str, source_id: str) -> SourceOverlay:
        """Deep copy of one source's overlay ({} when none)."""
        with self._lock:
            source = self._load().get(account, {}).get(source_id, {})
            return {cat: {c: list(v) for c, v in entries.items()} for cat, entries in source.items()}

    def get_all(self, account: str) -> Dict[str, SourceOverlay]:
        with self._lock:
            return json.loads(json.dumps(self._load().get(account, {})))

    # -- writes -------------------------------------------------------------

    def merge_names(
        self,
        account: str,
        source_id: str,
        category: str,
        canonical: str,
        variants: Sequence[str],
    ) -> CategoryOverlay:
        if not category:
            raise MergeRequestError("A category is required to merge names.")

        with self._lock:
            data = self._load()
            source = data.get(account, {}).get(source_id, {})
            # Raises before anything below touches the stored document
            updated = merge_into(source.get(category, {}), canonical, variants)

            data.setdefault(account, {}).setdefault(source_id, {})[category] = updated
            self._save()

        logger.info(
            "Merged %s name(s) under '%s' (source=%s, category=%s)",
            len(updated[canonical.strip()]), canonical.strip(), source_id, category,
        )
        return {c: list(v) for c, v in updated.items()}

    def unmerge(self, account: str, source_id: str, category: str, canonical: str) -> bool:
        with self._lock:
            data = self._load()
            source = data.get(account, {}).get(source_id, {})
            entries = source.get(category, {})
            if canonical not in entries:
                return False

            del entries[canonical]
            if not entries:
                del source[category]
            if not source:
                del data[account][source_id]
            if not data.get(account):
                data.pop(account, None)
            self._save()

        logger.info("Removed merge '%s' (source=%s, category=%s)", canonical, source_id, category)
        return True

    def replace(self, account: str, source_id: str, overlay: Any) -> SourceOverlay:
        clean = _validate_source_overlay(overlay)
        with self._lock:
            data = self._load()
            if clean:
                data.setdefault(account, {})[source_id] = clean
            else:
                data.get(account, {}).pop(source_id, None)
                if account in data and not data[account]:
                    del data[account]
            self._save()
        return {cat: {c: list(v) for c, v in entries.items()} for cat, entries in clean.items()}
