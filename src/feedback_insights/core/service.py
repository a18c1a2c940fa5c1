from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import logging

import pandas as pd

from feedback_insights.config import (
    ANALYTICS_CACHE_TTL,
    CACHE_MAX_KEYS,
    CACHE_REFRESH_THRESHOLD,
    DEFAULT_PAGE_SIZE,
    FILTERED_DATA_CACHE_TTL,
    METADATA_CACHE_TTL,
    NAME_GROUP_THRESHOLD,
    NAME_MAPPING_CACHE_TTL,
    NAME_SUGGEST_THRESHOLD,
)
from feedback_insights.core.aggregation import Analytics, FilterState, analyze, apply_filters
from feedback_insights.core.cache import CacheService, filter_hash, make_key
from feedback_insights.core.columns import identify_filter_columns
from feedback_insights.core.grouping import NameMapping, build_name_mapping, find_name_column
from feedback_insights.core.overlay import (
    CategoryOverlay,
    DisplayOption,
    MergeOverlayStore,
    SourceOverlay,
    display_options,
    suggest_similar,
)
from feedback_insights.core.report import FacultyReport, build_faculty_report
from feedback_insights.core.sheets import SheetData, SheetSource, SheetValidation, UpdateCheck

logger = logging.getLogger(__name__)


@dataclass
class FilteredRows:
    headers: List[str]
    frame: pd.DataFrame


class AnalyticsService:
    """
    Operations consumed by the request-routing layer, one per concern.

    Every read is keyed by the sheet URL and returns plain dicts or
    dataclasses. Results are cached per source under "{kind}:{source}:{hash}"
    keys; passing `account` applies that account's merge overlay.
    """

    def __init__(
        self,
        sheets: Optional[SheetSource] = None,
        cache: Optional[CacheService] = None,
        overlays: Optional[MergeOverlayStore] = None,
        group_threshold: float = NAME_GROUP_THRESHOLD,
    ) -> None:
        if cache is None:
            cache = sheets.cache if sheets is not None else CacheService(
                refresh_threshold=CACHE_REFRESH_THRESHOLD,
                max_keys=CACHE_MAX_KEYS,
            )
        self.cache = cache
        self.sheets = sheets or SheetSource(cache)
        self.overlays = overlays or MergeOverlayStore()
        self.group_threshold = group_threshold

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _source_id(self, url: str) -> str:
        return self.sheets.source_id(url)

    def _overlay(self, url: str, account: Optional[str]) -> SourceOverlay:
        if not account:
            return {}
        return self.overlays.get(account, self._source_id(url))

    async def _name_mapping(self, url: str, sheet: SheetData) -> Optional[NameMapping]:
        name_column = find_name_column(sheet.headers)
        if name_column is None:
            return None

        async def compute() -> NameMapping:
            return build_name_mapping(sheet.frame, name_column, threshold=self.group_threshold)

        key = make_key("namemapping", self._source_id(url))
        return await self.cache.get_or_compute(key, compute, NAME_MAPPING_CACHE_TTL)

    async def _filtered(
        self,
        url: str,
        filter_state: Optional[FilterState],
        overlay: SourceOverlay,
    ) -> FilteredRows:
        """Rows matching the filters, raw spellings kept."""
        sheet = await self.sheets.get_sheet_data(url)
        mapping = await self._name_mapping(url, sheet)
        name_column = mapping.name_column if mapping is not None else None
        frame = apply_filters(sheet.frame, filter_state, mapping, name_column, overlay)
        return FilteredRows(headers=list(sheet.headers), frame=frame)

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    async def _build_metadata(self, url: str) -> Dict[str, Any]:
        t0 = time.perf_counter()
        sheet = await self.sheets.get_sheet_data(url)
        mapping = await self._name_mapping(url, sheet)

        metadata = {
            "headers": list(sheet.headers),
            # Original spellings; grouping is applied when filtering, not here
            "filters": identify_filter_columns(sheet.headers, sheet.frame),
            "total_rows": sheet.total_rows,
            "name_normalization": (
                {
                    "original_count": mapping.total_original,
                    "normalized_count": mapping.total_normalized,
                }
                if mapping is not None
                else None
            ),
        }
        logger.info("Built metadata for %s rows in %.0fms", sheet.total_rows, (time.perf_counter() - t0) * 1000)
        return metadata

    async def get_sheet_metadata(self, url: str) -> Dict[str, Any]:
        key = make_key("metadata", self._source_id(url))
        return await self.cache.get_or_compute(key, lambda: self._build_metadata(url), METADATA_CACHE_TTL)

    # ------------------------------------------------------------------
    # Analytics
    # ------------------------------------------------------------------

    async def _compute_analytics(
        self,
        url: str,
        filter_state: Optional[FilterState],
        overlay: SourceOverlay,
    ) -> Analytics:
        t0 = time.perf_counter()
        sheet = await self.sheets.get_sheet_data(url)
        mapping = await self._name_mapping(url, sheet)
        name_column = mapping.name_column if mapping is not None else None

        analytics = analyze(sheet.frame, sheet.headers, filter_state, mapping, name_column, overlay)
        logger.info(
            "Computed analytics for %s rows in %.0fms",
            analytics.total_responses, (time.perf_counter() - t0) * 1000,
        )
        return analytics

    async def get_analytics(
        self,
        url: str,
        filter_state: Optional[FilterState] = None,
        account: Optional[str] = None,
    ) -> Analytics:
        overlay = self._overlay(url, account)
        key = make_key("analytics", self._source_id(url), filter_hash(filter_state, overlay))
        return await self.cache.get_or_compute(
            key, lambda: self._compute_analytics(url, filter_state, overlay), ANALYTICS_CACHE_TTL
        )

    # ------------------------------------------------------------------
    # Faculty report
    # ------------------------------------------------------------------

    async def _compute_faculty_report(
        self,
        url: str,
        filter_state: Optional[FilterState],
        overlay: SourceOverlay,
    ) -> FacultyReport:
        sheet = await self.sheets.get_sheet_data(url)
        mapping = await self._name_mapping(url, sheet)
        name_column = mapping.name_column if mapping is not None else None
        frame = apply_filters(sheet.frame, filter_state, mapping, name_column, overlay)
        return build_faculty_report(frame, sheet.headers, mapping, name_column, overlay)

    async def get_faculty_report(
        self,
        url: str,
        filter_state: Optional[FilterState] = None,
        account: Optional[str] = None,
    ) -> FacultyReport:
        """Per-faculty question averages and remarks for the (filtered) responses."""
        overlay = self._overlay(url, account)
        key = make_key("report", self._source_id(url), filter_hash(filter_state, overlay))
        return await self.cache.get_or_compute(
            key, lambda: self._compute_faculty_report(url, filter_state, overlay), ANALYTICS_CACHE_TTL
        )

    # ------------------------------------------------------------------
    # Row access
    # ------------------------------------------------------------------

    async def get_filtered_data(
        self,
        url: str,
        filter_state: Optional[FilterState] = None,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
        account: Optional[str] = None,
    ) -> Dict[str, Any]:
        """One page of matching rows with their original spellings."""
        page = max(1, int(page))
        page_size = max(1, int(page_size))

        overlay = self._overlay(url, account)
        key = make_key("filtered", self._source_id(url), filter_hash(filter_state, overlay))
        rows: FilteredRows = await self.cache.get_or_compute(
            key, lambda: self._filtered(url, filter_state, overlay), FILTERED_DATA_CACHE_TTL
        )

        total_rows = int(len(rows.frame))
        start = (page - 1) * page_size
        chunk = rows.frame.iloc[start:start + page_size]
        return {
            "headers": rows.headers,
            "data": chunk.to_dict(orient="records"),
            "pagination": {
                "page": page,
                "page_size": page_size,
                "total_rows": total_rows,
                "total_pages": math.ceil(total_rows / page_size),
            },
        }

    async def get_filtered_data_for_export(
        self,
        url: str,
        filter_state: Optional[FilterState] = None,
        account: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Every matching row, unpaginated, in sheet order with raw spellings."""
        rows = await self._filtered(url, filter_state, self._overlay(url, account))
        return {
            "headers": rows.headers,
            "data": rows.frame.to_dict(orient="records"),
            "total_rows": int(len(rows.frame)),
        }

    # ------------------------------------------------------------------
    # Name groups
    # ------------------------------------------------------------------

    async def get_name_mappings(self, url: str) -> Dict[str, Any]:
        sheet = await self.sheets.get_sheet_data(url)
        mapping = await self._name_mapping(url, sheet)
        if mapping is None:
            return {
                "success": False,
                "message": "No faculty column found",
                "faculty_column": None,
                "groups": [],
            }
        return {
            "success": True,
            "faculty_column": mapping.name_column,
            "original_count": mapping.total_original,
            "normalized_count": mapping.total_normalized,
            "groups": [g.to_dict() for g in mapping.groups],
        }

    def clear_name_mapping_cache(self, url: str) -> Dict[str, Any]:
        """Drop the name groups and everything computed from them."""
        source_id = self._source_id(url)
        self.cache.delete(make_key("namemapping", source_id))
        for kind in ("metadata", "analytics", "filtered", "report"):
            self.cache.clear_by_prefix(make_key(kind, source_id, ""))
        return {"success": True, "message": "Name mapping cache cleared"}

    async def validate_sheet(self, url: str) -> SheetValidation:
        """Whether the sheet can be read, with its title and tab count when known."""
        return await self.sheets.validate_sheet(url)

    def refresh_source(self, url: str) -> int:
        """Forget every cached value of the sheet, raw data included."""
        return self.cache.clear_for_source(self._source_id(url))

    async def check_for_updates(self, url: str) -> UpdateCheck:
        """
        Compare the live row count with the cached snapshot. Small changes
        (1-10 rows) are pulled in right away; larger ones wait for the TTL.
        """
        info = await self.sheets.check_for_updates(url)
        if info.should_instant_refresh:
            logger.info("Smart refresh: %s row(s) changed, refreshing %s", info.delta, self._source_id(url))
            self.refresh_source(url)
            await self.sheets.get_sheet_data(url, force_refresh=True)
        return info

    # ------------------------------------------------------------------
    # Merge overlays
    # ------------------------------------------------------------------

    def _drop_overlay_results(self, url: str) -> None:
        # Keys already include the overlay digest; this just frees stale entries
        source_id = self._source_id(url)
        for kind in ("analytics", "filtered", "report"):
            self.cache.clear_by_prefix(make_key(kind, source_id, ""))

    def get_merged_names(self, account: str, url: str) -> SourceOverlay:
        return self.overlays.get(account, self._source_id(url))

    def merge_names(
        self,
        account: str,
        url: str,
        category: str,
        canonical: str,
        variants: Sequence[str],
    ) -> CategoryOverlay:
        updated = self.overlays.merge_names(account, self._source_id(url), category, canonical, variants)
        self._drop_overlay_results(url)
        return updated

    def unmerge_names(self, account: str, url: str, category: str, canonical: str) -> bool:
        removed = self.overlays.unmerge(account, self._source_id(url), category, canonical)
        if removed:
            self._drop_overlay_results(url)
        return removed

    def replace_merged_names(self, account: str, url: str, overlay: Any) -> SourceOverlay:
        updated = self.overlays.replace(account, self._source_id(url), overlay)
        self._drop_overlay_results(url)
        return updated

    async def suggest_similar_names(
        self,
        url: str,
        category: str,
        selected: Sequence[str],
        threshold: float = NAME_SUGGEST_THRESHOLD,
    ) -> List[str]:
        metadata = await self.get_sheet_metadata(url)
        known = metadata["filters"].get(category, [])
        return suggest_similar(selected, known, threshold=threshold)

    async def get_display_options(self, url: str, category: str, account: Optional[str] = None) -> List[DisplayOption]:
        metadata = await self.get_sheet_metadata(url)
        overlay = self._overlay(url, account)
        return display_options(metadata["filters"].get(category, []), overlay.get(category))

    async def close(self) -> None:
        await self.cache.drain()


def default_service(overlay_path: Optional[Any] = None) -> AnalyticsService:
    """Service wired with the configured cache and overlay file."""
    from feedback_insights.config import MERGE_OVERLAY_FILE

    cache = CacheService(refresh_threshold=CACHE_REFRESH_THRESHOLD, max_keys=CACHE_MAX_KEYS)
    return AnalyticsService(
        sheets=SheetSource(cache),
        cache=cache,
        overlays=MergeOverlayStore(overlay_path or MERGE_OVERLAY_FILE),
    )
