from __future__ import annotations

import asyncio
import io
import re
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

import logging

import pandas as pd
import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from feedback_insights.config import (
    INSTANT_REFRESH_MAX_DELTA,
    SHEET_DATA_CACHE_TTL,
    SHEETS_API_BASE_URL,
    SHEETS_API_KEY,
    SHEETS_EXPORT_URL,
    SHEETS_GVIZ_URL,
    SHEETS_TIMEOUT_SECONDS,
)
from feedback_insights.core.cache import CacheService, make_key

logger = logging.getLogger(__name__)

_SHEET_ID_RE = re.compile(r"/spreadsheets/d/([a-zA-Z0-9-_]+)")


class SheetAccessError(Exception):
    """Raised when the backing spreadsheet cannot be read (network, permission, shape)."""


class InvalidSheetUrlError(SheetAccessError):
    """Raised when a URL does not point at a Google Sheet."""


@dataclass
class SheetData:
    """
    One snapshot of a sheet: ordered unique headers plus the data rows.

    frame has exactly `headers` as columns (object dtype). Cells are str,
    int/float, or "" for empty. Never mutate frame in place; derive new frames.
    """
    headers: List[str]
    frame: pd.DataFrame = field(repr=False)

    @property
    def total_rows(self) -> int:
        return int(len(self.frame))

    def records(self, frame: Optional[pd.DataFrame] = None) -> List[Dict[str, Any]]:
        """Rows as header -> cell dicts, in sheet order."""
        frame = self.frame if frame is None else frame
        return frame.to_dict(orient="records")


@dataclass
class UpdateCheck:
    has_changed: bool
    delta: int
    current_count: int
    cached_count: int
    should_instant_refresh: bool
    error: Optional[str] = None


@dataclass
class SheetValidation:
    valid: bool
    title: Optional[str] = None
    sheet_count: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def extract_spreadsheet_id(url: str) -> str:
    match = _SHEET_ID_RE.search(url or "")
    if not match:
        raise InvalidSheetUrlError("Invalid Google Sheets URL")
    return match.group(1)


def _build_retry_session() -> requests.Session:
    """
    Build a requests Session with conservative retries.
    Google endpoints occasionally answer 429/5xx under load.
    """
    session = requests.Session()

    retry = Retry(
        total=4,
        connect=4,
        read=4,
        status=4,
        backoff_factor=0.6,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=frozenset({"GET"}),
        raise_on_status=False,
    )

    adapter = HTTPAdapter(max_retries=retry, pool_connections=10, pool_maxsize=10)
    session.mount("https://", adapter)
    session.mount("http://", adapter)

    return session


def _dedupe_headers(raw: List[Any]) -> List[str]:
    """Trim headers and suffix repeats ("Remarks", "Remarks (2)") so columns stay unique."""
    seen: Dict[str, int] = {}
    out: List[str] = []
    for h in raw:
        name = "" if h is None else str(h).strip()
        if name in seen:
            seen[name] += 1
            name = f"{name} ({seen[name]})"
        else:
            seen[name] = 1
        out.append(name)
    return out


def rows_to_sheet(rows: List[List[Any]]) -> SheetData:
    """
    Build SheetData from raw cell rows, the first being the header row.

    Short rows are padded with "" and cells beyond the header width dropped.
    """
    if not rows or not rows[0]:
        raise SheetAccessError("Sheet is empty or inaccessible")

    headers = _dedupe_headers(list(rows[0]))
    width = len(headers)
    body = [
        [("" if c is None else c) for c in (list(r) + [""] * width)[:width]]
        for r in rows[1:]
    ]
    frame = pd.DataFrame(body, columns=headers, dtype=object)
    return SheetData(headers=headers, frame=frame)


class SheetsClient:
    """
    Blocking reads of the first tab of a Google Sheet.

    With an API key the Sheets v4 values endpoint is used (numbers stay
    numbers); without one, the sheet's CSV export is parsed with every cell
    kept as a string.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        timeout_seconds: int = SHEETS_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.api_key = SHEETS_API_KEY if api_key is None else api_key
        self.timeout_seconds = timeout_seconds
        self._session = session

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            self._session = _build_retry_session()
        return self._session

    def _get(self, url: str, params: Dict[str, Any]) -> requests.Response:
        try:
            resp = self.session.get(url, params=params, timeout=self.timeout_seconds)
        except requests.RequestException as exc:
            raise SheetAccessError(f"HTTP error while reading sheet: {exc}") from exc

        if resp.status_code in (401, 403):
            raise SheetAccessError(
                "Access denied. Share the sheet (or check the API key) and try again."
            )
        if resp.status_code == 404:
            raise SheetAccessError("Sheet not found.")
        if resp.status_code >= 400:
            preview = (resp.text or "")[:200]
            raise SheetAccessError(f"Sheet request failed (status={resp.status_code}). Preview: {preview}")
        return resp

    # -- Sheets v4 API ------------------------------------------------------

    @staticmethod
    def _json(resp: requests.Response) -> Dict[str, Any]:
        try:
            return resp.json()
        except ValueError as exc:
            raise SheetAccessError("Non-JSON response from Sheets API") from exc

    def _spreadsheet(self, sheet_id: str, fields: str) -> Dict[str, Any]:
        return self._json(self._get(f"{SHEETS_API_BASE_URL}/{sheet_id}", {"key": self.api_key, "fields": fields}))

    def _first_sheet_title(self, sheet_id: str) -> str:
        sheets = self._spreadsheet(sheet_id, "sheets.properties").get("sheets") or []
        if not sheets:
            return "Sheet1"
        return (sheets[0].get("properties") or {}).get("title") or "Sheet1"

    def _values(self, sheet_id: str, cell_range: str) -> List[List[Any]]:
        resp = self._get(
            f"{SHEETS_API_BASE_URL}/{sheet_id}/values/{cell_range}",
            {
                "key": self.api_key,
                "valueRenderOption": "UNFORMATTED_VALUE",
                "dateTimeRenderOption": "FORMATTED_STRING",
            },
        )
        values = self._json(resp).get("values") or []
        if not isinstance(values, list):
            raise SheetAccessError("Sheets API 'values' is not a list")
        return values

    # -- CSV export -----------------------------------------------------------

    def _csv_rows(self, url: str, params: Dict[str, Any]) -> List[List[Any]]:
        resp = self._get(url, params)
        text = resp.content.decode("utf-8-sig")
        if text.lstrip().lower().startswith("<!doctype html") or text.lstrip().startswith("<html"):
            # Private sheets redirect to a login page instead of failing
            raise SheetAccessError("Access denied. The sheet is not shared publicly.")
        if not text.strip():
            return []
        df = pd.read_csv(
            io.StringIO(text),
            header=None,
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=True,
        )
        return df.values.tolist()

    def _export_csv(self, sheet_id: str) -> List[List[Any]]:
        return self._csv_rows(SHEETS_EXPORT_URL.format(sheet_id=sheet_id), {"format": "csv"})

    def _first_column_csv(self, sheet_id: str) -> List[List[Any]]:
        """Column A of the first tab only, header row included."""
        return self._csv_rows(
            SHEETS_GVIZ_URL.format(sheet_id=sheet_id),
            {"tqx": "out:csv", "tq": "select A", "headers": 1},
        )

    # -- public -------------------------------------------------------------

    def fetch_sheet(self, url: str) -> SheetData:
        sheet_id = extract_spreadsheet_id(url)
        t0 = time.perf_counter()

        if self.api_key:
            title = self._first_sheet_title(sheet_id)
            rows = self._values(sheet_id, f"{title}!A:ZZ")
        else:
            rows = self._export_csv(sheet_id)

        fetched = time.perf_counter()
        sheet = rows_to_sheet(rows)
        logger.info(
            "Fetched %s rows from %s in %.0fms (transform %.0fms)",
            sheet.total_rows, sheet_id, (fetched - t0) * 1000, (time.perf_counter() - fetched) * 1000,
        )
        return sheet

    def fetch_row_count(self, url: str) -> int:
        """Data rows (header excluded), reading only the first column."""
        sheet_id = extract_spreadsheet_id(url)
        if self.api_key:
            title = self._first_sheet_title(sheet_id)
            rows = self._values(sheet_id, f"{title}!A:A")
        else:
            rows = self._first_column_csv(sheet_id)
        return max(0, len(rows) - 1)

    def validate_sheet(self, url: str) -> SheetValidation:
        """
        Check that the sheet can be read before it is used.

        Access problems come back as an invalid result rather than an
        exception. Title and tab count are only known with an API key.
        """
        try:
            sheet_id = extract_spreadsheet_id(url)
            if self.api_key:
                data = self._spreadsheet(sheet_id, "properties.title,sheets.properties")
                return SheetValidation(
                    valid=True,
                    title=(data.get("properties") or {}).get("title"),
                    sheet_count=len(data.get("sheets") or []),
                )
            self._first_column_csv(sheet_id)
            return SheetValidation(valid=True)
        except SheetAccessError as exc:
            logger.info("Sheet validation failed for %s: %s", url, exc)
            return SheetValidation(valid=False, error=str(exc))


class SheetSource:
    """
    Async, cached access to sheets for the analytics layer.

    Blocking HTTP runs in a worker thread. Concurrent requests for the same
    uncached sheet share one fetch through the cache's coalescing.
    """

    def __init__(
        self,
        cache: CacheService,
        client: Optional[SheetsClient] = None,
        ttl: float = SHEET_DATA_CACHE_TTL,
    ) -> None:
        self.cache = cache
        self.client = client or SheetsClient()
        self.ttl = ttl

    @staticmethod
    def source_id(url: str) -> str:
        return extract_spreadsheet_id(url)

    def _key(self, url: str) -> str:
        return make_key("sheet", self.source_id(url))

    async def _fetch(self, url: str) -> SheetData:
        return await asyncio.to_thread(self.client.fetch_sheet, url)

    async def get_sheet_data(self, url: str, force_refresh: bool = False) -> SheetData:
        key = self._key(url)
        if force_refresh:
            self.cache.delete(key)
        return await self.cache.get_or_compute(key, lambda: self._fetch(url), self.ttl)

    def cached_sheet(self, url: str) -> Optional[SheetData]:
        return self.cache.get_stale(self._key(url))

    async def get_row_count(self, url: str) -> int:
        return await asyncio.to_thread(self.client.fetch_row_count, url)

    async def validate_sheet(self, url: str) -> SheetValidation:
        return await asyncio.to_thread(self.client.validate_sheet, url)

    async def check_for_updates(self, url: str) -> UpdateCheck:
        cached = self.cached_sheet(url)
        cached_count = cached.total_rows if cached is not None else 0

        try:
            current = await self.get_row_count(url)
        except SheetAccessError as exc:
            logger.warning("Error checking for updates on %s: %s", self.source_id(url), exc)
            return UpdateCheck(
                has_changed=False,
                delta=0,
                current_count=cached_count,
                cached_count=cached_count,
                should_instant_refresh=False,
                error=str(exc),
            )

        delta = current - cached_count
        return UpdateCheck(
            has_changed=delta != 0,
            delta=delta,
            current_count=current,
            cached_count=cached_count,
            should_instant_refresh=0 < abs(delta) <= INSTANT_REFRESH_MAX_DELTA,
        )
