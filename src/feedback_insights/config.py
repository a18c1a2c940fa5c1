from __future__ import annotations

import os
from pathlib import Path

# ---------------------------------------------------------------------------
# Project paths
# ---------------------------------------------------------------------------

# Root of the project (repo root)
PROJECT_ROOT = Path(__file__).resolve().parents[2]

# Data directory (merge overlays live here unless overridden)
DATA_DIR = Path(os.getenv("FEEDBACK_DATA_DIR", str(PROJECT_ROOT / "data")))
MERGE_OVERLAY_FILE = Path(
    os.getenv("FEEDBACK_MERGE_OVERLAY_FILE", str(DATA_DIR / "merged_names.json"))
)

# ---------------------------------------------------------------------------
# App identity
# ---------------------------------------------------------------------------

APP_NAME = "Feedback Insights"
APP_VERSION = "0.1.0"

LOG_LEVEL = os.getenv("FEEDBACK_LOG_LEVEL", "INFO").strip().upper()

# ---------------------------------------------------------------------------
# Google Sheets access
#
# With an API key the Sheets v4 values endpoint is used, which keeps numeric
# cells numeric. Without one we read the public CSV export of the first tab,
# which only works for sheets shared as "anyone with the link".
# ---------------------------------------------------------------------------

SHEETS_API_BASE_URL = "https://sheets.googleapis.com/v4/spreadsheets"
SHEETS_EXPORT_URL = "https://docs.google.com/spreadsheets/d/{sheet_id}/export"
# Visualization query endpoint; lets a row count read one column as CSV
SHEETS_GVIZ_URL = "https://docs.google.com/spreadsheets/d/{sheet_id}/gviz/tq"
SHEETS_API_KEY = os.getenv("FEEDBACK_SHEETS_API_KEY", "").strip()
SHEETS_TIMEOUT_SECONDS = int(os.getenv("FEEDBACK_SHEETS_TIMEOUT_SECONDS", "60"))

# ---------------------------------------------------------------------------
# Cache TTLs (seconds)
# ---------------------------------------------------------------------------

SHEET_DATA_CACHE_TTL = int(os.getenv("FEEDBACK_SHEET_DATA_TTL", "600"))
METADATA_CACHE_TTL = int(os.getenv("FEEDBACK_METADATA_TTL", "600"))
ANALYTICS_CACHE_TTL = int(os.getenv("FEEDBACK_ANALYTICS_TTL", "300"))
FILTERED_DATA_CACHE_TTL = int(os.getenv("FEEDBACK_FILTERED_DATA_TTL", "180"))
NAME_MAPPING_CACHE_TTL = int(os.getenv("FEEDBACK_NAME_MAPPING_TTL", "600"))

# Start a background refresh when less than this many seconds remain
CACHE_REFRESH_THRESHOLD = int(os.getenv("FEEDBACK_CACHE_REFRESH_THRESHOLD", "120"))
CACHE_MAX_KEYS = int(os.getenv("FEEDBACK_CACHE_MAX_KEYS", "100"))

# ---------------------------------------------------------------------------
# Analytics tuning
# ---------------------------------------------------------------------------

NAME_GROUP_THRESHOLD = float(os.getenv("FEEDBACK_NAME_GROUP_THRESHOLD", "0.75"))
NAME_SUGGEST_THRESHOLD = float(os.getenv("FEEDBACK_NAME_SUGGEST_THRESHOLD", "0.65"))

# Row-count deltas up to this size trigger an immediate refresh
INSTANT_REFRESH_MAX_DELTA = 10

DEFAULT_PAGE_SIZE = int(os.getenv("FEEDBACK_PAGE_SIZE", "100"))
